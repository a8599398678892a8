"""ストリームコンテキスト.

1 つのキャプチャセッションと 1 つの FFmpeg プロセスを所有し、
両者をまとめたライフサイクルを管理する。

    INITIALIZING → ACTIVE → CLOSING → REMOVED
    INITIALIZING → CLOSING (作成失敗)

どちらのリソースの終了通知からでも同じ後始末が走るが、
後始末タスクは 1 つだけ作られ、後続の要求はそれを待つだけになる。
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from enum import Enum
from typing import TYPE_CHECKING

from web_stream_relay.config import RelayConfig
from web_stream_relay.encoder import EncoderProcess
from web_stream_relay.errors import CreationFailedError
from web_stream_relay.handshake import ReadinessHandshake
from web_stream_relay.stream_id import stream_name

if TYPE_CHECKING:
    from web_stream_relay.capture import CaptureEngine, CaptureSession
    from web_stream_relay.registry import StreamRegistry
    from web_stream_relay.relay import RelayClient

logger = logging.getLogger(__name__)

EncoderFactory = Callable[..., EncoderProcess]


class StreamState(str, Enum):
    INITIALIZING = "initializing"
    ACTIVE = "active"
    CLOSING = "closing"
    REMOVED = "removed"


class StreamContext:
    """1 ストリーム分のリソース所有者.

    所有するキャプチャセッションと FFmpeg プロセスは生涯 1 つずつで、
    他のコンテキストと共有・譲渡しない。REMOVED になったら再利用しない。
    """

    def __init__(
        self,
        stream_id: str,
        url: str,
        *,
        config: RelayConfig,
        engine: CaptureEngine,
        relay: RelayClient,
        registry: StreamRegistry,
        encoder_factory: EncoderFactory = EncoderProcess,
    ):
        self._stream_id = stream_id
        self._name = stream_name(stream_id)
        self._url = url
        self._config = config
        self._engine = engine
        self._relay = relay
        self._registry = registry
        self._encoder_factory = encoder_factory
        self._created_at = time.time()
        self._last_served = time.monotonic()

        self._state = StreamState.INITIALIZING
        self._session: CaptureSession | None = None
        self._encoder: EncoderProcess | None = None
        self._closing = asyncio.Event()
        self._close_task: asyncio.Task | None = None
        self._close_reason: str | None = None

    @property
    def stream_id(self) -> str:
        return self._stream_id

    @property
    def name(self) -> str:
        """go2rtc 上のストリーム名 (RTSP パス)."""
        return self._name

    @property
    def url(self) -> str:
        return self._url

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def created_at(self) -> float:
        return self._created_at

    @property
    def last_served(self) -> float:
        """最後にアドレスを返した時刻 (time.monotonic)."""
        return self._last_served

    def mark_served(self) -> None:
        self._last_served = time.monotonic()

    @property
    def close_reason(self) -> str | None:
        return self._close_reason

    @property
    def session(self) -> CaptureSession | None:
        return self._session

    @property
    def encoder(self) -> EncoderProcess | None:
        return self._encoder

    @property
    def address(self) -> str:
        """クライアントに返す RTSP アドレス."""
        return self._config.relay_address(self._name)

    async def initialize(self) -> None:
        """リソースを確保し、readiness handshake を通過させる.

        手順:
          1. go2rtc にストリームを登録
          2. FFmpeg 起動 (stdin 待ち受け)
          3. ページを開き、チャンクを FFmpeg の stdin へ接続
          4. capture-ready と relay-producer-ready を待つ

        失敗した場合は確保済みのリソースをすべて解放してから例外を送出する。

        Raises:
            CreationTimeoutError: handshake の信号が期限内に届かなかった場合
            CreationFailedError: リソースの確保失敗、または準備完了前に終了した場合
        """
        if self._state is not StreamState.INITIALIZING:
            raise RuntimeError(f"Cannot initialize stream in {self._state.value} state")

        logger.info("Initializing stream %s for %s", self._stream_id, self._url)
        try:
            await self._relay.create(
                self._name, self._config.publish_address(self._name)
            )
            self._ensure_initializing()

            self._encoder = self._encoder_factory(
                self._config, self._name, on_exit=self._on_encoder_exit
            )
            await self._encoder.start()
            self._ensure_initializing()

            self._session = await self._engine.open_session(
                self._stream_id,
                self._url,
                sink=self._encoder.write,
                on_close=self._on_session_close,
            )
            self._ensure_initializing()

            await self._await_readiness()
        except Exception as e:
            error = (
                e
                if isinstance(e, CreationFailedError)
                else CreationFailedError(f"Stream {self._stream_id}: {e}")
            )
            logger.warning("Stream %s failed to start: %s", self._stream_id, error)
            await self.close(reason=f"creation failed: {error}")
            # close 済みの後に確保されたリソースも回収する
            await self._release_resources()
            if error is e:
                raise
            raise error from e

        self._state = StreamState.ACTIVE
        logger.info("Stream %s is active: %s", self._stream_id, self.address)

    async def close(self, reason: str = "requested") -> None:
        """後始末して REMOVED にする. 何度呼んでも後始末は 1 回だけ実行される."""
        await asyncio.shield(self._begin_close(reason))

    async def wait_closed(self) -> None:
        """後始末の完了を待つ (close を要求しない)."""
        await self._closing.wait()
        await asyncio.shield(self._close_task)

    def _begin_close(self, reason: str) -> asyncio.Task:
        if self._close_task is None:
            logger.info(
                "Closing stream %s (state=%s, reason=%s)",
                self._stream_id,
                self._state.value,
                reason,
            )
            self._state = StreamState.CLOSING
            self._close_reason = reason
            self._closing.set()
            self._close_task = asyncio.create_task(
                self._teardown(), name=f"teardown-{self._stream_id}"
            )
        return self._close_task

    async def _teardown(self) -> None:
        await self._release_resources()
        self._registry.remove(self._stream_id, owner=self)
        self._state = StreamState.REMOVED
        logger.info("Stream %s removed (%s)", self._stream_id, self._close_reason)

    async def _release_resources(self) -> None:
        """生きているリソースを解放する (各ステップは独立)."""
        if self._encoder is not None:
            try:
                await self._encoder.stop()
            except Exception:
                logger.exception("Error stopping encoder for %s", self._stream_id)
        if self._session is not None:
            try:
                await self._session.close()
            except Exception:
                logger.exception(
                    "Error closing capture page for %s", self._stream_id
                )

    async def _await_readiness(self) -> None:
        """handshake を、このコンテキストの close 要求と競わせる."""
        handshake = ReadinessHandshake(
            self._stream_id,
            self._name,
            self._session,
            self._relay,
            timeout=self._config.ready_timeout,
            poll_interval=self._config.relay_poll_interval,
            producer_threshold=self._config.producer_ready_threshold,
        )
        handshake_task = asyncio.create_task(
            handshake.wait(), name=f"handshake-{self._stream_id}"
        )
        closing_task = asyncio.create_task(self._closing.wait())
        try:
            await asyncio.wait(
                {handshake_task, closing_task},
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            closing_task.cancel()
            if not handshake_task.done():
                handshake_task.cancel()
            await asyncio.gather(handshake_task, closing_task, return_exceptions=True)

        if handshake_task.cancelled() or self._closing.is_set():
            self._ensure_initializing()
        handshake_task.result()

    def _ensure_initializing(self) -> None:
        if self._state is not StreamState.INITIALIZING:
            raise CreationFailedError(
                f"Stream {self._stream_id} closed before ready: {self._close_reason}"
            )

    def _on_encoder_exit(self, code: int) -> None:
        self._begin_close(f"encoder exited (code={code})")

    def _on_session_close(self) -> None:
        self._begin_close("capture page closed")
