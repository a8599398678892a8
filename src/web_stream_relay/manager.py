"""ストリームライフサイクル管理.

URL ごとの重複排除、作成処理の起動、アイドル回収、終了時の全停止を担う。
"""

from __future__ import annotations

import asyncio
import logging
from urllib.parse import urlsplit

from web_stream_relay.capture import CaptureEngine
from web_stream_relay.config import RelayConfig
from web_stream_relay.context import EncoderFactory, StreamContext, StreamState
from web_stream_relay.encoder import EncoderProcess
from web_stream_relay.errors import (
    CreationFailedError,
    MissingParameterError,
    StreamIdCollisionError,
)
from web_stream_relay.registry import Reservation, StreamRegistry
from web_stream_relay.relay import RelayClient
from web_stream_relay.stream_id import derive_stream_id, stream_name
from web_stream_relay.sweeper import ReclamationSweeper

logger = logging.getLogger(__name__)


class StreamManager:
    """URL → RTSP アドレスの get-or-create と、全ストリームの後始末.

    作成は専用タスクで実行し、最初の呼び出し元も後続の呼び出し元も
    予約の共有ハンドルを待つ。呼び出し元の切断で作成がキャンセルされることはない。

    Usage:
        manager = StreamManager(config, engine, relay)
        await manager.start()
        address = await manager.get_or_create("https://example.com/live")
        ...
        await manager.shutdown()
    """

    def __init__(
        self,
        config: RelayConfig,
        engine: CaptureEngine,
        relay: RelayClient,
        *,
        registry: StreamRegistry | None = None,
        encoder_factory: EncoderFactory = EncoderProcess,
    ):
        self._config = config
        self._engine = engine
        self._relay = relay
        self._registry = registry if registry is not None else StreamRegistry()
        self._encoder_factory = encoder_factory
        self._sweeper = ReclamationSweeper(
            self._registry,
            relay,
            interval=config.sweep_interval,
            idle_consumer_threshold=config.idle_consumer_threshold,
            grace=config.served_grace,
        )
        self._creations: set[asyncio.Task] = set()
        self._shutting_down = False

    @property
    def registry(self) -> StreamRegistry:
        return self._registry

    @property
    def sweeper(self) -> ReclamationSweeper:
        return self._sweeper

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    async def start(self) -> None:
        await self._sweeper.start()

    async def get_or_create(self, url: str | None) -> str:
        """URL に対応するストリームの RTSP アドレスを返す (なければ作成).

        Raises:
            MissingParameterError: url が空、または http(s) の絶対 URL でない場合
            StreamIdCollisionError: 別 URL が同じ id を使用中の場合
            CreationTimeoutError: handshake がタイムアウトした場合
            CreationFailedError: 作成に失敗した場合、または終了処理中
        """
        _validate_url(url)
        if self._shutting_down:
            raise CreationFailedError("Server is shutting down")

        stream_id = derive_stream_id(url)
        while True:
            entry = self._registry.get(stream_id)
            if entry is None:
                break
            if entry.url != url:
                raise StreamIdCollisionError(stream_id, entry.url, url)
            if isinstance(entry, StreamContext) and entry.state is not StreamState.ACTIVE:
                # 後始末中のコンテキストは使わず、消えるのを待って作り直す
                logger.info("Stream %s is closing, waiting to recreate", stream_id)
                await entry.wait_closed()
                if self._shutting_down:
                    raise CreationFailedError("Server is shutting down")
                continue
            logger.info("Reuse stream %s", stream_id)
            context = await self._registry.wait(stream_id)
            context.mark_served()
            return context.address

        # ここから最初の await までに予約を置く
        self._registry.reserve(stream_id, url)
        logger.info("Create stream %s for %s", stream_id, url)
        task = asyncio.create_task(
            self._create(stream_id, url), name=f"create-{stream_id}"
        )
        self._creations.add(task)
        task.add_done_callback(self._creations.discard)

        context = await self._registry.wait(stream_id)
        context.mark_served()
        return context.address

    def list_streams(self) -> list[dict]:
        """登録中ストリーム一覧 (作成中を含む).

        chunks_received / bytes_received はページから届いたチャンク数とバイト数、
        bytes_written は FFmpeg の stdin に書き込んだバイト数。
        リソースがまだない作成中のエントリでは None。
        """
        streams = []
        for stream_id, entry in self._registry.snapshot():
            if isinstance(entry, Reservation):
                streams.append(
                    {
                        "stream_id": stream_id,
                        "name": stream_name(stream_id),
                        "url": entry.url,
                        "state": StreamState.INITIALIZING.value,
                        "address": None,
                        "created_at": entry.context.created_at if entry.context else None,
                        **_counters(entry.context),
                    }
                )
            else:
                streams.append(
                    {
                        "stream_id": stream_id,
                        "name": entry.name,
                        "url": entry.url,
                        "state": entry.state.value,
                        "address": entry.address,
                        "created_at": entry.created_at,
                        **_counters(entry),
                    }
                )
        return streams

    async def shutdown(self) -> None:
        """全ストリームを停止し、共有の Chromium を解放する.

        個々の停止失敗はログに残して続行する。
        """
        if self._shutting_down:
            return
        self._shutting_down = True
        logger.info("Shutting down %d stream(s)", len(self._registry))

        try:
            await self._sweeper.stop()
        except Exception:
            logger.exception("Error stopping reclamation sweeper")

        contexts = []
        for _stream_id, entry in self._registry.snapshot():
            if isinstance(entry, Reservation):
                if entry.context is not None:
                    contexts.append(entry.context)
            else:
                contexts.append(entry)

        results = await asyncio.gather(
            *(context.close(reason="shutdown") for context in contexts),
            return_exceptions=True,
        )
        for context, result in zip(contexts, results):
            if isinstance(result, Exception):
                logger.error("Error closing stream %s: %s", context.stream_id, result)

        # 作成中タスクは close を受けて失敗で終わる
        if self._creations:
            await asyncio.gather(*list(self._creations), return_exceptions=True)

        await self._engine.close()
        try:
            await self._relay.aclose()
        except Exception:
            logger.exception("Error closing relay client")
        logger.info("Shutdown complete")

    async def _create(self, stream_id: str, url: str) -> None:
        """作成タスク本体. 結果は予約の共有ハンドル経由で全待機者に届く."""
        if self._shutting_down:
            self._registry.abandon(
                stream_id, CreationFailedError("Server is shutting down")
            )
            return

        context = StreamContext(
            stream_id,
            url,
            config=self._config,
            engine=self._engine,
            relay=self._relay,
            registry=self._registry,
            encoder_factory=self._encoder_factory,
        )
        self._registry.attach(stream_id, context)
        try:
            await context.initialize()
        except CreationFailedError as e:
            self._registry.abandon(stream_id, e)
            return
        except Exception as e:
            logger.exception("Unexpected error creating stream %s", stream_id)
            self._registry.abandon(stream_id, e)
            return

        try:
            self._registry.commit(stream_id, context)
        except KeyError:
            # 作成中に予約が remove() された
            logger.warning("Reservation for %s vanished, discarding stream", stream_id)
            await context.close(reason="reservation removed")


def _validate_url(url: str | None) -> None:
    """http(s) の絶対 URL でなければ MissingParameterError. リソースには触れない."""
    if not url:
        raise MissingParameterError("Missing url parameter")
    try:
        parts = urlsplit(url)
        hostname = parts.hostname
    except ValueError as e:
        raise MissingParameterError(f"Malformed url parameter: {url!r}") from e
    if parts.scheme not in ("http", "https") or not hostname:
        raise MissingParameterError(f"Malformed url parameter: {url!r}")


def _counters(context: StreamContext | None) -> dict:
    session = context.session if context is not None else None
    encoder = context.encoder if context is not None else None
    return {
        "chunks_received": session.chunks_received if session is not None else None,
        "bytes_received": session.bytes_received if session is not None else None,
        "bytes_written": encoder.bytes_written if encoder is not None else None,
    }
