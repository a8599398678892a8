"""Readiness handshake.

新しいストリームを利用可能とみなす前に、独立した 2 つの信号を待つ:

1. capture-ready: ページのキャプチャスクリプトがチャンク送出を開始した
2. relay-producer-ready: go2rtc が publish されたストリームを受信し始めた

両方が揃うまで呼び出し元にアドレスを返さない。
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

import httpx

from web_stream_relay.errors import CreationTimeoutError

if TYPE_CHECKING:
    from web_stream_relay.capture import CaptureSession
    from web_stream_relay.relay import RelayClient

logger = logging.getLogger(__name__)


class ReadinessHandshake:
    """capture-ready と relay-producer-ready を並行して待つ.

    各信号はそれぞれ ``timeout`` 秒の待機枠を持ち、
    どちらかが失敗した時点でもう一方はキャンセルされる。
    """

    def __init__(
        self,
        stream_id: str,
        name: str,
        session: CaptureSession,
        relay: RelayClient,
        *,
        timeout: float = 30.0,
        poll_interval: float = 0.2,
        producer_threshold: int = 1,
    ):
        self._stream_id = stream_id
        self._name = name
        self._session = session
        self._relay = relay
        self._timeout = timeout
        self._poll_interval = poll_interval
        self._producer_threshold = producer_threshold

    async def wait(self) -> None:
        """両方の信号を待つ.

        Raises:
            CreationTimeoutError: どちらかの信号が期限内に届かなかった場合
                (``side`` で応答しなかった側を示す)
        """
        tasks = [
            asyncio.create_task(
                self.wait_capture_ready(), name=f"capture-ready-{self._stream_id}"
            ),
            asyncio.create_task(
                self.wait_relay_ready(), name=f"relay-ready-{self._stream_id}"
            ),
        ]
        try:
            await asyncio.gather(*tasks)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Stream %s passed readiness handshake", self._stream_id)

    async def wait_capture_ready(self) -> None:
        try:
            await self._session.wait_ready(self._timeout)
        except TimeoutError as e:
            raise CreationTimeoutError(
                self._stream_id, "capture", self._timeout
            ) from e
        logger.info("Stream %s: capture ready", self._stream_id)

    async def wait_relay_ready(self) -> None:
        """go2rtc の producer 数が閾値を超えるまでポーリングする.

        go2rtc への問い合わせ失敗は期限まで再試行する。
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._timeout
        while loop.time() < deadline:
            try:
                stats = await self._relay.list_all()
            except (httpx.HTTPError, ValueError) as e:
                logger.debug("Relay poll failed for %s: %s", self._stream_id, e)
            else:
                entry = stats.get(self._name)
                if entry is not None and entry.producer_count > self._producer_threshold:
                    logger.info(
                        "Stream %s: relay ready (producers=%d)",
                        self._stream_id,
                        entry.producer_count,
                    )
                    return
            await asyncio.sleep(self._poll_interval)
        raise CreationTimeoutError(self._stream_id, "relay", self._timeout)
