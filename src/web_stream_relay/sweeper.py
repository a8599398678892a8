"""アイドルストリームの定期回収."""

from __future__ import annotations

import asyncio
import logging
import time

import httpx

from web_stream_relay.registry import StreamRegistry
from web_stream_relay.relay import RelayClient
from web_stream_relay.stream_id import stream_id_from_name

logger = logging.getLogger(__name__)


class ReclamationSweeper:
    """go2rtc の consumer 数を周期的に確認し、視聴者のいないストリームを閉じる.

    対象は ACTIVE のコンテキストのみ。作成中 (予約) のエントリは
    go2rtc 側にまだ記録がなくても対象外。
    go2rtc への問い合わせ失敗はアイドルの証拠とはみなさず、その周期を飛ばす。

    周期は固定。アドレスを返してから grace 秒以内のストリームは
    視聴者がまだ接続していないだけかもしれないので、その周期では閉じない。
    """

    def __init__(
        self,
        registry: StreamRegistry,
        relay: RelayClient,
        *,
        interval: float = 10.0,
        idle_consumer_threshold: int = 0,
        grace: float | None = None,
    ):
        self._registry = registry
        self._relay = relay
        self._interval = interval
        self._idle_threshold = idle_consumer_threshold
        self._grace = interval if grace is None else grace
        self._task: asyncio.Task | None = None
        self._stop_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run(), name="reclamation-sweeper")
        logger.info(
            "Reclamation sweeper started (interval=%.1fs, grace=%.1fs)",
            self._interval,
            self._grace,
        )

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            await self._task
            self._task = None
        logger.info("Reclamation sweeper stopped")

    async def sweep_once(self) -> list[str]:
        """1 周期分の回収を行う.

        Returns:
            閉じたストリームの id
        """
        try:
            stats = await self._relay.list_all()
        except (httpx.HTTPError, ValueError) as e:
            logger.warning("Sweep skipped: failed to query relay streams (%s)", e)
            return []

        now = time.monotonic()
        idle = []
        for name, info in stats.items():
            if info.consumer_count > self._idle_threshold:
                continue
            stream_id = stream_id_from_name(name)
            if stream_id is None:
                continue
            context = self._registry.active(stream_id)
            if context is None:
                continue
            if now - context.last_served < self._grace:
                logger.debug("Stream %s was served recently, keeping", stream_id)
                continue
            idle.append(context)

        if not idle:
            return []

        for context in idle:
            logger.info("Reclaiming idle stream %s", context.stream_id)
        results = await asyncio.gather(
            *(context.close(reason="idle") for context in idle),
            return_exceptions=True,
        )
        for context, result in zip(idle, results):
            if isinstance(result, Exception):
                logger.error(
                    "Error closing idle stream %s: %s", context.stream_id, result
                )
        return [context.stream_id for context in idle]

    async def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except asyncio.TimeoutError:
                # タイムアウト = 回収の時間
                try:
                    await self.sweep_once()
                except Exception:
                    logger.exception("Error during reclamation sweep")
