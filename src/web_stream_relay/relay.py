"""go2rtc HTTP API クライアント."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RelayStreamStats:
    """go2rtc 上の 1 ストリームの producer / consumer 数."""

    producer_count: int
    consumer_count: int


class RelayClient:
    """go2rtc のストリーム API をラップする.

    Usage:
        relay = RelayClient("http://127.0.0.1:1984")
        await relay.create("stream_abc", "rtsp://:8554/stream_abc")
        stats = await relay.list_all()
        await relay.aclose()
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 5.0,
        client: httpx.AsyncClient | None = None,
    ):
        self._base_url = base_url.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @property
    def base_url(self) -> str:
        return self._base_url

    async def create(self, name: str, source: str) -> None:
        """ストリームを登録する (既存なら上書き).

        Raises:
            httpx.HTTPError: go2rtc に到達できない、またはエラー応答
        """
        response = await self._client.put(
            f"{self._base_url}/api/streams",
            params={"name": name, "src": source},
        )
        response.raise_for_status()
        logger.info("Relay stream registered: %s <- %s", name, source)

    async def list_all(self) -> dict[str, RelayStreamStats]:
        """全ストリームの producer / consumer 数を取得する.

        Raises:
            httpx.HTTPError: go2rtc に到達できない、またはエラー応答
            ValueError: 応答が JSON オブジェクトでない
        """
        response = await self._client.get(f"{self._base_url}/api/streams")
        response.raise_for_status()
        data = response.json()
        if not isinstance(data, dict):
            raise ValueError(f"Unexpected go2rtc response: {type(data).__name__}")

        stats = {}
        for name, info in data.items():
            info = info or {}
            stats[name] = RelayStreamStats(
                producer_count=len(info.get("producers") or []),
                consumer_count=len(info.get("consumers") or []),
            )
        return stats

    async def aclose(self) -> None:
        await self._client.aclose()
