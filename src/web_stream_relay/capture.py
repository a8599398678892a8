"""Playwright Chromium によるページキャプチャ.

プロセス全体で 1 つの Chromium (CaptureEngine) を共有し、
ストリームごとに独立したページ (CaptureSession) を開く。
ページに注入したキャプチャスクリプトが ``__pushMediaChunk`` で
メディアチャンクを Python 側に送り返す。
"""

from __future__ import annotations

import base64
import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from playwright.async_api import Browser, Page, Playwright, Route, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from web_stream_relay.config import RelayConfig
from web_stream_relay.errors import CreationFailedError

logger = logging.getLogger(__name__)

ChunkSink = Callable[[bytes], Awaitable[None]]
CloseCallback = Callable[[], None]

CHUNK_FUNCTION_NAME = "__pushMediaChunk"
READY_EXPRESSION = "() => window.__media_capture_ready === true"

CHROMIUM_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--no-first-run",
    "--no-zygote",
    "--disable-background-timer-throttling",
    "--disable-renderer-backgrounding",
    "--enable-features=WebRTC-H264HighProfile,WebCodecs",
    "--disable-web-security",
]


def coerce_chunk(chunk: Any) -> bytes:
    """ページから届いたチャンクを bytes に正規化する.

    Playwright のシリアライズ結果に応じて以下を受け付ける:
    bytes / base64 文字列 / int のリスト / インデックスをキーとする dict
    """
    if isinstance(chunk, (bytes, bytearray, memoryview)):
        return bytes(chunk)
    if isinstance(chunk, str):
        return base64.b64decode(chunk)
    if isinstance(chunk, list):
        return bytes(chunk)
    if isinstance(chunk, dict):
        return bytes(chunk[k] for k in sorted(chunk, key=int))
    raise TypeError(f"Unsupported chunk type: {type(chunk).__name__}")


class CaptureSession:
    """1 ストリーム分のページ.

    ページの close イベントは ``on_close`` に通知される
    （自分で close() した場合も含む）。
    """

    def __init__(self, stream_id: str, page: Page):
        self._stream_id = stream_id
        self._page = page
        self._chunks_received = 0
        self._bytes_received = 0

    @property
    def stream_id(self) -> str:
        return self._stream_id

    @property
    def is_closed(self) -> bool:
        return self._page.is_closed()

    @property
    def chunks_received(self) -> int:
        return self._chunks_received

    @property
    def bytes_received(self) -> int:
        return self._bytes_received

    def _count_chunk(self, size: int) -> None:
        self._chunks_received += 1
        self._bytes_received += size

    async def wait_ready(self, timeout: float) -> None:
        """キャプチャスクリプトがチャンク送出を始めるまで待つ.

        Raises:
            TimeoutError: timeout 秒以内に ready にならなかった場合
            CreationFailedError: 待機中にページが閉じられた場合
        """
        try:
            await self._page.wait_for_function(
                READY_EXPRESSION, timeout=timeout * 1000
            )
        except PlaywrightTimeoutError as e:
            raise TimeoutError(str(e)) from e
        except PlaywrightError as e:
            raise CreationFailedError(
                f"Capture page for {self._stream_id} failed: {e}"
            ) from e

    async def close(self) -> None:
        """ページを閉じる. 閉じ済みなら何もしない."""
        if self._page.is_closed():
            return
        await self._page.close()
        logger.info("Capture page closed for %s", self._stream_id)


class CaptureEngine:
    """全ストリームで共有する Playwright + Chromium.

    起動時に一度 start() し、全ストリームの後始末が終わってから close() する。
    """

    def __init__(self, config: RelayConfig):
        self._config = config
        self._playwright: Playwright | None = None
        self._browser: Browser | None = None

    @property
    def is_running(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    async def start(self) -> None:
        if self._browser is not None:
            raise RuntimeError("CaptureEngine is already started")
        self._playwright = await async_playwright().start()
        try:
            self._browser = await self._playwright.chromium.launch(
                headless=self._config.headless,
                args=CHROMIUM_ARGS,
            )
        except Exception:
            await self._playwright.stop()
            self._playwright = None
            raise
        logger.info("Chromium launched (headless=%s)", self._config.headless)

    async def open_session(
        self,
        stream_id: str,
        url: str,
        *,
        sink: ChunkSink,
        on_close: CloseCallback,
    ) -> CaptureSession:
        """対象 URL を開いたキャプチャセッションを作成する.

        ブロックリストに一致するリクエストは空レスポンスで握りつぶし、
        ビットレートとキャプチャスクリプトを注入してから遷移する。

        Raises:
            RuntimeError: エンジン未起動
            CreationFailedError: ページ作成・遷移に失敗した場合
        """
        if self._browser is None:
            raise RuntimeError("CaptureEngine is not started")

        config = self._config
        # new_page() はページ専用のブラウザコンテキストを作る
        page = await self._browser.new_page(
            viewport={
                "width": config.viewport_width,
                "height": config.viewport_height,
            }
        )
        session = CaptureSession(stream_id, page)

        async def handle_route(route: Route) -> None:
            if config.block_list.is_blocked(route.request.url):
                await route.fulfill(status=200, body="")
            else:
                await route.continue_()

        async def push_chunk(chunk: Any) -> None:
            data = coerce_chunk(chunk)
            session._count_chunk(len(data))
            await sink(data)

        def handle_close(_page: Page) -> None:
            logger.info("Capture page for %s reported close", stream_id)
            on_close()

        try:
            await page.route("**/*", handle_route)
            await page.expose_function(CHUNK_FUNCTION_NAME, push_chunk)
            await page.add_init_script(
                script=f"window.__VIDEO_BITRATE = {json.dumps(config.video_bitrate)};"
            )
            if config.preload_script:
                await page.add_init_script(script=config.preload_script)
            await page.goto(url, wait_until="domcontentloaded")
        except PlaywrightError as e:
            logger.error("Failed to open %s for %s: %s", url, stream_id, e)
            try:
                await page.close()
            except PlaywrightError:
                logger.debug("Page for %s already gone", stream_id)
            raise CreationFailedError(f"Cannot open {url!r}: {e}") from e

        # 遷移失敗時の close では通知しない
        page.on("close", handle_close)
        logger.info("Capture page opened for %s: %s", stream_id, url)
        return session

    async def close(self) -> None:
        """Chromium と Playwright を解放する."""
        browser, pw = self._browser, self._playwright
        self._browser = None
        self._playwright = None
        if browser is not None:
            try:
                await browser.close()
                logger.info("Chromium closed")
            except Exception:
                logger.exception("Error closing Chromium")
        if pw is not None:
            try:
                await pw.stop()
            except Exception:
                logger.exception("Error stopping Playwright")
