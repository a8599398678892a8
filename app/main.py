"""FastAPI application: ブラウザ再生ページ → RTSP リレー.

GET /api/stream?url=... でページを Chromium で開き、
go2rtc 経由で配信される RTSP アドレスをテキストで返す。
同じ URL へのリクエストは同じストリームを共有する。
"""

import logging
import os
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Query
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic import BaseModel

from web_stream_relay.capture import CaptureEngine
from web_stream_relay.config import RelayConfig
from web_stream_relay.errors import (
    CreationFailedError,
    CreationTimeoutError,
    MissingParameterError,
)
from web_stream_relay.manager import StreamManager
from web_stream_relay.relay import RelayClient

logger = logging.getLogger(__name__)

# StreamManager のシングルトン (lifespan で初期化)
stream_manager: StreamManager | None = None
# main() で読み込んだ設定 (uvicorn 外から起動された場合は lifespan で読む)
_config: RelayConfig | None = None


async def _build_manager(config: RelayConfig) -> StreamManager:
    """共有 Chromium を起動し StreamManager を組み立てる."""
    engine = CaptureEngine(config)
    await engine.start()
    relay = RelayClient(config.relay_api_url, timeout=config.relay_request_timeout)
    return StreamManager(config, engine, relay)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """アプリケーションのライフサイクル管理."""
    global stream_manager

    # 設定不正 (ブロックルール・アセット) はここで起動失敗させる
    config = _config or RelayConfig.from_env()
    stream_manager = await _build_manager(config)
    await stream_manager.start()
    logger.info("web-stream-relay server starting")
    yield
    logger.info("web-stream-relay server shutting down")
    await stream_manager.shutdown()
    stream_manager = None


app = FastAPI(
    title="web-stream-relay",
    description="Browser page playback relayed to RTSP via Playwright + FFmpeg + go2rtc",
    version="0.1.0",
    lifespan=lifespan,
)


def _error(status_code: int, category: str, detail: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code, content={"error": category, "detail": detail}
    )


# ============================================================
# ヘルスチェック
# ============================================================


@app.get("/api/healthz")
async def healthz() -> dict:
    """ヘルスチェック."""
    if stream_manager is None:
        return {"status": "starting", "streams": 0}
    return {
        "status": "shutting_down" if stream_manager.is_shutting_down else "healthy",
        "streams": len(stream_manager.registry),
    }


# ============================================================
# REST API: ストリーム
# ============================================================


class StreamInfo(BaseModel):
    """ストリーム情報."""

    stream_id: str
    name: str
    url: str
    state: str
    address: str | None = None
    created_at: float | None = None
    chunks_received: int | None = None
    bytes_received: int | None = None
    bytes_written: int | None = None


@app.get("/api/stream", response_class=PlainTextResponse)
async def get_stream(url: str | None = Query(default=None)):
    """URL に対応する RTSP アドレスを返す (なければ作成)."""
    try:
        address = await stream_manager.get_or_create(url)
        return PlainTextResponse(address)
    except MissingParameterError as e:
        return _error(400, e.category, str(e))
    except CreationTimeoutError as e:
        return _error(504, e.category, str(e))
    except CreationFailedError as e:
        return _error(502, e.category, str(e))
    except Exception as e:
        logger.exception("Unexpected error creating stream for %s", url)
        return _error(500, "internal-error", str(e))


@app.get("/api/streams")
async def list_streams() -> list[StreamInfo]:
    """登録中ストリーム一覧."""
    return [StreamInfo(**s) for s in stream_manager.list_streams()]


def main() -> None:
    """環境変数の設定で uvicorn を起動する."""
    global _config

    logging.basicConfig(
        level=os.environ.get("LOG_LEVEL", "INFO").upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    _config = RelayConfig.from_env()
    logger.info(
        "Listening: http://%s:%d/api/stream?url=...",
        _config.server_ip,
        _config.server_port,
    )
    uvicorn.run(app, host=_config.bind_host, port=_config.server_port)


if __name__ == "__main__":
    main()
