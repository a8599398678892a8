"""テスト用の共通フェイク.

Chromium / FFmpeg / go2rtc を起動せずにライフサイクルを検証するため、
CaptureEngine・EncoderProcess・RelayClient と同じインターフェースの
フェイクを提供する。
"""

import asyncio

import httpx
import pytest

from web_stream_relay.config import RelayConfig
from web_stream_relay.errors import CreationFailedError
from web_stream_relay.manager import StreamManager
from web_stream_relay.registry import StreamRegistry
from web_stream_relay.relay import RelayStreamStats


class FakeSession:
    """CaptureSession のフェイク. ready イベントで capture-ready を制御する."""

    def __init__(self, stream_id: str, url: str, sink, on_close, *, ready: bool):
        self.stream_id = stream_id
        self.url = url
        self.sink = sink
        self._on_close = on_close
        self.ready = asyncio.Event()
        if ready:
            self.ready.set()
        self.closed = False
        self.close_calls = 0
        self.chunks_received = 0
        self.bytes_received = 0

    @property
    def is_closed(self) -> bool:
        return self.closed

    async def push(self, chunk: bytes) -> None:
        """ページからチャンクが届いた."""
        self.chunks_received += 1
        self.bytes_received += len(chunk)
        await self.sink(chunk)

    async def wait_ready(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self.ready.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            raise TimeoutError("capture not ready") from None

    async def close(self) -> None:
        self.close_calls += 1
        if self.closed:
            return
        self.closed = True
        self._on_close()

    def crash(self) -> None:
        """ページが外部要因で閉じた."""
        self.closed = True
        self._on_close()


class FakeEngine:
    """CaptureEngine のフェイク."""

    def __init__(self):
        self.sessions: list[FakeSession] = []
        self.capture_ready = True
        self.fail_open = False
        self.closed = False

    async def open_session(self, stream_id, url, *, sink, on_close) -> FakeSession:
        await asyncio.sleep(0)
        if self.fail_open:
            raise CreationFailedError(f"Cannot open {url!r}")
        session = FakeSession(
            stream_id, url, sink, on_close, ready=self.capture_ready
        )
        self.sessions.append(session)
        return session

    async def close(self) -> None:
        self.closed = True


class FakeEncoder:
    """EncoderProcess のフェイク. crash() で異常終了を模擬する."""

    def __init__(self, config, name, *, on_exit=None):
        self.config = config
        self.name = name
        self._on_exit = on_exit
        self.running = False
        self.started = False
        self.stop_calls = 0
        self.chunks: list[bytes] = []

    @property
    def is_running(self) -> bool:
        return self.running

    @property
    def bytes_written(self) -> int:
        return sum(len(chunk) for chunk in self.chunks)

    async def start(self) -> None:
        await asyncio.sleep(0)
        self.started = True
        self.running = True

    async def write(self, chunk: bytes) -> None:
        self.chunks.append(chunk)

    async def stop(self) -> None:
        self.stop_calls += 1
        if not self.running:
            return
        await asyncio.sleep(0)
        self.running = False
        self._on_exit(255)

    def crash(self, code: int = 1) -> None:
        self.running = False
        self._on_exit(code)


class FakeRelay:
    """RelayClient のフェイク.

    auto_ready=True の場合、create() した時点で producer 2 / consumer 0 を報告する。
    """

    def __init__(self):
        self.created: dict[str, str] = {}
        self.streams: dict[str, RelayStreamStats] = {}
        self.auto_ready = True
        self.fail = False
        self.list_calls = 0
        self.closed = False

    async def create(self, name: str, source: str) -> None:
        await asyncio.sleep(0)
        self.created[name] = source
        if self.auto_ready:
            self.streams[name] = RelayStreamStats(producer_count=2, consumer_count=0)

    async def list_all(self) -> dict[str, RelayStreamStats]:
        self.list_calls += 1
        await asyncio.sleep(0)
        if self.fail:
            raise httpx.ConnectError("relay unreachable")
        return dict(self.streams)

    def set_counts(self, name: str, producers: int, consumers: int) -> None:
        self.streams[name] = RelayStreamStats(
            producer_count=producers, consumer_count=consumers
        )

    async def aclose(self) -> None:
        self.closed = True


@pytest.fixture
def config() -> RelayConfig:
    return RelayConfig(
        ready_timeout=0.2,
        relay_poll_interval=0.01,
        sweep_interval=60.0,
        served_grace=0.0,
    )


@pytest.fixture
def engine() -> FakeEngine:
    return FakeEngine()


@pytest.fixture
def relay() -> FakeRelay:
    return FakeRelay()


@pytest.fixture
def encoders() -> list[FakeEncoder]:
    return []


@pytest.fixture
def encoder_factory(encoders):
    def factory(config, name, *, on_exit=None):
        encoder = FakeEncoder(config, name, on_exit=on_exit)
        encoders.append(encoder)
        return encoder

    return factory


@pytest.fixture
def registry() -> StreamRegistry:
    return StreamRegistry()


@pytest.fixture
def manager(config, engine, relay, registry, encoder_factory) -> StreamManager:
    return StreamManager(
        config,
        engine,
        relay,
        registry=registry,
        encoder_factory=encoder_factory,
    )
