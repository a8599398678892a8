"""StreamContext のライフサイクルテスト.

Chromium / FFmpeg / go2rtc はフェイクで置き換える。
"""

import asyncio

import pytest

from web_stream_relay.config import RelayConfig
from web_stream_relay.context import StreamContext, StreamState
from web_stream_relay.errors import CreationFailedError, CreationTimeoutError

STREAM_ID = "0123456789abcdef"
URL = "https://example.com/live"


@pytest.fixture
def make_context(config, engine, relay, registry, encoder_factory):
    def _make(cfg: RelayConfig | None = None) -> StreamContext:
        return StreamContext(
            STREAM_ID,
            URL,
            config=cfg or config,
            engine=engine,
            relay=relay,
            registry=registry,
            encoder_factory=encoder_factory,
        )

    return _make


async def _active_context(make_context, registry) -> StreamContext:
    """予約 → 初期化 → commit 済みのコンテキストを作る."""
    registry.reserve(STREAM_ID, URL)
    ctx = make_context()
    registry.attach(STREAM_ID, ctx)
    await ctx.initialize()
    registry.commit(STREAM_ID, ctx)
    return ctx


class TestInitialize:
    """INITIALIZING → ACTIVE / 失敗エッジ."""

    @pytest.mark.asyncio
    async def test_success_wires_all_resources(self, make_context, engine, relay, encoders):
        ctx = make_context()
        assert ctx.state is StreamState.INITIALIZING

        await ctx.initialize()

        assert ctx.state is StreamState.ACTIVE
        assert ctx.name == f"stream_{STREAM_ID}"
        assert ctx.address == f"rtsp://127.0.0.1:8554/stream_{STREAM_ID}"
        assert relay.created == {ctx.name: f"rtsp://127.0.0.1:8554/{ctx.name}"}
        assert len(encoders) == 1 and encoders[0].running
        assert len(engine.sessions) == 1
        # ページからのチャンクは FFmpeg の stdin へ
        session = engine.sessions[0]
        await session.sink(b"chunk")
        assert encoders[0].chunks == [b"chunk"]

    @pytest.mark.asyncio
    async def test_capture_timeout_tears_down(self, make_context, engine, encoders):
        engine.capture_ready = False
        ctx = make_context()

        with pytest.raises(CreationTimeoutError) as exc_info:
            await ctx.initialize()

        assert exc_info.value.side == "capture"
        assert ctx.state is StreamState.REMOVED
        assert not encoders[0].running
        assert engine.sessions[0].closed

    @pytest.mark.asyncio
    async def test_encoder_exit_before_ready_fails(self, make_context, engine, encoders, config):
        engine.capture_ready = False
        cfg = RelayConfig(ready_timeout=5.0, relay_poll_interval=0.01)
        ctx = make_context(cfg)

        task = asyncio.create_task(ctx.initialize())
        await _wait_until(lambda: engine.sessions)
        encoders[0].crash(code=1)

        with pytest.raises(CreationFailedError) as exc_info:
            await asyncio.wait_for(task, timeout=1.0)
        assert not isinstance(exc_info.value, CreationTimeoutError)
        assert "encoder exited" in str(exc_info.value)
        assert ctx.state is StreamState.REMOVED
        assert engine.sessions[0].closed

    @pytest.mark.asyncio
    async def test_page_close_before_ready_fails(self, make_context, engine, encoders):
        engine.capture_ready = False
        ctx = make_context(RelayConfig(ready_timeout=5.0, relay_poll_interval=0.01))

        task = asyncio.create_task(ctx.initialize())
        await _wait_until(lambda: engine.sessions)
        engine.sessions[0].crash()

        with pytest.raises(CreationFailedError, match="capture page closed"):
            await asyncio.wait_for(task, timeout=1.0)
        assert not encoders[0].running

    @pytest.mark.asyncio
    async def test_open_failure_stops_encoder(self, make_context, engine, encoders):
        engine.fail_open = True
        ctx = make_context()

        with pytest.raises(CreationFailedError, match="Cannot open"):
            await ctx.initialize()
        assert not encoders[0].running
        assert ctx.state is StreamState.REMOVED

    @pytest.mark.asyncio
    async def test_close_during_initialize(self, make_context, engine, encoders):
        """shutdown などで初期化中に close されたら作成失敗になる."""
        engine.capture_ready = False
        ctx = make_context(RelayConfig(ready_timeout=5.0, relay_poll_interval=0.01))

        task = asyncio.create_task(ctx.initialize())
        await _wait_until(lambda: engine.sessions)
        await ctx.close(reason="shutdown")

        with pytest.raises(CreationFailedError, match="shutdown"):
            await asyncio.wait_for(task, timeout=1.0)
        assert not encoders[0].running
        assert engine.sessions[0].closed


class TestTeardown:
    """ACTIVE → CLOSING → REMOVED."""

    @pytest.mark.asyncio
    async def test_encoder_crash_closes_page_and_unregisters(
        self, make_context, registry, engine, encoders
    ):
        ctx = await _active_context(make_context, registry)
        assert registry.get(STREAM_ID) is ctx

        encoders[0].crash(code=137)
        await ctx.wait_closed()

        assert ctx.state is StreamState.REMOVED
        assert "encoder exited (code=137)" in ctx.close_reason
        assert engine.sessions[0].closed
        assert STREAM_ID not in registry

    @pytest.mark.asyncio
    async def test_page_close_stops_encoder_and_unregisters(
        self, make_context, registry, engine, encoders
    ):
        ctx = await _active_context(make_context, registry)

        engine.sessions[0].crash()
        await ctx.wait_closed()

        assert not encoders[0].running
        assert STREAM_ID not in registry

    @pytest.mark.asyncio
    async def test_double_trigger_tears_down_once(
        self, make_context, registry, engine, encoders
    ):
        ctx = await _active_context(make_context, registry)

        # 両リソースがほぼ同時に終了を通知
        encoders[0].crash()
        engine.sessions[0].crash()
        await asyncio.gather(ctx.close("idle"), ctx.close("shutdown"))

        assert ctx.state is StreamState.REMOVED
        assert ctx.close_reason.startswith("encoder exited")
        assert encoders[0].stop_calls == 1
        assert STREAM_ID not in registry

    @pytest.mark.asyncio
    async def test_explicit_close_releases_both(self, make_context, registry, engine, encoders):
        ctx = await _active_context(make_context, registry)

        await ctx.close(reason="idle")

        assert not encoders[0].running
        assert engine.sessions[0].closed
        assert engine.sessions[0].close_calls == 1
        assert STREAM_ID not in registry

    @pytest.mark.asyncio
    async def test_late_teardown_keeps_newer_context(
        self, make_context, registry
    ):
        """古いコンテキストの後始末が同じ id の新しいエントリを消さない."""
        old = await _active_context(make_context, registry)
        registry.remove(STREAM_ID)
        new = await _active_context(make_context, registry)

        await old.close(reason="late")

        assert registry.get(STREAM_ID) is new


async def _wait_until(predicate, timeout: float = 1.0) -> None:
    """predicate が真になるまでイベントループを回す（テスト用）."""
    async with asyncio.timeout(timeout):
        while not predicate():
            await asyncio.sleep(0.005)
