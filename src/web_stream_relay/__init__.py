"""web-stream-relay: Browser page playback relayed to RTSP via Playwright + FFmpeg + go2rtc."""

from web_stream_relay.capture import CaptureEngine, CaptureSession
from web_stream_relay.config import BlockList, RelayConfig
from web_stream_relay.context import StreamContext, StreamState
from web_stream_relay.encoder import EncoderProcess
from web_stream_relay.errors import (
    ConfigError,
    CreationFailedError,
    CreationTimeoutError,
    MissingParameterError,
    StreamIdCollisionError,
)
from web_stream_relay.handshake import ReadinessHandshake
from web_stream_relay.manager import StreamManager
from web_stream_relay.registry import Reservation, StreamRegistry
from web_stream_relay.relay import RelayClient, RelayStreamStats
from web_stream_relay.stream_id import derive_stream_id, stream_name
from web_stream_relay.sweeper import ReclamationSweeper

__all__ = [
    "BlockList",
    "CaptureEngine",
    "CaptureSession",
    "ConfigError",
    "CreationFailedError",
    "CreationTimeoutError",
    "EncoderProcess",
    "MissingParameterError",
    "ReadinessHandshake",
    "ReclamationSweeper",
    "RelayClient",
    "RelayConfig",
    "RelayStreamStats",
    "Reservation",
    "StreamContext",
    "StreamIdCollisionError",
    "StreamManager",
    "StreamRegistry",
    "StreamState",
    "derive_stream_id",
    "stream_name",
]
