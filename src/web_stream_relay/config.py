"""リレーサーバ設定.

起動時に一度だけ環境変数とアセットファイルから読み込み、以後は不変。
"""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path

from web_stream_relay.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_LIST_FILE = "assets/page_block_list.txt"
DEFAULT_PRELOAD_FILE = "assets/page_preload.js"


class BlockList:
    """ページ内リクエストのブロックルール.

    1 行 1 パターン。``*`` は ``.*`` に展開され、残りは正規表現として扱う。
    空行と ``#`` で始まる行は無視する。
    """

    def __init__(self, patterns: Iterable[re.Pattern[str]] = ()):
        self._patterns = tuple(patterns)

    @classmethod
    def from_lines(cls, lines: Iterable[str]) -> BlockList:
        """ルール行からブロックリストを構築する.

        Raises:
            ConfigError: 正規表現として不正な行がある場合
        """
        patterns = []
        for lineno, raw in enumerate(lines, start=1):
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            try:
                patterns.append(re.compile(line.replace("*", ".*")))
            except re.error as e:
                raise ConfigError(
                    f"Invalid block-list rule on line {lineno}: {line!r} ({e})"
                ) from e
        return cls(patterns)

    @classmethod
    def load(cls, path: str | os.PathLike[str]) -> BlockList:
        """ファイルからブロックリストを読み込む."""
        try:
            text = Path(path).read_text(encoding="utf-8")
        except OSError as e:
            raise ConfigError(f"Cannot read block list {path}: {e}") from e
        return cls.from_lines(text.splitlines())

    def is_blocked(self, url: str) -> bool:
        return any(p.search(url) for p in self._patterns)

    def __len__(self) -> int:
        return len(self._patterns)


def load_preload_script(path: str | os.PathLike[str]) -> str:
    """ページに注入するキャプチャスクリプトを読み込む."""
    try:
        return Path(path).read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigError(f"Cannot read preload script {path}: {e}") from e


@dataclass(frozen=True)
class RelayConfig:
    """ブラウザ → RTSP リレー設定.

    Attributes:
        server_ip: 返却する RTSP アドレスのホスト
        bind_host: HTTP サーバの bind アドレス
        server_port: HTTP サーバのポート
        go2rtc_ip: go2rtc API のホスト
        go2rtc_api_port: go2rtc API のポート
        rtsp_port: go2rtc の RTSP ポート
        video_bitrate: キャプチャスクリプトに渡す映像ビットレート (bps)
        block_list: ページ内リクエストのブロックルール
        preload_script: ページに注入するキャプチャスクリプト
        ready_timeout: readiness 各信号の待機上限 (秒)
        relay_poll_interval: producer 待ちのポーリング間隔 (秒)
        sweep_interval: アイドルストリーム回収の周期 (秒)
        served_grace: アドレスを返してから回収対象になるまでの猶予 (秒).
            None なら sweep_interval と同じ
        producer_ready_threshold: producer 数がこれを超えたら ready
        idle_consumer_threshold: consumer 数がこれ以下ならアイドル
        viewport_width: ページの viewport 幅 (px)
        viewport_height: ページの viewport 高さ (px)
        headless: Chromium を headless で起動するか
        encoder_stop_timeout: FFmpeg 停止時の SIGKILL までの猶予 (秒)
        relay_request_timeout: go2rtc API 呼び出しのタイムアウト (秒)
    """

    server_ip: str = "127.0.0.1"
    bind_host: str = "0.0.0.0"
    server_port: int = 3001
    go2rtc_ip: str = "127.0.0.1"
    go2rtc_api_port: int = 1984
    rtsp_port: int = 8554
    video_bitrate: int = 6_000_000
    block_list: BlockList = field(default_factory=BlockList)
    preload_script: str = ""
    ready_timeout: float = 30.0
    relay_poll_interval: float = 0.2
    sweep_interval: float = 10.0
    served_grace: float | None = None
    producer_ready_threshold: int = 1
    idle_consumer_threshold: int = 0
    viewport_width: int = 1920
    viewport_height: int = 1080
    headless: bool = True
    encoder_stop_timeout: float = 5.0
    relay_request_timeout: float = 5.0

    @property
    def relay_api_url(self) -> str:
        """go2rtc HTTP API のベース URL."""
        return f"http://{self.go2rtc_ip}:{self.go2rtc_api_port}"

    def relay_address(self, name: str) -> str:
        """クライアントに返す RTSP アドレス."""
        return f"rtsp://{self.server_ip}:{self.rtsp_port}/{name}"

    def publish_address(self, name: str) -> str:
        """FFmpeg が publish する (ローカル) RTSP アドレス."""
        return f"rtsp://127.0.0.1:{self.rtsp_port}/{name}"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> RelayConfig:
        """環境変数とアセットファイルから設定を読み込む.

        Raises:
            ConfigError: 数値が不正、アセットが読めない、ブロックルールが不正
        """
        env = os.environ if environ is None else environ

        block_list_file = env.get("PAGE_BLOCK_LIST_FILE", DEFAULT_BLOCK_LIST_FILE)
        preload_file = env.get("PAGE_PRELOAD_FILE", DEFAULT_PRELOAD_FILE)
        block_list = BlockList.load(block_list_file)
        preload_script = load_preload_script(preload_file)

        config = cls(
            server_ip=env.get("SERVER_IP", cls.server_ip),
            bind_host=env.get("SERVER_HOST", cls.bind_host),
            server_port=_env_number(env, "SERVER_PORT", cls.server_port, int),
            go2rtc_ip=env.get("GO2RTC_IP", cls.go2rtc_ip),
            go2rtc_api_port=_env_number(
                env, "GO2RTC_API_PORT", cls.go2rtc_api_port, int
            ),
            rtsp_port=_env_number(env, "RTSP_PORT", cls.rtsp_port, int),
            video_bitrate=_env_number(env, "VIDEO_BITRATE", cls.video_bitrate, int),
            block_list=block_list,
            preload_script=preload_script,
            ready_timeout=_env_number(env, "READY_TIMEOUT", cls.ready_timeout, float),
            relay_poll_interval=_env_number(
                env, "RELAY_POLL_INTERVAL", cls.relay_poll_interval, float
            ),
            sweep_interval=_env_number(
                env, "SWEEP_INTERVAL", cls.sweep_interval, float
            ),
            served_grace=_env_number(
                env, "SERVED_GRACE", cls.served_grace, float, allow_zero=True
            ),
            headless=env.get("HEADLESS", "1") != "0",
        )
        logger.info(
            "Config loaded: relay=%s rtsp_port=%d block_rules=%d preload=%d bytes",
            config.relay_api_url,
            config.rtsp_port,
            len(block_list),
            len(preload_script),
        )
        return config


def _env_number(
    env: Mapping[str, str], name: str, default, cast, *, allow_zero: bool = False
):
    """数値の環境変数を読む. 負数は常に、0 は allow_zero でなければ ConfigError."""
    value = env.get(name)
    if value is None or value == "":
        return default
    try:
        number = cast(value)
    except ValueError as e:
        raise ConfigError(f"{name} must be a number, got {value!r}") from e
    if number < 0 or (number == 0 and not allow_zero):
        bound = "non-negative" if allow_zero else "positive"
        raise ConfigError(f"{name} must be {bound}, got {value!r}")
    return number
