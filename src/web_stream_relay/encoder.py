"""FFmpeg stdin → RTSP publish プロセス.

キャプチャスクリプトから届いたメディアチャンクを stdin に流し込み、
go2rtc の RTSP ingest へ publish する。
"""

from __future__ import annotations

import asyncio
import logging
import signal
from collections.abc import Callable

from web_stream_relay.config import RelayConfig

logger = logging.getLogger(__name__)

ExitCallback = Callable[[int], None]


class EncoderProcess:
    """1 ストリーム分の FFmpeg プロセスを管理する.

    Usage:
        encoder = EncoderProcess(config, "stream_abc", on_exit=handle_exit)
        await encoder.start()
        await encoder.write(chunk)
        await encoder.stop()

    プロセスが終了すると（停止要求によるものも含め）``on_exit(returncode)``
    が一度だけ呼ばれる。
    """

    def __init__(
        self,
        config: RelayConfig,
        name: str,
        *,
        on_exit: ExitCallback | None = None,
    ):
        self._config = config
        self._name = name
        self._on_exit = on_exit
        self._process: asyncio.subprocess.Process | None = None
        self._watch_task: asyncio.Task | None = None
        self._stderr_task: asyncio.Task | None = None
        self._bytes_written = 0

    @property
    def is_running(self) -> bool:
        return self._process is not None and self._process.returncode is None

    @property
    def returncode(self) -> int | None:
        return self._process.returncode if self._process else None

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    @property
    def bytes_written(self) -> int:
        return self._bytes_written

    @property
    def publish_address(self) -> str:
        return self._config.publish_address(self._name)

    def build_command(self) -> list[str]:
        """FFmpeg コマンドを構築する."""
        return [
            "ffmpeg",
            "-loglevel", "error",
            "-i", "pipe:0",
            "-map", "0:v:0",
            "-map", "0:a?",
            "-c:v", "copy",
            "-c:a", "aac",
            "-b:a", "96k",
            "-f", "rtsp",
            "-rtsp_transport", "tcp",
            self.publish_address,
        ]

    async def start(self) -> None:
        """FFmpeg プロセスを起動する.

        Raises:
            RuntimeError: 既に起動済みの場合
        """
        if self._process is not None:
            raise RuntimeError(f"Encoder for {self._name} is already started")

        cmd = self.build_command()
        logger.info("Starting encoder for %s: %s", self._name, " ".join(cmd))

        self._process = await asyncio.create_subprocess_exec(
            *cmd,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        logger.info("Encoder started for %s (PID=%d)", self._name, self._process.pid)

        self._stderr_task = asyncio.create_task(
            self._log_stderr(), name=f"encoder-stderr-{self._name}"
        )
        self._watch_task = asyncio.create_task(
            self._watch_exit(), name=f"encoder-watch-{self._name}"
        )

    async def write(self, chunk: bytes) -> None:
        """メディアチャンクを stdin に書き込む.

        プロセス終了後の書き込みは破棄する（終了は _watch_exit が扱う）。
        """
        if not self.is_running or self._process.stdin is None:
            return
        stdin = self._process.stdin
        if stdin.is_closing():
            return
        try:
            stdin.write(chunk)
            await stdin.drain()
            self._bytes_written += len(chunk)
        except (BrokenPipeError, ConnectionResetError):
            logger.debug("Encoder stdin closed for %s, dropping chunk", self._name)

    async def stop(self) -> None:
        """FFmpeg を停止する (SIGINT → タイムアウト → SIGKILL).

        未起動・停止済みの場合は何もしない。
        """
        process = self._process
        if process is None or process.returncode is not None:
            return

        pid = process.pid
        timeout = self._config.encoder_stop_timeout
        logger.info("Stopping encoder for %s (PID=%d)", self._name, pid)

        try:
            # SIGINT で FFmpeg に出力を閉じさせる
            process.send_signal(signal.SIGINT)
            try:
                await asyncio.wait_for(process.wait(), timeout=timeout)
                logger.info("Encoder exited gracefully (PID=%d)", pid)
            except asyncio.TimeoutError:
                logger.warning(
                    "Encoder did not exit in %.1fs, sending SIGKILL (PID=%d)",
                    timeout,
                    pid,
                )
                process.kill()
                await process.wait()
        except ProcessLookupError:
            logger.debug("Encoder already exited (PID=%d)", pid)

        if self._watch_task is not None:
            await asyncio.gather(self._watch_task, return_exceptions=True)

    async def _watch_exit(self) -> None:
        """プロセス終了を待って on_exit を呼ぶ."""
        process = self._process
        code = await process.wait()
        logger.info("Encoder for %s exited (code=%s)", self._name, code)
        if self._on_exit is not None:
            try:
                self._on_exit(code)
            except Exception:
                logger.exception("Encoder exit callback failed for %s", self._name)

    async def _log_stderr(self) -> None:
        """FFmpeg stderr をログに出力する."""
        if not self._process or not self._process.stderr:
            return
        try:
            async for line in self._process.stderr:
                text = line.decode("utf-8", errors="replace").rstrip()
                if text:
                    logger.debug("FFmpeg[%s]: %s", self._name, text)
        except Exception:
            logger.debug("Encoder stderr reader ended for %s", self._name)
