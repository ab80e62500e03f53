"""FFmpeg transcode job lifecycle: spawn, monitor, kill, reap."""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import asyncio
import collections
import logging
import pathlib
import time

import anyio

from errors import ServerError
from ffmpeg_command import EncoderSettings, build_dual_output_cmd, format_cmd


log = logging.getLogger(__name__)

# Timing constants
_DRAIN_POLL_INTERVAL_SEC = 0.1
_REAP_TIMEOUT_SEC = 5.0
_STDERR_SETTLE_SEC = 1.0

_STDERR_TAIL_LINES = 20
_DISCARD_READ_SIZE = 64 * 1024

CommandBuilder = Callable[[str, int, str, EncoderSettings], list[str]]


def _kill_process(proc: Any) -> bool:
    """SIGKILL a running process, return True if the signal was sent."""
    if proc.returncode is not None:
        return False
    try:
        proc.kill()
        return True
    except (ProcessLookupError, OSError):
        return False


async def _monitor_ffmpeg_stderr(
    process: asyncio.subprocess.Process,
    pid: int,
    stderr_lines: collections.deque[str],
) -> None:
    assert process.stderr is not None
    while True:
        line = await process.stderr.readline()
        if not line:
            break
        text = line.decode(errors="replace").rstrip()
        stderr_lines.append(text)
        is_fatal = "fatal" in text.lower() or "error" in text.lower()
        level = logging.WARNING if is_fatal else logging.DEBUG
        log.log(level, "ffmpeg:%s %s", pid, text)


class TranscodeJob:
    """A running encoder process owned by one request.

    Use as an async context manager: leaving the block kills the process if it
    is still running and reaps it, whatever the exit path. Setting the cancel
    event kills the process immediately, which ends the live output stream.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        cmd: list[str],
        cancel: asyncio.Event,
        on_close: Callable[[TranscodeJob], None] | None = None,
    ) -> None:
        self.process = process
        self.cmd = cmd
        self.started = time.monotonic()
        self._stderr_lines: collections.deque[str] = collections.deque(maxlen=_STDERR_TAIL_LINES)
        self._monitor = asyncio.create_task(
            _monitor_ffmpeg_stderr(process, process.pid, self._stderr_lines)
        )
        self._watcher = asyncio.create_task(self._kill_on_cancel(cancel))
        self._on_close = on_close
        self._closed = False

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def stdout(self) -> asyncio.StreamReader:
        assert self.process.stdout is not None
        return self.process.stdout

    @property
    def returncode(self) -> int | None:
        return self.process.returncode

    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_lines) or "no output"

    async def _kill_on_cancel(self, cancel: asyncio.Event) -> None:
        await cancel.wait()
        if self.kill():
            log.info("Request cancelled, killed ffmpeg pid=%s", self.pid)

    def kill(self) -> bool:
        return _kill_process(self.process)

    async def wait(self) -> int:
        """Wait for exit and for the stderr monitor to pick up the last lines."""
        returncode = await self.process.wait()
        await asyncio.wait({self._monitor}, timeout=_STDERR_SETTLE_SEC)
        return returncode

    async def _discard_output(self) -> None:
        # Unread stdout keeps the pipe open and would stall wait()
        while await self.stdout.read(_DISCARD_READ_SIZE):
            pass

    async def close(self) -> int | None:
        """Kill if running, then reap. Safe to call more than once."""
        if self._closed:
            return self.returncode
        self._closed = True
        with anyio.CancelScope(shield=True):
            if self.kill():
                log.info("Killed ffmpeg pid=%s", self.pid)
            try:
                with anyio.fail_after(_REAP_TIMEOUT_SEC):
                    await self._discard_output()
                    await self.process.wait()
            except TimeoutError:
                log.error("ffmpeg pid=%s not reaped after %.0fs", self.pid, _REAP_TIMEOUT_SEC)
            for task in (self._monitor, self._watcher):
                task.cancel()
            await asyncio.gather(self._monitor, self._watcher, return_exceptions=True)
        if self._on_close:
            self._on_close(self)
        log.debug(
            "Reaped ffmpeg pid=%s rc=%s after %.1fs",
            self.pid,
            self.returncode,
            time.monotonic() - self.started,
        )
        return self.returncode

    async def __aenter__(self) -> TranscodeJob:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()


class Transcoder:
    """Starts encoder jobs and tracks the live ones for shutdown.

    There is no cap on concurrent jobs: every cache miss spawns one process.
    """

    def __init__(
        self,
        settings: EncoderSettings | None = None,
        build_cmd: CommandBuilder = build_dual_output_cmd,
    ) -> None:
        self.settings = settings or EncoderSettings()
        self._build_cmd = build_cmd
        self._jobs: set[TranscodeJob] = set()

    @property
    def active_count(self) -> int:
        return len(self._jobs)

    async def start(
        self,
        input_path: pathlib.Path,
        width: int,
        output_path: pathlib.Path,
        cancel: asyncio.Event,
    ) -> TranscodeJob:
        """Launch the encoder. Raises ServerError if the process cannot start."""
        cmd = self._build_cmd(str(input_path), width, str(output_path), self.settings)
        log.info("Starting transcode %dp %s: %s", width, input_path, format_cmd(cmd))
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            log.error("Failed to start ffmpeg: %s (%s)", e, format_cmd(cmd))
            raise ServerError(
                f"spawn {cmd[0]}: {e}", message="Failed to start transcoding"
            ) from e
        job = TranscodeJob(process, cmd, cancel, on_close=self._jobs.discard)
        self._jobs.add(job)
        log.info("Started ffmpeg pid=%s for %s", process.pid, input_path)
        return job

    async def shutdown(self) -> int:
        """Kill every running encoder and wait for owners to reap them."""
        killed = 0
        for job in list(self._jobs):
            if job.kill():
                killed += 1
                log.info("Shutdown: killed ffmpeg pid=%s", job.pid)
        deadline = time.monotonic() + _REAP_TIMEOUT_SEC
        while self._jobs and time.monotonic() < deadline:
            await asyncio.sleep(_DRAIN_POLL_INTERVAL_SEC)
        if self._jobs:
            log.warning("Shutdown: %d ffmpeg job(s) still unreaped", len(self._jobs))
        return killed

    async def drain(self, timeout: float) -> int:
        """Let running jobs finish for up to timeout seconds, then kill the rest.

        Returns the number of processes that had to be killed.
        """
        deadline = time.monotonic() + timeout
        while self._jobs and time.monotonic() < deadline:
            await asyncio.sleep(_DRAIN_POLL_INTERVAL_SEC)
        if not self._jobs:
            return 0
        log.warning("Drain timeout (%.1fs): killing %d ffmpeg job(s)", timeout, len(self._jobs))
        return await self.shutdown()
