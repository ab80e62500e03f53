"""Process lifecycle: serve until signalled, then drain encoders."""

from __future__ import annotations

from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import asyncio
import logging
import math
import signal

import uvicorn

from config import Config
from ffmpeg_session import Transcoder


log = logging.getLogger(__name__)

_SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


class _Server(uvicorn.Server):
    """uvicorn server that leaves signal handling to the Supervisor."""

    @contextmanager
    def capture_signals(self) -> Iterator[None]:
        yield

    def install_signal_handlers(self) -> None:
        pass


class Supervisor:
    """Owns the listener and the transcoder for the life of the process."""

    def __init__(self, app: Any, config: Config, transcoder: Transcoder) -> None:
        self.config = config
        self.transcoder = transcoder
        self.server = _Server(
            uvicorn.Config(
                app,
                host=config.host,
                port=config.port,
                log_config=None,
                timeout_graceful_shutdown=math.ceil(config.shutdown_timeout),
            )
        )
        self._shutdown_requests = 0

    def request_shutdown(self, sig: signal.Signals | None = None) -> None:
        """First call stops accepting and lets requests finish; second forces exit."""
        self._shutdown_requests += 1
        name = sig.name if sig is not None else "request"
        if self._shutdown_requests == 1:
            log.info("%s: shutting down, waiting up to %.1fs", name, self.config.shutdown_timeout)
            self.server.should_exit = True
        else:
            log.warning("%s: forcing exit", name)
            self.server.force_exit = True

    async def drain(self, timeout: float) -> int:
        return await self.transcoder.drain(timeout)

    async def serve(self) -> None:
        loop = asyncio.get_running_loop()
        for sig in _SHUTDOWN_SIGNALS:
            loop.add_signal_handler(sig, self.request_shutdown, sig)
        try:
            await self.server.serve()
        finally:
            for sig in _SHUTDOWN_SIGNALS:
                loop.remove_signal_handler(sig)
            killed = await self.drain(self.config.shutdown_timeout)
            if killed:
                log.warning("Killed %d ffmpeg process(es) still running at exit", killed)
            log.info("Shutdown complete")

    def run(self) -> None:
        asyncio.run(self.serve())
