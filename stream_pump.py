"""Chunked copy from a live byte stream to a response, flushing every chunk."""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Protocol

import enum
import logging


log = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 16 * 1024


class Reader(Protocol):
    async def read(self, n: int = -1) -> bytes: ...


class CancelSignal(Protocol):
    def is_set(self) -> bool: ...


class Outcome(enum.Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    ERROR = "error"


@dataclass(slots=True)
class PumpResult:
    outcome: Outcome
    bytes_sent: int = 0
    chunks: int = 0
    error: Exception | None = None


async def pump(
    reader: Reader,
    write: Callable[[bytes], Awaitable[None]],
    flush: Callable[[], Awaitable[None]],
    cancel: CancelSignal,
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> PumpResult:
    """Copy reader to write() in chunks of at most chunk_size, flushing each one.

    Cancellation is checked before every read and again once each read
    returns, so once it is set no further bytes go out. No retries: the first
    read or write failure ends the copy with Outcome.ERROR.
    """
    result = PumpResult(Outcome.COMPLETED)
    while True:
        if cancel.is_set():
            result.outcome = Outcome.CANCELLED
            return result
        try:
            chunk = await reader.read(chunk_size)
        except Exception as e:
            log.debug("pump: read failed after %d bytes: %s", result.bytes_sent, e)
            result.outcome, result.error = Outcome.ERROR, e
            return result
        # Cancellation kills the producer, so an EOF seen after it is not clean
        if cancel.is_set():
            result.outcome = Outcome.CANCELLED
            return result
        if not chunk:
            return result
        try:
            await write(chunk)
            await flush()
        except Exception as e:
            log.debug("pump: write failed after %d bytes: %s", result.bytes_sent, e)
            result.outcome, result.error = Outcome.ERROR, e
            return result
        result.bytes_sent += len(chunk)
        result.chunks += 1
