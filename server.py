"""HTTP request handling: serve cached artifacts or transcode and stream."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import asyncio
import logging
import os
import pathlib

import anyio
from fastapi import FastAPI, Request
from fastapi.responses import FileResponse, PlainTextResponse, Response
from starlette.staticfiles import NotModifiedResponse, StaticFiles
from starlette.types import Receive, Scope, Send

from cache_store import CacheStore
from config import Config
from errors import ServerError, SourceNotFound, TranscodeError
from ffmpeg_command import EncoderSettings
from ffmpeg_session import TranscodeJob, Transcoder
from path_match import RequestKey, match_path, resolve_source
from stream_pump import Outcome, pump


log = logging.getLogger(__name__)

MEDIA_TYPE = "video/mp4"

# Only used for its If-None-Match / If-Modified-Since rules; serves no directory
_CONDITIONAL = StaticFiles(check_dir=False)


class StreamAborted(Exception):
    """Raised once headers are out, so the server drops the connection mid-body."""


def _error_response(exc: TranscodeError) -> PlainTextResponse:
    return PlainTextResponse(exc.message, status_code=exc.status_code)


async def _listen_for_disconnect(receive: Receive, cancel: asyncio.Event) -> None:
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            cancel.set()
            return


class _BodyWriter:
    """Buffers writes until flush() hands them to the ASGI server as one message."""

    def __init__(self, send: Send) -> None:
        self._send = send
        self._pending = bytearray()

    async def write(self, chunk: bytes) -> None:
        self._pending += chunk

    async def flush(self) -> None:
        if not self._pending:
            return
        body = bytes(self._pending)
        self._pending.clear()
        await self._send({"type": "http.response.body", "body": body, "more_body": True})

    async def close(self) -> None:
        await self.flush()
        await self._send({"type": "http.response.body", "body": b"", "more_body": False})


class TranscodeResponse(Response):
    """Streams a fresh transcode to the client and publishes it to the cache.

    The encoder is started before any header goes out, so a spawn failure is
    still a 500. After that the status is fixed at 200 and a failure can only
    cut the body short: the partial artifact is discarded and the connection
    dropped without a terminating chunk.
    """

    media_type = MEDIA_TYPE

    def __init__(
        self,
        key: RequestKey,
        source: pathlib.Path,
        temp: pathlib.Path,
        cache: CacheStore,
        transcoder: Transcoder,
        chunk_size: int,
    ) -> None:
        self.key = key
        self.source = source
        self.temp = temp
        self.cache = cache
        self.transcoder = transcoder
        self.chunk_size = chunk_size
        self.status_code = 200
        self.background = None
        self.published = False
        self.init_headers({"Transfer-Encoding": "chunked"})

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        cancel = asyncio.Event()
        try:
            job = await self.transcoder.start(self.source, self.key.width, self.temp, cancel)
        except ServerError as e:
            self.cache.discard(self.temp)
            await _error_response(e)(scope, receive, send)
            return

        try:
            async with job:
                async with anyio.create_task_group() as tg:
                    tg.start_soon(_listen_for_disconnect, receive, cancel)
                    outcome = await self._stream(job, send, cancel)
                    tg.cancel_scope.cancel()
        finally:
            if not self.published:
                self.cache.discard(self.temp)

        if outcome is Outcome.ERROR:
            raise StreamAborted(f"transcode of {self.source} at {self.key.width}p failed")

    async def _stream(self, job: TranscodeJob, send: Send, cancel: asyncio.Event) -> Outcome:
        await send(
            {"type": "http.response.start", "status": self.status_code, "headers": self.raw_headers}
        )
        writer = _BodyWriter(send)
        result = await pump(job.stdout, writer.write, writer.flush, cancel, self.chunk_size)
        if result.outcome is Outcome.CANCELLED:
            log.info(
                "Client disconnected after %d bytes of %dp %s, cleaning up",
                result.bytes_sent,
                self.key.width,
                self.key.filename,
            )
            return result.outcome
        if result.outcome is Outcome.ERROR:
            log.error(
                "Streaming %dp %s failed after %d bytes: %s",
                self.key.width,
                self.key.filename,
                result.bytes_sent,
                result.error,
            )
            return result.outcome

        returncode = await job.wait()
        if cancel.is_set():
            log.info(
                "Client disconnected at end of %dp %s, cleaning up",
                self.key.width,
                self.key.filename,
            )
            return Outcome.CANCELLED
        if returncode != 0:
            log.error(
                "ffmpeg:%s failed (exit %d) for %s: %s",
                job.pid,
                returncode,
                self.source,
                job.stderr_tail(),
            )
            return Outcome.ERROR

        try:
            self.cache.publish(self.key, self.temp)
        except OSError as e:
            log.error("Failed to publish %s -> %s: %s", self.temp, self.cache.locate(self.key), e)
            return Outcome.ERROR
        self.published = True
        log.info(
            "Transcoded %dp %s: %d bytes streamed in %d chunks",
            self.key.width,
            self.key.filename,
            result.bytes_sent,
            result.chunks,
        )
        await writer.close()
        return Outcome.COMPLETED


class TranscodeServer:
    """Routes /{width}p/{filename} requests to the cache or a new transcode."""

    def __init__(
        self,
        config: Config,
        cache: CacheStore | None = None,
        transcoder: Transcoder | None = None,
    ) -> None:
        self.config = config
        self.cache = cache or CacheStore(config.output_dir)
        self.transcoder = transcoder or Transcoder(EncoderSettings.from_config(config))

    async def handle(self, request: Request) -> Response:
        # scope["path"] is already percent-decoded; url.path would re-split on "?"
        key = match_path(request.scope["path"], self.config.widths)

        cached = self.cache.lookup(key)
        if cached is not None:
            log.info("Cache hit %dp %s", key.width, key.filename)
            return self._serve_cached(request, cached)

        source = resolve_source(self.config.input_dir, key)
        self._check_source(source)
        temp = self.cache.reserve(key)
        log.info("Cache miss %dp %s, transcoding into %s", key.width, key.filename, temp)
        return TranscodeResponse(
            key, source, temp, self.cache, self.transcoder, self.config.chunk_size
        )

    def _check_source(self, source: pathlib.Path) -> None:
        try:
            with open(source, "rb"):
                pass
        except (FileNotFoundError, NotADirectoryError, IsADirectoryError) as e:
            raise SourceNotFound(f"open {source}: {e}") from e
        except OSError as e:
            log.error("Error opening source file %s: %s", source, e)
            raise ServerError(f"open {source}: {e}") from e

    def _serve_cached(self, request: Request, path: pathlib.Path) -> Response:
        try:
            stat_result = os.stat(path)
        except OSError as e:
            raise ServerError(f"stat {path}: {e}") from e
        response = FileResponse(path, media_type=MEDIA_TYPE, stat_result=stat_result)
        if _CONDITIONAL.is_not_modified(response.headers, request.headers):
            return NotModifiedResponse(response.headers)
        return response


async def _handle_transcode_error(request: Request, exc: Exception) -> Response:
    assert isinstance(exc, TranscodeError)
    if isinstance(exc, ServerError):
        log.error("%s %s -> %d: %s", request.method, request.url.path, exc.status_code, exc)
    else:
        log.info("%s %s -> %d: %s", request.method, request.url.path, exc.status_code, exc)
    return _error_response(exc)


def create_app(config: Config, server: TranscodeServer | None = None) -> FastAPI:
    """Build the FastAPI app around an explicit TranscodeServer."""
    server = server or TranscodeServer(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        server.cache.sweep_partials()
        log.info(
            "Serving widths %s from %s, cache in %s",
            sorted(config.widths),
            config.input_dir,
            config.output_dir,
        )
        yield
        killed = await server.transcoder.shutdown()
        if killed:
            log.info("Shutdown: killed %d ffmpeg process(es)", killed)

    # No docs/openapi routes: every path goes through match_path
    app = FastAPI(lifespan=lifespan, docs_url=None, redoc_url=None, openapi_url=None)
    app.state.server = server
    app.add_exception_handler(TranscodeError, _handle_transcode_error)
    app.add_api_route(
        "/{path:path}", server.handle, methods=["GET"], include_in_schema=False
    )
    return app
