"""Answers one HTTP request with a 206/416/500 for a transfer's media file."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any

import anyio
from litestar.background_tasks import BackgroundTask
from litestar.response import Response, Stream

from .errors import RangeError
from .ranges import normalize_range

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from litestar import Request
    from litestar.types import Receive

    from .ranges import ByteRange
    from .settings import StreamSettings
    from .transfers import Transfer

LOG = logging.getLogger("piece_stream.responder")

CLIENT_CLOSED_REQUEST = 499


def _mb(value: int) -> str:
    return f"{value / 1024 / 1024:.2f}"


class ReaderCleanup:
    """Stops a byte reader exactly once, whichever trigger fires first."""

    def __init__(
        self, reader: AsyncIterator[bytes], name: str, byte_range: ByteRange
    ) -> None:
        self._reader = reader
        self._name = name
        self._range = byte_range
        self.done = False

    async def close(self) -> None:
        if self.done:
            return
        self.done = True
        aclose = getattr(self._reader, "aclose", None)
        if aclose is not None:
            with anyio.CancelScope(shield=True):
                await aclose()
        LOG.debug(
            "[%s] reader for %d-%d closed",
            self._name,
            self._range.start,
            self._range.end,
        )


class _RequestState:
    def __init__(self) -> None:
        self.disconnected = False


async def _watch_disconnect(
    receive: Receive, scope: anyio.CancelScope, state: _RequestState
) -> None:
    while True:
        message = await receive()
        if message["type"] == "http.disconnect":
            state.disconnected = True
            scope.cancel()
            return


class StreamResponder:
    """Orchestrates range parsing, scheduling, the bounded wait and streaming.

    Responses are always partial: a request without a Range header gets the
    initial chunk as a 206. Scheduling and waiting never fail a request; a
    readiness timeout only degrades it.
    """

    def __init__(self, settings: StreamSettings) -> None:
        self._settings = settings

    def _not_satisfiable(self, content_length: int) -> Response:
        return Response(
            content=b"",
            status_code=416,
            headers={"Content-Range": f"bytes */{content_length}"},
        )

    async def respond(
        self, request: Request[Any, Any, Any], transfer: Transfer
    ) -> Response:
        engine = transfer.engine
        name = transfer.name
        content_length = engine.content_length
        range_header = request.headers.get("range")

        try:
            byte_range = normalize_range(
                range_header,
                content_length,
                self._settings.max_chunk_size,
                initial_chunk_size=self._settings.effective_initial_chunk,
            )
        except RangeError as error:
            LOG.warning("[%s] invalid range %r: %s", name, range_header, error)
            return self._not_satisfiable(content_length)

        if range_header is None:
            LOG.info(
                "[%s] request without range header - sending first chunk (0-%d, %s MB)",
                name,
                byte_range.end,
                _mb(byte_range.size),
            )
        else:
            LOG.info(
                "[%s] chunk request: bytes %d-%d (%s MB) | progress: %.1f%%",
                name,
                byte_range.start,
                byte_range.end,
                _mb(byte_range.size),
                byte_range.start / content_length * 100,
            )

        state = _RequestState()
        reader: AsyncIterator[bytes] | None = None
        first_chunk = b""
        failure: Exception | None = None

        async with anyio.create_task_group() as task_group:
            task_group.start_soon(
                _watch_disconnect, request.receive, task_group.cancel_scope, state
            )
            try:
                ready = await transfer.scheduler.prepare(byte_range)
            except Exception:
                LOG.warning(
                    "[%s] scheduling failed, streaming anyway", name, exc_info=True
                )
                ready = False
            if not ready:
                LOG.warning(
                    "[%s] chunk %d-%d not fully available, streaming anyway "
                    "(may be slow)",
                    name,
                    byte_range.start,
                    byte_range.end,
                )
            try:
                reader = engine.create_byte_reader(byte_range.start, byte_range.end)
                first_chunk = await anext(reader)
            except Exception as error:
                failure = error
            task_group.cancel_scope.cancel()

        if state.disconnected:
            LOG.info(
                "[%s] connection closed by client before chunk %d-%d was sent",
                name,
                byte_range.start,
                byte_range.end,
            )
            if reader is not None:
                await ReaderCleanup(reader, name, byte_range).close()
            return Response(content=b"", status_code=CLIENT_CLOSED_REQUEST)

        if failure is not None or reader is None:
            LOG.error(
                "[%s] stream error (bytes %d-%d) before any data was sent: %s",
                name,
                byte_range.start,
                byte_range.end,
                failure,
                exc_info=failure,
            )
            if reader is not None:
                await ReaderCleanup(reader, name, byte_range).close()
            return Response(
                content={"error": "Failed to stream chunk"}, status_code=500
            )

        cleanup = ReaderCleanup(reader, name, byte_range)
        headers = {
            "Content-Range": byte_range.content_range(content_length),
            "Accept-Ranges": "bytes",
            "Content-Length": str(byte_range.size),
        }
        return Stream(
            content=self._body(reader, first_chunk, cleanup, name, byte_range),
            status_code=206,
            headers=headers,
            media_type=transfer.media_type,
            background=BackgroundTask(cleanup.close),
        )

    async def _body(
        self,
        reader: AsyncIterator[bytes],
        first_chunk: bytes,
        cleanup: ReaderCleanup,
        name: str,
        byte_range: ByteRange,
    ) -> AsyncIterator[bytes]:
        sent = 0
        try:
            yield first_chunk
            sent += len(first_chunk)
            async for chunk in reader:
                yield chunk
                sent += len(chunk)
            LOG.info(
                "[%s] chunk %d-%d successfully sent",
                name,
                byte_range.start,
                byte_range.end,
            )
        except Exception:
            # headers are already committed, the connection just ends short
            LOG.exception(
                "[%s] stream error (bytes %d-%d) after %d bytes",
                name,
                byte_range.start,
                byte_range.end,
                sent,
            )
        finally:
            if sent < byte_range.size and not cleanup.done:
                LOG.info(
                    "[%s] connection closed, chunk %d-%d interrupted after %d bytes",
                    name,
                    byte_range.start,
                    byte_range.end,
                    sent,
                )
            await cleanup.close()
