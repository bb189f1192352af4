"""Tests for the per-request streaming flow."""

from __future__ import annotations

from collections.abc import AsyncIterator, Callable
from typing import cast

import anyio
import pytest
from conftest import CHUNK_SIZE, CONTENT_LENGTH, FakePieceEngine, make_transfer
from litestar import Request
from litestar.response import Stream
from litestar.types import HTTPScope
from piece_stream.responder import CLIENT_CLOSED_REQUEST, StreamResponder


def _request(range_header: str | None = None, *, disconnect: bool = False) -> Request:
    headers = []
    if range_header is not None:
        headers.append((b"range", range_header.encode()))
    scope = cast(
        HTTPScope,
        {
            "type": "http",
            "method": "GET",
            "path": "/stream",
            "query_string": b"id=abc123",
            "headers": headers,
        },
    )
    sent = False

    async def receive():
        nonlocal sent
        if disconnect:
            return {"type": "http.disconnect"}
        if not sent:
            sent = True
            return {"type": "http.request", "body": b"", "more_body": False}
        await anyio.sleep_forever()

    return Request(scope=scope, receive=receive)


async def _read_body(response: Stream) -> bytes:
    iterator = response.iterator
    if callable(iterator):
        iterator = cast(Callable[[], AsyncIterator[bytes]], iterator)()
    return b"".join([chunk async for chunk in iterator])


class TestStreamResponder:
    @pytest.mark.anyio
    async def test_request_without_range_gets_initial_chunk(
        self, settings, engine, content
    ):
        response = await StreamResponder(settings).respond(
            _request(), make_transfer(engine)
        )

        assert response.status_code == 206
        assert response.headers["Content-Range"] == (
            f"bytes 0-{CHUNK_SIZE - 1}/{CONTENT_LENGTH}"
        )
        assert response.headers["Accept-Ranges"] == "bytes"
        assert response.headers["Content-Length"] == str(CHUNK_SIZE)
        assert response.media_type == "video/mp4"
        assert await _read_body(response) == content[:CHUNK_SIZE]

    @pytest.mark.anyio
    async def test_ranged_request(self, settings, engine, content):
        response = await StreamResponder(settings).respond(
            _request("bytes=500000-500099"), make_transfer(engine)
        )

        assert response.status_code == 206
        assert response.headers["Content-Range"] == "bytes 500000-500099/1000000"
        assert await _read_body(response) == content[500_000:500_100]

    @pytest.mark.anyio
    async def test_range_is_capped_to_chunk(self, settings, engine):
        response = await StreamResponder(settings).respond(
            _request("bytes=100-"), make_transfer(engine)
        )
        assert response.headers["Content-Range"] == (
            f"bytes 100-{100 + CHUNK_SIZE - 1}/{CONTENT_LENGTH}"
        )
        assert len(await _read_body(response)) == CHUNK_SIZE

    @pytest.mark.anyio
    @pytest.mark.parametrize("header", ["bytes=500-100", "bytes=0-1,5-9", "bytes=x-"])
    async def test_unsatisfiable_range(self, settings, engine, header):
        response = await StreamResponder(settings).respond(
            _request(header), make_transfer(engine)
        )

        assert response.status_code == 416
        assert response.headers["Content-Range"] == f"bytes */{CONTENT_LENGTH}"
        assert engine.readers == []
        assert engine.calls == []

    @pytest.mark.anyio
    async def test_streams_after_readiness_timeout(self, settings, content):
        engine = FakePieceEngine(content, downloaded=[])
        response = await StreamResponder(settings).respond(
            _request("bytes=0-99"), make_transfer(engine)
        )

        assert response.status_code == 206
        assert await _read_body(response) == content[:100]
        assert engine.listeners == []
        assert engine.calls[-1][0] == "select"

    @pytest.mark.anyio
    async def test_reader_creation_failure_is_500(self, settings, engine):
        engine.reader_error = RuntimeError("engine gone")
        response = await StreamResponder(settings).respond(
            _request("bytes=0-99"), make_transfer(engine)
        )
        assert response.status_code == 500

    @pytest.mark.anyio
    async def test_failure_before_first_byte_is_500(self, settings, engine):
        engine.fail_at = 0
        response = await StreamResponder(settings).respond(
            _request("bytes=0-99"), make_transfer(engine)
        )

        assert response.status_code == 500
        assert engine.readers[0].close_calls == 1

    @pytest.mark.anyio
    async def test_failure_after_headers_ends_stream_short(
        self, settings, engine, content
    ):
        engine.fail_at = 8192
        response = await StreamResponder(settings).respond(
            _request("bytes=0-65535"), make_transfer(engine)
        )
        assert response.status_code == 206

        body = await _read_body(response)
        assert body == content[:8192]
        assert engine.readers[0].close_calls == 1

    @pytest.mark.anyio
    async def test_reader_closed_once(self, settings, engine):
        response = await StreamResponder(settings).respond(
            _request("bytes=0-99"), make_transfer(engine)
        )
        await _read_body(response)
        assert response.background is not None
        await response.background()

        assert engine.readers[0].close_calls == 1

    @pytest.mark.anyio
    async def test_background_cleanup_without_body(self, settings, engine):
        response = await StreamResponder(settings).respond(
            _request("bytes=0-99"), make_transfer(engine)
        )
        assert response.background is not None
        await response.background()
        await response.background()

        assert engine.readers[0].closed
        assert engine.readers[0].close_calls == 1

    @pytest.mark.anyio
    async def test_disconnect_during_wait(self, settings, content):
        engine = FakePieceEngine(content, downloaded=[])

        with anyio.fail_after(5):
            response = await StreamResponder(settings).respond(
                _request("bytes=0-99", disconnect=True),
                make_transfer(engine, timeout=30),
            )

        assert response.status_code == CLIENT_CLOSED_REQUEST
        assert engine.listeners == []
        for reader in engine.readers:
            assert reader.close_calls == 1
