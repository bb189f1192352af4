from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from piece_stream.cache import GlobalMemoryBudget
from piece_stream.engine import PieceRecord
from piece_stream.ranges import piece_count
from piece_stream.scheduler import PieceScheduler
from piece_stream.settings import StreamSettings
from piece_stream.transfers import Transfer

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

PIECE_LENGTH = 16 * 1024
CONTENT_LENGTH = 1_000_000
CHUNK_SIZE = 64 * 1024


def make_content(length: int = CONTENT_LENGTH) -> bytes:
    return bytes(i % 251 for i in range(length))


class FakeReader:
    """Byte reader over a slice of in-memory content."""

    def __init__(
        self, data: bytes, *, read_size: int = 4096, fail_at: int | None = None
    ) -> None:
        self._data = data
        self._read_size = read_size
        self._fail_at = fail_at
        self._position = 0
        self.closed = False
        self.close_calls = 0

    def __aiter__(self) -> FakeReader:
        return self

    async def __anext__(self) -> bytes:
        if self.closed or self._position >= len(self._data):
            raise StopAsyncIteration
        if self._fail_at is not None and self._position >= self._fail_at:
            msg = f"read failed at byte {self._position}"
            raise RuntimeError(msg)
        chunk = self._data[self._position : self._position + self._read_size]
        self._position += len(chunk)
        return chunk

    async def aclose(self) -> None:
        self.close_calls += 1
        self.closed = True


class FakePieceEngine:
    """In-memory piece engine whose downloaded set is driven by the test."""

    def __init__(
        self,
        content: bytes,
        piece_length: int = PIECE_LENGTH,
        downloaded: Iterable[int] | None = None,
    ) -> None:
        self.content = content
        self.piece_length = piece_length
        self.content_length = len(content)
        total = piece_count(self.content_length, piece_length)
        self.downloaded = set(range(total) if downloaded is None else downloaded)
        self.calls: list[tuple[str, int, int, int]] = []
        self.listeners: list[Callable[[], None]] = []
        self.readers: list[FakeReader] = []
        self.reader_error: Exception | None = None
        self.fail_at: int | None = None

    @property
    def pieces(self) -> list[PieceRecord]:
        records = []
        for index in range(piece_count(self.content_length, self.piece_length)):
            start = index * self.piece_length
            length = min(self.piece_length, self.content_length - start)
            missing = 0 if index in self.downloaded else length
            records.append(PieceRecord(index, length, missing))
        return records

    def select(self, start: int, end: int, priority: int) -> None:
        self.calls.append(("select", start, end, priority))

    def deselect(self, start: int, end: int, priority: int) -> None:
        self.calls.append(("deselect", start, end, priority))

    def create_byte_reader(self, start: int, end: int) -> FakeReader:
        if self.reader_error is not None:
            raise self.reader_error
        reader = FakeReader(self.content[start : end + 1], fail_at=self.fail_at)
        self.readers.append(reader)
        return reader

    def subscribe(self, listener: Callable[[], None]) -> None:
        self.listeners.append(listener)

    def unsubscribe(self, listener: Callable[[], None]) -> None:
        if listener in self.listeners:
            self.listeners.remove(listener)

    def complete(self, *indices: int) -> None:
        self.downloaded.update(indices)
        for listener in list(self.listeners):
            listener()


def make_transfer(
    engine: FakePieceEngine,
    *,
    transfer_id: str = "abc123",
    read_ahead: int = 0,
    timeout: float = 0.05,
) -> Transfer:
    return Transfer(
        id=transfer_id,
        source="http://media.test/movie.mp4",
        name="movie.mp4",
        engine=engine,
        scheduler=PieceScheduler(
            engine, read_ahead=read_ahead, timeout=timeout, name="movie.mp4"
        ),
    )


@pytest.fixture
def content() -> bytes:
    return make_content()


@pytest.fixture
def engine(content: bytes) -> FakePieceEngine:
    return FakePieceEngine(content)


@pytest.fixture
def settings() -> StreamSettings:
    return StreamSettings(
        max_chunk_size=CHUNK_SIZE,
        initial_chunk_size=CHUNK_SIZE,
        read_ahead_bytes=0,
        readiness_timeout=0.05,
        metadata_timeout=1.0,
        read_timeout=1.0,
        max_memory_bytes=10 * PIECE_LENGTH,
        piece_length=PIECE_LENGTH,
    )


@pytest.fixture
def budget() -> GlobalMemoryBudget:
    return GlobalMemoryBudget(10_000_000)
