"""Piece engine that downloads pieces of one remote file over HTTP ranges."""

from __future__ import annotations

import logging
import posixpath
from collections import Counter
from typing import TYPE_CHECKING
from urllib.parse import unquote, urlsplit

import anyio
import httpx

from .engine import PieceRecord, normalize_priority
from .errors import (
    InvalidSource,
    MetadataUnavailable,
    PieceNotResident,
    PieceTooLarge,
    PieceUnavailable,
)
from .ranges import piece_count

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from .cache import BoundedPieceCache
    from .engine import ProgressListener

LOG = logging.getLogger("piece_stream.webseed")


def source_name(url: str) -> str:
    """Return the file name a source URL points at."""
    path = unquote(urlsplit(url).path)
    return posixpath.basename(path.rstrip("/")) or url


def _total_from_content_range(value: str | None) -> int | None:
    if not value:
        return None
    _, _, total = value.rpartition("/")
    total = total.strip()
    return int(total) if total.isdigit() else None


class WebSeedEngine:
    """Downloads pieces on demand from a server that honours Range requests.

    Only pieces that were selected, or that an active byte reader is waiting
    for, are fetched. Pieces live in the injected :class:`BoundedPieceCache`
    only; a piece counts as downloaded exactly while it is resident there.
    """

    def __init__(
        self,
        url: str,
        *,
        client: httpx.AsyncClient,
        cache: BoundedPieceCache,
        piece_length: int,
        concurrency: int = 4,
        read_timeout: float = 60.0,
        retry_delay: float = 1.0,
        name: str | None = None,
    ) -> None:
        self.url = url
        self.name = name or source_name(url)
        self.cache = cache
        self.content_type: str | None = None
        self.piece_length = 0
        self.content_length = 0
        self.downloaded_bytes = 0
        self._client = client
        self._configured_piece_length = piece_length
        self._concurrency = concurrency
        self._read_timeout = read_timeout
        self._retry_delay = retry_delay
        self._priorities: dict[int, int] = {}
        self._demand: Counter[int] = Counter()
        self._inflight: set[int] = set()
        self._failed: set[int] = set()
        self._listeners: list[ProgressListener] = []
        self._wakeup = anyio.Event()
        self._progress = anyio.Event()

    @property
    def num_pieces(self) -> int:
        return piece_count(self.content_length, self.piece_length)

    @property
    def metadata_ready(self) -> bool:
        return self.piece_length > 0 and self.content_length > 0

    @property
    def pieces(self) -> list[PieceRecord | None]:
        records: list[PieceRecord | None] = []
        for index in range(self.num_pieces):
            length = self.piece_size(index)
            if self.cache.has(index):
                records.append(PieceRecord(index, length, 0))
            elif index in self._inflight:
                records.append(PieceRecord(index, length, length))
            else:
                records.append(None)
        return records

    def piece_size(self, index: int) -> int:
        start = index * self.piece_length
        return max(min(self.piece_length, self.content_length - start), 0)

    async def fetch_metadata(self) -> None:
        """Learn the content length of the source.

        Uses HEAD first and falls back to a one-byte ranged GET for servers
        that do not report a length on HEAD.
        """
        length: int | None = None
        response = await self._client.head(self.url)
        if response.status_code < 400:
            header = response.headers.get("content-length")
            length = int(header) if header and header.isdigit() else None
            self.content_type = response.headers.get("content-type")

        if not length:
            LOG.debug("no length on HEAD for %s, probing with ranged GET", self.url)
            response = await self._client.get(
                self.url, headers={"Range": "bytes=0-0"}
            )
            response.raise_for_status()
            if response.status_code != 206:
                msg = f"source does not support range requests: {self.url}"
                raise InvalidSource(msg)
            length = _total_from_content_range(
                response.headers.get("content-range")
            )
            if self.content_type is None:
                self.content_type = response.headers.get("content-type")

        if not length:
            msg = f"source did not report a content length: {self.url}"
            raise InvalidSource(msg)

        self.content_length = length
        self.piece_length = self._configured_piece_length
        LOG.info(
            "metadata received for %s (%d bytes, %d pieces of %d bytes)",
            self.name,
            self.content_length,
            self.num_pieces,
            self.piece_length,
        )
        self._emit()

    def select(self, start: int, end: int, priority: int) -> None:
        level = int(normalize_priority(priority))
        if level <= 0:
            return
        last = self.num_pieces - 1
        for index in range(max(start, 0), min(end, last) + 1):
            if level >= self._priorities.get(index, 0):
                self._priorities[index] = level
        self._wakeup.set()

    def deselect(self, start: int, end: int, priority: int) -> None:
        level = int(normalize_priority(priority))
        for index in range(start, end + 1):
            if self._priorities.get(index) == level:
                del self._priorities[index]

    def subscribe(self, listener: ProgressListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: ProgressListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _emit(self) -> None:
        progress, self._progress = self._progress, anyio.Event()
        progress.set()
        for listener in list(self._listeners):
            listener()

    def _wanted(self, index: int) -> bool:
        if index in self._failed or index in self._inflight:
            return False
        return not self.cache.has(index)

    def _next_piece(self) -> int | None:
        demanded = [i for i, n in self._demand.items() if n > 0 and self._wanted(i)]
        if demanded:
            return min(demanded)
        best: tuple[int, int] | None = None
        for index, level in self._priorities.items():
            if not self._wanted(index):
                continue
            if best is None or (-level, index) < best:
                best = (-level, index)
        return best[1] if best is not None else None

    async def run(self) -> None:
        """Download wanted pieces until cancelled."""
        if not self.metadata_ready:
            msg = "metadata must be fetched before running"
            raise MetadataUnavailable(msg)
        limiter = anyio.Semaphore(self._concurrency)
        async with anyio.create_task_group() as task_group:
            while True:
                await limiter.acquire()
                self._wakeup = anyio.Event()
                index = self._next_piece()
                if index is None:
                    limiter.release()
                    await self._wakeup.wait()
                    continue
                self._inflight.add(index)
                task_group.start_soon(self._download, index, limiter)

    async def _download(self, index: int, limiter: anyio.Semaphore) -> None:
        size = self.piece_size(index)
        start = index * self.piece_length
        end = start + size - 1
        try:
            try:
                response = await self._client.get(
                    self.url, headers={"Range": f"bytes={start}-{end}"}
                )
                response.raise_for_status()
                data = response.content
                whole = response.status_code == 200 and size == self.content_length
                if (response.status_code != 206 and not whole) or len(data) != size:
                    msg = (
                        f"unexpected response for piece {index}: "
                        f"status={response.status_code}, {len(data)}/{size} bytes"
                    )
                    raise InvalidSource(msg)
            except (httpx.HTTPError, InvalidSource) as error:
                LOG.warning(
                    "fetch of piece %d from %s failed, retrying: %s",
                    index,
                    self.name,
                    error,
                )
                await anyio.sleep(self._retry_delay)
                return

            try:
                self.cache.put(index, data)
            except PieceTooLarge:
                LOG.exception("piece %d of %s does not fit in memory", index, self.name)
                self._failed.add(index)
                self._priorities.pop(index, None)
                return
            self._priorities.pop(index, None)
            self.downloaded_bytes += size
            LOG.debug("downloaded piece %d of %s (%d bytes)", index, self.name, size)
        finally:
            self._inflight.discard(index)
            limiter.release()
            self._wakeup.set()
            self._emit()

        if all(self.cache.has(i) for i in range(self.num_pieces)):
            LOG.info("all %d pieces of %s are resident", self.num_pieces, self.name)

    def create_byte_reader(self, start: int, end: int) -> AsyncIterator[bytes]:
        """Return an async iterator over bytes ``start``..``end`` inclusive.

        Raises:
            MetadataUnavailable: The content length is not known yet.
        """
        if not self.metadata_ready:
            msg = f"metadata for {self.name} not available yet"
            raise MetadataUnavailable(msg)
        if start < 0 or end >= self.content_length or start > end:
            msg = f"invalid byte range {start}-{end} for {self.content_length} bytes"
            raise ValueError(msg)
        return self._read(start, end)

    async def _read(self, start: int, end: int) -> AsyncIterator[bytes]:
        position = start
        while position <= end:
            index = position // self.piece_length
            offset = position - index * self.piece_length
            length = min(end - position + 1, self.piece_size(index) - offset)
            data = await self._read_piece(index, offset, length)
            yield data
            position += len(data)

    async def _read_piece(self, index: int, offset: int, length: int) -> bytes:
        try:
            return self.cache.get(index, offset, length)
        except PieceNotResident as miss:
            if miss.evicted:
                LOG.debug(
                    "piece %d of %s was evicted, fetching again", index, self.name
                )

        self._demand[index] += 1
        self._wakeup.set()
        try:
            with anyio.fail_after(self._read_timeout):
                while True:
                    progress = self._progress
                    if self.cache.has(index):
                        return self.cache.get(index, offset, length)
                    if index in self._failed:
                        msg = f"piece {index} of {self.name} does not fit in memory"
                        raise PieceUnavailable(msg)
                    await progress.wait()
        except TimeoutError as error:
            msg = (
                f"piece {index} of {self.name} not available "
                f"after {self._read_timeout:.1f}s"
            )
            raise PieceUnavailable(msg) from error
        finally:
            self._demand[index] -= 1
            if self._demand[index] <= 0:
                del self._demand[index]

    def close(self) -> None:
        self._listeners.clear()
        self.cache.close()
