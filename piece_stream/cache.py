"""Memory-only piece storage bounded by one budget shared by every transfer."""

from __future__ import annotations

import logging
import threading
import uuid
from collections import OrderedDict
from dataclasses import dataclass
from typing import TYPE_CHECKING

from .errors import PieceNotResident, PieceTooLarge

if TYPE_CHECKING:
    from collections.abc import Iterator

LOG = logging.getLogger("piece_stream.cache")


@dataclass
class ChunkRecord:
    owner_id: str
    piece_index: int
    size: int
    last_used: int


@dataclass(frozen=True)
class BudgetUsage:
    total_bytes: int
    max_bytes: int
    chunk_count: int
    owners: dict[str, int]


class GlobalMemoryBudget:
    """Process-wide ceiling on the bytes held by all piece caches.

    One instance is created at startup and handed to every
    :class:`BoundedPieceCache`. Chunks are evicted in strict least recently
    used order across all owners, ordered by a global access counter.

    Every read-modify-write of the registry happens under a single lock, so
    the check against ``max_bytes``, the evictions it triggers and the
    registration of the new chunk are one atomic step.
    """

    def __init__(self, max_bytes: int) -> None:
        if max_bytes <= 0:
            msg = "max_bytes must be positive"
            raise ValueError(msg)
        self.max_bytes = max_bytes
        self._lock = threading.Lock()
        self._counter = 0
        self._total = 0
        # insertion order is last-used order: the first entry is the LRU chunk
        self._chunks: OrderedDict[tuple[str, int], ChunkRecord] = OrderedDict()
        self._owners: dict[str, BoundedPieceCache] = {}

    @property
    def total_bytes(self) -> int:
        return self._total

    def create_cache(self, owner_id: str | None = None) -> BoundedPieceCache:
        """Create a piece cache that draws on this budget."""
        return BoundedPieceCache(self, owner_id or f"store-{uuid.uuid4().hex}")

    def usage(self) -> BudgetUsage:
        with self._lock:
            owners: dict[str, int] = {}
            for record in self._chunks.values():
                owners[record.owner_id] = owners.get(record.owner_id, 0) + record.size
            return BudgetUsage(
                total_bytes=self._total,
                max_bytes=self.max_bytes,
                chunk_count=len(self._chunks),
                owners=owners,
            )

    def records(self) -> list[ChunkRecord]:
        """Resident chunks, least recently used first."""
        with self._lock:
            return [
                ChunkRecord(r.owner_id, r.piece_index, r.size, r.last_used)
                for r in self._chunks.values()
            ]

    def _tick(self) -> int:
        self._counter += 1
        return self._counter

    def _attach(self, cache: BoundedPieceCache) -> None:
        with self._lock:
            if cache.owner_id in self._owners:
                msg = f"owner {cache.owner_id} already registered"
                raise ValueError(msg)
            self._owners[cache.owner_id] = cache

    def _put(self, cache: BoundedPieceCache, index: int, data: bytes) -> None:
        size = len(data)
        if size > self.max_bytes:
            msg = f"piece {index} ({size} bytes) exceeds budget of {self.max_bytes}"
            raise PieceTooLarge(msg)

        key = (cache.owner_id, index)
        with self._lock:
            if cache.closed:
                msg = f"cache {cache.owner_id} is closed"
                raise RuntimeError(msg)
            previous = self._chunks.pop(key, None)
            if previous is not None:
                self._total -= previous.size
            if self._total + size > self.max_bytes:
                self._evict(size)
            self._chunks[key] = ChunkRecord(cache.owner_id, index, size, self._tick())
            self._total += size
            cache._data[index] = data
            cache._evicted.discard(index)

    def _get(self, cache: BoundedPieceCache, index: int) -> bytes:
        key = (cache.owner_id, index)
        with self._lock:
            if index in cache._evicted:
                raise PieceNotResident(cache.owner_id, index, evicted=True)
            record = self._chunks.get(key)
            data = cache._data.get(index)
            if record is None or data is None:
                raise PieceNotResident(cache.owner_id, index, evicted=False)
            record.last_used = self._tick()
            self._chunks.move_to_end(key)
            return data

    def _evict(self, incoming: int) -> None:
        evicted = 0
        while self._chunks and self._total + incoming > self.max_bytes:
            (owner_id, index), record = self._chunks.popitem(last=False)
            self._total -= record.size
            evicted += 1
            owner = self._owners.get(owner_id)
            if owner is not None:
                owner._data.pop(index, None)
                owner._evicted.add(index)
            LOG.debug(
                "evicted piece %d of %s (%d bytes, last used %d)",
                index,
                owner_id,
                record.size,
                record.last_used,
            )
        if evicted:
            LOG.debug(
                "evicted %d chunk(s), %d/%d bytes in use",
                evicted,
                self._total,
                self.max_bytes,
            )

    def _release(self, cache: BoundedPieceCache) -> int:
        with self._lock:
            freed = 0
            for index in list(cache._data):
                record = self._chunks.pop((cache.owner_id, index), None)
                if record is not None:
                    self._total -= record.size
                    freed += record.size
            cache._data.clear()
            self._owners.pop(cache.owner_id, None)
            return freed


class BoundedPieceCache:
    """Piece-indexed byte store for one transfer, bounded by a shared budget.

    Reads of a piece that was evicted raise :class:`PieceNotResident` with
    ``evicted=True``; stale or zeroed bytes are never returned.
    """

    def __init__(self, budget: GlobalMemoryBudget, owner_id: str) -> None:
        self.budget = budget
        self.owner_id = owner_id
        self.closed = False
        self._data: dict[int, bytes] = {}
        self._evicted: set[int] = set()
        budget._attach(self)

    def put(self, index: int, data: bytes) -> None:
        self.budget._put(self, index, bytes(data))

    def get(self, index: int, offset: int = 0, length: int | None = None) -> bytes:
        data = self.budget._get(self, index)
        if offset == 0 and (length is None or length >= len(data)):
            return data
        end = len(data) if length is None else offset + length
        return data[offset:end]

    def has(self, index: int) -> bool:
        return index in self._data

    def was_evicted(self, index: int) -> bool:
        return index in self._evicted

    def resident(self) -> Iterator[int]:
        with self.budget._lock:
            indices = sorted(self._data)
        return iter(indices)

    def __len__(self) -> int:
        return len(self._data)

    def close(self) -> None:
        """Release every chunk of this owner. Safe to call more than once."""
        if self.closed:
            return
        self.closed = True
        freed = self.budget._release(self)
        LOG.debug("closed cache %s, released %d bytes", self.owner_id, freed)

    destroy = close
