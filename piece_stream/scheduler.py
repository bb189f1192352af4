"""Turns byte ranges into piece priorities and waits for them to arrive."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import TYPE_CHECKING

import anyio

from .engine import PiecePriority, is_piece_downloaded, normalize_priority
from .errors import MetadataUnavailable
from .ranges import buffered_piece_range, piece_range

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .engine import PieceEngine
    from .ranges import ByteRange, PieceIndexRange

LOG = logging.getLogger("piece_stream.scheduler")

STREAM_PRIORITY = PiecePriority.CRITICAL


@dataclass(frozen=True)
class PrioritizedPiece:
    piece_index: int
    priority: PiecePriority
    selected_at: datetime


class PriorityTracker:
    """Bookkeeping of which pieces were prioritized and at what level.

    A selection only overwrites an entry whose level is lower or equal; a
    deselection only removes entries whose level matches exactly.
    """

    def __init__(self) -> None:
        self._pieces: dict[int, PrioritizedPiece] = {}

    def select(self, start: int, end: int, priority: int) -> None:
        level = normalize_priority(priority)
        if level == PiecePriority.NONE:
            return
        now = datetime.now(UTC)
        for index in range(start, end + 1):
            existing = self._pieces.get(index)
            if existing is None:
                self._pieces[index] = PrioritizedPiece(index, level, now)
            elif level >= existing.priority:
                self._pieces[index] = PrioritizedPiece(
                    index, level, existing.selected_at
                )

    def deselect(self, start: int, end: int, priority: int) -> None:
        level = normalize_priority(priority)
        for index in range(start, end + 1):
            existing = self._pieces.get(index)
            if existing is not None and existing.priority == level:
                del self._pieces[index]

    def sweep(self, pieces: Sequence[object]) -> int:
        """Drop entries for pieces that have been fully downloaded."""
        done = [
            index
            for index in self._pieces
            if index < len(pieces) and is_piece_downloaded(pieces[index])
        ]
        for index in done:
            del self._pieces[index]
        return len(done)

    def priority_of(self, index: int) -> PiecePriority:
        entry = self._pieces.get(index)
        return entry.priority if entry is not None else PiecePriority.NONE

    def indices(self) -> set[int]:
        return set(self._pieces)

    def records(self) -> list[PrioritizedPiece]:
        return [self._pieces[index] for index in sorted(self._pieces)]

    def as_bitmap(self, total: int) -> list[int]:
        bitmap = [0] * total
        for index in self._pieces:
            if 0 <= index < total:
                bitmap[index] = 1
        return bitmap

    def clear(self) -> None:
        self._pieces.clear()

    def __len__(self) -> int:
        return len(self._pieces)


class PieceScheduler:
    """Prioritizes the pieces behind a byte range on one engine.

    The scheduler owns the tracking of prioritized pieces and forwards every
    select/deselect to the engine. Each call to :meth:`prioritize` first
    clears all earlier priorities, so a seek moves the engine's attention to
    the new position at once.
    """

    def __init__(
        self,
        engine: PieceEngine,
        *,
        read_ahead: int,
        timeout: float,
        name: str = "transfer",
        priority: PiecePriority = STREAM_PRIORITY,
    ) -> None:
        self.engine = engine
        self.read_ahead = read_ahead
        self.timeout = timeout
        self.name = name
        self.priority = priority
        self.tracker = PriorityTracker()
        self._order = threading.Lock()

    def select(self, start: int, end: int, priority: int) -> None:
        self.tracker.select(start, end, priority)
        self.engine.select(start, end, priority)

    def deselect(self, start: int, end: int, priority: int) -> None:
        self.tracker.deselect(start, end, priority)
        self.engine.deselect(start, end, priority)

    def clear_all(self) -> None:
        total = len(self.engine.pieces)
        if total > 0:
            self.deselect(0, total - 1, self.priority)
            LOG.debug("[%s] deselected all pieces (0-%d)", self.name, total - 1)

    def prioritize(self, byte_range: ByteRange) -> PieceIndexRange | None:
        """Clear earlier priorities and select the range plus read-ahead.

        Returns:
            The selected piece range, or None when metadata is not known yet.
        """
        try:
            buffered = buffered_piece_range(
                byte_range,
                self.engine.piece_length,
                self.read_ahead,
                self.engine.content_length,
            )
        except MetadataUnavailable:
            LOG.debug("[%s] no piece length yet, skipping prioritization", self.name)
            return None

        with self._order:
            self.clear_all()
            self.select(buffered.start_piece, buffered.end_piece, self.priority)
        LOG.info(
            "[%s] selected pieces %d-%d for range %d-%d (read-ahead %.2f MB)",
            self.name,
            buffered.start_piece,
            buffered.end_piece,
            byte_range.start,
            byte_range.end,
            self.read_ahead / 1024 / 1024,
        )
        return buffered

    def missing_pieces(self, required: PieceIndexRange) -> list[int]:
        pieces = self.engine.pieces
        return [
            index
            for index in required
            if index >= len(pieces) or not is_piece_downloaded(pieces[index])
        ]

    async def wait_until_ready(
        self, byte_range: ByteRange, timeout: float | None = None
    ) -> bool:
        """Wait until every piece under ``byte_range`` is downloaded.

        Only the pieces overlapping the range itself are required; the
        read-ahead is a hint. The wait ends at the first progress
        notification that finds the range complete, or after ``timeout``
        seconds. Cancelling the caller unsubscribes immediately.

        Returns:
            True if the range is ready, False on timeout.
        """
        try:
            required = piece_range(byte_range, self.engine.piece_length)
        except MetadataUnavailable:
            LOG.debug("[%s] no piece length yet, not waiting", self.name)
            return True

        missing = self.missing_pieces(required)
        self.tracker.sweep(self.engine.pieces)
        if not missing:
            return True

        timeout = self.timeout if timeout is None else timeout
        LOG.info(
            "[%s] waiting for pieces %d-%d (%d/%d available)...",
            self.name,
            required.start_piece,
            required.end_piece,
            len(required) - len(missing),
            len(required),
        )

        progress = anyio.Event()

        def on_progress() -> None:
            progress.set()

        self.engine.subscribe(on_progress)
        try:
            with anyio.move_on_after(timeout):
                while True:
                    await progress.wait()
                    progress = anyio.Event()
                    if not self.missing_pieces(required):
                        self.tracker.sweep(self.engine.pieces)
                        LOG.info(
                            "[%s] all pieces %d-%d are now available",
                            self.name,
                            required.start_piece,
                            required.end_piece,
                        )
                        return True
        finally:
            self.engine.unsubscribe(on_progress)

        missing = self.missing_pieces(required)
        LOG.warning(
            "[%s] timeout waiting for pieces %d-%d (%d/%d available after %.1fs)",
            self.name,
            required.start_piece,
            required.end_piece,
            len(required) - len(missing),
            len(required),
            timeout,
        )
        return False

    async def prepare(self, byte_range: ByteRange) -> bool:
        """Prioritize ``byte_range`` and wait, bounded, for it to be ready."""
        self.prioritize(byte_range)
        return await self.wait_until_ready(byte_range)
