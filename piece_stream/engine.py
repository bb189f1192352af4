"""Contract of the piece engine that supplies bytes to the streamer."""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Callable, Sequence

    ProgressListener = Callable[[], None]
else:  # pragma: no cover
    ProgressListener = Any


class PiecePriority(IntEnum):
    NONE = 0
    LOW = 1
    NORMAL = 2
    HIGH = 3
    CRITICAL = 4


def normalize_priority(value: object) -> PiecePriority:
    """Map the loose priority values engines accept onto PiecePriority."""
    if isinstance(value, bool):
        return PiecePriority.HIGH if value else PiecePriority.NONE
    if isinstance(value, (int, float)):
        if value <= 0:
            return PiecePriority.NONE
        if value >= PiecePriority.CRITICAL:
            return PiecePriority.CRITICAL
        return PiecePriority(int(value))
    return PiecePriority.NONE


@dataclass(frozen=True)
class PieceRecord:
    index: int
    length: int
    missing: int

    @property
    def downloaded(self) -> bool:
        return self.missing == 0


def is_piece_downloaded(piece: object) -> bool:
    """Project any piece status value onto "fully downloaded or not".

    Engines report pieces as ``None`` (not started), booleans, integers or
    objects carrying a ``missing`` byte count.
    """
    if piece is None:
        return False
    if isinstance(piece, bool):
        return piece
    if isinstance(piece, int):
        return piece != 0
    missing = getattr(piece, "missing", None)
    if missing is None:
        return False
    return missing == 0


@runtime_checkable
class PieceEngine(Protocol):
    """What the streamer needs from whatever downloads the pieces."""

    @property
    def piece_length(self) -> int: ...

    @property
    def content_length(self) -> int: ...

    @property
    def pieces(self) -> Sequence[object]: ...

    def select(self, start: int, end: int, priority: int) -> None: ...

    def deselect(self, start: int, end: int, priority: int) -> None: ...

    def create_byte_reader(self, start: int, end: int) -> AsyncIterator[bytes]: ...

    def subscribe(self, listener: ProgressListener) -> None: ...

    def unsubscribe(self, listener: ProgressListener) -> None: ...
