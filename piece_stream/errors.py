from __future__ import annotations

from enum import Enum


class StreamError(Exception):
    """Base class for every error raised by piece_stream."""


class RangeParseFailure(str, Enum):
    INVALID_FORMAT = "invalid_format"
    MULTIPLE_RANGES = "multiple_ranges"
    INVALID_NUMBER = "invalid_number"
    NEGATIVE_VALUE = "negative_value"


class RangeError(StreamError, ValueError):
    """A Range header that cannot be answered with partial content."""


class RangeParseError(RangeError):
    def __init__(self, reason: RangeParseFailure, message: str) -> None:
        super().__init__(message)
        self.reason = reason


class RangeNotSatisfiable(RangeError):
    def __init__(self, message: str, content_length: int) -> None:
        super().__init__(message)
        self.content_length = content_length


class MetadataUnavailable(StreamError):
    """Piece length or content length is not known yet."""


class PieceNotResident(StreamError, KeyError):
    """A piece is not held in memory, either never stored or evicted."""

    def __init__(self, owner_id: str, index: int, *, evicted: bool) -> None:
        state = "evicted" if evicted else "not stored"
        super().__init__(f"piece {index} of {owner_id} {state}")
        self.owner_id = owner_id
        self.index = index
        self.evicted = evicted

    def __str__(self) -> str:
        return str(self.args[0])


class PieceTooLarge(StreamError):
    """A single piece does not fit in the memory budget at all."""


class PieceUnavailable(StreamError):
    """A byte reader gave up waiting for a piece to be downloaded."""


class TransferNotFound(StreamError, LookupError):
    pass


class InvalidSource(StreamError, ValueError):
    pass


class MetadataTimeout(StreamError, TimeoutError):
    """The source did not report its size within the metadata timeout."""
