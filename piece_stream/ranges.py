"""Byte range parsing, normalization and byte-to-piece mapping."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Literal

from .errors import (
    MetadataUnavailable,
    RangeNotSatisfiable,
    RangeParseError,
    RangeParseFailure,
)

LOG = logging.getLogger("piece_stream.ranges")

BYTES_UNIT = "bytes"


@dataclass(frozen=True)
class ByteRange:
    """Inclusive ``[start, end]`` span of file bytes."""

    start: int
    end: int

    def __post_init__(self) -> None:
        if self.start < 0 or self.end < 0:
            msg = (
                "start and end must be non-negative, "
                f"got start={self.start}, end={self.end}"
            )
            raise ValueError(msg)
        if self.start > self.end:
            msg = f"start must be <= end, got start={self.start}, end={self.end}"
            raise ValueError(msg)

    @property
    def size(self) -> int:
        return self.end - self.start + 1

    def content_range(self, content_length: int) -> str:
        return f"bytes {self.start}-{self.end}/{content_length}"

    def limit(self, max_size: int) -> ByteRange:
        """Truncate the range so it spans at most ``max_size`` bytes."""
        if self.size <= max_size:
            return self
        return ByteRange(self.start, self.start + max_size - 1)

    @classmethod
    def initial_chunk(cls, chunk_size: int, content_length: int) -> ByteRange:
        return cls(0, min(chunk_size, content_length) - 1)


@dataclass(frozen=True)
class ParsedRange:
    """A syntactically valid single-range Range header, before clamping."""

    kind: Literal["suffix", "start-only", "start-end"]
    start: int | None = None
    end: int | None = None
    suffix: int | None = None


@dataclass(frozen=True)
class PieceIndexRange:
    start_piece: int
    end_piece: int

    def __iter__(self):
        return iter(range(self.start_piece, self.end_piece + 1))

    def __len__(self) -> int:
        return self.end_piece - self.start_piece + 1


def _is_number(value: str) -> bool:
    return value.isascii() and value.isdigit()


def _parse_int(value: str, what: str) -> int:
    if not _is_number(value):
        if value.startswith("-") and _is_number(value[1:]):
            msg = f"{what} cannot be negative: {value!r}"
            raise RangeParseError(RangeParseFailure.NEGATIVE_VALUE, msg)
        msg = f"Invalid {what} value: {value!r}"
        raise RangeParseError(RangeParseFailure.INVALID_NUMBER, msg)
    return int(value)


def parse_range_header(header: str) -> ParsedRange:
    """Parse a ``Range`` header value holding exactly one byte range.

    Raises:
        RangeParseError: The header is malformed, names several ranges or
            carries a non-numeric or negative component.
    """
    unit, sep, range_set = header.strip().partition("=")
    if not sep or unit.strip().lower() != BYTES_UNIT:
        msg = f"Expected '{BYTES_UNIT}=' prefix, got {header!r}"
        raise RangeParseError(RangeParseFailure.INVALID_FORMAT, msg)

    range_set = range_set.strip()
    if not range_set:
        msg = f"Empty range value after {BYTES_UNIT}= prefix"
        raise RangeParseError(RangeParseFailure.INVALID_FORMAT, msg)
    if "," in range_set:
        msg = "Multiple ranges are not supported"
        raise RangeParseError(RangeParseFailure.MULTIPLE_RANGES, msg)

    if range_set.startswith("-"):
        suffix_str = range_set[1:].strip()
        if not suffix_str:
            msg = "Range must have at least start or end value"
            raise RangeParseError(RangeParseFailure.INVALID_FORMAT, msg)
        return ParsedRange("suffix", suffix=_parse_int(suffix_str, "suffix"))

    if "-" not in range_set:
        msg = f"Invalid range format, expected 'start-end', got {range_set!r}"
        raise RangeParseError(RangeParseFailure.INVALID_FORMAT, msg)

    start_str, end_str = (part.strip() for part in range_set.split("-", 1))
    start = _parse_int(start_str, "start")
    if not end_str:
        return ParsedRange("start-only", start=start)
    return ParsedRange("start-end", start=start, end=_parse_int(end_str, "end"))


def _clamp(value: int, content_length: int) -> int:
    return min(max(value, 0), content_length - 1)


def normalize_range(
    header: str | None,
    content_length: int,
    max_chunk_size: int,
    *,
    initial_chunk_size: int | None = None,
) -> ByteRange:
    """Resolve a Range header against a known content length.

    A missing header yields the initial chunk starting at byte 0. The result
    never spans more than ``max_chunk_size`` bytes.

    Returns:
        The normalized, clamped ByteRange.

    Raises:
        RangeParseError: The header is malformed.
        RangeNotSatisfiable: The range falls outside the content.
    """
    if content_length <= 0:
        msg = "content is empty"
        raise RangeNotSatisfiable(msg, content_length)

    if header is None or not header.strip():
        chunk = min(initial_chunk_size or max_chunk_size, max_chunk_size)
        return ByteRange.initial_chunk(chunk, content_length)

    parsed = parse_range_header(header)
    last = content_length - 1

    if parsed.kind == "suffix":
        assert parsed.suffix is not None
        start, end = max(content_length - parsed.suffix, 0), last
    elif parsed.kind == "start-only":
        assert parsed.start is not None
        start = _clamp(parsed.start, content_length)
        end = min(start + max_chunk_size - 1, last)
    else:
        assert parsed.start is not None
        assert parsed.end is not None
        start = _clamp(parsed.start, content_length)
        end = _clamp(parsed.end, content_length)
        if end < start:
            msg = f"end {parsed.end} < start {parsed.start}"
            raise RangeNotSatisfiable(msg, content_length)

    if end < start or start > last or end > last:
        msg = f"start={start}, end={end}, content length={content_length}"
        raise RangeNotSatisfiable(msg, content_length)

    byte_range = ByteRange(start, end)
    if byte_range.size > max_chunk_size:
        LOG.warning(
            "requested range %s-%s (%d bytes) exceeds max chunk size %d, truncating",
            start,
            end,
            byte_range.size,
            max_chunk_size,
        )
        byte_range = byte_range.limit(max_chunk_size)
    return byte_range


def piece_range(byte_range: ByteRange, piece_length: int) -> PieceIndexRange:
    """Map a byte range onto the inclusive range of pieces it overlaps."""
    if piece_length <= 0:
        msg = "piece length is not known yet"
        raise MetadataUnavailable(msg)
    return PieceIndexRange(
        byte_range.start // piece_length, byte_range.end // piece_length
    )


def buffered_piece_range(
    byte_range: ByteRange,
    piece_length: int,
    read_ahead: int,
    content_length: int,
) -> PieceIndexRange:
    """Like :func:`piece_range`, with the end extended by ``read_ahead`` bytes.

    The start is never moved backward and the end never runs past the last
    byte of the content.
    """
    pieces = piece_range(byte_range, piece_length)
    if content_length <= 0:
        return pieces
    piece_end_byte = (pieces.end_piece + 1) * piece_length - 1
    buffered_end_byte = min(piece_end_byte + read_ahead, content_length - 1)
    end_piece = max(buffered_end_byte // piece_length, pieces.end_piece)
    return PieceIndexRange(pieces.start_piece, end_piece)


def piece_count(content_length: int, piece_length: int) -> int:
    if piece_length <= 0 or content_length <= 0:
        return 0
    return math.ceil(content_length / piece_length)
