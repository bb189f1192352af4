"""Partial-content HTTP streaming of files whose pieces arrive out of order."""

from .app import create_app
from .cache import BoundedPieceCache, GlobalMemoryBudget
from .ranges import ByteRange, PieceIndexRange, normalize_range
from .responder import StreamResponder
from .scheduler import PieceScheduler, PriorityTracker
from .settings import StreamSettings
from .transfers import Transfer, TransferRegistry

__all__ = [
    "BoundedPieceCache",
    "ByteRange",
    "GlobalMemoryBudget",
    "PieceIndexRange",
    "PieceScheduler",
    "PriorityTracker",
    "StreamResponder",
    "StreamSettings",
    "Transfer",
    "TransferRegistry",
    "create_app",
    "normalize_range",
]
