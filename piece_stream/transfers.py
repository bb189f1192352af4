"""Lifecycle of active transfers: add, look up, describe and remove."""

from __future__ import annotations

import hashlib
import logging
import posixpath
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any
from urllib.parse import urlsplit

import anyio
import httpx

from .cache import GlobalMemoryBudget
from .engine import is_piece_downloaded
from .errors import InvalidSource, MetadataTimeout, TransferNotFound
from .scheduler import PieceScheduler
from .webseed import WebSeedEngine, source_name

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Iterable

    from anyio.abc import TaskGroup, TaskStatus
    from litestar import Litestar

    from .cache import BoundedPieceCache
    from .engine import PieceEngine
    from .settings import StreamSettings

LOG = logging.getLogger("piece_stream.transfers")


def transfer_id(source: str) -> str:
    """Stable identifier of a source, used as the ``id`` query parameter."""
    return hashlib.sha1(source.encode("utf-8")).hexdigest()


def is_media_file(name: str, extensions: Iterable[str]) -> bool:
    _, ext = posixpath.splitext(name)
    return ext.lower() in {e.lower() for e in extensions}


def _media_type(content_type: str | None, default: str) -> str:
    """Prefer the type the source reports when it names audio or video."""
    if content_type:
        media_type = content_type.split(";", 1)[0].strip().lower()
        if media_type.startswith(("video/", "audio/")):
            return media_type
    return default


@dataclass
class Transfer:
    id: str
    source: str
    name: str
    engine: PieceEngine
    scheduler: PieceScheduler
    media_type: str = "video/mp4"
    cache: BoundedPieceCache | None = None
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    cancel_scope: anyio.CancelScope | None = None

    def info(self) -> dict[str, Any]:
        pieces = self.engine.pieces
        downloaded = sum(1 for piece in pieces if is_piece_downloaded(piece))
        return {
            "id": self.id,
            "source": self.source,
            "name": self.name,
            "length": self.engine.content_length,
            "piece_length": self.engine.piece_length,
            "pieces": len(pieces),
            "downloaded_pieces": downloaded,
            "progress": downloaded / len(pieces) if pieces else 0.0,
            "ready": self.engine.content_length > 0,
            "created_at": self.created_at.isoformat(),
        }

    def debug_info(self) -> dict[str, Any]:
        pieces = self.engine.pieces
        return {
            "id": self.id,
            "name": self.name,
            "piece_length": self.engine.piece_length,
            "total_pieces": len(pieces),
            "pieces": [1 if is_piece_downloaded(piece) else 0 for piece in pieces],
            "prioritized": self.scheduler.tracker.as_bitmap(len(pieces)),
            "priorities": [
                {
                    "index": record.piece_index,
                    "priority": record.priority.name,
                    "selected_at": record.selected_at.isoformat(),
                }
                for record in self.scheduler.tracker.records()
            ],
            "resident_pieces": len(self.cache) if self.cache is not None else None,
        }


class TransferRegistry:
    """Keeps the active transfers and the resources they share.

    The registry owns the process-wide :class:`GlobalMemoryBudget`, the
    HTTP client used by web-seed engines and the task group their download
    workers run in. The latter two exist only inside :meth:`lifespan`.
    """

    def __init__(
        self,
        settings: StreamSettings,
        budget: GlobalMemoryBudget | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.settings = settings
        self._transport = transport
        self.budget = budget or GlobalMemoryBudget(settings.max_memory_bytes)
        if settings.piece_length > self.budget.max_bytes:
            msg = (
                f"piece_length ({settings.piece_length}) exceeds the memory budget "
                f"({self.budget.max_bytes} bytes)"
            )
            raise ValueError(msg)
        self._transfers: dict[str, Transfer] = {}
        self._http_client: httpx.AsyncClient | None = None
        self._task_group: TaskGroup | None = None
        self._add_lock: anyio.Lock | None = None

    @asynccontextmanager
    async def lifespan(self, app: Litestar | None = None) -> AsyncIterator[None]:
        async with (
            httpx.AsyncClient(
                timeout=httpx.Timeout(60.0, read=300.0),
                trust_env=False,
                follow_redirects=True,
                transport=self._transport,
            ) as client,
            anyio.create_task_group() as task_group,
        ):
            self._http_client = client
            self._task_group = task_group
            self._add_lock = anyio.Lock()
            LOG.info(
                "piece stream ready (memory budget=%d bytes, chunk=%d, read-ahead=%d)",
                self.budget.max_bytes,
                self.settings.max_chunk_size,
                self.settings.read_ahead_bytes,
            )
            try:
                yield
            finally:
                for transfer in list(self._transfers.values()):
                    self.remove(transfer.id)
                task_group.cancel_scope.cancel()
                self._http_client = None
                self._task_group = None
                self._add_lock = None

    def register(self, transfer: Transfer) -> Transfer:
        """Install a transfer built around any piece engine."""
        self._transfers[transfer.id] = transfer
        return transfer

    def get(self, transfer_id: str) -> Transfer:
        try:
            return self._transfers[transfer_id]
        except KeyError:
            msg = f"transfer {transfer_id} not found"
            raise TransferNotFound(msg) from None

    def find(self, source: str) -> Transfer | None:
        return self._transfers.get(transfer_id(source))

    def all(self) -> list[Transfer]:
        return list(self._transfers.values())

    def info(self, transfer_id: str) -> dict[str, Any]:
        return self.get(transfer_id).info()

    def _validate_source(self, source: str) -> str:
        parts = urlsplit(source)
        if parts.scheme not in {"http", "https"} or not parts.netloc:
            msg = f"source must be an http(s) URL, got {source!r}"
            raise InvalidSource(msg)
        name = source_name(source)
        if not is_media_file(name, self.settings.media_extensions):
            msg = f"no media file found at {source!r}"
            raise InvalidSource(msg)
        return name

    async def add(self, source: str) -> Transfer:
        """Start streaming ``source`` and wait for its metadata.

        Adding a source that is already active returns the existing transfer.

        Raises:
            InvalidSource: The URL is unusable or the server cannot serve it.
            MetadataTimeout: The size was not learned in time.
        """
        name = self._validate_source(source)
        existing = self.find(source)
        if existing is not None:
            return existing
        if self._http_client is None or self._task_group is None:
            message = "transfer registry not started"
            raise RuntimeError(message)
        assert self._add_lock is not None

        async with self._add_lock:
            existing = self.find(source)
            if existing is not None:
                return existing

            tid = transfer_id(source)
            LOG.info("loading transfer %s from %s", tid, source)
            cache = self.budget.create_cache(tid)
            engine = WebSeedEngine(
                source,
                client=self._http_client,
                cache=cache,
                piece_length=self.settings.piece_length,
                concurrency=self.settings.fetch_concurrency,
                read_timeout=self.settings.read_timeout,
                name=name,
            )
            try:
                with anyio.fail_after(self.settings.metadata_timeout):
                    await engine.fetch_metadata()
            except TimeoutError as error:
                cache.close()
                msg = f"metadata reception timeout for {source}"
                raise MetadataTimeout(msg) from error
            except httpx.HTTPError as error:
                cache.close()
                msg = f"could not read metadata of {source}: {error}"
                raise InvalidSource(msg) from error
            except InvalidSource:
                cache.close()
                raise

            transfer = Transfer(
                id=tid,
                source=source,
                name=name,
                engine=engine,
                scheduler=PieceScheduler(
                    engine,
                    read_ahead=self.settings.read_ahead_bytes,
                    timeout=self.settings.readiness_timeout,
                    name=name,
                ),
                media_type=_media_type(engine.content_type, self.settings.media_type),
                cache=cache,
            )
            await self._task_group.start(self._run, transfer)
            self._transfers[tid] = transfer
            LOG.info(
                "streaming %s (%.2f MB)", name, engine.content_length / 1024 / 1024
            )
            return transfer

    async def _run(
        self,
        transfer: Transfer,
        *,
        task_status: TaskStatus[None] = anyio.TASK_STATUS_IGNORED,
    ) -> None:
        engine = transfer.engine
        assert isinstance(engine, WebSeedEngine)
        with anyio.CancelScope() as scope:
            transfer.cancel_scope = scope
            task_status.started()
            try:
                await engine.run()
            except Exception:
                LOG.exception("[%s] download worker stopped", transfer.name)

    def remove(self, transfer_id: str) -> Transfer:
        """Stop a transfer and hand its memory back to the budget.

        Raises:
            TransferNotFound: No such transfer is active.
        """
        transfer = self.get(transfer_id)
        del self._transfers[transfer_id]
        if transfer.cancel_scope is not None:
            transfer.cancel_scope.cancel()
        transfer.scheduler.tracker.clear()
        close = getattr(transfer.engine, "close", None)
        if close is not None:
            close()
        if transfer.cache is not None:
            transfer.cache.close()
        LOG.info("transfer %s (%s) stopped", transfer.id, transfer.name)
        return transfer

    def debug_info(self) -> dict[str, Any]:
        usage = self.budget.usage()
        return {
            "count": len(self._transfers),
            "memory": {
                "total_bytes": usage.total_bytes,
                "max_bytes": usage.max_bytes,
                "chunks": usage.chunk_count,
                "owners": usage.owners,
            },
            "transfers": [transfer.debug_info() for transfer in self.all()],
        }
