from __future__ import annotations

import logging
from typing import Annotated, Any

from litestar import Litestar, Request, Response, delete, get, post
from litestar.config.cors import CORSConfig
from litestar.params import FromPath, FromQuery, QueryParameter
from litestar.plugins.prometheus import PrometheusConfig, PrometheusController
from pydantic import BaseModel

from .errors import InvalidSource, MetadataTimeout, TransferNotFound
from .responder import StreamResponder
from .settings import StreamSettings, load_settings_from_env
from .transfers import Transfer, TransferRegistry

LOG = logging.getLogger("piece_stream.app")

prometheus_config = PrometheusConfig(app_name="piece_stream", prefix="piece_stream")

MISSING_SOURCE = "transfer id or source url required in parameter ?id=... or ?url=..."


class AddTransferRequest(BaseModel):
    url: str


def _error_response(status_code: int) -> Any:
    def handler(request: Request[Any, Any, Any], exc: Exception) -> Response:
        LOG.debug("%s %s -> %d: %s", request.method, request.url.path, status_code, exc)
        return Response(content={"error": str(exc)}, status_code=status_code)

    return handler


def create_app(
    registry: TransferRegistry | None = None,
    settings: StreamSettings | None = None,
) -> Litestar:
    """Create the streaming ASGI application."""
    if registry is None:
        registry = TransferRegistry(settings or load_settings_from_env())
    responder = StreamResponder(registry.settings)

    async def resolve(transfer_id: str | None, url: str | None) -> Transfer:
        if transfer_id:
            return registry.get(transfer_id)
        if url:
            return registry.find(url) or await registry.add(url)
        raise InvalidSource(MISSING_SOURCE)

    @get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    @get("/stream")
    async def stream(
        request: Request[Any, Any, Any],
        transfer_id: Annotated[str | None, QueryParameter(name="id")] = None,
        url: FromQuery[str | None] = None,
    ) -> Response:
        transfer = await resolve(transfer_id, url)
        return await responder.respond(request, transfer)

    @get("/info")
    async def info(
        transfer_id: Annotated[str | None, QueryParameter(name="id")] = None,
        url: FromQuery[str | None] = None,
    ) -> dict[str, Any]:
        if url and not transfer_id:
            transfer = registry.find(url)
            if transfer is None:
                msg = f"no active transfer for {url}"
                raise TransferNotFound(msg)
            return transfer.info()
        if not transfer_id:
            raise InvalidSource(MISSING_SOURCE)
        return registry.info(transfer_id)

    @get("/transfers")
    async def list_transfers() -> dict[str, Any]:
        return {"transfers": [transfer.info() for transfer in registry.all()]}

    @post("/transfers")
    async def add_transfer(data: AddTransferRequest) -> dict[str, Any]:
        transfer = await registry.add(data.url)
        return transfer.info()

    @delete("/transfers/{transfer_id:str}")
    async def remove_transfer(transfer_id: FromPath[str]) -> None:
        registry.remove(transfer_id)

    @get("/debug/transfers")
    async def debug_transfers() -> Response:
        return Response(
            content=registry.debug_info(),
            headers={"Cache-Control": "no-cache, no-store, must-revalidate"},
        )

    cors_config = CORSConfig(
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["Content-Range", "Accept-Ranges", "Content-Length"],
    )

    return Litestar(
        route_handlers=[
            health,
            stream,
            info,
            list_transfers,
            add_transfer,
            remove_transfer,
            debug_transfers,
            PrometheusController,
        ],
        lifespan=[registry.lifespan],
        cors_config=cors_config,
        middleware=[prometheus_config.middleware],
        exception_handlers={
            TransferNotFound: _error_response(404),
            InvalidSource: _error_response(400),
            MetadataTimeout: _error_response(504),
        },
    )

