"""FastAPI application factory."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_client import CollectorRegistry, generate_latest
from starlette.responses import Response

from tapchannel import __version__
from tapchannel.api.v1 import v1_router
from tapchannel.api.v1.schemas import ErrorResponse
from tapchannel.config.settings import AppConfig
from tapchannel.engine.client import ChannelEngine
from tapchannel.errors.channel_errors import ChannelError
from tapchannel.metrics.middleware import PrometheusMiddleware

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)

_METRICS_MEDIA_TYPE = "text/plain; version=0.0.4; charset=utf-8"


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Initialise the engine (keys, ledger, indexer, startup sweep) and shut it down on exit."""
    config: AppConfig = app.state.config
    engine = ChannelEngine(config)
    try:
        await engine.initialize()
        app.state.engine = engine
        logger.info("Channel engine ready")
        yield
    finally:
        await engine.close()
        logger.info("Channel engine shut down")


def create_app(*, config: AppConfig | None = None) -> FastAPI:
    """Build and return the FastAPI application.

    Args:
        config: Optional AppConfig. If *None*, a default config is created
            from environment variables.
    """
    if config is None:
        config = AppConfig()

    app = FastAPI(
        title="py-tapchannel",
        version=__version__,
        description="Custodial Taproot payment channel hub",
        lifespan=_lifespan,
    )
    app.state.config = config
    app.state.http_registry = CollectorRegistry()

    # -- Middleware --
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )
    if config.metrics.enabled:
        app.add_middleware(PrometheusMiddleware, registry=app.state.http_registry)

    # -- Error handler --
    @app.exception_handler(ChannelError)
    async def _channel_error_handler(request: Request, exc: ChannelError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
        return JSONResponse(
            status_code=exc.status_code,
            content=ErrorResponse(code=exc.code, message=exc.message, details=exc.details).model_dump(mode="json"),
        )

    # -- Base routes --
    @app.get("/health", tags=["base"])
    async def health(request: Request) -> dict:
        engine: ChannelEngine | None = getattr(request.app.state, "engine", None)
        components = await engine.health_check() if isinstance(engine, ChannelEngine) else {}
        return {"status": "ok", "components": components}

    @app.get("/metrics", tags=["base"], include_in_schema=False)
    async def metrics_endpoint(request: Request) -> Response:
        """Prometheus metrics endpoint."""
        body = generate_latest(request.app.state.http_registry)
        engine = getattr(request.app.state, "engine", None)
        engine_metrics = getattr(engine, "metrics", None)
        if engine_metrics is not None:
            body += generate_latest(engine_metrics.registry)
        return Response(content=body, media_type=_METRICS_MEDIA_TYPE)

    # -- Mount v1 API --
    app.include_router(v1_router)

    return app
