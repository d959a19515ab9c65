"""FastAPI application factory with role-based route mounting."""

from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import AsyncIterator

from fastapi import FastAPI, Request, Response
from fastapi.concurrency import run_in_threadpool

from wppgateway.observability.correlation import (
    CORRELATION_ID_HEADER,
    accept_correlation_id,
    reset_correlation_id,
    set_correlation_id,
)
from wppgateway.observability.logging import get_logger
from wppgateway.settings import AppRole

from .routers import public, worker
from .routes import chats, live, sync, tasks_sync, webhooks_evolution
from .services import get_services

logger = get_logger(__name__)


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncIterator[None]:
    services = get_services()
    services.cache.start_sweeper()
    if services.relay is not None:
        services.relay.start()
    if services.sockets is not None:
        await run_in_threadpool(services.sockets.start_all)
    try:
        yield
    finally:
        if services.sockets is not None:
            services.sockets.shutdown()
        if services.relay is not None:
            services.relay.stop()
        services.cache.stop()
        services.tasks.clear()


def create_app(role: AppRole | None = None) -> FastAPI:
    """Create FastAPI app with routes based on APP_ROLE.

    Args:
        role: Explicit role override. If None, reads from APP_ROLE env var.
              Defaults to "public" if env var is not set.

    Returns:
        Configured FastAPI application.
    """
    if role is None:
        role = os.environ.get("APP_ROLE", "public")  # type: ignore[assignment]

    app = FastAPI(
        title="WhatsApp Gateway",
        docs_url=None,
        redoc_url=None,
        lifespan=_lifespan,
    )

    # Correlation ID middleware
    @app.middleware("http")
    async def correlation_id_middleware(request: Request, call_next) -> Response:
        cid = accept_correlation_id(request.headers.get(CORRELATION_ID_HEADER))
        token = set_correlation_id(cid)
        try:
            response = await call_next(request)
            response.headers[CORRELATION_ID_HEADER] = cid
            return response
        finally:
            reset_correlation_id(token)

    # Mount public routes (always)
    app.include_router(public.router)
    app.include_router(webhooks_evolution.router)
    app.include_router(sync.router)
    app.include_router(chats.router)
    app.include_router(live.router)

    # Mount worker routes only for worker role
    if role == "worker":
        app.include_router(worker.router)
        app.include_router(tasks_sync.router)

    logger.info("app created", extra={"extra_fields": {"role": role}})
    return app
