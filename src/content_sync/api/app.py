"""FastAPI application factory for webhook ingress and sync control."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Awaitable, Callable, Optional, cast

import structlog
from fastapi import FastAPI, Request, Response

from content_sync import __version__
from content_sync.config import Settings, get_settings
from content_sync.core.errors import AppError, app_error_handler
from content_sync.services import Services, build_services

from .sync import router as sync_router
from .webhooks import router as webhooks_router

logger = structlog.get_logger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    services: Optional[Services] = None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        settings: Engine settings; loaded from the environment when omitted
        services: Pre-built services; when given the app neither connects
            nor closes them

    Returns:
        Configured FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        if services is not None:
            app.state.services = services
            yield
            return

        app.state.services = await build_services(
            settings or get_settings(), create_tables=True
        )
        logger.info("content_sync_app_started")
        try:
            yield
        finally:
            await app.state.services.close()
            logger.info("content_sync_app_stopped")

    app = FastAPI(
        title="Content Sync",
        version=__version__,
        lifespan=lifespan,
    )
    app.add_exception_handler(
        AppError,
        cast(Callable[[Request, Exception], Awaitable[Response]], app_error_handler),
    )
    app.include_router(webhooks_router, prefix="/api/v1")
    app.include_router(sync_router, prefix="/api/v1")
    return app
