"""FastAPI application factory."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI

from resource_api.common.exceptions import register_exception_handlers
from resource_api.common.logging import setup_logging
from resource_api.common.middleware import register_middleware
from resource_api.common.responses import JSONResponse
from resource_api.db import init_db, shutdown_db
from resource_api.resources.controller import ResourceController
from resource_api.resources.router import build_resource_router
from resource_api.settings import Settings, get_settings

logger = logging.getLogger(__name__)

ResourceLike = ResourceController[Any] | type[ResourceController[Any]]


def create_app(
    settings: Settings | None = None,
    resources: Iterable[ResourceLike] = (),
) -> FastAPI:
    """Create the application and mount one router per resource controller."""
    # Settings + logging first so everything else uses the configured root logger.
    settings = settings or get_settings()
    setup_logging(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        init_db(app, settings)
        try:
            yield
        finally:
            shutdown_db(app)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
        default_response_class=JSONResponse,
    )
    app.state.settings = settings

    register_exception_handlers(app)
    register_middleware(app, settings)

    for resource in resources:
        controller = resource(settings) if isinstance(resource, type) else resource
        prefix = f"{settings.api_prefix}/{controller.route_path}"
        app.include_router(build_resource_router(controller), prefix=prefix)
        logger.debug(
            "resource.registered",
            extra={"resource": controller.resource_name, "prefix": prefix},
        )

    return app


__all__ = ["create_app"]
