"""Almanac API: FastAPI application factory.

The app factory creates a FastAPI instance with:
- CORS middleware (configurable origins)
- Lifespan handler that builds and tears down the service graph
- Health endpoint at GET /api/health
- Event and integration routers
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from almanac.api.deps import init_services, shutdown_services
from almanac.api.middleware import register_error_handlers
from almanac.api.routers.events import router as events_router
from almanac.api.routers.integrations import router as integrations_router
from almanac.config import AlmanacConfig, load_config

logger = logging.getLogger(__name__)


def create_app(config: AlmanacConfig | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    config:
        Loaded configuration.  Defaults to :func:`~almanac.config.load_config`
        (``$ALMANAC_CONFIG`` or environment variables).
    """
    resolved = config or load_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await init_services(resolved)
        logger.info("Almanac API started (timezone=%s)", resolved.timezone)
        yield
        await shutdown_services()

    app = FastAPI(
        title="Almanac API",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.router.redirect_slashes = False

    app.add_middleware(
        CORSMiddleware,
        allow_origins=resolved.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_error_handlers(app)

    app.include_router(events_router)
    app.include_router(integrations_router)

    @app.get("/api/health")
    async def health():
        return {"status": "ok"}

    return app
