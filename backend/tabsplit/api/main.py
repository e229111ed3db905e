"""Entry point for the FastAPI application.

This module constructs the FastAPI app, includes all routers and
sets up startup and shutdown. When run with uvicorn it initialises the
database and loads configuration from ``tabsplit.core.config``.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from tabsplit.api.error_handlers import register_exception_handlers
from tabsplit.api.routes.history import router as history_router
from tabsplit.api.routes.sessions import router as sessions_router
from tabsplit.core.config import settings
from tabsplit.core.database import dispose_engine, get_db_debug_info, init_db
from tabsplit.core.observability import init_sentry

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage application lifecycle."""
    logger.info("Starting up...")
    if init_sentry("api"):
        logger.info("Sentry SDK initialized (api)")
    await init_db()
    yield
    logger.info("Shutting down...")
    await dispose_engine()


def create_app() -> FastAPI:
    app = FastAPI(
        title=f"{settings.PROJECT_NAME} API",
        version="1.0.0",
        lifespan=lifespan,
    )
    register_exception_handlers(app)
    app.include_router(sessions_router)
    app.include_router(history_router)

    @app.api_route("/health", methods=["GET", "HEAD"])
    async def health_check():
        """Health check endpoint (supports GET & HEAD)."""
        return {"status": "healthy", "environment": settings.ENVIRONMENT}

    @app.get("/debug/db")
    async def db_debug():
        """Return non-sensitive DB diagnostics (for development)."""
        return get_db_debug_info()

    return app


app = create_app()
