"""Database configuration and session management.

This module builds the asynchronous SQLAlchemy engine and session
factory for the application.  The engine is created lazily on first use
so that importing models (for example from tests that build their own
in-memory engine) never requires a reachable database.  Postgres URLs
are normalised to the async ``psycopg`` driver; plain ``sqlite`` URLs are
upgraded to ``aiosqlite``.
"""

from __future__ import annotations

from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from tabsplit.core.config import get_database_url, settings

_engine: Optional[AsyncEngine] = None
_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


# Declarative base
Base = declarative_base()


def normalize_database_url(url: str) -> str:
    """Return ``url`` rewritten for an async driver.

    - ``sqlite`` becomes ``sqlite+aiosqlite``.
    - ``postgres``/``postgresql``/``postgresql+psycopg2``/``postgresql+asyncpg``
      become ``postgresql+psycopg`` and default to ``sslmode=require``.
    """
    url_obj = make_url(url)
    driver = url_obj.drivername or ""
    if driver == "sqlite":
        url_obj = url_obj.set(drivername="sqlite+aiosqlite")
    elif driver in {"postgresql", "postgres", "postgresql+psycopg2", "postgresql+asyncpg"}:
        q = dict(url_obj.query or {})
        if not q.get("sslmode"):
            q["sslmode"] = "require"
        url_obj = url_obj.set(drivername="postgresql+psycopg", query=q)
    return url_obj.render_as_string(hide_password=False)


def build_engine(url: str, **kwargs: Any) -> AsyncEngine:
    """Create an async engine for ``url`` with the application defaults."""
    engine_kwargs: dict[str, Any] = dict(echo=False, pool_pre_ping=True)
    engine_kwargs.update(kwargs)
    return create_async_engine(normalize_database_url(url), **engine_kwargs)


def get_engine() -> AsyncEngine:
    """Return the process-wide engine, creating it on first use."""
    global _engine
    if _engine is None:
        _engine = build_engine(get_database_url())
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the process-wide session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = async_sessionmaker(
            get_engine(),
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
    return _session_factory


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency that yields a database session.

    This function is intended for FastAPI dependency injection.  Each
    session is scoped to the request and closed after use.
    """
    async with get_session_factory()() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create all tables defined on the declarative ``Base``.

    Typically called during application startup; tests pass their own
    in-memory engine.
    """
    target = engine or get_engine()
    async with target.begin() as conn:
        # Import all models to ensure metadata is populated
        from tabsplit.models import tables  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    """Dispose the process-wide engine (application shutdown)."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _session_factory = None


def get_db_debug_info() -> Dict[str, Any]:
    """Return non-sensitive information about the configured database."""
    info: Dict[str, Any] = {"environment": settings.ENVIRONMENT or "development"}
    try:
        url_obj = make_url(normalize_database_url(get_database_url()))
        info.update(
            {
                "drivername": url_obj.drivername,
                "host": url_obj.host,
                "database": url_obj.database,
                "url": url_obj.render_as_string(hide_password=True),
            }
        )
    except Exception as ex:
        info["error"] = f"unable to parse database url: {ex}"
    return info
