"""Common dependencies for FastAPI routes.

Database sessions, the authenticated caller, the extraction service and
the per-session processing guard.  Tests replace any of these through
``app.dependency_overrides``.
"""

from __future__ import annotations

from typing import AsyncGenerator, Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from tabsplit.core.database import get_db
from tabsplit.core.errors import AuthenticationError
from tabsplit.core.security import get_current_identity
from tabsplit.models.schemas import Identity
from tabsplit.models.tables import User
from tabsplit.services.allocation_service import AllocationService
from tabsplit.services.cache import ProcessingGuard, get_processing_guard
from tabsplit.services.directory import get_user
from tabsplit.services.extraction_service import ExtractionService
from tabsplit.services.provider_chain import ModelHintCache
from tabsplit.services.settlement_store import SettlementStore


# -----------------------------------------------------------------------------
# Shared resources

_hint_cache = ModelHintCache()
_extraction_service: Optional[ExtractionService] = None


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """Alias for `get_db` to be imported in routers."""
    async for session in get_db():
        yield session


def get_extraction_service() -> ExtractionService:
    """Return the process-wide extraction service.

    All requests share one :class:`ModelHintCache` so the last successful
    model is tried first.
    """
    global _extraction_service
    if _extraction_service is None:
        _extraction_service = ExtractionService.from_settings(hint_cache=_hint_cache)
    return _extraction_service


def get_guard() -> ProcessingGuard:
    return get_processing_guard()


def get_settlement_store(db: AsyncSession = Depends(get_db_session)) -> SettlementStore:
    return SettlementStore(db)


def get_allocation_service(
    db: AsyncSession = Depends(get_db_session),
    store: SettlementStore = Depends(get_settlement_store),
) -> AllocationService:
    return AllocationService(db, store)


async def get_current_user(
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db_session),
) -> User:
    """Directory record of the caller; 401 if the token names no known user."""
    user = await get_user(db, identity.id)
    if user is None:
        raise AuthenticationError("Unknown user")
    return user
