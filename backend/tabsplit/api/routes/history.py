"""Settlement history for the calling participant."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query

from tabsplit.api.dependencies import get_current_user, get_settlement_store
from tabsplit.models.schemas import HistoryResponse
from tabsplit.models.tables import User
from tabsplit.services.settlement_store import SettlementStore

router = APIRouter(prefix="/history", tags=["history"])


@router.get("", response_model=HistoryResponse)
async def list_history(
    limit: Optional[int] = Query(None, ge=1, le=200),
    offset: int = Query(0, ge=0),
    user: User = Depends(get_current_user),
    store: SettlementStore = Depends(get_settlement_store),
) -> HistoryResponse:
    """Snapshots the caller took part in, newest first."""
    entries = await store.list_by_participant(user.unique_id, limit=limit, offset=offset)
    return HistoryResponse(entries=entries)
