"""API routes for scanning, finalizing and reading a session's settlement."""

from __future__ import annotations

import datetime as dt
import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from tabsplit.api.dependencies import (
    get_allocation_service,
    get_db_session,
    get_extraction_service,
    get_guard,
    get_settlement_store,
)
from tabsplit.core.config import settings
from tabsplit.core.errors import ForbiddenError, ValidationError
from tabsplit.core.security import get_current_identity
from tabsplit.models.schemas import (
    FinalizeRequest,
    Identity,
    ParseResult,
    SettlementResult,
    SettlementSnapshot,
)
from tabsplit.services.allocation_service import AllocationService
from tabsplit.services.cache import ProcessingGuard, processing
from tabsplit.services.directory import get_session, get_user
from tabsplit.services.extraction_service import ExtractionService, ParseTimings
from tabsplit.services.settlement_store import SettlementStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])


def _now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


@router.post("/{session_id}/scan", response_model=ParseResult, response_model_exclude_none=True)
async def scan_receipt(
    session_id: int,
    file: UploadFile = File(...),
    language: Optional[str] = Form(None),
    debug: Optional[bool] = Query(None),
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db_session),
    service: ExtractionService = Depends(get_extraction_service),
    guard: ProcessingGuard = Depends(get_guard),
) -> ParseResult:
    """Extract line items from a receipt photo for the session's creator."""
    session = await get_session(db, session_id)
    if session.creator_id != identity.id:
        raise ForbiddenError("Only the session creator can scan receipts")

    if not file.content_type or not file.content_type.startswith("image/"):
        raise ValidationError("Only image files are allowed")
    contents = await file.read()
    if not contents:
        raise ValidationError("Empty file")
    if len(contents) > settings.MAX_UPLOAD_SIZE:
        raise ValidationError(f"File too large. Maximum size is {settings.MAX_UPLOAD_SIZE // (1024 * 1024)}MB")

    async with processing(guard, session.id):
        session.parse_accepted_at = _now()
        timings = ParseTimings()
        result = await service.parse_receipt(
            contents,
            file.content_type,
            language_hint=language,
            context_label=session.name,
            debug=debug,
            timings=timings,
        )
        session.parse_request_sent_at = timings.request_sent_at
        session.parse_response_at = timings.response_at
        session.parse_result_returned_at = _now()
        await db.commit()

    logger.info(
        "[scan] session_id=%s source=%s items=%d model=%s",
        session.id,
        result.source.value,
        len(result.items),
        result.model,
    )
    return result


@router.post("/{session_id}/finalize", response_model=SettlementResult)
async def finalize_session(
    session_id: int,
    payload: FinalizeRequest,
    identity: Identity = Depends(get_current_identity),
    service: AllocationService = Depends(get_allocation_service),
) -> SettlementResult:
    """Allocate the edited items and persist the settlement snapshot."""
    return await service.finalize(session_id, identity, payload.participants, payload.items)


@router.get("/{session_id}/settlement", response_model=SettlementSnapshot)
async def get_settlement(
    session_id: int,
    identity: Identity = Depends(get_current_identity),
    db: AsyncSession = Depends(get_db_session),
    store: SettlementStore = Depends(get_settlement_store),
) -> SettlementSnapshot:
    """Stored snapshot; visible to the creator and the session's participants."""
    session = await get_session(db, session_id)
    if session.creator_id != identity.id:
        user = await get_user(db, identity.id)
        if user is None or not await store.is_participant(session.id, user.unique_id):
            raise ForbiddenError("Not a participant of this session")
    return await store.get_by_session(session.id)
