"""Pydantic schemas for request and response models.

Pydantic models validate and serialise data that crosses the boundary
of the API.  They are kept separate from the SQLAlchemy models so the
shape exposed through the API can differ from what is stored.

Field names are snake_case in Python and camelCase on the wire
(``unitPrice``, ``uniqueId``...).  Money is carried as ``Decimal`` and
rendered as a JSON number; see :data:`Money`.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PlainSerializer, field_validator
from pydantic.alias_generators import to_camel

from tabsplit.utils.sanitization import clean_identifier, clean_text
from .enums import AttemptOutcome, ParseSource, SplitPolicy


Money = Annotated[Decimal, PlainSerializer(float, return_type=float, when_used="json")]
"""A cent-exact amount, serialised as a JSON number."""


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class Identity(BaseModel):
    """Authenticated caller resolved from the bearer token."""

    id: int
    email: str


# ---------------------------------------------------------------------------
# Receipt parsing


class LineItem(CamelModel):
    """Normalized line item produced by the model gateway."""

    id: str
    name: str
    unit_price: Money
    quantity: Money
    total_price: Money
    kind: Optional[str] = None


class ParseAttempt(CamelModel):
    """Diagnostic record of one model candidate attempt."""

    model: str
    api_version: str
    outcome: AttemptOutcome
    http_status: Optional[int] = None
    duration_ms: Optional[int] = None
    output_chars: Optional[int] = None
    error_message: Optional[str] = None


class ParseSummary(CamelModel):
    grand_total: Money
    currency: str = "UNKNOWN"


class ParseResult(CamelModel):
    """Line items plus provenance returned by the scan operation.

    ``attempts`` and ``raw_text`` are only populated in debug mode.
    """

    items: List[LineItem]
    summary: ParseSummary
    source: ParseSource
    model: Optional[str] = None
    duration_ms: Optional[int] = None
    attempts: Optional[List[ParseAttempt]] = None
    raw_text: Optional[str] = None


# ---------------------------------------------------------------------------
# Finalize


class ParticipantInfo(CamelModel):
    """Directory identity echoed through allocations and snapshots."""

    unique_id: str
    username: str
    avatar_url: Optional[str] = None


class ParticipantRef(CamelModel):
    """Roster entry supplied by the caller; resolved through the directory."""

    unique_id: str = Field(min_length=1)
    username: Optional[str] = None
    avatar_url: Optional[str] = None

    @field_validator("unique_id", mode="before")
    def clean_unique_id(cls, v):
        return clean_identifier(v) if isinstance(v, str) else v

    @field_validator("username", mode="before")
    def clean_username(cls, v):
        return clean_text(v) if isinstance(v, str) else v


class FinalizeItem(CamelModel):
    """Edited line item with its split instructions."""

    id: str
    name: str = "Item"
    unit_price: Optional[Decimal] = None
    quantity: Optional[Decimal] = None
    total_price: Optional[Decimal] = None
    kind: Optional[str] = None
    split: Optional[SplitPolicy] = None
    assigned_to: Optional[List[str]] = None
    units: Optional[Dict[str, int]] = None

    @field_validator("id", mode="before")
    def clean_id(cls, v):
        return clean_identifier(v) if isinstance(v, str) else v

    @field_validator("name", mode="before")
    def clean_name(cls, v):
        return clean_text(v) if isinstance(v, str) else v

    @field_validator("assigned_to", mode="before")
    def clean_assignees(cls, v):
        if isinstance(v, list):
            return [clean_identifier(i) if isinstance(i, str) else i for i in v]
        return v

    @field_validator("units", mode="before")
    def clean_unit_keys(cls, v):
        if isinstance(v, dict):
            return {clean_identifier(k) if isinstance(k, str) else k: n for k, n in v.items()}
        return v


class FinalizeRequest(CamelModel):
    participants: List[ParticipantRef]
    items: List[FinalizeItem]


class Allocation(CamelModel):
    """One item's cost share assigned to one participant."""

    item_id: str
    participant_id: str
    share_units: Optional[int] = None
    share_ratio: Optional[float] = None
    share_amount: Money


class ItemTotal(CamelModel):
    item_id: str
    name: str
    kind: Optional[str] = None
    total: Money


class ParticipantTotal(CamelModel):
    unique_id: str
    username: str
    avatar_url: Optional[str] = None
    amount_owed: Money


class SettlementTotals(CamelModel):
    grand_total: Money
    by_item: List[ItemTotal]
    by_participant: List[ParticipantTotal]


class SettlementResult(CamelModel):
    totals: SettlementTotals
    allocations: List[Allocation]


class SettlementSnapshot(CamelModel):
    """Stored result of a finalize call."""

    session_id: int
    session_name: Optional[str] = None
    participants: List[ParticipantInfo]
    allocations: List[Allocation]
    totals: SettlementTotals
    finalized_at: datetime


class ParticipantSnapshot(SettlementSnapshot):
    """Snapshot as seen by one participant, with their own share."""

    amount_owed: Money


class HistoryResponse(CamelModel):
    entries: List[ParticipantSnapshot]
