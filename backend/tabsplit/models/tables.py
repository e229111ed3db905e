"""SQLAlchemy ORM models for the receipt splitting API.

``users`` and ``sessions`` mirror records owned by the account and
session management services; this service only reads them (and stamps
parse timings on sessions).  ``settlement_snapshots`` holds one
finalized snapshot per session and ``settlement_participants`` indexes
which participants appear in which snapshot so history queries do not
have to scan JSON payloads.

If you extend or modify these models remember to recreate the tables
with the ``init_db`` helper during development.
"""

from __future__ import annotations

import datetime as dt

from sqlalchemy import (
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    JSON,
    Numeric,
    String,
)
from sqlalchemy.orm import relationship

from tabsplit.core.database import Base
from .enums import SessionStatus


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class User(Base):
    """Directory entry for a person who can take part in a split."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String, unique=True, nullable=False)
    username = Column(String, nullable=False)
    unique_id = Column(String, unique=True, nullable=False, index=True)
    avatar_url = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)


class ReceiptSession(Base):
    """A receipt split session created by one user, optionally within a group."""

    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, index=True)
    creator_id = Column(Integer, ForeignKey("users.id"), nullable=False)
    group_id = Column(Integer, nullable=True)
    name = Column(String, nullable=True)
    status = Column(Enum(SessionStatus), default=SessionStatus.ACTIVE, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    # Scan timings
    parse_accepted_at = Column(DateTime(timezone=True), nullable=True)
    parse_request_sent_at = Column(DateTime(timezone=True), nullable=True)
    parse_response_at = Column(DateTime(timezone=True), nullable=True, index=True)
    parse_result_returned_at = Column(DateTime(timezone=True), nullable=True)

    creator = relationship("User")
    snapshot = relationship("SettlementSnapshotRecord", back_populates="session", uselist=False)


class SettlementSnapshotRecord(Base):
    """Finalized per-session split: participants, allocations and totals."""

    __tablename__ = "settlement_snapshots"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("sessions.id", ondelete="CASCADE"), unique=True, nullable=False)
    creator_id = Column(Integer, ForeignKey("users.id", ondelete="SET NULL"), nullable=True, index=True)
    session_name = Column(String, nullable=True)
    participants = Column(JSON, nullable=False)
    allocations = Column(JSON, nullable=False)
    totals = Column(JSON, nullable=False)
    grand_total = Column(Numeric(14, 2), nullable=False, default=0)
    participant_unique_ids = Column(JSON, nullable=False, default=list)
    finalized_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    session = relationship("ReceiptSession", back_populates="snapshot")
    members = relationship(
        "SettlementParticipant",
        back_populates="snapshot",
        cascade="all, delete-orphan",
    )


class SettlementParticipant(Base):
    """Membership row: one participant of one snapshot and what they owe."""

    __tablename__ = "settlement_participants"

    snapshot_id = Column(
        Integer,
        ForeignKey("settlement_snapshots.id", ondelete="CASCADE"),
        primary_key=True,
    )
    unique_id = Column(String, primary_key=True, index=True)
    amount_owed = Column(Numeric(14, 2), nullable=False, default=0)

    snapshot = relationship("SettlementSnapshotRecord", back_populates="members")
