"""Persistence for finalized settlement snapshots.

One snapshot row per session (``session_id`` is unique).  Participant
membership is kept in ``settlement_participants`` together with each
participant's own amount so history queries are a plain indexed join.

Snapshot payloads (participants, allocations, totals) are stored as JSON
in their camelCase wire shape.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tabsplit.core.errors import NotFoundError, PersistenceError
from tabsplit.models.schemas import ParticipantSnapshot, SettlementSnapshot
from tabsplit.models.tables import SettlementParticipant, SettlementSnapshotRecord

logger = logging.getLogger(__name__)


def _insert_for(dialect_name: str):
    """Dialect ``insert`` construct that supports ``on_conflict_do_update``."""
    if dialect_name == "postgresql":
        return postgresql.insert
    if dialect_name == "sqlite":
        return sqlite.insert
    raise ValueError(f"Unsupported database dialect for snapshot upsert: {dialect_name}")


def _dump(value) -> object:
    if isinstance(value, list):
        return [v.model_dump(mode="json", by_alias=True, exclude_none=True) for v in value]
    return value.model_dump(mode="json", by_alias=True, exclude_none=True)


def record_to_snapshot(record: SettlementSnapshotRecord) -> SettlementSnapshot:
    return SettlementSnapshot(
        session_id=record.session_id,
        session_name=record.session_name,
        participants=record.participants,
        allocations=record.allocations,
        totals=record.totals,
        finalized_at=record.finalized_at,
    )


class SettlementStore:
    """Create-or-replace and query settlement snapshots."""

    def __init__(self, db: AsyncSession) -> None:
        self.db = db

    async def _find(self, session_id: int) -> Optional[SettlementSnapshotRecord]:
        stmt = select(SettlementSnapshotRecord).where(SettlementSnapshotRecord.session_id == session_id)
        return (await self.db.execute(stmt)).scalar_one_or_none()

    async def upsert(
        self,
        session_id: int,
        snapshot: SettlementSnapshot,
        creator_id: Optional[int] = None,
    ) -> SettlementSnapshotRecord:
        """Write ``snapshot`` for ``session_id``, replacing any previous one.

        The snapshot row is written with ``INSERT ... ON CONFLICT (session_id)
        DO UPDATE`` so concurrent finalizes of the same session never trip the
        unique constraint; the last one to commit wins.  The snapshot row and
        its membership rows change in a single transaction; on failure it is
        rolled back and the previously committed snapshot is left untouched.
        """
        values = {
            "creator_id": creator_id,
            "session_name": snapshot.session_name,
            "participants": _dump(snapshot.participants),
            "allocations": _dump(snapshot.allocations),
            "totals": _dump(snapshot.totals),
            "grand_total": snapshot.totals.grand_total,
            "participant_unique_ids": [p.unique_id for p in snapshot.participants],
            "finalized_at": snapshot.finalized_at,
        }
        try:
            insert = _insert_for(self.db.get_bind().dialect.name)
            stmt = insert(SettlementSnapshotRecord).values(session_id=session_id, **values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["session_id"],
                set_={**values, "updated_at": datetime.now(timezone.utc)},
            )
            await self.db.execute(stmt)

            record = (
                await self.db.execute(
                    select(SettlementSnapshotRecord)
                    .where(SettlementSnapshotRecord.session_id == session_id)
                    .execution_options(populate_existing=True)
                )
            ).scalar_one()

            stale = await self.db.execute(
                select(SettlementParticipant).where(SettlementParticipant.snapshot_id == record.id)
            )
            for member in stale.scalars().all():
                await self.db.delete(member)
            await self.db.flush()
            self.db.add_all(
                [
                    SettlementParticipant(
                        snapshot_id=record.id,
                        unique_id=p.unique_id,
                        amount_owed=p.amount_owed,
                    )
                    for p in snapshot.totals.by_participant
                ]
            )
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.exception("[store] snapshot write failed session_id=%s", session_id)
            raise PersistenceError("Failed to persist settlement snapshot", details=str(exc)) from exc
        return record

    async def get_by_session(self, session_id: int) -> SettlementSnapshot:
        record = await self._find(session_id)
        if record is None:
            raise NotFoundError(f"No settlement for session {session_id}")
        return record_to_snapshot(record)

    async def is_participant(self, session_id: int, unique_id: str) -> bool:
        stmt = (
            select(SettlementParticipant.unique_id)
            .join(SettlementSnapshotRecord, SettlementParticipant.snapshot_id == SettlementSnapshotRecord.id)
            .where(SettlementSnapshotRecord.session_id == session_id, SettlementParticipant.unique_id == unique_id)
        )
        return (await self.db.execute(stmt)).first() is not None

    async def list_by_participant(
        self,
        unique_id: str,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[ParticipantSnapshot]:
        """Snapshots that include ``unique_id``, newest first.

        ``limit=None`` returns every snapshot.  Each entry carries the
        participant's own ``amount_owed``.
        """
        stmt = (
            select(SettlementSnapshotRecord, SettlementParticipant.amount_owed)
            .join(SettlementParticipant, SettlementParticipant.snapshot_id == SettlementSnapshotRecord.id)
            .where(SettlementParticipant.unique_id == unique_id)
            .order_by(SettlementSnapshotRecord.finalized_at.desc(), SettlementSnapshotRecord.id.desc())
        )
        if offset:
            stmt = stmt.offset(offset)
        if limit is not None:
            stmt = stmt.limit(limit)
        rows = (await self.db.execute(stmt)).all()
        return [
            ParticipantSnapshot(**record_to_snapshot(record).model_dump(), amount_owed=amount_owed)
            for record, amount_owed in rows
        ]
