"""Allocation engine.

Turns edited line items plus a participant roster into a cent-exact
settlement.  The pure :func:`allocate` does the arithmetic;
:class:`AllocationService` wraps it with authorization, directory
resolution and persistence.

Invariants guaranteed by :func:`allocate`:

* for every item the allocated shares sum exactly to the item total;
* ``grand_total == sum(by_item) == sum(by_participant)``, each summed with
  cent rounding at every step.

Splits:

``equal``
    Assignees are ordered by participant id.  Everyone but the last gets
    ``round(total / N, 2)``; the last gets what remains.
    With tiny totals the rounded share can exceed an even split, so the
    last share may be negative (0.04 over six people gives five 0.01 and
    one -0.01); the item still sums exactly.
``count``
    Participants with units get ``round(units * unit_price, 2)``.  When the
    unit price has more than two decimals (derived from a total) the last
    participant absorbs the rounding drift.

Input problems raise :class:`~tabsplit.core.errors.ValidationError`
before anything is allocated.
"""

from __future__ import annotations

import datetime as dt
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from tabsplit.core.errors import ForbiddenError, ValidationError
from tabsplit.core.observability import sentry_breadcrumb
from tabsplit.models.enums import SplitPolicy
from tabsplit.models.schemas import (
    Allocation,
    FinalizeItem,
    Identity,
    ItemTotal,
    ParticipantInfo,
    ParticipantRef,
    ParticipantTotal,
    SettlementResult,
    SettlementSnapshot,
    SettlementTotals,
)
from tabsplit.services.directory import get_session, lookup_participants
from tabsplit.services.normalization import ZERO, round_money, sum_money
from tabsplit.services.settlement_store import SettlementStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _ResolvedItem:
    item: FinalizeItem
    unit_price: Decimal
    quantity: Decimal
    total: Decimal
    policy: SplitPolicy


def _resolve_item(item: FinalizeItem) -> _ResolvedItem:
    quantity = item.quantity
    if quantity is None or quantity <= 0:
        raise ValidationError(f"Item {item.id}: quantity must be positive")

    unit_price = item.unit_price
    if unit_price is not None and unit_price > 0:
        total = round_money(unit_price * quantity)
    elif item.total_price is not None and item.total_price > 0:
        total = round_money(item.total_price)
        unit_price = item.total_price / quantity
    else:
        raise ValidationError(f"Item {item.id}: unit price must be positive")

    policy = item.split
    if policy is None:
        policy = SplitPolicy.COUNT if item.units is not None else SplitPolicy.EQUAL
    return _ResolvedItem(item=item, unit_price=unit_price, quantity=quantity, total=total, policy=policy)


def _split_equal(resolved: _ResolvedItem, roster: Dict[str, ParticipantInfo]) -> List[Allocation]:
    item = resolved.item
    assignees = sorted(set(item.assigned_to or []))
    if not assignees:
        raise ValidationError(f"Item {item.id}: equal split needs at least one assignee")
    unknown = [pid for pid in assignees if pid not in roster]
    if unknown:
        raise ValidationError(f"Item {item.id}: unknown participants", details=unknown)

    count = len(assignees)
    ratio = 1 / count
    share = round_money(resolved.unit_price * resolved.quantity / count)
    allocations: List[Allocation] = []
    allocated = ZERO
    for index, pid in enumerate(assignees):
        if index == count - 1:
            amount = round_money(resolved.total - allocated)
        else:
            amount = share
            allocated = round_money(allocated + amount)
        allocations.append(Allocation(item_id=item.id, participant_id=pid, share_ratio=ratio, share_amount=amount))
    return allocations


def _split_count(resolved: _ResolvedItem, roster: Dict[str, ParticipantInfo]) -> List[Allocation]:
    item = resolved.item
    units = item.units or {}
    if not units:
        raise ValidationError(f"Item {item.id}: count split needs a units map")
    unknown = sorted(pid for pid in units if pid not in roster)
    if unknown:
        raise ValidationError(f"Item {item.id}: unknown participants", details=unknown)
    if any(u < 0 for u in units.values()):
        raise ValidationError(f"Item {item.id}: units must be non-negative")
    if Decimal(sum(units.values())) != resolved.quantity:
        raise ValidationError(
            f"Item {item.id}: units sum to {sum(units.values())}, expected quantity {resolved.quantity}"
        )

    holders = sorted(pid for pid, u in units.items() if u > 0)
    exact_price = resolved.unit_price == round_money(resolved.unit_price)
    allocations: List[Allocation] = []
    allocated = ZERO
    for index, pid in enumerate(holders):
        if not exact_price and index == len(holders) - 1:
            amount = round_money(resolved.total - allocated)
        else:
            amount = round_money(units[pid] * resolved.unit_price)
            allocated = round_money(allocated + amount)
        allocations.append(Allocation(item_id=item.id, participant_id=pid, share_units=units[pid], share_amount=amount))
    return allocations


def allocate(participants: List[ParticipantInfo], items: List[FinalizeItem]) -> SettlementResult:
    """Split ``items`` across ``participants``; all-or-nothing."""
    if not participants:
        raise ValidationError("At least one participant is required")
    if not items:
        raise ValidationError("At least one item is required")

    roster: Dict[str, ParticipantInfo] = {}
    for p in participants:
        if p.unique_id in roster:
            raise ValidationError(f"Duplicate participant {p.unique_id}")
        roster[p.unique_id] = p
    seen_items = set()
    for it in items:
        if it.id in seen_items:
            raise ValidationError(f"Duplicate item id {it.id}")
        seen_items.add(it.id)

    resolved = [_resolve_item(it) for it in items]
    allocations: List[Allocation] = []
    for r in resolved:
        if r.policy == SplitPolicy.COUNT:
            allocations.extend(_split_count(r, roster))
        else:
            allocations.extend(_split_equal(r, roster))

    by_item = [
        ItemTotal(
            item_id=r.item.id,
            name=r.item.name,
            kind=r.item.kind,
            total=sum_money(a.share_amount for a in allocations if a.item_id == r.item.id),
        )
        for r in resolved
    ]
    by_participant = [
        ParticipantTotal(
            unique_id=p.unique_id,
            username=p.username,
            avatar_url=p.avatar_url,
            amount_owed=sum_money(a.share_amount for a in allocations if a.participant_id == p.unique_id),
        )
        for p in participants
    ]
    totals = SettlementTotals(
        grand_total=sum_money(t.total for t in by_item),
        by_item=by_item,
        by_participant=by_participant,
    )
    return SettlementResult(totals=totals, allocations=allocations)


class AllocationService:
    """Finalize a session: authorize, resolve the roster, allocate, persist."""

    def __init__(self, db: AsyncSession, store: Optional[SettlementStore] = None) -> None:
        self.db = db
        self.store = store or SettlementStore(db)

    async def resolve_roster(self, refs: List[ParticipantRef]) -> List[ParticipantInfo]:
        ids = [r.unique_id for r in refs]
        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise ValidationError("Duplicate participants", details=duplicates)
        found = await lookup_participants(self.db, ids)
        missing = [i for i in ids if i not in found]
        if missing:
            raise ValidationError("Unknown participants", details=missing)
        return [found[i] for i in ids]

    async def finalize(
        self,
        session_id: int,
        identity: Identity,
        participants: List[ParticipantRef],
        items: List[FinalizeItem],
    ) -> SettlementResult:
        session = await get_session(self.db, session_id)
        if session.creator_id != identity.id:
            raise ForbiddenError("Only the session creator can finalize")
        if not participants:
            raise ValidationError("At least one participant is required")

        roster = await self.resolve_roster(participants)
        result = allocate(roster, items)

        snapshot = SettlementSnapshot(
            session_id=session.id,
            session_name=session.name,
            participants=roster,
            allocations=result.allocations,
            totals=result.totals,
            finalized_at=dt.datetime.now(dt.timezone.utc),
        )
        await self.store.upsert(session.id, snapshot, creator_id=session.creator_id)

        logger.info(
            "[finalize] session_id=%s items=%d participants=%d grand_total=%s",
            session.id,
            len(items),
            len(roster),
            result.totals.grand_total,
        )
        sentry_breadcrumb(
            category="finalize",
            message="session.finalized",
            data={"session_id": session.id, "grand_total": str(result.totals.grand_total)},
        )
        return result
