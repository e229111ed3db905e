"""Lookups against the session and participant directory tables.

Sessions and users are owned by other services; these helpers only read
them and translate misses into domain errors.
"""

from __future__ import annotations

from typing import Dict, Iterable, Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from tabsplit.core.config import settings
from tabsplit.core.errors import NotFoundError
from tabsplit.models.schemas import ParticipantInfo
from tabsplit.models.tables import ReceiptSession, User


async def get_session(db: AsyncSession, session_id: int) -> ReceiptSession:
    session = await db.get(ReceiptSession, session_id)
    if session is None:
        raise NotFoundError(f"Session {session_id} not found")
    return session


async def get_user(db: AsyncSession, user_id: int) -> Optional[User]:
    return await db.get(User, user_id)


def to_participant_info(user: User) -> ParticipantInfo:
    return ParticipantInfo(
        unique_id=user.unique_id,
        username=user.username,
        avatar_url=user.avatar_url or settings.DEFAULT_AVATAR_URL,
    )


async def lookup_participants(db: AsyncSession, unique_ids: Iterable[str]) -> Dict[str, ParticipantInfo]:
    """Resolve ``unique_ids`` to directory entries.

    Ids the directory does not know are simply absent from the result;
    callers decide whether that is an error.
    """
    wanted = sorted(set(unique_ids))
    if not wanted:
        return {}
    rows = (await db.execute(select(User).where(User.unique_id.in_(wanted)))).scalars().all()
    return {u.unique_id: to_participant_info(u) for u in rows}
