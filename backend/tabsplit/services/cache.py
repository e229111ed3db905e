"""Per-session processing guard.

A scan holds a short-lived lock for its session so a second scan for the
same session is rejected with 409 instead of racing the first one.

Two backends:
- ``memory``: a process-local set guarded by an ``asyncio.Lock``; fine for a
  single worker and for tests.
- ``redis``: ``SET key 1 NX EX ttl`` / ``DEL key`` so the lock is shared by
  every worker.  The TTL releases a lock left behind by a crashed worker.
"""
from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional, Protocol, Set

from redis import asyncio as aioredis

from tabsplit.core.config import settings
from tabsplit.core.errors import ConflictError

logger = logging.getLogger(__name__)


def processing_key(session_id: int) -> str:
    return f"scan:processing:{session_id}"


class ProcessingGuard(Protocol):
    async def acquire(self, session_id: int) -> bool:
        ...

    async def release(self, session_id: int) -> None:
        ...


class MemoryProcessingGuard:
    def __init__(self) -> None:
        self._active: Set[int] = set()
        self._lock = asyncio.Lock()

    async def acquire(self, session_id: int) -> bool:
        async with self._lock:
            if session_id in self._active:
                return False
            self._active.add(session_id)
            return True

    async def release(self, session_id: int) -> None:
        async with self._lock:
            self._active.discard(session_id)


class RedisProcessingGuard:
    def __init__(self, client, ttl: int = 120) -> None:
        self._client = client
        self.ttl = ttl

    @classmethod
    def from_url(cls, url: str, ttl: int = 120) -> "RedisProcessingGuard":
        return cls(aioredis.from_url(url, decode_responses=True), ttl=ttl)

    async def acquire(self, session_id: int) -> bool:
        ok = await self._client.set(processing_key(session_id), "1", ex=self.ttl, nx=True)
        return bool(ok)

    async def release(self, session_id: int) -> None:
        await self._client.delete(processing_key(session_id))


@asynccontextmanager
async def processing(guard: ProcessingGuard, session_id: int) -> AsyncIterator[None]:
    """Hold the guard for ``session_id``; raise ``ConflictError`` if taken."""
    if not await guard.acquire(session_id):
        logger.info("[scan] session %s already processing", session_id)
        raise ConflictError("A scan is already in progress for this session")
    try:
        yield
    finally:
        await guard.release(session_id)


_guard: Optional[ProcessingGuard] = None


def get_processing_guard() -> ProcessingGuard:
    """Return the process-wide guard for ``PROCESSING_GUARD_BACKEND``."""
    global _guard
    if _guard is None:
        backend = (settings.PROCESSING_GUARD_BACKEND or "memory").strip().lower()
        if backend == "redis":
            _guard = RedisProcessingGuard.from_url(settings.REDIS_URL, ttl=settings.PROCESSING_GUARD_TTL)
        elif backend == "memory":
            _guard = MemoryProcessingGuard()
        else:
            raise ValueError(f"Unknown PROCESSING_GUARD_BACKEND: {backend!r}")
    return _guard
