from __future__ import annotations

import datetime as dt

import pytest
from jose import jwt

from tabsplit.core.errors import AuthenticationError, ConflictError
from tabsplit.core.security import decode_access_token
from tabsplit.services import cache
from tabsplit.services.cache import MemoryProcessingGuard, RedisProcessingGuard, processing


@pytest.mark.asyncio
async def test_memory_guard_rejects_second_scan_for_same_session():
    guard = MemoryProcessingGuard()
    async with processing(guard, 7):
        with pytest.raises(ConflictError):
            async with processing(guard, 7):
                pass
        # other sessions are independent
        async with processing(guard, 8):
            pass
    # released on exit
    async with processing(guard, 7):
        pass


@pytest.mark.asyncio
async def test_guard_released_when_body_raises():
    guard = MemoryProcessingGuard()
    with pytest.raises(RuntimeError):
        async with processing(guard, 1):
            raise RuntimeError("provider blew up")
    assert await guard.acquire(1) is True


class FakeRedis:
    def __init__(self):
        self.store = {}
        self.set_calls = []

    async def set(self, key, value, ex=None, nx=False):
        self.set_calls.append({"key": key, "ex": ex, "nx": nx})
        if nx and key in self.store:
            return None
        self.store[key] = value
        return True

    async def delete(self, key):
        self.store.pop(key, None)
        return 1


@pytest.mark.asyncio
async def test_redis_guard_uses_set_nx_with_ttl():
    client = FakeRedis()
    guard = RedisProcessingGuard(client, ttl=30)
    assert await guard.acquire(5) is True
    assert await guard.acquire(5) is False
    assert client.set_calls[0] == {"key": "scan:processing:5", "ex": 30, "nx": True}
    await guard.release(5)
    assert await guard.acquire(5) is True


def test_get_processing_guard_selects_backend(monkeypatch):
    from tabsplit.core import config as cfg

    monkeypatch.setattr(cache, "_guard", None)
    monkeypatch.setattr(cfg.settings, "PROCESSING_GUARD_BACKEND", "memory")
    assert isinstance(cache.get_processing_guard(), MemoryProcessingGuard)

    monkeypatch.setattr(cache, "_guard", None)
    monkeypatch.setattr(cfg.settings, "PROCESSING_GUARD_BACKEND", "redis")
    assert isinstance(cache.get_processing_guard(), RedisProcessingGuard)

    monkeypatch.setattr(cache, "_guard", None)
    monkeypatch.setattr(cfg.settings, "PROCESSING_GUARD_BACKEND", "etcd")
    with pytest.raises(ValueError):
        cache.get_processing_guard()


def test_decode_token_accepts_numeric_string_id(make_token):
    identity = decode_access_token(make_token("42", email="a@example.com"))
    assert identity.id == 42
    assert identity.email == "a@example.com"


def test_decode_token_accepts_int_id(make_token):
    assert decode_access_token(make_token(7)).id == 7


@pytest.mark.parametrize("bad_id", [None, "abc", True, 1.5])
def test_decode_token_rejects_bad_id(make_token, bad_id):
    with pytest.raises(AuthenticationError):
        decode_access_token(make_token(bad_id))


def test_decode_token_rejects_wrong_signature(jwt_secret):
    token = jwt.encode({"id": 1, "email": "a@example.com"}, "other-secret", algorithm="HS256")
    with pytest.raises(AuthenticationError) as exc:
        decode_access_token(token)
    assert exc.value.message == "Invalid token"


def test_decode_token_rejects_expired(make_token):
    past = int((dt.datetime.now(dt.timezone.utc) - dt.timedelta(hours=1)).timestamp())
    with pytest.raises(AuthenticationError) as exc:
        decode_access_token(make_token(1, exp=past))
    assert exc.value.message == "Token expired"


def test_decode_token_requires_email(jwt_secret):
    token = jwt.encode({"id": 1}, jwt_secret, algorithm="HS256")
    with pytest.raises(AuthenticationError):
        decode_access_token(token)
