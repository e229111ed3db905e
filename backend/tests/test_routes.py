from __future__ import annotations

import httpx
import pytest
from fastapi import FastAPI
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from tabsplit.api.dependencies import get_db_session, get_extraction_service, get_guard
from tabsplit.api.error_handlers import register_exception_handlers
from tabsplit.api.routes.history import router as history_router
from tabsplit.api.routes.sessions import router as sessions_router
from tabsplit.core.database import Base
from tabsplit.models.tables import ReceiptSession, User
from tabsplit.services.cache import MemoryProcessingGuard
from tabsplit.services.extraction_service import ExtractionService


async def _session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return async_sessionmaker(engine, expire_on_commit=False)


async def _seed(Session):
    async with Session() as session:
        owner = User(email="ann@example.com", username="ann", unique_id="ann#1")
        bob = User(email="bob@example.com", username="bob", unique_id="bob#2")
        eve = User(email="eve@example.com", username="eve", unique_id="eve#3")
        session.add_all([owner, bob, eve])
        await session.commit()
        rs = ReceiptSession(creator_id=owner.id, name="Brunch")
        session.add(rs)
        await session.commit()
        return owner.id, bob.id, eve.id, rs.id


def _mk_app(Session, guard=None):
    app = FastAPI()
    register_exception_handlers(app)
    app.include_router(sessions_router)
    app.include_router(history_router)

    async def _db():
        async with Session() as session:
            yield session

    service = ExtractionService(provider=None)
    app.dependency_overrides[get_db_session] = _db
    app.dependency_overrides[get_extraction_service] = lambda: service
    app.dependency_overrides[get_guard] = lambda: guard or MemoryProcessingGuard()
    return app


def _client(app):
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


FINALIZE_BODY = {
    "participants": [{"uniqueId": "ann#1"}, {"uniqueId": "bob#2", "username": "ignored"}],
    "items": [
        {"id": "1", "name": "Pancakes", "unitPrice": 2.5, "quantity": 3, "split": "count", "units": {"ann#1": 1, "bob#2": 2}},
        {"id": "2", "name": "Coffee pot", "unitPrice": 4, "quantity": 1, "assignedTo": ["bob#2", "ann#1"]},
        {"id": "TIP", "name": "Tip", "totalPrice": 1.25, "quantity": 1, "kind": "tip", "assignedTo": ["ann#1"]},
    ],
}


@pytest.mark.asyncio
async def test_finalize_then_read_settlement_and_history(make_token):
    Session = await _session_factory()
    owner_id, bob_id, eve_id, session_id = await _seed(Session)
    app = _mk_app(Session)

    async with _client(app) as client:
        resp = await client.post(f"/sessions/{session_id}/finalize", json=FINALIZE_BODY, headers=_auth(make_token(owner_id)))
        assert resp.status_code == 200, resp.text
        data = resp.json()
        assert data["totals"]["grandTotal"] == 12.75
        owed = {p["uniqueId"]: p["amountOwed"] for p in data["totals"]["byParticipant"]}
        assert owed == {"ann#1": 5.75, "bob#2": 7.0}
        assert data["totals"]["byParticipant"][1]["username"] == "bob"
        assert [t["itemId"] for t in data["totals"]["byItem"]] == ["1", "2", "TIP"]
        count_alloc = [a for a in data["allocations"] if a["itemId"] == "1"]
        assert {a["participantId"]: a["shareUnits"] for a in count_alloc} == {"ann#1": 1, "bob#2": 2}

        as_bob = await client.get(f"/sessions/{session_id}/settlement", headers=_auth(make_token(bob_id)))
        assert as_bob.status_code == 200
        assert as_bob.json()["sessionName"] == "Brunch"
        assert as_bob.json()["sessionId"] == session_id

        as_eve = await client.get(f"/sessions/{session_id}/settlement", headers=_auth(make_token(eve_id)))
        assert as_eve.status_code == 403

        history = await client.get("/history", params={"limit": 5}, headers=_auth(make_token(str(bob_id))))
        assert history.status_code == 200
        entries = history.json()["entries"]
        assert len(entries) == 1
        assert entries[0]["amountOwed"] == 7.0

        empty = await client.get("/history", headers=_auth(make_token(eve_id)))
        assert empty.json() == {"entries": []}


@pytest.mark.asyncio
async def test_finalize_errors_map_to_status_codes(make_token):
    Session = await _session_factory()
    owner_id, bob_id, _, session_id = await _seed(Session)
    app = _mk_app(Session)

    async with _client(app) as client:
        forbidden = await client.post(f"/sessions/{session_id}/finalize", json=FINALIZE_BODY, headers=_auth(make_token(bob_id)))
        assert forbidden.status_code == 403
        assert forbidden.json()["error"] == "Forbidden"

        missing = await client.post("/sessions/999/finalize", json=FINALIZE_BODY, headers=_auth(make_token(owner_id)))
        assert missing.status_code == 404

        bad_units = {
            "participants": [{"uniqueId": "ann#1"}],
            "items": [{"id": "1", "unitPrice": 1, "quantity": 3, "units": {"ann#1": 2}}],
        }
        invalid = await client.post(f"/sessions/{session_id}/finalize", json=bad_units, headers=_auth(make_token(owner_id)))
        assert invalid.status_code == 400
        assert invalid.json()["error"] == "Validation error"

        malformed = await client.post(f"/sessions/{session_id}/finalize", json={"items": []}, headers=_auth(make_token(owner_id)))
        assert malformed.status_code == 422

        unauthenticated = await client.post(f"/sessions/{session_id}/finalize", json=FINALIZE_BODY)
        assert unauthenticated.status_code == 401

        not_found = await client.get(f"/sessions/{session_id}/settlement", headers=_auth(make_token(owner_id)))
        assert not_found.status_code == 404

        unfinalized_as_stranger = await client.get(f"/sessions/{session_id}/settlement", headers=_auth(make_token(bob_id)))
        assert unfinalized_as_stranger.status_code == 403


@pytest.mark.asyncio
async def test_scan_returns_mock_and_stamps_timings(make_token):
    Session = await _session_factory()
    owner_id, _, _, session_id = await _seed(Session)
    app = _mk_app(Session)

    async with _client(app) as client:
        resp = await client.post(
            f"/sessions/{session_id}/scan",
            files={"file": ("receipt.jpg", b"\xff\xd8\xff\xe0fake", "image/jpeg")},
            data={"language": "ru"},
            headers=_auth(make_token(owner_id)),
        )
    assert resp.status_code == 200, resp.text
    body = resp.json()
    assert body["source"] == "mock"
    assert body["summary"] == {"grandTotal": 15.7, "currency": "UNKNOWN"}
    assert body["items"][0]["unitPrice"] == 2.0
    assert "attempts" not in body
    assert "rawText" not in body

    async with Session() as session:
        rs = await session.get(ReceiptSession, session_id)
        assert rs.parse_accepted_at is not None
        assert rs.parse_result_returned_at is not None


@pytest.mark.asyncio
async def test_scan_rejections(make_token):
    Session = await _session_factory()
    owner_id, bob_id, _, session_id = await _seed(Session)
    guard = MemoryProcessingGuard()
    app = _mk_app(Session, guard=guard)
    image = {"file": ("receipt.jpg", b"\xff\xd8data", "image/jpeg")}

    async with _client(app) as client:
        not_image = await client.post(
            f"/sessions/{session_id}/scan",
            files={"file": ("receipt.pdf", b"%PDF-1.4", "application/pdf")},
            headers=_auth(make_token(owner_id)),
        )
        assert not_image.status_code == 400

        not_creator = await client.post(f"/sessions/{session_id}/scan", files=image, headers=_auth(make_token(bob_id)))
        assert not_creator.status_code == 403

        await guard.acquire(session_id)
        busy = await client.post(f"/sessions/{session_id}/scan", files=image, headers=_auth(make_token(owner_id)))
        assert busy.status_code == 409
        assert busy.json()["error"] == "Conflict"


@pytest.mark.asyncio
async def test_history_requires_known_user(make_token):
    Session = await _session_factory()
    await _seed(Session)
    app = _mk_app(Session)
    async with _client(app) as client:
        resp = await client.get("/history", headers=_auth(make_token(404)))
    assert resp.status_code == 401
