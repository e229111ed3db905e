from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Add backend folder to sys.path so `import tabsplit...` works in tests when running from the repo root
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

TEST_JWT_SECRET = "test-secret"


@pytest.fixture
def jwt_secret(monkeypatch):
    from tabsplit.core import config as cfg

    monkeypatch.setattr(cfg.settings, "JWT_SECRET", TEST_JWT_SECRET, raising=False)
    return TEST_JWT_SECRET


@pytest.fixture
def make_token(jwt_secret):
    from jose import jwt

    def _make(user_id, email="user@example.com", **claims):
        payload = {"id": user_id, "email": email, **claims}
        return jwt.encode(payload, jwt_secret, algorithm="HS256")

    return _make


@pytest.fixture(autouse=True)
def _no_sentry(monkeypatch):
    from tabsplit.core import config as cfg

    monkeypatch.setattr(cfg.settings, "SENTRY_DSN", None, raising=False)
