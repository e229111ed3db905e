"""Bearer token verification.

The identity provider (registration, login, token issuance) lives
outside this service; here we only verify the HS256 JWTs it signs with
``JWT_SECRET`` and turn them into an :class:`Identity`.  Some clients
serialise the numeric user id as a string, so both forms are accepted.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import ExpiredSignatureError, JWTError, jwt

from tabsplit.core.config import settings
from tabsplit.core.errors import AuthenticationError
from tabsplit.models.schemas import Identity

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"

auth_scheme = HTTPBearer(auto_error=False)


def decode_access_token(token: str, secret: Optional[str] = None) -> Identity:
    """Verify ``token`` and return the identity it carries.

    Raises :class:`AuthenticationError` when the signature, expiry or the
    ``id``/``email`` claims are invalid.
    """
    key = secret or settings.JWT_SECRET
    if not key:
        raise RuntimeError("JWT_SECRET is not configured")
    try:
        payload: Dict[str, Any] = jwt.decode(token, key, algorithms=[ALGORITHM])
    except ExpiredSignatureError as exc:
        raise AuthenticationError("Token expired") from exc
    except JWTError as exc:
        logger.info("[auth] token rejected: %s", exc)
        raise AuthenticationError("Invalid token") from exc

    email = payload.get("email")
    if not isinstance(email, str):
        raise AuthenticationError("Invalid token")
    raw_id = payload.get("id")
    if isinstance(raw_id, bool):
        raw_id = None
    if isinstance(raw_id, str) and raw_id.isdigit():
        raw_id = int(raw_id)
    if not isinstance(raw_id, int):
        raise AuthenticationError("Invalid token (id)")
    return Identity(id=raw_id, email=email)


async def get_current_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(auth_scheme),
) -> Identity:
    """FastAPI dependency resolving the caller from the bearer token."""
    if credentials is None or (credentials.scheme or "").lower() != "bearer":
        raise AuthenticationError("Authorization required")
    return decode_access_token(credentials.credentials)
