"""Domain exceptions.

Every error raised by the services derives from :class:`TabsplitError`
and carries the HTTP status the API layer renders it with (see
``tabsplit.api.error_handlers``).  Services raise these instead of
``HTTPException`` so they stay usable outside a request.
"""

from __future__ import annotations

from typing import Any, Optional


class TabsplitError(Exception):
    """Base class for domain errors."""

    status_code: int = 500
    error: str = "Internal server error"

    def __init__(self, message: str = "", details: Optional[Any] = None) -> None:
        super().__init__(message or self.error)
        self.message = message or self.error
        self.details = details


class ValidationError(TabsplitError):
    """Malformed item or participant input; nothing is persisted."""

    status_code = 400
    error = "Validation error"


class AuthenticationError(TabsplitError):
    status_code = 401
    error = "Unauthorized"


class ForbiddenError(TabsplitError):
    status_code = 403
    error = "Forbidden"


class NotFoundError(TabsplitError):
    status_code = 404
    error = "Not found"


class ConflictError(TabsplitError):
    """A scan is already running for the session."""

    status_code = 409
    error = "Conflict"


class UpstreamProviderError(TabsplitError):
    """Every model candidate failed.

    Raised by the provider chain.  :meth:`ExtractionService.parse_receipt`
    always absorbs it into the mock result, so it never reaches the API;
    the status code is kept for completeness of the error taxonomy.
    """

    status_code = 502
    error = "Upstream provider error"

    def __init__(self, message: str = "", attempts: Optional[list] = None) -> None:
        super().__init__(message)
        self.attempts = attempts or []


class PersistenceError(TabsplitError):
    """Snapshot write failed; the transaction was rolled back."""

    status_code = 500
    error = "Persistence error"


__all__ = [
    "TabsplitError",
    "ValidationError",
    "AuthenticationError",
    "ForbiddenError",
    "NotFoundError",
    "ConflictError",
    "UpstreamProviderError",
    "PersistenceError",
]
