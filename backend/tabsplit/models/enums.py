"""Enumeration types used throughout the receipt splitting API.

Enumerations constrain the values that can be stored in the database or
passed through the API.  When modifying these enums update any
corresponding database columns or Pydantic validators so that new
values are accepted where appropriate.
"""

from enum import Enum


class SplitPolicy(str, Enum):
    """How one line item's cost is divided among participants."""

    EQUAL = "equal"
    COUNT = "count"


class ItemKind(str, Enum):
    """Optional tag the model attaches to a line item."""

    ITEM = "item"
    FEE = "fee"
    TIP = "tip"
    DISCOUNT = "discount"
    OTHER = "other"


class ParseSource(str, Enum):
    """Where a parse result came from."""

    PROVIDER = "provider"
    MOCK = "mock"


class AttemptOutcome(str, Enum):
    """Outcome of one model candidate attempt."""

    OK = "ok"
    PARSE_FAIL = "parse_fail"
    HTTP_ERROR = "http_error"
    EXCEPTION = "exception"


class SessionStatus(str, Enum):
    """Lifecycle of a receipt session."""

    ACTIVE = "ACTIVE"
    CLOSED = "CLOSED"
    CANCELED = "CANCELED"
