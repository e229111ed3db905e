"""Top-level application package for the receipt splitting API.

This package contains everything required to run the FastAPI backend
that turns a photographed receipt into per-participant debts: the
model gateway that extracts line items from a vision model, the
allocation engine that splits every item to the cent, the settlement
store that keeps one snapshot per finalized session, and the API
routers that expose them.

To run the API locally you can execute:

```bash
uvicorn tabsplit.api.main:app --reload
```

Configuration is read from environment variables or a ``.env`` file at
the project root (see ``tabsplit.core.config``).
"""

__all__: list[str] = []
