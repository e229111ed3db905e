"""Default prompt templates for receipt extraction.

Keeping prompts in a central location makes it easier to iterate on
their content and ensure every provider receives the same instruction.
"""

from __future__ import annotations

from textwrap import dedent
from typing import Optional


EXTRACTION_INSTRUCTIONS = dedent(
    """
    You are a receipt parser. Return ONLY valid JSON with this shape:
    {
      "items": [
        { "id": "string", "name": "string", "unitPrice": number, "quantity": number, "totalPrice": number, "kind": "fee|tip|discount|item|other|null" }
      ],
      "summary": { "grandTotal": number, "currency": "ISO 4217 code or the symbol printed on the receipt" }
    }
    Rules:
    - Numbers must use dot as decimal separator.
    - id: generate short stable IDs like "1", "2"... or semantic unique IDs.
    - quantity >= 1.
    - totalPrice = unitPrice * quantity (round to 2 decimals).
    - Include service/tips/fees as separate items with kind set.
    - Do not put currency symbols inside numbers; report the currency in summary.currency.
    - grandTotal = sum of totalPrice values.
    """
).strip()


def get_default_extraction_prompt(language: Optional[str] = None, context_label: Optional[str] = None) -> str:
    """Return the extraction instruction with the caller's hints appended.

    ``language`` is the expected receipt language and ``context_label`` a
    human label for the session (e.g. "Friday dinner"); both only steer the
    model and are omitted when empty.
    """
    lines = [EXTRACTION_INSTRUCTIONS]
    if language:
        lines.append(f"Language: {language}")
    if context_label:
        lines.append(f"Session: {context_label}")
    lines.append("OUTPUT ONLY RAW JSON. NO MARKDOWN.")
    return "\n".join(lines)
