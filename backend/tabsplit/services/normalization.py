"""Normalization of untrusted model output.

Everything the vision model returns is treated as loosely typed input.
This module turns the raw text into a tagged result, either
:class:`Parsed` (normalized line items plus a recomputed summary) or
:class:`Unparseable` (the raw text and why it was rejected).  All
money handling, quantity defaulting and currency mapping lives here as
pure functions so it can be tested without a provider.

Money is ``Decimal`` quantized to cents with ``ROUND_HALF_UP``.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Iterable, List, Mapping, Optional, Union

from tabsplit.models.enums import ItemKind
from tabsplit.models.schemas import LineItem, ParseSummary

CENT = Decimal("0.01")
ZERO = Decimal("0.00")
UNKNOWN_CURRENCY = "UNKNOWN"

_FENCE_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)
_NUMERIC_CHARS_RE = re.compile(r"[^0-9,.\-]")


# ---------------------------------------------------------------------------
# Money & quantities


def round_money(value: Union[Decimal, int, float, str]) -> Decimal:
    """Round ``value`` to cents, half up."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def sum_money(values: Iterable[Decimal]) -> Decimal:
    """Sum amounts, rounding to cents after every addition."""
    total = ZERO
    for v in values:
        total = round_money(total + v)
    return total


def to_decimal(value: Any) -> Optional[Decimal]:
    """Best-effort conversion of a model-provided number to ``Decimal``.

    Accepts ints, floats and numeric strings such as ``"1,50"``,
    ``"$3.20"`` or ``"1 234,50"``.  Returns ``None`` for anything else,
    including booleans, NaN and infinities.
    """
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        result = value
    elif isinstance(value, (int, float)):
        result = Decimal(str(value))
    elif isinstance(value, str):
        cleaned = _NUMERIC_CHARS_RE.sub("", value)
        if not cleaned or not re.search(r"\d", cleaned):
            return None
        if "," in cleaned and "." in cleaned:
            # whichever separator comes last is the decimal point
            if cleaned.rfind(",") > cleaned.rfind("."):
                cleaned = cleaned.replace(".", "").replace(",", ".")
            else:
                cleaned = cleaned.replace(",", "")
        elif "," in cleaned:
            if re.fullmatch(r"-?\d+,\d{1,2}", cleaned):
                cleaned = cleaned.replace(",", ".")
            else:
                cleaned = cleaned.replace(",", "")
        try:
            result = Decimal(cleaned)
        except InvalidOperation:
            return None
    else:
        return None
    if not result.is_finite():
        return None
    return result


def parse_amount(value: Any) -> Decimal:
    """Money value rounded to cents; unparseable input becomes zero."""
    d = to_decimal(value)
    return round_money(d) if d is not None else ZERO


def coerce_quantity(value: Any) -> Decimal:
    """Quantity as a positive ``Decimal``, defaulting to 1."""
    d = to_decimal(value)
    if d is None or d <= 0:
        return Decimal(1)
    return d


def normalize_kind(value: Any) -> Optional[str]:
    if value is None:
        return None
    kind = str(value).strip().lower()
    if not kind or kind in {"null", "none"}:
        return None
    known = {k.value for k in ItemKind}
    return kind if kind in known else ItemKind.OTHER.value


def normalize_item(raw: Mapping[str, Any], index: int) -> LineItem:
    """Normalize one decoded item.

    ``unitPrice`` falls back to the legacy ``price`` field and
    ``totalPrice`` is computed from ``unitPrice × quantity`` when absent.
    """
    quantity = coerce_quantity(raw.get("quantity"))

    unit_raw = raw.get("unitPrice", raw.get("unit_price"))
    if to_decimal(unit_raw) is None:
        unit_raw = raw.get("price")
    unit = to_decimal(unit_raw) or Decimal(0)

    total = to_decimal(raw.get("totalPrice", raw.get("total_price")))
    if total is None:
        total = unit * quantity

    raw_id = raw.get("id")
    item_id = str(raw_id).strip() if raw_id not in (None, "") else ""
    name = str(raw.get("name") or raw.get("description") or "").strip()

    return LineItem(
        id=item_id or str(index + 1),
        name=name or "Item",
        unit_price=round_money(unit),
        quantity=quantity,
        total_price=round_money(total),
        kind=normalize_kind(raw.get("kind")),
    )


# ---------------------------------------------------------------------------
# Currency

ISO_CURRENCY_CODES = frozenset(
    """
    AED AFN ALL AMD ANG AOA ARS AUD AWG AZN BAM BBD BDT BGN BHD BIF BMD BND
    BOB BRL BSD BTN BWP BYN BZD CAD CDF CHF CLP CNY COP CRC CUP CVE CZK DJF
    DKK DOP DZD EGP ERN ETB EUR FJD FKP GBP GEL GHS GIP GMD GNF GTQ GYD HKD
    HNL HTG HUF IDR ILS INR IQD IRR ISK JMD JOD JPY KES KGS KHR KMF KPW KRW
    KWD KYD KZT LAK LBP LKR LRD LSL LYD MAD MDL MGA MKD MMK MNT MOP MRU MUR
    MVR MWK MXN MYR MZN NAD NGN NIO NOK NPR NZD OMR PAB PEN PGK PHP PKR PLN
    PYG QAR RON RSD RUB RWF SAR SBD SCR SDG SEK SGD SHP SLE SOS SRD SSP STN
    SYP SZL THB TJS TMT TND TOP TRY TTD TWD TZS UAH UGX USD UYU UZS VES VND
    VUV WST XAF XCD XOF XPF YER ZAR ZMW ZWL
    """.split()
)

# Symbols and names as they appear on receipts, lower-cased.
CURRENCY_ALIASES = {
    "€": "EUR", "euro": "EUR", "euros": "EUR", "евро": "EUR",
    "$": "USD", "us$": "USD", "dollar": "USD", "dollars": "USD", "доллар": "USD",
    "£": "GBP", "pound": "GBP", "pounds": "GBP", "фунт": "GBP",
    "¥": "JPY", "yen": "JPY", "円": "JPY",
    "元": "CNY", "yuan": "CNY", "rmb": "CNY",
    "₽": "RUB", "руб": "RUB", "руб.": "RUB", "р.": "RUB", "рубль": "RUB",
    "рублей": "RUB", "rouble": "RUB", "roubles": "RUB", "ruble": "RUB", "rubles": "RUB",
    "₴": "UAH", "грн": "UAH", "грн.": "UAH", "hryvnia": "UAH",
    "₸": "KZT", "тг": "KZT", "тенге": "KZT", "tenge": "KZT",
    "₾": "GEL", "лари": "GEL", "lari": "GEL",
    "֏": "AMD", "драм": "AMD", "dram": "AMD",
    "₼": "AZN", "манат": "AZN", "manat": "AZN",
    "br": "BYN", "бел. руб.": "BYN",
    "сом": "KGS", "som": "KGS",
    "zł": "PLN", "zl": "PLN", "zloty": "PLN",
    "kč": "CZK", "korun": "CZK",
    "₺": "TRY", "lira": "TRY", "tl": "TRY",
    "₹": "INR", "rupee": "INR", "rupees": "INR", "rs": "INR",
    "₩": "KRW", "won": "KRW",
    "₪": "ILS", "shekel": "ILS",
    "฿": "THB", "baht": "THB",
    "₫": "VND", "dong": "VND",
    "r$": "BRL", "real": "BRL", "reais": "BRL",
    "chf": "CHF", "franc": "CHF", "francs": "CHF",
    "a$": "AUD", "c$": "CAD",
    "lei": "RON",
    "ft": "HUF", "forint": "HUF",
}

# Single-character symbols that can be found inside a longer string ("12,50 €").
_EMBEDDED_SYMBOLS = ("€", "£", "₽", "₴", "₸", "₾", "֏", "₼", "₺", "₹", "₩", "₪", "฿", "₫", "¥", "$")


def normalize_currency(raw: Any) -> str:
    """Map a raw currency token to an ISO 4217 code or ``"UNKNOWN"``."""
    if raw is None:
        return UNKNOWN_CURRENCY
    token = str(raw).strip()
    if not token:
        return UNKNOWN_CURRENCY
    lowered = token.lower()
    for key in (lowered, lowered.rstrip(".")):
        if key in CURRENCY_ALIASES:
            return CURRENCY_ALIASES[key]
    if len(token) == 3 and token.isalpha() and token.upper() in ISO_CURRENCY_CODES:
        return token.upper()
    for part in re.split(r"[\s\d.,]+", lowered):
        if not part:
            continue
        if part in CURRENCY_ALIASES:
            return CURRENCY_ALIASES[part]
        if len(part) == 3 and part.upper() in ISO_CURRENCY_CODES:
            return part.upper()
    for symbol in _EMBEDDED_SYMBOLS:
        if symbol in token:
            return CURRENCY_ALIASES[symbol]
    return UNKNOWN_CURRENCY


def pick_currency(payload: Mapping[str, Any]) -> Optional[str]:
    """Return the first non-empty raw currency value the model supplied.

    Looks at ``summary.currency``, ``summary.currencyCode``, the top-level
    ``currency``/``currencyCode`` and finally item-level ``currency``.
    """
    summary = payload.get("summary")
    candidates: List[Any] = []
    if isinstance(summary, Mapping):
        candidates += [summary.get("currency"), summary.get("currencyCode")]
    candidates += [payload.get("currency"), payload.get("currencyCode")]
    items = payload.get("items")
    if isinstance(items, list):
        candidates += [it.get("currency") for it in items if isinstance(it, Mapping)]
    for c in candidates:
        if isinstance(c, str) and c.strip():
            return c.strip()
    return None


# ---------------------------------------------------------------------------
# Decoding


@dataclass(frozen=True)
class Parsed:
    items: List[LineItem]
    summary: ParseSummary


@dataclass(frozen=True)
class Unparseable:
    raw_text: str
    reason: str = field(default="unparseable")


DecodeResult = Union[Parsed, Unparseable]


def strip_code_fences(text: str) -> str:
    match = _FENCE_RE.search(text)
    if match and match.group(1):
        return match.group(1).strip()
    return text.strip()


def extract_json_object(text: str) -> Optional[str]:
    """Return the outermost ``{...}`` span of ``text``, if any."""
    first = text.find("{")
    last = text.rfind("}")
    if first == -1 or last == -1 or last < first:
        return None
    return text[first:last + 1]


def decode_model_output(text: Optional[str]) -> DecodeResult:
    """Decode model output into :class:`Parsed` or :class:`Unparseable`.

    The grand total is recomputed from the normalized item totals; the
    model's own summary total is ignored.
    """
    raw = text or ""
    span = extract_json_object(strip_code_fences(raw))
    if span is None:
        return Unparseable(raw, "no JSON object found")
    try:
        data = json.loads(span)
    except ValueError as exc:
        return Unparseable(raw, f"invalid JSON: {exc}")
    if not isinstance(data, dict):
        return Unparseable(raw, "top-level value is not an object")
    raw_items = data.get("items")
    if not isinstance(raw_items, list) or not isinstance(data.get("summary"), dict):
        return Unparseable(raw, "missing items array or summary object")

    items = [normalize_item(it, idx) for idx, it in enumerate(raw_items) if isinstance(it, Mapping)]
    summary = ParseSummary(
        grand_total=sum_money(i.total_price for i in items),
        currency=normalize_currency(pick_currency(data)),
    )
    return Parsed(items=items, summary=summary)
