"""Receipt extraction service (model gateway).

This service turns a receipt image into normalized line items.  The
image is preprocessed, wrapped in the default extraction prompt and
sent through a :class:`~tabsplit.services.provider_chain.ProviderChain`
that tries each model candidate in turn until one returns parseable
JSON.  Normalization (prices, quantities, currency, grand total) is
delegated to :mod:`tabsplit.services.normalization`.

Should no provider key be configured, or every candidate fail, the
service returns a fixed mock result tagged ``source="mock"`` so the rest
of the pipeline keeps working without the external dependency.

Diagnostic output (per-candidate trace and raw model text) is attached
only when ``DEBUG_PARSE`` is enabled or the caller asks for it.
"""

from __future__ import annotations

import base64
import datetime as dt
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Sequence

from tabsplit.core.config import (
    DEFAULT_GEMINI_MODELS,
    DEFAULT_OPENAI_MODELS,
    settings,
    split_model_list,
)
from tabsplit.core.errors import UpstreamProviderError
from tabsplit.core.observability import sentry_breadcrumb
from tabsplit.models.enums import ItemKind, ParseSource
from tabsplit.models.schemas import LineItem, ParseAttempt, ParseResult, ParseSummary
from tabsplit.services.normalization import UNKNOWN_CURRENCY, sum_money
from tabsplit.services.provider_chain import (
    ExtractionRequest,
    ModelHintCache,
    ProviderChain,
    build_candidates,
)
from tabsplit.services.providers import (
    GeminiProvider,
    ModelCandidate,
    OpenAIProvider,
    ReceiptProvider,
)
from tabsplit.utils.image_processing import preprocess_image
from tabsplit.utils.prompts import get_default_extraction_prompt

logger = logging.getLogger(__name__)


def mock_parse_result() -> ParseResult:
    """Fixed, deterministic result used when no provider can answer."""
    items = [
        LineItem(id="1001", name="Кола 0.5L", unit_price=Decimal("2.00"), quantity=Decimal(6), total_price=Decimal("12.00")),
        LineItem(id="1002", name="Кола (стакан)", unit_price=Decimal("2.50"), quantity=Decimal(1), total_price=Decimal("2.50")),
        LineItem(
            id="FEE1",
            name="Сервис",
            unit_price=Decimal("1.20"),
            quantity=Decimal(1),
            total_price=Decimal("1.20"),
            kind=ItemKind.FEE.value,
        ),
    ]
    summary = ParseSummary(grand_total=sum_money(i.total_price for i in items), currency=UNKNOWN_CURRENCY)
    return ParseResult(items=items, summary=summary, source=ParseSource.MOCK)


@dataclass
class ParseTimings:
    """Wall-clock stamps filled in while a scan runs."""

    request_sent_at: Optional[dt.datetime] = None
    response_at: Optional[dt.datetime] = None


def _now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


class ExtractionService:
    """Model gateway: provider chain, normalization and mock fallback.

    ``provider`` is ``None`` when no API key is configured; every call then
    returns the mock result.  ``hint_cache`` may be shared between service
    instances to carry the last successful model across requests.
    """

    def __init__(
        self,
        provider: Optional[ReceiptProvider],
        candidates: Sequence[ModelCandidate] = (),
        hint_cache: Optional[ModelHintCache] = None,
        debug: Optional[bool] = None,
        preprocess: bool = True,
        max_image_edge: Optional[int] = None,
    ) -> None:
        self.provider = provider
        self.candidates = list(candidates)
        self.hint_cache = hint_cache
        self.debug = settings.DEBUG_PARSE if debug is None else debug
        self.preprocess = preprocess
        self.max_image_edge = max_image_edge or settings.PARSE_IMAGE_MAX_EDGE

    @classmethod
    def from_settings(cls, hint_cache: Optional[ModelHintCache] = None) -> "ExtractionService":
        """Build the service for the configured ``PARSE_PROVIDER``."""
        provider_name = (settings.PARSE_PROVIDER or "gemini").strip().lower()
        provider: Optional[ReceiptProvider] = None
        if provider_name == "openai":
            if settings.OPENAI_API_KEY:
                provider = OpenAIProvider(settings.OPENAI_API_KEY, timeout=settings.PROVIDER_TIMEOUT_SECONDS)
            candidates = build_candidates(
                settings.OPENAI_MODEL_PARSE,
                split_model_list(settings.OPENAI_MODEL_FALLBACKS),
                DEFAULT_OPENAI_MODELS,
            )
        elif provider_name == "gemini":
            if settings.GEMINI_API_KEY:
                provider = GeminiProvider(
                    settings.GEMINI_API_KEY,
                    base_url=settings.GEMINI_API_BASE,
                    timeout=settings.PROVIDER_TIMEOUT_SECONDS,
                )
            candidates = build_candidates(
                settings.GEMINI_MODEL_PARSE,
                split_model_list(settings.GEMINI_MODEL_FALLBACKS),
                DEFAULT_GEMINI_MODELS,
                api_version=settings.GEMINI_API_VERSION,
            )
        else:
            raise ValueError(f"Unknown PARSE_PROVIDER: {settings.PARSE_PROVIDER!r}")
        return cls(provider, candidates, hint_cache=hint_cache)

    async def parse_receipt(
        self,
        image: bytes,
        mime_type: str,
        language_hint: Optional[str] = None,
        context_label: Optional[str] = None,
        debug: Optional[bool] = None,
        timings: Optional[ParseTimings] = None,
    ) -> ParseResult:
        """Extract line items from ``image``.

        Never raises for provider trouble: an exhausted chain degrades to
        :func:`mock_parse_result`.
        """
        debug = self.debug if debug is None else debug
        if self.provider is None:
            if debug:
                logger.warning("[extraction] no provider key configured, using mock")
            return mock_parse_result()

        try:
            return await self._parse_with_chain(image, mime_type, language_hint, context_label, debug, timings)
        except UpstreamProviderError as exc:
            logger.error("[extraction] all model candidates failed (%d attempts), using mock", len(exc.attempts))
            sentry_breadcrumb(
                category="extraction",
                message="parse_receipt.mock_fallback",
                data={"attempts": len(exc.attempts)},
                level="warning",
            )
            result = mock_parse_result()
            if debug:
                result.attempts = exc.attempts
            return result

    async def _parse_with_chain(
        self,
        image: bytes,
        mime_type: str,
        language_hint: Optional[str],
        context_label: Optional[str],
        debug: bool,
        timings: Optional[ParseTimings],
    ) -> ParseResult:
        if self.preprocess:
            image, mime_type = preprocess_image(image, mime_type, self.max_image_edge)
        request = ExtractionRequest(
            prompt=get_default_extraction_prompt(language_hint, context_label),
            image_b64=base64.b64encode(image).decode("ascii"),
            mime_type=mime_type,
        )
        chain = ProviderChain(self.provider, self.candidates, hint=self.hint_cache, debug=debug)
        if debug:
            logger.info(
                "[extraction] starting provider=%s size=%d cascade=%s",
                self.provider.name,
                len(image),
                [c.model for c in chain.remaining],
            )

        attempts: List[ParseAttempt] = []
        if timings is not None:
            timings.request_sent_at = _now()
        try:
            while True:
                step = await chain.try_next(request)
                if step is None:
                    raise UpstreamProviderError("all model candidates failed", attempts)
                attempts.append(step.attempt)
                if step.parsed is None:
                    continue
                result = ParseResult(
                    items=step.parsed.items,
                    summary=step.parsed.summary,
                    source=ParseSource.PROVIDER,
                    model=step.candidate.model,
                    duration_ms=step.attempt.duration_ms,
                )
                if debug:
                    result.attempts = attempts
                    result.raw_text = step.raw_text
                return result
        finally:
            if timings is not None:
                timings.response_at = _now()
