"""Ordered provider chain with a soft "last good model" hint.

The chain walks an ordered list of :class:`ModelCandidate` objects, one
request per candidate, until a response decodes into structured data.
It is vendor agnostic: it only needs a provider exposing ``generate``
and a decode function returning ``Parsed`` or ``Unparseable``.

The :class:`ModelHintCache` is an explicit object handed to the chain.
When it remembers a model that is in the candidate list, that model is
tried first.  The hint is a latency optimisation only; a stale or racy
hint costs one extra attempt and never changes a result.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterable, List, Optional

from tabsplit.models.enums import AttemptOutcome
from tabsplit.models.schemas import ParseAttempt
from tabsplit.services.normalization import DecodeResult, Parsed, decode_model_output
from tabsplit.services.providers import ModelCandidate, ProviderHTTPError, ReceiptProvider

logger = logging.getLogger(__name__)


class ModelHintCache:
    """Remembers which model last produced a parseable result."""

    def __init__(self) -> None:
        self._model: Optional[str] = None

    def get(self) -> Optional[str]:
        return self._model

    def remember(self, model: str) -> None:
        self._model = model

    def clear(self) -> None:
        self._model = None


def build_candidates(
    primary: Optional[str],
    fallbacks: Iterable[str] = (),
    defaults: Iterable[str] = (),
    api_version: str = "v1",
) -> List[ModelCandidate]:
    """Primary, then fallbacks, then defaults; first occurrence wins (case-insensitive)."""
    cascade: List[ModelCandidate] = []
    seen = set()
    for m in [primary or "", *fallbacks, *defaults]:
        name = m.strip()
        key = name.lower()
        if not name or key in seen:
            continue
        cascade.append(ModelCandidate(model=name, api_version=api_version))
        seen.add(key)
    return cascade


@dataclass(frozen=True)
class ExtractionRequest:
    prompt: str
    image_b64: str
    mime_type: str


@dataclass(frozen=True)
class ChainStep:
    """Outcome of trying one candidate."""

    candidate: ModelCandidate
    attempt: ParseAttempt
    parsed: Optional[Parsed] = None
    raw_text: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.parsed is not None


class ProviderChain:
    """Stateful cursor over the candidate list; see :meth:`try_next`."""

    def __init__(
        self,
        provider: ReceiptProvider,
        candidates: Iterable[ModelCandidate],
        hint: Optional[ModelHintCache] = None,
        decode: Callable[[str], DecodeResult] = decode_model_output,
        debug: bool = False,
    ) -> None:
        self.provider = provider
        self.hint = hint
        self.debug = debug
        self._decode = decode
        self._queue: List[ModelCandidate] = self._ordered(list(candidates))

    def _ordered(self, candidates: List[ModelCandidate]) -> List[ModelCandidate]:
        hinted = self.hint.get() if self.hint else None
        if not hinted:
            return candidates
        preferred = [c for c in candidates if c.model.lower() == hinted.lower()]
        rest = [c for c in candidates if c.model.lower() != hinted.lower()]
        return preferred + rest

    @property
    def remaining(self) -> List[ModelCandidate]:
        return list(self._queue)

    async def try_next(self, request: ExtractionRequest) -> Optional[ChainStep]:
        """Try the next candidate; ``None`` once every candidate was tried."""
        if not self._queue:
            return None
        candidate = self._queue.pop(0)
        if self.debug:
            logger.info("[chain][attempt] provider=%s model=%s", self.provider.name, candidate.model)
        start = time.perf_counter()
        try:
            text = await self.provider.generate(candidate, request.prompt, request.image_b64, request.mime_type)
        except ProviderHTTPError as exc:
            return self._failed(candidate, start, AttemptOutcome.HTTP_ERROR, exc.message, http_status=exc.status)
        except Exception as exc:
            return self._failed(candidate, start, AttemptOutcome.EXCEPTION, f"{type(exc).__name__}: {exc}")

        decoded = self._decode(text)
        duration_ms = int((time.perf_counter() - start) * 1000)
        if isinstance(decoded, Parsed):
            if self.hint is not None:
                self.hint.remember(candidate.model)
            attempt = ParseAttempt(
                model=candidate.model,
                api_version=candidate.api_version,
                outcome=AttemptOutcome.OK,
                http_status=200,
                duration_ms=duration_ms,
                output_chars=len(text),
            )
            if self.debug:
                logger.info("[chain][attempt] accepted model=%s items=%d", candidate.model, len(decoded.items))
            return ChainStep(candidate=candidate, attempt=attempt, parsed=decoded, raw_text=text)

        attempt = ParseAttempt(
            model=candidate.model,
            api_version=candidate.api_version,
            outcome=AttemptOutcome.PARSE_FAIL,
            http_status=200,
            duration_ms=duration_ms,
            output_chars=len(text),
            error_message=decoded.reason,
        )
        if self.debug:
            logger.warning("[chain][attempt] unparseable model=%s reason=%s", candidate.model, decoded.reason)
        return ChainStep(candidate=candidate, attempt=attempt, raw_text=text)

    def _failed(
        self,
        candidate: ModelCandidate,
        start: float,
        outcome: AttemptOutcome,
        message: str,
        http_status: Optional[int] = None,
    ) -> ChainStep:
        if self.debug:
            logger.warning(
                "[chain][attempt] failed model=%s outcome=%s status=%s err=%s",
                candidate.model,
                outcome.value,
                http_status,
                message,
            )
        attempt = ParseAttempt(
            model=candidate.model,
            api_version=candidate.api_version,
            outcome=outcome,
            http_status=http_status,
            duration_ms=int((time.perf_counter() - start) * 1000),
            error_message=message[:500],
        )
        return ChainStep(candidate=candidate, attempt=attempt)
