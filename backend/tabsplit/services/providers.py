"""Vision model providers.

A provider knows how to send one extraction request (instruction text
plus an inline image) to one model and return the generated text.  It
knows nothing about candidate ordering, decoding or fallbacks; those
live in :mod:`tabsplit.services.provider_chain` so new vendors can be
added without touching them.

Two providers ship:

* :class:`GeminiProvider` – Google Generative Language REST API via
  ``httpx``.
* :class:`OpenAIProvider` – OpenAI chat completions via the ``openai``
  SDK.

Non-success responses raise :class:`ProviderHTTPError` carrying the
HTTP status; anything else propagates as-is and is recorded by the
chain as an ``exception`` attempt.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Optional, Protocol

import httpx
from openai import APIStatusError, AsyncOpenAI

logger = logging.getLogger(__name__)

_GEMINI_KEY_RE = re.compile(r"^AIza[0-9A-Za-z_-]{10,}$")


@dataclass(frozen=True)
class ModelCandidate:
    """One named model configuration tried by the chain."""

    model: str
    api_version: str = "v1"


class ProviderHTTPError(Exception):
    """The provider answered with a non-success HTTP status."""

    def __init__(self, status: int, message: str) -> None:
        super().__init__(message or f"HTTP {status}")
        self.status = status
        self.message = message or f"HTTP {status}"


class ReceiptProvider(Protocol):
    name: str

    async def generate(self, candidate: ModelCandidate, prompt: str, image_b64: str, mime_type: str) -> str:
        ...


class GeminiProvider:
    """Generative Language API ``generateContent`` call with inline image data."""

    name = "gemini"

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://generativelanguage.googleapis.com",
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client
        if not _GEMINI_KEY_RE.match(api_key or ""):
            logger.warning("[gemini] GEMINI_API_KEY format unexpected (should start with 'AIza')")

    def _url(self, candidate: ModelCandidate) -> str:
        return f"{self.base_url}/{candidate.api_version}/models/{candidate.model}:generateContent"

    @staticmethod
    def _body(prompt: str, image_b64: str, mime_type: str) -> dict[str, Any]:
        return {
            "contents": [
                {
                    "role": "user",
                    "parts": [
                        {"text": prompt},
                        {"inlineData": {"data": image_b64, "mimeType": mime_type}},
                    ],
                }
            ],
            "generationConfig": {"temperature": 0.1},
        }

    async def _post(self, url: str, body: dict[str, Any]) -> httpx.Response:
        params = {"key": self.api_key}
        if self._client is not None:
            return await self._client.post(url, params=params, json=body)
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(url, params=params, json=body)

    async def generate(self, candidate: ModelCandidate, prompt: str, image_b64: str, mime_type: str) -> str:
        resp = await self._post(self._url(candidate), self._body(prompt, image_b64, mime_type))
        if not resp.is_success:
            raise ProviderHTTPError(resp.status_code, _gemini_error_message(resp))
        return extract_gemini_text(resp.json())


def _gemini_error_message(resp: httpx.Response) -> str:
    try:
        payload = resp.json()
    except ValueError:
        return resp.text[:500]
    err = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(err, dict) and err.get("message"):
        return str(err["message"])
    return resp.text[:500]


def extract_gemini_text(payload: Any) -> str:
    """Join the text of every part of every candidate in a Gemini response."""
    texts: list[str] = []
    candidates = payload.get("candidates") if isinstance(payload, dict) else None
    for cand in candidates or []:
        if not isinstance(cand, dict):
            continue
        content = cand.get("content") or {}
        parts = content.get("parts") or cand.get("parts") or []
        for part in parts:
            if isinstance(part, dict) and part.get("text"):
                texts.append(str(part["text"]))
    return "\n".join(texts).strip()


class OpenAIProvider:
    """Chat completions call with the image sent as a base64 data URL."""

    name = "openai"

    def __init__(self, api_key: str, timeout: float = 60.0, client: Optional[AsyncOpenAI] = None) -> None:
        # max_retries=0: the chain moves to the next candidate instead of retrying
        self._client = client or AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)

    async def generate(self, candidate: ModelCandidate, prompt: str, image_b64: str, mime_type: str) -> str:
        try:
            completion = await self._client.chat.completions.create(
                model=candidate.model,
                temperature=0.1,
                messages=[
                    {
                        "role": "user",
                        "content": [
                            {"type": "text", "text": prompt},
                            {"type": "image_url", "image_url": {"url": f"data:{mime_type};base64,{image_b64}"}},
                        ],
                    }
                ],
            )
        except APIStatusError as exc:
            raise ProviderHTTPError(exc.status_code, exc.message) from exc
        if not completion.choices:
            return ""
        content = completion.choices[0].message.content
        return (content or "").strip()
