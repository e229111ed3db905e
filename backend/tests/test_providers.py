from __future__ import annotations

import json

import httpx
import pytest
from openai import AsyncOpenAI

from tabsplit.services.providers import (
    GeminiProvider,
    ModelCandidate,
    OpenAIProvider,
    ProviderHTTPError,
    extract_gemini_text,
)


def _gemini_client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_gemini_request_shape_and_text():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = request.url
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={"candidates": [{"content": {"parts": [{"text": '{"items": []'}, {"text": ', "summary": {}}'}]}}]},
        )

    provider = GeminiProvider("AIzaTESTKEY1234567890", base_url="https://gl.example/", client=_gemini_client(handler))
    text = await provider.generate(ModelCandidate("gemini-1.5-flash", "v1beta"), "parse it", "aW1n", "image/png")

    assert seen["url"].path == "/v1beta/models/gemini-1.5-flash:generateContent"
    assert seen["url"].params["key"] == "AIzaTESTKEY1234567890"
    parts = seen["body"]["contents"][0]["parts"]
    assert parts[0] == {"text": "parse it"}
    assert parts[1] == {"inlineData": {"data": "aW1n", "mimeType": "image/png"}}
    assert seen["body"]["generationConfig"]["temperature"] == 0.1
    assert text == '{"items": []\n, "summary": {}}'


@pytest.mark.asyncio
async def test_gemini_error_status_raises_with_message():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": {"code": 404, "message": "models/x is not found"}})

    provider = GeminiProvider("AIzaTESTKEY1234567890", client=_gemini_client(handler))
    with pytest.raises(ProviderHTTPError) as exc:
        await provider.generate(ModelCandidate("x"), "p", "aW1n", "image/jpeg")
    assert exc.value.status == 404
    assert exc.value.message == "models/x is not found"


@pytest.mark.asyncio
async def test_gemini_non_json_error_body():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(502, text="Bad Gateway")

    provider = GeminiProvider("AIzaTESTKEY1234567890", client=_gemini_client(handler))
    with pytest.raises(ProviderHTTPError) as exc:
        await provider.generate(ModelCandidate("x"), "p", "aW1n", "image/jpeg")
    assert exc.value.status == 502
    assert exc.value.message == "Bad Gateway"


def test_unusual_gemini_key_only_warns(caplog):
    with caplog.at_level("WARNING"):
        GeminiProvider("not-a-google-key")
    assert "GEMINI_API_KEY format unexpected" in caplog.text


def test_extract_gemini_text_tolerates_odd_payloads():
    assert extract_gemini_text({}) == ""
    assert extract_gemini_text({"candidates": [None, {"content": {}}]}) == ""
    assert extract_gemini_text([]) == ""


def _openai_client(handler):
    return AsyncOpenAI(
        api_key="sk-test",
        base_url="https://openai.example/v1",
        max_retries=0,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


@pytest.mark.asyncio
async def test_openai_sends_image_as_data_url():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "id": "chatcmpl-1",
                "object": "chat.completion",
                "created": 0,
                "model": "gpt-4o-mini",
                "choices": [
                    {
                        "index": 0,
                        "message": {"role": "assistant", "content": '  {"items": [], "summary": {}}  '},
                        "finish_reason": "stop",
                    }
                ],
            },
        )

    provider = OpenAIProvider("sk-test", client=_openai_client(handler))
    text = await provider.generate(ModelCandidate("gpt-4o-mini"), "parse it", "aW1n", "image/jpeg")

    assert seen["path"].endswith("/chat/completions")
    assert seen["body"]["model"] == "gpt-4o-mini"
    content = seen["body"]["messages"][0]["content"]
    assert content[0] == {"type": "text", "text": "parse it"}
    assert content[1]["image_url"]["url"] == "data:image/jpeg;base64,aW1n"
    assert text == '{"items": [], "summary": {}}'


@pytest.mark.asyncio
async def test_openai_status_error_becomes_provider_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"message": "Rate limit reached", "type": "requests"}})

    provider = OpenAIProvider("sk-test", client=_openai_client(handler))
    with pytest.raises(ProviderHTTPError) as exc:
        await provider.generate(ModelCandidate("gpt-4o"), "p", "aW1n", "image/jpeg")
    assert exc.value.status == 429
