"""Tests for the Gemini adapter using a mocked HTTP transport."""

import json

import httpx
import pytest

from agent_engine.core.errors import ProviderError
from agent_engine.core.llm import ChatMessage, GeminiAdapter, iter_sse_data
from agent_engine.core.providers import ApiFamily, ProviderConfig

CONFIG = ProviderConfig(ApiFamily.GEMINI, "gemini-2.5-flash", 2048)


def candidate(text: str) -> dict:
    return {"candidates": [{"content": {"parts": [{"text": text}]}}]}


def make_adapter(handler, **kwargs) -> GeminiAdapter:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return GeminiAdapter(CONFIG, "test-key", http_client=client, **kwargs)


@pytest.mark.asyncio
async def test_complete_builds_request_and_returns_text():
    """Test request body shape and text extraction."""
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["key"] = request.headers["x-goog-api-key"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(200, json=candidate('{"ok": true}'))

    adapter = make_adapter(handler)
    text = await adapter.complete(
        [ChatMessage("user", "hi"), ChatMessage("assistant", "hello"), ChatMessage("user", "go")],
        system="be terse",
        temperature=0.3,
        json_mode=True,
    )

    assert text == '{"ok": true}'
    assert seen["url"].endswith("/models/gemini-2.5-flash:generateContent")
    assert seen["key"] == "test-key"
    body = seen["body"]
    assert [c["role"] for c in body["contents"]] == ["user", "model", "user"]
    assert body["systemInstruction"] == {"parts": [{"text": "be terse"}]}
    assert body["generationConfig"]["maxOutputTokens"] == 2048
    assert body["generationConfig"]["responseMimeType"] == "application/json"


@pytest.mark.asyncio
async def test_error_status_raises_truncated_provider_error():
    """Test that a non-2xx response raises with the body cut to the limit."""

    def handler(request):
        return httpx.Response(429, text="x" * 1000)

    adapter = make_adapter(handler, error_body_limit=300)

    with pytest.raises(ProviderError) as exc_info:
        await adapter.complete([ChatMessage("user", "hi")])

    assert exc_info.value.status_code == 429
    assert len(exc_info.value.body) == 300


@pytest.mark.asyncio
async def test_empty_candidates_returns_empty_text():
    """Test that a response without candidates is empty, not an error."""
    adapter = make_adapter(lambda request: httpx.Response(200, json={"candidates": []}))
    assert await adapter.complete([ChatMessage("user", "hi")]) == ""


@pytest.mark.asyncio
async def test_stream_yields_deltas():
    """Test streaming over SSE frames."""
    body = "".join(
        f"data: {json.dumps(candidate(t))}\n\n" for t in ["Hel", "lo ", "world"]
    )

    def handler(request):
        assert request.url.params["alt"] == "sse"
        return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

    adapter = make_adapter(handler)
    chunks = [c async for c in adapter.stream([ChatMessage("user", "hi")])]

    assert "".join(chunks) == "Hello world"


@pytest.mark.asyncio
async def test_iter_sse_data_handles_split_frames():
    """Test that frames split across reads are reassembled."""

    async def chunks():
        for piece in ['data: {"a"', ': 1}\n\nda', 'ta: [DONE]\n', "data: not-json\n", 'data: {"b": 2}']:
            yield piece

    assert [p async for p in iter_sse_data(chunks())] == [{"a": 1}, {"b": 2}]
