"""LLM provider adapters.

One adapter per API family. Each adapter issues exactly one call per
invocation and returns raw text (or a stream of raw text deltas); JSON
interpretation and retries belong to the caller.
"""

import json
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Protocol

import httpx
import httpx2
from anthropic import APIConnectionError as AnthropicConnectionError
from anthropic import APIStatusError as AnthropicStatusError
from anthropic import AsyncAnthropic
from openai import APIConnectionError as OpenAIConnectionError
from openai import APIStatusError as OpenAIStatusError
from openai import AsyncOpenAI

from agent_engine.core.config import Settings, get_settings
from agent_engine.core.errors import ProviderError
from agent_engine.core.logging import get_logger
from agent_engine.core.providers import ApiFamily, ProviderConfig

logger = get_logger(__name__)

GEMINI_BASE_URL = "https://generativelanguage.googleapis.com/v1beta"
XAI_BASE_URL = "https://api.x.ai/v1"

_API_KEY_ENV = {
    ApiFamily.ANTHROPIC: "ANTHROPIC_API_KEY",
    ApiFamily.GEMINI: "GEMINI_API_KEY",
    ApiFamily.XAI: "XAI_API_KEY",
}


@dataclass(frozen=True)
class ChatMessage:
    """One role-tagged message; role is ``user`` or ``assistant``."""

    role: str
    content: str

    def to_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}


def build_messages(prompt: str, history: list[ChatMessage] | None = None) -> list[ChatMessage]:
    """Append ``prompt`` as the final user turn after any prior history."""
    messages = list(history or [])
    messages.append(ChatMessage(role="user", content=prompt))
    return messages


def _truncate(text: str, limit: int) -> str:
    return text[:limit] if text else ""


async def iter_sse_data(chunks: AsyncIterator[str]) -> AsyncIterator[dict[str, Any]]:
    """
    Decode ``data:`` frames from an incremental Server-Sent Events body.

    Frames may be split across network reads, so text is buffered and
    re-split on newlines. Blank payloads, the ``[DONE]`` sentinel, and
    payloads that are not JSON are skipped.

    Args:
        chunks: Async iterator of decoded text chunks

    Yields:
        Parsed JSON payload of each data frame
    """
    buffer = ""

    def _decode(line: str) -> dict[str, Any] | None:
        line = line.rstrip("\r")
        if not line.startswith("data:"):
            return None
        payload = line[5:].strip()
        if not payload or payload == "[DONE]":
            return None
        try:
            parsed = json.loads(payload)
        except json.JSONDecodeError:
            logger.debug(f"Skipping non-JSON SSE payload ({len(payload)} chars)")
            return None
        return parsed if isinstance(parsed, dict) else None

    async for chunk in chunks:
        buffer += chunk
        while (newline_index := buffer.find("\n")) != -1:
            line = buffer[:newline_index]
            buffer = buffer[newline_index + 1 :]
            decoded = _decode(line)
            if decoded is not None:
                yield decoded

    # Trailing frame without a final newline
    if buffer:
        decoded = _decode(buffer)
        if decoded is not None:
            yield decoded


class LLMAdapter(Protocol):
    """Contract shared by every provider adapter."""

    config: ProviderConfig

    async def complete(
        self,
        messages: list[ChatMessage],
        *,
        system: str | None = None,
        temperature: float = 0.4,
        json_mode: bool = False,
    ) -> str: ...

    def stream(
        self,
        messages: list[ChatMessage],
        *,
        system: str | None = None,
        temperature: float = 0.7,
    ) -> AsyncIterator[str]: ...


class GeminiAdapter:
    """Google Gemini over its REST API."""

    provider = "Gemini"

    def __init__(
        self,
        config: ProviderConfig,
        api_key: str,
        *,
        timeout: float = 180.0,
        error_body_limit: int = 300,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self._api_key = api_key
        self._timeout = timeout
        self._error_body_limit = error_body_limit
        self._http_client = http_client

    def _client(self) -> httpx.AsyncClient:
        if self._http_client is not None:
            return self._http_client
        return httpx.AsyncClient(timeout=self._timeout)

    def _body(
        self,
        messages: list[ChatMessage],
        system: str | None,
        temperature: float,
        json_mode: bool,
    ) -> dict[str, Any]:
        generation_config: dict[str, Any] = {
            "temperature": temperature,
            "maxOutputTokens": self.config.max_tokens,
        }
        if json_mode:
            generation_config["responseMimeType"] = "application/json"

        body: dict[str, Any] = {
            "contents": [
                {
                    "role": "model" if m.role == "assistant" else "user",
                    "parts": [{"text": m.content}],
                }
                for m in messages
            ],
            "generationConfig": generation_config,
        }
        if system:
            body["systemInstruction"] = {"parts": [{"text": system}]}
        return body

    @staticmethod
    def _candidate_text(data: dict[str, Any]) -> str:
        candidates = data.get("candidates") or []
        if not candidates:
            return ""
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return "".join(p.get("text", "") for p in parts if isinstance(p, dict))

    async def complete(
        self,
        messages: list[ChatMessage],
        *,
        system: str | None = None,
        temperature: float = 0.4,
        json_mode: bool = False,
    ) -> str:
        url = f"{GEMINI_BASE_URL}/models/{self.config.model_name}:generateContent"
        client = self._client()
        try:
            response = await client.post(
                url,
                headers={"x-goog-api-key": self._api_key},
                json=self._body(messages, system, temperature, json_mode),
            )
        except httpx.TransportError as e:
            raise ProviderError(self.provider, None, _truncate(str(e), self._error_body_limit)) from e
        finally:
            if self._http_client is None:
                await client.aclose()

        if response.status_code >= 400:
            raise ProviderError(
                self.provider,
                response.status_code,
                _truncate(response.text, self._error_body_limit),
            )
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(
                self.provider,
                response.status_code,
                _truncate(response.text, self._error_body_limit),
            ) from e
        return self._candidate_text(data)

    async def stream(
        self,
        messages: list[ChatMessage],
        *,
        system: str | None = None,
        temperature: float = 0.7,
    ) -> AsyncIterator[str]:
        url = f"{GEMINI_BASE_URL}/models/{self.config.model_name}:streamGenerateContent"
        client = self._client()
        try:
            async with client.stream(
                "POST",
                url,
                params={"alt": "sse"},
                headers={"x-goog-api-key": self._api_key},
                json=self._body(messages, system, temperature, json_mode=False),
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise ProviderError(
                        self.provider,
                        response.status_code,
                        _truncate(response.text, self._error_body_limit),
                    )
                async for payload in iter_sse_data(response.aiter_text()):
                    text = self._candidate_text(payload)
                    if text:
                        yield text
        except httpx.TransportError as e:
            raise ProviderError(self.provider, None, _truncate(str(e), self._error_body_limit)) from e
        finally:
            if self._http_client is None:
                await client.aclose()


class AnthropicAdapter:
    """Anthropic Messages API through the official SDK."""

    provider = "Anthropic"

    def __init__(
        self,
        config: ProviderConfig,
        api_key: str,
        *,
        timeout: float = 180.0,
        error_body_limit: int = 300,
        client: AsyncAnthropic | None = None,
    ):
        self.config = config
        self._error_body_limit = error_body_limit
        # Retries are owned by the per-unit processor, never by the SDK
        self._client = client or AsyncAnthropic(api_key=api_key, max_retries=0, timeout=timeout)

    def _error(self, e: Exception) -> ProviderError:
        if isinstance(e, AnthropicStatusError):
            return ProviderError(
                self.provider, e.status_code, _truncate(e.response.text, self._error_body_limit)
            )
        return ProviderError(self.provider, None, _truncate(str(e), self._error_body_limit))

    def _kwargs(self, messages: list[ChatMessage], system: str | None) -> dict:
        # messages.create / messages.stream take no sampling temperature
        kwargs: dict[str, Any] = {
            "model": self.config.model_name,
            "max_tokens": self.config.max_tokens,
            "messages": [m.to_dict() for m in messages],
        }
        if system:
            kwargs["system"] = system
        return kwargs

    async def complete(
        self,
        messages: list[ChatMessage],
        *,
        system: str | None = None,
        temperature: float = 0.4,
        json_mode: bool = False,
    ) -> str:
        try:
            response = await self._client.messages.create(**self._kwargs(messages, system))
        except (AnthropicStatusError, AnthropicConnectionError, httpx2.TransportError) as e:
            raise self._error(e) from e

        return "".join(
            block.text for block in response.content if getattr(block, "type", "") == "text"
        )

    async def stream(
        self,
        messages: list[ChatMessage],
        *,
        system: str | None = None,
        temperature: float = 0.7,
    ) -> AsyncIterator[str]:
        try:
            async with self._client.messages.stream(**self._kwargs(messages, system)) as stream:
                async for text in stream.text_stream:
                    if text:
                        yield text
        # Drops while reading the body surface as raw transport errors
        except (AnthropicStatusError, AnthropicConnectionError, httpx2.TransportError) as e:
            raise self._error(e) from e


class XAIAdapter:
    """xAI Grok through its OpenAI-compatible chat completions API."""

    provider = "xAI"

    def __init__(
        self,
        config: ProviderConfig,
        api_key: str,
        *,
        timeout: float = 180.0,
        error_body_limit: int = 300,
        client: AsyncOpenAI | None = None,
    ):
        self.config = config
        self._error_body_limit = error_body_limit
        self._client = client or AsyncOpenAI(
            api_key=api_key, base_url=XAI_BASE_URL, max_retries=0, timeout=timeout
        )

    def _error(self, e: Exception) -> ProviderError:
        if isinstance(e, OpenAIStatusError):
            return ProviderError(
                self.provider, e.status_code, _truncate(e.response.text, self._error_body_limit)
            )
        return ProviderError(self.provider, None, _truncate(str(e), self._error_body_limit))

    @staticmethod
    def _messages(messages: list[ChatMessage], system: str | None) -> list[dict[str, str]]:
        payload = [{"role": "system", "content": system}] if system else []
        payload.extend(m.to_dict() for m in messages)
        return payload

    async def complete(
        self,
        messages: list[ChatMessage],
        *,
        system: str | None = None,
        temperature: float = 0.4,
        json_mode: bool = False,
    ) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=self.config.model_name,
                messages=self._messages(messages, system),
                max_tokens=self.config.max_tokens,
                temperature=temperature,
            )
        except (OpenAIStatusError, OpenAIConnectionError, httpx2.TransportError) as e:
            raise self._error(e) from e

        if not response.choices:
            return ""
        return response.choices[0].message.content or ""

    async def stream(
        self,
        messages: list[ChatMessage],
        *,
        system: str | None = None,
        temperature: float = 0.7,
    ) -> AsyncIterator[str]:
        try:
            response = await self._client.chat.completions.create(
                model=self.config.model_name,
                messages=self._messages(messages, system),
                max_tokens=self.config.max_tokens,
                temperature=temperature,
                stream=True,
            )
            async for chunk in response:
                if not chunk.choices:
                    continue
                text = chunk.choices[0].delta.content
                if text:
                    yield text
        except (OpenAIStatusError, OpenAIConnectionError, httpx2.TransportError) as e:
            raise self._error(e) from e


def get_llm_adapter(
    config: ProviderConfig,
    settings: Settings | None = None,
    http_client: httpx.AsyncClient | None = None,
) -> LLMAdapter:
    """
    Build the adapter for a resolved provider config.

    Args:
        config: Resolved provider selection
        settings: Settings override (defaults to cached settings)
        http_client: Optional shared httpx client (Gemini only)

    Returns:
        Adapter instance for the config's API family

    Raises:
        ValueError: If the family's API key is not configured
    """
    settings = settings or get_settings()
    key_env = _API_KEY_ENV[config.api_family]
    api_key = getattr(settings, key_env)
    if not api_key:
        raise ValueError(f"API key not configured: {key_env}")

    common = {
        "timeout": settings.LLM_TIMEOUT_SECONDS,
        "error_body_limit": settings.ERROR_BODY_LIMIT,
    }
    if config.api_family == ApiFamily.ANTHROPIC:
        return AnthropicAdapter(config, api_key, **common)
    if config.api_family == ApiFamily.XAI:
        return XAIAdapter(config, api_key, **common)
    return GeminiAdapter(config, api_key, http_client=http_client, **common)
