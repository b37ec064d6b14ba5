"""Scripted LLM adapter for chain tests."""

from collections.abc import AsyncIterator
from typing import Any

from agent_engine.core.llm import ChatMessage
from agent_engine.core.providers import ApiFamily, ProviderConfig


class FakeAdapter:
    """Replays scripted responses; an Exception in the script is raised instead."""

    def __init__(self, responses: list[Any] | None = None, default: Any = None):
        self.config = ProviderConfig(ApiFamily.GEMINI, "gemini-test", 1024)
        self.responses = list(responses or [])
        self.default = default
        self.calls: list[dict[str, Any]] = []

    def _next(self) -> Any:
        if self.responses:
            return self.responses.pop(0)
        if self.default is None:
            raise AssertionError("FakeAdapter ran out of scripted responses")
        return self.default

    async def complete(
        self,
        messages: list[ChatMessage],
        *,
        system: str | None = None,
        temperature: float = 0.4,
        json_mode: bool = False,
    ) -> str:
        self.calls.append({"messages": list(messages), "system": system, "json_mode": json_mode})
        response = self._next()
        if isinstance(response, Exception):
            raise response
        return response

    async def stream(
        self,
        messages: list[ChatMessage],
        *,
        system: str | None = None,
        temperature: float = 0.7,
    ) -> AsyncIterator[str]:
        self.calls.append({"messages": list(messages), "system": system, "stream": True})
        response = self._next()
        if isinstance(response, Exception):
            raise response
        for i in range(0, len(response), 7):
            yield response[i : i + 7]


class RecordingSleep:
    """Sleep replacement that records requested delays and returns immediately."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
