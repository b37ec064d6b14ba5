"""Event stream that keeps the payload of every event it sends."""

import json
from typing import Any

from agent_engine.core.sse import EventStream


class RecordingStream(EventStream):
    def __init__(self) -> None:
        super().__init__()
        self.events: list[tuple[str, dict[str, Any]]] = []

    async def send(self, event: str, data: dict[str, Any] | None = None) -> None:
        before = len(self.sent)
        await super().send(event, data)
        if len(self.sent) > before:
            self.events.append((event, data or {}))

    def names(self) -> list[str]:
        return [name for name, _ in self.events]

    def of(self, event: str) -> list[dict[str, Any]]:
        return [data for name, data in self.events if name == event]


def parse_frames(frames: list[str]) -> list[tuple[str, dict[str, Any]]]:
    """Split formatted SSE frames into (event, data) pairs."""
    events = []
    for frame in frames:
        lines = frame.strip().split("\n")
        event = lines[0].removeprefix("event: ")
        data = json.loads(lines[1].removeprefix("data: "))
        events.append((event, data))
    return events
