"""Recovery of structured JSON from free-form LLM output.

Strategies are tried in order and the first one that yields a JSON object
wins:

1. direct parse of the whole text
2. the interior of a fenced code block (```json ... ```)
3. the span from the first ``{`` to the last ``}``

``recover_json`` never raises; callers receive either a ``dict`` or an
``Unparseable`` sentinel and decide what a failure means for their unit.
"""

import json
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from agent_engine.core.errors import ParseError
from agent_engine.core.logging import get_logger

logger = get_logger(__name__)

_FENCE_RE = re.compile(r"```[a-zA-Z0-9_-]*\s*([\s\S]*?)\s*```")


@dataclass(frozen=True)
class Unparseable:
    """Sentinel returned when no strategy produced a JSON object."""

    preview: str

    def to_error(self) -> ParseError:
        return ParseError(self.preview)


def _loads_object(candidate: str) -> dict[str, Any] | None:
    try:
        parsed = json.loads(candidate, strict=False)
    except (json.JSONDecodeError, ValueError):
        return None
    return parsed if isinstance(parsed, dict) else None


def parse_direct(text: str) -> dict[str, Any] | None:
    return _loads_object(text)


def parse_fenced(text: str) -> dict[str, Any] | None:
    match = _FENCE_RE.search(text)
    if not match:
        return None
    return _loads_object(match.group(1).strip())


def parse_brace_span(text: str) -> dict[str, Any] | None:
    first = text.find("{")
    last = text.rfind("}")
    if first == -1 or last <= first:
        return None
    return _loads_object(text[first : last + 1])


STRATEGIES: tuple[tuple[str, Callable[[str], dict[str, Any] | None]], ...] = (
    ("direct", parse_direct),
    ("fenced", parse_fenced),
    ("brace_span", parse_brace_span),
)


def recover_json(raw_text: str | None) -> dict[str, Any] | Unparseable:
    """
    Convert raw LLM output into a JSON object.

    Args:
        raw_text: Raw model output

    Returns:
        Parsed object, or Unparseable carrying a short preview of the text
    """
    text = (raw_text or "").strip()
    if not text:
        return Unparseable(preview="")

    for name, strategy in STRATEGIES:
        parsed = strategy(text)
        if parsed is not None:
            if name != "direct":
                logger.debug(f"Recovered JSON via {name} strategy ({len(text)} chars)")
            return parsed

    logger.warning(f"Could not recover JSON from LLM response ({len(text)} chars)")
    return Unparseable(preview=text[:500])


def require_json(raw_text: str | None) -> dict[str, Any]:
    """Like ``recover_json`` but raises ParseError on failure."""
    result = recover_json(raw_text)
    if isinstance(result, Unparseable):
        raise result.to_error()
    return result
