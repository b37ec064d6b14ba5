"""Per-unit LLM processing with bounded retries."""

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any, TypeVar

from agent_engine.core.cancellation import CancellationToken
from agent_engine.core.config import Settings, get_settings
from agent_engine.core.errors import ParseError, ProviderError, UnitFailedError
from agent_engine.core.json_recovery import require_json
from agent_engine.core.llm import ChatMessage, LLMAdapter
from agent_engine.core.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")

RETRYABLE_ERRORS = (ProviderError, ParseError)

SleepFn = Callable[[float], Awaitable[None]]
RetryHook = Callable[[int, float, Exception], Awaitable[None]]


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt n (1-based) that fails waits ``n * base_delay`` before the next."""

    max_attempts: int = 3
    base_delay: float = 2.0

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "RetryPolicy":
        settings = settings or get_settings()
        return cls(
            max_attempts=max(1, settings.LLM_MAX_ATTEMPTS),
            base_delay=settings.LLM_RETRY_BASE_DELAY,
        )

    def delay_for(self, attempt: int) -> float:
        return attempt * self.base_delay


def clamp_score(value: Any, low: float = -1.0, high: float = 1.0, default: float = 0.0) -> float:
    """Coerce a model-reported number into [low, high]; non-numbers become ``default``."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    if number != number:  # NaN
        return default
    return max(low, min(high, number))


async def run_with_retry(
    operation: Callable[[int], Awaitable[T]],
    *,
    policy: RetryPolicy,
    unit_id: str,
    cancel: CancellationToken | None = None,
    sleep: SleepFn | None = None,
    on_retry: RetryHook | None = None,
) -> T:
    """
    Run ``operation`` until it succeeds or the attempt ceiling is reached.

    Provider and parse errors count as failed attempts; anything else
    propagates immediately. The cancellation token is checked before every
    attempt and during every backoff sleep.

    Args:
        operation: Coroutine factory receiving the 1-based attempt number
        policy: Retry ceiling and backoff
        unit_id: Identifier used in logs and in the raised error
        cancel: Optional cancellation token
        sleep: Sleep override (tests inject a recorder)
        on_retry: Awaited before each backoff with (attempt, delay, error)

    Returns:
        The first successful result

    Raises:
        UnitFailedError: carrying the error from the last failed attempt
        RunCancelledError: if the token was cancelled
    """
    last_error: Exception | None = None

    for attempt in range(1, policy.max_attempts + 1):
        if cancel is not None:
            cancel.raise_if_cancelled()
        try:
            return await operation(attempt)
        except RETRYABLE_ERRORS as e:
            last_error = e
            logger.warning(
                f"[{unit_id}] Attempt {attempt}/{policy.max_attempts} failed: {e}"
            )
            if attempt >= policy.max_attempts:
                break

            delay = policy.delay_for(attempt)
            if on_retry is not None:
                await on_retry(attempt, delay, e)
            logger.info(f"[{unit_id}] Retrying in {delay:.1f}s")
            if sleep is not None:
                await sleep(delay)
                if cancel is not None:
                    cancel.raise_if_cancelled()
            elif cancel is not None:
                await cancel.sleep(delay)
            else:
                await asyncio.sleep(delay)

    logger.error(f"[{unit_id}] All {policy.max_attempts} attempts failed: {last_error}")
    raise UnitFailedError(unit_id, policy.max_attempts, last_error)


async def request_json(
    adapter: LLMAdapter,
    messages: list[ChatMessage],
    *,
    policy: RetryPolicy,
    unit_id: str,
    system: str | None = None,
    temperature: float = 0.4,
    cancel: CancellationToken | None = None,
    sleep: SleepFn | None = None,
    on_retry: RetryHook | None = None,
) -> dict[str, Any]:
    """Call the provider and recover a JSON object, retrying both steps together."""

    async def _attempt(attempt: int) -> dict[str, Any]:
        raw_text = await adapter.complete(
            messages, system=system, temperature=temperature, json_mode=True
        )
        logger.debug(f"[{unit_id}] Attempt {attempt} response: {len(raw_text)} chars")
        return require_json(raw_text)

    return await run_with_retry(
        _attempt,
        policy=policy,
        unit_id=unit_id,
        cancel=cancel,
        sleep=sleep,
        on_retry=on_retry,
    )
