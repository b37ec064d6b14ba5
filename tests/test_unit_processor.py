"""Tests for per-unit retry handling."""

import pytest

from agent_engine.core.cancellation import CancellationToken
from agent_engine.core.errors import ParseError, ProviderError, RunCancelledError, UnitFailedError
from agent_engine.core.llm import build_messages
from agent_engine.core.unit_processor import RetryPolicy, clamp_score, request_json, run_with_retry
from tests.fakes.fake_llm import FakeAdapter, RecordingSleep


def rate_limited() -> ProviderError:
    return ProviderError("Gemini", 429, "Resource exhausted")


@pytest.mark.asyncio
async def test_retries_then_succeeds_with_linear_backoff():
    """Test 429, 429, 200: three calls, delays of 2s then 4s."""
    adapter = FakeAdapter([rate_limited(), rate_limited(), '{"polarity": 0.8}'])
    sleep = RecordingSleep()

    result = await request_json(
        adapter,
        build_messages("score this"),
        policy=RetryPolicy(max_attempts=3, base_delay=2.0),
        unit_id="tesseract:c1",
        sleep=sleep,
    )

    assert result == {"polarity": 0.8}
    assert len(adapter.calls) == 3
    assert sleep.delays == [2.0, 4.0]


@pytest.mark.asyncio
async def test_exhausted_attempts_raise_last_error():
    """Test that after the last attempt the last provider error is carried."""
    adapter = FakeAdapter(
        [rate_limited(), rate_limited(), ProviderError("Gemini", 500, "boom")]
    )
    sleep = RecordingSleep()

    with pytest.raises(UnitFailedError) as exc_info:
        await request_json(
            adapter,
            build_messages("score this"),
            policy=RetryPolicy(max_attempts=3, base_delay=2.0),
            unit_id="unit-1",
            sleep=sleep,
        )

    assert exc_info.value.attempts == 3
    assert exc_info.value.last_error.status_code == 500
    assert len(adapter.calls) == 3
    # No sleep after the final attempt
    assert sleep.delays == [2.0, 4.0]


@pytest.mark.asyncio
async def test_unparseable_response_is_retried():
    """Test that a parse failure counts as a failed attempt."""
    adapter = FakeAdapter(["I cannot answer that", '```json\n{"ok": true}\n```'])
    sleep = RecordingSleep()

    result = await request_json(
        adapter,
        build_messages("go"),
        policy=RetryPolicy(max_attempts=3, base_delay=1.0),
        unit_id="unit-1",
        sleep=sleep,
    )

    assert result == {"ok": True}
    assert sleep.delays == [1.0]


@pytest.mark.asyncio
async def test_parse_error_is_last_error():
    """Test that exhausting on parse failures surfaces ParseError."""
    adapter = FakeAdapter(default="not json")

    with pytest.raises(UnitFailedError) as exc_info:
        await request_json(
            adapter,
            build_messages("go"),
            policy=RetryPolicy(max_attempts=2, base_delay=0.0),
            unit_id="unit-1",
            sleep=RecordingSleep(),
        )

    assert isinstance(exc_info.value.last_error, ParseError)


@pytest.mark.asyncio
async def test_non_retryable_error_propagates_immediately():
    """Test that unexpected exceptions are not retried."""
    calls = []

    async def operation(attempt):
        calls.append(attempt)
        raise KeyError("bug")

    with pytest.raises(KeyError):
        await run_with_retry(
            operation, policy=RetryPolicy(), unit_id="unit-1", sleep=RecordingSleep()
        )

    assert calls == [1]


@pytest.mark.asyncio
async def test_on_retry_hook_receives_attempt_and_delay():
    """Test that the retry hook is awaited before each backoff."""
    seen = []

    async def on_retry(attempt, delay, error):
        seen.append((attempt, delay, error.status_code))

    adapter = FakeAdapter([rate_limited(), '{"a": 1}'])
    await request_json(
        adapter,
        build_messages("go"),
        policy=RetryPolicy(max_attempts=3, base_delay=1.0),
        unit_id="unit-1",
        sleep=RecordingSleep(),
        on_retry=on_retry,
    )

    assert seen == [(1, 1.0, 429)]


@pytest.mark.asyncio
async def test_cancelled_before_first_attempt():
    """Test that a cancelled token prevents any provider call."""
    cancel = CancellationToken()
    cancel.cancel("client disconnected")
    adapter = FakeAdapter(default='{"a": 1}')

    with pytest.raises(RunCancelledError):
        await request_json(
            adapter,
            build_messages("go"),
            policy=RetryPolicy(),
            unit_id="unit-1",
            cancel=cancel,
        )

    assert adapter.calls == []


@pytest.mark.asyncio
async def test_cancel_interrupts_backoff():
    """Test that cancelling during the backoff sleep stops the retries."""
    cancel = CancellationToken()
    adapter = FakeAdapter(default=rate_limited())

    async def on_retry(attempt, delay, error):
        cancel.cancel("client disconnected")

    with pytest.raises(RunCancelledError):
        await request_json(
            adapter,
            build_messages("go"),
            policy=RetryPolicy(max_attempts=3, base_delay=30.0),
            unit_id="unit-1",
            cancel=cancel,
            on_retry=on_retry,
        )

    assert len(adapter.calls) == 1


def test_policy_delay_is_linear():
    """Test attempt n waits n * base."""
    policy = RetryPolicy(max_attempts=3, base_delay=2.0)
    assert [policy.delay_for(n) for n in (1, 2, 3)] == [2.0, 4.0, 6.0]


@pytest.mark.parametrize(
    "value,expected",
    [(5.0, 1.0), (-99, -1.0), ("0.25", 0.25), ("high", 0.0), (None, 0.0), (float("nan"), 0.0)],
)
def test_clamp_score(value, expected):
    """Test that model-reported scores are coerced into [-1, 1]."""
    assert clamp_score(value) == expected
