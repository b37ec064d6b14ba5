"""Tests for the SSE event stream and its runner."""

import asyncio

import pytest

from agent_engine.core.cancellation import CancellationToken
from agent_engine.core.errors import RunCancelledError, StreamTransportError
from agent_engine.core.sse import EventStream, format_sse, run_event_stream
from tests.fakes.fake_stream import parse_frames


async def collect(workflow, **kwargs):
    return parse_frames([frame async for frame in run_event_stream(workflow, **kwargs)])


def test_format_sse():
    """Test the wire format of one frame."""
    assert format_sse("cell", {"polarity": 0.5}) == 'event: cell\ndata: {"polarity": 0.5}\n\n'


@pytest.mark.asyncio
async def test_done_is_sent_when_workflow_returns():
    """Test that a workflow without a terminal event still ends with done."""

    async def workflow(stream):
        await stream.send("progress", {"progress": 50})

    events = await collect(workflow)

    assert [name for name, _ in events] == ["progress", "done"]
    assert events[-1][1] == {"success": True}


@pytest.mark.asyncio
async def test_exception_becomes_error_event():
    """Test that a failing workflow ends with exactly one error event."""

    async def workflow(stream):
        await stream.send("progress", {"progress": 10})
        raise RuntimeError("Gemini API error: 500 - boom")

    events = await collect(workflow)

    assert [name for name, _ in events] == ["progress", "error"]
    assert events[-1][1]["message"] == "Gemini API error: 500 - boom"


@pytest.mark.asyncio
async def test_only_one_terminal_event():
    """Test that events after a terminal event are dropped."""

    async def workflow(stream):
        await stream.send("done", {"success": True})
        await stream.send("progress", {"progress": 99})
        await stream.send("error", {"message": "late"})

    events = await collect(workflow)

    assert [name for name, _ in events] == ["done"]


@pytest.mark.asyncio
async def test_cancelled_workflow_reports_error():
    """Test that cancellation surfaces as a terminal error event."""

    async def workflow(stream):
        raise RunCancelledError("client disconnected")

    events = await collect(workflow)

    assert events == [("error", {"message": "Cancelled: client disconnected"})]


@pytest.mark.asyncio
async def test_send_on_closed_stream_raises():
    """Test that writing after close is a transport error."""
    stream = EventStream()
    await stream.close()

    with pytest.raises(StreamTransportError):
        await stream.send("progress", {})


@pytest.mark.asyncio
async def test_progress_percent():
    """Test the computed percentage, including the empty total."""
    stream = EventStream()
    await stream.progress(1, 4, "one of four")
    await stream.progress(0, 0, "nothing to do")
    await stream.close()

    events = parse_frames([frame async for frame in stream.frames()])

    assert events[0][1]["progress"] == 25
    assert events[1][1]["progress"] == 100


@pytest.mark.asyncio
async def test_heartbeat_runs_only_inside_block():
    """Test that heartbeats are emitted during the block and stop after it."""

    async def workflow(stream):
        async with stream.heartbeat(0.01):
            await asyncio.sleep(0.05)
        count = stream.sent.count("heartbeat")
        await asyncio.sleep(0.03)
        assert stream.sent.count("heartbeat") == count

    events = await collect(workflow)
    names = [name for name, _ in events]

    assert names.count("heartbeat") >= 1
    assert names[-1] == "done"
    assert "timestamp" in events[0][1]


@pytest.mark.asyncio
async def test_disconnect_cancels_token():
    """Test that the disconnect probe cancels the workflow's token."""
    cancel = CancellationToken()

    async def is_disconnected():
        return True

    async def workflow(stream):
        await cancel.sleep(5)

    events = await collect(
        workflow, cancel=cancel, is_disconnected=is_disconnected, disconnect_poll_interval=0.01
    )

    assert cancel.cancelled
    assert cancel.reason == "client disconnected"
    assert events[-1][0] == "error"
