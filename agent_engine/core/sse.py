"""Server-Sent Events emitter for long-running multi-unit workflows.

A workflow coroutine receives an ``EventStream`` and sends named events;
``run_event_stream`` turns it into the async generator handed to
``StreamingResponse``. The stream always ends with exactly one terminal
event (``done`` or ``error``) and is closed exactly once, whatever happens
inside the workflow.
"""

import asyncio
import contextlib
import json
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any

from agent_engine.core.cancellation import CancellationToken
from agent_engine.core.errors import RunCancelledError, StreamTransportError
from agent_engine.core.logging import get_logger

logger = get_logger(__name__)

TERMINAL_EVENTS = frozenset({"done", "error"})

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}

_CLOSED = object()


def format_sse(event: str, data: dict[str, Any]) -> str:
    """Format one named SSE frame."""
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


class EventStream:
    """Queue-backed writer for one response stream."""

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._closed = False
        self.terminal_event: str | None = None
        self.sent: list[str] = []

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, event: str, data: dict[str, Any] | None = None) -> None:
        """
        Queue an event for the client.

        A second terminal event is dropped; nothing may follow a terminal
        event except heartbeats already in flight.

        Raises:
            StreamTransportError: if the stream has been closed
        """
        if self._closed:
            raise StreamTransportError(f"Cannot send '{event}' on a closed stream")
        if self.terminal_event is not None:
            logger.warning(f"Dropping '{event}' sent after terminal '{self.terminal_event}'")
            return
        if event in TERMINAL_EVENTS:
            self.terminal_event = event
        self.sent.append(event)
        await self._queue.put(format_sse(event, data or {}))

    async def progress(self, current: int, total: int, message: str, **extra: Any) -> None:
        percent = 100 if total == 0 else round(current / total * 100)
        await self.send(
            "progress",
            {"current": current, "total": total, "progress": percent, "message": message, **extra},
        )

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        await self._queue.put(_CLOSED)

    async def frames(self) -> AsyncIterator[str]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item

    @contextlib.asynccontextmanager
    async def heartbeat(self, interval: float) -> AsyncIterator[None]:
        """Emit ``heartbeat`` every ``interval`` seconds while the block runs."""

        async def _beat() -> None:
            while True:
                await asyncio.sleep(interval)
                if self._closed or self.terminal_event is not None:
                    return
                await self.send("heartbeat", {"timestamp": int(time.time() * 1000)})

        task = asyncio.create_task(_beat())
        try:
            yield
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError, StreamTransportError):
                await task


Workflow = Callable[[EventStream], Awaitable[None]]
DisconnectProbe = Callable[[], Awaitable[bool]]


async def _watch_disconnect(
    probe: DisconnectProbe, cancel: CancellationToken, interval: float
) -> None:
    while not cancel.cancelled:
        if await probe():
            cancel.cancel("client disconnected")
            return
        await asyncio.sleep(interval)


async def run_event_stream(
    workflow: Workflow,
    *,
    cancel: CancellationToken | None = None,
    is_disconnected: DisconnectProbe | None = None,
    disconnect_poll_interval: float = 1.0,
    label: str = "stream",
) -> AsyncIterator[str]:
    """
    Run ``workflow`` and yield its SSE frames.

    If the workflow returns without a terminal event, ``done`` is sent. If it
    raises, ``error`` is sent with the message. The writer is closed in a
    ``finally`` block on every path.

    Args:
        workflow: Coroutine receiving the EventStream
        cancel: Token cancelled on disconnect or early generator close
        is_disconnected: Optional probe polled to detect client disconnects
        disconnect_poll_interval: Seconds between probe polls
        label: Log prefix

    Yields:
        Formatted SSE frames
    """
    stream = EventStream()
    cancel = cancel or CancellationToken()

    async def _runner() -> None:
        try:
            await workflow(stream)
            if stream.terminal_event is None and not stream.closed:
                await stream.send("done", {"success": True})
        except RunCancelledError as e:
            logger.info(f"[{label}] Cancelled: {e}")
            if stream.terminal_event is None and not stream.closed:
                await stream.send("error", {"message": f"Cancelled: {e}"})
        except StreamTransportError as e:
            logger.warning(f"[{label}] Stream transport failed: {e}")
        except Exception as e:
            logger.exception(f"[{label}] Workflow failed: {e}")
            if stream.terminal_event is None and not stream.closed:
                await stream.send("error", {"message": str(e)})
        finally:
            await stream.close()

    runner = asyncio.create_task(_runner())
    watcher = (
        asyncio.create_task(_watch_disconnect(is_disconnected, cancel, disconnect_poll_interval))
        if is_disconnected is not None
        else None
    )
    try:
        async for frame in stream.frames():
            yield frame
    finally:
        if not runner.done():
            cancel.cancel("stream closed")
            runner.cancel()
        if watcher is not None:
            watcher.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await runner
        if watcher is not None:
            with contextlib.suppress(asyncio.CancelledError):
                await watcher
