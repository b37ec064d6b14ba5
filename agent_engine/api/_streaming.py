"""Shared plumbing for SSE routes."""

import asyncio
from collections.abc import Awaitable, Callable

from fastapi import Request
from fastapi.responses import StreamingResponse

from agent_engine.core.cancellation import CancellationToken
from agent_engine.core.sse import SSE_HEADERS, EventStream, run_event_stream
from agent_engine.db.projects import ROLE_EDITOR, require_role


async def authorize(project_id: str, share_token: str | None, min_role: str = ROLE_EDITOR) -> str:
    """Check the caller's role before any work starts. Raises AccessError."""
    return await asyncio.to_thread(require_role, project_id, share_token, min_role)


def sse_response(
    request: Request,
    workflow: Callable[[EventStream, CancellationToken], Awaitable[None]],
    label: str,
) -> StreamingResponse:
    """
    Wrap a workflow in a StreamingResponse.

    The workflow's cancellation token is cancelled when the client
    disconnects or the response generator is closed.
    """
    cancel = CancellationToken()

    async def _run(stream: EventStream) -> None:
        await workflow(stream, cancel)

    return StreamingResponse(
        run_event_stream(
            _run, cancel=cancel, is_disconnected=request.is_disconnected, label=label
        ),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )
