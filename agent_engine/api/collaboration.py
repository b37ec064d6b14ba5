"""API endpoint for the collaboration orchestrator."""

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from agent_engine.api._streaming import authorize, sse_response
from agent_engine.chains.collaboration_agent import orchestrate_collaboration
from agent_engine.core.logging import get_logger
from agent_engine.core.schemas_collaboration import OrchestrateCollaborationRequest

logger = get_logger(__name__)

router = APIRouter()


@router.post("/orchestrate")
async def orchestrate(body: OrchestrateCollaborationRequest, request: Request) -> StreamingResponse:
    """
    Run collaboration iterations on a shared document.

    SSE events: iteration_start, heartbeat, llm_streaming, llm_retry,
    reasoning, operation, edit, edit_error, iteration_error,
    iteration_complete (with continuation), done (or error).

    Send the last ``continuation`` back to resume a paused run.
    """
    await authorize(body.project_id, body.share_token)
    logger.info(
        f"Collaboration run requested: collaboration={body.collaboration_id}, "
        f"resume={body.continuation is not None}"
    )
    return sse_response(
        request,
        lambda stream, cancel: orchestrate_collaboration(body, stream, cancel=cancel),
        label=f"collab:{body.collaboration_id}",
    )
