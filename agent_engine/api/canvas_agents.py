"""API endpoint for canvas agent flows."""

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from agent_engine.api._streaming import authorize, sse_response
from agent_engine.chains.canvas_agents import orchestrate_agents
from agent_engine.core.logging import get_logger
from agent_engine.core.schemas_canvas import OrchestrateAgentsRequest

logger = get_logger(__name__)

router = APIRouter()


@router.post("/orchestrate")
async def orchestrate(body: OrchestrateAgentsRequest, request: Request) -> StreamingResponse:
    """
    Run an agent flow over the project canvas.

    SSE events: iteration_start, agent_start, agent_retry, agent_complete,
    agent_error, blackboard_update, iteration_complete, done (or error).
    """
    await authorize(body.project_id, body.share_token)
    logger.info(
        f"Canvas agents requested: project={body.project_id}, "
        f"agents={len(body.agent_flow.nodes)}, iterations={body.iterations}"
    )
    return sse_response(
        request,
        lambda stream, cancel: orchestrate_agents(body, stream, cancel=cancel),
        label=f"canvas:{body.project_id}",
    )
