"""API endpoints for the audit pipeline."""

from typing import Any

from fastapi import APIRouter, Request
from fastapi.responses import StreamingResponse

from agent_engine.api._streaming import authorize, sse_response
from agent_engine.chains.build_tesseract import build_tesseract
from agent_engine.chains.extract_concepts import extract_concepts, stream_dataset_concepts
from agent_engine.core.logging import get_logger
from agent_engine.core.schemas_audit import (
    BuildTesseractRequest,
    ExtractConceptsRequest,
    ExtractDatasetConceptsRequest,
)

logger = get_logger(__name__)

router = APIRouter()


@router.post("/extract-concepts")
async def extract_concepts_endpoint(body: ExtractConceptsRequest) -> dict[str, Any]:
    """
    Extract concepts from one dataset.

    Always answers 200 (except 403 on access failure); failures are reported
    as ``success: false`` in the body.

    Args:
        body: Session, project, dataset and elements

    Returns:
        Extraction result dict
    """
    await authorize(body.project_id, body.share_token)
    logger.info(
        f"Concept extraction requested: session={body.session_id}, "
        f"dataset={body.dataset}, elements={len(body.elements)}"
    )
    return await extract_concepts(body)


@router.post("/extract-d1-concepts")
async def extract_d1_concepts(
    body: ExtractDatasetConceptsRequest, request: Request
) -> StreamingResponse:
    """Stream D1 (requirements) concept extraction."""
    await authorize(body.project_id, body.share_token)
    return sse_response(
        request,
        lambda stream, cancel: stream_dataset_concepts(body, "d1", stream, cancel=cancel),
        label="d1-concepts",
    )


@router.post("/extract-d2-concepts")
async def extract_d2_concepts(
    body: ExtractDatasetConceptsRequest, request: Request
) -> StreamingResponse:
    """Stream D2 (implementation) concept extraction."""
    await authorize(body.project_id, body.share_token)
    return sse_response(
        request,
        lambda stream, cancel: stream_dataset_concepts(body, "d2", stream, cancel=cancel),
        label="d2-concepts",
    )


@router.post("/build-tesseract")
async def build_tesseract_endpoint(
    body: BuildTesseractRequest, request: Request
) -> StreamingResponse:
    """
    Stream per-concept alignment scoring.

    SSE events: progress, cell, unit_error, result, done (or error).
    """
    await authorize(body.project_id, body.share_token)
    logger.info(f"Tesseract build requested: session={body.session_id}, concepts={len(body.concepts)}")
    return sse_response(
        request,
        lambda stream, cancel: build_tesseract(body, stream, cancel=cancel),
        label="tesseract",
    )
