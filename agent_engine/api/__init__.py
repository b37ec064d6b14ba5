"""API router for v1 endpoints."""

from fastapi import APIRouter

from agent_engine.api import audit, canvas_agents, collaboration

router = APIRouter()

# Audit pipeline: concept extraction and tesseract build
router.include_router(audit.router, prefix="/audit", tags=["audit"])

# Collaborative document editing agent
router.include_router(collaboration.router, prefix="/collaboration", tags=["collaboration"])

# Canvas agent flows
router.include_router(canvas_agents.router, prefix="/agents", tags=["agents"])
