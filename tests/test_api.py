"""Tests for the v1 API endpoints.

Covers access control, validation reporting and SSE framing via FastAPI
TestClient with the RPC layer mocked out.
"""

import json
from typing import List, Tuple
from unittest.mock import AsyncMock, patch

from fastapi.testclient import TestClient

from agent_engine.core.errors import AccessError
from agent_engine.main import app

client = TestClient(app)

AUDIT_BODY = {
    "sessionId": "session-1",
    "projectId": "project-1",
    "shareToken": "token",
}


def parse_sse_events(text: str) -> List[Tuple[str, dict]]:
    """Parse an SSE response body into (event, data) pairs."""
    events = []
    for block in text.strip().split("\n\n"):
        lines = block.strip().split("\n")
        if len(lines) < 2 or not lines[0].startswith("event: "):
            continue
        events.append((lines[0][7:], json.loads(lines[1][6:])))
    return events


def _deny(*args, **kwargs):
    raise AccessError("Access denied. Invalid project ID or token, or insufficient permissions.")


def test_access_denied_returns_403():
    """Test that a failed role check is a 403 with an error body."""
    with patch("agent_engine.api._streaming.require_role", side_effect=_deny):
        response = client.post(
            "/v1/audit/build-tesseract", json={**AUDIT_BODY, "concepts": []}
        )

    assert response.status_code == 403
    assert "Access denied" in response.json()["error"]


def test_invalid_body_reported_in_200():
    """Test that validation failures are readable by browser callers."""
    response = client.post("/v1/audit/extract-concepts", json={"sessionId": "s"})

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is False
    assert "projectId" in data["error"] or "dataset" in data["error"]


def test_extract_concepts_endpoint():
    """Test that the non-streaming extraction returns the workflow result."""
    result = {"success": True, "concepts": [], "dataset": "d1", "elementCount": 0}
    with (
        patch("agent_engine.api._streaming.require_role", return_value="editor"),
        patch(
            "agent_engine.api.audit.extract_concepts", new=AsyncMock(return_value=result)
        ) as mock_extract,
    ):
        response = client.post(
            "/v1/audit/extract-concepts", json={**AUDIT_BODY, "dataset": "d1", "elements": []}
        )

    assert response.status_code == 200
    assert response.json() == result
    assert mock_extract.await_args.args[0].session_id == "session-1"


def test_build_tesseract_streams_sse():
    """Test SSE headers and framing for an empty tesseract build."""
    with patch("agent_engine.api._streaming.require_role", return_value="editor"):
        response = client.post(
            "/v1/audit/build-tesseract", json={**AUDIT_BODY, "concepts": []}
        )

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert response.headers["x-accel-buffering"] == "no"

    events = parse_sse_events(response.text)
    assert [name for name, _ in events] == ["progress", "progress", "result", "done"]
    assert events[2][1]["cells"] == []


def test_workflow_failure_becomes_error_event():
    """Test that a workflow exception ends the stream with an error event."""
    with (
        patch("agent_engine.api._streaming.require_role", return_value="editor"),
        patch(
            "agent_engine.api.collaboration.orchestrate_collaboration",
            new=AsyncMock(side_effect=RuntimeError("Collaboration not found: c1")),
        ),
    ):
        response = client.post(
            "/v1/collaboration/orchestrate",
            json={
                "collaborationId": "c1",
                "projectId": "project-1",
                "shareToken": "token",
                "userMessage": "hello",
            },
        )

    assert response.status_code == 200
    events = parse_sse_events(response.text)
    assert events == [("error", {"message": "Collaboration not found: c1"})]


def test_canvas_agents_requires_nodes():
    """Test that an empty agent flow is rejected as invalid."""
    response = client.post(
        "/v1/agents/orchestrate",
        json={"projectId": "project-1", "shareToken": "token", "agentFlow": {"nodes": []}},
    )

    assert response.status_code == 200
    assert response.json()["success"] is False
