"""Project-level RPCs: role checks and model settings."""

from typing import Any

from agent_engine.core.errors import AccessError
from agent_engine.core.logging import get_logger
from agent_engine.db.supabase_client import get_supabase

logger = get_logger(__name__)

ROLE_EDITOR = "editor"


def _first_row(data: Any) -> Any:
    if isinstance(data, list):
        return data[0] if data else None
    return data


def require_role(project_id: str, share_token: str | None, min_role: str = ROLE_EDITOR) -> str:
    """
    Validate that the caller holds at least ``min_role`` on the project.

    Args:
        project_id: Project UUID
        share_token: Caller's share token (may be None for owner sessions)
        min_role: Minimum role required

    Returns:
        The role granted by the database

    Raises:
        AccessError: If the RPC rejects the caller or returns no role
    """
    supabase = get_supabase()
    try:
        response = supabase.rpc(
            "require_role",
            {"p_project_id": project_id, "p_token": share_token or None, "p_min_role": min_role},
        ).execute()
    except Exception as e:
        logger.warning(f"Access denied for project {project_id}: {e}")
        raise AccessError(
            "Access denied. Invalid project ID or token, or insufficient permissions."
        ) from e

    role = _first_row(response.data)
    if not role:
        raise AccessError("Access denied. Invalid project ID or token, or insufficient permissions.")
    return str(role)


def get_project_settings(project_id: str, share_token: str) -> dict[str, Any]:
    """
    Fetch the stored model settings for a project.

    Returns:
        Dict with ``selected_model`` and ``max_tokens`` (either may be None)
    """
    supabase = get_supabase()
    response = supabase.rpc(
        "get_project_with_token",
        {"p_project_id": project_id, "p_token": share_token},
    ).execute()

    project = _first_row(response.data) or {}
    return {
        "selected_model": project.get("selected_model"),
        "max_tokens": project.get("max_tokens"),
    }
