"""Artifact collaboration RPCs: document state, edit history, messages, blackboard."""

from typing import Any

from agent_engine.db.supabase_client import get_supabase


def _rpc(name: str, params: dict[str, Any]) -> Any:
    return get_supabase().rpc(name, params).execute().data


def get_collaboration(collaboration_id: str, share_token: str) -> dict[str, Any] | None:
    data = _rpc(
        "get_artifact_collaboration_with_token",
        {"p_collaboration_id": collaboration_id, "p_token": share_token},
    )
    if isinstance(data, list):
        return data[0] if data else None
    return data


def list_edit_history(collaboration_id: str, share_token: str) -> list[dict[str, Any]]:
    return (
        _rpc(
            "get_collaboration_history_with_token",
            {"p_collaboration_id": collaboration_id, "p_token": share_token},
        )
        or []
    )


def list_blackboard(collaboration_id: str, share_token: str) -> list[dict[str, Any]]:
    return (
        _rpc(
            "get_collaboration_blackboard_with_token",
            {"p_collaboration_id": collaboration_id, "p_token": share_token},
        )
        or []
    )


def list_messages(collaboration_id: str, share_token: str) -> list[dict[str, Any]]:
    return (
        _rpc(
            "get_collaboration_messages_with_token",
            {"p_collaboration_id": collaboration_id, "p_token": share_token},
        )
        or []
    )


def insert_message(
    collaboration_id: str,
    share_token: str,
    role: str,
    content: str,
    metadata: dict[str, Any] | None = None,
) -> None:
    _rpc(
        "insert_collaboration_message_with_token",
        {
            "p_collaboration_id": collaboration_id,
            "p_token": share_token,
            "p_role": role,
            "p_content": content,
            "p_metadata": metadata or {},
        },
    )


def get_latest_version(collaboration_id: str, share_token: str) -> int:
    data = _rpc(
        "get_collaboration_latest_version_with_token",
        {"p_collaboration_id": collaboration_id, "p_token": share_token},
    )
    try:
        return int(data or 0)
    except (TypeError, ValueError):
        return 0


def insert_edit(
    collaboration_id: str,
    share_token: str,
    *,
    start_line: int,
    end_line: int,
    old_content: str,
    new_content: str,
    new_full_content: str,
    narrative: str,
) -> None:
    """Record one agent edit in the collaboration history."""
    _rpc(
        "insert_collaboration_edit_with_token",
        {
            "p_collaboration_id": collaboration_id,
            "p_token": share_token,
            "p_operation_type": "edit",
            "p_start_line": start_line,
            "p_end_line": end_line,
            "p_old_content": old_content,
            "p_new_content": new_content,
            "p_new_full_content": new_full_content,
            "p_narrative": narrative or "Agent edit",
            "p_actor_type": "agent",
            "p_actor_identifier": "AI Agent",
        },
    )


def update_content(collaboration_id: str, share_token: str, content: str) -> None:
    _rpc(
        "update_artifact_collaboration_with_token",
        {
            "p_collaboration_id": collaboration_id,
            "p_token": share_token,
            "p_current_content": content,
        },
    )


def insert_blackboard_entry(
    collaboration_id: str, share_token: str, entry_type: str, content: str
) -> None:
    _rpc(
        "insert_collaboration_blackboard_with_token",
        {
            "p_collaboration_id": collaboration_id,
            "p_token": share_token,
            "p_entry_type": entry_type,
            "p_content": content,
            "p_metadata": {},
        },
    )
