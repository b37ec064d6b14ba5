"""Audit session RPCs: blackboard, activity log, tesseract cells."""

from typing import Any

from agent_engine.db.supabase_client import get_supabase


def insert_audit_blackboard(
    session_id: str,
    share_token: str,
    agent_role: str,
    entry_type: str,
    content: str,
    iteration: int,
    confidence: float = 0.9,
) -> None:
    """Append an entry to the audit session blackboard."""
    supabase = get_supabase()
    supabase.rpc(
        "insert_audit_blackboard_with_token",
        {
            "p_session_id": session_id,
            "p_token": share_token,
            "p_agent_role": agent_role,
            "p_entry_type": entry_type,
            "p_content": content,
            "p_iteration": iteration,
            "p_confidence": confidence,
            "p_evidence": None,
            "p_target_agent": None,
        },
    ).execute()


def insert_audit_activity(
    session_id: str,
    share_token: str,
    agent_role: str,
    activity_type: str,
    title: str,
    content: str,
    metadata: dict[str, Any] | None = None,
) -> None:
    """Append an entry to the audit activity stream."""
    supabase = get_supabase()
    supabase.rpc(
        "insert_audit_activity_with_token",
        {
            "p_session_id": session_id,
            "p_token": share_token,
            "p_agent_role": agent_role,
            "p_activity_type": activity_type,
            "p_title": title,
            "p_content": content,
            "p_metadata": metadata or {},
        },
    ).execute()


def upsert_tesseract_cell(
    session_id: str,
    share_token: str,
    *,
    x_index: int,
    element_id: str,
    element_label: str,
    polarity: float,
    criticality: str,
    evidence_summary: str,
    evidence_refs: dict[str, Any],
    y_step: int = 1,
    y_step_label: str = "D1-D2 Alignment",
    contributing_agents: list[str] | None = None,
) -> None:
    """Write one concept's alignment cell."""
    supabase = get_supabase()
    supabase.rpc(
        "upsert_audit_tesseract_cell_with_token",
        {
            "p_session_id": session_id,
            "p_token": share_token,
            "p_x_index": x_index,
            "p_x_element_id": element_id,
            "p_x_element_type": "concept",
            "p_x_element_label": element_label,
            "p_y_step": y_step,
            "p_y_step_label": y_step_label,
            "p_z_polarity": polarity,
            "p_z_criticality": criticality,
            "p_evidence_summary": evidence_summary,
            "p_evidence_refs": evidence_refs,
            "p_contributing_agents": contributing_agents or ["tesseract_analyzer"],
        },
    ).execute()
