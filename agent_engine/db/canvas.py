"""Canvas RPCs used by the canvas agent orchestrator."""

from typing import Any

from agent_engine.db.supabase_client import get_supabase


def list_canvas_nodes(project_id: str, share_token: str) -> list[dict[str, Any]]:
    response = get_supabase().rpc(
        "get_canvas_nodes_with_token", {"p_project_id": project_id, "p_token": share_token}
    ).execute()
    return response.data or []


def list_canvas_edges(project_id: str, share_token: str) -> list[dict[str, Any]]:
    response = get_supabase().rpc(
        "get_canvas_edges_with_token", {"p_project_id": project_id, "p_token": share_token}
    ).execute()
    return response.data or []


def upsert_canvas_node(
    project_id: str,
    share_token: str,
    *,
    node_id: str,
    node_type: str,
    position: dict[str, float],
    data: dict[str, Any],
) -> None:
    get_supabase().rpc(
        "upsert_canvas_node_with_token",
        {
            "p_id": node_id,
            "p_project_id": project_id,
            "p_token": share_token,
            "p_type": node_type,
            "p_position": position,
            "p_data": data,
        },
    ).execute()


def delete_canvas_node(node_id: str, share_token: str) -> None:
    get_supabase().rpc(
        "delete_canvas_node_with_token", {"p_id": node_id, "p_token": share_token}
    ).execute()


def upsert_canvas_edge(
    project_id: str,
    share_token: str,
    *,
    edge_id: str,
    source_id: str,
    target_id: str,
    label: str = "",
) -> None:
    get_supabase().rpc(
        "upsert_canvas_edge_with_token",
        {
            "p_id": edge_id,
            "p_project_id": project_id,
            "p_token": share_token,
            "p_source_id": source_id,
            "p_target_id": target_id,
            "p_label": label,
            "p_edge_type": "default",
            "p_style": {"stroke": "hsl(var(--primary))", "strokeWidth": 2},
        },
    ).execute()


def delete_canvas_edge(edge_id: str, share_token: str) -> None:
    get_supabase().rpc(
        "delete_canvas_edge_with_token", {"p_id": edge_id, "p_token": share_token}
    ).execute()
