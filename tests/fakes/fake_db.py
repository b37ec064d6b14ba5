"""Fake in-memory RPC layer for workflow tests."""

from typing import Any, Dict, List, Optional


class FakeDB:
    """In-memory stand-in for the Supabase RPC wrappers used by the chains."""

    def __init__(self):
        self.reset()

    def reset(self):
        """Reset all stores to initial state."""
        # Collaboration
        self.collaborations: Dict[str, Dict[str, Any]] = {}
        self.edit_history: List[Dict[str, Any]] = []
        self.collab_blackboard: List[Dict[str, Any]] = []
        self.collab_messages: List[Dict[str, Any]] = []
        self.fail_edit_inserts = False

        # Canvas
        self.canvas_nodes: Dict[str, Dict[str, Any]] = {}
        self.canvas_edges: Dict[str, Dict[str, Any]] = {}

        # Audit
        self.audit_blackboard: List[Dict[str, Any]] = []
        self.audit_activity: List[Dict[str, Any]] = []
        self.tesseract_cells: Dict[int, Dict[str, Any]] = {}

        # Realtime
        self.broadcasts: List[Dict[str, Any]] = []

    # ------------------------------------------------------------------
    # Collaboration
    # ------------------------------------------------------------------

    def add_collaboration(self, collaboration_id: str, content: str = "") -> None:
        self.collaborations[collaboration_id] = {"id": collaboration_id, "current_content": content}

    def get_collaboration(self, collaboration_id: str, share_token: str) -> Optional[Dict[str, Any]]:
        return self.collaborations.get(collaboration_id)

    def list_edit_history(self, collaboration_id: str, share_token: str) -> List[Dict[str, Any]]:
        return [h for h in self.edit_history if h["collaboration_id"] == collaboration_id]

    def list_blackboard(self, collaboration_id: str, share_token: str) -> List[Dict[str, Any]]:
        return [b for b in self.collab_blackboard if b["collaboration_id"] == collaboration_id]

    def list_messages(self, collaboration_id: str, share_token: str) -> List[Dict[str, Any]]:
        return [m for m in self.collab_messages if m["collaboration_id"] == collaboration_id]

    def insert_message(self, collaboration_id, share_token, role, content, metadata=None) -> None:
        self.collab_messages.append(
            {
                "collaboration_id": collaboration_id,
                "role": role,
                "content": content,
                "metadata": metadata or {},
            }
        )

    def get_latest_version(self, collaboration_id: str, share_token: str) -> int:
        return len(self.list_edit_history(collaboration_id, share_token))

    def insert_edit(self, collaboration_id, share_token, **fields) -> None:
        if self.fail_edit_inserts:
            raise RuntimeError("insert failed")
        version = self.get_latest_version(collaboration_id, share_token) + 1
        self.edit_history.append(
            {
                "collaboration_id": collaboration_id,
                "version_number": version,
                "actor_type": "agent",
                "operation_type": "edit",
                **fields,
            }
        )

    def update_content(self, collaboration_id: str, share_token: str, content: str) -> None:
        self.collaborations[collaboration_id]["current_content"] = content

    def insert_blackboard_entry(self, collaboration_id, share_token, entry_type, content) -> None:
        self.collab_blackboard.append(
            {"collaboration_id": collaboration_id, "entry_type": entry_type, "content": content}
        )

    # ------------------------------------------------------------------
    # Canvas
    # ------------------------------------------------------------------

    def add_canvas_node(self, node_id: str, node_type: str, label: str) -> None:
        self.canvas_nodes[node_id] = {
            "id": node_id,
            "type": node_type,
            "position": {"x": 0, "y": 0},
            "data": {"label": label, "type": node_type},
        }

    def list_canvas_nodes(self, project_id: str, share_token: str) -> List[Dict[str, Any]]:
        return [dict(n) for n in self.canvas_nodes.values()]

    def list_canvas_edges(self, project_id: str, share_token: str) -> List[Dict[str, Any]]:
        return [dict(e) for e in self.canvas_edges.values()]

    def upsert_canvas_node(self, project_id, share_token, *, node_id, node_type, position, data):
        self.canvas_nodes[node_id] = {
            "id": node_id,
            "type": node_type,
            "position": position,
            "data": data,
        }

    def delete_canvas_node(self, node_id: str, share_token: str) -> None:
        self.canvas_nodes.pop(node_id, None)

    def upsert_canvas_edge(self, project_id, share_token, *, edge_id, source_id, target_id, label=""):
        self.canvas_edges[edge_id] = {
            "id": edge_id,
            "source_id": source_id,
            "target_id": target_id,
            "label": label,
        }

    def delete_canvas_edge(self, edge_id: str, share_token: str) -> None:
        self.canvas_edges.pop(edge_id, None)

    # ------------------------------------------------------------------
    # Audit
    # ------------------------------------------------------------------

    def insert_audit_blackboard(
        self, session_id, share_token, agent_role, entry_type, content, iteration, confidence=0.9
    ) -> None:
        self.audit_blackboard.append(
            {
                "session_id": session_id,
                "agent_role": agent_role,
                "entry_type": entry_type,
                "content": content,
                "iteration": iteration,
            }
        )

    def insert_audit_activity(
        self, session_id, share_token, agent_role, activity_type, title, content, metadata=None
    ) -> None:
        self.audit_activity.append(
            {
                "session_id": session_id,
                "agent_role": agent_role,
                "activity_type": activity_type,
                "title": title,
                "metadata": metadata or {},
            }
        )

    def upsert_tesseract_cell(self, session_id, share_token, *, x_index, **fields) -> None:
        self.tesseract_cells[x_index] = {"session_id": session_id, "x_index": x_index, **fields}

    # ------------------------------------------------------------------
    # Realtime
    # ------------------------------------------------------------------

    async def broadcast(self, topic: str, event: str, payload: Dict[str, Any], timeout: int = 10) -> bool:
        self.broadcasts.append({"topic": topic, "event": event, "payload": payload})
        return True

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def install(self, monkeypatch) -> "FakeDB":
        """Point every RPC wrapper used by the chains at this store."""
        from agent_engine.chains import build_tesseract, collaboration_agent, extract_concepts
        from agent_engine.db import canvas, collaboration

        for name in (
            "get_collaboration",
            "list_edit_history",
            "list_blackboard",
            "list_messages",
            "insert_message",
            "get_latest_version",
            "insert_edit",
            "update_content",
            "insert_blackboard_entry",
        ):
            monkeypatch.setattr(collaboration, name, getattr(self, name))

        for name in (
            "list_canvas_nodes",
            "list_canvas_edges",
            "upsert_canvas_node",
            "delete_canvas_node",
            "upsert_canvas_edge",
            "delete_canvas_edge",
        ):
            monkeypatch.setattr(canvas, name, getattr(self, name))

        for module in (build_tesseract, extract_concepts):
            monkeypatch.setattr(module, "insert_audit_blackboard", self.insert_audit_blackboard)
            monkeypatch.setattr(module, "insert_audit_activity", self.insert_audit_activity)
        monkeypatch.setattr(build_tesseract, "upsert_tesseract_cell", self.upsert_tesseract_cell)

        monkeypatch.setattr(collaboration_agent, "broadcast", self.broadcast)
        return self
