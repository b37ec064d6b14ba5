"""Pydantic schemas for the canvas agent orchestrator."""

from typing import Any

from pydantic import Field, field_validator

from agent_engine.core.schemas_audit import CamelModel

ALLOWED_NODE_TYPES = (
    "PROJECT",
    "PAGE",
    "COMPONENT",
    "API",
    "DATABASE",
    "SERVICE",
    "WEBHOOK",
    "FIREWALL",
    "SECURITY",
    "REQUIREMENT",
    "STANDARD",
    "TECH_STACK",
)


def normalize_node_type(raw: Any) -> str:
    """Map an arbitrary model-suggested node type onto the canvas enum."""
    value = raw.upper() if isinstance(raw, str) else ""
    if value in ALLOWED_NODE_TYPES:
        return value
    if "DATA" in value:
        return "DATABASE"
    if "PROTOCOL" in value or "API" in value:
        return "API"
    return "COMPONENT"


class AgentNodeData(CamelModel):
    type: str = ""
    label: str = ""
    system_prompt: str = ""
    capabilities: list[str] = Field(default_factory=list)

    def allows(self, capability: str) -> bool:
        """An empty capability list allows everything."""
        return not self.capabilities or capability in self.capabilities


class AgentNode(CamelModel):
    id: str
    data: AgentNodeData = Field(default_factory=AgentNodeData)

    @property
    def label(self) -> str:
        return self.data.label or self.id


class AgentEdge(CamelModel):
    id: str | None = None
    source: str
    target: str


class AgentFlow(CamelModel):
    nodes: list[AgentNode] = Field(..., min_length=1)
    edges: list[AgentEdge] = Field(default_factory=list)


class AgentPromptOverride(CamelModel):
    system: str | None = None
    user: str | None = None


class OrchestrateAgentsRequest(CamelModel):
    project_id: str
    share_token: str
    agent_flow: AgentFlow
    attached_context: dict[str, Any] | None = None
    iterations: int = Field(default=1, ge=1)
    orchestrator_enabled: bool = True
    start_from_node_id: str | None = None
    agent_prompts: dict[str, AgentPromptOverride] = Field(default_factory=dict)


class CanvasChanges(CamelModel):
    """Changes proposed by one agent."""

    reasoning: str = "No reasoning provided"
    nodes_to_add: list[dict[str, Any]] = Field(default_factory=list)
    nodes_to_edit: list[dict[str, Any]] = Field(default_factory=list)
    nodes_to_delete: list[str] = Field(default_factory=list)
    edges_to_add: list[dict[str, Any]] = Field(default_factory=list)
    edges_to_delete: list[str] = Field(default_factory=list)

    @field_validator("nodes_to_add", "nodes_to_edit", "edges_to_add", mode="before")
    @classmethod
    def _dict_items(cls, value: Any) -> list[dict[str, Any]]:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, dict)]

    @field_validator("nodes_to_delete", "edges_to_delete", mode="before")
    @classmethod
    def _id_items(cls, value: Any) -> list[str]:
        if not isinstance(value, list):
            return []
        return [str(item) for item in value if isinstance(item, (str, int))]

    @field_validator("reasoning", mode="before")
    @classmethod
    def _coerce_reasoning(cls, value: Any) -> str:
        return str(value) if value else "No reasoning provided"


class ChangeMetric(CamelModel):
    iteration: int
    agent_id: str
    agent_label: str
    nodes_added: int = 0
    nodes_edited: int = 0
    nodes_deleted: int = 0
    edges_added: int = 0
    edges_edited: int = 0
    edges_deleted: int = 0
    timestamp: str = ""


class ChangeLogEntry(CamelModel):
    iteration: int
    agent_id: str
    agent_label: str
    timestamp: str
    changes: str
    reasoning: str
