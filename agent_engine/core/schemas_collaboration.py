"""Pydantic schemas for the collaboration orchestrator."""

from typing import Any, Literal

from pydantic import BaseModel, Field, field_validator

from agent_engine.core.llm import ChatMessage
from agent_engine.core.schemas_audit import CamelModel


class ConversationTurn(CamelModel):
    role: Literal["user", "assistant"]
    content: str

    def to_message(self) -> ChatMessage:
        return ChatMessage(role=self.role, content=self.content)


class Continuation(CamelModel):
    """Everything needed to resume a run on the next request.

    The server keeps no session state: the client echoes this back verbatim.
    ``pending_results`` are the operation results of the last iteration, not
    yet shown to the model.
    """

    iteration: int = 0
    conversation_history: list[ConversationTurn] = Field(default_factory=list)
    pending_results: list[dict[str, Any]] = Field(default_factory=list)
    document_content: str = ""


class OrchestrateCollaborationRequest(CamelModel):
    collaboration_id: str
    project_id: str
    share_token: str
    user_message: str
    max_iterations: int | None = Field(default=None, ge=1)
    iteration_budget: int | None = Field(
        default=None, ge=1, description="Iterations to run in this request before pausing"
    )
    current_content: str | None = None
    attached_context: dict[str, Any] | None = None
    continuation: Continuation | None = None


class AgentOperation(BaseModel):
    type: str
    params: dict[str, Any] = Field(default_factory=dict)

    @field_validator("params", mode="before")
    @classmethod
    def _coerce_params(cls, value: Any) -> dict[str, Any]:
        return value if isinstance(value, dict) else {}


class BlackboardEntry(BaseModel):
    type: str = "progress"
    content: str = ""


class AgentResponse(BaseModel):
    """One iteration's decision as reported by the model."""

    reasoning: str = ""
    operations: list[AgentOperation] = Field(default_factory=list)
    blackboard_entry: BlackboardEntry | None = None
    status: str = "in_progress"
    message: str = ""

    @field_validator("operations", mode="before")
    @classmethod
    def _drop_malformed_operations(cls, value: Any) -> list[Any]:
        if not isinstance(value, list):
            return []
        return [op for op in value if isinstance(op, dict) and isinstance(op.get("type"), str)]

    @field_validator("blackboard_entry", mode="before")
    @classmethod
    def _coerce_blackboard(cls, value: Any) -> Any:
        if isinstance(value, str):
            return {"content": value}
        return value if isinstance(value, dict) else None

    @field_validator("reasoning", "status", "message", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return "" if value is None else str(value)

    @classmethod
    def unparseable(cls, preview: str) -> "AgentResponse":
        return cls(
            reasoning="Failed to parse agent response",
            operations=[],
            status="error",
            message=preview,
        )
