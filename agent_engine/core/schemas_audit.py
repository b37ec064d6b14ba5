"""Pydantic schemas for the audit pipeline (concept extraction, tesseract)."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from agent_engine.core.unit_processor import clamp_score


class CamelModel(BaseModel):
    """Accepts camelCase keys from the browser and snake_case from Python callers."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ============================================================================
# Request bodies
# ============================================================================


class AuditElement(CamelModel):
    """One dataset element submitted for concept extraction."""

    id: str
    label: str = ""
    category: str | None = None
    content: str | None = None


class ExtractConceptsRequest(CamelModel):
    session_id: str
    project_id: str
    share_token: str
    dataset: Literal["d1", "d2"]
    elements: list[AuditElement] = Field(default_factory=list)
    mapping_mode: Literal["one_to_one", "one_to_many"] = "one_to_many"


class ExtractDatasetConceptsRequest(CamelModel):
    session_id: str
    project_id: str
    share_token: str
    elements: list[AuditElement] = Field(default_factory=list)


class LinkedElement(CamelModel):
    id: str
    label: str = ""
    content: str | None = None


class TesseractConcept(CamelModel):
    """A merged concept with the D1 and D2 elements linked to it."""

    concept_id: str
    concept_label: str
    concept_description: str = ""
    d1_elements: list[LinkedElement] = Field(default_factory=list)
    d2_elements: list[LinkedElement] = Field(default_factory=list)


class BuildTesseractRequest(CamelModel):
    session_id: str
    project_id: str
    share_token: str
    concepts: list[TesseractConcept] = Field(default_factory=list)


# ============================================================================
# Parsed LLM output
# ============================================================================


class AlignmentAnalysis(BaseModel):
    """Per-concept alignment as reported by the model, polarity clamped to [-1, 1]."""

    polarity: float = 0.0
    rationale: str = ""
    d1_coverage: str = Field(default="", alias="d1Coverage")
    d2_implementation: str = Field(default="", alias="d2Implementation")
    gaps: list[str] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("polarity", mode="before")
    @classmethod
    def _clamp_polarity(cls, value: Any) -> float:
        return clamp_score(value)

    @field_validator("gaps", mode="before")
    @classmethod
    def _coerce_gaps(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        return [str(value)]

    @field_validator("rationale", "d1_coverage", "d2_implementation", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return "" if value is None else str(value)


class TesseractCell(BaseModel):
    """One concept's persisted alignment result."""

    x_index: int
    concept_id: str
    concept_label: str
    polarity: float
    criticality: Literal["info", "minor", "major", "critical"]
    rationale: str
    d1_coverage: str = ""
    d2_implementation: str = ""
    gaps: list[str] = Field(default_factory=list)
    d1_count: int = 0
    d2_count: int = 0

    def event_payload(self) -> dict[str, Any]:
        return {
            "conceptLabel": self.concept_label,
            "polarity": self.polarity,
            "rationale": self.rationale[:200],
            "gapCount": len(self.gaps),
        }

    def to_result(self) -> dict[str, Any]:
        return {
            "conceptId": self.concept_id,
            "conceptLabel": self.concept_label,
            "polarity": self.polarity,
            "criticality": self.criticality,
            "rationale": self.rationale,
            "d1Coverage": self.d1_coverage,
            "d2Implementation": self.d2_implementation,
            "gaps": self.gaps,
        }
