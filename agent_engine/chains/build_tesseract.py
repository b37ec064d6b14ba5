"""Tesseract build: per-concept D1/D2 alignment scoring.

Each merged concept is one work unit. Units run on a bounded pool and are
reported in submission order. A unit whose retries are exhausted is reported
as ``unit_error`` and the run continues.
"""

import asyncio
import logging
from typing import Literal

from agent_engine.chains._provider import best_effort, load_provider
from agent_engine.core.cancellation import CancellationToken
from agent_engine.core.config import get_settings
from agent_engine.core.errors import UnitFailedError
from agent_engine.core.llm import LLMAdapter, build_messages
from agent_engine.core.logging import get_logger, log_with_context
from agent_engine.core.schemas_audit import (
    AlignmentAnalysis,
    BuildTesseractRequest,
    LinkedElement,
    TesseractCell,
    TesseractConcept,
)
from agent_engine.core.sse import EventStream
from agent_engine.core.unit_pool import process_units
from agent_engine.core.unit_processor import RetryPolicy, SleepFn, request_json
from agent_engine.db.audit import (
    insert_audit_activity,
    insert_audit_blackboard,
    upsert_tesseract_cell,
)

logger = get_logger(__name__)

Criticality = Literal["info", "minor", "major", "critical"]

ALIGNMENT_TEMPERATURE = 0.3
MISSING_SIDE_POLARITY = -1.0


def criticality_for(polarity: float) -> Criticality:
    if polarity >= 0.5:
        return "info"
    if polarity >= 0:
        return "minor"
    if polarity >= -0.5:
        return "major"
    return "critical"


def _format_linked(elements: list[LinkedElement]) -> list[str]:
    return [f"### {e.label}\nID: {e.id}\n{e.content or '(no content)'}" for e in elements]


def build_alignment_prompt(concept: TesseractConcept) -> str:
    linked_d1 = _format_linked(concept.d1_elements)
    linked_d2 = _format_linked(concept.d2_elements)
    d1_text = "\n\n---\n\n".join(linked_d1) or "(No D1 elements linked to this concept)"
    d2_text = "\n\n---\n\n".join(linked_d2) or "(No D2 elements linked to this concept)"

    return f"""Analyze alignment between D1 requirements and D2 implementation for this concept.

## Concept: {concept.concept_label}
{concept.concept_description or "(no description)"}

## D1 Requirements (Source of Truth) - {len(linked_d1)} items

{d1_text}

## D2 Implementation - {len(linked_d2)} items

{d2_text}

## Your Task

Analyze whether the D2 implementation fully satisfies the D1 requirements for this concept.

Return a JSON object with this exact structure:
{{
  "polarity": 0.7,
  "rationale": "Detailed explanation of why you gave this polarity score. What is well covered? What is missing?",
  "d1Coverage": "Summary of what D1 requirements exist",
  "d2Implementation": "Summary of what D2 provides",
  "gaps": ["Specific gap 1", "Specific gap 2"]
}}

POLARITY SCALE:
- 1.0: Perfect alignment - D2 fully implements all D1 requirements
- 0.5 to 0.9: Good alignment - D2 implements most requirements with minor gaps
- 0.0 to 0.4: Partial alignment - D2 implements some requirements but significant gaps exist
- -0.5 to -0.1: Poor alignment - D2 barely addresses D1 requirements
- -1.0: No alignment or contradictory - D2 does not implement or conflicts with D1

If there are no D1 elements, return polarity -1.0 with rationale explaining no requirements exist.
If there are no D2 elements, return polarity -1.0 with rationale explaining no implementation exists.

Return ONLY the JSON object."""


def _unlinked_analysis(concept: TesseractConcept) -> AlignmentAnalysis:
    return AlignmentAnalysis(
        polarity=MISSING_SIDE_POLARITY,
        rationale=(
            f"No requirements (D1) and no implementation (D2) are linked to "
            f"'{concept.concept_label}'."
        ),
        gaps=["No D1 requirements linked", "No D2 implementation linked"],
    )


async def analyze_concept(
    adapter: LLMAdapter | None,
    concept: TesseractConcept,
    *,
    policy: RetryPolicy,
    cancel: CancellationToken | None = None,
    sleep: SleepFn | None = None,
) -> AlignmentAnalysis:
    """
    Score one concept's alignment.

    Both sides empty: no provider call. One side empty: the model is still
    asked for a rationale but the polarity is forced to -1.0.

    Raises:
        UnitFailedError: if every attempt failed
    """
    d1_empty = not concept.d1_elements
    d2_empty = not concept.d2_elements
    if d1_empty and d2_empty:
        return _unlinked_analysis(concept)
    if adapter is None:
        raise ValueError("LLM adapter required for linked concepts")

    unit_id = f"tesseract:{concept.concept_id}"

    parsed = await request_json(
        adapter,
        build_messages(build_alignment_prompt(concept)),
        policy=policy,
        unit_id=unit_id,
        temperature=ALIGNMENT_TEMPERATURE,
        cancel=cancel,
        sleep=sleep,
    )
    analysis = AlignmentAnalysis.model_validate(parsed)

    if d1_empty or d2_empty:
        analysis = analysis.model_copy(update={"polarity": MISSING_SIDE_POLARITY})
    return analysis


async def build_tesseract(
    request: BuildTesseractRequest,
    stream: EventStream,
    *,
    adapter: LLMAdapter | None = None,
    policy: RetryPolicy | None = None,
    sleep: SleepFn | None = None,
    cancel: CancellationToken | None = None,
    concurrency: int | None = None,
) -> None:
    """
    Score every concept and stream the cells.

    Args:
        request: Validated request body
        stream: Event stream to report on
        adapter: Adapter override (defaults to the project's configured model)
        policy: Retry policy override
        sleep: Sleep override for retry backoff
        cancel: Optional cancellation token
        concurrency: Pool size override (defaults to UNIT_CONCURRENCY)
    """
    settings = get_settings()
    policy = policy or RetryPolicy.from_settings(settings)
    concepts = request.concepts
    total = len(concepts)

    log_with_context(
        logger,
        logging.INFO,
        f"[tesseract] Received {total} concepts for analysis",
        session_id=request.session_id,
        project_id=request.project_id,
    )
    await stream.send(
        "progress",
        {
            "phase": "tesseract",
            "current": 0,
            "total": total,
            "progress": 0,
            "message": f"Analyzing {total} concepts for alignment...",
        },
    )

    if total == 0:
        logger.warning("[tesseract] No concepts to analyze")
        await stream.progress(0, 0, "No concepts found in graph", phase="tesseract")
        await stream.send("result", {"cells": [], "avgPolarity": 0, "failedCount": 0})
        await stream.send("done", {"success": True})
        return

    needs_provider = any(c.d1_elements or c.d2_elements for c in concepts)
    if adapter is None and needs_provider:
        _, adapter = await load_provider(
            request.project_id,
            request.share_token,
            max_tokens_cap=settings.TESSERACT_MAX_TOKENS,
        )

    async def _worker(index: int, concept: TesseractConcept) -> TesseractCell:
        analysis = await analyze_concept(
            adapter, concept, policy=policy, cancel=cancel, sleep=sleep
        )
        cell = TesseractCell(
            x_index=index,
            concept_id=concept.concept_id,
            concept_label=concept.concept_label,
            polarity=analysis.polarity,
            criticality=criticality_for(analysis.polarity),
            rationale=analysis.rationale,
            d1_coverage=analysis.d1_coverage,
            d2_implementation=analysis.d2_implementation,
            gaps=analysis.gaps,
            d1_count=len(concept.d1_elements),
            d2_count=len(concept.d2_elements),
        )
        await asyncio.to_thread(
            upsert_tesseract_cell,
            request.session_id,
            request.share_token,
            x_index=index,
            element_id=cell.concept_id,
            element_label=cell.concept_label,
            polarity=cell.polarity,
            criticality=cell.criticality,
            evidence_summary=cell.rationale,
            evidence_refs={
                "gaps": cell.gaps,
                "d1Coverage": cell.d1_coverage,
                "d2Implementation": cell.d2_implementation,
                "d1Count": cell.d1_count,
                "d2Count": cell.d2_count,
            },
        )
        return cell

    cells: list[TesseractCell] = []
    failed = 0

    async for outcome in process_units(
        concepts, _worker, concurrency=concurrency or settings.UNIT_CONCURRENCY
    ):
        concept = outcome.unit
        current = outcome.index + 1
        await stream.progress(
            current,
            total,
            f"Analyzing: {concept.concept_label} ({current}/{total})",
            phase="tesseract",
            conceptLabel=concept.concept_label,
        )

        if outcome.ok and outcome.result is not None:
            cell = outcome.result
            cells.append(cell)
            logger.info(
                f"[tesseract] Saved cell for {cell.concept_label}: polarity={cell.polarity:.2f}"
            )
            await stream.send("cell", cell.event_payload())
            continue

        failed += 1
        error = outcome.error
        message = str(error.last_error) if isinstance(error, UnitFailedError) else str(error)
        logger.error(f"[tesseract] Error analyzing concept {concept.concept_label}: {message}")
        await stream.send(
            "unit_error",
            {
                "conceptId": concept.concept_id,
                "conceptLabel": concept.concept_label,
                "message": message,
            },
        )

    avg_polarity = sum(c.polarity for c in cells) / len(cells) if cells else 0
    high = sum(1 for c in cells if c.polarity >= 0.5)
    partial = sum(1 for c in cells if 0 <= c.polarity < 0.5)
    poor = sum(1 for c in cells if c.polarity < 0)

    logger.info(
        f"[tesseract] Complete: {len(cells)} cells, {failed} failed, avgPolarity={avg_polarity:.2f}"
    )

    await best_effort(
        "write tesseract summary to blackboard",
        insert_audit_blackboard,
        request.session_id,
        request.share_token,
        "tesseract_analyzer",
        "tesseract_complete",
        "Tesseract Analysis Complete:\n"
        f"- Concepts analyzed: {len(cells)}\n"
        f"- Average polarity: {avg_polarity:.2f}\n"
        f"- High alignment (>0.5): {high}\n"
        f"- Partial alignment (0-0.5): {partial}\n"
        f"- Poor alignment (<0): {poor}",
        3,
    )
    await best_effort(
        "log tesseract activity",
        insert_audit_activity,
        request.session_id,
        request.share_token,
        "tesseract_analyzer",
        "tesseract_complete",
        "Tesseract Analysis Complete",
        f"Analyzed {len(cells)} concepts, average polarity: {avg_polarity:.2f}",
        {
            "cellCount": len(cells),
            "failedCount": failed,
            "avgPolarity": avg_polarity,
            "highAlignment": high,
            "lowAlignment": poor,
        },
    )

    await stream.progress(total, total, "Tesseract analysis complete", phase="tesseract")
    await stream.send(
        "result",
        {
            "cells": [c.to_result() for c in cells],
            "avgPolarity": avg_polarity,
            "failedCount": failed,
        },
    )
    await stream.send("done", {"success": True})
