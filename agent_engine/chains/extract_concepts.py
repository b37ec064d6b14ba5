"""Concept extraction for the audit pipeline.

Groups dataset elements (D1 requirements, D2 implementation) into high-level
concepts. One LLM call per request; the retry policy covers both the provider
call and JSON recovery.
"""

import math
from typing import Any, Literal

from agent_engine.chains._provider import best_effort, load_provider
from agent_engine.core.cancellation import CancellationToken
from agent_engine.core.errors import UnitFailedError
from agent_engine.core.llm import LLMAdapter, build_messages
from agent_engine.core.logging import get_logger
from agent_engine.core.schemas_audit import (
    AuditElement,
    ExtractConceptsRequest,
    ExtractDatasetConceptsRequest,
)
from agent_engine.core.sse import EventStream
from agent_engine.core.unit_processor import RetryPolicy, SleepFn, request_json
from agent_engine.db.audit import insert_audit_activity, insert_audit_blackboard

logger = get_logger(__name__)

Dataset = Literal["d1", "d2"]

DATASET_LABELS = {"d1": "requirements/specifications", "d2": "implementation/code"}

STREAMING_TEMPERATURE = 0.3
STREAMING_MAX_TOKENS = 8192

ONE_TO_ONE_RULES = """IMPORTANT GUIDELINES (1:1 MAPPING - STRICT):
1. Each element MUST belong to EXACTLY ONE concept (its PRIMARY/best-fit theme)
2. Every element MUST be assigned - no orphans allowed
3. If an element could fit multiple concepts, assign it to the MOST SPECIFIC one
4. Create broader concepts if needed to ensure single assignment

ASSIGNMENT RULES:
- Each element UUID can appear in exactly ONE concept's elementIds
- No duplications allowed
- No orphans allowed (every input element must appear exactly once)
- If unsure, create a more general concept that encompasses multiple themes"""

ONE_TO_MANY_RULES = """IMPORTANT GUIDELINES (1:MANY MAPPING - FLEXIBLE):
1. The number of concepts should reflect the content
2. A single element CAN belong to multiple concepts if it spans multiple themes
3. Every element MUST be assigned to at least one concept

ASSIGNMENT RULES:
- No orphans allowed (every input element must be mapped to at least one concept)
- Elements spanning multiple themes should appear in multiple concepts"""

DATASET_EXAMPLES = {
    "d1": """A concept is a high-level theme, category, or functional area that groups related elements. Examples:
- "User Authentication" - groups login, logout, session management requirements
- "Data Validation" - groups input validation, sanitization requirements
- "Error Handling" - groups error logging, user feedback requirements""",
    "d2": """A concept is a high-level theme, category, or functional area that groups related elements. For code files, this might be:
- "User Authentication" - groups login, session, auth-related files
- "API Endpoints" - groups route handlers, controllers
- "Database Operations" - groups models, migrations, queries
- "UI Components" - groups React components, views""",
}


# ============================================================================
# Prompts
# ============================================================================


def build_extraction_prompt(
    dataset: Dataset, elements: list[AuditElement], mapping_mode: str
) -> str:
    """Prompt listing every element with full content plus mapping-mode rules."""
    elements_text = "\n\n---\n\n".join(
        f"[Element {i + 1}]\nID: {e.id}\nLabel: {e.label}\n"
        f"Category: {e.category or 'unknown'}\nContent:\n{e.content or '(empty)'}"
        for i, e in enumerate(elements)
    )
    one_to_one = mapping_mode == "one_to_one"

    return f"""You are analyzing {DATASET_LABELS[dataset]} elements to identify high-level concepts.

## Elements to analyze ({len(elements)} total):
{elements_text}

## Task
Identify ALL meaningful high-level CONCEPTS that group these elements by theme, purpose, or functionality.

{ONE_TO_ONE_RULES if one_to_one else ONE_TO_MANY_RULES}

## Output Format (JSON only)
{{
  "concepts": [
    {{
      "label": "Concept Name (2-5 words, descriptive)",
      "description": "Comprehensive explanation of what this concept covers (4-8 sentences).",
      "elementIds": ["element-uuid-1", "element-uuid-2"],
      "supportingEvidence": [
        "Direct quote or key phrase from element 1 that demonstrates this concept"
      ]
    }}
  ]
}}

CRITICAL RULES:
1. Every element UUID listed above MUST appear in {"exactly one" if one_to_one else "at least one"} concept's elementIds
2. Use the exact UUIDs from the elements
3. Descriptions must be thorough and evidence-based, not generic
4. supportingEvidence should contain 1-3 SHORT direct quotes (max 50 chars each)
5. Return ONLY valid JSON, no other text"""


def build_dataset_prompt(dataset: Dataset, elements: list[AuditElement]) -> str:
    """Prompt for the streaming per-dataset extraction (``d1Ids``/``d2Ids`` output)."""
    upper = dataset.upper()
    number = dataset[1]
    elements_text = "\n\n---\n\n".join(
        f"### Element {i + 1}: {e.label}\nID: {e.id}\n"
        f"Category: {e.category or 'unknown'}\nContent:\n{e.content or '(no content)'}"
        for i, e in enumerate(elements)
    )

    return f"""You are analyzing Dataset {number} ({upper}) elements to extract common concepts/themes.

## {upper} Elements ({len(elements)} total)

{elements_text}

## Your Task

Analyze ALL {upper} elements and identify the common CONCEPTS that tie them together. Each {upper} element MUST be linked to at least one concept.

{DATASET_EXAMPLES[dataset]}

## Output Format

Return a JSON object with this exact structure:
{{
  "concepts": [
    {{
      "label": "Concept Name",
      "description": "A detailed description explaining what this concept represents and why the linked {upper} elements belong to it.",
      "{dataset}Ids": ["uuid1", "uuid2", "uuid3"]
    }}
  ],
  "unmapped{upper}Ids": []
}}

RULES:
1. Every {upper} element ID MUST appear in at least one concept's {dataset}Ids array
2. A {upper} element CAN appear in multiple concepts if it spans multiple themes
3. Create 3-15 concepts depending on the variety of {upper} elements
4. Descriptions should be 2-4 sentences explaining the concept's purpose
5. unmapped{upper}Ids should ideally be empty - try to map everything

Return ONLY the JSON object, no other text."""


def _as_list(value: Any) -> list[Any]:
    return value if isinstance(value, list) else []


# ============================================================================
# Non-streaming extraction
# ============================================================================


async def extract_concepts(
    request: ExtractConceptsRequest,
    *,
    adapter: LLMAdapter | None = None,
    model_name: str | None = None,
    policy: RetryPolicy | None = None,
    sleep: SleepFn | None = None,
    cancel: CancellationToken | None = None,
) -> dict[str, Any]:
    """
    Extract concepts from one dataset in a single call.

    Failures never raise: the result carries ``success: false`` and the error
    from the last attempt so the browser can always read the body.

    Args:
        request: Validated request body
        adapter: Adapter override (defaults to the project's configured model)
        model_name: Model name reported when ``adapter`` is supplied
        policy: Retry policy override
        sleep: Sleep override for retry backoff
        cancel: Optional cancellation token

    Returns:
        Response body dict
    """
    dataset = request.dataset
    elements = request.elements
    policy = policy or RetryPolicy.from_settings()

    total_content_chars = sum(len(e.content or "") for e in elements)
    total_estimated_tokens = math.ceil(total_content_chars / 4)
    failure = {"success": False, "dataset": dataset, "elementCount": len(elements), "concepts": []}

    try:
        if adapter is None:
            config, adapter = await load_provider(request.project_id, request.share_token)
            model_name = config.model_name
    except Exception as e:
        logger.error(f"[{dataset}] Could not configure provider: {e}")
        return {**failure, "error": str(e)}

    logger.info(
        f"[{dataset}] Starting extraction: {len(elements)} elements, "
        f"{total_content_chars} chars (~{total_estimated_tokens} tokens), "
        f"mode={request.mapping_mode}"
    )

    prompt = build_extraction_prompt(dataset, elements, request.mapping_mode)
    logger.debug(f"[{dataset}] Prompt: {len(prompt)} chars")

    try:
        parsed = await request_json(
            adapter,
            build_messages(prompt),
            policy=policy,
            unit_id=f"{dataset}-extract",
            temperature=0.4,
            cancel=cancel,
            sleep=sleep,
        )
    except UnitFailedError as e:
        return {**failure, "error": str(e.last_error)}

    concepts = [c for c in _as_list(parsed.get("concepts")) if isinstance(c, dict)]
    logger.info(f"[{dataset}] Extracted {len(concepts)} concepts")

    summary_lines = "\n".join(
        f"- {c.get('label', '')} ({len(_as_list(c.get('elementIds')))} elements): "
        f"{str(c.get('description', ''))[:100]}..."
        for c in concepts
    )
    await best_effort(
        "log to blackboard",
        insert_audit_blackboard,
        request.session_id,
        request.share_token,
        f"{dataset}_extractor",
        f"{dataset}_concepts",
        f"Extracted {len(concepts)} concepts from {len(elements)} elements "
        f"using {model_name}:\n{summary_lines}",
        1,
    )
    await best_effort(
        "log activity",
        insert_audit_activity,
        request.session_id,
        request.share_token,
        f"{dataset}_extractor",
        "concept_extraction",
        f"{dataset.upper()} Concept Extraction Complete",
        f"Extracted {len(concepts)} concepts from {len(elements)} elements using {model_name}",
        {
            "conceptCount": len(concepts),
            "elementCount": len(elements),
            "dataset": dataset,
            "totalContentChars": total_content_chars,
            "totalEstimatedTokens": total_estimated_tokens,
            "model": model_name,
        },
    )

    return {
        "success": True,
        "concepts": concepts,
        "dataset": dataset,
        "elementCount": len(elements),
        "totalContentChars": total_content_chars,
        "totalEstimatedTokens": total_estimated_tokens,
        "model": model_name,
    }


# ============================================================================
# Streaming per-dataset extraction
# ============================================================================


async def stream_dataset_concepts(
    request: ExtractDatasetConceptsRequest,
    dataset: Dataset,
    stream: EventStream,
    *,
    adapter: LLMAdapter | None = None,
    policy: RetryPolicy | None = None,
    sleep: SleepFn | None = None,
    cancel: CancellationToken | None = None,
) -> None:
    """
    Extract concepts for one dataset, reporting progress on ``stream``.

    Emits progress 0/20/60/80/100, then ``result`` and ``done``. An empty
    element list skips the provider entirely. Exhausted retries raise
    ``UnitFailedError``; the stream runner turns it into the ``error`` event.
    """
    elements = request.elements
    upper = dataset.upper()
    ids_key = f"{dataset}Ids"
    unmapped_key = f"unmapped{upper}Ids"
    count_key = f"{dataset}Count"
    phase = f"{dataset}_extraction"

    await stream.progress(
        0, 100, f"Analyzing {len(elements)} {upper} elements...", phase=phase
    )

    if not elements:
        await stream.progress(100, 100, f"{upper} extraction complete", phase=phase)
        await stream.send("result", {"concepts": [], unmapped_key: [], count_key: 0})
        await stream.send("done", {"success": True})
        return

    if adapter is None:
        _, adapter = await load_provider(
            request.project_id, request.share_token, max_tokens_cap=STREAMING_MAX_TOKENS
        )

    prompt = build_dataset_prompt(dataset, elements)
    await stream.progress(20, 100, "Calling LLM for concept extraction...", phase=phase)

    parsed = await request_json(
        adapter,
        build_messages(prompt),
        policy=policy or RetryPolicy.from_settings(),
        unit_id=f"{dataset}-concepts",
        temperature=STREAMING_TEMPERATURE,
        cancel=cancel,
        sleep=sleep,
    )

    await stream.progress(60, 100, "Parsing LLM response...", phase=phase)

    concepts = [c for c in _as_list(parsed.get("concepts")) if isinstance(c, dict)]
    unmapped = _as_list(parsed.get(unmapped_key))

    await stream.progress(
        80,
        100,
        f"Extracted {len(concepts)} concepts from {upper}",
        phase=phase,
        conceptCount=len(concepts),
        unmappedCount=len(unmapped),
    )

    summary_lines = "\n".join(
        f"- {c.get('label', '')}: {len(_as_list(c.get(ids_key)))} elements" for c in concepts
    )
    await best_effort(
        "log to blackboard",
        insert_audit_blackboard,
        request.session_id,
        request.share_token,
        f"{dataset}_extractor",
        f"{dataset}_concepts",
        f"Extracted {len(concepts)} concepts from {len(elements)} {upper} elements:\n{summary_lines}",
        1,
    )
    await best_effort(
        "log activity",
        insert_audit_activity,
        request.session_id,
        request.share_token,
        f"{dataset}_extractor",
        "concept_extraction",
        f"{upper} Concept Extraction Complete",
        f"Extracted {len(concepts)} concepts from {len(elements)} {upper} elements",
        {"conceptCount": len(concepts), count_key: len(elements)},
    )

    await stream.progress(100, 100, f"{upper} extraction complete", phase=phase)
    await stream.send(
        "result", {"concepts": concepts, unmapped_key: unmapped, count_key: len(elements)}
    )
    await stream.send("done", {"success": True})
