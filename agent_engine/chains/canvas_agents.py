"""Canvas agent orchestrator.

Runs a user-defined flow of agents over the project canvas. Each agent reads
the live canvas, proposes node and edge changes, and the changes it is
capable of are applied through RPC. After each agent an orchestrator call
adds short guidance to a blackboard that later agents see.
"""

import asyncio
import json
import random
import uuid
from datetime import UTC, datetime
from typing import Any

from agent_engine.chains._provider import load_provider
from agent_engine.core.cancellation import CancellationToken
from agent_engine.core.config import get_settings
from agent_engine.core.errors import ProviderError, UnitFailedError
from agent_engine.core.llm import ChatMessage, LLMAdapter, build_messages
from agent_engine.core.logging import get_logger
from agent_engine.core.schemas_canvas import (
    ALLOWED_NODE_TYPES,
    AgentEdge,
    AgentNode,
    AgentPromptOverride,
    CanvasChanges,
    ChangeLogEntry,
    ChangeMetric,
    OrchestrateAgentsRequest,
    normalize_node_type,
)
from agent_engine.core.sse import EventStream
from agent_engine.core.unit_processor import RetryPolicy, SleepFn, request_json
from agent_engine.db import canvas as canvas_db

logger = get_logger(__name__)

ORCHESTRATOR_SYSTEM_PROMPT = (
    "You are the Orchestrator supervising all agents. Review changes and provide brief "
    "guidance that all agents can reference. Focus on architectural coherence, missing "
    "elements, potential issues, and next priorities. Keep guidance to 2-3 sentences."
)
AGENT_RETRIES = 2


def build_execution_order(nodes: list[AgentNode], edges: list[AgentEdge]) -> list[AgentNode]:
    """
    Order agents for execution.

    Starts at the first node with no incoming edge (or the first node if
    every node has one), walks edges depth-first, then appends any node the
    walk did not reach in its original position order.
    """
    if not nodes:
        return []

    by_id = {node.id: node for node in nodes}
    graph: dict[str, list[str]] = {node.id: [] for node in nodes}
    incoming: dict[str, int] = {node.id: 0 for node in nodes}
    for edge in edges:
        graph.setdefault(edge.source, []).append(edge.target)
        incoming[edge.target] = incoming.get(edge.target, 0) + 1

    start = next((node for node in nodes if incoming.get(node.id, 0) == 0), nodes[0])

    order: list[AgentNode] = []
    visited: set[str] = set()
    stack = [start.id]
    while stack:
        node_id = stack.pop()
        if node_id in visited:
            continue
        visited.add(node_id)
        node = by_id.get(node_id)
        if node is None:
            continue
        order.append(node)
        stack.extend(reversed(graph.get(node_id, [])))

    order.extend(node for node in nodes if node.id not in visited)
    return order


def _is_connected(node: AgentNode, edges: list[AgentEdge]) -> bool:
    return any(e.source == node.id or e.target == node.id for e in edges)


def _edge_endpoints(edge: dict[str, Any]) -> tuple[Any, Any]:
    return edge.get("source") or edge.get("source_id"), edge.get("target") or edge.get("target_id")


def _node_label(node: dict[str, Any]) -> str:
    data = node.get("data") if isinstance(node.get("data"), dict) else {}
    return data.get("label") or "Unnamed"


def _render_artifact(a: dict[str, Any]) -> str:
    text = f"- [{a.get('ai_title') or 'Untitled'}]"
    if a.get("ai_summary"):
        text += f"\n  Summary: {a['ai_summary']}"
    if a.get("content"):
        content = str(a["content"])
        text += f"\n  Content: {content[:200]}{'...' if len(content) > 200 else ''}"
    return text


def _render_chat(c: dict[str, Any]) -> str:
    text = f"- [{c.get('ai_title') or c.get('title') or 'Untitled Chat'}]"
    if c.get("ai_summary"):
        text += f"\n  Summary: {c['ai_summary']}"
    return text


def _render_edge(e: dict[str, Any]) -> str:
    label = f" ({e['label']})" if e.get("label") else ""
    return f"- {e.get('source_id')} -> {e.get('target_id')}{label}"


# (attached context key, section title, renderer)
CONTEXT_SECTIONS = (
    ("artifacts", "ARTIFACTS", _render_artifact),
    ("chatSessions", "CHAT SESSIONS", _render_chat),
    (
        "requirements",
        "REQUIREMENTS",
        lambda r: f"- {r.get('code') or ''} {r.get('title', '')}: {r.get('content') or 'No description'}",
    ),
    (
        "standards",
        "STANDARDS",
        lambda s: f"- {s.get('code') or ''} {s.get('title', '')}: {s.get('description') or 'No description'}",
    ),
    (
        "techStacks",
        "TECH STACKS",
        lambda t: f"- {t.get('name', '')}: {t.get('description') or 'No description'}",
    ),
    ("canvasNodes", "SELECTED CANVAS NODES", lambda n: f"- {_node_label(n)} ({n.get('type')})"),
    ("canvasEdges", "SELECTED CANVAS EDGES", _render_edge),
    (
        "canvasLayers",
        "SELECTED CANVAS LAYERS",
        lambda layer: f"- {layer.get('name', '')} ({len(layer.get('node_ids') or [])} nodes)",
    ),
)


def format_agent_context(
    canvas_nodes: list[dict[str, Any]],
    canvas_edges: list[dict[str, Any]],
    blackboard: list[str],
    attached_context: dict[str, Any] | None,
    user_addition: str = "",
) -> str:
    """Build the user prompt an agent receives."""
    lines = [
        "Current Canvas State:",
        f"- Nodes: {len(canvas_nodes)}",
        f"- Edges: {len(canvas_edges)}",
        "",
    ]

    if blackboard:
        lines += [
            "=== SHARED BLACKBOARD MEMORY ===",
            "The following guidance has been provided by the Orchestrator for all agents:",
            "",
            "\n\n".join(blackboard),
            "=== END BLACKBOARD ===",
            "",
        ]

    ctx = attached_context or {}
    meta = ctx.get("projectMetadata")
    if isinstance(meta, dict):
        lines.append("=== PROJECT METADATA ===")
        lines.append(f"Name: {meta.get('name', '')}")
        for key in ("description", "organization", "scope", "budget"):
            if meta.get(key):
                lines.append(f"{key.capitalize()}: {meta[key]}")
        lines.append("")

    for key, title, render in CONTEXT_SECTIONS:
        items = [item for item in ctx.get(key) or [] if isinstance(item, dict)]
        if items:
            lines.append(f"=== {title} ({len(items)}) ===")
            lines.extend(render(item) for item in items)
            lines.append("")

    lines += [
        "=== NODE TYPE & ID RULES ===",
        f"- Node types must be one of: {', '.join(ALLOWED_NODE_TYPES)}",
        "- For edgesToAdd, source and target MUST be node IDs from the list below (not labels).",
        "- New nodes get generated IDs; only connect edges between existing node IDs.",
        "",
        "Current Nodes:",
    ]
    lines += [
        f"- {n.get('id')}: {_node_label(n)} (Type: {n.get('type')})" for n in canvas_nodes
    ]
    lines += ["", "Current Edges:"]
    lines += [f"- {s} -> {t}" for s, t in map(_edge_endpoints, canvas_edges)]
    lines += [
        "",
        "Your Task: Analyze the above and determine what changes are needed. Return a JSON object with:",
        "{",
        '  "reasoning": "Your analysis and reasoning",',
        '  "nodesToAdd": [{ "type": "COMPONENT", "label": "Name", "description": "..." }],',
        '  "nodesToEdit": [{ "id": "node-uuid", "updates": { "label": "New name" } }],',
        '  "nodesToDelete": ["node-uuid-1", "node-uuid-2"],',
        '  "edgesToAdd": [{ "source": "node-uuid-1", "target": "node-uuid-2", "label": "Connection" }],',
        '  "edgesToDelete": ["edge-uuid-1"]',
        "}",
    ]

    if user_addition:
        lines += [
            "",
            "=== ADDITIONAL INSTRUCTIONS ===",
            user_addition,
            "=== END ADDITIONAL INSTRUCTIONS ===",
        ]
    return "\n".join(lines)


def build_orchestrator_prompt(
    agent_label: str,
    iteration: int,
    changes: str,
    reasoning: str,
    node_count: int,
    edge_count: int,
    blackboard: list[str],
    attached_context: dict[str, Any] | None,
) -> str:
    ctx = attached_context or {}
    previous = "\n".join(blackboard) if blackboard else "No previous guidance yet this iteration."
    extras = ""
    if ctx.get("requirements"):
        extras += f"\n**Requirements to Fulfill**: {len(ctx['requirements'])} requirements"
    if ctx.get("standards"):
        extras += f"\n**Standards to Meet**: {len(ctx['standards'])} standards"

    return f"""You are the Orchestrator supervising all agents working on this architecture.

**Agent That Just Completed**: {agent_label}
**Iteration**: {iteration}

**Their Changes**:
{changes}

**Their Reasoning**:
{reasoning}

**Current Architecture State**:
- Total Nodes: {node_count}
- Total Edges: {edge_count}

**Shared Blackboard Memory** (Previous guidance from earlier in this iteration):
{previous}
{extras}

**Your Task**: Provide brief guidance (2-3 sentences) for all agents to consider. Focus on:
- Architectural coherence and consistency
- Missing critical elements
- Potential conflicts or issues
- Next priorities

Keep it concise and actionable. This will be added to the Blackboard that all subsequent agents can reference."""


async def apply_canvas_changes(
    project_id: str,
    share_token: str,
    agent: AgentNode,
    changes: CanvasChanges,
    canvas_nodes: list[dict[str, Any]],
) -> dict[str, int]:
    """
    Apply the changes ``agent`` is capable of; failures are logged per operation.

    Returns:
        Counts of applied operations
    """
    counts = {
        "nodes_added": 0,
        "nodes_edited": 0,
        "nodes_deleted": 0,
        "edges_added": 0,
        "edges_edited": 0,
        "edges_deleted": 0,
    }
    capabilities = agent.data
    new_node_ids: list[str] = []

    def _skip(capability: str, items: list[Any]) -> bool:
        if items and not capabilities.allows(capability):
            logger.warning(
                f"Agent {agent.label} lacks '{capability}' capability, skipping {len(items)} change(s)"
            )
            return True
        return False

    if not _skip("add_nodes", changes.nodes_to_add):
        for node_data in changes.nodes_to_add:
            node_id = str(uuid.uuid4())
            node_type = normalize_node_type(node_data.get("type"))
            try:
                await asyncio.to_thread(
                    canvas_db.upsert_canvas_node,
                    project_id,
                    share_token,
                    node_id=node_id,
                    node_type=node_type,
                    position={"x": random.uniform(0, 500), "y": random.uniform(0, 500)},
                    data={
                        "label": node_data.get("label"),
                        "description": node_data.get("description"),
                        "type": node_type,
                    },
                )
            except Exception as e:
                logger.error(f"Error adding node: {e}")
                continue
            new_node_ids.append(node_id)
            counts["nodes_added"] += 1

    if not _skip("edit_nodes", changes.nodes_to_edit):
        existing = {n.get("id"): n for n in canvas_nodes}
        for edit in changes.nodes_to_edit:
            node = existing.get(edit.get("id"))
            if node is None:
                logger.warning(f"Node {edit.get('id')} not found in current nodes")
                continue
            updates = edit.get("updates") if isinstance(edit.get("updates"), dict) else {}
            data = node.get("data") if isinstance(node.get("data"), dict) else {}
            try:
                await asyncio.to_thread(
                    canvas_db.upsert_canvas_node,
                    project_id,
                    share_token,
                    node_id=node["id"],
                    node_type=node.get("type"),
                    position=node.get("position") or {"x": 0, "y": 0},
                    data={**data, **updates, "type": node.get("type")},
                )
            except Exception as e:
                logger.error(f"Error editing node {node['id']}: {e}")
                continue
            counts["nodes_edited"] += 1

    if not _skip("delete_nodes", changes.nodes_to_delete):
        for node_id in changes.nodes_to_delete:
            try:
                await asyncio.to_thread(canvas_db.delete_canvas_node, node_id, share_token)
            except Exception as e:
                logger.error(f"Error deleting node {node_id}: {e}")
                continue
            counts["nodes_deleted"] += 1

    if not _skip("add_edges", changes.edges_to_add):
        valid_ids = {n.get("id") for n in canvas_nodes} | set(new_node_ids)
        for edge_data in changes.edges_to_add:
            source, target = edge_data.get("source"), edge_data.get("target")
            if source not in valid_ids or target not in valid_ids:
                logger.warning(f"Skipping edge with unknown source/target IDs: {source} -> {target}")
                continue
            try:
                await asyncio.to_thread(
                    canvas_db.upsert_canvas_edge,
                    project_id,
                    share_token,
                    edge_id=str(uuid.uuid4()),
                    source_id=source,
                    target_id=target,
                    label=str(edge_data.get("label") or ""),
                )
            except Exception as e:
                logger.error(f"Error adding edge: {e}")
                continue
            counts["edges_added"] += 1

    if not _skip("delete_edges", changes.edges_to_delete):
        for edge_id in changes.edges_to_delete:
            try:
                await asyncio.to_thread(canvas_db.delete_canvas_edge, edge_id, share_token)
            except Exception as e:
                logger.error(f"Error deleting edge {edge_id}: {e}")
                continue
            counts["edges_deleted"] += 1

    return counts


def _changes_summary(changes: CanvasChanges) -> str:
    return json.dumps(
        changes.model_dump(by_alias=True, exclude={"reasoning"}), indent=2, default=str
    )


def _now() -> str:
    return datetime.now(UTC).isoformat()


async def orchestrate_agents(
    request: OrchestrateAgentsRequest,
    stream: EventStream,
    *,
    adapter: LLMAdapter | None = None,
    policy: RetryPolicy | None = None,
    sleep: SleepFn | None = None,
    cancel: CancellationToken | None = None,
) -> None:
    """
    Run every agent in the flow for the requested number of iterations.

    Args:
        request: Validated request body
        stream: Event stream to report on
        adapter: Adapter override (defaults to the project's configured model)
        policy: Retry policy override (defaults to 1 + 2 retries)
        sleep: Sleep override for retry backoff
        cancel: Optional cancellation token
    """
    settings = get_settings()
    project_id = request.project_id
    share_token = request.share_token
    flow = request.agent_flow

    if adapter is None:
        _, adapter = await load_provider(project_id, share_token)
    policy = policy or RetryPolicy(
        max_attempts=AGENT_RETRIES + 1, base_delay=settings.CANVAS_AGENT_RETRY_DELAY
    )

    order = build_execution_order(flow.nodes, flow.edges)
    if request.start_from_node_id:
        start_index = next(
            (i for i, node in enumerate(order) if node.id == request.start_from_node_id), -1
        )
        if start_index > 0:
            order = order[start_index:]

    iterations = min(request.iterations, settings.CANVAS_MAX_ITERATIONS)
    change_logs: list[ChangeLogEntry] = []
    metrics: list[ChangeMetric] = []
    blackboard: list[str] = []

    logger.info(
        f"[canvas:{project_id}] Running {len(order)} agents for {iterations} iteration(s)"
    )

    for iteration in range(1, iterations + 1):
        if cancel is not None:
            cancel.raise_if_cancelled()
        await stream.send(
            "iteration_start", {"iteration": iteration, "totalIterations": iterations}
        )

        for agent in order:
            if cancel is not None:
                cancel.raise_if_cancelled()

            canvas_nodes = await asyncio.to_thread(
                canvas_db.list_canvas_nodes, project_id, share_token
            )
            canvas_edges = await asyncio.to_thread(
                canvas_db.list_canvas_edges, project_id, share_token
            )

            await stream.send(
                "agent_start",
                {"iteration": iteration, "agentId": agent.data.type, "agentLabel": agent.label},
            )

            if len(flow.nodes) > 1 and not _is_connected(agent, flow.edges):
                message = f"Agent {agent.label} is not connected to the flow"
                logger.error(f"[canvas:{project_id}] {message}")
                await stream.send(
                    "agent_error",
                    {"iteration": iteration, "agentId": agent.data.type, "error": message},
                )
                continue

            override = request.agent_prompts.get(agent.id) or AgentPromptOverride()
            prompt = format_agent_context(
                canvas_nodes, canvas_edges, blackboard, request.attached_context, override.user or ""
            )

            async def _on_retry(attempt: int, delay: float, error: Exception) -> None:
                await stream.send(
                    "agent_retry",
                    {
                        "iteration": iteration,
                        "agentId": agent.data.type,
                        "attempt": attempt,
                        "error": str(error),
                    },
                )

            try:
                parsed = await request_json(
                    adapter,
                    build_messages(prompt),
                    policy=policy,
                    unit_id=f"canvas:{agent.id}",
                    system=override.system or agent.data.system_prompt or None,
                    cancel=cancel,
                    sleep=sleep,
                    on_retry=_on_retry,
                )
            except UnitFailedError as e:
                await stream.send(
                    "agent_error",
                    {
                        "iteration": iteration,
                        "agentId": agent.data.type,
                        "error": str(e.last_error),
                    },
                )
                continue

            changes = CanvasChanges.model_validate(parsed)
            counts = await apply_canvas_changes(
                project_id, share_token, agent, changes, canvas_nodes
            )

            timestamp = _now()
            change_log = ChangeLogEntry(
                iteration=iteration,
                agent_id=agent.data.type,
                agent_label=agent.label,
                timestamp=timestamp,
                changes=_changes_summary(changes),
                reasoning=changes.reasoning,
            )
            metric = ChangeMetric(
                iteration=iteration,
                agent_id=agent.data.type,
                agent_label=agent.label,
                timestamp=timestamp,
                **counts,
            )
            change_logs.append(change_log)
            metrics.append(metric)

            await stream.send(
                "agent_complete",
                {
                    "iteration": iteration,
                    "agentId": agent.data.type,
                    "changeLog": change_log.model_dump(by_alias=True),
                    "metric": metric.model_dump(by_alias=True),
                },
            )

            if not request.orchestrator_enabled:
                continue

            guidance_prompt = build_orchestrator_prompt(
                agent.label,
                iteration,
                change_log.changes,
                change_log.reasoning,
                len(canvas_nodes),
                len(canvas_edges),
                blackboard,
                request.attached_context,
            )
            try:
                guidance = await adapter.complete(
                    [ChatMessage(role="user", content=guidance_prompt)],
                    system=ORCHESTRATOR_SYSTEM_PROMPT,
                )
            except ProviderError as e:
                logger.warning(f"[canvas:{project_id}] Orchestrator guidance failed: {e}")
                continue

            entry = f"[Iteration {iteration} - After {agent.label}]: {guidance.strip()}"
            blackboard.append(entry)
            await stream.send(
                "blackboard_update",
                {"iteration": iteration, "entry": entry, "blackboard": list(blackboard)},
            )

        await stream.send("iteration_complete", {"iteration": iteration})

    await stream.send(
        "done",
        {
            "changeLogs": [c.model_dump(by_alias=True) for c in change_logs],
            "metrics": [m.model_dump(by_alias=True) for m in metrics],
        },
    )
