"""Collaboration orchestrator: iterative line-based editing of a shared document.

Each iteration streams one LLM call, applies the returned ``edit_lines``
operations bottom-to-top, persists every edit and hands a continuation token
back to the client. The loop ends when the model reports ``completed``, the
iteration cap is reached, or the request's iteration budget is spent.
"""

import asyncio
import json
from typing import Any

from pydantic import ValidationError

from agent_engine.chains._provider import best_effort, load_provider
from agent_engine.core.cancellation import CancellationToken
from agent_engine.core.config import get_settings
from agent_engine.core.errors import EngineError, UnitFailedError
from agent_engine.core.json_recovery import Unparseable, recover_json
from agent_engine.core.line_edits import LineEdit, add_line_numbers, apply_line_edits
from agent_engine.core.llm import LLMAdapter
from agent_engine.core.logging import get_logger
from agent_engine.core.schemas_collaboration import (
    AgentOperation,
    AgentResponse,
    Continuation,
    ConversationTurn,
    OrchestrateCollaborationRequest,
)
from agent_engine.core.sse import EventStream
from agent_engine.core.unit_processor import RetryPolicy, SleepFn, run_with_retry
from agent_engine.db import collaboration as collab_db
from agent_engine.db.realtime import broadcast

logger = get_logger(__name__)

STATUS_COMPLETED = "completed"
STATUS_IN_PROGRESS = "in_progress"
STATUS_MAX_ITERATIONS = "max_iterations"
STATUS_FAILED = "failed"

AGENT_TEMPERATURE = 0.7
STREAM_REPORT_EVERY_CHARS = 500
DEFAULT_FINAL_MESSAGE = "I've made the requested changes to the document."
CONTINUE_PROMPT = (
    "Continue working on the user's request. Use read_artifact if you need the current document."
)


# ============================================================================
# Prompt building
# ============================================================================


def _items(context: dict[str, Any], key: str) -> list[dict[str, Any]]:
    value = context.get(key)
    if not isinstance(value, list):
        return []
    return [item for item in value if isinstance(item, dict)]


def format_attached_context(context: dict[str, Any] | None) -> str:
    """Render the client's attached project context as prompt sections."""
    if not context:
        return ""

    parts: list[str] = []

    if context.get("projectMetadata"):
        parts.append(
            f"PROJECT METADATA:\n{json.dumps(context['projectMetadata'], indent=2, default=str)}"
        )

    if requirements := _items(context, "requirements"):
        lines = []
        for r in requirements:
            content = f": {str(r['content'])[:300]}" if r.get("content") else ""
            lines.append(f"- [{r.get('type') or 'REQ'}] {r.get('title', '')}{content}")
        parts.append("REQUIREMENTS:\n" + "\n".join(lines))

    if artifacts := _items(context, "artifacts"):
        parts.append(
            "REFERENCED ARTIFACTS:\n"
            + "\n".join(
                f"- {a.get('ai_title') or 'Untitled'}: {str(a.get('content') or '')[:500]}..."
                for a in artifacts
            )
        )

    if standards := _items(context, "standards"):
        parts.append(
            "STANDARDS:\n"
            + "\n".join(f"- {s.get('name', '')}: {s.get('description') or ''}" for s in standards)
        )

    if tech_stacks := _items(context, "techStacks"):
        parts.append(
            "TECH STACKS:\n"
            + "\n".join(f"- {t.get('name', '')}: {t.get('description') or ''}" for t in tech_stacks)
        )

    if chats := _items(context, "chatSessions"):
        parts.append(
            "CHAT SESSION EXCERPTS:\n"
            + "\n".join(
                f"- {c.get('ai_title') or c.get('title') or 'Chat'}: "
                f"{c.get('ai_summary') or '(no summary)'}"
                for c in chats
            )
        )

    if nodes := _items(context, "canvasNodes"):
        lines = []
        for n in nodes:
            data = n.get("data") if isinstance(n.get("data"), dict) else {}
            label = data.get("label") or data.get("title") or "Node"
            lines.append(f"- [{n.get('type')}] {label}: {json.dumps(data, default=str)[:200]}")
        parts.append("CANVAS NODES:\n" + "\n".join(lines))

    if files := _items(context, "files"):
        parts.append(
            "REPOSITORY FILES:\n"
            + "\n".join(
                f"- {f.get('path', '')}: {str(f.get('content') or '')[:500]}..." for f in files
            )
        )

    if databases := _items(context, "databases"):
        parts.append(
            "DATABASE SCHEMAS:\n"
            + "\n".join(
                f"- {d.get('name', '')} ({d.get('type', '')}): "
                f"{json.dumps(d.get('columns') or d.get('definition') or d, default=str)[:300]}"
                for d in databases
            )
        )

    return "\n\n".join(parts)


def build_system_prompt(
    history: list[dict[str, Any]],
    blackboard: list[dict[str, Any]],
    messages: list[dict[str, Any]],
    attached_context: dict[str, Any] | None = None,
) -> str:
    history_context = "\n".join(
        f"v{h.get('version_number')} ({h.get('actor_type')}): "
        f"{h.get('narrative') or h.get('operation_type')}"
        for h in history[-10:]
    )
    blackboard_context = "\n".join(
        f"[{b.get('entry_type')}] {b.get('content')}" for b in blackboard[-10:]
    )
    chat_context = "\n".join(
        f"{m.get('role')}: {str(m.get('content') or '')[:200]}" for m in messages[-20:]
    )
    attached = format_attached_context(attached_context)
    attached_section = (
        f"ATTACHED PROJECT CONTEXT (use this to inform your edits when relevant):\n{attached}"
        if attached
        else ""
    )

    return f"""You are CollaborationAgent, a collaborative document editing assistant.

CRITICAL: Respond with ONLY valid JSON. No prose outside the JSON structure.

You can perform these operations:
1. read_artifact - Read the current document content with line numbers
2. edit_lines - Edit specific lines in the document

RULES:
- ALWAYS call read_artifact first to see current document state
- Use edit_lines for targeted, surgical edits
- NEVER replace entire document - make focused changes
- ALWAYS provide a narrative explaining each edit
- Make ONE focused edit per operation when possible
- Line numbers in one response all refer to the document as you last read it
- Edit ranges in one response must not overlap
- To insert without replacing, set end_line to start_line - 1

Current document content will be provided with line numbers as <<N>>.

PERSISTENCE RULES (CRITICAL - FOLLOW STRICTLY):
- Do NOT set status to 'completed' until ALL user requirements are FULLY satisfied
- If user asks for N items (e.g., "10 chapters", "5 sections"), you MUST COUNT them explicitly
- Keep working until you have EXACTLY what was requested - partial completion is NOT acceptable
- If you've made progress but aren't done, set status to 'in_progress' with a clear progress update
- It's better to use MORE iterations than to complete prematurely

SELF-REFLECTION (REQUIRED before marking completed):
1. Re-read the entire document using read_artifact
2. COUNT and verify ALL requested elements are present
3. Check quality of each addition/change
4. Only THEN set status to 'completed' if EVERYTHING is verified
5. If count doesn't match request, set status to 'in_progress' and continue

PROGRESS TRACKING:
- After each edit, note what's done and what remains in your blackboard_entry
- Example: "Completed 3/10 chapters. Remaining: chapters 4-10. Next: writing chapter 4."

RECENT EDIT HISTORY:
{history_context or "No edits yet"}

AGENT REASONING HISTORY:
{blackboard_context or "No entries yet"}

CONVERSATION HISTORY:
{chat_context or "No messages yet"}

{attached_section}

RESPONSE FORMAT:
{{
  "reasoning": "Your thinking about what to do",
  "operations": [
    {{ "type": "read_artifact", "params": {{}} }},
    {{ "type": "edit_lines", "params": {{ "start_line": 1, "end_line": 3, "new_content": "...", "narrative": "..." }} }}
  ],
  "blackboard_entry": {{ "type": "planning|progress|decision|reasoning", "content": "..." }},
  "status": "in_progress|completed",
  "message": "Optional message to show user"
}}

Start your response with {{ and end with }}."""


def parse_agent_response(raw_text: str) -> AgentResponse:
    """Recover the model's JSON; anything unusable becomes an ``error`` response."""
    recovered = recover_json(raw_text)
    if isinstance(recovered, Unparseable):
        return AgentResponse.unparseable(recovered.preview)
    try:
        return AgentResponse.model_validate(recovered)
    except ValidationError as e:
        logger.warning(f"Agent response did not match schema: {e}")
        return AgentResponse.unparseable((raw_text or "").strip()[:500])


def _operation_results_turn(results: list[dict[str, Any]]) -> ConversationTurn:
    return ConversationTurn(
        role="user", content=f"Operation results:\n{json.dumps(results, indent=2, default=str)}"
    )


# ============================================================================
# Orchestrator
# ============================================================================


class CollaborationRun:
    """State of one request's worth of iterations."""

    def __init__(
        self,
        request: OrchestrateCollaborationRequest,
        stream: EventStream,
        adapter: LLMAdapter,
        system_prompt: str,
        *,
        max_iterations: int,
        policy: RetryPolicy,
        heartbeat_interval: float,
        cancel: CancellationToken | None = None,
        sleep: SleepFn | None = None,
    ):
        self.request = request
        self.stream = stream
        self.adapter = adapter
        self.system_prompt = system_prompt
        self.max_iterations = max_iterations
        self.policy = policy
        self.heartbeat_interval = heartbeat_interval
        self.cancel = cancel
        self.sleep = sleep

        self.iteration = 0
        self.history: list[ConversationTurn] = []
        self.pending_results: list[dict[str, Any]] = []
        self.content = ""

    @property
    def collaboration_id(self) -> str:
        return self.request.collaboration_id

    @property
    def share_token(self) -> str:
        return self.request.share_token

    def continuation(self) -> Continuation:
        return Continuation(
            iteration=self.iteration,
            conversation_history=list(self.history),
            pending_results=list(self.pending_results),
            document_content=self.content,
        )

    def continuation_payload(self) -> dict[str, Any]:
        return self.continuation().model_dump(by_alias=True)

    def start(self, initial_content: str) -> None:
        """Seed a new run with the numbered document and the user's request."""
        self.content = initial_content
        self.history = [
            ConversationTurn(
                role="user",
                content=(
                    f"Document to collaborate on:\n{add_line_numbers(initial_content)}\n\n"
                    f"User request: {self.request.user_message}"
                ),
            )
        ]

    def resume(self, token: Continuation) -> None:
        self.iteration = token.iteration
        self.history = list(token.conversation_history)
        self.pending_results = list(token.pending_results)
        self.content = token.document_content

    def _next_turn(self) -> ConversationTurn | None:
        """User turn that must precede the next model call, if any."""
        if self.pending_results:
            turn = _operation_results_turn(self.pending_results)
            self.pending_results = []
            return turn
        if self.history and self.history[-1].role == "assistant":
            return ConversationTurn(role="user", content=CONTINUE_PROMPT)
        return None

    async def _call_model(self) -> str:
        messages = [turn.to_message() for turn in self.history]
        iteration = self.iteration

        async def _attempt(attempt: int) -> str:
            chunks: list[str] = []
            received = 0
            reported = 0
            async with self.stream.heartbeat(self.heartbeat_interval):
                async for text in self.adapter.stream(
                    messages, system=self.system_prompt, temperature=AGENT_TEMPERATURE
                ):
                    if self.cancel is not None:
                        self.cancel.raise_if_cancelled()
                    chunks.append(text)
                    received += len(text)
                    if received - reported >= STREAM_REPORT_EVERY_CHARS:
                        reported = received
                        await self.stream.send(
                            "llm_streaming", {"iteration": iteration, "chars": received}
                        )
            logger.debug(f"[collab:{self.collaboration_id}] Attempt {attempt}: {received} chars")
            return "".join(chunks)

        async def _on_retry(attempt: int, delay: float, error: Exception) -> None:
            await self.stream.send(
                "llm_retry",
                {"iteration": iteration, "attempt": attempt, "delay": delay, "error": str(error)},
            )

        return await run_with_retry(
            _attempt,
            policy=self.policy,
            unit_id=f"collab:{self.collaboration_id}:{iteration}",
            cancel=self.cancel,
            sleep=self.sleep,
            on_retry=_on_retry,
        )

    async def _persist_edit(self, edit: LineEdit, old_content: str, content_after: str) -> int | None:
        try:
            latest = await asyncio.to_thread(
                collab_db.get_latest_version, self.collaboration_id, self.share_token
            )
            await asyncio.to_thread(
                collab_db.insert_edit,
                self.collaboration_id,
                self.share_token,
                start_line=edit.start_line,
                end_line=edit.end_line,
                old_content=old_content,
                new_content=edit.new_content,
                new_full_content=content_after,
                narrative=edit.narrative,
            )
            await asyncio.to_thread(
                collab_db.update_content, self.collaboration_id, self.share_token, content_after
            )
        except Exception as e:
            logger.error(f"[collab:{self.collaboration_id}] Failed to persist edit: {e}")
            return None
        return latest + 1

    async def _apply_operations(self, operations: list[AgentOperation]) -> list[dict[str, Any]]:
        """Run one batch of operations against ``self.content``."""
        results: list[dict[str, Any]] = []
        edits: list[LineEdit] = []
        batch_content = self.content

        for op in operations:
            await self.stream.send("operation", {"operation": op.type})
            if op.type == "read_artifact":
                results.append(
                    {
                        "type": "read_artifact",
                        "success": True,
                        "content": add_line_numbers(batch_content),
                    }
                )
            elif op.type == "edit_lines":
                try:
                    edits.append(
                        LineEdit(
                            start_line=int(op.params["start_line"]),
                            end_line=int(op.params["end_line"]),
                            new_content=str(op.params.get("new_content") or ""),
                            narrative=str(op.params.get("narrative") or ""),
                        )
                    )
                except (KeyError, TypeError, ValueError) as e:
                    results.append(
                        {"type": "edit_lines", "success": False, "error": f"Invalid params: {e}"}
                    )
            else:
                results.append(
                    {"type": op.type, "success": False, "error": f"Unknown operation: {op.type}"}
                )

        if not edits:
            return results

        final_content, outcomes = apply_line_edits(batch_content, edits)
        for outcome in outcomes:
            edit = outcome.edit
            lines_affected = f"{edit.start_line}-{edit.end_line}"
            if not outcome.success:
                results.append(
                    {
                        "type": "edit_lines",
                        "success": False,
                        "lines_affected": lines_affected,
                        "error": outcome.error,
                    }
                )
                await self.stream.send(
                    "edit_error",
                    {"startLine": edit.start_line, "endLine": edit.end_line, "error": outcome.error},
                )
                continue

            version = await self._persist_edit(edit, outcome.old_content, outcome.content_after)
            results.append(
                {
                    "type": "edit_lines",
                    "success": True,
                    "persisted": version is not None,
                    "version": version,
                    "lines_affected": lines_affected,
                    "narrative": edit.narrative,
                }
            )
            await self.stream.send(
                "edit",
                {
                    "version": version,
                    "startLine": edit.start_line,
                    "endLine": edit.end_line,
                    "narrative": edit.narrative,
                    "content": outcome.content_after,
                },
            )

        self.content = final_content
        return results

    async def run_iteration(self) -> AgentResponse | None:
        """
        Run one iteration.

        Returns:
            The parsed response, or None if the provider failed every attempt
        """
        if self.cancel is not None:
            self.cancel.raise_if_cancelled()

        self.iteration += 1
        logger.info(f"[collab:{self.collaboration_id}] Iteration {self.iteration}")
        await self.stream.send(
            "iteration_start", {"iteration": self.iteration, "maxIterations": self.max_iterations}
        )

        saved_pending = list(self.pending_results)
        turn = self._next_turn()
        if turn is not None:
            self.history.append(turn)

        try:
            raw_text = await self._call_model()
        except UnitFailedError as e:
            logger.error(f"[collab:{self.collaboration_id}] Iteration {self.iteration} failed: {e}")
            # Roll back so the returned token can simply be replayed
            self.iteration -= 1
            if turn is not None:
                self.history.pop()
            self.pending_results = saved_pending
            await self.stream.send(
                "iteration_error", {"iteration": self.iteration + 1, "message": str(e.last_error)}
            )
            await self.stream.send(
                "iteration_complete",
                {
                    "iteration": self.iteration + 1,
                    "status": STATUS_FAILED,
                    "editCount": 0,
                    "continuation": self.continuation_payload(),
                },
            )
            return None

        parsed = parse_agent_response(raw_text)
        await self.stream.send(
            "reasoning", {"iteration": self.iteration, "reasoning": parsed.reasoning}
        )

        results = await self._apply_operations(parsed.operations)

        if parsed.blackboard_entry is not None and parsed.blackboard_entry.content:
            await best_effort(
                "write collaboration blackboard entry",
                collab_db.insert_blackboard_entry,
                self.collaboration_id,
                self.share_token,
                parsed.blackboard_entry.type or "progress",
                parsed.blackboard_entry.content,
            )

        edit_count = sum(1 for r in results if r["type"] == "edit_lines" and r["success"])
        if edit_count:
            await broadcast(
                f"collaboration-{self.collaboration_id}",
                "content_refresh",
                {"collaborationId": self.collaboration_id, "iteration": self.iteration},
            )

        self.history.append(
            ConversationTurn(
                role="assistant", content=json.dumps(parsed.model_dump(exclude_none=True))
            )
        )
        self.pending_results = results

        await self.stream.send(
            "iteration_complete",
            {
                "iteration": self.iteration,
                "status": parsed.status,
                "editCount": edit_count,
                "continuation": self.continuation_payload(),
            },
        )
        return parsed


async def _safe_list(label: str, fn: Any, *args: Any) -> list[dict[str, Any]]:
    try:
        data = await asyncio.to_thread(fn, *args)
    except Exception as e:
        logger.warning(f"Failed to load {label}: {e}")
        return []
    return [row for row in (data or []) if isinstance(row, dict)]


async def orchestrate_collaboration(
    request: OrchestrateCollaborationRequest,
    stream: EventStream,
    *,
    adapter: LLMAdapter | None = None,
    policy: RetryPolicy | None = None,
    sleep: SleepFn | None = None,
    cancel: CancellationToken | None = None,
) -> None:
    """
    Run collaboration iterations for one request.

    Args:
        request: Validated request body
        stream: Event stream to report on
        adapter: Adapter override (defaults to the project's configured model)
        policy: Retry policy override
        sleep: Sleep override for retry backoff
        cancel: Optional cancellation token

    Raises:
        EngineError: if the collaboration does not exist
    """
    settings = get_settings()
    collaboration_id = request.collaboration_id
    share_token = request.share_token

    collaboration = await asyncio.to_thread(
        collab_db.get_collaboration, collaboration_id, share_token
    )
    if not collaboration:
        raise EngineError(f"Collaboration not found: {collaboration_id}")

    history = await _safe_list("edit history", collab_db.list_edit_history, collaboration_id, share_token)
    blackboard = await _safe_list("blackboard", collab_db.list_blackboard, collaboration_id, share_token)
    messages = await _safe_list("messages", collab_db.list_messages, collaboration_id, share_token)

    if adapter is None:
        _, adapter = await load_provider(
            request.project_id, share_token, default_max_tokens=settings.COLLAB_MAX_TOKENS
        )

    max_iterations = min(
        request.max_iterations or settings.COLLAB_DEFAULT_ITERATIONS,
        settings.COLLAB_MAX_ITERATIONS,
    )
    run = CollaborationRun(
        request,
        stream,
        adapter,
        build_system_prompt(history, blackboard, messages, request.attached_context),
        max_iterations=max_iterations,
        policy=policy or RetryPolicy.from_settings(settings),
        heartbeat_interval=settings.HEARTBEAT_INTERVAL_SECONDS,
        cancel=cancel,
        sleep=sleep,
    )

    token = request.continuation
    if token is not None and token.conversation_history:
        run.resume(token)
        logger.info(f"[collab:{collaboration_id}] Resuming at iteration {run.iteration}")
    else:
        if token is not None:
            # Nothing to resume from; seed like a new run but keep the counter
            logger.warning(
                f"[collab:{collaboration_id}] Continuation has no conversation history, reseeding"
            )
            run.iteration = token.iteration
        await best_effort(
            "persist user message",
            collab_db.insert_message,
            collaboration_id,
            share_token,
            "user",
            request.user_message,
        )
        initial = token.document_content if token is not None and token.document_content else None
        if initial is None:
            initial = request.current_content
        if initial is None:
            initial = collaboration.get("current_content") or ""
        run.start(initial)
        logger.info(f"[collab:{collaboration_id}] Starting new run, max {max_iterations} iterations")

    budget = request.iteration_budget
    ran = 0
    status = STATUS_IN_PROGRESS
    final_message = ""

    while run.iteration < max_iterations and (budget is None or ran < budget):
        parsed = await run.run_iteration()
        ran += 1
        if parsed is None:
            status = STATUS_FAILED
            break
        if parsed.status == STATUS_COMPLETED:
            status = STATUS_COMPLETED
            final_message = parsed.message or "Changes completed successfully."
            break
    else:
        if run.iteration >= max_iterations:
            status = STATUS_MAX_ITERATIONS

    if status in (STATUS_COMPLETED, STATUS_MAX_ITERATIONS):
        await best_effort(
            "persist assistant message",
            collab_db.insert_message,
            collaboration_id,
            share_token,
            "assistant",
            final_message or DEFAULT_FINAL_MESSAGE,
            {"iterations": run.iteration},
        )

    await stream.send(
        "done",
        {
            "status": status,
            "message": final_message,
            "iterations": run.iteration,
            "continuation": run.continuation_payload(),
        },
    )
