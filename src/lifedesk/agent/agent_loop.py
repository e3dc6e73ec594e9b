"""
Main orchestration loop for lifedesk.

One invocation walks RECEIVE -> PLAN -> ACT -> REFLECT -> LEARN -> RESPOND and always produces an
:class:`AgentResponse`.  Model timeouts, malformed model output and failing actions degrade the
response instead of failing the request; only :class:`ModelUnavailableError` propagates.

Invocations on the same thread are serialized by the thread's lock; different threads run
concurrently.
"""

import logging
import re
from dataclasses import (
    dataclass,
    field,
)
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Set,
    Tuple,
)

from lifedesk.actions import get_action_schemas
from lifedesk.actions.backend import ActionBackend
from lifedesk.actions.validator import validate
from lifedesk.agent import prompts
from lifedesk.agent.action_executor import (
    ActionExecutor,
    Confirmer,
    deny_all,
)
from lifedesk.agent.model_client import BaseModelClient
from lifedesk.agent.multimodal import NormalizedInput
from lifedesk.agent.response_parser import (
    PlannerOutput,
    ReflectorOutput,
    parse_plan,
    parse_reflection,
)
from lifedesk.config import settings
from lifedesk.context.snapshot import (
    build_snapshot,
    render_markdown,
)
from lifedesk.core.errors import (
    ActionExecutionError,
    ModelCallError,
    ModelFormatError,
    ModelUnavailableError,
)
from lifedesk.core.schema import (
    AgentResponse,
    Message,
    Plan,
    PlanStep,
    Reflection,
    Role,
    Thread,
    ToolCall,
    ToolCallStatus,
)
from lifedesk.memory.thread_store import (
    DEFAULT_THREAD_ID,
    ThreadStore,
)
from lifedesk.memory.turn_log import TurnLog

logger = logging.getLogger(__name__)

SKIPPED_UPSTREAM_FAILURE = "skipped: upstream failure"
SKIPPED_UPSTREAM_PENDING = "skipped: upstream pending confirmation"

_OK, _FAILED, _PENDING = "ok", "failed", "pending"

MAX_LEARNINGS = 3
MAX_LEARNING_CHARS = 300

_PLACEHOLDER_RE = re.compile(r"\{\{\s*([A-Za-z0-9_\-]+)((?:\.[A-Za-z0-9_\-]+)*)\s*\}\}")


class PlaceholderError(ValueError):
    """A ``{{step.path}}`` reference could not be resolved."""


# ---------------------------------------------------------------------------
# Placeholders
# ---------------------------------------------------------------------------
def placeholder_refs(value: Any) -> Set[str]:
    """Step ids referenced by ``{{stepId.path}}`` placeholders anywhere in *value*."""
    if isinstance(value, str):
        return {m.group(1) for m in _PLACEHOLDER_RE.finditer(value)}
    if isinstance(value, dict):
        return set().union(*(placeholder_refs(v) for v in value.values())) if value else set()
    if isinstance(value, list):
        return set().union(*(placeholder_refs(v) for v in value)) if value else set()
    return set()


def resolve_placeholders(value: Any, outputs: Dict[str, Dict[str, Any]]) -> Any:
    """
    Replace placeholders with values from earlier results.

    A string that is exactly one placeholder takes the referenced value as is (so ids stay
    integers); placeholders embedded in longer strings are interpolated as text.
    """
    if isinstance(value, dict):
        return {k: resolve_placeholders(v, outputs) for k, v in value.items()}
    if isinstance(value, list):
        return [resolve_placeholders(v, outputs) for v in value]
    if not isinstance(value, str):
        return value

    whole = _PLACEHOLDER_RE.fullmatch(value.strip())
    if whole:
        return _lookup(whole.group(1), whole.group(2), outputs)
    return _PLACEHOLDER_RE.sub(lambda m: str(_lookup(m.group(1), m.group(2), outputs)), value)


def _lookup(step_id: str, path: str, outputs: Dict[str, Dict[str, Any]]) -> Any:
    if step_id not in outputs:
        raise PlaceholderError(f"no result available for step '{step_id}'")
    current: Any = outputs[step_id]
    for part in filter(None, path.split(".")):
        if isinstance(current, dict) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            raise PlaceholderError(f"'{step_id}{path}' does not exist in the step result")
    return current


# ---------------------------------------------------------------------------
# Agent loop
# ---------------------------------------------------------------------------
@dataclass
class _Turn:
    """Mutable state of one invocation."""

    thread_id: str
    user_input: NormalizedInput
    thread: Thread
    thoughts: List[str] = field(default_factory=list)
    plan: Plan = field(default_factory=Plan)
    plan_reply: Optional[str] = None
    planned: bool = False
    tool_calls: List[ToolCall] = field(default_factory=list)


class AgentLoop:
    """
    The planner / executor / reflector state machine.

    Parameters
    ----------
    model:
        Inference capability used for planning and reflection.
    store:
        Thread store holding history and learnings.
    executor:
        Action executor; every mutation goes through propose / confirm.
    backend:
        Read-only source for the context snapshot.
    confirmer:
        Decides whether a proposal may be applied right away (default: never).
    turn_log:
        Optional audit trail.
    """

    def __init__(
        self,
        model: BaseModelClient,
        store: ThreadStore,
        executor: ActionExecutor,
        backend: ActionBackend,
        confirmer: Confirmer = deny_all,
        turn_log: TurnLog | None = None,
        prompt_history: int | None = None,
    ):
        self.model = model
        self.store = store
        self.executor = executor
        self.backend = backend
        self.confirmer = confirmer
        self.turn_log = turn_log
        self.prompt_history = (
            prompt_history if prompt_history is not None else settings.PROMPT_HISTORY
        )

    async def run(
        self, user_input: NormalizedInput, thread_id: str = DEFAULT_THREAD_ID
    ) -> AgentResponse:
        """
        Handle one user message on *thread_id*.

        Raises
        ------
        ModelUnavailableError
            If the model service cannot be reached at all.
        """
        async with self.store.lock(thread_id):
            attachments = tuple(user_input.images)
            self.store.append(
                thread_id, Message(role=Role.USER, text=user_input.text, attachments=attachments)
            )
            try:
                response = await self._run(user_input, thread_id)
            except ModelUnavailableError:
                logger.error("Model unavailable while handling thread '%s'", thread_id)
                raise
            except Exception as exc:  # noqa: BLE001
                logger.exception("Agent loop failed on thread '%s'", thread_id)
                response = AgentResponse(
                    reply=(
                        "Sorry, something went wrong while handling your request. "
                        "Please try again."
                    ),
                    thoughts=[f"Internal error: {exc}"],
                )

            self.store.append(thread_id, Message(role=Role.AGENT, text=response.reply))
            if self.turn_log is not None:
                await self.turn_log.record(
                    thread_id, user_input.text, response.model_dump(mode="json", by_alias=True)
                )
            return response

    async def _run(self, user_input: NormalizedInput, thread_id: str) -> AgentResponse:
        # RECEIVE
        thread = self.store.get(thread_id)
        turn = _Turn(thread_id=thread_id, user_input=user_input, thread=thread)
        snapshot = await build_snapshot(self.backend)
        if snapshot.failed_sections:
            turn.thoughts.append(
                "Workspace context incomplete: " + ", ".join(snapshot.failed_sections)
            )

        # PLAN
        await self._plan(turn, render_markdown(snapshot))

        # ACT
        if turn.plan.steps:
            await self._act(turn)

        # REFLECT
        reflection, reflected = await self._reflect(turn)

        # LEARN
        learnings = self._learn(thread_id, reflected.learnings if reflected else [])

        # RESPOND
        reply = (reflected.reply if reflected else None) or turn.plan_reply
        if not reply or not reply.strip():
            reply = _outcome_summary(turn.tool_calls)
        pending = [c for c in turn.tool_calls if c.status == ToolCallStatus.PENDING_CONFIRMATION]
        if pending and "confirm" not in reply.lower():
            reply += "\n\n" + _pending_note(pending)

        return AgentResponse(
            reply=reply.strip(),
            plan=turn.plan,
            reflection=reflection,
            learnings=learnings,
            thoughts=turn.thoughts,
            tool_calls=turn.tool_calls,
        )

    # ------------------------------------------------------------------ #
    # PLAN
    # ------------------------------------------------------------------ #
    async def _plan(self, turn: _Turn, context_markdown: str) -> None:
        history = turn.thread.messages[:-1]
        if self.prompt_history > 0:
            history = history[-self.prompt_history :]
        else:
            history = []
        system = prompts.build_planner_system(
            get_action_schemas(), context_markdown, turn.thread.learnings
        )
        request = prompts.build_planner_request(
            history, turn.user_input.text, len(turn.user_input.images)
        )
        images = turn.user_input.images

        try:
            raw = await self.model.complete(system, [{"role": "user", "content": request}], images)
        except ModelCallError as exc:
            logger.warning("Planning call failed: %s", exc)
            turn.thoughts.append(f"Planning failed: {exc}")
            turn.plan_reply = (
                "I couldn't work out a plan right now because the language model did not "
                "respond in time. Please try again in a moment."
            )
            return

        try:
            output = parse_plan(raw)
        except ModelFormatError as first:
            logger.info("Plan not parseable (%s); asking once to reformat", first)
            retry_raw = raw
            try:
                retry_raw = await self.model.complete(
                    system, prompts.reformat_messages(request, raw), images
                )
                output = parse_plan(retry_raw)
            except (ModelFormatError, ModelCallError) as second:
                logger.warning("Falling back to a direct reply: %s", second)
                turn.thoughts.append("Planner output was not structured; replied directly.")
                turn.plan_reply = retry_raw.strip() or raw.strip() or None
                turn.planned = True
                return

        self._accept_plan(turn, output)

    def _accept_plan(self, turn: _Turn, output: PlannerOutput) -> None:
        turn.planned = True
        turn.plan = Plan(goal=output.goal, steps=output.steps)
        turn.plan_reply = output.reply
        turn.thoughts.extend(t for t in output.thoughts if t.strip())
        logger.info(
            "Plan for '%s': %d steps %s",
            turn.thread_id,
            len(output.steps),
            [s.action for s in output.steps if s.action],
        )

    # ------------------------------------------------------------------ #
    # ACT
    # ------------------------------------------------------------------ #
    async def _act(self, turn: _Turn) -> None:
        """Run the plan's action steps strictly in order."""
        outcomes: Dict[str, str] = {}
        outputs: Dict[str, Dict[str, Any]] = {}

        for step in turn.plan.steps:
            if not step.action:
                continue
            call = await self._act_step(step, outcomes, outputs)
            outcomes[step.id] = _outcome(call)
            if call.status == ToolCallStatus.SUCCEEDED and call.result is not None:
                outputs[step.id] = call.result
            turn.tool_calls.append(call)
            self.store.append(turn.thread_id, Message(role=Role.TOOL, text=_tool_message(call)))

    async def _act_step(
        self,
        step: PlanStep,
        outcomes: Dict[str, str],
        outputs: Dict[str, Dict[str, Any]],
    ) -> ToolCall:
        name = step.action or ""
        upstream = set(step.depends_on) | placeholder_refs(step.params)
        upstream_outcomes = {outcomes[u] for u in upstream if u in outcomes}
        if _FAILED in upstream_outcomes:
            logger.info("Skipping step '%s': upstream failure", step.id)
            return _call(step, name, step.params, ToolCallStatus.SKIPPED, SKIPPED_UPSTREAM_FAILURE)
        if _PENDING in upstream_outcomes:
            logger.info("Skipping step '%s': upstream pending confirmation", step.id)
            return _call(step, name, step.params, ToolCallStatus.SKIPPED, SKIPPED_UPSTREAM_PENDING)

        try:
            params = resolve_placeholders(step.params, outputs)
        except PlaceholderError as exc:
            return _call(step, name, step.params, ToolCallStatus.FAILED, str(exc))

        validation = validate(name, params)
        if not validation.ok:
            logger.info("Step '%s' rejected: %s", step.id, validation.error_message())
            return _call(step, name, params, ToolCallStatus.FAILED, validation.error_message())

        _, typed = validation.raise_for_errors()
        clean = typed.model_dump(mode="json", by_alias=True, exclude_none=True)
        pending = self.executor.propose(validation, step.description)
        if not await self.confirmer(pending):
            logger.info("Step '%s' awaits confirmation as %s", step.id, pending.id)
            call = _call(step, name, clean, ToolCallStatus.PENDING_CONFIRMATION, None)
            call.proposal_id = pending.id
            return call

        try:
            result = await self.executor.confirm(pending.id)
        except ActionExecutionError as exc:
            return _call(step, name, clean, ToolCallStatus.FAILED, str(exc))

        call = _call(step, name, clean, ToolCallStatus.SUCCEEDED, None)
        call.result = result.model_dump(mode="json")
        return call

    # ------------------------------------------------------------------ #
    # REFLECT / LEARN
    # ------------------------------------------------------------------ #
    async def _reflect(self, turn: _Turn) -> Tuple[Reflection, Optional[ReflectorOutput]]:
        if not turn.planned:
            return _fallback_reflection(turn.tool_calls, "Planning did not complete."), None

        request = prompts.build_reflection_request(
            turn.user_input.text, turn.plan, turn.tool_calls, turn.plan_reply
        )
        system = prompts.REFLECTOR_SYSTEM_PROMPT
        try:
            raw = await self.model.complete(system, [{"role": "user", "content": request}])
            try:
                output = parse_reflection(raw)
            except ModelFormatError as exc:
                logger.info("Reflection not parseable (%s); asking once to reformat", exc)
                raw = await self.model.complete(system, prompts.reformat_messages(request, raw))
                output = parse_reflection(raw)
        except (ModelCallError, ModelFormatError) as exc:
            logger.warning("Reflection degraded: %s", exc)
            turn.thoughts.append(f"Reflection unavailable: {exc}")
            return _fallback_reflection(turn.tool_calls, str(exc)), None

        reflection = Reflection(
            summary=output.summary,
            success=output.success,
            issues=output.issues,
            suggestions=output.suggestions,
        )
        return reflection, output

    def _learn(self, thread_id: str, candidates: List[str]) -> List[str]:
        stored: List[str] = []
        for text in candidates[:MAX_LEARNINGS]:
            text = text.strip()
            if not text or len(text) > MAX_LEARNING_CHARS:
                continue
            if self.store.add_learning(thread_id, text):
                stored.append(" ".join(text.split()))
        if stored:
            logger.info("Learned %d new fact(s) on '%s'", len(stored), thread_id)
        return stored


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------
def _call(
    step: PlanStep,
    name: str,
    params: Any,
    status: ToolCallStatus,
    error: Optional[str],
) -> ToolCall:
    return ToolCall(
        step_id=step.id,
        name=name,
        params=params if isinstance(params, dict) else {"value": params},
        status=status,
        error=error,
    )


def _outcome(call: ToolCall) -> str:
    """Collapse a call into ok / failed / pending as seen by dependent steps."""
    if call.status == ToolCallStatus.SUCCEEDED:
        return _OK
    if call.status == ToolCallStatus.PENDING_CONFIRMATION or call.error == SKIPPED_UPSTREAM_PENDING:
        return _PENDING
    return _FAILED


def _tool_message(call: ToolCall) -> str:
    if call.status == ToolCallStatus.SUCCEEDED:
        return f"{call.name}: {(call.result or {}).get('message', 'done')}"
    if call.status == ToolCallStatus.PENDING_CONFIRMATION:
        return f"{call.name}: awaiting confirmation ({call.proposal_id})"
    return f"{call.name}: {call.status.value} ({call.error})"


def _outcome_summary(calls: List[ToolCall]) -> str:
    if not calls:
        return "I don't have anything to change for this request."
    lines = []
    for call in calls:
        if call.status == ToolCallStatus.SUCCEEDED:
            lines.append(f"- {(call.result or {}).get('message', call.name)}")
        elif call.status == ToolCallStatus.PENDING_CONFIRMATION:
            lines.append(f"- {call.name} is waiting for your confirmation")
        else:
            lines.append(f"- {call.name} {call.status.value}: {call.error}")
    return "Here is what happened:\n" + "\n".join(lines)


def _pending_note(calls: List[ToolCall]) -> str:
    names = ", ".join(call.name for call in calls)
    return f"{len(calls)} action(s) need your confirmation before I apply them: {names}."


def _fallback_reflection(calls: List[ToolCall], reason: str) -> Reflection:
    failed = [c for c in calls if c.status in (ToolCallStatus.FAILED, ToolCallStatus.SKIPPED)]
    succeeded = [c for c in calls if c.status == ToolCallStatus.SUCCEEDED]
    summary = f"{len(succeeded)} of {len(calls)} action(s) succeeded." if calls else reason
    return Reflection(
        summary=summary,
        success=bool(calls) and not failed,
        issues=[f"{c.name}: {c.error}" for c in failed] or ([reason] if not calls else []),
    )
