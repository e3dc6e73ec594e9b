"""
Parsing of structured model output.

Models are asked for a single JSON object but often wrap it in prose or markdown fences.
:func:`extract_json_object` cuts the first balanced object out of such text; the ``parse_*``
helpers validate it against the expected shape and raise :class:`ModelFormatError` otherwise.
"""

import json
import logging
import re
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Type,
    TypeVar,
)

from pydantic import (
    BaseModel,
    Field,
    ValidationError,
    field_validator,
)

from lifedesk.core.errors import ModelFormatError
from lifedesk.core.schema import PlanStep

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.+?)```", re.DOTALL)


# ---------------------------------------------------------------------------
# Expected shapes
# ---------------------------------------------------------------------------
def _as_text_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [value] if value.strip() else []
    return value


class PlannerOutput(BaseModel):
    """What the planner returns: a goal, its reasoning, the steps and an optional reply."""

    goal: str = ""
    thoughts: List[str] = Field(default_factory=list)
    steps: List[PlanStep] = Field(default_factory=list)
    reply: Optional[str] = None

    @field_validator("thoughts", mode="before")
    @classmethod
    def _thoughts_list(cls, value: Any) -> Any:
        return _as_text_list(value)

    @field_validator("steps", mode="before")
    @classmethod
    def _normalize_steps(cls, value: Any) -> Any:
        if value is None:
            return []
        if not isinstance(value, list):
            return value
        steps = []
        for index, step in enumerate(value, start=1):
            if not isinstance(step, dict):
                steps.append(step)
                continue
            step = dict(step)
            step["id"] = str(step.get("id") or f"step{index}")
            step.setdefault("description", "")
            action = step.get("action") or step.get("tool")
            step["action"] = action if isinstance(action, str) and action.strip() else None
            depends = step.pop("depends_on", None) or step.get("dependsOn") or []
            if not isinstance(depends, list):
                depends = [depends]
            step["dependsOn"] = [str(d) for d in depends]
            if step.get("params") is None:
                step["params"] = step.get("args") or {}
            steps.append(step)
        return steps


class ReflectorOutput(BaseModel):
    """Reflection plus the user-facing reply and learning candidates."""

    summary: str = ""
    success: bool = False
    issues: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    reply: Optional[str] = None
    learnings: List[str] = Field(default_factory=list)

    @field_validator("issues", "suggestions", "learnings", mode="before")
    @classmethod
    def _text_lists(cls, value: Any) -> Any:
        return _as_text_list(value)


class ExpenseOutput(BaseModel):
    """Reply plus the expense records read from the user's message and images."""

    reply: str = ""
    expenses: List[Dict[str, Any]] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Extraction
# ---------------------------------------------------------------------------
def _find_matching_brace(s: str, i: int) -> int:
    """Given s[i] == '{', return index just past its matching '}' (string-aware)."""
    depth = 0
    in_string = False
    escaped = False
    while i < len(s):
        ch = s[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i + 1
        i += 1
    return -1


def extract_json_object(content: str) -> str:
    """Return the first balanced ``{...}`` in *content*, or *content* stripped if there is none."""
    # Strip markdown code blocks if present
    match = _FENCE_RE.search(content)
    if match:
        content = match.group(1)

    # Remove control characters except whitespace
    content = "".join(ch for ch in content if ch >= " " or ch in "\n\r\t").strip()

    open_idx = content.find("{")
    if open_idx >= 0:
        end = _find_matching_brace(content, open_idx)
        if end > 0:
            return content[open_idx:end]
    return content


def parse_json_object(content: str) -> Dict[str, Any]:
    """Decode the JSON object embedded in *content*."""
    candidate = extract_json_object(content)
    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as exc:
        raise ModelFormatError(f"response is not valid JSON: {exc}", raw=content) from exc
    if not isinstance(data, dict):
        raise ModelFormatError("response is not a JSON object", raw=content)
    return data


def parse_model_output(content: str, model: Type[M]) -> M:
    """
    Parse *content* into *model*.

    Raises
    ------
    ModelFormatError
        If no JSON object can be decoded or it does not match *model*.
    """
    data = parse_json_object(content)
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        logger.error("Failed to validate %s: %s", model.__name__, exc)
        message = f"unexpected {model.__name__} structure: {exc}"
        raise ModelFormatError(message, raw=content) from exc


def parse_plan(content: str) -> PlannerOutput:
    output = parse_model_output(content, PlannerOutput)
    if not output.steps and not (output.reply and output.reply.strip()):
        raise ModelFormatError("plan has neither steps nor a reply", raw=content)
    return output


def parse_reflection(content: str) -> ReflectorOutput:
    return parse_model_output(content, ReflectorOutput)


def parse_expenses(content: str) -> ExpenseOutput:
    output = parse_model_output(content, ExpenseOutput)
    if not output.reply.strip() and not output.expenses:
        raise ModelFormatError("expense output is empty", raw=content)
    return output
