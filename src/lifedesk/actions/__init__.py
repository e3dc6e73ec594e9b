"""
Action registry for lifedesk.

Actions are the only domain operations the agent may perform against the action backend.  The set
of operations is closed (:class:`ActionName`); each one is described by an immutable
:class:`ActionSpec` registered once, at import time, and read-only afterwards.
"""

import logging
from dataclasses import dataclass
from enum import Enum
from typing import (
    Dict,
    List,
    Mapping,
    Type,
    TypedDict,
)

from lifedesk.actions.params import (
    ActionParams,
    CompleteTaskParams,
    CreateExpenseParams,
    CreateScheduleBlockParams,
    CreateTaskParams,
    UpdateTaskParams,
)

logger = logging.getLogger(__name__)


class ActionName(str, Enum):
    """Closed set of supported operations."""

    CREATE_TASK = "create_task"
    UPDATE_TASK = "update_task"
    COMPLETE_TASK = "complete_task"
    CREATE_EXPENSE = "create_expense"
    CREATE_SCHEDULE_BLOCK = "create_schedule_block"


@dataclass(frozen=True)
class ActionSpec:
    """Declaration of a permitted operation."""

    name: ActionName
    description: str
    params_model: Type[ActionParams]
    side_effect: str
    mutating: bool = True


ACTION_REGISTRY: Dict[ActionName, ActionSpec] = {}
"""Process-wide registry of action specs."""


def register_action(spec: ActionSpec) -> ActionSpec:
    """
    Register *spec* under its name.

    Parameters
    ----------
    spec: ActionSpec
        The action spec to register.
    Returns
    -------
    ActionSpec
        The registered spec, unchanged.
    Raises
    ------
    ValueError
        If an action with the same name is already registered.
    """
    if spec.name in ACTION_REGISTRY:
        raise ValueError(f"Action '{spec.name.value}' is already registered.")
    logger.debug("Registering action '%s'", spec.name.value)
    ACTION_REGISTRY[spec.name] = spec
    return spec


def get_action_spec(name: ActionName) -> ActionSpec:
    """Return the spec registered for *name*."""
    return ACTION_REGISTRY[name]


def get_action_specs() -> List[ActionSpec]:
    """Return all registered specs in declaration order of :class:`ActionName`."""
    return [ACTION_REGISTRY[name] for name in ActionName if name in ACTION_REGISTRY]


class ParameterInfo(TypedDict):
    """
    Information about an action parameter.
    """

    type: str
    required: bool
    description: str


class ActionSchema(TypedDict):
    """
    Schema for an action, as presented to the planner.
    """

    description: str
    side_effect: str
    parameters: Mapping[str, ParameterInfo]


def get_action_schemas() -> Mapping[str, ActionSchema]:
    """Extract parameter information from the registered actions."""
    schemas: Dict[str, ActionSchema] = {}
    for spec in get_action_specs():
        json_schema = spec.params_model.model_json_schema(by_alias=True)
        required = set(json_schema.get("required", []))
        defs = json_schema.get("$defs", {})
        params: Dict[str, ParameterInfo] = {}
        for param_name, info in json_schema.get("properties", {}).items():
            params[param_name] = ParameterInfo(
                type=_describe_type(info, defs),
                required=param_name in required,
                description=info.get("description", ""),
            )
        schemas[spec.name.value] = {
            "description": spec.description,
            "side_effect": spec.side_effect,
            "parameters": params,
        }
    return schemas


def _describe_type(info: Mapping, defs: Mapping) -> str:
    if "enum" in info:
        return " | ".join(str(v) for v in info["enum"])
    if "anyOf" in info:
        options = [option for option in info["anyOf"] if option.get("type") != "null"]
        kinds = [_describe_type(option, defs) for option in options]
        return " | ".join(kinds) or "any"
    if "$ref" in info:
        name = info["$ref"].rsplit("/", 1)[-1]
        return _describe_type(defs[name], defs) if name in defs else name
    fmt = info.get("format")
    return f"{info.get('type', 'any')}({fmt})" if fmt else str(info.get("type", "any"))


# ---------------------------------------------------------------------------
# Built-in actions
# ---------------------------------------------------------------------------
register_action(
    ActionSpec(
        name=ActionName.CREATE_TASK,
        description=(
            "Create a task. level is main, sub or subsub; sub and subsub tasks usually carry a "
            "parentId. type is routine, long-term or short-term (default short-term)."
        ),
        params_model=CreateTaskParams,
        side_effect="Adds a task to the task store and returns its id.",
    )
)
register_action(
    ActionSpec(
        name=ActionName.UPDATE_TASK,
        description="Update fields of an existing task identified by its numeric id.",
        params_model=UpdateTaskParams,
        side_effect="Overwrites the given fields of the task.",
    )
)
register_action(
    ActionSpec(
        name=ActionName.COMPLETE_TASK,
        description="Mark an existing task as completed.",
        params_model=CompleteTaskParams,
        side_effect="Records a completion for the task.",
    )
)
register_action(
    ActionSpec(
        name=ActionName.CREATE_EXPENSE,
        description="Record an expense (amount, 3-letter currency, date YYYY-MM-DD, category).",
        params_model=CreateExpenseParams,
        side_effect="Adds an expense record and returns its id.",
    )
)
register_action(
    ActionSpec(
        name=ActionName.CREATE_SCHEDULE_BLOCK,
        description=(
            "Put a block on the calendar for a date (YYYY-MM-DD) from startTime to endTime "
            "(HH:MM). Give taskId to schedule an existing task, or title for a one-off event. "
            "endTime defaults to one hour after startTime."
        ),
        params_model=CreateScheduleBlockParams,
        side_effect="Adds a schedule block and returns its id.",
    )
)

_missing = set(ActionName) - set(ACTION_REGISTRY)
if _missing:  # pragma: no cover - guards edits to ActionName
    raise RuntimeError(f"Actions without a spec: {sorted(m.value for m in _missing)}")
