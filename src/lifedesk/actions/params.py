"""
Typed parameter models for every registered action.

The models accept both snake_case and the camelCase keys used by the model and the workspace
frontend (``parentId``, ``isUnclear`` ...).  ``to_backend`` renders the payload sent to the action
backend, where task levels travel as ordinals.
"""

import datetime
from enum import Enum
from typing import (
    Annotated,
    Any,
    Dict,
    Optional,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    StringConstraints,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

NonEmptyStr = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
Priority = Annotated[int, Field(ge=1, le=5)]


class TaskLevel(str, Enum):
    """Hierarchy level of a task."""

    MAIN = "main"
    SUB = "sub"
    SUBSUB = "subsub"

    @property
    def ordinal(self) -> int:
        """Storage ordinal: main=1, sub=2, subsub=3."""
        return _LEVEL_ORDINALS[self]


_LEVEL_ORDINALS = {TaskLevel.MAIN: 1, TaskLevel.SUB: 2, TaskLevel.SUBSUB: 3}


class TaskType(str, Enum):
    """Planning horizon of a task."""

    ROUTINE = "routine"
    LONG_TERM = "long-term"
    SHORT_TERM = "short-term"


class ActionParams(BaseModel):
    """Base class for action parameters."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    def to_backend(self) -> Dict[str, Any]:
        """Payload for the backend, camelCase keys, unset optionals dropped."""
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


def _reject_bool(value: Any) -> Any:
    if isinstance(value, bool):
        raise ValueError("must be a number, not a boolean")
    return value


class CreateTaskParams(ActionParams):
    """Parameters for ``create_task``."""

    title: NonEmptyStr
    level: TaskLevel
    type: TaskType = TaskType.SHORT_TERM
    description: Optional[str] = None
    priority: Optional[Priority] = None
    parent_id: Optional[int] = Field(default=None, gt=0)
    deadline: Optional[datetime.date] = None

    @field_validator("parent_id", mode="before")
    @classmethod
    def _parent_not_bool(cls, value: Any) -> Any:
        return _reject_bool(value)

    def to_backend(self) -> Dict[str, Any]:
        payload = super().to_backend()
        payload["level"] = self.level.ordinal
        return payload


class UpdateTaskParams(ActionParams):
    """Parameters for ``update_task``; everything but ``id`` is a partial update."""

    id: int = Field(gt=0)
    title: Optional[NonEmptyStr] = None
    description: Optional[str] = None
    priority: Optional[Priority] = None
    deadline: Optional[datetime.date] = None
    is_unclear: Optional[bool] = None
    unclear_reason: Optional[str] = None

    @field_validator("id", mode="before")
    @classmethod
    def _id_not_bool(cls, value: Any) -> Any:
        return _reject_bool(value)

    def changes(self) -> Dict[str, Any]:
        """The partial fields to update, without the id."""
        payload = self.to_backend()
        payload.pop("id", None)
        return payload


class CompleteTaskParams(ActionParams):
    """Parameters for ``complete_task``."""

    id: int = Field(gt=0)

    @field_validator("id", mode="before")
    @classmethod
    def _id_not_bool(cls, value: Any) -> Any:
        return _reject_bool(value)


class CreateExpenseParams(ActionParams):
    """Parameters for ``create_expense``."""

    amount: float = Field(gt=0)
    currency: Annotated[str, StringConstraints(strip_whitespace=True, pattern=r"^[A-Za-z]{3}$")]
    date: datetime.date
    category: NonEmptyStr = "Uncategorized"
    description: Optional[str] = None

    @field_validator("currency")
    @classmethod
    def _upper_currency(cls, value: str) -> str:
        return value.upper()


class ScheduleBlockType(str, Enum):
    """What a schedule block is attached to."""

    TASK = "task"
    EVENT = "event"


ClockTime = Annotated[
    str, StringConstraints(strip_whitespace=True, pattern=r"^([01]\d|2[0-3]):[0-5]\d$")
]


class CreateScheduleBlockParams(ActionParams):
    """
    Parameters for ``create_schedule_block``.

    A block either belongs to a task (``taskId``) or is a free-standing event (``title``).  Without
    an ``endTime`` the block lasts one hour.
    """

    date: datetime.date
    start_time: ClockTime
    end_time: Optional[ClockTime] = None
    task_id: Optional[int] = Field(default=None, gt=0)
    title: Optional[NonEmptyStr] = None
    comment: Optional[str] = None

    @field_validator("task_id", mode="before")
    @classmethod
    def _task_not_bool(cls, value: Any) -> Any:
        return _reject_bool(value)

    @model_validator(mode="after")
    def _task_or_title(self) -> "CreateScheduleBlockParams":
        if self.task_id is None and self.title is None:
            raise ValueError("either taskId or title is required")
        if self.end_time is not None and self.end_time <= self.start_time:
            raise ValueError("endTime must be after startTime")
        return self

    @property
    def block_type(self) -> ScheduleBlockType:
        return ScheduleBlockType.TASK if self.task_id is not None else ScheduleBlockType.EVENT

    def resolved_end_time(self) -> str:
        """``endTime``, or one hour after ``startTime`` (wrapping at midnight)."""
        if self.end_time is not None:
            return self.end_time
        hours, minutes = self.start_time.split(":")
        return f"{(int(hours) + 1) % 24:02d}:{minutes}"

    def to_backend(self) -> Dict[str, Any]:
        payload = super().to_backend()
        payload["type"] = self.block_type.value
        payload["endTime"] = self.resolved_end_time()
        payload["status"] = "scheduled"
        return payload
