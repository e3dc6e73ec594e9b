"""
Schema definitions for planner <-> agent <-> action messages.

These data models serve as the contract between the model, the orchestration loop, the thread
store and the API.  We keep them separate from runtime logic so they can be imported anywhere
without side-effects.
"""

import base64
from datetime import datetime
from enum import Enum
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
)
from pydantic.alias_generators import to_camel

from lifedesk.common import utcnow


class CamelModel(BaseModel):
    """Base model that serializes with camelCase aliases for the HTTP surface."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# Conversation
# ---------------------------------------------------------------------------
class Role(str, Enum):
    """Author of a message in a thread."""

    USER = "user"
    AGENT = "agent"
    TOOL = "tool"


class Image(BaseModel):
    """An image attachment; owned by the message that carries it."""

    model_config = ConfigDict(frozen=True)

    payload: bytes
    mime_type: str

    def to_base64(self) -> str:
        """Return the payload as a base64 string."""
        return base64.b64encode(self.payload).decode("ascii")

    def to_data_url(self) -> str:
        """Return a ``data:`` URL suitable for multimodal model calls."""
        return f"data:{self.mime_type};base64,{self.to_base64()}"


class Message(BaseModel):
    """A single message in a thread.  Immutable once appended."""

    model_config = ConfigDict(frozen=True)

    role: Role
    text: str
    attachments: tuple[Image, ...] = ()
    timestamp: datetime = Field(default_factory=utcnow)


class Learning(BaseModel):
    """A durable fact about the user, retained across turns."""

    model_config = ConfigDict(frozen=True)

    text: str


class Thread(BaseModel):
    """Ordered history plus accumulated learnings for one conversation."""

    id: str
    messages: List[Message] = Field(default_factory=list)
    learnings: List[Learning] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Planning / acting
# ---------------------------------------------------------------------------
class PlanStep(CamelModel):
    """One step of a plan, optionally bound to an action."""

    id: str
    description: str
    action: Optional[str] = None
    params: Dict[str, Any] = Field(default_factory=dict)
    depends_on: List[str] = Field(default_factory=list)


class Plan(CamelModel):
    """Ordered steps the agent intends to take for the current message."""

    goal: str = ""
    steps: List[PlanStep] = Field(default_factory=list)


class ToolCallStatus(str, Enum):
    """Outcome of a single tool call."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    PENDING_CONFIRMATION = "pending_confirmation"


class ToolCall(CamelModel):
    """A call the planner proposed and the loop validated (and possibly executed)."""

    step_id: str
    name: str
    params: Dict[str, Any] = Field(default_factory=dict)
    status: ToolCallStatus
    result: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    proposal_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class Reflection(CamelModel):
    """The agent's post-hoc summary of what it attempted and achieved."""

    summary: str = ""
    success: bool = False
    issues: List[str] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------
class AgentResponse(CamelModel):
    """Bundle returned by every agent invocation.  All fields are always present."""

    reply: str
    plan: Plan = Field(default_factory=Plan)
    reflection: Reflection = Field(default_factory=Reflection)
    learnings: List[str] = Field(default_factory=list)
    thoughts: List[str] = Field(default_factory=list)
    tool_calls: List[ToolCall] = Field(default_factory=list)


class ExpenseResponse(CamelModel):
    """Bundle returned by the image-bearing expense variant."""

    reply: str
    has_images: bool = False
    image_count: int = 0
    records: List[Dict[str, Any]] = Field(default_factory=list)
