"""
Pydantic models for lifedesk API requests and responses.
This module defines the request and response schemas used by the lifedesk API.
"""

from datetime import datetime
from typing import (
    Any,
    Dict,
    List,
)

from pydantic import (
    BaseModel,
    Field,
)

from lifedesk.core.schema import (
    AgentResponse,
    CamelModel,
)


# ---------------------------------------------------------------------------
# Pydantic request / response schema
# ---------------------------------------------------------------------------
class ChatResponse(AgentResponse):
    """Successful agent invocation."""

    success: bool = True


class ExpenseChatResponse(CamelModel):
    """Successful expense invocation."""

    success: bool = True
    reply: str
    has_images: bool = False
    image_count: int = 0


class FailureResponse(BaseModel):
    """Chat-style failure body."""

    success: bool = False
    error: str


class ExecuteRequest(BaseModel):
    """Direct action execution requested by the UI."""

    operation: str = Field(..., description="Registered action name, e.g. create_task")
    params: Any = Field(None, description="Action parameters (an object)")


class ExecuteResponse(CamelModel):
    """Outcome of a successful action execution."""

    success: bool = True
    message: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Action-bridge failure body."""

    error: str
    details: Any = None


class ContextResponse(CamelModel):
    """Workspace snapshot plus its markdown rendering."""

    success: bool = True
    context: Dict[str, Any]
    markdown: str


class ThreadMessage(CamelModel):
    role: str
    text: str
    timestamp: datetime
    attachment_count: int = 0


class ThreadResponse(CamelModel):
    """Text-only view of a conversation thread."""

    thread_id: str
    messages: List[ThreadMessage] = Field(default_factory=list)
    learnings: List[str] = Field(default_factory=list)
