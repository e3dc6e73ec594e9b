"""
Shared fixtures: a scripted model client and an in-memory workspace.

Run with:
$ pytest -q
"""

import asyncio
import json
from typing import (
    Any,
    Callable,
    Dict,
    List,
    Optional,
)

import pytest

from lifedesk.actions.backend import InMemoryActionBackend
from lifedesk.agent.action_executor import ActionExecutor
from lifedesk.agent.model_client import (
    BaseModelClient,
    ChatMessage,
)
from lifedesk.agent.prompts import REFLECTOR_SYSTEM_PROMPT
from lifedesk.core.schema import Image
from lifedesk.memory.thread_store import ThreadStore

Responder = Callable[[str, List[ChatMessage]], str]


class ScriptedModelClient(BaseModelClient):
    """
    Model client that replays queued answers.

    Each queued item is a string, a dict (sent as JSON), an exception (raised) or a callable
    ``(system, messages) -> str``.  When the queue is empty, *default* answers instead.
    """

    def __init__(self, *responses: Any, default: Optional[Responder] = None):
        super().__init__(timeout=5.0, temperature=0.0)
        self.responses: List[Any] = list(responses)
        self.default = default
        self.calls: List[Dict[str, Any]] = []

    def queue(self, *responses: Any) -> None:
        self.responses.extend(responses)

    async def _complete(
        self, system: str, messages: List[ChatMessage], images: List[Image]
    ) -> str:
        self.calls.append({"system": system, "messages": messages, "images": images})
        await asyncio.sleep(0)
        if self.responses:
            item = self.responses.pop(0)
        elif self.default is not None:
            item = self.default
        else:
            raise AssertionError("unexpected model call")

        if isinstance(item, BaseException):
            raise item
        if callable(item):
            return item(system, messages)
        if isinstance(item, (dict, list)):
            return json.dumps(item)
        return str(item)


class RecordingBackend(InMemoryActionBackend):
    """In-memory backend that remembers every mutation it was asked to perform."""

    def __init__(self) -> None:
        super().__init__()
        self.calls: List[tuple] = []

    async def create_task(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append(("create_task", fields))
        return await super().create_task(fields)

    async def update_task(self, task_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append(("update_task", task_id, fields))
        return await super().update_task(task_id, fields)

    async def complete_task(self, task_id: int) -> Dict[str, Any]:
        self.calls.append(("complete_task", task_id))
        return await super().complete_task(task_id)

    async def create_expense(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append(("create_expense", fields))
        return await super().create_expense(fields)

    async def create_schedule_block(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        self.calls.append(("create_schedule_block", fields))
        return await super().create_schedule_block(fields)


def plan_json(*steps: Dict[str, Any], reply: Optional[str] = None, goal: str = "help") -> str:
    return json.dumps(
        {"goal": goal, "thoughts": ["thinking"], "steps": list(steps), "reply": reply}
    )


def reflection_json(
    reply: str = "Done.", success: bool = True, learnings: Optional[List[str]] = None
) -> str:
    return json.dumps(
        {
            "summary": "Handled the request.",
            "success": success,
            "issues": [],
            "suggestions": [],
            "reply": reply,
            "learnings": learnings or [],
        }
    )


def echo_responder(system: str, messages: List[ChatMessage]) -> str:
    """Plan nothing and echo the request back; leave the reply to the plan."""
    if system == REFLECTOR_SYSTEM_PROMPT:
        return reflection_json(reply="")
    request = messages[-1]["content"].rsplit("CURRENT REQUEST:\n", 1)[-1]
    return plan_json(reply=f"echo: {request}")


@pytest.fixture
def backend() -> RecordingBackend:
    return RecordingBackend()


@pytest.fixture
def executor(backend: RecordingBackend) -> ActionExecutor:
    return ActionExecutor(backend)


@pytest.fixture
def store() -> ThreadStore:
    return ThreadStore(max_messages=50)


@pytest.fixture
def model() -> ScriptedModelClient:
    return ScriptedModelClient()
