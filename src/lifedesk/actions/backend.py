"""
Action backend capability.

The task / schedule / habit / quest / expense stores live outside this service.  The agent reaches
them only through :class:`ActionBackend`: a handful of mutations used by the executor and
read-only queries used to build the context snapshot.

Two implementations ship with the package:

1. :class:`HttpActionBackend` talks to the workspace's CRUD endpoints with ``httpx``.
2. :class:`InMemoryActionBackend` keeps everything in dictionaries (tests, CLI demo).
"""

import datetime
import itertools
import logging
from typing import (
    Any,
    Dict,
    List,
    Protocol,
    cast,
)

import httpx

from lifedesk.config import settings
from lifedesk.core.errors import BackendError

logger = logging.getLogger(__name__)

TaskGroups = Dict[str, List[Dict[str, Any]]]
"""Tasks grouped by horizon: ``routines``, ``longTermTasks``, ``shortTermTasks``."""

_TYPE_GROUPS = {
    "routine": "routines",
    "long-term": "longTermTasks",
    "short-term": "shortTermTasks",
}


class ActionBackend(Protocol):
    """Capability interface consumed by the executor and the context formatter."""

    # Mutations -------------------------------------------------------------
    async def create_task(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Create a task; returns at least ``{"id": int}``."""

    async def update_task(self, task_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Apply a partial update; returns ``{"success": bool}``."""

    async def complete_task(self, task_id: int) -> Dict[str, Any]:
        """Record a completion for the task."""

    async def create_expense(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Create an expense record; returns at least ``{"id": int}``."""

    async def create_schedule_block(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        """Create a schedule block; returns at least ``{"id": int}``."""

    # Read-only queries -----------------------------------------------------
    async def list_tasks(self) -> TaskGroups:
        """All open tasks grouped by horizon."""

    async def get_day_schedule(self, day: datetime.date) -> List[Dict[str, Any]]:
        """Schedule blocks for *day*."""

    async def get_week_schedule(
        self, week_start: datetime.date
    ) -> Dict[str, List[Dict[str, Any]]]:
        """Schedule blocks keyed by ISO date for the week starting at *week_start*."""

    async def list_quests(self) -> List[Dict[str, Any]]:
        """All quests."""

    async def get_today_habits(self) -> List[Dict[str, Any]]:
        """Habit check-in records for today."""

    async def list_completions(self, since: datetime.date) -> List[Dict[str, Any]]:
        """Task completions recorded on or after *since*."""


# ---------------------------------------------------------------------------
# HTTP implementation
# ---------------------------------------------------------------------------
class HttpActionBackend:
    """Backend that calls the workspace REST API."""

    def __init__(
        self,
        base_url: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.BACKEND_URL,
            timeout=timeout or settings.BACKEND_TIMEOUT,
            transport=transport,
        )

    async def aclose(self) -> None:
        """Close the underlying connection pool."""
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            resp = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.error("Backend request %s %s failed: %s", method, path, exc)
            raise BackendError(f"{method} {path}: {exc}") from exc

        if resp.is_error:
            detail = resp.text
            try:
                body = resp.json()
                if isinstance(body, dict) and body.get("error"):
                    detail = str(body["error"])
            except ValueError:
                pass
            logger.warning("Backend %s %s returned %d: %s", method, path, resp.status_code, detail)
            raise BackendError(f"{method} {path} returned {resp.status_code}: {detail}")

        return resp.json() if resp.content else {}

    async def create_task(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        return cast(Dict[str, Any], await self._request("POST", "/api/tasks", json=fields))

    async def update_task(self, task_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        body = {"id": task_id, **fields}
        return cast(Dict[str, Any], await self._request("PUT", "/api/tasks", json=body))

    async def complete_task(self, task_id: int) -> Dict[str, Any]:
        return cast(
            Dict[str, Any],
            await self._request("POST", "/api/completed-tasks", json={"taskId": task_id}),
        )

    async def create_expense(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        body = {
            "title": fields.get("description") or fields.get("category"),
            "occurredAt": fields.get("date"),
            "amount": fields.get("amount"),
            "currency": fields.get("currency"),
            "category": fields.get("category"),
            "note": fields.get("description"),
        }
        return cast(Dict[str, Any], await self._request("POST", "/api/expenses", json=body))

    async def create_schedule_block(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        return cast(
            Dict[str, Any], await self._request("POST", "/api/schedule/blocks", json=fields)
        )

    async def list_tasks(self) -> TaskGroups:
        return cast(TaskGroups, await self._request("GET", "/api/tasks"))

    async def get_day_schedule(self, day: datetime.date) -> List[Dict[str, Any]]:
        params = {"date": day.isoformat()}
        return cast(
            List[Dict[str, Any]], await self._request("GET", "/api/schedule/day", params=params)
        )

    async def get_week_schedule(
        self, week_start: datetime.date
    ) -> Dict[str, List[Dict[str, Any]]]:
        params = {"start": week_start.isoformat()}
        return cast(
            Dict[str, List[Dict[str, Any]]],
            await self._request("GET", "/api/schedule/week", params=params),
        )

    async def list_quests(self) -> List[Dict[str, Any]]:
        return cast(List[Dict[str, Any]], await self._request("GET", "/api/quests"))

    async def get_today_habits(self) -> List[Dict[str, Any]]:
        params = {"type": "today"}
        return cast(
            List[Dict[str, Any]], await self._request("GET", "/api/habits/records", params=params)
        )

    async def list_completions(self, since: datetime.date) -> List[Dict[str, Any]]:
        params = {"startDate": since.isoformat()}
        return cast(
            List[Dict[str, Any]], await self._request("GET", "/api/completed-tasks", params=params)
        )


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------
class InMemoryActionBackend:
    """Dictionary-backed backend.  Each call is applied entirely or not at all."""

    def __init__(self) -> None:
        self.tasks: Dict[int, Dict[str, Any]] = {}
        self.completions: List[Dict[str, Any]] = []
        self.expenses: Dict[int, Dict[str, Any]] = {}
        self.schedule: List[Dict[str, Any]] = []
        self.quests: List[Dict[str, Any]] = []
        self.habit_records: List[Dict[str, Any]] = []
        self._ids = itertools.count(1)

    async def create_task(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        parent_id = fields.get("parentId")
        if parent_id is not None and parent_id not in self.tasks:
            raise BackendError(f"parent task {parent_id} does not exist")
        task_id = next(self._ids)
        self.tasks[task_id] = {
            **fields,
            "id": task_id,
            "isCompleted": False,
            "createdAt": datetime.date.today().isoformat(),
        }
        return {"id": task_id, "title": fields.get("title")}

    async def update_task(self, task_id: int, fields: Dict[str, Any]) -> Dict[str, Any]:
        task = self.tasks.get(task_id)
        if task is None:
            raise BackendError(f"task {task_id} does not exist")
        self.tasks[task_id] = {**task, **fields}
        return {"success": True}

    async def complete_task(self, task_id: int) -> Dict[str, Any]:
        task = self.tasks.get(task_id)
        if task is None:
            raise BackendError(f"task {task_id} does not exist")
        if task.get("isCompleted"):
            raise BackendError(f"task '{task.get('title')}' is already completed")
        self.tasks[task_id] = {**task, "isCompleted": True}
        self.completions.append(
            {
                "taskId": task_id,
                "taskTitle": task.get("title"),
                "taskType": task.get("type", "short-term"),
                "taskLevel": task.get("level", 1),
                "completedAt": datetime.date.today().isoformat(),
            }
        )
        return {"id": task_id, "title": task.get("title")}

    async def create_expense(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        expense_id = next(self._ids)
        self.expenses[expense_id] = {**fields, "id": expense_id}
        return {"id": expense_id}

    async def create_schedule_block(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        block = dict(fields)
        task_id = block.get("taskId")
        if task_id is not None:
            task = self.tasks.get(task_id)
            if task is None:
                raise BackendError(f"task {task_id} does not exist")
            block["taskTitle"] = task.get("title")
            block.setdefault("title", task.get("title"))
            parent = self.tasks.get(task.get("parentId"))
            if parent is not None:
                block["parentTitle"] = parent.get("title")
        block["id"] = next(self._ids)
        self.schedule.append(block)
        return dict(block)

    async def list_tasks(self) -> TaskGroups:
        groups: TaskGroups = {group: [] for group in _TYPE_GROUPS.values()}
        for task in self.tasks.values():
            if task.get("isCompleted"):
                continue
            group = _TYPE_GROUPS.get(task.get("type", "short-term"), "shortTermTasks")
            groups[group].append(dict(task))
        return groups

    async def get_day_schedule(self, day: datetime.date) -> List[Dict[str, Any]]:
        return [dict(b) for b in self.schedule if b.get("date") == day.isoformat()]

    async def get_week_schedule(
        self, week_start: datetime.date
    ) -> Dict[str, List[Dict[str, Any]]]:
        week: Dict[str, List[Dict[str, Any]]] = {}
        for offset in range(7):
            day = week_start + datetime.timedelta(days=offset)
            week[day.isoformat()] = await self.get_day_schedule(day)
        return week

    async def list_quests(self) -> List[Dict[str, Any]]:
        return [dict(q) for q in self.quests]

    async def get_today_habits(self) -> List[Dict[str, Any]]:
        today = datetime.date.today().isoformat()
        return [dict(r) for r in self.habit_records if r.get("recordDate", today) == today]

    async def list_completions(self, since: datetime.date) -> List[Dict[str, Any]]:
        start = since.isoformat()
        return [dict(c) for c in self.completions if str(c.get("completedAt", "")) >= start]


def create_backend(kind: str | None = None) -> ActionBackend:
    """Instantiate the backend named by *kind* (default ``settings.BACKEND``)."""
    target = (kind or settings.BACKEND).lower()
    if target == "http":
        return HttpActionBackend()
    if target == "memory":
        return InMemoryActionBackend()
    raise ValueError(f"Backend '{target}' is not supported.")
