"""
Tests for the HTTP action backend against a mocked workspace API.

Run with:
$ pytest -q
"""

import datetime
import json
from typing import (
    Any,
    List,
)

import httpx
import pytest

from lifedesk.actions.backend import (
    HttpActionBackend,
    InMemoryActionBackend,
    create_backend,
)
from lifedesk.core.errors import BackendError


def _backend(requests: List[httpx.Request], status: int = 200, body: Any = None):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        return httpx.Response(status, json=body if body is not None else {"id": 11})

    return HttpActionBackend(base_url="http://workspace", transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_update_task_puts_id_and_fields() -> None:
    """Partial updates are sent as one PUT with the id in the body."""

    requests: List[httpx.Request] = []
    backend = _backend(requests, body={"success": True})
    result = await backend.update_task(4, {"title": "Renamed"})
    await backend.aclose()

    assert result == {"success": True}
    [request] = requests
    assert request.method == "PUT"
    assert request.url.path == "/api/tasks"
    assert json.loads(request.content) == {"id": 4, "title": "Renamed"}


@pytest.mark.asyncio
async def test_complete_task_posts_completion() -> None:
    """Completions go to the completed-tasks collection."""

    requests: List[httpx.Request] = []
    backend = _backend(requests)
    await backend.complete_task(8)
    await backend.aclose()

    assert requests[0].url.path == "/api/completed-tasks"
    assert json.loads(requests[0].content) == {"taskId": 8}


@pytest.mark.asyncio
async def test_create_expense_maps_fields() -> None:
    """Expense fields are renamed to the workspace's expense schema."""

    requests: List[httpx.Request] = []
    backend = _backend(requests)
    result = await backend.create_expense(
        {"amount": 4.2, "currency": "EUR", "date": "2025-06-10", "category": "Food"}
    )
    await backend.aclose()

    assert result == {"id": 11}
    sent = json.loads(requests[0].content)
    assert sent["occurredAt"] == "2025-06-10"
    assert sent["title"] == "Food"
    assert sent["amount"] == 4.2


@pytest.mark.asyncio
async def test_error_status_raises_backend_error() -> None:
    """Error responses surface the server's message."""

    backend = _backend([], status=404, body={"error": "Task not found"})
    try:
        await backend.update_task(1, {"title": "x"})
    except BackendError as exc:
        assert "404" in str(exc)
        assert "Task not found" in str(exc)
    else:  # pragma: no cover
        raise AssertionError("BackendError was not raised")
    finally:
        await backend.aclose()


@pytest.mark.asyncio
async def test_schedule_queries_pass_dates() -> None:
    """Day and week queries carry ISO dates."""

    requests: List[httpx.Request] = []
    backend = _backend(requests, body=[])
    await backend.get_day_schedule(datetime.date(2025, 6, 10))
    await backend.aclose()

    assert requests[0].url.path == "/api/schedule/day"
    assert requests[0].url.params["date"] == "2025-06-10"


@pytest.mark.asyncio
async def test_in_memory_backend_rejects_missing_parent() -> None:
    """Subtasks need an existing parent."""

    backend = InMemoryActionBackend()
    with pytest.raises(BackendError):
        await backend.create_task({"title": "orphan", "level": 2, "parentId": 42})
    assert backend.tasks == {}


def test_create_backend() -> None:
    """Backends are selected by name."""

    assert isinstance(create_backend("memory"), InMemoryActionBackend)
    with pytest.raises(ValueError):
        create_backend("carrier-pigeon")


@pytest.mark.asyncio
async def test_create_schedule_block_posts_block() -> None:
    """Schedule blocks are posted as-is to the blocks collection."""

    requests: List[httpx.Request] = []
    backend = _backend(requests, body={"id": 21, "title": "Gym"})
    fields = {"date": "2025-06-10", "startTime": "18:00", "endTime": "19:00", "title": "Gym"}
    result = await backend.create_schedule_block(fields)
    await backend.aclose()

    assert result["id"] == 21
    [request] = requests
    assert request.method == "POST"
    assert request.url.path == "/api/schedule/blocks"
    assert json.loads(request.content) == fields


@pytest.mark.asyncio
async def test_list_completions_passes_start_date() -> None:
    """Completions are filtered server-side by start date."""

    requests: List[httpx.Request] = []
    backend = _backend(requests, body=[])
    assert await backend.list_completions(datetime.date(2025, 5, 11)) == []
    await backend.aclose()

    assert requests[0].url.path == "/api/completed-tasks"
    assert requests[0].url.params["startDate"] == "2025-05-11"
