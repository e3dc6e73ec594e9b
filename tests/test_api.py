"""
Tests for the HTTP surface.

Run with:
$ pytest -q
"""

from typing import Iterator

import pytest
from conftest import (
    RecordingBackend,
    ScriptedModelClient,
    echo_responder,
    plan_json,
    reflection_json,
)
from fastapi.testclient import TestClient

from lifedesk.agent.action_executor import (
    ActionExecutor,
    deny_all,
)
from lifedesk.agent.agent_loop import AgentLoop
from lifedesk.agent.expense_agent import ExpenseAgent
from lifedesk.api.app import (
    Services,
    app,
    get_services,
)
from lifedesk.core.errors import ModelUnavailableError
from lifedesk.memory.thread_store import ThreadStore

PNG = b"\x89PNG\r\n\x1a\nreceipt"


@pytest.fixture
def model() -> ScriptedModelClient:
    return ScriptedModelClient(default=echo_responder)


@pytest.fixture
def client(
    model: ScriptedModelClient, backend: RecordingBackend, store: ThreadStore
) -> Iterator[TestClient]:
    executor = ActionExecutor(backend)
    services = Services(
        backend=backend,
        store=store,
        executor=executor,
        agent=AgentLoop(model, store, executor, backend, confirmer=deny_all, prompt_history=10),
        expense_agent=ExpenseAgent(model, executor, store),
    )
    app.dependency_overrides[get_services] = lambda: services
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def test_health(client: TestClient) -> None:
    """Liveness probe answers ok."""

    assert client.get("/health").json() == {"status": "ok"}


# ---------------------------------------------------------------------------
# Chat
# ---------------------------------------------------------------------------
def test_agent_chat_returns_full_bundle(client: TestClient) -> None:
    """A successful chat returns every bundle field in camelCase."""

    resp = client.post("/agent/chat", json={"message": "hello", "threadId": "web"})
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["reply"] == "echo: hello"
    for key in ("plan", "reflection", "learnings", "thoughts", "toolCalls"):
        assert key in body


@pytest.mark.parametrize("payload", [{"message": "   "}, {}, {"message": 3}])
def test_agent_chat_rejects_empty_message(client: TestClient, payload) -> None:
    """Blank or missing text is a 400 with a chat-style failure body."""

    resp = client.post("/agent/chat", json=payload)
    assert resp.status_code == 400
    body = resp.json()
    assert body["success"] is False
    assert "message" in body["error"]


def test_agent_chat_rejects_non_object_body(client: TestClient) -> None:
    """The body must be a JSON object."""

    resp = client.post("/agent/chat", json=["hello"])
    assert resp.status_code == 400
    assert resp.json()["success"] is False


def test_model_unavailable_is_a_500(client: TestClient, model: ScriptedModelClient) -> None:
    """An unreachable model fails the request with a chat-style body."""

    model.queue(ModelUnavailableError("connection refused"))
    resp = client.post("/agent/chat", json={"message": "hello"})
    assert resp.status_code == 500
    body = resp.json()
    assert body["success"] is False
    assert body["error"].startswith("Model service unavailable")


def test_expense_chat_form_with_legacy_image(client: TestClient, model, backend) -> None:
    """A multipart submission with the legacy image field is read and recorded."""

    model.queue({"reply": "Saved.", "expenses": [{"amount": 9.9, "category": "Books"}]})
    resp = client.post(
        "/expense-agent/chat",
        data={"message": "book receipt"},
        files={"image": ("r.png", PNG, "image/png")},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body == {
        "success": True,
        "reply": "Saved.\nRecorded 1 expense(s).",
        "hasImages": True,
        "imageCount": 1,
    }
    assert len(backend.expenses) == 1


def test_expense_chat_form_with_indexed_images(client: TestClient, model) -> None:
    """Indexed uploads are all delivered to the model, in order."""

    model.queue({"reply": "Two receipts, nothing to record.", "expenses": []})
    resp = client.post(
        "/expense-agent/chat",
        data={"message": "two receipts", "imageCount": "2"},
        files={
            "image_0": ("a.png", PNG + b"0", "image/png"),
            "image_1": ("b.png", PNG + b"1", "image/png"),
        },
    )
    assert resp.status_code == 200
    assert resp.json()["imageCount"] == 2
    assert [img.payload for img in model.calls[-1]["images"]] == [PNG + b"0", PNG + b"1"]


@pytest.mark.parametrize("as_form", [True, False])
def test_expense_chat_rejects_empty_message(client: TestClient, as_form: bool) -> None:
    """Both the form and the JSON variant reject blank text."""

    if as_form:
        resp = client.post("/expense-agent/chat", data={"message": " "})
    else:
        resp = client.post("/expense-agent/chat", json={"message": ""})
    assert resp.status_code == 400
    assert resp.json()["success"] is False


# ---------------------------------------------------------------------------
# Action bridge
# ---------------------------------------------------------------------------
def test_execute_action(client: TestClient, backend: RecordingBackend) -> None:
    """A valid direct execution reaches the backend with the ordinal level."""

    resp = client.post(
        "/actions/execute",
        json={"operation": "create_task", "params": {"title": "Pay rent", "level": "subsub"}},
    )
    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert body["message"] == "Task created: Pay rent"
    assert backend.tasks[body["data"]["id"]]["level"] == 3


def test_execute_unknown_operation(client: TestClient) -> None:
    """Unknown operations are a 400 distinct from parameter errors."""

    resp = client.post("/actions/execute", json={"operation": "drop_tables", "params": {}})
    assert resp.status_code == 400
    assert resp.json()["error"] == "Unknown operation"


def test_execute_invalid_params(client: TestClient, backend: RecordingBackend) -> None:
    """Field errors are returned and nothing is executed."""

    resp = client.post("/actions/execute", json={"operation": "update_task", "params": {}})
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "Invalid parameters"
    assert [d["field"] for d in body["details"]] == ["id"]
    assert backend.calls == []


def test_execute_missing_operation(client: TestClient, backend: RecordingBackend) -> None:
    """A malformed bridge request is a 400 with field details, not a 422."""

    resp = client.post("/actions/execute", json={"params": {"id": 1}})
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "Invalid request"
    assert [d["field"] for d in body["details"]] == ["operation"]
    assert backend.calls == []


def test_execute_non_object_params(client: TestClient) -> None:
    """Params that are not an object are reported as a parameter error."""

    resp = client.post("/actions/execute", json={"operation": "complete_task", "params": [5]})
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "Invalid parameters"
    assert [d["field"] for d in body["details"]] == ["params"]


@pytest.mark.parametrize("content", ["not json", "[1, 2]"])
def test_execute_rejects_bad_body(client: TestClient, content: str) -> None:
    """Bodies that are not a JSON object get the bridge error shape."""

    resp = client.post(
        "/actions/execute", content=content, headers={"content-type": "application/json"}
    )
    assert resp.status_code == 400
    body = resp.json()
    assert body["error"] == "Invalid request"
    assert "details" in body


def test_execute_schedule_block(client: TestClient, backend: RecordingBackend) -> None:
    """Events can be put on the schedule through the bridge."""

    resp = client.post(
        "/actions/execute",
        json={
            "operation": "create_schedule_block",
            "params": {"date": "2025-06-10", "startTime": "18:00", "title": "Gym"},
        },
    )
    assert resp.status_code == 200
    assert resp.json()["message"] == "Schedule block created: Gym (2025-06-10 18:00-19:00)"
    assert backend.schedule[0]["type"] == "event"


def test_execute_backend_failure(client: TestClient) -> None:
    """A backend rejection is a 500 naming the operation."""

    resp = client.post("/actions/execute", json={"operation": "complete_task", "params": {"id": 5}})
    assert resp.status_code == 500
    body = resp.json()
    assert body["error"] == "Execution failed"
    assert body["details"] == "complete_task failed: task 5 does not exist"


def test_confirm_proposal_once(client: TestClient, model, backend: RecordingBackend) -> None:
    """A proposal made during chat is applied by the confirm endpoint, once."""

    model.queue(
        plan_json(
            {
                "id": "step1",
                "description": "create task",
                "action": "create_task",
                "params": {"title": "Dentist", "level": "main"},
            }
        ),
        reflection_json(reply="Shall I add it? Please confirm."),
    )
    chat = client.post("/agent/chat", json={"message": "add dentist", "threadId": "web"}).json()
    [call] = chat["toolCalls"]
    assert call["status"] == "pending_confirmation"
    assert backend.calls == []

    resp = client.post(f"/actions/proposals/{call['proposalId']}/confirm")
    assert resp.status_code == 200
    assert resp.json()["message"] == "Task created: Dentist"

    again = client.post(f"/actions/proposals/{call['proposalId']}/confirm")
    assert again.status_code == 404
    assert again.json()["error"] == "Proposal not found"
    assert len(backend.tasks) == 1


def test_discard_proposal(client: TestClient, model, backend: RecordingBackend) -> None:
    """A discarded proposal is gone and nothing is executed."""

    model.queue(
        plan_json(
            {
                "id": "step1",
                "description": "complete task",
                "action": "complete_task",
                "params": {"id": 3},
            }
        ),
        reflection_json(reply="Shall I mark it done?"),
    )
    chat = client.post("/agent/chat", json={"message": "done with 3"}).json()
    proposal_id = chat["toolCalls"][0]["proposalId"]

    resp = client.delete(f"/actions/proposals/{proposal_id}")
    assert resp.status_code == 200
    assert resp.json()["message"] == "Proposal discarded"

    assert client.delete(f"/actions/proposals/{proposal_id}").status_code == 404
    assert client.post(f"/actions/proposals/{proposal_id}/confirm").status_code == 404
    assert backend.calls == []


# ---------------------------------------------------------------------------
# Read-only views
# ---------------------------------------------------------------------------
def test_workspace_context(client: TestClient, backend: RecordingBackend) -> None:
    """The snapshot is returned structured and as markdown."""

    backend.tasks[1] = {"id": 1, "title": "Water plants", "level": 1, "type": "short-term"}
    body = client.get("/workspace/context").json()
    assert body["success"] is True
    assert body["context"]["summary"]["totalActiveTasks"] == 1
    assert body["context"]["failedSections"] == []
    assert "Water plants" in body["markdown"]


def test_thread_history(client: TestClient) -> None:
    """Thread history lists the text of each message."""

    client.post("/agent/chat", json={"message": "hello", "threadId": "web"})
    body = client.get("/threads/web").json()
    assert body["threadId"] == "web"
    assert [(m["role"], m["text"]) for m in body["messages"]] == [
        ("user", "hello"),
        ("agent", "echo: hello"),
    ]
