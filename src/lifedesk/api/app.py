"""
Core API backend for lifedesk.

This module exposes the agent and the action bridge through a RESTful API used by the workspace
frontend:
- **GET /health**                              - liveness probe for health checks.
- **POST /agent/chat**                         - multi-step agent: {"message", "threadId", ...}
- **POST /expense-agent/chat**                 - single-pass expense extraction (form or JSON).
- **POST /actions/execute**                    - run one validated action directly.
- **POST /actions/proposals/{id}/confirm**     - apply an action the agent proposed.
- **DELETE /actions/proposals/{id}**           - discard an action the agent proposed.
- **GET /workspace/context**                   - current workspace snapshot.
- **GET /threads/{thread_id}**                 - text view of a conversation thread.
"""

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import (
    Any,
    AsyncIterator,
    Dict,
    Optional,
)

from fastapi import (
    Depends,
    FastAPI,
    Request,
)
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError

from lifedesk.actions.backend import (
    ActionBackend,
    create_backend,
)
from lifedesk.actions.validator import (
    field_errors,
    validate,
)
from lifedesk.agent.action_executor import (
    ActionExecutor,
    ActionResult,
    approve_all,
    deny_all,
)
from lifedesk.agent.agent_loop import AgentLoop
from lifedesk.agent.expense_agent import ExpenseAgent
from lifedesk.agent.model_client import load_model_client
from lifedesk.agent.multimodal import (
    normalize_form,
    normalize_json,
)
from lifedesk.api.models import (
    ChatResponse,
    ContextResponse,
    ErrorResponse,
    ExecuteRequest,
    ExecuteResponse,
    ExpenseChatResponse,
    FailureResponse,
    ThreadMessage,
    ThreadResponse,
)
from lifedesk.common import (
    AnsiColors,
    colored_print,
)
from lifedesk.config import settings
from lifedesk.context.snapshot import (
    build_snapshot,
    render_markdown,
)
from lifedesk.core.errors import (
    ActionExecutionError,
    InputValidationError,
    LifedeskError,
    ModelUnavailableError,
    ProposalNotFoundError,
    UnknownOperationError,
)
from lifedesk.memory.thread_store import (
    DEFAULT_THREAD_ID,
    ThreadStore,
)
from lifedesk.memory.turn_log import TurnLog

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Service wiring
# ---------------------------------------------------------------------------
@dataclass
class Services:
    """Everything a request handler needs; built once per process."""

    backend: ActionBackend
    store: ThreadStore
    executor: ActionExecutor
    agent: AgentLoop
    expense_agent: ExpenseAgent


_services: Optional[Services] = None


def build_services() -> Services:
    """Instantiate the backend, model client, store and agents from ``settings``."""
    backend = create_backend()
    store = ThreadStore()
    executor = ActionExecutor(backend)
    model = load_model_client()
    turn_log = TurnLog()
    turn_log.init()
    confirmer = approve_all if settings.AUTO_CONFIRM_ACTIONS else deny_all
    return Services(
        backend=backend,
        store=store,
        executor=executor,
        agent=AgentLoop(model, store, executor, backend, confirmer=confirmer, turn_log=turn_log),
        expense_agent=ExpenseAgent(model, executor, store, turn_log=turn_log),
    )


def get_services() -> Services:
    """FastAPI dependency returning the process-wide services."""
    global _services  # pylint: disable=global-statement
    if _services is None:
        _services = build_services()
        logger.info(
            "Services initialised (backend=%s, planner=%s)", settings.BACKEND, settings.PLANNER
        )
    return _services


@asynccontextmanager
async def lifespan(_: FastAPI) -> AsyncIterator[None]:
    yield
    if _services is not None and hasattr(_services.backend, "aclose"):
        await _services.backend.aclose()  # type: ignore[attr-defined]


app = FastAPI(
    title="lifedesk API",
    version="0.1.0",
    description="lifedesk agent orchestration API",
    lifespan=lifespan,
)

# Add CORS middleware to allow requests from the workspace frontend
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", f"http://localhost:{settings.API_PORT}"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ---------------------------------------------------------------------------
# Error handlers (chat-style bodies)
# ---------------------------------------------------------------------------
def _failure(status_code: int, message: str) -> JSONResponse:
    body = FailureResponse(error=message).model_dump()
    return JSONResponse(status_code=status_code, content=body)


@app.exception_handler(InputValidationError)
@app.exception_handler(UnknownOperationError)
async def _input_error(_: Request, exc: LifedeskError) -> JSONResponse:
    logger.info("Rejected request: %s", exc)
    return _failure(400, str(exc))


@app.exception_handler(ModelUnavailableError)
async def _model_unavailable(_: Request, exc: ModelUnavailableError) -> JSONResponse:
    logger.error("Model unavailable: %s", exc)
    return _failure(500, f"Model service unavailable: {exc}")


@app.exception_handler(LifedeskError)
async def _lifedesk_error(_: Request, exc: LifedeskError) -> JSONResponse:
    logger.error("Request failed: %s", exc)
    return _failure(500, str(exc))


@app.exception_handler(Exception)
async def _unexpected_error(_: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error: %s", exc)
    return _failure(500, "Internal server error")


def _bridge_error(status_code: int, error: str, details: Any = None) -> JSONResponse:
    body = ErrorResponse(error=error, details=details).model_dump()
    return JSONResponse(status_code=status_code, content=body)


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError, ValueError) as exc:
        raise InputValidationError(f"Request body is not valid JSON: {exc}") from exc
    if not isinstance(body, dict):
        raise InputValidationError("Request body must be a JSON object")
    return body


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------
@app.get("/health", summary="Health check")
async def health() -> dict[str, str]:
    """Return a simple liveness payload."""
    return {"status": "ok"}


@app.post("/agent/chat", response_model=ChatResponse, summary="Run the agent on a message")
async def agent_chat(request: Request, services: Services = Depends(get_services)) -> ChatResponse:
    """Plan, act, reflect and learn on one user message."""
    body = await _json_body(request)
    user_input = await normalize_json(body)
    thread_id = body.get("threadId") or DEFAULT_THREAD_ID
    if not isinstance(thread_id, str):
        raise InputValidationError("threadId must be a string")

    response = await services.agent.run(user_input, thread_id)
    return ChatResponse(**response.model_dump())


@app.post(
    "/expense-agent/chat",
    response_model=ExpenseChatResponse,
    summary="Extract and record expenses",
)
async def expense_chat(
    request: Request, services: Services = Depends(get_services)
) -> ExpenseChatResponse:
    """Accepts multipart form data (indexed or legacy image fields) or JSON."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith(("multipart/form-data", "application/x-www-form-urlencoded")):
        form = await request.form()
        user_input = await normalize_form(form)
    else:
        user_input = await normalize_json(await _json_body(request))

    response = await services.expense_agent.run(user_input)
    return ExpenseChatResponse(
        reply=response.reply,
        has_images=response.has_images,
        image_count=response.image_count,
    )


@app.post("/actions/execute", response_model=ExecuteResponse, summary="Execute an action")
async def execute_action(
    request: Request, services: Services = Depends(get_services)
) -> ExecuteResponse | JSONResponse:
    """Validate and run one action; the caller's request is the confirmation."""
    try:
        body = await _json_body(request)
        req = ExecuteRequest.model_validate(body)
    except InputValidationError as exc:
        return _bridge_error(400, "Invalid request", str(exc))
    except ValidationError as exc:
        return _bridge_error(400, "Invalid request", [e.model_dump() for e in field_errors(exc)])

    validation = validate(req.operation, req.params)
    if validation.unknown_operation:
        return _bridge_error(400, "Unknown operation", validation.error_message())
    if not validation.ok:
        details = [e.model_dump() for e in validation.errors]
        return _bridge_error(400, "Invalid parameters", details)

    action, params = validation.raise_for_errors()
    try:
        result = await services.executor.execute(action, params)
    except ActionExecutionError as exc:
        return _bridge_error(500, "Execution failed", str(exc))
    return _execute_response(result)


@app.post(
    "/actions/proposals/{proposal_id}/confirm",
    response_model=ExecuteResponse,
    summary="Confirm a proposed action",
)
async def confirm_proposal(
    proposal_id: str, services: Services = Depends(get_services)
) -> ExecuteResponse | JSONResponse:
    """Apply an action the agent proposed but did not execute."""
    try:
        result = await services.executor.confirm(proposal_id)
    except ProposalNotFoundError as exc:
        return _bridge_error(404, "Proposal not found", str(exc))
    except ActionExecutionError as exc:
        return _bridge_error(500, "Execution failed", str(exc))
    return _execute_response(result)


@app.delete(
    "/actions/proposals/{proposal_id}",
    response_model=ExecuteResponse,
    summary="Discard a proposed action",
)
async def discard_proposal(
    proposal_id: str, services: Services = Depends(get_services)
) -> ExecuteResponse | JSONResponse:
    """Drop an action the agent proposed; nothing is executed."""
    if not services.executor.discard(proposal_id):
        return _bridge_error(404, "Proposal not found", f"No pending proposal '{proposal_id}'.")
    return ExecuteResponse(message="Proposal discarded", data={"proposalId": proposal_id})


def _execute_response(result: ActionResult) -> ExecuteResponse:
    return ExecuteResponse(success=result.success, message=result.message, data=result.data)


@app.get("/workspace/context", response_model=ContextResponse, summary="Workspace snapshot")
async def workspace_context(services: Services = Depends(get_services)) -> ContextResponse:
    """Current tasks, schedule, quests and habits, structured and as markdown."""
    snapshot = await build_snapshot(services.backend)
    return ContextResponse(
        context=snapshot.model_dump(mode="json", by_alias=True),
        markdown=render_markdown(snapshot),
    )


@app.get("/threads/{thread_id}", response_model=ThreadResponse, summary="Thread history")
async def get_thread(thread_id: str, services: Services = Depends(get_services)) -> ThreadResponse:
    """Messages (text only) and learnings of a thread."""
    thread = services.store.get(thread_id)
    return ThreadResponse(
        thread_id=thread.id,
        messages=[
            ThreadMessage(
                role=m.role.value,
                text=m.text,
                timestamp=m.timestamp,
                attachment_count=len(m.attachments),
            )
            for m in thread.messages
        ],
        learnings=[learning.text for learning in thread.learnings],
    )


# ---------------------------------------------------------------------------
# Public helper to launch the API (imported by main.py)
# ---------------------------------------------------------------------------
def run_api(
    host: str = "0.0.0.0", port: int = 8000, reload: bool = False, log_level: str | None = None
) -> None:
    """Start a uvicorn server hosting *app*.

    Parameters
    ----------
    host, port:
        Bind address for the HTTP server.
    reload:
        If *True*, enable auto-reload (useful in development).
    log_level:
        Logging level to use (default from settings if not provided).
    """

    # Lazy import - keeps uvicorn an optional dependency at pkg-import time
    import uvicorn  # pylint: disable=import-outside-toplevel

    if log_level is None:  # Use the default from settings if not provided
        log_level = settings.LOG_LEVEL

    logger.info(
        "Starting lifedesk API at %s:%d (reload=%s, log_level=%s)", host, port, reload, log_level
    )
    secrets = {"OPENAI_API_KEY", "ANTHROPIC_API_KEY"}
    logger.debug("API settings: %s", settings.model_dump(exclude=secrets))

    colored_print(f"lifedesk API is running at http://localhost:{port}.", AnsiColors.GREEN)
    colored_print(f"Visit http://localhost:{port}/docs for API documentation.", AnsiColors.BLUE)
    uvicorn.run(
        "lifedesk.api.app:app",
        host=host,
        port=port,
        reload=reload,
        log_level=log_level,
    )


# ---------------------------------------------------------------------------
# `python -m lifedesk.api.app` helper
# ---------------------------------------------------------------------------
if __name__ == "__main__":
    run_api(reload=True)
