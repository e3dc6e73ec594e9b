"""
Dispatches validated actions to the action backend and wraps errors.

Execution is two-phase.  :meth:`ActionExecutor.propose` records what would happen without touching
the backend; only :meth:`ActionExecutor.confirm` (or a direct :meth:`ActionExecutor.execute` by a
caller that already holds the user's confirmation) performs the mutation.  Backend failures are
never retried here; they surface as :class:`ActionExecutionError` naming the operation.
"""

import logging
import uuid
from dataclasses import (
    dataclass,
    field,
)
from datetime import (
    datetime,
    timedelta,
)
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
)

from lifedesk.actions import (
    ActionName,
    get_action_spec,
)
from lifedesk.actions.backend import ActionBackend
from lifedesk.actions.params import (
    ActionParams,
    CompleteTaskParams,
    CreateExpenseParams,
    CreateScheduleBlockParams,
    CreateTaskParams,
    UpdateTaskParams,
)
from lifedesk.actions.validator import ValidationResult
from lifedesk.common import utcnow
from lifedesk.config import settings
from lifedesk.core.errors import (
    ActionExecutionError,
    BackendError,
    ProposalNotFoundError,
)
from lifedesk.core.schema import CamelModel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PendingAction:
    """A validated operation waiting for the user's confirmation."""

    id: str
    action: ActionName
    params: ActionParams
    description: str = ""
    created_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        """JSON-friendly view used in API responses."""
        return {
            "proposalId": self.id,
            "operation": self.action.value,
            "params": self.params.model_dump(mode="json", by_alias=True, exclude_none=True),
            "description": self.description,
        }


class ActionResult(CamelModel):
    """What the backend reported for one executed action."""

    operation: str
    success: bool = True
    message: str = ""
    data: Dict[str, Any] = {}


Confirmer = Callable[[PendingAction], Awaitable[bool]]
"""Decides whether a proposed action may be applied now."""


async def approve_all(_: PendingAction) -> bool:
    """Confirm every proposal (tests, trusted automation)."""
    return True


async def deny_all(_: PendingAction) -> bool:
    """Confirm nothing; proposals stay pending for an explicit confirmation."""
    return False


Handler = Callable[[Any], Awaitable[ActionResult]]


class ActionExecutor:
    """
    Apply validated actions against an :class:`ActionBackend`.

    Pending proposals are bounded: past ``max_pending`` the oldest is dropped, and proposals older
    than ``proposal_ttl`` seconds expire.  A dropped proposal can no longer be confirmed.
    """

    def __init__(
        self,
        backend: ActionBackend,
        max_pending: int | None = None,
        proposal_ttl: float | None = None,
    ):
        self._backend = backend
        self._handlers: Dict[ActionName, Handler] = {
            ActionName.CREATE_TASK: self._create_task,
            ActionName.UPDATE_TASK: self._update_task,
            ActionName.COMPLETE_TASK: self._complete_task,
            ActionName.CREATE_EXPENSE: self._create_expense,
            ActionName.CREATE_SCHEDULE_BLOCK: self._create_schedule_block,
        }
        missing = set(ActionName) - set(self._handlers)
        if missing:
            raise RuntimeError(f"No handler for actions: {sorted(m.value for m in missing)}")
        self.max_pending = settings.MAX_PENDING_PROPOSALS if max_pending is None else max_pending
        if self.max_pending < 1:
            raise ValueError("max_pending must be at least 1")
        ttl = settings.PROPOSAL_TTL_SECONDS if proposal_ttl is None else proposal_ttl
        self.proposal_ttl = timedelta(seconds=ttl)
        self._pending: Dict[str, PendingAction] = {}

    # ------------------------------------------------------------------ #
    # Two-phase protocol
    # ------------------------------------------------------------------ #
    def propose(self, validation: ValidationResult, description: str = "") -> PendingAction:
        """
        Register a validated request as a pending proposal.

        Raises
        ------
        UnknownOperationError, InputValidationError
            If *validation* did not succeed.
        """
        action, params = validation.raise_for_errors()
        self._expire()
        while len(self._pending) >= self.max_pending:
            oldest = next(iter(self._pending))
            del self._pending[oldest]
            logger.info("Dropped proposal %s: too many pending", oldest)

        pending = PendingAction(
            id=uuid.uuid4().hex,
            action=action,
            params=params,
            description=description or action.value,
        )
        self._pending[pending.id] = pending
        logger.info("Proposed %s as %s", pending.action.value, pending.id)
        return pending

    async def confirm(self, proposal_id: str) -> ActionResult:
        """
        Execute a pending proposal.  A proposal runs at most once.

        Raises
        ------
        ProposalNotFoundError
            If there is no pending proposal under *proposal_id*.
        ActionExecutionError
            If the backend rejects the operation.
        """
        self._expire()
        pending = self._pending.pop(proposal_id, None)
        if pending is None:
            raise ProposalNotFoundError(f"No pending proposal '{proposal_id}'.")
        return await self.execute(pending.action, pending.params)

    def discard(self, proposal_id: str) -> bool:
        """Drop a pending proposal; returns False if it did not exist."""
        self._expire()
        return self._pending.pop(proposal_id, None) is not None

    def pending(self) -> List[PendingAction]:
        """Proposals still waiting for confirmation."""
        self._expire()
        return list(self._pending.values())

    def _expire(self) -> None:
        cutoff = utcnow() - self.proposal_ttl
        expired = [pid for pid, p in self._pending.items() if p.created_at < cutoff]
        for pid in expired:
            del self._pending[pid]
        if expired:
            logger.info("Expired %d pending proposal(s)", len(expired))

    # ------------------------------------------------------------------ #
    # Execution
    # ------------------------------------------------------------------ #
    async def execute(self, action: ActionName, params: ActionParams) -> ActionResult:
        """
        Perform *action* with already-validated *params*.

        Parameters
        ----------
        action:
            The operation to run.
        params:
            Instance of the operation's parameter model.

        Returns
        -------
        ActionResult
            Message and data reported by the backend.

        Raises
        ------
        ActionExecutionError
            If the backend call fails.  Nothing is retried.
        """
        spec = get_action_spec(action)
        if not isinstance(params, spec.params_model):
            raise TypeError(
                f"{action.value} expects {spec.params_model.__name__}, got {type(params).__name__}"
            )

        handler = self._handlers[action]
        try:
            logger.debug("Executing action '%s' with params=%s", action.value, params)
            result = await handler(params)
        except BackendError as exc:
            logger.warning("Action '%s' rejected by backend: %s", action.value, exc)
            raise ActionExecutionError(action.value, str(exc)) from exc
        except Exception as exc:  # noqa: BLE001
            logger.exception("Unhandled error in action '%s'", action.value)
            raise ActionExecutionError(action.value, str(exc)) from exc

        logger.info("Action '%s' succeeded: %s", action.value, result.message)
        return result

    async def _create_task(self, params: CreateTaskParams) -> ActionResult:
        data = await self._backend.create_task(params.to_backend())
        return ActionResult(
            operation=ActionName.CREATE_TASK.value,
            message=f"Task created: {params.title}",
            data=data,
        )

    async def _update_task(self, params: UpdateTaskParams) -> ActionResult:
        data = await self._backend.update_task(params.id, params.changes())
        if data.get("success") is False:
            raise BackendError(str(data.get("error") or "update was not applied"))
        return ActionResult(
            operation=ActionName.UPDATE_TASK.value,
            message=f"Task updated (ID: {params.id})",
            data={"id": params.id, **data},
        )

    async def _complete_task(self, params: CompleteTaskParams) -> ActionResult:
        data = await self._backend.complete_task(params.id)
        return ActionResult(
            operation=ActionName.COMPLETE_TASK.value,
            message=f"Task {params.id} marked as completed",
            data={"id": params.id, **data},
        )

    async def _create_expense(self, params: CreateExpenseParams) -> ActionResult:
        data = await self._backend.create_expense(params.to_backend())
        return ActionResult(
            operation=ActionName.CREATE_EXPENSE.value,
            message=f"Expense recorded: {params.amount:g} {params.currency} ({params.category})",
            data=data,
        )

    async def _create_schedule_block(self, params: CreateScheduleBlockParams) -> ActionResult:
        data = await self._backend.create_schedule_block(params.to_backend())
        title = data.get("title") or params.title or f"task {params.task_id}"
        span = f"{params.date.isoformat()} {params.start_time}-{params.resolved_end_time()}"
        return ActionResult(
            operation=ActionName.CREATE_SCHEDULE_BLOCK.value,
            message=f"Schedule block created: {title} ({span})",
            data=data,
        )
