"""
Error taxonomy shared by the agent, the action layer and the API.

Only :class:`ModelUnavailableError` and backend failures are meant to reach the transport boundary
as failures; everything else is converted into a degraded reply or a per-call record.
"""

from typing import (
    List,
    Sequence,
)

from pydantic import BaseModel


class FieldError(BaseModel):
    """A single field-level validation problem."""

    field: str
    message: str


class LifedeskError(RuntimeError):
    """Base class for all errors raised by lifedesk."""


class InputValidationError(LifedeskError):
    """Malformed user input (HTTP 400, never retried)."""

    def __init__(self, message: str, errors: Sequence[FieldError] | None = None):
        super().__init__(message)
        self.errors: List[FieldError] = list(errors or [])


class UnknownOperationError(LifedeskError):
    """The requested operation name is not a registered action."""

    def __init__(self, operation: str):
        super().__init__(f"Unknown operation '{operation}'.")
        self.operation = operation


class BackendError(LifedeskError):
    """Raised by an action backend when a query or mutation fails."""


class ActionExecutionError(LifedeskError):
    """A validated action could not be applied by the backend."""

    def __init__(self, operation: str, detail: str):
        super().__init__(f"{operation} failed: {detail}")
        self.operation = operation
        self.detail = detail


class ProposalNotFoundError(LifedeskError):
    """No pending proposal exists under the given id."""


class ModelUnavailableError(LifedeskError):
    """The model-inference service cannot be reached at all (fatal)."""


class ModelCallError(LifedeskError):
    """A model call timed out or was rejected; the caller degrades."""


class ModelFormatError(LifedeskError):
    """The model answered, but not in the expected structure."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw
