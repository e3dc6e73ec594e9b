"""
Pure parameter validation for registered actions.

:func:`validate` never raises: malformed input becomes a :class:`ValidationResult` carrying
field-level errors, and unknown operation names are reported with their own flag so callers can
tell them apart from bad parameters.
"""

from dataclasses import (
    dataclass,
    field,
)
from typing import (
    Any,
    List,
    Optional,
    Tuple,
)

from pydantic import ValidationError

from lifedesk.actions import (
    ActionName,
    get_action_spec,
)
from lifedesk.actions.params import ActionParams
from lifedesk.core.errors import (
    FieldError,
    InputValidationError,
    UnknownOperationError,
)


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of validating one operation request."""

    operation: str
    action: Optional[ActionName] = None
    params: Optional[ActionParams] = None
    errors: List[FieldError] = field(default_factory=list)
    unknown_operation: bool = False

    @property
    def ok(self) -> bool:
        """True when the request may be executed."""
        return self.params is not None and not self.errors

    def error_message(self) -> str:
        """Single-line description of what is wrong."""
        if self.unknown_operation:
            return f"Unknown operation '{self.operation}'."
        return "; ".join(f"{e.field}: {e.message}" for e in self.errors)

    def raise_for_errors(self) -> Tuple[ActionName, ActionParams]:
        """
        Return the resolved action and its typed params, or raise the matching error.

        Raises
        ------
        UnknownOperationError
            If the operation is not registered.
        InputValidationError
            If the params did not validate.
        """
        if self.unknown_operation or self.action is None:
            raise UnknownOperationError(self.operation)
        if self.params is None or self.errors:
            raise InputValidationError(
                f"Invalid parameters for '{self.operation}': {self.error_message()}", self.errors
            )
        return self.action, self.params


def resolve_action(operation: Any) -> Optional[ActionName]:
    """Map an operation name onto :class:`ActionName`, or ``None`` if it is not supported."""
    if isinstance(operation, ActionName):
        return operation
    if not isinstance(operation, str):
        return None
    try:
        return ActionName(operation.strip())
    except ValueError:
        return None


def validate(operation: Any, params: Any) -> ValidationResult:
    """
    Validate *params* for *operation*.

    Parameters
    ----------
    operation:
        Operation name as received from the planner or the HTTP bridge.
    params:
        Raw parameters; anything other than a mapping is reported as a field error.

    Returns
    -------
    ValidationResult
        ``ok`` with typed params, or the list of problems.
    """
    name = operation.value if isinstance(operation, ActionName) else str(operation)
    action = resolve_action(operation)
    if action is None:
        return ValidationResult(
            operation=name,
            errors=[FieldError(field="operation", message=f"unknown operation '{name}'")],
            unknown_operation=True,
        )

    if params is None:
        params = {}
    if not isinstance(params, dict):
        return ValidationResult(
            operation=name,
            action=action,
            errors=[FieldError(field="params", message="must be an object")],
        )

    spec = get_action_spec(action)
    try:
        typed = spec.params_model.model_validate(params)
    except ValidationError as exc:
        return ValidationResult(operation=name, action=action, errors=field_errors(exc))
    return ValidationResult(operation=name, action=action, params=typed)


def field_errors(exc: ValidationError) -> List[FieldError]:
    """Flatten a pydantic error into dotted-path :class:`FieldError` entries."""
    errors: List[FieldError] = []
    for err in exc.errors(include_url=False):
        loc = ".".join(str(part) for part in err.get("loc", ())) or "params"
        errors.append(FieldError(field=loc, message=err.get("msg", "invalid value")))
    return errors
