"""Error taxonomy and user-facing classification for engine operations."""

from decimal import Decimal
from enum import Enum

from pydantic import BaseModel


class ErrorSeverity(Enum):
    """Severity levels for errors."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCode:
    """Error codes for specific error conditions."""

    # Validation errors
    ERR_INVALID_REQUEST = "ERR_INVALID_REQUEST"
    ERR_INVALID_DEADLINE = "ERR_INVALID_DEADLINE"
    ERR_INVALID_JUDGE = "ERR_INVALID_JUDGE"
    ERR_INSUFFICIENT_FUNDS = "ERR_INSUFFICIENT_FUNDS"

    # Lookup and permission errors
    ERR_NOT_FOUND = "ERR_NOT_FOUND"
    ERR_NOT_AUTHORIZED = "ERR_NOT_AUTHORIZED"

    # State-conflict errors
    ERR_WRONG_STATE = "ERR_WRONG_STATE"
    ERR_ALREADY_JUDGED = "ERR_ALREADY_JUDGED"
    ERR_TASK_EXPIRED = "ERR_TASK_EXPIRED"

    # Consistency and infrastructure errors
    ERR_LEDGER_INCONSISTENT = "ERR_LEDGER_INCONSISTENT"
    ERR_SERVICE_UNAVAILABLE = "ERR_SERVICE_UNAVAILABLE"

    # Generic errors
    ERR_UNKNOWN = "ERR_UNKNOWN"


class CommitbetError(Exception):
    """Base class for all engine errors."""

    code: str = ErrorCode.ERR_UNKNOWN


class InvalidRequestError(CommitbetError, ValueError):
    """Input failed validation; nothing was changed."""

    code = ErrorCode.ERR_INVALID_REQUEST


class InvalidDeadlineError(InvalidRequestError):
    """Deadline is missing or not in the future."""

    code = ErrorCode.ERR_INVALID_DEADLINE


class InvalidJudgeError(InvalidRequestError):
    """Judge is missing, unknown, the creator, or not a confirmed friend."""

    code = ErrorCode.ERR_INVALID_JUDGE


class InsufficientFundsError(InvalidRequestError):
    """Available balance does not cover the requested stake."""

    code = ErrorCode.ERR_INSUFFICIENT_FUNDS

    def __init__(self, *, available: Decimal, required: Decimal) -> None:
        self.available = available
        self.required = required
        super().__init__(f"Insufficient funds: available {available}, required {required}")


class NotFoundError(CommitbetError, KeyError):
    """Record does not exist or does not belong to the caller."""

    code = ErrorCode.ERR_NOT_FOUND

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class NotAuthorizedError(CommitbetError, PermissionError):
    """Caller is not allowed to perform the action on this record."""

    code = ErrorCode.ERR_NOT_AUTHORIZED


class StateConflictError(CommitbetError, ValueError):
    """Requested transition does not match the task's current state."""

    code = ErrorCode.ERR_WRONG_STATE

    def __init__(self, message: str, *, current_state: str | None = None) -> None:
        self.current_state = current_state
        super().__init__(message)


class AlreadyJudgedError(StateConflictError):
    """Task verdict has already been recorded."""

    code = ErrorCode.ERR_ALREADY_JUDGED


class TaskExpiredError(StateConflictError):
    """Deadline passed before the action; the task has been failed."""

    code = ErrorCode.ERR_TASK_EXPIRED


class LedgerInconsistencyError(CommitbetError, RuntimeError):
    """Ledger would leave its invariants; requires reconciliation."""

    code = ErrorCode.ERR_LEDGER_INCONSISTENT


class ServiceUnavailableError(CommitbetError, ConnectionError):
    """An external collaborator (store, identity, evidence) could not be reached."""

    code = ErrorCode.ERR_SERVICE_UNAVAILABLE


class ErrorResponse(BaseModel):
    """Structured error response with user-friendly messaging."""

    code: str
    message: str
    suggestion: str
    severity: ErrorSeverity


def classify_error_with_response(exception: Exception) -> ErrorResponse:  # noqa: PLR0911
    """Classify an error and return a structured response with recovery suggestions.

    Args:
        exception: The exception raised by an engine operation

    Returns:
        ErrorResponse with code, message, suggestion, and severity
    """
    if isinstance(exception, InsufficientFundsError):
        return ErrorResponse(
            code=exception.code,
            message=f"Not enough funds: {exception.available} available, {exception.required} required.",
            suggestion="Deposit more funds or lower the stake.",
            severity=ErrorSeverity.LOW,
        )

    if isinstance(exception, InvalidRequestError):
        return ErrorResponse(
            code=exception.code,
            message=str(exception),
            suggestion="Correct the highlighted field and try again.",
            severity=ErrorSeverity.LOW,
        )

    if isinstance(exception, TaskExpiredError):
        return ErrorResponse(
            code=exception.code,
            message="The deadline has passed; the task was marked as failed.",
            suggestion="Refresh your task list to see the settled task.",
            severity=ErrorSeverity.LOW,
        )

    if isinstance(exception, AlreadyJudgedError):
        return ErrorResponse(
            code=exception.code,
            message="This task has already been judged.",
            suggestion="Refresh to see the recorded verdict.",
            severity=ErrorSeverity.LOW,
        )

    if isinstance(exception, StateConflictError):
        state = exception.current_state or "unknown"
        return ErrorResponse(
            code=exception.code,
            message=f"This action is not allowed while the task is {state}.",
            suggestion="Refresh the task and retry with its current state.",
            severity=ErrorSeverity.LOW,
        )

    if isinstance(exception, NotFoundError):
        return ErrorResponse(
            code=exception.code,
            message=str(exception) or "Record not found.",
            suggestion="Check the identifier and try again.",
            severity=ErrorSeverity.LOW,
        )

    if isinstance(exception, NotAuthorizedError | PermissionError):
        return ErrorResponse(
            code=ErrorCode.ERR_NOT_AUTHORIZED,
            message="You don't have permission for this action.",
            suggestion="Only the assigned judge can rule on a task.",
            severity=ErrorSeverity.MEDIUM,
        )

    if isinstance(exception, LedgerInconsistencyError):
        return ErrorResponse(
            code=exception.code,
            message="Your account needs to be reconciled before this can proceed.",
            suggestion="Run ledger reconciliation, then retry.",
            severity=ErrorSeverity.HIGH,
        )

    if isinstance(exception, ServiceUnavailableError | ConnectionError | TimeoutError):
        return ErrorResponse(
            code=ErrorCode.ERR_SERVICE_UNAVAILABLE,
            message="A required service is temporarily unavailable.",
            suggestion="Nothing was changed. Please try again shortly.",
            severity=ErrorSeverity.MEDIUM,
        )

    return ErrorResponse(
        code=ErrorCode.ERR_UNKNOWN,
        message="An unexpected error occurred.",
        suggestion="Please try again later. If the problem persists, contact support.",
        severity=ErrorSeverity.MEDIUM,
    )
