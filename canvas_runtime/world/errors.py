"""Error conventions for the canvas runtime.

Two layers:

1. Exceptions. Everything the runtime raises derives from CanvasError and
   carries a machine-readable ``code`` and ``category`` alongside the
   attributes needed to explain the failure (the attempted edge for an
   illegal transition, the offending version for an unknown log format).

2. Error payloads. When a failure is reported instead of raised (an agent
   script crashed, the runtime refused an operation) the payload attached to
   the ``error`` RuntimeEvent is built with the factory functions below, so
   observers can switch on ``code`` the same way everywhere.

Usage:
    from canvas_runtime.world.errors import IllegalTransitionError, execution_error

    raise IllegalTransitionError("tx-1", "DISPUTED", "SETTLED")

    payload = execution_error("Execution error: ZeroDivisionError: ...")
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorCategory(str, Enum):
    """Categories for error classification.

    - VALIDATION: Caller provided bad input or asked for an illegal edge
    - RESOURCE: Missing entity, full queue, limits exceeded
    - EXECUTION: Agent script failed or timed out
    - STATE: Operation not allowed in the current session mode
    - IMPORT: Corrupted or unsupported document
    """

    VALIDATION = "validation"
    RESOURCE = "resource"
    EXECUTION = "execution"
    STATE = "state"
    IMPORT = "import"


class ErrorCode(str, Enum):
    """Specific error codes for programmatic handling."""

    # Validation errors
    MISSING_ARGUMENT = "missing_argument"
    INVALID_ARGUMENT = "invalid_argument"
    INVALID_TYPE = "invalid_type"
    SELF_TRANSACTION = "self_transaction"
    ILLEGAL_TRANSITION = "illegal_transition"
    INSUFFICIENT_FUNDS = "insufficient_funds"

    # Resource errors
    NOT_FOUND = "not_found"
    ALREADY_EXISTS = "already_exists"
    QUOTA_EXCEEDED = "quota_exceeded"

    # Execution errors
    TIMEOUT = "timeout"
    RUNTIME_ERROR = "runtime_error"
    SYNTAX_ERROR = "syntax_error"
    FORBIDDEN_SYNTAX = "forbidden_syntax"
    OPERATION_REJECTED = "operation_rejected"

    # State errors
    SCHEDULER_ACTIVE = "scheduler_active"
    REPLAY_ACTIVE = "replay_active"
    NOT_RECORDING = "not_recording"

    # Import errors
    MALFORMED_DOCUMENT = "malformed_document"
    UNSUPPORTED_VERSION = "unsupported_version"


@dataclass
class ErrorResponse:
    """Standardized error payload.

    All error payloads include:
    - message: Human-readable message
    - code: Machine-readable error code
    - category: Error category
    - details: Optional additional context
    """

    message: str = ""
    code: str = ""
    category: str = ""
    details: dict[str, object] | None = None

    def to_dict(self) -> dict[str, object]:
        """Convert to dictionary for serialization."""
        result: dict[str, object] = {
            "message": self.message,
            "code": self.code,
            "category": self.category,
        }
        if self.details:
            result["details"] = self.details
        return result


# Factory functions for creating error payloads


def validation_error(
    message: str,
    code: ErrorCode = ErrorCode.INVALID_ARGUMENT,
    **details: object,
) -> dict[str, object]:
    """Create a validation error payload.

    Args:
        message: Human-readable error message
        code: Specific error code (default: INVALID_ARGUMENT)
        **details: Additional context (e.g., balance=..., required=...)
    """
    return ErrorResponse(
        message=message,
        code=code.value,
        category=ErrorCategory.VALIDATION.value,
        details=dict(details) if details else None,
    ).to_dict()


def not_found_error(
    message: str,
    code: ErrorCode = ErrorCode.NOT_FOUND,
    **details: object,
) -> dict[str, object]:
    """Create a not-found error payload."""
    return ErrorResponse(
        message=message,
        code=code.value,
        category=ErrorCategory.RESOURCE.value,
        details=dict(details) if details else None,
    ).to_dict()


def resource_error(
    message: str,
    code: ErrorCode = ErrorCode.QUOTA_EXCEEDED,
    **details: object,
) -> dict[str, object]:
    """Create a resource error payload (limits, full queues)."""
    return ErrorResponse(
        message=message,
        code=code.value,
        category=ErrorCategory.RESOURCE.value,
        details=dict(details) if details else None,
    ).to_dict()


def execution_error(
    message: str,
    code: ErrorCode = ErrorCode.RUNTIME_ERROR,
    **details: object,
) -> dict[str, object]:
    """Create an execution error payload.

    Use when an agent script raised, timed out, or produced unusable output.
    """
    return ErrorResponse(
        message=message,
        code=code.value,
        category=ErrorCategory.EXECUTION.value,
        details=dict(details) if details else None,
    ).to_dict()


# =============================================================================
# EXCEPTIONS
# =============================================================================


class CanvasError(Exception):
    """Base class for all runtime errors."""

    code: ErrorCode = ErrorCode.RUNTIME_ERROR
    category: ErrorCategory = ErrorCategory.EXECUTION

    def to_payload(self) -> dict[str, object]:
        return ErrorResponse(
            message=str(self),
            code=self.code.value,
            category=self.category.value,
        ).to_dict()


class CapabilityError(CanvasError, ValueError):
    """Raised inside an agent script when a ctx call is rejected.

    Scripts may catch it; uncaught, it fails the agent's run like any
    other exception. Subclasses name the specific reason.
    """

    code = ErrorCode.INVALID_ARGUMENT
    category = ErrorCategory.VALIDATION


class TransactionValidationError(CapabilityError):
    """Raised when transaction parameters violate a rule.

    ``rule`` names the violated rule (e.g. "source != target").
    """

    category = ErrorCategory.VALIDATION

    def __init__(
        self,
        message: str,
        rule: str,
        code: ErrorCode = ErrorCode.INVALID_ARGUMENT,
    ) -> None:
        self.rule = rule
        self.code = code
        super().__init__(message)


class IllegalTransitionError(TransactionValidationError):
    """Raised when a transition is not an edge of the state graph."""

    def __init__(
        self,
        transaction_id: str,
        from_state: str,
        to_state: str,
        detail: str = "",
    ) -> None:
        self.transaction_id = transaction_id
        self.from_state = from_state
        self.to_state = to_state
        message = f"Illegal transition {from_state} -> {to_state} for {transaction_id}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message, rule=f"{from_state} -> {to_state}", code=ErrorCode.ILLEGAL_TRANSITION)

    @property
    def edge(self) -> tuple[str, str]:
        return (self.from_state, self.to_state)


class InsufficientFundsError(CanvasError, ValueError):
    """Raised when a debit would make a balance negative."""

    code = ErrorCode.INSUFFICIENT_FUNDS
    category = ErrorCategory.VALIDATION

    def __init__(self, agent_id: str, balance: int, required: int) -> None:
        self.agent_id = agent_id
        self.balance = balance
        self.required = required
        super().__init__(
            f"Insufficient funds for {agent_id}: balance {balance}, required {required}"
        )


class EntityNotFoundError(CanvasError, KeyError):
    """Raised when an agent, transaction or job id is unknown."""

    code = ErrorCode.NOT_FOUND
    category = ErrorCategory.RESOURCE

    def __init__(self, kind: str, entity_id: str) -> None:
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} {entity_id} not found")

    def __str__(self) -> str:
        # KeyError would repr() the message
        return str(self.args[0])


class DuplicateIdError(CanvasError, ValueError):
    """Raised when an id is already in use."""

    code = ErrorCode.ALREADY_EXISTS
    category = ErrorCategory.RESOURCE

    def __init__(self, kind: str, entity_id: str) -> None:
        self.kind = kind
        self.entity_id = entity_id
        super().__init__(f"{kind} id collision: '{entity_id}' already exists")


class QueueFullError(CanvasError, RuntimeError):
    """Raised when the service job queue is at capacity."""

    code = ErrorCode.QUOTA_EXCEEDED
    category = ErrorCategory.RESOURCE

    def __init__(self, max_size: int) -> None:
        self.max_size = max_size
        super().__init__(f"Job queue full (max {max_size} jobs)")


class SchedulerActiveError(CanvasError, RuntimeError):
    """Raised when an operation requires the scheduler to be stopped."""

    code = ErrorCode.SCHEDULER_ACTIVE
    category = ErrorCategory.STATE


class ReplayActiveError(CanvasError, RuntimeError):
    """Raised when a live operation is attempted while replaying."""

    code = ErrorCode.REPLAY_ACTIVE
    category = ErrorCategory.STATE


class RecorderError(CanvasError, RuntimeError):
    """Raised when stopping a recorder that is not recording."""

    code = ErrorCode.NOT_RECORDING
    category = ErrorCategory.STATE


class LogImportError(CanvasError, ValueError):
    """Base class for event log import failures."""

    category = ErrorCategory.IMPORT


class MalformedLogError(LogImportError):
    """The document is not a well-formed, correctly ordered event log."""

    code = ErrorCode.MALFORMED_DOCUMENT

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Malformed event log: {reason}")


class UnsupportedLogVersionError(LogImportError):
    """The document is an event log of a version this runtime cannot read."""

    code = ErrorCode.UNSUPPORTED_VERSION

    def __init__(self, version: object, supported: tuple[int, ...]) -> None:
        self.version = version
        self.supported = supported
        super().__init__(
            f"Unrecognized event log version {version!r} (supported: {list(supported)})"
        )


class SnapshotImportError(CanvasError, ValueError):
    """Base class for session snapshot import failures."""

    category = ErrorCategory.IMPORT


class MalformedSnapshotError(SnapshotImportError):
    """The document is not a well-formed session snapshot."""

    code = ErrorCode.MALFORMED_DOCUMENT

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(f"Malformed session snapshot: {reason}")


class UnsupportedSnapshotVersionError(SnapshotImportError):
    """The snapshot declares a version this runtime cannot read."""

    code = ErrorCode.UNSUPPORTED_VERSION

    def __init__(self, version: object, supported: tuple[int, ...]) -> None:
        self.version = version
        self.supported = supported
        super().__init__(
            f"Unrecognized snapshot version {version!r} (supported: {list(supported)})"
        )
