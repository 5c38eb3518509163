"""Error Hierarchy: typed exceptions for every rule engine failure mode.

Invariants:
    - Every error has a stable machine-readable kind (ErrorKind) and a technical message
    - Optional structured context travels in ErrorContext, never in the message
    - EnhancedRuleError keeps the original kind intact while adding user-facing data
    - No internal details leaked in user_message

Design Decisions:
    - Single hierarchy with RuleEngineError base: callers can catch one type
    - ErrorContext as dataclass: rich observability without coupling to logging
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any
from datetime import datetime, timezone


class ErrorKind(str, Enum):
    """Fixed error taxonomy. Values are stable codes."""
    RULE_NOT_FOUND = "RULE_NOT_FOUND"
    DUPLICATE_NAME = "DUPLICATE_NAME"
    INVALID_TYPE = "INVALID_TYPE"
    TYPE_MISMATCH = "TYPE_MISMATCH"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    STORAGE_ERROR = "STORAGE_ERROR"
    DATA_INTEGRITY_ERROR = "DATA_INTEGRITY_ERROR"
    TEMPORARY_ID_CONFLICT = "TEMPORARY_ID_CONFLICT"
    RULE_STATE_INCONSISTENT = "RULE_STATE_INCONSISTENT"
    OPERATION_TIMEOUT = "OPERATION_TIMEOUT"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    NETWORK_ERROR = "NETWORK_ERROR"


class ErrorSeverity(str, Enum):
    """Severity attached to enhanced errors and classifications."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class ErrorContext:
    """Rich context for error observability and recovery."""
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    rule_id: str | None = None
    task_id: str | None = None
    rule_name: str | None = None
    operation: str | None = None
    debug_info: dict[str, Any] | None = None


class RuleEngineError(Exception):
    """Base exception for all rule engine errors."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        context: ErrorContext | None = None,
    ):
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.context = context or ErrorContext()
        self.recovery = None  # set by RecoveryCoordinator when recovery was attempted

    @property
    def code(self) -> str:
        return self.kind.value

    def to_dict(self) -> dict:
        """Convert to a JSON-friendly envelope."""
        return {
            "error": {
                "kind": self.kind.value,
                "message": self.message,
                "timestamp": self.context.timestamp.isoformat(),
                "context": {
                    "rule_id": self.context.rule_id,
                    "task_id": self.context.task_id,
                    "rule_name": self.context.rule_name,
                    "operation": self.context.operation,
                },
            }
        }


# ─── Caller Errors (returned immediately, never retried) ─────────

class RuleNotFoundError(RuleEngineError):
    """Rule id does not resolve to a stored (active) rule."""
    def __init__(self, rule_id: str, message: str | None = None, context: ErrorContext | None = None):
        ctx = context or ErrorContext()
        ctx.rule_id = ctx.rule_id or rule_id
        super().__init__(
            message or f"Rule id {rule_id} not found", ErrorKind.RULE_NOT_FOUND, ctx,
        )
        self.rule_id = rule_id


class DuplicateNameError(RuleEngineError):
    """Another active rule in the same scope pool already has this name."""
    def __init__(
        self, name: str, scope_label: str, existing_rules: list | None = None,
        context: ErrorContext | None = None,
    ):
        ctx = context or ErrorContext()
        ctx.rule_name = ctx.rule_name or name
        super().__init__(
            f'Rule name "{name}" already exists in {scope_label}',
            ErrorKind.DUPLICATE_NAME, ctx,
        )
        self.name = name
        self.existing_rules = existing_rules or []


class InvalidTypeError(RuleEngineError):
    """Rule type is not a RuleType member."""
    def __init__(self, value: object, context: ErrorContext | None = None):
        super().__init__(f"Invalid rule type: {value!r}", ErrorKind.INVALID_TYPE, context)
        self.value = value


class TypeMismatchError(RuleEngineError):
    """Rule type cannot justify the requested action."""
    def __init__(self, rule_id: str, rule_type: str, action: str, context: ErrorContext | None = None):
        ctx = context or ErrorContext()
        ctx.rule_id = ctx.rule_id or rule_id
        super().__init__(
            f"Rule id {rule_id} of type {rule_type} cannot be used for {action}",
            ErrorKind.TYPE_MISMATCH, ctx,
        )
        self.rule_type = rule_type
        self.action = action


class RuleValidationError(RuleEngineError):
    """Rule input failed field validation."""
    def __init__(self, message: str, field: str, context: ErrorContext | None = None):
        super().__init__(message, ErrorKind.VALIDATION_ERROR, context)
        self.field = field


# ─── Infrastructure / Consistency Errors (offered to recovery) ───

class StorageError(RuleEngineError):
    """Persistence backend operation failed."""
    def __init__(self, message: str, operation: str, context: ErrorContext | None = None):
        ctx = context or ErrorContext()
        ctx.operation = ctx.operation or operation
        super().__init__(f"Storage {operation} failed: {message}", ErrorKind.STORAGE_ERROR, ctx)
        self.operation = operation


class DataIntegrityError(RuleEngineError):
    """Stored data violates a structural invariant."""
    def __init__(self, message: str, context: ErrorContext | None = None):
        super().__init__(message, ErrorKind.DATA_INTEGRITY_ERROR, context)


class TemporaryIdConflictError(RuleEngineError):
    """A temporary id collided with tracked state or reached the store."""
    def __init__(self, temporary_id: str, context: ErrorContext | None = None):
        ctx = context or ErrorContext()
        ctx.rule_id = ctx.rule_id or temporary_id
        super().__init__(
            f"Temporary id {temporary_id} conflicts with existing state",
            ErrorKind.TEMPORARY_ID_CONFLICT, ctx,
        )


class RuleStateInconsistentError(RuleEngineError):
    """Transient bookkeeping disagrees with itself or with the store."""
    def __init__(self, message: str, context: ErrorContext | None = None):
        super().__init__(message, ErrorKind.RULE_STATE_INCONSISTENT, context)


class OperationTimeoutError(RuleEngineError):
    """Awaited operation did not finish within its deadline."""
    def __init__(self, operation: str, timeout_seconds: float, context: ErrorContext | None = None):
        ctx = context or ErrorContext()
        ctx.operation = ctx.operation or operation
        super().__init__(
            f"{operation} timed out after {timeout_seconds}s",
            ErrorKind.OPERATION_TIMEOUT, ctx,
        )


class ConcurrentModificationError(RuleEngineError):
    """Another writer changed a collection since it was read."""
    def __init__(self, message: str, context: ErrorContext | None = None):
        super().__init__(message, ErrorKind.CONCURRENT_MODIFICATION, context)


class NetworkError(RuleEngineError):
    """Remote collaborator (e.g. sync transport) failed."""
    def __init__(self, message: str, context: ErrorContext | None = None):
        super().__init__(message, ErrorKind.NETWORK_ERROR, context)


# ─── Enhanced Variant ────────────────────────────────────────────

class EnhancedRuleError(RuleEngineError):
    """RuleEngineError plus severity, user-facing message and suggested actions."""

    def __init__(
        self,
        message: str,
        kind: ErrorKind,
        severity: ErrorSeverity,
        user_message: str,
        recovery_actions: list[str] | None = None,
        recoverable: bool = True,
        context: ErrorContext | None = None,
    ):
        super().__init__(message, kind, context)
        self.severity = severity
        self.user_message = user_message
        self.recovery_actions = recovery_actions or []
        self.recoverable = recoverable

    def to_dict(self) -> dict:
        envelope = super().to_dict()
        envelope["error"].update({
            "severity": self.severity.value,
            "user_message": self.user_message,
            "recovery_actions": list(self.recovery_actions),
            "recoverable": self.recoverable,
        })
        return envelope
