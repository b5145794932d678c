"""Engine error definitions."""

from typing import Optional, Any
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for classification."""
    LOW = "low"           # Routine, nothing to do
    MEDIUM = "medium"     # Retry on a later sweep
    HIGH = "high"         # Operator should look
    CRITICAL = "critical" # Stop automatic execution


class ErrorCategory(Enum):
    """Error categories, surfaced to callers as ``error_type``."""
    NOT_FOUND = "not_found"           # Action/opportunity/log/collection missing
    INVALID_STATE = "invalid_state"   # Wrong status for the requested transition
    VALIDATION = "validation"         # Handler precondition not met
    EXECUTION = "execution"           # Handler threw or returned failure
    ROLLBACK = "rollback"             # Rollback refused or failed
    CONFIG = "config"                 # Configuration loading/validation
    DELIVERY = "delivery"             # Notifier could not deliver


class EngineError(Exception):
    """Base exception for all engine errors."""

    def __init__(
        self,
        message: str,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        context: Optional[dict[str, Any]] = None,
        retryable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.severity = severity
        self.category = category
        self.context = context or {}
        self.retryable = retryable

    @property
    def error_type(self) -> str:
        return self.category.value

    def to_dict(self) -> dict[str, Any]:
        """Serialize error for logging/storage."""
        return {
            "type": self.__class__.__name__,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "context": self.context,
            "retryable": self.retryable,
        }


class ConfigError(EngineError):
    """Configuration loading or validation error."""

    def __init__(self, message: str, config_path: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.CONFIG)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["config_path"] = config_path


class NotFoundError(EngineError):
    """A referenced record does not exist."""

    def __init__(self, message: str, entity: Optional[str] = None, entity_id: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.MEDIUM)
        kwargs.setdefault("category", ErrorCategory.NOT_FOUND)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["entity"] = entity
        self.context["entity_id"] = entity_id


class InvalidStateError(EngineError):
    """Record is in the wrong state for the requested transition."""

    def __init__(self, message: str, current_status: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        kwargs.setdefault("category", ErrorCategory.INVALID_STATE)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["current_status"] = current_status


class HandlerValidationError(EngineError):
    """Handler-specific precondition not met."""

    def __init__(self, message: str, action_id: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        kwargs.setdefault("category", ErrorCategory.VALIDATION)
        super().__init__(message, **kwargs)
        self.context["action_id"] = action_id


class RollbackError(EngineError):
    """Rollback refused or failed."""

    def __init__(self, message: str, execution_log_id: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.ROLLBACK)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["execution_log_id"] = execution_log_id


class DeliveryError(EngineError):
    """Notification delivery failure."""

    def __init__(self, message: str, channel: Optional[str] = None, status_code: Optional[int] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.LOW)
        kwargs.setdefault("category", ErrorCategory.DELIVERY)
        super().__init__(message, **kwargs)
        self.channel = channel
        self.status_code = status_code
        self.context["channel"] = channel
        self.context["status_code"] = status_code
