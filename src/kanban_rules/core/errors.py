"""Engine error definitions."""

from typing import Optional, Any
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for classification."""
    LOW = "low"           # Transient, the next run may succeed
    MEDIUM = "medium"     # Logged, surfaced in outcomes
    HIGH = "high"         # Operator attention needed
    CRITICAL = "critical" # Engine cannot proceed


class ErrorCategory(Enum):
    """Error categories for routing and handling."""
    TRANSIENT = "transient"       # Timeout, flaky executor - next interval may succeed
    PERMANENT = "permanent"       # Unknown action type, bad config - won't resolve
    CONFIGURATION = "configuration"
    EXTERNAL = "external"         # Host executor or board failure
    STORAGE = "storage"


class EngineError(Exception):
    """Base exception for all engine errors."""

    def __init__(
        self,
        message: str,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        context: Optional[dict[str, Any]] = None,
        retryable: bool = True,
    ):
        super().__init__(message)
        self.message = message
        self.severity = severity
        self.category = category
        self.context = context or {}
        self.retryable = retryable

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
    """Rule or engine configuration rejected."""

    def __init__(self, message: str, config_path: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.CONFIGURATION)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        if config_path is not None:
            self.context["config_path"] = config_path


class RuleError(EngineError):
    """A stored rule is malformed at evaluation time."""

    def __init__(self, message: str, rule_id: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.MEDIUM)
        kwargs.setdefault("category", ErrorCategory.CONFIGURATION)
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)
        self.context["rule_id"] = rule_id


class ActionError(EngineError):
    """Host action executor failed or timed out."""

    def __init__(
        self,
        message: str,
        action_id: Optional[str] = None,
        action_type: Optional[str] = None,
        card_id: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("category", ErrorCategory.EXTERNAL)
        super().__init__(message, **kwargs)
        self.context["action_id"] = action_id
        self.context["action_type"] = action_type
        self.context["card_id"] = card_id


class StoreError(EngineError):
    """Rule or state storage is unavailable."""

    def __init__(self, message: str, operation: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.CRITICAL)
        kwargs.setdefault("category", ErrorCategory.STORAGE)
        super().__init__(message, **kwargs)
        self.context["operation"] = operation
