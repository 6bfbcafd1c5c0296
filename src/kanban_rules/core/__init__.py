"""Core engine components."""

from .config import ConfigLoader, EngineConfig
from .state import ExecutionStateStore
from .store import RuleStore
from .models import (
    ActionExecutionState,
    ActionRule,
    ActionTrigger,
    CardSnapshot,
    ColorRule,
    RuleSet,
    ValidationBehavior,
    ValidationRule,
)
from .errors import (
    EngineError,
    ConfigError,
    RuleError,
    ActionError,
    StoreError,
)

__all__ = [
    "ConfigLoader",
    "EngineConfig",
    "ExecutionStateStore",
    "RuleStore",
    "ActionExecutionState",
    "ActionRule",
    "ActionTrigger",
    "CardSnapshot",
    "ColorRule",
    "RuleSet",
    "ValidationBehavior",
    "ValidationRule",
    "EngineError",
    "ConfigError",
    "RuleError",
    "ActionError",
    "StoreError",
]
