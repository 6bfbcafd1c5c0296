"""Rule evaluation module."""

from .evaluator import ConditionEvaluator
from .actions import ActionRegistry
from .color import ColorRuleEvaluator, match_color_rule
from .transitions import MoveContext
from .validation import ValidationDecision, ValidationEngine, ValidationResult

__all__ = [
    "ConditionEvaluator",
    "ActionRegistry",
    "ColorRuleEvaluator",
    "match_color_rule",
    "MoveContext",
    "ValidationDecision",
    "ValidationEngine",
    "ValidationResult",
]
