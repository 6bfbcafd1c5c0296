"""Condition evaluation against card snapshots."""

import operator
from datetime import date, datetime, timezone
from typing import Any, Callable
from dataclasses import dataclass, field

from ..core.errors import RuleError
from ..core.models import CardSnapshot, ensure_utc


@dataclass
class EvaluationContext:
    """Context for condition evaluation."""
    card: CardSnapshot
    variables: dict[str, Any] = field(default_factory=dict)


def is_empty(value: Any) -> bool:
    """None, blank strings and empty collections count as empty."""
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, set, frozenset, dict)):
        return len(value) == 0
    return False


def _contains(container: Any, item: Any) -> bool:
    if container is None:
        return False
    if isinstance(container, str):
        return str(item) in container
    if hasattr(container, "__contains__"):
        return item in container
    return False


def _member(item: Any, collection: Any) -> bool:
    if isinstance(collection, (list, tuple, set, frozenset)):
        return item in collection
    return item == collection


def _ordered(func: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    # Missing values never satisfy an ordering comparison
    def compare(a: Any, b: Any) -> bool:
        if a is None or b is None:
            return False
        return func(a, b)
    return compare


class ConditionEvaluator:
    """
    Evaluates rule conditions against a card.

    A condition is ``{"field", "operator", "value", "value_type"}``. Supports:
    - Comparison (equals, not_equals, greater_than, less_than,
      greater_or_equal, less_or_equal)
    - Text and list membership (contains, not_contains, in, not_in)
    - Emptiness (empty, not_empty)
    - Logical nesting ({"and": [...]}, {"or": [...]}, {"not": {...}})

    A list of conditions folds left to right with each condition's
    ``logical_operator`` (AND unless it says OR).
    """

    OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
        "equals": operator.eq,
        "not_equals": operator.ne,
        "greater_than": _ordered(operator.gt),
        "less_than": _ordered(operator.lt),
        "greater_or_equal": _ordered(operator.ge),
        "less_or_equal": _ordered(operator.le),
        "contains": _contains,
        "not_contains": lambda a, b: not _contains(a, b),
        "in": _member,
        "not_in": lambda a, b: not _member(a, b),
    }

    UNARY_OPERATORS: dict[str, Callable[[Any], bool]] = {
        "empty": is_empty,
        "not_empty": lambda value: not is_empty(value),
    }

    # Card attributes addressable without a prefix
    CARD_ATTRIBUTES = (
        "card_id",
        "column_id",
        "last_updated_at",
        "team_id",
        "project_id",
        "checklists",
        "documents",
        "relationships",
    )

    def __init__(self):
        self._custom_operators: dict[str, Callable] = {}

    def register_operator(
        self,
        name: str,
        func: Callable[[Any, Any], bool],
    ) -> None:
        """Register a custom operator."""
        self._custom_operators[name] = func

    def evaluate(
        self,
        conditions: list[dict[str, Any]],
        context: EvaluationContext,
    ) -> bool:
        """
        Evaluate a list of conditions.

        Returns True for an empty list.
        """
        if not conditions:
            return True

        result = self._evaluate_condition(conditions[0], context)
        for condition in conditions[1:]:
            joiner = str(condition.get("logical_operator", "AND")).upper()
            if joiner == "OR":
                result = result or self._evaluate_condition(condition, context)
            elif joiner == "AND":
                result = result and self._evaluate_condition(condition, context)
            else:
                raise RuleError(f"Unknown logical operator: {joiner}")

        return result

    def evaluate_one(self, condition: dict[str, Any], context: EvaluationContext) -> bool:
        return self._evaluate_condition(condition, context)

    def _evaluate_condition(
        self,
        condition: dict[str, Any],
        context: EvaluationContext,
    ) -> bool:
        """Evaluate a single condition."""
        if not isinstance(condition, dict):
            raise RuleError(f"Condition must be a mapping: {condition!r}")

        # Logical operators
        if "and" in condition:
            return all(
                self._evaluate_condition(c, context)
                for c in condition["and"]
            )

        if "or" in condition:
            return any(
                self._evaluate_condition(c, context)
                for c in condition["or"]
            )

        if "not" in condition:
            return not self._evaluate_condition(condition["not"], context)

        # Field-based condition
        field_path = condition.get("field")
        if not field_path:
            raise RuleError(f"Condition missing 'field': {condition}")

        value = self._get_field_value(field_path, context)
        op = condition.get("operator", "equals")
        value_type = condition.get("value_type")

        unary = self.UNARY_OPERATORS.get(op)
        if unary is not None:
            return unary(value)

        expected = self._resolve_value(condition.get("value"), context)
        if value_type:
            value = self._coerce(value, value_type)
            if op in ("in", "not_in") and isinstance(expected, (list, tuple, set)):
                expected = [self._coerce(item, value_type) for item in expected]
            elif not (op in ("contains", "not_contains") and value_type == "array"):
                expected = self._coerce(expected, value_type)

        op_func = self.OPERATORS.get(op) or self._custom_operators.get(op)
        if not op_func:
            raise RuleError(f"Unknown operator: {op}")

        try:
            return bool(op_func(value, expected))
        except TypeError as e:
            raise RuleError(f"Cannot compare {field_path} with {expected!r}: {e}")

    def _get_field_value(
        self,
        field_path: str,
        context: EvaluationContext,
    ) -> Any:
        """
        Get field value from the card using dot notation.

        Supports:
        - fields.name, custom_fields.id
        - checklists.<id>.completed_items and other card attributes
        - variables.name
        - Bare names, looked up on the card, then fields, then custom_fields
        """
        parts = field_path.split(".")
        if parts[0] == "card" and len(parts) > 1:
            parts = parts[1:]

        card = context.card
        source = parts[0]

        if source == "variables":
            return self._navigate_path(context.variables, parts[1:])
        if source == "fields":
            return self._navigate_path(card.fields, parts[1:])
        if source == "custom_fields":
            return self._navigate_path(card.custom_fields, parts[1:])
        if source in self.CARD_ATTRIBUTES:
            return self._navigate_path(getattr(card, source), parts[1:])

        if source in card.fields:
            return self._navigate_path(card.fields, parts)
        return self._navigate_path(card.custom_fields, parts)

    def _navigate_path(self, data: Any, path: list[str]) -> Any:
        """Navigate a dot-separated path in data."""
        current = data
        for part in path:
            if current is None:
                return None

            if isinstance(current, dict):
                current = current.get(part)
            elif isinstance(current, (list, tuple)):
                try:
                    index = int(part)
                    current = current[index] if 0 <= index < len(current) else None
                except ValueError:
                    return None
            elif hasattr(current, part):
                current = getattr(current, part)
            else:
                return None

        return current

    def _resolve_value(self, value: Any, context: EvaluationContext) -> Any:
        """Resolve a value that might be a reference."""
        if isinstance(value, str) and value.startswith("$"):
            # Field reference
            return self._get_field_value(value[1:], context)
        return value

    def _coerce(self, value: Any, value_type: str) -> Any:
        """Convert a value to the declared type, keeping None as None."""
        if value is None:
            return None

        try:
            if value_type == "string":
                return str(value)
            if value_type == "number":
                if isinstance(value, bool):
                    return int(value)
                return float(value)
            if value_type == "boolean":
                return self._to_bool(value)
            if value_type == "date":
                return self._to_datetime(value)
            if value_type == "array":
                if isinstance(value, (list, tuple, set, frozenset)):
                    return list(value)
                if isinstance(value, str):
                    return [item.strip() for item in value.split(",") if item.strip()]
                return [value]
        except (TypeError, ValueError) as e:
            raise RuleError(f"Cannot convert {value!r} to {value_type}: {e}")

        raise RuleError(f"Unknown value type: {value_type}")

    @staticmethod
    def _to_bool(value: Any) -> bool:
        if isinstance(value, bool):
            return value
        if isinstance(value, (int, float)):
            return value != 0
        text = str(value).strip().lower()
        if text in ("true", "1", "yes", "y", "on"):
            return True
        if text in ("false", "0", "no", "n", "off", ""):
            return False
        raise ValueError(f"not a boolean: {value!r}")

    @staticmethod
    def _to_datetime(value: Any) -> datetime:
        if isinstance(value, datetime):
            return ensure_utc(value)
        if isinstance(value, date):
            return ensure_utc(datetime(value.year, value.month, value.day))
        if isinstance(value, (int, float)):
            return datetime.fromtimestamp(value, tz=timezone.utc)
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        return ensure_utc(datetime.fromisoformat(text))
