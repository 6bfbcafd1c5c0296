"""Column entry validation."""

from enum import Enum
from typing import Any, Callable, Optional
from dataclasses import dataclass, field

import structlog

from ..core.errors import RuleError
from ..core.models import CardSnapshot, ValidationBehavior, ValidationRule, ValidationType
from ..core.schemas import validation_config_error
from ..core.store import RuleStore
from .evaluator import ConditionEvaluator, EvaluationContext, is_empty
from .transitions import MoveContext, validation_applies


logger = structlog.get_logger()


class ValidationDecision(str, Enum):
    ALLOWED = "allowed"
    ALLOWED_INCOMPLETE = "allowed_incomplete"
    WARNED = "warned"
    BLOCKED = "blocked"


@dataclass
class ValidationFailure:
    """One rule the card did not satisfy."""
    rule_id: str
    rule_type: str
    behavior: ValidationBehavior
    message: str
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class ValidationResult:
    """Every problem found for one card entering one column."""
    column_id: str
    decision: ValidationDecision = ValidationDecision.ALLOWED
    failures: list[ValidationFailure] = field(default_factory=list)
    evaluated: list[ValidationRule] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def blocked(self) -> bool:
        return self.decision == ValidationDecision.BLOCKED

    @property
    def incomplete(self) -> bool:
        return any(f.behavior == ValidationBehavior.MARK_INCOMPLETE for f in self.failures)

    def messages(self, behavior: Optional[ValidationBehavior] = None) -> list[str]:
        """Failure messages in rule order, optionally for one behavior."""
        return [
            f.message for f in self.failures
            if behavior is None or f.behavior == behavior
        ]

    def decision_messages(self) -> list[str]:
        """Messages of the behavior that decided the move, e.g. only block messages when blocked."""
        behavior = DECISION_BEHAVIORS.get(self.decision)
        return self.messages(behavior) if behavior else []

    def failure_for(self, rule_id: str) -> Optional[ValidationFailure]:
        for failure in self.failures:
            if failure.rule_id == rule_id:
                return failure
        return None


def aggregate_decision(failures: list[ValidationFailure]) -> ValidationDecision:
    """Block beats warn beats mark_incomplete, regardless of rule order."""
    behaviors = {f.behavior for f in failures}
    if ValidationBehavior.BLOCK in behaviors:
        return ValidationDecision.BLOCKED
    if ValidationBehavior.WARN in behaviors:
        return ValidationDecision.WARNED
    if ValidationBehavior.MARK_INCOMPLETE in behaviors:
        return ValidationDecision.ALLOWED_INCOMPLETE
    return ValidationDecision.ALLOWED


DECISION_BEHAVIORS = {
    ValidationDecision.BLOCKED: ValidationBehavior.BLOCK,
    ValidationDecision.WARNED: ValidationBehavior.WARN,
    ValidationDecision.ALLOWED_INCOMPLETE: ValidationBehavior.MARK_INCOMPLETE,
}


# A checker returns None when the card passes, else details of what is missing
Checker = Callable[[dict[str, Any], CardSnapshot], Optional[dict[str, Any]]]


class ValidationEngine:
    """
    Evaluates a column's validation rules against a card.

    All applicable rules are checked so the caller can show every problem at
    once. A rule with an unknown type or a malformed config is logged and
    skipped; it never blocks the move.
    """

    def __init__(
        self,
        store: Optional[RuleStore] = None,
        evaluator: Optional[ConditionEvaluator] = None,
    ):
        self.store = store
        self.evaluator = evaluator or ConditionEvaluator()
        self._checkers: dict[str, Checker] = {
            ValidationType.REQUIRED_FIELD.value: self._check_required_field,
            ValidationType.REQUIRED_CHECKLIST.value: self._check_required_checklist,
            ValidationType.REQUIRED_DOCUMENT.value: self._check_required_document,
            ValidationType.REQUIRED_RELATIONSHIP.value: self._check_required_relationship,
            ValidationType.CUSTOM_CONDITION.value: self._check_custom_condition,
        }

    async def evaluate(
        self,
        column_id: str,
        card: CardSnapshot,
        move: Optional[MoveContext] = None,
    ) -> ValidationResult:
        """Fetch the column's active rules and evaluate them."""
        if self.store is None:
            raise RuntimeError("ValidationEngine has no rule store")
        rules = await self.store.list_validation_rules(column_id)
        return self.evaluate_rules(rules, card, move, column_id=column_id)

    def evaluate_rules(
        self,
        rules: list[ValidationRule],
        card: CardSnapshot,
        move: Optional[MoveContext] = None,
        column_id: Optional[str] = None,
    ) -> ValidationResult:
        """Evaluate a rule snapshot. Inactive and non-applicable rules are ignored."""
        if column_id is None:
            column_id = move.to_column_id if move else card.column_id
        result = ValidationResult(column_id=column_id)

        ordered = sorted(
            (r for r in rules if r.is_active and validation_applies(r, move)),
            key=lambda r: r.order,
        )
        for rule in ordered:
            try:
                details = self._check(rule, card)
            except RuleError as e:
                logger.warning(
                    "validation_rule_skipped",
                    rule_id=rule.id,
                    column_id=column_id,
                    reason=e.message,
                )
                result.skipped.append(rule.id)
                continue

            result.evaluated.append(rule)
            if details is not None:
                result.failures.append(ValidationFailure(
                    rule_id=rule.id,
                    rule_type=rule.type,
                    behavior=rule.behavior,
                    message=rule.message,
                    details=details,
                ))

        result.decision = aggregate_decision(result.failures)
        if result.failures:
            logger.debug(
                "validation_failed",
                card_id=card.card_id,
                column_id=column_id,
                decision=result.decision.value,
                failed=[f.rule_id for f in result.failures],
            )
        return result

    def _check(self, rule: ValidationRule, card: CardSnapshot) -> Optional[dict[str, Any]]:
        checker = self._checkers.get(rule.type)
        if checker is None:
            raise RuleError(f"Unknown validation type: {rule.type}", rule_id=rule.id)

        problem = validation_config_error(rule.type, rule.config)
        if problem:
            raise RuleError(f"Malformed config: {problem}", rule_id=rule.id)

        return checker(rule.config, card)

    # ==================== Checkers ====================

    def _check_required_field(self, config: dict[str, Any], card: CardSnapshot) -> Optional[dict[str, Any]]:
        if config.get("custom_field_id"):
            key = config["custom_field_id"]
            value = card.custom_fields.get(key)
            if is_empty(value):
                return {"custom_field_id": key}
            return None

        key = config["field_name"]
        if is_empty(card.fields.get(key)):
            return {"field_name": key}
        return None

    def _check_required_checklist(self, config: dict[str, Any], card: CardSnapshot) -> Optional[dict[str, Any]]:
        checklist_id = config["checklist_id"]
        checklist = card.checklists.get(checklist_id)
        if checklist is None:
            return {"checklist_id": checklist_id, "reason": "missing"}

        required_items = config.get("required_items") or []
        if required_items:
            pending = [i for i in required_items if i not in checklist.completed_item_ids]
            if pending:
                return {"checklist_id": checklist_id, "pending_items": pending}
            return None

        if config.get("all_items_required", True):
            if checklist.completed_items < checklist.total_items:
                return {
                    "checklist_id": checklist_id,
                    "completed": checklist.completed_items,
                    "total": checklist.total_items,
                }
            return None

        if checklist.completed_items == 0:
            return {"checklist_id": checklist_id, "completed": 0, "total": checklist.total_items}
        return None

    def _check_required_document(self, config: dict[str, Any], card: CardSnapshot) -> Optional[dict[str, Any]]:
        document_type = config.get("document_type")
        category = config.get("document_category")
        status = config.get("document_status", "any")
        minimum = config.get("min_documents", 1)

        matching = [
            d for d in card.documents
            if (not document_type or d.document_type == document_type)
            and (not category or d.category == category)
            and (status == "any" or (d.status or "").lower() == status)
        ]
        if len(matching) < minimum:
            return {
                "document_type": document_type,
                "document_status": status,
                "found": len(matching),
                "required": minimum,
            }
        return None

    def _check_required_relationship(self, config: dict[str, Any], card: CardSnapshot) -> Optional[dict[str, Any]]:
        if not config.get("required", True):
            return None
        relationship_type = config["relationship_type"]
        if not card.relationships.get(relationship_type):
            return {"relationship_type": relationship_type}
        return None

    def _check_custom_condition(self, config: dict[str, Any], card: CardSnapshot) -> Optional[dict[str, Any]]:
        condition = config["condition"]
        if self.evaluator.evaluate_one(condition, EvaluationContext(card=card)):
            return None
        return {"field": condition.get("field"), "operator": condition.get("operator")}
