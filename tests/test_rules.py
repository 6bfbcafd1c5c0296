"""Tests for condition evaluation, move applicability and the action registry."""

from datetime import datetime, timezone

import pytest

from kanban_rules.core.errors import ActionError, ErrorCategory, RuleError
from kanban_rules.core.models import ActionRule, ChecklistState, ValidationRule
from kanban_rules.rules.actions import ActionRegistry
from kanban_rules.rules.evaluator import ConditionEvaluator, EvaluationContext
from kanban_rules.rules.transitions import MoveContext, action_applies, validation_applies

from conftest import make_card


class TestConditionEvaluator:
    """Test condition evaluation against cards."""

    @pytest.fixture
    def evaluator(self):
        return ConditionEvaluator()

    @pytest.fixture
    def context(self):
        card = make_card(
            project_id="p1",
            fields={"title": "Lease for Rua A", "amount": 1500, "tags": ["vip", "rent"], "notes": ""},
            custom_fields={"cf-score": "42", "signed_on": "2024-02-10T12:00:00Z", "urgent": "yes"},
            checklists={"docs": ChecklistState(total_items=3, completed_item_ids={"id", "proof"})},
        )
        return EvaluationContext(card=card, variables={"threshold": 1000})

    def test_equality_operators(self, evaluator, context):
        assert evaluator.evaluate([{"field": "fields.amount", "operator": "equals", "value": 1500}], context)
        assert evaluator.evaluate([{"field": "project_id", "operator": "not_equals", "value": "p2"}], context)

    def test_comparison_operators(self, evaluator, context):
        """Test numeric comparisons."""
        assert evaluator.evaluate([{"field": "amount", "operator": "greater_than", "value": 1000}], context)
        assert evaluator.evaluate([{"field": "amount", "operator": "less_or_equal", "value": 1500}], context)
        assert not evaluator.evaluate([{"field": "amount", "operator": "less_than", "value": 1500}], context)
        assert evaluator.evaluate([{"field": "amount", "operator": "greater_or_equal", "value": 1500}], context)

    def test_missing_value_never_compares(self, evaluator, context):
        assert not evaluator.evaluate([{"field": "fields.nothing", "operator": "greater_than", "value": 0}], context)
        assert not evaluator.evaluate([{"field": "fields.nothing", "operator": "less_than", "value": 0}], context)

    def test_contains_operators(self, evaluator, context):
        assert evaluator.evaluate([{"field": "title", "operator": "contains", "value": "Rua"}], context)
        assert evaluator.evaluate([{"field": "tags", "operator": "contains", "value": "vip"}], context)
        assert evaluator.evaluate([{"field": "tags", "operator": "not_contains", "value": "sale"}], context)

    def test_membership_operators(self, evaluator, context):
        assert evaluator.evaluate([{"field": "project_id", "operator": "in", "value": ["p1", "p2"]}], context)
        assert evaluator.evaluate([{"field": "project_id", "operator": "not_in", "value": ["p3"]}], context)

    def test_emptiness_operators(self, evaluator, context):
        assert evaluator.evaluate([{"field": "notes", "operator": "empty"}], context)
        assert evaluator.evaluate([{"field": "fields.unknown", "operator": "empty"}], context)
        assert evaluator.evaluate([{"field": "title", "operator": "not_empty"}], context)

    def test_value_type_coercion(self, evaluator, context):
        assert evaluator.evaluate([{
            "field": "custom_fields.cf-score", "operator": "greater_than", "value": "40", "value_type": "number",
        }], context)
        assert evaluator.evaluate([{
            "field": "signed_on", "operator": "less_than", "value": "2024-03-01", "value_type": "date",
        }], context)
        assert evaluator.evaluate([{
            "field": "urgent", "operator": "equals", "value": True, "value_type": "boolean",
        }], context)
        assert evaluator.evaluate([{
            "field": "amount", "operator": "in", "value": ["1500", "2000"], "value_type": "number",
        }], context)

    def test_uncoercible_value(self, evaluator, context):
        with pytest.raises(RuleError):
            evaluator.evaluate([{
                "field": "title", "operator": "greater_than", "value": 1, "value_type": "number",
            }], context)

    def test_incomparable_types(self, evaluator, context):
        with pytest.raises(RuleError):
            evaluator.evaluate([{"field": "title", "operator": "greater_than", "value": 1}], context)

    def test_unknown_operator(self, evaluator, context):
        with pytest.raises(RuleError):
            evaluator.evaluate([{"field": "title", "operator": "sounds_like", "value": "x"}], context)

    def test_nested_paths(self, evaluator, context):
        assert evaluator.evaluate([{
            "field": "checklists.docs.completed_items", "operator": "equals", "value": 2,
        }], context)
        assert evaluator.evaluate([{
            "field": "card.fields.tags.0", "operator": "equals", "value": "vip",
        }], context)

    def test_variable_reference(self, evaluator, context):
        assert evaluator.evaluate([{
            "field": "amount", "operator": "greater_than", "value": "$variables.threshold",
        }], context)

    def test_logical_operator_fold(self, evaluator, context):
        """Conditions fold left to right with each one's logical_operator."""
        false_cond = {"field": "amount", "operator": "equals", "value": 1}
        true_cond = {"field": "amount", "operator": "equals", "value": 1500}

        assert not evaluator.evaluate([true_cond, false_cond], context)
        assert evaluator.evaluate([false_cond, {**true_cond, "logical_operator": "OR"}], context)
        assert not evaluator.evaluate(
            [true_cond, {**true_cond, "logical_operator": "OR"}, false_cond], context
        )

    def test_nested_logic(self, evaluator, context):
        condition = {
            "and": [
                {"field": "amount", "operator": "greater_than", "value": 100},
                {"or": [
                    {"field": "project_id", "operator": "equals", "value": "p9"},
                    {"not": {"field": "notes", "operator": "not_empty"}},
                ]},
            ]
        }
        assert evaluator.evaluate([condition], context)

    def test_empty_conditions_pass(self, evaluator, context):
        assert evaluator.evaluate([], context)

    def test_custom_operator(self, evaluator, context):
        evaluator.register_operator("starts_with", lambda a, b: str(a).startswith(b))
        assert evaluator.evaluate([{"field": "title", "operator": "starts_with", "value": "Lease"}], context)


class TestTransitions:
    """Which rules apply to a move."""

    def test_validation_from_column(self):
        rule = ValidationRule(
            id="v1", column_id="col-c", type="required_field", behavior="block",
            message="m", config={"field_name": "x"}, from_column_id="col-b",
        )
        assert validation_applies(rule, MoveContext("col-b", "col-c"))
        assert not validation_applies(rule, MoveContext("col-a", "col-c"))
        assert validation_applies(rule, None)

    def test_validation_adjacent_forward_only(self):
        rule = ValidationRule(
            id="v1", column_id="col-c", type="required_field", behavior="block",
            message="m", config={"field_name": "x"}, require_adjacent_position=True,
        )
        assert validation_applies(rule, MoveContext("col-b", "col-c", from_position=1, to_position=2))
        assert not validation_applies(rule, MoveContext("col-d", "col-c", from_position=3, to_position=2))
        assert not validation_applies(rule, MoveContext("col-a", "col-c", from_position=0, to_position=2))

    def test_action_from_column_by_trigger(self):
        enter = ActionRule(id="a1", column_id="col-c", trigger="on_enter", type="add_tag", from_column_id="col-b")
        exit_rule = ActionRule(id="a2", column_id="col-c", trigger="on_exit", type="send_email", from_column_id="col-d")

        assert action_applies(enter, enter.trigger, MoveContext("col-b", "col-c"))
        assert not action_applies(enter, enter.trigger, MoveContext("col-a", "col-c"))
        assert action_applies(exit_rule, exit_rule.trigger, MoveContext("col-c", "col-d"))
        assert not action_applies(exit_rule, exit_rule.trigger, MoveContext("col-c", "col-e"))

    def test_action_trigger_must_match(self):
        rule = ActionRule(id="a1", column_id="col-c", trigger="on_enter", type="add_tag")
        assert not action_applies(rule, "on_exit")
        assert action_applies(rule, "on_enter")

    def test_action_adjacency_either_direction(self):
        rule = ActionRule(id="a1", column_id="col-b", trigger="on_enter", type="add_tag",
                          require_adjacent_position=True)
        assert action_applies(rule, rule.trigger, MoveContext("col-c", "col-b", from_position=2, to_position=1))
        assert not action_applies(rule, rule.trigger, MoveContext("col-d", "col-b", from_position=3, to_position=1))
        assert not action_applies(rule, rule.trigger, MoveContext("col-d", "col-b"))


class TestActionRegistry:
    """Test action registration and execution."""

    @pytest.fixture
    def registry(self):
        return ActionRegistry()

    @pytest.mark.asyncio
    async def test_custom_action_registration(self, registry):
        """Test custom action registration."""
        received = []

        async def tag_handler(params, card):
            received.append((params, card.card_id))
            return {"tagged": params["tag"]}

        registry.register("add_tag", tag_handler)

        result = await registry.execute("add_tag", {"tag": "hot"}, make_card())
        assert result == {"tagged": "hot"}
        assert received == [({"tag": "hot"}, "card-1")]
        assert registry.list_actions() == ["add_tag"]

    @pytest.mark.asyncio
    async def test_unknown_action(self, registry):
        """Test handling of unknown action."""
        with pytest.raises(ActionError) as exc_info:
            await registry.execute("nonexistent_action", {}, make_card())
        assert not exc_info.value.retryable
        assert exc_info.value.category == ErrorCategory.PERMANENT
        assert "Unknown action" in exc_info.value.message

    @pytest.mark.asyncio
    async def test_handler_errors_propagate(self, registry):
        async def broken(params, card):
            raise ValueError("smtp down")

        registry.register("send_email", broken)
        with pytest.raises(ValueError):
            await registry.execute("send_email", {}, make_card())

    @pytest.mark.asyncio
    async def test_card_interpolation(self, registry):
        """Test {{card...}} interpolation in payloads."""
        seen = {}

        async def capture(params, card):
            seen.update(params)

        registry.register("send_email", capture)
        card = make_card(
            fields={"title": "Lease", "amount": 1500},
            last_updated_at=datetime(2024, 1, 2, tzinfo=timezone.utc),
        )

        await registry.execute("send_email", {
            "subject": "Card {{card.card_id}}: {{ card.fields.title }}",
            "amount": "{{card.fields.amount}}",
            "unknown": "{{card.fields.missing}}",
            "nested": [{"column": "{{card.column_id}}"}],
        }, card)

        assert seen["subject"] == "Card card-1: Lease"
        assert seen["amount"] == 1500
        assert seen["unknown"] == "{{card.fields.missing}}"
        assert seen["nested"] == [{"column": "col-a"}]

    def test_unregister(self, registry):
        async def noop(params, card):
            return None

        registry.register("noop", noop)
        registry.unregister("noop")
        assert registry.get_handler("noop") is None
