"""Tests for action dispatch."""

import asyncio
from datetime import timedelta

import pytest

from kanban_rules.core.errors import ErrorCategory, ErrorSeverity
from kanban_rules.core.models import ActionRule, ActionTrigger
from kanban_rules.orchestrator.executor import ActionEngine
from kanban_rules.orchestrator.scheduler import ActionScheduler
from kanban_rules.rules.transitions import MoveContext

from conftest import T0, InMemoryCards, RecordingExecutor, make_card


def enter_rule(rule_id, order, column_id="col-a", **kwargs) -> ActionRule:
    return ActionRule(
        id=rule_id,
        column_id=column_id,
        trigger=kwargs.pop("trigger", "on_enter"),
        type=kwargs.pop("type", "send_email"),
        order=order,
        **kwargs,
    )


def stay_rule(rule_id, order=0, column_id="col-a", **kwargs) -> ActionRule:
    kwargs.setdefault("interval_hours", 24)
    kwargs.setdefault("max_executions", 3)
    return ActionRule(
        id=rule_id,
        column_id=column_id,
        trigger="on_stay",
        type=kwargs.pop("type", "send_email"),
        order=order,
        **kwargs,
    )


class TestFire:
    """Enter and exit triggers."""

    @pytest.mark.asyncio
    async def test_runs_in_rule_order(self, rule_store, engine, executor):
        await rule_store.create_action_rule(enter_rule("third", 3, type="add_tag"))
        await rule_store.create_action_rule(enter_rule("first", 1, type="assign_user"))
        await rule_store.create_action_rule(enter_rule("second", 2, type="send_email"))

        outcomes = await engine.fire(ActionTrigger.ON_ENTER, "col-a", make_card())

        assert [o.action_rule_id for o in outcomes] == ["first", "second", "third"]
        assert executor.types == ["assign_user", "send_email", "add_tag"]

    @pytest.mark.asyncio
    async def test_failure_does_not_stop_siblings(self, rule_store, scheduler, state_store):
        executor = RecordingExecutor(fail_on=("send_email",))
        engine = ActionEngine(rule_store, scheduler, executor, history=state_store)
        await rule_store.create_action_rule(enter_rule("mail", 1))
        await rule_store.create_action_rule(enter_rule("tag", 2, type="add_tag"))

        outcomes = await engine.fire(ActionTrigger.ON_ENTER, "col-a", make_card())

        assert [o.success for o in outcomes] == [False, True]
        assert outcomes[0].error.message == "send_email exploded"
        assert executor.types == ["send_email", "add_tag"]
        assert engine.stats["failed"] == 1
        assert engine.stats["succeeded"] == 1

    @pytest.mark.asyncio
    async def test_timeout(self, rule_store, scheduler):
        executor = RecordingExecutor(delays={"send_email": 1.0})
        engine = ActionEngine(rule_store, scheduler, executor, dispatch_timeout_seconds=0.05)
        await rule_store.create_action_rule(enter_rule("slow", 1))
        await rule_store.create_action_rule(enter_rule("fast", 2, type="add_tag"))

        outcomes = await engine.fire(ActionTrigger.ON_ENTER, "col-a", make_card())

        assert not outcomes[0].success
        assert outcomes[0].error.category == ErrorCategory.TRANSIENT
        assert outcomes[0].error.severity == ErrorSeverity.LOW
        assert outcomes[1].success
        assert engine.stats["timed_out"] == 1

    @pytest.mark.asyncio
    async def test_conditions_gate_actions(self, rule_store, engine, executor):
        await rule_store.create_action_rule(enter_rule(
            "vip-only", 1, conditions=[{"field": "tier", "operator": "equals", "value": "vip"}],
        ))
        await rule_store.create_action_rule(enter_rule(
            "broken", 2, type="add_tag",
            conditions=[{"field": "tier", "operator": "greater_than", "value": 3}],
        ))

        assert await engine.fire(ActionTrigger.ON_ENTER, "col-a", make_card(fields={"tier": "basic"})) == []

        outcomes = await engine.fire(ActionTrigger.ON_ENTER, "col-a", make_card(fields={"tier": "vip"}))
        assert [o.action_rule_id for o in outcomes] == ["vip-only"]

    @pytest.mark.asyncio
    async def test_exit_from_column_means_destination(self, rule_store, engine, executor):
        await rule_store.create_action_rule(enter_rule("to-done", 1, trigger="on_exit", from_column_id="done"))

        await engine.fire(ActionTrigger.ON_EXIT, "col-a", make_card(), MoveContext("col-a", "lost"))
        assert executor.calls == []

        await engine.fire(ActionTrigger.ON_EXIT, "col-a", make_card(), MoveContext("col-a", "done"))
        assert executor.types == ["send_email"]

    @pytest.mark.asyncio
    async def test_payload_is_a_copy(self, rule_store, scheduler):
        class Mutating(RecordingExecutor):
            async def execute(self, action_type, payload, card):
                payload["tampered"] = True
                await super().execute(action_type, payload, card)

        engine = ActionEngine(rule_store, scheduler, Mutating())
        await rule_store.create_action_rule(enter_rule("mail", 1, payload={"template": "welcome"}))

        await engine.fire(ActionTrigger.ON_ENTER, "col-a", make_card())

        stored = await rule_store.get_action_rule("mail")
        assert stored.payload == {"template": "welcome"}

    @pytest.mark.asyncio
    async def test_on_stay_not_fired_directly(self, engine):
        with pytest.raises(ValueError):
            await engine.fire(ActionTrigger.ON_STAY, "col-a", make_card())

    @pytest.mark.asyncio
    async def test_history_recorded(self, rule_store, engine, state_store):
        await rule_store.create_action_rule(enter_rule("mail", 1))

        await engine.fire(ActionTrigger.ON_ENTER, "col-a", make_card())

        history = await state_store.get_action_history(card_id="card-1")
        assert len(history) == 1
        assert history[0].trigger == "on_enter"
        assert history[0].column_id == "col-a"
        assert history[0].success


class TestFireDue:
    """Periodic on_stay firing."""

    @pytest.mark.asyncio
    async def test_three_reminders_then_silence(self, rule_store, scheduler, engine, executor):
        await rule_store.create_action_rule(stay_rule("remind"))
        await scheduler.on_card_entered(make_card(), "col-a", T0)

        fired = []
        for hour in range(0, 24 * 6 + 1, 6):
            outcomes = await engine.fire_due(T0 + timedelta(hours=hour))
            fired.extend((hour, o.times_executed) for o in outcomes)

        assert fired == [(24, 1), (48, 2), (72, 3)]
        assert executor.types == ["send_email"] * 3

    @pytest.mark.asyncio
    async def test_cap_reached_flag(self, rule_store, scheduler, engine):
        await rule_store.create_action_rule(stay_rule("once", max_executions=1))
        await scheduler.on_card_entered(make_card(), "col-a", T0)

        outcomes = await engine.fire_due(T0 + timedelta(hours=24))
        assert outcomes[0].cap_reached

    @pytest.mark.asyncio
    async def test_failed_run_still_counts(self, rule_store, scheduler, state_store):
        engine = ActionEngine(rule_store, scheduler, RecordingExecutor(fail_on=("send_email",)))
        await rule_store.create_action_rule(stay_rule("remind"))
        await scheduler.on_card_entered(make_card(), "col-a", T0)

        outcomes = await engine.fire_due(T0 + timedelta(hours=24))

        assert not outcomes[0].success
        state = await state_store.get_state("card-1", "remind")
        assert state.times_executed == 1
        assert state.next_due_at == T0 + timedelta(hours=48)

    @pytest.mark.asyncio
    async def test_deactivated_rule_stops_firing(self, rule_store, scheduler, engine, executor, state_store):
        """Deactivating one stay action leaves the column's others running."""
        await rule_store.create_action_rule(stay_rule("remind", order=1))
        await rule_store.create_action_rule(stay_rule("score", order=2, type="update_score"))
        await scheduler.on_card_entered(make_card(), "col-a", T0)

        await engine.fire_due(T0 + timedelta(hours=24))
        assert executor.types == ["send_email", "update_score"]

        await rule_store.update_action_rule("remind", is_active=False)
        await engine.fire_due(T0 + timedelta(hours=48))

        assert executor.types == ["send_email", "update_score", "update_score"]
        assert await state_store.get_state("card-1", "remind") is None

    @pytest.mark.asyncio
    async def test_deleted_rule_forgotten(self, rule_store, scheduler, engine, executor, state_store):
        await rule_store.create_action_rule(stay_rule("remind"))
        await scheduler.on_card_entered(make_card(), "col-a", T0)
        await rule_store.delete_action_rule("remind")

        assert await engine.fire_due(T0 + timedelta(hours=24)) == []
        assert await state_store.get_state("card-1", "remind") is None

    @pytest.mark.asyncio
    async def test_card_moved_away_dropped(self, rule_store, scheduler, state_store):
        cards = InMemoryCards(make_card(column_id="col-z"))
        executor = RecordingExecutor()
        engine = ActionEngine(rule_store, scheduler, executor, card_provider=cards)
        await rule_store.create_action_rule(stay_rule("remind"))
        await scheduler.on_card_entered(make_card(), "col-a", T0)

        assert await engine.fire_due(T0 + timedelta(hours=24)) == []
        assert executor.calls == []
        assert await state_store.get_state("card-1", "remind") is None

    @pytest.mark.asyncio
    async def test_unmet_conditions_do_not_claim(self, rule_store, scheduler, state_store):
        cards = InMemoryCards(make_card(fields={"priority": "low"}))
        engine = ActionEngine(rule_store, scheduler, RecordingExecutor(), card_provider=cards)
        await rule_store.create_action_rule(stay_rule(
            "escalate", conditions=[{"field": "priority", "operator": "equals", "value": "high"}],
        ))
        await scheduler.on_card_entered(make_card(), "col-a", T0)

        assert await engine.fire_due(T0 + timedelta(hours=24)) == []
        state = await state_store.get_state("card-1", "escalate")
        assert state.times_executed == 0
        assert state.next_due_at == T0 + timedelta(hours=48)

    @pytest.mark.asyncio
    async def test_unmet_conditions_do_not_starve_the_batch(self, rule_store, state_store):
        """Postponed rows make room for other due actions in a small batch."""
        cards = InMemoryCards(make_card(fields={"priority": "low"}))
        executor = RecordingExecutor()
        scheduler = ActionScheduler(rule_store, state_store, due_batch_limit=1)
        engine = ActionEngine(rule_store, scheduler, executor, card_provider=cards)
        await rule_store.create_action_rule(stay_rule(
            "escalate", order=1, interval_hours=1, max_executions=0,
            conditions=[{"field": "priority", "operator": "equals", "value": "high"}],
        ))
        await rule_store.create_action_rule(stay_rule("remind", order=2, type="add_tag", interval_hours=2))
        await scheduler.on_card_entered(make_card(), "col-a", T0)

        for hour in range(1, 7):
            await engine.fire_due(T0 + timedelta(hours=hour))

        assert executor.types
        assert set(executor.types) == {"add_tag"}

    @pytest.mark.asyncio
    async def test_conditions_trusted_without_provider(self, rule_store, scheduler, engine, executor, state_store):
        await rule_store.create_action_rule(stay_rule(
            "escalate", interval_hours=2,
            conditions=[{"field": "priority", "operator": "equals", "value": "high"}],
        ))
        await scheduler.on_card_entered(make_card(fields={"priority": "high"}), "col-a", T0)

        outcomes = await engine.fire_due(T0 + timedelta(hours=2))

        assert [o.action_rule_id for o in outcomes] == ["escalate"]
        assert executor.types == ["send_email"]
        assert (await state_store.get_state("card-1", "escalate")).times_executed == 1

    @pytest.mark.asyncio
    async def test_competing_engines_fire_once(self, rule_store, state_store):
        """Two engines sweeping the same store claim each run at most once."""
        first_executor, second_executor = RecordingExecutor(), RecordingExecutor()
        first = ActionEngine(rule_store, ActionScheduler(rule_store, state_store), first_executor)
        second = ActionEngine(rule_store, ActionScheduler(rule_store, state_store), second_executor)
        await rule_store.create_action_rule(stay_rule("remind"))
        for card_id in ("card-1", "card-2", "card-3"):
            await first.scheduler.on_card_entered(make_card(card_id), "col-a", T0)

        now = T0 + timedelta(hours=24)
        await asyncio.gather(first.fire_due(now), second.fire_due(now))

        fired = [call[2] for call in first_executor.calls + second_executor.calls]
        assert sorted(fired) == ["card-1", "card-2", "card-3"]

    @pytest.mark.asyncio
    async def test_groups_run_per_card_in_order(self, rule_store, scheduler, state_store):
        executor = RecordingExecutor(delays={"update_score": 0.01})
        engine = ActionEngine(rule_store, scheduler, executor, max_workers=2)
        await rule_store.create_action_rule(stay_rule("score", order=1, type="update_score"))
        await rule_store.create_action_rule(stay_rule("remind", order=2))
        for card_id in ("card-1", "card-2"):
            await scheduler.on_card_entered(make_card(card_id), "col-a", T0)

        outcomes = await engine.fire_due(T0 + timedelta(hours=24))

        assert len(outcomes) == 4
        for card_id in ("card-1", "card-2"):
            per_card = [call[0] for call in executor.calls if call[2] == card_id]
            assert per_card == ["update_score", "send_email"]
