"""Tests for scheduler state persistence and execution history."""

from datetime import timedelta

import pytest

from kanban_rules.core.errors import StoreError
from kanban_rules.core.models import ActionExecutionState
from kanban_rules.core.state import ExecutionStateStore

from conftest import T0


def stay_state(card_id="card-1", action_rule_id="a1", **kwargs) -> ActionExecutionState:
    data = {
        "column_id": "col-a",
        "dwell_id": "dwell-1",
        "entered_column_at": T0,
        "interval_hours": 24,
        "max_executions": 3,
        "next_due_at": T0 + timedelta(hours=24),
    }
    data.update(kwargs)
    return ActionExecutionState(card_id=card_id, action_rule_id=action_rule_id, **data)


class TestSchedules:
    """Schedule rows keyed by (card, action)."""

    @pytest.mark.asyncio
    async def test_save_and_get(self, state_store):
        state = stay_state()
        await state_store.save_state(state)

        fetched = await state_store.get_state("card-1", "a1")
        assert fetched == state
        assert fetched.next_due_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_save_replaces(self, state_store):
        await state_store.save_state(stay_state(times_executed=2))
        await state_store.save_state(stay_state(dwell_id="dwell-2"))

        fetched = await state_store.get_state("card-1", "a1")
        assert fetched.dwell_id == "dwell-2"
        assert fetched.times_executed == 0

    @pytest.mark.asyncio
    async def test_due_states(self, state_store):
        await state_store.save_state(stay_state("early", next_due_at=T0 + timedelta(hours=1)))
        await state_store.save_state(stay_state("late", next_due_at=T0 + timedelta(hours=5)))
        await state_store.save_state(stay_state("capped", times_executed=3, next_due_at=T0))
        await state_store.save_state(stay_state("done", next_due_at=None))
        await state_store.save_state(stay_state("unlimited", max_executions=0, times_executed=40,
                                                next_due_at=T0 + timedelta(hours=2)))

        due = await state_store.due_states(T0 + timedelta(hours=3))
        assert [s.card_id for s in due] == ["early", "unlimited"]

        assert len(await state_store.due_states(T0 + timedelta(hours=3), limit=1)) == 1

    @pytest.mark.asyncio
    async def test_claim_is_compare_and_swap(self, state_store):
        state = stay_state()
        await state_store.save_state(state)
        next_due = T0 + timedelta(hours=48)

        first = await state_store.claim(state, T0 + timedelta(hours=24), next_due, 24, 3)
        second = await state_store.claim(state, T0 + timedelta(hours=24), next_due, 24, 3)

        assert first is True
        assert second is False
        fetched = await state_store.get_state("card-1", "a1")
        assert fetched.times_executed == 1
        assert fetched.next_due_at == next_due

    @pytest.mark.asyncio
    async def test_claim_fails_after_reentry(self, state_store):
        stale = stay_state()
        await state_store.save_state(stale)
        await state_store.save_state(stay_state(dwell_id="dwell-2"))

        assert not await state_store.claim(stale, T0, None, 24, 3)

    @pytest.mark.asyncio
    async def test_postpone(self, state_store):
        state = stay_state()
        await state_store.save_state(state)

        assert await state_store.postpone(state, T0 + timedelta(hours=30))
        fetched = await state_store.get_state("card-1", "a1")
        assert fetched.next_due_at == T0 + timedelta(hours=30)
        assert fetched.times_executed == 0

        await state_store.save_state(stay_state(dwell_id="dwell-2"))
        assert not await state_store.postpone(state, T0 + timedelta(hours=36))

    @pytest.mark.asyncio
    async def test_deletes(self, state_store):
        await state_store.save_state(stay_state("card-1", "a1"))
        await state_store.save_state(stay_state("card-1", "a2", column_id="col-b"))
        await state_store.save_state(stay_state("card-2", "a1"))

        assert await state_store.delete_states_for_column("card-1", "col-a") == 1
        assert [s.action_rule_id for s in await state_store.list_states("card-1")] == ["a2"]

        assert await state_store.delete_states_for_action("a1") == 1
        assert await state_store.get_state("card-2", "a1") is None

        assert await state_store.delete_state("card-1", "a2")
        assert not await state_store.delete_state("card-1", "a2")

        await state_store.save_state(stay_state("card-2", "a1", dwell_id="dwell-2"))
        assert not await state_store.delete_state("card-2", "a1", dwell_id="dwell-1")
        assert await state_store.delete_state("card-2", "a1", dwell_id="dwell-2")


class TestHistory:
    """Action and validation execution history."""

    @pytest.mark.asyncio
    async def test_action_history(self, state_store):
        await state_store.record_action_execution(
            "card-1", "a1", "send_email", "on_enter", True, column_id="col-a", executed_at=T0,
        )
        await state_store.record_action_execution(
            "card-1", "a2", "add_tag", "on_enter", False,
            error={"message": "boom"}, duration_ms=12.5, executed_at=T0 + timedelta(minutes=1),
        )
        await state_store.record_action_execution(
            "card-2", "a1", "send_email", "on_stay", True, executed_at=T0,
        )

        history = await state_store.get_action_history(card_id="card-1")
        assert [r.action_rule_id for r in history] == ["a2", "a1"]
        assert history[0].error == {"message": "boom"}
        assert not history[0].success
        assert history[1].column_id == "col-a"

        by_rule = await state_store.get_action_history(action_rule_id="a1")
        assert {r.card_id for r in by_rule} == {"card-1", "card-2"}
        assert len(await state_store.get_action_history(limit=1)) == 1

    @pytest.mark.asyncio
    async def test_validation_history(self, state_store):
        await state_store.record_validation_execution(
            "card-1", "col-b", "v1", "required_field", "block", False,
            message="Title required", details={"field_name": "title"}, executed_at=T0,
        )
        await state_store.record_validation_execution(
            "card-1", "col-c", "v2", "required_field", "warn", True, executed_at=T0,
        )

        history = await state_store.get_validation_history(card_id="card-1", column_id="col-b")
        assert len(history) == 1
        assert history[0].details == {"field_name": "title"}
        assert not history[0].passed

    @pytest.mark.asyncio
    async def test_uninitialized(self, tmp_path):
        store = ExecutionStateStore(str(tmp_path / "state.db"))
        with pytest.raises(StoreError):
            await store.due_states(T0)
