"""Periodic (on_stay) action scheduling with per-(card, action) state."""

import uuid
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Optional

import structlog

from ..core.models import ActionExecutionState, ActionTrigger, CardSnapshot, ensure_utc
from ..core.state import ExecutionStateStore
from ..core.store import RuleStore
from ..rules.transitions import MoveContext, action_applies


logger = structlog.get_logger()


class ActionScheduler:
    """
    Tracks when each on_stay action is next due for each card.

    Features:
    - One schedule per (card, action) for the current dwell period
    - Execution caps (``max_executions``, 0 = unlimited)
    - Claim-then-execute: ``mark_executed`` is a compare-and-swap, so
      concurrent tick loops or replicas fire a due action at most once
    """

    def __init__(
        self,
        rules: RuleStore,
        states: ExecutionStateStore,
        due_batch_limit: int = 500,
    ):
        self.rules = rules
        self.states = states
        self.due_batch_limit = due_batch_limit

    async def on_card_entered(
        self,
        card: CardSnapshot,
        column_id: str,
        now: datetime,
        move: Optional[MoveContext] = None,
    ) -> list[ActionExecutionState]:
        """
        Start a new dwell period: (re)create the schedule of every active,
        applicable on_stay action of ``column_id``.

        Counts from an earlier stay in the column are discarded.
        """
        now = ensure_utc(now)
        await self.states.delete_states_for_column(card.card_id, column_id)

        rules = await self.rules.list_action_rules(column_id, ActionTrigger.ON_STAY)
        dwell_id = uuid.uuid4().hex
        created = []

        for rule in rules:
            if not action_applies(rule, ActionTrigger.ON_STAY, move):
                continue
            state = ActionExecutionState(
                card_id=card.card_id,
                action_rule_id=rule.id,
                column_id=column_id,
                dwell_id=dwell_id,
                entered_column_at=now,
                interval_hours=rule.interval_hours,
                max_executions=rule.max_executions,
                times_executed=0,
                last_executed_at=None,
                next_due_at=now + timedelta(hours=rule.interval_hours),
            )
            await self.states.save_state(state)
            created.append(state)

        if created:
            logger.info(
                "stay_actions_scheduled",
                card_id=card.card_id,
                column_id=column_id,
                actions=[s.action_rule_id for s in created],
            )
        return created

    async def on_card_left(self, card: CardSnapshot, column_id: str) -> int:
        """Stop every schedule the card had in ``column_id``."""
        removed = await self.states.delete_states_for_column(card.card_id, column_id)
        if removed:
            logger.info("stay_actions_cleared", card_id=card.card_id, column_id=column_id, count=removed)
        return removed

    async def due_actions(
        self,
        now: datetime,
        limit: Optional[int] = None,
    ) -> list[ActionExecutionState]:
        """States due at ``now`` that have not reached their cap, earliest first."""
        return await self.states.due_states(ensure_utc(now), limit or self.due_batch_limit)

    async def mark_executed(
        self,
        state: ActionExecutionState,
        now: datetime,
        interval_hours: Optional[float] = None,
        max_executions: Optional[int] = None,
    ) -> Optional[ActionExecutionState]:
        """
        Claim one execution of ``state``.

        ``interval_hours`` and ``max_executions`` override the values captured
        at entry, so edits to the live rule take effect from the next run.
        Returns the advanced state, or None when another worker claimed the
        same run first or the card left the column meanwhile.
        """
        now = ensure_utc(now)
        interval = interval_hours if interval_hours is not None else state.interval_hours
        cap = max_executions if max_executions is not None else state.max_executions

        times_executed = state.times_executed + 1
        if cap > 0 and times_executed >= cap:
            next_due_at = None
        else:
            next_due_at = now + timedelta(hours=interval)

        claimed = await self.states.claim(
            state,
            executed_at=now,
            next_due_at=next_due_at,
            interval_hours=interval,
            max_executions=cap,
        )
        if not claimed:
            logger.debug(
                "claim_lost",
                card_id=state.card_id,
                action_rule_id=state.action_rule_id,
                times_executed=state.times_executed,
            )
            return None

        return replace(
            state,
            times_executed=times_executed,
            last_executed_at=now,
            next_due_at=next_due_at,
            interval_hours=interval,
            max_executions=cap,
        )

    async def postpone(
        self,
        state: ActionExecutionState,
        now: datetime,
        interval_hours: Optional[float] = None,
    ) -> Optional[ActionExecutionState]:
        """
        Skip one run of ``state`` without counting it, e.g. when the action's
        conditions do not hold. The next run is one interval from ``now``.
        """
        now = ensure_utc(now)
        interval = interval_hours if interval_hours is not None else state.interval_hours
        next_due_at = now + timedelta(hours=interval)

        if not await self.states.postpone(state, next_due_at):
            return None
        return replace(state, next_due_at=next_due_at)

    async def forget_action(self, action_rule_id: str) -> int:
        """Drop every schedule of a deleted or deactivated action rule."""
        removed = await self.states.delete_states_for_action(action_rule_id)
        if removed:
            logger.info("stay_action_forgotten", action_rule_id=action_rule_id, schedules=removed)
        return removed

    async def forget_state(self, state: ActionExecutionState) -> bool:
        """
        Drop one schedule, e.g. for a card no longer in the column.

        Only the dwell period ``state`` was read from is dropped; a schedule
        created by a re-entry in the meantime is kept.
        """
        return await self.states.delete_state(state.card_id, state.action_rule_id, dwell_id=state.dwell_id)
