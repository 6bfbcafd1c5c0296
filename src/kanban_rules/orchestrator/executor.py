"""Action dispatch: enter/exit triggers and due on_stay schedules."""

import asyncio
import copy
import time
from collections import defaultdict
from datetime import datetime
from typing import Any, Optional, Protocol
from dataclasses import dataclass

import structlog

from ..core.errors import ActionError, EngineError, ErrorCategory, ErrorSeverity, RuleError, StoreError
from ..core.models import (
    ActionExecutionState,
    ActionRule,
    ActionTrigger,
    CardSnapshot,
    ensure_utc,
    utcnow,
)
from ..core.state import ExecutionStateStore
from ..core.store import RuleStore
from ..rules.evaluator import ConditionEvaluator, EvaluationContext
from ..rules.transitions import MoveContext, action_applies
from .scheduler import ActionScheduler


logger = structlog.get_logger()


class ActionExecutor(Protocol):
    """Host-supplied runner of concrete actions. Raises on failure."""

    async def execute(self, action_type: str, payload: dict[str, Any], card: CardSnapshot) -> Any:
        ...


class CardProvider(Protocol):
    """Host-supplied lookup of current card facts for periodic firing."""

    async def get_card(self, card_id: str) -> Optional[CardSnapshot]:
        ...


@dataclass
class ExecutionOutcome:
    """Result of one action dispatch."""
    action_rule_id: str
    action_type: str
    trigger: ActionTrigger
    card_id: str
    success: bool
    error: Optional[EngineError] = None
    duration_ms: float = 0
    times_executed: Optional[int] = None
    cap_reached: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "action_rule_id": self.action_rule_id,
            "action_type": self.action_type,
            "trigger": self.trigger.value,
            "card_id": self.card_id,
            "success": self.success,
            "error": self.error.to_dict() if self.error else None,
            "duration_ms": round(self.duration_ms, 2),
            "times_executed": self.times_executed,
            "cap_reached": self.cap_reached,
        }


class ActionEngine:
    """
    Fires action rules through the host's ActionExecutor.

    Features:
    - Deterministic order: ascending ``order`` within a trigger
    - Failure isolation: a failing or timed-out action never stops its siblings
    - Bounded worker pool for due on_stay actions
    - Per-dispatch timeout, no immediate retry
    """

    def __init__(
        self,
        rules: RuleStore,
        scheduler: ActionScheduler,
        executor: ActionExecutor,
        history: Optional[ExecutionStateStore] = None,
        card_provider: Optional[CardProvider] = None,
        evaluator: Optional[ConditionEvaluator] = None,
        max_workers: int = 4,
        dispatch_timeout_seconds: float = 30.0,
    ):
        self.rules = rules
        self.scheduler = scheduler
        self.executor = executor
        self.history = history
        self.card_provider = card_provider
        self.evaluator = evaluator or ConditionEvaluator()
        self.dispatch_timeout_seconds = dispatch_timeout_seconds

        self._pool = asyncio.Semaphore(max_workers)
        self._stats = {"dispatched": 0, "succeeded": 0, "failed": 0, "timed_out": 0}

    @property
    def stats(self) -> dict[str, int]:
        return dict(self._stats)

    async def fire(
        self,
        trigger: ActionTrigger,
        column_id: str,
        card: CardSnapshot,
        move: Optional[MoveContext] = None,
    ) -> list[ExecutionOutcome]:
        """
        Run the column's active actions for an enter or exit event, one after
        another in rule order.
        """
        trigger = ActionTrigger(trigger)
        if trigger == ActionTrigger.ON_STAY:
            raise ValueError("on_stay actions are fired through fire_due")

        rules = await self.rules.list_action_rules(column_id, trigger)
        outcomes = []
        for rule in rules:
            if not action_applies(rule, trigger, move):
                continue
            if not self._conditions_met(rule, card):
                continue
            outcomes.append(await self._dispatch(rule, trigger, card, column_id))

        return outcomes

    async def fire_due(self, now: Optional[datetime] = None) -> list[ExecutionOutcome]:
        """
        Claim and run every due on_stay action.

        Claimed actions are grouped per card; groups run in parallel on the
        worker pool, actions within a group run in rule order.
        """
        now = ensure_utc(now) if now else utcnow()
        states = await self.scheduler.due_actions(now)
        if not states:
            return []

        groups: dict[str, list[tuple[ActionRule, ActionExecutionState, CardSnapshot]]] = defaultdict(list)
        live_rules: dict[str, Optional[ActionRule]] = {}
        cards: dict[str, Optional[CardSnapshot]] = {}

        for state in states:
            if state.action_rule_id not in live_rules:
                live_rules[state.action_rule_id] = await self.rules.get_action_rule(state.action_rule_id)
            rule = live_rules[state.action_rule_id]

            if not self._still_scheduled(rule, state):
                await self.scheduler.forget_action(state.action_rule_id)
                continue

            if state.card_id not in cards:
                cards[state.card_id] = await self._load_card(state)
            card = cards[state.card_id]
            if card is None or card.column_id != state.column_id:
                await self.scheduler.forget_state(state)
                logger.info(
                    "stay_action_dropped",
                    card_id=state.card_id,
                    action_rule_id=state.action_rule_id,
                    reason="card not in column",
                )
                continue

            # Without a provider the card facts are unknown, so the schedule row is trusted
            if self.card_provider is not None and not self._conditions_met(rule, card):
                await self.scheduler.postpone(state, now, rule.interval_hours)
                logger.debug("stay_action_postponed", card_id=state.card_id, action_rule_id=rule.id)
                continue

            claimed = await self.scheduler.mark_executed(
                state, now, rule.interval_hours, rule.max_executions
            )
            if claimed is None:
                continue
            groups[state.card_id].append((rule, claimed, card))

        results = await asyncio.gather(
            *(self._run_group(group) for group in groups.values())
        )
        outcomes = [outcome for group in results for outcome in group]

        if outcomes:
            logger.info(
                "due_actions_fired",
                total=len(outcomes),
                failed=sum(1 for o in outcomes if not o.success),
            )
        return outcomes

    async def _run_group(
        self,
        group: list[tuple[ActionRule, ActionExecutionState, CardSnapshot]],
    ) -> list[ExecutionOutcome]:
        async with self._pool:
            outcomes = []
            for rule, state, card in sorted(group, key=lambda item: item[0].order):
                outcomes.append(
                    await self._dispatch(rule, ActionTrigger.ON_STAY, card, state.column_id, state)
                )
            return outcomes

    def _still_scheduled(self, rule: Optional[ActionRule], state: ActionExecutionState) -> bool:
        return (
            rule is not None
            and rule.is_active
            and rule.trigger == ActionTrigger.ON_STAY
            and rule.column_id == state.column_id
        )

    async def _load_card(self, state: ActionExecutionState) -> Optional[CardSnapshot]:
        if self.card_provider is None:
            return CardSnapshot(card_id=state.card_id, column_id=state.column_id)
        return await self.card_provider.get_card(state.card_id)

    def _conditions_met(self, rule: ActionRule, card: CardSnapshot) -> bool:
        if not rule.conditions:
            return True
        try:
            return self.evaluator.evaluate(rule.conditions, EvaluationContext(card=card))
        except RuleError as e:
            logger.warning("action_rule_skipped", action_id=rule.id, card_id=card.card_id, reason=e.message)
            return False

    async def _dispatch(
        self,
        rule: ActionRule,
        trigger: ActionTrigger,
        card: CardSnapshot,
        column_id: str,
        state: Optional[ActionExecutionState] = None,
    ) -> ExecutionOutcome:
        """Run one action with a timeout. Never raises for executor failures."""
        start_time = time.monotonic()
        error: Optional[EngineError] = None
        self._stats["dispatched"] += 1

        try:
            await asyncio.wait_for(
                self.executor.execute(rule.type, copy.deepcopy(rule.payload), card),
                timeout=self.dispatch_timeout_seconds,
            )

        except asyncio.TimeoutError:
            self._stats["timed_out"] += 1
            error = ActionError(
                f"Action timed out after {self.dispatch_timeout_seconds}s",
                action_id=rule.id,
                action_type=rule.type,
                card_id=card.card_id,
                severity=ErrorSeverity.LOW,
                category=ErrorCategory.TRANSIENT,
            )
            logger.warning(
                "action_timeout",
                action_id=rule.id,
                card_id=card.card_id,
                timeout_seconds=self.dispatch_timeout_seconds,
            )

        except EngineError as e:
            error = e
            e.context.setdefault("action_id", rule.id)
            e.context.setdefault("card_id", card.card_id)

        except Exception as e:
            error = ActionError(
                str(e) or type(e).__name__,
                action_id=rule.id,
                action_type=rule.type,
                card_id=card.card_id,
            )

        duration_ms = (time.monotonic() - start_time) * 1000

        if error is None:
            self._stats["succeeded"] += 1
        else:
            self._stats["failed"] += 1
            logger.warning(
                "action_failed",
                action_id=rule.id,
                action_type=rule.type,
                trigger=trigger.value,
                card_id=card.card_id,
                error=error.message,
            )

        outcome = ExecutionOutcome(
            action_rule_id=rule.id,
            action_type=rule.type,
            trigger=trigger,
            card_id=card.card_id,
            success=error is None,
            error=error,
            duration_ms=duration_ms,
            times_executed=state.times_executed if state else None,
            cap_reached=state.cap_reached if state else False,
        )
        await self._record(outcome, column_id)
        return outcome

    async def _record(self, outcome: ExecutionOutcome, column_id: str) -> None:
        if self.history is None:
            return
        try:
            await self.history.record_action_execution(
                card_id=outcome.card_id,
                action_rule_id=outcome.action_rule_id,
                action_type=outcome.action_type,
                trigger=outcome.trigger.value,
                success=outcome.success,
                column_id=column_id,
                error=outcome.error.to_dict() if outcome.error else None,
                duration_ms=outcome.duration_ms,
            )
        except StoreError as e:
            logger.error("history_write_failed", action_id=outcome.action_rule_id, error=e.message)
