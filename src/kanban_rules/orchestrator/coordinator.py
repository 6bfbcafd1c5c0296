"""Card move handling: validate, commit, fire actions, maintain schedules."""

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Protocol

import structlog

from ..core.errors import EngineError, StoreError
from ..core.models import ActionTrigger, CardSnapshot, ensure_utc, utcnow
from ..core.state import ExecutionStateStore
from ..rules.transitions import MoveContext
from ..rules.validation import ValidationDecision, ValidationEngine, ValidationResult
from .executor import ActionEngine, ExecutionOutcome
from .scheduler import ActionScheduler


logger = structlog.get_logger()


class MoveStatus(str, Enum):
    BLOCKED = "blocked"
    COMPLETED = "completed"


class BoardGateway(Protocol):
    """Host-supplied board that persists a card's new column."""

    async def commit_move(self, card: CardSnapshot, from_column_id: Optional[str], to_column_id: str) -> None:
        ...


@dataclass
class MoveOutcome:
    """What happened to a move request."""
    status: MoveStatus
    card_id: str
    from_column_id: Optional[str]
    to_column_id: str
    decision: ValidationDecision = ValidationDecision.ALLOWED
    incomplete: bool = False
    executed_actions: list[ExecutionOutcome] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)
    validation: Optional[ValidationResult] = None

    @property
    def committed(self) -> bool:
        return self.status == MoveStatus.COMPLETED

    @property
    def messages(self) -> list[str]:
        return self.validation.decision_messages() if self.validation else []

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "card_id": self.card_id,
            "from_column_id": self.from_column_id,
            "to_column_id": self.to_column_id,
            "decision": self.decision.value,
            "incomplete": self.incomplete,
            "messages": self.messages,
            "executed_actions": [o.to_dict() for o in self.executed_actions],
            "errors": self.errors,
        }


class WorkflowCoordinator:
    """
    The entry point the board calls on every move.

    Once the move is committed, the follow-up steps (exit actions, schedule
    cleanup, enter actions, schedule registration) are best effort: each
    failure is logged and listed in the outcome, the move stands.
    """

    def __init__(
        self,
        validation: ValidationEngine,
        actions: ActionEngine,
        scheduler: ActionScheduler,
        board: Optional[BoardGateway] = None,
        history: Optional[ExecutionStateStore] = None,
    ):
        self.validation = validation
        self.actions = actions
        self.scheduler = scheduler
        self.board = board
        self.history = history

        self._card_locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    async def handle_move(
        self,
        card: CardSnapshot,
        from_column_id: Optional[str],
        to_column_id: str,
        now: Optional[datetime] = None,
        *,
        from_position: Optional[int] = None,
        to_position: Optional[int] = None,
        skip_validations: bool = False,
        skip_actions: bool = False,
    ) -> MoveOutcome:
        """
        Move ``card`` from ``from_column_id`` to ``to_column_id``.

        Returns a BLOCKED outcome with nothing committed when a blocking
        validation fails. StoreError and board failures before the commit
        propagate, leaving the move not done.
        """
        now = ensure_utc(now) if now else utcnow()
        move = MoveContext(
            from_column_id=from_column_id,
            to_column_id=to_column_id,
            from_position=from_position,
            to_position=to_position,
        )

        async with self._card_lock(card.card_id):
            if from_column_id == to_column_id:
                await self._commit(card, move)
                return MoveOutcome(
                    status=MoveStatus.COMPLETED,
                    card_id=card.card_id,
                    from_column_id=from_column_id,
                    to_column_id=to_column_id,
                )
            return await self._handle_move(card, move, now, skip_validations, skip_actions)

    async def _handle_move(
        self,
        card: CardSnapshot,
        move: MoveContext,
        now: datetime,
        skip_validations: bool,
        skip_actions: bool,
    ) -> MoveOutcome:
        outcome = MoveOutcome(
            status=MoveStatus.COMPLETED,
            card_id=card.card_id,
            from_column_id=move.from_column_id,
            to_column_id=move.to_column_id,
        )

        # 1. Validate destination
        if not skip_validations:
            result = await self.validation.evaluate(move.to_column_id, card, move)
            outcome.validation = result
            outcome.decision = result.decision
            outcome.incomplete = result.incomplete
            await self._record_validation(card, result, now, outcome)

            if result.blocked:
                outcome.status = MoveStatus.BLOCKED
                logger.info(
                    "move_blocked",
                    card_id=card.card_id,
                    from_column_id=move.from_column_id,
                    to_column_id=move.to_column_id,
                    messages=result.messages(),
                )
                return outcome

        # 2. Commit
        await self._commit(card, move)
        moved_card = replace(card, column_id=move.to_column_id)

        # 3-6. Best effort
        if move.from_column_id is not None:
            if not skip_actions:
                await self._step(
                    "fire_on_exit", outcome,
                    self.actions.fire, ActionTrigger.ON_EXIT, move.from_column_id, card, move,
                )
            await self._step(
                "clear_schedules", outcome,
                self.scheduler.on_card_left, card, move.from_column_id,
            )

        if not skip_actions:
            await self._step(
                "fire_on_enter", outcome,
                self.actions.fire, ActionTrigger.ON_ENTER, move.to_column_id, moved_card, move,
            )
        await self._step(
            "register_schedules", outcome,
            self.scheduler.on_card_entered, moved_card, move.to_column_id, now, move,
        )

        logger.info(
            "move_completed",
            card_id=card.card_id,
            from_column_id=move.from_column_id,
            to_column_id=move.to_column_id,
            decision=outcome.decision.value,
            incomplete=outcome.incomplete,
            actions=len(outcome.executed_actions),
            errors=len(outcome.errors),
        )
        return outcome

    async def _commit(self, card: CardSnapshot, move: MoveContext) -> None:
        if self.board is not None:
            await self.board.commit_move(card, move.from_column_id, move.to_column_id)

    async def _step(
        self,
        name: str,
        outcome: MoveOutcome,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
    ) -> None:
        """Run one post-commit step, folding its result or failure into ``outcome``."""
        try:
            result = await func(*args)
        except Exception as e:
            error = e.to_dict() if isinstance(e, EngineError) else {
                "type": type(e).__name__,
                "message": str(e),
            }
            error["step"] = name
            outcome.errors.append(error)
            logger.error("move_step_failed", step=name, card_id=outcome.card_id, error=str(e))
            return

        if name.startswith("fire_"):
            outcome.executed_actions.extend(result)

    async def _record_validation(
        self,
        card: CardSnapshot,
        result: ValidationResult,
        now: datetime,
        outcome: MoveOutcome,
    ) -> None:
        if self.history is None:
            return
        try:
            for rule in result.evaluated:
                failure = result.failure_for(rule.id)
                await self.history.record_validation_execution(
                    card_id=card.card_id,
                    column_id=result.column_id,
                    rule_id=rule.id,
                    rule_type=rule.type,
                    behavior=rule.behavior.value,
                    passed=failure is None,
                    message=failure.message if failure else "",
                    details=failure.details if failure else {},
                    executed_at=now,
                )
        except StoreError as e:
            outcome.errors.append({**e.to_dict(), "step": "record_validation"})
            logger.error("history_write_failed", card_id=card.card_id, error=e.message)

    @asynccontextmanager
    async def _card_lock(self, card_id: str) -> AsyncIterator[None]:
        """Serialize moves of one card. The lock is dropped once nobody waits on it."""
        lock = self._card_locks.setdefault(card_id, asyncio.Lock())
        self._lock_users[card_id] = self._lock_users.get(card_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[card_id] -= 1
            if not self._lock_users[card_id]:
                del self._lock_users[card_id]
                del self._card_locks[card_id]
