"""
Supervisor - wires the engine together and runs the periodic tick loop.

Owns the stores, the engines and the coordinator, seeds rules from config
files, and drains in-flight dispatches on shutdown.
"""

import asyncio
import time
from datetime import datetime
from enum import Enum
from typing import Any, Optional

import structlog

from ..core.config import ConfigLoader, EngineConfig
from ..core.errors import ConfigError
from ..core.models import ActionRule, utcnow
from ..core.state import ExecutionStateStore
from ..core.store import RuleStore
from ..rules.color import ColorRuleEvaluator
from ..rules.validation import ValidationEngine
from .coordinator import BoardGateway, MoveOutcome, WorkflowCoordinator
from .executor import ActionEngine, ActionExecutor, CardProvider, ExecutionOutcome
from .scheduler import ActionScheduler


logger = structlog.get_logger()


class SupervisorState(Enum):
    """Supervisor operational states."""
    INITIALIZING = "initializing"
    RUNNING = "running"
    DRAINING = "draining"  # Finishing in-flight dispatches, no new ticks
    SHUTDOWN = "shutdown"


class Supervisor:
    """
    Central wiring of the rules engine.

    Responsibilities:
    - Open and close the rule and state stores
    - Seed rules from the configured rules directory
    - Fire due on_stay actions every tick without blocking on executors
    - Stop schedules as soon as an action rule is deactivated or deleted
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        executor: Optional[ActionExecutor] = None,
        card_provider: Optional[CardProvider] = None,
        board: Optional[BoardGateway] = None,
        config_loader: Optional[ConfigLoader] = None,
    ):
        if executor is None:
            raise ValueError("Supervisor needs an ActionExecutor")

        self.config = config or EngineConfig()
        self.config_loader = config_loader or ConfigLoader()

        db_path = self.config.storage.database_path
        self.rules = RuleStore(
            db_path,
            max_validations_per_column=self.config.validation.max_validations_per_column,
        )
        self.states = ExecutionStateStore(db_path)

        sched = self.config.scheduler
        self.scheduler = ActionScheduler(self.rules, self.states, due_batch_limit=sched.due_batch_limit)
        self.validation = ValidationEngine(self.rules)
        self.colors = ColorRuleEvaluator(self.rules)
        self.actions = ActionEngine(
            self.rules,
            self.scheduler,
            executor,
            history=self.states,
            card_provider=card_provider,
            max_workers=sched.max_workers,
            dispatch_timeout_seconds=sched.dispatch_timeout_seconds,
        )
        self.coordinator = WorkflowCoordinator(
            self.validation,
            self.actions,
            self.scheduler,
            board=board,
            history=self.states,
        )

        # State
        self._state = SupervisorState.INITIALIZING
        self._start_time: Optional[float] = None
        self._startup_errors: list[str] = []
        self._rules_imported = 0

        # Tick tracking
        self._tick_task: Optional[asyncio.Task] = None
        self._sweeps: set[asyncio.Task] = set()
        self._ticks = 0
        self._last_tick_at: Optional[datetime] = None

        # Shutdown coordination
        self._shutdown_event = asyncio.Event()

    @property
    def state(self) -> SupervisorState:
        return self._state

    @property
    def is_running(self) -> bool:
        return self._state == SupervisorState.RUNNING

    async def start(self, run_ticks: bool = True) -> None:
        """Open the stores, seed rules and start the tick loop."""
        logger.info("supervisor_starting", name=self.config.name, version=self.config.version)

        await self.rules.initialize()
        await self.states.initialize()

        # Don't crash on bad rule files - start with what the store has
        self._startup_errors = await self._seed_rules()

        self._state = SupervisorState.RUNNING
        self._start_time = time.time()
        self._shutdown_event.clear()

        if run_ticks:
            self._tick_task = asyncio.create_task(self._tick_loop())

        logger.info(
            "supervisor_started",
            tick_interval_seconds=self.config.scheduler.tick_interval_seconds,
            max_workers=self.config.scheduler.max_workers,
            rules_imported=self._rules_imported,
        )

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop ticking, let in-flight dispatches finish, then close the stores."""
        if self._state == SupervisorState.SHUTDOWN:
            return

        if timeout is None:
            timeout = self.config.scheduler.shutdown_grace_seconds

        logger.info("supervisor_stopping", in_flight=len(self._sweeps))
        self._state = SupervisorState.DRAINING
        self._shutdown_event.set()

        if self._tick_task:
            await self._tick_task
            self._tick_task = None

        if self._sweeps:
            done, pending = await asyncio.wait(set(self._sweeps), timeout=timeout)
            if pending:
                logger.warning("shutdown_drain_timeout", cancelled=len(pending), grace_seconds=timeout)
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        await self.states.close()
        await self.rules.close()

        self._state = SupervisorState.SHUTDOWN
        logger.info("supervisor_stopped")

    # ==================== Ticking ====================

    async def tick(self, now: Optional[datetime] = None) -> list[ExecutionOutcome]:
        """Run one sweep of due on_stay actions and wait for it."""
        self._ticks += 1
        self._last_tick_at = now or utcnow()
        return await self.actions.fire_due(self._last_tick_at)

    async def _tick_loop(self) -> None:
        """Spawn a sweep every tick interval until shutdown."""
        interval = self.config.scheduler.tick_interval_seconds
        logger.info("tick_loop_started", interval_seconds=interval)

        while not self._shutdown_event.is_set():
            try:
                await asyncio.wait_for(self._shutdown_event.wait(), timeout=interval)
                break
            except asyncio.TimeoutError:
                pass

            self._spawn_sweep()

        logger.info("tick_loop_stopped", ticks=self._ticks)

    def _spawn_sweep(self, now: Optional[datetime] = None) -> asyncio.Task:
        """Start a sweep in the background; ``stop`` waits for it."""
        sweep = asyncio.create_task(self.tick(now))
        self._sweeps.add(sweep)
        sweep.add_done_callback(self._sweep_done)
        return sweep

    def _sweep_done(self, task: asyncio.Task) -> None:
        self._sweeps.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error("tick_failed", error=str(error), error_type=type(error).__name__)

    # ==================== Moves and rule lifecycle ====================

    async def handle_move(self, *args: Any, **kwargs: Any) -> MoveOutcome:
        """Shortcut for ``coordinator.handle_move``."""
        return await self.coordinator.handle_move(*args, **kwargs)

    async def deactivate_action_rule(self, rule_id: str) -> ActionRule:
        """Deactivate an action rule and stop its schedules right away."""
        rule = await self.rules.update_action_rule(rule_id, is_active=False)
        await self.scheduler.forget_action(rule_id)
        logger.info("action_rule_deactivated", rule_id=rule_id)
        return rule

    async def delete_action_rule(self, rule_id: str) -> bool:
        """Delete an action rule and its schedules. History is kept."""
        deleted = await self.rules.delete_action_rule(rule_id)
        await self.scheduler.forget_action(rule_id)
        return deleted

    async def _seed_rules(self) -> list[str]:
        """Import rule files whose ids are not stored yet. Returns error messages."""
        try:
            rule_set = self.config_loader.load_rules(self.config.rules_directory)
            self._rules_imported = await self.rules.import_rules(rule_set)
        except ConfigError as e:
            logger.error("rules_load_error", error=e.message, **e.context)
            return [f"Rules: {e.message}"]
        return []

    # ==================== Status & Diagnostics ====================

    async def get_status(self) -> dict[str, Any]:
        """Get supervisor status for diagnostics."""
        return {
            "state": self._state.value,
            "uptime_seconds": time.time() - self._start_time if self._start_time else 0,
            "ticks": self._ticks,
            "last_tick_at": self._last_tick_at.isoformat() if self._last_tick_at else None,
            "in_flight_sweeps": len(self._sweeps),
            "dispatch": self.actions.stats,
            "rules_imported": self._rules_imported,
            "startup_errors": list(self._startup_errors),
            "config_hash": self.config.config_hash(),
        }
