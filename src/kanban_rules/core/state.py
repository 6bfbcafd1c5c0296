"""Persistent scheduler state and execution history using SQLite."""

import json
import time
from datetime import datetime
from typing import Any, Optional
from dataclasses import dataclass

from .database import SQLiteStore, from_timestamp, to_timestamp
from .models import ActionExecutionState


@dataclass
class ActionExecutionRecord:
    """One dispatched action, successful or not."""
    id: int
    card_id: str
    action_rule_id: str
    action_type: str
    trigger: str
    column_id: Optional[str]
    success: bool
    error: Optional[dict[str, Any]]
    duration_ms: float
    executed_at: datetime


@dataclass
class ValidationExecutionRecord:
    """One validation rule checked during a move."""
    id: int
    card_id: str
    column_id: str
    rule_id: str
    rule_type: str
    behavior: str
    passed: bool
    message: str
    details: dict[str, Any]
    executed_at: datetime


class ExecutionStateStore(SQLiteStore):
    """
    Owns ActionExecutionState rows and the execution history.

    Claims are compare-and-swap updates keyed on the dwell token and the
    execution count the caller observed, so two workers reading the same due
    row cannot both advance it.
    """

    SCHEMA = """
        -- Periodic schedule per (card, on_stay action)
        CREATE TABLE IF NOT EXISTS action_execution_states (
            card_id TEXT NOT NULL,
            action_rule_id TEXT NOT NULL,
            column_id TEXT NOT NULL,
            dwell_id TEXT NOT NULL,
            times_executed INTEGER NOT NULL DEFAULT 0,
            last_executed_at REAL,
            next_due_at REAL,
            entered_column_at REAL NOT NULL,
            interval_hours REAL NOT NULL,
            max_executions INTEGER NOT NULL DEFAULT 0,
            PRIMARY KEY (card_id, action_rule_id)
        );

        -- Action dispatch history
        CREATE TABLE IF NOT EXISTS action_executions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            card_id TEXT NOT NULL,
            action_rule_id TEXT NOT NULL,
            action_type TEXT NOT NULL,
            trigger TEXT NOT NULL,
            column_id TEXT,
            success INTEGER NOT NULL,
            error_json TEXT,
            duration_ms REAL NOT NULL DEFAULT 0,
            executed_at REAL NOT NULL
        );

        -- Validation check history
        CREATE TABLE IF NOT EXISTS validation_executions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            card_id TEXT NOT NULL,
            column_id TEXT NOT NULL,
            rule_id TEXT NOT NULL,
            rule_type TEXT NOT NULL,
            behavior TEXT NOT NULL,
            passed INTEGER NOT NULL,
            message TEXT,
            details_json TEXT,
            executed_at REAL NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_states_due ON action_execution_states(next_due_at);
        CREATE INDEX IF NOT EXISTS idx_states_column ON action_execution_states(card_id, column_id);
        CREATE INDEX IF NOT EXISTS idx_states_rule ON action_execution_states(action_rule_id);
        CREATE INDEX IF NOT EXISTS idx_action_executions_card ON action_executions(card_id, executed_at);
        CREATE INDEX IF NOT EXISTS idx_validation_executions_card ON validation_executions(card_id, executed_at);
    """

    def __init__(self, db_path: str = "./data/kanban_rules.db"):
        super().__init__(db_path)

    # ==================== Schedules ====================

    async def save_state(self, state: ActionExecutionState) -> None:
        """Create or replace the schedule row of (card, action)."""
        async with self._lock:
            async with self._guard("save_state") as db:
                await db.execute("""
                    INSERT OR REPLACE INTO action_execution_states
                    (card_id, action_rule_id, column_id, dwell_id, times_executed,
                     last_executed_at, next_due_at, entered_column_at,
                     interval_hours, max_executions)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    state.card_id,
                    state.action_rule_id,
                    state.column_id,
                    state.dwell_id,
                    state.times_executed,
                    to_timestamp(state.last_executed_at),
                    to_timestamp(state.next_due_at),
                    to_timestamp(state.entered_column_at),
                    state.interval_hours,
                    state.max_executions,
                ))
                await db.commit()

    async def get_state(self, card_id: str, action_rule_id: str) -> Optional[ActionExecutionState]:
        async with self._guard("get_state") as db:
            cursor = await db.execute(
                "SELECT * FROM action_execution_states WHERE card_id = ? AND action_rule_id = ?",
                (card_id, action_rule_id)
            )
            row = await cursor.fetchone()
        return self._row_to_state(row) if row else None

    async def list_states(self, card_id: str) -> list[ActionExecutionState]:
        async with self._guard("list_states") as db:
            cursor = await db.execute(
                "SELECT * FROM action_execution_states WHERE card_id = ? ORDER BY entered_column_at ASC",
                (card_id,)
            )
            rows = await cursor.fetchall()
        return [self._row_to_state(row) for row in rows]

    async def due_states(self, now: datetime, limit: int = 500) -> list[ActionExecutionState]:
        """States whose next run is due and whose cap is not reached."""
        async with self._guard("due_states") as db:
            cursor = await db.execute("""
                SELECT * FROM action_execution_states
                WHERE next_due_at IS NOT NULL
                  AND next_due_at <= ?
                  AND (max_executions = 0 OR times_executed < max_executions)
                ORDER BY next_due_at ASC, card_id ASC
                LIMIT ?
            """, (to_timestamp(now), limit))
            rows = await cursor.fetchall()
        return [self._row_to_state(row) for row in rows]

    async def claim(
        self,
        state: ActionExecutionState,
        executed_at: datetime,
        next_due_at: Optional[datetime],
        interval_hours: float,
        max_executions: int,
    ) -> bool:
        """
        Advance a state by one execution if nobody else did since it was read.

        Returns False when the row changed underneath (claimed by another
        worker, reset by a re-entry, or deleted).
        """
        async with self._lock:
            async with self._guard("claim") as db:
                result = await db.execute("""
                    UPDATE action_execution_states
                    SET times_executed = times_executed + 1,
                        last_executed_at = ?,
                        next_due_at = ?,
                        interval_hours = ?,
                        max_executions = ?
                    WHERE card_id = ?
                      AND action_rule_id = ?
                      AND dwell_id = ?
                      AND times_executed = ?
                """, (
                    to_timestamp(executed_at),
                    to_timestamp(next_due_at),
                    interval_hours,
                    max_executions,
                    state.card_id,
                    state.action_rule_id,
                    state.dwell_id,
                    state.times_executed,
                ))
                await db.commit()
        return result.rowcount == 1

    async def postpone(self, state: ActionExecutionState, next_due_at: datetime) -> bool:
        """
        Move a due state to a later run without counting an execution.

        Same compare-and-swap as ``claim``; returns False when the row
        changed underneath.
        """
        async with self._lock:
            async with self._guard("postpone") as db:
                result = await db.execute("""
                    UPDATE action_execution_states
                    SET next_due_at = ?
                    WHERE card_id = ?
                      AND action_rule_id = ?
                      AND dwell_id = ?
                      AND times_executed = ?
                """, (
                    to_timestamp(next_due_at),
                    state.card_id,
                    state.action_rule_id,
                    state.dwell_id,
                    state.times_executed,
                ))
                await db.commit()
        return result.rowcount == 1

    async def delete_states_for_column(self, card_id: str, column_id: str) -> int:
        """Drop every schedule of a card owned by one column."""
        async with self._lock:
            async with self._guard("delete_states_for_column") as db:
                result = await db.execute(
                    "DELETE FROM action_execution_states WHERE card_id = ? AND column_id = ?",
                    (card_id, column_id)
                )
                await db.commit()
        return result.rowcount

    async def delete_states_for_action(self, action_rule_id: str) -> int:
        """Drop every schedule of one action rule."""
        async with self._lock:
            async with self._guard("delete_states_for_action") as db:
                result = await db.execute(
                    "DELETE FROM action_execution_states WHERE action_rule_id = ?",
                    (action_rule_id,)
                )
                await db.commit()
        return result.rowcount

    async def delete_state(self, card_id: str, action_rule_id: str, dwell_id: Optional[str] = None) -> bool:
        """Drop one schedule. With ``dwell_id``, only if it still belongs to that dwell period."""
        query = "DELETE FROM action_execution_states WHERE card_id = ? AND action_rule_id = ?"
        params: tuple = (card_id, action_rule_id)
        if dwell_id is not None:
            query += " AND dwell_id = ?"
            params += (dwell_id,)

        async with self._lock:
            async with self._guard("delete_state") as db:
                result = await db.execute(query, params)
                await db.commit()
        return result.rowcount > 0

    def _row_to_state(self, row) -> ActionExecutionState:
        return ActionExecutionState(
            card_id=row["card_id"],
            action_rule_id=row["action_rule_id"],
            column_id=row["column_id"],
            dwell_id=row["dwell_id"],
            entered_column_at=from_timestamp(row["entered_column_at"]),
            interval_hours=row["interval_hours"],
            max_executions=row["max_executions"],
            times_executed=row["times_executed"],
            last_executed_at=from_timestamp(row["last_executed_at"]),
            next_due_at=from_timestamp(row["next_due_at"]),
        )

    # ==================== Action History ====================

    async def record_action_execution(
        self,
        card_id: str,
        action_rule_id: str,
        action_type: str,
        trigger: str,
        success: bool,
        column_id: Optional[str] = None,
        error: Optional[dict[str, Any]] = None,
        duration_ms: float = 0,
        executed_at: Optional[datetime] = None,
    ) -> int:
        """Append one dispatch outcome to the history."""
        async with self._lock:
            async with self._guard("record_action_execution") as db:
                cursor = await db.execute("""
                    INSERT INTO action_executions
                    (card_id, action_rule_id, action_type, trigger, column_id,
                     success, error_json, duration_ms, executed_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    card_id,
                    action_rule_id,
                    action_type,
                    trigger,
                    column_id,
                    int(success),
                    json.dumps(error) if error is not None else None,
                    duration_ms,
                    to_timestamp(executed_at) if executed_at else time.time(),
                ))
                await db.commit()
        return cursor.lastrowid

    async def get_action_history(
        self,
        card_id: Optional[str] = None,
        action_rule_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ActionExecutionRecord]:
        """Most recent dispatches first."""
        where, params = self._filters(card_id=card_id, action_rule_id=action_rule_id)
        async with self._guard("get_action_history") as db:
            cursor = await db.execute(
                f"SELECT * FROM action_executions WHERE {where} "
                f"ORDER BY executed_at DESC, id DESC LIMIT ? OFFSET ?",
                (*params, limit, offset)
            )
            rows = await cursor.fetchall()
        return [
            ActionExecutionRecord(
                id=row["id"],
                card_id=row["card_id"],
                action_rule_id=row["action_rule_id"],
                action_type=row["action_type"],
                trigger=row["trigger"],
                column_id=row["column_id"],
                success=bool(row["success"]),
                error=json.loads(row["error_json"]) if row["error_json"] else None,
                duration_ms=row["duration_ms"],
                executed_at=from_timestamp(row["executed_at"]),
            )
            for row in rows
        ]

    # ==================== Validation History ====================

    async def record_validation_execution(
        self,
        card_id: str,
        column_id: str,
        rule_id: str,
        rule_type: str,
        behavior: str,
        passed: bool,
        message: str = "",
        details: Optional[dict[str, Any]] = None,
        executed_at: Optional[datetime] = None,
    ) -> int:
        async with self._lock:
            async with self._guard("record_validation_execution") as db:
                cursor = await db.execute("""
                    INSERT INTO validation_executions
                    (card_id, column_id, rule_id, rule_type, behavior, passed,
                     message, details_json, executed_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    card_id,
                    column_id,
                    rule_id,
                    rule_type,
                    behavior,
                    int(passed),
                    message,
                    json.dumps(details or {}, default=str),
                    to_timestamp(executed_at) if executed_at else time.time(),
                ))
                await db.commit()
        return cursor.lastrowid

    async def get_validation_history(
        self,
        card_id: Optional[str] = None,
        column_id: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ValidationExecutionRecord]:
        where, params = self._filters(card_id=card_id, column_id=column_id)
        async with self._guard("get_validation_history") as db:
            cursor = await db.execute(
                f"SELECT * FROM validation_executions WHERE {where} "
                f"ORDER BY executed_at DESC, id DESC LIMIT ? OFFSET ?",
                (*params, limit, offset)
            )
            rows = await cursor.fetchall()
        return [
            ValidationExecutionRecord(
                id=row["id"],
                card_id=row["card_id"],
                column_id=row["column_id"],
                rule_id=row["rule_id"],
                rule_type=row["rule_type"],
                behavior=row["behavior"],
                passed=bool(row["passed"]),
                message=row["message"] or "",
                details=json.loads(row["details_json"]) if row["details_json"] else {},
                executed_at=from_timestamp(row["executed_at"]),
            )
            for row in rows
        ]

    @staticmethod
    def _filters(**filters: Optional[str]) -> tuple[str, list[str]]:
        clauses = [f"{key} = ?" for key, value in filters.items() if value is not None]
        params = [value for value in filters.values() if value is not None]
        return " AND ".join(clauses) or "1 = 1", params
