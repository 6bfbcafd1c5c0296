"""Rule storage: validation, action and color rules with explicit ordering."""

import json
from typing import Any, Optional, Type, TypeVar, Union

import structlog
from pydantic import ValidationError

from .database import SQLiteStore
from .errors import ConfigError
from .models import (
    ALLOWED_TRIGGERS_BY_ACTION_TYPE,
    ActionRule,
    ActionTrigger,
    ColorRule,
    RuleSet,
    ValidationRule,
    ValidationType,
)
from .schemas import action_conditions_error, validation_config_error


logger = structlog.get_logger()

RuleT = TypeVar("RuleT", ValidationRule, ActionRule, ColorRule)


def _identity_key(rule: ValidationRule) -> Optional[tuple]:
    """What makes two validations of the same column duplicates of each other."""
    config = rule.config
    if rule.type == ValidationType.REQUIRED_FIELD.value:
        return (rule.type, config.get("field_name"), config.get("custom_field_id"))
    if rule.type == ValidationType.REQUIRED_CHECKLIST.value:
        return (rule.type, config.get("checklist_id"))
    if rule.type == ValidationType.REQUIRED_DOCUMENT.value:
        return (rule.type, config.get("document_type"), config.get("document_status", "any"))
    if rule.type == ValidationType.REQUIRED_RELATIONSHIP.value:
        return (rule.type, config.get("relationship_type"))
    if rule.type == ValidationType.CUSTOM_CONDITION.value:
        condition = config.get("condition") or {}
        return (
            rule.type,
            condition.get("field"),
            condition.get("operator"),
            json.dumps(condition.get("value"), sort_keys=True, default=str),
        )
    return None


class RuleStore(SQLiteStore):
    """
    Persists the three rule kinds.

    Lists come back sorted by ``order`` ascending, ties broken by insertion
    sequence. Creation and updates reject misconfigured rules with
    ConfigError so evaluation only has to tolerate rules that predate a check.
    """

    SCHEMA = """
        CREATE TABLE IF NOT EXISTS validation_rules (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            id TEXT NOT NULL UNIQUE,
            column_id TEXT NOT NULL,
            sort_order INTEGER NOT NULL,
            is_active INTEGER NOT NULL,
            data_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS action_rules (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            id TEXT NOT NULL UNIQUE,
            column_id TEXT NOT NULL,
            trigger TEXT NOT NULL,
            sort_order INTEGER NOT NULL,
            is_active INTEGER NOT NULL,
            data_json TEXT NOT NULL
        );

        CREATE TABLE IF NOT EXISTS color_rules (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            id TEXT NOT NULL UNIQUE,
            team_id TEXT NOT NULL,
            project_id TEXT,
            sort_order INTEGER NOT NULL,
            is_active INTEGER NOT NULL,
            data_json TEXT NOT NULL
        );

        CREATE INDEX IF NOT EXISTS idx_validation_rules_column ON validation_rules(column_id, sort_order);
        CREATE INDEX IF NOT EXISTS idx_action_rules_column ON action_rules(column_id, trigger, sort_order);
        CREATE INDEX IF NOT EXISTS idx_color_rules_scope ON color_rules(team_id, project_id, sort_order);
    """

    def __init__(
        self,
        db_path: str = "./data/kanban_rules.db",
        max_validations_per_column: int = 3,
    ):
        super().__init__(db_path)
        self.max_validations_per_column = max_validations_per_column

    # ==================== Validation Rules ====================

    async def create_validation_rule(self, rule: Union[ValidationRule, dict]) -> ValidationRule:
        """Store a new validation rule, appending it when no order was given."""
        rule = self._coerce(ValidationRule, rule)
        self._check_validation(rule)
        async with self._lock:
            existing = await self._select("validation_rules", ValidationRule, {"column_id": rule.column_id})
            if len(existing) >= self.max_validations_per_column:
                raise ConfigError(
                    f"Column {rule.column_id} already has the maximum of "
                    f"{self.max_validations_per_column} validations"
                )
            self._check_duplicate(rule, existing)
            rule = await self._with_default_order(rule, "validation_rules", {"column_id": rule.column_id})
            await self._insert("validation_rules", rule, {"column_id": rule.column_id})

        logger.info("validation_rule_created", rule_id=rule.id, column_id=rule.column_id, type=rule.type)
        return rule

    async def get_validation_rule(self, rule_id: str) -> Optional[ValidationRule]:
        return await self._select_one("validation_rules", ValidationRule, rule_id)

    async def update_validation_rule(self, rule_id: str, **changes: Any) -> ValidationRule:
        """Apply field changes to a validation rule and re-check it."""
        async with self._lock:
            current = await self._require("validation_rules", ValidationRule, rule_id)
            updated = self._merge(current, changes)
            self._check_validation(updated)
            siblings = await self._select("validation_rules", ValidationRule, {"column_id": updated.column_id})
            self._check_duplicate(updated, [r for r in siblings if r.id != rule_id])
            await self._update("validation_rules", updated, {"column_id": updated.column_id})
        return updated

    async def delete_validation_rule(self, rule_id: str) -> bool:
        return await self._delete("validation_rules", rule_id)

    async def list_validation_rules(
        self,
        column_id: str,
        active_only: bool = True,
    ) -> list[ValidationRule]:
        """Validation rules of a column in evaluation order."""
        return await self._select(
            "validation_rules", ValidationRule, {"column_id": column_id}, active_only
        )

    async def reorder_validation_rules(self, column_id: str, ordered_ids: list[str]) -> list[ValidationRule]:
        return await self._reorder("validation_rules", ValidationRule, {"column_id": column_id}, ordered_ids)

    # ==================== Action Rules ====================

    async def create_action_rule(self, rule: Union[ActionRule, dict]) -> ActionRule:
        """Store a new action rule, appending it when no order was given."""
        rule = self._coerce(ActionRule, rule)
        self._check_action(rule)
        async with self._lock:
            rule = await self._with_default_order(rule, "action_rules", {"column_id": rule.column_id})
            await self._insert("action_rules", rule, self._action_scope(rule))

        logger.info(
            "action_rule_created",
            rule_id=rule.id,
            column_id=rule.column_id,
            trigger=rule.trigger.value,
            type=rule.type,
        )
        return rule

    async def get_action_rule(self, rule_id: str) -> Optional[ActionRule]:
        return await self._select_one("action_rules", ActionRule, rule_id)

    async def update_action_rule(self, rule_id: str, **changes: Any) -> ActionRule:
        """Apply field changes to an action rule and re-check it."""
        async with self._lock:
            current = await self._require("action_rules", ActionRule, rule_id)
            updated = self._merge(current, changes)
            self._check_action(updated)
            await self._update("action_rules", updated, self._action_scope(updated))
        return updated

    async def delete_action_rule(self, rule_id: str) -> bool:
        return await self._delete("action_rules", rule_id)

    async def list_action_rules(
        self,
        column_id: str,
        trigger: Optional[ActionTrigger] = None,
        active_only: bool = True,
    ) -> list[ActionRule]:
        """Action rules of a column in execution order, optionally for one trigger."""
        where: dict[str, Any] = {"column_id": column_id}
        if trigger is not None:
            where["trigger"] = ActionTrigger(trigger).value
        return await self._select("action_rules", ActionRule, where, active_only)

    async def reorder_action_rules(self, column_id: str, ordered_ids: list[str]) -> list[ActionRule]:
        return await self._reorder("action_rules", ActionRule, {"column_id": column_id}, ordered_ids)

    # ==================== Color Rules ====================

    async def create_color_rule(self, rule: Union[ColorRule, dict]) -> ColorRule:
        """Store a new color rule, appending it when no order was given."""
        rule = self._coerce(ColorRule, rule)
        scope = self._color_scope(rule)
        async with self._lock:
            rule = await self._with_default_order(rule, "color_rules", scope)
            await self._insert("color_rules", rule, scope)

        logger.info("color_rule_created", rule_id=rule.id, team_id=rule.team_id, project_id=rule.project_id)
        return rule

    async def get_color_rule(self, rule_id: str) -> Optional[ColorRule]:
        return await self._select_one("color_rules", ColorRule, rule_id)

    async def update_color_rule(self, rule_id: str, **changes: Any) -> ColorRule:
        async with self._lock:
            current = await self._require("color_rules", ColorRule, rule_id)
            updated = self._merge(current, changes)
            await self._update("color_rules", updated, self._color_scope(updated))
        return updated

    async def delete_color_rule(self, rule_id: str) -> bool:
        return await self._delete("color_rules", rule_id)

    async def list_color_rules(
        self,
        team_id: str,
        project_id: Optional[str] = None,
        active_only: bool = True,
    ) -> list[ColorRule]:
        """Color rules of a team/project in priority order (lowest order first)."""
        return await self._select(
            "color_rules",
            ColorRule,
            {"team_id": team_id, "project_id": project_id},
            active_only,
        )

    async def reorder_color_rules(
        self,
        team_id: str,
        project_id: Optional[str],
        ordered_ids: list[str],
    ) -> list[ColorRule]:
        return await self._reorder(
            "color_rules", ColorRule, {"team_id": team_id, "project_id": project_id}, ordered_ids
        )

    # ==================== Bulk Import ====================

    async def import_rules(self, rule_set: RuleSet) -> int:
        """Insert rules whose ids are not stored yet. Returns number inserted."""
        inserted = 0
        for rule in rule_set.validations:
            if await self.get_validation_rule(rule.id) is None:
                await self.create_validation_rule(rule)
                inserted += 1
        for rule in rule_set.actions:
            if await self.get_action_rule(rule.id) is None:
                await self.create_action_rule(rule)
                inserted += 1
        for rule in rule_set.color_rules:
            if await self.get_color_rule(rule.id) is None:
                await self.create_color_rule(rule)
                inserted += 1

        logger.info("rules_imported", total=len(rule_set), inserted=inserted)
        return inserted

    # ==================== Checks ====================

    def _check_validation(self, rule: ValidationRule) -> None:
        problem = validation_config_error(rule.type, rule.config)
        if problem:
            raise ConfigError(f"Invalid validation rule {rule.id}: {problem}")

    def _check_duplicate(self, rule: ValidationRule, others: list[ValidationRule]) -> None:
        key = _identity_key(rule)
        for other in others:
            if other.id == rule.id:
                raise ConfigError(f"Validation rule {rule.id} already exists")
            if key is not None and _identity_key(other) == key:
                raise ConfigError(
                    f"Column {rule.column_id} already has an identical validation ({other.id})"
                )

    def _check_action(self, rule: ActionRule) -> None:
        allowed = ALLOWED_TRIGGERS_BY_ACTION_TYPE.get(rule.type)
        if allowed is not None and rule.trigger not in allowed:
            raise ConfigError(
                f"Action type {rule.type} does not support trigger {rule.trigger.value}"
            )
        problem = action_conditions_error(rule.conditions)
        if problem:
            raise ConfigError(f"Invalid conditions on action rule {rule.id}: {problem}")

    @staticmethod
    def _coerce(model: Type[RuleT], rule: Union[RuleT, dict]) -> RuleT:
        if isinstance(rule, model):
            return rule
        try:
            return model(**rule)
        except (ValidationError, TypeError) as e:
            raise ConfigError(f"Invalid {model.__name__}: {e}")

    def _merge(self, current: RuleT, changes: dict[str, Any]) -> RuleT:
        if "id" in changes and changes["id"] != current.id:
            raise ConfigError("Rule id cannot be changed")
        data = current.model_dump()
        data.update(changes)
        try:
            return type(current)(**data)
        except ValidationError as e:
            raise ConfigError(f"Invalid update for rule {current.id}: {e}")

    @staticmethod
    def _action_scope(rule: ActionRule) -> dict[str, Any]:
        return {"column_id": rule.column_id, "trigger": rule.trigger.value}

    @staticmethod
    def _color_scope(rule: ColorRule) -> dict[str, Any]:
        return {"team_id": rule.team_id, "project_id": rule.project_id}

    # ==================== SQL helpers ====================

    async def _with_default_order(self, rule: RuleT, table: str, scope: dict[str, Any]) -> RuleT:
        if "order" in rule.model_fields_set:
            return rule
        where_sql, params = self._where(self._order_scope(table, scope))
        async with self._guard("next_order") as db:
            cursor = await db.execute(
                f"SELECT MAX(sort_order) AS max_order FROM {table} WHERE {where_sql}",
                params,
            )
            row = await cursor.fetchone()
        max_order = row["max_order"] if row else None
        return rule.model_copy(update={"order": 0 if max_order is None else max_order + 1})

    @staticmethod
    def _order_scope(table: str, scope: dict[str, Any]) -> dict[str, Any]:
        # Action ordering spans all triggers of a column
        if table == "action_rules":
            return {"column_id": scope["column_id"]}
        return scope

    async def _insert(self, table: str, rule: RuleT, scope: dict[str, Any]) -> None:
        columns = ["id", "sort_order", "is_active", "data_json", *scope.keys()]
        values = [rule.id, rule.order, int(rule.is_active), rule.model_dump_json(), *scope.values()]
        placeholders = ", ".join("?" for _ in columns)
        async with self._guard(f"insert into {table}") as db:
            exists = await db.execute(f"SELECT 1 FROM {table} WHERE id = ?", (rule.id,))
            if await exists.fetchone():
                raise ConfigError(f"Rule {rule.id} already exists")
            await db.execute(
                f"INSERT INTO {table} ({', '.join(columns)}) VALUES ({placeholders})",
                values,
            )
            await db.commit()

    async def _update(self, table: str, rule: RuleT, scope: dict[str, Any]) -> None:
        assignments = ["sort_order = ?", "is_active = ?", "data_json = ?"]
        assignments += [f"{key} = ?" for key in scope]
        values = [rule.order, int(rule.is_active), rule.model_dump_json(), *scope.values(), rule.id]
        async with self._guard(f"update {table}") as db:
            await db.execute(
                f"UPDATE {table} SET {', '.join(assignments)} WHERE id = ?",
                values,
            )
            await db.commit()

    async def _delete(self, table: str, rule_id: str) -> bool:
        async with self._lock:
            async with self._guard(f"delete from {table}") as db:
                result = await db.execute(f"DELETE FROM {table} WHERE id = ?", (rule_id,))
                await db.commit()
        if result.rowcount > 0:
            logger.info("rule_deleted", table=table, rule_id=rule_id)
        return result.rowcount > 0

    async def _select_one(self, table: str, model: Type[RuleT], rule_id: str) -> Optional[RuleT]:
        async with self._guard(f"select from {table}") as db:
            cursor = await db.execute(f"SELECT data_json FROM {table} WHERE id = ?", (rule_id,))
            row = await cursor.fetchone()
        return model.model_validate_json(row["data_json"]) if row else None

    async def _require(self, table: str, model: Type[RuleT], rule_id: str) -> RuleT:
        rule = await self._select_one(table, model, rule_id)
        if rule is None:
            raise ConfigError(f"Rule not found: {rule_id}")
        return rule

    async def _select(
        self,
        table: str,
        model: Type[RuleT],
        where: dict[str, Any],
        active_only: bool = False,
    ) -> list[RuleT]:
        where_sql, params = self._where(where)
        if active_only:
            where_sql += " AND is_active = 1"
        async with self._guard(f"select from {table}") as db:
            cursor = await db.execute(
                f"SELECT data_json FROM {table} WHERE {where_sql} ORDER BY sort_order ASC, seq ASC",
                params,
            )
            rows = await cursor.fetchall()
        return [model.model_validate_json(row["data_json"]) for row in rows]

    async def _reorder(
        self,
        table: str,
        model: Type[RuleT],
        where: dict[str, Any],
        ordered_ids: list[str],
    ) -> list[RuleT]:
        """Rewrite ``order`` of every rule in scope to its index in ``ordered_ids``."""
        async with self._lock:
            rules = await self._select(table, model, where)
            by_id = {rule.id: rule for rule in rules}
            if len(ordered_ids) != len(set(ordered_ids)) or set(ordered_ids) != set(by_id):
                raise ConfigError(
                    f"Reorder must list every rule in scope exactly once "
                    f"(expected {sorted(by_id)}, got {ordered_ids})"
                )

            reordered = [by_id[rule_id].model_copy(update={"order": index})
                         for index, rule_id in enumerate(ordered_ids)]
            async with self._guard(f"reorder {table}") as db:
                for rule in reordered:
                    await db.execute(
                        f"UPDATE {table} SET sort_order = ?, data_json = ? WHERE id = ?",
                        (rule.order, rule.model_dump_json(), rule.id),
                    )
                await db.commit()

        logger.info("rules_reordered", table=table, count=len(reordered))
        return reordered

    @staticmethod
    def _where(where: dict[str, Any]) -> tuple[str, list[Any]]:
        # IS matches NULL project scopes as well as concrete values
        clauses = [f"{key} IS ?" for key in where]
        return " AND ".join(clauses) or "1 = 1", list(where.values())
