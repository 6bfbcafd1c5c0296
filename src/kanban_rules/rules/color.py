"""Card urgency colors from time since last update."""

import math
from datetime import datetime
from typing import Iterable, Optional

import structlog

from ..core.models import CardSnapshot, ColorOperator, ColorRule, ensure_utc
from ..core.store import RuleStore


logger = structlog.get_logger()


def days_since(last_updated_at: Optional[datetime], now: datetime) -> Optional[int]:
    """Whole days elapsed, rounded down. None when the card was never updated."""
    if last_updated_at is None:
        return None
    elapsed = ensure_utc(now) - ensure_utc(last_updated_at)
    return max(0, math.floor(elapsed.total_seconds() / 86400))


def rule_matches(rule: ColorRule, elapsed_days: int) -> bool:
    """Whether ``elapsed_days`` satisfies the rule's predicate."""
    days = rule.days
    if rule.operator == ColorOperator.GREATER_THAN:
        return elapsed_days > days
    if rule.operator == ColorOperator.GREATER_THAN_OR_EQUAL:
        return elapsed_days >= days
    if rule.operator == ColorOperator.LESS_THAN:
        return elapsed_days < days
    if rule.operator == ColorOperator.LESS_THAN_OR_EQUAL:
        return elapsed_days <= days
    if rule.operator == ColorOperator.EQUAL:
        return elapsed_days == days
    if rule.operator == ColorOperator.BETWEEN:
        return days <= elapsed_days <= rule.days_to
    return False


def match_color_rule(rules: Iterable[ColorRule], elapsed_days: int) -> Optional[ColorRule]:
    """First active rule by ascending order whose predicate holds, or None."""
    for rule in sorted((r for r in rules if r.is_active), key=lambda r: r.order):
        if rule.operator == ColorOperator.BETWEEN and rule.days_to is None:
            logger.warning("color_rule_skipped", rule_id=rule.id, reason="between rule without days_to")
            continue
        if rule_matches(rule, elapsed_days):
            return rule
    return None


class ColorRuleEvaluator:
    """Resolves the display color of cards against stored color rules."""

    def __init__(self, store: RuleStore):
        self.store = store

    async def evaluate(
        self,
        team_id: str,
        project_id: Optional[str],
        elapsed_days: int,
    ) -> Optional[ColorRule]:
        rules = await self.store.list_color_rules(team_id, project_id)
        return match_color_rule(rules, elapsed_days)

    async def evaluate_cards(
        self,
        cards: Iterable[CardSnapshot],
        now: datetime,
    ) -> dict[str, Optional[ColorRule]]:
        """
        Color every card, fetching rules once per (team, project) scope.

        Cards without a team or without a last update get no color.
        """
        rules_by_scope: dict[tuple, list[ColorRule]] = {}
        colors: dict[str, Optional[ColorRule]] = {}

        for card in cards:
            elapsed = days_since(card.last_updated_at, now)
            if card.team_id is None or elapsed is None:
                colors[card.card_id] = None
                continue

            scope = (card.team_id, card.project_id)
            if scope not in rules_by_scope:
                rules_by_scope[scope] = await self.store.list_color_rules(*scope)
            colors[card.card_id] = match_color_rule(rules_by_scope[scope], elapsed)

        logger.debug("cards_colored", cards=len(colors), scopes=len(rules_by_scope))
        return colors
