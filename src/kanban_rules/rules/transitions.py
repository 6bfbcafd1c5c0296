"""Which rules apply to a given card move."""

from typing import Optional
from dataclasses import dataclass

from ..core.models import ActionRule, ActionTrigger, ValidationRule


@dataclass(frozen=True)
class MoveContext:
    """A move of one card between two columns.

    Positions are the columns' indexes on the board, when the board knows them.
    """
    from_column_id: Optional[str]
    to_column_id: str
    from_position: Optional[int] = None
    to_position: Optional[int] = None

    @property
    def is_adjacent_forward(self) -> bool:
        if self.from_position is None or self.to_position is None:
            return False
        return self.to_position == self.from_position + 1

    @property
    def is_adjacent(self) -> bool:
        if self.from_position is None or self.to_position is None:
            return False
        return abs(self.to_position - self.from_position) == 1


def validation_applies(rule: ValidationRule, move: Optional[MoveContext]) -> bool:
    """A validation of the destination column applies to the move.

    Without a move every rule applies.
    """
    if move is None:
        return True
    if rule.from_column_id is not None and rule.from_column_id != move.from_column_id:
        return False
    return not rule.require_adjacent_position or move.is_adjacent_forward


def action_applies(
    rule: ActionRule,
    trigger: ActionTrigger,
    move: Optional[MoveContext] = None,
) -> bool:
    """
    An action fires for ``trigger`` during ``move``.

    ``from_column_id`` on enter and stay actions names where the card came
    from; on exit actions it names where the card is going. Without a move
    (periodic firing) only the trigger is checked. Adjacency for actions
    means one column away in either direction.
    """
    if rule.trigger != trigger:
        return False
    if move is None:
        return True

    if rule.from_column_id is not None:
        if trigger == ActionTrigger.ON_EXIT:
            other_column = move.to_column_id
        else:
            other_column = move.from_column_id
        if rule.from_column_id != other_column:
            return False

    return not rule.require_adjacent_position or move.is_adjacent
