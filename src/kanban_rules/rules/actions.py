"""Action registry: a host-side ActionExecutor built from per-type handlers."""

import re
from typing import Any, Callable, Optional, Awaitable

import structlog

from ..core.errors import ActionError, ErrorCategory
from ..core.models import CardSnapshot


logger = structlog.get_logger()

# Type alias for action handlers
ActionHandler = Callable[[dict[str, Any], CardSnapshot], Awaitable[Any]]

_PLACEHOLDER = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


def card_context(card: CardSnapshot) -> dict[str, Any]:
    """Values reachable from ``{{card.…}}`` placeholders."""
    return {
        "card": {
            "card_id": card.card_id,
            "column_id": card.column_id,
            "team_id": card.team_id,
            "project_id": card.project_id,
            "last_updated_at": card.last_updated_at.isoformat() if card.last_updated_at else None,
            "fields": card.fields,
            "custom_fields": card.custom_fields,
            "relationships": card.relationships,
        }
    }


class ActionRegistry:
    """
    Registry for action handlers.

    Handlers receive the action payload, with ``{{card.field}}`` references
    already filled in, and the card. A handler signals failure by raising.
    Types nobody registered are rejected with a non-retryable ActionError.
    """

    def __init__(self):
        self._handlers: dict[str, ActionHandler] = {}

    def register(self, action_type: str, handler: ActionHandler) -> None:
        """Register an action handler."""
        self._handlers[str(action_type)] = handler

    def unregister(self, action_type: str) -> None:
        """Unregister an action handler."""
        self._handlers.pop(str(action_type), None)

    def get_handler(self, action_type: str) -> Optional[ActionHandler]:
        """Get handler for action type."""
        return self._handlers.get(str(action_type))

    def list_actions(self) -> list[str]:
        """List all registered action types."""
        return list(self._handlers.keys())

    async def execute(
        self,
        action_type: str,
        payload: dict[str, Any],
        card: CardSnapshot,
    ) -> Any:
        """
        Execute an action.

        Args:
            action_type: Type of action to execute
            payload: Action parameters from the rule
            card: Card the action runs for

        Returns:
            Whatever the handler returns
        """
        handler = self._handlers.get(action_type)
        if not handler:
            raise ActionError(
                f"Unknown action type: {action_type}",
                action_type=action_type,
                card_id=card.card_id,
                category=ErrorCategory.PERMANENT,
                retryable=False,
            )

        params = self.interpolate(payload, card_context(card))
        return await handler(params, card)

    def interpolate(
        self,
        params: Any,
        context: dict[str, Any],
    ) -> Any:
        """Interpolate {{variable}} references in params."""

        def replace_vars(value: Any) -> Any:
            if isinstance(value, str):
                whole = _PLACEHOLDER.fullmatch(value.strip())
                if whole:
                    # A lone placeholder keeps the referenced value's type
                    resolved = self._get_nested_value(context, whole.group(1).split("."))
                    return value if resolved is None else resolved

                def substitute(match: re.Match) -> str:
                    resolved = self._get_nested_value(context, match.group(1).split("."))
                    return match.group(0) if resolved is None else str(resolved)

                return _PLACEHOLDER.sub(substitute, value)
            elif isinstance(value, dict):
                return {k: replace_vars(v) for k, v in value.items()}
            elif isinstance(value, list):
                return [replace_vars(v) for v in value]
            return value

        return replace_vars(params)

    def _get_nested_value(self, data: dict, path: list[str]) -> Any:
        """Get nested value from dict using path."""
        current = data
        for key in path:
            if isinstance(current, dict):
                current = current.get(key)
            else:
                return None
            if current is None:
                return None
        return current
