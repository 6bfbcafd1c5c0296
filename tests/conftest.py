"""Shared fixtures for engine tests."""

import asyncio
from datetime import datetime, timezone
from typing import Any, Optional

import pytest

from kanban_rules.core.models import CardSnapshot
from kanban_rules.core.state import ExecutionStateStore
from kanban_rules.core.store import RuleStore
from kanban_rules.orchestrator.coordinator import WorkflowCoordinator
from kanban_rules.orchestrator.executor import ActionEngine
from kanban_rules.orchestrator.scheduler import ActionScheduler
from kanban_rules.rules.validation import ValidationEngine


T0 = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


def make_card(card_id: str = "card-1", column_id: str = "col-a", **kwargs: Any) -> CardSnapshot:
    return CardSnapshot(card_id=card_id, column_id=column_id, **kwargs)


class RecordingExecutor:
    """ActionExecutor double that records calls and fails or stalls on demand."""

    def __init__(self, fail_on: tuple = (), delays: Optional[dict[str, float]] = None):
        self.fail_on = set(fail_on)
        self.delays = delays or {}
        self.calls: list[tuple[str, dict, str]] = []

    async def execute(self, action_type: str, payload: dict, card: CardSnapshot) -> None:
        self.calls.append((action_type, payload, card.card_id))
        if action_type in self.delays:
            await asyncio.sleep(self.delays[action_type])
        if action_type in self.fail_on:
            raise RuntimeError(f"{action_type} exploded")

    @property
    def types(self) -> list[str]:
        return [call[0] for call in self.calls]


class InMemoryCards:
    """CardProvider double."""

    def __init__(self, *cards: CardSnapshot):
        self.cards = {card.card_id: card for card in cards}

    async def get_card(self, card_id: str) -> Optional[CardSnapshot]:
        return self.cards.get(card_id)


class RecordingBoard:
    """BoardGateway double."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.moves: list[tuple[str, Optional[str], str]] = []

    async def commit_move(self, card: CardSnapshot, from_column_id: Optional[str], to_column_id: str) -> None:
        if self.fail:
            raise ConnectionError("board unavailable")
        self.moves.append((card.card_id, from_column_id, to_column_id))


@pytest.fixture
async def rule_store(tmp_path):
    store = RuleStore(str(tmp_path / "rules.db"))
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
async def state_store(tmp_path):
    store = ExecutionStateStore(str(tmp_path / "state.db"))
    await store.initialize()
    yield store
    await store.close()


@pytest.fixture
def scheduler(rule_store, state_store):
    return ActionScheduler(rule_store, state_store)


@pytest.fixture
def executor():
    return RecordingExecutor()


@pytest.fixture
def engine(rule_store, scheduler, executor, state_store):
    return ActionEngine(
        rule_store,
        scheduler,
        executor,
        history=state_store,
        dispatch_timeout_seconds=0.5,
    )


@pytest.fixture
def board():
    return RecordingBoard()


@pytest.fixture
def coordinator(rule_store, engine, scheduler, board, state_store):
    return WorkflowCoordinator(
        ValidationEngine(rule_store),
        engine,
        scheduler,
        board=board,
        history=state_store,
    )
