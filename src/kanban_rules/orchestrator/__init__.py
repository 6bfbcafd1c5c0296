"""Orchestration module: scheduling, dispatch, moves, supervision."""

from .supervisor import Supervisor
from .scheduler import ActionScheduler
from .executor import ActionEngine, ExecutionOutcome
from .coordinator import MoveOutcome, MoveStatus, WorkflowCoordinator

__all__ = [
    "Supervisor",
    "ActionScheduler",
    "ActionEngine",
    "ExecutionOutcome",
    "MoveOutcome",
    "MoveStatus",
    "WorkflowCoordinator",
]
