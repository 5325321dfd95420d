"""Execution state machine, routing and the orchestrating engine."""

from .engine import ExecutionEngine
from .graph import ensure_valid, find_cycle, validate_workflow
from .models import (
    Checkpoint,
    ErrorDetails,
    Execution,
    ExecutionMetrics,
    ExecutionStatus,
    ExecutionSummary,
    Intervention,
    NodeOutcome,
    WorkflowStats,
)
from .router import WorkflowRouter, get_nested, set_nested
from .state import ExecutionStateMachine

__all__ = [
    "Checkpoint",
    "ErrorDetails",
    "Execution",
    "ExecutionEngine",
    "ExecutionMetrics",
    "ExecutionStateMachine",
    "ExecutionStatus",
    "ExecutionSummary",
    "Intervention",
    "NodeOutcome",
    "WorkflowRouter",
    "WorkflowStats",
    "ensure_valid",
    "find_cycle",
    "get_nested",
    "set_nested",
    "validate_workflow",
]
