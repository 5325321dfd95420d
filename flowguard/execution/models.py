"""Data models for executions and their bookkeeping."""

from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..contracts import WorkflowDefinition, utcnow
from ..errors import ErrorKind


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)


class Checkpoint(BaseModel):
    """Immutable progress record appended during execution."""

    timestamp: datetime = Field(default_factory=utcnow)
    node: Optional[str] = None
    message: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class Intervention(BaseModel):
    """Human decision requested while an execution is paused."""

    intervention_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    node: Optional[str] = None
    requested_at: datetime = Field(default_factory=utcnow)
    requested_by: Optional[str] = None
    completed_at: Optional[datetime] = None
    approved_by: Optional[str] = None
    decision: Optional[str] = None
    comments: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @property
    def is_open(self) -> bool:
        return self.completed_at is None


class ExecutionMetrics(BaseModel):
    total_nodes: int = 0
    completed_nodes: int = 0
    failed_nodes: int = 0
    agent_calls: int = 0
    api_calls: int = 0


class ErrorDetails(BaseModel):
    type: str
    message: str
    node: Optional[str] = None


class Execution(BaseModel):
    """One run of a workflow definition.

    Status and timing fields are written only through
    ``ExecutionStateMachine``; agents contribute to ``current_state`` through
    the results they return.
    """

    execution_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    workflow_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    initial_state: Dict[str, Any] = Field(default_factory=dict)
    current_state: Dict[str, Any] = Field(default_factory=dict)
    final_result: Optional[Dict[str, Any]] = None
    checkpoints: List[Checkpoint] = Field(default_factory=list)
    metrics: ExecutionMetrics = Field(default_factory=ExecutionMetrics)
    human_interventions: List[Intervention] = Field(default_factory=list)
    error_message: Optional[str] = None
    error_details: Optional[ErrorDetails] = None
    started_at: Optional[datetime] = None
    paused_at: Optional[datetime] = None
    pause_reason: Optional[str] = None
    completed_at: Optional[datetime] = None
    duration: Optional[float] = Field(
        default=None, description="Milliseconds from start to terminal status"
    )
    paused_ms: float = 0.0
    initiated_by: str = "system"
    tenant_id: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)
    config_snapshot: Optional[WorkflowDefinition] = None
    current_node: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def open_intervention(self) -> Optional[Intervention]:
        """Return the undecided intervention, if any."""
        return next((i for i in self.human_interventions if i.is_open), None)

    def to_json(self) -> str:
        return self.model_dump_json()

    @classmethod
    def from_json(cls, data: str) -> "Execution":
        return cls.model_validate_json(data)


class ExecutionSummary(BaseModel):
    execution_id: str
    workflow_id: str
    status: ExecutionStatus
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration: Optional[float] = None
    initiated_by: str
    metrics: ExecutionMetrics
    current_node: Optional[str] = None
    error_message: Optional[str] = None


class NodeOutcome(BaseModel):
    """Result of invoking one node, returned instead of raising."""

    node: str
    ok: bool
    result: Optional[Dict[str, Any]] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    attempts: int = 1
    api_calls: int = 0


class WorkflowStats(BaseModel):
    """Aggregate statistics over the terminal executions of a workflow."""

    workflow_id: str
    execution_count: int = 0
    average_execution_time_ms: float = 0.0
    success_rate: float = 0.0
    last_executed_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def record(
        self,
        duration_ms: Optional[float],
        succeeded: bool,
        executed_at: datetime,
        error: Optional[str] = None,
    ) -> None:
        """Fold one terminal execution into the running aggregates."""
        self.execution_count += 1
        n = self.execution_count
        if duration_ms is not None:
            self.average_execution_time_ms += (
                duration_ms - self.average_execution_time_ms
            ) / n
        weight = 1 / n
        self.success_rate = (1 - weight) * self.success_rate + weight * (
            1.0 if succeeded else 0.0
        )
        self.last_executed_at = executed_at
        if error:
            self.last_error = error


__all__ = [
    "Checkpoint",
    "ErrorDetails",
    "Execution",
    "ExecutionMetrics",
    "ExecutionStatus",
    "ExecutionSummary",
    "Intervention",
    "NodeOutcome",
    "TERMINAL_STATUSES",
    "WorkflowStats",
]
