"""Execution lifecycle transitions.

Every method validates the current status first and raises
``InvalidStateError`` without touching the execution when the transition is
not allowed. Terminal executions accept no further writes.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional

from ..contracts import utcnow
from ..errors import ErrorKind, InvalidStateError, error_kind_of
from .models import (
    Checkpoint,
    ErrorDetails,
    Execution,
    ExecutionStatus,
    Intervention,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]

NON_TERMINAL = (
    ExecutionStatus.PENDING,
    ExecutionStatus.RUNNING,
    ExecutionStatus.PAUSED,
)


def _elapsed_ms(start: datetime, end: datetime) -> float:
    return max(0.0, (end - start).total_seconds() * 1000)


class ExecutionStateMachine:
    """Owns the status, timing, checkpoint and metric fields of an execution."""

    def __init__(self, clock: Optional[Clock] = None) -> None:
        self._clock = clock or utcnow

    def now(self) -> datetime:
        return self._clock()

    # ------------------------------------------------------------------
    # Guards
    @staticmethod
    def _require(
        execution: Execution, allowed: Iterable[ExecutionStatus], operation: str
    ) -> None:
        if execution.status not in tuple(allowed):
            raise InvalidStateError(
                f"Cannot {operation} execution {execution.execution_id} "
                f"in status {execution.status.value}",
                status=execution.status.value,
                operation=operation,
            )

    def _touch(self, execution: Execution, now: datetime) -> None:
        execution.updated_at = now

    def _finish(self, execution: Execution, status: ExecutionStatus, now: datetime) -> None:
        if execution.status == ExecutionStatus.PAUSED and execution.paused_at:
            execution.paused_ms += _elapsed_ms(execution.paused_at, now)
            execution.paused_at = None
        execution.status = status
        execution.completed_at = now
        if execution.duration is None:
            execution.duration = (
                _elapsed_ms(execution.started_at, now) if execution.started_at else 0.0
            )
        execution.current_node = None
        self._touch(execution, now)
        logger.info(
            f"Execution {execution.execution_id} reached {status.value} "
            f"after {execution.duration:.1f}ms"
        )

    # ------------------------------------------------------------------
    # Transitions
    def start(self, execution: Execution) -> None:
        self._require(execution, [ExecutionStatus.PENDING], "start")
        now = self.now()
        execution.status = ExecutionStatus.RUNNING
        execution.started_at = now
        self._touch(execution, now)

    def pause(
        self,
        execution: Execution,
        reason: Optional[str] = None,
        requested_by: Optional[str] = None,
        gate: bool = False,
        node: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[Intervention]:
        """Pause a running execution, opening an intervention when ``gate`` is set.

        A gate may also be opened on an execution that is already paused by an
        external request; it then stays paused until the decision arrives.
        """
        allowed = [ExecutionStatus.RUNNING]
        if gate:
            allowed.append(ExecutionStatus.PAUSED)
        self._require(execution, allowed, "pause")
        if gate and execution.open_intervention() is not None:
            raise InvalidStateError(
                f"Execution {execution.execution_id} already has an open intervention",
                status=execution.status.value,
                operation="pause",
            )
        now = self.now()
        intervention = None
        if gate:
            intervention = Intervention(
                node=node,
                requested_at=now,
                requested_by=requested_by,
                metadata=dict(metadata or {}),
            )
            execution.human_interventions.append(intervention)
        if execution.status != ExecutionStatus.PAUSED:
            execution.status = ExecutionStatus.PAUSED
            execution.paused_at = now
        if reason:
            execution.pause_reason = reason
        self._touch(execution, now)
        return intervention

    def resume(self, execution: Execution) -> None:
        self._require(execution, [ExecutionStatus.PAUSED], "resume")
        pending = execution.open_intervention()
        if pending is not None:
            raise InvalidStateError(
                f"Execution {execution.execution_id} has an open intervention "
                f"{pending.intervention_id} awaiting a decision",
                status=execution.status.value,
                operation="resume",
                details={"intervention_id": pending.intervention_id},
            )
        now = self.now()
        if execution.paused_at:
            execution.paused_ms += _elapsed_ms(execution.paused_at, now)
        execution.paused_at = None
        execution.status = ExecutionStatus.RUNNING
        execution.pause_reason = None
        self._touch(execution, now)

    def complete(self, execution: Execution, result: Optional[Dict[str, Any]]) -> None:
        self._require(execution, [ExecutionStatus.RUNNING], "complete")
        execution.final_result = result
        self._finish(execution, ExecutionStatus.COMPLETED, self.now())

    def fail(
        self,
        execution: Execution,
        error: Any,
        node: Optional[str] = None,
        kind: Optional[ErrorKind] = None,
    ) -> None:
        self._require(execution, NON_TERMINAL, "fail")
        if isinstance(error, BaseException):
            kind = kind or error_kind_of(error)
        message = str(error)
        execution.error_message = message
        execution.error_details = ErrorDetails(
            type=(kind or ErrorKind.AGENT_ERROR).value, message=message, node=node
        )
        self._finish(execution, ExecutionStatus.FAILED, self.now())

    def cancel(self, execution: Execution) -> None:
        self._require(execution, NON_TERMINAL, "cancel")
        self._finish(execution, ExecutionStatus.CANCELLED, self.now())

    # ------------------------------------------------------------------
    # Bookkeeping
    def add_checkpoint(
        self,
        execution: Execution,
        node: Optional[str],
        message: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Checkpoint:
        self._require(execution, NON_TERMINAL, "checkpoint")
        now = self.now()
        # Keep timestamps monotonic even if the clock steps backwards.
        if execution.checkpoints and execution.checkpoints[-1].timestamp > now:
            now = execution.checkpoints[-1].timestamp
        checkpoint = Checkpoint(
            timestamp=now, node=node, message=message, metadata=dict(metadata or {})
        )
        execution.checkpoints.append(checkpoint)
        self._touch(execution, now)
        return checkpoint

    def record_node(
        self,
        execution: Execution,
        succeeded: bool,
        agent_calls: int = 1,
        api_calls: int = 0,
    ) -> None:
        """Count one finished node; counters only ever grow."""
        self._require(execution, NON_TERMINAL, "record metrics")
        metrics = execution.metrics
        if metrics.completed_nodes + metrics.failed_nodes >= metrics.total_nodes:
            raise InvalidStateError(
                f"Execution {execution.execution_id} already accounted for all "
                f"{metrics.total_nodes} nodes",
                status=execution.status.value,
                operation="record metrics",
            )
        if succeeded:
            metrics.completed_nodes += 1
        else:
            metrics.failed_nodes += 1
        metrics.agent_calls += max(0, agent_calls)
        metrics.api_calls += max(0, api_calls)
        self._touch(execution, self.now())

    def submit_decision(
        self,
        execution: Execution,
        intervention_id: str,
        decision: str,
        approved_by: str,
        comments: Optional[str] = None,
    ) -> Intervention:
        self._require(execution, [ExecutionStatus.PAUSED], "submit decision for")
        intervention = execution.open_intervention()
        if intervention is None or intervention.intervention_id != intervention_id:
            raise InvalidStateError(
                f"No open intervention {intervention_id} on execution "
                f"{execution.execution_id}",
                status=execution.status.value,
                operation="submit decision",
                details={"intervention_id": intervention_id},
            )
        now = self.now()
        intervention.decision = decision
        intervention.approved_by = approved_by
        intervention.comments = comments
        intervention.completed_at = now
        self._touch(execution, now)
        return intervention

    # ------------------------------------------------------------------
    def running_ms(self, execution: Execution) -> float:
        """Time spent running so far, excluding paused periods."""
        if execution.started_at is None:
            return 0.0
        end = execution.completed_at or self.now()
        paused = execution.paused_ms
        if execution.paused_at is not None:
            paused += _elapsed_ms(execution.paused_at, end)
        return max(0.0, _elapsed_ms(execution.started_at, end) - paused)
