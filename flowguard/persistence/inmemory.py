"""In-memory implementation of the execution repository."""

from __future__ import annotations

from typing import Dict

from ..contracts import WorkflowDefinition
from ..execution.models import Execution, ExecutionStatus, WorkflowStats
from .repository import ExecutionRepository


class InMemoryExecutionRepository(ExecutionRepository):
    """Store workflows and executions in local memory.

    Useful for tests or when no database is configured. Documents are copied
    on the way in and out so callers never share live objects with the store.
    Data is not persisted across process restarts.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, WorkflowDefinition] = {}
        self._executions: Dict[str, Execution] = {}
        self._stats: Dict[str, WorkflowStats] = {}

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        self._workflows[workflow.id] = workflow.model_copy(deep=True)

    async def load_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        workflow = self._workflows.get(workflow_id)
        return workflow.model_copy(deep=True) if workflow else None

    async def list_workflows(self) -> list[WorkflowDefinition]:
        return [w.model_copy(deep=True) for w in self._workflows.values()]

    # ------------------------------------------------------------------
    async def save_execution(self, execution: Execution) -> None:
        self._executions[execution.execution_id] = execution.model_copy(deep=True)

    async def load_execution(self, execution_id: str) -> Execution | None:
        execution = self._executions.get(execution_id)
        return execution.model_copy(deep=True) if execution else None

    async def list_executions(
        self,
        workflow_id: str | None = None,
        status: ExecutionStatus | None = None,
    ) -> list[Execution]:
        executions = [
            e
            for e in self._executions.values()
            if (workflow_id is None or e.workflow_id == workflow_id)
            and (status is None or e.status == status)
        ]
        executions.sort(key=lambda e: e.created_at)
        return [e.model_copy(deep=True) for e in executions]

    # ------------------------------------------------------------------
    async def get_workflow_stats(self, workflow_id: str) -> WorkflowStats | None:
        stats = self._stats.get(workflow_id)
        return stats.model_copy(deep=True) if stats else None

    async def save_workflow_stats(self, stats: WorkflowStats) -> None:
        self._stats[stats.workflow_id] = stats.model_copy(deep=True)
