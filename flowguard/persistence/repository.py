"""Repository abstraction for workflow and execution persistence."""

from __future__ import annotations

from typing import Protocol

from ..contracts import WorkflowDefinition
from ..execution.models import Execution, ExecutionStatus, WorkflowStats


class ExecutionRepository(Protocol):
    """Protocol for persistence backends.

    ``load_*`` return ``None`` when the document does not exist. Saves are
    upserts: the last writer wins for a whole document.
    """

    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        """Persist a workflow definition."""

    async def load_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        """Retrieve a workflow definition by id."""

    async def list_workflows(self) -> list[WorkflowDefinition]:
        """Return all persisted workflow definitions."""

    async def save_execution(self, execution: Execution) -> None:
        """Persist the full execution document."""

    async def load_execution(self, execution_id: str) -> Execution | None:
        """Retrieve an execution by id."""

    async def list_executions(
        self,
        workflow_id: str | None = None,
        status: ExecutionStatus | None = None,
    ) -> list[Execution]:
        """Return executions, optionally filtered, oldest first."""

    async def get_workflow_stats(self, workflow_id: str) -> WorkflowStats | None:
        """Retrieve aggregate statistics for a workflow."""

    async def save_workflow_stats(self, stats: WorkflowStats) -> None:
        """Persist aggregate statistics for a workflow."""
