"""SQLite implementation of the execution repository."""

from __future__ import annotations

import asyncio
import sqlite3
from pathlib import Path
from typing import Any

from ..contracts import WorkflowDefinition
from ..execution.models import Execution, ExecutionStatus, WorkflowStats
from .repository import ExecutionRepository


class SQLiteExecutionRepository(ExecutionRepository):
    """Persist workflows and executions using SQLite.

    Each document is stored as its pydantic JSON next to the columns used for
    filtering.
    """

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._ensure_schema()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        cur = self._conn.cursor()
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflows (
                workflow_id TEXT PRIMARY KEY,
                version INTEGER NOT NULL,
                document TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                execution_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TEXT NOT NULL,
                document TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS workflow_stats (
                workflow_id TEXT PRIMARY KEY,
                document TEXT NOT NULL
            )
            """
        )
        self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        self._conn.commit()

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        cur = self._conn.cursor()
        cur.execute(query, params)
        return cur.fetchall()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Workflows
    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflows (workflow_id, version, document) VALUES (?, ?, ?)
            ON CONFLICT(workflow_id) DO UPDATE SET
                version = excluded.version, document = excluded.document
            """,
            workflow.id,
            workflow.version,
            workflow.model_dump_json(by_alias=True),
        )

    async def load_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT document FROM workflows WHERE workflow_id = ?",
            workflow_id,
        )
        if not row:
            return None
        return WorkflowDefinition.model_validate_json(row["document"])

    async def list_workflows(self) -> list[WorkflowDefinition]:
        rows = await asyncio.to_thread(
            self._fetchall, "SELECT document FROM workflows ORDER BY workflow_id"
        )
        return [WorkflowDefinition.model_validate_json(r["document"]) for r in rows]

    # ------------------------------------------------------------------
    # Executions
    async def save_execution(self, execution: Execution) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO executions (execution_id, workflow_id, status, created_at, document)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(execution_id) DO UPDATE SET
                status = excluded.status, document = excluded.document
            """,
            execution.execution_id,
            execution.workflow_id,
            execution.status.value,
            execution.created_at.isoformat(),
            execution.model_dump_json(by_alias=True),
        )

    async def load_execution(self, execution_id: str) -> Execution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT document FROM executions WHERE execution_id = ?",
            execution_id,
        )
        if not row:
            return None
        return Execution.model_validate_json(row["document"])

    async def list_executions(
        self,
        workflow_id: str | None = None,
        status: ExecutionStatus | None = None,
    ) -> list[Execution]:
        query = "SELECT document FROM executions"
        clauses: list[str] = []
        params: list[Any] = []
        if workflow_id is not None:
            clauses.append("workflow_id = ?")
            params.append(workflow_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(ExecutionStatus(status).value)
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [Execution.model_validate_json(r["document"]) for r in rows]

    # ------------------------------------------------------------------
    # Statistics
    async def get_workflow_stats(self, workflow_id: str) -> WorkflowStats | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT document FROM workflow_stats WHERE workflow_id = ?",
            workflow_id,
        )
        if not row:
            return None
        return WorkflowStats.model_validate_json(row["document"])

    async def save_workflow_stats(self, stats: WorkflowStats) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflow_stats (workflow_id, document) VALUES (?, ?)
            ON CONFLICT(workflow_id) DO UPDATE SET document = excluded.document
            """,
            stats.workflow_id,
            stats.model_dump_json(),
        )
