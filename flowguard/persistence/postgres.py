"""PostgreSQL implementation of the execution repository."""

from __future__ import annotations

from typing import Any

import asyncpg

from ..contracts import WorkflowDefinition
from ..execution.models import Execution, ExecutionStatus, WorkflowStats
from .repository import ExecutionRepository


class PostgresExecutionRepository(ExecutionRepository):
    """Persist workflows and executions using PostgreSQL JSONB documents."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS flowguard_workflows (
                workflow_id TEXT PRIMARY KEY,
                version INTEGER NOT NULL,
                document JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS flowguard_executions (
                execution_id TEXT PRIMARY KEY,
                workflow_id TEXT NOT NULL,
                status TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                document JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS flowguard_workflow_stats (
                workflow_id TEXT PRIMARY KEY,
                document JSONB NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    # Workflows
    async def save_workflow(self, workflow: WorkflowDefinition) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO flowguard_workflows (workflow_id, version, document)
                VALUES ($1, $2, $3::jsonb)
                ON CONFLICT (workflow_id) DO UPDATE SET
                    version = EXCLUDED.version, document = EXCLUDED.document
                """,
                workflow.id,
                workflow.version,
                workflow.model_dump_json(by_alias=True),
            )
        finally:
            await conn.close()

    async def load_workflow(self, workflow_id: str) -> WorkflowDefinition | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT document FROM flowguard_workflows WHERE workflow_id = $1",
                workflow_id,
            )
        finally:
            await conn.close()
        if not row:
            return None
        return WorkflowDefinition.model_validate_json(row["document"])

    async def list_workflows(self) -> list[WorkflowDefinition]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT document FROM flowguard_workflows ORDER BY workflow_id"
            )
        finally:
            await conn.close()
        return [WorkflowDefinition.model_validate_json(r["document"]) for r in rows]

    # ------------------------------------------------------------------
    # Executions
    async def save_execution(self, execution: Execution) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO flowguard_executions
                    (execution_id, workflow_id, status, created_at, document)
                VALUES ($1, $2, $3, $4, $5::jsonb)
                ON CONFLICT (execution_id) DO UPDATE SET
                    status = EXCLUDED.status, document = EXCLUDED.document
                """,
                execution.execution_id,
                execution.workflow_id,
                execution.status.value,
                execution.created_at,
                execution.model_dump_json(by_alias=True),
            )
        finally:
            await conn.close()

    async def load_execution(self, execution_id: str) -> Execution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT document FROM flowguard_executions WHERE execution_id = $1",
                execution_id,
            )
        finally:
            await conn.close()
        if not row:
            return None
        return Execution.model_validate_json(row["document"])

    async def list_executions(
        self,
        workflow_id: str | None = None,
        status: ExecutionStatus | None = None,
    ) -> list[Execution]:
        query = "SELECT document FROM flowguard_executions"
        clauses: list[str] = []
        params: list[Any] = []
        if workflow_id is not None:
            params.append(workflow_id)
            clauses.append(f"workflow_id = ${len(params)}")
        if status is not None:
            params.append(ExecutionStatus(status).value)
            clauses.append(f"status = ${len(params)}")
        if clauses:
            query += " WHERE " + " AND ".join(clauses)
        query += " ORDER BY created_at"

        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [Execution.model_validate_json(r["document"]) for r in rows]

    # ------------------------------------------------------------------
    # Statistics
    async def get_workflow_stats(self, workflow_id: str) -> WorkflowStats | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT document FROM flowguard_workflow_stats WHERE workflow_id = $1",
                workflow_id,
            )
        finally:
            await conn.close()
        if not row:
            return None
        return WorkflowStats.model_validate_json(row["document"])

    async def save_workflow_stats(self, stats: WorkflowStats) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO flowguard_workflow_stats (workflow_id, document)
                VALUES ($1, $2::jsonb)
                ON CONFLICT (workflow_id) DO UPDATE SET document = EXCLUDED.document
                """,
                stats.workflow_id,
                stats.model_dump_json(),
            )
        finally:
            await conn.close()
