"""PostgreSQL implementation of the repository."""

from __future__ import annotations

import json
from typing import Any, Optional

import asyncpg

from ..contracts import Execution, Workflow
from .models import AuditRecord
from .repository import WorkflowRepository


def _load(value: Any) -> Any:
    # asyncpg hands JSONB back as text unless a codec is registered
    return json.loads(value) if isinstance(value, str) else value


class PostgresWorkflowRepository(WorkflowRepository):
    """Persist workflows, executions and the audit log using PostgreSQL."""

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
            CREATE TABLE IF NOT EXISTS lexflow_workflows (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                name TEXT NOT NULL,
                state TEXT NOT NULL,
                created_at TIMESTAMPTZ NOT NULL,
                document JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS lexflow_executions (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                workflow_id TEXT NOT NULL,
                entity_id TEXT,
                state TEXT NOT NULL,
                started_at TIMESTAMPTZ NOT NULL,
                document JSONB NOT NULL
            )
            """
        )
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS lexflow_audit_log (
                seq BIGSERIAL PRIMARY KEY,
                id TEXT NOT NULL UNIQUE,
                tenant_id TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                action TEXT NOT NULL,
                actor_id TEXT,
                timestamp TIMESTAMPTZ NOT NULL,
                details JSONB NOT NULL
            )
            """
        )

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO lexflow_workflows (id, tenant_id, name, state, created_at, document)
                VALUES ($1, $2, $3, $4, $5, $6)
                ON CONFLICT (id) DO UPDATE SET
                    name = EXCLUDED.name,
                    state = EXCLUDED.state,
                    document = EXCLUDED.document
                """,
                workflow.id,
                workflow.tenant_id,
                workflow.name,
                workflow.state.value,
                workflow.created_at,
                workflow.model_dump_json(),
            )
        finally:
            await conn.close()

    async def get_workflow(
        self, workflow_id: str, tenant_id: Optional[str] = None
    ) -> Workflow | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT tenant_id, document FROM lexflow_workflows WHERE id = $1",
                workflow_id,
            )
        finally:
            await conn.close()
        if not row or (tenant_id is not None and row["tenant_id"] != tenant_id):
            return None
        return Workflow.model_validate(_load(row["document"]))

    async def list_workflows(self, tenant_id: str) -> list[Workflow]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT document FROM lexflow_workflows WHERE tenant_id = $1 ORDER BY created_at",
                tenant_id,
            )
        finally:
            await conn.close()
        return [Workflow.model_validate(_load(r["document"])) for r in rows]

    async def save_execution(self, execution: Execution) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO lexflow_executions
                    (id, tenant_id, workflow_id, entity_id, state, started_at, document)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (id) DO UPDATE SET
                    state = EXCLUDED.state,
                    document = EXCLUDED.document
                """,
                execution.id,
                execution.tenant_id,
                execution.workflow_id,
                execution.entity_id,
                execution.state.value,
                execution.started_at,
                execution.model_dump_json(),
            )
        finally:
            await conn.close()

    async def get_execution(
        self, execution_id: str, tenant_id: Optional[str] = None
    ) -> Execution | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT tenant_id, document FROM lexflow_executions WHERE id = $1",
                execution_id,
            )
        finally:
            await conn.close()
        if not row or (tenant_id is not None and row["tenant_id"] != tenant_id):
            return None
        return Execution.model_validate(_load(row["document"]))

    async def list_executions(
        self,
        tenant_id: str,
        workflow_id: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> list[Execution]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT document FROM lexflow_executions
                WHERE tenant_id = $1
                  AND ($2::TEXT IS NULL OR workflow_id = $2)
                  AND ($3::TEXT IS NULL OR entity_id = $3)
                ORDER BY started_at
                """,
                tenant_id,
                workflow_id,
                entity_id,
            )
        finally:
            await conn.close()
        return [Execution.model_validate(_load(r["document"])) for r in rows]

    async def append_audit(self, record: AuditRecord) -> None:
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO lexflow_audit_log
                    (id, tenant_id, entity_id, action, actor_id, timestamp, details)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                """,
                record.id,
                record.tenant_id,
                record.entity_id,
                record.action,
                record.actor_id,
                record.timestamp,
                json.dumps(record.details, default=str),
            )
        finally:
            await conn.close()

    async def list_audit(
        self, tenant_id: str, entity_id: Optional[str] = None
    ) -> list[AuditRecord]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                """
                SELECT id, tenant_id, entity_id, action, actor_id, timestamp, details
                FROM lexflow_audit_log
                WHERE tenant_id = $1 AND ($2::TEXT IS NULL OR entity_id = $2)
                ORDER BY seq
                """,
                tenant_id,
                entity_id,
            )
        finally:
            await conn.close()
        return [
            AuditRecord(
                id=r["id"],
                tenant_id=r["tenant_id"],
                entity_id=r["entity_id"],
                action=r["action"],
                actor_id=r["actor_id"],
                timestamp=r["timestamp"],
                details=_load(r["details"]),
            )
            for r in rows
        ]
