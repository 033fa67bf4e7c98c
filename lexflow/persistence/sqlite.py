"""SQLite implementation of the repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
from pathlib import Path
from typing import Any, Optional

from ..contracts import Execution, Workflow
from .models import AuditRecord
from .repository import WorkflowRepository


class SQLiteWorkflowRepository(WorkflowRepository):
    """Persist workflows, executions and the audit log using SQLite.

    Workflows and executions are stored as JSON documents next to the columns
    used for filtering.
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
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                name TEXT NOT NULL,
                state TEXT NOT NULL,
                created_at TEXT NOT NULL,
                document TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS executions (
                id TEXT PRIMARY KEY,
                tenant_id TEXT NOT NULL,
                workflow_id TEXT NOT NULL,
                entity_id TEXT,
                state TEXT NOT NULL,
                started_at TEXT NOT NULL,
                document TEXT NOT NULL
            )
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS audit_log (
                seq INTEGER PRIMARY KEY AUTOINCREMENT,
                id TEXT NOT NULL UNIQUE,
                tenant_id TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                action TEXT NOT NULL,
                actor_id TEXT,
                timestamp TEXT NOT NULL,
                details TEXT NOT NULL
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

    # ------------------------------------------------------------------
    # Repository API
    async def save_workflow(self, workflow: Workflow) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO workflows (id, tenant_id, name, state, created_at, document)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name = excluded.name,
                state = excluded.state,
                document = excluded.document
            """,
            workflow.id,
            workflow.tenant_id,
            workflow.name,
            workflow.state.value,
            workflow.created_at.isoformat(),
            workflow.model_dump_json(),
        )

    async def get_workflow(
        self, workflow_id: str, tenant_id: Optional[str] = None
    ) -> Workflow | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT tenant_id, document FROM workflows WHERE id = ?", workflow_id
        )
        if not row or (tenant_id is not None and row["tenant_id"] != tenant_id):
            return None
        return Workflow.model_validate_json(row["document"])

    async def list_workflows(self, tenant_id: str) -> list[Workflow]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT document FROM workflows WHERE tenant_id = ? ORDER BY created_at",
            tenant_id,
        )
        return [Workflow.model_validate_json(r["document"]) for r in rows]

    async def save_execution(self, execution: Execution) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO executions (id, tenant_id, workflow_id, entity_id, state, started_at, document)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                state = excluded.state,
                document = excluded.document
            """,
            execution.id,
            execution.tenant_id,
            execution.workflow_id,
            execution.entity_id,
            execution.state.value,
            execution.started_at.isoformat(),
            execution.model_dump_json(),
        )

    async def get_execution(
        self, execution_id: str, tenant_id: Optional[str] = None
    ) -> Execution | None:
        row = await asyncio.to_thread(
            self._fetchone,
            "SELECT tenant_id, document FROM executions WHERE id = ?",
            execution_id,
        )
        if not row or (tenant_id is not None and row["tenant_id"] != tenant_id):
            return None
        return Execution.model_validate_json(row["document"])

    async def list_executions(
        self,
        tenant_id: str,
        workflow_id: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> list[Execution]:
        query = "SELECT document FROM executions WHERE tenant_id = ?"
        params: list[Any] = [tenant_id]
        if workflow_id is not None:
            query += " AND workflow_id = ?"
            params.append(workflow_id)
        if entity_id is not None:
            query += " AND entity_id = ?"
            params.append(entity_id)
        query += " ORDER BY started_at"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [Execution.model_validate_json(r["document"]) for r in rows]

    async def append_audit(self, record: AuditRecord) -> None:
        await asyncio.to_thread(
            self._execute,
            """
            INSERT INTO audit_log (id, tenant_id, entity_id, action, actor_id, timestamp, details)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            record.id,
            record.tenant_id,
            record.entity_id,
            record.action,
            record.actor_id,
            record.timestamp.isoformat(),
            json.dumps(record.details, default=str),
        )

    async def list_audit(
        self, tenant_id: str, entity_id: Optional[str] = None
    ) -> list[AuditRecord]:
        query = (
            "SELECT id, tenant_id, entity_id, action, actor_id, timestamp, details "
            "FROM audit_log WHERE tenant_id = ?"
        )
        params: list[Any] = [tenant_id]
        if entity_id is not None:
            query += " AND entity_id = ?"
            params.append(entity_id)
        query += " ORDER BY seq"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [
            AuditRecord(
                id=r["id"],
                tenant_id=r["tenant_id"],
                entity_id=r["entity_id"],
                action=r["action"],
                actor_id=r["actor_id"],
                timestamp=r["timestamp"],
                details=json.loads(r["details"]),
            )
            for r in rows
        ]
