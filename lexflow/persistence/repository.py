"""Repository abstraction for workflow, execution and audit persistence."""

from __future__ import annotations

from typing import Optional, Protocol

from ..contracts import Execution, Workflow
from .models import AuditRecord


class WorkflowRepository(Protocol):
    """Protocol for persistence backends.

    The audit log is append-only: there is no way to change or remove a
    record once written.
    """

    async def save_workflow(self, workflow: Workflow) -> None:
        """Insert or replace a workflow definition."""

    async def get_workflow(
        self, workflow_id: str, tenant_id: Optional[str] = None
    ) -> Workflow | None:
        """Retrieve a workflow, optionally restricted to ``tenant_id``."""

    async def list_workflows(self, tenant_id: str) -> list[Workflow]:
        """Return the tenant's workflows, oldest first."""

    async def save_execution(self, execution: Execution) -> None:
        """Insert or replace an execution record."""

    async def get_execution(
        self, execution_id: str, tenant_id: Optional[str] = None
    ) -> Execution | None:
        """Retrieve an execution, optionally restricted to ``tenant_id``."""

    async def list_executions(
        self,
        tenant_id: str,
        workflow_id: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> list[Execution]:
        """Return executions matching the filters, oldest first."""

    async def append_audit(self, record: AuditRecord) -> None:
        """Append an audit record."""

    async def list_audit(
        self, tenant_id: str, entity_id: Optional[str] = None
    ) -> list[AuditRecord]:
        """Return audit records in insertion order."""
