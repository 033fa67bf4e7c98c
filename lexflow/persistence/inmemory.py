"""In-memory implementation of the repository."""

from __future__ import annotations

from typing import Dict, List, Optional

from ..contracts import Execution, Workflow
from .models import AuditRecord
from .repository import WorkflowRepository


class InMemoryWorkflowRepository(WorkflowRepository):
    """Store workflows, executions and audit records in local memory.

    Useful for tests or when no database is configured. Stored models are
    copies, so later changes by callers are only visible after another save.
    """

    def __init__(self) -> None:
        self._workflows: Dict[str, Workflow] = {}
        self._executions: Dict[str, Execution] = {}
        self._audit: List[AuditRecord] = []

    # ------------------------------------------------------------------
    async def save_workflow(self, workflow: Workflow) -> None:
        self._workflows[workflow.id] = workflow.model_copy(deep=True)

    async def get_workflow(
        self, workflow_id: str, tenant_id: Optional[str] = None
    ) -> Workflow | None:
        wf = self._workflows.get(workflow_id)
        if wf is None or (tenant_id is not None and wf.tenant_id != tenant_id):
            return None
        return wf.model_copy(deep=True)

    async def list_workflows(self, tenant_id: str) -> list[Workflow]:
        workflows = [w for w in self._workflows.values() if w.tenant_id == tenant_id]
        workflows.sort(key=lambda w: w.created_at)
        return [w.model_copy(deep=True) for w in workflows]

    async def save_execution(self, execution: Execution) -> None:
        self._executions[execution.id] = execution.model_copy(deep=True)

    async def get_execution(
        self, execution_id: str, tenant_id: Optional[str] = None
    ) -> Execution | None:
        ex = self._executions.get(execution_id)
        if ex is None or (tenant_id is not None and ex.tenant_id != tenant_id):
            return None
        return ex.model_copy(deep=True)

    async def list_executions(
        self,
        tenant_id: str,
        workflow_id: Optional[str] = None,
        entity_id: Optional[str] = None,
    ) -> list[Execution]:
        executions = [
            e
            for e in self._executions.values()
            if e.tenant_id == tenant_id
            and (workflow_id is None or e.workflow_id == workflow_id)
            and (entity_id is None or e.entity_id == entity_id)
        ]
        executions.sort(key=lambda e: e.started_at)
        return [e.model_copy(deep=True) for e in executions]

    async def append_audit(self, record: AuditRecord) -> None:
        self._audit.append(record)

    async def list_audit(
        self, tenant_id: str, entity_id: Optional[str] = None
    ) -> list[AuditRecord]:
        return [
            r
            for r in self._audit
            if r.tenant_id == tenant_id and (entity_id is None or r.entity_id == entity_id)
        ]
