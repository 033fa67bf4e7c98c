"""Registry of executions currently in flight in this process."""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .contracts import Execution
from .errors import ConcurrencyLimitError

logger = logging.getLogger(__name__)


@dataclass
class ExecutionHandle:
    """Tracker entry for one running execution."""

    execution: Execution
    stop_event: threading.Event = field(default_factory=threading.Event)
    stop_reason: Optional[str] = None
    task: Optional[asyncio.Task] = None

    @property
    def stop_requested(self) -> bool:
        return self.stop_event.is_set()


class ExecutionTracker:
    """Lock-guarded map of in-flight executions.

    One instance is shared by the engine, the scheduler and the service.
    ``max_concurrent`` caps executions across all workflows; a workflow may
    set a lower cap of its own.
    """

    def __init__(self, max_concurrent: int = 10) -> None:
        self.max_concurrent = max_concurrent
        self._lock = threading.Lock()
        self._handles: Dict[str, ExecutionHandle] = {}

    def register(
        self, execution: Execution, workflow_limit: Optional[int] = None
    ) -> ExecutionHandle:
        with self._lock:
            if execution.id in self._handles:
                return self._handles[execution.id]
            if len(self._handles) >= self.max_concurrent:
                raise ConcurrencyLimitError(
                    f"Maximum of {self.max_concurrent} concurrent executions reached"
                )
            if workflow_limit is not None:
                running = sum(
                    1
                    for h in self._handles.values()
                    if h.execution.workflow_id == execution.workflow_id
                )
                if running >= workflow_limit:
                    raise ConcurrencyLimitError(
                        f"Workflow {execution.workflow_id} already has {running} executions in progress"
                    )
            handle = ExecutionHandle(execution=execution)
            self._handles[execution.id] = handle
        logger.debug(f"Tracking execution {execution.id}")
        return handle

    def unregister(self, execution_id: str) -> None:
        with self._lock:
            self._handles.pop(execution_id, None)

    def attach_task(self, execution_id: str, task: asyncio.Task) -> None:
        with self._lock:
            handle = self._handles.get(execution_id)
            if handle is not None:
                handle.task = task

    def get(self, execution_id: str) -> Optional[ExecutionHandle]:
        with self._lock:
            return self._handles.get(execution_id)

    def active(self, tenant_id: Optional[str] = None) -> List[Execution]:
        with self._lock:
            return [
                h.execution
                for h in self._handles.values()
                if tenant_id is None or h.execution.tenant_id == tenant_id
            ]

    def active_for_workflow(self, workflow_id: str) -> List[Execution]:
        with self._lock:
            return [
                h.execution
                for h in self._handles.values()
                if h.execution.workflow_id == workflow_id
            ]

    def active_for_entity(self, tenant_id: str, entity_id: str) -> List[Execution]:
        with self._lock:
            return [
                h.execution
                for h in self._handles.values()
                if h.execution.tenant_id == tenant_id and h.execution.entity_id == entity_id
            ]

    def request_stop(self, workflow_id: str, reason: str) -> int:
        """Signal every execution of ``workflow_id`` to stop at its next step boundary."""
        with self._lock:
            handles = [
                h for h in self._handles.values() if h.execution.workflow_id == workflow_id
            ]
            for handle in handles:
                handle.stop_reason = reason
                handle.stop_event.set()
        if handles:
            logger.info(f"Requested stop of {len(handles)} executions of workflow {workflow_id}")
        return len(handles)

    def tasks(self) -> List[asyncio.Task]:
        with self._lock:
            return [h.task for h in self._handles.values() if h.task is not None]

    def __len__(self) -> int:
        with self._lock:
            return len(self._handles)
