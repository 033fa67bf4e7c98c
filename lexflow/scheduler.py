"""Timer wheel for scheduled triggers, deferred runs and action deadlines.

Every timer is one heap entry ``(due_at, seq, key)``. Cancelling or
re-arming a key only updates the live entry map; stale heap entries are
skipped when popped.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from croniter import croniter

from .audit import AuditAction, AuditLog
from .collaborators import NotificationSender
from .config import SchedulerConfig
from .contracts import (
    Execution,
    ExecutionState,
    PendingAction,
    PendingState,
    StepState,
    Trigger,
    Workflow,
    WorkflowState,
    utcnow,
)
from .engine import ExecutionEngine
from .errors import ConcurrencyLimitError, ConditionError, NotFoundError
from .persistence import WorkflowRepository

logger = logging.getLogger(__name__)

TRIGGER = "trigger"
RUN = "run"
TIMEOUT = "timeout"


@dataclass
class TimerEntry:
    key: str
    kind: str
    due_at: datetime
    seq: int
    payload: Dict[str, Any] = field(default_factory=dict)


def next_fire_time(trigger: Trigger, after: datetime) -> Optional[datetime]:
    """Next time ``trigger`` fires strictly after ``after``, within its window."""
    start = after
    if trigger.starts_at and trigger.starts_at > start:
        start = trigger.starts_at - timedelta(seconds=1)
    if trigger.cron:
        due = croniter(trigger.cron, start).get_next(datetime)
    elif trigger.run_at and trigger.run_at > after:
        due = trigger.run_at
    else:
        return None
    if trigger.ends_at and due > trigger.ends_at:
        return None
    return due


class Scheduler:
    """Fires due triggers, deferred executions and pending-action deadlines.

    ``tick`` is single-flight: a tick that finds another one running returns
    immediately. Executions are launched in the background so a tick never
    waits for a workflow to finish.
    """

    def __init__(
        self,
        engine: ExecutionEngine,
        repository: WorkflowRepository,
        audit: AuditLog,
        notifier: NotificationSender,
        config: Optional[SchedulerConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.engine = engine
        self.repository = repository
        self.audit = audit
        self.notifier = notifier
        self.config = config or SchedulerConfig()
        self.clock = clock
        self._heap: List[Tuple[datetime, int, str]] = []
        self._entries: Dict[str, TimerEntry] = {}
        self._seq = itertools.count()
        self._tick_lock = asyncio.Lock()
        engine.attach_timers(self)

    # ------------------------------------------------------------------
    # Timer primitives
    def schedule(
        self, key: str, kind: str, due_at: datetime, **payload: Any
    ) -> TimerEntry:
        entry = TimerEntry(key=key, kind=kind, due_at=due_at, seq=next(self._seq), payload=payload)
        self._entries[key] = entry
        heapq.heappush(self._heap, (due_at, entry.seq, key))
        return entry

    def cancel(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def next_due(self) -> Optional[datetime]:
        while self._heap:
            due_at, seq, key = self._heap[0]
            entry = self._entries.get(key)
            if entry is not None and entry.seq == seq:
                return due_at
            heapq.heappop(self._heap)
        return None

    def pending_keys(self) -> List[str]:
        return sorted(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    # ------------------------------------------------------------------
    # Domain scheduling
    def schedule_workflow(self, workflow: Workflow) -> int:
        """Arm every time-based trigger of an ACTIVO workflow."""
        self.unschedule_workflow(workflow.id)
        if workflow.state != WorkflowState.ACTIVO:
            return 0
        now = self.clock()
        armed = 0
        for index, trigger in enumerate(workflow.triggers):
            due = next_fire_time(trigger, now)
            if due is None:
                continue
            self.schedule(
                f"{TRIGGER}:{workflow.id}:{index}",
                TRIGGER,
                due,
                workflow_id=workflow.id,
                tenant_id=workflow.tenant_id,
                index=index,
            )
            armed += 1
        if armed:
            logger.info(f"Scheduled {armed} triggers for workflow {workflow.id}")
        return armed

    def unschedule_workflow(self, workflow_id: str) -> int:
        prefix = f"{TRIGGER}:{workflow_id}:"
        keys = [k for k in self._entries if k.startswith(prefix)]
        for key in keys:
            self.cancel(key)
        return len(keys)

    def next_run_for(self, workflow_id: str) -> Optional[datetime]:
        prefix = f"{TRIGGER}:{workflow_id}:"
        times = [e.due_at for k, e in self._entries.items() if k.startswith(prefix)]
        return min(times, default=None)

    def schedule_run(self, execution: Execution, due_at: datetime) -> None:
        self.schedule(
            f"{RUN}:{execution.id}",
            RUN,
            due_at,
            execution_id=execution.id,
            tenant_id=execution.tenant_id,
        )

    def schedule_timeout(self, pending: PendingAction) -> None:
        self.schedule(f"{TIMEOUT}:{pending.id}", TIMEOUT, pending.due_at, pending_id=pending.id)

    def cancel_timeout(self, pending_id: str) -> bool:
        return self.cancel(f"{TIMEOUT}:{pending_id}")

    async def load(self, tenant_ids: Iterable[str]) -> int:
        """Arm the triggers of every ACTIVO workflow of the given tenants."""
        armed = 0
        for tenant_id in tenant_ids:
            for workflow in await self.repository.list_workflows(tenant_id):
                if workflow.state == WorkflowState.ACTIVO:
                    armed += self.schedule_workflow(workflow)
        return armed

    # ------------------------------------------------------------------
    # Ticking
    async def tick(self, now: Optional[datetime] = None) -> int:
        """Fire every entry due at ``now``. Returns the number fired."""
        if self._tick_lock.locked():
            logger.debug("Tick already in progress; skipping")
            return 0
        async with self._tick_lock:
            now = now or self.clock()
            fired = 0
            while self._heap and self._heap[0][0] <= now:
                _, seq, key = heapq.heappop(self._heap)
                entry = self._entries.get(key)
                if entry is None or entry.seq != seq:
                    continue
                del self._entries[key]
                fired += 1
                try:
                    await self._fire(entry, now)
                except Exception:
                    logger.exception(f"Timer {key} failed")
            return fired

    async def _fire(self, entry: TimerEntry, now: datetime) -> None:
        if entry.kind == TRIGGER:
            await self._fire_trigger(entry, now)
        elif entry.kind == RUN:
            await self._fire_run(entry, now)
        elif entry.kind == TIMEOUT:
            await self._fire_timeout(entry, now)
        else:
            logger.error(f"Unknown timer kind {entry.kind}")

    def _retry_later(self, entry: TimerEntry, now: datetime) -> None:
        due = now + timedelta(seconds=self.config.tick_seconds)
        self.schedule(entry.key, entry.kind, due, **entry.payload)
        logger.info(f"Concurrency limit reached; {entry.key} re-armed for {due}")

    async def _fire_trigger(self, entry: TimerEntry, now: datetime) -> None:
        workflow = await self.repository.get_workflow(
            entry.payload["workflow_id"], entry.payload["tenant_id"]
        )
        if workflow is None or workflow.state != WorkflowState.ACTIVO:
            return
        index = entry.payload["index"]
        if index >= len(workflow.triggers):
            return
        trigger = workflow.triggers[index]

        due = next_fire_time(trigger, now)
        if due is not None:
            self.schedule(entry.key, TRIGGER, due, **entry.payload)

        try:
            applies = self.engine.evaluator.evaluate_all(trigger.conditions, trigger.context)
        except ConditionError as e:
            logger.warning(f"Trigger {entry.key} conditions failed: {e}")
            return
        if not applies:
            return

        execution = self.engine.new_execution(
            workflow,
            workflow.tenant_id,
            actor_id=workflow.created_by,
            entity_type=trigger.entity_type,
            context=trigger.context,
            trigger=trigger.event,
        )
        try:
            await self.engine.launch(execution, workflow, wait=False)
        except ConcurrencyLimitError:
            execution.scheduled_for = now + timedelta(seconds=self.config.tick_seconds)
            await self.repository.save_execution(execution)
            self.schedule_run(execution, execution.scheduled_for)
            logger.info(f"Concurrency limit reached; run {execution.id} deferred")

    async def _fire_run(self, entry: TimerEntry, now: datetime) -> None:
        execution = await self.repository.get_execution(
            entry.payload["execution_id"], entry.payload["tenant_id"]
        )
        if execution is None or execution.state != ExecutionState.INICIADO:
            return
        workflow = await self.repository.get_workflow(execution.workflow_id, execution.tenant_id)
        if workflow is None or workflow.state != WorkflowState.ACTIVO:
            execution.state = ExecutionState.CANCELADO
            execution.completed_at = now
            execution.errors.append("Workflow is no longer active")
            await self.repository.save_execution(execution)
            await self.audit.record(
                execution.tenant_id,
                execution.id,
                AuditAction.EJECUCION_CANCELADA,
                execution.executed_by,
                flujoId=execution.workflow_id,
                errores=list(execution.errors),
            )
            return
        try:
            await self.engine.launch(execution, workflow, wait=False)
        except ConcurrencyLimitError:
            self._retry_later(entry, now)

    async def _fire_timeout(self, entry: TimerEntry, now: datetime) -> None:
        try:
            pending = self.engine.get_pending(entry.payload["pending_id"])
        except NotFoundError:
            return
        if pending.state != PendingState.PENDIENTE:
            return

        data = {
            "ejecucionId": pending.execution_id,
            "flujoId": pending.workflow_id,
            "paso": pending.step_name,
            "intento": pending.attempts + 1,
        }
        if pending.attempts < pending.max_retries:
            pending.attempts += 1
            await self.notifier.send(pending.recipients, "aprobacionTimeout", data)
            pending.due_at = now + timedelta(hours=pending.timeout_hours)
            self.schedule_timeout(pending)
            await self.audit.record(
                pending.tenant_id,
                pending.execution_id,
                AuditAction.RECORDATORIO_ENVIADO,
                None,
                pendienteId=pending.id,
                intento=pending.attempts,
            )
            logger.info(f"Reminder {pending.attempts}/{pending.max_retries} for {pending.id}")
            return

        workflow = await self.repository.get_workflow(pending.workflow_id, pending.tenant_id)
        escalate_to = []
        if workflow is not None:
            escalate_to = list(workflow.administrators) or (
                [workflow.created_by] if workflow.created_by else []
            )
        if escalate_to:
            await self.notifier.send(escalate_to, "aprobacionEscalada", data)
        pending.state = PendingState.ESCALADO
        pending.step_state = StepState.FALLIDO
        await self._note_escalation(
            pending,
            f"Step {pending.step_order} ({pending.step_name}) {pending.action_type} "
            f"escalated after {pending.attempts} reminders",
        )
        await self.audit.record(
            pending.tenant_id,
            pending.execution_id,
            AuditAction.ACCION_ESCALADA,
            None,
            pendienteId=pending.id,
            escaladoA=escalate_to,
        )
        self.engine.discard_pending(pending.id)
        logger.warning(f"Pending action {pending.id} escalated to {escalate_to}")

    async def _note_escalation(self, pending: PendingAction, note: str) -> None:
        # A running execution is saved by the engine; a finished one is saved here.
        handle = self.engine.tracker.get(pending.execution_id)
        if handle is not None and not handle.execution.state.is_terminal:
            handle.execution.errors.append(note)
            return
        execution = await self.repository.get_execution(pending.execution_id, pending.tenant_id)
        if execution is None:
            logger.error(f"Execution {pending.execution_id} of pending action {pending.id} is gone")
            return
        execution.errors.append(note)
        await self.repository.save_execution(execution)

    # ------------------------------------------------------------------
    async def run(self, lifespan: Optional[float] = None) -> None:
        """Tick until ``lifespan`` seconds elapsed (forever when ``None``)."""
        started = time.monotonic()
        while True:
            await self.tick()
            delay = self.config.tick_seconds
            upcoming = self.next_due()
            if upcoming is not None:
                delay = min(delay, max((upcoming - self.clock()).total_seconds(), 0.0))
            if lifespan is not None:
                remaining = lifespan - (time.monotonic() - started)
                if remaining <= 0:
                    break
                delay = min(delay, remaining)
            await asyncio.sleep(delay)
        await self.drain()

    async def drain(self) -> None:
        await self.engine.drain()
