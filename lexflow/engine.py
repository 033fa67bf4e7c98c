"""Execution engine: drives an execution through a workflow's step graph."""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections import Counter
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple

from .audit import AuditAction, AuditLog
from .conditions import ConditionEvaluator
from .config import EngineConfig
from .contracts import (
    ActionResult,
    AwaitingResponse,
    Execution,
    ExecutionState,
    PendingAction,
    PendingState,
    Step,
    StepAction,
    StepHistory,
    StepState,
    Workflow,
    WorkflowState,
    utcnow,
)
from .errors import ConditionError, NotFoundError, WorkflowNotActiveError
from .handlers import ActionContext, ActionDispatcher
from .persistence import WorkflowRepository
from .tracker import ExecutionHandle, ExecutionTracker

if TYPE_CHECKING:
    from .scheduler import Scheduler

logger = logging.getLogger(__name__)

_FINAL_AUDIT = {
    ExecutionState.COMPLETADO: AuditAction.EJECUCION_COMPLETADA,
    ExecutionState.FALLIDO: AuditAction.EJECUCION_FALLIDA,
    ExecutionState.CANCELADO: AuditAction.EJECUCION_CANCELADA,
}


class ExecutionEngine:
    """Runs executions step by step.

    For each step the engine evaluates the step conditions, dispatches every
    action in order, appends a :class:`StepHistory` entry and follows the
    success or failure branch. Unexpected errors are captured into the
    execution record instead of propagating. Approvals and notifications that
    wait on a human are kept as :class:`PendingAction` entries whose deadlines
    are handed to the attached scheduler.
    """

    def __init__(
        self,
        repository: WorkflowRepository,
        dispatcher: ActionDispatcher,
        evaluator: ConditionEvaluator,
        tracker: ExecutionTracker,
        audit: AuditLog,
        config: Optional[EngineConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.dispatcher = dispatcher
        self.evaluator = evaluator
        self.tracker = tracker
        self.audit = audit
        self.config = config or EngineConfig()
        self.clock = clock
        self._pending: Dict[str, PendingAction] = {}
        self._timers: Optional["Scheduler"] = None

    def attach_timers(self, scheduler: "Scheduler") -> None:
        self._timers = scheduler

    # ------------------------------------------------------------------
    # Starting executions
    def new_execution(
        self,
        workflow: Workflow,
        tenant_id: str,
        actor_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        trigger: str = "MANUAL",
        scheduled_for: Optional[datetime] = None,
    ) -> Execution:
        return Execution(
            workflow_id=workflow.id,
            workflow_version=workflow.version,
            tenant_id=tenant_id,
            entity_id=entity_id,
            entity_type=entity_type,
            context=copy.deepcopy(context or {}),
            executed_by=actor_id,
            trigger=trigger,
            scheduled_for=scheduled_for,
        )

    async def start(
        self,
        workflow: Workflow,
        tenant_id: str,
        actor_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        trigger: str = "MANUAL",
        wait: bool = True,
    ) -> Execution:
        """Create an execution for ``workflow`` and run it.

        With ``wait`` the call returns once the execution reached a terminal
        state; otherwise it runs as a background task and a snapshot of the
        freshly started execution is returned.
        """
        if workflow.state != WorkflowState.ACTIVO:
            raise WorkflowNotActiveError(
                f"Workflow {workflow.id} is {workflow.state.value}; only ACTIVO workflows can run"
            )
        execution = self.new_execution(
            workflow, tenant_id, actor_id, entity_id, entity_type, context, trigger
        )
        return await self.launch(execution, workflow, wait=wait)

    async def launch(
        self, execution: Execution, workflow: Workflow, wait: bool = True
    ) -> Execution:
        """Register and drive an already created execution."""
        handle = self.tracker.register(execution, workflow.max_concurrent_executions)
        try:
            await self.repository.save_execution(execution)
            await self.audit.record(
                execution.tenant_id,
                workflow.id,
                AuditAction.EJECUCION_INICIADA,
                execution.executed_by,
                ejecucionId=execution.id,
                entidadId=execution.entity_id,
                tipoEntidad=execution.entity_type,
                trigger=execution.trigger,
            )
        except Exception:
            self.tracker.unregister(execution.id)
            raise

        logger.info(f"Execution {execution.id} of workflow {workflow.id} started")
        if wait:
            await self._drive(handle, workflow)
            return execution
        snapshot = execution.model_copy(deep=True)
        task = asyncio.create_task(self._drive(handle, workflow))
        self.tracker.attach_task(execution.id, task)
        return snapshot

    async def drain(self) -> None:
        """Wait for every background execution to finish."""
        while True:
            tasks = [t for t in self.tracker.tasks() if not t.done()]
            if not tasks:
                return
            await asyncio.gather(*tasks, return_exceptions=True)

    # ------------------------------------------------------------------
    # Driving
    async def _drive(self, handle: ExecutionHandle, workflow: Workflow) -> None:
        execution = handle.execution
        try:
            execution.state = ExecutionState.EN_PROGRESO
            await self.repository.save_execution(execution)
            await self._run_steps(handle, workflow)
        except asyncio.CancelledError:
            execution.errors.append("Execution task was cancelled")
            await self._finish(execution, ExecutionState.CANCELADO)
            raise
        except Exception as e:
            logger.exception(f"Execution {execution.id} crashed")
            execution.errors.append(f"Unexpected error: {e}")
            try:
                await self._finish(execution, ExecutionState.FALLIDO)
            except Exception:
                logger.exception(f"Could not record failure of execution {execution.id}")
        finally:
            self.tracker.unregister(execution.id)

    async def _run_steps(self, handle: ExecutionHandle, workflow: Workflow) -> None:
        execution = handle.execution
        last_order = workflow.last_order
        visits: Counter = Counter()
        while True:
            # A stop only takes effect while a step remains to run.
            if execution.current_step > last_order:
                await self._finish(execution, ExecutionState.COMPLETADO)
                return

            if handle.stop_requested:
                execution.errors.append(f"Stopped: {handle.stop_reason or 'stop requested'}")
                await self._finish(execution, ExecutionState.CANCELADO)
                return

            step = workflow.step(execution.current_step)
            if step is None:
                execution.errors.append(f"Step {execution.current_step} not found")
                await self._finish(execution, ExecutionState.FALLIDO)
                return

            visits[step.order] += 1
            if visits[step.order] > self.config.max_step_visits:
                execution.errors.append(
                    f"Step {step.order} exceeded {self.config.max_step_visits} step visits; "
                    "the workflow loops"
                )
                await self._finish(execution, ExecutionState.FALLIDO)
                return

            record = await self._run_step(execution, workflow, step)
            execution.history.append(record)
            await self.audit.record(
                execution.tenant_id,
                execution.id,
                AuditAction.PASO_COMPLETADO,
                execution.executed_by,
                paso=step.order,
                nombre=step.name,
                estado=record.state.value,
            )

            if record.state in (StepState.COMPLETADO, StepState.OMITIDO):
                execution.current_step = step.next_on_success or step.order + 1
            elif step.next_on_failure is not None:
                execution.current_step = step.next_on_failure
            else:
                execution.errors.append(f"Step {step.order} ({step.name}) failed")
                await self._finish(execution, ExecutionState.FALLIDO)
                return
            await self.repository.save_execution(execution)

    async def _run_step(
        self, execution: Execution, workflow: Workflow, step: Step
    ) -> StepHistory:
        started_at = self.clock()
        t0 = time.monotonic()
        input_data = copy.deepcopy(execution.context)

        def history(
            state: StepState,
            outputs: Optional[List[Dict[str, Any]]] = None,
            errors: Optional[List[str]] = None,
            comment: Optional[str] = None,
        ) -> StepHistory:
            return StepHistory(
                step_id=step.id,
                name=step.name,
                order=step.order,
                state=state,
                started_at=started_at,
                completed_at=self.clock(),
                input_data=input_data,
                output_data=outputs or [],
                duration_seconds=time.monotonic() - t0,
                errors=errors or [],
                comment=comment,
            )

        try:
            applies = self.evaluator.evaluate_all(step.conditions, execution.context)
        except ConditionError as e:
            logger.warning(f"Execution {execution.id} step {step.order}: {e}")
            return history(StepState.ERROR, errors=[str(e)])
        if not applies:
            return history(StepState.OMITIDO, comment="Conditions not met")

        ctx = ActionContext(
            execution_id=execution.id,
            workflow_id=workflow.id,
            tenant_id=execution.tenant_id,
            step_order=step.order,
            step_name=step.name,
            context=execution.context,
            administrators=tuple(workflow.administrators),
            actor_id=execution.executed_by,
            step_timeout_hours=step.timeout_hours,
        )
        outputs: List[Dict[str, Any]] = []
        errors: List[str] = []
        for action in step.actions:
            result = await self.dispatcher.dispatch(action, ctx)
            outputs.append(_output(action, result))
            if not result.ok:
                errors.append(f"{action.type}: {result.error}")
                continue
            execution.context.update(result.context_updates)
            if result.awaiting is not None:
                await self._register_pending(execution, step, action, result.awaiting)

        state = StepState.FALLIDO if errors else StepState.COMPLETADO
        return history(state, outputs=outputs, errors=errors)

    async def _finish(self, execution: Execution, state: ExecutionState) -> None:
        execution.state = state
        execution.completed_at = self.clock()
        await self.repository.save_execution(execution)
        await self.audit.record(
            execution.tenant_id,
            execution.id,
            _FINAL_AUDIT[state],
            execution.executed_by,
            flujoId=execution.workflow_id,
            errores=list(execution.errors),
        )
        logger.info(f"Execution {execution.id} finished {state.value}")

    # ------------------------------------------------------------------
    # Pending actions
    async def _register_pending(
        self, execution: Execution, step: Step, action: StepAction, awaiting: AwaitingResponse
    ) -> PendingAction:
        pending = PendingAction(
            execution_id=execution.id,
            workflow_id=execution.workflow_id,
            tenant_id=execution.tenant_id,
            step_order=step.order,
            step_name=step.name,
            action_type=action.type,
            recipients=awaiting.recipients,
            timeout_hours=awaiting.timeout_hours,
            max_retries=awaiting.max_retries or 0,
            due_at=self.clock() + timedelta(hours=awaiting.timeout_hours),
        )
        self._pending[pending.id] = pending
        if self._timers is not None:
            self._timers.schedule_timeout(pending)
        logger.info(
            f"Execution {execution.id} step {step.order} awaits {action.type} until {pending.due_at}"
        )
        return pending

    def pending_actions(
        self, tenant_id: Optional[str] = None, execution_id: Optional[str] = None
    ) -> List[PendingAction]:
        return [
            p
            for p in self._pending.values()
            if (tenant_id is None or p.tenant_id == tenant_id)
            and (execution_id is None or p.execution_id == execution_id)
        ]

    def get_pending(self, pending_id: str, tenant_id: Optional[str] = None) -> PendingAction:
        pending = self._pending.get(pending_id)
        if pending is None or (tenant_id is not None and pending.tenant_id != tenant_id):
            raise NotFoundError(f"Pending action {pending_id} not found")
        return pending

    def resolve_pending(
        self,
        pending_id: str,
        tenant_id: str,
        approved: bool,
        actor_id: str,
        comment: Optional[str] = None,
    ) -> Tuple[PendingAction, bool]:
        """Record a decision. Returns the action and whether it was still open."""
        pending = self.get_pending(pending_id, tenant_id)
        if pending.state != PendingState.PENDIENTE:
            return pending, False
        pending.state = PendingState.RESUELTO if approved else PendingState.RECHAZADO
        pending.step_state = StepState.COMPLETADO if approved else StepState.FALLIDO
        pending.resolved_by = actor_id
        pending.comment = comment
        if self._timers is not None:
            self._timers.cancel_timeout(pending.id)
        return pending, True

    def discard_pending(self, pending_id: str) -> Optional[PendingAction]:
        """Forget a closed pending action once its outcome has been audited."""
        pending = self._pending.get(pending_id)
        if pending is None or pending.state == PendingState.PENDIENTE:
            return None
        return self._pending.pop(pending_id)


def _output(action: StepAction, result: ActionResult) -> Dict[str, Any]:
    return {
        "tipo": action.type,
        "ok": result.ok,
        "mensaje": result.message,
        "datos": result.data,
        "error": result.error,
    }
