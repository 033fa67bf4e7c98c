"""Workflow service: the operations exposed to the rest of the platform.

Every call takes the tenant and the acting user explicitly.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from pydantic import ValidationError

from .audit import AuditAction, AuditLog
from .collaborators import (
    DocumentGenerator,
    HttpIntegrationConnector,
    InMemoryDocumentGenerator,
    InMemoryNotificationSender,
    IntegrationConnector,
    NotificationSender,
    StaticUserDirectory,
    UserDirectory,
)
from .conditions import ConditionEvaluator
from .config import LexflowConfig, load_config
from .contracts import (
    Execution,
    ExecutionState,
    PendingAction,
    SemanticVersion,
    Step,
    Workflow,
    WorkflowDefinition,
    WorkflowState,
    WorkflowType,
    WorkflowUpdate,
    utcnow,
)
from .engine import ExecutionEngine
from .errors import (
    ConcurrencyLimitError,
    ConditionError,
    ConflictError,
    DefinitionValidationError,
    NotFoundError,
    WorkflowNotActiveError,
)
from .handlers import ActionDispatcher, default_registry
from .lifecycle import STOPPING_STATES, ensure_transition
from .metrics import WorkflowMetrics, WorkflowStatistics, compute_metrics, compute_statistics
from .persistence import AuditRecord, WorkflowRepository, get_repository
from .scheduler import Scheduler
from .templates import build_template
from .tracker import ExecutionTracker
from .validation import DefinitionValidator, requires_version_bump

logger = logging.getLogger(__name__)

EXPORT_FORMAT_VERSION = "1.0"

# Action config keys holding user ids, remapped on import.
_USER_KEYS = ("aprobadores", "destinatarios", "usuarios")


def parse_definition(data: WorkflowDefinition | Mapping[str, Any]) -> WorkflowDefinition:
    """Coerce ``data`` into a definition, reporting schema errors as problems."""
    if isinstance(data, WorkflowDefinition):
        return WorkflowDefinition.model_validate(
            data.model_dump(include=set(WorkflowDefinition.model_fields))
        )
    try:
        return WorkflowDefinition.model_validate(data)
    except ValidationError as e:
        raise DefinitionValidationError(
            [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        ) from e


def renumber_steps(steps: List[Step], excluded: Iterable[int]) -> List[Step]:
    """Drop ``excluded`` orders and renumber the rest 1..N.

    Branch references are remapped; references to dropped steps are removed.
    """
    excluded = set(excluded)
    kept = sorted((s for s in steps if s.order not in excluded), key=lambda s: s.order)
    mapping = {s.order: i for i, s in enumerate(kept, start=1)}
    return [
        s.model_copy(
            update={
                "order": mapping[s.order],
                "next_on_success": mapping.get(s.next_on_success),
                "next_on_failure": mapping.get(s.next_on_failure),
            },
            deep=True,
        )
        for s in kept
    ]


def _remap_users(definition: WorkflowDefinition, mapping: Mapping[str, str]) -> WorkflowDefinition:
    def remap(values: Iterable[Any]) -> List[Any]:
        return [mapping.get(v, v) if isinstance(v, str) else v for v in values]

    data = definition.model_dump()
    data["administrators"] = remap(data["administrators"])
    for step in data["steps"]:
        step["assigned_users"] = remap(step["assigned_users"])
        for action in step["actions"]:
            for key in _USER_KEYS:
                value = action["config"].get(key)
                if isinstance(value, list):
                    action["config"][key] = remap(value)
    return WorkflowDefinition.model_validate(data)


class WorkflowService:
    """Definitions, lifecycle, executions and reporting for one process."""

    def __init__(
        self,
        repository: WorkflowRepository,
        validator: DefinitionValidator,
        engine: ExecutionEngine,
        tracker: ExecutionTracker,
        scheduler: Scheduler,
        audit: AuditLog,
        config: Optional[LexflowConfig] = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.repository = repository
        self.validator = validator
        self.engine = engine
        self.tracker = tracker
        self.scheduler = scheduler
        self.audit = audit
        self.config = config or LexflowConfig()
        self.clock = clock

    # ------------------------------------------------------------------
    # Definitions
    async def create(
        self,
        tenant_id: str,
        actor_id: str,
        definition: WorkflowDefinition | Mapping[str, Any],
    ) -> Workflow:
        definition = parse_definition(definition)
        self.validator.validate(definition)
        await self.validator.validate_assignments(definition)
        self.validator.ensure_unique_name(
            definition.name, await self.repository.list_workflows(tenant_id)
        )

        now = self.clock()
        workflow = Workflow(
            **definition.model_dump(),
            tenant_id=tenant_id,
            state=WorkflowState.BORRADOR,
            created_by=actor_id,
            created_at=now,
            updated_at=now,
        )
        await self.repository.save_workflow(workflow)
        await self.audit.record(
            tenant_id,
            workflow.id,
            AuditAction.CREACION,
            actor_id,
            tipo=workflow.type.value,
            totalPasos=len(workflow.steps),
        )
        logger.info(f"Workflow {workflow.id} '{workflow.name}' created for tenant {tenant_id}")
        return workflow

    async def list_workflows(
        self,
        tenant_id: str,
        type: Optional[WorkflowType] = None,
        state: Optional[WorkflowState] = None,
        priority: Optional[int] = None,
        created_by: Optional[str] = None,
        tag: Optional[str] = None,
        administrator: Optional[str] = None,
        search: Optional[str] = None,
    ) -> List[Workflow]:
        """Return the tenant's workflows matching every given filter, newest first."""
        workflows = await self.repository.list_workflows(tenant_id)
        result = []
        for wf in workflows:
            if type is not None and wf.type != type:
                continue
            if state is not None and wf.state != state:
                continue
            if priority is not None and wf.priority != priority:
                continue
            if created_by is not None and wf.created_by != created_by:
                continue
            if tag is not None and tag not in wf.tags:
                continue
            if administrator is not None and administrator not in wf.administrators:
                continue
            if search is not None:
                haystack = f"{wf.name} {wf.description or ''}".lower()
                if search.lower() not in haystack:
                    continue
            result.append(wf)
        result.sort(key=lambda w: w.created_at, reverse=True)
        return result

    async def get(self, tenant_id: str, workflow_id: str) -> Workflow:
        workflow = await self.repository.get_workflow(workflow_id, tenant_id)
        if workflow is None:
            raise NotFoundError(f"Workflow {workflow_id} not found")
        return workflow

    async def update(
        self,
        tenant_id: str,
        actor_id: str,
        workflow_id: str,
        update: WorkflowUpdate | Mapping[str, Any],
    ) -> Workflow:
        if not isinstance(update, WorkflowUpdate):
            try:
                update = WorkflowUpdate.model_validate(update)
            except ValidationError as e:
                raise DefinitionValidationError(
                    [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
                ) from e

        current = await self.get(tenant_id, workflow_id)
        if current.state == WorkflowState.ARCHIVADO:
            raise ConflictError(f"Workflow {workflow_id} is archived")
        if update.is_structural and self.tracker.active_for_workflow(workflow_id):
            raise ConflictError("Cannot edit steps or triggers: executions in progress")

        fields = update.model_fields_set - {"reason"}
        data = current.definition().model_dump()
        data.update(update.model_dump(include=fields))
        definition = parse_definition(data)
        self.validator.validate(definition)
        if "steps" in fields:
            await self.validator.validate_assignments(definition)
        if definition.name != current.name:
            self.validator.ensure_unique_name(
                definition.name,
                await self.repository.list_workflows(tenant_id),
                exclude_id=workflow_id,
            )

        version = current.version
        if requires_version_bump(current, update):
            version = str(SemanticVersion.parse(current.version).bump_patch())

        workflow = Workflow(
            **{**definition.model_dump(), "version": version},
            id=current.id,
            tenant_id=current.tenant_id,
            state=current.state,
            created_by=current.created_by,
            created_at=current.created_at,
            updated_at=self.clock(),
        )
        # Executions may have started while the edit was being validated.
        if update.is_structural and self.tracker.active_for_workflow(workflow_id):
            raise ConflictError("Cannot edit steps or triggers: executions in progress")
        await self.repository.save_workflow(workflow)
        if "triggers" in fields and workflow.state == WorkflowState.ACTIVO:
            self.scheduler.schedule_workflow(workflow)

        await self.audit.record(
            tenant_id,
            workflow_id,
            AuditAction.ACTUALIZACION,
            actor_id,
            motivo=update.reason or "Workflow updated",
            campos=sorted(fields),
            versionAnterior=current.version,
            versionNueva=version,
        )
        logger.info(f"Workflow {workflow_id} updated to version {version}")
        return workflow

    async def change_state(
        self,
        tenant_id: str,
        actor_id: str,
        workflow_id: str,
        state: WorkflowState,
        reason: Optional[str] = None,
    ) -> Workflow:
        workflow = await self.get(tenant_id, workflow_id)
        previous = workflow.state
        ensure_transition(previous, state)
        if state == WorkflowState.ACTIVO:
            self.validator.validate(workflow.definition())

        stopped = 0
        if state in STOPPING_STATES:
            stopped = self.tracker.request_stop(workflow_id, reason or f"Workflow {state.value}")

        workflow = workflow.model_copy(update={"state": state, "updated_at": self.clock()})
        await self.repository.save_workflow(workflow)
        if state == WorkflowState.ACTIVO:
            self.scheduler.schedule_workflow(workflow)
        else:
            self.scheduler.unschedule_workflow(workflow_id)

        await self.audit.record(
            tenant_id,
            workflow_id,
            AuditAction.CAMBIO_ESTADO,
            actor_id,
            estadoOriginal=previous.value,
            estadoNuevo=state.value,
            motivo=reason or f"State changed from {previous.value} to {state.value}",
            ejecucionesDetenidas=stopped,
        )
        logger.info(f"Workflow {workflow_id} moved from {previous.value} to {state.value}")
        return workflow

    async def activate(self, tenant_id: str, actor_id: str, workflow_id: str) -> Workflow:
        return await self.change_state(tenant_id, actor_id, workflow_id, WorkflowState.ACTIVO)

    async def pause(
        self, tenant_id: str, actor_id: str, workflow_id: str, reason: Optional[str] = None
    ) -> Workflow:
        return await self.change_state(
            tenant_id, actor_id, workflow_id, WorkflowState.PAUSADO, reason
        )

    async def duplicate(
        self,
        tenant_id: str,
        actor_id: str,
        workflow_id: str,
        new_name: str,
        description: Optional[str] = None,
        copy_triggers: bool = False,
        exclude_steps: Iterable[int] = (),
        activate: bool = False,
    ) -> Workflow:
        original = await self.get(tenant_id, workflow_id)
        data = original.definition().model_dump()
        data.update(
            name=new_name,
            description=description or f"Copia de: {original.description or original.name}",
            steps=[
                s.model_dump(exclude={"id"})
                for s in renumber_steps(original.steps, exclude_steps)
            ],
            triggers=data["triggers"] if copy_triggers else [],
            tags=[*(t for t in original.tags if t != "copia"), "copia"],
            version="1.0.0",
        )
        copy = await self.create(tenant_id, actor_id, data)
        await self.audit.record(
            tenant_id,
            copy.id,
            AuditAction.DUPLICACION,
            actor_id,
            flujoOriginalId=original.id,
            nombreOriginal=original.name,
        )
        if activate:
            copy = await self.activate(tenant_id, actor_id, copy.id)
        return copy

    async def remove(self, tenant_id: str, actor_id: str, workflow_id: str) -> Workflow:
        """Archive a workflow. Rejected while executions are in progress."""
        workflow = await self.get(tenant_id, workflow_id)
        if self.tracker.active_for_workflow(workflow_id):
            raise ConflictError("Cannot remove a workflow with executions in progress")
        ensure_transition(workflow.state, WorkflowState.ARCHIVADO)

        workflow = workflow.model_copy(
            update={"state": WorkflowState.ARCHIVADO, "updated_at": self.clock()}
        )
        await self.repository.save_workflow(workflow)
        self.scheduler.unschedule_workflow(workflow_id)
        await self.audit.record(tenant_id, workflow_id, AuditAction.ELIMINACION, actor_id)
        logger.info(f"Workflow {workflow_id} archived")
        return workflow

    # ------------------------------------------------------------------
    # Exchange
    async def export(
        self, tenant_id: str, workflow_id: str, actor_id: Optional[str] = None
    ) -> Dict[str, Any]:
        workflow = await self.get(tenant_id, workflow_id)
        definition = workflow.definition().model_dump(mode="json")
        definition.pop("version", None)
        return {
            "version": EXPORT_FORMAT_VERSION,
            "flujo": definition,
            "metadata": {
                "exportadoPor": actor_id or "Sistema",
                "fechaExportacion": self.clock().isoformat(),
                "version": workflow.version,
            },
        }

    async def import_definition(
        self,
        tenant_id: str,
        actor_id: str,
        document: Mapping[str, Any],
        overwrite: bool = False,
        user_mapping: Optional[Mapping[str, str]] = None,
    ) -> Workflow:
        """Create a workflow from an exported document.

        With ``overwrite`` an existing non-archived workflow of the same name
        gets the imported definition instead of raising a conflict.
        """
        if "flujo" not in document:
            raise DefinitionValidationError("Import document has no 'flujo' section")
        if document.get("version") != EXPORT_FORMAT_VERSION:
            raise DefinitionValidationError(
                f"Unsupported export format version: {document.get('version')!r}"
            )
        data = dict(document["flujo"])
        data.setdefault("version", document.get("metadata", {}).get("version", "1.0.0"))
        definition = parse_definition(data)
        if user_mapping:
            definition = _remap_users(definition, user_mapping)

        existing = next(
            (
                w
                for w in await self.repository.list_workflows(tenant_id)
                if w.name == definition.name and w.state != WorkflowState.ARCHIVADO
            ),
            None,
        )
        if existing is not None and overwrite:
            fields = definition.model_dump(exclude={"version"})
            workflow = await self.update(
                tenant_id,
                actor_id,
                existing.id,
                WorkflowUpdate(**fields, reason="Imported definition"),
            )
        else:
            workflow = await self.create(tenant_id, actor_id, definition)
        await self.audit.record(
            tenant_id,
            workflow.id,
            AuditAction.IMPORTACION,
            actor_id,
            sobrescrito=existing is not None and overwrite,
        )
        return workflow

    async def create_from_template(
        self,
        tenant_id: str,
        actor_id: str,
        template: str,
        name: Optional[str] = None,
        **params: Any,
    ) -> Workflow:
        definition = build_template(template, name=name, **params)
        return await self.create(tenant_id, actor_id, definition)

    # ------------------------------------------------------------------
    # Executions
    async def start_execution(
        self,
        tenant_id: str,
        actor_id: str,
        workflow_id: str,
        entity_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        wait: bool = True,
        scheduled_at: Optional[datetime] = None,
        trigger: str = "MANUAL",
    ) -> Execution:
        """Start (or schedule) an execution of an ACTIVO workflow."""
        workflow = await self.get(tenant_id, workflow_id)
        if scheduled_at is None or scheduled_at <= self.clock():
            return await self.engine.start(
                workflow,
                tenant_id,
                actor_id,
                entity_id=entity_id,
                entity_type=entity_type,
                context=context,
                trigger=trigger,
                wait=wait,
            )

        if workflow.state != WorkflowState.ACTIVO:
            raise WorkflowNotActiveError(
                f"Workflow {workflow.id} is {workflow.state.value}; only ACTIVO workflows can run"
            )
        execution = self.engine.new_execution(
            workflow,
            tenant_id,
            actor_id,
            entity_id,
            entity_type,
            context,
            trigger,
            scheduled_for=scheduled_at,
        )
        await self.repository.save_execution(execution)
        self.scheduler.schedule_run(execution, scheduled_at)
        await self.audit.record(
            tenant_id,
            workflow.id,
            AuditAction.EJECUCION_PROGRAMADA,
            actor_id,
            ejecucionId=execution.id,
            programadaPara=scheduled_at.isoformat(),
        )
        logger.info(f"Execution {execution.id} scheduled for {scheduled_at}")
        return execution

    async def dispatch_event(
        self,
        tenant_id: str,
        actor_id: str,
        event: str,
        entity_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
        wait: bool = True,
    ) -> List[Execution]:
        """Start every ACTIVO workflow with a trigger listening for ``event``.

        A trigger matches when its event equals ``event``, ``now`` falls in
        its window and its conditions hold against ``context``.
        """
        context = context or {}
        now = self.clock()
        started = []
        for workflow in await self.repository.list_workflows(tenant_id):
            if workflow.state != WorkflowState.ACTIVO:
                continue
            for trigger in workflow.triggers:
                if trigger.event != event:
                    continue
                if trigger.entity_type and entity_type and trigger.entity_type != entity_type:
                    continue
                if (trigger.starts_at and now < trigger.starts_at) or (
                    trigger.ends_at and now > trigger.ends_at
                ):
                    continue
                try:
                    applies = self.engine.evaluator.evaluate_all(trigger.conditions, context)
                except ConditionError as e:
                    logger.warning(f"Workflow {workflow.id} trigger conditions failed: {e}")
                    continue
                if not applies:
                    continue
                execution = self.engine.new_execution(
                    workflow,
                    tenant_id,
                    actor_id,
                    entity_id=entity_id,
                    entity_type=entity_type,
                    context={**trigger.context, **context},
                    trigger=event,
                )
                try:
                    execution = await self.engine.launch(execution, workflow, wait=wait)
                except ConcurrencyLimitError:
                    execution.scheduled_for = now + timedelta(
                        seconds=self.config.scheduler.tick_seconds
                    )
                    await self.repository.save_execution(execution)
                    self.scheduler.schedule_run(execution, execution.scheduled_for)
                    logger.info(f"Concurrency limit reached; run {execution.id} deferred")
                started.append(execution)
                break
        logger.info(f"Event {event} started {len(started)} executions for tenant {tenant_id}")
        return started

    async def get_execution(self, tenant_id: str, execution_id: str) -> Execution:
        handle = self.tracker.get(execution_id)
        if handle is not None and handle.execution.tenant_id == tenant_id:
            return handle.execution.model_copy(deep=True)
        execution = await self.repository.get_execution(execution_id, tenant_id)
        if execution is None:
            raise NotFoundError(f"Execution {execution_id} not found")
        return execution

    async def list_executions(
        self,
        tenant_id: str,
        workflow_id: Optional[str] = None,
        entity_id: Optional[str] = None,
        state: Optional[ExecutionState] = None,
    ) -> List[Execution]:
        executions = await self.repository.list_executions(tenant_id, workflow_id, entity_id)
        if state is not None:
            executions = [e for e in executions if e.state == state]
        return executions

    def list_active_executions(
        self, tenant_id: str, workflow_id: Optional[str] = None
    ) -> List[Execution]:
        executions = self.tracker.active(tenant_id)
        if workflow_id is not None:
            executions = [e for e in executions if e.workflow_id == workflow_id]
        return [e.model_copy(deep=True) for e in executions]

    def list_pending_actions(
        self, tenant_id: str, execution_id: Optional[str] = None
    ) -> List[PendingAction]:
        return self.engine.pending_actions(tenant_id, execution_id)

    async def resolve_pending_action(
        self,
        tenant_id: str,
        actor_id: str,
        pending_id: str,
        approved: bool,
        comment: Optional[str] = None,
    ) -> PendingAction:
        pending, changed = self.engine.resolve_pending(
            pending_id, tenant_id, approved, actor_id, comment
        )
        if not changed:
            raise ConflictError(f"Pending action {pending_id} is already {pending.state.value}")
        await self.audit.record(
            tenant_id,
            pending.execution_id,
            AuditAction.ACCION_RESUELTA,
            actor_id,
            pendienteId=pending.id,
            decision=pending.state.value,
            comentario=comment,
        )
        self.engine.discard_pending(pending.id)
        return pending

    # ------------------------------------------------------------------
    # Reporting
    async def statistics(self, tenant_id: str) -> WorkflowStatistics:
        workflows = await self.repository.list_workflows(tenant_id)
        executions = await self.repository.list_executions(tenant_id)
        return compute_statistics(workflows, executions)

    async def workflow_metrics(self, tenant_id: str, workflow_id: str) -> WorkflowMetrics:
        workflow = await self.get(tenant_id, workflow_id)
        executions = await self.repository.list_executions(tenant_id, workflow_id)
        return compute_metrics(
            workflow,
            executions,
            next_execution=self.scheduler.next_run_for(workflow_id),
            now=self.clock(),
        )

    async def audit_trail(
        self, tenant_id: str, entity_id: Optional[str] = None
    ) -> List[AuditRecord]:
        return await self.audit.trail(tenant_id, entity_id)


def build_service(
    config: Optional[LexflowConfig] = None,
    repository: Optional[WorkflowRepository] = None,
    notifier: Optional[NotificationSender] = None,
    directory: Optional[UserDirectory] = None,
    documents: Optional[DocumentGenerator] = None,
    connector: Optional[IntegrationConnector] = None,
    clock: Callable[[], datetime] = utcnow,
) -> WorkflowService:
    """Wire a service with its engine, tracker, scheduler and collaborators."""
    config = config or load_config()
    repository = repository or get_repository(config=config)
    notifier = notifier or InMemoryNotificationSender()
    directory = directory or StaticUserDirectory()
    documents = documents or InMemoryDocumentGenerator()
    connector = connector or HttpIntegrationConnector()

    registry = default_registry(
        notifier,
        directory,
        documents,
        connector,
        integrations=config.integrations,
        max_reminders=config.approvals.max_reminders,
        approval_timeout_hours=config.approvals.default_timeout_hours,
    )
    evaluator = ConditionEvaluator()
    dispatcher = ActionDispatcher(
        registry,
        default_retries=config.engine.default_retries,
        backoff_base=config.engine.retry_backoff_base,
        jitter=config.engine.retry_jitter,
    )
    tracker = ExecutionTracker(max_concurrent=config.engine.max_concurrent_executions)
    audit = AuditLog(repository)
    engine = ExecutionEngine(
        repository, dispatcher, evaluator, tracker, audit, config.engine, clock=clock
    )
    scheduler = Scheduler(engine, repository, audit, notifier, config.scheduler, clock=clock)
    validator = DefinitionValidator(registry, evaluator, directory)
    return WorkflowService(
        repository, validator, engine, tracker, scheduler, audit, config=config, clock=clock
    )
