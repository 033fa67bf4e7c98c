import asyncio
from datetime import timedelta

import pytest

from lexflow.config import LexflowConfig
from lexflow.contracts import ActionResult, ExecutionState, WorkflowState, WorkflowType, utcnow
from lexflow.errors import (
    ConflictError,
    DefinitionValidationError,
    InvalidTransitionError,
    NotFoundError,
)
from lexflow.handlers import BaseActionHandler
from lexflow.service import build_service, renumber_steps

TENANT = "despacho-1"
ACTOR = "abogado-1"

NOTIFY = [{"type": "NOTIFICACION", "config": {"destinatarios": ["secretaria"]}}]


class GateHandler(BaseActionHandler):
    type = "COMPUERTA"

    def __init__(self):
        self.entered = asyncio.Event()
        self.released = asyncio.Event()

    async def execute(self, action, ctx):
        self.entered.set()
        await self.released.wait()
        return ActionResult(ok=True, message="ABIERTA")


def definition(name="Revisión de contrato", steps=3, **extra):
    data = {
        "name": name,
        "type": "APROBACION_DOCUMENTO",
        "steps": [
            {"order": i, "name": f"Paso {i}", "actions": NOTIFY} for i in range(1, steps + 1)
        ],
    }
    data.update(extra)
    return data


@pytest.mark.asyncio
async def test_create_starts_as_draft_and_is_audited(service):
    workflow = await service.create(TENANT, ACTOR, definition())
    assert workflow.state == WorkflowState.BORRADOR
    assert workflow.version == "1.0.0"
    assert workflow.created_by == ACTOR

    trail = await service.audit_trail(TENANT, workflow.id)
    assert trail[0].action == "CREACION"
    assert trail[0].details == {"tipo": "APROBACION_DOCUMENTO", "totalPasos": 3}


@pytest.mark.asyncio
async def test_create_rejects_schema_and_semantic_errors(service):
    with pytest.raises(DefinitionValidationError) as exc:
        await service.create(TENANT, ACTOR, {"name": "X", "steps": []})
    assert any(p.startswith("name:") for p in exc.value.problems)

    with pytest.raises(DefinitionValidationError):
        await service.create(TENANT, ACTOR, definition(steps=0))


@pytest.mark.asyncio
async def test_names_are_unique_per_tenant(service):
    await service.create(TENANT, ACTOR, definition())
    with pytest.raises(ConflictError):
        await service.create(TENANT, ACTOR, definition())
    other = await service.create("otro-despacho", ACTOR, definition())
    assert other.tenant_id == "otro-despacho"


@pytest.mark.asyncio
async def test_list_filters_and_tenant_isolation(service):
    first = await service.create(TENANT, ACTOR, definition("Contrato A", tags=["civil"]))
    second = await service.create(
        TENANT, "socia-2", definition("Gasto B", type="AUTORIZACION_GASTO", priority=9)
    )
    await service.create("otro-despacho", ACTOR, definition("Contrato C"))

    assert {w.id for w in await service.list_workflows(TENANT)} == {first.id, second.id}
    assert [w.id for w in await service.list_workflows(TENANT, tag="civil")] == [first.id]
    assert [w.id for w in await service.list_workflows(TENANT, priority=9)] == [second.id]
    assert [
        w.id for w in await service.list_workflows(TENANT, type=WorkflowType.AUTORIZACION_GASTO)
    ] == [second.id]
    assert [w.id for w in await service.list_workflows(TENANT, created_by="socia-2")] == [
        second.id
    ]
    assert [w.id for w in await service.list_workflows(TENANT, search="contrato")] == [first.id]

    with pytest.raises(NotFoundError):
        await service.get("otro-despacho", first.id)


@pytest.mark.asyncio
async def test_update_bumps_patch_only_for_steps(service):
    workflow = await service.create(TENANT, ACTOR, definition())

    renamed = await service.update(TENANT, ACTOR, workflow.id, {"name": "Revisión de poder"})
    assert renamed.name == "Revisión de poder"
    assert renamed.version == "1.0.0"

    new_steps = definition(steps=4)["steps"]
    updated = await service.update(
        TENANT, ACTOR, workflow.id, {"steps": new_steps, "reason": "Paso extra"}
    )
    assert updated.version == "1.0.1"
    assert len(updated.steps) == 4

    trail = await service.audit_trail(TENANT, workflow.id)
    assert trail[-1].action == "ACTUALIZACION"
    assert trail[-1].details["motivo"] == "Paso extra"
    assert trail[-1].details["versionNueva"] == "1.0.1"


@pytest.mark.asyncio
async def test_update_validates_and_rejects_archived(service):
    workflow = await service.create(TENANT, ACTOR, definition())
    broken = definition()["steps"]
    broken[2]["order"] = 7
    with pytest.raises(DefinitionValidationError):
        await service.update(TENANT, ACTOR, workflow.id, {"steps": broken})

    await service.change_state(TENANT, ACTOR, workflow.id, WorkflowState.ARCHIVADO)
    with pytest.raises(ConflictError):
        await service.update(TENANT, ACTOR, workflow.id, {"description": "nueva"})


@pytest.mark.asyncio
async def test_state_changes_follow_the_lifecycle(service):
    workflow = await service.create(TENANT, ACTOR, definition())
    with pytest.raises(InvalidTransitionError):
        await service.pause(TENANT, ACTOR, workflow.id)

    active = await service.activate(TENANT, ACTOR, workflow.id)
    assert active.state == WorkflowState.ACTIVO
    paused = await service.pause(TENANT, ACTOR, workflow.id, reason="Vacaciones")
    assert paused.state == WorkflowState.PAUSADO

    trail = await service.audit_trail(TENANT, workflow.id)
    change = trail[-1]
    assert change.action == "CAMBIO_ESTADO"
    assert change.details["estadoOriginal"] == "ACTIVO"
    assert change.details["estadoNuevo"] == "PAUSADO"
    assert change.details["motivo"] == "Vacaciones"


@pytest.mark.asyncio
async def test_activation_arms_and_pause_disarms_cron_triggers(service):
    workflow = await service.create(
        TENANT,
        ACTOR,
        definition(triggers=[{"event": "PROGRAMADO", "cron": "0 8 * * *"}]),
    )
    await service.activate(TENANT, ACTOR, workflow.id)
    assert service.scheduler.pending_keys() == [f"trigger:{workflow.id}:0"]
    metrics = await service.workflow_metrics(TENANT, workflow.id)
    assert metrics.next_execution is not None

    await service.pause(TENANT, ACTOR, workflow.id)
    assert service.scheduler.pending_keys() == []


def test_renumber_steps_remaps_branches():
    from lexflow.contracts import Step, StepAction

    action = [StepAction(type="NOTIFICACION", config={"destinatarios": ["x"]})]
    steps = [
        Step(order=1, name="Uno", actions=action, next_on_failure=3),
        Step(order=2, name="Dos", actions=action),
        Step(order=3, name="Tres", actions=action, next_on_success=2),
    ]
    result = renumber_steps(steps, excluded=[2])
    assert [(s.order, s.name) for s in result] == [(1, "Uno"), (2, "Tres")]
    assert result[0].next_on_failure == 2
    assert result[1].next_on_success is None


@pytest.mark.asyncio
async def test_duplicate(service):
    original = await service.create(
        TENANT,
        ACTOR,
        definition(
            description="Flujo base",
            tags=["civil"],
            triggers=[{"event": "CREAR_CASO"}],
        ),
    )
    copy = await service.duplicate(
        TENANT, "socia-2", original.id, "Revisión de contrato (copia)", exclude_steps=[2]
    )
    assert copy.id != original.id
    assert copy.description == "Copia de: Flujo base"
    assert copy.tags == ["civil", "copia"]
    assert copy.triggers == []
    assert copy.version == "1.0.0"
    assert [s.order for s in copy.steps] == [1, 2]
    assert copy.state == WorkflowState.BORRADOR

    active_copy = await service.duplicate(
        TENANT, ACTOR, original.id, "Otra copia", copy_triggers=True, activate=True
    )
    assert active_copy.state == WorkflowState.ACTIVO
    assert [t.event for t in active_copy.triggers] == ["CREAR_CASO"]

    trail = await service.audit_trail(TENANT, copy.id)
    assert "DUPLICACION" in [r.action for r in trail]


@pytest.mark.asyncio
async def test_remove_archives(service):
    workflow = await service.create(TENANT, ACTOR, definition())
    removed = await service.remove(TENANT, ACTOR, workflow.id)
    assert removed.state == WorkflowState.ARCHIVADO
    assert (await service.get(TENANT, workflow.id)).state == WorkflowState.ARCHIVADO
    # the name is free again once archived
    await service.create(TENANT, ACTOR, definition())
    with pytest.raises(InvalidTransitionError):
        await service.remove(TENANT, ACTOR, workflow.id)


@pytest.mark.asyncio
async def test_export_and_import(service):
    workflow = await service.create(TENANT, ACTOR, definition())
    await service.update(TENANT, ACTOR, workflow.id, {"steps": definition(steps=2)["steps"]})

    document = await service.export(TENANT, workflow.id, ACTOR)
    assert document["version"] == "1.0"
    assert document["metadata"]["exportadoPor"] == ACTOR
    assert document["metadata"]["version"] == "1.0.1"
    assert document["flujo"]["name"] == "Revisión de contrato"

    imported = await service.import_definition("otro-despacho", ACTOR, document)
    assert imported.tenant_id == "otro-despacho"
    assert imported.version == "1.0.1"
    assert len(imported.steps) == 2

    with pytest.raises(ConflictError):
        await service.import_definition("otro-despacho", ACTOR, document)

    document["flujo"]["description"] = "Importado de nuevo"
    overwritten = await service.import_definition(
        "otro-despacho", ACTOR, document, overwrite=True
    )
    assert overwritten.id == imported.id
    assert overwritten.description == "Importado de nuevo"

    with pytest.raises(DefinitionValidationError):
        await service.import_definition(TENANT, ACTOR, {"version": "9.9", "flujo": {}})


@pytest.mark.asyncio
async def test_import_remaps_users(service):
    data = definition(administrators=["viejo"])
    data["steps"][0]["actions"] = [{"type": "APROBACION", "config": {"aprobadores": ["viejo"]}}]
    document = {"version": "1.0", "flujo": data, "metadata": {"version": "2.0.0"}}

    imported = await service.import_definition(
        TENANT, ACTOR, document, user_mapping={"viejo": "nuevo"}
    )
    assert imported.administrators == ["nuevo"]
    assert imported.steps[0].actions[0].config["aprobadores"] == ["nuevo"]
    assert imported.version == "2.0.0"


@pytest.mark.asyncio
async def test_create_from_template(service):
    workflow = await service.create_from_template(
        TENANT, ACTOR, "aprobacionGastos", managers=["gerente"], threshold=5000
    )
    assert workflow.type == WorkflowType.AUTORIZACION_GASTO
    assert workflow.steps[2].conditions[0].value == 5000

    with pytest.raises(NotFoundError):
        await service.create_from_template(TENANT, ACTOR, "noExiste")


@pytest.mark.asyncio
async def test_dispatch_event_starts_matching_workflows(service):
    matching = await service.create(
        TENANT,
        ACTOR,
        definition(
            "Nuevo caso grande",
            triggers=[
                {
                    "event": "CREAR_CASO",
                    "conditions": [{"type": "MONTO_MAYOR", "value": 100}],
                    "context": {"origen": "evento"},
                }
            ],
        ),
    )
    other_event = await service.create(
        TENANT, ACTOR, definition("Nueva factura", triggers=[{"event": "CREAR_FACTURA"}])
    )
    paused = await service.create(
        TENANT, ACTOR, definition("Caso en pausa", triggers=[{"event": "CREAR_CASO"}])
    )
    for wf in (matching, other_event, paused):
        await service.activate(TENANT, ACTOR, wf.id)
    await service.pause(TENANT, ACTOR, paused.id)

    started = await service.dispatch_event(
        TENANT, ACTOR, "CREAR_CASO", entity_id="caso-9", context={"monto": 500}
    )
    assert [e.workflow_id for e in started] == [matching.id]
    assert started[0].trigger == "CREAR_CASO"
    assert started[0].context == {"origen": "evento", "monto": 500}

    none = await service.dispatch_event(TENANT, ACTOR, "CREAR_CASO", context={"monto": 5})
    assert none == []


@pytest.mark.asyncio
async def test_scheduled_start_runs_on_tick(service):
    workflow = await service.create(TENANT, ACTOR, definition())
    await service.activate(TENANT, ACTOR, workflow.id)
    due = utcnow() + timedelta(hours=1)

    execution = await service.start_execution(TENANT, ACTOR, workflow.id, scheduled_at=due)
    assert execution.state == ExecutionState.INICIADO
    assert execution.scheduled_for == due

    await service.scheduler.tick(now=due)
    await service.engine.drain()
    finished = await service.get_execution(TENANT, execution.id)
    assert finished.state == ExecutionState.COMPLETADO

    trail = await service.audit_trail(TENANT, workflow.id)
    assert "EJECUCION_PROGRAMADA" in [r.action for r in trail]


@pytest.mark.asyncio
async def test_statistics_and_metrics(service):
    workflow = await service.create(TENANT, ACTOR, definition())
    await service.activate(TENANT, ACTOR, workflow.id)
    for _ in range(2):
        await service.start_execution(TENANT, ACTOR, workflow.id)

    stats = await service.statistics(TENANT)
    assert stats.total_workflows == 1
    assert stats.active_workflows == 1
    assert stats.total_executions == 2
    assert stats.completed_executions == 2
    assert stats.success_rate == 1.0
    assert stats.popular_workflows[0].workflow_id == workflow.id
    assert stats.by_type["APROBACION_DOCUMENTO"].executions == 2

    metrics = await service.workflow_metrics(TENANT, workflow.id)
    assert metrics.total_executions == 2
    assert metrics.most_active_users[0].user_id == ACTOR
    assert len(metrics.last_30_days) == 30
    assert sum(d.executions for d in metrics.last_30_days) == 2

    listed = await service.list_executions(TENANT, workflow.id, state=ExecutionState.COMPLETADO)
    assert len(listed) == 2


@pytest.mark.asyncio
async def test_dispatch_event_defers_runs_over_the_cap(repository, notifier):
    service = build_service(
        config=LexflowConfig(engine={"max_concurrent_executions": 1}),
        repository=repository,
        notifier=notifier,
    )
    for name in ("Caso nuevo A", "Caso nuevo B"):
        workflow = await service.create(
            TENANT, ACTOR, definition(name, triggers=[{"event": "CREAR_CASO"}])
        )
        await service.activate(TENANT, ACTOR, workflow.id)

    started = await service.dispatch_event(TENANT, ACTOR, "CREAR_CASO", wait=False)
    assert len(started) == 2
    (deferred,) = [e for e in started if e.scheduled_for is not None]
    assert deferred.state == ExecutionState.INICIADO
    assert f"run:{deferred.id}" in service.scheduler.pending_keys()

    await service.engine.drain()
    await service.scheduler.tick(now=deferred.scheduled_for)
    await service.engine.drain()
    for execution in started:
        finished = await service.get_execution(TENANT, execution.id)
        assert finished.state == ExecutionState.COMPLETADO


@pytest.mark.asyncio
async def test_structural_edit_rejected_when_execution_starts_meanwhile(service, monkeypatch):
    gate = GateHandler()
    service.engine.dispatcher.registry.register(gate)
    gated = definition()
    gated["steps"][0]["actions"] = [{"type": "COMPUERTA"}]
    workflow = await service.create(TENANT, ACTOR, gated)
    await service.activate(TENANT, ACTOR, workflow.id)

    validate_assignments = service.validator.validate_assignments

    async def start_run_during_validation(definition):
        await service.start_execution(TENANT, ACTOR, workflow.id, wait=False)
        await gate.entered.wait()
        await validate_assignments(definition)

    monkeypatch.setattr(service.validator, "validate_assignments", start_run_during_validation)

    with pytest.raises(ConflictError):
        await service.update(TENANT, ACTOR, workflow.id, {"steps": definition(steps=4)["steps"]})
    stored = await service.get(TENANT, workflow.id)
    assert stored.version == "1.0.0"
    assert len(stored.steps) == 3

    gate.released.set()
    await service.engine.drain()
