from datetime import datetime, timedelta, timezone

import pytest

from lexflow.contracts import ExecutionState, PendingState, StepState, Trigger
from lexflow.scheduler import next_fire_time
from lexflow.service import build_service

TENANT = "despacho-1"
ACTOR = "abogado-1"

NOTIFY = [{"type": "NOTIFICACION", "config": {"destinatarios": ["x"]}}]


def _at(hour, minute=0, day=1):
    return datetime(2030, 1, day, hour, minute, tzinfo=timezone.utc)


def test_next_fire_time_cron_and_window():
    trigger = Trigger(event="PROGRAMADO", cron="0 9 * * *")
    assert next_fire_time(trigger, _at(8)) == _at(9)
    assert next_fire_time(trigger, _at(9)) == _at(9, day=2)

    windowed = Trigger(
        event="PROGRAMADO", cron="0 9 * * *", starts_at=_at(9, day=3), ends_at=_at(12, day=4)
    )
    assert next_fire_time(windowed, _at(8)) == _at(9, day=3)
    assert next_fire_time(windowed, _at(10, day=4)) is None


def test_next_fire_time_one_shot():
    trigger = Trigger(event="PROGRAMADO", run_at=_at(15))
    assert next_fire_time(trigger, _at(8)) == _at(15)
    assert next_fire_time(trigger, _at(16)) is None
    assert next_fire_time(Trigger(event="CREAR_CASO"), _at(8)) is None


def test_timer_wheel_rearm_and_lazy_cancel(service):
    scheduler = service.scheduler
    scheduler.schedule("a", "custom", _at(10))
    scheduler.schedule("b", "custom", _at(9))
    assert scheduler.next_due() == _at(9)

    scheduler.schedule("b", "custom", _at(11))
    assert scheduler.next_due() == _at(10)
    assert scheduler.cancel("a")
    assert not scheduler.cancel("a")
    assert scheduler.next_due() == _at(11)
    assert scheduler.pending_keys() == ["b"]
    assert len(scheduler) == 1


@pytest.mark.asyncio
async def test_tick_is_idempotent_and_single_flight(service):
    scheduler = service.scheduler
    scheduler.schedule("x", "custom", _at(9))

    async with scheduler._tick_lock:
        assert await scheduler.tick(now=_at(10)) == 0
    assert scheduler.pending_keys() == ["x"]

    assert await scheduler.tick(now=_at(8)) == 0
    assert await scheduler.tick(now=_at(10)) == 1
    assert await scheduler.tick(now=_at(10)) == 0


@pytest.mark.asyncio
async def test_cron_trigger_fires_and_rearms(service):
    workflow = await service.create(
        TENANT,
        ACTOR,
        {
            "name": "Reporte diario",
            "steps": [{"order": 1, "name": "Enviar", "actions": NOTIFY}],
            "triggers": [
                {"event": "PROGRAMADO", "cron": "*/5 * * * *", "context": {"reporte": "diario"}}
            ],
        },
    )
    await service.activate(TENANT, ACTOR, workflow.id)
    due = service.scheduler.next_run_for(workflow.id)

    assert await service.scheduler.tick(now=due) == 1
    await service.engine.drain()

    executions = await service.list_executions(TENANT, workflow.id)
    assert len(executions) == 1
    assert executions[0].trigger == "PROGRAMADO"
    assert executions[0].context == {"reporte": "diario"}
    assert executions[0].state == ExecutionState.COMPLETADO
    assert service.scheduler.next_run_for(workflow.id) > due


@pytest.mark.asyncio
async def test_trigger_conditions_gate_scheduled_runs(service):
    workflow = await service.create(
        TENANT,
        ACTOR,
        {
            "name": "Vencimientos",
            "steps": [{"order": 1, "name": "Avisar", "actions": NOTIFY}],
            "triggers": [
                {
                    "event": "PROGRAMADO",
                    "cron": "0 * * * *",
                    "conditions": [{"type": "MONTO_MAYOR", "value": 100}],
                    "context": {"monto": 50},
                }
            ],
        },
    )
    await service.activate(TENANT, ACTOR, workflow.id)
    due = service.scheduler.next_run_for(workflow.id)
    await service.scheduler.tick(now=due)
    await service.engine.drain()

    assert await service.list_executions(TENANT, workflow.id) == []
    assert service.scheduler.next_run_for(workflow.id) > due


@pytest.mark.asyncio
async def test_scheduled_run_cancelled_when_workflow_paused(service):
    workflow = await service.create(
        TENANT,
        ACTOR,
        {"name": "Programado", "steps": [{"order": 1, "name": "Avisar", "actions": NOTIFY}]},
    )
    await service.activate(TENANT, ACTOR, workflow.id)
    due = service.clock() + timedelta(hours=2)
    execution = await service.start_execution(TENANT, ACTOR, workflow.id, scheduled_at=due)
    await service.pause(TENANT, ACTOR, workflow.id)

    await service.scheduler.tick(now=due)
    cancelled = await service.get_execution(TENANT, execution.id)
    assert cancelled.state == ExecutionState.CANCELADO
    assert cancelled.errors == ["Workflow is no longer active"]


@pytest.mark.asyncio
async def test_approval_timeout_reminds_then_escalates(service, notifier):
    workflow = await service.create(
        TENANT,
        ACTOR,
        {
            "name": "Aprobación urgente",
            "administrators": ["socio"],
            "steps": [
                {
                    "order": 1,
                    "name": "Aprobar",
                    "actions": [
                        {
                            "type": "APROBACION",
                            "config": {
                                "aprobadores": ["gerente"],
                                "timeoutHoras": 1,
                                "recordatorios": 2,
                            },
                        }
                    ],
                }
            ],
        },
    )
    await service.activate(TENANT, ACTOR, workflow.id)
    execution = await service.start_execution(TENANT, ACTOR, workflow.id)
    (pending,) = service.list_pending_actions(TENANT, execution.id)
    assert pending.max_retries == 2

    for attempt in (1, 2):
        await service.scheduler.tick(now=pending.due_at)
        assert pending.attempts == attempt
        assert pending.state == PendingState.PENDIENTE
    assert notifier.templates_sent().count("aprobacionTimeout") == 2

    await service.scheduler.tick(now=pending.due_at)
    assert pending.state == PendingState.ESCALADO
    assert pending.step_state == StepState.FALLIDO
    assert notifier.sent[-1]["template"] == "aprobacionEscalada"
    assert notifier.sent[-1]["recipients"] == ["socio"]
    assert service.scheduler.pending_keys() == []

    actions = [r.action for r in await service.audit_trail(TENANT, execution.id)]
    assert actions.count("RECORDATORIO_ENVIADO") == 2
    assert actions[-1] == "ACCION_ESCALADA"
    assert service.list_pending_actions(TENANT) == []

    stored = await service.get_execution(TENANT, execution.id)
    assert stored.errors == ["Step 1 (Aprobar) APROBACION escalated after 2 reminders"]


@pytest.mark.asyncio
async def test_pending_deadlines_follow_the_service_clock(config, repository, notifier):
    frozen = _at(8)
    service = build_service(
        config=config, repository=repository, notifier=notifier, clock=lambda: frozen
    )
    workflow = await service.create(
        TENANT,
        ACTOR,
        {
            "name": "Aprobación con reloj",
            "steps": [
                {
                    "order": 1,
                    "name": "Aprobar",
                    "actions": [
                        {
                            "type": "APROBACION",
                            "config": {"aprobadores": ["gerente"], "timeoutHoras": 2},
                        }
                    ],
                }
            ],
        },
    )
    await service.activate(TENANT, ACTOR, workflow.id)
    execution = await service.start_execution(TENANT, ACTOR, workflow.id)

    (pending,) = service.list_pending_actions(TENANT, execution.id)
    assert pending.due_at == _at(10)
    assert service.scheduler.next_due() == _at(10)
    assert execution.completed_at == frozen
