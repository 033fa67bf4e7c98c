"""Command line interface for managing lexflow workflows."""

from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Awaitable, Optional, TypeVar

import typer
import yaml

from lexflow.config import load_config
from lexflow.contracts import ExecutionState, WorkflowState
from lexflow.errors import DefinitionValidationError, LexflowError
from lexflow.persistence import get_repository
from lexflow.service import WorkflowService, build_service

T = TypeVar("T")

app = typer.Typer(help="CLI for lexflow legal-practice workflows")

# Command groups
workflow_app = typer.Typer(help="Commands for managing workflow definitions")
execution_app = typer.Typer(help="Commands for running and inspecting executions")
scheduler_app = typer.Typer(help="Commands for the trigger scheduler")

app.add_typer(workflow_app, name="workflow")
app.add_typer(execution_app, name="execution")
app.add_typer(scheduler_app, name="scheduler")

TenantOption = typer.Option(None, "--tenant", help="Tenant id (default from config)")
ActorOption = typer.Option("cli", "--actor", help="Acting user id")


@app.callback()
def main(
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
) -> None:
    """lexflow CLI entry point."""
    logging.basicConfig(
        level=log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _service() -> WorkflowService:
    config = load_config()
    return build_service(config=config, repository=get_repository())


def _tenant(tenant: Optional[str]) -> str:
    return tenant or load_config().default_tenant


def _run(coro: Awaitable[T]) -> T:
    """Run ``coro`` and turn lexflow errors into a red message and exit code 1."""
    try:
        return asyncio.run(coro)
    except DefinitionValidationError as e:
        typer.secho("Invalid workflow definition:", fg=typer.colors.RED)
        for problem in e.problems:
            typer.secho(f"  - {problem}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    except LexflowError as e:
        typer.secho(str(e), fg=typer.colors.RED)
        raise typer.Exit(code=1)


def _read_document(path: Path) -> Any:
    """Load a YAML or JSON file (JSON is valid YAML)."""
    if not path.exists():
        typer.secho("Specified path does not exist", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    with open(path) as f:
        return yaml.safe_load(f)


def _parse_context(raw: Optional[str]) -> dict:
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as e:
        typer.secho(f"Context is not valid JSON: {e}", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    if not isinstance(value, dict):
        typer.secho("Context must be a JSON object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    return value


@workflow_app.command("list")
def workflow_list(
    state: Optional[WorkflowState] = typer.Option(None, help="Only workflows in this state"),
    search: Optional[str] = typer.Option(None, help="Text in name or description"),
    tenant: Optional[str] = TenantOption,
) -> None:
    """
    List the tenant's workflows, newest first.

    Example:
        lexflow workflow list --state ACTIVO
        # Output: 2f1c...    ACTIVO    1.0.1    Aprobación de Gastos Estándar
    """
    service = _service()
    workflows = _run(service.list_workflows(_tenant(tenant), state=state, search=search))
    if not workflows:
        typer.echo("No workflows found")
        return
    for wf in workflows:
        typer.echo(f"{wf.id}\t{wf.state.value}\t{wf.version}\t{wf.name}")


@workflow_app.command("show")
def workflow_show(workflow_id: str, tenant: Optional[str] = TenantOption) -> None:
    """Show a workflow definition with its steps."""
    service = _service()
    wf = _run(service.get(_tenant(tenant), workflow_id))
    typer.echo(f"Workflow {wf.id}: {wf.name} [{wf.state.value}] v{wf.version}")
    typer.echo(f"Type: {wf.type.value}  Priority: {wf.priority}")
    if wf.description:
        typer.echo(f"Description: {wf.description}")
    for step in sorted(wf.steps, key=lambda s: s.order):
        actions = ", ".join(a.type for a in step.actions)
        typer.echo(f"- {step.order}. {step.name}: {actions}")
    for trigger in wf.triggers:
        typer.echo(f"Trigger: {trigger.event}" + (f" ({trigger.cron})" if trigger.cron else ""))


@workflow_app.command("create")
def workflow_create(
    path: Path,
    tenant: Optional[str] = TenantOption,
    actor: str = ActorOption,
) -> None:
    """
    Create a workflow (state BORRADOR) from a YAML or JSON definition file.

    Example:
        lexflow workflow create ./gastos.yaml
        # Output: Workflow created: 2f1c...
    """
    service = _service()
    definition = _read_document(path)
    wf = _run(service.create(_tenant(tenant), actor, definition))
    typer.echo(f"Workflow created: {wf.id}")


@workflow_app.command("template")
def workflow_template(
    key: str,
    name: Optional[str] = typer.Option(None, help="Name of the new workflow"),
    tenant: Optional[str] = TenantOption,
    actor: str = ActorOption,
) -> None:
    """Create a workflow from a built-in template (aprobacionGastos, onboardingCliente)."""
    service = _service()
    wf = _run(service.create_from_template(_tenant(tenant), actor, key, name=name))
    typer.echo(f"Workflow created: {wf.id}")


def _change_state(
    workflow_id: str, state: WorkflowState, reason: Optional[str], tenant: Optional[str], actor: str
) -> None:
    service = _service()
    wf = _run(service.change_state(_tenant(tenant), actor, workflow_id, state, reason))
    typer.echo(f"Workflow {wf.id}: {wf.state.value}")


@workflow_app.command("activate")
def workflow_activate(
    workflow_id: str, tenant: Optional[str] = TenantOption, actor: str = ActorOption
) -> None:
    """Activate a workflow so it can run and its triggers are armed."""
    _change_state(workflow_id, WorkflowState.ACTIVO, None, tenant, actor)


@workflow_app.command("pause")
def workflow_pause(
    workflow_id: str,
    reason: Optional[str] = None,
    tenant: Optional[str] = TenantOption,
    actor: str = ActorOption,
) -> None:
    """Pause a workflow, stopping its executions in progress."""
    _change_state(workflow_id, WorkflowState.PAUSADO, reason, tenant, actor)


@workflow_app.command("archive")
def workflow_archive(
    workflow_id: str,
    reason: Optional[str] = None,
    tenant: Optional[str] = TenantOption,
    actor: str = ActorOption,
) -> None:
    """Archive a workflow."""
    _change_state(workflow_id, WorkflowState.ARCHIVADO, reason, tenant, actor)


@workflow_app.command("export")
def workflow_export(
    workflow_id: str,
    output: Optional[Path] = typer.Option(None, help="Write to this file instead of stdout"),
    tenant: Optional[str] = TenantOption,
    actor: str = ActorOption,
) -> None:
    """Export a workflow definition as JSON."""
    service = _service()
    document = _run(service.export(_tenant(tenant), workflow_id, actor))
    text = json.dumps(document, indent=2, ensure_ascii=False)
    if output is None:
        typer.echo(text)
        return
    output.write_text(text)
    typer.echo(f"Exported to {output}")


@workflow_app.command("import")
def workflow_import(
    path: Path,
    overwrite: bool = typer.Option(False, help="Replace a workflow with the same name"),
    tenant: Optional[str] = TenantOption,
    actor: str = ActorOption,
) -> None:
    """Import a workflow from an exported JSON document."""
    service = _service()
    document = _read_document(path)
    if not isinstance(document, dict):
        typer.secho("Import document must be an object", fg=typer.colors.RED)
        raise typer.Exit(code=1)
    wf = _run(service.import_definition(_tenant(tenant), actor, document, overwrite=overwrite))
    typer.echo(f"Workflow imported: {wf.id}")


@execution_app.command("start")
def execution_start(
    workflow_id: str,
    entity_id: Optional[str] = typer.Option(None, help="Business entity id"),
    entity_type: Optional[str] = typer.Option(None, help="Business entity type"),
    context: Optional[str] = typer.Option(None, help="Initial context as a JSON object"),
    tenant: Optional[str] = TenantOption,
    actor: str = ActorOption,
) -> None:
    """
    Run a workflow to completion and print the outcome.

    Example:
        lexflow execution start 2f1c... --context '{"monto": 1500}'
        # Output: Execution 9a7b...: COMPLETADO
    """
    service = _service()
    execution = _run(
        service.start_execution(
            _tenant(tenant),
            actor,
            workflow_id,
            entity_id=entity_id,
            entity_type=entity_type,
            context=_parse_context(context),
        )
    )
    typer.echo(f"Execution {execution.id}: {execution.state.value}")
    for error in execution.errors:
        typer.secho(f"  {error}", fg=typer.colors.RED)


@execution_app.command("show")
def execution_show(execution_id: str, tenant: Optional[str] = TenantOption) -> None:
    """Show an execution and its step history."""
    service = _service()
    execution = _run(service.get_execution(_tenant(tenant), execution_id))
    typer.echo(f"Execution {execution.id}: {execution.state.value}")
    typer.echo(f"Workflow: {execution.workflow_id} v{execution.workflow_version}")
    if execution.context:
        typer.echo(f"Context: {execution.context}")
    for entry in execution.history:
        typer.echo(
            f"- {entry.order}. {entry.name}: {entry.state.value}"
            f" ({entry.started_at} -> {entry.completed_at})"
        )
    for error in execution.errors:
        typer.secho(f"  {error}", fg=typer.colors.RED)


@execution_app.command("list")
def execution_list(
    workflow_id: Optional[str] = typer.Option(None, "--workflow", help="Only this workflow"),
    state: Optional[ExecutionState] = typer.Option(None, help="Only executions in this state"),
    tenant: Optional[str] = TenantOption,
) -> None:
    """List executions in start order."""
    service = _service()
    executions = _run(
        service.list_executions(_tenant(tenant), workflow_id=workflow_id, state=state)
    )
    if not executions:
        typer.echo("No executions found")
        return
    for execution in executions:
        typer.echo(f"{execution.id}\t{execution.state.value}\t{execution.workflow_id}")


@app.command("stats")
def stats(tenant: Optional[str] = TenantOption) -> None:
    """Print workflow and execution statistics for the tenant."""
    service = _service()
    statistics = _run(service.statistics(_tenant(tenant)))
    typer.echo(json.dumps(statistics.model_dump(mode="json"), indent=2, ensure_ascii=False))


@scheduler_app.command("run")
def scheduler_run(
    lifespan: Optional[float] = typer.Option(
        None, help="Stop after this many seconds (default: run indefinitely)"
    ),
    tenant: Optional[str] = TenantOption,
) -> None:
    """Arm the triggers of every ACTIVO workflow and tick the scheduler."""
    service = _service()

    async def _serve() -> int:
        armed = await service.scheduler.load([_tenant(tenant)])
        typer.echo(f"Scheduler started with {armed} armed triggers")
        await service.scheduler.run(lifespan=lifespan)
        return armed

    _run(_serve())


if __name__ == "__main__":  # pragma: no cover - CLI entry point
    app()
