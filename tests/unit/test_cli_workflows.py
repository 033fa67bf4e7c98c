import asyncio
import json

import pytest
from typer.testing import CliRunner

import lexflow.persistence as persistence
from lexflow.cli import app
from lexflow.contracts import Step, StepAction, Workflow, WorkflowState
from lexflow.persistence import InMemoryWorkflowRepository

DEFINITION_YAML = """
name: Revisión de contrato
type: APROBACION_DOCUMENTO
steps:
  - order: 1
    name: Avisar al equipo
    actions:
      - type: NOTIFICACION
        config:
          destinatarios: [equipo]
"""


@pytest.fixture(autouse=True)
def isolated_config(tmp_path, monkeypatch):
    monkeypatch.setenv("LEXFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.delenv("LEXFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)


def _setup_repo() -> InMemoryWorkflowRepository:
    repo = InMemoryWorkflowRepository()
    persistence._repository_instance = repo
    return repo


def _workflow(name="Caso civil", state=WorkflowState.ACTIVO) -> Workflow:
    return Workflow(
        name=name,
        tenant_id="default",
        state=state,
        steps=[
            Step(
                order=1,
                name="Avisar",
                actions=[StepAction(type="NOTIFICACION", config={"destinatarios": ["x"]})],
            )
        ],
    )


def test_workflow_list_shows_tenant_workflows():
    repo = _setup_repo()
    wf1 = _workflow("Caso civil")
    wf2 = _workflow("Caso penal", state=WorkflowState.BORRADOR)
    asyncio.run(repo.save_workflow(wf1))
    asyncio.run(repo.save_workflow(wf2))

    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "list"])
    assert result.exit_code == 0, f"Command failed: {result.stdout}"
    assert wf1.id in result.stdout
    assert wf2.id in result.stdout
    assert "BORRADOR" in result.stdout

    result = runner.invoke(app, ["workflow", "list", "--state", "ACTIVO"])
    assert wf1.id in result.stdout
    assert wf2.id not in result.stdout


def test_workflow_list_empty():
    _setup_repo()
    result = CliRunner().invoke(app, ["workflow", "list", "--tenant", "nadie"])
    assert result.exit_code == 0
    assert "No workflows found" in result.stdout


def test_workflow_create_from_yaml_and_activate(tmp_path):
    repo = _setup_repo()
    path = tmp_path / "flujo.yaml"
    path.write_text(DEFINITION_YAML)

    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "create", str(path), "--actor", "ana"])
    assert result.exit_code == 0, f"Command failed: {result.stdout}"
    (workflow,) = asyncio.run(repo.list_workflows("default"))
    assert workflow.created_by == "ana"
    assert workflow.id in result.stdout

    result = runner.invoke(app, ["workflow", "activate", workflow.id])
    assert result.exit_code == 0
    assert f"Workflow {workflow.id}: ACTIVO" in result.stdout

    result = runner.invoke(app, ["workflow", "activate", workflow.id])
    assert result.exit_code == 1
    assert "Cannot change workflow state" in result.stdout


def test_workflow_create_reports_every_problem(tmp_path):
    _setup_repo()
    path = tmp_path / "roto.yaml"
    path.write_text(
        """
name: Flujo roto
steps:
  - order: 2
    name: Sin acciones
"""
    )
    result = CliRunner().invoke(app, ["workflow", "create", str(path)])
    assert result.exit_code == 1
    assert "Invalid workflow definition" in result.stdout
    assert "Step 2 has no actions" in result.stdout
    assert "sequential" in result.stdout


def test_workflow_show_and_missing():
    repo = _setup_repo()
    wf = _workflow()
    asyncio.run(repo.save_workflow(wf))

    runner = CliRunner()
    result = runner.invoke(app, ["workflow", "show", wf.id])
    assert result.exit_code == 0
    assert "Caso civil" in result.stdout
    assert "1. Avisar: NOTIFICACION" in result.stdout

    result_missing = runner.invoke(app, ["workflow", "show", "missing-id"])
    assert result_missing.exit_code == 1
    assert "Workflow missing-id not found" in result_missing.stdout


def test_workflow_export_to_file(tmp_path):
    repo = _setup_repo()
    wf = _workflow()
    asyncio.run(repo.save_workflow(wf))
    output = tmp_path / "export.json"

    result = CliRunner().invoke(app, ["workflow", "export", wf.id, "--output", str(output)])
    assert result.exit_code == 0
    document = json.loads(output.read_text())
    assert document["version"] == "1.0"
    assert document["flujo"]["name"] == "Caso civil"


def test_execution_start_show_and_list():
    repo = _setup_repo()
    wf = _workflow()
    asyncio.run(repo.save_workflow(wf))

    runner = CliRunner()
    result = runner.invoke(
        app, ["execution", "start", wf.id, "--context", '{"monto": 100}', "--entity-id", "caso-1"]
    )
    assert result.exit_code == 0, f"Command failed: {result.stdout}"
    assert "COMPLETADO" in result.stdout

    (execution,) = asyncio.run(repo.list_executions("default"))
    assert execution.context == {"monto": 100}

    result = runner.invoke(app, ["execution", "show", execution.id])
    assert result.exit_code == 0
    assert "1. Avisar: COMPLETADO" in result.stdout

    result = runner.invoke(app, ["execution", "list", "--workflow", wf.id])
    assert execution.id in result.stdout

    result = runner.invoke(app, ["execution", "start", wf.id, "--context", "[1, 2]"])
    assert result.exit_code == 1
    assert "Context must be a JSON object" in result.stdout


def test_stats_command():
    repo = _setup_repo()
    asyncio.run(repo.save_workflow(_workflow()))
    result = CliRunner().invoke(app, ["stats"])
    assert result.exit_code == 0
    assert json.loads(result.stdout)["total_workflows"] == 1
