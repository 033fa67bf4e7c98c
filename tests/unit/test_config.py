"""Tests for configuration loading."""

from lexflow.config import load_config
from lexflow.service import build_service


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
default_tenant: despacho-central
engine:
  max_step_visits: 20
  max_concurrent_executions: 4
scheduler:
  tick_seconds: 5
approvals:
  default_timeout_hours: 48
  max_reminders: 1
integrations:
  sunat:
    base_url: https://api.sunat.test
    api_key: clave
"""
    )
    monkeypatch.setenv("LEXFLOW_CONFIG", str(config_path))
    monkeypatch.delenv("LEXFLOW_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)

    config = load_config()
    assert config.default_tenant == "despacho-central"
    assert config.engine.max_step_visits == 20
    assert config.scheduler.tick_seconds == 5
    assert config.approvals.default_timeout_hours == 48
    assert config.integrations["sunat"].api_key == "clave"
    assert config.database_url is None


def test_database_url_env_override(tmp_path, monkeypatch):
    monkeypatch.setenv("LEXFLOW_CONFIG", str(tmp_path / "missing.yaml"))
    monkeypatch.setenv("DATABASE_URL", "sqlite:///tmp/other.db")
    monkeypatch.setenv("LEXFLOW_DATABASE_URL", "sqlite:///tmp/lexflow.db")
    assert load_config().database_url == "sqlite:///tmp/lexflow.db"


def test_build_service_uses_config(tmp_path, monkeypatch, repository):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
engine:
  max_concurrent_executions: 2
  default_retries: 0
approvals:
  max_reminders: 5
"""
    )
    config = load_config(str(config_path))
    service = build_service(config=config, repository=repository)

    assert service.tracker.max_concurrent == 2
    assert service.engine.dispatcher.default_retries == 0
    approval = service.engine.dispatcher.registry.get("APROBACION")
    assert approval._max_reminders == 5
    assert service.validator.registry is service.engine.dispatcher.registry
