from __future__ import annotations

import os
from typing import Dict, Optional

import yaml
from pydantic import BaseModel, Field


class EngineConfig(BaseModel):
    """Execution engine settings."""

    max_step_visits: int = Field(default=100, ge=1)
    max_concurrent_executions: int = Field(default=10, ge=1)
    default_retries: int = Field(default=3, ge=0)
    retry_backoff_base: float = 1.5
    retry_jitter: float = 0.5


class SchedulerConfig(BaseModel):
    """Timer wheel settings."""

    tick_seconds: float = Field(default=60.0, gt=0)


class ApprovalConfig(BaseModel):
    """Defaults for actions awaiting a human response."""

    default_timeout_hours: float = 24.0
    max_reminders: int = Field(default=3, ge=0)


class IntegrationConfig(BaseModel):
    """Connection settings for one external system."""

    base_url: Optional[str] = None
    api_key: Optional[str] = None
    timeout_seconds: float = 60.0


class LexflowConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    default_tenant: str = "default"
    engine: EngineConfig = EngineConfig()
    scheduler: SchedulerConfig = SchedulerConfig()
    approvals: ApprovalConfig = ApprovalConfig()
    integrations: Dict[str, IntegrationConfig] = Field(default_factory=dict)


def load_config(path: Optional[str] = None) -> LexflowConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to the LEXFLOW_CONFIG env
            variable or 'lexflow.yaml' in the current directory.
    """

    config_path = path or os.getenv("LEXFLOW_CONFIG", "lexflow.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = LexflowConfig(**data)
    else:
        config = LexflowConfig()

    env_db_url = os.getenv("LEXFLOW_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    return config
