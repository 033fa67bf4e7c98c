"""Data models for persisted records that are not domain contracts."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..contracts import new_id, utcnow


class AuditRecord(BaseModel):
    """Immutable audit log entry."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    tenant_id: str
    entity_id: str
    action: str
    actor_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)
    details: dict[str, Any] = Field(default_factory=dict)
