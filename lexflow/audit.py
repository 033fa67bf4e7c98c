"""Append-only audit trail of workflow and execution changes."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Optional

from .persistence import AuditRecord, WorkflowRepository

logger = logging.getLogger(__name__)


class AuditAction(str, Enum):
    CREACION = "CREACION"
    ACTUALIZACION = "ACTUALIZACION"
    CAMBIO_ESTADO = "CAMBIO_ESTADO"
    DUPLICACION = "DUPLICACION"
    ELIMINACION = "ELIMINACION"
    IMPORTACION = "IMPORTACION"
    EJECUCION_INICIADA = "EJECUCION_INICIADA"
    EJECUCION_PROGRAMADA = "EJECUCION_PROGRAMADA"
    PASO_COMPLETADO = "PASO_COMPLETADO"
    EJECUCION_COMPLETADA = "EJECUCION_COMPLETADA"
    EJECUCION_FALLIDA = "EJECUCION_FALLIDA"
    EJECUCION_CANCELADA = "EJECUCION_CANCELADA"
    RECORDATORIO_ENVIADO = "RECORDATORIO_ENVIADO"
    ACCION_ESCALADA = "ACCION_ESCALADA"
    ACCION_RESUELTA = "ACCION_RESUELTA"


class AuditLog:
    """Records who did what to which workflow or execution."""

    def __init__(self, repository: WorkflowRepository) -> None:
        self._repository = repository

    async def record(
        self,
        tenant_id: str,
        entity_id: str,
        action: AuditAction | str,
        actor_id: Optional[str] = None,
        **details: Any,
    ) -> AuditRecord:
        action_name = action.value if isinstance(action, AuditAction) else action
        record = AuditRecord(
            tenant_id=tenant_id,
            entity_id=entity_id,
            action=action_name,
            actor_id=actor_id,
            details=details,
        )
        await self._repository.append_audit(record)
        logger.debug(f"Audit {action_name} on {entity_id} by {actor_id}")
        return record

    async def trail(self, tenant_id: str, entity_id: Optional[str] = None) -> list[AuditRecord]:
        return await self._repository.list_audit(tenant_id, entity_id)
