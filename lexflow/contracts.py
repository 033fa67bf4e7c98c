"""Core domain contracts for lexflow workflows and executions."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class WorkflowState(str, Enum):
    BORRADOR = "BORRADOR"
    ACTIVO = "ACTIVO"
    PAUSADO = "PAUSADO"
    COMPLETADO = "COMPLETADO"
    CANCELADO = "CANCELADO"
    ARCHIVADO = "ARCHIVADO"


class WorkflowType(str, Enum):
    PROCESO_LEGAL = "PROCESO_LEGAL"
    APROBACION_DOCUMENTO = "APROBACION_DOCUMENTO"
    REVISION_CASO = "REVISION_CASO"
    AUTORIZACION_GASTO = "AUTORIZACION_GASTO"
    VALIDACION_FACTURA = "VALIDACION_FACTURA"
    ONBOARDING_CLIENTE = "ONBOARDING_CLIENTE"
    SEGUIMIENTO_PROYECTO = "SEGUIMIENTO_PROYECTO"
    PROCESO_DISCIPLINARIO = "PROCESO_DISCIPLINARIO"
    AUDITORIA_INTERNA = "AUDITORIA_INTERNA"
    PERSONALIZADO = "PERSONALIZADO"


class ActionType(str, Enum):
    """Tags of the built-in action handlers.

    Action tags are plain strings on :class:`StepAction`, so handlers for new
    tags can be registered without extending this enum.
    """

    APROBACION = "APROBACION"
    NOTIFICACION = "NOTIFICACION"
    ASIGNACION = "ASIGNACION"
    DOCUMENTO = "DOCUMENTO"
    INTEGRACION = "INTEGRACION"
    ESPERA = "ESPERA"


class ExecutionState(str, Enum):
    INICIADO = "INICIADO"
    EN_PROGRESO = "EN_PROGRESO"
    COMPLETADO = "COMPLETADO"
    FALLIDO = "FALLIDO"
    CANCELADO = "CANCELADO"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_EXECUTION_STATES


TERMINAL_EXECUTION_STATES = frozenset(
    {ExecutionState.COMPLETADO, ExecutionState.FALLIDO, ExecutionState.CANCELADO}
)


class StepState(str, Enum):
    COMPLETADO = "COMPLETADO"
    FALLIDO = "FALLIDO"
    OMITIDO = "OMITIDO"
    ERROR = "ERROR"


class PendingState(str, Enum):
    PENDIENTE = "PENDIENTE"
    RESUELTO = "RESUELTO"
    RECHAZADO = "RECHAZADO"
    ESCALADO = "ESCALADO"


TRIGGER_EVENTS = frozenset(
    {
        "CREAR_CASO",
        "ACTUALIZAR_CASO",
        "CERRAR_CASO",
        "CREAR_GASTO",
        "APROBAR_GASTO",
        "RECHAZAR_GASTO",
        "CREAR_FACTURA",
        "PAGAR_FACTURA",
        "VENCER_FACTURA",
        "SUBIR_DOCUMENTO",
        "APROBAR_DOCUMENTO",
        "CREAR_PROYECTO",
        "FINALIZAR_PROYECTO",
        "REGISTRO_TIEMPO",
        "APROBAR_TIEMPO",
        "CREAR_CLIENTE",
        "ACTUALIZAR_CLIENTE",
        "MANUAL",
        "PROGRAMADO",
        "WEBHOOK",
    }
)


class SemanticVersion(BaseModel):
    """Semantic version with ``major.minor.patch`` components."""

    major: int
    minor: int
    patch: int

    @classmethod
    def parse(cls, value: str) -> "SemanticVersion":
        """Parse a dotted version string, padding missing components with 0."""
        parts = value.split(".")
        if not 1 <= len(parts) <= 3:
            raise ValueError(f"Invalid version: {value!r}")
        numbers = [int(p) for p in parts] + [0] * (3 - len(parts))
        return cls(major=numbers[0], minor=numbers[1], patch=numbers[2])

    def bump_patch(self) -> "SemanticVersion":
        return SemanticVersion(major=self.major, minor=self.minor, patch=self.patch + 1)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.patch}"


class StepCondition(BaseModel):
    """Predicate gating whether a step executes."""

    type: str = Field(..., description="Registered evaluator key, e.g. MONTO_MAYOR")
    field: Optional[str] = Field(
        default=None, description="Context path of the evaluated value"
    )
    operator: Optional[str] = None
    value: Any = Field(default=None, description="Reference operand")
    description: Optional[str] = None


class StepAction(BaseModel):
    """Unit of work performed within a step."""

    type: str
    config: Dict[str, Any] = Field(default_factory=dict)
    message: Optional[str] = None


class Step(BaseModel):
    """A step of a workflow graph."""

    id: str = Field(default_factory=new_id)
    order: int = Field(..., ge=1)
    name: str = Field(..., min_length=2, max_length=100)
    description: Optional[str] = None
    conditions: List[StepCondition] = Field(default_factory=list)
    actions: List[StepAction] = Field(default_factory=list)
    next_on_success: Optional[int] = Field(default=None, ge=1)
    next_on_failure: Optional[int] = Field(default=None, ge=1)
    assigned_users: List[str] = Field(default_factory=list)
    timeout_hours: Optional[float] = Field(default=None, gt=0)


class Trigger(BaseModel):
    """Event or schedule that starts executions automatically."""

    event: str = "MANUAL"
    conditions: List[StepCondition] = Field(default_factory=list)
    cron: Optional[str] = None
    run_at: Optional[datetime] = Field(default=None, description="One-shot run time")
    starts_at: Optional[datetime] = None
    ends_at: Optional[datetime] = None
    entity_type: Optional[str] = None
    context: Dict[str, Any] = Field(default_factory=dict)


class WorkflowDefinition(BaseModel):
    """Author-supplied part of a workflow."""

    name: str = Field(..., min_length=3, max_length=100)
    description: Optional[str] = None
    type: WorkflowType = WorkflowType.PERSONALIZADO
    steps: List[Step] = Field(default_factory=list)
    triggers: List[Trigger] = Field(default_factory=list)
    priority: int = Field(default=5, ge=1, le=10)
    administrators: List[str] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    max_concurrent_executions: Optional[int] = Field(default=None, ge=1)
    settings: Dict[str, Any] = Field(default_factory=dict)
    version: str = "1.0.0"

    @field_validator("version")
    @classmethod
    def _normalise_version(cls, v: str) -> str:
        return str(SemanticVersion.parse(v))

    def step(self, order: int) -> Optional[Step]:
        return next((s for s in self.steps if s.order == order), None)

    @property
    def last_order(self) -> int:
        return max((s.order for s in self.steps), default=0)


class Workflow(WorkflowDefinition):
    """Persisted, versioned workflow."""

    id: str = Field(default_factory=new_id)
    tenant_id: str
    state: WorkflowState = WorkflowState.BORRADOR
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def definition(self) -> WorkflowDefinition:
        data = self.model_dump(include=set(WorkflowDefinition.model_fields))
        return WorkflowDefinition.model_validate(data)


class WorkflowUpdate(BaseModel):
    """Partial update of a workflow definition."""

    name: Optional[str] = Field(default=None, min_length=3, max_length=100)
    description: Optional[str] = None
    type: Optional[WorkflowType] = None
    steps: Optional[List[Step]] = None
    triggers: Optional[List[Trigger]] = None
    priority: Optional[int] = Field(default=None, ge=1, le=10)
    administrators: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    max_concurrent_executions: Optional[int] = Field(default=None, ge=1)
    settings: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None

    def changes(self) -> Dict[str, Any]:
        """Fields explicitly set by the caller, excluding ``reason``."""
        return {
            name: getattr(self, name)
            for name in self.model_fields_set
            if name != "reason"
        }

    @property
    def is_structural(self) -> bool:
        return bool({"steps", "triggers"} & self.model_fields_set)


class StepHistory(BaseModel):
    """Immutable record of one visited step."""

    model_config = ConfigDict(frozen=True)

    step_id: str
    name: str
    order: int
    state: StepState
    started_at: datetime
    completed_at: datetime
    input_data: Dict[str, Any] = Field(default_factory=dict)
    output_data: List[Dict[str, Any]] = Field(default_factory=list)
    duration_seconds: float = 0.0
    errors: List[str] = Field(default_factory=list)
    comment: Optional[str] = None


class Execution(BaseModel):
    """One run of a workflow against a business entity."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    workflow_version: str = "1.0.0"
    tenant_id: str
    entity_id: Optional[str] = None
    entity_type: Optional[str] = None
    state: ExecutionState = ExecutionState.INICIADO
    current_step: int = 1
    context: Dict[str, Any] = Field(default_factory=dict)
    history: List[StepHistory] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    executed_by: Optional[str] = None
    trigger: str = "MANUAL"
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    scheduled_for: Optional[datetime] = None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()


class AwaitingResponse(BaseModel):
    """Marker returned by handlers whose request waits on a human."""

    recipients: List[str]
    timeout_hours: float
    max_retries: Optional[int] = None


class ActionResult(BaseModel):
    """Uniform result of an action handler."""

    ok: bool
    message: str = ""
    data: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    retryable: bool = False
    context_updates: Dict[str, Any] = Field(default_factory=dict)
    awaiting: Optional[AwaitingResponse] = None

    @classmethod
    def failure(cls, error: str, retryable: bool = False, **data: Any) -> "ActionResult":
        return cls(ok=False, message="FALLIDO", error=error, retryable=retryable, data=data)


class PendingAction(BaseModel):
    """An approval or notification waiting for a response."""

    id: str = Field(default_factory=new_id)
    execution_id: str
    workflow_id: str
    tenant_id: str
    step_order: int
    step_name: str
    action_type: str
    recipients: List[str] = Field(default_factory=list)
    timeout_hours: float
    max_retries: int = 0
    attempts: int = 0
    state: PendingState = PendingState.PENDIENTE
    step_state: Optional[StepState] = None
    due_at: datetime
    created_at: datetime = Field(default_factory=utcnow)
    resolved_by: Optional[str] = None
    comment: Optional[str] = None
