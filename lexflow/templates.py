"""Built-in workflow templates."""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Optional

from .contracts import Step, StepAction, StepCondition, WorkflowDefinition, WorkflowType
from .errors import NotFoundError

TemplateBuilder = Callable[..., WorkflowDefinition]

TEMPLATES: Dict[str, TemplateBuilder] = {}


def template(key: str):
    def decorator(fn: TemplateBuilder) -> TemplateBuilder:
        TEMPLATES[key] = fn
        return fn

    return decorator


def _approval_config(approvers: List[str], timeout_hours: Optional[float]) -> Dict[str, Any]:
    config: Dict[str, Any] = {"aprobadores": approvers}
    if timeout_hours:
        config["timeoutHoras"] = timeout_hours
    return config


@template("aprobacionGastos")
def expense_approval(
    supervisors: Optional[List[str]] = None,
    managers: Optional[List[str]] = None,
    finance: Optional[List[str]] = None,
    threshold: float = 1000,
    timeout_hours: Optional[float] = None,
) -> WorkflowDefinition:
    """Standard expense approval. Managers only see amounts above ``threshold``."""
    supervisors = supervisors or ["supervisor"]
    return WorkflowDefinition(
        name="Aprobación de Gastos Estándar",
        description="Flujo estándar para aprobación de gastos",
        type=WorkflowType.AUTORIZACION_GASTO,
        tags=["gastos"],
        steps=[
            Step(
                order=1,
                name="Validación inicial",
                actions=[
                    StepAction(
                        type="ASIGNACION",
                        config={"usuarios": supervisors},
                        message="Validar comprobante del gasto",
                    )
                ],
            ),
            Step(
                order=2,
                name="Aprobación supervisor",
                actions=[
                    StepAction(
                        type="APROBACION",
                        config=_approval_config(supervisors, timeout_hours),
                    )
                ],
            ),
            Step(
                order=3,
                name="Aprobación gerencial",
                conditions=[StepCondition(type="MONTO_MAYOR", value=threshold)],
                actions=[
                    StepAction(
                        type="APROBACION",
                        config=_approval_config(managers or ["gerente"], timeout_hours),
                    )
                ],
            ),
            Step(
                order=4,
                name="Procesamiento final",
                actions=[
                    StepAction(
                        type="NOTIFICACION",
                        config={"destinatarios": finance or ["finanzas"]},
                    )
                ],
            ),
        ],
    )


@template("onboardingCliente")
def client_onboarding(
    executives: Optional[List[str]] = None,
    recipients: Optional[List[str]] = None,
    system: str = "sunat",
    endpoint: str = "/v1/contribuyente/ruc",
) -> WorkflowDefinition:
    """Client onboarding: documents, tax id check, file creation and welcome."""
    return WorkflowDefinition(
        name="Incorporación de Cliente",
        description="Proceso de incorporación de nuevos clientes",
        type=WorkflowType.ONBOARDING_CLIENTE,
        tags=["clientes"],
        steps=[
            Step(
                order=1,
                name="Recopilación de documentos",
                actions=[
                    StepAction(
                        type="ASIGNACION",
                        config={
                            "usuarios": executives or ["ejecutivo"],
                            "documentosRequeridos": ["dni", "ruc"],
                        },
                    )
                ],
            ),
            Step(
                order=2,
                name="Validación SUNAT",
                actions=[
                    StepAction(
                        type="INTEGRACION",
                        config={
                            "sistema": system,
                            "endpoint": endpoint,
                            "guardarEn": "validacionSunat",
                        },
                    )
                ],
            ),
            Step(
                order=3,
                name="Creación de expediente",
                actions=[
                    StepAction(
                        type="DOCUMENTO",
                        config={"plantillaDocumento": "expediente_cliente", "tipo": "expediente"},
                    )
                ],
            ),
            Step(
                order=4,
                name="Notificación de bienvenida",
                actions=[
                    StepAction(
                        type="NOTIFICACION",
                        config={
                            "destinatarios": recipients or ["cliente"],
                            "plantilla": "bienvenida_cliente",
                        },
                    )
                ],
            ),
        ],
    )


def build_template(key: str, name: Optional[str] = None, **params: Any) -> WorkflowDefinition:
    builder = TEMPLATES.get(key)
    if builder is None:
        raise NotFoundError(f"Unknown template '{key}'")
    definition = builder(**params)
    if name:
        definition = definition.model_copy(update={"name": name})
    return definition
