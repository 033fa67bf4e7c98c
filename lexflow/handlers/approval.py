"""APROBACION: ask approvers for a decision."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from ..collaborators import NotificationSender, UserDirectory
from ..contracts import ActionResult, ActionType, AwaitingResponse, StepAction
from .base import ActionContext, BaseActionHandler, as_list, positive_number

logger = logging.getLogger(__name__)


class ApprovalHandler(BaseActionHandler):
    """Notify approvers and report the request as made.

    The action succeeds once the request is sent; the decision arrives later
    through ``resolve_pending_action``. The result carries an
    :class:`AwaitingResponse` so the scheduler can remind and escalate. Its
    deadline is ``timeoutHoras``, the step timeout or the configured default,
    in that order; a default of 0 disables tracking.
    """

    type = ActionType.APROBACION.value
    required_config = ("aprobadores",)

    def __init__(
        self,
        notifier: NotificationSender,
        directory: UserDirectory,
        max_reminders: int = 3,
        default_timeout_hours: float = 24.0,
    ) -> None:
        self._notifier = notifier
        self._directory = directory
        self._max_reminders = max_reminders
        self._default_timeout_hours = default_timeout_hours

    def validate_config(self, config: Dict[str, Any]) -> List[str]:
        problems = super().validate_config(config)
        problem = positive_number(config, "timeoutHoras")
        if problem:
            problems.append(f"{self.type}: {problem}")
        return problems

    async def execute(self, action: StepAction, ctx: ActionContext) -> ActionResult:
        approvers = [str(a) for a in as_list(action.config.get("aprobadores"))]
        lookup = await self._directory.lookup(approvers)
        unknown = [a for a in approvers if not lookup.get(a, False)]
        if unknown:
            return ActionResult.failure(f"Unknown approvers: {', '.join(unknown)}")

        channels = await self._notifier.send(
            approvers,
            action.config.get("plantilla", "aprobacionRequerida"),
            {
                "ejecucionId": ctx.execution_id,
                "flujoId": ctx.workflow_id,
                "paso": ctx.step_name,
                "mensaje": action.message,
                "monto": ctx.context.get("monto"),
            },
            channel=action.config.get("canal", "EMAIL"),
        )
        if not all(channels.values()):
            logger.warning(
                f"Approval request for execution {ctx.execution_id} partially delivered: {channels}"
            )

        timeout_hours: Optional[float] = (
            action.config.get("timeoutHoras")
            or ctx.step_timeout_hours
            or self._default_timeout_hours
        )
        awaiting = None
        if timeout_hours:
            awaiting = AwaitingResponse(
                recipients=approvers,
                timeout_hours=float(timeout_hours),
                max_retries=action.config.get("recordatorios", self._max_reminders),
            )
        return ActionResult(
            ok=True,
            message="SOLICITADO",
            data={"aprobadores": approvers, "canales": channels, "estado": "PENDIENTE"},
            awaiting=awaiting,
        )
