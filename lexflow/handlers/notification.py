"""NOTIFICACION: deliver a templated message."""

from __future__ import annotations

from typing import Any, Dict, List

from ..collaborators import NotificationSender
from ..contracts import ActionResult, ActionType, AwaitingResponse, StepAction
from .base import ActionContext, BaseActionHandler, as_list, positive_number

CHANNELS = ("EMAIL", "SMS", "PUSH", "TODOS")


class NotificationHandler(BaseActionHandler):
    type = ActionType.NOTIFICACION.value
    required_config = ("destinatarios",)

    def __init__(self, notifier: NotificationSender, max_reminders: int = 3) -> None:
        self._notifier = notifier
        self._max_reminders = max_reminders

    def validate_config(self, config: Dict[str, Any]) -> List[str]:
        problems = super().validate_config(config)
        channel = config.get("canal", "EMAIL")
        if channel not in CHANNELS:
            problems.append(f"{self.type}: unknown channel '{channel}'")
        problem = positive_number(config, "timeoutHoras")
        if problem:
            problems.append(f"{self.type}: {problem}")
        return problems

    async def execute(self, action: StepAction, ctx: ActionContext) -> ActionResult:
        recipients = [str(r) for r in as_list(action.config.get("destinatarios"))]
        data = {
            "ejecucionId": ctx.execution_id,
            "flujoId": ctx.workflow_id,
            "paso": ctx.step_name,
            "mensaje": action.message,
            **action.config.get("datos", {}),
        }
        channels = await self._notifier.send(
            recipients,
            action.config.get("plantilla", "notificacionFlujo"),
            data,
            channel=action.config.get("canal", "EMAIL"),
        )
        failed = sorted(c for c, ok in channels.items() if not ok)
        if failed:
            return ActionResult.failure(
                f"Delivery failed on channels: {', '.join(failed)}", canales=channels
            )

        awaiting = None
        if action.config.get("timeoutHoras"):
            awaiting = AwaitingResponse(
                recipients=recipients,
                timeout_hours=float(action.config["timeoutHoras"]),
                max_retries=action.config.get("recordatorios", self._max_reminders),
            )
        return ActionResult(
            ok=True,
            message="ENVIADO",
            data={"destinatarios": recipients, "canales": channels},
            awaiting=awaiting,
        )
