"""ASIGNACION: assign users to the entity under execution."""

from __future__ import annotations

from ..collaborators import NotificationSender, UserDirectory
from ..contracts import ActionResult, ActionType, StepAction
from .base import ActionContext, BaseActionHandler, as_list


class AssignmentHandler(BaseActionHandler):
    type = ActionType.ASIGNACION.value
    required_config = ("usuarios",)

    def __init__(self, directory: UserDirectory, notifier: NotificationSender) -> None:
        self._directory = directory
        self._notifier = notifier

    async def execute(self, action: StepAction, ctx: ActionContext) -> ActionResult:
        users = [str(u) for u in as_list(action.config.get("usuarios"))]
        lookup = await self._directory.lookup(users)
        unknown = [u for u in users if not lookup.get(u, False)]
        if unknown:
            return ActionResult.failure(f"Unknown users: {', '.join(unknown)}")

        if action.config.get("notificar", True):
            await self._notifier.send(
                users,
                "tareaAsignada",
                {"ejecucionId": ctx.execution_id, "paso": ctx.step_name},
            )
        return ActionResult(
            ok=True,
            message="ASIGNADO",
            data={"usuarios": users},
            context_updates={"asignados": users},
        )
