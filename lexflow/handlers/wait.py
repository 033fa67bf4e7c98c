"""ESPERA: record a non-blocking wait."""

from __future__ import annotations

from datetime import timedelta
from typing import Any, Dict, List

from ..contracts import ActionResult, ActionType, StepAction, utcnow
from .base import ActionContext, BaseActionHandler


class WaitHandler(BaseActionHandler):
    """Record when the entity should be picked up again.

    The execution does not sleep; ``reanudar_en`` is informational for the
    caller.
    """

    type = ActionType.ESPERA.value

    def validate_config(self, config: Dict[str, Any]) -> List[str]:
        hours = config.get("duracionHoras")
        if isinstance(hours, bool) or not isinstance(hours, (int, float)) or hours <= 0:
            return [f"{self.type} action requires a positive 'duracionHoras'"]
        return []

    async def execute(self, action: StepAction, ctx: ActionContext) -> ActionResult:
        resume_at = utcnow() + timedelta(hours=float(action.config["duracionHoras"]))
        return ActionResult(
            ok=True,
            message="EN_ESPERA",
            data={"reanudar_en": resume_at.isoformat()},
        )
