"""INTEGRACION: call an external system."""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional

from ..collaborators import IntegrationConnector, IntegrationTimeout
from ..config import IntegrationConfig
from ..contracts import ActionResult, ActionType, StepAction
from .base import ActionContext, BaseActionHandler, positive_number

logger = logging.getLogger(__name__)

METHODS = ("GET", "POST", "PUT", "PATCH", "DELETE")


class IntegrationHandler(BaseActionHandler):
    """Invoke ``endpoint`` through the integration connector.

    ``sistema`` names an entry of the ``integrations`` configuration whose
    base URL and API key are passed as credentials. Without ``payload`` the
    execution context is sent. ``guardarEn`` stores the response body in the
    context under that key. Timeouts and 5xx answers are retryable.
    """

    type = ActionType.INTEGRACION.value
    required_config = ("endpoint",)

    def __init__(
        self,
        connector: IntegrationConnector,
        systems: Optional[Mapping[str, IntegrationConfig]] = None,
    ) -> None:
        self._connector = connector
        self._systems = dict(systems or {})

    def validate_config(self, config: Dict[str, Any]) -> List[str]:
        problems = super().validate_config(config)
        method = str(config.get("metodo", "POST")).upper()
        if method not in METHODS:
            problems.append(f"{self.type}: unsupported method '{method}'")
        system = config.get("sistema")
        if system is not None and self._systems and system not in self._systems:
            problems.append(f"{self.type}: unknown system '{system}'")
        problem = positive_number(config, "timeoutSegundos")
        if problem:
            problems.append(f"{self.type}: {problem}")
        return problems

    async def execute(self, action: StepAction, ctx: ActionContext) -> ActionResult:
        config = action.config
        endpoint = config["endpoint"]
        method = str(config.get("metodo", "POST")).upper()
        payload = config.get("payload")
        if payload is None:
            payload = dict(ctx.context)

        credentials: Dict[str, Any] = {}
        timeout = config.get("timeoutSegundos")
        system = self._systems.get(config.get("sistema", ""))
        if system is not None:
            credentials = {"base_url": system.base_url, "api_key": system.api_key}
            timeout = timeout or system.timeout_seconds

        try:
            response = await self._connector.invoke(
                endpoint, payload, credentials=credentials, method=method, timeout=timeout
            )
        except IntegrationTimeout as e:
            logger.warning(f"Integration {endpoint} timed out for execution {ctx.execution_id}")
            return ActionResult.failure(str(e), retryable=True, endpoint=endpoint)

        if not response.ok:
            return ActionResult.failure(
                f"{method} {endpoint} answered {response.status_code}",
                retryable=response.status_code >= 500,
                endpoint=endpoint,
                status=response.status_code,
            )

        updates: Dict[str, Any] = {}
        if config.get("guardarEn"):
            updates[config["guardarEn"]] = response.body
        return ActionResult(
            ok=True,
            message="EJECUTADO",
            data={"endpoint": endpoint, "status": response.status_code, "respuesta": response.body},
            context_updates=updates,
        )
