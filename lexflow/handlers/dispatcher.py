"""Dispatch step actions to their handlers."""

from __future__ import annotations

import logging
from typing import Optional

from ..contracts import ActionResult, StepAction
from ..utils import retry
from .base import ActionContext
from .registry import HandlerRegistry

logger = logging.getLogger(__name__)


class ActionDispatcher:
    """Run actions through the registry with per-action retry.

    Retryable failures are attempted again up to ``reintentos`` times (falling
    back to ``default_retries``) with exponential backoff. Exceptions raised
    by a handler are converted into failed results.
    """

    def __init__(
        self,
        registry: HandlerRegistry,
        default_retries: int = 3,
        backoff_base: float = 1.5,
        jitter: float = 0.5,
    ) -> None:
        self.registry = registry
        self.default_retries = default_retries
        self.backoff_base = backoff_base
        self.jitter = jitter

    def _retries_for(self, action: StepAction) -> int:
        value: Optional[int] = action.config.get("reintentos")
        if isinstance(value, int) and not isinstance(value, bool) and value >= 0:
            return value
        return self.default_retries

    async def dispatch(self, action: StepAction, ctx: ActionContext) -> ActionResult:
        handler = self.registry.get(action.type)
        if handler is None:
            return ActionResult.failure(f"No handler registered for action type {action.type}")

        max_retries = self._retries_for(action)
        attempt = 0
        while True:
            try:
                result = await handler.execute(action, ctx)
            except Exception as e:
                logger.exception(
                    f"Handler {action.type} raised in execution {ctx.execution_id} step {ctx.step_order}"
                )
                result = ActionResult.failure(f"{type(e).__name__}: {e}")

            if result.ok or not result.retryable or attempt >= max_retries:
                if attempt:
                    result = result.model_copy(
                        update={"data": {**result.data, "intentos": attempt + 1}}
                    )
                return result

            attempt += 1
            logger.info(
                f"Retrying {action.type} for execution {ctx.execution_id} "
                f"(attempt {attempt}/{max_retries}): {result.error}"
            )
            await retry.schedule_retry(attempt, base=self.backoff_base, jitter=self.jitter)
