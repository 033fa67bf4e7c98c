"""Action handler contract."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, List, Optional, Protocol, Tuple

from ..contracts import ActionResult, StepAction


@dataclass(frozen=True)
class ActionContext:
    """What a handler may see of the running execution.

    ``context`` is the execution's live context map. Handlers must not mutate
    it; they return ``context_updates`` instead.
    """

    execution_id: str
    workflow_id: str
    tenant_id: str
    step_order: int
    step_name: str
    context: Dict[str, Any] = field(default_factory=dict)
    administrators: Tuple[str, ...] = ()
    actor_id: Optional[str] = None
    step_timeout_hours: Optional[float] = None


class ActionHandler(Protocol):
    """Executes one action type."""

    type: str

    async def execute(self, action: StepAction, ctx: ActionContext) -> ActionResult:
        ...

    def validate_config(self, config: Dict[str, Any]) -> List[str]:
        ...


class BaseActionHandler:
    """Shared helpers for the built-in handlers.

    Subclasses list mandatory configuration keys in ``required_config``;
    ``validate_config`` reports the missing ones.
    """

    type: ClassVar[str] = ""
    required_config: ClassVar[Tuple[str, ...]] = ()

    def validate_config(self, config: Dict[str, Any]) -> List[str]:
        problems = []
        for key in self.required_config:
            value = config.get(key)
            if value is None or value == "" or value == []:
                problems.append(f"{self.type} action requires '{key}'")
        return problems

    async def execute(self, action: StepAction, ctx: ActionContext) -> ActionResult:
        raise NotImplementedError


def as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, (list, tuple, set)):
        return list(value)
    return [value]


def positive_number(config: Dict[str, Any], key: str) -> Optional[str]:
    """Return a problem if ``config[key]`` is set but not a positive number."""
    value = config.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        return f"'{key}' must be a positive number"
    return None
