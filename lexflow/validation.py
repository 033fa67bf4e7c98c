"""Workflow definition validation.

Every problem found is collected and reported through a single
:class:`~lexflow.errors.DefinitionValidationError`.
"""

from __future__ import annotations

import logging
from typing import Iterable, List, Optional, Sequence

from croniter import croniter

from .collaborators import UserDirectory
from .conditions import FIELD_OPERATORS, ConditionEvaluator
from .contracts import (
    TRIGGER_EVENTS,
    Step,
    StepCondition,
    Trigger,
    Workflow,
    WorkflowDefinition,
    WorkflowState,
    WorkflowUpdate,
)
from .errors import ConflictError, DefinitionValidationError
from .handlers import HandlerRegistry

logger = logging.getLogger(__name__)


def check_step_orders(steps: Sequence[Step]) -> List[str]:
    """Step orders must be exactly 1..N."""
    if not steps:
        return ["A workflow needs at least one step"]
    problems = []
    orders = sorted(s.order for s in steps)
    seen = set()
    for order in orders:
        if order in seen:
            problems.append(f"Duplicate step order {order}")
        seen.add(order)
    for expected in range(1, len(steps) + 1):
        if expected not in seen:
            problems.append(f"Step orders must be sequential: step {expected} is missing")
            break
    return problems


def check_branches(steps: Sequence[Step]) -> List[str]:
    orders = {s.order for s in steps}
    problems = []
    for step in steps:
        if step.next_on_success is not None and step.next_on_success not in orders:
            problems.append(
                f"Step {step.order} references a missing success step {step.next_on_success}"
            )
        if step.next_on_failure is not None and step.next_on_failure not in orders:
            problems.append(
                f"Step {step.order} references a missing failure step {step.next_on_failure}"
            )
    return problems


def requires_version_bump(current: Workflow, update: WorkflowUpdate) -> bool:
    """True when the update actually changes steps or triggers."""
    changes = update.changes()
    if changes.get("steps") is not None and changes["steps"] != current.steps:
        return True
    if changes.get("triggers") is not None and changes["triggers"] != current.triggers:
        return True
    return False


class DefinitionValidator:
    """Checks workflow definitions against the registered actions and conditions."""

    def __init__(
        self,
        registry: HandlerRegistry,
        evaluator: ConditionEvaluator,
        directory: Optional[UserDirectory] = None,
    ) -> None:
        self.registry = registry
        self.evaluator = evaluator
        self.directory = directory

    def _check_conditions(self, where: str, conditions: Iterable[StepCondition]) -> List[str]:
        problems = []
        for condition in conditions:
            if not self.evaluator.knows(condition.type):
                problems.append(f"{where}: unknown condition type '{condition.type}'")
                continue
            if not self.evaluator.field_for(condition):
                problems.append(f"{where}: condition {condition.type} requires a field")
            if condition.type == "CAMPO_VALOR" and condition.operator not in FIELD_OPERATORS:
                problems.append(
                    f"{where}: unsupported operator '{condition.operator}' for CAMPO_VALOR"
                )
        return problems

    def _check_actions(self, step: Step) -> List[str]:
        if not step.actions:
            return [f"Step {step.order} has no actions"]
        problems = []
        for action in step.actions:
            handler = self.registry.get(action.type)
            if handler is None:
                problems.append(f"Step {step.order}: unknown action type '{action.type}'")
                continue
            problems.extend(
                f"Step {step.order}: {p}" for p in handler.validate_config(action.config)
            )
        return problems

    def _check_trigger(self, index: int, trigger: Trigger) -> List[str]:
        where = f"Trigger {index + 1}"
        problems = []
        if trigger.event not in TRIGGER_EVENTS:
            problems.append(f"{where}: unknown event '{trigger.event}'")
        if trigger.cron is not None and not croniter.is_valid(trigger.cron):
            problems.append(f"{where}: invalid cron expression '{trigger.cron}'")
        if trigger.event == "PROGRAMADO" and not (trigger.cron or trigger.run_at):
            problems.append(f"{where}: scheduled triggers need a cron expression or run_at")
        if trigger.starts_at and trigger.ends_at and trigger.starts_at >= trigger.ends_at:
            problems.append(f"{where}: start of window must precede its end")
        problems.extend(self._check_conditions(where, trigger.conditions))
        return problems

    def check(self, definition: WorkflowDefinition) -> List[str]:
        """Return every problem found in ``definition``."""
        problems = check_step_orders(definition.steps)
        problems.extend(check_branches(definition.steps))
        for step in definition.steps:
            problems.extend(self._check_conditions(f"Step {step.order}", step.conditions))
            problems.extend(self._check_actions(step))
        for index, trigger in enumerate(definition.triggers):
            problems.extend(self._check_trigger(index, trigger))
        if (
            definition.start_date
            and definition.end_date
            and definition.start_date >= definition.end_date
        ):
            problems.append("Start date must precede end date")
        return problems

    def validate(self, definition: WorkflowDefinition) -> None:
        problems = self.check(definition)
        if problems:
            logger.info(f"Workflow '{definition.name}' rejected: {problems}")
            raise DefinitionValidationError(problems)

    async def validate_assignments(self, definition: WorkflowDefinition) -> None:
        """Check that users assigned to steps exist in the directory."""
        if self.directory is None:
            return
        problems = []
        for step in definition.steps:
            if not step.assigned_users:
                continue
            found = await self.directory.lookup(step.assigned_users)
            missing = [u for u in step.assigned_users if not found.get(u, False)]
            if missing:
                problems.append(
                    f"Step '{step.name}' assigns unknown users: {', '.join(missing)}"
                )
        if problems:
            raise DefinitionValidationError(problems)

    @staticmethod
    def ensure_unique_name(
        name: str, existing: Iterable[Workflow], exclude_id: Optional[str] = None
    ) -> None:
        """Names are unique among a tenant's workflows that are not archived."""
        for workflow in existing:
            if workflow.id == exclude_id or workflow.state == WorkflowState.ARCHIVADO:
                continue
            if workflow.name == name:
                raise ConflictError(f"A workflow named '{name}' already exists")
