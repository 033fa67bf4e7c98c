"""Workflow lifecycle state machine."""

from __future__ import annotations

from typing import Dict, FrozenSet

from .contracts import WorkflowState
from .errors import InvalidTransitionError

S = WorkflowState

ALLOWED_TRANSITIONS: Dict[WorkflowState, FrozenSet[WorkflowState]] = {
    S.BORRADOR: frozenset({S.ACTIVO, S.ARCHIVADO}),
    S.ACTIVO: frozenset({S.PAUSADO, S.COMPLETADO, S.ARCHIVADO}),
    S.PAUSADO: frozenset({S.ACTIVO, S.ARCHIVADO}),
    S.COMPLETADO: frozenset({S.ARCHIVADO}),
    S.CANCELADO: frozenset({S.ARCHIVADO}),
    S.ARCHIVADO: frozenset(),
}

# Entering these states asks in-flight executions to stop.
STOPPING_STATES = frozenset({S.PAUSADO, S.ARCHIVADO})


def can_transition(current: WorkflowState, target: WorkflowState) -> bool:
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def ensure_transition(current: WorkflowState, target: WorkflowState) -> None:
    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Cannot change workflow state from {current.value} to {target.value}"
        )
