import pytest

from lexflow.contracts import WorkflowState
from lexflow.errors import InvalidTransitionError
from lexflow.lifecycle import ALLOWED_TRANSITIONS, can_transition, ensure_transition

S = WorkflowState

EXPECTED = {
    S.BORRADOR: {S.ACTIVO, S.ARCHIVADO},
    S.ACTIVO: {S.PAUSADO, S.COMPLETADO, S.ARCHIVADO},
    S.PAUSADO: {S.ACTIVO, S.ARCHIVADO},
    S.COMPLETADO: {S.ARCHIVADO},
    S.CANCELADO: {S.ARCHIVADO},
    S.ARCHIVADO: set(),
}


def test_every_state_has_an_entry():
    assert set(ALLOWED_TRANSITIONS) == set(WorkflowState)


@pytest.mark.parametrize("current", list(WorkflowState))
@pytest.mark.parametrize("target", list(WorkflowState))
def test_full_transition_table(current, target):
    allowed = target in EXPECTED[current]
    assert can_transition(current, target) is allowed
    if allowed:
        ensure_transition(current, target)
    else:
        with pytest.raises(InvalidTransitionError):
            ensure_transition(current, target)
