"""Error taxonomy for lexflow."""

from __future__ import annotations

from typing import Iterable, List


class LexflowError(Exception):
    """Base class for every error raised by lexflow."""


class DefinitionValidationError(LexflowError):
    """A workflow definition is structurally or semantically invalid.

    ``problems`` lists every issue found so callers can report them all at once.
    """

    def __init__(self, problems: Iterable[str] | str) -> None:
        if isinstance(problems, str):
            problems = [problems]
        self.problems: List[str] = list(problems)
        super().__init__("; ".join(self.problems) or "Invalid workflow definition")


class NotFoundError(LexflowError):
    """A referenced workflow, execution or pending action does not exist."""


class ConflictError(LexflowError):
    """The request conflicts with the current state of the system."""


class WorkflowNotActiveError(ConflictError):
    """Executions can only be started for ACTIVO workflows."""


class ConcurrencyLimitError(ConflictError):
    """Too many executions are already in flight."""


class InvalidTransitionError(LexflowError):
    """A lifecycle state change is not allowed."""


class ExecutionError(LexflowError):
    """Runtime failure while driving an execution."""


class ConditionError(ExecutionError):
    """A step condition could not be evaluated."""
