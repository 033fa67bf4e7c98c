"""lexflow: workflow definition and execution for legal practices."""

from .conditions import ConditionEvaluator
from .contracts import (
    Execution,
    ExecutionState,
    Step,
    StepAction,
    StepCondition,
    Trigger,
    Workflow,
    WorkflowDefinition,
    WorkflowState,
    WorkflowType,
    WorkflowUpdate,
)
from .engine import ExecutionEngine
from .persistence import get_repository
from .scheduler import Scheduler
from .service import WorkflowService, build_service

__version__ = "0.1.0"
__all__ = [
    "ConditionEvaluator",
    "Execution",
    "ExecutionEngine",
    "ExecutionState",
    "Scheduler",
    "Step",
    "StepAction",
    "StepCondition",
    "Trigger",
    "Workflow",
    "WorkflowDefinition",
    "WorkflowService",
    "WorkflowState",
    "WorkflowType",
    "WorkflowUpdate",
    "build_service",
    "get_repository",
]
