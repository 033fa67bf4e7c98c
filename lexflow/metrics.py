"""Aggregate statistics over workflows and their executions."""

from __future__ import annotations

from collections import Counter, defaultdict
from datetime import date, datetime, timedelta
from statistics import mean
from typing import Dict, Iterable, List, Optional, Sequence

from pydantic import BaseModel, Field

from .contracts import (
    Execution,
    ExecutionState,
    StepState,
    Workflow,
    WorkflowState,
    utcnow,
)

_STEP_OK = (StepState.COMPLETADO, StepState.OMITIDO)


class PopularWorkflow(BaseModel):
    workflow_id: str
    name: str
    total_executions: int
    success_rate: float


class TypeStatistics(BaseModel):
    count: int = 0
    executions: int = 0
    success_rate: float = 0.0


class StepPerformance(BaseModel):
    step_name: str
    average_seconds: float
    success_rate: float
    bottleneck: bool = False


class WorkflowStatistics(BaseModel):
    """Tenant-wide overview."""

    total_workflows: int = 0
    active_workflows: int = 0
    paused_workflows: int = 0
    total_executions: int = 0
    completed_executions: int = 0
    failed_executions: int = 0
    average_execution_seconds: float = 0.0
    success_rate: float = 0.0
    popular_workflows: List[PopularWorkflow] = Field(default_factory=list)
    by_type: Dict[str, TypeStatistics] = Field(default_factory=dict)
    step_performance: List[StepPerformance] = Field(default_factory=list)


class ActiveUser(BaseModel):
    user_id: str
    executions: int


class ProblemStep(BaseModel):
    step_id: str
    name: str
    failure_rate: float
    average_seconds: float


class DailyTrend(BaseModel):
    day: date
    executions: int = 0
    successes: int = 0
    failures: int = 0


class WorkflowMetrics(BaseModel):
    """Metrics of a single workflow."""

    workflow_id: str
    name: str
    type: str
    state: str
    total_executions: int = 0
    successful_executions: int = 0
    failed_executions: int = 0
    success_rate: float = 0.0
    average_execution_seconds: float = 0.0
    min_execution_seconds: float = 0.0
    max_execution_seconds: float = 0.0
    last_execution: Optional[datetime] = None
    next_execution: Optional[datetime] = None
    most_active_users: List[ActiveUser] = Field(default_factory=list)
    problem_steps: List[ProblemStep] = Field(default_factory=list)
    last_30_days: List[DailyTrend] = Field(default_factory=list)


def _rate(part: int, total: int) -> float:
    return round(part / total, 4) if total else 0.0


def _finished(executions: Iterable[Execution]) -> List[Execution]:
    return [e for e in executions if e.state.is_terminal]


def _durations(executions: Iterable[Execution]) -> List[float]:
    return [e.duration_seconds for e in executions if e.duration_seconds is not None]


def success_rate(executions: Sequence[Execution]) -> float:
    """Completed share of finished executions."""
    finished = _finished(executions)
    completed = sum(1 for e in finished if e.state == ExecutionState.COMPLETADO)
    return _rate(completed, len(finished))


def step_performance(executions: Iterable[Execution]) -> List[StepPerformance]:
    """Per step name: average duration, success share and bottleneck flag.

    A step is a bottleneck when its average duration is more than twice the
    average over all steps.
    """
    durations: Dict[str, List[float]] = defaultdict(list)
    outcomes: Dict[str, List[bool]] = defaultdict(list)
    for execution in executions:
        for record in execution.history:
            durations[record.name].append(record.duration_seconds)
            outcomes[record.name].append(record.state in _STEP_OK)
    if not durations:
        return []
    overall = mean(d for values in durations.values() for d in values)
    result = []
    for name in sorted(durations):
        avg = mean(durations[name])
        result.append(
            StepPerformance(
                step_name=name,
                average_seconds=round(avg, 4),
                success_rate=_rate(sum(outcomes[name]), len(outcomes[name])),
                bottleneck=overall > 0 and avg > 2 * overall,
            )
        )
    return result


def compute_statistics(
    workflows: Sequence[Workflow], executions: Sequence[Execution], top: int = 5
) -> WorkflowStatistics:
    by_workflow: Dict[str, List[Execution]] = defaultdict(list)
    for execution in executions:
        by_workflow[execution.workflow_id].append(execution)

    durations = _durations(executions)
    stats = WorkflowStatistics(
        total_workflows=len(workflows),
        active_workflows=sum(1 for w in workflows if w.state == WorkflowState.ACTIVO),
        paused_workflows=sum(1 for w in workflows if w.state == WorkflowState.PAUSADO),
        total_executions=len(executions),
        completed_executions=sum(1 for e in executions if e.state == ExecutionState.COMPLETADO),
        failed_executions=sum(1 for e in executions if e.state == ExecutionState.FALLIDO),
        average_execution_seconds=round(mean(durations), 4) if durations else 0.0,
        success_rate=success_rate(executions),
        step_performance=step_performance(executions),
    )

    popular = sorted(workflows, key=lambda w: (-len(by_workflow[w.id]), w.name))
    stats.popular_workflows = [
        PopularWorkflow(
            workflow_id=w.id,
            name=w.name,
            total_executions=len(by_workflow[w.id]),
            success_rate=success_rate(by_workflow[w.id]),
        )
        for w in popular[:top]
        if by_workflow[w.id]
    ]

    for workflow in workflows:
        entry = stats.by_type.setdefault(workflow.type.value, TypeStatistics())
        entry.count += 1
        entry.executions += len(by_workflow[workflow.id])
    for type_name, entry in stats.by_type.items():
        type_executions = [
            e
            for w in workflows
            if w.type.value == type_name
            for e in by_workflow[w.id]
        ]
        entry.success_rate = success_rate(type_executions)
    return stats


def compute_metrics(
    workflow: Workflow,
    executions: Sequence[Execution],
    next_execution: Optional[datetime] = None,
    now: Optional[datetime] = None,
    top: int = 5,
) -> WorkflowMetrics:
    now = now or utcnow()
    durations = _durations(executions)
    metrics = WorkflowMetrics(
        workflow_id=workflow.id,
        name=workflow.name,
        type=workflow.type.value,
        state=workflow.state.value,
        total_executions=len(executions),
        successful_executions=sum(1 for e in executions if e.state == ExecutionState.COMPLETADO),
        failed_executions=sum(1 for e in executions if e.state == ExecutionState.FALLIDO),
        success_rate=success_rate(executions),
        average_execution_seconds=round(mean(durations), 4) if durations else 0.0,
        min_execution_seconds=min(durations, default=0.0),
        max_execution_seconds=max(durations, default=0.0),
        last_execution=max((e.started_at for e in executions), default=None),
        next_execution=next_execution,
    )

    users = Counter(e.executed_by for e in executions if e.executed_by)
    metrics.most_active_users = [
        ActiveUser(user_id=u, executions=n) for u, n in users.most_common(top)
    ]

    steps: Dict[str, Dict[str, list]] = defaultdict(lambda: {"ok": [], "time": []})
    names: Dict[str, str] = {}
    for execution in executions:
        for record in execution.history:
            steps[record.step_id]["ok"].append(record.state in _STEP_OK)
            steps[record.step_id]["time"].append(record.duration_seconds)
            names[record.step_id] = record.name
    problems = []
    for step_id, data in steps.items():
        failures = len(data["ok"]) - sum(data["ok"])
        if failures:
            problems.append(
                ProblemStep(
                    step_id=step_id,
                    name=names[step_id],
                    failure_rate=_rate(failures, len(data["ok"])),
                    average_seconds=round(mean(data["time"]), 4),
                )
            )
    problems.sort(key=lambda p: (-p.failure_rate, p.name))
    metrics.problem_steps = problems[:top]

    first_day = (now - timedelta(days=29)).date()
    trend = {first_day + timedelta(days=i): DailyTrend(day=first_day + timedelta(days=i)) for i in range(30)}
    for execution in executions:
        bucket = trend.get(execution.started_at.date())
        if bucket is None:
            continue
        bucket.executions += 1
        if execution.state == ExecutionState.COMPLETADO:
            bucket.successes += 1
        elif execution.state == ExecutionState.FALLIDO:
            bucket.failures += 1
    metrics.last_30_days = list(trend.values())
    return metrics
