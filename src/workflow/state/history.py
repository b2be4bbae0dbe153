"""Completed workflow history, failure streaks, and aggregate statistics.

This module keeps the process-local bookkeeping that outlives a single
workflow:
- CompletedWorkflow: Summary of a workflow that reached a terminal state
- WorkflowHistory: Bounded history plus running totals
- FailureLedger: Consecutive failure streak per issue number
- WorkflowStatistics / SystemHealth: Aggregates served to operators

Like the active registry, every structure here is guarded by a lock that
is never held across an ``await``.
"""

import threading
from collections import OrderedDict, deque
from datetime import datetime
from enum import Enum
from typing import Deque, Dict, List, NamedTuple, Optional

from pydantic import BaseModel, Field

from src.workflow.errors import WorkflowError
from src.workflow.state.models import (
    Stage,
    WorkflowOutcome,
    WorkflowRecord,
    WorkflowState,
)


# Health thresholds
UNHEALTHY_SUCCESS_RATE = 0.7
UNHEALTHY_ERROR_COUNT = 10
DEGRADED_SUCCESS_RATE = 0.9
DEGRADED_AVERAGE_EXECUTION_TIME = 30.0  # seconds


class CompletedWorkflow(BaseModel):
    """Summary of a workflow that reached a terminal state."""

    issue_number: int
    workflow_id: str
    final_state: WorkflowState
    outcome: Optional[WorkflowOutcome] = None
    success: bool
    requires_human_review: bool = False
    execution_time: float = Field(default=0.0, ge=0.0)
    attempt_counts: Dict[str, int] = Field(default_factory=dict)
    stage_durations: Dict[str, float] = Field(default_factory=dict)
    error: Optional[WorkflowError] = None
    started_at: datetime
    finished_at: Optional[datetime] = None

    @classmethod
    def from_record(
        cls,
        record: WorkflowRecord,
        success: bool,
        requires_human_review: bool,
    ) -> "CompletedWorkflow":
        return cls(
            issue_number=record.issue_number,
            workflow_id=record.workflow_id,
            final_state=record.state,
            outcome=record.outcome,
            success=success,
            requires_human_review=requires_human_review,
            execution_time=record.execution_time or record.elapsed,
            attempt_counts=dict(record.attempt_counts),
            stage_durations=dict(record.stage_durations),
            error=record.last_error,
            started_at=record.started_at,
            finished_at=record.finished_at,
        )


class WorkflowStatistics(BaseModel):
    """Aggregate statistics over every workflow this process finished.

    Attributes:
        total_workflows: Workflows that reached a terminal state.
        successful_workflows: Workflows that opened a pull request.
        success_rate: successful / total (1.0 before any workflow ends).
        average_execution_time: Mean execution time in seconds.
        total_execution_time: Sum of execution times in seconds.
        error_count: Workflows that ended FAILED or ESCALATED.
        human_intervention_count: Workflows that require human review.
        failure_reasons: Count of non-successful workflows per outcome.
        average_stage_durations: Mean seconds spent per stage.
        concurrent_workflows: Workflows active at the time of the query.
    """

    total_workflows: int = 0
    successful_workflows: int = 0
    success_rate: float = 1.0
    average_execution_time: float = 0.0
    total_execution_time: float = 0.0
    error_count: int = 0
    human_intervention_count: int = 0
    failure_reasons: Dict[str, int] = Field(default_factory=dict)
    average_stage_durations: Dict[str, float] = Field(default_factory=dict)
    concurrent_workflows: int = 0


class HealthStatus(str, Enum):
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    UNHEALTHY = "unhealthy"


class SystemHealth(BaseModel):
    """Health verdict derived from the aggregate statistics."""

    status: HealthStatus
    reasons: List[str] = Field(default_factory=list)
    statistics: WorkflowStatistics


def evaluate_health(statistics: WorkflowStatistics) -> SystemHealth:
    """Derive a health verdict from aggregate statistics.

    unhealthy: success rate below 0.7 or more than 10 errors.
    degraded: success rate below 0.9 or average execution above 30s.
    """
    unhealthy: List[str] = []
    if statistics.success_rate < UNHEALTHY_SUCCESS_RATE:
        unhealthy.append(f"success rate {statistics.success_rate:.2f} below {UNHEALTHY_SUCCESS_RATE}")
    if statistics.error_count > UNHEALTHY_ERROR_COUNT:
        unhealthy.append(f"error count {statistics.error_count} above {UNHEALTHY_ERROR_COUNT}")
    if unhealthy:
        return SystemHealth(
            status=HealthStatus.UNHEALTHY, reasons=unhealthy, statistics=statistics
        )

    degraded: List[str] = []
    if statistics.success_rate < DEGRADED_SUCCESS_RATE:
        degraded.append(f"success rate {statistics.success_rate:.2f} below {DEGRADED_SUCCESS_RATE}")
    if statistics.average_execution_time > DEGRADED_AVERAGE_EXECUTION_TIME:
        degraded.append(
            f"average execution time {statistics.average_execution_time:.1f}s "
            f"above {DEGRADED_AVERAGE_EXECUTION_TIME:.0f}s"
        )
    if degraded:
        return SystemHealth(
            status=HealthStatus.DEGRADED, reasons=degraded, statistics=statistics
        )

    return SystemHealth(status=HealthStatus.HEALTHY, statistics=statistics)


class WorkflowHistory:
    """Bounded history of completed workflows with running totals.

    The history keeps the most recent ``max_size`` summaries. Totals used
    for statistics are accumulated separately and cover every workflow
    ever recorded.
    """

    def __init__(self, max_size: int = 1000):
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self._lock = threading.Lock()
        self._entries: Deque[CompletedWorkflow] = deque(maxlen=max_size)
        self._total = 0
        self._successful = 0
        self._errors = 0
        self._human_interventions = 0
        self._execution_time = 0.0
        self._failure_reasons: Dict[str, int] = {}
        self._stage_time: Dict[str, float] = {}
        self._stage_runs: Dict[str, int] = {}

    def add(self, entry: CompletedWorkflow) -> None:
        with self._lock:
            self._entries.append(entry)
            self._total += 1
            self._execution_time += entry.execution_time
            if entry.success:
                self._successful += 1
            else:
                reason = entry.outcome.value if entry.outcome else entry.final_state.value
                self._failure_reasons[reason] = self._failure_reasons.get(reason, 0) + 1
            if entry.final_state in (WorkflowState.FAILED, WorkflowState.ESCALATED):
                self._errors += 1
            if entry.requires_human_review:
                self._human_interventions += 1
            for stage, duration in entry.stage_durations.items():
                self._stage_time[stage] = self._stage_time.get(stage, 0.0) + duration
                self._stage_runs[stage] = self._stage_runs.get(stage, 0) + 1

    def list(self, limit: Optional[int] = None) -> List[CompletedWorkflow]:
        """Return completed workflows, most recent first."""
        with self._lock:
            entries = list(reversed(self._entries))
        if limit is not None:
            entries = entries[:limit]
        return entries

    def statistics(self, concurrent_workflows: int = 0) -> WorkflowStatistics:
        with self._lock:
            total = self._total
            return WorkflowStatistics(
                total_workflows=total,
                successful_workflows=self._successful,
                success_rate=self._successful / total if total else 1.0,
                average_execution_time=self._execution_time / total if total else 0.0,
                total_execution_time=self._execution_time,
                error_count=self._errors,
                human_intervention_count=self._human_interventions,
                failure_reasons=dict(self._failure_reasons),
                average_stage_durations={
                    stage: self._stage_time[stage] / self._stage_runs[stage]
                    for stage in self._stage_time
                },
                concurrent_workflows=concurrent_workflows,
            )

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class FailureStreak(NamedTuple):
    """A failure streak carried between runs of the same issue."""

    count: int = 0
    stage: Optional[Stage] = None


class FailureLedger:
    """Consecutive failure streak per issue number, across runs.

    Holds at most ``max_size`` issues. Setting a streak marks the issue as
    most recently used; once full, the least recently updated issue is
    dropped.
    """

    def __init__(self, max_size: int = 1000) -> None:
        if max_size < 1:
            raise ValueError("max_size must be at least 1")
        self.max_size = max_size
        self._lock = threading.Lock()
        self._streaks: "OrderedDict[int, FailureStreak]" = OrderedDict()

    def get(self, issue_number: int) -> FailureStreak:
        with self._lock:
            return self._streaks.get(issue_number, FailureStreak())

    def set(
        self,
        issue_number: int,
        count: int,
        stage: Optional[Stage] = None,
    ) -> None:
        with self._lock:
            if count <= 0:
                self._streaks.pop(issue_number, None)
                return
            self._streaks[issue_number] = FailureStreak(count, stage)
            self._streaks.move_to_end(issue_number)
            while len(self._streaks) > self.max_size:
                self._streaks.popitem(last=False)

    def reset(self, issue_number: int) -> None:
        self.set(issue_number, 0)

    def __len__(self) -> int:
        with self._lock:
            return len(self._streaks)
