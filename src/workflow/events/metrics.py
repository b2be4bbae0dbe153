"""Prometheus metrics for workflow observability.

Metrics are exposed at the service's `/metrics` endpoint in Prometheus
format.

Metrics Defined:
- workflow_finished_total: Counter of finished workflows by state and outcome
- workflow_stage_retries_total: Counter of retried stage attempts
- workflow_timeouts_total: Counter of attempt and workflow timeouts
- workflow_escalations_total: Counter of escalated workflows
- workflow_duration_seconds: Histogram of workflow execution time
- workflow_active: Gauge of in-flight workflows per state

The MetricsEventEmitter updates these metrics from workflow events.
"""

import logging
from typing import Optional

from prometheus_client import (
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from src.workflow.events.emitter import EventEmitter
from src.workflow.events.models import EventType, WorkflowEvent
from src.workflow.state.models import WorkflowState, is_terminal_state


logger = logging.getLogger(__name__)


# Covers range from 1 second to the default max_workflow_time and beyond
DEFAULT_DURATION_BUCKETS = (
    1.0,
    5.0,
    10.0,
    30.0,
    60.0,
    120.0,
    300.0,
    600.0,
    1200.0,
)

ACTIVE_STATES = tuple(
    state.value for state in WorkflowState if not is_terminal_state(state)
)


class WorkflowMetrics:
    """Container for all workflow Prometheus metrics.

    Supports custom registries for testing.

    Example:
        >>> metrics = WorkflowMetrics(CollectorRegistry())
        >>> metrics.record_workflow_finished("completed", "pr_created", 42.0)
    """

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or REGISTRY

        self.workflows_finished_total = Counter(
            "workflow_finished_total",
            "Total number of workflows that reached a terminal state",
            labelnames=["final_state", "outcome"],
            registry=self.registry,
        )

        self.stage_retries_total = Counter(
            "workflow_stage_retries_total",
            "Total number of retried stage attempts",
            labelnames=["stage"],
            registry=self.registry,
        )

        self.timeouts_total = Counter(
            "workflow_timeouts_total",
            "Total number of stage attempt and workflow timeouts",
            labelnames=["stage", "scope"],
            registry=self.registry,
        )

        self.escalations_total = Counter(
            "workflow_escalations_total",
            "Total number of workflows escalated to a human",
            registry=self.registry,
        )

        self.duration_seconds = Histogram(
            "workflow_duration_seconds",
            "Workflow execution time in seconds",
            labelnames=["final_state"],
            buckets=DEFAULT_DURATION_BUCKETS,
            registry=self.registry,
        )

        self.active_workflows = Gauge(
            "workflow_active",
            "Current number of in-flight workflows per state",
            labelnames=["state"],
            registry=self.registry,
        )

        for state in ACTIVE_STATES:
            self.active_workflows.labels(state=state).set(0)

    def record_workflow_finished(
        self,
        final_state: str,
        outcome: str,
        duration_seconds: Optional[float] = None,
    ) -> None:
        self.workflows_finished_total.labels(
            final_state=final_state,
            outcome=outcome,
        ).inc()
        if duration_seconds is not None:
            self.duration_seconds.labels(final_state=final_state).observe(
                duration_seconds
            )

    def record_retry(self, stage: str) -> None:
        self.stage_retries_total.labels(stage=stage).inc()

    def record_timeout(self, stage: str, scope: str) -> None:
        self.timeouts_total.labels(stage=stage, scope=scope).inc()

    def record_escalation(self) -> None:
        self.escalations_total.inc()

    def update_state_count(self, state: str, delta: int) -> None:
        """Update the count of in-flight workflows in a state.

        Terminal states are not tracked.
        """
        if state in ACTIVE_STATES:
            self.active_workflows.labels(state=state).inc(delta)


_default_metrics: Optional[WorkflowMetrics] = None


def get_metrics(registry: Optional[CollectorRegistry] = None) -> WorkflowMetrics:
    """Get or create the workflow metrics instance.

    Args:
        registry: Optional Prometheus registry. If None, returns the
                  global metrics instance for the default registry.
    """
    global _default_metrics

    if registry is not None:
        return WorkflowMetrics(registry=registry)

    if _default_metrics is None:
        _default_metrics = WorkflowMetrics()

    return _default_metrics


def generate_metrics_output(registry: Optional[CollectorRegistry] = None) -> bytes:
    """Generate Prometheus metrics output for the /metrics endpoint."""
    return generate_latest(registry or REGISTRY)


class MetricsEventEmitter(EventEmitter):
    """Event emitter that updates Prometheus metrics.

    - STATE_TRANSITION: Moves the workflow between active-state gauges
    - RETRY: Increments the stage retry counter
    - TIMEOUT: Increments the timeout counter
    - COMPLETION / ERROR / ESCALATION: Records the finished workflow
    """

    def __init__(
        self,
        metrics: Optional[WorkflowMetrics] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        if metrics is not None:
            self._metrics = metrics
        else:
            self._metrics = get_metrics(registry)

    @property
    def metrics(self) -> WorkflowMetrics:
        return self._metrics

    async def emit(self, event: WorkflowEvent) -> None:
        try:
            if event.event_type == EventType.STATE_TRANSITION:
                self._handle_state_transition(event)
            elif event.event_type == EventType.RETRY:
                self._metrics.record_retry(event.details.get("stage", "unknown"))
            elif event.event_type == EventType.TIMEOUT:
                self._metrics.record_timeout(
                    stage=event.details.get("stage") or "none",
                    scope=event.details.get("scope", "attempt"),
                )
            elif event.event_type in (
                EventType.COMPLETION,
                EventType.ERROR,
                EventType.ESCALATION,
            ):
                self._handle_finished(event)
        except Exception as e:
            logger.error(
                "Failed to update metrics for event %s: %s",
                event.event_type.value,
                str(e),
                extra={
                    "event_type": event.event_type.value,
                    "issue_number": event.issue_number,
                    "error": str(e),
                },
            )

    def _handle_state_transition(self, event: WorkflowEvent) -> None:
        from_state = event.details.get("from_state")
        to_state = event.details.get("to_state")

        if from_state:
            self._metrics.update_state_count(from_state, -1)

        if to_state:
            self._metrics.update_state_count(to_state, +1)

    def _handle_finished(self, event: WorkflowEvent) -> None:
        if event.event_type == EventType.ESCALATION:
            self._metrics.record_escalation()

        duration = event.details.get("duration_seconds")
        self._metrics.record_workflow_finished(
            final_state=event.details.get("final_state", "unknown"),
            outcome=event.details.get("outcome", "unknown"),
            duration_seconds=float(duration) if duration is not None else None,
        )
