"""Workflow state machine and in-process bookkeeping.

This package manages workflow progression through the pipeline states:
- pending → analyzing → resolving → reviewing → generating_pr → completed
- any in-progress state → failed | escalated

Active workflows live in an in-memory registry; finished ones are
summarized in a bounded history.
"""

from src.workflow.state.models import (
    PIPELINE_ORDER,
    STAGE_STATES,
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    Stage,
    StageOutputs,
    StateTransition,
    WorkflowOutcome,
    WorkflowRecord,
    WorkflowState,
    is_terminal_state,
    is_valid_transition,
)
from src.workflow.state.machine import (
    InvalidTransitionError,
    WorkflowStateMachine,
)
from src.workflow.state.registry import ActiveWorkflowRegistry
from src.workflow.state.history import (
    CompletedWorkflow,
    FailureLedger,
    FailureStreak,
    HealthStatus,
    SystemHealth,
    WorkflowHistory,
    WorkflowStatistics,
    evaluate_health,
)

__all__ = [
    # Models
    "PIPELINE_ORDER",
    "STAGE_STATES",
    "TERMINAL_STATES",
    "VALID_TRANSITIONS",
    "Stage",
    "StageOutputs",
    "StateTransition",
    "WorkflowOutcome",
    "WorkflowRecord",
    "WorkflowState",
    "is_terminal_state",
    "is_valid_transition",
    # State machine
    "InvalidTransitionError",
    "WorkflowStateMachine",
    # Registry
    "ActiveWorkflowRegistry",
    # History
    "CompletedWorkflow",
    "FailureLedger",
    "FailureStreak",
    "HealthStatus",
    "SystemHealth",
    "WorkflowHistory",
    "WorkflowStatistics",
    "evaluate_health",
]
