"""Workflow state machine models.

This module defines the data models for the workflow state machine:
- WorkflowState: Enum of all workflow states
- Stage: Enum of the four pipeline stages
- WorkflowOutcome: Enum refining how a workflow ended
- StateTransition: Record of a state transition with timestamp and details
- StageOutputs: Outputs of the stages that completed
- WorkflowRecord: Mutable state of one issue-resolution attempt
- VALID_TRANSITIONS: Map defining allowed state transitions

The models use Pydantic for validation, consistent with the collaborator
and event models.
"""

import time
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, PrivateAttr

from src.workflow.collaborators.models import (
    Issue,
    IssueAnalysis,
    PullRequest,
    ResolutionResult,
    ReviewResult,
)
from src.workflow.errors import WorkflowError


class WorkflowState(str, Enum):
    """States a workflow moves through.

    Stage Flow:
        pending → analyzing → resolving → reviewing → generating_pr
        → completed

    Any non-terminal state can transition to 'failed' or 'escalated'.
    Terminal states have no outgoing transitions; a workflow never
    regresses.

    Attributes:
        PENDING: Record created and registered, no stage started.
        ANALYZING: IssueAnalyzer is running.
        RESOLVING: AutonomousResolver is running.
        REVIEWING: CodeReviewer is running.
        GENERATING_PR: PRGenerator is running.
        COMPLETED: Workflow finished (PR created, or issue not feasible).
        FAILED: Workflow ended with a failure.
        ESCALATED: Workflow ended and requires human attention.
    """

    PENDING = "pending"
    ANALYZING = "analyzing"
    RESOLVING = "resolving"
    REVIEWING = "reviewing"
    GENERATING_PR = "generating_pr"
    COMPLETED = "completed"
    FAILED = "failed"
    ESCALATED = "escalated"


class Stage(str, Enum):
    """The four pipeline stages, in execution order."""

    ANALYSIS = "analysis"
    RESOLUTION = "resolution"
    REVIEW = "review"
    PR_GENERATION = "pr_generation"

    @property
    def state(self) -> WorkflowState:
        """The workflow state the stage runs in."""
        return STAGE_STATES[self]

    @property
    def position(self) -> int:
        """Zero-based position of the stage in the pipeline."""
        return list(Stage).index(self)


class WorkflowOutcome(str, Enum):
    """How a workflow ended, refining its terminal state.

    Attributes:
        PR_CREATED: A pull request was opened (COMPLETED).
        NOT_FEASIBLE: Analysis judged the issue unsuitable (COMPLETED).
        REVIEW_REJECTED: The reviewer did not approve the solution (FAILED).
        STAGE_FAILED: A stage exhausted its attempts (FAILED).
        WORKFLOW_TIMEOUT: max_workflow_time elapsed (FAILED).
        CANCELLED: An operator cancelled the workflow (FAILED).
        UNEXPECTED: The orchestrator itself failed (FAILED).
        ESCALATED: The failure threshold was reached (ESCALATED).
    """

    PR_CREATED = "pr_created"
    NOT_FEASIBLE = "not_feasible"
    REVIEW_REJECTED = "review_rejected"
    STAGE_FAILED = "stage_failed"
    WORKFLOW_TIMEOUT = "workflow_timeout"
    CANCELLED = "cancelled"
    UNEXPECTED = "unexpected"
    ESCALATED = "escalated"


STAGE_STATES: Dict[Stage, WorkflowState] = {
    Stage.ANALYSIS: WorkflowState.ANALYZING,
    Stage.RESOLUTION: WorkflowState.RESOLVING,
    Stage.REVIEW: WorkflowState.REVIEWING,
    Stage.PR_GENERATION: WorkflowState.GENERATING_PR,
}

# Pipeline order of the non-side states; used to check forward progress.
PIPELINE_ORDER: List[WorkflowState] = [
    WorkflowState.PENDING,
    WorkflowState.ANALYZING,
    WorkflowState.RESOLVING,
    WorkflowState.REVIEWING,
    WorkflowState.GENERATING_PR,
    WorkflowState.COMPLETED,
]

TERMINAL_STATES = frozenset(
    {WorkflowState.COMPLETED, WorkflowState.FAILED, WorkflowState.ESCALATED}
)


# Valid state transitions map
#
# - Every in-progress state may jump to FAILED or ESCALATED
# - ANALYZING may go straight to COMPLETED when the issue is not feasible
# - Terminal states have no outgoing transitions
VALID_TRANSITIONS: Dict[WorkflowState, List[WorkflowState]] = {
    WorkflowState.PENDING: [
        WorkflowState.ANALYZING,
        WorkflowState.FAILED,
        WorkflowState.ESCALATED,
    ],
    WorkflowState.ANALYZING: [
        WorkflowState.RESOLVING,
        WorkflowState.COMPLETED,
        WorkflowState.FAILED,
        WorkflowState.ESCALATED,
    ],
    WorkflowState.RESOLVING: [
        WorkflowState.REVIEWING,
        WorkflowState.FAILED,
        WorkflowState.ESCALATED,
    ],
    WorkflowState.REVIEWING: [
        WorkflowState.GENERATING_PR,
        WorkflowState.FAILED,
        WorkflowState.ESCALATED,
    ],
    WorkflowState.GENERATING_PR: [
        WorkflowState.COMPLETED,
        WorkflowState.FAILED,
        WorkflowState.ESCALATED,
    ],
    WorkflowState.COMPLETED: [],
    WorkflowState.FAILED: [],
    WorkflowState.ESCALATED: [],
}


def is_valid_transition(from_state: WorkflowState, to_state: WorkflowState) -> bool:
    """Check if a state transition is valid.

    Args:
        from_state: The current workflow state.
        to_state: The target workflow state.

    Returns:
        bool: True if the transition is valid, False otherwise.

    Example:
        >>> is_valid_transition(WorkflowState.PENDING, WorkflowState.ANALYZING)
        True
        >>> is_valid_transition(WorkflowState.REVIEWING, WorkflowState.ANALYZING)
        False
    """
    return to_state in VALID_TRANSITIONS.get(from_state, [])


def is_terminal_state(state: WorkflowState) -> bool:
    """Check if a state is terminal (has no outgoing transitions).

    Example:
        >>> is_terminal_state(WorkflowState.ESCALATED)
        True
        >>> is_terminal_state(WorkflowState.REVIEWING)
        False
    """
    return state in TERMINAL_STATES


class StateTransition(BaseModel):
    """Record of a state transition in a workflow.

    Attributes:
        from_state: The state before the transition.
        to_state: The state after the transition.
        timestamp: When the transition occurred (UTC).
        details: Optional metadata about the transition.
    """

    from_state: WorkflowState
    to_state: WorkflowState
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    details: Dict[str, Any] = Field(default_factory=dict)


class StageOutputs(BaseModel):
    """Outputs of the stages that completed, accumulated in order."""

    analysis: Optional[IssueAnalysis] = None
    resolution: Optional[ResolutionResult] = None
    review: Optional[ReviewResult] = None
    pull_request: Optional[PullRequest] = None


def _new_workflow_id(issue_number: int) -> str:
    return f"workflow-{issue_number}-{uuid.uuid4().hex[:12]}"


class WorkflowRecord(BaseModel):
    """Mutable state of one issue-resolution attempt.

    A record is created by the orchestrator at the start of process_issue,
    mutated only by that invocation, and evicted from the active registry
    the moment it reaches a terminal state.

    Attributes:
        issue_number: Number of the originating issue.
        title: Issue title.
        body: Issue body.
        workflow_id: Unique identifier of this attempt.
        state: Current workflow state.
        state_history: Ordered list of all state transitions.
        started_at: When the workflow started (UTC).
        finished_at: When the workflow reached a terminal state (UTC).
        attempt_counts: Attempts made per stage in this run.
        consecutive_failures: Stage failures since the last successful
            stage transition.
        last_error: Most recent classified error, if any.
        outputs: Outputs of completed stages.
        stage_durations: Seconds spent in each stage, retries included.
        cancel_reason: Set when an operator asked for cancellation.
        outcome: How the workflow ended, once terminal.
        failed_stage: Stage the current failure streak was last extended
            at, carried over from earlier runs of the same issue.
    """

    issue_number: int = Field(..., gt=0)
    title: str = Field(default="")
    body: str = Field(default="")
    workflow_id: str = Field(default="")
    state: WorkflowState = Field(default=WorkflowState.PENDING)
    state_history: List[StateTransition] = Field(default_factory=list)
    started_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
    )
    finished_at: Optional[datetime] = Field(default=None)
    attempt_counts: Dict[str, int] = Field(default_factory=dict)
    consecutive_failures: int = Field(default=0, ge=0)
    last_error: Optional[WorkflowError] = Field(default=None)
    outputs: StageOutputs = Field(default_factory=StageOutputs)
    stage_durations: Dict[str, float] = Field(default_factory=dict)
    cancel_reason: Optional[str] = Field(default=None)
    outcome: Optional[WorkflowOutcome] = Field(default=None)
    failed_stage: Optional[Stage] = Field(default=None)

    _started_monotonic: float = PrivateAttr(default_factory=time.monotonic)
    _finished_monotonic: Optional[float] = PrivateAttr(default=None)

    def model_post_init(self, __context: Any) -> None:
        if not self.workflow_id:
            self.workflow_id = _new_workflow_id(self.issue_number)

    @property
    def started_monotonic(self) -> float:
        """time.monotonic() value at creation, for deadline arithmetic."""
        return self._started_monotonic

    @property
    def issue(self) -> Issue:
        """The issue as handed to collaborators."""
        return Issue(number=self.issue_number, title=self.title, body=self.body)

    @property
    def is_terminal(self) -> bool:
        return is_terminal_state(self.state)

    @property
    def elapsed(self) -> float:
        """Seconds since the workflow started (frozen once terminal)."""
        end = self._finished_monotonic
        if end is None:
            end = time.monotonic()
        return end - self._started_monotonic

    @property
    def execution_time(self) -> Optional[float]:
        """Total execution time in seconds, once terminal."""
        if self._finished_monotonic is None:
            return None
        return self._finished_monotonic - self._started_monotonic

    @property
    def retry_count(self) -> int:
        """Attempts beyond the first, summed over all stages."""
        return sum(max(0, count - 1) for count in self.attempt_counts.values())

    def mark_finished(self) -> None:
        """Freeze the end timestamps of the workflow."""
        if self._finished_monotonic is None:
            self._finished_monotonic = time.monotonic()
            self.finished_at = datetime.now(timezone.utc)
