"""Workflow orchestrator driving issues through the resolution pipeline.

Drives a single issue through the four stages:
analysis → resolution → review → PR generation.

Each stage call is wrapped by the RetryTimeoutExecutor. The orchestrator
owns everything around the calls: the record's state transitions, the
active workflow registry, failure streaks and escalation, the overall
workflow deadline, and event emission. Collaborators are injected and
never constructed here.

Failures of collaborator calls are returned to the caller as a structured
WorkflowResult. Only caller errors (an invalid issue number, a duplicate
submission) are raised.
"""

import asyncio
import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Type,
    TypeVar,
    Union,
)

from pydantic import BaseModel, Field

from src.workflow.collaborators.interfaces import (
    AutonomousResolver,
    CodeReviewer,
    IssueAnalyzer,
    PRGenerator,
)
from src.workflow.collaborators.models import (
    Complexity,
    IssueAnalysis,
    PullRequest,
    ResolutionResult,
    ReviewResult,
)
from src.workflow.config import WorkflowConfig
from src.workflow.errors import (
    DuplicateWorkflowError,
    ErrorKind,
    WorkflowError,
    WorkflowNotFoundError,
)
from src.workflow.events.emitter import EventEmitter, NullEventEmitter
from src.workflow.events.models import EventType, WorkflowEvent
from src.workflow.executor import RetryTimeoutExecutor, StageOutcome
from src.workflow.state.history import (
    CompletedWorkflow,
    FailureLedger,
    SystemHealth,
    WorkflowHistory,
    WorkflowStatistics,
    evaluate_health,
)
from src.workflow.state.machine import WorkflowStateMachine
from src.workflow.state.models import (
    Stage,
    StageOutputs,
    WorkflowOutcome,
    WorkflowRecord,
    WorkflowState,
)
from src.workflow.state.registry import ActiveWorkflowRegistry


logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class WorkflowResult(BaseModel):
    """Terminal result of process_issue.

    Attributes:
        success: True only when a pull request was created.
        issue_number: The processed issue.
        workflow_id: Identifier of the workflow attempt.
        final_state: COMPLETED, FAILED or ESCALATED.
        outcome: How the workflow ended.
        outputs: Outputs of the stages that completed.
        pull_request: The created pull request, if any.
        execution_time: Total execution time in seconds.
        attempt_counts: Attempts made per stage.
        retry_count: Attempts beyond the first, over all stages.
        requires_human_review: Whether a human should look at the issue.
        error: The last classified error, when unsuccessful.
    """

    success: bool
    issue_number: int
    workflow_id: str
    final_state: WorkflowState
    outcome: WorkflowOutcome
    outputs: StageOutputs = Field(default_factory=StageOutputs)
    pull_request: Optional[PullRequest] = None
    execution_time: float = Field(default=0.0, ge=0.0)
    attempt_counts: Dict[str, int] = Field(default_factory=dict)
    retry_count: int = Field(default=0, ge=0)
    requires_human_review: bool = False
    error: Optional[WorkflowError] = None

    @property
    def escalated(self) -> bool:
        return self.final_state == WorkflowState.ESCALATED


def _coerce(model: Type[ModelT], value: Any) -> ModelT:
    """Validate a collaborator's return value against its model.

    Raises:
        pydantic.ValidationError: If the value is malformed.
    """
    if isinstance(value, model):
        return value
    return model.model_validate(value)


class WorkflowOrchestrator:
    """Orchestrates the issue-to-PR workflow.

    Accepts all dependencies via constructor injection. Only the four
    collaborators are required; the bookkeeping components default to
    fresh in-memory instances.

    Attributes:
        issue_analyzer: Judges whether an issue can be resolved.
        autonomous_resolver: Produces the code solution.
        code_reviewer: Reviews the solution.
        pr_generator: Opens the pull request.
        config: Timeouts, retry budget and escalation policy.
        event_emitter: Emits workflow events for observability.
        registry: Active workflows by issue number.
        executor: Runs stage calls with retries and timeouts.
        history: Completed workflows and running totals.
        failure_ledger: Failure streaks carried between runs.
        state_machine: Validates and records state transitions.
    """

    def __init__(
        self,
        issue_analyzer: IssueAnalyzer,
        autonomous_resolver: AutonomousResolver,
        code_reviewer: CodeReviewer,
        pr_generator: PRGenerator,
        config: Optional[WorkflowConfig] = None,
        event_emitter: Optional[EventEmitter] = None,
        registry: Optional[ActiveWorkflowRegistry] = None,
        executor: Optional[RetryTimeoutExecutor] = None,
        history: Optional[WorkflowHistory] = None,
        failure_ledger: Optional[FailureLedger] = None,
        state_machine: Optional[WorkflowStateMachine] = None,
    ):
        self.issue_analyzer = issue_analyzer
        self.autonomous_resolver = autonomous_resolver
        self.code_reviewer = code_reviewer
        self.pr_generator = pr_generator
        self.config = config or WorkflowConfig()
        self.event_emitter = event_emitter or NullEventEmitter()
        self.executor = executor or RetryTimeoutExecutor(self.config.retry_policy)
        self.state_machine = state_machine or WorkflowStateMachine()

        # Empty containers are falsy, so compare against None
        self.registry = registry if registry is not None else ActiveWorkflowRegistry()
        self.history = (
            history if history is not None else WorkflowHistory(self.config.history_size)
        )
        self.failure_ledger = (
            failure_ledger
            if failure_ledger is not None
            else FailureLedger(self.config.history_size)
        )

    async def process_issue(
        self,
        issue_number: int,
        title: str = "",
        body: str = "",
    ) -> WorkflowResult:
        """Drive an issue through the full workflow.

        The record is created and registered before the first suspension
        point, so a concurrent submission of the same issue number is
        always rejected. The registry entry is removed on every exit path.

        Args:
            issue_number: Number of the issue to resolve.
            title: Issue title.
            body: Issue body.

        Returns:
            WorkflowResult: The terminal result.

        Raises:
            ValueError: If issue_number is not a positive integer.
            DuplicateWorkflowError: If the issue is already in progress.
        """
        if isinstance(issue_number, bool) or not isinstance(issue_number, int):
            raise ValueError("issue_number must be an integer")
        if issue_number <= 0:
            raise ValueError("issue_number must be positive")
        if issue_number in self.registry:
            raise DuplicateWorkflowError(issue_number)

        streak = self.failure_ledger.get(issue_number)
        record = self.state_machine.create(
            issue_number,
            title=title,
            body=body,
            consecutive_failures=streak.count,
            failed_stage=streak.stage,
        )
        self.registry.register(record)

        logger.info(
            "Starting workflow for issue",
            extra={
                "issue_number": issue_number,
                "workflow_id": record.workflow_id,
            },
        )

        try:
            await self._emit_transition_event(record, None, WorkflowState.PENDING)
            return await self._run(record)
        except asyncio.CancelledError:
            if not record.is_terminal:
                from_state = record.state
                self._finish(
                    record,
                    WorkflowState.FAILED,
                    WorkflowOutcome.CANCELLED,
                    WorkflowError(
                        kind=ErrorKind.CANCELLED,
                        message="Workflow task was cancelled",
                    ),
                )
                # A second cancel during shield() leaves the events running
                await asyncio.shield(self._emit_final_events(record, from_state))
            raise
        except Exception as exc:
            logger.exception(
                "Unexpected failure while driving workflow",
                extra={
                    "issue_number": issue_number,
                    "workflow_id": record.workflow_id,
                    "state": record.state.value,
                },
            )
            if record.is_terminal:
                return self._build_result(record)
            error = WorkflowError.from_exception(
                exc,
                kind=ErrorKind.UNEXPECTED,
                stage=record.state.value,
            )
            return await self._end(
                record, WorkflowState.FAILED, WorkflowOutcome.UNEXPECTED, error
            )
        finally:
            self.registry.deregister(issue_number, record.workflow_id)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _run(self, record: WorkflowRecord) -> WorkflowResult:
        """Run the four stages in order and return the terminal result."""
        issue = record.issue

        async def analyze() -> IssueAnalysis:
            return _coerce(IssueAnalysis, await self.issue_analyzer.analyze_issue(issue))

        outcome = await self._run_stage(
            record, Stage.ANALYSIS, self.config.analysis_timeout, analyze
        )
        if isinstance(outcome, WorkflowResult):
            return outcome
        analysis: IssueAnalysis = outcome.value
        record.outputs.analysis = analysis

        refusal = self._feasibility_refusal(analysis)
        if refusal is not None:
            return await self._not_feasible(record, refusal)
        self._stage_succeeded(record, Stage.ANALYSIS)

        async def resolve() -> ResolutionResult:
            return _coerce(
                ResolutionResult,
                await self.autonomous_resolver.resolve_issue(analysis, issue),
            )

        outcome = await self._run_stage(
            record,
            Stage.RESOLUTION,
            self.config.resolution_timeout,
            resolve,
            reject=_reject_unsuccessful_resolution,
        )
        if isinstance(outcome, WorkflowResult):
            return outcome
        resolution: ResolutionResult = outcome.value
        record.outputs.resolution = resolution
        self._stage_succeeded(record, Stage.RESOLUTION)

        async def review() -> ReviewResult:
            return _coerce(
                ReviewResult,
                await self.code_reviewer.review_changes(resolution.solution, issue),
            )

        outcome = await self._run_stage(
            record, Stage.REVIEW, self.config.review_timeout, review
        )
        if isinstance(outcome, WorkflowResult):
            return outcome
        review_result: ReviewResult = outcome.value
        record.outputs.review = review_result

        if not review_result.approved:
            error = WorkflowError(
                kind=ErrorKind.BUSINESS_REJECTION,
                message=_describe_review_rejection(review_result),
                stage=Stage.REVIEW.value,
            )
            return await self._stage_failed(
                record, Stage.REVIEW, error, WorkflowOutcome.REVIEW_REJECTED
            )
        self._stage_succeeded(record, Stage.REVIEW)

        async def generate_pr() -> PullRequest:
            return _coerce(
                PullRequest,
                await self.pr_generator.create_pull_request(
                    resolution, review_result, analysis, issue
                ),
            )

        outcome = await self._run_stage(
            record,
            Stage.PR_GENERATION,
            self.config.pr_generation_timeout,
            generate_pr,
        )
        if isinstance(outcome, WorkflowResult):
            return outcome
        record.outputs.pull_request = outcome.value
        self._stage_succeeded(record, Stage.PR_GENERATION)

        logger.info(
            "Workflow completed",
            extra={
                "issue_number": record.issue_number,
                "workflow_id": record.workflow_id,
                "pr_number": outcome.value.number,
            },
        )
        return await self._end(
            record, WorkflowState.COMPLETED, WorkflowOutcome.PR_CREATED
        )

    async def _run_stage(
        self,
        record: WorkflowRecord,
        stage: Stage,
        timeout: float,
        operation: Callable[[], Awaitable[Any]],
        reject: Optional[Callable[[Any], Optional[str]]] = None,
    ):
        """Enter a stage and run its collaborator call through the executor.

        Returns:
            The successful StageOutcome, or the terminal WorkflowResult when
            the workflow ended at this stage.
        """
        ended = await self._check_boundary(record)
        if ended is not None:
            return ended

        await self._transition(record, stage.state)

        deadline = record.started_monotonic + self.config.max_workflow_time
        outcome = await self.executor.execute(
            stage.value,
            timeout,
            self.config.max_attempts,
            operation,
            reject=reject,
            deadline=deadline,
        )

        record.attempt_counts[stage.value] = outcome.attempts
        record.stage_durations[stage.value] = outcome.elapsed
        await self._emit_attempt_events(record, stage, outcome)

        if outcome.success:
            return outcome

        if outcome.deadline_exceeded:
            return await self._workflow_timeout(record, stage)

        return await self._stage_failed(
            record, stage, outcome.error, WorkflowOutcome.STAGE_FAILED
        )

    async def _check_boundary(self, record: WorkflowRecord) -> Optional[WorkflowResult]:
        """End the workflow at a stage boundary if it was cancelled or ran out of time."""
        if record.cancel_reason is not None:
            error = WorkflowError(kind=ErrorKind.CANCELLED, message=record.cancel_reason)
            return await self._end(
                record, WorkflowState.FAILED, WorkflowOutcome.CANCELLED, error
            )

        if record.elapsed >= self.config.max_workflow_time:
            return await self._workflow_timeout(record, None)

        return None

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------

    def _feasibility_refusal(self, analysis: IssueAnalysis) -> Optional[str]:
        """Return why an analysis should not be automated, if it should not."""
        if not analysis.feasible:
            return analysis.reasoning or "Analyzer judged the issue not feasible"
        if (
            self.config.reject_critical_complexity
            and analysis.complexity == Complexity.CRITICAL
        ):
            return "Issue complexity is critical"
        if analysis.confidence < self.config.min_analysis_confidence:
            return (
                f"Analysis confidence {analysis.confidence:.2f} is below "
                f"{self.config.min_analysis_confidence:.2f}"
            )
        return None

    def _stage_succeeded(self, record: WorkflowRecord, stage: Stage) -> None:
        """Reset the failure streak once the workflow gets as far as it last failed."""
        if record.failed_stage is None or stage.position >= record.failed_stage.position:
            record.consecutive_failures = 0
            record.failed_stage = None

    async def _not_feasible(
        self, record: WorkflowRecord, reason: str
    ) -> WorkflowResult:
        error = WorkflowError(
            kind=ErrorKind.BUSINESS_REJECTION,
            message=reason,
            stage=Stage.ANALYSIS.value,
        )
        logger.info(
            "Issue not feasible for autonomous resolution",
            extra={
                "issue_number": record.issue_number,
                "workflow_id": record.workflow_id,
                "reason": reason,
            },
        )
        return await self._stage_failed(
            record,
            Stage.ANALYSIS,
            error,
            WorkflowOutcome.NOT_FEASIBLE,
            terminal_state=WorkflowState.COMPLETED,
        )

    async def _stage_failed(
        self,
        record: WorkflowRecord,
        stage: Stage,
        error: Optional[WorkflowError],
        outcome: WorkflowOutcome,
        terminal_state: WorkflowState = WorkflowState.FAILED,
    ) -> WorkflowResult:
        """Count a stage failure and end the workflow, escalating at the threshold."""
        record.consecutive_failures += 1
        record.failed_stage = stage
        if error is None:
            error = WorkflowError(
                kind=ErrorKind.UNEXPECTED,
                message="Stage failed without an error",
                stage=stage.value,
            )

        logger.warning(
            "Workflow stage failed",
            extra={
                "issue_number": record.issue_number,
                "workflow_id": record.workflow_id,
                "stage": stage.value,
                "error_kind": error.kind.value,
                "error": error.message,
                "consecutive_failures": record.consecutive_failures,
            },
        )

        threshold = self.config.human_intervention_threshold
        if record.consecutive_failures >= threshold:
            escalation = WorkflowError(
                kind=ErrorKind.ESCALATION_REQUIRED,
                message=(
                    f"{record.consecutive_failures} consecutive failures; "
                    f"last: {error.describe()}"
                ),
                stage=stage.value,
            )
            return await self._end(
                record, WorkflowState.ESCALATED, WorkflowOutcome.ESCALATED, escalation
            )

        return await self._end(record, terminal_state, outcome, error)

    async def _workflow_timeout(
        self, record: WorkflowRecord, stage: Optional[Stage]
    ) -> WorkflowResult:
        error = WorkflowError(
            kind=ErrorKind.WORKFLOW_TIMEOUT,
            message=(
                f"Workflow exceeded max_workflow_time of "
                f"{self.config.max_workflow_time:.2f}s"
            ),
            stage=stage.value if stage else None,
        )
        await self._safe_emit(
            self._event(
                record,
                EventType.TIMEOUT,
                {
                    "scope": "workflow",
                    "stage": stage.value if stage else None,
                    "timeout_seconds": self.config.max_workflow_time,
                },
            )
        )
        return await self._end(
            record, WorkflowState.FAILED, WorkflowOutcome.WORKFLOW_TIMEOUT, error
        )

    async def _end(
        self,
        record: WorkflowRecord,
        to_state: WorkflowState,
        outcome: WorkflowOutcome,
        error: Optional[WorkflowError] = None,
    ) -> WorkflowResult:
        """Finish the workflow, then emit its final events."""
        from_state = record.state
        self._finish(record, to_state, outcome, error)
        await self._emit_final_events(record, from_state)
        return self._build_result(record)

    async def _emit_final_events(
        self, record: WorkflowRecord, from_state: WorkflowState
    ) -> None:
        await self._emit_transition_event(record, from_state, record.state)
        await self._emit_finished_event(record)

    def _finish(
        self,
        record: WorkflowRecord,
        to_state: WorkflowState,
        outcome: WorkflowOutcome,
        error: Optional[WorkflowError] = None,
    ) -> None:
        """Move the record to a terminal state and release it.

        Runs without suspending: the terminal transition, the registry
        eviction and the bookkeeping updates are atomic with respect to
        other workflows.
        """
        record.outcome = outcome
        if error is not None:
            record.last_error = error

        details: Dict[str, Any] = {"outcome": outcome.value}
        if error is not None:
            details["error"] = error.describe()
        self.state_machine.transition(record, to_state, details)
        self.registry.deregister(record.issue_number, record.workflow_id)

        if outcome in (WorkflowOutcome.PR_CREATED, WorkflowOutcome.ESCALATED):
            self.failure_ledger.reset(record.issue_number)
        else:
            self.failure_ledger.set(
                record.issue_number,
                record.consecutive_failures,
                record.failed_stage,
            )

        self.history.add(
            CompletedWorkflow.from_record(
                record,
                success=_is_success(record),
                requires_human_review=_requires_human_review(record),
            )
        )

    def _build_result(self, record: WorkflowRecord) -> WorkflowResult:
        success = _is_success(record)
        return WorkflowResult(
            success=success,
            issue_number=record.issue_number,
            workflow_id=record.workflow_id,
            final_state=record.state,
            outcome=record.outcome or WorkflowOutcome.UNEXPECTED,
            outputs=record.outputs.model_copy(),
            pull_request=record.outputs.pull_request,
            execution_time=record.execution_time or 0.0,
            attempt_counts=dict(record.attempt_counts),
            retry_count=record.retry_count,
            requires_human_review=_requires_human_review(record),
            error=None if success else record.last_error,
        )

    # ------------------------------------------------------------------
    # Operator surface
    # ------------------------------------------------------------------

    def get_active_workflows(self) -> List[WorkflowRecord]:
        """Return a snapshot of the workflows currently in flight."""
        return self.registry.get_active_workflows()

    def get_workflow(
        self, issue_number: int
    ) -> Union[WorkflowRecord, CompletedWorkflow]:
        """Return the issue's active workflow, or its most recent result.

        Raises:
            WorkflowNotFoundError: If the issue has neither.
        """
        record = self.registry.get(issue_number)
        if record is not None:
            return record
        for entry in self.history.list():
            if entry.issue_number == issue_number:
                return entry
        raise WorkflowNotFoundError(issue_number)

    def get_current_state(self, issue_number: int) -> Optional[WorkflowState]:
        """Return the state of the issue's active or most recent workflow."""
        try:
            workflow = self.get_workflow(issue_number)
        except WorkflowNotFoundError:
            return None
        if isinstance(workflow, WorkflowRecord):
            return workflow.state
        return workflow.final_state

    def cancel_workflow(
        self,
        issue_number: int,
        reason: str = "Cancelled by operator",
    ) -> bool:
        """Ask an active workflow to stop at its next stage boundary.

        Returns:
            True if an active workflow was found and marked.
        """
        record = self.registry.get(issue_number)
        if record is None:
            return False
        record.cancel_reason = reason or "Cancelled by operator"
        logger.info(
            "Workflow cancellation requested",
            extra={
                "issue_number": issue_number,
                "workflow_id": record.workflow_id,
                "reason": record.cancel_reason,
            },
        )
        return True

    def get_completed_workflows(self, limit: Optional[int] = None) -> List[CompletedWorkflow]:
        """Return completed workflows, most recent first."""
        return self.history.list(limit)

    def get_global_metrics(self) -> WorkflowStatistics:
        return self.history.statistics(concurrent_workflows=len(self.registry))

    def get_system_health(self) -> SystemHealth:
        return evaluate_health(self.get_global_metrics())

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _transition(self, record: WorkflowRecord, to_state: WorkflowState) -> None:
        """Transition state and emit a state-transition event."""
        from_state = record.state
        self.state_machine.transition(record, to_state)
        await self._emit_transition_event(record, from_state, to_state)

    def _event(
        self,
        record: WorkflowRecord,
        event_type: EventType,
        details: Dict[str, Any],
    ) -> WorkflowEvent:
        return WorkflowEvent(
            event_type=event_type,
            issue_number=record.issue_number,
            workflow_id=record.workflow_id,
            details=details,
        )

    async def _emit_transition_event(
        self,
        record: WorkflowRecord,
        from_state: Optional[WorkflowState],
        to_state: WorkflowState,
    ) -> None:
        """Emit a STATE_TRANSITION event."""
        await self._safe_emit(
            self._event(
                record,
                EventType.STATE_TRANSITION,
                {
                    "from_state": from_state.value if from_state else None,
                    "to_state": to_state.value,
                },
            )
        )

    async def _emit_attempt_events(
        self,
        record: WorkflowRecord,
        stage: Stage,
        outcome: StageOutcome,
    ) -> None:
        """Emit RETRY and TIMEOUT events for the failed attempts of a stage."""
        for attempt, error in enumerate(outcome.errors, start=1):
            if error.kind == ErrorKind.TIMEOUT:
                await self._safe_emit(
                    self._event(
                        record,
                        EventType.TIMEOUT,
                        {"scope": "attempt", "stage": stage.value, "attempt": attempt},
                    )
                )
            if attempt < outcome.attempts:
                await self._safe_emit(
                    self._event(
                        record,
                        EventType.RETRY,
                        {
                            "stage": stage.value,
                            "attempt": attempt,
                            "error_kind": error.kind.value,
                            "error_message": error.message,
                        },
                    )
                )

    async def _emit_finished_event(self, record: WorkflowRecord) -> None:
        """Emit the COMPLETION, ERROR or ESCALATION event for a finished workflow."""
        if record.state == WorkflowState.COMPLETED:
            event_type = EventType.COMPLETION
        elif record.state == WorkflowState.ESCALATED:
            event_type = EventType.ESCALATION
        else:
            event_type = EventType.ERROR

        details: Dict[str, Any] = {
            "final_state": record.state.value,
            "outcome": record.outcome.value if record.outcome else None,
            "duration_seconds": record.execution_time,
            "consecutive_failures": record.consecutive_failures,
        }
        pull_request = record.outputs.pull_request
        if pull_request is not None:
            details["pr_number"] = pull_request.number
            details["pr_url"] = pull_request.url
        if record.last_error is not None and not _is_success(record):
            details["error_kind"] = record.last_error.kind.value
            details["error_message"] = record.last_error.message

        await self._safe_emit(self._event(record, event_type, details))

    async def _safe_emit(self, event: WorkflowEvent) -> None:
        """Emit an event, swallowing exceptions to avoid disrupting the workflow."""
        try:
            await self.event_emitter.emit(event)
        except Exception:
            logger.exception(
                "Failed to emit workflow event",
                extra={
                    "event_type": event.event_type.value,
                    "issue_number": event.issue_number,
                },
            )


def _reject_unsuccessful_resolution(resolution: ResolutionResult) -> Optional[str]:
    if resolution.success:
        return None
    if resolution.errors:
        return "Resolver reported no usable solution: " + "; ".join(resolution.errors)
    return "Resolver reported no usable solution"


def _describe_review_rejection(review: ReviewResult) -> str:
    if review.critical_issues:
        return "Review not approved: " + "; ".join(review.critical_issues)
    return f"Review not approved (score {review.score:.2f})"


def _is_success(record: WorkflowRecord) -> bool:
    return record.outcome == WorkflowOutcome.PR_CREATED


def _requires_human_review(record: WorkflowRecord) -> bool:
    return record.state == WorkflowState.ESCALATED or (
        record.outcome == WorkflowOutcome.NOT_FEASIBLE
    )
