"""Property-based tests for the WorkflowOrchestrator.

Properties:
- Whatever the collaborators do, the workflow ends in a terminal state,
  every emitted transition is valid, and no registration leaks
- A stage that fails k <= retry_attempts times reports k + 1 attempts
- A stage that always fails reports exactly retry_attempts + 1 attempts
- execution_time stays within max_workflow_time plus scheduling slack
- threshold consecutive failing runs escalate, earlier ones fail
- Concurrent workflows for distinct issues do not interfere
- A second submission for an active issue is rejected
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List
from unittest.mock import AsyncMock

import pytest
from hypothesis import given, settings as hyp_settings, strategies as st

from src.workflow.collaborators.models import (
    IssueAnalysis,
    PullRequest,
    ResolutionResult,
    ReviewResult,
)
from src.workflow.config import WorkflowConfig
from src.workflow.errors import DuplicateWorkflowError
from src.workflow.events.emitter import EventEmitter
from src.workflow.events.models import EventType, WorkflowEvent
from src.workflow.executor import RetryPolicy
from src.workflow.orchestrator import WorkflowOrchestrator
from src.workflow.state import (
    Stage,
    WorkflowOutcome,
    WorkflowState,
    is_terminal_state,
    is_valid_transition,
)


def run_async(coro):
    return asyncio.run(coro)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

# How a collaborator behaves on a given call
behaviours = st.sampled_from(["ok", "raise", "reject"])
stages = st.sampled_from(list(Stage))
issue_numbers = st.integers(min_value=1, max_value=99999)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TransitionRecorder(EventEmitter):
    """Event emitter that records every state transition."""

    def __init__(self):
        self.transitions: List[tuple] = []
        self.events: List[WorkflowEvent] = []

    async def emit(self, event: WorkflowEvent) -> None:
        self.events.append(event)
        if event.event_type == EventType.STATE_TRANSITION:
            self.transitions.append(
                (event.details["from_state"], event.details["to_state"])
            )


def _values(stage: Stage, ok: bool) -> Any:
    if stage == Stage.ANALYSIS:
        return IssueAnalysis(feasible=ok, confidence=0.9)
    if stage == Stage.RESOLUTION:
        return ResolutionResult(success=ok, confidence=0.8)
    if stage == Stage.REVIEW:
        return ReviewResult(approved=ok, score=0.9 if ok else 0.2)
    return PullRequest(number=5, title="Fix", url="https://github.com/acme/widgets/pull/5")


class ScriptedCollaborators:
    """Collaborators whose behaviour per call is drawn from a script."""

    def __init__(self, scripts: Dict[Stage, List[str]]):
        self.scripts = {stage: list(script) for stage, script in scripts.items()}
        self.calls: Dict[Stage, int] = {stage: 0 for stage in Stage}

    def _next(self, stage: Stage) -> Any:
        script = self.scripts.get(stage) or ["ok"]
        behaviour = script[min(self.calls[stage], len(script) - 1)]
        self.calls[stage] += 1
        if behaviour == "raise":
            raise ConnectionError(f"{stage.value} unavailable")
        return _values(stage, behaviour == "ok")

    async def analyze_issue(self, issue):
        return self._next(Stage.ANALYSIS)

    async def resolve_issue(self, analysis, issue):
        return self._next(Stage.RESOLUTION)

    async def review_changes(self, solution, issue):
        return self._next(Stage.REVIEW)

    async def create_pull_request(self, resolution, review, analysis, issue):
        return self._next(Stage.PR_GENERATION)


def _orchestrator(collaborators, emitter=None, **overrides: Any) -> WorkflowOrchestrator:
    config_values = dict(
        analysis_timeout=1.0,
        resolution_timeout=1.0,
        review_timeout=1.0,
        pr_generation_timeout=1.0,
        max_workflow_time=10.0,
        retry_attempts=2,
        retry_policy=RetryPolicy(base_delay=0, max_delay=0),
    )
    config_values.update(overrides)
    return WorkflowOrchestrator(
        issue_analyzer=collaborators,
        autonomous_resolver=collaborators,
        code_reviewer=collaborators,
        pr_generator=collaborators,
        config=WorkflowConfig(**config_values),
        event_emitter=emitter,
    )


# ---------------------------------------------------------------------------
# Properties
# ---------------------------------------------------------------------------


class TestWorkflowTermination:

    @given(
        scripts=st.fixed_dictionaries(
            {stage: st.lists(behaviours, min_size=1, max_size=4) for stage in Stage}
        ),
        issue_number=issue_numbers,
    )
    @hyp_settings(max_examples=100, deadline=5000)
    def test_every_run_terminates_cleanly(self, scripts, issue_number):
        recorder = TransitionRecorder()
        orchestrator = _orchestrator(ScriptedCollaborators(scripts), recorder)

        result = run_async(orchestrator.process_issue(issue_number))

        assert is_terminal_state(result.final_state)
        assert orchestrator.get_active_workflows() == []
        assert recorder.transitions[0] == (None, "pending")
        for from_state, to_state in recorder.transitions[1:]:
            assert is_valid_transition(WorkflowState(from_state), WorkflowState(to_state))
        assert recorder.transitions[-1][1] == result.final_state.value
        assert result.success == (result.outcome == WorkflowOutcome.PR_CREATED)
        assert all(1 <= n <= 3 for n in result.attempt_counts.values())
        finished = [
            e
            for e in recorder.events
            if e.event_type
            in (EventType.COMPLETION, EventType.ERROR, EventType.ESCALATION)
        ]
        assert len(finished) == 1
        assert recorder.events[-1] is finished[0]


class TestAttemptAccounting:

    @given(
        stage=stages,
        retry_attempts=st.integers(min_value=0, max_value=4),
        data=st.data(),
    )
    @hyp_settings(max_examples=100, deadline=5000)
    def test_retry_then_succeed_counts_attempts(self, stage, retry_attempts, data):
        failures = data.draw(st.integers(min_value=0, max_value=retry_attempts))
        collaborators = ScriptedCollaborators({stage: ["raise"] * failures + ["ok"]})
        orchestrator = _orchestrator(collaborators, retry_attempts=retry_attempts)

        result = run_async(orchestrator.process_issue(1))

        assert result.success is True
        assert result.attempt_counts[stage.value] == failures + 1
        assert result.retry_count == failures

    @given(stage=stages, retry_attempts=st.integers(min_value=0, max_value=4))
    @hyp_settings(max_examples=100, deadline=5000)
    def test_exhausted_stage_uses_every_attempt(self, stage, retry_attempts):
        collaborators = ScriptedCollaborators({stage: ["raise"]})
        orchestrator = _orchestrator(
            collaborators,
            retry_attempts=retry_attempts,
            human_intervention_threshold=10,
        )

        result = run_async(orchestrator.process_issue(1))

        assert result.final_state == WorkflowState.FAILED
        assert result.outcome == WorkflowOutcome.STAGE_FAILED
        assert result.attempt_counts[stage.value] == retry_attempts + 1
        assert collaborators.calls[stage] == retry_attempts + 1
        assert stage.value not in result.outputs.model_dump(exclude_none=True)


class TestWorkflowTimeoutBound:

    @given(
        max_workflow_time=st.floats(min_value=0.05, max_value=0.2),
        stage=stages,
    )
    @hyp_settings(max_examples=10, deadline=None)
    def test_execution_time_bounded(self, max_workflow_time, stage):
        collaborators = ScriptedCollaborators({})

        async def slow(*args):
            await asyncio.sleep(10)

        hanging = {
            Stage.ANALYSIS: "analyze_issue",
            Stage.RESOLUTION: "resolve_issue",
            Stage.REVIEW: "review_changes",
            Stage.PR_GENERATION: "create_pull_request",
        }[stage]
        setattr(collaborators, hanging, slow)
        orchestrator = _orchestrator(
            collaborators,
            max_workflow_time=max_workflow_time,
            **{f"{s.value}_timeout": 5.0 for s in Stage},
        )

        result = run_async(orchestrator.process_issue(1))

        assert result.outcome == WorkflowOutcome.WORKFLOW_TIMEOUT
        assert result.execution_time <= max_workflow_time + 0.5


class TestEscalationProperty:

    @given(
        threshold=st.integers(min_value=1, max_value=4),
        stage=stages,
    )
    @hyp_settings(max_examples=100, deadline=5000)
    def test_threshold_failing_runs_escalate(self, threshold, stage):
        collaborators = ScriptedCollaborators({stage: ["raise"]})
        orchestrator = _orchestrator(
            collaborators,
            retry_attempts=0,
            human_intervention_threshold=threshold,
        )

        async def scenario():
            return [await orchestrator.process_issue(7) for _ in range(threshold)]

        results = run_async(scenario())

        assert [r.final_state for r in results[:-1]] == [WorkflowState.FAILED] * (
            threshold - 1
        )
        assert results[-1].final_state == WorkflowState.ESCALATED
        assert results[-1].requires_human_review is True
        assert orchestrator.failure_ledger.get(7).count == 0


class TestConcurrency:

    @given(failing=st.sets(st.integers(min_value=1, max_value=50), max_size=20))
    @hyp_settings(max_examples=20, deadline=None)
    def test_concurrent_workflows_are_independent(self, failing):
        class PerIssueResolver(ScriptedCollaborators):
            async def resolve_issue(self, analysis, issue):
                await asyncio.sleep(0.001)
                if issue.number in failing:
                    raise ConnectionError("resolver unavailable")
                return _values(Stage.RESOLUTION, True)

        orchestrator = _orchestrator(PerIssueResolver({}))

        async def scenario():
            return await asyncio.gather(
                *(orchestrator.process_issue(n) for n in range(1, 51))
            )

        results = run_async(scenario())

        assert [r.issue_number for r in results] == list(range(1, 51))
        for result in results:
            assert result.success == (result.issue_number not in failing)
        assert orchestrator.get_active_workflows() == []
        stats = orchestrator.get_global_metrics()
        assert stats.total_workflows == 50
        assert stats.successful_workflows == 50 - len(failing)

    @given(issue_number=issue_numbers)
    @hyp_settings(max_examples=50, deadline=5000)
    def test_duplicate_submission_rejected(self, issue_number):
        async def scenario():
            release = asyncio.Event()
            analyzer = AsyncMock()

            async def blocked(issue):
                await release.wait()
                return _values(Stage.ANALYSIS, True)

            analyzer.analyze_issue.side_effect = blocked
            collaborators = ScriptedCollaborators({})
            orchestrator = WorkflowOrchestrator(
                issue_analyzer=analyzer,
                autonomous_resolver=collaborators,
                code_reviewer=collaborators,
                pr_generator=collaborators,
                config=WorkflowConfig(retry_policy=RetryPolicy(base_delay=0, max_delay=0)),
            )

            first = asyncio.create_task(orchestrator.process_issue(issue_number))
            await asyncio.sleep(0)
            with pytest.raises(DuplicateWorkflowError):
                await orchestrator.process_issue(issue_number)
            assert len(orchestrator.get_active_workflows()) == 1

            release.set()
            result = await first
            return result, orchestrator

        result, orchestrator = run_async(scenario())

        assert result.success is True
        assert orchestrator.get_active_workflows() == []
