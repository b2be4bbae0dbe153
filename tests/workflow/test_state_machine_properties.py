"""Property-based tests for workflow state machine transitions.

This module uses Hypothesis to verify that the workflow state machine
only accepts transitions from VALID_TRANSITIONS, records each one with a
timestamp, and freezes execution time on terminal states.

Testing Configuration:
- Library: Hypothesis (Python)
- Minimum iterations: 100 per property test
"""

from datetime import datetime, timezone
from typing import List

import pytest
from hypothesis import given, settings, strategies as st

from src.workflow.state import (
    InvalidTransitionError,
    PIPELINE_ORDER,
    Stage,
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    WorkflowRecord,
    WorkflowState,
    WorkflowStateMachine,
    is_terminal_state,
    is_valid_transition,
)


# =============================================================================
# Strategies
# =============================================================================

all_states = st.sampled_from(list(WorkflowState))
issue_numbers = st.integers(min_value=1, max_value=1_000_000)


@st.composite
def valid_paths(draw) -> List[WorkflowState]:
    """Generate a walk through VALID_TRANSITIONS starting at PENDING."""
    path = [WorkflowState.PENDING]
    while not is_terminal_state(path[-1]):
        path.append(draw(st.sampled_from(VALID_TRANSITIONS[path[-1]])))
    return path


def _machine_record(machine: WorkflowStateMachine, issue_number: int = 1) -> WorkflowRecord:
    return machine.create(issue_number, title="Crash on start", body="Steps to reproduce")


# =============================================================================
# Transition validity
# =============================================================================


class TestTransitionValidity:

    @given(from_state=all_states, to_state=all_states)
    @settings(max_examples=100, deadline=5000)
    def test_transition_accepted_iff_listed(self, from_state, to_state):
        machine = WorkflowStateMachine()
        record = _machine_record(machine)
        record.state = from_state

        if to_state in VALID_TRANSITIONS[from_state]:
            transition = machine.transition(record, to_state)
            assert record.state == to_state
            assert transition.from_state == from_state
            assert transition.to_state == to_state
        else:
            with pytest.raises(InvalidTransitionError) as exc_info:
                machine.transition(record, to_state)
            assert exc_info.value.from_state == from_state
            assert exc_info.value.to_state == to_state
            assert record.state == from_state
            assert record.state_history == []

    @given(path=valid_paths())
    @settings(max_examples=100, deadline=5000)
    def test_valid_paths_are_recorded_in_order(self, path):
        machine = WorkflowStateMachine()
        record = _machine_record(machine)

        before = datetime.now(timezone.utc)
        for state in path[1:]:
            machine.transition(record, state)

        recorded = [(t.from_state, t.to_state) for t in record.state_history]
        assert recorded == list(zip(path, path[1:]))
        timestamps = [t.timestamp for t in record.state_history]
        assert timestamps == sorted(timestamps)
        assert all(ts >= before for ts in timestamps)

    @given(path=valid_paths())
    @settings(max_examples=100, deadline=5000)
    def test_walks_never_regress(self, path):
        main_line = [s for s in path if s in PIPELINE_ORDER]
        positions = [PIPELINE_ORDER.index(s) for s in main_line]
        assert positions == sorted(positions)
        assert len(set(positions)) == len(positions)

    @given(terminal=st.sampled_from(sorted(TERMINAL_STATES)), target=all_states)
    @settings(max_examples=100, deadline=5000)
    def test_terminal_states_have_no_outgoing_transitions(self, terminal, target):
        assert is_valid_transition(terminal, target) is False


# =============================================================================
# Terminal bookkeeping
# =============================================================================


class TestTerminalBookkeeping:

    @given(path=valid_paths())
    @settings(max_examples=100, deadline=5000)
    def test_terminal_transition_freezes_execution_time(self, path):
        machine = WorkflowStateMachine()
        record = _machine_record(machine)

        for state in path[1:-1]:
            machine.transition(record, state)
            assert record.execution_time is None
            assert record.finished_at is None

        machine.transition(record, path[-1])

        assert record.is_terminal
        assert record.finished_at is not None
        frozen = record.execution_time
        assert frozen is not None and frozen >= 0
        assert record.elapsed == frozen

    def test_transition_details_are_recorded(self):
        machine = WorkflowStateMachine()
        record = _machine_record(machine)

        machine.transition(record, WorkflowState.ANALYZING)
        machine.transition(
            record, WorkflowState.COMPLETED, {"outcome": "not_feasible"}
        )

        assert record.state_history[-1].details == {"outcome": "not_feasible"}


# =============================================================================
# Record creation
# =============================================================================


class TestRecordCreation:

    @given(issue_number=issue_numbers)
    @settings(max_examples=100, deadline=5000)
    def test_create_starts_pending_with_unique_id(self, issue_number):
        machine = WorkflowStateMachine()

        first = machine.create(issue_number)
        second = machine.create(issue_number)

        assert first.state == WorkflowState.PENDING
        assert first.state_history == []
        assert first.workflow_id.startswith(f"workflow-{issue_number}-")
        assert first.workflow_id != second.workflow_id
        assert first.issue.number == issue_number

    @pytest.mark.parametrize("issue_number", [0, -1, -500])
    def test_create_rejects_non_positive_issue_numbers(self, issue_number):
        with pytest.raises(ValueError):
            WorkflowStateMachine().create(issue_number)

    def test_create_carries_failure_streak(self):
        record = WorkflowStateMachine().create(
            9, consecutive_failures=2, failed_stage=Stage.REVIEW
        )

        assert record.consecutive_failures == 2
        assert record.failed_stage == Stage.REVIEW

    def test_retry_count_sums_extra_attempts(self):
        record = WorkflowStateMachine().create(3)
        record.attempt_counts = {"analysis": 1, "resolution": 3, "review": 2}

        assert record.retry_count == 3

    def test_stage_states_and_positions(self):
        assert [s.state for s in Stage] == [
            WorkflowState.ANALYZING,
            WorkflowState.RESOLVING,
            WorkflowState.REVIEWING,
            WorkflowState.GENERATING_PR,
        ]
        assert [s.position for s in Stage] == [0, 1, 2, 3]
