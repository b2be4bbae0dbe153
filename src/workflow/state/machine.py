"""Workflow state machine implementation.

This module implements the WorkflowStateMachine class that moves a
WorkflowRecord through the workflow states with validation and timestamp
recording.

The machine is synchronous and works on in-memory records only. The
orchestrator relies on this: a terminal transition and the matching
registry eviction happen in one step with no suspension point between
them.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from src.workflow.errors import WorkflowOrchestrationError
from src.workflow.state.models import (
    Stage,
    StateTransition,
    WorkflowRecord,
    WorkflowState,
    is_terminal_state,
    is_valid_transition,
)


logger = logging.getLogger(__name__)


class InvalidTransitionError(WorkflowOrchestrationError):
    """Raised when an invalid state transition is attempted.

    Attributes:
        from_state: The current state.
        to_state: The attempted target state.
        message: Human-readable error message.
    """

    def __init__(
        self,
        from_state: WorkflowState,
        to_state: WorkflowState,
        message: Optional[str] = None,
    ):
        self.from_state = from_state
        self.to_state = to_state
        self.message = message or (
            f"Invalid transition from {from_state.value} to {to_state.value}"
        )
        super().__init__(self.message)


class WorkflowStateMachine:
    """State machine for workflow records.

    The state machine enforces the following invariants:
    - Only valid transitions (as defined in VALID_TRANSITIONS) are allowed
    - Every transition is recorded with a timestamp in state_history
    - Reaching a terminal state freezes the record's execution time

    Example:
        >>> machine = WorkflowStateMachine()
        >>> record = machine.create(42, title="Crash on start")
        >>> machine.transition(record, WorkflowState.ANALYZING)
        >>> record.state
        <WorkflowState.ANALYZING: 'analyzing'>
    """

    def create(
        self,
        issue_number: int,
        title: str = "",
        body: str = "",
        consecutive_failures: int = 0,
        failed_stage: Optional[Stage] = None,
    ) -> WorkflowRecord:
        """Create a new workflow record in the PENDING state.

        Args:
            issue_number: Number of the issue to resolve.
            title: Issue title.
            body: Issue body.
            consecutive_failures: Failure streak carried over from earlier
                runs of the same issue.
            failed_stage: Stage the carried streak was last extended at.

        Returns:
            The newly created record.

        Raises:
            ValueError: If issue_number is not positive.
        """
        if issue_number <= 0:
            raise ValueError("issue_number must be positive")

        record = WorkflowRecord(
            issue_number=issue_number,
            title=title or "",
            body=body or "",
            state=WorkflowState.PENDING,
            consecutive_failures=consecutive_failures,
            failed_stage=failed_stage,
        )

        logger.info(
            "Creating workflow record",
            extra={
                "issue_number": issue_number,
                "workflow_id": record.workflow_id,
                "state": WorkflowState.PENDING.value,
                "consecutive_failures": consecutive_failures,
            },
        )

        return record

    def transition(
        self,
        record: WorkflowRecord,
        to_state: WorkflowState,
        details: Optional[Dict[str, Any]] = None,
    ) -> StateTransition:
        """Move a record to a new state.

        Args:
            record: The record to update in place.
            to_state: The target state.
            details: Optional metadata about the transition.

        Returns:
            The transition that was recorded.

        Raises:
            InvalidTransitionError: If the transition is not valid.
        """
        from_state = record.state

        if not is_valid_transition(from_state, to_state):
            logger.warning(
                "Invalid state transition attempted",
                extra={
                    "issue_number": record.issue_number,
                    "workflow_id": record.workflow_id,
                    "from_state": from_state.value,
                    "to_state": to_state.value,
                },
            )
            raise InvalidTransitionError(from_state, to_state)

        transition = StateTransition(
            from_state=from_state,
            to_state=to_state,
            timestamp=datetime.now(timezone.utc),
            details=details or {},
        )
        record.state_history.append(transition)
        record.state = to_state

        if is_terminal_state(to_state):
            record.mark_finished()

        logger.info(
            "Transitioning workflow state",
            extra={
                "issue_number": record.issue_number,
                "workflow_id": record.workflow_id,
                "from_state": from_state.value,
                "to_state": to_state.value,
            },
        )

        return transition
