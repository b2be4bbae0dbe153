"""Workflow event models for observability.

This module defines the data models for workflow events:
- EventType: Enum of all event types emitted by the orchestrator
- WorkflowEvent: Structured event with its metadata

Events give operators visibility into workflow progression, retries,
timeouts and escalations without coupling the orchestrator to a
particular sink.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field


class EventType(str, Enum):
    """Types of events emitted by the workflow orchestrator.

    Event Categories:
        STATE_TRANSITION: A workflow moved between states.
            Used for tracking progression and identifying bottlenecks.

        RETRY: A stage attempt failed and was retried.
            Used for spotting flaky collaborators.

        TIMEOUT: A stage attempt or the whole workflow ran out of time.

        ERROR: A workflow ended in FAILED.

        COMPLETION: A workflow ended in COMPLETED.

        ESCALATION: A workflow ended in ESCALATED and needs a human.
    """

    STATE_TRANSITION = "state_transition"
    RETRY = "retry"
    TIMEOUT = "timeout"
    ERROR = "error"
    COMPLETION = "completion"
    ESCALATION = "escalation"


class WorkflowEvent(BaseModel):
    """Structured event emitted by the workflow orchestrator.

    Attributes:
        event_type: The category of event.
        issue_number: Issue the workflow is processing.
        workflow_id: Identifier of the workflow attempt.
        timestamp: When the event occurred (UTC timezone).
        details: Additional context specific to the event type.

    Example:
        >>> event = WorkflowEvent(
        ...     event_type=EventType.STATE_TRANSITION,
        ...     issue_number=123,
        ...     workflow_id="workflow-123-3f9a0c2b1d4e",
        ...     details={"from_state": "analyzing", "to_state": "resolving"},
        ... )

    Details Field Conventions:
        For STATE_TRANSITION events:
            - from_state: Previous workflow state
            - to_state: New workflow state

        For RETRY events:
            - stage: Stage that was retried
            - attempt: Number of the failed attempt
            - error_kind / error_message: Why the attempt failed

        For TIMEOUT events:
            - stage: Stage that timed out (absent for workflow timeouts)
            - scope: "attempt" or "workflow"

        For ERROR and ESCALATION events:
            - outcome: How the workflow ended
            - error_kind / error_message: The last classified error
            - consecutive_failures: Failure streak at the end

        For COMPLETION events:
            - outcome: pr_created or not_feasible
            - pr_number / pr_url: The created pull request, if any
            - duration_seconds: Total execution time
    """

    model_config = ConfigDict(use_enum_values=False)

    event_type: EventType = Field(
        ...,
        description="The category of event being emitted",
    )

    issue_number: int = Field(
        ...,
        gt=0,
        description="Number of the issue the workflow is processing",
    )

    workflow_id: str = Field(
        ...,
        min_length=1,
        description="Identifier of the workflow attempt",
    )

    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC timezone)",
    )

    details: Dict[str, Any] = Field(
        default_factory=dict,
        description="Additional context specific to the event type",
    )

    def to_log_dict(self) -> Dict[str, Any]:
        """Convert event to a flat dictionary suitable for structured logging.

        Example:
            >>> event.to_log_dict()["event_type"]
            'state_transition'
        """
        return {
            "event_type": self.event_type.value,
            "issue_number": self.issue_number,
            "workflow_id": self.workflow_id,
            "timestamp": self.timestamp.isoformat(),
            **self.details,
        }
