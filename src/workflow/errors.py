"""Error taxonomy for the workflow orchestrator.

This module defines how failures are classified and carried through the
orchestrator:
- ErrorKind: Enum of failure classifications
- WorkflowError: Structured error attached to records and results
- WorkflowOrchestrationError and subclasses: Exceptions raised to callers

Failures of collaborator calls are never raised to the caller of
process_issue. They are classified into a WorkflowError and returned as
part of a structured result. Only caller errors (duplicate submissions,
invalid transitions requested by orchestrator code) are raised.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class ErrorKind(str, Enum):
    """Classification of a workflow failure.

    Attributes:
        TRANSIENT: A collaborator raised an exception (network, malformed
            response). Retried by the executor.
        BUSINESS_REJECTION: A collaborator explicitly declined (not
            feasible, no solution, review not approved).
        TIMEOUT: A single stage attempt exceeded its deadline.
        WORKFLOW_TIMEOUT: The whole workflow exceeded max_workflow_time.
        DUPLICATE_WORKFLOW: The issue number is already being processed.
        ESCALATION_REQUIRED: The consecutive failure threshold was reached.
        CANCELLED: The workflow was cancelled by an operator.
        UNEXPECTED: The orchestrator itself raised while driving the
            workflow.
    """

    TRANSIENT = "transient"
    BUSINESS_REJECTION = "business_rejection"
    TIMEOUT = "timeout"
    WORKFLOW_TIMEOUT = "workflow_timeout"
    DUPLICATE_WORKFLOW = "duplicate_workflow"
    ESCALATION_REQUIRED = "escalation_required"
    CANCELLED = "cancelled"
    UNEXPECTED = "unexpected"


class WorkflowError(BaseModel):
    """A classified failure observed while running a workflow.

    Attributes:
        kind: The failure classification.
        message: Human-readable description.
        stage: The pipeline stage the failure is attributed to, if any.
        error_type: Exception class name when the failure came from an
            exception.
    """

    kind: ErrorKind = Field(
        ...,
        description="The failure classification",
    )

    message: str = Field(
        ...,
        description="Human-readable description of the failure",
    )

    stage: Optional[str] = Field(
        default=None,
        description="Pipeline stage the failure is attributed to",
    )

    error_type: Optional[str] = Field(
        default=None,
        description="Exception class name, when raised by a collaborator",
    )

    @classmethod
    def from_exception(
        cls,
        exc: BaseException,
        kind: ErrorKind = ErrorKind.TRANSIENT,
        stage: Optional[str] = None,
    ) -> "WorkflowError":
        """Build a WorkflowError describing an exception.

        Args:
            exc: The exception to describe.
            kind: Classification to assign.
            stage: Stage the exception was raised in.

        Returns:
            WorkflowError: The classified error.
        """
        message = str(exc) or type(exc).__name__
        return cls(
            kind=kind,
            message=message,
            stage=stage,
            error_type=type(exc).__name__,
        )

    def describe(self) -> str:
        """Return a one-line summary suitable for logs and results."""
        if self.stage:
            return f"{self.stage}: {self.message}"
        return self.message


class WorkflowOrchestrationError(Exception):
    """Base class for exceptions raised by the orchestrator."""

    kind: ErrorKind = ErrorKind.UNEXPECTED


class DuplicateWorkflowError(WorkflowOrchestrationError):
    """Raised when an issue is submitted while already in progress.

    Attributes:
        issue_number: The issue number that is already active.
    """

    kind = ErrorKind.DUPLICATE_WORKFLOW

    def __init__(self, issue_number: int):
        self.issue_number = issue_number
        super().__init__(
            f"Workflow for issue #{issue_number} is already in progress"
        )


class WorkflowNotFoundError(WorkflowOrchestrationError):
    """Raised when an issue has neither an active nor a completed workflow.

    Attributes:
        issue_number: The issue number that was not found.
    """

    def __init__(self, issue_number: int):
        self.issue_number = issue_number
        super().__init__(f"No workflow for issue #{issue_number}")
