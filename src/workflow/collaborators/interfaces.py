"""Protocols for the four pipeline step collaborators.

The orchestrator depends only on these protocols. Concrete collaborators
(LLM-backed analyzers, code generators, reviewers, PR generators) are
constructed elsewhere and injected into WorkflowOrchestrator.

Each collaborator exposes a single asynchronous operation. A collaborator
signals a business-level failure through its return value (feasible,
success, approved) and a technical failure by raising.
"""

from typing import Protocol, runtime_checkable

from src.workflow.collaborators.models import (
    CodeChanges,
    Issue,
    IssueAnalysis,
    PullRequest,
    ResolutionResult,
    ReviewResult,
)


@runtime_checkable
class IssueAnalyzer(Protocol):
    """Analyzes an issue and judges whether it can be resolved."""

    async def analyze_issue(self, issue: Issue) -> IssueAnalysis:
        """Analyze an issue.

        Args:
            issue: The issue to analyze.

        Returns:
            The analysis. ``feasible=False`` ends the workflow.
        """
        ...


@runtime_checkable
class AutonomousResolver(Protocol):
    """Produces a code solution for an analyzed issue."""

    async def resolve_issue(
        self, analysis: IssueAnalysis, issue: Issue
    ) -> ResolutionResult:
        """Generate a solution.

        Args:
            analysis: The analysis produced for the issue.
            issue: The issue being resolved.

        Returns:
            The resolution. ``success=False`` means no usable solution.
        """
        ...


@runtime_checkable
class CodeReviewer(Protocol):
    """Reviews a proposed solution."""

    async def review_changes(
        self, solution: CodeChanges, issue: Issue
    ) -> ReviewResult:
        """Review a solution.

        Args:
            solution: The proposed changes.
            issue: The issue the changes address.

        Returns:
            The review. ``approved=False`` stops the workflow.
        """
        ...


@runtime_checkable
class PRGenerator(Protocol):
    """Opens a pull request for an approved solution."""

    async def create_pull_request(
        self,
        resolution: ResolutionResult,
        review: ReviewResult,
        analysis: IssueAnalysis,
        issue: Issue,
    ) -> PullRequest:
        """Create a pull request.

        Args:
            resolution: The successful resolution.
            review: The approving review.
            analysis: The analysis of the issue.
            issue: The issue being resolved.

        Returns:
            Reference to the created pull request.

        Raises:
            Exception: Any failure; there is no partial-PR result.
        """
        ...
