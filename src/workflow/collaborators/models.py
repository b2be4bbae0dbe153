"""Request and response models for the pipeline collaborators.

This module defines the plain values exchanged between the orchestrator
and the four step collaborators:
- Issue: The issue handed to every collaborator
- IssueAnalysis: Output of the IssueAnalyzer
- CodeChanges / FileChange: The proposed solution
- ResolutionResult: Output of the AutonomousResolver
- ReviewResult / ReviewComment: Output of the CodeReviewer
- PullRequest: Output of the PRGenerator

Collaborators receive and return these models only. They never see the
orchestrator's WorkflowRecord.

The models use Pydantic for validation, consistent with the state and
event models.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


class IssueCategory(str, Enum):
    """Category assigned to an issue by the analyzer.

    Attributes:
        BUG: Incorrect or unexpected behavior.
        FEATURE: Request for new functionality.
        ENHANCEMENT: Improvement of existing functionality.
        DOCUMENTATION: Documentation changes or additions.
        QUESTION: A question rather than a change request.
        UNKNOWN: Category could not be determined.
    """

    BUG = "bug"
    FEATURE = "feature"
    ENHANCEMENT = "enhancement"
    DOCUMENTATION = "documentation"
    QUESTION = "question"
    UNKNOWN = "unknown"


class Complexity(str, Enum):
    """Estimated complexity of resolving an issue."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ChangeType(str, Enum):
    """Kind of change applied to a file."""

    ADD = "add"
    MODIFY = "modify"
    DELETE = "delete"


class Issue(BaseModel):
    """An issue submitted for autonomous resolution.

    Attributes:
        number: Issue number in the tracker.
        title: Issue title (free-form, may be empty).
        body: Issue body (free-form, may be empty).
        labels: Label names attached to the issue.
    """

    number: int = Field(..., description="Issue number in the tracker")
    title: str = Field(default="", description="Issue title")
    body: str = Field(default="", description="Issue body")
    labels: List[str] = Field(
        default_factory=list,
        description="Label names attached to the issue",
    )


class IssueAnalysis(BaseModel):
    """Result of analyzing an issue.

    A feasible analysis lets the workflow proceed to resolution. An
    infeasible one ends the workflow without it being a pipeline error.

    Attributes:
        category: Category assigned to the issue.
        complexity: Estimated complexity.
        requirements: Requirements extracted from the issue.
        acceptance_criteria: Criteria a solution must satisfy.
        feasible: Whether the analyzer believes the issue can be resolved
            autonomously.
        confidence: Analyzer confidence (0.0-1.0).
        reasoning: Explanation of the analysis.
    """

    category: IssueCategory = Field(default=IssueCategory.UNKNOWN)
    complexity: Complexity = Field(default=Complexity.MEDIUM)
    requirements: List[str] = Field(default_factory=list)
    acceptance_criteria: List[str] = Field(default_factory=list)
    feasible: bool = Field(
        ...,
        description="Whether the issue can be resolved autonomously",
    )
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: str = Field(default="")


class FileChange(BaseModel):
    """A single change to a file in the proposed solution."""

    path: str = Field(..., min_length=1)
    change_type: ChangeType = Field(default=ChangeType.MODIFY)
    content: str = Field(default="")


class CodeChanges(BaseModel):
    """The solution proposed by the resolver.

    Attributes:
        files: Source changes.
        tests: Test changes accompanying the source changes.
    """

    files: List[FileChange] = Field(default_factory=list)
    tests: List[FileChange] = Field(default_factory=list)

    @property
    def changed_paths(self) -> List[str]:
        """Return every path touched by the solution, source first."""
        return [change.path for change in self.files + self.tests]


class ResolutionResult(BaseModel):
    """Result of attempting to resolve an issue.

    ``success=False`` is a business-level failure: the resolver ran but
    produced no usable solution.

    Attributes:
        success: Whether a usable solution was produced.
        solution: The proposed changes.
        confidence: Resolver confidence (0.0-1.0).
        reasoning: Explanation of the approach.
        branch: Branch the changes were pushed to, when the resolver
            manages its own checkout.
        errors: Errors encountered while resolving.
    """

    success: bool
    solution: CodeChanges = Field(default_factory=CodeChanges)
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    reasoning: str = Field(default="")
    branch: Optional[str] = Field(default=None)
    errors: List[str] = Field(default_factory=list)


class ReviewComment(BaseModel):
    """A single finding produced by the reviewer."""

    message: str
    severity: str = Field(default="info")
    file: Optional[str] = Field(default=None)
    line: Optional[int] = Field(default=None, ge=1)


class ReviewResult(BaseModel):
    """Result of reviewing a proposed solution.

    Attributes:
        approved: Whether the solution may be turned into a PR.
        score: Review score (0.0-1.0).
        comments: Findings on the solution.
        suggestions: Suggested improvements.
        critical_issues: Findings that block approval.
    """

    approved: bool
    score: float = Field(default=0.0, ge=0.0, le=1.0)
    comments: List[ReviewComment] = Field(default_factory=list)
    suggestions: List[str] = Field(default_factory=list)
    critical_issues: List[str] = Field(default_factory=list)


class PullRequest(BaseModel):
    """Reference to a pull request created for an issue."""

    number: int = Field(..., gt=0)
    title: str
    body: str = Field(default="")
    url: str
