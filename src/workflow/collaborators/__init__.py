"""Collaborator protocols and the values they exchange.

The orchestrator drives four collaborators, injected at construction:
- IssueAnalyzer: judges whether an issue can be resolved
- AutonomousResolver: produces a code solution
- CodeReviewer: reviews the solution
- PRGenerator: opens the pull request

GitHubPRGenerator is the PRGenerator shipped with the service.
"""

from src.workflow.collaborators.github import GitHubPRGenerator
from src.workflow.collaborators.interfaces import (
    AutonomousResolver,
    CodeReviewer,
    IssueAnalyzer,
    PRGenerator,
)
from src.workflow.collaborators.models import (
    ChangeType,
    CodeChanges,
    Complexity,
    FileChange,
    Issue,
    IssueAnalysis,
    IssueCategory,
    PullRequest,
    ResolutionResult,
    ReviewComment,
    ReviewResult,
)

__all__ = [
    # Protocols
    "AutonomousResolver",
    "CodeReviewer",
    "IssueAnalyzer",
    "PRGenerator",
    # Implementations
    "GitHubPRGenerator",
    # Models
    "ChangeType",
    "CodeChanges",
    "Complexity",
    "FileChange",
    "Issue",
    "IssueAnalysis",
    "IssueCategory",
    "PullRequest",
    "ResolutionResult",
    "ReviewComment",
    "ReviewResult",
]
