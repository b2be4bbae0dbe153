"""PR generator that opens pull requests on GitHub.

GitHubPRGenerator implements the PRGenerator protocol on top of
GitHubClient. It renders the pull request title and description from the
analysis, resolution and review, opens the pull request against the
configured base branch, and links it back from the issue.

The resolver is expected to have pushed its changes to a branch. When the
resolution does not name one, the conventional branch for the issue is
used.
"""

import logging
from typing import List, Optional

from src.workflow.collaborators.models import (
    Issue,
    IssueAnalysis,
    PullRequest,
    ResolutionResult,
    ReviewResult,
)
from src.workflow.github.client import GitHubAPIError, GitHubClient
from src.workflow.github.models import PullRequestRequest


logger = logging.getLogger(__name__)

DEFAULT_LABELS = ["automated-fix"]
DEFAULT_BRANCH_PREFIX = "workflow/issue-"
MAX_TITLE_LENGTH = 256


class GitHubPRGenerator:
    """Opens a pull request for an approved resolution.

    Attributes:
        client: GitHub API client.
        owner: Repository owner.
        repo: Repository name.
        base_branch: Branch pull requests target.
        labels: Labels applied to every pull request.
        branch_prefix: Prefix of the conventional head branch.
        comment_on_issue: Whether to link the pull request from the issue.
    """

    def __init__(
        self,
        client: GitHubClient,
        owner: str,
        repo: str,
        base_branch: str = "main",
        labels: Optional[List[str]] = None,
        branch_prefix: str = DEFAULT_BRANCH_PREFIX,
        comment_on_issue: bool = True,
    ):
        if not owner or not repo:
            raise ValueError("owner and repo are required")
        self.client = client
        self.owner = owner
        self.repo = repo
        self.base_branch = base_branch
        self.labels = list(DEFAULT_LABELS if labels is None else labels)
        self.branch_prefix = branch_prefix
        self.comment_on_issue = comment_on_issue

    def head_branch(self, issue: Issue, resolution: ResolutionResult) -> str:
        return resolution.branch or f"{self.branch_prefix}{issue.number}"

    async def create_pull_request(
        self,
        resolution: ResolutionResult,
        review: ReviewResult,
        analysis: IssueAnalysis,
        issue: Issue,
    ) -> PullRequest:
        """Open the pull request, then link it from the issue.

        Raises only while no pull request exists. Once GitHub has created
        it, follow-up failures are logged so a retried stage does not open
        a second pull request.

        Raises:
            GitHubAPIError: If the pull request could not be opened.
        """
        request = PullRequestRequest(
            title=render_title(issue, analysis),
            body=render_body(resolution, review, analysis, issue),
            head_branch=self.head_branch(issue, resolution),
            base_branch=self.base_branch,
            labels=self.labels,
        )

        pull_request = await self.client.create_pull_request(
            self.owner, self.repo, request
        )

        if self.comment_on_issue:
            try:
                await self.client.create_comment(
                    self.owner,
                    self.repo,
                    issue.number,
                    f"Opened #{pull_request.number} to resolve this issue: {pull_request.url}",
                )
            except GitHubAPIError as e:
                logger.warning(
                    "Could not comment on issue",
                    extra={
                        "issue_number": issue.number,
                        "pr_number": pull_request.number,
                        "status_code": e.status_code,
                        "error": e.message,
                    },
                )

        logger.info(
            "Opened pull request for issue",
            extra={
                "issue_number": issue.number,
                "pr_number": pull_request.number,
                "head": request.head_branch,
            },
        )
        return pull_request


def render_title(issue: Issue, analysis: IssueAnalysis) -> str:
    """Render a pull request title such as ``Fix #12: Crash on empty input``."""
    verb = {
        "bug": "Fix",
        "feature": "Add",
        "enhancement": "Improve",
        "documentation": "Document",
    }.get(analysis.category.value, "Resolve")
    summary = issue.title.strip() or f"issue {issue.number}"
    title = f"{verb} #{issue.number}: {summary}"
    return title[:MAX_TITLE_LENGTH]


def render_body(
    resolution: ResolutionResult,
    review: ReviewResult,
    analysis: IssueAnalysis,
    issue: Issue,
) -> str:
    """Render the markdown description of a pull request."""
    lines = [f"Closes #{issue.number}", ""]

    if resolution.reasoning:
        lines += ["## Summary", "", resolution.reasoning, ""]

    changed = resolution.solution.changed_paths
    if changed:
        lines += ["## Changes", ""]
        lines += [f"- `{path}`" for path in changed]
        lines.append("")

    if analysis.acceptance_criteria:
        lines += ["## Acceptance criteria", ""]
        lines += [f"- [ ] {criterion}" for criterion in analysis.acceptance_criteria]
        lines.append("")

    lines += [
        "## Review",
        "",
        f"Score: {review.score:.2f}",
        f"Resolver confidence: {resolution.confidence:.2f}",
    ]
    if review.suggestions:
        lines += ["", "Suggestions:"]
        lines += [f"- {suggestion}" for suggestion in review.suggestions]

    return "\n".join(lines).rstrip() + "\n"
