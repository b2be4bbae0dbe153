"""GitHub API client for publishing workflow results.

Includes rate limiting and retry logic for API resilience.
"""

from src.workflow.github.client import (
    GitHubAPIError,
    GitHubClient,
    RateLimitError,
)
from src.workflow.github.models import PullRequestRequest

__all__ = [
    "GitHubAPIError",
    "GitHubClient",
    "PullRequestRequest",
    "RateLimitError",
]
