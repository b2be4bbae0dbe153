"""GitHub REST client used to publish workflow results.

This module provides an async wrapper around the GitHub API for:
- Creating pull requests
- Adding labels to issues and pull requests
- Commenting on issues

Transient failures (timeouts, connection errors, 5xx, 408) are retried
with exponential backoff. Rate-limited responses are retried after the
advertised reset when it falls within max_delay, and raised otherwise.
"""

import asyncio
import logging
import random
import time
from typing import Any, Dict, List, Optional

import httpx

from src.workflow.collaborators.models import PullRequest
from src.workflow.github.models import PullRequestRequest


logger = logging.getLogger(__name__)


class GitHubAPIError(Exception):
    """Raised when a GitHub API request fails.

    Attributes:
        message: Human-readable error description.
        status_code: HTTP status code from the response.
        response_body: Response body from GitHub API.
        request_url: The URL that was requested.
    """

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response_body: Optional[str] = None,
        request_url: Optional[str] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.response_body = response_body
        self.request_url = request_url
        super().__init__(message)


class RateLimitError(GitHubAPIError):
    """Raised when GitHub API rate limit is exceeded.

    Attributes:
        reset_at: Unix timestamp when the rate limit resets.
        retry_after: Seconds to wait before retrying.
    """

    def __init__(
        self,
        message: str,
        reset_at: Optional[int] = None,
        retry_after: Optional[int] = None,
        **kwargs: Any,
    ):
        super().__init__(message, **kwargs)
        self.reset_at = reset_at
        self.retry_after = retry_after


class GitHubClient:
    """Async GitHub API client with rate limiting and retry logic.

    Attributes:
        token: GitHub API token (PAT or GitHub App token).
        base_url: Base URL for GitHub API (supports GitHub Enterprise).
        max_retries: Maximum number of retries for transient failures.
        base_delay: Base delay in seconds for exponential backoff.
        max_delay: Maximum delay in seconds between retries.
        timeout: Request timeout in seconds.

    Example:
        >>> async with GitHubClient(token="ghp_xxx") as client:
        ...     await client.create_comment("owner", "repo", 123, "Hello!")
    """

    RETRYABLE_STATUS_CODES = {408, 500, 502, 503, 504}

    def __init__(
        self,
        token: str,
        base_url: str = "https://api.github.com",
        max_retries: int = 3,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """Initialize the GitHub client.

        Args:
            token: GitHub API token for authentication.
            base_url: Base URL for GitHub API.
            max_retries: Maximum number of retries.
            base_delay: Base delay in seconds for exponential backoff.
            max_delay: Maximum delay in seconds between retries; also the
                longest rate-limit reset the client is willing to wait for.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport, used by tests.
        """
        self.token = token
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "Authorization": f"Bearer {self.token}",
                    "Accept": "application/vnd.github+json",
                    "X-GitHub-Api-Version": "2022-11-28",
                    "User-Agent": "issue-workflow-orchestrator/1.0",
                },
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client and release resources."""
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    async def __aenter__(self) -> "GitHubClient":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()

    def _backoff(self, attempt: int) -> float:
        """Exponential backoff with full jitter (attempt is 0-indexed)."""
        capped_delay = min(self.base_delay * (2 ** attempt), self.max_delay)
        return random.uniform(0, capped_delay)

    def _rate_limit_error(self, response: httpx.Response) -> Optional[RateLimitError]:
        """Build a RateLimitError if the response is rate limited."""
        remaining = _int_header(response.headers, "x-ratelimit-remaining")
        if response.status_code != 429 and not (
            response.status_code == 403 and remaining == 0
        ):
            return None

        reset_at = _int_header(response.headers, "x-ratelimit-reset")
        retry_after = _int_header(response.headers, "retry-after")
        if retry_after is None and reset_at is not None:
            retry_after = max(0, reset_at - int(time.time()))

        return RateLimitError(
            message="GitHub API rate limit exceeded",
            status_code=response.status_code,
            reset_at=reset_at,
            retry_after=retry_after,
            request_url=str(response.url),
        )

    async def _request(
        self,
        method: str,
        path: str,
        json_data: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Make an HTTP request with retry logic.

        Raises:
            RateLimitError: If rate limited for longer than max_delay, or
                still rate limited after all retries.
            GitHubAPIError: If the request fails after all retries.
        """
        last_error: Optional[str] = None

        for attempt in range(self.max_retries + 1):
            can_retry = attempt < self.max_retries
            try:
                response = await self.client.request(method, path, json=json_data)
            except httpx.RequestError as e:
                last_error = f"{type(e).__name__}: {e}"
                if not can_retry:
                    break
                delay = self._backoff(attempt)
                logger.warning(
                    "GitHub request error, retrying",
                    extra={
                        "error": last_error,
                        "attempt": attempt + 1,
                        "max_retries": self.max_retries,
                        "delay": delay,
                        "path": path,
                    },
                )
                await asyncio.sleep(delay)
                continue

            rate_limit = self._rate_limit_error(response)
            if rate_limit is not None:
                wait = rate_limit.retry_after
                logger.warning(
                    "GitHub API rate limit exceeded",
                    extra={
                        "reset_at": rate_limit.reset_at,
                        "retry_after": wait,
                        "path": path,
                    },
                )
                if not can_retry or wait is None or wait > self.max_delay:
                    raise rate_limit
                await asyncio.sleep(wait)
                continue

            if response.status_code in self.RETRYABLE_STATUS_CODES and can_retry:
                last_error = f"HTTP {response.status_code}"
                delay = self._backoff(attempt)
                logger.warning(
                    "Retryable error from GitHub API",
                    extra={
                        "status_code": response.status_code,
                        "attempt": attempt + 1,
                        "max_retries": self.max_retries,
                        "delay": delay,
                        "path": path,
                    },
                )
                await asyncio.sleep(delay)
                continue

            if response.status_code >= 400:
                logger.error(
                    "GitHub API error",
                    extra={
                        "status_code": response.status_code,
                        "path": path,
                        "method": method,
                        "response_body": response.text[:500],
                    },
                )
                raise GitHubAPIError(
                    message=f"GitHub API error: {response.status_code}",
                    status_code=response.status_code,
                    response_body=response.text,
                    request_url=str(response.url),
                )

            return response

        logger.error(
            "GitHub API request failed after all retries",
            extra={
                "path": path,
                "method": method,
                "max_retries": self.max_retries,
                "last_error": last_error,
            },
        )
        raise GitHubAPIError(
            message=f"Request failed after {self.max_retries} retries: {last_error}",
            request_url=f"{self.base_url}{path}",
        )

    async def create_pull_request(
        self,
        owner: str,
        repo: str,
        request: PullRequestRequest,
    ) -> PullRequest:
        """Create a pull request and apply its labels.

        Labelling happens after the pull request exists, so a labelling
        failure is logged and the pull request is still returned.

        Raises:
            GitHubAPIError: If the pull request could not be opened.
        """
        logger.info(
            "Creating pull request",
            extra={
                "owner": owner,
                "repo": repo,
                "head": request.head_branch,
                "base": request.base_branch,
            },
        )

        response = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/pulls",
            json_data={
                "title": request.title,
                "body": request.body,
                "head": request.head_branch,
                "base": request.base_branch,
                "draft": request.draft,
            },
        )
        data = response.json()
        pull_request = PullRequest(
            number=data["number"],
            title=data.get("title", request.title),
            body=data.get("body") or "",
            url=data["html_url"],
        )

        logger.info(
            "Pull request created",
            extra={
                "owner": owner,
                "repo": repo,
                "pr_number": pull_request.number,
                "pr_url": pull_request.url,
            },
        )

        if request.labels:
            try:
                await self.add_labels(owner, repo, pull_request.number, request.labels)
            except GitHubAPIError as e:
                logger.warning(
                    "Could not label pull request",
                    extra={
                        "owner": owner,
                        "repo": repo,
                        "pr_number": pull_request.number,
                        "labels": request.labels,
                        "status_code": e.status_code,
                        "error": e.message,
                    },
                )

        return pull_request

    async def add_labels(
        self,
        owner: str,
        repo: str,
        issue_number: int,
        labels: List[str],
    ) -> List[Dict[str, Any]]:
        """Add labels to an issue or pull request.

        Returns:
            All labels on the issue after adding.
        """
        response = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/issues/{issue_number}/labels",
            json_data={"labels": labels},
        )
        return response.json()

    async def create_comment(
        self,
        owner: str,
        repo: str,
        issue_number: int,
        body: str,
    ) -> Dict[str, Any]:
        """Create a comment on an issue."""
        response = await self._request(
            "POST",
            f"/repos/{owner}/{repo}/issues/{issue_number}/comments",
            json_data={"body": body},
        )
        return response.json()


def _int_header(headers: httpx.Headers, name: str) -> Optional[int]:
    value = headers.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return None
