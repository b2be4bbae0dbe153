"""Retry/timeout executor for pipeline stages.

This module wraps a single stage call with a per-attempt timeout and a
bounded number of attempts:
- RetryPolicy: Backoff and retryable-error configuration
- StageOutcome: Structured result of running a stage
- RetryTimeoutExecutor: Runs an operation until it succeeds or attempts
  run out

The executor never mutates workflow state. Everything the orchestrator
needs to update its record is carried by the returned StageOutcome.

Timeout behavior:
    Each attempt runs as its own task. When the attempt timeout expires
    the task is cancelled and the executor moves on without waiting for
    the cancellation to complete, so a collaborator that ignores
    cancellation cannot hold the caller past the timeout.
"""

import asyncio
import logging
import random
import re
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional

from pydantic import BaseModel, Field, model_validator

from src.workflow.errors import ErrorKind, WorkflowError


logger = logging.getLogger(__name__)

# Exponent ceiling for the backoff computation; beyond it the delay is
# always capped anyway.
MAX_BACKOFF_EXPONENT = 64


class RetryPolicy(BaseModel):
    """Backoff and retry classification for stage attempts.

    Attributes:
        base_delay: Delay before the first retry, in seconds.
        max_delay: Upper bound on any single delay, in seconds.
        multiplier: Exponential growth factor between retries.
        retryable_errors: Case-insensitive substrings (``*`` wildcards
            allowed) an exception message must contain to be retried.
            Empty means every exception is retryable.
    """

    base_delay: float = Field(
        default=1.0,
        ge=0.0,
        description="Delay before the first retry in seconds",
    )

    max_delay: float = Field(
        default=30.0,
        ge=0.0,
        description="Maximum delay between retries in seconds",
    )

    multiplier: float = Field(
        default=2.0,
        ge=1.0,
        description="Exponential backoff multiplier",
    )

    retryable_errors: List[str] = Field(
        default_factory=list,
        description="Exception message patterns that may be retried",
    )

    @model_validator(mode="after")
    def validate_delays(self) -> "RetryPolicy":
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be greater than or equal to base_delay")
        return self

    def backoff(self, attempt: int) -> float:
        """Calculate the delay before retry number ``attempt`` (0-indexed).

        The delay grows exponentially, is capped at max_delay, and is
        jittered within the upper half of the capped value.
        """
        exponent = min(attempt, MAX_BACKOFF_EXPONENT)
        capped_delay = min(self.base_delay * (self.multiplier ** exponent), self.max_delay)
        return random.uniform(capped_delay / 2, capped_delay)

    def is_retryable(self, message: str) -> bool:
        """Check an exception message against the retryable patterns."""
        if not self.retryable_errors:
            return True

        lowered = message.lower()
        for pattern in self.retryable_errors:
            pattern = pattern.lower()
            if "*" in pattern:
                regex = ".*".join(re.escape(part) for part in pattern.split("*"))
                if re.search(regex, lowered):
                    return True
            elif pattern in lowered:
                return True
        return False


@dataclass
class StageOutcome:
    """Result of running a stage through the executor.

    Attributes:
        success: Whether an attempt produced an accepted value.
        value: The accepted value, or the last rejected value.
        attempts: Number of attempts made.
        error: The last failure, when unsuccessful.
        errors: Every failure observed, in attempt order.
        elapsed: Seconds spent in the executor, backoff included.
        deadline_exceeded: Whether the loop stopped because the
            workflow deadline passed.
    """

    success: bool
    value: Any = None
    attempts: int = 0
    error: Optional[WorkflowError] = None
    errors: List[WorkflowError] = field(default_factory=list)
    elapsed: float = 0.0
    deadline_exceeded: bool = False

    @property
    def retries(self) -> int:
        return max(0, self.attempts - 1)


def _retrieve_result(task: "asyncio.Future[Any]") -> None:
    # Abandoned attempts may still finish with an exception; read it so
    # the event loop does not report it as never retrieved.
    if not task.cancelled():
        task.exception()


class RetryTimeoutExecutor:
    """Runs a stage operation with per-attempt timeouts and retries.

    Example:
        >>> executor = RetryTimeoutExecutor(RetryPolicy(base_delay=0.5))
        >>> outcome = await executor.execute(
        ...     "analysis", 30.0, 3, lambda: analyzer.analyze_issue(issue)
        ... )
        >>> if outcome.success:
        ...     analysis = outcome.value
    """

    def __init__(self, policy: Optional[RetryPolicy] = None):
        self.policy = policy or RetryPolicy()

    async def execute(
        self,
        stage_name: str,
        timeout: float,
        max_attempts: int,
        operation: Callable[[], Awaitable[Any]],
        *,
        reject: Optional[Callable[[Any], Optional[str]]] = None,
        deadline: Optional[float] = None,
    ) -> StageOutcome:
        """Run ``operation`` until it succeeds or attempts run out.

        Args:
            stage_name: Stage label used in errors and logs.
            timeout: Per-attempt timeout in seconds.
            max_attempts: Maximum number of attempts (>= 1).
            operation: Zero-argument callable returning an awaitable.
            reject: Optional check on a returned value. A returned
                message marks the value as a business rejection, which is
                retried like any other failed attempt.
            deadline: Optional ``time.monotonic()`` value after which no
                further attempt is started. Attempt timeouts are clamped
                to it.

        Returns:
            StageOutcome describing the attempts.

        Raises:
            ValueError: If timeout or max_attempts is out of range.
        """
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")

        start_time = time.monotonic()
        errors: List[WorkflowError] = []
        value: Any = None
        attempts = 0

        while attempts < max_attempts:
            attempt_timeout = timeout
            if deadline is not None:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                attempt_timeout = min(timeout, remaining)

            attempts += 1
            retryable = True

            try:
                value = await self._run_attempt(operation, attempt_timeout)
            except asyncio.TimeoutError:
                error = WorkflowError(
                    kind=ErrorKind.TIMEOUT,
                    message=f"{stage_name} attempt timed out after {attempt_timeout:.2f}s",
                    stage=stage_name,
                )
            except Exception as exc:
                error = WorkflowError.from_exception(exc, stage=stage_name)
                retryable = self.policy.is_retryable(error.message)
            else:
                rejection = reject(value) if reject is not None else None
                if rejection is None:
                    return StageOutcome(
                        success=True,
                        value=value,
                        attempts=attempts,
                        errors=errors,
                        elapsed=time.monotonic() - start_time,
                    )
                error = WorkflowError(
                    kind=ErrorKind.BUSINESS_REJECTION,
                    message=rejection,
                    stage=stage_name,
                )

            errors.append(error)
            will_retry = retryable and attempts < max_attempts
            delay = self.policy.backoff(attempts - 1) if will_retry else 0.0
            if will_retry and deadline is not None:
                delay = max(0.0, min(delay, deadline - time.monotonic()))

            logger.warning(
                "Stage attempt failed",
                extra={
                    "stage": stage_name,
                    "attempt": attempts,
                    "max_attempts": max_attempts,
                    "error_kind": error.kind.value,
                    "error": error.message,
                    "will_retry": will_retry,
                    "delay": delay,
                },
            )

            if not will_retry:
                break
            await asyncio.sleep(delay)

        deadline_exceeded = deadline is not None and time.monotonic() >= deadline
        if deadline_exceeded and not errors:
            errors.append(
                WorkflowError(
                    kind=ErrorKind.WORKFLOW_TIMEOUT,
                    message=f"Workflow deadline passed before {stage_name} could run",
                    stage=stage_name,
                )
            )

        return StageOutcome(
            success=False,
            value=value,
            attempts=attempts,
            error=errors[-1],
            errors=errors,
            elapsed=time.monotonic() - start_time,
            deadline_exceeded=deadline_exceeded,
        )

    async def _run_attempt(
        self,
        operation: Callable[[], Awaitable[Any]],
        timeout: float,
    ) -> Any:
        """Run one attempt as a task and wait for it at most ``timeout``.

        Raises:
            asyncio.TimeoutError: If the attempt did not finish in time.
            Exception: Whatever the operation raised.
        """
        task = asyncio.ensure_future(operation())
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if task in done:
            return task.result()

        task.cancel()
        task.add_done_callback(_retrieve_result)
        raise asyncio.TimeoutError()
