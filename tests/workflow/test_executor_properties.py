"""Property-based tests for the RetryTimeoutExecutor.

Properties:
- A stage that fails k times then succeeds reports exactly k + 1 attempts
- A stage that always fails is attempted exactly max_attempts times
- Backoff delays stay within [capped / 2, capped]
- Every recorded error carries the stage name
"""

import asyncio

from hypothesis import given, settings as hyp_settings, strategies as st

from src.workflow.errors import ErrorKind
from src.workflow.executor import RetryPolicy, RetryTimeoutExecutor


def run_async(coro):
    return asyncio.run(coro)


stage_names = st.sampled_from(["analysis", "resolution", "review", "pr_generation"])


def _counting_operation(failures: int):
    calls = {"n": 0}

    async def operation():
        calls["n"] += 1
        if calls["n"] <= failures:
            raise ConnectionError(f"failure {calls['n']}")
        return calls["n"]

    return operation, calls


# ---------------------------------------------------------------------------
# Attempt counting
# ---------------------------------------------------------------------------


class TestAttemptCountingProperties:

    @given(
        max_attempts=st.integers(min_value=1, max_value=6),
        data=st.data(),
        stage=stage_names,
    )
    @hyp_settings(max_examples=100, deadline=5000)
    def test_retry_then_succeed_reports_k_plus_one_attempts(self, max_attempts, data, stage):
        failures = data.draw(st.integers(min_value=0, max_value=max_attempts - 1))
        operation, calls = _counting_operation(failures)
        executor = RetryTimeoutExecutor(RetryPolicy(base_delay=0, max_delay=0))

        outcome = run_async(executor.execute(stage, 1.0, max_attempts, operation))

        assert outcome.success is True
        assert outcome.attempts == failures + 1
        assert calls["n"] == failures + 1
        assert len(outcome.errors) == failures
        assert all(e.stage == stage for e in outcome.errors)

    @given(
        max_attempts=st.integers(min_value=1, max_value=6),
        stage=stage_names,
    )
    @hyp_settings(max_examples=100, deadline=5000)
    def test_always_failing_stage_uses_every_attempt(self, max_attempts, stage):
        operation, calls = _counting_operation(failures=max_attempts + 10)
        executor = RetryTimeoutExecutor(RetryPolicy(base_delay=0, max_delay=0))

        outcome = run_async(executor.execute(stage, 1.0, max_attempts, operation))

        assert outcome.success is False
        assert outcome.attempts == max_attempts
        assert calls["n"] == max_attempts
        assert outcome.error.kind == ErrorKind.TRANSIENT
        assert outcome.error.message == f"failure {max_attempts}"


# ---------------------------------------------------------------------------
# Backoff
# ---------------------------------------------------------------------------


class TestBackoffProperties:

    @given(
        base_delay=st.floats(min_value=0.0, max_value=10.0),
        extra=st.floats(min_value=0.0, max_value=100.0),
        multiplier=st.floats(min_value=1.0, max_value=4.0),
        attempt=st.integers(min_value=0, max_value=1000),
    )
    @hyp_settings(max_examples=100, deadline=5000)
    def test_backoff_within_jitter_bounds(self, base_delay, extra, multiplier, attempt):
        max_delay = base_delay + extra
        policy = RetryPolicy(
            base_delay=base_delay, max_delay=max_delay, multiplier=multiplier
        )

        delay = policy.backoff(attempt)

        capped = min(base_delay * multiplier ** min(attempt, 64), max_delay)
        assert capped / 2 <= delay <= capped
        assert delay <= max_delay
