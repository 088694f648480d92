"""Tests for retry strategies."""

import pytest

from sitemapspine.core.errors import FatalReplicationError, TransientFetchError
from sitemapspine.execution.retry import ConstantBackoff, RetryContext


class TestConstantBackoff:
    """Tests for ConstantBackoff strategy."""

    def test_defaults(self):
        strategy = ConstantBackoff()
        assert strategy.max_retries == 3
        assert strategy.delay == 10.0
        assert strategy.retryable_errors is None

    def test_constant_delay(self):
        strategy = ConstantBackoff(delay=2.5)
        assert [strategy.next_delay(n) for n in range(3)] == [2.5, 2.5, 2.5]

    def test_should_retry_within_limit(self):
        strategy = ConstantBackoff(max_retries=3)
        assert strategy.should_retry(0) is True
        assert strategy.should_retry(2) is True
        assert strategy.should_retry(3) is False

    def test_retryable_errors_filter(self):
        strategy = ConstantBackoff(retryable_errors=(TransientFetchError,))
        assert strategy.should_retry(0, TransientFetchError("x")) is True
        assert strategy.should_retry(0, FatalReplicationError("x")) is False


class TestRetryContext:
    """Tests for RetryContext."""

    def test_success_first_try(self):
        ctx = RetryContext(ConstantBackoff(), sleep=lambda s: None)
        assert ctx.run(lambda: "ok") == "ok"
        assert ctx.attempt == 1
        assert ctx.retries == 0

    def test_four_attempts_then_raise(self):
        """max_retries=3 means one attempt plus three retries."""
        sleeps = []
        calls = []

        def failing():
            calls.append(1)
            raise TransientFetchError("503")

        ctx = RetryContext(ConstantBackoff(max_retries=3, delay=10.0), sleep=sleeps.append)
        with pytest.raises(TransientFetchError):
            ctx.run(failing)
        assert len(calls) == 4
        assert sleeps == [10.0, 10.0, 10.0]
        assert len(ctx.errors) == 4
        assert ctx.retries == 3

    def test_recovers(self):
        outcomes = iter([TransientFetchError("1"), TransientFetchError("2"), "done"])

        def flaky():
            value = next(outcomes)
            if isinstance(value, Exception):
                raise value
            return value

        retried = []
        ctx = RetryContext(
            ConstantBackoff(delay=0.0),
            on_retry=lambda attempt, error, delay: retried.append(attempt),
            sleep=lambda s: None,
        )
        assert ctx.run(flaky) == "done"
        assert retried == [1, 2]
        assert isinstance(ctx.last_error, TransientFetchError)

    def test_non_retryable_raises_immediately(self):
        ctx = RetryContext(
            ConstantBackoff(retryable_errors=(TransientFetchError,)), sleep=lambda s: None
        )
        with pytest.raises(ValueError):
            ctx.run(lambda: int("x"))
        assert ctx.attempt == 1

    def test_passes_arguments(self):
        ctx = RetryContext(ConstantBackoff(max_retries=0))
        assert ctx.run(lambda a, b=0: a + b, 2, b=3) == 5
