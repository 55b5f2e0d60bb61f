#!/usr/bin/env python3
"""
Error Handling Tests
Error taxonomy, bounded retries and the central error handler
"""

import pytest

from rollout_orchestrator.utils.error_handling import (
    ConfigurationError, DownloadError, ErrorHandler, ErrorKind, QuantizationError, QuotaExceededError,
    RetryPolicy, RolloutCancelledError, RouteError, TrafficStateUnknownError, TransientInfraError,
    call_with_retry, retry_with_backoff
)


class Flaky:
    __name__ = "flaky"

    def __init__(self, failures, error=TransientInfraError):
        self.failures = failures
        self.error = error
        self.calls = 0

    async def __call__(self, value):
        self.calls += 1
        if self.calls <= self.failures:
            raise self.error(f"failure {self.calls}")
        return value


class TestTaxonomy:
    @pytest.mark.parametrize("error,retryable", [
        (DownloadError("reset"), True),
        (RouteError("rejected"), True),
        (TrafficStateUnknownError("unconfirmed"), True),
        (QuantizationError("unsupported"), False),
        (QuotaExceededError("quota"), False),
        (ConfigurationError("bad"), False),
        (RolloutCancelledError("aborted"), False),
    ])
    def test_only_transient_errors_are_retryable(self, error, retryable):
        assert error.retryable is retryable

    def test_kinds(self):
        assert QuotaExceededError("quota").kind is ErrorKind.RESOURCE_EXHAUSTION
        assert RolloutCancelledError("aborted").kind is ErrorKind.CANCELLED
        assert DownloadError("reset").error_id != DownloadError("reset").error_id


class TestRetry:
    """Bounded exponential backoff"""

    def test_delay_schedule(self):
        policy = RetryPolicy(max_attempts=5, base_delay=1.0, max_delay=5.0)

        assert [policy.delay_for(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 5.0]

    async def test_transient_errors_retried(self):
        func = Flaky(failures=2)
        retries = []

        async def on_retry(attempt, error, delay):
            retries.append((attempt, str(error)))

        result = await call_with_retry(
            func, "ok", policy=RetryPolicy(max_attempts=3, base_delay=0.0), on_retry=on_retry
        )

        assert result == "ok"
        assert func.calls == 3
        assert retries == [(1, "failure 1"), (2, "failure 2")]

    async def test_attempts_are_bounded(self):
        func = Flaky(failures=10)

        with pytest.raises(TransientInfraError):
            await call_with_retry(func, "ok", policy=RetryPolicy(max_attempts=3, base_delay=0.0))
        assert func.calls == 3

    async def test_non_transient_errors_not_retried(self):
        func = Flaky(failures=1, error=ConfigurationError)

        with pytest.raises(ConfigurationError):
            await call_with_retry(func, "ok", policy=RetryPolicy(max_attempts=3, base_delay=0.0))
        assert func.calls == 1

    async def test_decorator(self):
        calls = []

        @retry_with_backoff(max_attempts=2, base_delay=0.0)
        async def fetch():
            calls.append(1)
            if len(calls) == 1:
                raise DownloadError("connection reset")
            return "done"

        assert await fetch() == "done"
        assert len(calls) == 2


class TestErrorHandler:
    def test_counts_errors_by_kind_and_severity(self):
        handler = ErrorHandler()

        handler.handle_error(QuotaExceededError("quota"), reraise=False)
        handler.handle_error(QuotaExceededError("quota"), reraise=False)
        handler.handle_error(RuntimeError("unexpected"), reraise=False)

        assert handler.error_stats["resource_exhaustion_high"] == 2
        assert handler.error_stats["configuration_high"] == 1

    def test_reraise(self):
        with pytest.raises(ConfigurationError):
            ErrorHandler().handle_error(ConfigurationError("bad"))

    def test_context_fields(self):
        error = RouteError("rejected")

        context = ErrorHandler.build_context(error, service="llm-chat", rollout_id="r-1")

        assert context.error_id == error.error_id
        assert context.to_dict()["kind"] == "transient_infra"
        assert context.to_dict()["service"] == "llm-chat"
