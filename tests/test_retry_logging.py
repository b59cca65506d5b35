"""Tests for retry helpers and structured logging."""

import json
import logging

import pytest

from inboxpilot.observability import JsonFormatter
from inboxpilot.retry import RetryConfig, backoff_seconds, exponential_backoff, with_retry


class TestWithRetry:
    def test_retries_then_succeeds(self):
        calls = []

        @with_retry(RetryConfig(max_attempts=3, base_delay=0, retryable_exceptions=(ConnectionError,)))
        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise ConnectionError("reset")
            return "ok"

        assert flaky() == "ok"
        assert len(calls) == 3

    def test_non_retryable_raises_immediately(self):
        calls = []

        @with_retry(RetryConfig(max_attempts=3, base_delay=0, retryable_exceptions=(ConnectionError,)))
        def broken():
            calls.append(1)
            raise KeyError("missing")

        with pytest.raises(KeyError):
            broken()
        assert len(calls) == 1

    def test_last_error_raised_when_exhausted(self):
        @with_retry(RetryConfig(max_attempts=2, base_delay=0, retryable_exceptions=(ConnectionError,)))
        def down():
            raise ConnectionError("down")

        with pytest.raises(ConnectionError, match="down"):
            down()


def test_exponential_backoff_curve_and_schedule():
    curve = RetryConfig(base_delay=1.0, max_delay=5.0, exponential_base=2.0)
    assert [exponential_backoff(n, curve) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]

    schedule = RetryConfig(delays=[1.0, 3.0, 10.0])
    assert [exponential_backoff(n, schedule) for n in (1, 2, 3, 4)] == [1.0, 3.0, 10.0, 10.0]


@pytest.mark.parametrize("attempt,low,high", [(1, 5, 8), (2, 10, 13), (3, 20, 23), (10, 300, 300)])
def test_backoff_seconds_bounds(attempt, low, high):
    for _ in range(20):
        assert low <= backoff_seconds(attempt) <= high


class TestJsonFormatter:
    def _record(self, level=logging.INFO, **extra):
        record = logging.LogRecord("inboxpilot.test", level, __file__, 10, "job %s moved", ("j1",), None)
        for key, value in extra.items():
            setattr(record, key, value)
        return record

    def test_extras_become_top_level_keys(self):
        entry = json.loads(JsonFormatter().format(self._record(job_id="j1", workspace_id="ws1")))
        assert entry["message"] == "job j1 moved"
        assert entry["level"] == "INFO"
        assert entry["service"] == "inboxpilot"
        assert entry["job_id"] == "j1"
        assert entry["workspace_id"] == "ws1"
        assert "source" not in entry

    def test_warnings_include_source(self):
        entry = json.loads(JsonFormatter(service_name="worker").format(self._record(level=logging.WARNING)))
        assert entry["service"] == "worker"
        assert entry["source"]["line"] == 10

    def test_unserialisable_extra_is_stringified(self):
        entry = json.loads(JsonFormatter().format(self._record(payload={1, 2})))
        assert isinstance(entry["payload"], str)
