"""
Unit tests -- retrying executor.
"""
import pytest

from src.core.errors import UpstreamExecutionError
from src.engine.executor import ResultShape, RetryingExecutor


class FlakyExecutor:
    def __init__(self, failures: int, rows=None):
        self.failures = failures
        self.rows = rows or [{"facet": "c1"}]
        self.calls = 0

    async def execute(self, query, account_id, shape):
        self.calls += 1
        if self.calls <= self.failures:
            raise UpstreamExecutionError(f"timeout #{self.calls}")
        return self.rows


def _retrying(inner, attempts=3):
    return RetryingExecutor(inner, max_attempts=attempts, backoff_seconds=0, backoff_max_seconds=0)


@pytest.mark.asyncio
async def test_success_first_try():
    inner = FlakyExecutor(failures=0)
    rows = await _retrying(inner).execute("SELECT 1", "123", ResultShape.FACETED)
    assert rows == [{"facet": "c1"}]
    assert inner.calls == 1


@pytest.mark.asyncio
async def test_recovers_after_transient_failures():
    inner = FlakyExecutor(failures=2)
    rows = await _retrying(inner).execute("SELECT 1", "123", ResultShape.FACETED)
    assert rows == [{"facet": "c1"}]
    assert inner.calls == 3


@pytest.mark.asyncio
async def test_gives_up_after_max_attempts():
    inner = FlakyExecutor(failures=10)
    with pytest.raises(UpstreamExecutionError) as exc_info:
        await _retrying(inner, attempts=3).execute("SELECT 1", "123", ResultShape.SINGLE)
    assert inner.calls == 3
    assert exc_info.value.attempts == 3
    assert "timeout #3" in str(exc_info.value)


@pytest.mark.asyncio
async def test_other_errors_are_not_retried():
    class Broken:
        calls = 0

        async def execute(self, query, account_id, shape):
            Broken.calls += 1
            raise ValueError("bad payload")

    with pytest.raises(ValueError):
        await _retrying(Broken()).execute("SELECT 1", "123", ResultShape.SINGLE)
    assert Broken.calls == 1


def test_max_attempts_from_settings():
    assert RetryingExecutor(FlakyExecutor(0)).max_attempts >= 1
