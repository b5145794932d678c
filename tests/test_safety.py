"""Tests for safety components."""

import tempfile
import os
import pytest

import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from core.store import StateStore
from safety.circuit_breaker import CircuitBreaker, CircuitState
from safety.rate_limit import ExecutionRateLimiter, RateLimitStatus


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestCircuitBreaker:
    """Test circuit breaker."""

    @pytest.mark.asyncio
    async def test_opens_at_threshold(self):
        """Test breaker opens on the third failure."""
        breaker = CircuitBreaker(failure_threshold=3, window_seconds=3600, clock=FakeClock())

        assert breaker.state == CircuitState.CLOSED
        assert await breaker.record_failure() is False
        assert await breaker.record_failure() is False
        assert breaker.is_open is False

        assert await breaker.record_failure() is True
        assert breaker.is_open
        assert breaker.state == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_trips_only_once(self):
        """Test further failures while open do not report a new trip."""
        breaker = CircuitBreaker(failure_threshold=1, clock=FakeClock())

        assert await breaker.record_failure() is True
        assert await breaker.record_failure() is False
        assert breaker.is_open

    @pytest.mark.asyncio
    async def test_old_failures_pruned(self):
        """Test failures outside the window do not count."""
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=3, window_seconds=3600, clock=clock)

        await breaker.record_failure()
        await breaker.record_failure()
        clock.advance(3601)

        assert await breaker.record_failure() is False
        assert breaker.failure_count == 1
        assert breaker.state == CircuitState.CLOSED

    @pytest.mark.asyncio
    async def test_stays_open_without_reset(self):
        """Test there is no automatic recovery."""
        clock = FakeClock()
        breaker = CircuitBreaker(failure_threshold=2, window_seconds=60, clock=clock)
        await breaker.record_failure()
        await breaker.record_failure()

        clock.advance(86400)
        assert breaker.is_open

    @pytest.mark.asyncio
    async def test_manual_reset(self):
        """Test reset closes the breaker and clears failures."""
        breaker = CircuitBreaker(failure_threshold=2, clock=FakeClock())
        await breaker.record_failure()
        await breaker.record_failure()

        assert await breaker.reset() is True
        assert breaker.state == CircuitState.CLOSED
        assert breaker.failure_count == 0
        assert await breaker.reset() is False

    @pytest.mark.asyncio
    async def test_status_snapshot(self):
        clock = FakeClock(500.0)
        breaker = CircuitBreaker(failure_threshold=1, window_seconds=60, clock=clock)
        await breaker.record_failure()

        status = breaker.status()
        assert status["state"] == "open"
        assert status["recent_failures"] == 1
        assert status["opened_at"] == 500.0


class TestRateLimitStatus:
    """Test usage arithmetic."""

    def test_remaining_and_exhausted(self):
        status = RateLimitStatus(hourly_count=7, daily_count=49, hourly_limit=10, daily_limit=50)
        assert status.hourly_remaining == 3
        assert status.daily_remaining == 1
        assert status.exhausted is False

        status = RateLimitStatus(hourly_count=12, daily_count=12, hourly_limit=10, daily_limit=50)
        assert status.hourly_remaining == 0
        assert status.exhausted is True


class TestExecutionRateLimiter:
    """Test rate limiting against the audit log."""

    @pytest.fixture
    async def store(self):
        """Create a temporary store with one action."""
        with tempfile.TemporaryDirectory() as tmpdir:
            store = StateStore(os.path.join(tmpdir, "test_engine.db"))
            await store.initialize()
            yield store
            await store.close()

    @pytest.mark.asyncio
    async def test_counts_auto_executions_only(self, store):
        """Test manual and approved executions are not capped."""
        clock = FakeClock()
        opp = await store.create_opportunity("Opp", "SEO", 0.9, 5.0)
        action = await store.create_action(opp.id, "X")

        await store.create_execution_log(action.id, "auto", {}, True, None, {}, 1, executed_at=clock.now - 60)
        await store.create_execution_log(action.id, "auto", {}, False, "boom", None, 1, executed_at=clock.now - 120)
        await store.create_execution_log(action.id, "manual", {}, True, None, {}, 1, executed_at=clock.now - 60)
        await store.create_execution_log(action.id, "approved", {}, True, None, {}, 1, executed_at=clock.now - 60)
        await store.create_execution_log(action.id, "auto", {}, True, None, {}, 1, executed_at=clock.now - 7200)

        limiter = ExecutionRateLimiter(store, max_per_hour=2, max_per_day=50, clock=clock)
        status = await limiter.check()

        assert status.hourly_count == 2
        assert status.daily_count == 3
        assert status.exhausted is True
        assert status.daily_remaining == 47

    @pytest.mark.asyncio
    async def test_window_slides(self, store):
        """Test old executions drop out of the hourly count."""
        clock = FakeClock()
        opp = await store.create_opportunity("Opp", "SEO", 0.9, 5.0)
        action = await store.create_action(opp.id, "X")
        await store.create_execution_log(action.id, "auto", {}, True, None, {}, 1, executed_at=clock.now)

        limiter = ExecutionRateLimiter(store, max_per_hour=1, max_per_day=10, clock=clock)
        assert (await limiter.check()).exhausted is True

        clock.advance(3601)
        status = await limiter.check()
        assert status.hourly_count == 0
        assert status.daily_count == 1
        assert status.exhausted is False
