"""
Tests for sluice.resilience.circuit_breaker
=============================================

Drives the breaker state machine with a manual clock:
    CLOSED → OPEN → HALF_OPEN → CLOSED, and HALF_OPEN → OPEN on failure.
"""

import pytest

from sluice.core.config import CircuitBreakerConfig
from sluice.core.enums import CircuitState
from sluice.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry


@pytest.fixture
def breaker_config():
    return CircuitBreakerConfig(
        failure_threshold=3,
        timeout_ms=60_000,
        monitoring_window_ms=300_000,
        half_open_max_attempts=2,
    )


@pytest.fixture
def breaker(breaker_config, clock):
    return CircuitBreaker("analysis_service", breaker_config, clock=clock)


async def trip(breaker: CircuitBreaker) -> None:
    for _ in range(breaker.config.failure_threshold):
        await breaker.record_failure()


# =============================================================================
# Test: CLOSED
# =============================================================================
class TestClosedState:
    """Behaviour while the breaker is closed."""

    async def test_starts_closed_and_allows_calls(self, breaker) -> None:
        """A new breaker lets every call through."""
        assert breaker.state == CircuitState.CLOSED
        assert await breaker.can_execute()

    async def test_opens_at_threshold(self, breaker, clock) -> None:
        """failure_threshold failures in the window open the breaker."""
        await breaker.record_failure()
        await breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED
        await breaker.record_failure()
        assert breaker.state == CircuitState.OPEN
        assert breaker.next_attempt_at == clock() + 60_000

    async def test_failures_outside_window_do_not_count(self, breaker, clock) -> None:
        """Failures older than the monitoring window are pruned."""
        await breaker.record_failure()
        await breaker.record_failure()
        clock.advance(300_001)
        await breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED
        assert breaker.recent_failure_count == 1

    async def test_success_decays_failures(self, breaker) -> None:
        """Each success while closed removes one failure."""
        await breaker.record_failure()
        await breaker.record_failure()
        await breaker.record_success()
        assert breaker.failure_count == 1
        assert breaker.recent_failure_count == 1
        await breaker.record_failure()
        assert breaker.state == CircuitState.CLOSED


# =============================================================================
# Test: OPEN and HALF_OPEN
# =============================================================================
class TestOpenAndHalfOpen:
    """Recovery probing after the timeout."""

    async def test_open_rejects_until_timeout(self, breaker, clock) -> None:
        """OPEN refuses calls until next_attempt_at."""
        await trip(breaker)
        assert not await breaker.can_execute()
        clock.advance(59_999)
        assert not await breaker.can_execute()

    async def test_moves_to_half_open_after_timeout(self, breaker, clock) -> None:
        """The first call after the timeout is allowed as a probe."""
        await trip(breaker)
        clock.advance(60_000)
        assert await breaker.can_execute()
        assert breaker.state == CircuitState.HALF_OPEN

    async def test_half_open_closes_after_successes(self, breaker, clock) -> None:
        """half_open_max_attempts successes close the breaker and reset it."""
        await trip(breaker)
        clock.advance(60_000)
        await breaker.can_execute()
        assert await breaker.record_success() == CircuitState.HALF_OPEN
        assert await breaker.record_success() == CircuitState.CLOSED
        assert breaker.failure_count == 0
        assert breaker.recent_failure_count == 0
        assert breaker.snapshot().last_reset_at == clock()

    async def test_half_open_failure_reopens(self, breaker, clock) -> None:
        """Any failure while probing reopens with a fresh timeout."""
        await trip(breaker)
        clock.advance(60_000)
        await breaker.can_execute()
        assert await breaker.record_failure() == CircuitState.OPEN
        assert breaker.next_attempt_at == clock() + 60_000

    async def test_success_while_open_is_ignored(self, breaker) -> None:
        """Late successes don't move an OPEN breaker."""
        await trip(breaker)
        assert await breaker.record_success() == CircuitState.OPEN

    async def test_force_open_and_close(self, breaker) -> None:
        """Manual overrides bypass the failure history."""
        await breaker.force_open(reason="maintenance")
        assert breaker.state == CircuitState.OPEN
        await breaker.force_close(reason="maintenance over")
        assert breaker.state == CircuitState.CLOSED
        assert await breaker.can_execute()


# =============================================================================
# Test: Health, Snapshot and Persistence
# =============================================================================
class TestHealthAndPersistence:
    """Read-only views and status round-trips."""

    async def test_health_reports_open_breaker(self, breaker, clock) -> None:
        """An OPEN breaker is unhealthy and says when it will probe."""
        await trip(breaker)
        clock.advance(15_000)
        health = breaker.health()
        assert not health.is_healthy
        assert health.time_until_retry_ms == 45_000
        assert health.recommendations

    async def test_health_of_fresh_breaker(self, breaker) -> None:
        """A fresh breaker is healthy with no recommendations."""
        health = breaker.health()
        assert health.is_healthy
        assert health.failure_rate == 0
        assert health.recommendations == []

    async def test_status_round_trip(self, breaker, breaker_config, clock) -> None:
        """from_status(to_status()) reproduces the breaker."""
        await trip(breaker)
        restored = CircuitBreaker.from_status(breaker.to_status(), breaker_config, clock=clock)
        assert restored.state == CircuitState.OPEN
        assert restored.failure_count == 3
        assert restored.next_attempt_at == breaker.next_attempt_at

    async def test_snapshot_is_typed(self, breaker) -> None:
        """snapshot() carries dependency, state and schema version."""
        await breaker.record_failure()
        snapshot = breaker.snapshot()
        assert snapshot.dependency == "analysis_service"
        assert snapshot.state == CircuitState.CLOSED
        assert snapshot.failure_count == 1
        assert snapshot.schema_version == 1


class TestRegistry:
    """CircuitBreakerRegistry creates breakers lazily."""

    def test_get_creates_once(self, clock) -> None:
        """get() returns the same breaker for the same dependency."""
        registry = CircuitBreakerRegistry(clock=clock)
        first = registry.get("a")
        assert registry.get("a") is first
        assert "a" in registry
        assert "b" not in registry
        assert registry.all() == [first]
