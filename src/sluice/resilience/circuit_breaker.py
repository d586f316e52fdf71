"""
sluice.resilience.circuit_breaker - Per-Dependency Circuit Breaker
====================================================================

The in-process state machine guarding one downstream dependency. A breaker
prevents the scheduler from hammering a dependency that is consistently
failing, and gives it time to recover.

State Machine:
    ┌────────┐  failure_threshold failures   ┌────────┐
    │ CLOSED │ ───within monitoring window──→│  OPEN  │
    │        │                               │        │
    └────────┘                               └────┬───┘
         ^                                        │ now >= next_attempt_at
         │ half_open_max_attempts                 │ (checked lazily)
         │ consecutive successes                  ▼
    ┌────┴────┐ ────────(any failure)──────→  OPEN
    │HALF_OPEN│
    └─────────┘

Failure Window:
    Failure timestamps are kept in a sliding window of monitoring_window_ms.
    Timestamps outside the window are pruned before every decision. While
    CLOSED, each success decays the window by one failure, so isolated
    failures spread out over time never trip the breaker.

Persistence:
    The breaker converts to and from CircuitBreakerStatus so the
    CircuitBreakerService can write every transition through to the store and
    rehydrate breakers on startup. See breaker_service.py.

Usage:
    >>> breaker = CircuitBreaker("analysis_service")
    >>> if await breaker.can_execute():
    ...     try:
    ...         await call_dependency()
    ...         await breaker.record_success()
    ...     except DependencyError:
    ...         await breaker.record_failure()
"""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Callable, Optional

import structlog
from pydantic import BaseModel, Field

from sluice.core.config import CircuitBreakerConfig
from sluice.core.enums import CircuitState
from sluice.core.models import CircuitBreakerSnapshot, CircuitBreakerStatus, now_ms


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()


# =============================================================================
# In-Memory Health Snapshot
# =============================================================================
class BreakerHealth(BaseModel):
    """Point-in-time health of a single in-process breaker."""

    dependency: str
    state: CircuitState
    is_healthy: bool
    failure_rate: float = Field(description="Recent failures / failure_threshold")
    recent_failures: int
    time_until_retry_ms: Optional[int] = None
    recommendations: list[str] = Field(default_factory=list)


# =============================================================================
# CircuitBreaker
# =============================================================================
class CircuitBreaker:
    """Sliding-window circuit breaker for one dependency.

    Attributes:
        dependency: Name of the guarded dependency.
        config: Thresholds and timeouts (see CircuitBreakerConfig).

    Example:
        >>> breaker = CircuitBreaker("analysis_service", CircuitBreakerConfig(failure_threshold=3))
        >>> for _ in range(3):
        ...     await breaker.record_failure()
        >>> breaker.state
        <CircuitState.OPEN: 'open'>
    """

    def __init__(
        self,
        dependency: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.dependency = dependency
        self.config = config or CircuitBreakerConfig()
        self._clock = clock

        self._state: CircuitState = CircuitState.CLOSED
        self._failures: deque[int] = deque()
        self._failure_count: int = 0
        self._half_open_successes: int = 0
        self._last_failure_at: Optional[int] = None
        self._next_attempt_at: Optional[int] = None
        self._last_reset_at: Optional[int] = None

        self._lock: asyncio.Lock = asyncio.Lock()
        self._logger = logger.bind(component="circuit_breaker", dependency=dependency)

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def state(self) -> CircuitState:
        """Current state. OPEN → HALF_OPEN happens lazily in can_execute()."""
        return self._state

    @property
    def failure_count(self) -> int:
        return self._failure_count

    @property
    def next_attempt_at(self) -> Optional[int]:
        return self._next_attempt_at

    @property
    def recent_failure_count(self) -> int:
        """Failures inside the monitoring window as of now."""
        cutoff = self._clock() - self.config.monitoring_window_ms
        return sum(1 for ts in self._failures if ts > cutoff)

    # =========================================================================
    # Public Methods
    # =========================================================================

    async def can_execute(self) -> bool:
        """Check whether a call to the dependency may proceed.

        Decision Logic:
            - CLOSED:    always True
            - OPEN:      False until now >= next_attempt_at, then the breaker
                         moves to HALF_OPEN and the call is allowed as a probe
            - HALF_OPEN: True while fewer than half_open_max_attempts
                         successful probes have been recorded
        """
        async with self._lock:
            now = self._clock()
            self._prune(now)

            if self._state == CircuitState.CLOSED:
                return True

            if self._state == CircuitState.OPEN:
                if self._next_attempt_at is not None and now >= self._next_attempt_at:
                    self._state = CircuitState.HALF_OPEN
                    self._half_open_successes = 0
                    self._logger.info(
                        "circuit_breaker_half_open",
                        next_attempt_at=self._next_attempt_at,
                    )
                    return True
                return False

            return self._half_open_successes < self.config.half_open_max_attempts

    async def record_success(self) -> CircuitState:
        """Record a successful call and return the resulting state.

        Effects:
            - HALF_OPEN: count the probe; at half_open_max_attempts the
                         breaker closes and the failure counter resets
            - CLOSED:    decay the failure counter (and window) by one
            - OPEN:      no effect
        """
        async with self._lock:
            now = self._clock()
            self._prune(now)

            if self._state == CircuitState.HALF_OPEN:
                self._half_open_successes += 1
                self._logger.info(
                    "circuit_breaker_half_open_success",
                    success_count=self._half_open_successes,
                    required=self.config.half_open_max_attempts,
                )
                if self._half_open_successes >= self.config.half_open_max_attempts:
                    self._close(now, reason="recovery_confirmed")

            elif self._state == CircuitState.CLOSED and self._failure_count > 0:
                self._failure_count -= 1
                if self._failures:
                    self._failures.popleft()

            return self._state

    async def record_failure(self) -> CircuitState:
        """Record a failed call and return the resulting state.

        Effects:
            - CLOSED:    add to the window; open at failure_threshold
            - HALF_OPEN: reopen immediately
            - OPEN:      only the failure history is updated
        """
        async with self._lock:
            now = self._clock()
            self._failures.append(now)
            self._last_failure_at = now
            self._prune(now)

            if self._state == CircuitState.HALF_OPEN:
                self._failure_count += 1
                self._open(now, reason="failure_during_half_open")

            elif self._state == CircuitState.CLOSED:
                self._failure_count += 1
                if len(self._failures) >= self.config.failure_threshold:
                    self._open(now, reason="failure_threshold_reached")

            return self._state

    async def force_open(self, reason: str = "forced") -> None:
        """Open the breaker regardless of its failure history."""
        async with self._lock:
            self._open(self._clock(), reason=reason)

    async def force_close(self, reason: str = "forced") -> None:
        """Close the breaker and clear its failure history."""
        async with self._lock:
            self._close(self._clock(), reason=reason)

    def snapshot(self) -> CircuitBreakerSnapshot:
        """Typed snapshot suitable for embedding in a job record."""
        return CircuitBreakerSnapshot(
            dependency=self.dependency,
            state=self._state,
            failure_count=self._failure_count,
            last_reset_at=self._last_reset_at,
            captured_at=self._clock(),
        )

    def health(self) -> BreakerHealth:
        """In-process health view with operator recommendations."""
        now = self._clock()
        recent = self.recent_failure_count
        failure_rate = recent / self.config.failure_threshold
        time_until_retry = None
        if self._state == CircuitState.OPEN and self._next_attempt_at is not None:
            time_until_retry = max(0, self._next_attempt_at - now)

        recommendations: list[str] = []
        if self._state == CircuitState.OPEN:
            recommendations.append("Dependency is failing; route work to fallback processing")
            if time_until_retry is not None:
                recommendations.append(f"Next probe allowed in {time_until_retry // 1000}s")
        elif self._state == CircuitState.HALF_OPEN:
            recommendations.append("Dependency is being probed; keep traffic low until it closes")
        elif failure_rate >= 0.8:
            recommendations.append("Failure rate is close to the threshold; watch for an outage")
        elif failure_rate >= 0.5:
            recommendations.append("Elevated failure rate; review recent dependency errors")

        return BreakerHealth(
            dependency=self.dependency,
            state=self._state,
            is_healthy=self._state == CircuitState.CLOSED and failure_rate < 0.5,
            failure_rate=round(failure_rate, 4),
            recent_failures=recent,
            time_until_retry_ms=time_until_retry,
            recommendations=recommendations,
        )

    # =========================================================================
    # Persistence
    # =========================================================================

    def to_status(self) -> CircuitBreakerStatus:
        return CircuitBreakerStatus(
            dependency=self.dependency,
            state=self._state,
            failure_count=self._failure_count,
            half_open_successes=self._half_open_successes,
            recent_failures=list(self._failures),
            last_failure_at=self._last_failure_at,
            next_attempt_at=self._next_attempt_at if self._state == CircuitState.OPEN else None,
            last_reset_at=self._last_reset_at,
            updated_at=self._clock(),
        )

    @classmethod
    def from_status(
        cls,
        status: CircuitBreakerStatus,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], int] = now_ms,
    ) -> CircuitBreaker:
        """Rebuild a breaker from its persisted status."""
        breaker = cls(status.dependency, config=config, clock=clock)
        breaker._state = status.state
        breaker._failure_count = status.failure_count
        breaker._half_open_successes = status.half_open_successes
        breaker._failures = deque(sorted(status.recent_failures))
        breaker._last_failure_at = status.last_failure_at
        breaker._next_attempt_at = status.next_attempt_at
        breaker._last_reset_at = status.last_reset_at
        if breaker._state == CircuitState.OPEN and breaker._next_attempt_at is None:
            breaker._next_attempt_at = clock() + breaker.config.timeout_ms
        return breaker

    # =========================================================================
    # Internals (caller holds _lock)
    # =========================================================================

    def _prune(self, now: int) -> None:
        cutoff = now - self.config.monitoring_window_ms
        while self._failures and self._failures[0] <= cutoff:
            self._failures.popleft()

    def _open(self, now: int, reason: str) -> None:
        was = self._state
        self._state = CircuitState.OPEN
        self._half_open_successes = 0
        self._next_attempt_at = now + self.config.timeout_ms
        event = "circuit_breaker_reopened" if was == CircuitState.HALF_OPEN else "circuit_breaker_opened"
        self._logger.warning(
            event,
            reason=reason,
            failure_count=self._failure_count,
            window_failures=len(self._failures),
            next_attempt_at=self._next_attempt_at,
        )

    def _close(self, now: int, reason: str) -> None:
        self._state = CircuitState.CLOSED
        self._failure_count = 0
        self._half_open_successes = 0
        self._failures.clear()
        self._next_attempt_at = None
        self._last_reset_at = now
        self._logger.info("circuit_breaker_closed", reason=reason)


# =============================================================================
# CircuitBreakerRegistry
# =============================================================================
# Breakers are created lazily on first access, one per dependency name.
# =============================================================================
class CircuitBreakerRegistry:
    """Lazily-populated map of dependency name → CircuitBreaker."""

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._breakers: dict[str, CircuitBreaker] = {}

    def get(self, dependency: str) -> CircuitBreaker:
        breaker = self._breakers.get(dependency)
        if breaker is None:
            breaker = CircuitBreaker(dependency, config=self.config, clock=self._clock)
            self._breakers[dependency] = breaker
        return breaker

    def restore(self, status: CircuitBreakerStatus) -> CircuitBreaker:
        breaker = CircuitBreaker.from_status(status, config=self.config, clock=self._clock)
        self._breakers[status.dependency] = breaker
        return breaker

    def __contains__(self, dependency: str) -> bool:
        return dependency in self._breakers

    def all(self) -> list[CircuitBreaker]:
        return list(self._breakers.values())
