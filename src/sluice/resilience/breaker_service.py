"""
sluice.resilience.breaker_service - Persisted Breakers and Health Alerts
==========================================================================

CircuitBreakerService is the single authority for breaker state. It owns the
in-process CircuitBreaker objects (via a registry), writes every transition
through to the store as a CircuitBreakerStatus, and keeps hourly
ErrorMetricsBucket counters that feed the health report.

Architecture:

    worker result ──→ record_success / record_failure
                             │
               ┌─────────────┴──────────────┐
               ▼                            ▼
      CircuitBreaker (registry)      ErrorMetricsBucket (current hour)
               │ write-through
               ▼
      CircuitBreakerStatus (store) ──→ rehydrated by load() on startup

Health Report:
    Buckets from the last 48 hours are split into the current 24h and the
    prior 24h. From them the service derives failure rate, average response
    time, trend percentages and leveled alerts:

        state OPEN                         → critical
        state HALF_OPEN                    → warning
        failure rate > 60%                 → critical
        failure rate > 30%                 → warning
        failure-rate trend > +50%          → warning
        response-time trend > +100%        → warning
        failure within the last minute     → info
        avg response time > 10s            → critical
        avg response time > 5s             → warning
        CLOSED, prior > 20%, current < 10% → info ("recovering")

    A dependency is unhealthy while OPEN or when its failure rate exceeds 60%.
"""

from __future__ import annotations

from typing import Callable, Optional

import structlog
from pydantic import BaseModel, Field

from sluice.core.config import CircuitBreakerConfig
from sluice.core.enums import AlertLevel, CircuitState
from sluice.core.models import (
    HOUR_MS,
    CircuitBreakerSnapshot,
    CircuitBreakerStatus,
    ErrorMetricsBucket,
    hour_window,
    now_ms,
)
from sluice.infrastructure.job_store import JobStore
from sluice.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from sluice.resilience.classification import ErrorLike, should_trip_circuit


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()

DAY_HOURS = 24
RECENT_FAILURE_MS = 60_000


# =============================================================================
# Report Models
# =============================================================================
class HealthAlert(BaseModel):
    """One leveled alert raised by the health report."""

    dependency: str
    level: AlertLevel
    message: str
    metric: str = Field(description="Metric that raised the alert")
    value: Optional[float] = None
    timestamp: int = Field(default_factory=now_ms)


class HourlyFailureRate(BaseModel):
    hour_window: int
    failure_rate: float
    total: int


class BreakerHealthReport(BaseModel):
    """Persisted health view of one dependency.

    Rates are percentages (0-100) except success_rate, which is a fraction
    because the retry engine consumes it directly.
    """

    dependency: str
    state: CircuitState
    is_healthy: bool
    failure_count: int
    last_failure_at: Optional[int] = None
    next_attempt_at: Optional[int] = None
    failure_rate: float = 0.0
    previous_failure_rate: float = 0.0
    failure_rate_trend: float = 0.0
    avg_response_time_ms: float = 0.0
    response_time_trend: float = 0.0
    total_errors_24h: int = 0
    total_successes_24h: int = 0
    success_rate: Optional[float] = Field(
        default=None,
        description="Successes / total over the current 24h (None without data)",
    )
    historical_failure_rate: list[HourlyFailureRate] = Field(default_factory=list)
    alerts: list[HealthAlert] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class BreakerSummary(BaseModel):
    total: int = 0
    healthy: int = 0
    open: int = 0
    half_open: int = 0
    closed: int = 0
    dependencies: dict[str, CircuitState] = Field(default_factory=dict)


# =============================================================================
# Aggregation Helpers
# =============================================================================
def _failure_rate(buckets: list[ErrorMetricsBucket]) -> float:
    errors = sum(b.error_count for b in buckets)
    total = sum(b.total for b in buckets)
    return (errors / total) * 100 if total else 0.0


def _avg_response_time(buckets: list[ErrorMetricsBucket]) -> float:
    timed = [b.avg_processing_time_ms for b in buckets if b.avg_processing_time_ms is not None]
    return sum(timed) / len(timed) if timed else 0.0


def _trend(current: float, previous: float) -> float:
    if previous <= 0:
        return 0.0
    return ((current - previous) / previous) * 100


def merge_sample(
    bucket: Optional[ErrorMetricsBucket],
    dependency: str,
    window: int,
    success: bool,
    processing_time_ms: Optional[float],
) -> ErrorMetricsBucket:
    """Fold one success/error sample into an hourly bucket."""
    if bucket is None:
        bucket = ErrorMetricsBucket(dependency=dependency, hour_window=window)
    if success:
        bucket.success_count += 1
    else:
        bucket.error_count += 1
    if processing_time_ms is not None:
        previous = bucket.avg_processing_time_ms or 0.0
        bucket.avg_processing_time_ms = (
            previous * bucket.timed_samples + processing_time_ms
        ) / (bucket.timed_samples + 1)
        bucket.timed_samples += 1
    return bucket


# =============================================================================
# CircuitBreakerService
# =============================================================================
class CircuitBreakerService:
    """Store-backed circuit breakers with hourly metrics and health alerts.

    Example:
        >>> service = CircuitBreakerService(store)
        >>> await service.load()
        >>> await service.record_failure("analysis_service", "Network error", 1200)
        >>> report = await service.health_report("analysis_service")
    """

    def __init__(
        self,
        store: JobStore,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._registry = CircuitBreakerRegistry(self.config, clock=clock)
        self._logger = logger.bind(component="circuit_breaker_service")

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def load(self) -> int:
        """Rehydrate breakers from persisted status. Returns how many."""
        statuses = await self._store.list_breaker_statuses()
        for status in statuses:
            self._registry.restore(status)
        if statuses:
            self._logger.info("circuit_breakers_restored", count=len(statuses))
        return len(statuses)

    def breaker(self, dependency: str) -> CircuitBreaker:
        return self._registry.get(dependency)

    # =========================================================================
    # State Checks
    # =========================================================================

    async def can_execute(self, dependency: str) -> bool:
        breaker = self.breaker(dependency)
        before = breaker.state
        allowed = await breaker.can_execute()
        if breaker.state != before:
            await self._persist(breaker)
        return allowed

    async def current_state(self, dependency: str) -> CircuitState:
        """State after applying any due OPEN → HALF_OPEN transition."""
        await self.can_execute(dependency)
        return self.breaker(dependency).state

    async def snapshot(self, dependency: str) -> CircuitBreakerSnapshot:
        await self.current_state(dependency)
        return self.breaker(dependency).snapshot()

    # =========================================================================
    # Recording
    # =========================================================================

    async def record_success(
        self, dependency: str, processing_time_ms: Optional[float] = None
    ) -> CircuitState:
        breaker = self.breaker(dependency)
        state = await breaker.record_success()
        await self._persist(breaker)
        await self._merge_metrics(dependency, success=True, processing_time_ms=processing_time_ms)
        return state

    async def record_failure(
        self,
        dependency: str,
        error: ErrorLike = None,
        processing_time_ms: Optional[float] = None,
    ) -> CircuitState:
        """Record a failed call.

        Client-level errors are counted in the hourly metrics but never fed
        to the breaker.
        """
        breaker = self.breaker(dependency)
        if should_trip_circuit(error):
            state = await breaker.record_failure()
            await self._persist(breaker)
        else:
            state = breaker.state
            self._logger.debug("client_error_not_counted", dependency=dependency, error=str(error))
        await self._merge_metrics(dependency, success=False, processing_time_ms=processing_time_ms)
        return state

    async def force_open(self, dependency: str, reason: str = "admin") -> CircuitBreakerStatus:
        breaker = self.breaker(dependency)
        await breaker.force_open(reason=reason)
        return await self._persist(breaker)

    async def force_close(self, dependency: str, reason: str = "admin") -> CircuitBreakerStatus:
        breaker = self.breaker(dependency)
        await breaker.force_close(reason=reason)
        return await self._persist(breaker)

    async def _persist(self, breaker: CircuitBreaker) -> CircuitBreakerStatus:
        status = breaker.to_status()
        await self._store.save_breaker_status(status)
        return status

    async def _merge_metrics(
        self, dependency: str, success: bool, processing_time_ms: Optional[float]
    ) -> None:
        window = hour_window(self._clock())
        await self._store.merge_metrics_bucket(
            dependency,
            window,
            lambda bucket: merge_sample(bucket, dependency, window, success, processing_time_ms),
        )

    # =========================================================================
    # Reporting
    # =========================================================================

    async def all_statuses(self) -> list[CircuitBreakerStatus]:
        return await self._store.list_breaker_statuses()

    async def health_report(self, dependency: str) -> BreakerHealthReport:
        """Build the 24h/48h health report for one dependency."""
        now = self._clock()
        state = await self.current_state(dependency)
        breaker = self.breaker(dependency)

        current_hour = hour_window(now)
        day_start = hour_window(now - DAY_HOURS * HOUR_MS) + 1
        retention_start = current_hour - self.config.metrics_retention_hours + 1
        buckets = await self._store.list_metrics_buckets(dependency, retention_start)

        current = [b for b in buckets if b.hour_window >= day_start]
        previous = [b for b in buckets if b.hour_window < day_start]

        failure_rate = _failure_rate(current)
        previous_failure_rate = _failure_rate(previous)
        avg_response = _avg_response_time(current)
        previous_response = _avg_response_time(previous)
        total_errors = sum(b.error_count for b in current)
        total_successes = sum(b.success_count for b in current)
        total = total_errors + total_successes

        status = breaker.to_status()
        report = BreakerHealthReport(
            dependency=dependency,
            state=state,
            is_healthy=state != CircuitState.OPEN and failure_rate <= 60,
            failure_count=status.failure_count,
            last_failure_at=status.last_failure_at,
            next_attempt_at=status.next_attempt_at,
            failure_rate=round(failure_rate, 2),
            previous_failure_rate=round(previous_failure_rate, 2),
            failure_rate_trend=round(_trend(failure_rate, previous_failure_rate), 2),
            avg_response_time_ms=round(avg_response, 2),
            response_time_trend=round(_trend(avg_response, previous_response), 2),
            total_errors_24h=total_errors,
            total_successes_24h=total_successes,
            success_rate=(total_successes / total) if total else None,
            historical_failure_rate=[
                HourlyFailureRate(
                    hour_window=b.hour_window,
                    failure_rate=round(_failure_rate([b]), 2),
                    total=b.total,
                )
                for b in current
            ],
            recommendations=breaker.health().recommendations,
        )
        report.alerts = self._alerts_for(report, now)
        return report

    def _alerts_for(self, report: BreakerHealthReport, now: int) -> list[HealthAlert]:
        dep = report.dependency
        alerts: list[HealthAlert] = []

        def add(level: AlertLevel, metric: str, message: str, value: Optional[float] = None) -> None:
            alerts.append(
                HealthAlert(dependency=dep, level=level, metric=metric, message=message, value=value, timestamp=now)
            )

        if report.state == CircuitState.OPEN:
            add(AlertLevel.CRITICAL, "state", f"Circuit breaker for {dep} is OPEN")
        elif report.state == CircuitState.HALF_OPEN:
            add(AlertLevel.WARNING, "state", f"Circuit breaker for {dep} is HALF_OPEN (testing recovery)")

        if report.failure_rate > 60:
            add(AlertLevel.CRITICAL, "failure_rate", f"Failure rate {report.failure_rate:.1f}% exceeds 60%", report.failure_rate)
        elif report.failure_rate > 30:
            add(AlertLevel.WARNING, "failure_rate", f"Failure rate {report.failure_rate:.1f}% exceeds 30%", report.failure_rate)

        if report.failure_rate_trend > 50:
            add(
                AlertLevel.WARNING,
                "failure_rate_trend",
                f"Failure rate up {report.failure_rate_trend:.0f}% versus the previous 24h",
                report.failure_rate_trend,
            )
        if report.response_time_trend > 100:
            add(
                AlertLevel.WARNING,
                "response_time_trend",
                f"Response time up {report.response_time_trend:.0f}% versus the previous 24h",
                report.response_time_trend,
            )

        if report.last_failure_at is not None and now - report.last_failure_at < RECENT_FAILURE_MS:
            add(AlertLevel.INFO, "last_failure", f"{dep} failed within the last minute")

        if report.avg_response_time_ms > 10_000:
            add(AlertLevel.CRITICAL, "avg_response_time", "Average response time exceeds 10s", report.avg_response_time_ms)
        elif report.avg_response_time_ms > 5_000:
            add(AlertLevel.WARNING, "avg_response_time", "Average response time exceeds 5s", report.avg_response_time_ms)

        if (
            report.state == CircuitState.CLOSED
            and report.total_successes_24h > 0
            and report.previous_failure_rate > 20
            and report.failure_rate < 10
        ):
            add(AlertLevel.INFO, "recovery", f"{dep} is recovering", report.failure_rate)

        return alerts

    async def recent_alerts(self, since: Optional[int] = None) -> list[HealthAlert]:
        """Alerts across every known dependency raised at or after `since`.

        Also warns when a closed breaker's failure count is above 80% of the
        threshold.
        """
        now = self._clock()
        since = since if since is not None else now - DAY_HOURS * HOUR_MS
        alerts: list[HealthAlert] = []
        for status in await self.all_statuses():
            if status.updated_at < since:
                continue
            report = await self.health_report(status.dependency)
            alerts.extend(report.alerts)
            if (
                report.state == CircuitState.CLOSED
                and status.failure_count > 0.8 * self.config.failure_threshold
            ):
                alerts.append(
                    HealthAlert(
                        dependency=status.dependency,
                        level=AlertLevel.WARNING,
                        metric="failure_count",
                        message=(
                            f"{status.dependency} has {status.failure_count} failures, "
                            f"near the threshold of {self.config.failure_threshold}"
                        ),
                        value=float(status.failure_count),
                        timestamp=now,
                    )
                )
        return alerts

    async def summary(self) -> BreakerSummary:
        summary = BreakerSummary()
        for status in await self.all_statuses():
            state = await self.current_state(status.dependency)
            summary.total += 1
            summary.dependencies[status.dependency] = state
            if state == CircuitState.OPEN:
                summary.open += 1
            elif state == CircuitState.HALF_OPEN:
                summary.half_open += 1
                summary.healthy += 1
            else:
                summary.closed += 1
                summary.healthy += 1
        return summary
