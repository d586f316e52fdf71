"""
Tests for sluice.scheduling.status
====================================

Read-only views: owner status, queue metrics, failure notifications and the
backpressure advisory.
"""

import pytest

from sluice.core.config import QueueConfig, SluiceConfig
from sluice.core.enums import (
    BackpressureLevel,
    CircuitState,
    JobStatus,
    NotificationType,
    Priority,
)
from sluice.core.models import CircuitBreakerSnapshot
from sluice.scheduling.status import QueueStatusService, backpressure_level


@pytest.fixture
def status(store, config, clock):
    return QueueStatusService(store, config, clock=clock)


# =============================================================================
# Test: Owner Status
# =============================================================================
class TestOwnerStatus:
    """owner_status() positions and indicators."""

    async def test_positions_follow_weight(self, status, make_job) -> None:
        """Positions are ranks among all pending jobs, not just the owner's."""
        normal = await make_job("n1")
        await make_job("u1", owner_id="user-2", priority=Priority.URGENT)
        high = await make_job("h1", priority=Priority.HIGH)

        result = await status.owner_status("user-1")
        by_id = {job.job_id: job for job in result.jobs}
        assert result.active == 2
        assert by_id[high.id].queue_position == 2
        assert by_id[high.id].estimated_wait_ms == 60_000
        assert by_id[normal.id].queue_position == 3

    async def test_backoff_lengthens_estimate(self, status, make_job, clock) -> None:
        """A retry scheduled far out reports the time until its wake."""
        job = await make_job(next_attempt_at=clock() + 100_000, processing_attempts=1)
        result = await status.owner_status("user-1")
        entry = result.jobs[0]
        assert entry.job_id == job.id
        assert entry.estimated_wait_ms == 100_000
        assert entry.is_retrying

    async def test_started_and_terminal_jobs(self, status, make_job) -> None:
        """In-flight and finished jobs carry no position."""
        snapshot = CircuitBreakerSnapshot(dependency="analysis_service", state=CircuitState.HALF_OPEN)
        await make_job("running", started=True, circuit_breaker_snapshot=snapshot)
        await make_job("done", status=JobStatus.COMPLETED, fallback_used=True)

        result = await status.owner_status("user-1")
        by_entity = {job.entity_id: job for job in result.jobs}
        assert result.active == 1
        assert by_entity["running"].queue_position is None
        assert by_entity["running"].circuit_state == CircuitState.HALF_OPEN
        assert by_entity["done"].fallback_used
        assert by_entity["done"].wait_ms == 0

    async def test_unknown_owner(self, status) -> None:
        """An owner without jobs gets an empty status."""
        result = await status.owner_status("nobody")
        assert result.active == 0
        assert result.jobs == []


# =============================================================================
# Test: Queue Metrics
# =============================================================================
class TestQueueMetrics:
    """queue_metrics() snapshot."""

    async def test_empty_queue(self, status) -> None:
        """An empty queue is healthy with zeroed counters."""
        metrics = await status.queue_metrics()
        assert metrics.total_processing == 0
        assert metrics.priority_breakdown == {p: 0 for p in Priority}
        assert metrics.health == "healthy"
        assert metrics.avg_processing_time_ms == 30_000

    async def test_counts_and_waits(self, status, make_job, clock) -> None:
        """Pending waits drive the averages; in-flight jobs count for concurrency."""
        await make_job("a")
        clock.advance(60_000)
        await make_job("b", priority=Priority.HIGH)
        await make_job("c", started=True)

        metrics = await status.queue_metrics()
        assert metrics.total_processing == 3
        assert metrics.pending == 2
        assert metrics.in_flight == 1
        assert metrics.utilization == 0.003
        assert metrics.concurrency_utilization == 0.1
        assert metrics.priority_breakdown[Priority.HIGH] == 1
        assert metrics.priority_breakdown[Priority.NORMAL] == 2
        assert metrics.avg_wait_ms == 30_000
        assert metrics.oldest_wait_ms == 60_000
        assert metrics.health == "healthy"

    async def test_health_levels(self, status, make_job, clock) -> None:
        """Waits over 2 minutes warn and over 5 minutes are critical."""
        await make_job()
        clock.advance(120_001)
        assert (await status.queue_metrics()).health == "warning"
        clock.advance(180_000)
        assert (await status.queue_metrics()).health == "critical"

    async def test_near_capacity_warns(self, store, make_job, clock) -> None:
        """Utilization at the near-capacity threshold is a warning."""
        config = SluiceConfig(queue=QueueConfig(max_queue_size=5))
        status = QueueStatusService(store, config, clock=clock)
        for i in range(4):
            await make_job(f"e{i}")
        metrics = await status.queue_metrics()
        assert metrics.near_capacity
        assert metrics.health == "warning"


# =============================================================================
# Test: Failure Notifications
# =============================================================================
class TestFailureNotifications:
    """failure_notifications() event feed."""

    async def test_event_types_newest_first(self, status, make_job, clock) -> None:
        """Dead-letter, failure and requeue events are reported newest first."""
        await make_job("old", status=JobStatus.FAILED, last_error_message="network error")
        clock.advance(400_000)

        failed = await make_job(
            "f1", status=JobStatus.FAILED, failed_at=clock(), last_error_message="network error"
        )
        clock.advance(1_000)
        await make_job("c1", status=JobStatus.FAILED, last_error_message="Cancelled by user")
        dead = await make_job(
            "d1",
            status=JobStatus.FAILED,
            dead_letter=True,
            dead_letter_reason="Maximum retries exhausted (3/3)",
            dead_letter_at=clock(),
            processing_attempts=4,
        )
        clock.advance(1_000)
        retrying = await make_job("r1", processing_attempts=2, last_error_message="timeout")

        notes = await status.failure_notifications("user-1")
        assert [(n.type, n.job_id) for n in notes] == [
            (NotificationType.REQUEUE, retrying.id),
            (NotificationType.DEAD_LETTER, dead.id),
            (NotificationType.FAILURE, failed.id),
        ]
        assert notes[0].message == "Retry 2 scheduled after: timeout"
        assert notes[1].message == "Maximum retries exhausted (3/3)"
        assert notes[1].retry_count == 4

    async def test_explicit_since(self, status, make_job, clock) -> None:
        """An explicit since filters on updated_at."""
        await make_job("f1", status=JobStatus.FAILED, last_error_message="network error")
        assert await status.failure_notifications("user-1", since=clock() + 1) == []
        assert len(await status.failure_notifications("user-1", since=clock())) == 1


# =============================================================================
# Test: Backpressure
# =============================================================================
class TestCheckCapacity:
    """check_capacity() levels, thresholds and retry-after."""

    @pytest.mark.parametrize(
        "pct, level",
        [
            (0.0, BackpressureLevel.NONE),
            (50.0, BackpressureLevel.LIGHT),
            (70.0, BackpressureLevel.MODERATE),
            (85.0, BackpressureLevel.HEAVY),
            (95.0, BackpressureLevel.CRITICAL),
        ],
    )
    def test_levels(self, pct, level) -> None:
        """Level boundaries are inclusive."""
        assert backpressure_level(pct) == level

    async def test_idle_admits_everyone(self, status) -> None:
        """With no load every priority is admitted with no retry-after."""
        check = await status.check_capacity(Priority.NORMAL)
        assert check.admitted
        assert check.level == BackpressureLevel.NONE
        assert check.retry_after_ms == 0

    async def test_moderate_load(self, status, make_job) -> None:
        """At 80% concurrency normal and high wait, urgent passes."""
        for i in range(8):
            await make_job(f"e{i}", started=True)

        normal = await status.check_capacity(Priority.NORMAL)
        assert normal.level == BackpressureLevel.MODERATE
        assert normal.threshold == 65
        assert not normal.admitted
        assert normal.retry_after_ms == 60_000

        assert not (await status.check_capacity(Priority.HIGH)).admitted
        assert (await status.check_capacity(Priority.URGENT)).admitted

    async def test_urgent_ceiling(self, status, make_job) -> None:
        """Urgent is admitted up to 98% even above its threshold."""
        for i in range(9):
            await make_job(f"e{i}", started=True)
        urgent = await status.check_capacity(Priority.URGENT)
        assert urgent.level == BackpressureLevel.HEAVY
        assert urgent.admitted

        await make_job("e9", started=True)
        urgent = await status.check_capacity(Priority.URGENT)
        assert urgent.level == BackpressureLevel.CRITICAL
        assert not urgent.admitted
        assert urgent.retry_after_ms == 240_000

    async def test_threshold_floor(self, status, make_job) -> None:
        """Critical load cuts the normal threshold by 20 points."""
        for i in range(10):
            await make_job(f"e{i}", started=True)
        normal = await status.check_capacity(Priority.NORMAL)
        assert normal.threshold == 55
        assert "Backpressure critical" in normal.reason
