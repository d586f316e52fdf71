"""
sluice.scheduling.status - Read-Only Status API
=================================================

Pull-based views over the queue. Nothing here writes to the store.

    owner_status(owner_id)           per-job position, wait estimate, retry,
                                     circuit and fallback indicators
    queue_metrics()                  utilization, priority breakdown,
                                     average and oldest wait
    failure_notifications(owner_id)  failure / requeue / dead-letter events
                                     since a timestamp
    check_capacity(priority)         backpressure advisory for callers
                                     deciding whether to submit now

Backpressure:

    utilization = max(queue_size / max_queue_size,
                      in_flight / max_concurrent_processing) × 100

    level      utilization   threshold cut   retry-after
    ────────   ───────────   ─────────────   ───────────
    none       < 50          0               0s
    light      >= 50         5               30s
    moderate   >= 70         10              60s
    heavy      >= 85         15              120s
    critical   >= 95         20              240s

    Admission thresholds start at urgent 95, high 85, normal 75, are cut by
    the level's points, and never drop below 50. Urgent work is also
    admitted while utilization stays under 98.
"""

from __future__ import annotations

from typing import Callable, Optional

import structlog
from pydantic import BaseModel, Field

from sluice.core.config import SluiceConfig
from sluice.core.enums import BackpressureLevel, CircuitState, JobStatus, NotificationType, Priority
from sluice.core.models import AnalysisJob, now_ms
from sluice.infrastructure.job_store import JobStore
from sluice.scheduling.batch_selector import compute_weight
from sluice.scheduling.lifecycle import CANCELLED_PREFIX
from sluice.scheduling.processing_stats import ProcessingTimeTracker


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()


# =============================================================================
# Backpressure Tables
# =============================================================================
BACKPRESSURE_LEVELS: tuple[tuple[float, BackpressureLevel], ...] = (
    (95.0, BackpressureLevel.CRITICAL),
    (85.0, BackpressureLevel.HEAVY),
    (70.0, BackpressureLevel.MODERATE),
    (50.0, BackpressureLevel.LIGHT),
)

ADMISSION_THRESHOLDS: dict[Priority, float] = {
    Priority.URGENT: 95.0,
    Priority.HIGH: 85.0,
    Priority.NORMAL: 75.0,
}

THRESHOLD_REDUCTION: dict[BackpressureLevel, float] = {
    BackpressureLevel.NONE: 0.0,
    BackpressureLevel.LIGHT: 5.0,
    BackpressureLevel.MODERATE: 10.0,
    BackpressureLevel.HEAVY: 15.0,
    BackpressureLevel.CRITICAL: 20.0,
}

RETRY_AFTER_MULTIPLIER: dict[BackpressureLevel, int] = {
    BackpressureLevel.NONE: 0,
    BackpressureLevel.LIGHT: 1,
    BackpressureLevel.MODERATE: 2,
    BackpressureLevel.HEAVY: 4,
    BackpressureLevel.CRITICAL: 8,
}

MIN_ADMISSION_THRESHOLD = 50.0
URGENT_CEILING = 98.0
RETRY_AFTER_UNIT_MS = 30_000


def backpressure_level(utilization_pct: float) -> BackpressureLevel:
    for threshold, level in BACKPRESSURE_LEVELS:
        if utilization_pct >= threshold:
            return level
    return BackpressureLevel.NONE


# =============================================================================
# Models
# =============================================================================
class OwnerJobStatus(BaseModel):
    """One job as its owner sees it."""

    job_id: str
    entity_id: str
    status: JobStatus
    priority: Priority
    queue_position: Optional[int] = Field(
        default=None,
        description="1-based rank among pending jobs; None once started or terminal",
    )
    estimated_wait_ms: Optional[int] = None
    wait_ms: int = 0
    processing_attempts: int = 0
    is_retrying: bool = False
    circuit_state: Optional[CircuitState] = None
    fallback_used: bool = False
    dead_letter: bool = False
    last_error_message: Optional[str] = None


class OwnerStatus(BaseModel):
    owner_id: str
    active: int = 0
    jobs: list[OwnerJobStatus] = Field(default_factory=list)


class QueueMetrics(BaseModel):
    """Queue-wide snapshot."""

    total_processing: int = 0
    pending: int = 0
    in_flight: int = 0
    max_queue_size: int
    max_concurrent_processing: int
    utilization: float = Field(default=0.0, description="Processing jobs / max_queue_size")
    concurrency_utilization: float = 0.0
    near_capacity: bool = False
    priority_breakdown: dict[Priority, int] = Field(default_factory=dict)
    avg_wait_ms: float = 0.0
    oldest_wait_ms: int = 0
    avg_processing_time_ms: float = 0.0
    health: str = "healthy"


class Notification(BaseModel):
    type: NotificationType
    job_id: str
    entity_id: str
    message: str
    timestamp: int
    retry_count: int = 0
    error_type: Optional[str] = None


class CapacityCheck(BaseModel):
    """Backpressure advisory for one priority."""

    priority: Priority
    level: BackpressureLevel
    utilization: float = Field(description="Percentage, 0-100")
    threshold: float
    admitted: bool
    retry_after_ms: int = 0
    reason: str


# =============================================================================
# QueueStatusService
# =============================================================================
class QueueStatusService:
    """Read-only queries for owners, dashboards and callers.

    Example:
        >>> status = QueueStatusService(store, config)
        >>> metrics = await status.queue_metrics()
        >>> metrics.priority_breakdown[Priority.URGENT]
        0
    """

    def __init__(
        self,
        store: JobStore,
        config: Optional[SluiceConfig] = None,
        tracker: Optional[ProcessingTimeTracker] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self.config = config or SluiceConfig()
        self._tracker = tracker or ProcessingTimeTracker(
            default_ms=self.config.queue.estimated_processing_time_ms,
            window=self.config.queue.processing_time_window,
        )
        self._clock = clock
        self._logger = logger.bind(component="queue_status")

    async def _ranked_pending(self, now: int) -> list[AnalysisJob]:
        jobs = await self._store.list_by_status(JobStatus.PROCESSING)
        pending = [job for job in jobs if job.is_pending]
        criteria = self.config.priorities
        return sorted(pending, key=lambda job: compute_weight(job, now, criteria), reverse=True)

    async def owner_status(self, owner_id: str) -> OwnerStatus:
        now = self._clock()
        positions = {job.id: index + 1 for index, job in enumerate(await self._ranked_pending(now))}
        result = OwnerStatus(owner_id=owner_id)

        for job in await self._store.list_by_owner(owner_id):
            position = positions.get(job.id)
            if job.status == JobStatus.PROCESSING:
                result.active += 1
            estimated = None
            if position is not None:
                estimated = self._tracker.estimate_wait_ms(position)
                if job.next_attempt_at is not None:
                    estimated = max(estimated, job.next_attempt_at - now)
            result.jobs.append(
                OwnerJobStatus(
                    job_id=job.id,
                    entity_id=job.entity_id,
                    status=job.status,
                    priority=job.priority,
                    queue_position=position,
                    estimated_wait_ms=estimated,
                    wait_ms=job.wait_time_ms(now) if job.status == JobStatus.PROCESSING else 0,
                    processing_attempts=job.processing_attempts,
                    is_retrying=job.status == JobStatus.PROCESSING and job.processing_attempts > 0,
                    circuit_state=(
                        job.circuit_breaker_snapshot.state if job.circuit_breaker_snapshot else None
                    ),
                    fallback_used=job.fallback_used,
                    dead_letter=job.dead_letter,
                    last_error_message=job.last_error_message,
                )
            )
        return result

    async def queue_metrics(self) -> QueueMetrics:
        now = self._clock()
        queue = self.config.queue
        jobs = await self._store.list_by_status(JobStatus.PROCESSING)
        pending = [job for job in jobs if job.is_pending]
        in_flight = len(jobs) - len(pending)

        waits = [job.wait_time_ms(now) for job in pending]
        breakdown = {priority: 0 for priority in Priority}
        for job in jobs:
            breakdown[job.priority] += 1

        utilization = len(jobs) / queue.max_queue_size
        oldest = max(waits) if waits else 0
        if oldest > queue.critical_wait_threshold_ms:
            health = "critical"
        elif oldest > queue.high_wait_threshold_ms or utilization >= queue.near_capacity_threshold:
            health = "warning"
        else:
            health = "healthy"

        return QueueMetrics(
            total_processing=len(jobs),
            pending=len(pending),
            in_flight=in_flight,
            max_queue_size=queue.max_queue_size,
            max_concurrent_processing=queue.max_concurrent_processing,
            utilization=round(utilization, 4),
            concurrency_utilization=round(in_flight / queue.max_concurrent_processing, 4),
            near_capacity=utilization >= queue.near_capacity_threshold,
            priority_breakdown=breakdown,
            avg_wait_ms=sum(waits) / len(waits) if waits else 0.0,
            oldest_wait_ms=oldest,
            avg_processing_time_ms=self._tracker.average_ms,
            health=health,
        )

    async def failure_notifications(
        self, owner_id: str, since: Optional[int] = None
    ) -> list[Notification]:
        """Failure, requeue and dead-letter events for an owner since a time.

        Cancellations are initiated by the owner and are not reported.
        """
        now = self._clock()
        since = since if since is not None else now - self.config.queue.notification_lookback_ms
        notifications: list[Notification] = []

        for job in await self._store.list_by_owner(owner_id):
            if job.updated_at < since:
                continue
            error_type = job.last_error_type.value if job.last_error_type else None
            if job.status == JobStatus.FAILED:
                if job.dead_letter:
                    notifications.append(
                        Notification(
                            type=NotificationType.DEAD_LETTER,
                            job_id=job.id,
                            entity_id=job.entity_id,
                            message=job.dead_letter_reason or "Analysis could not be completed",
                            timestamp=job.dead_letter_at or job.updated_at,
                            retry_count=job.processing_attempts,
                            error_type=error_type,
                        )
                    )
                elif not (job.last_error_message or "").startswith(CANCELLED_PREFIX):
                    notifications.append(
                        Notification(
                            type=NotificationType.FAILURE,
                            job_id=job.id,
                            entity_id=job.entity_id,
                            message=job.last_error_message or "Analysis failed",
                            timestamp=job.failed_at or job.updated_at,
                            retry_count=job.processing_attempts,
                            error_type=error_type,
                        )
                    )
            elif job.status == JobStatus.PROCESSING and job.processing_attempts > 0:
                notifications.append(
                    Notification(
                        type=NotificationType.REQUEUE,
                        job_id=job.id,
                        entity_id=job.entity_id,
                        message=f"Retry {job.processing_attempts} scheduled after: "
                        f"{job.last_error_message or 'an error'}",
                        timestamp=job.queued_at,
                        retry_count=job.processing_attempts,
                        error_type=error_type,
                    )
                )

        return sorted(notifications, key=lambda n: n.timestamp, reverse=True)

    async def check_capacity(self, priority: Priority = Priority.NORMAL) -> CapacityCheck:
        priority = Priority(priority)
        queue = self.config.queue
        jobs = await self._store.list_by_status(JobStatus.PROCESSING)
        in_flight = sum(1 for job in jobs if job.is_in_flight)
        utilization = (
            max(len(jobs) / queue.max_queue_size, in_flight / queue.max_concurrent_processing) * 100
        )
        level = backpressure_level(utilization)
        threshold = max(
            MIN_ADMISSION_THRESHOLD,
            ADMISSION_THRESHOLDS[priority] - THRESHOLD_REDUCTION[level],
        )

        admitted = utilization < threshold
        if not admitted and priority == Priority.URGENT and utilization < URGENT_CEILING:
            admitted = True

        if admitted:
            reason = f"Capacity available for {priority.value} priority"
            retry_after = 0
        else:
            reason = (
                f"Backpressure {level.value}: utilization {utilization:.1f}% "
                f"exceeds {threshold:.0f}% for {priority.value} priority"
            )
            retry_after = RETRY_AFTER_UNIT_MS * RETRY_AFTER_MULTIPLIER[level]
            self._logger.info(
                "backpressure_applied",
                priority=priority.value,
                level=level.value,
                utilization=round(utilization, 2),
            )

        return CapacityCheck(
            priority=priority,
            level=level,
            utilization=round(utilization, 2),
            threshold=threshold,
            admitted=admitted,
            retry_after_ms=retry_after,
            reason=reason,
        )
