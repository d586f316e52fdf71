"""
sluice.scheduling.batch_selector - Weighted Dequeue / Batch Selection
=======================================================================

A periodic sweep that ranks pending jobs and hands the best of them to the
deferred executor without exceeding the concurrency limit.

Weight:
    weight = priority_value * 10 + min(wait_minutes, 5)

    Priority dominates. Age adds a bonus capped at five minutes so an old
    normal job still moves ahead of a fresh one at the same priority.

Sweep:
    1. Snapshot PROCESSING jobs. Candidates are pending (not started). A job
       that is waiting out a retry backoff must also be due
       (next_attempt_at <= now). Fresh admissions are eligible at once.
    2. available = max_concurrent_processing - in-flight jobs. Nothing to do
       when it is <= 0.
    3. Take the top min(available, max_batch_size) candidates by weight.
    4. For each one, in its own transaction: re-apply the aging rule, mark
       processing_started_at, then schedule execution after the base delay of
       the final priority.

Per-item failures are caught, logged and counted. They never abort the
rest of the batch.
"""

from __future__ import annotations

from typing import Callable, Optional

import structlog
from pydantic import BaseModel, Field

from sluice.core.config import PriorityCriteriaConfig, SluiceConfig
from sluice.core.enums import JobStatus, Priority
from sluice.core.models import AnalysisJob, now_ms
from sluice.infrastructure.job_store import JobStore
from sluice.integrations.executor import DeferredExecutor
from sluice.scheduling.priority import (
    base_delay_ms,
    max_priority,
    priority_value,
    upgrade_for_age,
)


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()

MAX_AGE_BONUS = 5.0


# =============================================================================
# Models
# =============================================================================
class WeightedJob(BaseModel):
    job_id: str
    entity_id: str
    priority: Priority
    weight: float
    wait_ms: int


class BatchResult(BaseModel):
    """Outcome of one batch sweep."""

    available_capacity: int
    candidates: int = 0
    started: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    skipped: list[str] = Field(default_factory=list)
    upgraded: list[str] = Field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.started)


# =============================================================================
# Pure Ranking
# =============================================================================
def compute_weight(
    job: AnalysisJob,
    now: int,
    criteria: Optional[PriorityCriteriaConfig] = None,
) -> float:
    wait_minutes = max(0, now - job.queued_at) / 60_000
    return priority_value(job.priority, criteria) * 10 + min(wait_minutes, MAX_AGE_BONUS)


def select_batch(
    candidates: list[AnalysisJob],
    available_capacity: int,
    max_batch_size: int,
    now: int,
    criteria: Optional[PriorityCriteriaConfig] = None,
) -> list[AnalysisJob]:
    """Top candidates by weight, at most min(available_capacity, max_batch_size).

    Ties keep candidate order (sorted() is stable).
    """
    limit = min(available_capacity, max_batch_size)
    if limit <= 0:
        return []
    ranked = sorted(candidates, key=lambda job: compute_weight(job, now, criteria), reverse=True)
    return ranked[:limit]


def _is_due(job: AnalysisJob, now: int) -> bool:
    # Only retry backoff defers a job; the admission delay does not.
    if job.processing_attempts == 0 or job.next_attempt_at is None:
        return True
    return job.next_attempt_at <= now


# =============================================================================
# BatchSelector
# =============================================================================
class BatchSelector:
    """Periodic weighted dequeue.

    Example:
        >>> selector = BatchSelector(store, executor, config)
        >>> result = await selector.process_queue()
        >>> result.processed
        3
    """

    def __init__(
        self,
        store: JobStore,
        executor: DeferredExecutor,
        config: Optional[SluiceConfig] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._executor = executor
        self.config = config or SluiceConfig()
        self._clock = clock
        self._logger = logger.bind(component="batch_selector")

    async def preview(
        self,
        limit: int = 10,
        priority: Optional[Priority] = None,
    ) -> list[WeightedJob]:
        """Ranked view of pending jobs without claiming any of them."""
        now = self._clock()
        if priority is not None:
            jobs = await self._store.list_by_status_priority(JobStatus.PROCESSING, priority)
        else:
            jobs = await self._store.list_by_status(JobStatus.PROCESSING)
        pending = [job for job in jobs if job.is_pending]
        criteria = self.config.priorities
        ranked = select_batch(pending, limit, limit, now, criteria)
        return [
            WeightedJob(
                job_id=job.id,
                entity_id=job.entity_id,
                priority=job.priority,
                weight=round(compute_weight(job, now, criteria), 4),
                wait_ms=job.wait_time_ms(now),
            )
            for job in ranked
        ]

    async def process_queue(self, max_batch_size: Optional[int] = None) -> BatchResult:
        """Run one batch sweep."""
        now = self._clock()
        criteria = self.config.priorities
        batch_limit = max_batch_size if max_batch_size is not None else self.config.queue.max_batch_size

        jobs = await self._store.list_by_status(JobStatus.PROCESSING)
        in_flight = sum(1 for job in jobs if job.is_in_flight)
        candidates = [job for job in jobs if job.is_pending and _is_due(job, now)]
        available = self.config.queue.max_concurrent_processing - in_flight
        result = BatchResult(available_capacity=max(0, available), candidates=len(candidates))

        if available <= 0 or not candidates:
            return result

        for job in select_batch(candidates, available, batch_limit, now, criteria):
            await self._start_one(job, now, result)

        self._logger.info(
            "batch_processed",
            candidates=len(candidates),
            available=available,
            started=len(result.started),
            failed=len(result.failed),
            upgraded=len(result.upgraded),
        )
        return result

    async def _start_one(self, job: AnalysisJob, now: int, result: BatchResult) -> None:
        criteria = self.config.priorities
        marked: Optional[AnalysisJob] = None

        def mark_started(current: AnalysisJob) -> Optional[AnalysisJob]:
            if not current.is_pending:
                return None
            final = max_priority(
                current.priority,
                upgrade_for_age(current.priority, current.queued_at, now, criteria),
            )
            current.priority = final
            current.processing_started_at = now
            current.next_attempt_at = now + base_delay_ms(final, criteria)
            current.updated_at = now
            return current

        try:
            marked = await self._store.mutate_job(job.id, mark_started)
            if marked is None:
                result.skipped.append(job.id)
                return
            if marked.priority != job.priority:
                result.upgraded.append(job.id)
                self._logger.info(
                    "priority_aged",
                    job_id=job.id,
                    old_priority=job.priority.value,
                    new_priority=marked.priority.value,
                )
            await self._executor.schedule_execution(
                base_delay_ms(marked.priority, criteria),
                marked.entity_id,
                marked.owner_id,
                marked.priority,
            )
            result.started.append(job.id)
        except Exception as exc:
            result.failed.append(job.id)
            self._logger.error(
                "batch_item_failed",
                job_id=job.id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            if marked is not None:
                await self._release(job.id, now)

    async def _release(self, job_id: str, started_at: int) -> None:
        """Undo a start mark so the job is picked up again on the next sweep."""

        def unmark(current: AnalysisJob) -> Optional[AnalysisJob]:
            if current.status != JobStatus.PROCESSING or current.processing_started_at != started_at:
                return None
            current.processing_started_at = None
            current.next_attempt_at = None
            return current

        try:
            await self._store.mutate_job(job_id, unmark)
        except Exception as exc:
            self._logger.error("batch_item_release_failed", job_id=job_id, error=str(exc))
