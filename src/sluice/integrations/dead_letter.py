"""
sluice.integrations.dead_letter - Dead-Letter Sink
====================================================

Terminal destination for jobs that exhausted their retries or failed with an
error no retry can fix. A dead-lettered job stays in the store (nothing is
hard-deleted); it is marked FAILED with dead_letter=True plus a category,
reason and metadata so it can be triaged without replaying logs.

Category Selection (first match wins):

    escalation reason / error text              category
    ───────────────────────────────────────     ─────────────────────────
    retry budget exhausted                   →  retry_budget_exhausted
    retries exhausted / count >= max         →  max_retries_exceeded
    non-recoverable error                    →  non_recoverable_error
    breaker open / circuit mentioned         →  circuit_breaker_triggered
    anything else                            →  permanent_failure

Implementations:
    - DeadLetterSink (ABC):  Abstract interface
    - StoreDeadLetterSink:   Marks the job record in the JobStore
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import structlog
from pydantic import BaseModel, Field

from sluice.core.enums import DeadLetterCategory, EscalationReason, JobStatus
from sluice.core.exceptions import JobNotFoundError
from sluice.core.models import HOUR_MS, AnalysisJob, now_ms
from sluice.infrastructure.job_store import JobStore
from sluice.resilience.classification import classify_error_type, is_recoverable


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()


class DeadLetterStats(BaseModel):
    """Dead-letter counts over a lookback window."""

    since: int
    total: int = 0
    by_category: dict[str, int] = Field(default_factory=dict)
    by_error_type: dict[str, int] = Field(default_factory=dict)


def categorize_dead_letter(reason: str, metadata: dict[str, Any]) -> DeadLetterCategory:
    """Pick the triage category for a dead-lettered job.

    Args:
        reason: Human-readable reason (usually the retry engine's
            escalation message).
        metadata: Context recorded alongside the job. The keys
            escalation_reason, retry_count, max_retries and error_message
            are consulted when present.
    """
    text = reason.lower()
    escalation = metadata.get("escalation_reason")
    retry_count = metadata.get("retry_count")
    max_retries = metadata.get("max_retries")
    error_message = metadata.get("error_message", reason)

    if escalation == EscalationReason.RETRY_BUDGET_EXHAUSTED or "budget" in text:
        return DeadLetterCategory.RETRY_BUDGET_EXHAUSTED
    if escalation == EscalationReason.RETRIES_EXHAUSTED or "maximum retries" in text:
        return DeadLetterCategory.MAX_RETRIES_EXCEEDED
    # Without an escalation reason the attempt counters are the only evidence.
    if (
        escalation is None
        and retry_count is not None
        and max_retries is not None
        and 0 < max_retries <= retry_count
    ):
        return DeadLetterCategory.MAX_RETRIES_EXCEEDED
    if escalation == EscalationReason.NON_RECOVERABLE or not is_recoverable(error_message):
        return DeadLetterCategory.NON_RECOVERABLE_ERROR
    if escalation == EscalationReason.BREAKER_OPEN or "circuit" in text:
        return DeadLetterCategory.CIRCUIT_BREAKER_TRIGGERED
    return DeadLetterCategory.PERMANENT_FAILURE


class DeadLetterSink(ABC):
    """Abstract dead-letter destination."""

    @abstractmethod
    async def move_to_dead_letter(
        self,
        job_id: str,
        reason: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> AnalysisJob:
        """Move a job to the dead-letter queue.

        Returns:
            The job as stored after the move.

        Raises:
            JobNotFoundError: The job does not exist.
        """
        ...

    @abstractmethod
    async def stats(self, hours: int = 24) -> DeadLetterStats:
        """Counts of jobs dead-lettered in the last `hours` hours."""
        ...


class StoreDeadLetterSink(DeadLetterSink):
    """Dead-letter sink that marks job records in place.

    Moving a job twice is a no-op, and completed jobs are never
    dead-lettered.

    Example:
        >>> sink = StoreDeadLetterSink(store)
        >>> job = await sink.move_to_dead_letter(job_id, "Maximum retries exceeded")
        >>> job.dead_letter_category
        <DeadLetterCategory.MAX_RETRIES_EXCEEDED: 'max_retries_exceeded'>
    """

    def __init__(self, store: JobStore, clock: Callable[[], int] = now_ms) -> None:
        self._store = store
        self._clock = clock
        self._logger = logger.bind(component="dead_letter_sink")

    async def move_to_dead_letter(
        self,
        job_id: str,
        reason: str,
        metadata: Optional[dict[str, Any]] = None,
    ) -> AnalysisJob:
        metadata = dict(metadata or {})
        category = categorize_dead_letter(reason, metadata)
        now = self._clock()

        def mark(job: AnalysisJob) -> Optional[AnalysisJob]:
            if job.dead_letter or job.status == JobStatus.COMPLETED:
                return None
            job.status = JobStatus.FAILED
            job.failed_at = now
            job.updated_at = now
            job.dead_letter = True
            job.dead_letter_reason = reason
            job.dead_letter_category = category
            job.dead_letter_at = now
            job.dead_letter_metadata = metadata
            return job

        updated = await self._store.mutate_job(job_id, mark)
        if updated is None:
            existing = await self._store.get_job(job_id)
            if existing is None:
                raise JobNotFoundError(job_id)
            return existing

        self._logger.warning(
            "job_dead_lettered",
            job_id=job_id,
            entity_id=updated.entity_id,
            category=category.value,
            reason=reason,
            attempts=updated.processing_attempts,
        )
        return updated

    async def stats(self, hours: int = 24) -> DeadLetterStats:
        since = self._clock() - hours * HOUR_MS
        result = DeadLetterStats(since=since)
        for job in await self._store.list_by_status(JobStatus.FAILED):
            if not job.dead_letter or job.dead_letter_at is None or job.dead_letter_at < since:
                continue
            result.total += 1
            category = (job.dead_letter_category or DeadLetterCategory.PERMANENT_FAILURE).value
            result.by_category[category] = result.by_category.get(category, 0) + 1
            error_type = (
                job.last_error_type or classify_error_type(job.last_error_message)
            ).value
            result.by_error_type[error_type] = result.by_error_type.get(error_type, 0) + 1
        return result
