"""
sluice.scheduling.admission - Queue Admission & Capacity Control
==================================================================

The entry point for new analysis requests.

Admission Flow:

    enqueue(entity_id, owner_id, priority?, delay?, context?)
        │
        ├─ active job for entity? ── COMPLETED ──→ already_analyzed
        │                          └ PROCESSING ─→ already_queued
        │
        ├─ processing count >= max_queue_size? ──→ queue_full
        │                                          (wait = position × avg time)
        ├─ resolve priority: explicit → assessed from context → normal
        ├─ delay = explicit ?? base_delay[priority]
        ├─ insert job (atomic per entity)
        └─ schedule execution after delay ──────→ queued

Capacity checks and inserts are serialized by an admission lock so the
processing count can never pass max_queue_size within one process. If the
executor refuses the hand-off the job stays pending and the batch selector
picks it up on its next sweep.
"""

from __future__ import annotations

import asyncio
from typing import Callable, Optional

import structlog
from pydantic import BaseModel, Field

from sluice.core.config import SluiceConfig
from sluice.core.enums import EnqueueStatus, JobStatus, Priority
from sluice.core.exceptions import SchedulingError
from sluice.core.models import AnalysisJob, now_ms
from sluice.infrastructure.job_store import JobStore
from sluice.integrations.executor import DeferredExecutor
from sluice.scheduling.priority import PriorityContext, assess_priority_with_content, base_delay_ms
from sluice.scheduling.processing_stats import ProcessingTimeTracker


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()


class EnqueueResult(BaseModel):
    """Outcome of an enqueue request.

    job_id is the new job for QUEUED and the existing job for
    ALREADY_QUEUED / ALREADY_ANALYZED. It is None for QUEUE_FULL.
    """

    status: EnqueueStatus
    job_id: Optional[str] = None
    priority: Optional[Priority] = None
    queue_position: Optional[int] = None
    delay_ms: Optional[int] = None
    estimated_wait_ms: Optional[int] = None
    estimated_completion_at: Optional[int] = None
    reasoning: list[str] = Field(default_factory=list)


class AdmissionController:
    """Idempotent, capacity-bounded admission of analysis jobs.

    Example:
        >>> admission = AdmissionController(store, executor, config)
        >>> result = await admission.enqueue("entry-1", "user-1")
        >>> result.status
        <EnqueueStatus.QUEUED: 'queued'>
    """

    def __init__(
        self,
        store: JobStore,
        executor: DeferredExecutor,
        config: Optional[SluiceConfig] = None,
        tracker: Optional[ProcessingTimeTracker] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._executor = executor
        self.config = config or SluiceConfig()
        self._tracker = tracker or ProcessingTimeTracker(
            default_ms=self.config.queue.estimated_processing_time_ms,
            window=self.config.queue.processing_time_window,
        )
        self._clock = clock
        self._admission_lock = asyncio.Lock()
        self._logger = logger.bind(component="admission")

    async def enqueue(
        self,
        entity_id: str,
        owner_id: str,
        priority: Optional[Priority] = None,
        delay_ms: Optional[int] = None,
        context: Optional[PriorityContext] = None,
    ) -> EnqueueResult:
        """Admit a new analysis job for an entity.

        Args:
            entity_id: Logical entry to analyze.
            owner_id: Owner of the entry.
            priority: Explicit priority. Wins over context assessment.
            delay_ms: Explicit scheduling delay. Wins over the priority's
                base delay.
            context: Signals for priority assessment.

        Returns:
            EnqueueResult with one of queued, already_queued,
            already_analyzed or queue_full.
        """
        existing = await self._store.find_active_by_entity(entity_id)
        if existing is not None:
            return self._duplicate(existing)

        async with self._admission_lock:
            now = self._clock()
            current_count = await self._store.count_by_status(JobStatus.PROCESSING)
            position = current_count + 1

            if current_count >= self.config.queue.max_queue_size:
                wait = self._tracker.estimate_wait_ms(position)
                self._logger.warning(
                    "queue_full",
                    entity_id=entity_id,
                    current=current_count,
                    max_size=self.config.queue.max_queue_size,
                    estimated_wait_ms=wait,
                )
                return EnqueueResult(
                    status=EnqueueStatus.QUEUE_FULL,
                    queue_position=position,
                    estimated_wait_ms=wait,
                )

            resolved, reasoning = self._resolve_priority(priority, context)
            delay = delay_ms if delay_ms is not None else base_delay_ms(resolved, self.config.priorities)

            job = AnalysisJob(
                entity_id=entity_id,
                owner_id=owner_id,
                priority=resolved,
                created_at=now,
                queued_at=now,
                updated_at=now,
                queue_position=position,
                next_attempt_at=now + delay,
                estimated_completion_at=now + delay + self.config.queue.completion_allowance_ms,
            )
            stored, created = await self._store.insert_job_if_absent(job)

        if not created:
            return self._duplicate(stored)

        try:
            await self._executor.schedule_execution(delay, entity_id, owner_id, resolved)
        except SchedulingError as exc:
            self._logger.warning(
                "initial_schedule_failed",
                job_id=stored.id,
                entity_id=entity_id,
                error=exc.message,
            )

        self._logger.info(
            "job_enqueued",
            job_id=stored.id,
            entity_id=entity_id,
            priority=resolved.value,
            delay_ms=delay,
            position=position,
        )
        return EnqueueResult(
            status=EnqueueStatus.QUEUED,
            job_id=stored.id,
            priority=resolved,
            queue_position=position,
            delay_ms=delay,
            estimated_wait_ms=delay,
            estimated_completion_at=stored.estimated_completion_at,
            reasoning=reasoning,
        )

    def _resolve_priority(
        self, explicit: Optional[Priority], context: Optional[PriorityContext]
    ) -> tuple[Priority, list[str]]:
        if explicit is not None:
            return Priority(explicit), ["Explicit priority"]
        if context is not None:
            assessment = assess_priority_with_content(context)
            return assessment.priority, assessment.reasoning
        return Priority.NORMAL, ["Default priority"]

    def _duplicate(self, existing: AnalysisJob) -> EnqueueResult:
        status = (
            EnqueueStatus.ALREADY_ANALYZED
            if existing.status == JobStatus.COMPLETED
            else EnqueueStatus.ALREADY_QUEUED
        )
        self._logger.debug("duplicate_enqueue", entity_id=existing.entity_id, status=status.value)
        return EnqueueResult(
            status=status,
            job_id=existing.id,
            priority=existing.priority,
            queue_position=existing.queue_position,
        )
