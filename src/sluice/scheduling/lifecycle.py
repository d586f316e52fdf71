"""
sluice.scheduling.lifecycle - Job Lifecycle Transitions
=========================================================

Every transition an admitted job goes through after admission, each one a
single-record atomic mutation against the store:

    claim      wake handler picks the job up (sets processing_started_at)
    complete   PROCESSING → COMPLETED, feeds the rolling processing time
    requeue    the retry pipeline for a failed attempt (see below)
    cancel     owner-initiated PROCESSING → FAILED
    purge      expired or stuck jobs → FAILED
    aging      periodic priority upgrade of jobs not yet started
    revival    recent recoverable FAILED jobs → PROCESSING

Requeue Pipeline:

    error ──→ classify ──→ breaker snapshot + 24h success rate
                                   │
                                   ▼
                       RetryStrategyEngine.decide()
                                   │ should_retry
                                   ▼
                       retry budget veto ─── vetoed ───┐
                                   │ allowed           │
                                   ▼                   ▼
            reschedule: attempts+1, history,   fallback eligible or
            priority=max(old,new), queued_at,  breaker unhealthy?
            next_attempt_at, snapshot          ├─ evaluator says yes → completed
                                               │                       (fallback_used)
                                               └─ otherwise → dead-letter

A scheduled execution is never retracted. Jobs that become terminal leave
their timers in place, and claim() turns such late wakes into no-ops.
"""

from __future__ import annotations

from typing import Callable, Optional

import structlog
from pydantic import BaseModel, Field

from sluice.core.config import SluiceConfig
from sluice.core.enums import (
    CancelStatus,
    DeadLetterCategory,
    EscalationReason,
    ErrorType,
    JobStatus,
    Priority,
    RequeueStatus,
)
from sluice.core.exceptions import JobNotFoundError, OwnershipError, SchedulingError
from sluice.core.models import (
    AnalysisJob,
    CircuitBreakerSnapshot,
    RetryAttempt,
    now_ms,
)
from sluice.infrastructure.job_store import JobStore
from sluice.integrations.dead_letter import DeadLetterSink, StoreDeadLetterSink
from sluice.integrations.executor import DeferredExecutor
from sluice.integrations.fallback import DisabledFallbackEvaluator, FallbackEvaluator
from sluice.resilience.breaker_service import CircuitBreakerService
from sluice.resilience.classification import ErrorLike, classify, error_text, is_recoverable
from sluice.resilience.retry_budget import calculate_retry_budget, should_allow_retry
from sluice.resilience.retry_strategy import (
    RetryDecision,
    RetryStrategyEngine,
    build_retry_context,
)
from sluice.scheduling.priority import max_priority, upgrade_for_age
from sluice.scheduling.processing_stats import ProcessingTimeTracker


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()

# A wake that arrives this long before the job's next_attempt_at belongs to a
# superseded timer.
WAKE_GRACE_MS = 100
MAX_ERROR_MESSAGE_LENGTH = 500
AUTO_REQUEUE_MAX_AGE_MS = 1_800_000

CANCELLED_PREFIX = "Cancelled by user"
EXPIRED_PREFIX = "Expired"
STUCK_PREFIX = "Processing timeout"
AUTO_REQUEUED_PREFIX = "Auto-requeued"


# =============================================================================
# Result Models
# =============================================================================
class RequeueOutcome(BaseModel):
    """What requeue() did with a failed attempt."""

    status: RequeueStatus
    job_id: str
    priority: Optional[Priority] = None
    delay_ms: Optional[int] = None
    attempts: int = 0
    reason: Optional[str] = None
    decision: Optional[RetryDecision] = None
    dead_letter_category: Optional[DeadLetterCategory] = None
    fallback_confidence: Optional[float] = None


class CancelResult(BaseModel):
    status: CancelStatus
    job_id: str
    refund_eligible: bool = False
    message: str = ""


class PurgeCandidate(BaseModel):
    job_id: str
    entity_id: str
    owner_id: str
    reason: str
    age_ms: int


class PurgeResult(BaseModel):
    """Jobs found (and, unless dry_run, failed) by the purge sweep."""

    dry_run: bool
    expired: list[PurgeCandidate] = Field(default_factory=list)
    stuck: list[PurgeCandidate] = Field(default_factory=list)
    purged: int = 0

    @property
    def total_found(self) -> int:
        return len(self.expired) + len(self.stuck)


class AgingResult(BaseModel):
    examined: int = 0
    upgraded: dict[str, Priority] = Field(default_factory=dict)


class AutoRequeueResult(BaseModel):
    examined: int = 0
    requeued: list[str] = Field(default_factory=list)
    skipped: dict[str, str] = Field(
        default_factory=dict,
        description="job_id → why it was not revived",
    )


def _truncate(message: str) -> str:
    return message[:MAX_ERROR_MESSAGE_LENGTH]


# =============================================================================
# JobLifecycle
# =============================================================================
class JobLifecycle:
    """Post-admission transitions of analysis jobs.

    Attributes:
        config: SluiceConfig supplying retry, budget, queue and priority
            settings.
        dependency: Breaker name consulted for every requeue.

    Example:
        >>> lifecycle = JobLifecycle(store, executor, breakers, engine)
        >>> outcome = await lifecycle.requeue(job.id, "Service unavailable (503)")
        >>> outcome.status
        <RequeueStatus.REQUEUED: 'requeued'>
    """

    def __init__(
        self,
        store: JobStore,
        executor: DeferredExecutor,
        breakers: CircuitBreakerService,
        engine: Optional[RetryStrategyEngine] = None,
        config: Optional[SluiceConfig] = None,
        fallback: Optional[FallbackEvaluator] = None,
        dead_letter: Optional[DeadLetterSink] = None,
        tracker: Optional[ProcessingTimeTracker] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self._store = store
        self._executor = executor
        self._breakers = breakers
        self.config = config or SluiceConfig()
        self._engine = engine or RetryStrategyEngine(self.config.retry, clock=clock)
        self._fallback = fallback or DisabledFallbackEvaluator()
        self._dead_letter = dead_letter or StoreDeadLetterSink(store, clock=clock)
        self._tracker = tracker or ProcessingTimeTracker(
            default_ms=self.config.queue.estimated_processing_time_ms,
            window=self.config.queue.processing_time_window,
        )
        self._clock = clock
        self.dependency = self.config.default_dependency
        self._logger = logger.bind(component="job_lifecycle")

    @property
    def tracker(self) -> ProcessingTimeTracker:
        return self._tracker

    async def _require(self, job_id: str) -> AnalysisJob:
        job = await self._store.get_job(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    # =========================================================================
    # Claim / Complete
    # =========================================================================

    async def claim(self, job_id: str) -> Optional[AnalysisJob]:
        """Mark a job as picked up by a worker.

        Returns None (and writes nothing) when the job is terminal or when
        the wake is early for the job's current schedule.
        """
        now = self._clock()

        def mark(job: AnalysisJob) -> Optional[AnalysisJob]:
            if job.status != JobStatus.PROCESSING:
                return None
            if job.next_attempt_at is not None and now < job.next_attempt_at - WAKE_GRACE_MS:
                return None
            if job.processing_started_at is None:
                job.processing_started_at = now
            job.updated_at = now
            return job

        claimed = await self._store.mutate_job(job_id, mark)
        if claimed is None:
            self._logger.debug("wake_ignored", job_id=job_id)
        return claimed

    async def complete(
        self, job_id: str, processing_time_ms: Optional[int] = None
    ) -> Optional[AnalysisJob]:
        """PROCESSING → COMPLETED. A no-op for jobs that are already terminal."""
        return await self._complete(job_id, processing_time_ms)

    async def _complete(
        self,
        job_id: str,
        processing_time_ms: Optional[int] = None,
        fallback_confidence: Optional[float] = None,
        fallback_used: bool = False,
    ) -> Optional[AnalysisJob]:
        now = self._clock()

        def finish(job: AnalysisJob) -> Optional[AnalysisJob]:
            if job.status != JobStatus.PROCESSING:
                return None
            elapsed = processing_time_ms
            if elapsed is None and job.processing_started_at is not None:
                elapsed = max(0, now - job.processing_started_at)
            job.status = JobStatus.COMPLETED
            job.completed_at = now
            job.updated_at = now
            job.total_processing_time_ms = elapsed
            if fallback_used:
                job.fallback_used = True
                job.fallback_confidence = fallback_confidence
            return job

        completed = await self._store.mutate_job(job_id, finish)
        if completed is None:
            self._logger.debug("complete_ignored", job_id=job_id)
            return None

        if completed.total_processing_time_ms is not None:
            self._tracker.record(completed.total_processing_time_ms)
        self._logger.info(
            "job_completed",
            job_id=job_id,
            entity_id=completed.entity_id,
            attempts=completed.processing_attempts,
            processing_time_ms=completed.total_processing_time_ms,
            fallback_used=completed.fallback_used,
        )
        return completed

    # =========================================================================
    # Requeue
    # =========================================================================

    async def requeue(self, job_id: str, error: ErrorLike) -> RequeueOutcome:
        """Run the retry pipeline for a failed attempt.

        Args:
            job_id: The job whose attempt failed.
            error: Error message or exception from the worker.

        Returns:
            RequeueOutcome with status requeued, fallback_processed,
            dead_lettered, or ignored (the job was already terminal).

        Raises:
            JobNotFoundError: The job does not exist.
        """
        job = await self._require(job_id)
        if job.is_terminal:
            return RequeueOutcome(
                status=RequeueStatus.IGNORED,
                job_id=job_id,
                priority=job.priority,
                attempts=job.processing_attempts,
                reason=f"Job is already {job.status.value}",
            )

        now = self._clock()
        message = error_text(error)
        snapshot = await self._breakers.snapshot(self.dependency)
        report = await self._breakers.health_report(self.dependency)

        context = build_retry_context(
            job,
            message,
            circuit_state=snapshot.state,
            recent_success_rate=report.success_rate,
            now=now,
        )
        decision = self._engine.decide(context)
        if decision.should_retry:
            decision = await self._apply_budget(decision)

        if decision.should_retry:
            return await self._reschedule(job_id, message, decision, snapshot, now)

        await self._record_failure(job_id, message, decision, snapshot, now)

        if decision.fallback_eligible or not report.is_healthy:
            fallback = await self._fallback.evaluate_fallback(
                job.entity_id, job.owner_id, message, job.processing_attempts
            )
            if fallback.use_fallback:
                completed = await self._complete(
                    job_id,
                    fallback_confidence=fallback.confidence,
                    fallback_used=True,
                )
                self._logger.info(
                    "fallback_processed",
                    job_id=job_id,
                    reason=fallback.reason,
                    circuit_state=fallback.circuit_breaker_state.value,
                )
                return RequeueOutcome(
                    status=RequeueStatus.FALLBACK_PROCESSED,
                    job_id=job_id,
                    priority=job.priority,
                    attempts=completed.processing_attempts if completed else job.processing_attempts + 1,
                    reason=fallback.reason,
                    decision=decision,
                    fallback_confidence=fallback.confidence,
                )

        reason = decision.escalation_message or "Retry not permitted"
        dead = await self._dead_letter.move_to_dead_letter(
            job_id,
            reason,
            {
                "escalation_reason": (
                    decision.escalation_reason.value if decision.escalation_reason else None
                ),
                "error_type": decision.error_classification.error_type.value,
                "error_message": _truncate(message),
                "retry_count": job.processing_attempts,
                "max_retries": decision.max_retries,
                "circuit_state": snapshot.state.value,
            },
        )
        return RequeueOutcome(
            status=RequeueStatus.DEAD_LETTERED,
            job_id=job_id,
            priority=dead.priority,
            attempts=dead.processing_attempts,
            reason=reason,
            decision=decision,
            dead_letter_category=dead.dead_letter_category,
        )

    async def _apply_budget(self, decision: RetryDecision) -> RetryDecision:
        """Veto an admissible retry when the system has no headroom for it."""
        processing = await self._store.list_by_status(JobStatus.PROCESSING)
        in_flight = sum(1 for job in processing if job.is_in_flight)
        budget = calculate_retry_budget(
            queue_size=len(processing),
            max_queue_size=self.config.queue.max_queue_size,
            processing_count=in_flight,
            max_concurrent=self.config.queue.max_concurrent_processing,
            config=self.config.retry_budget,
        )
        verdict = should_allow_retry(decision.new_priority, budget, self.config.retry_budget)
        if verdict.allowed:
            return decision

        self._logger.warning(
            "retry_budget_veto",
            priority=decision.new_priority.value,
            budget=budget.budget_percentage,
            recommendation=budget.recommendation.value,
        )
        return decision.model_copy(
            update={
                "should_retry": False,
                "backoff_delay_ms": 0,
                "escalation_reason": EscalationReason.RETRY_BUDGET_EXHAUSTED,
                "escalation_message": verdict.reason,
                "fallback_recommended": decision.fallback_eligible,
            }
        )

    def _attempt(
        self,
        job: AnalysisJob,
        message: str,
        decision: RetryDecision,
        snapshot: CircuitBreakerSnapshot,
        now: int,
    ) -> None:
        """Apply the bookkeeping shared by every failed attempt."""
        error_type = decision.error_classification.error_type
        job.processing_attempts += 1
        job.retry_history.append(
            RetryAttempt(
                attempt_number=job.processing_attempts,
                timestamp=now,
                delay_ms=decision.backoff_delay_ms,
                error_type=error_type,
                error_message=_truncate(message),
                circuit_state_at_time=snapshot.state,
                jitter_type=decision.jitter_type,
                adaptive_backoff_factor=decision.adaptive_backoff_factor,
            )
        )
        limit = self.config.retry.history_limit
        if len(job.retry_history) > limit:
            job.retry_history = job.retry_history[-limit:]
        job.last_error_message = _truncate(message)
        job.last_error_type = error_type
        job.circuit_breaker_snapshot = snapshot
        job.updated_at = now

    async def _record_failure(
        self,
        job_id: str,
        message: str,
        decision: RetryDecision,
        snapshot: CircuitBreakerSnapshot,
        now: int,
    ) -> None:
        def record(job: AnalysisJob) -> Optional[AnalysisJob]:
            if job.status != JobStatus.PROCESSING:
                return None
            self._attempt(job, message, decision, snapshot, now)
            return job

        await self._store.mutate_job(job_id, record)

    async def _reschedule(
        self,
        job_id: str,
        message: str,
        decision: RetryDecision,
        snapshot: CircuitBreakerSnapshot,
        now: int,
    ) -> RequeueOutcome:
        delay = decision.backoff_delay_ms

        def reschedule(job: AnalysisJob) -> Optional[AnalysisJob]:
            if job.status != JobStatus.PROCESSING:
                return None
            self._attempt(job, message, decision, snapshot, now)
            job.priority = max_priority(job.priority, decision.new_priority)
            job.queued_at = now
            job.processing_started_at = None
            job.next_attempt_at = now + delay
            job.estimated_completion_at = now + delay + self.config.queue.completion_allowance_ms
            return job

        updated = await self._store.mutate_job(job_id, reschedule)
        if updated is None:
            return RequeueOutcome(
                status=RequeueStatus.IGNORED,
                job_id=job_id,
                reason="Job became terminal before it could be requeued",
                decision=decision,
            )

        try:
            await self._executor.schedule_execution(
                delay, updated.entity_id, updated.owner_id, updated.priority
            )
        except SchedulingError as exc:
            self._logger.warning("retry_schedule_failed", job_id=job_id, error=exc.message)

        self._logger.info(
            "job_requeued",
            job_id=job_id,
            attempts=updated.processing_attempts,
            priority=updated.priority.value,
            delay_ms=delay,
            error_type=decision.error_classification.error_type.value,
        )
        return RequeueOutcome(
            status=RequeueStatus.REQUEUED,
            job_id=job_id,
            priority=updated.priority,
            delay_ms=delay,
            attempts=updated.processing_attempts,
            decision=decision,
        )

    # =========================================================================
    # Cancel
    # =========================================================================

    async def cancel(self, job_id: str, owner_id: str, reason: str = "") -> CancelResult:
        """Owner-initiated cancellation.

        An already-scheduled execution is not retracted; its wake finds the
        job FAILED and does nothing.

        Raises:
            JobNotFoundError: The job does not exist.
            OwnershipError: owner_id does not own the job.
        """
        job = await self._require(job_id)
        if job.owner_id != owner_id:
            raise OwnershipError(job_id, owner_id)

        now = self._clock()
        message = f"{CANCELLED_PREFIX}: {reason}" if reason else CANCELLED_PREFIX
        refund_eligible = False

        def mark(current: AnalysisJob) -> Optional[AnalysisJob]:
            nonlocal refund_eligible
            if current.status != JobStatus.PROCESSING:
                return None
            refund_eligible = current.processing_started_at is None
            current.status = JobStatus.FAILED
            current.failed_at = now
            current.updated_at = now
            current.last_error_message = message
            return current

        cancelled = await self._store.mutate_job(job_id, mark)
        if cancelled is None:
            current = await self._require(job_id)
            if current.status == JobStatus.COMPLETED:
                return CancelResult(
                    status=CancelStatus.CANNOT_CANCEL,
                    job_id=job_id,
                    message="Analysis has already completed",
                )
            return CancelResult(
                status=CancelStatus.ALREADY_CANCELLED,
                job_id=job_id,
                message="Analysis is already cancelled or failed",
            )

        self._logger.info(
            "job_cancelled",
            job_id=job_id,
            owner_id=owner_id,
            refund_eligible=refund_eligible,
        )
        return CancelResult(
            status=CancelStatus.CANCELLED,
            job_id=job_id,
            refund_eligible=refund_eligible,
            message=message,
        )

    # =========================================================================
    # Periodic Sweeps
    # =========================================================================

    async def purge_expired(
        self, max_age_ms: Optional[int] = None, dry_run: bool = False
    ) -> PurgeResult:
        """Fail jobs that waited too long or got stuck in flight.

        Args:
            max_age_ms: Age after which a PROCESSING job is expired.
                Defaults to queue.max_item_age_ms.
            dry_run: Report what would be purged without writing.
        """
        now = self._clock()
        max_age = max_age_ms if max_age_ms is not None else self.config.queue.max_item_age_ms
        timeout = self.config.queue.default_processing_timeout_ms
        result = PurgeResult(dry_run=dry_run)

        for job in await self._store.list_by_status(JobStatus.PROCESSING):
            age = now - job.created_at
            if age > max_age:
                result.expired.append(
                    PurgeCandidate(
                        job_id=job.id,
                        entity_id=job.entity_id,
                        owner_id=job.owner_id,
                        reason=f"{EXPIRED_PREFIX}: exceeded maximum age of {max_age}ms",
                        age_ms=age,
                    )
                )
            elif job.processing_started_at is not None and now - job.processing_started_at > timeout:
                result.stuck.append(
                    PurgeCandidate(
                        job_id=job.id,
                        entity_id=job.entity_id,
                        owner_id=job.owner_id,
                        reason=f"{STUCK_PREFIX}: no result within {timeout}ms",
                        age_ms=now - job.processing_started_at,
                    )
                )

        if dry_run:
            return result

        for candidate in result.expired:
            if await self._fail_stale(candidate, now, ErrorType.UNKNOWN):
                result.purged += 1
        for candidate in result.stuck:
            if await self._fail_stale(candidate, now, ErrorType.TIMEOUT):
                result.purged += 1

        if result.purged:
            self._logger.warning(
                "jobs_purged",
                expired=len(result.expired),
                stuck=len(result.stuck),
                purged=result.purged,
            )
        return result

    async def _fail_stale(
        self, candidate: PurgeCandidate, now: int, error_type: ErrorType
    ) -> bool:
        def mark(job: AnalysisJob) -> Optional[AnalysisJob]:
            if job.status != JobStatus.PROCESSING:
                return None
            job.status = JobStatus.FAILED
            job.failed_at = now
            job.updated_at = now
            job.last_error_message = candidate.reason
            job.last_error_type = error_type
            return job

        try:
            return await self._store.mutate_job(candidate.job_id, mark) is not None
        except JobNotFoundError:
            return False

    async def upgrade_aging_requests(self) -> AgingResult:
        """Apply the aging rule to every job that has not started yet."""
        now = self._clock()
        criteria = self.config.priorities
        result = AgingResult()

        for job in await self._store.list_by_status(JobStatus.PROCESSING):
            if not job.is_pending:
                continue
            result.examined += 1
            if upgrade_for_age(job.priority, job.queued_at, now, criteria) == job.priority:
                continue

            def upgrade(current: AnalysisJob) -> Optional[AnalysisJob]:
                if not current.is_pending:
                    return None
                aged = upgrade_for_age(current.priority, current.queued_at, now, criteria)
                if aged == current.priority:
                    return None
                current.priority = max_priority(current.priority, aged)
                current.updated_at = now
                return current

            upgraded = await self._store.mutate_job(job.id, upgrade)
            if upgraded is not None:
                result.upgraded[job.id] = upgraded.priority
                self._logger.info(
                    "priority_aged",
                    job_id=job.id,
                    old_priority=job.priority.value,
                    new_priority=upgraded.priority.value,
                )
        return result

    async def auto_requeue_transient_failures(
        self,
        max_age_ms: int = AUTO_REQUEUE_MAX_AGE_MS,
        batch_size: int = 10,
    ) -> AutoRequeueResult:
        """Revive recent FAILED jobs whose last error looks transient.

        A job is revived only when it was created within max_age_ms, its
        last error is recoverable, it has fewer than max_retry_attempts
        attempts, it was neither dead-lettered nor cancelled nor expired, no
        other active job exists for its entity, and the retry engine agrees.
        Revival increments processing_attempts.
        """
        now = self._clock()
        result = AutoRequeueResult()
        failed = await self._store.list_by_status_created(JobStatus.FAILED, created_after=now - max_age_ms)
        failed.sort(key=lambda job: job.failed_at or job.updated_at, reverse=True)
        state = await self._breakers.current_state(self.dependency)

        for job in failed[:batch_size]:
            result.examined += 1
            skip = await self._revival_blocker(job)
            if skip is not None:
                result.skipped[job.id] = skip
                continue

            message = job.last_error_message or ""
            decision = self._engine.decide(build_retry_context(job, message, state, now=now))
            if not decision.should_retry:
                result.skipped[job.id] = (
                    decision.escalation_reason.value
                    if decision.escalation_reason
                    else "Retry strategy declined"
                )
                continue

            revived = await self._revive(job, message, decision, now)
            if revived is None:
                current = await self._store.get_job(job.id)
                still_failed = (
                    current is not None
                    and current.status == JobStatus.FAILED
                    and not current.dead_letter
                )
                result.skipped[job.id] = (
                    "Entity already has an active job"
                    if still_failed
                    else "Job changed before it could be revived"
                )
                continue
            result.requeued.append(job.id)

        if result.requeued:
            self._logger.info(
                "transient_failures_requeued",
                examined=result.examined,
                requeued=len(result.requeued),
            )
        return result

    async def _revival_blocker(self, job: AnalysisJob) -> Optional[str]:
        message = job.last_error_message
        if job.dead_letter:
            return "Dead-lettered"
        if not message:
            return "No error recorded"
        if message.startswith(CANCELLED_PREFIX):
            return "Cancelled by owner"
        if message.startswith(EXPIRED_PREFIX):
            return "Expired"
        if not is_recoverable(message):
            return "Error is not recoverable"
        if job.processing_attempts >= self.config.retry.max_retry_attempts:
            return "Maximum retries exceeded"
        if await self._store.find_active_by_entity(job.entity_id) is not None:
            return "Entity already has an active job"
        return None

    async def _revive(
        self, job: AnalysisJob, message: str, decision: RetryDecision, now: int
    ) -> Optional[AnalysisJob]:
        delay = decision.backoff_delay_ms

        def revive(current: AnalysisJob) -> Optional[AnalysisJob]:
            if current.status != JobStatus.FAILED or current.dead_letter:
                return None
            current.status = JobStatus.PROCESSING
            current.processing_attempts += 1
            current.priority = max_priority(current.priority, decision.new_priority)
            current.processing_started_at = None
            current.failed_at = None
            current.queued_at = now
            current.next_attempt_at = now + delay
            current.updated_at = now
            current.last_error_message = _truncate(f"{AUTO_REQUEUED_PREFIX}: {message}")
            return current

        revived = await self._store.reactivate_job(job.id, revive)
        if revived is None:
            return None

        try:
            await self._executor.schedule_execution(
                delay, revived.entity_id, revived.owner_id, revived.priority
            )
        except SchedulingError as exc:
            self._logger.warning("revival_schedule_failed", job_id=job.id, error=exc.message)
        self._logger.info(
            "job_auto_requeued",
            job_id=job.id,
            attempts=revived.processing_attempts,
            delay_ms=delay,
            classification=classify(message).error_type.value,
        )
        return revived
