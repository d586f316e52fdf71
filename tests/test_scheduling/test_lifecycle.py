"""
Tests for sluice.scheduling.lifecycle
=======================================

Claim, complete, the requeue pipeline, cancellation and the periodic sweeps
(purge, aging, transient-failure revival).
"""

import pytest

from sluice.core.config import QueueConfig, SluiceConfig
from sluice.core.enums import (
    CancelStatus,
    DeadLetterCategory,
    ErrorType,
    EscalationReason,
    JobStatus,
    Priority,
    RequeueStatus,
)
from sluice.core.exceptions import JobNotFoundError, OwnershipError
from sluice.core.models import RetryAttempt
from sluice.integrations.fallback import RuleBasedFallbackEvaluator
from sluice.scheduling.lifecycle import JobLifecycle

SERVICE_DOWN = "Service unavailable (503)"
MINUTE = 60_000


# =============================================================================
# Test: Claim and Complete
# =============================================================================
class TestClaimAndComplete:
    """Wake handling and successful completion."""

    async def test_claim_sets_started(self, lifecycle, make_job, clock) -> None:
        """A due job is claimed and marked in flight."""
        job = await make_job()
        claimed = await lifecycle.claim(job.id)
        assert claimed.processing_started_at == clock()
        assert claimed.is_in_flight

    async def test_early_wake_is_ignored(self, lifecycle, make_job, clock, store) -> None:
        """A wake well before next_attempt_at belongs to a superseded timer."""
        job = await make_job(next_attempt_at=clock() + 5_000)
        assert await lifecycle.claim(job.id) is None
        assert (await store.get_job(job.id)).is_pending

        clock.advance(4_950)
        assert await lifecycle.claim(job.id) is not None

    async def test_claim_terminal_job_is_noop(self, lifecycle, make_job) -> None:
        """Late wakes for finished jobs do nothing."""
        job = await make_job(status=JobStatus.FAILED)
        assert await lifecycle.claim(job.id) is None

    async def test_complete_records_elapsed_time(self, lifecycle, make_job, clock) -> None:
        """Elapsed time defaults to now - processing_started_at and feeds the tracker."""
        job = await make_job(started=True)
        clock.advance(2_000)
        completed = await lifecycle.complete(job.id)
        assert completed.status == JobStatus.COMPLETED
        assert completed.completed_at == clock()
        assert completed.total_processing_time_ms == 2_000
        assert lifecycle.tracker.sample_count == 1
        assert lifecycle.tracker.average_ms == 2_000

    async def test_complete_twice_is_noop(self, lifecycle, make_job) -> None:
        """Completing a terminal job returns None."""
        job = await make_job(started=True)
        await lifecycle.complete(job.id, processing_time_ms=10)
        assert await lifecycle.complete(job.id) is None


# =============================================================================
# Test: Requeue Pipeline
# =============================================================================
class TestRequeue:
    """requeue() runs classify → decide → budget → reschedule / fallback / dead-letter."""

    async def test_transient_error_is_rescheduled(self, lifecycle, make_job, store, executor, clock) -> None:
        """A first service error is retried after a decorrelated 4-12s delay."""
        job = await make_job(started=True)
        outcome = await lifecycle.requeue(job.id, SERVICE_DOWN)

        assert outcome.status == RequeueStatus.REQUEUED
        assert outcome.attempts == 1
        assert 4_000 <= outcome.delay_ms <= 12_000
        assert executor.calls == [(outcome.delay_ms, "entry-1", "user-1", Priority.NORMAL)]

        stored = await store.get_job(job.id)
        assert stored.is_pending
        assert stored.queued_at == clock()
        assert stored.next_attempt_at == clock() + outcome.delay_ms
        assert stored.last_error_type == ErrorType.SERVICE_ERROR
        assert len(stored.retry_history) == 1
        assert stored.retry_history[0].attempt_number == 1
        assert stored.circuit_breaker_snapshot.dependency == "analysis_service"

    async def test_exception_is_accepted(self, lifecycle, make_job) -> None:
        """An exception object is classified by its message."""
        job = await make_job(started=True)
        outcome = await lifecycle.requeue(job.id, ConnectionError("Connection reset by peer"))
        assert outcome.status == RequeueStatus.REQUEUED
        assert outcome.decision.error_classification.error_type == ErrorType.NETWORK

    async def test_non_recoverable_is_dead_lettered(self, lifecycle, make_job, store) -> None:
        """Validation errors go straight to the dead-letter queue."""
        job = await make_job(started=True)
        outcome = await lifecycle.requeue(job.id, "Invalid input format")

        assert outcome.status == RequeueStatus.DEAD_LETTERED
        assert outcome.dead_letter_category == DeadLetterCategory.NON_RECOVERABLE_ERROR
        stored = await store.get_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.dead_letter
        assert stored.processing_attempts == 1
        assert stored.dead_letter_metadata["escalation_reason"] == "non_recoverable"
        assert stored.dead_letter_metadata["retry_count"] == 0

    async def test_exhausted_retries_dead_letter_without_fallback(self, lifecycle, make_job, store) -> None:
        """With fallback disabled an exhausted job is dead-lettered."""
        job = await make_job(started=True, processing_attempts=3)
        outcome = await lifecycle.requeue(job.id, SERVICE_DOWN)
        assert outcome.status == RequeueStatus.DEAD_LETTERED
        assert outcome.dead_letter_category == DeadLetterCategory.MAX_RETRIES_EXCEEDED
        assert outcome.attempts == 4

    async def test_exhausted_retries_use_fallback(
        self, store, executor, breakers, engine, config, clock, make_job
    ) -> None:
        """A fallback-eligible error completes via fallback when the evaluator agrees."""
        lifecycle = JobLifecycle(
            store,
            executor,
            breakers,
            engine=engine,
            config=config,
            fallback=RuleBasedFallbackEvaluator(breakers, config.default_dependency, engine=engine),
            clock=clock,
        )
        job = await make_job(started=True, processing_attempts=3)
        outcome = await lifecycle.requeue(job.id, SERVICE_DOWN)

        assert outcome.status == RequeueStatus.FALLBACK_PROCESSED
        assert outcome.fallback_confidence == 0.6
        stored = await store.get_job(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.fallback_used
        assert stored.processing_attempts == 4
        assert not stored.dead_letter

    async def test_budget_veto_dead_letters(self, store, executor, breakers, engine, clock, make_job) -> None:
        """With no concurrency headroom an admissible retry is vetoed."""
        config = SluiceConfig(queue=QueueConfig(max_concurrent_processing=1))
        lifecycle = JobLifecycle(store, executor, breakers, engine=engine, config=config, clock=clock)
        job = await make_job(started=True)
        outcome = await lifecycle.requeue(job.id, SERVICE_DOWN)

        assert outcome.status == RequeueStatus.DEAD_LETTERED
        assert outcome.decision.escalation_reason == EscalationReason.RETRY_BUDGET_EXHAUSTED
        assert outcome.dead_letter_category == DeadLetterCategory.RETRY_BUDGET_EXHAUSTED
        assert executor.calls == []

    async def test_terminal_job_is_ignored(self, lifecycle, make_job) -> None:
        """Requeueing a finished job changes nothing."""
        job = await make_job(status=JobStatus.COMPLETED)
        outcome = await lifecycle.requeue(job.id, SERVICE_DOWN)
        assert outcome.status == RequeueStatus.IGNORED

    async def test_unknown_job_raises(self, lifecycle) -> None:
        """requeue() on a missing id raises JobNotFoundError."""
        with pytest.raises(JobNotFoundError):
            await lifecycle.requeue("job-missing", SERVICE_DOWN)


# =============================================================================
# Test: Cancel
# =============================================================================
class TestCancel:
    """Owner-initiated cancellation."""

    async def test_cancel_pending_is_refundable(self, lifecycle, make_job, store) -> None:
        """Cancelling before start is refund eligible."""
        job = await make_job()
        result = await lifecycle.cancel(job.id, "user-1", "changed my mind")
        assert result.status == CancelStatus.CANCELLED
        assert result.refund_eligible
        stored = await store.get_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.last_error_message == "Cancelled by user: changed my mind"

    async def test_cancel_in_flight_is_not_refundable(self, lifecycle, make_job) -> None:
        """Cancelling a started job is not refund eligible."""
        job = await make_job(started=True)
        result = await lifecycle.cancel(job.id, "user-1")
        assert not result.refund_eligible
        assert result.message == "Cancelled by user"

    async def test_other_owner_rejected(self, lifecycle, make_job) -> None:
        """Only the owner may cancel."""
        job = await make_job()
        with pytest.raises(OwnershipError):
            await lifecycle.cancel(job.id, "user-2")

    async def test_completed_cannot_be_cancelled(self, lifecycle, make_job) -> None:
        """A completed job reports cannot_cancel."""
        job = await make_job(status=JobStatus.COMPLETED)
        result = await lifecycle.cancel(job.id, "user-1")
        assert result.status == CancelStatus.CANNOT_CANCEL

    async def test_cancel_twice(self, lifecycle, make_job) -> None:
        """A second cancel reports already_cancelled."""
        job = await make_job()
        await lifecycle.cancel(job.id, "user-1")
        result = await lifecycle.cancel(job.id, "user-1")
        assert result.status == CancelStatus.ALREADY_CANCELLED


# =============================================================================
# Test: Purge and Aging
# =============================================================================
class TestPurge:
    """purge_expired() fails expired and stuck jobs."""

    async def test_expired_job(self, lifecycle, make_job, store, clock) -> None:
        """A job older than max_age is failed with an Expired reason."""
        job = await make_job()
        clock.advance(86_400_001)
        result = await lifecycle.purge_expired()
        assert [c.job_id for c in result.expired] == [job.id]
        assert result.purged == 1
        stored = await store.get_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.last_error_message == "Expired: exceeded maximum age of 86400000ms"
        assert stored.last_error_type == ErrorType.UNKNOWN

    async def test_stuck_job(self, lifecycle, make_job, store, clock) -> None:
        """A job in flight past the processing timeout is failed as a timeout."""
        job = await make_job(started=True)
        clock.advance(30_001)
        result = await lifecycle.purge_expired()
        assert [c.job_id for c in result.stuck] == [job.id]
        stored = await store.get_job(job.id)
        assert stored.last_error_message == "Processing timeout: no result within 30000ms"
        assert stored.last_error_type == ErrorType.TIMEOUT

    async def test_dry_run_writes_nothing(self, lifecycle, make_job, store, clock) -> None:
        """dry_run reports candidates without touching them."""
        job = await make_job(started=True)
        clock.advance(60_000)
        result = await lifecycle.purge_expired(dry_run=True)
        assert result.total_found == 1
        assert result.purged == 0
        assert (await store.get_job(job.id)).status == JobStatus.PROCESSING

    async def test_custom_max_age(self, lifecycle, make_job, clock) -> None:
        """An explicit max_age_ms overrides the configured one."""
        await make_job()
        clock.advance(1_001)
        result = await lifecycle.purge_expired(max_age_ms=1_000)
        assert len(result.expired) == 1


class TestAging:
    """upgrade_aging_requests() promotes waiting jobs."""

    async def test_waiting_jobs_promoted(self, lifecycle, make_job, store, clock) -> None:
        """Normal → high past 15 minutes, high → urgent past 5 minutes."""
        normal = await make_job("n1")
        high = await make_job("h1", priority=Priority.HIGH)
        await make_job("busy", started=True)
        clock.advance(16 * MINUTE)

        result = await lifecycle.upgrade_aging_requests()
        assert result.examined == 2
        assert result.upgraded == {normal.id: Priority.HIGH, high.id: Priority.URGENT}
        assert (await store.get_job(normal.id)).priority == Priority.HIGH

    async def test_sla_breach_goes_urgent(self, lifecycle, make_job, clock) -> None:
        """A normal job past 30 minutes jumps straight to urgent."""
        job = await make_job()
        clock.advance(31 * MINUTE)
        result = await lifecycle.upgrade_aging_requests()
        assert result.upgraded == {job.id: Priority.URGENT}

    async def test_fresh_jobs_untouched(self, lifecycle, make_job) -> None:
        """Nothing changes for jobs that just arrived."""
        await make_job()
        result = await lifecycle.upgrade_aging_requests()
        assert result.upgraded == {}


# =============================================================================
# Test: Transient Failure Revival
# =============================================================================
class TestAutoRequeue:
    """auto_requeue_transient_failures() revives recoverable failures."""

    async def failed(self, make_job, clock, entity_id: str, message: str, **fields):
        return await make_job(
            entity_id,
            status=JobStatus.FAILED,
            failed_at=clock(),
            last_error_message=message,
            **fields,
        )

    async def test_recoverable_failure_revived(self, lifecycle, make_job, store, executor, clock) -> None:
        """A recent network failure goes back to PROCESSING with attempts + 1."""
        job = await self.failed(make_job, clock, "e1", "network connection reset", processing_attempts=1)
        result = await lifecycle.auto_requeue_transient_failures()

        assert result.requeued == [job.id]
        stored = await store.get_job(job.id)
        assert stored.status == JobStatus.PROCESSING
        assert stored.processing_attempts == 2
        assert stored.failed_at is None
        assert stored.last_error_message == "Auto-requeued: network connection reset"
        assert executor.entities() == ["e1"]
        assert stored.next_attempt_at == clock() + executor.calls[0][0]

    async def test_skip_reasons(self, lifecycle, make_job, clock) -> None:
        """Each blocked job is skipped with its reason."""
        dead = await self.failed(make_job, clock, "e1", "network error", dead_letter=True)
        silent = await self.failed(make_job, clock, "e2", "")
        cancelled = await self.failed(make_job, clock, "e3", "Cancelled by user: no")
        expired = await self.failed(make_job, clock, "e4", "Expired: exceeded maximum age of 1ms")
        invalid = await self.failed(make_job, clock, "e5", "invalid input")
        worn = await self.failed(make_job, clock, "e6", "network error", processing_attempts=3)
        shadowed = await self.failed(make_job, clock, "e7", "network error")
        await make_job("e7")

        result = await lifecycle.auto_requeue_transient_failures()
        assert result.requeued == []
        assert result.skipped == {
            dead.id: "Dead-lettered",
            silent.id: "No error recorded",
            cancelled.id: "Cancelled by owner",
            expired.id: "Expired",
            invalid.id: "Error is not recoverable",
            worn.id: "Maximum retries exceeded",
            shadowed.id: "Entity already has an active job",
        }

    async def test_revival_rechecks_entity_atomically(
        self, lifecycle, make_job, store, executor, clock, monkeypatch
    ) -> None:
        """An active job that appears after the pre-check still blocks revival."""
        job = await self.failed(make_job, clock, "e1", "network error", processing_attempts=1)
        await make_job("e1")

        async def stale_lookup(entity_id):
            return None

        monkeypatch.setattr(store, "find_active_by_entity", stale_lookup)
        result = await lifecycle.auto_requeue_transient_failures()

        assert result.requeued == []
        assert result.skipped == {job.id: "Entity already has an active job"}
        assert (await store.get_job(job.id)).status == JobStatus.FAILED
        assert executor.calls == []

    async def test_engine_can_decline(self, lifecycle, make_job, clock) -> None:
        """A rate-limit failure still inside its cooldown is left alone."""
        history = [
            RetryAttempt(attempt_number=1, timestamp=clock(), error_type=ErrorType.RATE_LIMIT)
        ]
        job = await self.failed(
            make_job, clock, "e1", "rate limit exceeded", processing_attempts=1, retry_history=history
        )
        result = await lifecycle.auto_requeue_transient_failures()
        assert result.skipped == {job.id: "rate_limit_cooldown"}

    async def test_old_failures_ignored(self, lifecycle, make_job, clock) -> None:
        """Failures created before the lookback window are not examined."""
        await self.failed(make_job, clock, "e1", "network error")
        clock.advance(31 * MINUTE)
        result = await lifecycle.auto_requeue_transient_failures()
        assert result.examined == 0

    async def test_batch_size_limits_examined(self, lifecycle, make_job, clock) -> None:
        """At most batch_size failures are examined per sweep."""
        for i in range(4):
            await self.failed(make_job, clock, f"e{i}", "network error")
        result = await lifecycle.auto_requeue_transient_failures(batch_size=2)
        assert result.examined == 2
        assert len(result.requeued) == 2
