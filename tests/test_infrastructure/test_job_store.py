"""
Tests for sluice.infrastructure.job_store
===========================================

InMemoryJobStore is the reference implementation of the store contract:
atomic per-entity admission, single-record read-modify-write with invariant
guards, secondary-index queries, breaker status and hourly buckets.
"""

import asyncio

import pytest

from sluice.core.enums import JobStatus, Priority
from sluice.core.exceptions import JobNotFoundError, StoreError
from sluice.core.models import AnalysisJob, CircuitBreakerStatus, ErrorMetricsBucket
from sluice.infrastructure.job_store import KeyedLocks


def new_job(entity_id: str = "entry-1", owner_id: str = "user-1", **fields) -> AnalysisJob:
    return AnalysisJob(entity_id=entity_id, owner_id=owner_id, **fields)


# =============================================================================
# Test: Insert and Lookup
# =============================================================================
class TestInsert:
    """insert_job_if_absent() keeps one active job per entity."""

    async def test_insert_and_get(self, store) -> None:
        """A stored job can be read back by id."""
        job, created = await store.insert_job_if_absent(new_job())
        assert created
        assert (await store.get_job(job.id)) == job

    async def test_second_insert_returns_existing(self, store) -> None:
        """A PROCESSING job blocks a new one for the same entity."""
        first, _ = await store.insert_job_if_absent(new_job())
        existing, created = await store.insert_job_if_absent(new_job())
        assert not created
        assert existing.id == first.id

    async def test_completed_job_also_blocks(self, store) -> None:
        """COMPLETED counts as active for idempotency."""
        await store.insert_job_if_absent(new_job(status=JobStatus.COMPLETED))
        _, created = await store.insert_job_if_absent(new_job())
        assert not created

    async def test_failed_job_does_not_block(self, store) -> None:
        """A FAILED job leaves room for a fresh one."""
        await store.insert_job_if_absent(new_job(status=JobStatus.FAILED))
        _, created = await store.insert_job_if_absent(new_job())
        assert created
        assert len(await store.list_by_entity("entry-1")) == 2

    async def test_concurrent_inserts_create_one(self, store) -> None:
        """Racing admissions for one entity create exactly one job."""
        results = await asyncio.gather(*(store.insert_job_if_absent(new_job()) for _ in range(10)))
        assert sum(1 for _, created in results if created) == 1

    async def test_duplicate_id_rejected(self, store) -> None:
        """Reusing a job id for another entity is a store error."""
        job, _ = await store.insert_job_if_absent(new_job())
        with pytest.raises(StoreError) as exc_info:
            await store.insert_job_if_absent(new_job(entity_id="entry-2", id=job.id))
        assert exc_info.value.error_code == "DUPLICATE_JOB_ID"

    async def test_reads_are_copies(self, store) -> None:
        """Mutating a returned record does not touch the store."""
        job, _ = await store.insert_job_if_absent(new_job())
        job.priority = Priority.URGENT
        assert (await store.get_job(job.id)).priority == Priority.NORMAL

    async def test_unknown_job_is_none(self, store) -> None:
        """get_job() returns None for unknown ids."""
        assert await store.get_job("job-missing") is None


# =============================================================================
# Test: Mutation
# =============================================================================
class TestMutate:
    """mutate_job() is an atomic, guarded read-modify-write."""

    async def test_mutation_is_applied(self, store) -> None:
        """The mutator's return value is stored."""
        job, _ = await store.insert_job_if_absent(new_job())

        def bump(current: AnalysisJob) -> AnalysisJob:
            current.processing_attempts += 1
            return current

        updated = await store.mutate_job(job.id, bump)
        assert updated.processing_attempts == 1
        assert (await store.get_job(job.id)).processing_attempts == 1

    async def test_none_aborts(self, store) -> None:
        """Returning None leaves the record untouched."""
        job, _ = await store.insert_job_if_absent(new_job())
        assert await store.mutate_job(job.id, lambda current: None) is None
        assert (await store.get_job(job.id)) == job

    async def test_attempts_may_not_decrease(self, store) -> None:
        """Lowering processing_attempts is rejected."""
        job, _ = await store.insert_job_if_absent(new_job(processing_attempts=2))

        def rewind(current: AnalysisJob) -> AnalysisJob:
            current.processing_attempts = 1
            return current

        with pytest.raises(StoreError) as exc_info:
            await store.mutate_job(job.id, rewind)
        assert exc_info.value.error_code == "ATTEMPTS_DECREASED"
        assert (await store.get_job(job.id)).processing_attempts == 2

    async def test_identity_may_not_change(self, store) -> None:
        """Changing entity_id is rejected."""
        job, _ = await store.insert_job_if_absent(new_job())

        def move(current: AnalysisJob) -> AnalysisJob:
            current.entity_id = "entry-2"
            return current

        with pytest.raises(StoreError) as exc_info:
            await store.mutate_job(job.id, move)
        assert exc_info.value.error_code == "IDENTITY_CHANGED"

    async def test_unknown_job_raises(self, store) -> None:
        """Mutating an unknown id raises JobNotFoundError."""
        with pytest.raises(JobNotFoundError):
            await store.mutate_job("job-missing", lambda current: current)

    async def test_concurrent_increments_are_serialized(self, store) -> None:
        """Per-record locking loses no updates."""
        job, _ = await store.insert_job_if_absent(new_job())

        def bump(current: AnalysisJob) -> AnalysisJob:
            current.processing_attempts += 1
            return current

        await asyncio.gather(*(store.mutate_job(job.id, bump) for _ in range(25)))
        assert (await store.get_job(job.id)).processing_attempts == 25


# =============================================================================
# Test: Reactivation
# =============================================================================
def reopen(current: AnalysisJob) -> AnalysisJob:
    current.status = JobStatus.PROCESSING
    current.processing_attempts += 1
    return current


class TestReactivate:
    """reactivate_job() never creates a second active job for an entity."""

    async def test_failed_job_reactivated(self, store) -> None:
        """With the entity free the mutation is applied."""
        job, _ = await store.insert_job_if_absent(new_job(status=JobStatus.FAILED))
        revived = await store.reactivate_job(job.id, reopen)
        assert revived.status == JobStatus.PROCESSING
        assert revived.processing_attempts == 1

    async def test_refused_when_entity_active(self, store) -> None:
        """Another active job for the entity aborts the reactivation."""
        failed, _ = await store.insert_job_if_absent(new_job(status=JobStatus.FAILED))
        await store.insert_job_if_absent(new_job())
        assert await store.reactivate_job(failed.id, reopen) is None
        assert (await store.get_job(failed.id)).status == JobStatus.FAILED

    async def test_racing_insert_leaves_one_active_job(self, store) -> None:
        """Reactivation and admission for one entity cannot both win."""
        failed, _ = await store.insert_job_if_absent(new_job(status=JobStatus.FAILED))
        await asyncio.gather(
            store.reactivate_job(failed.id, reopen),
            store.insert_job_if_absent(new_job()),
        )
        jobs = await store.list_by_entity("entry-1")
        active = [job for job in jobs if job.status in (JobStatus.PROCESSING, JobStatus.COMPLETED)]
        assert len(active) == 1

    async def test_unknown_job_raises(self, store) -> None:
        """Reactivating an unknown id raises JobNotFoundError."""
        with pytest.raises(JobNotFoundError):
            await store.reactivate_job("job-missing", reopen)


# =============================================================================
# Test: Queries
# =============================================================================
class TestQueries:
    """Secondary-index style lookups."""

    async def test_status_and_priority_queries(self, store) -> None:
        """Jobs can be filtered by status and by (status, priority)."""
        await store.insert_job_if_absent(new_job("a", priority=Priority.URGENT))
        await store.insert_job_if_absent(new_job("b"))
        await store.insert_job_if_absent(new_job("c", status=JobStatus.FAILED))
        assert len(await store.list_by_status(JobStatus.PROCESSING)) == 2
        assert await store.count_by_status(JobStatus.FAILED) == 1
        urgent = await store.list_by_status_priority(JobStatus.PROCESSING, Priority.URGENT)
        assert [job.entity_id for job in urgent] == ["a"]

    async def test_created_range(self, store) -> None:
        """list_by_status_created() is half-open: [after, before)."""
        for entity, created in (("a", 100), ("b", 200), ("c", 300)):
            await store.insert_job_if_absent(new_job(entity, status=JobStatus.FAILED, created_at=created))
        jobs = await store.list_by_status_created(JobStatus.FAILED, created_after=200, created_before=300)
        assert [job.entity_id for job in jobs] == ["b"]

    async def test_owner_query(self, store) -> None:
        """list_by_owner() optionally filters by status."""
        await store.insert_job_if_absent(new_job("a", owner_id="alice"))
        await store.insert_job_if_absent(new_job("b", owner_id="alice", status=JobStatus.FAILED))
        await store.insert_job_if_absent(new_job("c", owner_id="bob"))
        assert len(await store.list_by_owner("alice")) == 2
        assert len(await store.list_by_owner("alice", JobStatus.FAILED)) == 1

    async def test_find_active_by_entity(self, store) -> None:
        """Only PROCESSING or COMPLETED jobs are active."""
        await store.insert_job_if_absent(new_job(status=JobStatus.FAILED))
        assert await store.find_active_by_entity("entry-1") is None
        job, _ = await store.insert_job_if_absent(new_job())
        assert (await store.find_active_by_entity("entry-1")).id == job.id


# =============================================================================
# Test: Breaker Status and Metrics Buckets
# =============================================================================
class TestBreakerAndMetrics:
    """Persisted breaker status and hourly buckets."""

    async def test_breaker_status_last_writer_wins(self, store) -> None:
        """save_breaker_status() overwrites the previous record."""
        await store.save_breaker_status(CircuitBreakerStatus(dependency="d", failure_count=1))
        await store.save_breaker_status(CircuitBreakerStatus(dependency="d", failure_count=4))
        assert (await store.get_breaker_status("d")).failure_count == 4
        assert len(await store.list_breaker_statuses()) == 1

    async def test_merge_bucket_creates_then_updates(self, store) -> None:
        """The mutator sees None first, then the stored bucket."""

        def add_error(bucket):
            bucket = bucket or ErrorMetricsBucket(dependency="d", hour_window=10)
            bucket.error_count += 1
            return bucket

        await store.merge_metrics_bucket("d", 10, add_error)
        merged = await store.merge_metrics_bucket("d", 10, add_error)
        assert merged.error_count == 2

    async def test_list_buckets_since(self, store) -> None:
        """Buckets are filtered by hour and returned oldest first."""
        for hour in (12, 10, 11):
            await store.merge_metrics_bucket(
                "d", hour, lambda bucket, h=hour: ErrorMetricsBucket(dependency="d", hour_window=h)
            )
        buckets = await store.list_metrics_buckets("d", 11)
        assert [b.hour_window for b in buckets] == [11, 12]


# =============================================================================
# Test: Connection and Locks
# =============================================================================
class TestLifecycleAndLocks:
    """connect()/disconnect() and the keyed lock registry."""

    async def test_connect_disconnect(self, store) -> None:
        """is_connected follows connect() and disconnect()."""
        assert not store.is_connected
        await store.connect()
        assert store.is_connected
        await store.disconnect()
        assert not store.is_connected

    async def test_idle_locks_are_evicted(self) -> None:
        """The registry shrinks back once it passes max_idle."""
        locks = KeyedLocks(max_idle=2)
        for key in ("a", "b", "c", "d"):
            async with locks.hold(key):
                pass
        assert len(locks) <= 2
