"""
sluice.infrastructure.job_store - Job and Breaker Persistence
===============================================================

This module implements the store contract Sluice runs against: analysis jobs,
persisted circuit breaker status, and hourly error-metric buckets.

Architecture:

    ┌──────────────┐   insert/mutate   ┌──────────────────┐
    │  Admission   │ ────────────────→ │                  │
    │  Lifecycle   │                   │     JobStore     │
    │  Batch sweep │ ←──────────────── │                  │
    └──────────────┘   AnalysisJob     │  - jobs          │
                                       │  - breaker status│
    ┌──────────────┐   status/buckets  │  - hourly buckets│
    │ BreakerSvc   │ ────────────────→ │                  │
    └──────────────┘                   └──────────────────┘

Query Surface:
    jobs by id, by entity_id, by status, by (status, priority),
    by (status, created_at), by owner; breaker status by dependency;
    metrics buckets by (dependency, hour_window).

Atomicity:
    Every write is a single-record read-modify-write performed under a
    per-key lock. Admission is atomic per entity_id, which is what keeps
    "one active job per entity" true. There are no cross-record transactions.

Implementations:
    - JobStore (ABC):        Abstract interface
    - InMemoryJobStore:      Dict-based for dev/testing
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable, Optional

from sluice.core.enums import JobStatus, Priority
from sluice.core.exceptions import JobNotFoundError, StoreError
from sluice.core.models import AnalysisJob, CircuitBreakerStatus, ErrorMetricsBucket

logger = logging.getLogger(__name__)

# A job mutator receives a private copy of the current record and returns the
# updated record, or None to leave the record untouched.
JobMutator = Callable[[AnalysisJob], Optional[AnalysisJob]]
BucketMutator = Callable[[Optional[ErrorMetricsBucket]], ErrorMetricsBucket]

ACTIVE_STATUSES = (JobStatus.PROCESSING, JobStatus.COMPLETED)


# =============================================================================
# Abstract Base Class: JobStore
# =============================================================================
class JobStore(ABC):
    """Abstract base class for Sluice persistence implementations.

    Reads return private copies; mutating a returned record has no effect
    until it is written back through mutate_job().
    """

    async def connect(self) -> None:
        """Open any underlying connections."""

    async def disconnect(self) -> None:
        """Close any underlying connections."""

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------
    @abstractmethod
    async def insert_job_if_absent(self, job: AnalysisJob) -> tuple[AnalysisJob, bool]:
        """Insert a job unless its entity already has an active job.

        Args:
            job: The new job.

        Returns:
            (job, True) when inserted, or (existing_job, False) when a job
            with status PROCESSING or COMPLETED already exists for the entity.
        """
        ...

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[AnalysisJob]:
        """Return a job by id, or None."""
        ...

    @abstractmethod
    async def mutate_job(self, job_id: str, mutator: JobMutator) -> Optional[AnalysisJob]:
        """Atomically read-modify-write a single job.

        Args:
            job_id: The job to update.
            mutator: Receives a copy of the current record and returns the
                updated record, or None to abort without writing.

        Returns:
            The stored record after the write, or None if the mutator aborted.

        Raises:
            JobNotFoundError: The job does not exist.
            StoreError: The update would decrease processing_attempts or
                change the job id.
        """
        ...

    @abstractmethod
    async def reactivate_job(self, job_id: str, mutator: JobMutator) -> Optional[AnalysisJob]:
        """Atomically bring a terminal job back to an active status.

        Behaves like mutate_job, but runs under the same per-entity guard as
        insert_job_if_absent and aborts (returns None) when the entity
        already has another PROCESSING or COMPLETED job.

        Raises:
            JobNotFoundError: The job does not exist.
            StoreError: As for mutate_job.
        """
        ...

    @abstractmethod
    async def find_active_by_entity(self, entity_id: str) -> Optional[AnalysisJob]:
        """Return the PROCESSING or COMPLETED job for an entity, if any."""
        ...

    @abstractmethod
    async def list_by_entity(self, entity_id: str) -> list[AnalysisJob]:
        ...

    @abstractmethod
    async def list_by_status(self, status: JobStatus) -> list[AnalysisJob]:
        ...

    @abstractmethod
    async def list_by_status_priority(
        self, status: JobStatus, priority: Priority
    ) -> list[AnalysisJob]:
        ...

    @abstractmethod
    async def list_by_status_created(
        self,
        status: JobStatus,
        created_after: Optional[int] = None,
        created_before: Optional[int] = None,
    ) -> list[AnalysisJob]:
        """Jobs with a status whose created_at lies in [created_after, created_before)."""
        ...

    @abstractmethod
    async def list_by_owner(
        self, owner_id: str, status: Optional[JobStatus] = None
    ) -> list[AnalysisJob]:
        ...

    @abstractmethod
    async def count_by_status(self, status: JobStatus) -> int:
        ...

    # -------------------------------------------------------------------------
    # Circuit Breaker Status
    # -------------------------------------------------------------------------
    @abstractmethod
    async def get_breaker_status(self, dependency: str) -> Optional[CircuitBreakerStatus]:
        ...

    @abstractmethod
    async def save_breaker_status(self, status: CircuitBreakerStatus) -> None:
        """Persist a breaker status (last writer wins)."""
        ...

    @abstractmethod
    async def list_breaker_statuses(self) -> list[CircuitBreakerStatus]:
        ...

    # -------------------------------------------------------------------------
    # Hourly Error Metrics
    # -------------------------------------------------------------------------
    @abstractmethod
    async def merge_metrics_bucket(
        self, dependency: str, hour_window: int, mutator: BucketMutator
    ) -> ErrorMetricsBucket:
        """Atomically create or update the bucket for (dependency, hour_window)."""
        ...

    @abstractmethod
    async def list_metrics_buckets(
        self, dependency: str, since_hour: int
    ) -> list[ErrorMetricsBucket]:
        """Buckets for a dependency with hour_window >= since_hour, oldest first."""
        ...


# =============================================================================
# Keyed Locks
# =============================================================================
# One asyncio.Lock per record key. Idle locks are evicted once the registry
# grows past max_idle so the map stays bounded under high key churn.
# =============================================================================
class KeyedLocks:
    """Registry of per-key asyncio locks with bounded idle retention."""

    def __init__(self, max_idle: int = 1024) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._waiters: dict[str, int] = {}
        self._max_idle = max_idle

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._waiters[key] = self._waiters.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                del self._waiters[key]
            if len(self._locks) > self._max_idle:
                self._evict_idle()

    def _evict_idle(self) -> None:
        for key in [k for k in self._locks if k not in self._waiters]:
            del self._locks[key]


# =============================================================================
# In-Memory Implementation
# =============================================================================
# Key Data Structures:
#   _jobs:          dict[job_id, AnalysisJob]
#   _entity_index:  dict[entity_id, list[job_id]]
#   _breakers:      dict[dependency, CircuitBreakerStatus]
#   _buckets:       dict[(dependency, hour_window), ErrorMetricsBucket]
# =============================================================================
class InMemoryJobStore(JobStore):
    """In-memory store for development and testing.

    Data is lost when the process ends. Suitable for a single process only.

    Example:
        >>> store = InMemoryJobStore()
        >>> await store.connect()
        >>> job, created = await store.insert_job_if_absent(AnalysisJob(...))
    """

    def __init__(self) -> None:
        self._jobs: dict[str, AnalysisJob] = {}
        self._entity_index: dict[str, list[str]] = {}
        self._breakers: dict[str, CircuitBreakerStatus] = {}
        self._buckets: dict[tuple[str, int], ErrorMetricsBucket] = {}

        self._job_locks = KeyedLocks()
        self._entity_locks = KeyedLocks()
        self._bucket_locks = KeyedLocks()

        self._connected: bool = False

    # -------------------------------------------------------------------------
    # Connection Lifecycle
    # -------------------------------------------------------------------------
    async def connect(self) -> None:
        self._connected = True
        logger.info("InMemoryJobStore connected")

    async def disconnect(self) -> None:
        self._connected = False
        logger.info("InMemoryJobStore disconnected (%d jobs retained)", len(self._jobs))

    @property
    def is_connected(self) -> bool:
        return self._connected

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------
    async def insert_job_if_absent(self, job: AnalysisJob) -> tuple[AnalysisJob, bool]:
        async with self._entity_locks.hold(job.entity_id):
            existing = self._find_active(job.entity_id)
            if existing is not None:
                return existing.model_copy(deep=True), False
            if job.id in self._jobs:
                raise StoreError(
                    message=f"Duplicate job id: {job.id}",
                    error_code="DUPLICATE_JOB_ID",
                    details={"job_id": job.id},
                )
            self._jobs[job.id] = job.model_copy(deep=True)
            self._entity_index.setdefault(job.entity_id, []).append(job.id)
            logger.debug(
                "Inserted job %s (entity=%s, priority=%s)",
                job.id,
                job.entity_id,
                job.priority.value,
            )
            return job.model_copy(deep=True), True

    async def get_job(self, job_id: str) -> Optional[AnalysisJob]:
        job = self._jobs.get(job_id)
        return job.model_copy(deep=True) if job is not None else None

    async def mutate_job(self, job_id: str, mutator: JobMutator) -> Optional[AnalysisJob]:
        async with self._job_locks.hold(job_id):
            return self._apply_mutation(job_id, mutator)

    async def reactivate_job(self, job_id: str, mutator: JobMutator) -> Optional[AnalysisJob]:
        current = self._jobs.get(job_id)
        if current is None:
            raise JobNotFoundError(job_id)
        async with self._entity_locks.hold(current.entity_id):
            if self._find_active(current.entity_id) is not None:
                logger.debug(
                    "Reactivation of job %s refused: entity %s is active",
                    job_id,
                    current.entity_id,
                )
                return None
            async with self._job_locks.hold(job_id):
                return self._apply_mutation(job_id, mutator)

    def _apply_mutation(self, job_id: str, mutator: JobMutator) -> Optional[AnalysisJob]:
        current = self._jobs.get(job_id)
        if current is None:
            raise JobNotFoundError(job_id)

        updated = mutator(current.model_copy(deep=True))
        if updated is None:
            return None

        if updated.id != current.id or updated.entity_id != current.entity_id:
            raise StoreError(
                message=f"Mutation may not change identity of job {job_id}",
                error_code="IDENTITY_CHANGED",
                details={"job_id": job_id},
            )
        if updated.processing_attempts < current.processing_attempts:
            raise StoreError(
                message=f"processing_attempts may not decrease for job {job_id}",
                error_code="ATTEMPTS_DECREASED",
                details={
                    "job_id": job_id,
                    "current": current.processing_attempts,
                    "attempted": updated.processing_attempts,
                },
            )

        self._jobs[job_id] = updated.model_copy(deep=True)
        logger.debug("Updated job %s (status=%s)", job_id, updated.status.value)
        return updated

    async def find_active_by_entity(self, entity_id: str) -> Optional[AnalysisJob]:
        job = self._find_active(entity_id)
        return job.model_copy(deep=True) if job is not None else None

    async def list_by_entity(self, entity_id: str) -> list[AnalysisJob]:
        return [
            self._jobs[job_id].model_copy(deep=True)
            for job_id in self._entity_index.get(entity_id, [])
        ]

    async def list_by_status(self, status: JobStatus) -> list[AnalysisJob]:
        return self._select(lambda job: job.status == status)

    async def list_by_status_priority(
        self, status: JobStatus, priority: Priority
    ) -> list[AnalysisJob]:
        return self._select(lambda job: job.status == status and job.priority == priority)

    async def list_by_status_created(
        self,
        status: JobStatus,
        created_after: Optional[int] = None,
        created_before: Optional[int] = None,
    ) -> list[AnalysisJob]:
        def matches(job: AnalysisJob) -> bool:
            if job.status != status:
                return False
            if created_after is not None and job.created_at < created_after:
                return False
            if created_before is not None and job.created_at >= created_before:
                return False
            return True

        return self._select(matches)

    async def list_by_owner(
        self, owner_id: str, status: Optional[JobStatus] = None
    ) -> list[AnalysisJob]:
        return self._select(
            lambda job: job.owner_id == owner_id and (status is None or job.status == status)
        )

    async def count_by_status(self, status: JobStatus) -> int:
        return sum(1 for job in self._jobs.values() if job.status == status)

    def _find_active(self, entity_id: str) -> Optional[AnalysisJob]:
        for job_id in self._entity_index.get(entity_id, []):
            job = self._jobs[job_id]
            if job.status in ACTIVE_STATUSES:
                return job
        return None

    def _select(self, predicate: Callable[[AnalysisJob], bool]) -> list[AnalysisJob]:
        return [job.model_copy(deep=True) for job in self._jobs.values() if predicate(job)]

    # -------------------------------------------------------------------------
    # Circuit Breaker Status
    # -------------------------------------------------------------------------
    async def get_breaker_status(self, dependency: str) -> Optional[CircuitBreakerStatus]:
        status = self._breakers.get(dependency)
        return status.model_copy(deep=True) if status is not None else None

    async def save_breaker_status(self, status: CircuitBreakerStatus) -> None:
        self._breakers[status.dependency] = status.model_copy(deep=True)
        logger.debug(
            "Saved breaker status: %s (state=%s, failures=%d)",
            status.dependency,
            status.state.value,
            status.failure_count,
        )

    async def list_breaker_statuses(self) -> list[CircuitBreakerStatus]:
        return [status.model_copy(deep=True) for status in self._breakers.values()]

    # -------------------------------------------------------------------------
    # Hourly Error Metrics
    # -------------------------------------------------------------------------
    async def merge_metrics_bucket(
        self, dependency: str, hour_window: int, mutator: BucketMutator
    ) -> ErrorMetricsBucket:
        key = (dependency, hour_window)
        async with self._bucket_locks.hold(f"{dependency}:{hour_window}"):
            current = self._buckets.get(key)
            updated = mutator(current.model_copy(deep=True) if current is not None else None)
            self._buckets[key] = updated.model_copy(deep=True)
            return updated

    async def list_metrics_buckets(
        self, dependency: str, since_hour: int
    ) -> list[ErrorMetricsBucket]:
        buckets = [
            bucket.model_copy(deep=True)
            for (dep, hour), bucket in self._buckets.items()
            if dep == dependency and hour >= since_hour
        ]
        return sorted(buckets, key=lambda b: b.hour_window)
