"""
sluice.core.models - Core Data Models
=======================================

This module defines the Pydantic records that the store persists and that
every layer of Sluice passes around.

Model Overview:
    AnalysisJob             → One analysis request for one entity
    RetryAttempt            → One failed attempt in a job's bounded history
    CircuitBreakerSnapshot  → Typed, versioned breaker view embedded in a job
    CircuitBreakerStatus    → Persisted breaker state, one per dependency
    ErrorMetricsBucket      → Hourly success/error counters per dependency

Data Flow:
    ┌───────────┐  AnalysisJob   ┌──────────────┐  RetryAttempt   ┌──────────┐
    │ Admission │ ─────────────→ │   JobStore   │ ←────────────── │ Lifecycle│
    └───────────┘                └──────────────┘                 └──────────┘
                                        ↑
                CircuitBreakerStatus    │    ErrorMetricsBucket
                        ┌──────────────────────────┐
                        │   CircuitBreakerService  │
                        └──────────────────────────┘

Time Representation:
    All timestamps are integer milliseconds since the Unix epoch. Services
    accept an injectable clock so tests can drive time explicitly.
"""

from __future__ import annotations

import time
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from sluice.core.enums import (
    CircuitState,
    DeadLetterCategory,
    ErrorType,
    JitterType,
    JobStatus,
    Priority,
)


# =============================================================================
# Helpers
# =============================================================================
HOUR_MS = 3_600_000


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)


def hour_window(timestamp_ms: int) -> int:
    """Index of the hourly metrics bucket containing a timestamp."""
    return timestamp_ms // HOUR_MS


def _generate_job_id() -> str:
    """Generate a unique job identifier such as "job-a1b2c3d4-...".

    UUID4 is random, so ids stay unique without a central allocator.
    """
    return f"job-{uuid4()}"


# =============================================================================
# Retry History
# =============================================================================
class RetryAttempt(BaseModel):
    """One failed processing attempt, kept in a job's bounded history.

    The retry engine reads the recent history to adapt the backoff factor and
    to reject retries that follow a persistent failure pattern.

    Attributes:
        attempt_number: 1-based attempt index.
        timestamp: When the failure was recorded.
        delay_ms: Backoff delay chosen for the retry that followed.
        error_type: Classified error category.
        error_message: Raw error text (truncated by the lifecycle manager).
        circuit_state_at_time: Breaker state when the failure was recorded.
        jitter_type: Jitter strategy used for the chosen delay.
        adaptive_backoff_factor: Adaptive multiplier used for the delay.
    """

    attempt_number: int = Field(ge=1, description="1-based attempt index")
    timestamp: int = Field(description="Epoch ms when the failure was recorded")
    delay_ms: int = Field(default=0, ge=0, description="Backoff delay chosen after this failure")
    error_type: ErrorType = Field(description="Classified error category")
    error_message: str = Field(default="", description="Raw error text")
    circuit_state_at_time: CircuitState = Field(
        default=CircuitState.CLOSED,
        description="Circuit breaker state at the time of failure",
    )
    jitter_type: Optional[JitterType] = Field(default=None, description="Jitter strategy used")
    adaptive_backoff_factor: float = Field(default=1.0, ge=0.0, description="Adaptive multiplier used")


# =============================================================================
# Circuit Breaker Snapshot (embedded in jobs)
# =============================================================================
class CircuitBreakerSnapshot(BaseModel):
    """Typed view of a breaker, captured onto a job when it is requeued.

    The schema_version field lets readers recognise older snapshots if the
    shape ever changes.
    """

    schema_version: int = Field(default=1, description="Snapshot schema version")
    dependency: str = Field(description="Dependency name the breaker guards")
    state: CircuitState = Field(default=CircuitState.CLOSED)
    failure_count: int = Field(default=0, ge=0)
    last_reset_at: Optional[int] = Field(default=None, description="When the breaker last closed")
    captured_at: int = Field(default_factory=now_ms)


# =============================================================================
# Analysis Job
# =============================================================================
class AnalysisJob(BaseModel):
    """One analysis request for one entity.

    Invariants:
        - At most one job with status PROCESSING or COMPLETED per entity_id.
        - processing_attempts never decreases (the store rejects such writes).
        - priority only moves toward URGENT unless explicitly overridden.

    A job is "pending" while status is PROCESSING and processing_started_at
    is unset, and "in flight" once processing_started_at is set.

    Example:
        >>> job = AnalysisJob(entity_id="entry-1", owner_id="user-1")
        >>> job.status
        <JobStatus.PROCESSING: 'processing'>
    """

    id: str = Field(default_factory=_generate_job_id, description="Unique job identifier")
    entity_id: str = Field(description="Logical entry this job analyzes")
    owner_id: str = Field(description="Owner of the entity")
    status: JobStatus = Field(default=JobStatus.PROCESSING)
    priority: Priority = Field(default=Priority.NORMAL)

    created_at: int = Field(default_factory=now_ms, description="When the job was admitted")
    queued_at: int = Field(default_factory=now_ms, description="When the job was last (re)queued")
    processing_started_at: Optional[int] = Field(default=None, description="When a worker picked it up")
    next_attempt_at: Optional[int] = Field(
        default=None,
        description="When the most recently scheduled execution is due",
    )
    completed_at: Optional[int] = Field(default=None)
    failed_at: Optional[int] = Field(default=None)
    updated_at: int = Field(default_factory=now_ms)

    processing_attempts: int = Field(default=0, ge=0, description="Failed attempts so far")
    queue_position: int = Field(default=0, ge=0, description="Position assigned on admission")
    estimated_completion_at: Optional[int] = Field(default=None)
    total_processing_time_ms: Optional[int] = Field(default=None)

    last_error_message: Optional[str] = Field(default=None)
    last_error_type: Optional[ErrorType] = Field(default=None)
    retry_history: list[RetryAttempt] = Field(default_factory=list)
    circuit_breaker_snapshot: Optional[CircuitBreakerSnapshot] = Field(default=None)

    fallback_used: bool = Field(default=False)
    fallback_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)

    dead_letter: bool = Field(default=False)
    dead_letter_reason: Optional[str] = Field(default=None)
    dead_letter_category: Optional[DeadLetterCategory] = Field(default=None)
    dead_letter_at: Optional[int] = Field(default=None)
    dead_letter_metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status != JobStatus.PROCESSING

    @property
    def is_pending(self) -> bool:
        return self.status == JobStatus.PROCESSING and self.processing_started_at is None

    @property
    def is_in_flight(self) -> bool:
        return self.status == JobStatus.PROCESSING and self.processing_started_at is not None

    def wait_time_ms(self, now: int) -> int:
        """Milliseconds since the job was last queued (never negative)."""
        return max(0, now - self.queued_at)


# =============================================================================
# Persisted Circuit Breaker Status
# =============================================================================
class CircuitBreakerStatus(BaseModel):
    """Persisted state of one dependency's circuit breaker.

    Written through by CircuitBreakerService on every success, failure and
    forced transition, and read back on startup to rehydrate the breaker.
    """

    dependency: str = Field(description="Dependency name")
    state: CircuitState = Field(default=CircuitState.CLOSED)
    failure_count: int = Field(default=0, ge=0)
    half_open_successes: int = Field(default=0, ge=0)
    recent_failures: list[int] = Field(
        default_factory=list,
        description="Failure timestamps inside the monitoring window",
    )
    last_failure_at: Optional[int] = Field(default=None)
    next_attempt_at: Optional[int] = Field(default=None, description="Only meaningful while OPEN")
    last_reset_at: Optional[int] = Field(default=None)
    updated_at: int = Field(default_factory=now_ms)

    @property
    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN


# =============================================================================
# Hourly Error Metrics
# =============================================================================
class ErrorMetricsBucket(BaseModel):
    """Success/error counters for one dependency during one hour.

    Buckets are merge-only: the service updates the current hour's bucket and
    never rewrites earlier ones.
    """

    dependency: str
    hour_window: int = Field(description="floor(epoch_ms / 3_600_000)")
    error_count: int = Field(default=0, ge=0)
    success_count: int = Field(default=0, ge=0)
    avg_processing_time_ms: Optional[float] = Field(default=None, ge=0.0)
    timed_samples: int = Field(default=0, ge=0, description="Samples behind the running average")

    @property
    def total(self) -> int:
        return self.error_count + self.success_count
