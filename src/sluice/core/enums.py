"""
sluice.core.enums - Type-Safe Enumerations
============================================

This module defines every enumeration used across Sluice. Like the rest of
the core layer it carries no behaviour beyond small ordering helpers.

All enums inherit from both `str` and `Enum`, which means:
    - They serialize to strings in JSON/YAML (Pydantic-friendly)
    - They can be compared with plain strings: Priority.URGENT == "urgent"
    - They can be used as keys in YAML-loaded configuration mappings

Concept Mapping:

    ┌─────────────────────────────────────────────────────────────────┐
    │  SCHEDULING                                                     │
    │    Priority, JobStatus, UserTier, EnqueueStatus, CancelStatus   │
    │    BackpressureLevel, NotificationType                          │
    ├─────────────────────────────────────────────────────────────────┤
    │  RESILIENCE                                                     │
    │    ErrorType, CircuitState, JitterType, EscalationReason        │
    │    BudgetRecommendation, AlertLevel                             │
    ├─────────────────────────────────────────────────────────────────┤
    │  TERMINAL FAILURES                                              │
    │    DeadLetterCategory                                           │
    └─────────────────────────────────────────────────────────────────┘
"""

from enum import Enum


# =============================================================================
# Priority
# =============================================================================
# Priorities are totally ordered: URGENT > HIGH > NORMAL. The ordinal `rank`
# is the same number used in the dequeue weight formula.
# =============================================================================
class Priority(str, Enum):
    """Urgency tag for an analysis job.

    The priority drives three things: the initial scheduling delay, the
    per-priority retry ceiling, and the dequeue weight.

    Usage:
        >>> Priority.URGENT.rank > Priority.NORMAL.rank
        True
        >>> Priority("high") is Priority.HIGH
        True
    """

    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"

    @property
    def rank(self) -> int:
        """Ordinal value: normal=1, high=2, urgent=3."""
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.NORMAL: 1,
    Priority.HIGH: 2,
    Priority.URGENT: 3,
}


# =============================================================================
# Job Status
# =============================================================================
# A job is "processing" from admission until it either completes or fails.
# Whether it has actually been picked up is tracked by processing_started_at,
# not by a separate status value.
# =============================================================================
class JobStatus(str, Enum):
    """Lifecycle status of an AnalysisJob.

    State Machine:
        PROCESSING → COMPLETED
        PROCESSING → FAILED      (cancel, dead-letter, purge)
        FAILED     → PROCESSING  (auto-requeue of transient failures only)
    """

    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class UserTier(str, Enum):
    """Subscription tier of the job owner, used by priority assessment."""

    FREE = "free"
    PREMIUM = "premium"


# =============================================================================
# Error Taxonomy
# =============================================================================
class ErrorType(str, Enum):
    """Closed set of error categories produced by the classifier.

    VALIDATION and AUTHENTICATION are client-side problems and are never
    retried. UNKNOWN is treated as service-level (it trips the breaker).
    """

    TIMEOUT = "timeout"
    NETWORK = "network"
    RATE_LIMIT = "rate_limit"
    SERVICE_ERROR = "service_error"
    VALIDATION = "validation"
    AUTHENTICATION = "authentication"
    UNKNOWN = "unknown"


# =============================================================================
# Circuit Breaker State
# =============================================================================
#   CLOSED    → normal operation, calls pass through
#   OPEN      → too many failures, calls are rejected
#   HALF_OPEN → testing recovery with a limited number of probes
# =============================================================================
class CircuitState(str, Enum):
    """States of the per-dependency circuit breaker."""

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class JitterType(str, Enum):
    """Randomization strategy applied to a retry backoff delay."""

    FULL = "full"
    EQUAL = "equal"
    EXPONENTIAL = "exponential"
    DECORRELATED = "decorrelated"


class EscalationReason(str, Enum):
    """Why the retry engine refused to retry a job."""

    NON_RECOVERABLE = "non_recoverable"
    RETRIES_EXHAUSTED = "retries_exhausted"
    BREAKER_OPEN = "breaker_open"
    PERSISTENT_ERROR_PATTERN = "persistent_error_pattern"
    HIGH_FAILURE_RATE = "high_failure_rate"
    SEVERE_BACKOFF = "severe_backoff"
    LOW_SUCCESS_RATE = "low_success_rate"
    RATE_LIMIT_COOLDOWN = "rate_limit_cooldown"
    RETRY_BUDGET_EXHAUSTED = "retry_budget_exhausted"


class BudgetRecommendation(str, Enum):
    """Coarse verdict of the retry budget manager."""

    ALLOW = "allow"
    THROTTLE = "throttle"
    REJECT = "reject"


class AlertLevel(str, Enum):
    """Severity of a circuit breaker health alert."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class DeadLetterCategory(str, Enum):
    """Triage category attached to every dead-lettered job."""

    MAX_RETRIES_EXCEEDED = "max_retries_exceeded"
    NON_RECOVERABLE_ERROR = "non_recoverable_error"
    CIRCUIT_BREAKER_TRIGGERED = "circuit_breaker_triggered"
    RETRY_BUDGET_EXHAUSTED = "retry_budget_exhausted"
    PERMANENT_FAILURE = "permanent_failure"


# =============================================================================
# Operation Outcomes
# =============================================================================
# These are returned on result models instead of being raised, because they
# are normal answers rather than faults.
# =============================================================================
class EnqueueStatus(str, Enum):
    """Outcome of an enqueue request."""

    QUEUED = "queued"
    ALREADY_QUEUED = "already_queued"
    ALREADY_ANALYZED = "already_analyzed"
    QUEUE_FULL = "queue_full"


class RequeueStatus(str, Enum):
    """Outcome of a failure callback handled by the lifecycle manager."""

    REQUEUED = "requeued"
    FALLBACK_PROCESSED = "fallback_processed"
    DEAD_LETTERED = "dead_lettered"
    IGNORED = "ignored"


class CancelStatus(str, Enum):
    """Outcome of a user cancellation."""

    CANCELLED = "cancelled"
    CANNOT_CANCEL = "cannot_cancel"
    ALREADY_CANCELLED = "already_cancelled"


class NotificationType(str, Enum):
    """Kinds of owner-facing status notifications."""

    FAILURE = "failure"
    REQUEUE = "requeue"
    DEAD_LETTER = "dead_letter"


class BackpressureLevel(str, Enum):
    """Load level derived from queue and concurrency utilization."""

    NONE = "none"
    LIGHT = "light"
    MODERATE = "moderate"
    HEAVY = "heavy"
    CRITICAL = "critical"
