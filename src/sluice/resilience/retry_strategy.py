"""
sluice.resilience.retry_strategy - Adaptive Retry Strategy Engine
===================================================================

Decides whether a failed job should be retried, at what priority, and after
how long. The engine is deterministic except for jitter, which draws from an
injectable random.Random.

Decision Pipeline:

    error ──→ 1. classify ──→ 2. per-type policy
                                   │  max_retries = min(type, priority)
                                   ▼
              3. adaptive backoff factor (history + circuit state, cap 5.0)
                                   │
                                   ▼
              4. admissibility gate ──── rejected ──→ escalation reason
                                   │                  + fallback signal
                                   ▼ admitted
              5. priority escalation (service errors escalate sooner)
                                   │
                                   ▼
              6. delay = base × type × service/client × adaptive × discount
              7. jitter (full / equal / exponential-beta / decorrelated)
                 clamp to [max(floor, 5% of base), max_retry_delay]

Jitter Selection:
    service_error or HALF_OPEN → decorrelated
    rate_limit                 → equal
    network / timeout          → exponential (beta-distributed multiplier)
    anything else              → full

Usage:
    >>> engine = RetryStrategyEngine()
    >>> decision = engine.evaluate(Priority.NORMAL, "Rate limit exceeded", retry_count=1)
    >>> decision.should_retry, decision.jitter_type
    (True, <JitterType.EQUAL: 'equal'>)
"""

from __future__ import annotations

import random
from typing import Callable, Optional

import structlog
from pydantic import BaseModel, Field

from sluice.core.config import ErrorTypePolicy, RetryConfig
from sluice.core.enums import CircuitState, ErrorType, EscalationReason, JitterType, Priority
from sluice.core.models import AnalysisJob, RetryAttempt, now_ms
from sluice.resilience.classification import ErrorClassification, ErrorLike, classify


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()


# =============================================================================
# Tuning Constants
# =============================================================================
RECENT_WINDOW = 5
MAX_ADAPTIVE_FACTOR = 5.0
FAST_RETRY_GAP_MS = 30_000
SEVERE_BACKOFF_MS = 60_000
RATE_LIMIT_COOLDOWN_MS = 30_000
SERVICE_ERROR_WINDOW_MS = 300_000
LOW_SUCCESS_RATE = 0.10
DENSITY_PERIOD_MS = 30_000


# =============================================================================
# Models
# =============================================================================
class RetryContext(BaseModel):
    """Everything the engine considers for one failed attempt.

    Attributes:
        priority: Current job priority.
        error: Raw error message from the worker.
        retry_count: Failed attempts before this one (job.processing_attempts).
        circuit_state: State of the dependency's breaker, if known.
        retry_history: Prior failed attempts, oldest first.
        last_attempt_at: When the previous attempt failed.
        recent_success_rate: Dependency success fraction over the last 24h,
            if the caller has one.
    """

    job_id: Optional[str] = None
    priority: Priority = Priority.NORMAL
    original_priority: Optional[Priority] = None
    error: str = ""
    retry_count: int = Field(default=0, ge=0)
    circuit_state: Optional[CircuitState] = None
    retry_history: list[RetryAttempt] = Field(default_factory=list)
    last_attempt_at: Optional[int] = None
    total_wait_time_ms: int = Field(default=0, ge=0)
    recent_success_rate: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class RetryDecision(BaseModel):
    """Outcome of RetryStrategyEngine.decide().

    When should_retry is False, escalation_reason and escalation_message say
    why, and fallback_recommended tells the lifecycle manager whether to ask
    the fallback collaborator before dead-lettering.
    """

    should_retry: bool
    new_priority: Priority
    backoff_delay_ms: int = Field(default=0, ge=0)
    max_retries: int = Field(ge=0)
    error_classification: ErrorClassification
    adaptive_backoff_factor: float = 1.0
    jitter_type: Optional[JitterType] = None
    circuit_state: CircuitState = CircuitState.CLOSED
    escalation_reason: Optional[EscalationReason] = None
    escalation_message: Optional[str] = None
    fallback_recommended: bool = False

    @property
    def fallback_eligible(self) -> bool:
        return self.error_classification.fallback_eligible


# =============================================================================
# Jitter
# =============================================================================
def select_jitter(error_type: ErrorType, circuit_state: Optional[CircuitState]) -> JitterType:
    """Pick the jitter strategy for an error type and breaker state."""
    if error_type == ErrorType.SERVICE_ERROR or circuit_state == CircuitState.HALF_OPEN:
        return JitterType.DECORRELATED
    if error_type == ErrorType.RATE_LIMIT:
        return JitterType.EQUAL
    if error_type in (ErrorType.NETWORK, ErrorType.TIMEOUT):
        return JitterType.EXPONENTIAL
    return JitterType.FULL


def apply_jitter(
    jitter_type: JitterType,
    delay: float,
    floor: float,
    retry_count: int,
    previous_delay: Optional[float],
    rng: random.Random,
) -> float:
    """Perturb a delay according to a jitter strategy (before clamping).

    Args:
        jitter_type: Strategy from select_jitter().
        delay: Pre-jitter delay in ms.
        floor: Lower clamp that full jitter draws from.
        retry_count: Sharpens the exponential-beta distribution.
        previous_delay: Last chosen delay, used by decorrelated jitter.
        rng: Random source.
    """
    if jitter_type == JitterType.EQUAL:
        return delay * 0.6 + rng.uniform(0, delay * 0.4)

    if jitter_type == JitterType.EXPONENTIAL:
        shape = 2.0 + retry_count * 0.5
        return delay * (0.3 + 1.4 * rng.betavariate(shape, shape))

    if jitter_type == JitterType.DECORRELATED:
        previous = previous_delay if previous_delay else delay
        upper = max(delay, previous * 3)
        return min(rng.uniform(delay, upper), delay * 4)

    return rng.uniform(min(floor, delay), max(floor, delay))


# =============================================================================
# RetryStrategyEngine
# =============================================================================
class RetryStrategyEngine:
    """Adaptive retry decisions with jittered backoff.

    Attributes:
        config: RetryConfig with per-type and per-priority policies.

    Example:
        >>> engine = RetryStrategyEngine(rng=random.Random(7))
        >>> decision = engine.evaluate(Priority.NORMAL, "Service error 500", retry_count=2)
        >>> decision.new_priority
        <Priority.HIGH: 'high'>
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        rng: Optional[random.Random] = None,
        clock: Callable[[], int] = now_ms,
    ) -> None:
        self.config = config or RetryConfig()
        self._rng = rng or random.Random()
        self._clock = clock
        self._logger = logger.bind(component="retry_strategy")

    # =========================================================================
    # Public API
    # =========================================================================

    def evaluate(
        self,
        priority: Priority,
        error: ErrorLike,
        retry_count: int,
        circuit_state: Optional[CircuitState] = None,
        retry_history: Optional[list[RetryAttempt]] = None,
    ) -> RetryDecision:
        """Shorthand for decide() without building a RetryContext first."""
        return self.decide(
            RetryContext(
                priority=priority,
                error=str(error) if error is not None else "",
                retry_count=retry_count,
                circuit_state=circuit_state,
                retry_history=list(retry_history or []),
            )
        )

    def decide(self, context: RetryContext) -> RetryDecision:
        """Run the full decision pipeline for one failed attempt."""
        now = self._clock()
        classification = classify(context.error)
        policy = self.config.policy_for(classification.error_type)
        max_retries = min(policy.max_retries, self.config.retry_limit_for(context.priority))
        circuit_state = context.circuit_state or CircuitState.CLOSED

        factor = self.adaptive_backoff_factor(context, now)

        rejection = self._gate(context, classification, max_retries, now)
        if rejection is not None:
            reason, message = rejection
            decision = RetryDecision(
                should_retry=False,
                new_priority=context.priority,
                max_retries=max_retries,
                error_classification=classification,
                adaptive_backoff_factor=factor,
                circuit_state=circuit_state,
                escalation_reason=reason,
                escalation_message=message,
                fallback_recommended=(
                    classification.fallback_eligible or circuit_state == CircuitState.OPEN
                ),
            )
            self._logger.info(
                "retry_rejected",
                job_id=context.job_id,
                error_type=classification.error_type.value,
                reason=reason.value,
                retry_count=context.retry_count,
                max_retries=max_retries,
            )
            return decision

        new_priority = self.escalate_priority(
            context.priority, context.retry_count, classification, policy
        )
        jitter_type = select_jitter(classification.error_type, circuit_state)
        delay = self._compute_delay(context, classification, policy, factor, new_priority, jitter_type)

        self._logger.info(
            "retry_scheduled",
            job_id=context.job_id,
            error_type=classification.error_type.value,
            retry_count=context.retry_count,
            delay_ms=delay,
            priority=new_priority.value,
            jitter=jitter_type.value,
            adaptive_factor=round(factor, 3),
        )
        return RetryDecision(
            should_retry=True,
            new_priority=new_priority,
            backoff_delay_ms=delay,
            max_retries=max_retries,
            error_classification=classification,
            adaptive_backoff_factor=factor,
            jitter_type=jitter_type,
            circuit_state=circuit_state,
        )

    # =========================================================================
    # Step 3: Adaptive Backoff Factor
    # =========================================================================

    def adaptive_backoff_factor(self, context: RetryContext, now: Optional[int] = None) -> float:
        """Multiplier in [1.0, 5.0] derived from history and breaker state.

        History-derived terms (including the progressive retry-count term)
        apply only when the job has recorded attempts.
        """
        factor = 1.0
        recent = context.retry_history[-RECENT_WINDOW:]

        if recent:
            if len(recent) >= 3:
                factor *= 1.2 + 0.1 * (len(recent) - 3)

            distinct_types = {attempt.error_type for attempt in recent}
            if len(recent) >= 2 and recent[-1].error_type == recent[-2].error_type:
                factor *= 1.15
            if len(distinct_types) > 2:
                factor *= 1.25

            if len(recent) >= 2:
                gaps = [b.timestamp - a.timestamp for a, b in zip(recent, recent[1:])]
                if sum(gaps) / len(gaps) < FAST_RETRY_GAP_MS:
                    factor *= 1.3

            if any(a.circuit_state_at_time == CircuitState.OPEN for a in recent):
                factor *= 1.4

            factor *= min(2.0, 1 + context.retry_count * 0.1)

        if context.circuit_state == CircuitState.OPEN:
            factor *= 3.0
        elif context.circuit_state == CircuitState.HALF_OPEN:
            factor *= 1.5

        return min(factor, MAX_ADAPTIVE_FACTOR)

    # =========================================================================
    # Step 4: Admissibility Gate
    # =========================================================================

    def _gate(
        self,
        context: RetryContext,
        classification: ErrorClassification,
        max_retries: int,
        now: int,
    ) -> Optional[tuple[EscalationReason, str]]:
        """Return (reason, message) for the first failing rule, or None."""
        error_type = classification.error_type
        state = context.circuit_state or CircuitState.CLOSED
        recent = context.retry_history[-RECENT_WINDOW:]

        if not classification.is_recoverable:
            return EscalationReason.NON_RECOVERABLE, f"Non-recoverable {error_type.value} error"

        if context.retry_count >= max_retries:
            return (
                EscalationReason.RETRIES_EXHAUSTED,
                f"Maximum retries exhausted ({context.retry_count}/{max_retries})",
            )

        if state == CircuitState.OPEN:
            return EscalationReason.BREAKER_OPEN, "Circuit breaker is OPEN - fallback recommended"

        if state == CircuitState.HALF_OPEN and context.retry_count >= min(2, max_retries / 2):
            return (
                EscalationReason.BREAKER_OPEN,
                "Circuit breaker is HALF_OPEN - probe retries exhausted",
            )

        if sum(1 for a in recent if a.error_type == error_type) >= 3:
            return (
                EscalationReason.PERSISTENT_ERROR_PATTERN,
                f"Persistent {error_type.value} pattern in recent attempts",
            )

        if len(recent) >= 3:
            span = now - recent[0].timestamp
            if span <= 0 or len(recent) * DENSITY_PERIOD_MS / span > 1:
                return (
                    EscalationReason.HIGH_FAILURE_RATE,
                    "Recent failure density exceeds one per 30 seconds",
                )

        if recent and sum(a.delay_ms for a in recent) / len(recent) > SEVERE_BACKOFF_MS:
            return EscalationReason.SEVERE_BACKOFF, "Mean recent backoff exceeds 60 seconds"

        if (
            context.recent_success_rate is not None
            and context.recent_success_rate < LOW_SUCCESS_RATE
            and context.retry_count >= 2
        ):
            return (
                EscalationReason.LOW_SUCCESS_RATE,
                f"Recent success rate {context.recent_success_rate:.0%} is below 10%",
            )

        last_attempt_at = context.last_attempt_at
        if last_attempt_at is None and context.retry_history:
            last_attempt_at = context.retry_history[-1].timestamp

        if (
            error_type == ErrorType.RATE_LIMIT
            and last_attempt_at is not None
            and now - last_attempt_at < RATE_LIMIT_COOLDOWN_MS
        ):
            return EscalationReason.RATE_LIMIT_COOLDOWN, "Rate limit cooldown has not elapsed"

        if (
            error_type == ErrorType.TIMEOUT
            and state == CircuitState.HALF_OPEN
            and any(
                a.error_type == ErrorType.TIMEOUT
                and a.circuit_state_at_time == CircuitState.HALF_OPEN
                for a in context.retry_history
            )
        ):
            return (
                EscalationReason.BREAKER_OPEN,
                "Timeout already failed while the circuit breaker was HALF_OPEN",
            )

        if error_type == ErrorType.SERVICE_ERROR:
            window_start = now - SERVICE_ERROR_WINDOW_MS
            service_errors = sum(
                1
                for a in context.retry_history
                if a.error_type == ErrorType.SERVICE_ERROR and a.timestamp >= window_start
            )
            if service_errors >= 3:
                return (
                    EscalationReason.HIGH_FAILURE_RATE,
                    "Three or more service errors in the last 5 minutes",
                )

        return None

    # =========================================================================
    # Step 5: Priority Escalation
    # =========================================================================

    @staticmethod
    def escalate_priority(
        priority: Priority,
        retry_count: int,
        classification: ErrorClassification,
        policy: ErrorTypePolicy,
    ) -> Priority:
        """Move priority at most one step toward URGENT.

        Client-level errors use thresholds one attempt later than
        service-level errors.
        """
        threshold = policy.upgrade_after_attempts + (0 if classification.is_service_error else 1)
        if priority == Priority.NORMAL and retry_count >= threshold:
            return Priority.HIGH
        if priority == Priority.HIGH and retry_count >= threshold + 1:
            return Priority.URGENT
        return priority

    # =========================================================================
    # Steps 6-7: Delay and Jitter
    # =========================================================================

    def _compute_delay(
        self,
        context: RetryContext,
        classification: ErrorClassification,
        policy: ErrorTypePolicy,
        factor: float,
        new_priority: Priority,
        jitter_type: JitterType,
    ) -> int:
        base = (self.config.backoff_base ** context.retry_count) * 1000
        global_multiplier = (
            self.config.service_error_multiplier
            if classification.is_service_error
            else self.config.client_error_multiplier
        )
        delay = (
            base
            * policy.backoff_multiplier
            * global_multiplier
            * factor
            * self.config.discount_for(new_priority)
        )

        ceiling = float(self.config.max_retry_delay_ms)
        floor = min(max(float(self.config.min_delay_floor_ms), 0.05 * base), ceiling)
        previous = context.retry_history[-1].delay_ms if context.retry_history else None

        jittered = apply_jitter(jitter_type, delay, floor, context.retry_count, previous, self._rng)
        return int(round(min(max(jittered, floor), ceiling)))


# =============================================================================
# Helpers
# =============================================================================
def build_retry_context(
    job: AnalysisJob,
    error: ErrorLike,
    circuit_state: Optional[CircuitState] = None,
    recent_success_rate: Optional[float] = None,
    now: Optional[int] = None,
) -> RetryContext:
    """Build a RetryContext from a stored job.

    The breaker state falls back to the snapshot embedded in the job.
    """
    now = now if now is not None else now_ms()
    if circuit_state is None and job.circuit_breaker_snapshot is not None:
        circuit_state = job.circuit_breaker_snapshot.state
    last_attempt_at = job.retry_history[-1].timestamp if job.retry_history else None
    return RetryContext(
        job_id=job.id,
        priority=job.priority,
        error=str(error) if error is not None else "",
        retry_count=job.processing_attempts,
        circuit_state=circuit_state,
        retry_history=list(job.retry_history),
        last_attempt_at=last_attempt_at,
        total_wait_time_ms=max(0, now - job.created_at),
        recent_success_rate=recent_success_rate,
    )


def retry_recommendation(decision: RetryDecision) -> str:
    """Human-readable summary of a retry decision."""
    if not decision.should_retry:
        return decision.escalation_message or "Do not retry"

    seconds = decision.backoff_delay_ms / 1000
    jitter = decision.jitter_type.value if decision.jitter_type else "no"
    parts = [
        f"Retry with {decision.new_priority.value} priority after a {seconds:.1f}s delay "
        f"using {jitter} jitter"
    ]
    if decision.adaptive_backoff_factor > 1.0:
        parts.append(f"{decision.adaptive_backoff_factor:.1f}x adaptive backoff")
    parts.append(f"{decision.error_classification.error_type.value.replace('_', ' ')} error")
    parts.append(f"circuit breaker aware ({decision.circuit_state.value})")
    if decision.fallback_eligible:
        parts.append("fallback eligible")
    return ", ".join(parts)
