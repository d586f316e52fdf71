"""
sluice.integrations.fallback - Fallback Collaborator
======================================================

When a retry is inadmissible and the error is fallback-eligible, or the
dependency's breaker is unhealthy, the lifecycle manager asks a fallback
evaluator whether a degraded (e.g. rule-based) analysis should stand in. A
positive answer completes the job with fallback_used=True.

Implementations:
    - FallbackEvaluator (ABC):     Abstract interface
    - RuleBasedFallbackEvaluator:  Breaker- and retry-aware rules
    - DisabledFallbackEvaluator:   Never falls back
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Optional

import structlog
from pydantic import BaseModel, Field

from sluice.core.enums import CircuitState
from sluice.resilience.breaker_service import CircuitBreakerService
from sluice.resilience.classification import classify
from sluice.resilience.retry_strategy import RetryContext, RetryStrategyEngine


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()

FALLBACK_RETRY_THRESHOLD = 3


class FallbackDecision(BaseModel):
    use_fallback: bool
    reason: str
    circuit_breaker_state: CircuitState = CircuitState.CLOSED
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class FallbackEvaluator(ABC):
    """Abstract fallback collaborator."""

    @abstractmethod
    async def evaluate_fallback(
        self,
        entity_id: str,
        owner_id: str,
        reason: str,
        retry_count: int,
    ) -> FallbackDecision:
        """Decide whether fallback processing should replace a retry.

        Args:
            entity_id: Entity being analyzed.
            owner_id: Owner of the entity.
            reason: The error text that failed the last attempt.
            retry_count: Failed attempts so far.
        """
        ...


class DisabledFallbackEvaluator(FallbackEvaluator):
    async def evaluate_fallback(
        self, entity_id: str, owner_id: str, reason: str, retry_count: int
    ) -> FallbackDecision:
        return FallbackDecision(use_fallback=False, reason="Fallback processing is disabled")


class RuleBasedFallbackEvaluator(FallbackEvaluator):
    """Falls back when the dependency is down or retries are not worth it.

    Rules (first match wins, all but the first need a fallback-eligible error):
        1. breaker OPEN
        2. retry engine rejects the retry
        3. retry_count >= 3
        4. the error is a rate limit

    Example:
        >>> evaluator = RuleBasedFallbackEvaluator(breaker_service, "analysis_service")
        >>> decision = await evaluator.evaluate_fallback("entry-1", "user-1", "Rate limit exceeded", 0)
        >>> decision.use_fallback
        True
    """

    def __init__(
        self,
        breaker_service: CircuitBreakerService,
        dependency: str,
        engine: Optional[RetryStrategyEngine] = None,
        confidence: float = 0.6,
    ) -> None:
        self._breakers = breaker_service
        self._dependency = dependency
        self._engine = engine or RetryStrategyEngine()
        self._confidence = confidence
        self._logger = logger.bind(component="fallback_evaluator")

    async def evaluate_fallback(
        self, entity_id: str, owner_id: str, reason: str, retry_count: int
    ) -> FallbackDecision:
        state = await self._breakers.current_state(self._dependency)
        classification = classify(reason)
        eligible = classification.fallback_eligible

        if state == CircuitState.OPEN:
            message = "Circuit breaker is OPEN - using fallback analysis"
        elif eligible and not self._engine.decide(
            RetryContext(error=reason, retry_count=retry_count, circuit_state=state)
        ).should_retry:
            message = "Retry strategy recommends fallback"
        elif eligible and retry_count >= FALLBACK_RETRY_THRESHOLD:
            message = "Maximum retries exceeded - falling back"
        elif eligible and "rate limit" in reason.lower():
            message = "Rate limit encountered - using fallback to maintain availability"
        else:
            return FallbackDecision(
                use_fallback=False,
                reason="Fallback not warranted",
                circuit_breaker_state=state,
            )

        self._logger.info(
            "fallback_selected",
            entity_id=entity_id,
            owner_id=owner_id,
            reason=message,
            circuit_state=state.value,
        )
        return FallbackDecision(
            use_fallback=True,
            reason=message,
            circuit_breaker_state=state,
            confidence=self._confidence,
        )
