"""
sluice.resilience - Failure Handling Layer
============================================

    - classification:   Ordered error taxonomy tables
    - circuit_breaker:  Sliding-window breaker state machine and registry
    - breaker_service:  Store-backed breakers, hourly metrics, health alerts
    - retry_strategy:   Adaptive retry decisions with jittered backoff
    - retry_budget:     Load-derived veto on top of retry decisions
"""

from sluice.resilience.breaker_service import (
    BreakerHealthReport,
    CircuitBreakerService,
    HealthAlert,
)
from sluice.resilience.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from sluice.resilience.classification import (
    ErrorClassification,
    classify,
    is_recoverable,
    should_trip_circuit,
)
from sluice.resilience.retry_budget import (
    RetryBudget,
    calculate_retry_budget,
    should_allow_retry,
)
from sluice.resilience.retry_strategy import (
    RetryContext,
    RetryDecision,
    RetryStrategyEngine,
    build_retry_context,
    retry_recommendation,
)

__all__ = [
    "ErrorClassification",
    "classify",
    "is_recoverable",
    "should_trip_circuit",
    "CircuitBreaker",
    "CircuitBreakerRegistry",
    "CircuitBreakerService",
    "BreakerHealthReport",
    "HealthAlert",
    "RetryContext",
    "RetryDecision",
    "RetryStrategyEngine",
    "build_retry_context",
    "retry_recommendation",
    "RetryBudget",
    "calculate_retry_budget",
    "should_allow_retry",
]
