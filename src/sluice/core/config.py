"""
sluice.core.config - Configuration Management
===============================================

This module provides the configuration system for Sluice. Configuration can
be loaded from multiple sources with the following priority (highest first):

    1. Explicit constructor arguments
    2. Environment variables (prefixed with SLUICE_)
    3. YAML configuration file (sluice.yaml)
    4. Default values defined in the models below

Architecture Context:
    Configuration flows DOWN through the system. The top-level SluiceConfig is
    created once and handed to every component by the facade:

        SluiceConfig
            ├── QueueConfig           → Admission, BatchSelector, Lifecycle, Status
            ├── PriorityCriteriaConfig→ Priority assessment, scheduling delays
            ├── RetryConfig           → RetryStrategyEngine
            ├── RetryBudgetConfig     → Retry budget manager
            └── CircuitBreakerConfig  → CircuitBreaker, CircuitBreakerService

Usage:
    config = SluiceConfig()
    config = load_config("sluice.yaml")
    config = SluiceConfig(queue=QueueConfig(max_queue_size=50))

Environment Variables:
    SLUICE_LOG_LEVEL=DEBUG
    SLUICE_QUEUE__MAX_QUEUE_SIZE=500
    SLUICE_CIRCUIT_BREAKER__FAILURE_THRESHOLD=10
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError
from pydantic_settings import BaseSettings

from sluice.core.enums import ErrorType, Priority
from sluice.core.exceptions import ConfigurationError


# =============================================================================
# Queue Configuration
# =============================================================================
class QueueConfig(BaseModel):
    """Capacity, timing and sweep settings for the job queue.

    Attributes:
        max_queue_size: Hard ceiling on concurrently-processing jobs. Admission
            returns queue_full at this count.
        max_concurrent_processing: How many jobs may be picked up (started) at
            the same time.
        max_batch_size: Upper bound on jobs handed out per batch sweep.
        estimated_processing_time_ms: Seed for the rolling average used in
            wait estimates before any job has completed.
        completion_allowance_ms: Fixed allowance added to the scheduling delay
            when estimating completion time on admission.
        default_processing_timeout_ms: A started job older than this is
            considered stuck by the purge sweep.
    """

    max_queue_size: int = Field(default=1000, ge=1, description="Maximum concurrently-processing jobs")
    max_concurrent_processing: int = Field(default=10, ge=1, description="Maximum started jobs at once")
    max_batch_size: int = Field(default=10, ge=1, description="Maximum jobs per batch sweep")
    near_capacity_threshold: float = Field(
        default=0.8,
        gt=0.0,
        le=1.0,
        description="Utilization above which the queue reports itself near capacity",
    )
    max_item_age_ms: int = Field(default=86_400_000, ge=1, description="Age after which a job is expired")
    default_processing_timeout_ms: int = Field(
        default=30_000,
        ge=1,
        description="Started jobs older than this are treated as stuck",
    )
    estimated_processing_time_ms: int = Field(
        default=30_000,
        ge=1,
        description="Rolling average seed for wait estimates",
    )
    completion_allowance_ms: int = Field(
        default=30_000,
        ge=0,
        description="Fixed allowance added to estimated completion on admission",
    )
    processing_time_window: int = Field(
        default=50,
        ge=1,
        description="Number of recent completions kept for the rolling average",
    )
    high_wait_threshold_ms: int = Field(default=120_000, ge=1, description="Wait above which status reports a warning")
    critical_wait_threshold_ms: int = Field(default=300_000, ge=1, description="Wait above which status is critical")
    batch_interval_ms: int = Field(default=10_000, ge=100, description="Period of the batch selection sweep")
    aging_interval_ms: int = Field(default=60_000, ge=100, description="Period of the aging upgrade sweep")
    maintenance_interval_ms: int = Field(
        default=300_000,
        ge=100,
        description="Period of the purge and auto-requeue sweeps",
    )
    notification_lookback_ms: int = Field(
        default=300_000,
        ge=0,
        description="Default window for failure notifications",
    )


# =============================================================================
# Priority Criteria
# =============================================================================
# One row per priority level. max_wait_time_ms is the aging SLA: a job that
# waits longer is forced to urgent, a normal job that waits half of it is
# promoted to high.
# =============================================================================
class PriorityLevelConfig(BaseModel):
    """Scheduling parameters for a single priority level."""

    value: int = Field(ge=1, description="Ordinal weight used in dequeue ranking")
    delay_ms: int = Field(ge=0, description="Base scheduling delay")
    sla_target_ms: int = Field(ge=0, description="Target latency for this level")
    max_wait_time_ms: int = Field(ge=1, description="Wait after which the job is forced to urgent")


class PriorityCriteriaConfig(BaseModel):
    """Per-priority scheduling table.

    Example:
        >>> criteria = PriorityCriteriaConfig()
        >>> criteria.for_priority(Priority.HIGH).delay_ms
        1000
    """

    urgent: PriorityLevelConfig = Field(
        default_factory=lambda: PriorityLevelConfig(
            value=3, delay_ms=0, sla_target_ms=30_000, max_wait_time_ms=60_000
        ),
    )
    high: PriorityLevelConfig = Field(
        default_factory=lambda: PriorityLevelConfig(
            value=2, delay_ms=1_000, sla_target_ms=120_000, max_wait_time_ms=300_000
        ),
    )
    normal: PriorityLevelConfig = Field(
        default_factory=lambda: PriorityLevelConfig(
            value=1, delay_ms=5_000, sla_target_ms=600_000, max_wait_time_ms=1_800_000
        ),
    )

    def for_priority(self, priority: Priority) -> PriorityLevelConfig:
        return getattr(self, Priority(priority).value)


# =============================================================================
# Retry Configuration
# =============================================================================
class ErrorTypePolicy(BaseModel):
    """Retry policy attached to a single error category."""

    max_retries: int = Field(description="Retry ceiling for this error type")
    backoff_multiplier: float = Field(description="Multiplier applied to the base backoff")
    upgrade_after_attempts: int = Field(description="Retry count at which priority escalation starts")
    fallback_eligible: bool = Field(default=False, description="Whether fallback may replace a retry")


def _default_error_type_policies() -> dict[ErrorType, ErrorTypePolicy]:
    return {
        ErrorType.TIMEOUT: ErrorTypePolicy(
            max_retries=5, backoff_multiplier=1.5, upgrade_after_attempts=2, fallback_eligible=True
        ),
        ErrorType.NETWORK: ErrorTypePolicy(
            max_retries=4, backoff_multiplier=2.0, upgrade_after_attempts=1, fallback_eligible=True
        ),
        ErrorType.RATE_LIMIT: ErrorTypePolicy(
            max_retries=3, backoff_multiplier=3.0, upgrade_after_attempts=1, fallback_eligible=True
        ),
        ErrorType.SERVICE_ERROR: ErrorTypePolicy(
            max_retries=4, backoff_multiplier=2.0, upgrade_after_attempts=2, fallback_eligible=True
        ),
        ErrorType.VALIDATION: ErrorTypePolicy(
            max_retries=0, backoff_multiplier=1.0, upgrade_after_attempts=0
        ),
        ErrorType.AUTHENTICATION: ErrorTypePolicy(
            max_retries=0, backoff_multiplier=1.0, upgrade_after_attempts=0
        ),
        ErrorType.UNKNOWN: ErrorTypePolicy(
            max_retries=3, backoff_multiplier=1.0, upgrade_after_attempts=2
        ),
    }


class RetryConfig(BaseModel):
    """Settings for the adaptive retry strategy engine.

    Attributes:
        backoff_base: Exponential base; the raw delay is
            backoff_base ** retry_count * 1000 ms.
        max_retry_delay_ms: Upper clamp for every computed delay.
        min_delay_floor_ms: Absolute lower clamp. The effective floor is
            max(min_delay_floor_ms, 5% of the raw delay).
        priority_retry_limits: Retry ceiling per priority. The effective
            ceiling is the minimum of this and the error type's ceiling.
        priority_discounts: Delay multiplier per (escalated) priority.
        history_limit: How many RetryAttempt entries a job keeps.
    """

    max_retry_attempts: int = Field(default=3, ge=0, description="Default retry ceiling")
    backoff_base: float = Field(default=2.0, gt=1.0, description="Exponential backoff base")
    max_retry_delay_ms: int = Field(default=300_000, ge=1, description="Upper clamp on retry delays")
    min_delay_floor_ms: int = Field(default=1_000, ge=0, description="Lower clamp on retry delays")
    service_error_multiplier: float = Field(default=2.0, description="Global multiplier for service-level errors")
    client_error_multiplier: float = Field(default=1.0, description="Global multiplier for client-level errors")
    history_limit: int = Field(default=10, ge=1, description="Retry attempts kept per job")
    priority_retry_limits: dict[Priority, int] = Field(
        default_factory=lambda: {Priority.URGENT: 5, Priority.HIGH: 4, Priority.NORMAL: 3},
        description="Retry ceiling per priority",
    )
    priority_discounts: dict[Priority, float] = Field(
        default_factory=lambda: {Priority.URGENT: 0.8, Priority.HIGH: 0.9, Priority.NORMAL: 1.0},
        description="Delay multiplier per priority",
    )
    error_type_policies: dict[ErrorType, ErrorTypePolicy] = Field(
        default_factory=_default_error_type_policies,
        description="Retry policy per error type",
    )

    def policy_for(self, error_type: ErrorType) -> ErrorTypePolicy:
        """Return the policy for an error type, falling back to UNKNOWN."""
        policy = self.error_type_policies.get(error_type)
        if policy is None:
            policy = self.error_type_policies.get(ErrorType.UNKNOWN)
        if policy is None:
            policy = ErrorTypePolicy(
                max_retries=self.max_retry_attempts,
                backoff_multiplier=1.0,
                upgrade_after_attempts=2,
            )
        return policy

    def retry_limit_for(self, priority: Priority) -> int:
        return self.priority_retry_limits.get(priority, self.max_retry_attempts)

    def discount_for(self, priority: Priority) -> float:
        return self.priority_discounts.get(priority, 1.0)


class RetryBudgetConfig(BaseModel):
    """Thresholds (as remaining-capacity fractions) for the retry budget."""

    allow_above: float = Field(default=0.7, ge=0.0, le=1.0)
    reject_below: float = Field(default=0.3, ge=0.0, le=1.0)
    high_throttle_floor: float = Field(default=0.4, ge=0.0, le=1.0)
    normal_throttle_floor: float = Field(default=0.5, ge=0.0, le=1.0)
    urgent_reject_floor: float = Field(default=0.1, ge=0.0, le=1.0)


# =============================================================================
# Circuit Breaker Configuration
# =============================================================================
class CircuitBreakerConfig(BaseModel):
    """Settings shared by every per-dependency circuit breaker.

    Attributes:
        failure_threshold: Failures inside the monitoring window that open
            the breaker.
        timeout_ms: How long the breaker stays OPEN before allowing a probe.
        monitoring_window_ms: Sliding window for counting failures.
        half_open_max_attempts: Consecutive probe successes needed to close.
        metrics_retention_hours: How far back hourly buckets are consulted.
    """

    failure_threshold: int = Field(default=5, ge=1)
    timeout_ms: int = Field(default=60_000, ge=1)
    monitoring_window_ms: int = Field(default=300_000, ge=1)
    half_open_max_attempts: int = Field(default=3, ge=1)
    metrics_retention_hours: int = Field(default=48, ge=2)


# =============================================================================
# Main Configuration
# =============================================================================
# Environment Variable Mapping:
#   SLUICE_LOG_LEVEL                       → config.log_level
#   SLUICE_QUEUE__MAX_QUEUE_SIZE           → config.queue.max_queue_size
#   SLUICE_CIRCUIT_BREAKER__TIMEOUT_MS     → config.circuit_breaker.timeout_ms
# =============================================================================
class SluiceConfig(BaseSettings):
    """Top-level configuration for Sluice.

    Attributes:
        environment: Deployment environment.
        log_level: Python logging level applied to structlog.
        default_dependency: Name of the downstream dependency the worker
            calls. Its circuit breaker gates retries.

    Example:
        >>> config = SluiceConfig(log_level="DEBUG")
        >>> config.queue.max_queue_size
        1000
    """

    environment: Literal["dev", "staging", "prod"] = Field(
        default="dev",
        description="Deployment environment",
    )
    log_level: str = Field(
        default="INFO",
        description="Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL",
    )
    default_dependency: str = Field(
        default="analysis_service",
        description="Dependency name guarded by the default circuit breaker",
    )

    queue: QueueConfig = Field(default_factory=QueueConfig)
    priorities: PriorityCriteriaConfig = Field(default_factory=PriorityCriteriaConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    retry_budget: RetryBudgetConfig = Field(default_factory=RetryBudgetConfig)
    circuit_breaker: CircuitBreakerConfig = Field(default_factory=CircuitBreakerConfig)

    model_config = {
        "env_prefix": "SLUICE_",
        "env_nested_delimiter": "__",
        "case_sensitive": False,
    }


# =============================================================================
# Configuration Loader
# =============================================================================
def load_config(path: Optional[str] = None) -> SluiceConfig:
    """Load Sluice configuration from a YAML file and/or environment variables.

    Args:
        path: Path to a YAML configuration file. If None, looks for
            'sluice.yaml' in the current directory and falls back to pure
            defaults plus environment variables.

    Returns:
        A fully validated SluiceConfig instance.

    Raises:
        FileNotFoundError: If an explicit path is provided but doesn't exist.
        ConfigurationError: If the YAML cannot be parsed or holds invalid values.
    """
    if path is None:
        default_path = Path("sluice.yaml")
        if default_path.exists():
            path = str(default_path)

    yaml_data: dict[str, Any] = {}
    if path is not None:
        config_path = Path(path)
        if not config_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {path}")

        with open(config_path) as f:
            try:
                raw_data = yaml.safe_load(f)
            except yaml.YAMLError as exc:
                raise ConfigurationError(
                    message=f"Invalid YAML in {path}",
                    details={"path": str(path), "error": str(exc)},
                ) from exc
            if isinstance(raw_data, dict):
                yaml_data = raw_data

    try:
        return SluiceConfig(**yaml_data)
    except ValidationError as exc:
        raise ConfigurationError(
            message="Configuration values failed validation",
            details={"path": str(path) if path else None, "errors": exc.errors()},
        ) from exc


def get_default_config() -> SluiceConfig:
    """Create a SluiceConfig with defaults (overridden by any set env vars)."""
    return SluiceConfig()


# =============================================================================
# Invariant Checks
# =============================================================================
# Pydantic validates individual fields. The checks below are cross-field
# rules that an operator can break with an otherwise well-typed config.
# =============================================================================
def validate_config(config: SluiceConfig) -> list[str]:
    """Check cross-field configuration invariants.

    Args:
        config: The configuration to inspect.

    Returns:
        Human-readable issue descriptions. An empty list means valid.
    """
    issues: list[str] = []
    retry = config.retry

    if retry.max_retry_attempts < 0:
        issues.append("retry.max_retry_attempts must not be negative")
    for priority, limit in retry.priority_retry_limits.items():
        if limit < 0:
            issues.append(f"retry.priority_retry_limits[{priority.value}] must not be negative")
    for priority, discount in retry.priority_discounts.items():
        if discount <= 0:
            issues.append(f"retry.priority_discounts[{priority.value}] must be positive")
    for error_type, policy in retry.error_type_policies.items():
        if policy.max_retries < 0:
            issues.append(f"retry.error_type_policies[{error_type.value}].max_retries must not be negative")
        if policy.backoff_multiplier < 0:
            issues.append(
                f"retry.error_type_policies[{error_type.value}].backoff_multiplier must not be negative"
            )
        if policy.upgrade_after_attempts < 0:
            issues.append(
                f"retry.error_type_policies[{error_type.value}].upgrade_after_attempts must not be negative"
            )
    if retry.service_error_multiplier < 0 or retry.client_error_multiplier < 0:
        issues.append("retry error multipliers must not be negative")
    if retry.min_delay_floor_ms < 1000:
        issues.append("retry.min_delay_floor_ms must be at least 1000")
    if retry.min_delay_floor_ms > retry.max_retry_delay_ms:
        issues.append("retry.min_delay_floor_ms must not exceed retry.max_retry_delay_ms")

    budget = config.retry_budget
    if not budget.reject_below <= budget.allow_above:
        issues.append("retry_budget.reject_below must not exceed retry_budget.allow_above")
    if budget.urgent_reject_floor > budget.reject_below:
        issues.append("retry_budget.urgent_reject_floor must not exceed retry_budget.reject_below")

    queue = config.queue
    if queue.max_concurrent_processing > queue.max_queue_size:
        issues.append("queue.max_concurrent_processing must not exceed queue.max_queue_size")

    criteria = config.priorities
    if not (
        criteria.urgent.max_wait_time_ms
        <= criteria.high.max_wait_time_ms
        <= criteria.normal.max_wait_time_ms
    ):
        issues.append("priorities max_wait_time_ms must grow from urgent to normal")
    if not criteria.urgent.value > criteria.high.value > criteria.normal.value:
        issues.append("priorities value must be ordered urgent > high > normal")

    return issues
