"""
sluice.core - Foundation Layer
================================

The foundational building blocks every other Sluice module depends on:

    - config:      Configuration management (SluiceConfig and nested models)
    - enums:       Type-safe enumerations (Priority, JobStatus, ErrorType, ...)
    - models:      Persisted records (AnalysisJob, CircuitBreakerStatus, ...)
    - exceptions:  Custom exception hierarchy for structured error handling
    - log_config:  structlog setup

Dependency Rule:
    core/ depends on NOTHING else in the sluice package.
"""

from sluice.core.config import (
    CircuitBreakerConfig,
    PriorityCriteriaConfig,
    QueueConfig,
    RetryBudgetConfig,
    RetryConfig,
    SluiceConfig,
    load_config,
    validate_config,
)
from sluice.core.enums import (
    CircuitState,
    ErrorType,
    JitterType,
    JobStatus,
    Priority,
    UserTier,
)
from sluice.core.exceptions import (
    AnalysisError,
    ConfigurationError,
    JobNotFoundError,
    OwnershipError,
    SchedulingError,
    SluiceError,
    StoreError,
)
from sluice.core.models import (
    AnalysisJob,
    CircuitBreakerSnapshot,
    CircuitBreakerStatus,
    ErrorMetricsBucket,
    RetryAttempt,
)

__all__ = [
    # Config
    "SluiceConfig",
    "QueueConfig",
    "PriorityCriteriaConfig",
    "RetryConfig",
    "RetryBudgetConfig",
    "CircuitBreakerConfig",
    "load_config",
    "validate_config",
    # Enums
    "Priority",
    "JobStatus",
    "UserTier",
    "ErrorType",
    "CircuitState",
    "JitterType",
    # Models
    "AnalysisJob",
    "RetryAttempt",
    "CircuitBreakerSnapshot",
    "CircuitBreakerStatus",
    "ErrorMetricsBucket",
    # Exceptions
    "SluiceError",
    "AnalysisError",
    "ConfigurationError",
    "JobNotFoundError",
    "OwnershipError",
    "StoreError",
    "SchedulingError",
]
