"""
sluice.core.exceptions - Custom Exception Hierarchy
=====================================================

This module defines a structured exception hierarchy for Sluice. Components
raise and catch specific exception types that carry contextual information
instead of bare strings.

Exception Hierarchy:
    SluiceError (base)
        ├── ConfigurationError  - Invalid config, unreadable YAML
        ├── JobNotFoundError    - Operation targets an unknown job id
        ├── OwnershipError      - Caller does not own the job
        ├── StoreError          - Store read/write failures and invariant breaks
        ├── AnalysisError       - The analysis worker reported a failure
        └── SchedulingError     - Deferred executor could not schedule work

Outcomes versus Errors:
    Normal answers such as "queue full" or "already cancelled" are NOT
    exceptions. They are status values on result models (see core.enums).
    Exceptions are reserved for faults and contract violations.

Usage:
    >>> from sluice.core.exceptions import JobNotFoundError
    >>> raise JobNotFoundError("job-123")
"""

from __future__ import annotations

from typing import Any, Optional


# =============================================================================
# Base Exception
# =============================================================================
# All Sluice exceptions inherit from this base class, so callers can catch
# every framework-specific error with a single except clause:
#
#   try:
#       await sluice.cancel(job_id, owner_id)
#   except SluiceError as e:
#       logger.error(e.message, error_code=e.error_code, details=e.details)
# =============================================================================
class SluiceError(Exception):
    """Base exception for all Sluice errors.

    Attributes:
        message: Human-readable error description.
        error_code: Machine-readable error code for programmatic handling.
            Convention: UPPER_SNAKE_CASE (e.g., "JOB_NOT_FOUND").
        details: Arbitrary dict with additional debugging context.

    Example:
        >>> try:
        ...     do_something()
        ... except SluiceError as e:
        ...     print(f"[{e.error_code}] {e.message}")
    """

    def __init__(
        self,
        message: str,
        error_code: str = "UNKNOWN_ERROR",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)

        self.message = message
        self.error_code = error_code
        self.details = details or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize this exception to a dictionary.

        Used for structured logging and for dead-letter metadata.

        Returns:
            Dictionary with error_type, message, error_code, and details.
        """
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "details": self.details,
        }

    def __repr__(self) -> str:
        return (
            f"{self.__class__.__name__}("
            f"message={self.message!r}, "
            f"error_code={self.error_code!r}, "
            f"details={self.details!r})"
        )


# =============================================================================
# Configuration Errors
# =============================================================================
class ConfigurationError(SluiceError):
    """Raised when configuration is invalid or cannot be loaded.

    Example:
        >>> raise ConfigurationError(
        ...     message="Invalid YAML in sluice.yaml",
        ...     details={"path": "sluice.yaml"},
        ... )
    """

    def __init__(
        self,
        message: str,
        error_code: str = "CONFIGURATION_ERROR",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message=message, error_code=error_code, details=details)


# =============================================================================
# Job Errors
# =============================================================================
class JobNotFoundError(SluiceError):
    """Raised when an operation references a job id the store does not know.

    Attributes:
        job_id: The id that could not be resolved.
    """

    def __init__(
        self,
        job_id: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            message=f"Analysis job not found: {job_id}",
            error_code="JOB_NOT_FOUND",
            details=details,
        )
        self.job_id = job_id

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["job_id"] = self.job_id
        return result


class OwnershipError(SluiceError):
    """Raised when a caller acts on a job it does not own.

    Attributes:
        job_id: The job that was targeted.
        owner_id: The caller that attempted the operation.
    """

    def __init__(
        self,
        job_id: str,
        owner_id: str,
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            message=f"Owner {owner_id} is not authorized to modify job {job_id}",
            error_code="NOT_OWNER",
            details=details,
        )
        self.job_id = job_id
        self.owner_id = owner_id

    def to_dict(self) -> dict[str, Any]:
        result = super().to_dict()
        result["job_id"] = self.job_id
        result["owner_id"] = self.owner_id
        return result


# =============================================================================
# Store Errors
# =============================================================================
class StoreError(SluiceError):
    """Raised when the job store fails or a write would break an invariant.

    Common error codes:
        - "ATTEMPTS_DECREASED": mutation tried to lower processing_attempts
        - "STORE_NOT_CONNECTED": store used before connect()
    """

    def __init__(
        self,
        message: str,
        error_code: str = "STORE_ERROR",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message=message, error_code=error_code, details=details)


# =============================================================================
# Analysis Errors
# =============================================================================
class AnalysisError(SluiceError):
    """Raised by an analysis worker when the computation fails.

    The message is what the retry engine classifies, so workers should put
    the upstream error text (e.g. "Service unavailable (503)") in it.

    Attributes:
        entity_id: The entity whose analysis failed.
    """

    def __init__(
        self,
        message: str,
        entity_id: Optional[str] = None,
        error_code: str = "ANALYSIS_FAILED",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message=message, error_code=error_code, details=details)
        self.entity_id = entity_id


# =============================================================================
# Scheduling Errors
# =============================================================================
class SchedulingError(SluiceError):
    """Raised when the deferred executor cannot accept a scheduled execution.

    The batch selector catches this per item so one failed hand-off never
    aborts the rest of the batch.
    """

    def __init__(
        self,
        message: str,
        error_code: str = "SCHEDULING_ERROR",
        details: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message=message, error_code=error_code, details=details)
