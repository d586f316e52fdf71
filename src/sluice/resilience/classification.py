"""
sluice.resilience.classification - Error Taxonomy
===================================================

Turns a raw error message into a closed ErrorType plus the flags the rest of
the resilience layer needs. Every rule is an explicit, ordered table of
case-insensitive substring patterns. The first matching row wins.

Tables:
    ERROR_TYPE_PATTERNS      → ErrorType (classify_error_type)
    SERVICE_LEVEL_PATTERNS   → trips the circuit breaker
    CLIENT_LEVEL_PATTERNS    → never trips the circuit breaker
    NON_RECOVERABLE_PATTERNS → never retried
    RECOVERABLE_PATTERNS     → retried (this is also the default)

Ordering matters: "Network timeout" classifies as TIMEOUT because the timeout
row comes before the network row.

Usage:
    >>> classify("Rate limit exceeded").error_type
    <ErrorType.RATE_LIMIT: 'rate_limit'>
    >>> should_trip_circuit("Invalid input: missing field")
    False
"""

from __future__ import annotations

from typing import Optional, Union

from pydantic import BaseModel, Field

from sluice.core.enums import ErrorType


ErrorLike = Union[str, BaseException, None]


# =============================================================================
# Pattern Tables
# =============================================================================
ERROR_TYPE_PATTERNS: tuple[tuple[ErrorType, tuple[str, ...]], ...] = (
    (ErrorType.TIMEOUT, ("timeout", "timed out")),
    (ErrorType.NETWORK, ("network", "connection")),
    (ErrorType.RATE_LIMIT, ("rate limit", "quota")),
    (ErrorType.SERVICE_ERROR, ("service", "server error")),
    (ErrorType.VALIDATION, ("validation", "invalid")),
    (ErrorType.AUTHENTICATION, ("auth", "unauthorized")),
    # Generic upstream API failures that did not match a more specific row.
    (ErrorType.SERVICE_ERROR, ("api",)),
)

SERVICE_LEVEL_PATTERNS: tuple[str, ...] = (
    "network",
    "connection",
    "service unavailable",
    "internal server error",
    "timeout",
    "rate limit",
    "api error",
)

CLIENT_LEVEL_PATTERNS: tuple[str, ...] = (
    "validation",
    "invalid input",
    "authentication",
    "authorization",
    "bad request",
    "user cancelled",
    "quota exceeded",
)

NON_RECOVERABLE_PATTERNS: tuple[str, ...] = (
    "validation",
    "invalid",
    "authentication",
    "authorization",
    "unauthorized",
    "bad request",
    "malformed",
    "cancelled",
    "permanently exceeded",
)

RECOVERABLE_PATTERNS: tuple[str, ...] = (
    "timeout",
    "network",
    "connection",
    "temporary",
    "rate limit",
    "service unavailable",
    "internal server error",
    "overload",
)

FALLBACK_ELIGIBLE_TYPES: frozenset[ErrorType] = frozenset(
    {
        ErrorType.NETWORK,
        ErrorType.RATE_LIMIT,
        ErrorType.TIMEOUT,
        ErrorType.SERVICE_ERROR,
    }
)


# =============================================================================
# Classification Result
# =============================================================================
class ErrorClassification(BaseModel):
    """Everything the retry engine needs to know about one error.

    Attributes:
        error_type: Closed error category.
        is_service_error: True when the error is infrastructure-caused (trips
            the breaker and uses the faster escalation schedule).
        is_recoverable: False for errors that retrying cannot fix.
        fallback_eligible: Whether fallback processing may stand in.
    """

    error_type: ErrorType
    message: str = ""
    is_service_error: bool = True
    is_recoverable: bool = True
    fallback_eligible: bool = False


# =============================================================================
# Matchers
# =============================================================================
def error_text(error: ErrorLike) -> str:
    """Normalize an error (message or exception) to lower-case text."""
    if error is None:
        return ""
    return str(error).lower()


def _first_match(text: str, patterns: tuple[str, ...]) -> Optional[str]:
    for pattern in patterns:
        if pattern in text:
            return pattern
    return None


def classify_error_type(error: ErrorLike) -> ErrorType:
    """Map an error to its ErrorType (first matching row wins)."""
    text = error_text(error)
    for error_type, patterns in ERROR_TYPE_PATTERNS:
        if _first_match(text, patterns) is not None:
            return error_type
    return ErrorType.UNKNOWN


def should_trip_circuit(error: ErrorLike) -> bool:
    """Whether a failure should count against the circuit breaker.

    Service-level patterns are checked first, then client-level ones.
    Anything unclassified counts as service-level.
    """
    text = error_text(error)
    if _first_match(text, SERVICE_LEVEL_PATTERNS) is not None:
        return True
    if _first_match(text, CLIENT_LEVEL_PATTERNS) is not None:
        return False
    return True


def is_recoverable(error: ErrorLike) -> bool:
    """Whether retrying could plausibly fix the error.

    Non-recoverable patterns are checked first. Unmatched errors are
    considered recoverable.
    """
    text = error_text(error)
    if _first_match(text, NON_RECOVERABLE_PATTERNS) is not None:
        return False
    if _first_match(text, RECOVERABLE_PATTERNS) is not None:
        return True
    return True


def is_fallback_eligible(error_type: ErrorType) -> bool:
    return error_type in FALLBACK_ELIGIBLE_TYPES


def classify(error: ErrorLike) -> ErrorClassification:
    """Classify an error into an ErrorClassification.

    Args:
        error: Error message or exception raised by the worker.

    Returns:
        The classification used by the retry engine, the breaker service and
        the dead-letter sink.

    Example:
        >>> c = classify("Service error 500")
        >>> c.error_type, c.is_service_error, c.fallback_eligible
        (<ErrorType.SERVICE_ERROR: 'service_error'>, True, True)
    """
    error_type = classify_error_type(error)
    return ErrorClassification(
        error_type=error_type,
        message=str(error) if error is not None else "",
        is_service_error=should_trip_circuit(error),
        is_recoverable=is_recoverable(error),
        fallback_eligible=is_fallback_eligible(error_type),
    )
