"""
sluice.scheduling.priority - Priority Assessment
==================================================

Pure, deterministic functions that map request context to a Priority. No I/O,
no clocks: anything time-related takes `now` explicitly.

Base Cascade (first match wins):
    URGENT  crisis flag
            OR (health alert AND premium)
            OR (premium AND first activity of the day)
    HIGH    retry_count >= 2
            OR last activity <= 24h ago
            OR linked to a relationship
            OR premium
    NORMAL  otherwise

Content Escalation (applied after the base cascade):
    any crisis keyword                     → URGENT (unconditional)
    sentiment < -0.7 or a distress keyword → NORMAL becomes HIGH

Aging Upgrade (applied by the batch selector and the aging sweep):
    wait > max_wait[priority]              → URGENT
    NORMAL and wait > max_wait[normal] / 2 → HIGH

Usage:
    >>> ctx = PriorityContext(owner_tier=UserTier.PREMIUM, is_health_alert=True)
    >>> assess_priority(ctx)
    <Priority.URGENT: 'urgent'>
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from sluice.core.config import PriorityCriteriaConfig
from sluice.core.enums import Priority, UserTier


CRISIS_KEYWORDS: tuple[str, ...] = (
    "suicide",
    "kill myself",
    "end it all",
    "hurt myself",
    "self harm",
    "abuse",
    "violence",
    "emergency",
    "crisis",
    "threatened",
    "unsafe",
)

DISTRESS_KEYWORDS: tuple[str, ...] = (
    "hopeless",
    "worthless",
    "devastated",
    "heartbroken",
    "desperate",
    "panic",
    "terrified",
    "betrayed",
    "can't cope",
    "breaking down",
)

NEGATIVE_SENTIMENT_THRESHOLD = -0.7
RECENT_ACTIVITY_HOURS = 24.0

_DEFAULT_CRITERIA = PriorityCriteriaConfig()


# =============================================================================
# Inputs and Outputs
# =============================================================================
class PriorityContext(BaseModel):
    """Signals available when a job is admitted.

    Attributes:
        hours_since_last_activity: None when unknown; unknown activity never
            counts as recent.
        is_first_activity_of_day: Owner's first activity today.
        content: Optional text to scan for crisis and distress keywords.
        sentiment_score: Optional score in [-1, 1].
        keyword_hits: Keywords an upstream detector already matched.
    """

    owner_tier: UserTier = UserTier.FREE
    relationship_id: Optional[str] = None
    hours_since_last_activity: Optional[float] = Field(default=None, ge=0.0)
    is_first_activity_of_day: bool = False
    retry_count: int = Field(default=0, ge=0)
    is_crisis: bool = False
    is_health_alert: bool = False
    content: Optional[str] = None
    sentiment_score: Optional[float] = Field(default=None, ge=-1.0, le=1.0)
    keyword_hits: list[str] = Field(default_factory=list)


class PriorityAssessment(BaseModel):
    priority: Priority
    base_priority: Priority
    reasoning: list[str] = Field(default_factory=list)
    crisis_keywords: list[str] = Field(default_factory=list)
    distress_keywords: list[str] = Field(default_factory=list)


# =============================================================================
# Ordering Helpers
# =============================================================================
def priority_value(priority: Priority, criteria: Optional[PriorityCriteriaConfig] = None) -> int:
    return (criteria or _DEFAULT_CRITERIA).for_priority(priority).value


def compare_priorities(a: Priority, b: Priority) -> int:
    """Negative if a < b, zero if equal, positive if a > b."""
    return Priority(a).rank - Priority(b).rank


def max_priority(a: Priority, b: Priority) -> Priority:
    return a if compare_priorities(a, b) >= 0 else b


# =============================================================================
# Base Cascade
# =============================================================================
def _base_priority(ctx: PriorityContext) -> tuple[Priority, list[str]]:
    premium = ctx.owner_tier == UserTier.PREMIUM

    if ctx.is_crisis:
        return Priority.URGENT, ["Crisis indicator present"]
    if ctx.is_health_alert and premium:
        return Priority.URGENT, ["Health alert for premium owner"]
    if premium and ctx.is_first_activity_of_day:
        return Priority.URGENT, ["Premium owner's first activity of the day"]

    if ctx.retry_count >= 2:
        return Priority.HIGH, [f"Retried {ctx.retry_count} times"]
    if (
        ctx.hours_since_last_activity is not None
        and ctx.hours_since_last_activity <= RECENT_ACTIVITY_HOURS
    ):
        return Priority.HIGH, ["Owner active within the last 24 hours"]
    if ctx.relationship_id is not None:
        return Priority.HIGH, ["Linked to a relationship"]
    if premium:
        return Priority.HIGH, ["Premium owner"]

    return Priority.NORMAL, ["Standard priority"]


def assess_priority(ctx: PriorityContext) -> Priority:
    """Base cascade without content escalation."""
    return _base_priority(ctx)[0]


def _keyword_matches(ctx: PriorityContext, table: tuple[str, ...]) -> list[str]:
    haystacks = [ctx.content.lower()] if ctx.content else []
    haystacks.extend(hit.lower() for hit in ctx.keyword_hits)
    return [kw for kw in table if any(kw in text for text in haystacks)]


def assess_priority_with_content(ctx: PriorityContext) -> PriorityAssessment:
    """Base cascade followed by content escalation.

    Example:
        >>> result = assess_priority_with_content(PriorityContext(content="I feel hopeless"))
        >>> result.priority
        <Priority.HIGH: 'high'>
    """
    base, reasoning = _base_priority(ctx)
    priority = base
    crisis = _keyword_matches(ctx, CRISIS_KEYWORDS)
    distress = _keyword_matches(ctx, DISTRESS_KEYWORDS)

    if crisis:
        priority = Priority.URGENT
        reasoning.append(f"Crisis keywords detected: {', '.join(crisis)}")
    elif priority == Priority.NORMAL:
        if ctx.sentiment_score is not None and ctx.sentiment_score < NEGATIVE_SENTIMENT_THRESHOLD:
            priority = Priority.HIGH
            reasoning.append(f"Strongly negative sentiment ({ctx.sentiment_score:.2f})")
        elif distress:
            priority = Priority.HIGH
            reasoning.append(f"Distress keywords detected: {', '.join(distress)}")

    return PriorityAssessment(
        priority=priority,
        base_priority=base,
        reasoning=reasoning,
        crisis_keywords=crisis,
        distress_keywords=distress,
    )


def explain_priority(ctx: PriorityContext) -> str:
    assessment = assess_priority_with_content(ctx)
    return f"{assessment.priority.value.capitalize()} priority: {'; '.join(assessment.reasoning)}"


# =============================================================================
# Aging and SLA
# =============================================================================
def upgrade_for_age(
    priority: Priority,
    queued_at: int,
    now: int,
    criteria: Optional[PriorityCriteriaConfig] = None,
) -> Priority:
    """Apply the aging rule. Never lowers priority.

    Args:
        priority: Current priority.
        queued_at: When the job was (re)queued, epoch ms.
        now: Current time, epoch ms.
    """
    criteria = criteria or _DEFAULT_CRITERIA
    wait = now - queued_at
    sla = criteria.for_priority(priority).max_wait_time_ms
    if wait > sla:
        return Priority.URGENT
    if priority == Priority.NORMAL and wait > sla / 2:
        return Priority.HIGH
    return priority


def should_upgrade_priority(
    priority: Priority,
    queued_at: int,
    now: int,
    criteria: Optional[PriorityCriteriaConfig] = None,
) -> bool:
    return upgrade_for_age(priority, queued_at, now, criteria) != priority


def base_delay_ms(priority: Priority, criteria: Optional[PriorityCriteriaConfig] = None) -> int:
    return (criteria or _DEFAULT_CRITERIA).for_priority(priority).delay_ms


def is_within_sla(
    priority: Priority,
    queued_at: int,
    now: int,
    criteria: Optional[PriorityCriteriaConfig] = None,
) -> bool:
    return now - queued_at <= (criteria or _DEFAULT_CRITERIA).for_priority(priority).sla_target_ms


def estimated_delay(
    priority: Priority,
    queue_length: int,
    processing_time_ms: int = 30_000,
    criteria: Optional[PriorityCriteriaConfig] = None,
) -> int:
    """Rough wait estimate: base delay plus the queue ahead, discounted by priority."""
    share = {Priority.URGENT: 0.25, Priority.HIGH: 0.5, Priority.NORMAL: 1.0}[Priority(priority)]
    return base_delay_ms(priority, criteria) + int(queue_length * processing_time_ms * share)
