"""
sluice.resilience.retry_budget - Retry Budget Manager
=======================================================

A load-derived veto applied on top of a retry decision that already said
"retry". The budget is the remaining headroom of the busier of two resources:

    utilization = max(queue_size / max_queue_size,
                      processing_count / max_concurrent)
    percentage  = 1 - utilization

Recommendation bands (defaults):

    percentage > 0.7          → allow     every priority retries
    0.3 <= percentage <= 0.7  → throttle  urgent always; high if > 0.4;
                                          normal if > 0.5
    percentage < 0.3          → reject    urgent only, and only while at
                                          least 0.1 remains

Percentages are rounded to four decimals, so 90% utilization leaves
exactly 0.1.
"""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, Field

from sluice.core.config import RetryBudgetConfig
from sluice.core.enums import BudgetRecommendation, Priority


class RetryBudget(BaseModel):
    """Remaining retry headroom at a point in time."""

    budget_percentage: float = Field(ge=0.0, le=1.0)
    available_budget: int = Field(ge=0, description="Headroom as a whole percentage")
    utilization: float = Field(ge=0.0)
    recommendation: BudgetRecommendation


class BudgetVerdict(BaseModel):
    allowed: bool
    reason: str


def calculate_retry_budget(
    queue_size: int,
    max_queue_size: int,
    processing_count: int,
    max_concurrent: int,
    config: Optional[RetryBudgetConfig] = None,
) -> RetryBudget:
    """Derive the retry budget from queue and concurrency utilization.

    Example:
        >>> calculate_retry_budget(900, 1000, 9, 10).recommendation
        <BudgetRecommendation.REJECT: 'reject'>
    """
    config = config or RetryBudgetConfig()
    queue_utilization = queue_size / max_queue_size if max_queue_size > 0 else 1.0
    processing_utilization = processing_count / max_concurrent if max_concurrent > 0 else 1.0
    utilization = max(queue_utilization, processing_utilization)
    percentage = round(min(1.0, max(0.0, 1.0 - utilization)), 4)

    if percentage > config.allow_above:
        recommendation = BudgetRecommendation.ALLOW
    elif percentage >= config.reject_below:
        recommendation = BudgetRecommendation.THROTTLE
    else:
        recommendation = BudgetRecommendation.REJECT

    return RetryBudget(
        budget_percentage=percentage,
        available_budget=int(round(percentage * 100)),
        utilization=utilization,
        recommendation=recommendation,
    )


def should_allow_retry(
    priority: Priority,
    budget: RetryBudget,
    config: Optional[RetryBudgetConfig] = None,
) -> BudgetVerdict:
    """Apply the budget to a retry that is otherwise admissible.

    Args:
        priority: Priority the retry would run at.
        budget: Current budget from calculate_retry_budget().
    """
    config = config or RetryBudgetConfig()
    pct = budget.budget_percentage

    if budget.recommendation == BudgetRecommendation.ALLOW:
        return BudgetVerdict(allowed=True, reason="Retry budget available")

    if budget.recommendation == BudgetRecommendation.THROTTLE:
        if priority == Priority.URGENT:
            return BudgetVerdict(allowed=True, reason="Urgent retries bypass throttling")
        floor = config.high_throttle_floor if priority == Priority.HIGH else config.normal_throttle_floor
        if pct > floor:
            return BudgetVerdict(allowed=True, reason=f"Throttled budget {pct:.0%} above {floor:.0%}")
        return BudgetVerdict(
            allowed=False,
            reason=f"Retry budget throttled: {pct:.0%} remaining for {priority.value} priority",
        )

    if priority == Priority.URGENT and pct >= config.urgent_reject_floor:
        return BudgetVerdict(allowed=True, reason="Urgent retry allowed on a depleted budget")
    return BudgetVerdict(
        allowed=False,
        reason=f"Retry budget exhausted: {pct:.0%} remaining",
    )
