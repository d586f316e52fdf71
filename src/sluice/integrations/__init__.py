"""
sluice.integrations - External Collaborators
==============================================

The seams between the scheduling core and the outside world:

    - executor:     Deferred execution (fire-and-forget scheduling)
    - worker:       The opaque analysis computation
    - fallback:     Degraded analysis when retries are not worth it
    - dead_letter:  Terminal sink for exhausted or non-retryable jobs
"""

from sluice.integrations.dead_letter import (
    DeadLetterSink,
    DeadLetterStats,
    StoreDeadLetterSink,
    categorize_dead_letter,
)
from sluice.integrations.executor import (
    AsyncioDeferredExecutor,
    DeferredExecutor,
    ExecutionHandler,
)
from sluice.integrations.fallback import (
    DisabledFallbackEvaluator,
    FallbackDecision,
    FallbackEvaluator,
    RuleBasedFallbackEvaluator,
)
from sluice.integrations.worker import AnalysisWorker, MockAnalysisWorker

__all__ = [
    "DeferredExecutor",
    "AsyncioDeferredExecutor",
    "ExecutionHandler",
    "AnalysisWorker",
    "MockAnalysisWorker",
    "FallbackDecision",
    "FallbackEvaluator",
    "RuleBasedFallbackEvaluator",
    "DisabledFallbackEvaluator",
    "DeadLetterSink",
    "DeadLetterStats",
    "StoreDeadLetterSink",
    "categorize_dead_letter",
]
