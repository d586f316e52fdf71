"""
Sluice - Priority Scheduling and Resilience for Analysis Jobs
===============================================================

Sluice admits, prioritizes, retries and circuit-breaks asynchronous analysis
jobs, one job per logical entry:

    enqueue  →  weighted dequeue  →  worker  →  complete
                      ↑                  │
                      └── requeue ←──────┘ (retry engine, budget,
                                            fallback, dead-letter)

Layers (top to bottom):
    1. Facade       - Sluice, AdminOperations
    2. Scheduling   - Admission, BatchSelector, JobLifecycle, Status
    3. Resilience   - Classification, CircuitBreaker, RetryStrategy, Budget
    4. Integrations - Executor, Worker, Fallback, DeadLetter
    5. Infra / Core - JobStore, config, models, enums, exceptions

Quick Start:
    >>> from sluice import Sluice
    >>> async with Sluice(worker=my_worker) as sluice:
    ...     await sluice.enqueue("entry-1", "user-1")
"""

# =============================================================================
# Package Version
# =============================================================================
__version__ = "0.1.0"

# =============================================================================
# Package-Level Exports
# =============================================================================
# The Sluice facade is the main entry point. For specific components, import
# from submodules directly:
#   from sluice.core.config import SluiceConfig
#   from sluice.resilience.retry_strategy import RetryStrategyEngine
# =============================================================================
from sluice.facade import Sluice

__all__ = ["Sluice", "__version__"]
