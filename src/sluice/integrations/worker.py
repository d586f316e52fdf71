"""
sluice.integrations.worker - Analysis Worker Abstraction
==========================================================

The analysis computation itself is opaque to Sluice. A worker receives a job
and either returns (success) or raises (failure). The facade times the call,
records the outcome on the dependency's circuit breaker, and then calls
complete() or requeue().

Implementations:
    - AnalysisWorker (ABC):  Abstract interface
    - MockAnalysisWorker:    Scripted outcomes for tests and examples

Usage:
    >>> worker = MockAnalysisWorker()
    >>> worker.queue_failure("Service unavailable (503)")
    >>> await worker.analyze(job)   # raises AnalysisError
    >>> await worker.analyze(job)   # succeeds (queue empty)
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Optional

import structlog

from sluice.core.exceptions import AnalysisError
from sluice.core.models import AnalysisJob


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()


class AnalysisWorker(ABC):
    """Abstract analysis worker."""

    @abstractmethod
    async def analyze(self, job: AnalysisJob) -> None:
        """Run the analysis for a job.

        Raises:
            Exception: Any failure. Its message is classified by the retry
                engine, so AnalysisError with the upstream text is preferred.
        """
        ...


class MockAnalysisWorker(AnalysisWorker):
    """Worker with scripted outcomes and call tracking.

    Outcomes are consumed FIFO. When the queue is empty the worker succeeds,
    unless `fail_always` is set.

    Attributes:
        fail_always: Error message to raise on every call with an empty queue.
        latency_s: Simulated processing time per call.
    """

    def __init__(self, fail_always: Optional[str] = None, latency_s: float = 0.0) -> None:
        self._outcomes: deque[Optional[str]] = deque()
        self._call_history: list[dict[str, Any]] = []
        self.fail_always = fail_always
        self.latency_s = latency_s
        self._logger = logger.bind(component="mock_analysis_worker")

    @property
    def call_history(self) -> list[dict[str, Any]]:
        return self._call_history

    @property
    def call_count(self) -> int:
        return len(self._call_history)

    def queue_failure(self, message: str) -> None:
        self._outcomes.append(message)

    def queue_success(self) -> None:
        self._outcomes.append(None)

    async def analyze(self, job: AnalysisJob) -> None:
        self._call_history.append(
            {"job_id": job.id, "entity_id": job.entity_id, "attempts": job.processing_attempts}
        )
        if self.latency_s:
            await asyncio.sleep(self.latency_s)

        failure = self._outcomes.popleft() if self._outcomes else self.fail_always
        if failure is not None:
            self._logger.debug("mock_analysis_failed", entity_id=job.entity_id, error=failure)
            raise AnalysisError(failure, entity_id=job.entity_id)
        self._logger.debug("mock_analysis_succeeded", entity_id=job.entity_id)
