"""
Tests for sluice.integrations.worker
======================================

MockAnalysisWorker consumes scripted outcomes FIFO and records every call.
"""

import pytest

from sluice.core.exceptions import AnalysisError
from sluice.core.models import AnalysisJob
from sluice.integrations.worker import AnalysisWorker, MockAnalysisWorker


@pytest.fixture
def job() -> AnalysisJob:
    return AnalysisJob(entity_id="entry-1", owner_id="user-1", processing_attempts=2)


class TestMockAnalysisWorker:
    """Scripted outcomes and call tracking."""

    async def test_succeeds_by_default(self, worker, job) -> None:
        """With nothing queued the worker succeeds."""
        await worker.analyze(job)
        assert worker.call_count == 1
        assert worker.call_history == [
            {"job_id": job.id, "entity_id": "entry-1", "attempts": 2}
        ]

    async def test_outcomes_consumed_in_order(self, worker, job) -> None:
        """Queued failures and successes are replayed FIFO."""
        worker.queue_failure("Service unavailable (503)")
        worker.queue_success()
        worker.queue_failure("Network error")

        with pytest.raises(AnalysisError) as exc_info:
            await worker.analyze(job)
        assert exc_info.value.message == "Service unavailable (503)"
        assert exc_info.value.entity_id == "entry-1"

        await worker.analyze(job)
        with pytest.raises(AnalysisError):
            await worker.analyze(job)
        await worker.analyze(job)
        assert worker.call_count == 4

    async def test_fail_always(self, job) -> None:
        """fail_always applies whenever the script is empty."""
        worker = MockAnalysisWorker(fail_always="Request timed out")
        worker.queue_success()
        await worker.analyze(job)
        with pytest.raises(AnalysisError, match="timed out"):
            await worker.analyze(job)

    def test_abstract_interface(self) -> None:
        """AnalysisWorker cannot be instantiated directly."""
        with pytest.raises(TypeError):
            AnalysisWorker()
