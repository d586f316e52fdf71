"""
Basic Queue Example: Enqueue, Retry, Inspect
==============================================

This example runs Sluice with its default in-process components and a mock
worker that fails once before succeeding:

    1. Enqueue a few entries at different priorities
    2. Let the asyncio executor wake the worker
    3. Watch the failed attempt get retried with backoff
    4. Print the owner's status, queue metrics and breaker health

Usage:
    python examples/basic_queue.py
"""

from __future__ import annotations

import asyncio

from sluice.core.config import QueueConfig, SluiceConfig
from sluice.core.enums import Priority, UserTier
from sluice.facade import Sluice
from sluice.integrations.worker import MockAnalysisWorker
from sluice.scheduling.priority import PriorityContext


async def main() -> None:
    """Enqueue three entries and follow them to completion."""
    config = SluiceConfig(queue=QueueConfig(batch_interval_ms=500))

    # First call fails with a transient error, everything after succeeds
    worker = MockAnalysisWorker(latency_s=0.05)
    worker.queue_failure("Service unavailable (503)")

    async with Sluice(config, worker=worker) as sluice:
        # Explicit priority
        urgent = await sluice.enqueue("entry-urgent", "user-1", priority=Priority.URGENT)

        # Priority assessed from context: premium owner, recent activity
        context = PriorityContext(owner_tier=UserTier.PREMIUM, hours_since_last_activity=1.0)
        high = await sluice.enqueue("entry-high", "user-1", context=context)

        # Defaults: normal priority, 5s delay
        normal = await sluice.enqueue("entry-normal", "user-1")

        for result in (urgent, high, normal):
            print(
                f"{result.status.value:<8} {result.priority.value:<7} "
                f"delay={result.delay_ms}ms position={result.queue_position} "
                f"reasons={result.reasoning}"
            )

        # Enqueueing again is idempotent
        duplicate = await sluice.enqueue("entry-urgent", "user-1")
        print(f"duplicate enqueue → {duplicate.status.value}")

        await asyncio.sleep(2)
        status = await sluice.owner_status("user-1")
        print("\n=== Owner status after 2s ===")
        for job in status.jobs:
            print(
                f"  {job.entity_id:<13} {job.status.value:<10} attempts={job.processing_attempts} "
                f"position={job.queue_position} retrying={job.is_retrying}"
            )

        for note in await sluice.failure_notifications("user-1"):
            print(f"  [{note.type.value}] {note.entity_id}: {note.message}")

        # Give the retry and the normal-priority job time to run
        await asyncio.sleep(14)

        metrics = await sluice.queue_metrics()
        print("\n=== Queue metrics ===")
        print(f"  processing={metrics.total_processing} health={metrics.health}")
        print(f"  avg processing time={metrics.avg_processing_time_ms:.0f}ms")

        report = await sluice.health_report()
        print("\n=== Breaker health ===")
        print(f"  state={report.state.value} healthy={report.is_healthy}")
        print(f"  errors_24h={report.total_errors_24h} successes_24h={report.total_successes_24h}")

        capacity = await sluice.check_capacity(Priority.NORMAL)
        print(f"\nCapacity for normal work: {capacity.reason}")


if __name__ == "__main__":
    asyncio.run(main())
