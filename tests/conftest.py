"""
Shared Test Fixtures for Sluice
=================================

Reusable pytest fixtures used across the test suite, organized by layer:

    1. Time and randomness (ManualClock, seeded Random)
    2. Configuration
    3. Infrastructure (InMemoryJobStore)
    4. Integrations (RecordingExecutor, MockAnalysisWorker)
    5. Resilience (CircuitBreakerService, RetryStrategyEngine)
    6. Scheduling (JobLifecycle)
    7. Facade (Sluice, initialized without background sweeps)

Every component accepts an injectable clock, so tests move time forward
explicitly with ``clock.advance(ms)`` instead of sleeping.
"""

from __future__ import annotations

import random

import pytest

from sluice.core.config import SluiceConfig
from sluice.core.enums import Priority
from sluice.core.exceptions import SchedulingError
from sluice.core.models import AnalysisJob
from sluice.facade import Sluice
from sluice.infrastructure.job_store import InMemoryJobStore
from sluice.integrations.executor import DeferredExecutor
from sluice.integrations.worker import MockAnalysisWorker
from sluice.resilience.breaker_service import CircuitBreakerService
from sluice.resilience.retry_strategy import RetryStrategyEngine
from sluice.scheduling.lifecycle import JobLifecycle


START_MS = 1_700_000_000_000


# =============================================================================
# Test Doubles
# =============================================================================
class ManualClock:
    """Epoch-ms clock that only moves when told to."""

    def __init__(self, start: int = START_MS) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


class RecordingExecutor(DeferredExecutor):
    """Deferred executor that records calls instead of running them.

    Entities listed in ``fail_for`` make schedule_execution raise, which is
    how tests simulate a broken scheduling primitive.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[int, str, str, Priority]] = []
        self.fail_for: set[str] = set()
        self.shut_down = False

    async def schedule_execution(
        self, delay_ms: int, entity_id: str, owner_id: str, priority: Priority
    ) -> None:
        if entity_id in self.fail_for:
            raise SchedulingError(message=f"Cannot schedule {entity_id}")
        self.calls.append((delay_ms, entity_id, owner_id, priority))

    async def start(self) -> None:
        self.shut_down = False

    async def shutdown(self) -> None:
        self.shut_down = True

    def entities(self) -> list[str]:
        return [call[1] for call in self.calls]


async def insert_job(
    store: InMemoryJobStore,
    clock: ManualClock,
    entity_id: str = "entry-1",
    owner_id: str = "user-1",
    priority: Priority = Priority.NORMAL,
    started: bool = False,
    **fields,
) -> AnalysisJob:
    """Insert a PROCESSING job directly into the store."""
    now = clock()
    job = AnalysisJob(
        entity_id=entity_id,
        owner_id=owner_id,
        priority=priority,
        created_at=now,
        queued_at=now,
        updated_at=now,
        processing_started_at=now if started else None,
        **fields,
    )
    stored, created = await store.insert_job_if_absent(job)
    assert created
    return stored


# =============================================================================
# Time and Randomness
# =============================================================================

@pytest.fixture
def clock():
    """ManualClock starting at a fixed epoch."""
    return ManualClock()


@pytest.fixture
def rng():
    """Seeded random source for jitter."""
    return random.Random(42)


# =============================================================================
# Configuration
# =============================================================================

@pytest.fixture
def config():
    """Sluice configuration with defaults."""
    return SluiceConfig()


# =============================================================================
# Infrastructure
# =============================================================================

@pytest.fixture
def store():
    """Fresh InMemoryJobStore."""
    return InMemoryJobStore()


# =============================================================================
# Integrations
# =============================================================================

@pytest.fixture
def executor():
    """RecordingExecutor with no failures configured."""
    return RecordingExecutor()


@pytest.fixture
def worker():
    """MockAnalysisWorker that succeeds unless told otherwise."""
    return MockAnalysisWorker()


# =============================================================================
# Resilience
# =============================================================================

@pytest.fixture
def breakers(store, config, clock):
    """CircuitBreakerService backed by the shared store."""
    return CircuitBreakerService(store, config.circuit_breaker, clock=clock)


@pytest.fixture
def engine(config, rng, clock):
    """RetryStrategyEngine with a seeded random source."""
    return RetryStrategyEngine(config.retry, rng=rng, clock=clock)


# =============================================================================
# Scheduling
# =============================================================================

@pytest.fixture
def lifecycle(store, executor, breakers, engine, config, clock):
    """JobLifecycle with the default (disabled) fallback evaluator."""
    return JobLifecycle(
        store,
        executor,
        breakers,
        engine=engine,
        config=config,
        clock=clock,
    )


# =============================================================================
# Facade
# =============================================================================

@pytest.fixture
async def sluice(config, store, worker, executor, clock, rng):
    """Initialized Sluice facade without background sweeps."""
    facade = Sluice(
        config,
        store=store,
        worker=worker,
        executor=executor,
        clock=clock,
        rng=rng,
        run_sweeps=False,
    )
    await facade.initialize()
    yield facade
    await facade.shutdown()


@pytest.fixture
def make_job(store, clock):
    """Factory inserting PROCESSING jobs straight into the store.

    Usage:
        job = await make_job("entry-1", priority=Priority.HIGH, started=True)
    """

    async def factory(entity_id: str = "entry-1", owner_id: str = "user-1", **fields) -> AnalysisJob:
        return await insert_job(store, clock, entity_id, owner_id, **fields)

    return factory
