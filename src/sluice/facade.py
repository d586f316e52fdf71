"""
sluice.facade - Sluice Top-Level Facade
=========================================

The single entry point that wires every Sluice layer together, runs the
periodic sweeps, and drives the analysis worker when scheduled executions
wake up.

Architecture Context:

    ┌───────────────────────────────────────────────────────┐
    │                    Sluice (Facade)                    │
    │                                                       │
    │  ┌─────────────────────────────────────────────────┐  │
    │  │  Scheduling                                     │  │
    │  │  Admission, BatchSelector, JobLifecycle, Status │  │
    │  └───────────────────────┬─────────────────────────┘  │
    │                          │                            │
    │  ┌───────────────────────▼─────────────────────────┐  │
    │  │  Resilience                                     │  │
    │  │  CircuitBreakerService, RetryStrategyEngine     │  │
    │  └───────────────────────┬─────────────────────────┘  │
    │                          │                            │
    │  ┌───────────────────────▼─────────────────────────┐  │
    │  │  Infrastructure          Integrations           │  │
    │  │  JobStore                Executor, Worker,      │  │
    │  │                          Fallback, DeadLetter   │  │
    │  └─────────────────────────────────────────────────┘  │
    └───────────────────────────────────────────────────────┘

Wake Handling:

    executor wakes (entity_id, owner_id, priority)
        │
        ├─ no active job / job terminal / already running ──→ no-op
        ├─ breaker refuses the call ──→ requeue (fallback / dead-letter path)
        ├─ claim() refuses (superseded timer) ──────────────→ no-op
        └─ worker.analyze(job)
               ├─ ok     → record_success, complete
               └─ raises → record_failure, requeue

Periodic Sweeps (asyncio tasks, started by initialize()):
    batch selection   every queue.batch_interval_ms
    aging upgrade     every queue.aging_interval_ms
    purge + revival   every queue.maintenance_interval_ms

Usage:
    >>> async with Sluice(worker=my_worker) as sluice:
    ...     result = await sluice.enqueue("entry-1", "user-1")
    ...     status = await sluice.owner_status("user-1")
"""

from __future__ import annotations

import asyncio
import random
from typing import Any, Awaitable, Callable, Optional

import structlog

from sluice.admin import AdminOperations
from sluice.core.config import SluiceConfig
from sluice.core.enums import Priority
from sluice.core.log_config import configure_logging
from sluice.core.models import AnalysisJob, now_ms
from sluice.infrastructure.job_store import InMemoryJobStore, JobStore
from sluice.integrations.dead_letter import DeadLetterSink, DeadLetterStats, StoreDeadLetterSink
from sluice.integrations.executor import AsyncioDeferredExecutor, DeferredExecutor
from sluice.integrations.fallback import FallbackEvaluator, RuleBasedFallbackEvaluator
from sluice.integrations.worker import AnalysisWorker, MockAnalysisWorker
from sluice.resilience.breaker_service import (
    BreakerHealthReport,
    BreakerSummary,
    CircuitBreakerService,
)
from sluice.resilience.retry_strategy import RetryStrategyEngine
from sluice.scheduling.admission import AdmissionController, EnqueueResult
from sluice.scheduling.batch_selector import BatchResult, BatchSelector
from sluice.scheduling.lifecycle import (
    WAKE_GRACE_MS,
    AutoRequeueResult,
    CancelResult,
    JobLifecycle,
    PurgeResult,
    RequeueOutcome,
)
from sluice.scheduling.priority import PriorityContext
from sluice.scheduling.processing_stats import ProcessingTimeTracker
from sluice.scheduling.status import (
    CapacityCheck,
    Notification,
    OwnerStatus,
    QueueMetrics,
    QueueStatusService,
)


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()


class Sluice:
    """Top-level facade for the Sluice scheduling engine.

    Lifecycle:
        1. ``Sluice(config, worker=...)``  Instantiate and wire components
        2. ``await initialize()``          Connect the store, restore
                                           breakers, start sweeps
        3. ``await enqueue(...)``          Submit analysis jobs
        4. ``await shutdown()``            Stop sweeps and pending timers

    Attributes:
        _config: Sluice configuration.
        _store: Job, breaker and metrics persistence.
        _executor: Deferred execution primitive.
        _worker: The analysis computation.
        _running: Job ids currently inside worker.analyze().

    Example:
        >>> sluice = Sluice(worker=MockAnalysisWorker())
        >>> await sluice.initialize()
        >>> await sluice.enqueue("entry-1", "user-1", priority=Priority.URGENT)
        >>> await sluice.shutdown()
    """

    def __init__(
        self,
        config: Optional[SluiceConfig] = None,
        *,
        store: Optional[JobStore] = None,
        worker: Optional[AnalysisWorker] = None,
        executor: Optional[DeferredExecutor] = None,
        fallback: Optional[FallbackEvaluator] = None,
        dead_letter: Optional[DeadLetterSink] = None,
        clock: Callable[[], int] = now_ms,
        rng: Optional[random.Random] = None,
        run_sweeps: bool = True,
    ) -> None:
        """Wire every Sluice component.

        Args:
            config: Sluice configuration. Defaults to SluiceConfig(), which
                reads SLUICE_* environment variables.
            store: Persistence. Defaults to InMemoryJobStore.
            worker: Analysis worker. Defaults to MockAnalysisWorker.
            executor: Deferred executor. Defaults to an
                AsyncioDeferredExecutor bound to this facade's wake handler.
            fallback: Fallback collaborator. Defaults to the rule-based one.
            dead_letter: Dead-letter sink. Defaults to the store-backed one.
            clock: Epoch-ms clock shared by every component.
            rng: Random source for retry jitter.
            run_sweeps: Start the periodic sweeps on initialize().
        """
        # --- Configuration ---
        self._config = config or SluiceConfig()
        self._clock = clock
        self._run_sweeps = run_sweeps

        # --- Infrastructure and Integrations ---
        self._store = store or InMemoryJobStore()
        self._worker = worker or MockAnalysisWorker()
        self._executor = executor or AsyncioDeferredExecutor()
        if isinstance(self._executor, AsyncioDeferredExecutor):
            self._executor.set_handler(self.handle_execution)

        # --- Resilience ---
        self._breakers = CircuitBreakerService(
            self._store, self._config.circuit_breaker, clock=clock
        )
        self._engine = RetryStrategyEngine(self._config.retry, rng=rng, clock=clock)
        self._fallback = fallback or RuleBasedFallbackEvaluator(
            self._breakers, self._config.default_dependency, engine=self._engine
        )
        self._dead_letter = dead_letter or StoreDeadLetterSink(self._store, clock=clock)

        # --- Scheduling ---
        self._tracker = ProcessingTimeTracker(
            default_ms=self._config.queue.estimated_processing_time_ms,
            window=self._config.queue.processing_time_window,
        )
        self._admission = AdmissionController(
            self._store, self._executor, self._config, tracker=self._tracker, clock=clock
        )
        self._selector = BatchSelector(self._store, self._executor, self._config, clock=clock)
        self._lifecycle = JobLifecycle(
            self._store,
            self._executor,
            self._breakers,
            engine=self._engine,
            config=self._config,
            fallback=self._fallback,
            dead_letter=self._dead_letter,
            tracker=self._tracker,
            clock=clock,
        )
        self._status = QueueStatusService(
            self._store, self._config, tracker=self._tracker, clock=clock
        )
        self._admin = AdminOperations(self._breakers, self._lifecycle, self._config)

        # --- Tracking ---
        self._running: set[str] = set()
        self._sweeps: list[asyncio.Task[None]] = []
        self._initialized = False
        self._logger = logger.bind(component="sluice")

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def config(self) -> SluiceConfig:
        return self._config

    @property
    def store(self) -> JobStore:
        return self._store

    @property
    def executor(self) -> DeferredExecutor:
        return self._executor

    @property
    def breakers(self) -> CircuitBreakerService:
        return self._breakers

    @property
    def lifecycle(self) -> JobLifecycle:
        return self._lifecycle

    @property
    def admin(self) -> AdminOperations:
        return self._admin

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    # =========================================================================
    # Lifecycle Management
    # =========================================================================

    async def initialize(self) -> None:
        """Connect the store, restore breakers and start the sweeps.

        Idempotent: Safe to call multiple times.
        """
        if self._initialized:
            self._logger.debug("sluice_already_initialized")
            return

        configure_logging(self._config.log_level)
        self._logger.info("sluice_initializing", environment=self._config.environment)

        await self._store.connect()
        await self._executor.start()
        restored = await self._breakers.load()

        if self._run_sweeps:
            queue = self._config.queue
            self._sweeps = [
                asyncio.create_task(self._periodic("batch", queue.batch_interval_ms, self._batch_sweep)),
                asyncio.create_task(
                    self._periodic("aging", queue.aging_interval_ms, self._lifecycle.upgrade_aging_requests)
                ),
                asyncio.create_task(
                    self._periodic("maintenance", queue.maintenance_interval_ms, self._maintenance_sweep)
                ),
            ]

        self._initialized = True
        self._logger.info("sluice_initialized", breakers_restored=restored, sweeps=len(self._sweeps))

    async def shutdown(self) -> None:
        """Stop sweeps, drop pending executions and disconnect the store.

        Idempotent: Safe to call multiple times.
        """
        if not self._initialized:
            self._logger.debug("sluice_not_initialized_skipping_shutdown")
            return

        self._logger.info("sluice_shutting_down")
        for task in self._sweeps:
            task.cancel()
        if self._sweeps:
            await asyncio.gather(*self._sweeps, return_exceptions=True)
        self._sweeps = []

        await self._executor.shutdown()
        await self._store.disconnect()

        self._initialized = False
        self._logger.info("sluice_shutdown_complete")

    async def __aenter__(self) -> Sluice:
        await self.initialize()
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.shutdown()

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise RuntimeError("Sluice is not initialized. Call await sluice.initialize() first.")

    # =========================================================================
    # Wake Handler
    # =========================================================================

    async def handle_execution(self, entity_id: str, owner_id: str, priority: Priority) -> None:
        """Run the worker for an entity's active job when its timer fires."""
        job = await self._store.find_active_by_entity(entity_id)
        if job is None or job.is_terminal or job.id in self._running:
            return

        dependency = self._config.default_dependency
        if not await self._breakers.can_execute(dependency):
            # A wake for a superseded timer must not spend a retry attempt.
            if job.next_attempt_at is not None and self._clock() < job.next_attempt_at - WAKE_GRACE_MS:
                return
            self._logger.info("execution_blocked_by_breaker", job_id=job.id, dependency=dependency)
            await self._lifecycle.requeue(job.id, f"Circuit breaker open: {dependency} service unavailable")
            return

        claimed = await self._lifecycle.claim(job.id)
        if claimed is None:
            return

        self._running.add(job.id)
        started = self._clock()
        try:
            await self._worker.analyze(claimed)
        except Exception as exc:
            elapsed = max(0, self._clock() - started)
            self._logger.warning(
                "analysis_failed",
                job_id=job.id,
                entity_id=entity_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
            await self._breakers.record_failure(dependency, exc, elapsed)
            await self._lifecycle.requeue(job.id, exc)
        else:
            elapsed = max(0, self._clock() - started)
            await self._breakers.record_success(dependency, elapsed)
            await self._lifecycle.complete(job.id, elapsed)
        finally:
            self._running.discard(job.id)

    # =========================================================================
    # Periodic Sweeps
    # =========================================================================

    async def _periodic(
        self, name: str, interval_ms: int, sweep: Callable[[], Awaitable[Any]]
    ) -> None:
        while True:
            await asyncio.sleep(interval_ms / 1000)
            try:
                await sweep()
            except Exception as exc:
                self._logger.error("sweep_failed", sweep=name, error=str(exc), error_type=type(exc).__name__)

    async def _batch_sweep(self) -> BatchResult:
        return await self._selector.process_queue()

    async def _maintenance_sweep(self) -> None:
        await self._lifecycle.purge_expired()
        await self._lifecycle.auto_requeue_transient_failures()

    # =========================================================================
    # Jobs
    # =========================================================================

    async def enqueue(
        self,
        entity_id: str,
        owner_id: str,
        priority: Optional[Priority] = None,
        delay_ms: Optional[int] = None,
        context: Optional[PriorityContext] = None,
    ) -> EnqueueResult:
        self._ensure_initialized()
        return await self._admission.enqueue(entity_id, owner_id, priority, delay_ms, context)

    async def process_queue(self, max_batch_size: Optional[int] = None) -> BatchResult:
        self._ensure_initialized()
        return await self._selector.process_queue(max_batch_size)

    async def complete(self, job_id: str, processing_time_ms: Optional[int] = None) -> Optional[AnalysisJob]:
        self._ensure_initialized()
        return await self._lifecycle.complete(job_id, processing_time_ms)

    async def requeue(self, job_id: str, error: Any) -> RequeueOutcome:
        self._ensure_initialized()
        return await self._lifecycle.requeue(job_id, error)

    async def cancel(self, job_id: str, owner_id: str, reason: str = "") -> CancelResult:
        self._ensure_initialized()
        return await self._lifecycle.cancel(job_id, owner_id, reason)

    async def purge_expired(self, max_age_ms: Optional[int] = None, dry_run: bool = False) -> PurgeResult:
        self._ensure_initialized()
        return await self._lifecycle.purge_expired(max_age_ms, dry_run)

    async def auto_requeue_transient_failures(
        self, max_age_ms: Optional[int] = None, batch_size: int = 10
    ) -> AutoRequeueResult:
        self._ensure_initialized()
        if max_age_ms is None:
            return await self._lifecycle.auto_requeue_transient_failures(batch_size=batch_size)
        return await self._lifecycle.auto_requeue_transient_failures(max_age_ms, batch_size)

    async def get_job(self, job_id: str) -> Optional[AnalysisJob]:
        return await self._store.get_job(job_id)

    # =========================================================================
    # Status
    # =========================================================================

    async def owner_status(self, owner_id: str) -> OwnerStatus:
        return await self._status.owner_status(owner_id)

    async def queue_metrics(self) -> QueueMetrics:
        return await self._status.queue_metrics()

    async def failure_notifications(self, owner_id: str, since: Optional[int] = None) -> list[Notification]:
        return await self._status.failure_notifications(owner_id, since)

    async def check_capacity(self, priority: Priority = Priority.NORMAL) -> CapacityCheck:
        return await self._status.check_capacity(priority)

    async def health_report(self, dependency: Optional[str] = None) -> BreakerHealthReport:
        return await self._breakers.health_report(dependency or self._config.default_dependency)

    async def breaker_summary(self) -> BreakerSummary:
        return await self._breakers.summary()

    async def dead_letter_stats(self, hours: int = 24) -> DeadLetterStats:
        return await self._dead_letter.stats(hours)
