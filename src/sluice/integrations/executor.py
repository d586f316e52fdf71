"""
sluice.integrations.executor - Deferred Execution
===================================================

The scheduling primitive the core calls to run analysis later. Scheduling is
fire-and-forget: the caller returns immediately, and the outcome reaches the
core through a later complete() or requeue() call.

Wake Contract:
    A scheduled execution is never retracted. Cancelling or dead-lettering a
    job leaves its timer in place, so the handler invoked on wake must check
    the job's status and no-op when the job is already terminal. The facade's
    handler does exactly that.

Implementations:
    - DeferredExecutor (ABC):   Abstract interface
    - AsyncioDeferredExecutor:  One asyncio task per scheduled execution
"""

from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

import structlog

from sluice.core.enums import Priority
from sluice.core.exceptions import SchedulingError


# =============================================================================
# Logger
# =============================================================================
logger = structlog.get_logger()

# (entity_id, owner_id, priority) → awaitable
ExecutionHandler = Callable[[str, str, Priority], Awaitable[None]]


# =============================================================================
# Abstract Base Class
# =============================================================================
class DeferredExecutor(ABC):
    """Abstract deferred executor.

    Example:
        >>> await executor.schedule_execution(5_000, "entry-1", "user-1", Priority.NORMAL)
    """

    @abstractmethod
    async def schedule_execution(
        self,
        delay_ms: int,
        entity_id: str,
        owner_id: str,
        priority: Priority,
    ) -> None:
        """Arrange for the execution handler to run after `delay_ms`.

        Raises:
            SchedulingError: The executor cannot accept the work.
        """
        ...

    async def start(self) -> None:
        """Accept work again after a shutdown."""

    async def shutdown(self) -> None:
        """Drop pending executions."""


# =============================================================================
# asyncio Implementation
# =============================================================================
class AsyncioDeferredExecutor(DeferredExecutor):
    """Runs each scheduled execution as a sleeping asyncio task.

    Handler exceptions are logged and never propagate into the event loop.

    Example:
        >>> executor = AsyncioDeferredExecutor(handler=on_wake)
        >>> await executor.schedule_execution(0, "entry-1", "user-1", Priority.URGENT)
        >>> await executor.shutdown()
    """

    def __init__(self, handler: Optional[ExecutionHandler] = None) -> None:
        self._handler = handler
        self._tasks: set[asyncio.Task[None]] = set()
        self._closed = False
        self._logger = logger.bind(component="deferred_executor")

    def set_handler(self, handler: ExecutionHandler) -> None:
        self._handler = handler

    @property
    def pending_count(self) -> int:
        return len(self._tasks)

    async def schedule_execution(
        self,
        delay_ms: int,
        entity_id: str,
        owner_id: str,
        priority: Priority,
    ) -> None:
        if self._closed:
            raise SchedulingError(
                message="Executor is shut down",
                details={"entity_id": entity_id},
            )
        if self._handler is None:
            raise SchedulingError(
                message="No execution handler registered",
                details={"entity_id": entity_id},
            )

        task = asyncio.create_task(self._run(max(0, delay_ms), entity_id, owner_id, priority))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        self._logger.debug(
            "execution_scheduled",
            entity_id=entity_id,
            delay_ms=delay_ms,
            priority=Priority(priority).value,
        )

    async def _run(self, delay_ms: int, entity_id: str, owner_id: str, priority: Priority) -> None:
        await asyncio.sleep(delay_ms / 1000)
        handler = self._handler
        if handler is None:
            return
        try:
            await handler(entity_id, owner_id, priority)
        except Exception as exc:
            self._logger.error(
                "deferred_execution_failed",
                entity_id=entity_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def drain(self) -> None:
        """Wait for every currently scheduled execution to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def start(self) -> None:
        if self._closed:
            self._closed = False
            self._logger.info("executor_started")

    async def shutdown(self) -> None:
        self._closed = True
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()
        self._logger.info("executor_shutdown", cancelled=len(tasks))
