"""
Task executors for chunk and flow execution.

Provides:
- SyncTaskExecutor: runs every task inline, in submission order
- AsyncPoolTaskExecutor: a fixed number of asyncio workers fed by a
  bounded queue; submit() waits for queue space instead of dropping work
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from ..utils.logger import LoggerContext, get_log_context, get_logger
from ..core.exceptions import ConfigurationError


TaskFunc = Callable[[], Awaitable[Any]]


class TaskExecutor(ABC):
    """
    Abstract base class for task executors.

    Tasks are zero-argument coroutine functions; submit() returns a future
    resolving to the task's result or exception.
    """

    @abstractmethod
    async def submit(self, func: TaskFunc) -> "asyncio.Future[Any]":
        """
        Schedule a task.

        Args:
            func: Coroutine function to run

        Returns:
            Future for the task outcome
        """
        pass

    @abstractmethod
    async def shutdown(self, wait: bool = True) -> None:
        """
        Stop accepting tasks.

        Args:
            wait: Whether to let queued and running tasks finish first
        """
        pass

    @property
    @abstractmethod
    def concurrency_limit(self) -> int:
        pass

    def get_statistics(self) -> Dict[str, Any]:
        return {"executor": self.__class__.__name__, "concurrency_limit": self.concurrency_limit}


class SyncTaskExecutor(TaskExecutor):
    """Runs tasks to completion inside submit()."""

    async def submit(self, func: TaskFunc) -> "asyncio.Future[Any]":
        future = asyncio.get_running_loop().create_future()
        try:
            future.set_result(await func())
        except Exception as e:
            future.set_exception(e)
        return future

    async def shutdown(self, wait: bool = True) -> None:
        return None

    @property
    def concurrency_limit(self) -> int:
        return 1


class AsyncPoolTaskExecutor(TaskExecutor):
    """
    Bounded pool of asyncio workers.

    Suitable for:
    - Chunks whose writer awaits I/O (database round trips)
    - Independent flows of a split
    """

    def __init__(self, concurrency_limit: int = 30, queue_capacity: Optional[int] = None, name: str = "batch-pool"):
        """
        Initialize the pool.

        Args:
            concurrency_limit: Number of worker tasks
            queue_capacity: Maximum queued tasks before submit() waits
                (defaults to twice the concurrency limit)
            name: Prefix for worker task names
        """
        if concurrency_limit < 1:
            raise ConfigurationError("concurrency_limit", "must be at least 1")
        if queue_capacity is not None and queue_capacity < 1:
            raise ConfigurationError("queue_capacity", "must be at least 1")

        self._concurrency_limit = concurrency_limit
        self.queue_capacity = queue_capacity or concurrency_limit * 2
        self.name = name
        self._queue: Optional["asyncio.Queue[Optional[Tuple[TaskFunc, asyncio.Future, Dict[str, Any]]]]"] = None
        self._workers: List[asyncio.Task] = []
        self._is_shutdown = False

        # Statistics
        self.submitted = 0
        self.completed = 0
        self.failed = 0
        self.active = 0
        self.peak_active = 0

        self.logger = get_logger(__name__)

    @property
    def concurrency_limit(self) -> int:
        return self._concurrency_limit

    def _ensure_started(self):
        if self._queue is not None:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_capacity)
        self._workers = [
            asyncio.create_task(self._worker_loop(), name=f"{self.name}-{i}")
            for i in range(self._concurrency_limit)
        ]
        self.logger.debug("Task pool started", extra={
            "pool": self.name,
            "concurrency_limit": self._concurrency_limit,
            "queue_capacity": self.queue_capacity
        })

    async def submit(self, func: TaskFunc) -> "asyncio.Future[Any]":
        if self._is_shutdown:
            raise RuntimeError(f"Task pool {self.name} is shut down")
        self._ensure_started()

        future = asyncio.get_running_loop().create_future()
        # Waits while the queue is full
        await self._queue.put((func, future, get_log_context()))
        self.submitted += 1
        return future

    async def _worker_loop(self):
        while True:
            entry = await self._queue.get()
            try:
                if entry is None:
                    return
                func, future, log_context = entry
                if future.cancelled():
                    continue
                self.active += 1
                self.peak_active = max(self.peak_active, self.active)
                try:
                    # Workers outlive the task that started them; log as the submitter
                    with LoggerContext(**log_context):
                        result = await func()
                except asyncio.CancelledError:
                    future.cancel()
                    raise
                except Exception as e:
                    self.failed += 1
                    if not future.done():
                        future.set_exception(e)
                else:
                    self.completed += 1
                    if not future.done():
                        future.set_result(result)
                finally:
                    self.active -= 1
            finally:
                self._queue.task_done()

    async def shutdown(self, wait: bool = True) -> None:
        """Stop the workers, optionally draining queued tasks first."""
        self._is_shutdown = True
        if self._queue is None:
            return

        if wait:
            await self._queue.join()
            for _ in self._workers:
                await self._queue.put(None)
            await asyncio.gather(*self._workers, return_exceptions=True)
        else:
            for worker in self._workers:
                worker.cancel()
            await asyncio.gather(*self._workers, return_exceptions=True)

        self._workers = []
        self.logger.debug("Task pool shut down", extra={"pool": self.name, "completed": self.completed})

    def get_statistics(self) -> Dict[str, Any]:
        return {
            "executor": self.__class__.__name__,
            "concurrency_limit": self._concurrency_limit,
            "queue_capacity": self.queue_capacity,
            "queued": self._queue.qsize() if self._queue is not None else 0,
            "submitted": self.submitted,
            "completed": self.completed,
            "failed": self.failed,
            "active": self.active,
            "peak_active": self.peak_active
        }


def create_task_executor(concurrency_limit: int, queue_capacity: Optional[int] = None, name: str = "batch-pool") -> TaskExecutor:
    """SyncTaskExecutor for a limit of 1, otherwise a worker pool."""
    if concurrency_limit <= 1:
        return SyncTaskExecutor()
    return AsyncPoolTaskExecutor(concurrency_limit, queue_capacity, name=name)
