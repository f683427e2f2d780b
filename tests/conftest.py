"""
Shared fixtures and test doubles for the batch engine tests.
"""

import asyncio
from typing import Any, Iterable, List, Optional, Sequence

import pytest

from batch_job_engine.core.exceptions import ItemReadError, ItemWriteError, error_registry
from batch_job_engine.core.orchestrator import BatchOrchestrator
from batch_job_engine.core.registry import JobRegistry
from batch_job_engine.items.base import ItemProcessor
from batch_job_engine.items.readers import ListItemReader
from batch_job_engine.items.writers import ListItemWriter
from batch_job_engine.models.definitions import JobDefinition, StepDefinition
from batch_job_engine.repository.memory import InMemoryJobRepository
from batch_job_engine.services.task_executor import TaskExecutor


class RecordingSleep:
    """Stands in for asyncio.sleep during retry backoff."""

    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float):
        self.delays.append(delay)


class FlakyItemReader(ListItemReader):
    """ListItemReader that fails to read the items at the given 1-based positions."""

    def __init__(self, items: Iterable[Any], fail_at: Iterable[int] = (), name: str = "flakyReader"):
        super().__init__(items, name=name)
        self.fail_at = set(fail_at)

    async def _do_read(self) -> Optional[Any]:
        if self.position in self.fail_at:
            raise ItemReadError(f"unreadable item at {self.position}", position=self.position)
        return await super()._do_read()


class FailingItemWriter(ListItemWriter):
    """
    Upserting ListItemWriter whose write() fails for chunks containing a poisoned item.

    failures limits how many times the poison triggers (None = always).
    """

    def __init__(self, poison: Iterable[Any] = (), failures: Optional[int] = None, error=ItemWriteError):
        super().__init__(key=lambda item: item)
        self.poison = set(poison)
        self.failures = failures
        self.error = error
        self.attempts = 0

    async def write(self, items: Sequence[Any]) -> None:
        self.attempts += 1
        if self.poison.intersection(items) and (self.failures is None or self.failures > 0):
            if self.failures is not None:
                self.failures -= 1
            raise self.error(f"rejected chunk starting at {items[0]}")
        await super().write(items)


class GateProcessor(ItemProcessor):
    """Blocks on one item until released, signalling when it gets there."""

    def __init__(self, item: Any):
        self.item = item
        self.reached = asyncio.Event()
        self.release = asyncio.Event()

    async def process(self, item: Any) -> Optional[Any]:
        if item == self.item:
            self.reached.set()
            await self.release.wait()
        return item


def list_step(name: str, items: Sequence[Any], writer: ListItemWriter, reader_cls=ListItemReader, **kwargs) -> StepDefinition:
    """Chunk step reading a fresh ListItemReader each run and writing to a shared writer."""
    reader_kwargs = kwargs.pop("reader_kwargs", {})
    return StepDefinition(
        name=name,
        reader_factory=lambda parameters: reader_cls(items, name=f"{name}Reader", **reader_kwargs),
        writer_factory=lambda parameters: writer,
        **kwargs
    )


async def start_orchestrator(
    *jobs: JobDefinition,
    synchronous: bool = True,
    task_executor: Optional[TaskExecutor] = None,
    sleep=None,
    repository: Optional[InMemoryJobRepository] = None
) -> BatchOrchestrator:
    orchestrator = BatchOrchestrator(
        repository or InMemoryJobRepository(),
        registry=JobRegistry(jobs),
        task_executor=task_executor,
        synchronous=synchronous,
        sleep=sleep or RecordingSleep()
    )
    await orchestrator.start()
    return orchestrator


@pytest.fixture(autouse=True)
def reset_error_registry():
    error_registry.reset()
    yield
    error_registry.reset()


@pytest.fixture
def repository():
    return InMemoryJobRepository()


@pytest.fixture
def recording_sleep():
    return RecordingSleep()


CUSTOMER_HEADER = "id,firstName,lastName,email,gender,contactNo,country,dob"


def write_customers(path, count, broken_ids=()):
    """Customer CSV with a header and `count` records; broken ids get a truncated line."""
    lines = [CUSTOMER_HEADER]
    for i in range(1, count + 1):
        if i in broken_ids:
            lines.append(f"{i},Broken")
        else:
            lines.append(f"{i},First{i},Last{i},user{i}@example.com,Female,555-{i:04d},Norway,1990-01-{i % 28 + 1:02d}")
    path.write_text("\n".join(lines) + "\n")
    return path
