"""
Reader, processor and writer interfaces.

Chunk-oriented steps are assembled from these three capabilities. Readers
and writers that hold state across a restart also implement ItemStream.
"""

from abc import ABC, abstractmethod
from typing import Any, Generic, List, Optional, Sequence, TypeVar

from ..models.execution import ExecutionContext

I = TypeVar("I")
O = TypeVar("O")


class ItemStream:
    """
    Lifecycle hooks for stateful readers and writers.

    open() receives the step's execution context, which holds whatever
    update() stored at the last committed chunk when the step is resumed.
    """

    async def open(self, execution_context: ExecutionContext) -> None:
        pass

    async def update(self, execution_context: ExecutionContext) -> None:
        pass

    async def close(self) -> None:
        pass


class ItemReader(ABC, Generic[I]):
    """Ordered source of items."""

    @abstractmethod
    async def read(self) -> Optional[I]:
        """
        Read the next item.

        Returns:
            The next item, or None once the source is exhausted
        """
        pass


class ItemProcessor(ABC, Generic[I, O]):
    """Transformation applied to every item read."""

    @abstractmethod
    async def process(self, item: I) -> Optional[O]:
        """
        Process one item.

        Returns:
            The item to write, or None to filter it out of the chunk
        """
        pass


class ItemWriter(ABC, Generic[O]):
    """Sink accepting one chunk of items at a time."""

    @abstractmethod
    async def write(self, items: Sequence[O]) -> None:
        """
        Write a chunk.

        Must be all-or-nothing: when this raises, none of the items may be
        visible in the sink.
        """
        pass


def is_item_stream(component: Any) -> bool:
    return isinstance(component, ItemStream)


async def open_streams(components: List[Any], execution_context: ExecutionContext):
    for component in components:
        if is_item_stream(component):
            await component.open(execution_context)


async def update_streams(components: List[Any], execution_context: ExecutionContext):
    for component in components:
        if is_item_stream(component):
            await component.update(execution_context)


async def close_streams(components: List[Any]):
    for component in components:
        if is_item_stream(component):
            await component.close()
