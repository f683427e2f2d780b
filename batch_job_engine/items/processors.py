"""
Item processors.
"""

import inspect
from typing import Any, Callable, Optional, Sequence

from .base import ItemProcessor


class PassThroughItemProcessor(ItemProcessor):
    """Returns every item unchanged."""

    async def process(self, item: Any) -> Optional[Any]:
        return item


class FunctionItemProcessor(ItemProcessor):
    """Adapts a plain or async callable; a None result filters the item."""

    def __init__(self, func: Callable[[Any], Any]):
        self.func = func

    async def process(self, item: Any) -> Optional[Any]:
        result = self.func(item)
        if inspect.isawaitable(result):
            result = await result
        return result


class CompositeItemProcessor(ItemProcessor):
    """
    Chains processors; the output of one is the input of the next.

    The chain stops as soon as a processor filters the item.
    """

    def __init__(self, delegates: Sequence[ItemProcessor]):
        if not delegates:
            raise ValueError("CompositeItemProcessor needs at least one delegate")
        self.delegates = list(delegates)

    async def process(self, item: Any) -> Optional[Any]:
        for delegate in self.delegates:
            item = await delegate.process(item)
            if item is None:
                return None
        return item
