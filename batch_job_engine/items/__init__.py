"""
Readers, processors and writers for chunk-oriented steps.
"""

from .base import ItemReader, ItemProcessor, ItemWriter, ItemStream
from .readers import CountingItemReader, CsvItemReader, ListItemReader
from .processors import PassThroughItemProcessor, FunctionItemProcessor, CompositeItemProcessor
from .writers import AsyncpgItemWriter, ListItemWriter, item_to_row

__all__ = [
    "ItemReader",
    "ItemProcessor",
    "ItemWriter",
    "ItemStream",
    "CountingItemReader",
    "CsvItemReader",
    "ListItemReader",
    "PassThroughItemProcessor",
    "FunctionItemProcessor",
    "CompositeItemProcessor",
    "AsyncpgItemWriter",
    "ListItemWriter",
    "item_to_row",
]
