"""
Item writers.

Every writer applies a chunk all-or-nothing: AsyncpgItemWriter runs the
whole batch in one database transaction, ListItemWriter stages the batch
before publishing it.
"""

import dataclasses
import re
from collections.abc import Mapping
from typing import Any, Callable, Dict, Hashable, List, Optional, Sequence

import asyncpg

from .base import ItemWriter
from ..utils.database import DatabaseManager
from ..utils.logger import get_logger
from ..core.exceptions import ItemWriteError


_IDENTIFIER = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def _check_identifier(name: str) -> str:
    if not _IDENTIFIER.match(name):
        raise ValueError(f"invalid SQL identifier: {name!r}")
    return name


def item_to_row(item: Any, columns: Sequence[str]) -> tuple:
    """Column values of a dataclass, mapping or plain object, in column order."""
    if isinstance(item, Mapping):
        return tuple(item[c] for c in columns)
    if dataclasses.is_dataclass(item):
        data = dataclasses.asdict(item)
        return tuple(data[c] for c in columns)
    return tuple(getattr(item, c) for c in columns)


class AsyncpgItemWriter(ItemWriter):
    """
    Bulk upsert into a PostgreSQL table.

    Generates INSERT ... ON CONFLICT (key_columns) DO UPDATE and sends the
    chunk with executemany() inside one transaction, so a failing row
    leaves no part of the chunk behind.
    """

    def __init__(
        self,
        database_manager: DatabaseManager,
        table: str,
        columns: Sequence[str],
        key_columns: Sequence[str] = ("id",),
        row_mapper: Optional[Callable[[Any], tuple]] = None
    ):
        if not columns:
            raise ValueError("columns must not be empty")
        missing = [k for k in key_columns if k not in columns]
        if missing:
            raise ValueError(f"key columns {missing} are not among the columns")

        self.db = database_manager
        self.table = _check_identifier(table)
        self.columns = [_check_identifier(c) for c in columns]
        self.key_columns = [_check_identifier(c) for c in key_columns]
        self.row_mapper = row_mapper or (lambda item: item_to_row(item, self.columns))
        self.sql = self._build_upsert()
        self.logger = get_logger(__name__)

    def _build_upsert(self) -> str:
        placeholders = ", ".join(f"${i}" for i in range(1, len(self.columns) + 1))
        sql = f"INSERT INTO {self.table} ({', '.join(self.columns)}) VALUES ({placeholders})"
        if not self.key_columns:
            return sql
        updates = [c for c in self.columns if c not in self.key_columns]
        conflict = ", ".join(self.key_columns)
        if not updates:
            return f"{sql} ON CONFLICT ({conflict}) DO NOTHING"
        assignments = ", ".join(f"{c} = EXCLUDED.{c}" for c in updates)
        return f"{sql} ON CONFLICT ({conflict}) DO UPDATE SET {assignments}"

    async def write(self, items: Sequence[Any]) -> None:
        if not items:
            return
        rows = [self.row_mapper(item) for item in items]
        try:
            async with self.db.transaction() as conn:
                await conn.executemany(self.sql, rows)
        except (asyncpg.PostgresError, OSError) as e:
            raise ItemWriteError(f"{self.table}: {e}", batch_size=len(rows)) from e

        self.logger.debug("Chunk written", extra={"table": self.table, "rows": len(rows)})


class ListItemWriter(ItemWriter):
    """
    Collects written items in memory.

    With a key function the writer behaves as an upsert: a later item with
    the same key replaces the earlier one.
    """

    def __init__(self, key: Optional[Callable[[Any], Hashable]] = None):
        self.key = key
        self._items: List[Any] = []
        self._by_key: Dict[Hashable, Any] = {}
        self.batches: List[List[Any]] = []

    @property
    def items(self) -> List[Any]:
        if self.key is not None:
            return list(self._by_key.values())
        return list(self._items)

    async def write(self, items: Sequence[Any]) -> None:
        staged = list(items)
        if self.key is not None:
            keyed = {self.key(item): item for item in staged}
            self._by_key.update(keyed)
        else:
            self._items.extend(staged)
        self.batches.append(staged)
