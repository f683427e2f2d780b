"""
Item readers.

CsvItemReader streams a delimited text file with aiofiles; ListItemReader
serves items from memory. Both record how many items they consumed in the
step execution context so a restarted step continues after the last
committed chunk.
"""

import csv
from abc import abstractmethod
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

import aiofiles

from .base import ItemReader, ItemStream
from ..models.execution import ExecutionContext
from ..utils.logger import get_logger
from ..core.exceptions import ItemReadError


FieldSetMapper = Callable[[Dict[str, str]], Any]

READ_COUNT_KEY = "read.count"


class CountingItemReader(ItemReader, ItemStream):
    """
    Base for readers that restart by position.

    Subclasses implement _do_open, _do_read and _do_close. The number of
    items consumed, including ones that failed to read, is saved under
    '<name>.read.count'; on open the reader jumps past that many items.
    """

    def __init__(self, name: str, save_state: bool = True):
        self.name = name
        self.save_state = save_state
        self.position = 0
        self.logger = get_logger(__name__)

    @property
    def read_count_key(self) -> str:
        return f"{self.name}.{READ_COUNT_KEY}"

    async def open(self, execution_context: ExecutionContext) -> None:
        self.position = 0
        await self._do_open()
        if self.save_state and self.read_count_key in execution_context:
            target = execution_context.get_int(self.read_count_key)
            await self._jump_to(target)
            self.logger.info("Reader resumed", extra={"reader": self.name, "position": self.position})

    async def _jump_to(self, target: int):
        while self.position < target:
            self.position += 1
            if not await self._do_skip():
                self.position -= 1
                break

    async def read(self) -> Optional[Any]:
        self.position += 1
        item = await self._do_read()
        if item is None:
            self.position -= 1
        return item

    async def update(self, execution_context: ExecutionContext) -> None:
        if self.save_state:
            execution_context[self.read_count_key] = self.position

    async def close(self) -> None:
        await self._do_close()

    async def _do_open(self):
        pass

    async def _do_skip(self) -> bool:
        """Consume one item without returning it; False at end of input."""
        return await self._do_read() is not None

    @abstractmethod
    async def _do_read(self) -> Optional[Any]:
        """Next raw item, or None at end of input."""
        pass

    async def _do_close(self):
        pass


class CsvItemReader(CountingItemReader):
    """
    Reads delimited records from a text file.

    The first lines_to_skip lines are skipped; when fieldnames are not
    given, the first skipped line is taken as the header. Each record is
    turned into a dict of field name to raw string and passed to mapper.
    """

    def __init__(
        self,
        path: str,
        mapper: Optional[FieldSetMapper] = None,
        fieldnames: Optional[Sequence[str]] = None,
        lines_to_skip: int = 1,
        delimiter: str = ",",
        encoding: str = "utf-8",
        strict: bool = True,
        name: str = "csvItemReader",
        save_state: bool = True
    ):
        super().__init__(name, save_state)
        if lines_to_skip < 0:
            raise ValueError("lines_to_skip must not be negative")
        self.path = Path(path)
        self.mapper = mapper
        self.fieldnames: Optional[List[str]] = list(fieldnames) if fieldnames else None
        self.lines_to_skip = lines_to_skip
        self.delimiter = delimiter
        self.encoding = encoding
        self.strict = strict
        self._file = None
        self._line_number = 0

    async def _do_open(self):
        if not self.path.exists():
            if self.strict:
                raise ItemReadError(f"input resource {self.path} does not exist")
            self.logger.warning("Input resource missing, reading nothing", extra={"path": str(self.path)})
            return

        self._file = await aiofiles.open(self.path, mode="r", encoding=self.encoding, newline="")
        self._line_number = 0

        for i in range(self.lines_to_skip):
            line = await self._next_line()
            if line is None:
                break
            if i == 0 and self.fieldnames is None:
                self.fieldnames = [name.strip() for name in self._split(line)]

        if self.fieldnames is None:
            raise ItemReadError(f"no field names for {self.path}: set fieldnames or lines_to_skip")

    async def _next_line(self) -> Optional[str]:
        """Next non-blank line with its terminator stripped, or None at EOF."""
        if self._file is None:
            return None
        while True:
            line = await self._file.readline()
            if not line:
                return None
            self._line_number += 1
            line = line.rstrip("\r\n")
            if line.strip():
                return line

    def _split(self, line: str) -> List[str]:
        return next(csv.reader([line], delimiter=self.delimiter))

    async def _do_skip(self) -> bool:
        return await self._next_line() is not None

    async def _do_read(self) -> Optional[Any]:
        line = await self._next_line()
        if line is None:
            return None

        values = self._split(line)
        if len(values) != len(self.fieldnames):
            raise ItemReadError(
                f"line {self._line_number}: expected {len(self.fieldnames)} fields, found {len(values)}",
                position=self._line_number,
                raw=line
            )

        row = dict(zip(self.fieldnames, values))
        if self.mapper is None:
            return row
        try:
            return self.mapper(row)
        except (ValueError, TypeError, KeyError) as e:
            raise ItemReadError(
                f"line {self._line_number}: cannot map record: {e}",
                position=self._line_number,
                raw=line
            ) from e

    async def _do_close(self):
        if self._file is not None:
            await self._file.close()
            self._file = None


class ListItemReader(CountingItemReader):
    """Serves the items of an iterable in order."""

    def __init__(self, items: Iterable[Any], name: str = "listItemReader", save_state: bool = True):
        super().__init__(name, save_state)
        self.items = list(items)

    async def _do_read(self) -> Optional[Any]:
        index = self.position - 1
        if index >= len(self.items):
            return None
        return self.items[index]

    async def _do_skip(self) -> bool:
        return self.position <= len(self.items)
