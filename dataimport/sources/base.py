"""Row source interface."""

import asyncio
from abc import ABC, abstractmethod
from itertools import islice
from typing import Any, AsyncIterator, Dict, Iterator, List, Optional, Tuple
import logging

logger = logging.getLogger(__name__)

Row = Dict[str, Any]
IndexedRow = Tuple[int, Row]


class RowSource(ABC):
    """
    Base class for row sources.

    A row source is an ordered, finite stream of already-parsed field bags.
    It must be re-iterable: the executor reads it once to count rows and
    again to process them, and a resumed job reads it from the start and
    skips rows that were already committed.
    """

    @abstractmethod
    def rows(self) -> Iterator[Row]:
        """
        Iterate over all rows from the beginning.

        Yields:
            Raw field bags in source order
        """
        pass

    def count(self) -> int:
        """Count rows with a full pass."""
        return sum(1 for _ in self.rows())

    def sample(self, size: int) -> List[Row]:
        """Return the first ``size`` rows."""
        return list(islice(self.rows(), size))

    async def stream(
        self,
        batch_size: int,
        start: int = 0,
        stop: Optional[int] = None
    ) -> AsyncIterator[List[IndexedRow]]:
        """
        Async stream ``(index, row)`` pairs in batches.

        Rows are read in a worker thread, one batch per hop, so file reads
        never block the event loop.

        Args:
            batch_size: Rows per batch
            start: First row index to yield; earlier rows are skipped
            stop: Index at which to stop, usually the counted total

        Yields:
            Batches of at most ``batch_size`` indexed rows
        """
        iterator = self.rows()
        indexed = enumerate(iterator)
        try:
            exhausted = False
            while not exhausted:
                batch, exhausted = await asyncio.to_thread(
                    self._read_batch, indexed, batch_size, start, stop,
                )
                if batch:
                    yield batch
        finally:
            close = getattr(iterator, "close", None)
            if close is not None:
                await asyncio.to_thread(close)

    def _read_batch(
        self,
        indexed: Iterator[IndexedRow],
        batch_size: int,
        start: int,
        stop: Optional[int]
    ) -> Tuple[List[IndexedRow], bool]:
        """Read the next batch; the flag is True once nothing is left to read."""
        batch: List[IndexedRow] = []
        for index, row in indexed:
            if stop is not None and index >= stop:
                logger.warning(f"Source yielded more than the {stop} counted rows; ignoring the rest")
                return batch, True
            if index < start:
                continue
            batch.append((index, row))
            if len(batch) >= batch_size:
                return batch, False
        return batch, True


class ListRowSource(RowSource):
    """Row source over rows already held in memory."""

    def __init__(self, rows: List[Row]):
        self._rows = list(rows)

    def rows(self) -> Iterator[Row]:
        return iter(self._rows)

    def count(self) -> int:
        return len(self._rows)
