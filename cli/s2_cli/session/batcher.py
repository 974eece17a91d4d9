"""
RecordBatcher: turns a record source into size/count bounded append batches.

Invariants:
    - Input order is preserved within and across batches
    - Every batch holds at most max_batch_records records and at most
      max_batch_bytes metered bytes
    - A record larger than max_batch_bytes raises RecordTooLarge and is
      never placed in a batch; records before it are still flushed
    - Exhausted input never yields an empty batch

How to change safely:
    - Keep batching free of network I/O; sessions interleave it with sends
    - Limits must stay within the service's MAX_BATCH_* ceilings
"""

from __future__ import annotations

import logging
from typing import AsyncIterable, AsyncIterator, List

from ..errors import RecordTooLarge
from ..types import MAX_BATCH_METERED_BYTES, MAX_BATCH_RECORDS, AppendBatch, Record

logger = logging.getLogger(__name__)


def validate_batch_limits(max_batch_records: int, max_batch_bytes: int) -> None:
    """Check batch limits against the service ceilings.

    Raises:
        ValueError: If a limit is out of range
    """
    if not 1 <= max_batch_records <= MAX_BATCH_RECORDS:
        raise ValueError(
            f"max_batch_records must be between 1 and {MAX_BATCH_RECORDS}, got {max_batch_records}"
        )
    if not 1 <= max_batch_bytes <= MAX_BATCH_METERED_BYTES:
        raise ValueError(
            f"max_batch_bytes must be between 1 and {MAX_BATCH_METERED_BYTES}, got {max_batch_bytes}"
        )


class RecordBatcher:
    """Lazily groups record bodies into AppendBatch values.

    The batcher owns its source: it can be iterated once, from the start.

    Attributes:
        max_batch_records: Record count ceiling per batch
        max_batch_bytes: Metered byte ceiling per batch

    Example:
        >>> batcher = RecordBatcher(IterableRecordSource([b"a", b"b"]), max_batch_records=1)
        >>> [len(b) async for b in batcher]
        [1, 1]
    """

    def __init__(
        self,
        source: AsyncIterable[bytes],
        max_batch_records: int = MAX_BATCH_RECORDS,
        max_batch_bytes: int = MAX_BATCH_METERED_BYTES,
    ) -> None:
        validate_batch_limits(max_batch_records, max_batch_bytes)
        self._source = source
        self.max_batch_records = max_batch_records
        self.max_batch_bytes = max_batch_bytes
        self._consumed = False
        self.records_read = 0
        self.batches_built = 0

    def __aiter__(self) -> AsyncIterator[AppendBatch]:
        if self._consumed:
            raise RuntimeError("RecordBatcher can only be iterated once")
        self._consumed = True
        return self._batches()

    def _flush(self, pending: List[Record], size: int) -> AppendBatch:
        self.batches_built += 1
        logger.debug(
            "Batch built",
            extra={"records": len(pending), "metered_bytes": size, "batch": self.batches_built},
        )
        return AppendBatch(records=tuple(pending), metered_bytes=size)

    async def _batches(self) -> AsyncIterator[AppendBatch]:
        pending: List[Record] = []
        size = 0

        iterator = self._source.__aiter__()
        try:
            async for body in iterator:
                record = Record(body=body)
                metered = record.metered_size()
                self.records_read += 1

                if metered > self.max_batch_bytes:
                    if pending:
                        yield self._flush(pending, size)
                        pending, size = [], 0
                    raise RecordTooLarge(metered, self.max_batch_bytes)

                if pending and (
                    len(pending) + 1 > self.max_batch_records
                    or size + metered > self.max_batch_bytes
                ):
                    yield self._flush(pending, size)
                    pending, size = [], 0

                pending.append(record)
                size += metered

            if pending:
                yield self._flush(pending, size)
        except RecordTooLarge:
            # Raised by sources that cannot buffer the whole line
            if pending:
                yield self._flush(pending, size)
            raise
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()
