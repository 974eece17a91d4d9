"""
ReadSession: drives a read exchange and demultiplexes command records.

The session loop races the next read output against the cancellation
token. Stored records are classified once, as they are materialized, into
SequencedRecord (payload) or SequencedCommand (fence/trim); callers decide
what to do with commands.

Invariants:
    - Emitted seq nums are strictly increasing and never below start_seq_num
    - Gaps are only expected across a trim and are logged, not hidden
    - Metrics count every yielded record, command or data
    - Batches already yielded are never retracted on cancellation

How to change safely:
    - Keep classification in types.classify(); never re-inspect headers
      further down the pipeline
    - A read with neither limit set tails forever; keep it cancellable
"""

from __future__ import annotations

import asyncio
import logging
from typing import AsyncIterator, Optional

from ..errors import ReadSessionError, RequestStatus, S2CliError, SessionAborted
from ..transport.base import ReadChannel, StreamHandle, TransportError
from ..types import (
    FirstSeqNum,
    NextSeqNum,
    ReadBatch,
    ReadEvent,
    StoredBatch,
    classify,
)
from .cancel import CancellationToken, SessionState
from .metrics import SessionMetrics

logger = logging.getLogger(__name__)


class ReadSession:
    """Read of one stream from start_seq_num, bounded or tailing.

    Iterating the session yields ReadBatch, FirstSeqNum and NextSeqNum
    events. Clean completion ends the iteration; service or transport
    failures raise ReadSessionError; cancellation raises SessionAborted.

    Attributes:
        state: Current lifecycle state
        error: The error that failed the session, if any
        metrics: Metered bytes of yielded records
        next_seq_num: Seq num the next record is expected at

    Example:
        >>> session = ReadSession(stream, start_seq_num=0, limit_count=10)
        >>> async for event in session:
        ...     if isinstance(event, ReadBatch):
        ...         for record in event.data_records:
        ...             print(record.seq_num, record.body)
    """

    def __init__(
        self,
        stream: StreamHandle,
        start_seq_num: int = 0,
        limit_count: Optional[int] = None,
        limit_bytes: Optional[int] = None,
        *,
        cancel: Optional[CancellationToken] = None,
        metrics: Optional[SessionMetrics] = None,
    ) -> None:
        if start_seq_num < 0:
            raise ValueError(f"start_seq_num must be non-negative, got {start_seq_num}")
        if limit_count is not None and limit_count < 1:
            raise ValueError(f"limit_count must be positive, got {limit_count}")
        if limit_bytes is not None and limit_bytes < 1:
            raise ValueError(f"limit_bytes must be positive, got {limit_bytes}")

        self._stream = stream
        self.start_seq_num = start_seq_num
        self.limit_count = limit_count
        self.limit_bytes = limit_bytes
        self._cancel = cancel or CancellationToken()
        self.metrics = metrics or SessionMetrics()

        self.state = SessionState.IDLE
        self._started = False
        self.error: Optional[S2CliError] = None
        self.next_seq_num = start_seq_num
        self.records_read = 0
        self.bytes_read = 0

    @property
    def bounded(self) -> bool:
        return self.limit_count is not None or self.limit_bytes is not None

    def __aiter__(self) -> AsyncIterator[ReadEvent]:
        if self._started:
            raise RuntimeError("Read session can only be iterated once")
        self._started = True
        return self._run()

    def _fail(self, error: S2CliError) -> S2CliError:
        self.state = SessionState.FAILED
        self.error = error
        logger.error(
            "Read session failed",
            extra={"stream": self._stream.name, "error": str(error), "seq_num": self.next_seq_num},
        )
        return error

    def _limits_met(self) -> bool:
        return (self.limit_count is not None and self.records_read >= self.limit_count) or (
            self.limit_bytes is not None and self.bytes_read >= self.limit_bytes
        )

    def _materialize(self, output: StoredBatch) -> ReadBatch:
        """Classify stored records, enforcing seq num ordering."""
        items = []
        for stored in output.records:
            if stored.seq_num < self.next_seq_num:
                raise self._fail(
                    ReadSessionError(
                        RequestStatus(
                            f"record {stored.seq_num} out of order, expected at least {self.next_seq_num}",
                            "protocol",
                        ),
                        self._stream.name,
                    )
                )
            if stored.seq_num > self.next_seq_num and (items or self.records_read):
                logger.warning(
                    "Gap in read seq nums",
                    extra={"stream": self._stream.name, "expected": self.next_seq_num, "got": stored.seq_num},
                )
            self.next_seq_num = stored.seq_num + 1
            items.append(classify(stored))
        return ReadBatch(records=tuple(items))

    async def _run(self) -> AsyncIterator[ReadEvent]:
        stream = self._stream
        try:
            channel: ReadChannel = await stream.open_read_session(
                self.start_seq_num,
                limit_count=self.limit_count,
                limit_bytes=self.limit_bytes,
            )
        except TransportError as e:
            raise self._fail(ReadSessionError(e.status(), stream.name)) from e

        self.state = SessionState.OPEN
        logger.info(
            "Read session opened",
            extra={
                "stream": stream.name,
                "start_seq_num": self.start_seq_num,
                "limit_count": self.limit_count,
                "limit_bytes": self.limit_bytes,
            },
        )

        cancel_task = asyncio.create_task(self._cancel.wait())
        recv_task: Optional[asyncio.Task] = None

        try:
            while True:
                if recv_task is None:
                    recv_task = asyncio.create_task(channel.recv())

                await asyncio.wait({recv_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)

                if cancel_task.done():
                    self.state = SessionState.ABORTED
                    logger.info(
                        "Read session aborted",
                        extra={"stream": stream.name, "seq_num": self.next_seq_num},
                    )
                    raise SessionAborted()

                task, recv_task = recv_task, None
                try:
                    output = task.result()
                except TransportError as e:
                    raise self._fail(ReadSessionError(e.status(), stream.name)) from e

                if output is None:
                    self.state = SessionState.DRAINING
                    break

                if isinstance(output, StoredBatch):
                    batch = self._materialize(output)
                    if not batch.records:
                        continue
                    metered = batch.metered_bytes
                    self.records_read += len(batch.records)
                    self.bytes_read += metered
                    self.metrics.record(metered)
                    logger.debug(
                        "Read batch",
                        extra={
                            "stream": stream.name,
                            "records": len(batch.records),
                            "commands": len(batch.commands),
                            "seq_num": self.next_seq_num,
                        },
                    )
                    yield batch
                    if self.bounded and self._limits_met():
                        self.state = SessionState.DRAINING
                        break

                elif isinstance(output, FirstSeqNum):
                    if output.seq_num > self.next_seq_num:
                        logger.info(
                            "Requested records were trimmed",
                            extra={
                                "stream": stream.name,
                                "requested": self.next_seq_num,
                                "first_seq_num": output.seq_num,
                            },
                        )
                        self.next_seq_num = output.seq_num
                    yield output

                elif isinstance(output, NextSeqNum):
                    yield output

            self.state = SessionState.CLOSED
            logger.info(
                "Read session closed",
                extra={"stream": stream.name, "records": self.records_read, "seq_num": self.next_seq_num},
            )
        finally:
            for task in (recv_task, cancel_task):
                if task is not None and not task.done():
                    task.cancel()
            await asyncio.gather(
                *(t for t in (recv_task, cancel_task) if t is not None),
                return_exceptions=True,
            )
            await channel.aclose()
            if not self.state.is_terminal:
                self.state = SessionState.ABORTED
