"""
In-memory stream implementation for testing.

This module provides a simple in-memory stream service for:
- Unit tests
- Integration tests of append and read sessions
- Local development without a service endpoint

It emulates the service behaviors sessions depend on: sequence number
assignment, fencing tokens, match_seq_num on the first batch, trimming,
bounded reads and indefinite tailing.

Invariants:
    - All data is lost on process exit
    - Batches of one append channel are applied in send order
    - Seq nums are contiguous; trimming only advances the first retained one

How to change safely:
    - This is test-only code, changes don't affect production
    - Keep interface compatible with the StreamHandle protocol
    - Add features to help with testing scenarios
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional, Set, Union

from ..types import (
    MAX_BATCH_METERED_BYTES,
    MAX_BATCH_RECORDS,
    AppendAck,
    AppendBatch,
    FenceCommand,
    FirstSeqNum,
    NextSeqNum,
    ReadOutput,
    StoredBatch,
    StoredRecord,
    TrimCommand,
    command_from_record,
)
from .base import (
    ServiceRejectedError,
    TransportConnectionError,
    TransportError,
)

logger = logging.getLogger(__name__)


class InMemoryStream:
    """In-memory implementation of StreamHandle for testing.

    Attributes:
        name: Stream name
        fencing_token: Currently active fence (empty when unfenced)
        first_seq_num: Lowest retained seq num (the trim point)
        tail: Seq num the next appended record will receive

    Example:
        >>> stream = InMemoryStream("logs")
        >>> channel = await stream.open_append_session()
        >>> await channel.send(AppendBatch((Record(b"hello"),)))
        >>> ack = await channel.recv()
    """

    def __init__(self, name: str = "test-stream") -> None:
        self._name = name
        self._records: List[StoredRecord] = []
        self._first_seq_num = 0
        self._tail = 0
        self._fencing_token = b""
        self._new_records = asyncio.Event()
        self._acks_released = asyncio.Event()
        self._acks_released.set()
        self._injected_failure: Optional[Exception] = None
        self._open_channels: Set[object] = set()

    @property
    def name(self) -> str:
        return self._name

    @property
    def fencing_token(self) -> bytes:
        return self._fencing_token

    @property
    def first_seq_num(self) -> int:
        return self._first_seq_num

    @property
    def tail(self) -> int:
        return self._tail

    async def open_append_session(
        self,
        fencing_token: Optional[bytes] = None,
        match_seq_num: Optional[int] = None,
    ) -> InMemoryAppendChannel:
        channel = InMemoryAppendChannel(self, fencing_token, match_seq_num)
        self._open_channels.add(channel)
        logger.debug("In-memory append channel opened", extra={"stream": self._name})
        return channel

    async def open_read_session(
        self,
        start_seq_num: int,
        limit_count: Optional[int] = None,
        limit_bytes: Optional[int] = None,
    ) -> InMemoryReadChannel:
        channel = InMemoryReadChannel(self, start_seq_num, limit_count, limit_bytes)
        self._open_channels.add(channel)
        logger.debug(
            "In-memory read channel opened",
            extra={"stream": self._name, "start_seq_num": start_seq_num},
        )
        return channel

    def _release(self, channel: object) -> None:
        self._open_channels.discard(channel)

    def _apply(
        self,
        batch: AppendBatch,
        fencing_token: Optional[bytes],
        match_seq_num: Optional[int],
    ) -> AppendAck:
        """Validate and durably apply one batch."""
        if self._injected_failure is not None:
            failure, self._injected_failure = self._injected_failure, None
            raise failure

        if len(batch) > MAX_BATCH_RECORDS:
            raise ServiceRejectedError(
                "invalid_argument",
                f"batch of {len(batch)} records exceeds {MAX_BATCH_RECORDS}",
            )
        if batch.metered_bytes > MAX_BATCH_METERED_BYTES:
            raise ServiceRejectedError(
                "invalid_argument",
                f"batch of {batch.metered_bytes} bytes exceeds {MAX_BATCH_METERED_BYTES}",
            )
        if fencing_token is not None and fencing_token != self._fencing_token:
            raise ServiceRejectedError(
                "failed_precondition",
                f"fencing token mismatch: stream fence is {self._fencing_token!r}",
            )
        if match_seq_num is not None and match_seq_num != self._tail:
            raise ServiceRejectedError(
                "failed_precondition",
                f"sequence number mismatch: expected {match_seq_num}, tail is {self._tail}",
            )

        start = self._tail
        for record in batch.records:
            self._records.append(StoredRecord(seq_num=self._tail, record=record))
            self._tail += 1

        for stored in self._records[start - self._first_seq_num :]:
            command = command_from_record(stored.record)
            if isinstance(command, FenceCommand):
                self._fencing_token = command.token
            elif isinstance(command, TrimCommand):
                self._trim(command.seq_num)

        self._new_records.set()
        self._new_records = asyncio.Event()

        return AppendAck(start_seq_num=start, end_seq_num=self._tail, next_seq_num=self._tail)

    def _trim(self, seq_num: int) -> None:
        trim_point = min(seq_num, self._tail)
        if trim_point <= self._first_seq_num:
            return
        del self._records[: trim_point - self._first_seq_num]
        self._first_seq_num = trim_point

    def _collect(
        self, seq_num: int, max_count: int, max_bytes: int
    ) -> List[StoredRecord]:
        """Collect stored records starting at seq_num within the given limits."""
        collected: List[StoredRecord] = []
        size = 0
        for stored in self._records[max(seq_num - self._first_seq_num, 0) :]:
            metered = stored.record.metered_size()
            if len(collected) >= max_count or size + metered > max_bytes:
                break
            collected.append(stored)
            size += metered
        return collected

    # Testing helpers

    def pause_acks(self) -> None:
        """Hold back acknowledgements; sent batches stay unapplied."""
        self._acks_released.clear()

    def resume_acks(self) -> None:
        """Release held acknowledgements."""
        self._acks_released.set()

    def inject_failure(self, exception: Exception) -> None:
        """Make the next applied batch fail with this exception."""
        self._injected_failure = exception

    def get_all_records(self) -> List[StoredRecord]:
        """Get all retained records (testing helper)."""
        return list(self._records)

    @property
    def open_channel_count(self) -> int:
        """Number of channels not yet closed (testing helper)."""
        return len(self._open_channels)


_AckItem = Union[AppendAck, Exception, None]


class InMemoryAppendChannel:
    """Append channel backed by an InMemoryStream.

    Batches queue up on send() and a background task applies them in
    order, so the sender never waits for acknowledgements.
    """

    def __init__(
        self,
        stream: InMemoryStream,
        fencing_token: Optional[bytes],
        match_seq_num: Optional[int],
    ) -> None:
        self._stream = stream
        self._fencing_token = fencing_token
        self._match_seq_num = match_seq_num
        self._outbound: asyncio.Queue[Optional[AppendBatch]] = asyncio.Queue()
        self._acks: asyncio.Queue[_AckItem] = asyncio.Queue()
        self._send_closed = False
        self._finished = False
        self._pump_task = asyncio.create_task(self._pump())

    async def _pump(self) -> None:
        first = True
        while True:
            batch = await self._outbound.get()
            if batch is None:
                await self._acks.put(None)
                return

            await self._stream._acks_released.wait()
            try:
                ack = self._stream._apply(
                    batch,
                    self._fencing_token,
                    self._match_seq_num if first else None,
                )
            except TransportError as e:
                await self._acks.put(e)
                return
            first = False
            await self._acks.put(ack)

    async def send(self, batch: AppendBatch) -> None:
        if self._send_closed:
            raise TransportConnectionError("Append channel send side is closed")
        await self._outbound.put(batch)

    async def close_send(self) -> None:
        if not self._send_closed:
            self._send_closed = True
            await self._outbound.put(None)

    async def recv(self) -> Optional[AppendAck]:
        if self._finished:
            return None
        item = await self._acks.get()
        if item is None:
            self._finished = True
            return None
        if isinstance(item, Exception):
            self._finished = True
            raise item
        return item

    async def aclose(self) -> None:
        self._send_closed = True
        self._finished = True
        self._pump_task.cancel()
        await asyncio.gather(self._pump_task, return_exceptions=True)
        self._stream._release(self)


class InMemoryReadChannel:
    """Read channel backed by an InMemoryStream."""

    def __init__(
        self,
        stream: InMemoryStream,
        start_seq_num: int,
        limit_count: Optional[int],
        limit_bytes: Optional[int],
    ) -> None:
        self._stream = stream
        self._next_seq_num = start_seq_num
        self._bounded = limit_count is not None or limit_bytes is not None
        self._remaining_count = limit_count if limit_count is not None else None
        self._remaining_bytes = limit_bytes if limit_bytes is not None else None
        self._started = False
        self._caught_up_reported = False
        self._finished = False

    def _limits_met(self) -> bool:
        return (self._remaining_count is not None and self._remaining_count <= 0) or (
            self._remaining_bytes is not None and self._remaining_bytes <= 0
        )

    async def recv(self) -> Optional[ReadOutput]:
        stream = self._stream

        if self._finished:
            return None

        if not self._started:
            self._started = True
            if self._next_seq_num < stream.first_seq_num:
                self._next_seq_num = stream.first_seq_num
                return FirstSeqNum(stream.first_seq_num)

        while True:
            if self._limits_met():
                self._finished = True
                return None

            new_records = stream._new_records

            # Records trimmed away under an open read are skipped
            self._next_seq_num = max(self._next_seq_num, stream.first_seq_num)

            max_count = MAX_BATCH_RECORDS
            if self._remaining_count is not None:
                max_count = min(max_count, self._remaining_count)
            max_bytes = MAX_BATCH_METERED_BYTES
            if self._remaining_bytes is not None:
                max_bytes = min(max_bytes, self._remaining_bytes)

            records = stream._collect(self._next_seq_num, max_count, max_bytes)
            if records:
                self._next_seq_num = records[-1].seq_num + 1
                if self._remaining_count is not None:
                    self._remaining_count -= len(records)
                if self._remaining_bytes is not None:
                    self._remaining_bytes -= sum(r.record.metered_size() for r in records)
                self._caught_up_reported = False
                return StoredBatch(records=tuple(records))

            if self._next_seq_num < stream.tail:
                # Next record alone exceeds the remaining byte budget
                self._finished = True
                return None

            if self._bounded:
                self._finished = True
                if self._next_seq_num > stream.tail:
                    return NextSeqNum(stream.tail)
                return None

            if not self._caught_up_reported:
                self._caught_up_reported = True
                return NextSeqNum(max(self._next_seq_num, stream.tail))

            await new_records.wait()

    async def aclose(self) -> None:
        self._finished = True
        self._stream._release(self)
