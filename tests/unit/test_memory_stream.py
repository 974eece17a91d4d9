"""
Unit tests for the in-memory stream implementation.

Tests cover:
- Seq num assignment
- Fencing and match_seq_num preconditions
- Trimming
- Bounded and tailing reads
- Testing helpers
"""

import asyncio

import pytest
from s2_cli.transport.base import ServiceRejectedError, TransportConnectionError
from s2_cli.transport.memory import InMemoryStream
from s2_cli.types import (
    AppendBatch,
    FenceCommand,
    FirstSeqNum,
    NextSeqNum,
    Record,
    StoredBatch,
    TrimCommand,
)


def batch(*bodies: bytes) -> AppendBatch:
    return AppendBatch(records=tuple(Record(b) for b in bodies))


async def append(stream, *bodies, fencing_token=None, match_seq_num=None):
    channel = await stream.open_append_session(fencing_token=fencing_token, match_seq_num=match_seq_num)
    try:
        await channel.send(batch(*bodies))
        return await channel.recv()
    finally:
        await channel.aclose()


class TestInMemoryAppend:
    """Tests for appends to InMemoryStream."""

    @pytest.fixture
    def stream(self):
        return InMemoryStream("logs")

    @pytest.mark.asyncio
    async def test_assigns_contiguous_seq_nums(self, stream):
        ack1 = await append(stream, b"a", b"b")
        ack2 = await append(stream, b"c")

        assert (ack1.start_seq_num, ack1.end_seq_num) == (0, 2)
        assert (ack2.start_seq_num, ack2.end_seq_num) == (2, 3)
        assert stream.tail == 3
        assert [r.seq_num for r in stream.get_all_records()] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_acks_in_send_order(self, stream):
        channel = await stream.open_append_session()
        for i in range(3):
            await channel.send(batch(f"r{i}".encode()))
        await channel.close_send()

        acks = []
        while (ack := await channel.recv()) is not None:
            acks.append(ack)
        await channel.aclose()

        assert [a.start_seq_num for a in acks] == [0, 1, 2]

    @pytest.mark.asyncio
    async def test_send_after_close(self, stream):
        channel = await stream.open_append_session()
        await channel.close_send()

        with pytest.raises(TransportConnectionError):
            await channel.send(batch(b"a"))
        await channel.aclose()

    @pytest.mark.asyncio
    async def test_fence_then_mismatch(self, stream):
        channel = await stream.open_append_session()
        await channel.send(AppendBatch(records=(FenceCommand(b"w1").to_record(),)))
        await channel.recv()
        await channel.aclose()
        assert stream.fencing_token == b"w1"

        with pytest.raises(ServiceRejectedError) as exc_info:
            await append(stream, b"x", fencing_token=b"w2")
        assert exc_info.value.code == "failed_precondition"

        ack = await append(stream, b"x", fencing_token=b"w1")
        assert ack.start_seq_num == 1

    @pytest.mark.asyncio
    async def test_match_seq_num(self, stream):
        await append(stream, b"a")

        with pytest.raises(ServiceRejectedError):
            await append(stream, b"b", match_seq_num=0)

        ack = await append(stream, b"b", match_seq_num=1)
        assert ack.start_seq_num == 1

    @pytest.mark.asyncio
    async def test_match_seq_num_first_batch_only(self, stream):
        channel = await stream.open_append_session(match_seq_num=0)
        await channel.send(batch(b"a"))
        await channel.send(batch(b"b"))

        assert (await channel.recv()).start_seq_num == 0
        assert (await channel.recv()).start_seq_num == 1
        await channel.aclose()

    @pytest.mark.asyncio
    async def test_trim(self, stream):
        await append(stream, b"a", b"b", b"c")

        channel = await stream.open_append_session()
        await channel.send(AppendBatch(records=(TrimCommand(2).to_record(),)))
        await channel.recv()
        await channel.aclose()

        assert stream.first_seq_num == 2
        assert [r.seq_num for r in stream.get_all_records()] == [2, 3]

    @pytest.mark.asyncio
    async def test_injected_failure(self, stream):
        stream.inject_failure(ServiceRejectedError("unavailable", "boom"))

        with pytest.raises(ServiceRejectedError):
            await append(stream, b"a")

        ack = await append(stream, b"a")
        assert ack.start_seq_num == 0

    @pytest.mark.asyncio
    async def test_pause_acks(self, stream):
        stream.pause_acks()
        channel = await stream.open_append_session()
        await channel.send(batch(b"a"))

        recv = asyncio.create_task(channel.recv())
        await asyncio.sleep(0.01)
        assert not recv.done()
        assert stream.tail == 0

        stream.resume_acks()
        ack = await asyncio.wait_for(recv, timeout=1)
        assert ack.start_seq_num == 0
        await channel.aclose()

    @pytest.mark.asyncio
    async def test_open_channel_count(self, stream):
        channel = await stream.open_append_session()
        assert stream.open_channel_count == 1

        await channel.aclose()
        assert stream.open_channel_count == 0


class TestInMemoryRead:
    """Tests for reads from InMemoryStream."""

    @pytest.fixture
    def stream(self):
        """Create a fresh stream."""
        return InMemoryStream("logs")

    @pytest.mark.asyncio
    async def test_bounded_read(self, stream):
        await append(stream, b"a", b"b", b"c")
        channel = await stream.open_read_session(0, limit_count=2)

        output = await channel.recv()
        assert isinstance(output, StoredBatch)
        assert [r.seq_num for r in output.records] == [0, 1]
        assert await channel.recv() is None
        await channel.aclose()

    @pytest.mark.asyncio
    async def test_bounded_read_reaches_tail(self, stream):
        await append(stream, b"a", b"b", b"c")
        channel = await stream.open_read_session(1, limit_count=10)

        output = await channel.recv()
        assert [r.seq_num for r in output.records] == [1, 2]
        assert await channel.recv() is None
        await channel.aclose()

    @pytest.mark.asyncio
    async def test_byte_limit(self, stream):
        await append(stream, b"a", b"b", b"c")
        # Each record meters 9 bytes
        channel = await stream.open_read_session(0, limit_bytes=18)

        output = await channel.recv()
        assert len(output.records) == 2
        assert await channel.recv() is None
        await channel.aclose()

    @pytest.mark.asyncio
    async def test_start_beyond_tail(self, stream):
        await append(stream, b"a", b"b", b"c")
        channel = await stream.open_read_session(10, limit_count=1)

        assert await channel.recv() == NextSeqNum(3)
        assert await channel.recv() is None
        await channel.aclose()

    @pytest.mark.asyncio
    async def test_start_below_trim_point(self, stream):
        await append(stream, b"a", b"b", b"c")
        stream._trim(2)
        channel = await stream.open_read_session(0, limit_count=10)

        assert await channel.recv() == FirstSeqNum(2)
        output = await channel.recv()
        assert [r.seq_num for r in output.records] == [2]
        await channel.aclose()

    @pytest.mark.asyncio
    async def test_tailing_read(self, stream):
        await append(stream, b"a", b"b", b"c")
        channel = await stream.open_read_session(0)

        first = await channel.recv()
        assert len(first.records) == 3
        assert await channel.recv() == NextSeqNum(3)

        recv = asyncio.create_task(channel.recv())
        await asyncio.sleep(0.01)
        assert not recv.done()

        await append(stream, b"d")
        output = await asyncio.wait_for(recv, timeout=1)
        assert [r.seq_num for r in output.records] == [3]

        await channel.aclose()
        assert stream.open_channel_count == 0
