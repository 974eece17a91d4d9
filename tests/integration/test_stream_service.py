"""
Integration tests for StreamService.

Tests cover:
- Append then read round trip through the service
- Command record submission (fence, trim)
- Shared cancellation, including an ack that arrives with it
"""

import asyncio

import pytest
from s2_cli.errors import AppendSessionError, InvalidCommandError, SessionAborted
from s2_cli.session.cancel import CancellationToken
from s2_cli.session.source import IterableRecordSource
from s2_cli.stream import StreamService
from s2_cli.transport.memory import InMemoryStream
from s2_cli.types import FenceCommand, FirstSeqNum, ReadBatch, TrimCommand


class CancelOnAckStream:
    """Stream whose append channel fires cancellation as each ack is delivered."""

    def __init__(self, stream, cancel):
        self._stream = stream
        self._cancel = cancel
        self.name = stream.name

    async def open_append_session(self, fencing_token=None, match_seq_num=None):
        self._channel = await self._stream.open_append_session(fencing_token, match_seq_num)
        return self

    async def send(self, batch):
        await self._channel.send(batch)

    async def close_send(self):
        await self._channel.close_send()

    async def recv(self):
        ack = await self._channel.recv()
        self._cancel.cancel()
        return ack

    async def aclose(self):
        await self._channel.aclose()


class TestStreamService:
    """Tests for StreamService."""

    @pytest.fixture
    def stream(self):
        """Create a fresh stream."""
        return InMemoryStream("logs")

    @pytest.fixture
    def service(self, stream):
        return StreamService(stream, max_batch_records=2)

    @pytest.mark.asyncio
    async def test_append_then_read(self, service):
        source = IterableRecordSource([b"one\n", b"two\n", b"three\n"])

        acks = [ack async for ack in service.append_session(source)]
        assert [(a.start_seq_num, a.end_seq_num) for a in acks] == [(0, 2), (2, 3)]

        events = [e async for e in service.read_session(0, limit_count=3)]
        bodies = [r.body for e in events if isinstance(e, ReadBatch) for r in e.data_records]
        assert bodies == [b"one", b"two", b"three"]

    @pytest.mark.asyncio
    async def test_fence_and_fenced_append(self, service, stream):
        ack = await service.append_command_record(FenceCommand(b"writer-1"))

        assert ack.start_seq_num == 0
        assert stream.fencing_token == b"writer-1"

        with pytest.raises(AppendSessionError):
            await service.append_command_record(TrimCommand(0), fencing_token=b"other")

        source = IterableRecordSource([b"a"])
        acks = [a async for a in service.append_session(source, fencing_token=b"writer-1")]
        assert acks[0].start_seq_num == 1

    @pytest.mark.asyncio
    async def test_clear_fence(self, service, stream):
        await service.append_command_record(FenceCommand(b"writer-1"))
        await service.append_command_record(FenceCommand(b""), fencing_token=b"writer-1")

        assert stream.fencing_token == b""

    @pytest.mark.asyncio
    async def test_trim(self, service, stream):
        source = IterableRecordSource([b"a", b"b", b"c"])
        [ack async for ack in service.append_session(source)]

        ack = await service.append_command_record(TrimCommand(2), match_seq_num=3)

        assert ack.start_seq_num == 3
        assert stream.first_seq_num == 2
        events = [e async for e in service.read_session(0, limit_count=1)]
        assert events[0] == FirstSeqNum(2)

    @pytest.mark.asyncio
    async def test_command_match_seq_num_mismatch(self, service):
        with pytest.raises(AppendSessionError):
            await service.append_command_record(TrimCommand(0), match_seq_num=5)

    @pytest.mark.asyncio
    async def test_invalid_session_token(self, service):
        with pytest.raises(InvalidCommandError):
            await service.append_command_record(TrimCommand(0), fencing_token=b"x" * 17)

    @pytest.mark.asyncio
    async def test_shared_cancellation(self, stream):
        cancel = CancellationToken()
        service = StreamService(stream, cancel=cancel)
        stream.pause_acks()

        task = asyncio.create_task(service.append_command_record(TrimCommand(0)))
        await asyncio.sleep(0.01)
        cancel.cancel()

        with pytest.raises(SessionAborted) as exc_info:
            await asyncio.wait_for(task, timeout=1)
        assert exc_info.value.unacknowledged_records == 1
        assert stream.open_channel_count == 0

    @pytest.mark.asyncio
    async def test_command_acked_as_cancellation_fires(self, stream):
        cancel = CancellationToken()
        service = StreamService(CancelOnAckStream(stream, cancel), cancel=cancel)

        ack = await service.append_command_record(FenceCommand(b"writer-1"))

        assert ack.start_seq_num == 0
        assert cancel.cancelled
        assert stream.fencing_token == b"writer-1"
