"""
Unit tests for record, batch and read-event types.

Tests cover:
- Metered size accounting
- Fencing token limits
- Command record encoding and recognition
- Batch and ack invariants
- Read batch classification
"""

import logging
import struct

import pytest
from s2_cli.types import (
    COMMAND_HEADER_NAME,
    MAX_FENCING_TOKEN_BYTES,
    AppendAck,
    AppendBatch,
    FenceCommand,
    Header,
    ReadBatch,
    Record,
    SequencedCommand,
    SequencedRecord,
    StoredRecord,
    TrimCommand,
    classify,
    command_from_record,
    validate_fencing_token,
)


class TestMeteredSize:
    """Tests for Record.metered_size."""

    def test_body_only(self):
        """A plain record costs 8 bytes plus its body."""
        assert Record(b"").metered_size() == 8
        assert Record(b"hello").metered_size() == 13

    def test_headers_counted(self):
        """Each header adds 2 bytes plus its name and value."""
        record = Record(b"abc", headers=(Header(b"k", b"vv"), Header(b"", b"x")))

        assert record.metered_size() == 8 + 2 * 2 + (1 + 2) + (0 + 1) + 3


class TestFencingToken:
    """Tests for fencing token validation."""

    def test_max_length_accepted(self):
        token = b"x" * MAX_FENCING_TOKEN_BYTES
        assert validate_fencing_token(token) == token

    def test_empty_accepted(self):
        assert validate_fencing_token(b"") == b""

    def test_too_long_rejected(self):
        with pytest.raises(ValueError):
            validate_fencing_token(b"x" * (MAX_FENCING_TOKEN_BYTES + 1))


class TestCommandRecords:
    """Tests for fence/trim command records."""

    def test_fence_record_shape(self):
        """Fence carries the token as body and a single empty-named header."""
        record = FenceCommand(b"writer-1").to_record()

        assert record.body == b"writer-1"
        assert record.headers == (Header(COMMAND_HEADER_NAME, b"fence"),)

    def test_trim_record_shape(self):
        """Trim carries the trim point as 8 big-endian bytes."""
        record = TrimCommand(42).to_record()

        assert record.body == struct.pack(">Q", 42)
        assert record.headers == (Header(b"", b"trim"),)

    def test_commands_recognized(self):
        assert command_from_record(FenceCommand(b"t").to_record()) == FenceCommand(b"t")
        assert command_from_record(TrimCommand(7).to_record()) == TrimCommand(7)

    def test_empty_fence_clears(self):
        command = command_from_record(FenceCommand().to_record())

        assert command == FenceCommand(b"")
        assert str(command) == "fence cleared"

    def test_plain_record_is_data(self):
        assert command_from_record(Record(b"fence")) is None

    def test_named_header_is_data(self):
        """Only an empty header name marks a command record."""
        record = Record(b"", headers=(Header(b"type", b"fence"),))
        assert command_from_record(record) is None

    def test_unknown_command_is_data(self, caplog):
        record = Record(b"", headers=(Header(b"", b"compact"),))

        with caplog.at_level(logging.WARNING):
            assert command_from_record(record) is None

        assert "Unknown command record" in caplog.text

    def test_malformed_trim_is_data(self, caplog):
        record = Record(b"\x00\x01", headers=(Header(b"", b"trim"),))

        with caplog.at_level(logging.WARNING):
            assert command_from_record(record) is None

        assert "Malformed command record" in caplog.text

    def test_oversized_fence_is_data(self):
        record = Record(b"x" * 17, headers=(Header(b"", b"fence"),))
        assert command_from_record(record) is None

    def test_invalid_trim_point(self):
        with pytest.raises(ValueError):
            TrimCommand(-1)
        with pytest.raises(ValueError):
            TrimCommand(2**64)

    def test_invalid_fence_token(self):
        with pytest.raises(ValueError):
            FenceCommand(b"x" * 17)


class TestAppendBatch:
    """Tests for AppendBatch and AppendAck."""

    def test_empty_batch_rejected(self):
        with pytest.raises(ValueError):
            AppendBatch(records=())

    def test_metered_bytes_computed(self):
        batch = AppendBatch(records=(Record(b"a"), Record(b"bc")))

        assert len(batch) == 2
        assert batch.metered_bytes == 9 + 10

    def test_ack_record_count(self):
        ack = AppendAck(start_seq_num=5, end_seq_num=8, next_seq_num=8)

        assert ack.record_count == 3
        assert str(ack) == "5..8 (next 8)"


class TestReadBatch:
    """Tests for read output classification."""

    def test_classify_data(self):
        item = classify(StoredRecord(3, Record(b"payload")))

        assert isinstance(item, SequencedRecord)
        assert item.seq_num == 3
        assert item.body == b"payload"

    def test_classify_command(self):
        record = TrimCommand(10).to_record()
        item = classify(StoredRecord(4, record))

        assert isinstance(item, SequencedCommand)
        assert item.command == TrimCommand(10)
        assert item.metered_size() == record.metered_size()

    def test_demultiplex(self):
        batch = ReadBatch(
            records=(
                classify(StoredRecord(0, Record(b"a"))),
                classify(StoredRecord(1, FenceCommand(b"w").to_record())),
                classify(StoredRecord(2, Record(b"b"))),
            )
        )

        assert [r.seq_num for r in batch.data_records] == [0, 2]
        assert [c.seq_num for c in batch.commands] == [1]
        assert batch.metered_bytes == 9 + (8 + 2 + 5 + 1) + 9
