"""
Record, batch and read-event types for s2-cli streaming sessions.

This module defines the values that flow through append and read sessions:
- Record / Header: opaque payload plus optional header metadata
- FenceCommand / TrimCommand: in-band command records
- AppendBatch / AppendAck: unit of negotiation for appends
- StoredRecord / StoredBatch: records as handed over by the transport
- SequencedRecord / SequencedCommand / ReadBatch: classified read output
- FirstSeqNum / NextSeqNum: positional read signals

Invariants:
    - A record's metered size is a pure function of its headers and body
    - An AppendBatch is non-empty and never split or merged once built
    - Command records are recognized once, when read output is materialized

How to change safely:
    - Keep metered_size() in line with the service's billing formula
    - New command kinds need both an encoder (to_record) and a decoder
      (command_from_record)
"""

from __future__ import annotations

import logging
import struct
from dataclasses import dataclass, field
from typing import Union

logger = logging.getLogger(__name__)

# Service-defined limits
MAX_BATCH_RECORDS = 1000
MAX_BATCH_METERED_BYTES = 1024 * 1024  # 1 MiB
MAX_FENCING_TOKEN_BYTES = 16

# Command records carry a single header with an empty name
COMMAND_HEADER_NAME = b""
FENCE_COMMAND = b"fence"
TRIM_COMMAND = b"trim"


@dataclass(frozen=True)
class Header:
    """A single record header (name/value pair of raw bytes)."""

    name: bytes
    value: bytes


@dataclass(frozen=True)
class Record:
    """An opaque payload with optional header metadata.

    Attributes:
        body: Record payload
        headers: Ordered header metadata
    """

    body: bytes
    headers: tuple[Header, ...] = ()

    def metered_size(self) -> int:
        """Size used for service limits and throughput accounting."""
        return (
            8
            + 2 * len(self.headers)
            + sum(len(h.name) + len(h.value) for h in self.headers)
            + len(self.body)
        )


def validate_fencing_token(token: bytes) -> bytes:
    """Check a fencing token against the service's size ceiling.

    Raises:
        ValueError: If the token is longer than MAX_FENCING_TOKEN_BYTES
    """
    if len(token) > MAX_FENCING_TOKEN_BYTES:
        raise ValueError(
            f"Fencing token must be at most {MAX_FENCING_TOKEN_BYTES} bytes, got {len(token)}"
        )
    return token


@dataclass(frozen=True)
class FenceCommand:
    """Set (or, with an empty token, clear) the stream's fencing token."""

    token: bytes = b""

    def __post_init__(self) -> None:
        validate_fencing_token(self.token)

    def to_record(self) -> Record:
        return Record(
            body=self.token,
            headers=(Header(COMMAND_HEADER_NAME, FENCE_COMMAND),),
        )

    def __str__(self) -> str:
        if not self.token:
            return "fence cleared"
        return f"fence set to {self.token!r}"


@dataclass(frozen=True)
class TrimCommand:
    """Advance the stream's trim point to seq_num."""

    seq_num: int

    def __post_init__(self) -> None:
        if not 0 <= self.seq_num < 2**64:
            raise ValueError(f"Trim point must be an unsigned 64-bit integer, got {self.seq_num}")

    def to_record(self) -> Record:
        return Record(
            body=struct.pack(">Q", self.seq_num),
            headers=(Header(COMMAND_HEADER_NAME, TRIM_COMMAND),),
        )

    def __str__(self) -> str:
        return f"trim to {self.seq_num}"


Command = Union[FenceCommand, TrimCommand]


def command_from_record(record: Record) -> Command | None:
    """Decode a command record, or return None for a data record.

    A record is a command record when its only header has an empty name.
    Tagged records with an unknown command or a malformed body are
    treated as data and logged.
    """
    if len(record.headers) != 1 or record.headers[0].name != COMMAND_HEADER_NAME:
        return None

    kind = record.headers[0].value
    try:
        if kind == FENCE_COMMAND:
            return FenceCommand(token=record.body)
        if kind == TRIM_COMMAND:
            if len(record.body) != 8:
                raise ValueError(f"trim body must be 8 bytes, got {len(record.body)}")
            (seq_num,) = struct.unpack(">Q", record.body)
            return TrimCommand(seq_num=seq_num)
    except ValueError as e:
        logger.warning(
            "Malformed command record treated as data",
            extra={"command": kind.decode("utf-8", "replace"), "error": str(e)},
        )
        return None

    logger.warning(
        "Unknown command record treated as data",
        extra={"command": kind.decode("utf-8", "replace")},
    )
    return None


@dataclass(frozen=True)
class AppendBatch:
    """An ordered, non-empty group of records appended as one unit.

    Attributes:
        records: Records in input order
        metered_bytes: Total metered size of the records
    """

    records: tuple[Record, ...]
    metered_bytes: int = field(default=-1)

    def __post_init__(self) -> None:
        if not self.records:
            raise ValueError("AppendBatch must contain at least one record")
        if self.metered_bytes < 0:
            object.__setattr__(
                self, "metered_bytes", sum(r.metered_size() for r in self.records)
            )

    def __len__(self) -> int:
        return len(self.records)


@dataclass(frozen=True)
class AppendAck:
    """Acknowledgement of one AppendBatch.

    Attributes:
        start_seq_num: Seq num assigned to the batch's first record
        end_seq_num: One past the seq num of the batch's last record
        next_seq_num: Tail of the stream after this append
    """

    start_seq_num: int
    end_seq_num: int
    next_seq_num: int

    @property
    def record_count(self) -> int:
        return self.end_seq_num - self.start_seq_num

    def __str__(self) -> str:
        return f"{self.start_seq_num}..{self.end_seq_num} (next {self.next_seq_num})"


@dataclass(frozen=True)
class StoredRecord:
    """A record as delivered by the transport, before classification."""

    seq_num: int
    record: Record


@dataclass(frozen=True)
class StoredBatch:
    """A batch of stored records as delivered by the transport."""

    records: tuple[StoredRecord, ...]


@dataclass(frozen=True)
class SequencedRecord:
    """A data record annotated with its service-assigned seq num."""

    seq_num: int
    record: Record

    @property
    def body(self) -> bytes:
        return self.record.body

    def metered_size(self) -> int:
        return self.record.metered_size()


@dataclass(frozen=True)
class SequencedCommand:
    """A command record annotated with its service-assigned seq num."""

    seq_num: int
    command: Command
    metered_bytes: int

    def metered_size(self) -> int:
        return self.metered_bytes


ReadItem = Union[SequencedRecord, SequencedCommand]


def classify(stored: StoredRecord) -> ReadItem:
    """Materialize a stored record as either a data or a command record."""
    command = command_from_record(stored.record)
    if command is None:
        return SequencedRecord(seq_num=stored.seq_num, record=stored.record)
    return SequencedCommand(
        seq_num=stored.seq_num,
        command=command,
        metered_bytes=stored.record.metered_size(),
    )


@dataclass(frozen=True)
class ReadBatch:
    """Read event carrying an ordered batch of classified records."""

    records: tuple[ReadItem, ...]

    @property
    def metered_bytes(self) -> int:
        return sum(r.metered_size() for r in self.records)

    @property
    def data_records(self) -> list[SequencedRecord]:
        return [r for r in self.records if isinstance(r, SequencedRecord)]

    @property
    def commands(self) -> list[SequencedCommand]:
        return [r for r in self.records if isinstance(r, SequencedCommand)]


@dataclass(frozen=True)
class FirstSeqNum:
    """Read event: the requested start was trimmed; reading resumes here."""

    seq_num: int


@dataclass(frozen=True)
class NextSeqNum:
    """Read event: no more data currently available past seq_num."""

    seq_num: int


ReadEvent = Union[ReadBatch, FirstSeqNum, NextSeqNum]
ReadOutput = Union[StoredBatch, FirstSeqNum, NextSeqNum]
