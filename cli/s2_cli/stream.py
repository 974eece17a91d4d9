"""
StreamService: the session layer's entry point for one stream.

This module provides the operations the command line builds on:
- append_session: batch a record source and append it, yielding acks
- read_session: read from a seq num, yielding read events
- append_command_record: submit a single fence or trim command

Example:
    >>> service = StreamService(HttpStreamHandle(client, "basin", "logs"))
    >>> async for ack in service.append_session(source):
    ...     print(ack)

Invariants:
    - A service never runs two sessions on its handle at the same time
    - All sessions of a service share its cancellation token
"""

from __future__ import annotations

import logging
from typing import AsyncIterable, Optional

from .errors import AppendSessionError, InvalidCommandError, RequestStatus, SessionAborted
from .session.append import DEFAULT_MAX_IN_FLIGHT, AppendSession
from .session.batcher import RecordBatcher
from .session.cancel import CancellationToken
from .session.metrics import SessionMetrics
from .session.read import ReadSession
from .transport.base import StreamHandle
from .types import (
    MAX_BATCH_METERED_BYTES,
    MAX_BATCH_RECORDS,
    AppendAck,
    AppendBatch,
    Command,
    validate_fencing_token,
)

logger = logging.getLogger(__name__)


class StreamService:
    """Append and read sessions over one connected stream handle.

    Attributes:
        stream: The stream handle sessions run on
        cancel: Cancellation token shared by this service's sessions
    """

    def __init__(
        self,
        stream: StreamHandle,
        *,
        cancel: Optional[CancellationToken] = None,
        max_batch_records: int = MAX_BATCH_RECORDS,
        max_batch_bytes: int = MAX_BATCH_METERED_BYTES,
        max_in_flight: int = DEFAULT_MAX_IN_FLIGHT,
    ) -> None:
        self.stream = stream
        self.cancel = cancel or CancellationToken()
        self.max_batch_records = max_batch_records
        self.max_batch_bytes = max_batch_bytes
        self.max_in_flight = max_in_flight

    def append_session(
        self,
        source: AsyncIterable[bytes],
        fencing_token: Optional[bytes] = None,
        match_seq_num: Optional[int] = None,
        metrics: Optional[SessionMetrics] = None,
    ) -> AppendSession:
        """Create an append session over a record source.

        Args:
            source: Lines to append, one record each
            fencing_token: Session fencing token, if the stream is fenced
            match_seq_num: Seq num the first batch must land at

        Returns:
            AppendSession to iterate for acknowledgements
        """
        batcher = RecordBatcher(
            source,
            max_batch_records=self.max_batch_records,
            max_batch_bytes=self.max_batch_bytes,
        )
        return AppendSession(
            self.stream,
            batcher,
            fencing_token=fencing_token,
            match_seq_num=match_seq_num,
            max_in_flight=self.max_in_flight,
            cancel=self.cancel,
            metrics=metrics,
        )

    def read_session(
        self,
        start_seq_num: int = 0,
        limit_count: Optional[int] = None,
        limit_bytes: Optional[int] = None,
        metrics: Optional[SessionMetrics] = None,
    ) -> ReadSession:
        """Create a read session; with no limits it tails until cancelled."""
        return ReadSession(
            self.stream,
            start_seq_num,
            limit_count,
            limit_bytes,
            cancel=self.cancel,
            metrics=metrics,
        )

    async def append_command_record(
        self,
        command: Command,
        fencing_token: Optional[bytes] = None,
        match_seq_num: Optional[int] = None,
    ) -> AppendAck:
        """Append a single fence or trim command record.

        Raises:
            InvalidCommandError: If the session fencing token is invalid
            AppendSessionError: If the service rejects the command
            SessionAborted: If cancelled before the command is acknowledged
        """
        if fencing_token is not None:
            try:
                validate_fencing_token(fencing_token)
            except ValueError as e:
                raise InvalidCommandError(str(e)) from e

        batch = AppendBatch(records=(command.to_record(),))
        session = AppendSession(
            self.stream,
            _single(batch),
            fencing_token=fencing_token,
            match_seq_num=match_seq_num,
            max_in_flight=1,
            cancel=self.cancel,
        )

        ack: Optional[AppendAck] = None
        try:
            async for ack in session:
                pass
        except SessionAborted:
            # Cancelled as the ack arrived; the command was still applied
            if ack is None:
                raise
        if ack is None:
            raise AppendSessionError(
                RequestStatus("command record was not acknowledged", "unavailable"),
                self.stream.name,
            )

        logger.info(
            "Command record appended",
            extra={"stream": self.stream.name, "command": str(command), "seq_num": ack.start_seq_num},
        )
        return ack


async def _single(batch: AppendBatch) -> AsyncIterable[AppendBatch]:
    yield batch
