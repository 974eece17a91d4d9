"""
AppendSession: drives a pipelined append exchange with a stream.

The session loop races three events on one asyncio task: the next batch
from the batcher, the next acknowledgement from the channel, and the
cancellation token. Batches are sent as soon as they are built, up to
max_in_flight unacknowledged batches; acks are yielded in send order.

Invariants:
    - Batches are sent and acknowledged FIFO; none is reordered or resent
    - fencing_token and match_seq_num are fixed for the whole session;
      match_seq_num constrains only the first batch
    - Cancellation half-closes the channel and raises SessionAborted listing
      every batch that was sent but not acknowledged; an ack already received
      when cancellation is seen is yielded first
    - A batching failure after batches were sent records the unconfirmed
      counts in the error's details
    - The channel is released on every exit path

How to change safely:
    - Keep all mutation of session state inside _run(); callers only read
      state between yielded acks
    - Never retry here; reconnection belongs to the transport
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import AsyncIterable, AsyncIterator, Deque, List, Optional

from ..errors import AppendSessionError, RequestStatus, S2CliError, SessionAborted
from ..transport.base import AppendChannel, StreamHandle, TransportError
from ..types import AppendAck, AppendBatch, validate_fencing_token
from .cancel import CancellationToken, SessionState
from .metrics import SessionMetrics

logger = logging.getLogger(__name__)

DEFAULT_MAX_IN_FLIGHT = 4


async def _next_batch(batches: AsyncIterator[AppendBatch]) -> Optional[AppendBatch]:
    try:
        return await batches.__anext__()
    except StopAsyncIteration:
        return None


class AppendSession:
    """Pipelined append of a batch sequence to one stream.

    Iterating the session runs it and yields one AppendAck per batch.
    Clean completion ends the iteration; a service or transport failure
    raises AppendSessionError; a local batching failure (RecordTooLarge,
    RecordRead) is raised as is; cancellation raises SessionAborted.

    Attributes:
        state: Current lifecycle state
        error: The error that failed the session, if any
        metrics: Metered bytes of acknowledged batches
        last_ack: Most recent acknowledgement

    Example:
        >>> session = AppendSession(stream, RecordBatcher(source), cancel=token)
        >>> async for ack in session:
        ...     print(ack.start_seq_num, ack.end_seq_num)
    """

    def __init__(
        self,
        stream: StreamHandle,
        batches: AsyncIterable[AppendBatch],
        *,
        fencing_token: Optional[bytes] = None,
        match_seq_num: Optional[int] = None,
        max_in_flight: int = DEFAULT_MAX_IN_FLIGHT,
        cancel: Optional[CancellationToken] = None,
        metrics: Optional[SessionMetrics] = None,
    ) -> None:
        if fencing_token is not None:
            validate_fencing_token(fencing_token)
        if match_seq_num is not None and match_seq_num < 0:
            raise ValueError(f"match_seq_num must be non-negative, got {match_seq_num}")
        if max_in_flight < 1:
            raise ValueError(f"max_in_flight must be at least 1, got {max_in_flight}")

        self._stream = stream
        self._batches = batches
        self.fencing_token = fencing_token
        self.match_seq_num = match_seq_num
        self.max_in_flight = max_in_flight
        self._cancel = cancel or CancellationToken()
        self.metrics = metrics or SessionMetrics()

        self.state = SessionState.IDLE
        self._started = False
        self.error: Optional[S2CliError] = None
        self.last_ack: Optional[AppendAck] = None
        self.acked_batches = 0
        self._in_flight: Deque[AppendBatch] = deque()

    @property
    def unacknowledged(self) -> List[AppendBatch]:
        """Batches sent but not (yet) acknowledged, in send order."""
        return list(self._in_flight)

    def __aiter__(self) -> AsyncIterator[AppendAck]:
        if self._started:
            raise RuntimeError("Append session can only be iterated once")
        self._started = True
        return self._run()

    def _fail(self, error: S2CliError) -> S2CliError:
        self.state = SessionState.FAILED
        self.error = error
        logger.error(
            "Append session failed",
            extra={"stream": self._stream.name, "error": str(error), "in_flight": len(self._in_flight)},
        )
        return error

    def _service_error(self, error: TransportError) -> S2CliError:
        return self._fail(AppendSessionError(error.status(), self._stream.name))

    def _accept(self, ack: AppendAck) -> AppendBatch:
        """Match an ack against the oldest in-flight batch."""
        if not self._in_flight:
            raise self._fail(
                AppendSessionError(
                    RequestStatus("acknowledgement received with no batch in flight", "protocol"),
                    self._stream.name,
                )
            )
        batch = self._in_flight[0]
        if ack.record_count != len(batch):
            raise self._fail(
                AppendSessionError(
                    RequestStatus(
                        f"acknowledged {ack.record_count} records for a batch of {len(batch)}",
                        "protocol",
                    ),
                    self._stream.name,
                )
            )
        self._in_flight.popleft()
        self.acked_batches += 1
        self.last_ack = ack
        self.metrics.record(batch.metered_bytes)
        return batch

    async def _run(self) -> AsyncIterator[AppendAck]:
        stream = self._stream
        batches = self._batches.__aiter__()
        try:
            channel: AppendChannel = await stream.open_append_session(
                fencing_token=self.fencing_token,
                match_seq_num=self.match_seq_num,
            )
        except TransportError as e:
            aclose = getattr(batches, "aclose", None)
            if aclose is not None:
                await aclose()
            raise self._service_error(e) from e

        self.state = SessionState.OPEN
        logger.info(
            "Append session opened",
            extra={
                "stream": stream.name,
                "fenced": self.fencing_token is not None,
                "match_seq_num": self.match_seq_num,
                "max_in_flight": self.max_in_flight,
            },
        )

        cancel_task = asyncio.create_task(self._cancel.wait())
        batch_task: Optional[asyncio.Task] = None
        ack_task: Optional[asyncio.Task] = None
        input_done = False

        try:
            while not (input_done and not self._in_flight):
                if (
                    batch_task is None
                    and not input_done
                    and len(self._in_flight) < self.max_in_flight
                ):
                    batch_task = asyncio.create_task(_next_batch(batches))
                if ack_task is None:
                    ack_task = asyncio.create_task(channel.recv())

                waiting = {t for t in (batch_task, ack_task, cancel_task) if t is not None}
                await asyncio.wait(waiting, return_when=asyncio.FIRST_COMPLETED)

                if cancel_task.done():
                    task, ack_task = ack_task, None
                    if task.done() and not task.cancelled() and task.exception() is None:
                        ack = task.result()
                        if ack is not None:
                            # Already stored by the service; report it before aborting
                            self._accept(ack)
                            yield ack
                    elif not task.done():
                        ack_task = task
                    await self._abort(channel)

                if batch_task is not None and batch_task.done():
                    task, batch_task = batch_task, None
                    try:
                        batch = task.result()
                    except S2CliError as e:
                        if self._in_flight:
                            e.details["unacknowledged_batches"] = len(self._in_flight)
                            e.details["unacknowledged_records"] = sum(len(b) for b in self._in_flight)
                        raise self._fail(e)

                    if batch is None:
                        input_done = True
                        self.state = SessionState.DRAINING
                        logger.info(
                            "Append input exhausted, draining",
                            extra={"stream": stream.name, "in_flight": len(self._in_flight)},
                        )
                        try:
                            await channel.close_send()
                        except TransportError as e:
                            raise self._service_error(e) from e
                    else:
                        try:
                            await channel.send(batch)
                        except TransportError as e:
                            raise self._service_error(e) from e
                        self._in_flight.append(batch)
                        logger.debug(
                            "Batch sent",
                            extra={
                                "stream": stream.name,
                                "records": len(batch),
                                "in_flight": len(self._in_flight),
                            },
                        )

                if ack_task.done():
                    task, ack_task = ack_task, None
                    try:
                        ack = task.result()
                    except TransportError as e:
                        raise self._service_error(e) from e

                    if ack is None:
                        if self._in_flight:
                            raise self._fail(
                                AppendSessionError(
                                    RequestStatus(
                                        f"stream closed with {len(self._in_flight)} batch(es) "
                                        "unacknowledged",
                                        "unavailable",
                                    ),
                                    stream.name,
                                )
                            )
                        if not input_done:
                            raise self._fail(
                                AppendSessionError(
                                    RequestStatus("stream closed before input was exhausted", "unavailable"),
                                    stream.name,
                                )
                            )
                        break

                    self._accept(ack)
                    yield ack

            self.state = SessionState.CLOSED
            logger.info(
                "Append session closed",
                extra={"stream": stream.name, "batches": self.acked_batches},
            )
        finally:
            for task in (batch_task, ack_task, cancel_task):
                if task is not None and not task.done():
                    task.cancel()
            await asyncio.gather(
                *(t for t in (batch_task, ack_task, cancel_task) if t is not None),
                return_exceptions=True,
            )
            await channel.aclose()
            aclose = getattr(batches, "aclose", None)
            if aclose is not None:
                await aclose()
            if not self.state.is_terminal:
                # Consumer stopped iterating early
                self.state = SessionState.ABORTED

    async def _abort(self, channel: AppendChannel) -> None:
        """Half-close the channel and raise SessionAborted."""
        self.state = SessionState.ABORTED
        try:
            await channel.close_send()
        except TransportError as e:
            logger.debug(f"Error half-closing aborted append channel: {e}")
        logger.info(
            "Append session aborted",
            extra={"stream": self._stream.name, "unacknowledged": len(self._in_flight)},
        )
        raise SessionAborted(self.unacknowledged)
