"""
Base protocol and types for the stream transport.

The transport is the collaborator that owns connections, request encoding
and reconnection. Sessions only see the channel protocols defined here.

Invariants:
    - An AppendChannel acknowledges batches in the order they were sent
    - A ReadChannel delivers outputs in non-decreasing seq num order
    - recv() returns None exactly once the remote side has finished
    - Failures are raised as TransportError subclasses, with service
      rejections distinguishable from transport-level failures

How to change safely:
    - Protocol changes require updating all implementations
    - Keep error mapping in each backend, never in the sessions
"""

from __future__ import annotations

from abc import abstractmethod
from typing import Optional, Protocol, runtime_checkable

from ..errors import RequestStatus
from ..types import AppendAck, AppendBatch, ReadOutput


class TransportError(Exception):
    """Base exception for transport operations."""

    def status(self) -> RequestStatus:
        """Report a transport-level failure by its text alone."""
        return RequestStatus(message=str(self))


class TransportConnectionError(TransportError):
    """Connection to the service failed or was lost."""

    pass


class TransportTimeoutError(TransportError):
    """A transport operation timed out."""

    pass


class ServiceRejectedError(TransportError):
    """The service rejected a request.

    Attributes:
        code: Stable service status code
        message: Service provided message
    """

    def __init__(self, code: str, message: str) -> None:
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message

    def status(self) -> RequestStatus:
        return RequestStatus(message=self.message, status=self.code)


@runtime_checkable
class AppendChannel(Protocol):
    """Bidirectional append exchange: batches out, acks in."""

    @abstractmethod
    async def send(self, batch: AppendBatch) -> None:
        """Queue a batch for transmission without waiting for its ack."""
        ...

    @abstractmethod
    async def close_send(self) -> None:
        """Half-close the outbound side; acks for sent batches still arrive."""
        ...

    @abstractmethod
    async def recv(self) -> Optional[AppendAck]:
        """Wait for the next ack, or None once the exchange has ended.

        Raises:
            ServiceRejectedError: If the service ended the session
            TransportError: For transport failures
        """
        ...

    @abstractmethod
    async def aclose(self) -> None:
        """Release the channel; unacknowledged batches are abandoned."""
        ...


@runtime_checkable
class ReadChannel(Protocol):
    """Inbound read exchange."""

    @abstractmethod
    async def recv(self) -> Optional[ReadOutput]:
        """Wait for the next read output, or None once the read has ended.

        Raises:
            ServiceRejectedError: If the service rejected the read
            TransportError: For transport failures
        """
        ...

    @abstractmethod
    async def aclose(self) -> None:
        """Release the channel."""
        ...


@runtime_checkable
class StreamHandle(Protocol):
    """A connected handle to one stream.

    Example:
        >>> channel = await handle.open_append_session(fencing_token=b"w1")
        >>> await channel.send(batch)
        >>> ack = await channel.recv()
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Stream name, for logging and error context."""
        ...

    @abstractmethod
    async def open_append_session(
        self,
        fencing_token: Optional[bytes] = None,
        match_seq_num: Optional[int] = None,
    ) -> AppendChannel:
        """Open an append exchange.

        Args:
            fencing_token: Token every batch is checked against, if given
            match_seq_num: Seq num the first batch must start at, if given
        """
        ...

    @abstractmethod
    async def open_read_session(
        self,
        start_seq_num: int,
        limit_count: Optional[int] = None,
        limit_bytes: Optional[int] = None,
    ) -> ReadChannel:
        """Open a read exchange starting at start_seq_num.

        With neither limit set, the exchange tails the stream indefinitely.
        """
        ...
