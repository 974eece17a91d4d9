"""
Stream transport abstraction for s2-cli.

This package provides the stream handle collaborator sessions talk to:
- HTTP (httpx) against the service's record API
- In-memory (for testing)

Invariants:
    - Append acknowledgements arrive in send order
    - Read outputs arrive in non-decreasing seq num order
    - Service rejections are distinguishable from transport failures

How to change safely:
    - New backends must implement the StreamHandle protocol
    - Map backend exceptions onto TransportError subclasses
"""

from .base import (
    AppendChannel,
    ReadChannel,
    ServiceRejectedError,
    StreamHandle,
    TransportConnectionError,
    TransportError,
    TransportTimeoutError,
)
from .http import HttpStreamHandle
from .memory import InMemoryStream

__all__ = [
    # Protocols
    "StreamHandle",
    "AppendChannel",
    "ReadChannel",
    # Errors
    "TransportError",
    "TransportConnectionError",
    "TransportTimeoutError",
    "ServiceRejectedError",
    # Implementations
    "HttpStreamHandle",
    "InMemoryStream",
]
