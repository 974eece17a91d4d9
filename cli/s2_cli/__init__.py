"""
s2-cli - Command line streaming client for S2 streams.

This package implements the streaming session layer between local
newline-delimited records and a remote stream:
- RecordSource / RecordBatcher: lazy input and bounded append batches
- AppendSession: pipelined appends with in-order acknowledgements
- ReadSession: bounded or tailing reads with command record routing
- StreamService: the operations the command line is built on

Architecture:
    ┌──────────────┐    ┌──────────────┐    ┌───────────────┐
    │ RecordSource │───▶│ RecordBatcher│───▶│ AppendSession │──┐
    └──────────────┘    └──────────────┘    └───────────────┘  │
                                                               ▼
                                                     ┌──────────────────┐
                                                     │   StreamHandle   │
                                                     │ (HTTP / memory)  │
                                                     └────────┬─────────┘
                                                              │
    ┌──────────────┐    ┌───────────────┐                     │
    │  stdout/file │◀───│  ReadSession  │◀────────────────────┘
    └──────────────┘    └───────────────┘

Invariants:
    - Records keep their input order; acks arrive in send order
    - Cancellation ends a session with SessionAborted, never silently
    - Command records (fence, trim) are never mistaken for payload

Version: see _version.py.
"""

from ._version import __version__
from .errors import (
    AppendSessionError,
    ReadSessionError,
    RecordTooLarge,
    S2CliError,
    ServiceError,
    SessionAborted,
)
from .stream import StreamService

__all__ = [
    "__version__",
    "StreamService",
    "S2CliError",
    "ServiceError",
    "AppendSessionError",
    "ReadSessionError",
    "RecordTooLarge",
    "SessionAborted",
]
