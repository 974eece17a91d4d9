"""
Append/read session layer for s2-cli.

This package provides the streaming pipeline between local records and a
remote stream:
- RecordSource: lazy line-oriented record input
- RecordBatcher: size/count bounded append batches
- AppendSession: pipelined, cancellable append exchange
- ReadSession: cancellable read exchange with command record routing
- SessionMetrics: metered byte throughput accounting

Invariants:
    - One cooperative loop per session; no state shared between sessions
    - Acks and read events are delivered in order
    - Cancellation is a distinct terminal state (SessionAborted)
"""

from .append import DEFAULT_MAX_IN_FLIGHT, AppendSession
from .batcher import RecordBatcher, validate_batch_limits
from .cancel import CancellationToken, SessionState, install_signal_handlers
from .metrics import SessionMetrics
from .read import ReadSession
from .source import (
    FileRecordSource,
    IterableRecordSource,
    PipeRecordSource,
    RecordSource,
    open_record_source,
)

__all__ = [
    # Sources
    "RecordSource",
    "FileRecordSource",
    "PipeRecordSource",
    "IterableRecordSource",
    "open_record_source",
    # Batching
    "RecordBatcher",
    "validate_batch_limits",
    # Sessions
    "AppendSession",
    "ReadSession",
    "DEFAULT_MAX_IN_FLIGHT",
    # Lifecycle
    "CancellationToken",
    "SessionState",
    "install_signal_handlers",
    "SessionMetrics",
]
