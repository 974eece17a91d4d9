"""
Error types for s2-cli.

This module defines all exception types raised by the session layer:
- S2CliError: Base exception
- RecordTooLarge / RecordReaderInit / RecordRead / RecordWrite: local errors
- ServiceError (AppendSessionError, ReadSessionError): remote failures
- SessionAborted: cancellation, carrying any unconfirmed batches

Invariants:
    - All errors inherit from S2CliError
    - Service errors never expose raw transport exceptions to callers
    - SessionAborted is terminal but is not a failure for exit-code purposes
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

if TYPE_CHECKING:
    from .types import AppendBatch


class S2CliError(Exception):
    """Base exception for all s2-cli errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "S2_CLI_ERROR"
        self.details = details or {}


class ConfigError(S2CliError):
    """Configuration could not be loaded or saved."""

    def __init__(self, message: str, path: Optional[str] = None) -> None:
        super().__init__(message, code="CONFIG_ERROR", details={"path": path})
        self.path = path


class InvalidCommandError(S2CliError):
    """A command record argument is invalid (token too long, bad trim point)."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="INVALID_COMMAND")


class RecordTooLarge(S2CliError):
    """A single record exceeds the per-batch metered byte ceiling."""

    def __init__(self, metered_bytes: int, limit: int) -> None:
        super().__init__(
            f"Record of {metered_bytes} metered bytes exceeds the batch limit of {limit} bytes",
            code="RECORD_TOO_LARGE",
            details={"metered_bytes": metered_bytes, "limit": limit},
        )
        self.metered_bytes = metered_bytes
        self.limit = limit


class RecordReaderInit(S2CliError):
    """The record source could not be opened."""

    def __init__(self, message: str) -> None:
        super().__init__(
            f"Failed to initialize a `Record Reader`! {message}",
            code="RECORD_READER_INIT",
        )


class RecordRead(S2CliError):
    """Reading from the record source failed."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Failed to read records: {message}", code="RECORD_READ")


class RecordWrite(S2CliError):
    """Writing records to the output sink failed."""

    def __init__(self, message: str) -> None:
        super().__init__(f"Failed to write records: {message}", code="RECORD_WRITE")


@dataclass
class RequestStatus:
    """Relevant information from a failed request.

    Attributes:
        status: Service status code, or empty for non-service failures
        message: Human readable message
    """

    message: str
    status: str = ""

    def __str__(self) -> str:
        if self.status:
            return f"{self.status}: {self.message}"
        return self.message


class ServiceError(S2CliError):
    """A remote operation failed, wrapped with what was being attempted."""

    def __init__(
        self,
        entity: str,
        operation: str,
        status: RequestStatus,
        extra: str = "",
    ) -> None:
        target = f"{entity} {extra}".strip()
        super().__init__(
            f"Failed to {operation} {target}: {status}",
            code=status.status or "SERVICE_ERROR",
            details={"entity": entity, "operation": operation, "extra": extra},
        )
        self.entity = entity
        self.operation = operation
        self.status = status
        self.extra = extra


class AppendSessionError(ServiceError):
    """The append session was rejected or failed mid-session."""

    def __init__(self, status: RequestStatus, stream: str = "") -> None:
        super().__init__("stream", "append records to", status, extra=stream)


class ReadSessionError(ServiceError):
    """The read session was rejected or failed mid-session."""

    def __init__(self, status: RequestStatus, stream: str = "") -> None:
        super().__init__("stream", "read records from", status, extra=stream)


class SessionAborted(S2CliError):
    """A session was cancelled before it completed.

    Attributes:
        unacknowledged: Batches sent but never acknowledged; they must be
            treated as not confirmed
    """

    def __init__(self, unacknowledged: Sequence[AppendBatch] = ()) -> None:
        self.unacknowledged: List[AppendBatch] = list(unacknowledged)
        count = len(self.unacknowledged)
        message = "Session aborted"
        if count:
            records = sum(len(b) for b in self.unacknowledged)
            message += f"; {count} batch(es) with {records} record(s) not confirmed"
        super().__init__(
            message,
            code="ABORTED",
            details={"unacknowledged_batches": count},
        )

    @property
    def unacknowledged_records(self) -> int:
        return sum(len(b) for b in self.unacknowledged)
