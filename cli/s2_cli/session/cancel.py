"""
Cancellation and lifecycle state shared by append and read sessions.

Sessions select over {next upstream event, cancellation}; the token is the
cancellation half of that race. Triggering it is edge-triggered and
idempotent: once cancelled, a token stays cancelled.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from enum import Enum
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


class SessionState(Enum):
    """Lifecycle of an append or read session.

    IDLE -> OPEN -> DRAINING -> CLOSED on clean completion; OPEN or
    DRAINING -> ABORTED on cancellation; OPEN or DRAINING -> FAILED on
    any unrecoverable error.
    """

    IDLE = "idle"
    OPEN = "open"
    DRAINING = "draining"
    CLOSED = "closed"
    ABORTED = "aborted"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.CLOSED, SessionState.ABORTED, SessionState.FAILED)


class CancellationToken:
    """External cancellation signal for sessions.

    Example:
        >>> token = CancellationToken()
        >>> session = ReadSession(stream, cancel=token)
        >>> loop.add_signal_handler(signal.SIGINT, token.cancel)
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        if not self._event.is_set():
            logger.info("Cancellation requested")
            self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()


def install_signal_handlers(
    token: CancellationToken,
    loop: Optional[asyncio.AbstractEventLoop] = None,
    signals: Iterable[int] = (signal.SIGINT, signal.SIGTERM),
) -> None:
    """Cancel the token when the process receives one of the signals."""
    loop = loop or asyncio.get_running_loop()

    def handle_signal(sig: int) -> None:
        logger.info(f"Received signal {sig}, cancelling session")
        token.cancel()

    for sig in signals:
        loop.add_signal_handler(sig, handle_signal, sig)
