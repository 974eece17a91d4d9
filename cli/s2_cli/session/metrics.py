"""
Throughput accounting for streaming sessions.

SessionMetrics is owned by a single session loop; reporters running on the
same loop read it between yielded events, so no locking is involved.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Callable, Optional

MIB = 1024 * 1024


@dataclass
class SessionMetrics:
    """Running total of metered bytes since the first observed event.

    Attributes:
        total_metered_bytes: Metered bytes observed so far
        started_at: Clock reading at the first event, None before it
    """

    total_metered_bytes: int = 0
    started_at: Optional[float] = None
    clock: Callable[[], float] = field(default=time.monotonic, repr=False)

    def record(self, metered_bytes: int) -> None:
        """Account for one event; the first call also starts the clock."""
        if self.started_at is None:
            self.started_at = self.clock()
        self.total_metered_bytes += metered_bytes

    @property
    def started(self) -> bool:
        return self.started_at is not None

    def elapsed(self) -> float:
        """Seconds since the first event (0.0 before it)."""
        if self.started_at is None:
            return 0.0
        return max(self.clock() - self.started_at, 0.0)

    def throughput(self) -> float:
        """Metered bytes per second; 0.0 until time has elapsed."""
        elapsed = self.elapsed()
        if elapsed <= 0:
            return 0.0
        return self.total_metered_bytes / elapsed

    def summary(self) -> str:
        return (
            f"{self.total_metered_bytes / MIB:.2f} MiB in {self.elapsed():.2f}s "
            f"({self.throughput() / MIB:.2f} MiB/s)"
        )
