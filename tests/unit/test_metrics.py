"""
Unit tests for SessionMetrics.
"""

import pytest
from s2_cli.session.metrics import SessionMetrics


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestSessionMetrics:
    """Tests for SessionMetrics."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def metrics(self, clock):
        return SessionMetrics(clock=clock)

    def test_initial_state(self, metrics):
        assert not metrics.started
        assert metrics.total_metered_bytes == 0
        assert metrics.elapsed() == 0.0
        assert metrics.throughput() == 0.0

    def test_first_event_starts_clock(self, metrics, clock):
        metrics.record(100)

        assert metrics.started
        assert metrics.started_at == 100.0
        assert metrics.total_metered_bytes == 100

    def test_zero_elapsed_throughput(self, metrics):
        """Throughput is zero, not a division error, before time passes."""
        metrics.record(1000)
        assert metrics.throughput() == 0.0

    def test_throughput(self, metrics, clock):
        metrics.record(1000)
        clock.now += 1.0
        metrics.record(1000)
        clock.now += 1.0

        assert metrics.total_metered_bytes == 2000
        assert metrics.elapsed() == 2.0
        assert metrics.throughput() == 1000.0

    def test_totals_are_monotonic(self, metrics):
        totals = []
        for size in (5, 0, 7):
            metrics.record(size)
            totals.append(metrics.total_metered_bytes)

        assert totals == sorted(totals)

    def test_summary(self, metrics, clock):
        metrics.record(1024 * 1024)
        clock.now += 2.0

        assert metrics.summary() == "1.00 MiB in 2.00s (0.50 MiB/s)"
