"""
Facility Harvester - Progress Reporting Unit Tests
"""

import pytest

from harvest.progress import ProgressTracker, format_duration


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


@pytest.mark.parametrize("seconds, expected", [
    (None, "?"),
    (42, "42s"),
    (210, "3.5m"),
    (4320, "1.2h"),
])
def test_format_duration(seconds, expected):
    assert format_duration(seconds) == expected


class TestProgressTracker:
    """Tests for ProgressTracker."""

    def test_rate_and_eta(self):
        clock = FakeClock()
        tracker = ProgressTracker(clock=clock)
        tracker.start(100)

        clock.now += 10
        for _ in range(18):
            tracker.record(success=True)
        tracker.record(success=False)
        tracker.record(success=False)

        assert tracker.processed == 20
        assert tracker.completed == 18
        assert tracker.failed == 2
        assert tracker.rate == 2.0
        assert tracker.eta_seconds == 40.0

    def test_no_eta_before_progress(self):
        tracker = ProgressTracker(clock=FakeClock())
        tracker.start(10)

        assert tracker.rate == 0.0
        assert tracker.eta_seconds is None

    def test_logs_at_interval(self, monkeypatch):
        tracker = ProgressTracker(interval=5, clock=FakeClock())
        tracker.start(12)
        logged = []
        monkeypatch.setattr(tracker, "log", lambda: logged.append(tracker.processed))

        for _ in range(12):
            tracker.record(success=True)

        assert logged == [5, 10, 12]
