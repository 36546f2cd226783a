"""
Facility Harvester - Progress Reporting

Counts processed items and logs rate and ETA at a fixed interval.
Observability only; nothing in the pipeline depends on these numbers.
"""

import time
from typing import Callable, Optional

from config.logging import get_logger


logger = get_logger(__name__)


def format_duration(seconds: Optional[float]) -> str:
    """Render a duration as 42s, 3.5m or 1.2h."""
    if seconds is None:
        return "?"
    if seconds < 60:
        return f"{seconds:.0f}s"
    if seconds < 3600:
        return f"{seconds / 60:.1f}m"
    return f"{seconds / 3600:.1f}h"


class ProgressTracker:
    """Running totals for one scheduler run."""

    def __init__(
        self,
        total: int = 0,
        interval: int = 10,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.total = total
        self.interval = max(1, interval)
        self._clock = clock
        self._started = clock()
        self.completed = 0
        self.failed = 0

    def start(self, total: int) -> None:
        """Reset counters for a run over ``total`` items."""
        self.total = total
        self.completed = 0
        self.failed = 0
        self._started = self._clock()

    @property
    def processed(self) -> int:
        return self.completed + self.failed

    @property
    def elapsed_seconds(self) -> float:
        return self._clock() - self._started

    @property
    def rate(self) -> float:
        """Items per second since start."""
        elapsed = self.elapsed_seconds
        if elapsed <= 0:
            return 0.0
        return self.processed / elapsed

    @property
    def eta_seconds(self) -> Optional[float]:
        rate = self.rate
        if rate <= 0:
            return None
        return max(0, self.total - self.processed) / rate

    def record(self, success: bool) -> None:
        """Count one finished item and log if the interval is reached."""
        if success:
            self.completed += 1
        else:
            self.failed += 1

        if self.processed % self.interval == 0 or self.processed == self.total:
            self.log()

    def log(self) -> None:
        logger.info(
            f"[{self.processed}/{self.total}] {self.completed} completed, {self.failed} failed "
            f"({self.rate:.2f}/s, ETA {format_duration(self.eta_seconds)})",
            extra={
                "processed": self.processed,
                "rate": round(self.rate, 3),
                "eta_seconds": self.eta_seconds,
            },
        )


__all__ = ["ProgressTracker", "format_duration"]
