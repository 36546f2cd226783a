"""
Facility Harvester - Data Classes

Value types passed between the pipeline components: work items, checkpoint
records, retry bookkeeping and run summaries.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Generic, Mapping, Optional, TypeVar

from harvest.errors import FetchFailedError


T = TypeVar("T")


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


# =============================================================================
# Work Items
# =============================================================================

@dataclass(frozen=True)
class WorkItem:
    """
    One unit of work, typically one facility from a crawled listing.

    Identity is defined by ``id`` alone: two items with the same id are the
    same logical task regardless of payload.
    """

    id: str
    payload: Mapping[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def get(self, key: str, default: Any = None) -> Any:
        """Shortcut for payload lookups."""
        return self.payload.get(key, default)


# =============================================================================
# Checkpoint Records
# =============================================================================

class CheckpointStatus(str, Enum):
    """Lifecycle of a work item in the checkpoint log."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (CheckpointStatus.COMPLETED, CheckpointStatus.FAILED)


@dataclass
class CheckpointRecord:
    """A single status transition as stored in the checkpoint log."""

    id: str
    status: CheckpointStatus
    timestamp: datetime = field(default_factory=utcnow)
    error: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "id": self.id,
            "status": self.status.value,
            "timestamp": self.timestamp.isoformat(),
        }
        if self.error:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CheckpointRecord":
        """
        Build a record from a decoded log line.

        Raises:
            KeyError, ValueError: If the line is missing fields or has an
                unknown status
        """
        raw_timestamp = data.get("timestamp")
        timestamp = datetime.fromisoformat(raw_timestamp) if raw_timestamp else utcnow()
        return cls(
            id=str(data["id"]),
            status=CheckpointStatus(data["status"]),
            timestamp=timestamp,
            error=data.get("error"),
        )


@dataclass
class CheckpointStats:
    """Aggregate view of a checkpoint log for operators."""

    completed: int = 0
    failed: int = 0
    orphaned: int = 0
    failures: dict[str, str] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.completed + self.failed


# =============================================================================
# Retry Bookkeeping
# =============================================================================

@dataclass
class RetryAttempt:
    """One failed attempt of a network operation, kept in memory only."""

    attempt_number: int
    delay_seconds: float
    last_error: BaseException


@dataclass
class FetchResult(Generic[T]):
    """
    Outcome of RetryingFetcher.execute().

    Either ``value`` is set (success) or ``error`` holds the last error seen.
    ``attempts`` lists every failed attempt that was followed by a retry or
    that ended the operation.
    """

    value: Optional[T] = None
    error: Optional[BaseException] = None
    attempts: list[RetryAttempt] = field(default_factory=list)
    permanent: bool = False
    description: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def attempt_count(self) -> int:
        """Total number of calls made, including the successful one."""
        return len(self.attempts) + (1 if self.ok else 0)

    def unwrap(self) -> T:
        """
        Return the value or raise FetchFailedError.

        Raises:
            FetchFailedError: If the operation failed
        """
        if self.ok:
            return self.value
        raise FetchFailedError(
            self.description,
            self.error,
            attempts=len(self.attempts),
            permanent=self.permanent,
        )


# =============================================================================
# Run Summary
# =============================================================================

@dataclass
class HarvestSummary:
    """
    Result of a scheduler run.

    Counts refer to this run only; items completed in earlier runs show up
    under ``skipped``.
    """

    started_at: datetime = field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    total_items: int = 0
    duplicates: int = 0
    skipped: int = 0
    pending: int = 0

    completed: int = 0
    failed: int = 0
    rows_written: int = 0

    failures: dict[str, str] = field(default_factory=dict)

    @property
    def processed(self) -> int:
        return self.completed + self.failed

    @property
    def duration_seconds(self) -> float:
        if self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return 0.0

    @property
    def success_rate(self) -> float:
        if self.processed == 0:
            return 0.0
        return self.completed / self.processed

    @property
    def all_terminal(self) -> bool:
        """True when every pending item reached completed or failed."""
        return self.processed == self.pending


__all__ = [
    "WorkItem",
    "CheckpointStatus",
    "CheckpointRecord",
    "CheckpointStats",
    "RetryAttempt",
    "FetchResult",
    "HarvestSummary",
    "utcnow",
]
