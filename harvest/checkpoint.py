"""
Facility Harvester - Checkpoint Store

Durable record of which work items reached a terminal state, so a harvest
can be killed at any point and resumed without redoing finished work.

The store is a minimal write-ahead log: every status transition is one JSON
object on one line, appended with a single write and fsynced before the
call returns. Replaying the log (last record per id wins) rebuilds the
state. A crash in the middle of a write can only damage the final line;
the loader drops that line and trims it from the file.

Progress files from older harvesters (one id per line, "id,status" CSV
lines, or a single completed/failed JSON object) are read as well; the
JSON object form is converted to the line format on load.

Usage:
    store = CheckpointStore(settings.checkpoint_path)
    done = store.load()

    await store.mark_in_progress("NJ1A006")
    await store.mark_completed("NJ1A006")
"""

import asyncio
import json
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Optional

from config.logging import get_logger
from harvest.errors import DurabilityError
from harvest.models import (
    CheckpointRecord,
    CheckpointStats,
    CheckpointStatus,
    utcnow,
)


logger = get_logger(__name__)

# Failure reasons are for humans skimming the log, not full tracebacks
MAX_REASON_LENGTH = 1000

# Header written by the older CSV-style progress files
LEGACY_HEADER_PREFIX = "facility_id,"

# A bare legacy id line never starts with JSON punctuation
JSON_PUNCTUATION = tuple('{}[]"')


class CheckpointStore:
    """
    Append-only checkpoint log for one harvest.

    Writes are serialized through a single asyncio.Lock, so records from
    concurrent workers never interleave within a line. Blocking file I/O
    runs in a worker thread while the lock is held.
    """

    def __init__(
        self,
        path: Path,
        retry_failed: bool = True,
        track_in_progress: bool = True,
    ):
        """
        Initialize the store.

        Args:
            path: Location of the checkpoint log
            retry_failed: Leave failed items out of the terminal set so the
                next run retries them
            track_in_progress: Write in_progress markers before each item
        """
        self.path = Path(path)
        self.retry_failed = retry_failed
        self.track_in_progress = track_in_progress
        self._lock = asyncio.Lock()
        self._records: dict[str, CheckpointRecord] = {}

    # -------------------------------------------------------------------------
    # Loading
    # -------------------------------------------------------------------------

    def load(self) -> set[str]:
        """
        Replay the log and return IDs that should not be processed again.

        Always includes completed IDs; includes failed IDs only when
        ``retry_failed`` is off. Items whose last record is in_progress were
        orphaned by a crash and are left out so they run again.

        Returns:
            Set of terminal work-item IDs
        """
        self._records = self._read_log(repair=True)

        completed = set()
        failed = set()
        orphaned = 0
        for record in self._records.values():
            if record.status == CheckpointStatus.COMPLETED:
                completed.add(record.id)
            elif record.status == CheckpointStatus.FAILED:
                failed.add(record.id)
            elif record.status == CheckpointStatus.IN_PROGRESS:
                orphaned += 1

        logger.info(
            f"Loaded checkpoint: {len(completed)} completed, {len(failed)} failed",
            extra={
                "checkpoint": str(self.path),
                "orphaned": orphaned,
                "retry_failed": self.retry_failed,
            },
        )
        if orphaned:
            logger.warning(f"{orphaned} items were left in progress by a previous run and will be retried")

        if self.retry_failed:
            return completed
        return completed | failed

    def _read_log(self, repair: bool = False) -> dict[str, CheckpointRecord]:
        """Parse the log into the latest record per id."""
        if not self.path.exists():
            return {}

        raw = self.path.read_bytes()

        snapshot = self._read_snapshot(raw)
        if snapshot is not None:
            if repair:
                self._rewrite(snapshot)
            return snapshot

        lines = raw.split(b"\n")
        # Everything after the last newline; empty when the file ends cleanly
        tail = lines.pop()

        records: dict[str, CheckpointRecord] = {}
        for lineno, line in enumerate(lines, start=1):
            text = line.decode("utf-8", errors="replace").strip()
            if not text:
                continue
            record = self._parse_line(text)
            if record is None:
                logger.warning(
                    "Skipping unreadable checkpoint line",
                    extra={"checkpoint": str(self.path), "line": lineno},
                )
                continue
            records[record.id] = record

        if tail:
            record = self._parse_json_line(tail.decode("utf-8", errors="replace").strip())
            if record is not None:
                records[record.id] = record
                if repair:
                    self._terminate_tail()
            else:
                logger.warning(
                    "Discarding truncated final checkpoint line",
                    extra={"checkpoint": str(self.path), "bytes": len(tail)},
                )
                if repair:
                    self._truncate(len(raw) - len(tail))

        return records

    def _parse_line(self, text: str) -> Optional[CheckpointRecord]:
        if text.startswith("{"):
            return self._parse_json_line(text)

        if text.startswith(LEGACY_HEADER_PREFIX):
            return None

        # Older progress files: "id,status,timestamp[,error]"
        if "," in text:
            parts = text.split(",", 3)
            try:
                return CheckpointRecord.from_dict({
                    "id": parts[0],
                    "status": parts[1],
                    "timestamp": parts[2] if len(parts) > 2 else None,
                    "error": parts[3] if len(parts) > 3 else None,
                })
            except (KeyError, ValueError):
                return None

        # Oldest format: one completed id per line
        if text.startswith(JSON_PUNCTUATION):
            return None
        return CheckpointRecord(id=text, status=CheckpointStatus.COMPLETED)

    def _parse_json_line(self, text: str) -> Optional[CheckpointRecord]:
        try:
            data = json.loads(text)
            if not isinstance(data, dict):
                return None
            return CheckpointRecord.from_dict(data)
        except (KeyError, ValueError, TypeError):
            return None

    def _read_snapshot(self, raw: bytes) -> Optional[dict[str, CheckpointRecord]]:
        """
        Load a whole-file progress object from older harvesters.

        Those files hold a single (usually pretty-printed) JSON object:
        ``{"completed": [...], "failed": [...], "lastUpdated": "..."}``.

        Returns:
            Records keyed by id, or None if the file is not in that format
        """
        if not raw.lstrip().startswith(b"{"):
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            return None
        if not isinstance(data, dict) or "id" in data:
            return None

        completed = data.get("completed")
        failed = data.get("failed")
        if not isinstance(completed, list) and not isinstance(failed, list):
            return None

        timestamp = _parse_timestamp(data.get("lastUpdated"))
        records: dict[str, CheckpointRecord] = {}
        for item_id in failed if isinstance(failed, list) else []:
            records[str(item_id)] = CheckpointRecord(
                str(item_id), CheckpointStatus.FAILED, timestamp=timestamp
            )
        for item_id in completed if isinstance(completed, list) else []:
            records[str(item_id)] = CheckpointRecord(
                str(item_id), CheckpointStatus.COMPLETED, timestamp=timestamp
            )

        logger.info(
            "Read legacy progress snapshot",
            extra={"checkpoint": str(self.path), "records": len(records)},
        )
        return records

    def _rewrite(self, records: dict[str, CheckpointRecord]) -> None:
        """Atomically replace the file with one JSON line per record."""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                for record in records.values():
                    fh.write(json.dumps(record.to_dict(), ensure_ascii=False) + "\n")
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self.path)
        except OSError as e:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise DurabilityError(f"Could not convert checkpoint log {self.path}: {e}") from e
        logger.info(
            "Converted legacy progress snapshot to a checkpoint log",
            extra={"checkpoint": str(self.path), "records": len(records)},
        )

    def _truncate(self, size: int) -> None:
        try:
            with open(self.path, "r+b") as fh:
                fh.truncate(size)
                fh.flush()
                os.fsync(fh.fileno())
        except OSError as e:
            raise DurabilityError(f"Could not repair checkpoint log {self.path}: {e}") from e

    def _terminate_tail(self) -> None:
        try:
            self._write_line("\n")
        except OSError as e:
            raise DurabilityError(f"Could not repair checkpoint log {self.path}: {e}") from e

    # -------------------------------------------------------------------------
    # Status Transitions
    # -------------------------------------------------------------------------

    async def mark_in_progress(self, item_id: str) -> None:
        """
        Record that an item has started.

        Best-effort: a failed write is logged and ignored, since this
        marker is only used to report orphans.
        """
        if not self.track_in_progress:
            return
        try:
            await self._append(CheckpointRecord(item_id, CheckpointStatus.IN_PROGRESS))
        except DurabilityError as e:
            logger.warning(
                "Could not record in-progress marker",
                extra={"item_id": item_id, "error": str(e)},
            )

    async def mark_completed(self, item_id: str) -> None:
        """
        Durably record a completed item.

        Raises:
            DurabilityError: If the record could not be written
        """
        await self._append(CheckpointRecord(item_id, CheckpointStatus.COMPLETED))

    async def mark_failed(self, item_id: str, reason: str) -> None:
        """
        Durably record a failed item with the reason for later inspection.

        Raises:
            DurabilityError: If the record could not be written
        """
        await self._append(
            CheckpointRecord(item_id, CheckpointStatus.FAILED, error=_clean_reason(reason))
        )

    async def _append(self, record: CheckpointRecord) -> None:
        line = json.dumps(record.to_dict(), ensure_ascii=False) + "\n"
        async with self._lock:
            try:
                await asyncio.to_thread(self._write_line, line)
            except OSError as e:
                raise DurabilityError(
                    f"Could not write checkpoint record for {record.id} to {self.path}: {e}"
                ) from e
            self._records[record.id] = record

    def _write_line(self, line: str) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "a", encoding="utf-8") as fh:
            fh.write(line)
            fh.flush()
            os.fsync(fh.fileno())

    # -------------------------------------------------------------------------
    # Inspection
    # -------------------------------------------------------------------------

    def status_of(self, item_id: str) -> Optional[CheckpointStatus]:
        """Latest known status of an item, from the loaded or written records."""
        record = self._records.get(item_id)
        return record.status if record else None

    def stats(self) -> CheckpointStats:
        """
        Summarize the log on disk without modifying it.

        Returns:
            CheckpointStats with counts and failure reasons
        """
        stats = CheckpointStats()
        for record in self._read_log(repair=False).values():
            if record.status == CheckpointStatus.COMPLETED:
                stats.completed += 1
            elif record.status == CheckpointStatus.FAILED:
                stats.failed += 1
                stats.failures[record.id] = record.error or ""
            elif record.status == CheckpointStatus.IN_PROGRESS:
                stats.orphaned += 1
        return stats

    def failed_items(self) -> dict[str, str]:
        """Map of failed item id to failure reason."""
        return self.stats().failures

    def reset(self) -> None:
        """Delete the log so the next run starts from scratch."""
        if self.path.exists():
            self.path.unlink()
            logger.info("Checkpoint reset", extra={"checkpoint": str(self.path)})
        self._records.clear()


def _clean_reason(reason: str) -> str:
    reason = " ".join(str(reason).split())
    if len(reason) > MAX_REASON_LENGTH:
        reason = reason[: MAX_REASON_LENGTH - 3] + "..."
    return reason


def _parse_timestamp(value) -> datetime:
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
    return utcnow()


__all__ = ["CheckpointStore"]
