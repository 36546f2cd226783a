"""
Facility Harvester - Incremental Sinks

Append-only writers for harvest output. Rows arrive from many concurrent
workers but reach the file through one lock, one write per row, flushed and
fsynced before append() returns. A crash can therefore only lose rows that
had not been appended yet; rows already on disk stay intact.

Sinks:
    CsvSink: one CSV file, header written once
    JsonFileSink: one JSON document per item

Usage:
    sink = CsvSink(settings.output_path, columns=["facility_id", "name"],
                   key_column="facility_id")
    await sink.initialize()
    await sink.append({"facility_id": "123", "name": "Sunrise Manor"})
"""

import asyncio
import csv
import io
import json
import os
import re
import tempfile
from abc import ABC, abstractmethod
from collections import Counter
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

from config.logging import get_logger
from harvest.errors import DurabilityError


logger = get_logger(__name__)


class BaseSink(ABC):
    """
    Abstract base class for output sinks.

    Subclasses implement the blocking file operations; this class takes
    care of serializing writers and turning OSError into DurabilityError.
    """

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.rows_written = 0

    async def initialize(self, fresh: bool = False) -> None:
        """
        Prepare the output for appending.

        Idempotent when ``fresh`` is False: existing output is kept and
        appended to. With ``fresh`` the previous output is discarded.

        Raises:
            DurabilityError: If the output could not be prepared
        """
        async with self._lock:
            try:
                await asyncio.to_thread(self._initialize, fresh)
            except OSError as e:
                raise DurabilityError(f"Could not initialize {self.describe()}: {e}") from e

    async def append(self, row: Mapping[str, Any]) -> bool:
        """
        Durably append one row.

        Returns:
            True if the row was written, False if it was already present

        Raises:
            DurabilityError: If the row could not be written
        """
        async with self._lock:
            try:
                written = await asyncio.to_thread(self._append, row)
            except OSError as e:
                raise DurabilityError(f"Could not write to {self.describe()}: {e}") from e
            if written:
                self.rows_written += 1
            return written

    @abstractmethod
    def _initialize(self, fresh: bool) -> None:
        """Blocking part of initialize()."""
        pass

    @abstractmethod
    def _append(self, row: Mapping[str, Any]) -> bool:
        """Blocking part of append()."""
        pass

    @abstractmethod
    def describe(self) -> str:
        """Human-readable location for logs and errors."""
        pass


# =============================================================================
# CSV Sink
# =============================================================================

class CsvSink(BaseSink):
    """
    CSV output with a fixed header written once.

    Cell values are flattened to a single line so that every record is
    exactly one line in the file; that keeps crash repair a matter of
    trimming back to the last newline.

    When ``key_column`` is set, rows that were already in the file at
    initialize() are remembered, and an appended row identical to one of
    them is skipped once. A crash between writing a row and checkpointing
    its item would otherwise produce a duplicate on resume. Rows written
    during the current run are never matched, so an item may emit several
    rows with the same key.
    """

    def __init__(
        self,
        path: Path,
        columns: Sequence[str],
        key_column: Optional[str] = None,
    ):
        super().__init__()
        if not columns:
            raise ValueError("CsvSink needs at least one column")
        if key_column is not None and key_column not in columns:
            raise ValueError(f"Key column {key_column!r} is not one of the columns")
        self.path = Path(path)
        self.columns = list(columns)
        self.key_column = key_column
        self._on_disk: Counter = Counter()

    def describe(self) -> str:
        return f"CSV output {self.path}"

    def _initialize(self, fresh: bool) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._on_disk.clear()

        if not fresh and self.path.exists():
            self._repair_tail()

        if fresh or not self.path.exists() or self.path.stat().st_size == 0:
            with open(self.path, "w", encoding="utf-8", newline="") as fh:
                fh.write(self._format_line(self.columns))
                fh.flush()
                os.fsync(fh.fileno())
            logger.info(f"Started new output file {self.path}")
            return

        existing = self._read_existing()
        logger.info(
            f"Appending to existing output file {self.path}",
            extra={"existing_rows": existing},
        )

    def _repair_tail(self) -> None:
        """Trim a partial last line left by a crash mid-write."""
        with open(self.path, "r+b") as fh:
            data = fh.read()
            if not data or data.endswith(b"\n"):
                return
            keep = data.rfind(b"\n") + 1
            fh.truncate(keep)
            fh.flush()
            os.fsync(fh.fileno())
        logger.warning(
            "Trimmed partial trailing row from output",
            extra={"path": str(self.path), "bytes": len(data) - keep},
        )

    def _read_existing(self) -> int:
        """
        Check the header of an existing file and remember its rows.

        Raises:
            DurabilityError: If the header does not match the configured
                columns; appending would put values under the wrong names
        """
        count = 0
        with open(self.path, "r", encoding="utf-8", newline="") as fh:
            reader = csv.reader(fh)
            header = next(reader, None) or []
            if header != self.columns:
                logger.error(
                    "Existing output header differs from configured columns",
                    extra={"path": str(self.path), "header": header, "columns": self.columns},
                )
                raise DurabilityError(
                    f"Existing output {self.path} has header {header}, expected "
                    f"{self.columns}; rerun with --fresh or choose another --output"
                )
            for record in reader:
                count += 1
                if self.key_column is not None:
                    self._on_disk[tuple(record)] += 1
        return count

    def _append(self, row: Mapping[str, Any]) -> bool:
        values = [_flatten(row.get(column)) for column in self.columns]

        if self.key_column is not None:
            record = tuple(values)
            if self._on_disk[record] > 0:
                self._on_disk[record] -= 1
                logger.debug(
                    "Row already in output, skipping",
                    extra={"key": _flatten(row.get(self.key_column))},
                )
                return False

        line = self._format_line(values)
        with open(self.path, "a", encoding="utf-8", newline="") as fh:
            fh.write(line)
            fh.flush()
            os.fsync(fh.fileno())
        return True

    @staticmethod
    def _format_line(values: Sequence[str]) -> str:
        buffer = io.StringIO()
        csv.writer(buffer, lineterminator="\n").writerow(values)
        return buffer.getvalue()


def _flatten(value: Any) -> str:
    """Render a cell value as a single line of text."""
    if value is None:
        return ""
    if isinstance(value, (list, tuple)):
        value = " | ".join(_flatten(v) for v in value)
    return " ".join(str(value).splitlines())


# =============================================================================
# Per-Item JSON Sink
# =============================================================================

class JsonFileSink(BaseSink):
    """
    Writes each row as its own JSON document, named after ``key_field``.

    Each file is written to a temp name and renamed into place, so a
    reader never sees a half-written document.
    """

    def __init__(self, directory: Path, key_field: str = "id"):
        super().__init__()
        self.directory = Path(directory)
        self.key_field = key_field

    def describe(self) -> str:
        return f"JSON output directory {self.directory}"

    def path_for(self, key: Any) -> Path:
        safe = re.sub(r"[^\w.-]", "_", str(key)).strip("._") or "item"
        return self.directory / f"{safe}.json"

    def _initialize(self, fresh: bool) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        if fresh:
            removed = 0
            for path in self.directory.glob("*.json"):
                path.unlink()
                removed += 1
            if removed:
                logger.info(f"Removed {removed} previous JSON documents from {self.directory}")

    def _append(self, row: Mapping[str, Any]) -> bool:
        key = row.get(self.key_field)
        if key is None or key == "":
            raise ValueError(f"Row has no {self.key_field!r} value")

        dest = self.path_for(key)
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{dest.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                json.dump(dict(row), fh, indent=2, default=str, ensure_ascii=False)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, dest)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        return True


__all__ = ["BaseSink", "CsvSink", "JsonFileSink"]
