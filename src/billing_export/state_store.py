"""Durable record of reconciliation outcomes.

The store is the single source of truth across runs. It is consulted
before any mutating attempt and written only with terminal outcomes that
were confirmed against the control plane.

File format: JSON lines, one ReconciliationRecord per line, appended. The
last line for a target wins. A crash mid-append can only damage the final
line, which is skipped on load, so committed records survive.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from abc import ABC, abstractmethod
from pathlib import Path

from pydantic import ValidationError

from .models import ReconciliationRecord, ReconciliationStatus

logger = logging.getLogger(__name__)


class StateStoreError(Exception):
    """Raised when the store cannot be read or written."""

    pass


class StateStore(ABC):
    """Repository of reconciliation records; the backend is swappable."""

    @abstractmethod
    def load(self) -> dict[str, ReconciliationRecord]:
        """Return the latest record per target id. Missing store means empty."""

    @abstractmethod
    def upsert(self, record: ReconciliationRecord) -> bool:
        """Persist a terminal record.

        Returns:
            True if something was written, False if the same outcome was
            already stored.
        """

    def mark_converged(self, record: ReconciliationRecord) -> bool:
        if record.status != ReconciliationStatus.CONVERGED:
            raise ValueError(f"Record for {record.target_id} is {record.status.value}, not Converged")
        return self.upsert(record)

    def converged_ids(self) -> set[str]:
        return {
            target_id
            for target_id, record in self.load().items()
            if record.status == ReconciliationStatus.CONVERGED
        }


class JsonLinesStateStore(StateStore):
    """Append-only JSON lines file with compare-before-append upserts.

    Thread-safe: workers on the default executor may upsert concurrently.
    """

    def __init__(self, path: Path) -> None:
        self._path = path
        self._lock = threading.Lock()
        self._cache: dict[str, ReconciliationRecord] | None = None

    @property
    def path(self) -> Path:
        return self._path

    def load(self) -> dict[str, ReconciliationRecord]:
        with self._lock:
            self._cache = self._read()
            return dict(self._cache)

    def _read(self) -> dict[str, ReconciliationRecord]:
        if not self._path.exists():
            return {}

        try:
            content = self._path.read_text(encoding="utf-8")
        except OSError as e:
            raise StateStoreError(f"Failed to read state file {self._path}: {e}") from e

        records: dict[str, ReconciliationRecord] = {}
        for line_number, line in enumerate(content.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                record = ReconciliationRecord.model_validate(json.loads(line))
            except (json.JSONDecodeError, ValidationError) as e:
                logger.warning(
                    "Skipping unreadable state record",
                    extra={"path": str(self._path), "line": line_number, "error": str(e)},
                )
                continue
            records[record.target_id] = record
        return records

    def upsert(self, record: ReconciliationRecord) -> bool:
        if not record.status.is_terminal:
            raise ValueError(f"Only terminal records are persisted, got {record.status.value}")

        with self._lock:
            if self._cache is None:
                self._cache = self._read()

            existing = self._cache.get(record.target_id)
            if existing is not None and existing.same_outcome(record):
                return False

            self._append(record.to_json_line())
            self._cache[record.target_id] = record
            return True

    def _append(self, line: str) -> None:
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            needs_newline = self._path.exists() and self._ends_without_newline()
            with self._path.open("a", encoding="utf-8") as handle:
                if needs_newline:
                    # Terminate a torn line so the new record stays parseable
                    handle.write("\n")
                handle.write(line + "\n")
                handle.flush()
                os.fsync(handle.fileno())
        except OSError as e:
            raise StateStoreError(f"Failed to write state file {self._path}: {e}") from e

    def _ends_without_newline(self) -> bool:
        with self._path.open("rb") as handle:
            handle.seek(0, os.SEEK_END)
            if handle.tell() == 0:
                return False
            handle.seek(-1, os.SEEK_END)
            return handle.read(1) != b"\n"

    def compact(self) -> int:
        """Rewrite the file with one line per target, atomically.

        Returns:
            Number of records kept.
        """
        with self._lock:
            records = self._read()
            self._rewrite(records)
            logger.info("Compacted state file", extra={"path": str(self._path), "records": len(records)})
            return len(records)

    def remove(self, target_ids: set[str]) -> int:
        """Drop the records of the given targets, atomically.

        Returns:
            Number of records removed.
        """
        with self._lock:
            records = self._read()
            kept = {k: v for k, v in records.items() if k not in target_ids}
            removed = len(records) - len(kept)
            if removed:
                self._rewrite(kept)
                logger.info("Removed state records", extra={"path": str(self._path), "removed": removed})
            else:
                self._cache = kept
            return removed

    def _rewrite(self, records: dict[str, ReconciliationRecord]) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=f".{self._path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                for target_id in sorted(records):
                    handle.write(records[target_id].to_json_line() + "\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self._path)
        except OSError as e:
            Path(tmp_name).unlink(missing_ok=True)
            raise StateStoreError(f"Failed to rewrite state file {self._path}: {e}") from e
        self._cache = records
