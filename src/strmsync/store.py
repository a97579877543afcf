"""Mapping lookup backed by the config file, and the JSON task history."""

from __future__ import annotations

import json
import logging
import tempfile
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from strmsync.config import load_config, parse_mappings
from strmsync.models import MappingSpec, RunResult

logger = logging.getLogger(__name__)

STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_CANCELLED = "cancelled"


class MappingStore:
    """Serves mappings from the [[mappings]] tables of a TOML file.

    The file is re-read whenever its modification time changes, so a
    lookup made when a schedule fires sees the latest edits. If a reload
    fails validation the previous mappings stay in effect.
    """

    def __init__(self, path: Path, initial: tuple[MappingSpec, ...] | None = None) -> None:
        self.path = path
        self._lock = threading.Lock()
        self._mtime: float | None = None
        self._mappings: tuple[MappingSpec, ...] = ()
        if initial is not None:
            self._mappings = initial
            self._mtime = self._stat()
        else:
            self._reload()

    def _stat(self) -> float | None:
        try:
            return self.path.stat().st_mtime
        except OSError:
            return None

    def _reload(self) -> None:
        mtime = self._stat()
        try:
            self._mappings = parse_mappings(load_config(self.path))
        except (OSError, ValueError) as e:
            logger.error("Cannot reload mappings from %s: %s", self.path, e)
        self._mtime = mtime

    def changed(self) -> bool:
        """Reload if the file changed on disk. Returns True if it did."""
        with self._lock:
            if self._stat() == self._mtime:
                return False
            self._reload()
            return True

    def list_mappings(self) -> list[MappingSpec]:
        self.changed()
        with self._lock:
            return list(self._mappings)

    def list_enabled(self) -> list[MappingSpec]:
        return [m for m in self.list_mappings() if m.enabled]

    def get_by_name(self, name: str) -> MappingSpec | None:
        for mapping in self.list_mappings():
            if mapping.name == name:
                return mapping
        return None


@dataclass(frozen=True)
class TaskRecord:
    """A single run's lifecycle as stored in the task history."""

    task_id: str
    mapping_name: str
    mode: str
    status: str
    started_at: str
    completed_at: str | None = None
    files_created: int = 0
    files_skipped: int = 0
    files_deleted: int = 0
    errors: str = ""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


class TaskRecorder:
    """Keeps task records in a JSON file, newest last.

    Every mutation rewrites the file atomically. ``max_records`` bounds
    the history; the oldest records are dropped first.
    """

    def __init__(self, path: Path, max_records: int = 500) -> None:
        self.path = path
        self.max_records = max_records
        self._lock = threading.Lock()
        self._records: dict[str, dict[str, Any]] = self._load()

    def _load(self) -> dict[str, dict[str, Any]]:
        if not self.path.exists():
            return {}
        with self.path.open("r", encoding="utf-8") as f:
            return json.load(f)

    def _save(self) -> None:
        """Write the records atomically (write temp file, then rename)."""
        while len(self._records) > self.max_records:
            del self._records[next(iter(self._records))]
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path_str = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        tmp_path = Path(tmp_path_str)
        try:
            with open(fd, "w", encoding="utf-8") as f:
                json.dump(self._records, f, indent=2, ensure_ascii=False)
            tmp_path.replace(self.path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

    def start(self, task_id: str, mapping_name: str, mode: str) -> TaskRecord:
        record = TaskRecord(
            task_id=task_id,
            mapping_name=mapping_name,
            mode=mode,
            status=STATUS_RUNNING,
            started_at=_now(),
        )
        with self._lock:
            self._records[task_id] = asdict(record)
            self._save()
        return record

    def _finish(self, task_id: str, status: str, result: RunResult | None, errors: str) -> None:
        with self._lock:
            entry = self._records.get(task_id)
            if entry is None:
                raise KeyError(f"unknown task: {task_id}")
            entry["status"] = status
            entry["completed_at"] = _now()
            entry["errors"] = errors
            if result is not None:
                entry["files_created"] = result.created
                entry["files_skipped"] = result.skipped
                entry["files_deleted"] = result.deleted
            self._save()

    def complete(self, task_id: str, result: RunResult) -> None:
        self._finish(task_id, STATUS_COMPLETED, result, result.error_summary())

    def fail(self, task_id: str, reason: str) -> None:
        self._finish(task_id, STATUS_FAILED, None, reason)

    def cancel(self, task_id: str, result: RunResult | None = None) -> None:
        self._finish(task_id, STATUS_CANCELLED, result, "cancelled")

    def get(self, task_id: str) -> TaskRecord | None:
        with self._lock:
            entry = self._records.get(task_id)
        return TaskRecord(**entry) if entry is not None else None

    def recent(self, limit: int = 20) -> list[TaskRecord]:
        """Return up to ``limit`` records, newest first."""
        with self._lock:
            entries = list(self._records.values())
        return [TaskRecord(**e) for e in reversed(entries[-limit:])] if limit > 0 else []
