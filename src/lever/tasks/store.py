"""Read and rewrite the JSON task file.

The task file is either a bare array of task objects or an object holding them
under ``tasks``.  Every mutation reloads the file, edits the matching record in
place and writes the whole document back atomically, so unknown fields survive
untouched.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Dict, Iterable, List

from .schema import TaskRecord, TaskStatus, utc_timestamp

LOGGER = logging.getLogger(__name__)

DEFAULT_TASK_FILES = ("prd.json", "tasks.json")


class TaskFileError(RuntimeError):
    """Raised when the task file cannot be read, parsed or updated."""


def discover_task_file(workspace: Path, candidates: Iterable[str] = DEFAULT_TASK_FILES) -> Path | None:
    """Return the first existing task file under ``workspace``."""
    for name in candidates:
        candidate = workspace / name
        if candidate.is_file():
            return candidate
    return None


def tasks_array(root: Any) -> List[Any] | None:
    if isinstance(root, list):
        return root
    if isinstance(root, dict):
        tasks = root.get("tasks")
        if isinstance(tasks, list):
            return tasks
    return None


class TaskFile:
    """Task-file accessor with atomic read-modify-write helpers."""

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    # ----------------------------------------------------------------- reads
    def load(self) -> Any:
        try:
            text = self.path.read_text(encoding="utf-8")
        except OSError as error:
            raise TaskFileError(f"Failed to read tasks file {self.path}: {error}") from error
        try:
            return json.loads(text)
        except json.JSONDecodeError as error:
            raise TaskFileError(f"Failed to parse tasks file {self.path}: {error}") from error

    def entries(self, root: Any | None = None) -> List[Any]:
        """Return the raw task entries in file order."""
        document = self.load() if root is None else root
        tasks = tasks_array(document)
        if tasks is None:
            raise TaskFileError(f"Tasks file {self.path} must be a list or an object with a 'tasks' list.")
        return tasks

    def records(self) -> List[TaskRecord]:
        """Return typed records for entries that carry a ``task_id``."""
        records: List[TaskRecord] = []
        for entry in self.entries():
            if isinstance(entry, dict) and isinstance(entry.get("task_id"), str) and entry["task_id"]:
                records.append(TaskRecord.model_validate(entry))
        return records

    def get(self, task_id: str) -> TaskRecord:
        return TaskRecord.model_validate(self._find(self.entries(), task_id))

    def raw(self, task_id: str) -> Dict[str, Any]:
        return dict(self._find(self.entries(), task_id))

    def current_attempts(self, task_id: str) -> int:
        return self.get(task_id).run_attempts

    # ---------------------------------------------------------------- writes
    def write(self, root: Any) -> None:
        """Atomically replace the task file with ``root``."""
        payload = json.dumps(root, indent=2, ensure_ascii=False) + "\n"
        directory = self.path.parent
        directory.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w",
            encoding="utf-8",
            dir=directory,
            prefix=f".{self.path.name}.",
            suffix=".tmp",
            delete=False,
        ) as handle:
            handle.write(payload)
            temp_path = Path(handle.name)
        try:
            os.replace(temp_path, self.path)
        except OSError as error:
            temp_path.unlink(missing_ok=True)
            raise TaskFileError(f"Failed to write tasks file {self.path}: {error}") from error

    def update_status(self, task_id: str, status: TaskStatus | str, *, run_id: str, note: str = "") -> None:
        """Set ``status`` and stamp the observability record."""
        value = status.value if isinstance(status, TaskStatus) else str(status)
        root = self.load()
        task = self._find(self.entries(root), task_id)
        task["status"] = value
        self._stamp(task, run_id=run_id, note=note)
        self.write(root)
        LOGGER.debug("Task status updated task_id=%s status=%s run_id=%s", task_id, value, run_id)

    def stamp_note(self, task_id: str, *, run_id: str, note: str) -> None:
        """Record ``note`` without touching the task status."""
        root = self.load()
        task = self._find(self.entries(root), task_id)
        self._stamp(task, run_id=run_id, note=note)
        self.write(root)

    def increment_attempts(self, task_id: str) -> int:
        root = self.load()
        task = self._find(self.entries(root), task_id)
        observability = self._observability(task)
        updated = _attempts(observability) + 1
        observability["run_attempts"] = updated
        self.write(root)
        return updated

    def reset_attempts(self, task_id: str, *, run_id: str, note: str) -> None:
        root = self.load()
        task = self._find(self.entries(root), task_id)
        task["status"] = TaskStatus.UNSTARTED.value
        self._observability(task)["run_attempts"] = 0
        self._stamp(task, run_id=run_id, note=note)
        self.write(root)

    # --------------------------------------------------------------- helpers
    def _find(self, entries: List[Any], task_id: str) -> Dict[str, Any]:
        for entry in entries:
            if isinstance(entry, dict) and entry.get("task_id") == task_id:
                return entry
        raise TaskFileError(f"Task {task_id} not found in {self.path}")

    @staticmethod
    def _observability(task: Dict[str, Any]) -> Dict[str, Any]:
        observability = task.get("observability")
        if not isinstance(observability, dict):
            observability = {}
            task["observability"] = observability
        observability["run_attempts"] = _attempts(observability)
        for key in ("last_note", "last_update_utc", "last_run_id"):
            if not isinstance(observability.get(key), str):
                observability[key] = ""
        return observability

    def _stamp(self, task: Dict[str, Any], *, run_id: str, note: str) -> None:
        observability = self._observability(task)
        observability["last_run_id"] = run_id
        observability["last_update_utc"] = utc_timestamp()
        if note:
            observability["last_note"] = note


def _attempts(observability: Dict[str, Any]) -> int:
    value = observability.get("run_attempts")
    if isinstance(value, int) and not isinstance(value, bool) and value > 0:
        return value
    return 0


__all__ = ["DEFAULT_TASK_FILES", "TaskFile", "TaskFileError", "discover_task_file", "tasks_array"]
