"""Positional task selection.

Only the first non-completed task in file order may run.  File order is the
whole dependency model: a task further down the list waits until everything
above it is completed.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Sequence

from .schema import HUMAN_MODEL, TaskRecord, TaskStatus
from .store import TaskFile, TaskFileError, tasks_array

SUPPORTED_MODELS: tuple[str, ...] = ("gpt-5.1-codex-mini", "gpt-5.1-codex", "gpt-5.2-codex")


class SelectionError(RuntimeError):
    """Base class for selection failures; ``exit_code`` is the process exit code."""

    exit_code = 2


class NoRunnableTaskError(SelectionError):
    exit_code = 3

    def __init__(self) -> None:
        super().__init__("No runnable task found")


class HumanRequiredError(SelectionError):
    exit_code = 4

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task requires human: {task_id}")
        self.task_id = task_id


class TaskOrderingError(SelectionError):
    exit_code = 6

    def __init__(self, requested: str, blocking: str) -> None:
        super().__init__(f"Task {requested} cannot start until {blocking} is completed.")
        self.requested = requested
        self.blocking = blocking


class TaskMetadataError(SelectionError):
    exit_code = 2

    def __init__(self, task_id: str, missing: Sequence[str]) -> None:
        super().__init__(f"Task {task_id} missing required metadata: {', '.join(missing)}")
        self.task_id = task_id
        self.missing = list(missing)


class UnsupportedModelError(SelectionError):
    exit_code = 2

    def __init__(self, task_id: str, model: str) -> None:
        super().__init__(f"Task {task_id} uses unsupported model: {model or '<missing>'}")
        self.task_id = task_id
        self.model = model


@dataclass(slots=True)
class SelectedTask:
    """The task chosen for the current run along with its raw JSON entry."""

    record: TaskRecord
    raw: Dict[str, Any]

    @property
    def task_id(self) -> str:
        return self.record.task_id

    @property
    def title(self) -> str:
        return self.record.title_text

    @property
    def model(self) -> str:
        return self.record.model if isinstance(self.record.model, str) else ""


def _status(entry: Any) -> str:
    if isinstance(entry, dict):
        value = entry.get("status")
        if isinstance(value, str) and value:
            return value
    return TaskStatus.UNSTARTED.value


def select_task(root: Any, task_id: str | None = None) -> SelectedTask:
    """Return the first non-completed task in ``root``.

    ``root`` is a parsed task document (bare list or ``{"tasks": [...]}``).
    When ``task_id`` is given it must name that first-in-line task.
    """
    entries = tasks_array(root)
    if entries is None:
        raise SelectionError("Tasks file must be a list or an object with a 'tasks' list.")

    first = next((entry for entry in entries if _status(entry) != TaskStatus.COMPLETED.value), None)
    if not isinstance(first, dict):
        raise NoRunnableTaskError()
    first_id = first.get("task_id")
    if not isinstance(first_id, str) or not first_id:
        raise NoRunnableTaskError()

    if first.get("model") == HUMAN_MODEL:
        raise HumanRequiredError(first_id)

    if task_id is not None and task_id != first_id:
        raise TaskOrderingError(task_id, first_id)

    return SelectedTask(record=TaskRecord.model_validate(first), raw=dict(first))


def load_and_select(task_file: TaskFile, task_id: str | None = None) -> SelectedTask:
    try:
        root = task_file.load()
    except TaskFileError as error:
        raise SelectionError(str(error)) from error
    return select_task(root, task_id)


def validate_task_metadata(task_id: str, raw: Dict[str, Any]) -> None:
    """Raise :class:`TaskMetadataError` naming every missing or malformed field."""
    missing: List[str] = []

    title = raw.get("title")
    if not isinstance(title, str) or not title:
        missing.append("title")

    done = raw.get("definition_of_done")
    if not isinstance(done, list) or not done or not all(isinstance(item, str) and item for item in done):
        missing.append("definition_of_done")

    recommended = raw.get("recommended")
    approach = recommended.get("approach") if isinstance(recommended, dict) else None
    if not isinstance(recommended, dict) or len(recommended) != 1 or not isinstance(approach, str) or not approach:
        missing.append("recommended.approach")

    if missing:
        raise TaskMetadataError(task_id, missing)


def validate_model(task: SelectedTask, supported: Sequence[str] = SUPPORTED_MODELS) -> None:
    if task.model not in supported:
        raise UnsupportedModelError(task.task_id, task.model)


__all__ = [
    "HumanRequiredError",
    "NoRunnableTaskError",
    "SUPPORTED_MODELS",
    "SelectedTask",
    "SelectionError",
    "TaskMetadataError",
    "TaskOrderingError",
    "UnsupportedModelError",
    "load_and_select",
    "select_task",
    "validate_model",
    "validate_task_metadata",
]
