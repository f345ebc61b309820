"""Task-file model, storage and selection."""

from .schema import AgentOutcome, AgentResult, TaskRecord, TaskStatus
from .selection import (
    HumanRequiredError,
    NoRunnableTaskError,
    SelectedTask,
    SelectionError,
    TaskMetadataError,
    TaskOrderingError,
    UnsupportedModelError,
    select_task,
    validate_model,
    validate_task_metadata,
)
from .store import TaskFile, TaskFileError, discover_task_file

__all__ = [
    "AgentOutcome",
    "AgentResult",
    "HumanRequiredError",
    "NoRunnableTaskError",
    "SelectedTask",
    "SelectionError",
    "TaskFile",
    "TaskFileError",
    "TaskMetadataError",
    "TaskOrderingError",
    "TaskRecord",
    "TaskStatus",
    "UnsupportedModelError",
    "discover_task_file",
    "select_task",
    "validate_model",
    "validate_task_metadata",
]
