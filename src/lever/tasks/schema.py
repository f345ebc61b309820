"""Typed views over task-file records and agent results."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

HUMAN_MODEL = "human"
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def utc_timestamp(moment: datetime | None = None) -> str:
    return (moment or utc_now()).strftime(TIMESTAMP_FORMAT)


class RecordModel(BaseModel):
    """Base model for task-file records.

    Task files are owned by humans and other tools, so unknown fields are kept
    rather than rejected.
    """

    model_config = ConfigDict(extra="allow", frozen=False)


class TaskStatus(str, Enum):
    """Lifecycle states for a task."""

    UNSTARTED = "unstarted"
    STARTED = "started"
    BLOCKED = "blocked"
    COMPLETED = "completed"


class AgentOutcome(str, Enum):
    """Outcome reported by the coding agent."""

    COMPLETED = "completed"
    BLOCKED = "blocked"
    STARTED = "started"


class Observability(RecordModel):
    run_attempts: int = 0
    last_note: str = ""
    last_update_utc: str = ""
    last_run_id: str = ""

    @field_validator("run_attempts", mode="before")
    @classmethod
    def _coerce_attempts(cls, value: Any) -> int:
        if isinstance(value, bool):
            return 0
        try:
            return max(int(value), 0)
        except (TypeError, ValueError):
            return 0

    @field_validator("last_note", "last_update_utc", "last_run_id", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return value if isinstance(value, str) else ""


class TaskRecord(RecordModel):
    """Single task entry from the task file."""

    task_id: str
    title: Any = None
    status: Optional[str] = None
    model: Any = None
    definition_of_done: Any = None
    recommended: Any = None
    verification: Any = None
    observability: Optional[Observability] = None

    @field_validator("observability", mode="before")
    @classmethod
    def _coerce_observability(cls, value: Any) -> Any:
        return value if isinstance(value, dict) else None

    @property
    def effective_status(self) -> str:
        """Return the task status, treating a missing value as unstarted."""
        value = self.status if isinstance(self.status, str) and self.status.strip() else None
        return value or TaskStatus.UNSTARTED.value

    @property
    def is_completed(self) -> bool:
        return self.effective_status == TaskStatus.COMPLETED.value

    @property
    def requires_human(self) -> bool:
        return isinstance(self.model, str) and self.model == HUMAN_MODEL

    @property
    def title_text(self) -> str:
        return self.title if isinstance(self.title, str) else ""

    @property
    def done_items(self) -> List[str]:
        if not isinstance(self.definition_of_done, list):
            return []
        return [item for item in self.definition_of_done if isinstance(item, str)]

    @property
    def approach(self) -> str:
        if isinstance(self.recommended, dict):
            value = self.recommended.get("approach")
            return value if isinstance(value, str) else ""
        return ""

    @property
    def verification_commands(self) -> List[str]:
        if not isinstance(self.verification, dict):
            return []
        commands = self.verification.get("commands")
        if not isinstance(commands, list):
            return []
        return [command for command in commands if isinstance(command, str) and command.strip()]

    @property
    def run_attempts(self) -> int:
        return self.observability.run_attempts if self.observability else 0


class TestReport(RecordModel):
    ran: bool = False
    commands: List[str] = Field(default_factory=list)
    passed: bool = False


class AgentResult(RecordModel):
    """Final message written by the agent to ``result.json``."""

    task_id: str = ""
    outcome: str = ""
    dod_met: bool = False
    summary: str = ""
    tests: TestReport = Field(default_factory=TestReport)
    notes: str = ""
    blockers: List[str] = Field(default_factory=list)

    @field_validator("dod_met", mode="before")
    @classmethod
    def _coerce_dod(cls, value: Any) -> bool:
        return value is True

    @field_validator("outcome", "summary", "notes", "task_id", mode="before")
    @classmethod
    def _coerce_text(cls, value: Any) -> str:
        return value.strip() if isinstance(value, str) else ""

    @field_validator("tests", mode="before")
    @classmethod
    def _coerce_tests(cls, value: Any) -> Any:
        if not isinstance(value, dict):
            return {}
        commands = value.get("commands")
        return {
            "ran": value.get("ran") is True,
            "passed": value.get("passed") is True,
            "commands": [item for item in commands if isinstance(item, str)] if isinstance(commands, list) else [],
        }

    @field_validator("blockers", mode="before")
    @classmethod
    def _coerce_blockers(cls, value: Any) -> List[str]:
        if not isinstance(value, list):
            return []
        return [item for item in value if isinstance(item, str)]

    @property
    def is_completed(self) -> bool:
        return self.outcome == AgentOutcome.COMPLETED.value

    @property
    def is_blocked(self) -> bool:
        return self.outcome == AgentOutcome.BLOCKED.value


RESULT_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "title": "Task agent result",
    "type": "object",
    "additionalProperties": False,
    "required": ["task_id", "outcome", "dod_met", "summary", "tests", "notes", "blockers"],
    "properties": {
        "task_id": {"type": "string"},
        "outcome": {"type": "string", "enum": [outcome.value for outcome in AgentOutcome]},
        "dod_met": {"type": "boolean"},
        "summary": {"type": "string"},
        "tests": {
            "type": "object",
            "additionalProperties": False,
            "required": ["ran", "commands", "passed"],
            "properties": {
                "ran": {"type": "boolean"},
                "commands": {"type": "array", "items": {"type": "string"}},
                "passed": {"type": "boolean"},
            },
        },
        "notes": {"type": "string"},
        "blockers": {"type": "array", "items": {"type": "string"}},
    },
}


__all__ = [
    "AgentOutcome",
    "AgentResult",
    "HUMAN_MODEL",
    "Observability",
    "RESULT_SCHEMA",
    "RecordModel",
    "TIMESTAMP_FORMAT",
    "TaskRecord",
    "TaskStatus",
    "TestReport",
    "utc_now",
    "utc_timestamp",
]
