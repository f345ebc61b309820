"""Layout of the per-run artifact directory."""

from __future__ import annotations

import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from .tasks.schema import utc_now

STATE_DIR = ".ralph"
RUNS_DIR = Path(STATE_DIR) / "runs"
SCHEMA_PATH = Path(STATE_DIR) / "task_result.schema.json"
AGENT_LOG_NAME = "codex.jsonl"


def new_run_id(moment: datetime | None = None, *, pid: int | None = None) -> str:
    """Return ``<UTC %Y%m%dT%H%M%SZ>-<pid>``."""
    stamp = (moment or utc_now()).strftime("%Y%m%dT%H%M%SZ")
    return f"{stamp}-{os.getpid() if pid is None else pid}"


@dataclass(slots=True, frozen=True)
class RunPaths:
    """Absolute paths of every artifact a run may write."""

    workspace: Path
    task_id: str
    run_id: str

    @classmethod
    def allocate(cls, workspace: Path, task_id: str, run_id: str | None = None) -> "RunPaths":
        """Create a fresh run directory, suffixing the id if it is already taken."""
        base_id = run_id or new_run_id()
        candidate = base_id
        suffix = 1
        while True:
            paths = cls(workspace=workspace, task_id=task_id, run_id=candidate)
            try:
                paths.run_dir.mkdir(parents=True, exist_ok=False)
            except FileExistsError:
                suffix += 1
                candidate = f"{base_id}-{suffix}"
                continue
            return paths

    @property
    def run_dir(self) -> Path:
        return self.workspace / RUNS_DIR / self.task_id / self.run_id

    @property
    def task_snapshot(self) -> Path:
        return self.run_dir / "task.json"

    @property
    def prompt(self) -> Path:
        return self.run_dir / "prompt.md"

    @property
    def agent_log(self) -> Path:
        return self.run_dir / AGENT_LOG_NAME

    @property
    def result(self) -> Path:
        return self.run_dir / "result.json"

    @property
    def verify_log(self) -> Path:
        return self.run_dir / "verify.log"

    @property
    def pack_dir(self) -> Path:
        return self.run_dir / "pack"

    @property
    def assembly_task(self) -> Path:
        return self.run_dir / "assembly-task.json"

    @property
    def assembly_summary(self) -> Path:
        return self.run_dir / "assembly-summary.json"

    @property
    def assembly_stdout(self) -> Path:
        return self.run_dir / "assembly.stdout.log"

    @property
    def assembly_stderr(self) -> Path:
        return self.run_dir / "assembly.stderr.log"

    @property
    def context_report(self) -> Path:
        return self.run_dir / "context-compile.json"

    def relative(self, path: Path) -> str:
        """Return ``path`` relative to the workspace, as a posix string."""
        try:
            return path.relative_to(self.workspace).as_posix()
        except ValueError:
            return path.as_posix()


__all__ = ["AGENT_LOG_NAME", "RUNS_DIR", "RunPaths", "SCHEMA_PATH", "STATE_DIR", "new_run_id"]
