from __future__ import annotations

import json
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Sequence

import pytest

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"

if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from lever.agent.runner import AgentInvocation  # noqa: E402
from lever.config import Settings  # noqa: E402
from lever.interrupts import CancellationToken  # noqa: E402
from lever.tools.context_compile import REQUIRED_PACK_FILES, PackBuildRequest, PackBuildResult  # noqa: E402
from lever.tools.rate_limit import RateLedger, RateLimiter  # noqa: E402
from lever.tools.verification import VerificationResult  # noqa: E402


def make_task(task_id: str, **overrides: Any) -> Dict[str, Any]:
    """Return a complete task entry; ``overrides`` replace individual fields."""

    task: Dict[str, Any] = {
        "task_id": task_id,
        "title": f"Implement greeting for {task_id}",
        "status": "unstarted",
        "model": "gpt-5.1-codex",
        "definition_of_done": ["greeting() returns a friendly message"],
        "recommended": {"approach": "Add a small module with one function."},
    }
    task.update(overrides)
    return task


def completed_result(task_id: str = "T1", **overrides: Any) -> Dict[str, Any]:
    result: Dict[str, Any] = {
        "task_id": task_id,
        "outcome": "completed",
        "dod_met": True,
        "summary": "Implemented the greeting module.",
        "tests": {"ran": True, "commands": ["pytest -q"], "passed": True},
        "notes": "",
        "blockers": [],
    }
    result.update(overrides)
    return result


@dataclass(slots=True)
class TaskRepo:
    """Temporary git repository on ``main`` holding a committed ``prd.json``."""

    root: Path
    tasks_path: Path

    def git(self, *args: str) -> str:
        result = subprocess.run(
            ["git", *args],
            cwd=self.root,
            check=True,
            capture_output=True,
            text=True,
        )
        return result.stdout.strip()

    def current_branch(self) -> str:
        return self.git("rev-parse", "--abbrev-ref", "HEAD")

    def branches(self) -> List[str]:
        output = self.git("branch", "--format=%(refname:short)")
        return [line.strip() for line in output.splitlines() if line.strip()]

    def stash_list(self) -> List[str]:
        return [line for line in self.git("stash", "list").splitlines() if line.strip()]

    def log_subjects(self, ref: str = "HEAD") -> List[str]:
        return self.git("log", "--format=%s", ref).splitlines()

    def write_tasks(self, tasks: Sequence[Dict[str, Any]], *, commit: bool = True) -> None:
        self.tasks_path.write_text(json.dumps(list(tasks), indent=2) + "\n", encoding="utf-8")
        if commit:
            self.git("add", "prd.json")
            self.git("commit", "-m", "Update tasks")

    def tasks(self, ref: str | None = None) -> List[Dict[str, Any]]:
        """Return the task list from the working tree, or from ``ref`` when given."""

        if ref is None:
            return json.loads(self.tasks_path.read_text(encoding="utf-8"))
        return json.loads(self.git("show", f"{ref}:prd.json"))

    def task(self, task_id: str, ref: str | None = None) -> Dict[str, Any]:
        return next(task for task in self.tasks(ref) if task["task_id"] == task_id)

    def settings(self, **overrides: Any) -> Settings:
        settings = Settings(workspace=self.root, tasks_path=self.tasks_path, base_branch="main")
        for key, value in overrides.items():
            setattr(settings, key, value)
        return settings

    def run_dirs(self, task_id: str) -> List[Path]:
        base = self.root / ".ralph" / "runs" / task_id
        return sorted(path for path in base.iterdir() if path.is_dir()) if base.is_dir() else []


@pytest.fixture()
def task_repo(tmp_path: Path) -> TaskRepo:
    """Create a git repository on ``main`` with one runnable task committed."""

    repo_root = tmp_path / "workspace"
    repo_root.mkdir()
    repo = TaskRepo(root=repo_root, tasks_path=repo_root / "prd.json")

    repo.git("init")
    repo.git("symbolic-ref", "HEAD", "refs/heads/main")
    repo.git("config", "user.email", "agent@example.com")
    repo.git("config", "user.name", "Lever Tests")
    repo.git("config", "commit.gpgsign", "false")

    (repo_root / ".gitignore").write_text(".ralph/\n", encoding="utf-8")
    (repo_root / "README.md").write_text("# Workspace\n", encoding="utf-8")
    repo.write_tasks([make_task("T1")], commit=False)
    repo.git("add", ".")
    repo.git("commit", "-m", "Initial workspace")
    return repo


@dataclass
class FakeAgent:
    """Agent stand-in that edits files and writes a result payload.

    ``results`` and ``exit_codes`` are consumed one per call; the last value is
    reused once the list runs out.
    """

    results: List[Dict[str, Any] | None] = field(default_factory=lambda: [completed_result()])
    exit_codes: List[int] = field(default_factory=lambda: [0])
    edits: Dict[str, str] = field(default_factory=lambda: {"greeting.py": "def greeting():\n    return 'hello'\n"})
    log_lines: List[List[str]] = field(default_factory=list)
    on_run: Callable[[AgentInvocation], None] | None = None
    invocations: List[AgentInvocation] = field(default_factory=list)

    @staticmethod
    def _pick(values: List[Any], index: int) -> Any:
        return values[min(index, len(values) - 1)]

    def run(self, invocation: AgentInvocation, token: CancellationToken | None = None) -> int:
        index = len(self.invocations)
        self.invocations.append(invocation)
        for relative, content in self.edits.items():
            target = invocation.workspace / relative
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_text(content, encoding="utf-8")
        lines = self._pick(self.log_lines, index) if self.log_lines else []
        invocation.log_path.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")
        result = self._pick(self.results, index)
        if result is not None:
            invocation.result_path.write_text(json.dumps(result), encoding="utf-8")
        if self.on_run is not None:
            self.on_run(invocation)
        return self._pick(self.exit_codes, index)


@dataclass
class FakePackBuilder:
    exit_code: int = 0
    files: Sequence[str] = REQUIRED_PACK_FILES
    context: str = "## Module map\n- greeting.py\n"
    lint: Any = None
    requests: List[PackBuildRequest] = field(default_factory=list)

    def build(self, request: PackBuildRequest, token: CancellationToken | None = None) -> PackBuildResult:
        self.requests.append(request)
        request.pack_dir.mkdir(parents=True, exist_ok=True)
        request.stdout_path.write_text("", encoding="utf-8")
        request.stderr_path.write_text("", encoding="utf-8")
        for name in self.files:
            if name == "context.md":
                content = self.context
            elif name == "lint.json":
                content = json.dumps(self.lint if self.lint is not None else {"issues": []})
            else:
                content = "{}"
            (request.pack_dir / name).write_text(content, encoding="utf-8")
        if self.exit_code != 0:
            return PackBuildResult(exit_code=self.exit_code, message="Assembly exited with non-zero status")
        return PackBuildResult(exit_code=0)


@dataclass
class FakeVerifier:
    ok: bool = True
    calls: List[Sequence[str]] = field(default_factory=list)

    def verify(self, workspace: Path, log_path: Path, commands: Sequence[str]) -> VerificationResult:
        self.calls.append(list(commands))
        log_path.write_text("verified\n", encoding="utf-8")
        return VerificationResult(ok=self.ok, command="fake-verify", exit_code=0 if self.ok else 1, log_path=log_path)


@dataclass
class RecordingSleeper:
    calls: List[float] = field(default_factory=list)

    def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture()
def sleeper() -> RecordingSleeper:
    return RecordingSleeper()


@pytest.fixture()
def rate_limiter(task_repo: TaskRepo, sleeper: RecordingSleeper) -> RateLimiter:
    return RateLimiter(ledger=RateLedger.for_workspace(task_repo.root), sleeper=sleeper)
