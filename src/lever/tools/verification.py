"""Post-run verification.

A task may declare its own ``verification.commands``; they run as one bash
script with ``set -euo pipefail`` so the first failing command stops the run.
Without declared commands the first available project check is used:

1. an executable ``scripts/ci.sh``
2. a ``Makefile`` with a ``ci`` target
3. an executable ``tests/run.sh``
4. ``pytest -q`` when pytest is installed and the repo has Python tests

When nothing applies verification passes.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import List, Protocol, Sequence

LOGGER = logging.getLogger(__name__)

TASK_COMMANDS_LABEL = "task.verification.commands"
PYTHON_TEST_MARKERS = ("pytest.ini", "pyproject.toml", "setup.cfg", "tox.ini")


@dataclass(slots=True)
class VerificationResult:
    ok: bool
    command: str | None = None
    exit_code: int | None = None
    log_path: Path | None = None

    @property
    def ran(self) -> bool:
        return self.command is not None

    @classmethod
    def skipped(cls) -> "VerificationResult":
        return cls(ok=True)


class VerificationRunner(Protocol):
    def verify(self, workspace: Path, log_path: Path, commands: Sequence[str]) -> VerificationResult:
        """Run verification for ``workspace`` writing output to ``log_path``."""


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def _makefile_has_ci(path: Path) -> bool:
    if not path.is_file():
        return False
    content = path.read_text(encoding="utf-8", errors="replace")
    return any(line.lstrip().startswith("ci:") for line in content.splitlines())


def has_python_tests(workspace: Path) -> bool:
    if any((workspace / marker).is_file() for marker in PYTHON_TEST_MARKERS):
        return True
    tests_dir = workspace / "tests"
    if not tests_dir.is_dir():
        return False
    return any(path.is_file() for path in tests_dir.rglob("*.py"))


def detect_command(workspace: Path) -> List[str] | None:
    """Return the first applicable project check for ``workspace``."""
    if _is_executable(workspace / "scripts" / "ci.sh"):
        return ["./scripts/ci.sh"]
    if _makefile_has_ci(workspace / "Makefile"):
        return ["make", "ci"]
    if _is_executable(workspace / "tests" / "run.sh"):
        return ["./tests/run.sh"]
    if shutil.which("pytest") is not None and has_python_tests(workspace):
        return ["pytest", "-q"]
    return None


class ShellVerificationRunner:
    """Run verification commands as subprocesses in the workspace."""

    def verify(self, workspace: Path, log_path: Path, commands: Sequence[str]) -> VerificationResult:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        cleaned = [command for command in commands if command.strip()]
        if cleaned:
            script = "set -euo pipefail\n" + "\n".join(cleaned) + "\n"
            argv = ["bash", "-lc", script]
            label = TASK_COMMANDS_LABEL
        else:
            detected = detect_command(workspace)
            if detected is None:
                log_path.write_text("", encoding="utf-8")
                LOGGER.info("No verification command detected in %s", workspace)
                return VerificationResult.skipped()
            argv = detected
            label = " ".join(detected)

        with log_path.open("wb") as handle:
            try:
                process = subprocess.run(  # noqa: S603 - commands come from the task file or repo layout
                    argv,
                    cwd=workspace,
                    stdout=handle,
                    stderr=subprocess.STDOUT,
                    check=False,
                )
            except OSError as error:
                handle.write(f"Failed to start {argv[0]}: {error}\n".encode("utf-8"))
                return VerificationResult(ok=False, command=label, exit_code=None, log_path=log_path)

        ok = process.returncode == 0
        return VerificationResult(ok=ok, command=label, exit_code=process.returncode, log_path=log_path)


__all__ = [
    "ShellVerificationRunner",
    "TASK_COMMANDS_LABEL",
    "VerificationResult",
    "VerificationRunner",
    "detect_command",
    "has_python_tests",
]
