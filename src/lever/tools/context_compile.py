"""Compiled-context packs built by the external ``assembly`` tool.

The pack builder is treated as a black box with a fixed contract: given the
repository, a task brief and an output directory it must produce the files in
:data:`REQUIRED_PACK_FILES`.  Whether a failed or incomplete build stops the run
is decided by the configured :class:`ContextPolicy`.
"""

from __future__ import annotations

import json
import logging
import subprocess
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Protocol, Sequence

from ..interrupts import CancellationToken, wait_for_process

LOGGER = logging.getLogger(__name__)

DEFAULT_TOKEN_BUDGET = 8_000
DEFAULT_ASSEMBLY_PATH = "assembly"
DEFAULT_EXCLUDE_GLOBS: tuple[str, ...] = (".git/**", ".ralph/**")
REQUIRED_PACK_FILES: tuple[str, ...] = (
    "manifest.json",
    "index.json",
    "context.md",
    "policy.md",
    "lint.json",
)
REQUIRED_BUILD_FLAGS: tuple[str, ...] = (
    "--repo",
    "--task",
    "--task-id",
    "--out",
    "--token-budget",
    "--exclude",
    "--exclude-runtime",
    "--summary-json",
)
BEST_EFFORT_WARNING = "Context compilation failed (best-effort); continuing without compiled context."


class ContextCompileError(RuntimeError):
    """Raised when the pack builder contract cannot be satisfied."""


class ContextPolicy(str, Enum):
    BEST_EFFORT = "best-effort"
    REQUIRED = "required"


@dataclass(slots=True)
class ContextCompileConfig:
    enabled: bool = False
    policy: ContextPolicy = ContextPolicy.BEST_EFFORT
    token_budget: int = DEFAULT_TOKEN_BUDGET
    assembly_path: str = DEFAULT_ASSEMBLY_PATH
    exclude_globs: List[str] = field(default_factory=lambda: list(DEFAULT_EXCLUDE_GLOBS))
    exclude_runtime_globs: List[str] = field(default_factory=list)
    prompt_lint_summary: bool = False


@dataclass(slots=True)
class PackBuildRequest:
    workspace: Path
    task_id: str
    task_input: Path
    pack_dir: Path
    summary_json: Path
    stdout_path: Path
    stderr_path: Path
    token_budget: int = DEFAULT_TOKEN_BUDGET
    exclude_globs: Sequence[str] = DEFAULT_EXCLUDE_GLOBS
    exclude_runtime_globs: Sequence[str] = ()


@dataclass(slots=True)
class PackBuildResult:
    exit_code: int | None
    message: str = ""
    interrupted: bool = False

    @property
    def ok(self) -> bool:
        return self.exit_code == 0 and not self.interrupted


class PackBuilder(Protocol):
    def build(self, request: PackBuildRequest, token: CancellationToken | None = None) -> PackBuildResult:
        """Populate ``request.pack_dir``; never raise for a failing build."""


@dataclass(slots=True)
class AssemblyPackBuilder:
    """Runs ``assembly build`` with stdout and stderr captured to files."""

    executable: str = DEFAULT_ASSEMBLY_PATH

    def build_command(self, request: PackBuildRequest) -> List[str]:
        args: List[str] = [
            self.executable,
            "build",
            "--repo",
            str(request.workspace),
            "--task",
            f"@{request.task_input}",
            "--task-id",
            request.task_id,
            "--out",
            str(request.pack_dir),
            "--token-budget",
            str(request.token_budget),
        ]
        for glob in request.exclude_globs:
            args.extend(["--exclude", glob])
        for glob in request.exclude_runtime_globs:
            args.extend(["--exclude-runtime", glob])
        args.extend(["--summary-json", str(request.summary_json)])
        return args

    def build(self, request: PackBuildRequest, token: CancellationToken | None = None) -> PackBuildResult:
        command = self.build_command(request)
        request.pack_dir.mkdir(parents=True, exist_ok=True)
        with request.stdout_path.open("wb") as stdout, request.stderr_path.open("wb") as stderr:
            try:
                process = subprocess.Popen(  # noqa: S603 - executable comes from configuration
                    command,
                    cwd=request.workspace,
                    stdout=stdout,
                    stderr=stderr,
                )
            except OSError as error:
                return PackBuildResult(exit_code=None, message=f"Failed to run assembly {self.executable}: {error}")
            code = wait_for_process(process, token)
        if token is not None and token.cancelled:
            return PackBuildResult(exit_code=code, message="Assembly interrupted", interrupted=True)
        if code != 0:
            return PackBuildResult(exit_code=code, message="Assembly exited with non-zero status")
        return PackBuildResult(exit_code=0)


def missing_pack_files(pack_dir: Path) -> List[str]:
    return [name for name in REQUIRED_PACK_FILES if not (pack_dir / name).is_file()]


@dataclass(slots=True)
class ContextCompileReport:
    """Outcome of one compile attempt, persisted as ``context-compile.json``."""

    status: str
    policy: str
    policy_outcome: str
    pack_dir: str
    pack_missing: List[str] = field(default_factory=list)
    exit_code: int | None = None
    message: str = ""
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    @property
    def blocked(self) -> bool:
        return self.policy_outcome == "blocked"

    def note_tokens(self) -> str:
        return (
            f"context_compile={self.status} policy={self.policy} "
            f"policy_outcome={self.policy_outcome} pack_dir={self.pack_dir}"
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    def write(self, path: Path) -> None:
        path.write_text(json.dumps(self.to_dict(), indent=2) + "\n", encoding="utf-8")


def evaluate_pack(
    result: PackBuildResult,
    *,
    pack_dir: Path,
    pack_dir_label: str,
    policy: ContextPolicy,
    stdout_label: str = "",
    stderr_label: str = "",
) -> ContextCompileReport:
    """Apply ``policy`` to a finished build and return the report."""
    missing = missing_pack_files(pack_dir)
    failed = not result.ok or bool(missing)
    message = result.message
    if result.ok and missing:
        message = f"Missing required pack files: {', '.join(missing)}"
    if failed:
        outcome = "blocked" if policy is ContextPolicy.REQUIRED else "continued"
    else:
        outcome = "continued"
    return ContextCompileReport(
        status="failed" if failed else "ok",
        policy=policy.value,
        policy_outcome=outcome,
        pack_dir=pack_dir_label,
        pack_missing=missing,
        exit_code=result.exit_code,
        message=message,
        stdout=stdout_label,
        stderr=stderr_label,
    )


def build_assembly_task_input(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Return the task brief handed to the pack builder."""
    recommended = raw.get("recommended")
    approach = recommended.get("approach") if isinstance(recommended, dict) else None
    payload: Dict[str, Any] = {
        "task_id": raw.get("task_id"),
        "title": raw.get("title"),
        "status": raw.get("status") or "unstarted",
        "model": raw.get("model"),
        "definition_of_done": raw.get("definition_of_done"),
        "recommended": {"approach": approach},
    }
    verification = raw.get("verification")
    commands = verification.get("commands") if isinstance(verification, dict) else None
    if isinstance(commands, list):
        cleaned = [item.strip() for item in commands if isinstance(item, str) and item.strip()]
        if cleaned:
            payload["verification"] = {"commands": cleaned}
    return payload


def validate_assembly_contract(executable: str) -> None:
    """Check that ``executable`` runs and its ``build`` accepts every flag we pass."""
    for args in (["--version"], ["build", "--help"]):
        try:
            process = subprocess.run(  # noqa: S603 - executable comes from configuration
                [executable, *args],
                capture_output=True,
                text=True,
                check=False,
            )
        except FileNotFoundError as error:
            raise ContextCompileError(f"Missing dependency: {executable}") from error
        output = f"{process.stdout}{process.stderr}"
        if process.returncode != 0:
            raise ContextCompileError(
                f"Command '{executable} {' '.join(args)}' exited {process.returncode}. {output.strip()}"
            )
    missing = [flag for flag in REQUIRED_BUILD_FLAGS if flag not in output]
    if missing:
        raise ContextCompileError(f"Assembly CLI is missing required build flags: {', '.join(missing)}")


# ------------------------------------------------------------------ lint
_SEVERITIES = ("error", "warning", "note", "info")


def summarize_lint(lint_path: Path, *, max_findings: int = 20) -> str | None:
    """Render ``lint.json`` findings as a short plain-text block."""
    try:
        payload = json.loads(lint_path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return None

    if isinstance(payload, list):
        issues = payload
    elif isinstance(payload, dict):
        issues = payload.get("issues")
        if not isinstance(issues, list):
            issues = payload.get("findings")
    else:
        issues = None
    if not isinstance(issues, list):
        return None
    findings = [issue for issue in issues if isinstance(issue, dict)]

    totals = {name: 0 for name in (*_SEVERITIES, "other")}
    for issue in findings:
        severity = str(issue.get("severity") or "").lower()
        totals[severity if severity in _SEVERITIES else "other"] += 1

    lines = ["Totals: " + " ".join(f"{name}={count}" for name, count in totals.items())]
    shown = findings[:max_findings]
    lines.append(f"Findings (showing {len(shown)} of {len(findings)}):")
    for issue in shown:
        severity = str(issue.get("severity") or "other").lower()
        location = str(issue.get("path") or "")
        line_number = issue.get("line")
        if location and isinstance(line_number, int) and not isinstance(line_number, bool):
            location = f"{location}:{line_number}"
        rule = issue.get("rule")
        parts = [f"- [{severity}]"]
        if location:
            parts.append(location)
        if isinstance(rule, str) and rule:
            parts.append(rule)
        entry = " ".join(parts)
        message = str(issue.get("message") or "").strip()
        if message:
            entry = f"{entry} - {message}"
        lines.append(entry)
    return "\n".join(lines) + "\n"


__all__ = [
    "AssemblyPackBuilder",
    "BEST_EFFORT_WARNING",
    "ContextCompileConfig",
    "ContextCompileError",
    "ContextCompileReport",
    "ContextPolicy",
    "DEFAULT_EXCLUDE_GLOBS",
    "DEFAULT_TOKEN_BUDGET",
    "PackBuildRequest",
    "PackBuildResult",
    "PackBuilder",
    "REQUIRED_PACK_FILES",
    "build_assembly_task_input",
    "evaluate_pack",
    "missing_pack_files",
    "summarize_lint",
    "validate_assembly_contract",
]
