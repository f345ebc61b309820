"""Coding-agent capability and its ``codex exec`` implementation."""

from __future__ import annotations

import logging
import subprocess
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Protocol, Sequence

from ..interrupts import CancellationToken, wait_for_process
from ..utils.text import compact_text

LOGGER = logging.getLogger(__name__)


class AgentError(RuntimeError):
    """Raised when the agent executable cannot be started."""


@dataclass(slots=True)
class AgentInvocation:
    """Everything one agent call needs; paths are absolute."""

    workspace: Path
    task_id: str
    run_id: str
    model: str
    prompt_path: Path
    schema_path: Path
    result_path: Path
    log_path: Path
    attempt: int = 1


class AgentRunner(Protocol):
    def run(self, invocation: AgentInvocation, token: CancellationToken | None = None) -> int:
        """Run the agent to completion and return its exit code (130 when cancelled)."""


def _relative(path: Path, root: Path) -> str:
    try:
        return path.relative_to(root).as_posix()
    except ValueError:
        return str(path)


@dataclass(slots=True)
class CodexRunner:
    """Invoke ``codex exec`` non-interactively with a schema-constrained reply."""

    command: Sequence[str] = ("codex",)
    extra_args: Sequence[str] = field(default_factory=tuple)
    stream_events: bool = True

    def build_command(self, invocation: AgentInvocation) -> List[str]:
        root = invocation.workspace
        return [
            *self.command,
            "exec",
            "--yolo",
            "--model",
            invocation.model,
            "--output-schema",
            _relative(invocation.schema_path, root),
            "--output-last-message",
            _relative(invocation.result_path, root),
            "--json",
            "--skip-git-repo-check",
            *self.extra_args,
            "-",
        ]

    def run(self, invocation: AgentInvocation, token: CancellationToken | None = None) -> int:
        command = self.build_command(invocation)
        invocation.log_path.parent.mkdir(parents=True, exist_ok=True)
        tail = EventLogTail(invocation.log_path, task_id=invocation.task_id, run_id=invocation.run_id)
        with invocation.prompt_path.open("rb") as prompt, invocation.log_path.open("wb") as log:
            try:
                process = subprocess.Popen(  # noqa: S603 - command assembled from configuration
                    command,
                    cwd=invocation.workspace,
                    stdin=prompt,
                    stdout=log,
                    stderr=subprocess.STDOUT,
                )
            except OSError as error:
                raise AgentError(f"Failed to start {command[0]}: {error}") from error
            if self.stream_events:
                tail.start()
            try:
                return wait_for_process(process, token)
            finally:
                tail.stop()


class EventLogTail:
    """Background reader that echoes new event-log lines into the logger."""

    def __init__(self, path: Path, *, task_id: str, run_id: str, poll_interval: float = 0.1) -> None:
        self.path = path
        self.task_id = task_id
        self.run_id = run_id
        self.poll_interval = poll_interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        self._thread = threading.Thread(target=self._follow, name="agent-log-tail", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=2)
            self._thread = None

    def _follow(self) -> None:
        try:
            handle = self.path.open("r", encoding="utf-8", errors="replace")
        except OSError:
            return
        with handle:
            pending = ""
            while True:
                chunk = handle.readline()
                if not chunk:
                    if self._stop.is_set():
                        break
                    time.sleep(self.poll_interval)
                    continue
                pending += chunk
                if not pending.endswith("\n"):
                    continue
                line = pending.strip()
                pending = ""
                if line:
                    LOGGER.info(
                        "agent %s task_id=%s run_id=%s",
                        compact_text(line, max_length=400),
                        self.task_id,
                        self.run_id,
                    )


__all__ = ["AgentError", "AgentInvocation", "AgentRunner", "CodexRunner", "EventLogTail"]
