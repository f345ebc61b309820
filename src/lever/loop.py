"""Chain task runs and turn each run's exit code into continue or stop."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List

from .interrupts import CancellationToken
from .runner import EXIT_INTERRUPTED, RunOutcome

LOGGER = logging.getLogger(__name__)


class StopReason(str, Enum):
    NO_TASKS = "no_tasks"
    LIMIT = "limit"
    HUMAN = "human"
    DEPENDENCIES = "dependencies"
    BLOCKED = "blocked"
    INTERRUPTED = "interrupted"
    FAILURE = "failure"


_CLEAN_STOP = {3}
_HUMAN_STOP = {4}
_DEPENDENCY_STOP = {5, 6}
_BLOCKED_STOP = {10, 11, 13}


@dataclass(slots=True)
class LoopOutcome:
    exit_code: int
    stop_reason: StopReason
    iterations: int = 0
    message: str = ""
    runs: List[RunOutcome] = field(default_factory=list)


def classify_exit(exit_code: int) -> StopReason | None:
    """Return why the loop stops after ``exit_code``, or ``None`` to keep going."""
    if exit_code == 0:
        return None
    if exit_code in _CLEAN_STOP:
        return StopReason.NO_TASKS
    if exit_code in _HUMAN_STOP:
        return StopReason.HUMAN
    if exit_code in _DEPENDENCY_STOP:
        return StopReason.DEPENDENCIES
    if exit_code in _BLOCKED_STOP:
        return StopReason.BLOCKED
    if exit_code == EXIT_INTERRUPTED:
        return StopReason.INTERRUPTED
    if exit_code < 10:
        return StopReason.FAILURE
    return None


def stop_message(reason: StopReason, task_id: str | None) -> str:
    label = task_id or "<unknown>"
    if reason is StopReason.HUMAN:
        return f"Task {label} requires human input."
    if reason is StopReason.DEPENDENCIES:
        return f"Task {label} cannot start due to unmet dependencies."
    if reason is StopReason.BLOCKED:
        return f"Task {label} blocked; manual intervention required."
    return ""


class LoopController:
    """Run ``run_once`` repeatedly until a terminal exit code, the cap, or a cancel."""

    def __init__(
        self,
        run_once: Callable[[], RunOutcome],
        *,
        count: int = 0,
        delay: float = 0.0,
        token: CancellationToken | None = None,
    ) -> None:
        if count < 0:
            raise ValueError("count must be zero (unbounded) or positive")
        if delay < 0:
            raise ValueError("delay must be non-negative")
        self._run_once = run_once
        self._count = count
        self._delay = delay
        self._token = token or CancellationToken()

    def run(self) -> LoopOutcome:
        runs: List[RunOutcome] = []
        iterations = 0
        while True:
            if self._token.cancelled:
                LOGGER.warning("lever: interrupted before iteration %s", iterations + 1)
                return LoopOutcome(EXIT_INTERRUPTED, StopReason.INTERRUPTED, iterations, runs=runs)

            iterations += 1
            outcome = self._run_once()
            runs.append(outcome)
            code = outcome.exit_code
            reason = classify_exit(code)

            if reason is StopReason.NO_TASKS:
                LOGGER.info("lever: no runnable tasks remain")
                return LoopOutcome(0, reason, iterations, message=outcome.message, runs=runs)
            if reason in (StopReason.HUMAN, StopReason.DEPENDENCIES, StopReason.BLOCKED):
                message = stop_message(reason, outcome.task_id)
                LOGGER.warning("lever: %s", message)
                return LoopOutcome(1, reason, iterations, message=message, runs=runs)
            if reason is StopReason.INTERRUPTED:
                return LoopOutcome(EXIT_INTERRUPTED, reason, iterations, message=outcome.message, runs=runs)
            if reason is StopReason.FAILURE:
                LOGGER.error("lever: task agent failed with %s", code)
                return LoopOutcome(code, reason, iterations, message=outcome.message, runs=runs)
            if code != 0:
                LOGGER.info("lever: task agent ended with %s (continuing).", code)

            if self._count and iterations >= self._count:
                LOGGER.info("lever: --loop limit reached (%s)", self._count)
                return LoopOutcome(0, StopReason.LIMIT, iterations, runs=runs)

            if self._delay > 0 and self._token.sleep(self._delay):
                LOGGER.warning("lever: interrupted during loop delay")
                return LoopOutcome(EXIT_INTERRUPTED, StopReason.INTERRUPTED, iterations, runs=runs)


__all__ = ["LoopController", "LoopOutcome", "StopReason", "classify_exit", "stop_message"]
