"""Run controller: executes one task end to end and returns a process exit code.

Exit codes
==========

====  =====================================================================
 0    task completed, run branch squashed into the base branch
 1    infrastructure failure (git, task file, agent executable)
 2    task metadata incomplete or model not supported
 3    no runnable task
 4    first task in line requires a human
 6    requested task is not first in line
10    agent produced no result
11    task blocked (attempt limit reached or agent reported blocked)
12    progress recorded, task not yet complete
13    required context compilation failed
130   interrupted
====  =====================================================================
"""

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from pydantic import ValidationError

from .agent.events import parse_usage_tokens, rate_limit_retry_delay
from .agent.runner import AgentError, AgentInvocation, AgentRunner, CodexRunner
from .config import Settings
from .interrupts import CancellationToken
from .prompts import build_prompt, load_base_prompt, render_compiled_context, task_snapshot_json
from .run_paths import SCHEMA_PATH, RunPaths, new_run_id
from .tasks.schema import RESULT_SCHEMA, AgentResult, TaskStatus
from .tasks.selection import SelectedTask, SelectionError, load_and_select, validate_model, validate_task_metadata
from .tasks.store import TaskFile, TaskFileError
from .tools.context_compile import (
    BEST_EFFORT_WARNING,
    AssemblyPackBuilder,
    ContextCompileReport,
    PackBuilder,
    PackBuildRequest,
    build_assembly_task_input,
    evaluate_pack,
    summarize_lint,
)
from .tools.git_session import GitSession, resolve_base_branch
from .tools.rate_limit import RateLedger, RateLimiter, estimate_prompt_tokens
from .tools.vcs import GitError, GitRepository
from .tools.verification import ShellVerificationRunner, VerificationResult, VerificationRunner
from .utils.text import compact_text

LOGGER = logging.getLogger(__name__)

EXIT_COMPLETED = 0
EXIT_FAILURE = 1
EXIT_NO_RESULT = 10
EXIT_BLOCKED = 11
EXIT_PROGRESS = 12
EXIT_CONTEXT_REQUIRED = 13
EXIT_INTERRUPTED = 130

RESET_NOTE = "Reset attempts via --reset-task"


@dataclass(slots=True)
class RunOutcome:
    """What a single run did, as seen by the loop controller."""

    exit_code: int
    task_id: str | None = None
    run_id: str | None = None
    status: str | None = None
    message: str = ""
    context: ContextCompileReport | None = None


@dataclass(slots=True)
class _RunState:
    task_file: TaskFile
    selected: SelectedTask
    session: GitSession
    paths: RunPaths
    attempt: int
    report: ContextCompileReport | None = None

    @property
    def task_id(self) -> str:
        return self.selected.task_id

    @property
    def run_id(self) -> str:
        return self.paths.run_id


def ensure_schema_file(workspace: Path) -> Path:
    """Write the agent output schema once per workspace."""
    schema_path = workspace / SCHEMA_PATH
    if not schema_path.is_file():
        schema_path.parent.mkdir(parents=True, exist_ok=True)
        schema_path.write_text(json.dumps(RESULT_SCHEMA, indent=2) + "\n", encoding="utf-8")
    return schema_path


def read_agent_result(path: Path) -> AgentResult | None:
    """Return the parsed result payload, or ``None`` when absent or unusable."""
    try:
        text = path.read_text(encoding="utf-8")
    except OSError:
        return None
    if not text.strip():
        return None
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        LOGGER.warning("Agent result %s is not valid JSON", path)
        return None
    if not isinstance(payload, dict):
        return None
    try:
        return AgentResult.model_validate(payload)
    except ValidationError as error:
        LOGGER.warning("Agent result %s does not match the result schema: %s", path, error)
        return None


class TaskRunner:
    """Execute the next task in ``tasks_path`` against ``settings.workspace``."""

    def __init__(
        self,
        settings: Settings,
        tasks_path: Path,
        *,
        agent: AgentRunner | None = None,
        verifier: VerificationRunner | None = None,
        pack_builder: PackBuilder | None = None,
        rate_limiter: RateLimiter | None = None,
        token: CancellationToken | None = None,
        sleeper: Callable[[float], None] = time.sleep,
    ) -> None:
        self.settings = settings
        self.workspace = settings.workspace
        self.tasks_path = tasks_path
        self.agent = agent or CodexRunner(command=tuple(settings.agent.command))
        self.verifier = verifier or ShellVerificationRunner()
        self.pack_builder = pack_builder or AssemblyPackBuilder(executable=settings.context_compile.assembly_path)
        self.rate_limiter = rate_limiter or RateLimiter(
            ledger=RateLedger.for_workspace(self.workspace),
            window=settings.rate_limit.window_seconds,
            limits=dict(settings.rate_limit.limits),
            sleeper=sleeper,
        )
        self.token = token
        self.base_branch = resolve_base_branch(settings.base_branch)

    # ------------------------------------------------------------------ entry
    def run(self, task_id: str | None = None, *, reset_task: bool = False) -> RunOutcome:
        task_file = TaskFile(self.tasks_path)
        try:
            selected = self._select(task_file, task_id)
        except SelectionError as error:
            LOGGER.error("%s", error)
            return RunOutcome(exit_code=error.exit_code, task_id=task_id, message=str(error))

        LOGGER.info(
            "Task selected task_id=%s model=%s status=%s dod_count=%s",
            selected.task_id,
            selected.model,
            selected.record.effective_status,
            len(selected.record.done_items),
        )

        try:
            repo = GitRepository(self.workspace)
        except GitError as error:
            LOGGER.error("%s", error)
            return RunOutcome(exit_code=EXIT_FAILURE, task_id=selected.task_id, message=str(error))

        session = GitSession(repo, selected.task_id, base_branch=self.base_branch)
        try:
            session.begin()
            # The branch may carry newer task state than the original checkout.
            selected = self._select(task_file, selected.task_id)
            return self._run_on_branch(task_file, selected, session, reset_task=reset_task)
        except SelectionError as error:
            LOGGER.error("%s", error)
            return RunOutcome(exit_code=error.exit_code, task_id=selected.task_id, message=str(error))
        except (GitError, TaskFileError, AgentError, OSError) as error:
            LOGGER.error("Run failed task_id=%s: %s", selected.task_id, error)
            return RunOutcome(exit_code=EXIT_FAILURE, task_id=selected.task_id, message=str(error))
        finally:
            session.restore()

    def _select(self, task_file: TaskFile, task_id: str | None) -> SelectedTask:
        selected = load_and_select(task_file, task_id)
        validate_task_metadata(selected.task_id, selected.raw)
        validate_model(selected, self.settings.agent.models)
        return selected

    def _cancelled(self) -> bool:
        return self.token is not None and self.token.cancelled

    # ---------------------------------------------------------------- phases
    def _run_on_branch(
        self,
        task_file: TaskFile,
        selected: SelectedTask,
        session: GitSession,
        *,
        reset_task: bool,
    ) -> RunOutcome:
        task_id = selected.task_id
        max_attempts = self.settings.agent.max_attempts
        provisional_run_id = new_run_id()

        if reset_task:
            task_file.reset_attempts(task_id, run_id=provisional_run_id, note=RESET_NOTE)
            LOGGER.info("Reset attempts task_id=%s", task_id)

        attempts = task_file.current_attempts(task_id)
        if attempts >= max_attempts:
            note = (
                f"Attempt limit reached ({attempts}/{max_attempts}). "
                "Use --reset-task after human intervention."
            )
            task_file.update_status(task_id, TaskStatus.BLOCKED, run_id=provisional_run_id, note=note)
            session.commit_progress(selected.title)
            LOGGER.warning("Attempt limit reached task_id=%s run_id=%s attempts=%s", task_id, provisional_run_id, attempts)
            return RunOutcome(
                exit_code=EXIT_BLOCKED,
                task_id=task_id,
                run_id=provisional_run_id,
                status=TaskStatus.BLOCKED.value,
                message=note,
            )

        paths = RunPaths.allocate(self.workspace, task_id, provisional_run_id)
        state = _RunState(
            task_file=task_file,
            selected=selected,
            session=session,
            paths=paths,
            attempt=attempts + 1,
        )
        snapshot = task_snapshot_json(selected.raw)
        paths.task_snapshot.write_text(f"{snapshot}\n", encoding="utf-8")
        LOGGER.info("Run started task_id=%s title=%s run_id=%s", task_id, selected.title, state.run_id)

        compiled_context: str | None = None
        lint_summary: str | None = None
        if self.settings.context_compile.enabled:
            if self._cancelled():
                return self._interrupt(state)
            report = self._compile_context(state)
            state.report = report
            if self._cancelled():
                return self._interrupt(state)
            if report.blocked:
                return self._context_blocked(state, report)
            if not report.ok:
                LOGGER.warning(BEST_EFFORT_WARNING)
            else:
                compiled_context, lint_summary = self._pack_sections(state)

        prompt = build_prompt(
            load_base_prompt(self.settings.prompt_path),
            title=selected.title,
            definition_of_done=selected.record.done_items,
            approach=selected.record.approach,
            snapshot=snapshot,
            lint_summary=lint_summary,
            compiled_context=compiled_context,
        )
        paths.prompt.write_text(prompt, encoding="utf-8")
        schema_path = ensure_schema_file(self.workspace)

        if self._cancelled():
            return self._interrupt(state)

        agent_exit = self._invoke_agent(state, schema_path)
        if agent_exit == EXIT_INTERRUPTED or self._cancelled():
            return self._interrupt(state)

        return self._interpret(state, agent_exit)

    def _compile_context(self, state: _RunState) -> ContextCompileReport:
        config = self.settings.context_compile
        paths = state.paths
        paths.pack_dir.mkdir(parents=True, exist_ok=True)
        brief = build_assembly_task_input(state.selected.raw)
        paths.assembly_task.write_text(json.dumps(brief, indent=2) + "\n", encoding="utf-8")
        request = PackBuildRequest(
            workspace=self.workspace,
            task_id=state.task_id,
            task_input=paths.assembly_task,
            pack_dir=paths.pack_dir,
            summary_json=paths.assembly_summary,
            stdout_path=paths.assembly_stdout,
            stderr_path=paths.assembly_stderr,
            token_budget=config.token_budget,
            exclude_globs=tuple(config.exclude_globs),
            exclude_runtime_globs=tuple(config.exclude_runtime_globs),
        )
        result = self.pack_builder.build(request, self.token)
        report = evaluate_pack(
            result,
            pack_dir=paths.pack_dir,
            pack_dir_label=paths.relative(paths.pack_dir),
            policy=config.policy,
            stdout_label=paths.relative(paths.assembly_stdout),
            stderr_label=paths.relative(paths.assembly_stderr),
        )
        report.write(paths.context_report)
        LOGGER.info(
            "Context compile report task_id=%s run_id=%s %s missing=%s",
            state.task_id,
            state.run_id,
            report.note_tokens(),
            ",".join(report.pack_missing) or "-",
        )
        return report

    def _pack_sections(self, state: _RunState) -> tuple[str | None, str | None]:
        paths = state.paths
        context_path = paths.pack_dir / "context.md"
        try:
            context = context_path.read_text(encoding="utf-8")
        except OSError as error:
            LOGGER.warning("Unable to read compiled context %s: %s", context_path, error)
            return None, None
        commit = state.session.repo.short_head()
        compiled = render_compiled_context(
            context,
            manifest=paths.relative(paths.pack_dir / "manifest.json"),
            commit=commit,
        )
        lint = None
        if self.settings.context_compile.prompt_lint_summary:
            lint = summarize_lint(paths.pack_dir / "lint.json")
        return compiled, lint

    def _invoke_agent(self, state: _RunState, schema_path: Path) -> int:
        model = state.selected.model
        paths = state.paths
        estimated = estimate_prompt_tokens(paths.prompt)
        self.rate_limiter.throttle(model, estimated, cancelled=self._cancelled)
        if self._cancelled():
            return EXIT_INTERRUPTED

        retries = self.settings.agent.retry_attempts
        exit_code = EXIT_FAILURE
        for attempt in range(1, retries + 1):
            invocation = AgentInvocation(
                workspace=self.workspace,
                task_id=state.task_id,
                run_id=state.run_id,
                model=model,
                prompt_path=paths.prompt,
                schema_path=schema_path,
                result_path=paths.result,
                log_path=paths.agent_log,
                attempt=attempt,
            )
            LOGGER.info("Agent exec start task_id=%s run_id=%s attempt=%s model=%s", state.task_id, state.run_id, attempt, model)
            exit_code = self.agent.run(invocation, self.token)
            LOGGER.info("Agent exec end task_id=%s run_id=%s attempt=%s exit=%s", state.task_id, state.run_id, attempt, exit_code)

            if exit_code == EXIT_INTERRUPTED or self._cancelled():
                return EXIT_INTERRUPTED
            if paths.result.is_file() and paths.result.stat().st_size > 0:
                break
            delay = rate_limit_retry_delay(paths.agent_log)
            if delay is None or attempt == retries:
                break
            LOGGER.warning("Rate limit retry: sleeping %ss before retry %s/%s.", delay, attempt + 1, retries)
            self.rate_limiter.pause(delay, cancelled=self._cancelled)
            if self._cancelled():
                return EXIT_INTERRUPTED

        tokens = parse_usage_tokens(paths.agent_log) or estimated
        self.rate_limiter.record(model, tokens)
        return exit_code

    def _interpret(self, state: _RunState, agent_exit: int) -> RunOutcome:
        task_file = state.task_file
        paths = state.paths
        task_id = state.task_id
        title = state.selected.title

        result = read_agent_result(paths.result)
        if result is None:
            note = self._note(
                f"Agent produced no result.json (exit={agent_exit}). See {paths.relative(paths.agent_log)}",
                state,
            )
            return self._finish(state, TaskStatus.BLOCKED, note, EXIT_NO_RESULT, log=LOGGER.error)

        if result.summary:
            LOGGER.info(
                "Result summary: %s task_id=%s run_id=%s outcome=%s dod_met=%s tests_ran=%s tests_passed=%s",
                compact_text(result.summary, max_length=220),
                task_id,
                state.run_id,
                result.outcome,
                result.dod_met,
                result.tests.ran,
                result.tests.passed,
            )
        if not result.dod_met:
            LOGGER.warning(
                "Definition of done not met%s task_id=%s run_id=%s outcome=%s",
                f": {compact_text(result.notes, max_length=220)}" if result.notes else "",
                task_id,
                state.run_id,
                result.outcome,
            )

        verification = VerificationResult.skipped()
        if result.dod_met:
            verification = self.verifier.verify(self.workspace, paths.verify_log, state.selected.record.verification_commands)
            if verification.ran:
                level = logging.INFO if verification.ok else logging.WARNING
                LOGGER.log(
                    level,
                    "Verification %s task_id=%s run_id=%s command=%s log=%s",
                    "succeeded" if verification.ok else "failed",
                    task_id,
                    state.run_id,
                    verification.command,
                    paths.relative(paths.verify_log),
                )

        if result.is_completed and result.dod_met and verification.ok:
            if self._cancelled():
                return self._interrupt(state)
            note = self._note(f"Run {state.run_id} completed", state)
            outcome = self._finish(state, TaskStatus.COMPLETED, note, EXIT_COMPLETED)
            state.session.finalize(title)
            return outcome

        summary = (
            f"reported_outcome={result.outcome or 'unknown'} dod_met={str(result.dod_met).lower()} "
            f"verify_ok={str(verification.ok).lower()}. See {paths.relative(paths.result)}"
        )
        if result.is_blocked:
            blockers = "; ".join(result.blockers)
            note = f"Run {state.run_id} blocked. {summary}"
            if blockers:
                note = f"{note} blockers={compact_text(blockers, max_length=200)}"
            return self._finish(state, TaskStatus.BLOCKED, self._note(note, state), EXIT_BLOCKED, log=LOGGER.warning)

        note = self._note(f"Run {state.run_id} progress. {summary}", state)
        return self._finish(state, TaskStatus.STARTED, note, EXIT_PROGRESS)

    # ----------------------------------------------------------- terminals
    def _note(self, note: str, state: _RunState) -> str:
        if state.report is None:
            return note
        return f"{note} {state.report.note_tokens()}"

    def _finish(
        self,
        state: _RunState,
        status: TaskStatus,
        note: str,
        exit_code: int,
        *,
        log: Callable[..., None] = LOGGER.info,
    ) -> RunOutcome:
        state.task_file.increment_attempts(state.task_id)
        state.task_file.update_status(state.task_id, status, run_id=state.run_id, note=note)
        state.session.commit_progress(state.selected.title)
        log("Run finished task_id=%s run_id=%s status=%s exit=%s", state.task_id, state.run_id, status.value, exit_code)
        return RunOutcome(
            exit_code=exit_code,
            task_id=state.task_id,
            run_id=state.run_id,
            status=status.value,
            message=note,
            context=state.report,
        )

    def _interrupt(self, state: _RunState) -> RunOutcome:
        note = self._note(f"Run {state.run_id} interrupted on attempt {state.attempt}", state)
        return self._finish(state, TaskStatus.STARTED, note, EXIT_INTERRUPTED, log=LOGGER.warning)

    def _context_blocked(self, state: _RunState, report: ContextCompileReport) -> RunOutcome:
        exit_detail = f"exit={report.exit_code}" if report.exit_code is not None else "exit=none"
        note = (
            f"Context compilation failed ({exit_detail}) for run {state.run_id}. {report.message.rstrip('.')}. "
            f"See stdout={report.stdout} stderr={report.stderr} {report.note_tokens()}"
        )
        state.task_file.stamp_note(state.task_id, run_id=state.run_id, note=note)
        state.session.commit_progress(state.selected.title)
        LOGGER.error("Context compilation required but failed task_id=%s run_id=%s %s", state.task_id, state.run_id, exit_detail)
        return RunOutcome(
            exit_code=EXIT_CONTEXT_REQUIRED,
            task_id=state.task_id,
            run_id=state.run_id,
            message=note,
            context=report,
        )


__all__ = [
    "EXIT_BLOCKED",
    "EXIT_COMPLETED",
    "EXIT_CONTEXT_REQUIRED",
    "EXIT_FAILURE",
    "EXIT_INTERRUPTED",
    "EXIT_NO_RESULT",
    "EXIT_PROGRESS",
    "RESET_NOTE",
    "RunOutcome",
    "TaskRunner",
    "ensure_schema_file",
    "read_agent_result",
]
