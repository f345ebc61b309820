"""Command line entry point for lever."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

import typer

from .config import ConfigError, Settings, load_settings
from .interrupts import CancellationToken, signal_handlers
from .loop import LoopController
from .prompts import DEFAULT_PROMPT_PATH
from .runner import RunOutcome, TaskRunner
from .tasks.selection import SelectionError, select_task
from .tasks.store import DEFAULT_TASK_FILES, TaskFile, TaskFileError, discover_task_file
from .tools.context_compile import ContextCompileError, ContextPolicy, validate_assembly_contract

APP_HELP = "Run coding-agent tasks from a JSON task file, one git branch per run."
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
EXIT_USAGE = 2

app = typer.Typer(help=APP_HELP)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(level=logging.DEBUG if verbose else logging.INFO, format=LOG_FORMAT)


def _load_settings(workspace: Path, config: Optional[str]) -> Settings:
    config_path = Path(config).expanduser() if config else None
    if config_path is not None and not config_path.is_absolute():
        config_path = workspace / config_path
    try:
        return load_settings(workspace, config_path)
    except ConfigError as error:
        typer.echo(str(error))
        raise typer.Exit(code=EXIT_USAGE) from error


def _resolve_path(value: str, workspace: Path) -> Path:
    candidate = Path(value).expanduser()
    return candidate if candidate.is_absolute() else workspace / candidate


def _resolve_tasks_path(tasks: Optional[str], settings: Settings) -> Path:
    if tasks:
        path = _resolve_path(tasks, settings.workspace)
    else:
        path = settings.tasks_path or discover_task_file(settings.workspace)
    if path is None:
        typer.echo(f"No tasks file found in {settings.workspace} (looked for {', '.join(DEFAULT_TASK_FILES)}).")
        raise typer.Exit(code=EXIT_USAGE)
    if not path.is_file():
        typer.echo(f"Tasks file not found: {path}")
        raise typer.Exit(code=EXIT_USAGE)
    return path


def _resolve_prompt_path(prompt: Optional[str], settings: Settings) -> Path:
    if prompt:
        path = _resolve_path(prompt, settings.workspace)
        if not path.is_file():
            typer.echo(f"Prompt file not found: {path}")
            raise typer.Exit(code=EXIT_USAGE)
        return path
    return settings.prompt_path or settings.workspace / DEFAULT_PROMPT_PATH


@app.command()
def run(
    tasks: Optional[str] = typer.Option(
        None,
        "--tasks",
        "-t",
        help="Path to the JSON task file (default: prd.json, then tasks.json).",
    ),
    prompt: Optional[str] = typer.Option(
        None,
        "--prompt",
        "-p",
        help="Base prompt file prepended to every task brief.",
    ),
    task_id: Optional[str] = typer.Option(
        None,
        "--task-id",
        help="Run this task; it must be the first task not yet completed.",
    ),
    next_task: bool = typer.Option(
        False,
        "--next",
        help="Run the first task not yet completed.",
    ),
    workspace: str = typer.Option(
        ".",
        "--workspace",
        "-w",
        help="Git repository the agent works in.",
    ),
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to the lever configuration file (default: lever.yaml in the workspace).",
    ),
    loop: bool = typer.Option(
        False,
        "--loop",
        help="Keep running tasks until one stops the loop.",
    ),
    count: int = typer.Option(
        0,
        "--count",
        min=0,
        help="With --loop, stop after this many runs (0 means no limit).",
    ),
    delay: Optional[float] = typer.Option(
        None,
        "--delay",
        min=0.0,
        help="With --loop, seconds to wait between runs.",
    ),
    reset_task: bool = typer.Option(
        False,
        "--reset-task",
        help="Reset the selected task's attempt counter before running it.",
    ),
    context_compile: Optional[bool] = typer.Option(
        None,
        "--context-compile/--no-context-compile",
        help="Build a compiled-context pack before invoking the agent.",
    ),
    context_failure_policy: Optional[ContextPolicy] = typer.Option(
        None,
        "--context-failure-policy",
        case_sensitive=False,
        help="What a failed context compile does to the run.",
    ),
    prompt_lint_summary: Optional[bool] = typer.Option(
        None,
        "--prompt-lint-summary/--no-prompt-lint-summary",
        help="Include the pack's lint findings in the prompt.",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-v",
        help="Enable debug logging.",
    ),
) -> None:
    """Run the next task once, or repeatedly with --loop."""
    _configure_logging(verbose)
    if next_task and task_id:
        typer.echo("--next cannot be combined with --task-id")
        raise typer.Exit(code=EXIT_USAGE)
    if delay is not None and not loop:
        typer.echo("--delay requires --loop")
        raise typer.Exit(code=EXIT_USAGE)

    workspace_path = Path(workspace).expanduser().resolve()
    if not workspace_path.is_dir():
        typer.echo(f"Workspace not found: {workspace_path}")
        raise typer.Exit(code=EXIT_USAGE)

    settings = _load_settings(workspace_path, config)
    tasks_path = _resolve_tasks_path(tasks, settings)
    settings.prompt_path = _resolve_prompt_path(prompt, settings)
    if context_compile is not None:
        settings.context_compile.enabled = context_compile
    if context_failure_policy is not None:
        settings.context_compile.policy = context_failure_policy
    if prompt_lint_summary is not None:
        settings.context_compile.prompt_lint_summary = prompt_lint_summary

    token = CancellationToken()
    with signal_handlers(token):
        runner = TaskRunner(settings, tasks_path, token=token)
        if not loop:
            outcome = runner.run(task_id, reset_task=reset_task)
            if outcome.message:
                typer.echo(outcome.message)
            raise typer.Exit(code=outcome.exit_code)

        first = {"pending": True}

        def run_once() -> RunOutcome:
            # An explicit id and --reset-task only apply to the first cycle.
            if first["pending"]:
                first["pending"] = False
                return runner.run(task_id, reset_task=reset_task)
            return runner.run()

        controller = LoopController(
            run_once,
            count=count,
            delay=settings.loop_delay if delay is None else delay,
            token=token,
        )
        result = controller.run()

    if result.message:
        typer.echo(result.message)
    raise typer.Exit(code=result.exit_code)


@app.command()
def status(
    tasks: Optional[str] = typer.Option(
        None,
        "--tasks",
        "-t",
        help="Path to the JSON task file (default: prd.json, then tasks.json).",
    ),
    workspace: str = typer.Option(
        ".",
        "--workspace",
        "-w",
        help="Git repository the agent works in.",
    ),
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to the lever configuration file.",
    ),
) -> None:
    """Show every task with its status and attempts, then the next task in line."""
    workspace_path = Path(workspace).expanduser().resolve()
    settings = _load_settings(workspace_path, config)
    task_file = TaskFile(_resolve_tasks_path(tasks, settings))
    try:
        root = task_file.load()
        records = task_file.records()
    except TaskFileError as error:
        typer.echo(str(error))
        raise typer.Exit(code=EXIT_USAGE) from error

    typer.echo(f"Tasks: {len(records)} ({task_file.path})")
    for record in records:
        model = record.model if isinstance(record.model, str) else "-"
        typer.echo(
            f"- [{record.effective_status}] {record.task_id}: {record.title_text} "
            f"(model={model}, attempts={record.run_attempts})"
        )
    try:
        selected = select_task(root)
    except SelectionError as error:
        typer.echo(f"Next: none ({error})")
        return
    typer.echo(f"Next: {selected.task_id}")


@app.command("assembly-check")
def assembly_check(
    workspace: str = typer.Option(
        ".",
        "--workspace",
        "-w",
        help="Git repository the agent works in.",
    ),
    config: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        help="Path to the lever configuration file.",
    ),
) -> None:
    """Check that the configured pack builder supports every flag lever passes."""
    workspace_path = Path(workspace).expanduser().resolve()
    settings = _load_settings(workspace_path, config)
    executable = settings.context_compile.assembly_path
    try:
        validate_assembly_contract(executable)
    except ContextCompileError as error:
        typer.echo(str(error))
        raise typer.Exit(code=EXIT_USAGE) from error
    typer.echo(f"{executable}: build contract OK")


if __name__ == "__main__":
    app()
