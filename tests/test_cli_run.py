from __future__ import annotations

from typer.testing import CliRunner

from conftest import TaskRepo, make_task
from lever.cli import app

runner = CliRunner()


def test_next_and_task_id_are_exclusive(task_repo: TaskRepo) -> None:
    result = runner.invoke(app, ["run", "--workspace", str(task_repo.root), "--next", "--task-id", "T1"])

    assert result.exit_code == 2
    assert "--next cannot be combined with --task-id" in result.output


def test_delay_requires_loop(task_repo: TaskRepo) -> None:
    result = runner.invoke(app, ["run", "--workspace", str(task_repo.root), "--delay", "5"])

    assert result.exit_code == 2
    assert "--delay requires --loop" in result.output


def test_missing_tasks_file(tmp_path) -> None:
    result = runner.invoke(app, ["run", "--workspace", str(tmp_path)])

    assert result.exit_code == 2
    assert "No tasks file found" in result.output


def test_invalid_config_is_reported(task_repo: TaskRepo) -> None:
    (task_repo.root / "lever.yaml").write_text("- not a mapping\n", encoding="utf-8")

    result = runner.invoke(app, ["run", "--workspace", str(task_repo.root)])

    assert result.exit_code == 2
    assert "Configuration must be a mapping at the top level." in result.output


def test_run_without_runnable_task_exits_three(task_repo: TaskRepo) -> None:
    task_repo.write_tasks([make_task("T1", status="completed")])

    result = runner.invoke(app, ["run", "--workspace", str(task_repo.root)])

    assert result.exit_code == 3
    assert "No runnable task found" in result.output


def test_loop_stops_cleanly_when_nothing_is_left(task_repo: TaskRepo) -> None:
    task_repo.write_tasks([make_task("T1", status="completed")])

    result = runner.invoke(app, ["run", "--workspace", str(task_repo.root), "--loop", "--delay", "0"])

    assert result.exit_code == 0


def test_loop_reports_human_stop(task_repo: TaskRepo) -> None:
    task_repo.write_tasks([make_task("T1", model="human")])

    result = runner.invoke(app, ["run", "--workspace", str(task_repo.root), "--loop"])

    assert result.exit_code == 1
    assert "Task T1 requires human input." in result.output


def test_status_lists_tasks_and_next(task_repo: TaskRepo) -> None:
    task_repo.write_tasks(
        [
            make_task("T1", status="completed"),
            make_task("T2", observability={"run_attempts": 2, "last_note": "", "last_update_utc": "", "last_run_id": ""}),
            make_task("T3", model="human"),
        ]
    )

    result = runner.invoke(app, ["status", "--workspace", str(task_repo.root)])

    assert result.exit_code == 0
    lines = result.output.splitlines()
    assert lines[0].startswith("Tasks: 3")
    assert "- [completed] T1: Implement greeting for T1 (model=gpt-5.1-codex, attempts=0)" in lines
    assert "- [unstarted] T2: Implement greeting for T2 (model=gpt-5.1-codex, attempts=2)" in lines
    assert lines[-1] == "Next: T2"


def test_assembly_check_reports_missing_executable(task_repo: TaskRepo) -> None:
    (task_repo.root / "lever.yaml").write_text(
        "context_compile:\n  assembly_path: definitely-not-an-assembly-binary\n",
        encoding="utf-8",
    )

    result = runner.invoke(app, ["assembly-check", "--workspace", str(task_repo.root)])

    assert result.exit_code == 2
    assert "Missing dependency: definitely-not-an-assembly-binary" in result.output
