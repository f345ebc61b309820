from __future__ import annotations

import json
from pathlib import Path

import pytest

from lever.tasks.schema import TaskStatus
from lever.tasks.store import TaskFile, TaskFileError, discover_task_file


def _write(path: Path, payload) -> TaskFile:
    path.write_text(json.dumps(payload), encoding="utf-8")
    return TaskFile(path)


def test_update_status_keeps_unknown_fields(tmp_path: Path) -> None:
    task_file = _write(
        tmp_path / "prd.json",
        {"version": 2, "tasks": [{"task_id": "T1", "owner": "ops", "status": "unstarted"}]},
    )

    task_file.update_status("T1", TaskStatus.STARTED, run_id="run-1", note="progress")

    document = json.loads(task_file.path.read_text(encoding="utf-8"))
    assert document["version"] == 2
    task = document["tasks"][0]
    assert task["owner"] == "ops"
    assert task["status"] == "started"
    assert set(task["observability"]) == {"run_attempts", "last_note", "last_update_utc", "last_run_id"}
    assert task["observability"]["run_attempts"] == 0
    assert task["observability"]["last_run_id"] == "run-1"
    assert task["observability"]["last_note"] == "progress"


def test_write_is_pretty_printed_with_trailing_newline(tmp_path: Path) -> None:
    task_file = _write(tmp_path / "tasks.json", [{"task_id": "T1"}])

    task_file.increment_attempts("T1")

    text = task_file.path.read_text(encoding="utf-8")
    assert text.endswith("}\n]\n")
    assert '\n  {\n    "task_id": "T1",' in text
    assert list(tmp_path.iterdir()) == [task_file.path]


def test_attempt_counter(tmp_path: Path) -> None:
    task_file = _write(
        tmp_path / "prd.json",
        [{"task_id": "T1", "observability": {"run_attempts": "bogus"}}, {"task_id": "T2"}],
    )

    assert task_file.current_attempts("T1") == 0
    assert task_file.increment_attempts("T1") == 1
    assert task_file.increment_attempts("T1") == 2
    assert task_file.current_attempts("T1") == 2
    assert task_file.current_attempts("T2") == 0


def test_reset_attempts(tmp_path: Path) -> None:
    task_file = _write(
        tmp_path / "prd.json",
        [{"task_id": "T1", "status": "blocked", "observability": {"run_attempts": 3}}],
    )

    task_file.reset_attempts("T1", run_id="run-2", note="Reset attempts via --reset-task")

    task = task_file.raw("T1")
    assert task["status"] == "unstarted"
    assert task["observability"]["run_attempts"] == 0
    assert task["observability"]["last_note"] == "Reset attempts via --reset-task"


def test_stamp_note_leaves_status(tmp_path: Path) -> None:
    task_file = _write(tmp_path / "prd.json", [{"task_id": "T1", "status": "started"}])

    task_file.stamp_note("T1", run_id="run-3", note="context failed")

    record = task_file.get("T1")
    assert record.status == "started"
    assert record.observability is not None
    assert record.observability.last_note == "context failed"


def test_unknown_task_and_bad_json(tmp_path: Path) -> None:
    task_file = _write(tmp_path / "prd.json", [{"task_id": "T1"}])
    with pytest.raises(TaskFileError):
        task_file.increment_attempts("T404")

    broken = tmp_path / "broken.json"
    broken.write_text("{", encoding="utf-8")
    with pytest.raises(TaskFileError):
        TaskFile(broken).load()

    with pytest.raises(TaskFileError):
        _write(tmp_path / "odd.json", {"items": []}).entries()


def test_discover_prefers_prd_json(tmp_path: Path) -> None:
    assert discover_task_file(tmp_path) is None
    (tmp_path / "tasks.json").write_text("[]", encoding="utf-8")
    assert discover_task_file(tmp_path) == tmp_path / "tasks.json"
    (tmp_path / "prd.json").write_text("[]", encoding="utf-8")
    assert discover_task_file(tmp_path) == tmp_path / "prd.json"
