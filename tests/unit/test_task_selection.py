from __future__ import annotations

import pytest

from lever.tasks.schema import TaskRecord
from lever.tasks.selection import (
    HumanRequiredError,
    NoRunnableTaskError,
    SelectedTask,
    SelectionError,
    TaskMetadataError,
    TaskOrderingError,
    UnsupportedModelError,
    select_task,
    validate_model,
    validate_task_metadata,
)


def _task(task_id: str, **fields) -> dict:
    task = {
        "task_id": task_id,
        "title": f"Task {task_id}",
        "model": "gpt-5.1-codex-mini",
        "definition_of_done": ["done"],
        "recommended": {"approach": "do it"},
    }
    task.update(fields)
    return task


def test_first_non_completed_task_wins() -> None:
    root = [_task("T1", status="completed"), _task("T2", status="blocked"), _task("T3")]

    selected = select_task(root)

    assert selected.task_id == "T2"
    assert selected.raw["status"] == "blocked"


def test_missing_status_reads_as_unstarted() -> None:
    selected = select_task({"tasks": [_task("T1")]})

    assert selected.record.effective_status == "unstarted"


def test_object_form_with_extra_keys() -> None:
    root = {"project": "demo", "tasks": [_task("T1", status="completed"), _task("T2")]}

    assert select_task(root).task_id == "T2"


def test_human_task_blocks_the_queue() -> None:
    root = [_task("T1", model="human"), _task("T2")]

    with pytest.raises(HumanRequiredError) as caught:
        select_task(root)

    assert caught.value.exit_code == 4
    assert str(caught.value) == "Task requires human: T1"


def test_explicit_id_must_be_first_in_line() -> None:
    root = [_task("T1"), _task("T2")]

    with pytest.raises(TaskOrderingError) as caught:
        select_task(root, "T2")

    assert caught.value.exit_code == 6
    assert str(caught.value) == "Task T2 cannot start until T1 is completed."
    assert select_task(root, "T1").task_id == "T1"


def test_everything_completed() -> None:
    with pytest.raises(NoRunnableTaskError) as caught:
        select_task([_task("T1", status="completed")])

    assert caught.value.exit_code == 3


def test_empty_and_malformed_documents() -> None:
    with pytest.raises(NoRunnableTaskError):
        select_task([])
    with pytest.raises(SelectionError) as caught:
        select_task({"items": []})
    assert caught.value.exit_code == 2


def test_metadata_errors_name_every_missing_field() -> None:
    raw = {"task_id": "T9", "title": "", "definition_of_done": ["ok", ""], "recommended": {}}

    with pytest.raises(TaskMetadataError) as caught:
        validate_task_metadata("T9", raw)

    assert caught.value.missing == ["title", "definition_of_done", "recommended.approach"]
    assert caught.value.exit_code == 2


def test_recommended_must_only_hold_approach() -> None:
    raw = _task("T1", recommended={"approach": "x", "notes": "y"})

    with pytest.raises(TaskMetadataError):
        validate_task_metadata("T1", raw)


def test_complete_metadata_passes() -> None:
    validate_task_metadata("T1", _task("T1"))


def test_model_allow_list() -> None:
    record = TaskRecord.model_validate(_task("T1", model="gpt-4o"))
    selected = SelectedTask(record=record, raw=_task("T1", model="gpt-4o"))

    with pytest.raises(UnsupportedModelError):
        validate_model(selected)
    validate_model(selected, ["gpt-4o"])
