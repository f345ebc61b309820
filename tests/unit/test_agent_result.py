from __future__ import annotations

import json
from pathlib import Path

from lever.runner import ensure_schema_file, read_agent_result


def test_result_is_read_leniently(tmp_path: Path) -> None:
    path = tmp_path / "result.json"
    path.write_text(
        json.dumps({"outcome": " completed ", "dod_met": "yes", "tests": None, "blockers": ["a", 3]}),
        encoding="utf-8",
    )

    result = read_agent_result(path)

    assert result is not None
    assert result.is_completed
    assert result.dod_met is False
    assert result.tests.ran is False
    assert result.blockers == ["a"]


def test_missing_empty_or_invalid_results(tmp_path: Path) -> None:
    path = tmp_path / "result.json"
    assert read_agent_result(path) is None
    path.write_text("  \n", encoding="utf-8")
    assert read_agent_result(path) is None
    path.write_text("[1]", encoding="utf-8")
    assert read_agent_result(path) is None
    path.write_text("{oops", encoding="utf-8")
    assert read_agent_result(path) is None


def test_schema_file_is_written_once(tmp_path: Path) -> None:
    schema_path = ensure_schema_file(tmp_path)
    schema = json.loads(schema_path.read_text(encoding="utf-8"))
    assert schema["required"] == ["task_id", "outcome", "dod_met", "summary", "tests", "notes", "blockers"]

    schema_path.write_text("{}", encoding="utf-8")
    ensure_schema_file(tmp_path)
    assert schema_path.read_text(encoding="utf-8") == "{}"
