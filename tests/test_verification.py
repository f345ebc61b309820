from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from lever.tools.verification import TASK_COMMANDS_LABEL, ShellVerificationRunner, detect_command, has_python_tests

pytestmark = pytest.mark.skipif(shutil.which("bash") is None, reason="bash is required")


def test_explicit_commands_stop_at_first_failure(tmp_path: Path) -> None:
    log_path = tmp_path / "run" / "verify.log"

    result = ShellVerificationRunner().verify(tmp_path, log_path, ["echo one", "false", "echo three"])

    assert result.ok is False
    assert result.command == TASK_COMMANDS_LABEL
    output = log_path.read_text(encoding="utf-8")
    assert "one" in output
    assert "three" not in output


def test_explicit_commands_pass(tmp_path: Path) -> None:
    log_path = tmp_path / "verify.log"

    result = ShellVerificationRunner().verify(tmp_path, log_path, ["echo ok > marker.txt", "test -f marker.txt"])

    assert result.ok is True
    assert result.exit_code == 0
    assert (tmp_path / "marker.txt").is_file()


def test_ci_script_is_detected_first(tmp_path: Path) -> None:
    script = tmp_path / "scripts" / "ci.sh"
    script.parent.mkdir()
    script.write_text("#!/usr/bin/env bash\necho from-ci\n", encoding="utf-8")
    script.chmod(0o755)
    (tmp_path / "Makefile").write_text("ci:\n\techo make\n", encoding="utf-8")

    assert detect_command(tmp_path) == ["./scripts/ci.sh"]
    log_path = tmp_path / "verify.log"
    result = ShellVerificationRunner().verify(tmp_path, log_path, [])
    assert result.ok is True
    assert "from-ci" in log_path.read_text(encoding="utf-8")


def test_makefile_ci_target_beats_test_script(tmp_path: Path) -> None:
    (tmp_path / "Makefile").write_text("lint:\n\ttrue\nci:\n\ttrue\n", encoding="utf-8")
    runner = tmp_path / "tests" / "run.sh"
    runner.parent.mkdir()
    runner.write_text("#!/bin/sh\n", encoding="utf-8")
    runner.chmod(0o755)

    assert detect_command(tmp_path) == ["make", "ci"]


def test_non_executable_scripts_are_ignored(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(shutil, "which", lambda name: None)
    script = tmp_path / "scripts" / "ci.sh"
    script.parent.mkdir()
    script.write_text("echo nope\n", encoding="utf-8")

    assert detect_command(tmp_path) is None


def test_nothing_to_run_counts_as_passing(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(shutil, "which", lambda name: None)
    log_path = tmp_path / "verify.log"

    result = ShellVerificationRunner().verify(tmp_path, log_path, [])

    assert result.ok is True
    assert result.ran is False


def test_python_test_markers(tmp_path: Path) -> None:
    assert has_python_tests(tmp_path) is False
    (tmp_path / "tests").mkdir()
    (tmp_path / "tests" / "test_x.py").write_text("", encoding="utf-8")
    assert has_python_tests(tmp_path) is True
