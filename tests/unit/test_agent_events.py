from __future__ import annotations

import json
from pathlib import Path

from lever.agent.events import iter_events, parse_usage_tokens, rate_limit_retry_delay
from lever.agent.runner import AgentInvocation, CodexRunner


def _log(tmp_path: Path, *lines: str) -> Path:
    path = tmp_path / "codex.jsonl"
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def test_usage_tokens_come_from_last_turn(tmp_path: Path) -> None:
    path = _log(
        tmp_path,
        "plain text banner",
        json.dumps({"type": "turn.completed", "usage": {"input_tokens": 100, "output_tokens": 20}}),
        json.dumps({"type": "item.completed", "usage": {"total_tokens": 999}}),
        json.dumps({"type": "turn.completed", "usage": {"input_tokens": 300, "output_tokens": 50, "total_tokens": 400}}),
    )

    assert parse_usage_tokens(path) == 400


def test_usage_tokens_absent(tmp_path: Path) -> None:
    assert parse_usage_tokens(tmp_path / "missing.jsonl") is None
    assert parse_usage_tokens(_log(tmp_path, '{"type": "turn.completed", "usage": {}}')) is None


def test_iter_events_skips_non_json(tmp_path: Path) -> None:
    path = _log(tmp_path, "{broken", '{"type": "a"}', "[1, 2]", '{"type": "b"}')

    assert [event["type"] for event in iter_events(path)] == ["a", "b"]


def test_retry_delay_rounds_up(tmp_path: Path) -> None:
    path = _log(tmp_path, '{"type":"error","message":"Rate limit reached. Please try again in 1.5s."}')

    assert rate_limit_retry_delay(path) == 2


def test_retry_delay_requires_rate_limit_wording(tmp_path: Path) -> None:
    assert rate_limit_retry_delay(_log(tmp_path, "Server busy, please try again in 3s")) is None
    assert rate_limit_retry_delay(_log(tmp_path, "rate limit exceeded")) is None
    assert rate_limit_retry_delay(tmp_path / "missing.jsonl") is None


def test_codex_command_uses_workspace_relative_paths(tmp_path: Path) -> None:
    run_dir = tmp_path / ".ralph" / "runs" / "T1" / "r1"
    invocation = AgentInvocation(
        workspace=tmp_path,
        task_id="T1",
        run_id="r1",
        model="gpt-5.1-codex",
        prompt_path=run_dir / "prompt.md",
        schema_path=tmp_path / ".ralph" / "task_result.schema.json",
        result_path=run_dir / "result.json",
        log_path=run_dir / "codex.jsonl",
    )

    command = CodexRunner().build_command(invocation)

    assert command == [
        "codex",
        "exec",
        "--yolo",
        "--model",
        "gpt-5.1-codex",
        "--output-schema",
        ".ralph/task_result.schema.json",
        "--output-last-message",
        ".ralph/runs/T1/r1/result.json",
        "--json",
        "--skip-git-repo-check",
        "-",
    ]
