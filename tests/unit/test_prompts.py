from __future__ import annotations

from pathlib import Path

from lever.prompts import (
    DEFAULT_BASE_PROMPT,
    build_prompt,
    load_base_prompt,
    render_compiled_context,
    task_snapshot_json,
)


def test_snapshot_is_compact_and_sorted() -> None:
    snapshot = task_snapshot_json({"title": "Démo", "task_id": "T1", "model": "gpt-5.1-codex"})

    assert snapshot == '{"model":"gpt-5.1-codex","task_id":"T1","title":"Démo"}'


def test_prompt_sections_in_order() -> None:
    prompt = build_prompt(
        "BASE",
        title="Add parser",
        definition_of_done=["parses input", "has tests"],
        approach="Start with the tokenizer.",
        snapshot='{"task_id":"T1"}',
    )

    assert prompt == (
        "BASE\n\n"
        "Task title: Add parser\n"
        "\nDefinition of done:\n"
        "  - parses input\n"
        "  - has tests\n"
        "\nRecommended approach:\n"
        "Start with the tokenizer.\n"
        "\nTask JSON (authoritative):\n"
        '{"task_id":"T1"}\n'
    )


def test_lint_summary_precedes_compiled_context() -> None:
    compiled = render_compiled_context("## Map\n", manifest="pack/manifest.json", commit="abc123def456")

    prompt = build_prompt(
        "BASE",
        title="t",
        definition_of_done=["d"],
        approach="a",
        snapshot="{}",
        lint_summary="Totals: error=1",
        compiled_context=compiled,
    )

    assert prompt.endswith(
        "\nLint summary:\nTotals: error=1\n"
        "\nCompiled context:\nProvenance: manifest=pack/manifest.json commit=abc123def456\n## Map\n"
    )


def test_unknown_commit_in_provenance() -> None:
    assert "commit=unknown" in render_compiled_context("x", manifest="m", commit=None)


def test_base_prompt_falls_back_to_builtin(tmp_path: Path) -> None:
    assert load_base_prompt(None) == DEFAULT_BASE_PROMPT
    assert load_base_prompt(tmp_path / "missing.md") == DEFAULT_BASE_PROMPT
    custom = tmp_path / "prompt.md"
    custom.write_text("Be careful.\n", encoding="utf-8")
    assert load_base_prompt(custom) == "Be careful.\n"
