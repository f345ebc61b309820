"""Prompt assembly for a single agent run."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Mapping, Sequence

DEFAULT_PROMPT_PATH = Path("prompts") / "autonomous-senior-engineer.prompt.md"

DEFAULT_BASE_PROMPT = (
    "You are an autonomous senior engineer working alone in this repository. "
    "Complete the task below end to end: make the code changes, add or update tests, "
    "and keep the diff focused. Do not ask questions; record assumptions in your notes.\n"
    "When you finish, reply with a JSON object matching the provided output schema. "
    "Report outcome=completed and dod_met=true only when every definition-of-done item holds. "
    "Use outcome=blocked with blockers when progress needs a human.\n"
)


def task_snapshot_json(raw: Mapping[str, Any]) -> str:
    """Compact, key-sorted JSON for the task entry."""
    return json.dumps(raw, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def load_base_prompt(path: Path | None) -> str:
    """Return the base prompt text, falling back to the built-in prompt when absent."""
    if path is None or not path.is_file():
        return DEFAULT_BASE_PROMPT
    return path.read_text(encoding="utf-8")


def render_task_section(title: str, definition_of_done: Sequence[str], approach: str, snapshot: str) -> str:
    lines = [f"Task title: {title}\n", "\nDefinition of done:\n"]
    lines.extend(f"  - {item}\n" for item in definition_of_done)
    lines.append("\nRecommended approach:\n")
    lines.append(f"{approach}\n")
    lines.append("\nTask JSON (authoritative):\n")
    lines.append(snapshot if snapshot.endswith("\n") else f"{snapshot}\n")
    return "".join(lines)


def render_compiled_context(context: str, *, manifest: str, commit: str | None) -> str:
    provenance = f"Provenance: manifest={manifest} commit={commit or 'unknown'}\n"
    body = context if context.endswith("\n") or not context else f"{context}\n"
    return f"\nCompiled context:\n{provenance}{body}"


def build_prompt(
    base_prompt: str,
    *,
    title: str,
    definition_of_done: Sequence[str],
    approach: str,
    snapshot: str,
    lint_summary: str | None = None,
    compiled_context: str | None = None,
) -> str:
    """Join the base prompt, the task brief and optional pack sections."""
    prompt = f"{base_prompt}\n\n{render_task_section(title, definition_of_done, approach, snapshot)}"
    if lint_summary:
        prompt += f"\nLint summary:\n{lint_summary}"
        if not prompt.endswith("\n"):
            prompt += "\n"
    if compiled_context:
        prompt += compiled_context
    return prompt


__all__ = [
    "DEFAULT_BASE_PROMPT",
    "DEFAULT_PROMPT_PATH",
    "build_prompt",
    "load_base_prompt",
    "render_compiled_context",
    "render_task_section",
    "task_snapshot_json",
]
