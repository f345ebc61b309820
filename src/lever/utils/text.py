"""Small text helpers shared by the git and logging layers."""

from __future__ import annotations

import re
from typing import Pattern

_WHITESPACE: Pattern[str] = re.compile(r"\s+")

COMMIT_SUBJECT_LIMIT = 50


def collapse_whitespace(value: str | None) -> str:
    return _WHITESPACE.sub(" ", value or "").strip()


def commit_subject(title: str | None, *, task_id: str, limit: int = COMMIT_SUBJECT_LIMIT) -> str:
    """Derive a git commit subject line from a task title.

    Whitespace is collapsed, trailing periods are removed and the result is
    truncated at a word boundary so it fits in ``limit`` characters.  Empty
    titles fall back to ``Update <task_id>``.
    """
    subject = collapse_whitespace(title).rstrip(".").rstrip()
    if not subject:
        return f"Update {task_id}"

    if len(subject) > limit:
        cut = subject[:limit]
        boundary = cut.rfind(" ")
        if boundary > 0:
            cut = cut[:boundary]
        subject = cut.rstrip(" .")

    return subject[:1].upper() + subject[1:]


def compact_text(value: str | None, *, max_length: int = 400) -> str:
    """Collapse whitespace and clip ``value`` for single-line log output."""
    text = collapse_whitespace(value)
    if len(text) <= max_length:
        return text
    return text[: max(max_length - 3, 0)].rstrip() + "..."


__all__ = ["COMMIT_SUBJECT_LIMIT", "collapse_whitespace", "commit_subject", "compact_text"]
