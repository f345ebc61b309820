"""Readers for the agent's line-delimited JSON event log."""

from __future__ import annotations

import json
import math
import re
from pathlib import Path
from typing import Any, Iterator, Mapping

_RETRY_HINT = "please try again in "
_NUMBER = re.compile(r"[0-9.]+")


def iter_events(path: Path) -> Iterator[Mapping[str, Any]]:
    """Yield every JSON object line in ``path``; other lines are ignored."""
    try:
        handle = path.open("r", encoding="utf-8", errors="replace")
    except OSError:
        return
    with handle:
        for line in handle:
            stripped = line.strip()
            if not stripped.startswith("{"):
                continue
            try:
                payload = json.loads(stripped)
            except json.JSONDecodeError:
                continue
            if isinstance(payload, Mapping):
                yield payload


def _int(value: Any) -> int | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return int(value)


def parse_usage_tokens(path: Path) -> int | None:
    """Return the token total of the last ``turn.completed`` event, if any."""
    usage_tokens: int | None = None
    for event in iter_events(path):
        if event.get("type") != "turn.completed":
            continue
        usage = event.get("usage")
        if not isinstance(usage, Mapping):
            continue
        input_tokens = _int(usage.get("input_tokens", usage.get("prompt_tokens"))) or 0
        output_tokens = _int(usage.get("output_tokens", usage.get("completion_tokens"))) or 0
        total = _int(usage.get("total_tokens"))
        if total is None:
            total = input_tokens + output_tokens
        if total > 0:
            usage_tokens = total
    return usage_tokens


def rate_limit_retry_delay(path: Path) -> int | None:
    """Return the retry-after hint (seconds) from a rate-limit rejection."""
    try:
        raw = path.read_text(encoding="utf-8", errors="replace")
    except OSError:
        return None
    lower = raw.lower()
    if "rate limit" not in lower and "rate-limit" not in lower:
        return None
    index = lower.find(_RETRY_HINT)
    if index < 0:
        return None
    match = _NUMBER.match(lower, index + len(_RETRY_HINT))
    if match is None:
        return None
    try:
        return math.ceil(float(match.group(0)))
    except ValueError:
        return None


__all__ = ["iter_events", "parse_usage_tokens", "rate_limit_retry_delay"]
