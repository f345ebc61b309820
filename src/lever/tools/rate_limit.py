"""Sliding-window request and token throttling for agent calls.

Usage is persisted in a small JSON ledger shared by every run in the
workspace::

    {"requests": [{"ts": 1700000000.0, "model": "gpt-5.1-codex", "tokens": 4200}]}

The ledger is read and rewritten without locking; a single orchestrator per
workspace is assumed.
"""

from __future__ import annotations

import json
import logging
import math
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Tuple

LOGGER = logging.getLogger(__name__)

LEDGER_PATH = Path(".ralph") / "rate_limit.json"
DEFAULT_WINDOW_SECONDS = 60.0
MIN_TOKEN_ESTIMATE = 1000

DEFAULT_LIMITS: Dict[str, Tuple[int, int]] = {
    "gpt-5.1-codex-mini": (200_000, 500),
    "gpt-5.1-codex": (500_000, 500),
    "gpt-5.2-codex": (500_000, 500),
}
FALLBACK_LIMITS: Tuple[int, int] = (200_000, 500)


@dataclass(slots=True)
class LedgerEntry:
    ts: float
    model: str
    tokens: int

    def to_dict(self) -> Dict[str, Any]:
        return {"ts": self.ts, "model": self.model, "tokens": self.tokens}

    @classmethod
    def from_payload(cls, payload: Any) -> "LedgerEntry | None":
        if not isinstance(payload, Mapping):
            return None
        ts = payload.get("ts")
        model = payload.get("model")
        tokens = payload.get("tokens")
        if isinstance(ts, bool) or not isinstance(ts, (int, float)):
            return None
        if not isinstance(model, str):
            return None
        if isinstance(tokens, bool) or not isinstance(tokens, (int, float)):
            tokens = 0
        return cls(ts=float(ts), model=model, tokens=int(tokens))


class RateLedger:
    """File-backed ledger with an explicit read / write contract.

    ``read`` returns the whole document and its parsed entries; ``write``
    replaces the entry list while keeping any other top-level keys.  A missing
    or unreadable file reads as an empty ledger.
    """

    def __init__(self, path: Path | str) -> None:
        self.path = Path(path)

    @classmethod
    def for_workspace(cls, workspace: Path) -> "RateLedger":
        return cls(workspace / LEDGER_PATH)

    def read(self) -> Tuple[Dict[str, Any], List[LedgerEntry]]:
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return {"requests": []}, []
        if not isinstance(payload, dict):
            return {"requests": []}, []
        raw = payload.get("requests")
        entries: List[LedgerEntry] = []
        if isinstance(raw, list):
            for item in raw:
                entry = LedgerEntry.from_payload(item)
                if entry is not None:
                    entries.append(entry)
        return payload, entries

    def write(self, payload: Dict[str, Any], entries: List[LedgerEntry]) -> None:
        document = dict(payload)
        document["requests"] = [entry.to_dict() for entry in entries]
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(json.dumps(document), encoding="utf-8")


def limits_for(model: str, overrides: Mapping[str, Tuple[int, int]] | None = None) -> Tuple[int, int]:
    """Return ``(tokens_per_window, requests_per_window)`` for ``model``."""
    if overrides and model in overrides:
        return overrides[model]
    return DEFAULT_LIMITS.get(model, FALLBACK_LIMITS)


def estimate_prompt_tokens(path: Path) -> int:
    """Coarse token estimate for a prompt file: one token per four bytes."""
    try:
        size = path.stat().st_size
    except OSError:
        return MIN_TOKEN_ESTIMATE
    if size == 0:
        return MIN_TOKEN_ESTIMATE
    return max(MIN_TOKEN_ESTIMATE, math.ceil(size / 4))


def compute_sleep_seconds(
    entries: List[LedgerEntry],
    *,
    model: str,
    now: float,
    window: float,
    token_limit: int,
    request_limit: int,
    estimated_tokens: int,
) -> int:
    """Return whole seconds to wait so neither cap is exceeded by one more call."""
    recent = sorted(
        (entry for entry in entries if entry.model == model and now - entry.ts < window),
        key=lambda entry: entry.ts,
    )
    sleep_for = 0.0

    if request_limit > 0 and len(recent) >= request_limit:
        oldest_counted = recent[len(recent) - request_limit]
        sleep_for = max(sleep_for, oldest_counted.ts + window - now)

    if token_limit > 0:
        used = sum(entry.tokens for entry in recent)
        excess = used + estimated_tokens - token_limit
        if excess > 0:
            dropped = 0
            for entry in recent:
                dropped += entry.tokens
                if dropped >= excess:
                    sleep_for = max(sleep_for, entry.ts + window - now)
                    break
            else:
                # The estimate alone overshoots; wait for the window to empty.
                if recent:
                    sleep_for = max(sleep_for, recent[-1].ts + window - now)

    return math.ceil(max(sleep_for, 0.0))


@dataclass(slots=True)
class RateLimiter:
    """Pre-call throttle and post-call usage recorder for one workspace."""

    ledger: RateLedger
    window: float = DEFAULT_WINDOW_SECONDS
    limits: Dict[str, Tuple[int, int]] = field(default_factory=dict)
    clock: Callable[[], float] = time.time
    sleeper: Callable[[float], None] = time.sleep

    def sleep_seconds(self, model: str, estimated_tokens: int, *, now: float | None = None) -> int:
        token_limit, request_limit = limits_for(model, self.limits)
        _, entries = self.ledger.read()
        return compute_sleep_seconds(
            entries,
            model=model,
            now=self.clock() if now is None else now,
            window=self.window,
            token_limit=token_limit,
            request_limit=request_limit,
            estimated_tokens=estimated_tokens,
        )

    def throttle(self, model: str, estimated_tokens: int, *, cancelled: Callable[[], bool] | None = None) -> int:
        """Sleep until a call for ``model`` fits in the window; return the planned delay."""
        delay = self.sleep_seconds(model, estimated_tokens)
        if delay > 0:
            LOGGER.info("Rate limit throttle: sleeping %ss for %s.", delay, model)
            self.pause(delay, cancelled=cancelled)
        return delay

    def pause(self, seconds: int, *, cancelled: Callable[[], bool] | None = None) -> None:
        remaining = seconds
        while remaining > 0:
            if cancelled is not None and cancelled():
                return
            self.sleeper(1)
            remaining -= 1

    def record(self, model: str, tokens: int, *, now: float | None = None) -> None:
        """Append a usage entry and prune everything outside the window."""
        moment = self.clock() if now is None else now
        payload, entries = self.ledger.read()
        kept = [entry for entry in entries if moment - entry.ts < self.window]
        kept.append(LedgerEntry(ts=moment, model=model, tokens=int(tokens)))
        self.ledger.write(payload, kept)


__all__ = [
    "DEFAULT_LIMITS",
    "DEFAULT_WINDOW_SECONDS",
    "LEDGER_PATH",
    "LedgerEntry",
    "RateLedger",
    "RateLimiter",
    "compute_sleep_seconds",
    "estimate_prompt_tokens",
    "limits_for",
]
