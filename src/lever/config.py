"""Workspace configuration loaded from ``lever.yaml``.

Every key is optional; command-line options override whatever the file sets.

.. code-block:: yaml

    tasks: prd.json
    prompt: prompts/autonomous-senior-engineer.prompt.md
    git:
      base_branch: main
    agent:
      command: [codex]
      models: [gpt-5.1-codex-mini, gpt-5.1-codex, gpt-5.2-codex]
      max_attempts: 3
      retry_attempts: 3
    rate_limit:
      window_seconds: 60
      limits:
        gpt-5.1-codex: {tokens: 500000, requests: 500}
    context_compile:
      enabled: false
      policy: best-effort
      token_budget: 8000
      assembly_path: assembly
      exclude_globs: [".git/**", ".ralph/**"]
      exclude_runtime_globs: []
      prompt_lint_summary: false
    loop:
      delay: 0
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Tuple

import yaml

from .tasks.selection import SUPPORTED_MODELS
from .tools.context_compile import (
    DEFAULT_ASSEMBLY_PATH,
    DEFAULT_EXCLUDE_GLOBS,
    DEFAULT_TOKEN_BUDGET,
    ContextCompileConfig,
    ContextPolicy,
)
from .tools.rate_limit import DEFAULT_WINDOW_SECONDS

DEFAULT_CONFIG_NAME = "lever.yaml"
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_RETRY_ATTEMPTS = 3

DEFAULT_CONFIG_TEMPLATE: Dict[str, Any] = {
    "tasks": None,
    "prompt": None,
    "git": {"base_branch": None},
    "agent": {
        "command": ["codex"],
        "models": list(SUPPORTED_MODELS),
        "max_attempts": DEFAULT_MAX_ATTEMPTS,
        "retry_attempts": DEFAULT_RETRY_ATTEMPTS,
    },
    "rate_limit": {"window_seconds": DEFAULT_WINDOW_SECONDS, "limits": {}},
    "context_compile": {
        "enabled": False,
        "policy": ContextPolicy.BEST_EFFORT.value,
        "token_budget": DEFAULT_TOKEN_BUDGET,
        "assembly_path": DEFAULT_ASSEMBLY_PATH,
        "exclude_globs": list(DEFAULT_EXCLUDE_GLOBS),
        "exclude_runtime_globs": [],
        "prompt_lint_summary": False,
    },
    "loop": {"delay": 0},
}


class ConfigError(RuntimeError):
    """Raised when the configuration file is unreadable or malformed."""


@dataclass(slots=True)
class AgentSettings:
    command: List[str] = field(default_factory=lambda: ["codex"])
    models: List[str] = field(default_factory=lambda: list(SUPPORTED_MODELS))
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS


@dataclass(slots=True)
class RateLimitSettings:
    window_seconds: float = DEFAULT_WINDOW_SECONDS
    limits: Dict[str, Tuple[int, int]] = field(default_factory=dict)


@dataclass(slots=True)
class Settings:
    """Resolved configuration for one workspace."""

    workspace: Path
    tasks_path: Path | None = None
    prompt_path: Path | None = None
    base_branch: str | None = None
    agent: AgentSettings = field(default_factory=AgentSettings)
    rate_limit: RateLimitSettings = field(default_factory=RateLimitSettings)
    context_compile: ContextCompileConfig = field(default_factory=ContextCompileConfig)
    loop_delay: float = 0.0


def _merge(base: Dict[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Path) -> Dict[str, Any]:
    """Load YAML configuration from disk and return it as a dictionary."""
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except OSError as error:
        raise ConfigError(f"Failed to read config {config_path}: {error}") from error
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config {config_path}: {error}") from error

    if not isinstance(data, dict):
        raise ConfigError("Configuration must be a mapping at the top level.")

    return data


def _workspace_path(value: Any, workspace: Path) -> Path | None:
    if not isinstance(value, str) or not value.strip():
        return None
    candidate = Path(value.strip()).expanduser()
    if not candidate.is_absolute():
        candidate = workspace / candidate
    return candidate


def _string_list(value: Any, default: List[str]) -> List[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, list):
        return [str(item) for item in value if isinstance(item, (str, int, float))]
    return list(default)


def _positive_int(value: Any, default: int, key: str) -> int:
    if value is None:
        return default
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        raise ConfigError(f"{key} must be a positive integer, got {value!r}")
    return value


def _limits(value: Any) -> Dict[str, Tuple[int, int]]:
    if not value:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError("rate_limit.limits must be a mapping of model name to limits.")
    limits: Dict[str, Tuple[int, int]] = {}
    for model, entry in value.items():
        if not isinstance(entry, Mapping):
            raise ConfigError(f"rate_limit.limits.{model} must be a mapping with tokens and requests.")
        tokens = _positive_int(entry.get("tokens"), 0, f"rate_limit.limits.{model}.tokens")
        requests = _positive_int(entry.get("requests"), 0, f"rate_limit.limits.{model}.requests")
        limits[str(model)] = (tokens, requests)
    return limits


def _policy(value: Any) -> ContextPolicy:
    try:
        return ContextPolicy(str(value))
    except ValueError as error:
        choices = ", ".join(policy.value for policy in ContextPolicy)
        raise ConfigError(f"context_compile.policy must be one of {choices}, got {value!r}") from error


def settings_from_mapping(data: Mapping[str, Any], workspace: Path) -> Settings:
    """Build :class:`Settings` from raw configuration merged over the defaults."""
    merged = _merge(DEFAULT_CONFIG_TEMPLATE, data)
    agent_cfg = merged.get("agent") or {}
    rate_cfg = merged.get("rate_limit") or {}
    context_cfg = merged.get("context_compile") or {}
    loop_cfg = merged.get("loop") or {}
    git_cfg = merged.get("git") or {}

    delay = loop_cfg.get("delay") or 0
    if isinstance(delay, bool) or not isinstance(delay, (int, float)) or delay < 0:
        raise ConfigError(f"loop.delay must be a non-negative number, got {delay!r}")

    window = rate_cfg.get("window_seconds") or DEFAULT_WINDOW_SECONDS
    if isinstance(window, bool) or not isinstance(window, (int, float)) or window <= 0:
        raise ConfigError(f"rate_limit.window_seconds must be positive, got {window!r}")

    base_branch = git_cfg.get("base_branch")

    return Settings(
        workspace=workspace,
        tasks_path=_workspace_path(merged.get("tasks"), workspace),
        prompt_path=_workspace_path(merged.get("prompt"), workspace),
        base_branch=str(base_branch) if base_branch else None,
        agent=AgentSettings(
            command=_string_list(agent_cfg.get("command"), ["codex"]),
            models=_string_list(agent_cfg.get("models"), list(SUPPORTED_MODELS)),
            max_attempts=_positive_int(agent_cfg.get("max_attempts"), DEFAULT_MAX_ATTEMPTS, "agent.max_attempts"),
            retry_attempts=_positive_int(
                agent_cfg.get("retry_attempts"), DEFAULT_RETRY_ATTEMPTS, "agent.retry_attempts"
            ),
        ),
        rate_limit=RateLimitSettings(window_seconds=float(window), limits=_limits(rate_cfg.get("limits"))),
        context_compile=ContextCompileConfig(
            enabled=bool(context_cfg.get("enabled")),
            policy=_policy(context_cfg.get("policy") or ContextPolicy.BEST_EFFORT.value),
            token_budget=_positive_int(context_cfg.get("token_budget"), DEFAULT_TOKEN_BUDGET, "context_compile.token_budget"),
            assembly_path=str(context_cfg.get("assembly_path") or DEFAULT_ASSEMBLY_PATH),
            exclude_globs=_string_list(context_cfg.get("exclude_globs"), list(DEFAULT_EXCLUDE_GLOBS)),
            exclude_runtime_globs=_string_list(context_cfg.get("exclude_runtime_globs"), []),
            prompt_lint_summary=bool(context_cfg.get("prompt_lint_summary")),
        ),
        loop_delay=float(delay),
    )


def load_settings(workspace: Path, config_path: Path | None = None) -> Settings:
    """Load settings for ``workspace``.

    An explicit ``config_path`` must exist.  Otherwise ``lever.yaml`` in the
    workspace is used when present, and defaults apply when it is not.
    """
    if config_path is not None:
        if not config_path.is_file():
            raise ConfigError(f"Config file not found: {config_path}")
        data = load_config(config_path)
    else:
        default_path = workspace / DEFAULT_CONFIG_NAME
        data = load_config(default_path) if default_path.is_file() else {}
    return settings_from_mapping(data, workspace)


__all__ = [
    "AgentSettings",
    "ConfigError",
    "DEFAULT_CONFIG_NAME",
    "DEFAULT_CONFIG_TEMPLATE",
    "RateLimitSettings",
    "Settings",
    "load_config",
    "load_settings",
    "settings_from_mapping",
]
