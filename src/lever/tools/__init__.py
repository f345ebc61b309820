"""Subprocess-backed integrations: git, verification, rate limiting and context packs."""

from .context_compile import (
    AssemblyPackBuilder,
    ContextCompileConfig,
    ContextCompileError,
    ContextCompileReport,
    ContextPolicy,
    PackBuilder,
    PackBuildRequest,
    PackBuildResult,
    evaluate_pack,
)
from .git_session import GitSession, resolve_base_branch, run_branch
from .rate_limit import RateLedger, RateLimiter, compute_sleep_seconds, estimate_prompt_tokens
from .vcs import GitError, GitRepository
from .verification import ShellVerificationRunner, VerificationResult, VerificationRunner

__all__ = [
    "AssemblyPackBuilder",
    "ContextCompileConfig",
    "ContextCompileError",
    "ContextCompileReport",
    "ContextPolicy",
    "GitError",
    "GitRepository",
    "GitSession",
    "PackBuildRequest",
    "PackBuildResult",
    "PackBuilder",
    "RateLedger",
    "RateLimiter",
    "ShellVerificationRunner",
    "VerificationResult",
    "VerificationRunner",
    "compute_sleep_seconds",
    "estimate_prompt_tokens",
    "evaluate_pack",
    "resolve_base_branch",
    "run_branch",
]
