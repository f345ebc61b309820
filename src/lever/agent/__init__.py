"""External coding-agent integration."""

from .events import parse_usage_tokens, rate_limit_retry_delay
from .runner import AgentError, AgentInvocation, AgentRunner, CodexRunner

__all__ = [
    "AgentError",
    "AgentInvocation",
    "AgentRunner",
    "CodexRunner",
    "parse_usage_tokens",
    "rate_limit_retry_delay",
]
