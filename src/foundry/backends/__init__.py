from __future__ import annotations

from foundry.backends.base import AgentBackend, BackendProcessError
from foundry.backends.claude import ClaudeCodeBackend
from foundry.backends.codex import CodexBackend
from foundry.backends.opencode import OpenCodeBackend
from foundry.config import AgentsConfig
from foundry.errors import PreconditionFailed

AGENT_TYPES = ("claude", "codex", "opencode")


def build_backend(
    agent_type: str,
    config: AgentsConfig | None = None,
    *,
    extra_env: dict[str, str] | None = None,
) -> AgentBackend:
    config = config or AgentsConfig()
    if agent_type == "claude":
        return ClaudeCodeBackend(config.claude_binary, extra_env=extra_env)
    if agent_type == "codex":
        return CodexBackend(config.codex_binary, extra_env=extra_env)
    if agent_type == "opencode":
        return OpenCodeBackend(config.opencode_binary, extra_env=extra_env)
    raise PreconditionFailed(
        f"unknown agent type: {agent_type} (expected one of: {', '.join(AGENT_TYPES)})"
    )


__all__ = [
    "AGENT_TYPES",
    "AgentBackend",
    "BackendProcessError",
    "ClaudeCodeBackend",
    "CodexBackend",
    "OpenCodeBackend",
    "build_backend",
]
