from __future__ import annotations

from foundry.backends.base import AgentBackend


class CodexBackend(AgentBackend):
    agent_type = "codex"
    default_binary = "codex"

    def build_command(self, prompt: str) -> list[str]:
        return [self.binary, prompt] if prompt else [self.binary]
