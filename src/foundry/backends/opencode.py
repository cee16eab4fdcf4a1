from __future__ import annotations

from foundry.backends.base import AgentBackend


class OpenCodeBackend(AgentBackend):
    """OpenCode takes no prompt on the command line; it is started bare."""

    agent_type = "opencode"
    default_binary = "opencode"

    def build_command(self, prompt: str) -> list[str]:
        return [self.binary]
