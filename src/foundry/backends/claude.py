from __future__ import annotations

from foundry.backends.base import AgentBackend


class ClaudeCodeBackend(AgentBackend):
    agent_type = "claude"
    default_binary = "claude"

    def build_command(self, prompt: str) -> list[str]:
        command = [self.binary, "--dangerously-skip-permissions"]
        if prompt:
            command.append(prompt)
        return command
