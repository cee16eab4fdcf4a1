from __future__ import annotations

import logging
import os
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import IO, Any

from foundry.errors import ExternalToolError

logger = logging.getLogger(__name__)


class BackendProcessError(ExternalToolError):
    """Raised when an agent binary cannot be started."""


class AgentBackend(ABC):
    agent_type: str = "agent"
    default_binary: str = "agent"

    def __init__(self, binary: str | None = None, *, extra_env: dict[str, str] | None = None) -> None:
        self.binary = binary or self.default_binary
        self.extra_env = dict(extra_env or {})

    @abstractmethod
    def build_command(self, prompt: str) -> list[str]:
        """Return the argv that starts this agent with ``prompt``."""

    def build_environment(self, checkout_path: Path, session_id: int) -> dict[str, str]:
        env = os.environ.copy()
        env.update(self.extra_env)
        env["FOUNDRY_BRANCH"] = str(checkout_path)
        env["FOUNDRY_SESSION_ID"] = str(session_id)
        env.setdefault("TERM", "xterm-256color")
        return env

    def start(
        self,
        checkout_path: Path,
        prompt: str,
        session_id: int,
        *,
        interactive: bool = False,
        stdout: IO[Any] | int | None = None,
        stderr: IO[Any] | int | None = None,
    ) -> subprocess.Popen:
        """Start the agent bound to ``checkout_path``.

        Non-interactive agents get their own process group so a kill reaches
        the tools they spawned. Interactive agents stay in the caller's group
        to keep terminal access.
        """

        command = self.build_command(prompt)
        logger.debug("Starting %s agent in %s", self.agent_type, checkout_path)
        try:
            return subprocess.Popen(
                command,
                cwd=checkout_path,
                env=self.build_environment(checkout_path, session_id),
                stdin=None if interactive else subprocess.DEVNULL,
                stdout=stdout,
                stderr=stderr,
                start_new_session=not interactive,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"{self.agent_type} binary not found: {self.binary}",
                tool=self.agent_type,
            ) from exc
        except OSError as exc:
            raise BackendProcessError(
                f"{self.agent_type} agent could not be started: {exc}",
                tool=self.agent_type,
            ) from exc
