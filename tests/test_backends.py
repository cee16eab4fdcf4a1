from pathlib import Path

import pytest

from foundry.backends import (
    BackendProcessError,
    ClaudeCodeBackend,
    CodexBackend,
    OpenCodeBackend,
    build_backend,
)
from foundry.config import AgentsConfig
from foundry.errors import PreconditionFailed


def test_claude_build_command_shape() -> None:
    backend = ClaudeCodeBackend(binary="claude")

    assert backend.build_command("fix the bug") == ["claude", "--dangerously-skip-permissions", "fix the bug"]
    assert backend.build_command("") == ["claude", "--dangerously-skip-permissions"]


def test_codex_and_opencode_build_command_shape() -> None:
    assert CodexBackend().build_command("write tests") == ["codex", "write tests"]
    assert CodexBackend().build_command("") == ["codex"]
    assert OpenCodeBackend(binary="/usr/local/bin/opencode").build_command("ignored") == [
        "/usr/local/bin/opencode"
    ]


def test_build_backend_uses_configured_binaries() -> None:
    config = AgentsConfig(claude_binary="/opt/claude", codex_binary="/opt/codex")

    claude = build_backend("claude", config)
    codex = build_backend("codex", config)

    assert isinstance(claude, ClaudeCodeBackend) and claude.binary == "/opt/claude"
    assert isinstance(codex, CodexBackend) and codex.binary == "/opt/codex"
    assert isinstance(build_backend("opencode"), OpenCodeBackend)


def test_build_backend_rejects_unknown_type() -> None:
    with pytest.raises(PreconditionFailed, match="unknown agent type: aider"):
        build_backend("aider")


def test_environment_exports_session_and_checkout(tmp_path: Path) -> None:
    env = ClaudeCodeBackend().build_environment(tmp_path, 42)

    assert env["FOUNDRY_SESSION_ID"] == "42"
    assert env["FOUNDRY_BRANCH"] == str(tmp_path)
    assert "TERM" in env


def test_missing_binary_raises_process_error(tmp_path: Path) -> None:
    backend = CodexBackend(binary=str(tmp_path / "missing-codex"))

    with pytest.raises(BackendProcessError, match="codex binary not found") as exc_info:
        backend.start(tmp_path, "prompt", 1)
    assert exc_info.value.tool == "codex"
