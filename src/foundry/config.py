from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

AgentType = Literal["claude", "codex", "opencode"]
LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


def _default_data_dir() -> str:
    return str(Path.home() / ".local" / "share" / "foundry")


def default_config_path() -> Path:
    return Path.home() / ".config" / "foundry" / "config.toml"


@dataclass(slots=True)
class ServerConfig:
    data_dir: str = field(default_factory=_default_data_dir)


@dataclass(slots=True)
class AgentsConfig:
    default_type: AgentType = "claude"
    claude_binary: str = "claude"
    codex_binary: str = "codex"
    opencode_binary: str = "opencode"


@dataclass(slots=True)
class GatesConfig:
    config_file: str = "foundry.toml"
    timeout_seconds: float = 0.0


@dataclass(slots=True)
class EventsConfig:
    enabled: bool = True
    file: str = "events.jsonl"


@dataclass(slots=True)
class LoggingConfig:
    level: str = "INFO"


@dataclass(slots=True)
class FoundryConfig:
    server: ServerConfig = field(default_factory=ServerConfig)
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    gates: GatesConfig = field(default_factory=GatesConfig)
    events: EventsConfig = field(default_factory=EventsConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def default(cls) -> FoundryConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> FoundryConfig:
        config = cls(
            server=ServerConfig(**data.get("server", {})),
            agents=AgentsConfig(**data.get("agents", {})),
            gates=GatesConfig(**data.get("gates", {})),
            events=EventsConfig(**data.get("events", {})),
            logging=LoggingConfig(**data.get("logging", {})),
        )
        config.logging.level = _normalize_log_level(config.logging.level)
        return config

    @property
    def data_path(self) -> Path:
        return Path(self.server.data_dir).expanduser().resolve()

    @property
    def gate_timeout(self) -> float | None:
        timeout = float(self.gates.timeout_seconds)
        return timeout if timeout > 0 else None

    def to_dict(self) -> dict:
        return {
            "server": {
                "data_dir": self.server.data_dir,
            },
            "agents": {
                "default_type": self.agents.default_type,
                "claude_binary": self.agents.claude_binary,
                "codex_binary": self.agents.codex_binary,
                "opencode_binary": self.agents.opencode_binary,
            },
            "gates": {
                "config_file": self.gates.config_file,
                "timeout_seconds": float(self.gates.timeout_seconds),
            },
            "events": {
                "enabled": self.events.enabled,
                "file": self.events.file,
            },
            "logging": {
                "level": self.logging.level,
            },
        }


def _normalize_log_level(value: str) -> str:
    normalized = str(value).strip().upper()
    if normalized not in LOG_LEVELS:
        raise ValueError(f"logging.level must be one of {', '.join(LOG_LEVELS)}")
    return normalized


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0")
        return rendered + "0" if rendered.endswith(".") else rendered
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: FoundryConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    for section in ["server", "agents", "gates", "events", "logging"]:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path, *, data_dir: str | None = None) -> FoundryConfig:
    if path.exists():
        config = FoundryConfig.from_dict(tomllib.loads(path.read_text(encoding="utf-8")))
    else:
        config = FoundryConfig.default()
    if data_dir:
        config.server.data_dir = data_dir
    return config


def save_config(path: Path, config: FoundryConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_toml(config), encoding="utf-8")
