from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Protocol

from foundry.state import utcnow_iso

logger = logging.getLogger(__name__)

BRANCH_CREATED = "branch.created"
BRANCH_MERGED = "branch.merged"
BRANCH_ABANDONED = "branch.abandoned"
GATE_STARTED = "gate.started"
GATE_PASSED = "gate.passed"
GATE_FAILED = "gate.failed"
AGENT_STARTED = "agent.started"
AGENT_COMPLETED = "agent.completed"
TASK_CREATED = "task.created"
TASK_CLOSED = "task.closed"


@dataclass(slots=True)
class Event:
    type: str
    repo: str = ""
    branch: str = ""
    task: str = ""
    gate_name: str = ""
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value not in ("", {})}


class EventSink(Protocol):
    def publish(self, event: Event) -> None: ...


class NullEventSink:
    def publish(self, event: Event) -> None:
        return None


class JsonlEventSink:
    """Appends one JSON object per line to ``path``."""

    def __init__(self, path: Path) -> None:
        self.path = path

    def publish(self, event: Event) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self.path.open("a", encoding="utf-8") as handle:
            handle.write(json.dumps(event.to_dict(), ensure_ascii=False, sort_keys=True))
            handle.write("\n")


def read_events(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        return []
    events: list[dict[str, Any]] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        if not line.strip():
            continue
        try:
            events.append(json.loads(line))
        except json.JSONDecodeError:
            logger.warning("Skipping malformed event line in %s", path)
    return events


def emit(sink: EventSink | None, event: Event) -> None:
    """Publish ``event``; a failing sink is logged and never reaches the caller."""

    if sink is None:
        return
    try:
        sink.publish(event)
    except Exception:
        logger.warning("Failed to publish %s event", event.type, exc_info=True)
