from __future__ import annotations

import logging
import os
import signal
import subprocess
from collections.abc import Callable
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from foundry.backends import AgentBackend
from foundry.errors import InvalidTransitionError, NotFoundError, PreconditionFailed
from foundry.state import RecordTable, StateStore, require_id, utcnow_iso

logger = logging.getLogger(__name__)

STATUS_CREATED = "created"
STATUS_RUNNING = "running"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
STATUS_NEEDS_HELP = "needs_help"
TERMINAL_STATUSES = {STATUS_COMPLETED, STATUS_FAILED}

# created -> failed only covers an agent binary that never started.
_TRANSITIONS = {
    STATUS_CREATED: {STATUS_RUNNING, STATUS_FAILED},
    STATUS_RUNNING: {STATUS_COMPLETED, STATUS_FAILED, STATUS_NEEDS_HELP},
    STATUS_NEEDS_HELP: {STATUS_RUNNING, STATUS_COMPLETED, STATUS_FAILED},
    STATUS_COMPLETED: set(),
    STATUS_FAILED: set(),
}

KILLED_EXIT_CODE = -1


@dataclass(slots=True)
class AgentSession:
    branch_repo: str
    branch_name: str
    agent_type: str
    prompt: str = ""
    pid: int | None = None
    status: str = STATUS_CREATED
    exit_code: int | None = None
    started_at: str | None = None
    ended_at: str | None = None
    id: int | None = None

    @property
    def branch_full_name(self) -> str:
        return f"{self.branch_repo}/{self.branch_name}"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> AgentSession:
        pid = payload.get("pid")
        exit_code = payload.get("exit_code")
        return cls(
            branch_repo=str(payload["branch_repo"]),
            branch_name=str(payload["branch_name"]),
            agent_type=str(payload.get("agent_type", "")),
            prompt=str(payload.get("prompt") or ""),
            pid=None if pid is None else int(pid),
            status=str(payload.get("status", STATUS_CREATED)),
            exit_code=None if exit_code is None else int(exit_code),
            started_at=payload.get("started_at"),
            ended_at=payload.get("ended_at"),
            id=payload.get("id"),
        )


class SessionStore:
    def __init__(self, store: StateStore) -> None:
        self.table = RecordTable(store, "agent_sessions", label="agent session")

    def create(self, session: AgentSession) -> AgentSession:
        payload = session.to_dict()
        payload.pop("id", None)
        return AgentSession.from_dict(self.table.insert(payload))

    def get(self, session_id: int) -> AgentSession | None:
        row = self.table.get_by_id(session_id)
        return AgentSession.from_dict(row) if row else None

    def require(self, session_id: int) -> AgentSession:
        session = self.get(session_id)
        if session is None:
            raise NotFoundError(f"agent session {session_id} not found")
        return session

    def list(self, repo: str | None = None, branch_name: str | None = None) -> list[AgentSession]:
        rows = self.table.list(branch_repo=repo, branch_name=branch_name)
        return [AgentSession.from_dict(row) for row in sorted(rows, key=lambda row: -int(row["id"]))]

    def transition(self, session_id: int, status: str, *, force: bool = False, **fields: Any) -> AgentSession:
        """Move a session to ``status``; ``force`` bypasses the transition table.

        Forcing is reserved for kill, which must be able to end a session no
        matter what was recorded before.
        """

        def _change(row: dict[str, Any]) -> None:
            current = str(row.get("status"))
            if not force and status not in _TRANSITIONS.get(current, set()):
                raise InvalidTransitionError(f"agent session {session_id}", current, status)
            row["status"] = status
            row.update(fields)
            if status in TERMINAL_STATUSES and not row.get("ended_at"):
                row["ended_at"] = utcnow_iso()

        return AgentSession.from_dict(self.table.update({"id": int(session_id)}, _change))


BackendFactory = Callable[[str], AgentBackend]


class AgentSessionManager:
    """Starts agents in branch checkouts and tracks their lifecycle."""

    def __init__(self, sessions: SessionStore, backend_factory: BackendFactory) -> None:
        self.sessions = sessions
        self.backend_factory = backend_factory
        self._processes: dict[int, subprocess.Popen] = {}

    def spawn(
        self,
        branch_repo: str,
        branch_name: str,
        checkout_path: Path,
        agent_type: str,
        prompt: str = "",
        *,
        interactive: bool = False,
    ) -> AgentSession:
        backend = self.backend_factory(agent_type)
        session = self.sessions.create(
            AgentSession(
                branch_repo=branch_repo,
                branch_name=branch_name,
                agent_type=agent_type,
                prompt=prompt,
            )
        )
        session_id = require_id(session.id, "agent session")
        try:
            process = backend.start(checkout_path, prompt, session_id, interactive=interactive)
        except Exception:
            self.sessions.transition(session_id, STATUS_FAILED)
            raise
        self._processes[session_id] = process
        logger.info(
            "Started %s agent session %s for %s/%s (pid %s)",
            agent_type,
            session_id,
            branch_repo,
            branch_name,
            process.pid,
        )
        return self.sessions.transition(
            session_id,
            STATUS_RUNNING,
            pid=process.pid,
            started_at=utcnow_iso(),
        )

    def wait(self, session_id: int, timeout: float | None = None) -> AgentSession:
        """Block until the agent exits and record the outcome.

        When ``timeout`` elapses first the session is returned unchanged and
        the process keeps running.
        """

        session = self.sessions.require(session_id)
        process = self._processes.get(session_id)
        if process is None:
            if session.is_terminal:
                return session
            raise PreconditionFailed(f"agent session {session_id} was not started by this process")
        try:
            exit_code = process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            logger.info("Agent session %s still running after %ss", session_id, timeout)
            return session
        self._processes.pop(session_id, None)

        session = self.sessions.require(session_id)
        if session.is_terminal:
            # Killed while we were waiting; keep the recorded outcome.
            return session
        status = STATUS_COMPLETED if exit_code == 0 else STATUS_FAILED
        logger.info("Agent session %s %s (exit code %s)", session_id, status, exit_code)
        return self.sessions.transition(session_id, status, exit_code=exit_code)

    def run(
        self,
        branch_repo: str,
        branch_name: str,
        checkout_path: Path,
        agent_type: str,
        prompt: str = "",
        *,
        interactive: bool = False,
    ) -> AgentSession:
        session = self.spawn(
            branch_repo,
            branch_name,
            checkout_path,
            agent_type,
            prompt,
            interactive=interactive,
        )
        return self.wait(require_id(session.id, "agent session"))

    @staticmethod
    def is_running(pid: int | None) -> bool:
        if not pid or pid <= 0:
            return False
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        except PermissionError:
            # The pid exists but belongs to someone else.
            return True
        return True

    def _terminate(self, pid: int) -> None:
        try:
            if os.getpgid(pid) == pid:
                os.killpg(pid, signal.SIGTERM)
            else:
                os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            logger.debug("Agent process %s exited before it could be signalled", pid)

    def kill(self, session_id: int) -> AgentSession:
        session = self.sessions.require(session_id)
        if session.pid is None:
            raise PreconditionFailed(f"agent session {session_id} has no process id")
        if session.is_terminal or not self.is_running(session.pid):
            logger.info("Agent session %s is not running; nothing to kill", session_id)
            return session

        self._terminate(session.pid)
        process = self._processes.pop(session_id, None)
        if process is not None:
            try:
                process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                logger.warning("Agent session %s ignored SIGTERM", session_id)
        logger.info("Killed agent session %s (pid %s)", session_id, session.pid)
        return self.sessions.transition(
            session_id,
            STATUS_FAILED,
            force=True,
            exit_code=KILLED_EXIT_CODE,
            ended_at=utcnow_iso(),
        )

    def request_help(self, session_id: int) -> AgentSession:
        return self.sessions.transition(session_id, STATUS_NEEDS_HELP)

    def get(self, session_id: int) -> AgentSession:
        return self.sessions.require(session_id)

    def list(self, repo: str | None = None, branch_name: str | None = None) -> list[AgentSession]:
        return self.sessions.list(repo, branch_name)
