from __future__ import annotations

import logging
import os
import signal
import subprocess
import tomllib
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from foundry.errors import ExternalToolError, InvalidTransitionError, NotFoundError, PreconditionFailed
from foundry.state import RecordTable, StateStore, require_id, utcnow_iso

logger = logging.getLogger(__name__)

STATUS_PENDING = "pending"
STATUS_RUNNING = "running"
STATUS_PASSED = "passed"
STATUS_FAILED = "failed"

_TRANSITIONS = {
    STATUS_PENDING: {STATUS_RUNNING, STATUS_FAILED},
    STATUS_RUNNING: {STATUS_PASSED, STATUS_FAILED},
    STATUS_PASSED: set(),
    STATUS_FAILED: set(),
}

DEFAULT_CONFIG_FILE = "foundry.toml"


@dataclass(slots=True, frozen=True)
class Gate:
    name: str
    command: str


@dataclass(slots=True)
class GateRun:
    branch_repo: str
    branch_name: str
    gate_name: str
    rev: str
    status: str = STATUS_PENDING
    started_at: str | None = None
    finished_at: str | None = None
    exit_code: int | None = None
    log_path: str = ""
    id: int | None = None

    @property
    def branch_full_name(self) -> str:
        return f"{self.branch_repo}/{self.branch_name}"

    @property
    def passed(self) -> bool:
        return self.status == STATUS_PASSED

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> GateRun:
        exit_code = payload.get("exit_code")
        return cls(
            branch_repo=str(payload["branch_repo"]),
            branch_name=str(payload["branch_name"]),
            gate_name=str(payload["gate_name"]),
            rev=str(payload.get("rev", "")),
            status=str(payload.get("status", STATUS_PENDING)),
            started_at=payload.get("started_at"),
            finished_at=payload.get("finished_at"),
            exit_code=None if exit_code is None else int(exit_code),
            log_path=str(payload.get("log_path") or ""),
            id=payload.get("id"),
        )


@dataclass(slots=True)
class GateBatchResult:
    runs: list[GateRun] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return all(run.passed for run in self.runs)

    @property
    def failed_runs(self) -> list[GateRun]:
        return [run for run in self.runs if not run.passed]


def load_repo_config(checkout_path: Path, config_file: str = DEFAULT_CONFIG_FILE) -> list[Gate]:
    """Read the ordered gate list declared by the checkout's current state."""

    config_path = checkout_path / config_file
    if not config_path.exists():
        return []
    try:
        data = tomllib.loads(config_path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise PreconditionFailed(f"failed to parse {config_file}: {exc}") from exc

    raw_gates = data.get("gates", [])
    if not isinstance(raw_gates, list):
        raise PreconditionFailed(f"{config_file}: 'gates' must be an array of tables")
    gates: list[Gate] = []
    seen: set[str] = set()
    for index, item in enumerate(raw_gates):
        if not isinstance(item, dict):
            raise PreconditionFailed(f"{config_file}: gate #{index + 1} is not a table")
        name = str(item.get("name", "")).strip()
        command = str(item.get("command", "")).strip()
        if not name or not command:
            raise PreconditionFailed(f"{config_file}: gate #{index + 1} needs a name and a command")
        if name in seen:
            raise PreconditionFailed(f"{config_file}: duplicate gate name {name!r}")
        seen.add(name)
        gates.append(Gate(name=name, command=command))
    return gates


def select_gates(gates: list[Gate], gate_name: str | None) -> list[Gate]:
    if not gate_name:
        return list(gates)
    selected = [gate for gate in gates if gate.name == gate_name]
    if not selected:
        raise NotFoundError(f"gate {gate_name!r} not found in repository gate configuration")
    return selected


class GateRunStore:
    def __init__(self, store: StateStore) -> None:
        self.table = RecordTable(store, "gate_runs", label="gate run")

    def create(self, run: GateRun) -> GateRun:
        payload = run.to_dict()
        payload.pop("id", None)
        return GateRun.from_dict(self.table.insert(payload))

    def finish(self, run_id: int, status: str, *, exit_code: int | None) -> GateRun:
        def _change(row: dict[str, Any]) -> None:
            current = str(row.get("status"))
            if status not in _TRANSITIONS.get(current, set()):
                raise InvalidTransitionError(f"gate run {run_id}", current, status)
            row["status"] = status
            row["exit_code"] = exit_code
            row["finished_at"] = utcnow_iso()

        return GateRun.from_dict(self.table.update({"id": int(run_id)}, _change))

    def get(self, run_id: int) -> GateRun | None:
        row = self.table.get_by_id(run_id)
        return GateRun.from_dict(row) if row else None

    def latest(self, repo: str, branch_name: str, gate_name: str) -> GateRun | None:
        rows = self.table.list(branch_repo=repo, branch_name=branch_name, gate_name=gate_name)
        if not rows:
            return None
        return GateRun.from_dict(max(rows, key=lambda row: int(row["id"])))

    def list(self, repo: str, branch_name: str) -> list[GateRun]:
        rows = self.table.list(branch_repo=repo, branch_name=branch_name)
        return [GateRun.from_dict(row) for row in sorted(rows, key=lambda row: -int(row["id"]))]


GateHook = Callable[[Gate, GateRun | None], None]


class GateRunner:
    """Executes gate commands and records one immutable run per invocation."""

    def __init__(
        self,
        runs: GateRunStore,
        log_root: Path,
        *,
        timeout_seconds: float | None = None,
        shell: str = "sh",
    ) -> None:
        self.runs = runs
        self.log_root = log_root
        self.timeout_seconds = timeout_seconds
        self.shell = shell

    def _log_path(self, repo: str, branch_name: str, gate_name: str) -> Path:
        log_dir = self.log_root / repo / branch_name
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            raise ExternalToolError(f"failed to create log dir {log_dir}: {exc}", tool="gate") from exc
        stamp = datetime.now(UTC).strftime("%Y%m%d-%H%M%S-%f")
        return log_dir / f"{gate_name}-{stamp}.log"

    def _execute(self, command: str, checkout_path: Path, log_file) -> int:
        process = subprocess.Popen(
            [self.shell, "-c", command],
            cwd=checkout_path,
            stdin=subprocess.DEVNULL,
            stdout=log_file,
            stderr=subprocess.STDOUT,
            start_new_session=True,
        )
        try:
            return process.wait(timeout=self.timeout_seconds)
        except subprocess.TimeoutExpired:
            logger.warning("Gate command timed out after %ss; terminating", self.timeout_seconds)
            log_file.write(f"\n[foundry] gate timed out after {self.timeout_seconds}s\n".encode())
            log_file.flush()
            try:
                os.killpg(process.pid, signal.SIGTERM)
            except ProcessLookupError:
                pass
            try:
                return process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                os.killpg(process.pid, signal.SIGKILL)
                return process.wait()

    def run_gate(
        self,
        gate: Gate,
        repo: str,
        branch_name: str,
        rev: str,
        checkout_path: Path,
    ) -> GateRun:
        log_path = self._log_path(repo, branch_name, gate.name)
        try:
            log_file = open(log_path, "wb")
        except OSError as exc:
            raise ExternalToolError(f"failed to create log file {log_path}: {exc}", tool="gate") from exc

        with log_file:
            run = self.runs.create(
                GateRun(
                    branch_repo=repo,
                    branch_name=branch_name,
                    gate_name=gate.name,
                    rev=rev,
                    status=STATUS_RUNNING,
                    started_at=utcnow_iso(),
                    log_path=str(log_path),
                )
            )
            run_id = require_id(run.id, "gate run")
            logger.info("Running gate %s on %s/%s at %s", gate.name, repo, branch_name, rev[:8])
            try:
                exit_code = self._execute(gate.command, checkout_path, log_file)
            except OSError as exc:
                self.runs.finish(run_id, STATUS_FAILED, exit_code=None)
                raise ExternalToolError(
                    f"gate {gate.name!r} could not be started: {exc}", tool="gate"
                ) from exc

        status = STATUS_PASSED if exit_code == 0 else STATUS_FAILED
        finished = self.runs.finish(run_id, status, exit_code=exit_code)
        logger.info("Gate %s %s (exit code %s)", gate.name, status, exit_code)
        return finished

    def run_batch(
        self,
        gates: list[Gate],
        repo: str,
        branch_name: str,
        rev: str,
        checkout_path: Path,
        *,
        on_start: GateHook | None = None,
        on_finish: GateHook | None = None,
    ) -> GateBatchResult:
        """Run every gate in order; a failure never stops the remaining gates."""

        result = GateBatchResult()
        for gate in gates:
            if on_start is not None:
                on_start(gate, None)
            run = self.run_gate(gate, repo, branch_name, rev, checkout_path)
            result.runs.append(run)
            if on_finish is not None:
                on_finish(gate, run)
        return result


def read_log_tail(log_path: str, lines: int = 5) -> list[str]:
    if not log_path:
        return []
    try:
        content = Path(log_path).read_text(encoding="utf-8", errors="replace")
    except OSError:
        return []
    return [line for line in content.splitlines()[-lines:] if line.strip()]
