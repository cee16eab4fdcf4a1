from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from foundry.backends import AgentBackend, build_backend
from foundry.branches import (
    STATUS_ABANDONED,
    STATUS_ACTIVE,
    STATUS_MERGED,
    Branch,
    BranchStore,
    parse_env_spec,
    validate_branch_name,
)
from foundry.config import FoundryConfig
from foundry.errors import (
    AlreadyExistsError,
    BlockedTaskError,
    FoundryError,
    GateCheckError,
    GitError,
    PreconditionFailed,
)
from foundry.events import (
    AGENT_COMPLETED,
    AGENT_STARTED,
    BRANCH_ABANDONED,
    BRANCH_CREATED,
    BRANCH_MERGED,
    GATE_FAILED,
    GATE_PASSED,
    GATE_STARTED,
    TASK_CLOSED,
    TASK_CREATED,
    Event,
    EventSink,
    JsonlEventSink,
    NullEventSink,
    emit,
)
from foundry.gates import (
    Gate,
    GateBatchResult,
    GateRun,
    GateRunner,
    GateRunStore,
    load_repo_config,
    read_log_tail,
    select_gates,
)
from foundry.git import GitClient, create_local_checkout, remove_local_checkout
from foundry.repos import RepoStore
from foundry.sessions import STATUS_COMPLETED, AgentSession, AgentSessionManager, SessionStore
from foundry.state import StateStore, require_id
from foundry.tasks import (
    DEFAULT_PRIORITY,
    STATUS_CLOSED,
    STATUS_IN_PROGRESS,
    STATUS_OPEN,
    Blocker,
    Task,
    TaskStore,
    generate_slug,
    resolve_ref,
)

logger = logging.getLogger(__name__)

MASTER_REF = "refs/heads/master"


@dataclass(slots=True)
class BranchCreation:
    branch: Branch
    session: AgentSession | None = None
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class MergeResult:
    branch: Branch
    master_rev: str
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class AbandonResult:
    branch: Branch
    warnings: list[str] = field(default_factory=list)


@dataclass(slots=True)
class GateStatus:
    gate: Gate
    run: GateRun | None
    current_rev: str

    @property
    def stale(self) -> bool:
        return self.run is not None and self.run.rev != self.current_rev

    @property
    def log_tail(self) -> list[str]:
        if self.run is None or self.run.passed:
            return []
        return read_log_tail(self.run.log_path)


class Supervisor:
    """Owns branch lifecycle and every task status change that follows from it."""

    def __init__(
        self,
        config: FoundryConfig,
        *,
        git: GitClient | None = None,
        event_sink: EventSink | None = None,
        backend_factory: Callable[[str], AgentBackend] | None = None,
        config_path: Path | None = None,
    ) -> None:
        self.config = config
        self.data_dir = config.data_path
        self.config_path = Path(config_path).resolve() if config_path is not None else None
        self.git = git or GitClient()
        self.state = StateStore(self.data_dir / "state")
        self.repos = RepoStore(self.data_dir, self.git)
        self.tasks = TaskStore(self.state)
        self.branches = BranchStore(self.state)
        self.gate_runs = GateRunStore(self.state)
        self.gate_runner = GateRunner(
            self.gate_runs,
            self.data_dir / "logs",
            timeout_seconds=config.gate_timeout,
        )
        self.agents = AgentSessionManager(
            SessionStore(self.state),
            backend_factory or self._build_backend,
        )
        if event_sink is not None:
            self.events = event_sink
        elif config.events.enabled:
            self.events = JsonlEventSink(self.data_dir / config.events.file)
        else:
            self.events = NullEventSink()

    def _build_backend(self, agent_type: str) -> AgentBackend:
        # Agents run `foundry` themselves against the same state.
        agent_env = {"FOUNDRY_DATA_DIR": str(self.data_dir)}
        if self.config_path is not None:
            agent_env["FOUNDRY_CONFIG"] = str(self.config_path)
        return build_backend(agent_type, self.config.agents, extra_env=agent_env)

    def _emit(self, event_type: str, **fields: Any) -> None:
        emit(self.events, Event(type=event_type, **fields))

    @staticmethod
    def _advisory(warnings: list[str], message: str) -> None:
        logger.warning(message)
        warnings.append(message)

    # Tasks

    def create_task(
        self,
        repo: str,
        title: str,
        *,
        slug: str | None = None,
        body: str = "",
        priority: int = DEFAULT_PRIORITY,
        depends_on: list[str] | None = None,
    ) -> Task:
        self.repos.require(repo)
        slug = slug or generate_slug(title)
        if not slug:
            raise PreconditionFailed(f"cannot derive a task slug from title {title!r}; pass one explicitly")
        task = self.tasks.create(
            Task(
                repo=repo,
                slug=slug,
                title=title,
                body=body,
                priority=priority,
                depends_on=list(depends_on or []),
            )
        )
        logger.info("Created task %s", task.full_name)
        self._emit(TASK_CREATED, repo=repo, task=task.full_name)
        return task

    def get_task(self, task_ref: str, default_repo: str = "") -> Task:
        repo, slug = resolve_ref(task_ref, default_repo)
        return self.tasks.require(repo, slug)

    def list_tasks(self, repo: str | None = None, status: str | None = None) -> list[Task]:
        return self.tasks.list(repo, status)

    def task_blockers(self, task: Task) -> list[Blocker]:
        return self.tasks.is_blocked(task)[1]

    def close_task(self, repo: str, slug: str) -> Task:
        task = self.tasks.require(repo, slug)
        if task.status == STATUS_CLOSED:
            raise PreconditionFailed(f"task {task.full_name} is already closed")
        closed = self.tasks.update_status(repo, slug, STATUS_CLOSED)
        self._emit(TASK_CLOSED, repo=repo, task=closed.full_name)
        return closed

    # Branches

    def get_branch(self, repo: str, name: str) -> Branch:
        return self.branches.require(repo, name)

    def list_branches(self, repo: str | None = None, status: str | None = None) -> list[Branch]:
        return self.branches.list(repo, status)

    def _require_active(self, repo: str, name: str) -> Branch:
        branch = self.branches.require(repo, name)
        if branch.status != STATUS_ACTIVE:
            raise PreconditionFailed(f"branch {branch.full_name} is not active (status: {branch.status})")
        return branch

    def create_branch(
        self,
        repo: str,
        name: str,
        *,
        env_spec: str = "local",
        task_ref: str | None = None,
        agent_type: str | None = None,
        prompt: str = "",
        interactive: bool = False,
    ) -> BranchCreation:
        """Create a checkout and its branch row, optionally running an agent in it.

        Every precondition is checked before the filesystem is touched, so a
        blocked task or a duplicate name leaves nothing behind.
        """

        validate_branch_name(name)
        source = self.repos.require(repo)
        if self.branches.get(repo, name) is not None:
            raise AlreadyExistsError(f"branch {repo}/{name} already exists")

        task: Task | None = None
        if task_ref:
            task_repo, task_slug = resolve_ref(task_ref, repo)
            task = self.tasks.require(task_repo, task_slug)
            if task.status == STATUS_CLOSED:
                raise PreconditionFailed(f"task {task.full_name} is already closed")
            blocked, blockers = self.tasks.is_blocked(task)
            if blocked:
                raise BlockedTaskError(task.full_name, [str(blocker) for blocker in blockers])

        environment = parse_env_spec(env_spec, repo, name, self.data_dir)
        checkout = Path(environment.path)
        if checkout.exists() and (not checkout.is_dir() or any(checkout.iterdir())):
            raise PreconditionFailed(f"checkout path {checkout} already exists and is not empty")

        base_rev = self.git.try_rev_parse(source.path, MASTER_REF) or ""
        logger.info("Creating checkout for %s/%s at %s", repo, name, checkout)
        create_local_checkout(self.git, source.path, name, checkout)
        try:
            head_rev = self.git.rev_parse(checkout, "HEAD")
            branch = self.branches.create(
                Branch(
                    repo=repo,
                    name=name,
                    environment=environment,
                    base_rev=base_rev,
                    head_rev=head_rev,
                    task_repo=task.repo if task else None,
                    task_slug=task.slug if task else None,
                )
            )
        except FoundryError:
            remove_local_checkout(checkout)
            raise

        if task is not None:
            self.tasks.update_status(task.repo, task.slug, STATUS_IN_PROGRESS)
        self._emit(BRANCH_CREATED, repo=repo, branch=name, task=task.full_name if task else "")

        result = BranchCreation(branch=branch)
        if agent_type:
            session = self._run_agent(branch, agent_type, prompt, interactive=interactive)
            result.session = session
            if session.status != STATUS_COMPLETED:
                self._advisory(
                    result.warnings,
                    f"agent session {session.id} ended with status {session.status} (exit code {session.exit_code})",
                )
        return result

    def _run_agent(self, branch: Branch, agent_type: str, prompt: str, *, interactive: bool) -> AgentSession:
        session = self.agents.spawn(
            branch.repo,
            branch.name,
            branch.checkout_path,
            agent_type,
            prompt,
            interactive=interactive,
        )
        self._emit(AGENT_STARTED, repo=branch.repo, branch=branch.name, data={"session_id": session.id})
        finished = self.agents.wait(require_id(session.id, "agent session"))
        self._emit(
            AGENT_COMPLETED,
            repo=branch.repo,
            branch=branch.name,
            data={"session_id": finished.id, "status": finished.status, "exit_code": finished.exit_code},
        )
        return finished

    def _check_gates(self, branch: Branch, current_rev: str) -> None:
        gates = load_repo_config(branch.checkout_path, self.config.gates.config_file)
        for gate in gates:
            run = self.gate_runs.latest(branch.repo, branch.name, gate.name)
            if run is None:
                raise GateCheckError(
                    f"gate {gate.name!r} has not been run; use 'foundry gate run {branch.full_name}' first",
                    gate_name=gate.name,
                    reason="missing",
                )
            if not run.passed:
                raise GateCheckError(
                    f"gate {gate.name!r} has not passed (status: {run.status}); "
                    f"use 'foundry gate run {branch.full_name}' to retry",
                    gate_name=gate.name,
                    reason="not_passed",
                )
            if run.rev != current_rev:
                raise GateCheckError(
                    f"gate {gate.name!r} was run on old commit {run.rev[:8]}; "
                    f"use 'foundry gate run {branch.full_name}' to re-run",
                    gate_name=gate.name,
                    reason="stale",
                )
        if gates:
            logger.info("All %d gates passed for %s at %s", len(gates), branch.full_name, current_rev[:8])

    def merge_branch(
        self,
        repo: str,
        name: str,
        *,
        force: bool = False,
        skip_gates: bool = False,
    ) -> MergeResult:
        """Fast-forward ``master`` to the branch tip after verifying its gates.

        Once ``master`` has moved the merge has happened; the cleanup that
        follows only produces warnings.
        """

        branch = self._require_active(repo, name)
        source = self.repos.require(repo)
        checkout = branch.checkout_path

        if not force and not self.git.is_clean(checkout):
            raise PreconditionFailed(
                f"branch {branch.full_name} has uncommitted changes; commit or use --force"
            )

        current_rev = self.git.rev_parse(checkout, "HEAD")
        if not skip_gates:
            self._check_gates(branch, current_rev)
        if current_rev != branch.head_rev:
            branch = self.branches.update_head_rev(repo, name, current_rev)

        branch_ref = f"refs/heads/{name}"
        previous_ref = self.git.try_rev_parse(source.path, branch_ref)
        logger.info("Pushing %s to %s", branch.full_name, source.path)
        self.git.push(checkout, "origin", current_rev, name)
        tip = self.git.rev_parse(source.path, branch_ref)
        if tip != current_rev:
            self._restore_ref(source.path, branch_ref, previous_ref)
            raise GitError(
                f"pushed {current_rev[:8]} for {branch.full_name} but origin has {tip[:8]}",
                tool="git",
            )

        master_rev = self.git.try_rev_parse(source.path, MASTER_REF)
        if master_rev is not None and not self.git.is_ancestor(source.path, master_rev, tip):
            self._restore_ref(source.path, branch_ref, previous_ref)
            raise PreconditionFailed(
                f"branch {branch.full_name} is not a fast-forward of master; rebase onto master first"
            )

        self.git.update_ref(source.path, MASTER_REF, tip)
        logger.info("Advanced master of %s to %s", repo, tip[:8])

        warnings: list[str] = []
        try:
            self.git.delete_ref(source.path, branch_ref)
        except FoundryError as exc:
            self._advisory(warnings, f"failed to delete branch ref {branch_ref}: {exc}")
        try:
            remove_local_checkout(checkout)
        except OSError as exc:
            self._advisory(warnings, f"failed to remove checkout {checkout}: {exc}")
        try:
            branch = self.branches.update_status(repo, name, STATUS_MERGED)
        except FoundryError as exc:
            self._advisory(warnings, f"failed to mark branch {branch.full_name} merged: {exc}")
        if branch.task_repo and branch.task_slug:
            try:
                task = self.tasks.update_status(branch.task_repo, branch.task_slug, STATUS_CLOSED)
            except FoundryError as exc:
                self._advisory(warnings, f"failed to close task {branch.task_ref}: {exc}")
            else:
                self._emit(TASK_CLOSED, repo=task.repo, task=task.full_name)
        self._emit(BRANCH_MERGED, repo=repo, branch=name, data={"master_rev": tip})
        return MergeResult(branch=branch, master_rev=tip, warnings=warnings)

    def _restore_ref(self, repo_path: Path, ref: str, previous: str | None) -> None:
        if previous:
            self.git.update_ref(repo_path, ref, previous)
        else:
            self.git.delete_ref(repo_path, ref)

    def abandon_branch(
        self,
        repo: str,
        name: str,
        *,
        force: bool = False,
        confirmed: bool = False,
    ) -> AbandonResult:
        branch = self._require_active(repo, name)
        if not force and not confirmed:
            raise PreconditionFailed(f"abandoning branch {branch.full_name} was not confirmed")

        warnings: list[str] = []
        try:
            remove_local_checkout(branch.checkout_path)
        except OSError as exc:
            self._advisory(warnings, f"failed to remove checkout {branch.checkout_path}: {exc}")
        branch = self.branches.update_status(repo, name, STATUS_ABANDONED)
        if branch.task_repo and branch.task_slug:
            try:
                self.tasks.update_status(branch.task_repo, branch.task_slug, STATUS_OPEN)
            except FoundryError as exc:
                self._advisory(warnings, f"failed to reset task {branch.task_ref}: {exc}")
        self._emit(BRANCH_ABANDONED, repo=repo, branch=name)
        logger.info("Abandoned branch %s", branch.full_name)
        return AbandonResult(branch=branch, warnings=warnings)

    # Gates

    def run_gates(self, repo: str, name: str, gate_name: str | None = None) -> GateBatchResult:
        branch = self._require_active(repo, name)
        checkout = branch.checkout_path
        rev = self.git.rev_parse(checkout, "HEAD")
        if rev != branch.head_rev:
            self.branches.update_head_rev(repo, name, rev)
        gates = select_gates(load_repo_config(checkout, self.config.gates.config_file), gate_name)
        if not gates:
            logger.info("No gates configured for %s", branch.full_name)
            return GateBatchResult()

        def _on_start(gate: Gate, _run: GateRun | None) -> None:
            self._emit(GATE_STARTED, repo=repo, branch=name, gate_name=gate.name, data={"rev": rev})

        def _on_finish(gate: Gate, run: GateRun | None) -> None:
            if run is None:
                return
            self._emit(
                GATE_PASSED if run.passed else GATE_FAILED,
                repo=repo,
                branch=name,
                gate_name=gate.name,
                data={"rev": rev, "exit_code": run.exit_code, "run_id": run.id},
            )

        return self.gate_runner.run_batch(
            gates,
            repo,
            name,
            rev,
            checkout,
            on_start=_on_start,
            on_finish=_on_finish,
        )

    def gate_status(self, repo: str, name: str) -> list[GateStatus]:
        branch = self._require_active(repo, name)
        current_rev = self.git.rev_parse(branch.checkout_path, "HEAD")
        gates = load_repo_config(branch.checkout_path, self.config.gates.config_file)
        return [
            GateStatus(gate=gate, run=self.gate_runs.latest(repo, name, gate.name), current_rev=current_rev)
            for gate in gates
        ]

    def gate_history(self, repo: str, name: str) -> list[GateRun]:
        self.branches.require(repo, name)
        return self.gate_runs.list(repo, name)
