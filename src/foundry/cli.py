from __future__ import annotations

import logging
import tomllib
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

import click

from foundry import __version__
from foundry.backends import AGENT_TYPES
from foundry.branches import BRANCH_STATUSES, Branch
from foundry.config import FoundryConfig, default_config_path, load_config
from foundry.errors import FoundryError
from foundry.gates import GateBatchResult
from foundry.sessions import AgentSession
from foundry.supervisor import Supervisor
from foundry.tasks import TASK_STATUSES, require_ref

LOG_FORMAT = "%(levelname)s %(name)s: %(message)s"


@dataclass(slots=True)
class Runtime:
    config_path: Path
    config: FoundryConfig
    supervisor: Supervisor


@contextmanager
def _foundry_errors() -> Iterator[None]:
    try:
        yield
    except FoundryError as exc:
        raise click.ClickException(str(exc)) from exc


def _runtime(ctx: click.Context) -> Runtime:
    return ctx.find_object(Runtime)


def _echo_warnings(warnings: list[str]) -> None:
    for warning in warnings:
        click.echo(f"Warning: {warning}", err=True)


def _short(rev: str | None) -> str:
    return rev[:8] if rev else "-"


def _describe_branch(branch: Branch) -> None:
    click.echo(f"Branch: {branch.full_name}")
    click.echo(f"  Status: {branch.status}")
    click.echo(f"  Checkout: {branch.environment.path} ({branch.environment.backend})")
    click.echo(f"  Base: {_short(branch.base_rev)}")
    click.echo(f"  Head: {_short(branch.head_rev)}")
    if branch.task_ref:
        click.echo(f"  Task: {branch.task_ref}")
    click.echo(f"  Created: {branch.created_at}")
    if branch.merged_at:
        click.echo(f"  Merged: {branch.merged_at}")


def _describe_session(session: AgentSession, alive: bool) -> str:
    pid = f"pid {session.pid}{'' if alive else ' (dead)'}" if session.pid else "no pid"
    exit_code = "" if session.exit_code is None else f" exit={session.exit_code}"
    return (
        f"{session.id:<5} {session.branch_full_name:<40} {session.agent_type:<9} "
        f"{session.status:<11} {pid}{exit_code}"
    )


@click.group()
@click.version_option(__version__, prog_name="foundry")
@click.option(
    "--config",
    "config_value",
    envvar="FOUNDRY_CONFIG",
    default=None,
    help="Path to config.toml (default: ~/.config/foundry/config.toml).",
)
@click.option("--data-dir", envvar="FOUNDRY_DATA_DIR", default=None, help="Override [server] data_dir.")
@click.pass_context
def cli(ctx: click.Context, config_value: str | None, data_dir: str | None) -> None:
    """Foundry: tasks, branches, gates and agents for a software factory."""

    config_path = Path(config_value).expanduser() if config_value else default_config_path()
    try:
        config = load_config(config_path, data_dir=data_dir)
    except (tomllib.TOMLDecodeError, TypeError, ValueError) as exc:
        raise click.ClickException(f"Invalid config {config_path}: {exc}") from exc
    logging.basicConfig(level=config.logging.level, format=LOG_FORMAT)
    with _foundry_errors():
        supervisor = Supervisor(config, config_path=config_path if config_value else None)
    ctx.obj = Runtime(config_path=config_path, config=config, supervisor=supervisor)


@cli.group("repo")
def repo_group() -> None:
    """Manage bare repositories."""


@repo_group.command("create")
@click.argument("ref")
@click.pass_context
def repo_create_command(ctx: click.Context, ref: str) -> None:
    runtime = _runtime(ctx)
    with _foundry_errors():
        repo = runtime.supervisor.repos.create(ref)
    click.echo(f"Created repository: {repo.full_name}")
    click.echo(f"  Path: {repo.path}")


@repo_group.command("list")
@click.option("--owner", default=None)
@click.pass_context
def repo_list_command(ctx: click.Context, owner: str | None) -> None:
    repos = _runtime(ctx).supervisor.repos.list(owner)
    if not repos:
        click.echo("No repositories.")
        return
    for repo in repos:
        click.echo(f"{repo.full_name:<40} {repo.path}")


@cli.group("task")
def task_group() -> None:
    """Track units of work."""


@task_group.command("create")
@click.argument("repo")
@click.argument("title")
@click.option("--slug", default=None, help="Defaults to a slug derived from the title.")
@click.option("--body", default="")
@click.option("--priority", type=click.IntRange(1, 5), default=3, show_default=True)
@click.option("--depends-on", "depends_on", multiple=True, help="Task reference; may be repeated.")
@click.pass_context
def task_create_command(
    ctx: click.Context,
    repo: str,
    title: str,
    slug: str | None,
    body: str,
    priority: int,
    depends_on: tuple[str, ...],
) -> None:
    runtime = _runtime(ctx)
    with _foundry_errors():
        task = runtime.supervisor.create_task(
            repo,
            title,
            slug=slug,
            body=body,
            priority=priority,
            depends_on=list(depends_on),
        )
    click.echo(f"Created task: {task.full_name}")


@task_group.command("list")
@click.option("--repo", default=None)
@click.option("--status", type=click.Choice(TASK_STATUSES), default=None)
@click.pass_context
def task_list_command(ctx: click.Context, repo: str | None, status: str | None) -> None:
    supervisor = _runtime(ctx).supervisor
    tasks = supervisor.list_tasks(repo, status)
    if not tasks:
        click.echo("No tasks.")
        return
    for task in tasks:
        line = f"P{task.priority} {task.status:<12} {task.full_name:<40} {task.title}"
        blockers = supervisor.task_blockers(task) if task.status != "closed" else []
        if blockers:
            line += f" [blocked by: {', '.join(str(blocker) for blocker in blockers)}]"
        click.echo(line)


@task_group.command("show")
@click.argument("ref")
@click.pass_context
def task_show_command(ctx: click.Context, ref: str) -> None:
    supervisor = _runtime(ctx).supervisor
    with _foundry_errors():
        repo, slug = require_ref(ref, "task")
        task = supervisor.tasks.require(repo, slug)
    click.echo(f"Task: {task.full_name}")
    click.echo(f"  Title: {task.title}")
    click.echo(f"  Status: {task.status}")
    click.echo(f"  Priority: {task.priority}")
    if task.depends_on:
        click.echo(f"  Depends on: {', '.join(task.depends_on)}")
        blockers = supervisor.task_blockers(task)
        if blockers:
            click.echo(f"  Blocked by: {', '.join(str(blocker) for blocker in blockers)}")
    click.echo(f"  Created: {task.created_at}")
    if task.body:
        click.echo("")
        click.echo(task.body)


@task_group.command("close")
@click.argument("ref")
@click.pass_context
def task_close_command(ctx: click.Context, ref: str) -> None:
    supervisor = _runtime(ctx).supervisor
    with _foundry_errors():
        repo, slug = require_ref(ref, "task")
        task = supervisor.close_task(repo, slug)
    click.echo(f"Closed task: {task.full_name}")


@cli.group("branch")
def branch_group() -> None:
    """Create, merge and abandon branch checkouts."""


@branch_group.command("create")
@click.argument("ref")
@click.option("--task", "task_ref", default=None, help="Link to a task (slug or owner/repo/slug).")
@click.option("--env", "env_spec", default="local", show_default=True, help="local or local:/abs/path")
@click.option("--agent", "agent_type", type=click.Choice(AGENT_TYPES), default=None)
@click.option("--prompt", default="", help="Initial prompt; starts the default agent when --agent is omitted.")
@click.pass_context
def branch_create_command(
    ctx: click.Context,
    ref: str,
    task_ref: str | None,
    env_spec: str,
    agent_type: str | None,
    prompt: str,
) -> None:
    runtime = _runtime(ctx)
    if prompt and not agent_type:
        agent_type = runtime.config.agents.default_type
    with _foundry_errors():
        repo, name = require_ref(ref, "branch")
        creation = runtime.supervisor.create_branch(
            repo,
            name,
            env_spec=env_spec,
            task_ref=task_ref,
            agent_type=agent_type,
            prompt=prompt,
            interactive=True,
        )
    branch = creation.branch
    click.echo(f"Created branch: {branch.full_name}")
    click.echo(f"  Checkout: {branch.environment.path}")
    if branch.task_ref:
        click.echo(f"  Task: {branch.task_ref}")
    if creation.session is not None:
        click.echo(f"  Agent session {creation.session.id} exited with status: {creation.session.status}")
    _echo_warnings(creation.warnings)


@branch_group.command("list")
@click.option("--repo", default=None)
@click.option("--status", type=click.Choice(BRANCH_STATUSES), default=None)
@click.pass_context
def branch_list_command(ctx: click.Context, repo: str | None, status: str | None) -> None:
    branches = _runtime(ctx).supervisor.list_branches(repo, status)
    if not branches:
        click.echo("No branches.")
        return
    for branch in branches:
        task = f" task={branch.task_ref}" if branch.task_ref else ""
        click.echo(f"{branch.full_name:<40} {branch.status:<9} {_short(branch.head_rev)}{task}")


@branch_group.command("show")
@click.argument("ref")
@click.pass_context
def branch_show_command(ctx: click.Context, ref: str) -> None:
    supervisor = _runtime(ctx).supervisor
    with _foundry_errors():
        repo, name = require_ref(ref, "branch")
        branch = supervisor.get_branch(repo, name)
    _describe_branch(branch)


@branch_group.command("merge")
@click.argument("ref")
@click.option("--force", is_flag=True, default=False, help="Merge even with uncommitted changes.")
@click.option("--skip-gates", is_flag=True, default=False, help="Skip gate checks.")
@click.pass_context
def branch_merge_command(ctx: click.Context, ref: str, force: bool, skip_gates: bool) -> None:
    supervisor = _runtime(ctx).supervisor
    with _foundry_errors():
        repo, name = require_ref(ref, "branch")
        result = supervisor.merge_branch(repo, name, force=force, skip_gates=skip_gates)
    _echo_warnings(result.warnings)
    click.echo(f"Merged branch: {result.branch.full_name} -> master ({_short(result.master_rev)})")
    if result.branch.task_ref:
        click.echo(f"Closed task: {result.branch.task_ref}")


@branch_group.command("abandon")
@click.argument("ref")
@click.option("--force", is_flag=True, default=False, help="Skip confirmation.")
@click.pass_context
def branch_abandon_command(ctx: click.Context, ref: str, force: bool) -> None:
    supervisor = _runtime(ctx).supervisor
    with _foundry_errors():
        repo, name = require_ref(ref, "branch")
        confirmed = force or click.confirm(
            f"Abandon branch {repo}/{name}? This will delete the checkout.", default=False
        )
        result = supervisor.abandon_branch(repo, name, force=force, confirmed=confirmed)
    _echo_warnings(result.warnings)
    click.echo(f"Abandoned branch: {result.branch.full_name}")


@cli.group("gate")
def gate_group() -> None:
    """Run and inspect verification gates."""


def _echo_batch(result: GateBatchResult) -> None:
    for run in result.runs:
        marker = "PASS" if run.passed else "FAIL"
        click.echo(f"[{marker}] {run.gate_name} (exit {run.exit_code}) log: {run.log_path}")


@gate_group.command("run")
@click.argument("ref")
@click.option("--gate", "gate_name", default=None, help="Run only this gate.")
@click.pass_context
def gate_run_command(ctx: click.Context, ref: str, gate_name: str | None) -> None:
    supervisor = _runtime(ctx).supervisor
    with _foundry_errors():
        repo, name = require_ref(ref, "branch")
        result = supervisor.run_gates(repo, name, gate_name)
    if not result.runs:
        click.echo("No gates configured.")
        return
    _echo_batch(result)
    if not result.passed:
        raise click.ClickException(f"{len(result.failed_runs)} of {len(result.runs)} gates failed")
    click.echo("All gates passed!")


@gate_group.command("status")
@click.argument("ref")
@click.pass_context
def gate_status_command(ctx: click.Context, ref: str) -> None:
    supervisor = _runtime(ctx).supervisor
    with _foundry_errors():
        repo, name = require_ref(ref, "branch")
        statuses = supervisor.gate_status(repo, name)
    if not statuses:
        click.echo("No gates configured.")
        return
    for status in statuses:
        if status.run is None:
            click.echo(f"{status.gate.name:<20} not run")
            continue
        stale = " (stale)" if status.stale else ""
        click.echo(f"{status.gate.name:<20} {status.run.status:<8} {_short(status.run.rev)}{stale}")
        for line in status.log_tail:
            click.echo(f"    {line}")


@gate_group.command("history")
@click.argument("ref")
@click.pass_context
def gate_history_command(ctx: click.Context, ref: str) -> None:
    supervisor = _runtime(ctx).supervisor
    with _foundry_errors():
        repo, name = require_ref(ref, "branch")
        runs = supervisor.gate_history(repo, name)
    if not runs:
        click.echo("No gate runs.")
        return
    for run in runs:
        click.echo(
            f"{run.id:<5} {run.gate_name:<20} {run.status:<8} {_short(run.rev)} "
            f"{run.started_at or '-'} exit={run.exit_code}"
        )


@cli.group("agent")
def agent_group() -> None:
    """Inspect and control agent sessions."""


@agent_group.command("list")
@click.option("--repo", default=None)
@click.option("--branch", "branch_name", default=None)
@click.pass_context
def agent_list_command(ctx: click.Context, repo: str | None, branch_name: str | None) -> None:
    agents = _runtime(ctx).supervisor.agents
    sessions = agents.list(repo, branch_name)
    if not sessions:
        click.echo("No agent sessions.")
        return
    for session in sessions:
        click.echo(_describe_session(session, agents.is_running(session.pid)))


@agent_group.command("show")
@click.argument("session_id", type=int)
@click.pass_context
def agent_show_command(ctx: click.Context, session_id: int) -> None:
    agents = _runtime(ctx).supervisor.agents
    with _foundry_errors():
        session = agents.get(session_id)
    click.echo(f"Session: {session.id}")
    click.echo(f"  Branch: {session.branch_full_name}")
    click.echo(f"  Agent: {session.agent_type}")
    click.echo(f"  Status: {session.status}")
    if session.pid:
        state = "running" if agents.is_running(session.pid) else "not running"
        click.echo(f"  PID: {session.pid} ({state})")
    if session.exit_code is not None:
        click.echo(f"  Exit code: {session.exit_code}")
    if session.prompt:
        click.echo(f"  Prompt: {session.prompt}")
    click.echo(f"  Started: {session.started_at or '-'}")
    if session.ended_at:
        click.echo(f"  Ended: {session.ended_at}")


@agent_group.command("kill")
@click.argument("session_id", type=int)
@click.pass_context
def agent_kill_command(ctx: click.Context, session_id: int) -> None:
    agents = _runtime(ctx).supervisor.agents
    with _foundry_errors():
        session = agents.kill(session_id)
    click.echo(f"Session {session.id}: {session.status}")


@agent_group.command("needs-help")
@click.argument("session_id", type=int, envvar="FOUNDRY_SESSION_ID")
@click.pass_context
def agent_needs_help_command(ctx: click.Context, session_id: int) -> None:
    agents = _runtime(ctx).supervisor.agents
    with _foundry_errors():
        session = agents.request_help(session_id)
    click.echo(f"Session {session.id} flagged as needing help.")

