import json
import subprocess
from pathlib import Path

import pytest

from foundry.backends import AgentBackend
from foundry.branches import STATUS_ABANDONED, STATUS_ACTIVE, STATUS_MERGED
from foundry.config import FoundryConfig
from foundry.errors import (
    AlreadyExistsError,
    BlockedTaskError,
    GateCheckError,
    GitError,
    NotFoundError,
    PreconditionFailed,
)
from foundry.events import Event, read_events
from foundry.git import GitClient
from foundry.sessions import STATUS_FAILED
from foundry.supervisor import Supervisor
from foundry.tasks import STATUS_CLOSED, STATUS_IN_PROGRESS, STATUS_OPEN

GATES_TOML = '[[gates]]\nname = "test"\ncommand = "test -f fixed.txt"\n'


def _run(cmd: list[str], cwd: Path) -> str:
    return subprocess.run(cmd, cwd=cwd, check=True, text=True, capture_output=True).stdout.strip()


def _commit(checkout: Path, filename: str, content: str, message: str) -> str:
    (checkout / filename).write_text(content, encoding="utf-8")
    _run(["git", "add", filename], cwd=checkout)
    _run(["git", "commit", "-m", message], cwd=checkout)
    return _run(["git", "rev-parse", "HEAD"], cwd=checkout)


def _seed_repo(bare_repo: Path, tmp_path: Path, files: dict[str, str]) -> str:
    work = tmp_path / "seed"
    _run(["git", "init", "--quiet", str(work)], cwd=tmp_path)
    for name, content in files.items():
        (work / name).write_text(content, encoding="utf-8")
    _run(["git", "add", "."], cwd=work)
    _run(["git", "commit", "-m", "seed"], cwd=work)
    _run(["git", "push", str(bare_repo), "HEAD:refs/heads/master"], cwd=work)
    return _run(["git", "rev-parse", "HEAD"], cwd=work)


def _ref(bare_repo: Path, ref: str) -> str | None:
    proc = subprocess.run(
        ["git", "rev-parse", "--verify", "--quiet", ref],
        cwd=bare_repo,
        text=True,
        capture_output=True,
    )
    return proc.stdout.strip() if proc.returncode == 0 else None


def _supervisor(tmp_path: Path, **kwargs) -> Supervisor:
    config = FoundryConfig.default()
    config.server.data_dir = str(tmp_path / "data")
    return Supervisor(config, **kwargs)


def _seeded(tmp_path: Path, files: dict[str, str] | None = None, **kwargs) -> tuple[Supervisor, Path]:
    supervisor = _supervisor(tmp_path, **kwargs)
    repo = supervisor.repos.create("acme/app")
    _seed_repo(repo.path, tmp_path, files if files is not None else {"foundry.toml": GATES_TOML})
    return supervisor, repo.path


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[Event] = []

    def publish(self, event: Event) -> None:
        self.events.append(event)


class BrokenSink:
    def publish(self, event: Event) -> None:
        raise OSError("event transport is down")


class ScriptBackend(AgentBackend):
    agent_type = "script"
    default_binary = "sh"

    def build_command(self, prompt: str) -> list[str]:
        return [self.binary, "-c", prompt]


class RefDeleteFailingGit(GitClient):
    def delete_ref(self, repo_path: Path | str, ref: str) -> None:
        raise GitError(f"cannot lock ref '{ref}'", tool="git")


def test_task_to_merge_scenario(tmp_path: Path) -> None:
    supervisor, bare_repo = _seeded(tmp_path)
    supervisor.create_task("acme/app", "Fix 1", slug="fix-1")

    creation = supervisor.create_branch("acme/app", "fix-1-branch", task_ref="fix-1")
    branch = creation.branch
    checkout = branch.checkout_path

    assert checkout == supervisor.data_dir / "checkouts" / "acme" / "app" / "fix-1-branch"
    assert branch.status == STATUS_ACTIVE
    assert branch.base_rev == _ref(bare_repo, "refs/heads/master")
    assert branch.head_rev == branch.base_rev
    assert branch.task_ref == "acme/app/fix-1"
    assert supervisor.tasks.require("acme/app", "fix-1").status == STATUS_IN_PROGRESS

    failed = supervisor.run_gates("acme/app", "fix-1-branch")
    assert failed.passed is False
    assert failed.runs[0].exit_code == 1

    with pytest.raises(GateCheckError, match="gate 'test' has not passed") as exc_info:
        supervisor.merge_branch("acme/app", "fix-1-branch")
    assert exc_info.value.reason == "not_passed"

    new_head = _commit(checkout, "fixed.txt", "ok\n", "fix")
    passed = supervisor.run_gates("acme/app", "fix-1-branch")
    assert passed.passed is True
    assert passed.runs[0].rev == new_head
    assert supervisor.get_branch("acme/app", "fix-1-branch").head_rev == new_head

    result = supervisor.merge_branch("acme/app", "fix-1-branch")

    assert result.warnings == []
    assert result.master_rev == new_head
    assert _ref(bare_repo, "refs/heads/master") == new_head
    assert _ref(bare_repo, "refs/heads/fix-1-branch") is None
    assert not checkout.exists()
    merged = supervisor.get_branch("acme/app", "fix-1-branch")
    assert merged.status == STATUS_MERGED
    assert merged.merged_at is not None
    assert supervisor.tasks.require("acme/app", "fix-1").status == STATUS_CLOSED


def test_merge_requires_every_gate_to_have_run(tmp_path: Path) -> None:
    supervisor, _ = _seeded(tmp_path)
    supervisor.create_branch("acme/app", "feature")

    with pytest.raises(GateCheckError, match="has not been run") as exc_info:
        supervisor.merge_branch("acme/app", "feature")
    assert exc_info.value.reason == "missing"


def test_gate_passed_on_old_commit_is_stale(tmp_path: Path) -> None:
    supervisor, bare_repo = _seeded(tmp_path)
    checkout = supervisor.create_branch("acme/app", "feature").branch.checkout_path
    _commit(checkout, "fixed.txt", "ok\n", "fix")
    assert supervisor.run_gates("acme/app", "feature").passed
    master_before = _ref(bare_repo, "refs/heads/master")

    _commit(checkout, "more.txt", "more\n", "more work")

    for _ in range(2):
        with pytest.raises(GateCheckError, match="was run on old commit") as exc_info:
            supervisor.merge_branch("acme/app", "feature")
        assert exc_info.value.reason == "stale"
    assert _ref(bare_repo, "refs/heads/master") == master_before
    assert supervisor.gate_status("acme/app", "feature")[0].stale is True


def test_blocked_task_creates_nothing(tmp_path: Path) -> None:
    supervisor, _ = _seeded(tmp_path)
    supervisor.create_task("acme/app", "Base work", slug="base")
    supervisor.create_task("acme/app", "Follow up", slug="follow", depends_on=["base", "ghost"])

    with pytest.raises(BlockedTaskError) as exc_info:
        supervisor.create_branch("acme/app", "follow-branch", task_ref="follow")

    assert exc_info.value.blockers == ["acme/app/base", "ghost (not found)"]
    assert "is blocked by: acme/app/base, ghost (not found)" in str(exc_info.value)
    assert supervisor.list_branches() == []
    assert not (supervisor.data_dir / "checkouts" / "acme" / "app" / "follow-branch").exists()
    assert supervisor.tasks.require("acme/app", "follow").status == STATUS_OPEN


def test_closing_dependency_unblocks(tmp_path: Path) -> None:
    supervisor, _ = _seeded(tmp_path)
    supervisor.create_task("acme/app", "Base work", slug="base")
    supervisor.create_task("acme/app", "Follow up", slug="follow", depends_on=["acme/app/base"])

    supervisor.close_task("acme/app", "base")
    creation = supervisor.create_branch("acme/app", "follow-branch", task_ref="acme/app/follow")

    assert creation.branch.task_ref == "acme/app/follow"
    with pytest.raises(PreconditionFailed, match="already closed"):
        supervisor.close_task("acme/app", "base")


def test_duplicate_branch_and_occupied_checkout_are_rejected(tmp_path: Path) -> None:
    supervisor, _ = _seeded(tmp_path)
    supervisor.create_branch("acme/app", "feature")

    with pytest.raises(AlreadyExistsError, match="branch acme/app/feature already exists"):
        supervisor.create_branch("acme/app", "feature")

    occupied = tmp_path / "occupied"
    occupied.mkdir()
    (occupied / "keep.txt").write_text("mine\n", encoding="utf-8")
    with pytest.raises(PreconditionFailed, match="not empty"):
        supervisor.create_branch("acme/app", "other", env_spec=f"local:{occupied}")
    assert (occupied / "keep.txt").exists()
    assert supervisor.branches.get("acme/app", "other") is None


def test_create_branch_unknown_repo_or_task(tmp_path: Path) -> None:
    supervisor, _ = _seeded(tmp_path)

    with pytest.raises(NotFoundError, match="repository acme/nope not found"):
        supervisor.create_branch("acme/nope", "feature")
    with pytest.raises(NotFoundError, match="task acme/app/missing not found"):
        supervisor.create_branch("acme/app", "feature", task_ref="missing")
    with pytest.raises(PreconditionFailed, match="unsupported environment backend"):
        supervisor.create_branch("acme/app", "feature", env_spec="docker")


def test_non_fast_forward_merge_changes_no_refs(tmp_path: Path) -> None:
    supervisor, bare_repo = _seeded(tmp_path)
    first = supervisor.create_branch("acme/app", "first").branch.checkout_path
    second = supervisor.create_branch("acme/app", "second").branch.checkout_path
    first_tip = _commit(first, "a.txt", "a\n", "first change")
    _commit(second, "b.txt", "b\n", "second change")

    supervisor.merge_branch("acme/app", "first", skip_gates=True)
    assert _ref(bare_repo, "refs/heads/master") == first_tip

    with pytest.raises(PreconditionFailed, match="not a fast-forward"):
        supervisor.merge_branch("acme/app", "second", skip_gates=True)

    assert _ref(bare_repo, "refs/heads/master") == first_tip
    assert _ref(bare_repo, "refs/heads/second") is None
    assert supervisor.get_branch("acme/app", "second").status == STATUS_ACTIVE
    assert second.exists()


def test_merge_lands_the_gated_commit_when_checkout_switched_branches(tmp_path: Path) -> None:
    supervisor, bare_repo = _seeded(tmp_path)
    checkout = supervisor.create_branch("acme/app", "feature").branch.checkout_path
    feature_tip = _run(["git", "rev-parse", "refs/heads/feature"], cwd=checkout)
    _run(["git", "checkout", "--quiet", "-b", "side"], cwd=checkout)
    gated = _commit(checkout, "fixed.txt", "ok\n", "fix on side")
    assert gated != feature_tip
    assert supervisor.run_gates("acme/app", "feature").passed

    result = supervisor.merge_branch("acme/app", "feature")

    assert result.master_rev == gated
    assert _ref(bare_repo, "refs/heads/master") == gated
    assert result.branch.head_rev == gated
    assert result.branch.status == STATUS_MERGED


def test_merge_cleanup_failure_is_a_warning(tmp_path: Path) -> None:
    supervisor, bare_repo = _seeded(tmp_path, git=RefDeleteFailingGit())
    supervisor.create_task("acme/app", "Fix", slug="fix")
    checkout = supervisor.create_branch("acme/app", "feature", task_ref="fix").branch.checkout_path
    tip = _commit(checkout, "fixed.txt", "ok\n", "fix")
    assert supervisor.run_gates("acme/app", "feature").passed

    result = supervisor.merge_branch("acme/app", "feature")

    assert _ref(bare_repo, "refs/heads/master") == tip
    assert _ref(bare_repo, "refs/heads/feature") == tip
    assert result.branch.status == STATUS_MERGED
    assert supervisor.tasks.require("acme/app", "fix").status == STATUS_CLOSED
    assert len(result.warnings) == 1
    assert "failed to delete branch ref refs/heads/feature" in result.warnings[0]


def test_dirty_tree_requires_force(tmp_path: Path) -> None:
    supervisor, bare_repo = _seeded(tmp_path, files={"README.md": "seed\n"})
    checkout = supervisor.create_branch("acme/app", "feature").branch.checkout_path
    tip = _commit(checkout, "feature.txt", "feature\n", "feature")
    (checkout / "scratch.txt").write_text("uncommitted\n", encoding="utf-8")

    with pytest.raises(PreconditionFailed, match="uncommitted changes"):
        supervisor.merge_branch("acme/app", "feature")

    result = supervisor.merge_branch("acme/app", "feature", force=True)
    assert result.master_rev == tip
    assert _ref(bare_repo, "refs/heads/master") == tip


def test_merge_without_gate_config_needs_no_runs(tmp_path: Path) -> None:
    supervisor, bare_repo = _seeded(tmp_path, files={"README.md": "seed\n"})
    checkout = supervisor.create_branch("acme/app", "feature").branch.checkout_path
    tip = _commit(checkout, "feature.txt", "feature\n", "feature")

    assert supervisor.run_gates("acme/app", "feature").runs == []
    assert supervisor.merge_branch("acme/app", "feature").master_rev == tip

    with pytest.raises(PreconditionFailed, match="is not active \\(status: merged\\)"):
        supervisor.merge_branch("acme/app", "feature")


def test_empty_repository_gets_initial_commit(tmp_path: Path) -> None:
    supervisor = _supervisor(tmp_path)
    repo = supervisor.repos.create("acme/empty")

    branch = supervisor.create_branch("acme/empty", "bootstrap").branch

    assert branch.base_rev == ""
    assert branch.head_rev
    result = supervisor.merge_branch("acme/empty", "bootstrap")
    assert _ref(repo.path, "refs/heads/master") == result.master_rev == branch.head_rev


def test_abandon_resets_task_and_removes_checkout(tmp_path: Path) -> None:
    supervisor, _ = _seeded(tmp_path)
    supervisor.create_task("acme/app", "Try something", slug="try")
    branch = supervisor.create_branch("acme/app", "attempt", task_ref="try").branch

    with pytest.raises(PreconditionFailed, match="not confirmed"):
        supervisor.abandon_branch("acme/app", "attempt")
    assert branch.checkout_path.exists()

    result = supervisor.abandon_branch("acme/app", "attempt", confirmed=True)

    assert result.branch.status == STATUS_ABANDONED
    assert not branch.checkout_path.exists()
    assert supervisor.tasks.require("acme/app", "try").status == STATUS_OPEN
    with pytest.raises(PreconditionFailed, match="is not active"):
        supervisor.abandon_branch("acme/app", "attempt", force=True)
    with pytest.raises(PreconditionFailed, match="is not active"):
        supervisor.run_gates("acme/app", "attempt")


def test_abandon_checkout_removal_failure_is_a_warning(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    supervisor, _ = _seeded(tmp_path)
    supervisor.create_task("acme/app", "Try something", slug="try")
    branch = supervisor.create_branch("acme/app", "attempt", task_ref="try").branch

    def _busy(path: Path) -> None:
        raise OSError(f"{path} is busy")

    monkeypatch.setattr("foundry.supervisor.remove_local_checkout", _busy)
    result = supervisor.abandon_branch("acme/app", "attempt", force=True)

    assert result.branch.status == STATUS_ABANDONED
    assert branch.checkout_path.exists()
    assert supervisor.tasks.require("acme/app", "try").status == STATUS_OPEN
    assert len(result.warnings) == 1
    assert f"failed to remove checkout {branch.checkout_path}" in result.warnings[0]


def test_single_gate_selection_and_history(tmp_path: Path) -> None:
    gates = GATES_TOML + '\n[[gates]]\nname = "lint"\ncommand = "true"\n'
    supervisor, _ = _seeded(tmp_path, files={"foundry.toml": gates})
    supervisor.create_branch("acme/app", "feature")

    only_lint = supervisor.run_gates("acme/app", "feature", gate_name="lint")
    assert [run.gate_name for run in only_lint.runs] == ["lint"]
    with pytest.raises(NotFoundError):
        supervisor.run_gates("acme/app", "feature", gate_name="deploy")

    supervisor.run_gates("acme/app", "feature")
    history = supervisor.gate_history("acme/app", "feature")
    assert [run.gate_name for run in history] == ["lint", "test", "lint"]

    statuses = {status.gate.name: status for status in supervisor.gate_status("acme/app", "feature")}
    assert statuses["lint"].run is not None and statuses["lint"].run.passed
    assert statuses["test"].run is not None and not statuses["test"].run.passed
    assert statuses["lint"].log_tail == []


def test_events_are_published_for_lifecycle(tmp_path: Path) -> None:
    sink = RecordingSink()
    supervisor, _ = _seeded(tmp_path, event_sink=sink)
    supervisor.create_task("acme/app", "Fix 1", slug="fix-1")
    checkout = supervisor.create_branch("acme/app", "feature", task_ref="fix-1").branch.checkout_path
    _commit(checkout, "fixed.txt", "ok\n", "fix")
    supervisor.run_gates("acme/app", "feature")
    supervisor.merge_branch("acme/app", "feature")

    assert [event.type for event in sink.events] == [
        "task.created",
        "branch.created",
        "gate.started",
        "gate.passed",
        "task.closed",
        "branch.merged",
    ]
    assert sink.events[3].gate_name == "test"


def test_broken_event_sink_never_fails_operations(tmp_path: Path) -> None:
    supervisor, _ = _seeded(tmp_path, event_sink=BrokenSink())

    supervisor.create_task("acme/app", "Fix 1", slug="fix-1")
    creation = supervisor.create_branch("acme/app", "feature", task_ref="fix-1")

    assert creation.branch.status == STATUS_ACTIVE


def test_events_file_is_json_lines(tmp_path: Path) -> None:
    supervisor, _ = _seeded(tmp_path)
    supervisor.create_task("acme/app", "Fix 1", slug="fix-1")

    events = read_events(supervisor.data_dir / "events.jsonl")
    assert events[0]["type"] == "task.created"
    assert events[0]["task"] == "acme/app/fix-1"
    raw = (supervisor.data_dir / "events.jsonl").read_text(encoding="utf-8").splitlines()
    assert json.loads(raw[0])["repo"] == "acme/app"


def test_create_branch_runs_agent_in_checkout(tmp_path: Path) -> None:
    sink = RecordingSink()
    supervisor, _ = _seeded(
        tmp_path,
        event_sink=sink,
        backend_factory=lambda agent_type: ScriptBackend(),
    )

    creation = supervisor.create_branch(
        "acme/app",
        "agent-branch",
        agent_type="script",
        prompt='echo "$FOUNDRY_SESSION_ID" > agent.txt',
    )

    session = creation.session
    assert session is not None
    assert session.status == "completed"
    assert session.exit_code == 0
    agent_file = creation.branch.checkout_path / "agent.txt"
    assert agent_file.read_text(encoding="utf-8").strip() == str(session.id)
    assert [event.type for event in sink.events][-2:] == ["agent.started", "agent.completed"]
    assert supervisor.agents.list("acme/app", "agent-branch")[0].id == session.id


def test_failed_agent_is_reported_as_warning(tmp_path: Path) -> None:
    supervisor, _ = _seeded(tmp_path, backend_factory=lambda agent_type: ScriptBackend())

    creation = supervisor.create_branch("acme/app", "agent-branch", agent_type="script", prompt="exit 3")

    assert creation.session is not None
    assert creation.session.status == STATUS_FAILED
    assert creation.branch.status == STATUS_ACTIVE
    assert creation.warnings == [
        f"agent session {creation.session.id} ended with status failed (exit code 3)"
    ]


def test_agents_inherit_data_dir_and_config(tmp_path: Path) -> None:
    config_path = tmp_path / "config.toml"
    supervisor = _supervisor(tmp_path, config_path=config_path)

    backend = supervisor.agents.backend_factory("codex")
    env = backend.build_environment(tmp_path, 5)

    assert env["FOUNDRY_DATA_DIR"] == str(supervisor.data_dir)
    assert env["FOUNDRY_CONFIG"] == str(config_path.resolve())
    assert env["FOUNDRY_SESSION_ID"] == "5"
    without_config = _supervisor(tmp_path).agents.backend_factory("codex")
    assert "FOUNDRY_CONFIG" not in without_config.build_environment(tmp_path, 5)
