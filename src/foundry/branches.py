from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from foundry.errors import InvalidTransitionError, NotFoundError, PreconditionFailed
from foundry.state import RecordTable, StateStore, utcnow_iso

STATUS_ACTIVE = "active"
STATUS_MERGED = "merged"
STATUS_ABANDONED = "abandoned"
BRANCH_STATUSES = (STATUS_ACTIVE, STATUS_MERGED, STATUS_ABANDONED)

BACKEND_LOCAL = "local"


@dataclass(slots=True, frozen=True)
class EnvironmentSpec:
    backend: str = BACKEND_LOCAL
    path: str = ""

    def to_dict(self) -> dict[str, str]:
        return {"backend": self.backend, "path": self.path}

    @classmethod
    def from_dict(cls, payload: dict[str, Any] | None) -> EnvironmentSpec:
        payload = payload or {}
        return cls(backend=str(payload.get("backend", BACKEND_LOCAL)), path=str(payload.get("path", "")))


@dataclass(slots=True)
class Branch:
    repo: str
    name: str
    environment: EnvironmentSpec
    base_rev: str = ""
    head_rev: str = ""
    status: str = STATUS_ACTIVE
    task_repo: str | None = None
    task_slug: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    merged_at: str | None = None
    id: int | None = None

    @property
    def full_name(self) -> str:
        return f"{self.repo}/{self.name}"

    @property
    def checkout_path(self) -> Path:
        return Path(self.environment.path)

    @property
    def task_ref(self) -> str | None:
        if self.task_repo and self.task_slug:
            return f"{self.task_repo}/{self.task_slug}"
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "repo": self.repo,
            "name": self.name,
            "environment": self.environment.to_dict(),
            "base_rev": self.base_rev,
            "head_rev": self.head_rev,
            "status": self.status,
            "task_repo": self.task_repo,
            "task_slug": self.task_slug,
            "created_at": self.created_at,
            "merged_at": self.merged_at,
            "id": self.id,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Branch:
        return cls(
            repo=str(payload["repo"]),
            name=str(payload["name"]),
            environment=EnvironmentSpec.from_dict(payload.get("environment")),
            base_rev=str(payload.get("base_rev") or ""),
            head_rev=str(payload.get("head_rev") or ""),
            status=str(payload.get("status", STATUS_ACTIVE)),
            task_repo=payload.get("task_repo"),
            task_slug=payload.get("task_slug"),
            created_at=str(payload.get("created_at") or utcnow_iso()),
            merged_at=payload.get("merged_at"),
            id=payload.get("id"),
        )


def parse_env_spec(spec: str, repo: str, name: str, data_dir: Path) -> EnvironmentSpec:
    """Turn ``local`` or ``local:/abs/path`` into a concrete environment.

    Bare ``local`` places the checkout under ``<data_dir>/checkouts``.
    """

    spec = (spec or BACKEND_LOCAL).strip()
    backend, _, raw_path = spec.partition(":")
    if backend != BACKEND_LOCAL:
        raise PreconditionFailed(f"unsupported environment backend: {backend!r} (only 'local' is available)")
    if raw_path:
        path = Path(raw_path).expanduser()
        if not path.is_absolute():
            raise PreconditionFailed(f"environment path must be absolute, got {raw_path!r}")
    else:
        path = data_dir / "checkouts" / repo / name
    return EnvironmentSpec(backend=backend, path=str(path))


def validate_branch_name(name: str) -> None:
    if not name.strip():
        raise PreconditionFailed("branch name cannot be empty")
    if "/" in name:
        raise PreconditionFailed("branch name cannot contain '/'")
    if name.startswith("-") or name.startswith(".") or ".." in name or name == "master":
        raise PreconditionFailed(f"invalid branch name: {name!r}")


class BranchStore:
    def __init__(self, store: StateStore) -> None:
        self.table = RecordTable(store, "branches", unique_key=("repo", "name"), label="branch")

    def create(self, branch: Branch) -> Branch:
        payload = branch.to_dict()
        payload.pop("id", None)
        return Branch.from_dict(self.table.insert(payload))

    def get(self, repo: str, name: str) -> Branch | None:
        row = self.table.get(repo=repo, name=name)
        return Branch.from_dict(row) if row else None

    def require(self, repo: str, name: str) -> Branch:
        branch = self.get(repo, name)
        if branch is None:
            raise NotFoundError(f"branch {repo}/{name} not found")
        return branch

    def list(self, repo: str | None = None, status: str | None = None) -> list[Branch]:
        rows = self.table.list(repo=repo, status=status)
        return [Branch.from_dict(row) for row in sorted(rows, key=lambda row: int(row["id"]))]

    def update_status(self, repo: str, name: str, status: str) -> Branch:
        """Move an active branch to a terminal status; terminal rows never move."""

        if status not in (STATUS_MERGED, STATUS_ABANDONED):
            raise PreconditionFailed(f"unknown terminal branch status: {status}")

        def _change(row: dict[str, Any]) -> None:
            current = str(row.get("status"))
            if current != STATUS_ACTIVE:
                raise InvalidTransitionError(f"branch {repo}/{name}", current, status)
            row["status"] = status
            if status == STATUS_MERGED:
                row["merged_at"] = utcnow_iso()

        return Branch.from_dict(self.table.update({"repo": repo, "name": name}, _change))

    def update_head_rev(self, repo: str, name: str, head_rev: str) -> Branch:
        def _change(row: dict[str, Any]) -> None:
            row["head_rev"] = head_rev

        return Branch.from_dict(self.table.update({"repo": repo, "name": name}, _change))
