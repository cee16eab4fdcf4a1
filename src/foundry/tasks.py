from __future__ import annotations

import re
from collections.abc import Callable
from dataclasses import asdict, dataclass, field
from typing import Any

from foundry.errors import NotFoundError, PreconditionFailed
from foundry.state import RecordTable, StateStore, utcnow_iso

STATUS_OPEN = "open"
STATUS_IN_PROGRESS = "in_progress"
STATUS_NEEDS_HUMAN = "needs_human"
STATUS_CLOSED = "closed"
TASK_STATUSES = (STATUS_OPEN, STATUS_IN_PROGRESS, STATUS_NEEDS_HUMAN, STATUS_CLOSED)

DEFAULT_PRIORITY = 3


@dataclass(slots=True)
class Task:
    repo: str
    slug: str
    title: str
    body: str = ""
    priority: int = DEFAULT_PRIORITY
    status: str = STATUS_OPEN
    depends_on: list[str] = field(default_factory=list)
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str | None = None
    id: int | None = None

    @property
    def full_name(self) -> str:
        return f"{self.repo}/{self.slug}"

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> Task:
        return cls(
            repo=str(payload["repo"]),
            slug=str(payload["slug"]),
            title=str(payload.get("title", "")),
            body=str(payload.get("body", "")),
            priority=int(payload.get("priority", DEFAULT_PRIORITY)),
            status=str(payload.get("status", STATUS_OPEN)),
            depends_on=[str(item) for item in payload.get("depends_on") or []],
            created_at=str(payload.get("created_at") or utcnow_iso()),
            updated_at=payload.get("updated_at"),
            id=payload.get("id"),
        )


@dataclass(slots=True)
class Blocker:
    ref: str
    status: str | None

    @property
    def missing(self) -> bool:
        return self.status is None

    def __str__(self) -> str:
        return f"{self.ref} (not found)" if self.missing else self.ref


def parse_ref(ref: str) -> tuple[str, str]:
    """Split ``owner/repo/name`` at the last slash.

    Returns ``("", ref)`` when the prefix is not itself an ``owner/repo`` pair.
    """

    repo, sep, name = ref.rpartition("/")
    if not sep or "/" not in repo:
        return "", ref
    return repo, name


def require_ref(ref: str, kind: str) -> tuple[str, str]:
    repo, name = parse_ref(ref)
    if not repo:
        raise PreconditionFailed(f"{kind} must be in 'owner/repo/{kind}' format")
    if not name:
        raise PreconditionFailed(f"{kind} name cannot be empty")
    return repo, name


def resolve_ref(ref: str, default_repo: str) -> tuple[str, str]:
    repo, name = parse_ref(ref)
    return (repo or default_repo), name


def generate_slug(title: str) -> str:
    slug = re.sub(r"[^a-z0-9-]", "", title.lower().replace(" ", "-"))
    slug = re.sub(r"-{2,}", "-", slug).strip("-")
    return slug[:50]


TaskLookup = Callable[[str, str], "Task | None"]


def is_blocked(task: Task, lookup: TaskLookup) -> tuple[bool, list[Blocker]]:
    """Check the task's direct dependencies against ``lookup``.

    A reference that resolves to nothing is an unsatisfied blocker, not an
    error. Dependencies of dependencies are not inspected.
    """

    blockers: list[Blocker] = []
    for dep_ref in task.depends_on:
        repo, slug = resolve_ref(dep_ref, task.repo)
        dependency = lookup(repo, slug)
        if dependency is None:
            blockers.append(Blocker(ref=dep_ref, status=None))
        elif dependency.status != STATUS_CLOSED:
            blockers.append(Blocker(ref=dependency.full_name, status=dependency.status))
    return bool(blockers), blockers


class TaskStore:
    def __init__(self, store: StateStore) -> None:
        self.table = RecordTable(store, "tasks", unique_key=("repo", "slug"), label="task")

    def create(self, task: Task) -> Task:
        if "/" in task.slug or not task.slug.strip():
            raise PreconditionFailed("task slug must be non-empty and cannot contain '/'")
        if not 1 <= int(task.priority) <= 5:
            raise PreconditionFailed(f"task priority must be between 1 and 5, got {task.priority}")
        if task.status not in TASK_STATUSES:
            raise PreconditionFailed(f"unknown task status: {task.status}")
        payload = task.to_dict()
        payload.pop("id", None)
        return Task.from_dict(self.table.insert(payload))

    def get(self, repo: str, slug: str) -> Task | None:
        row = self.table.get(repo=repo, slug=slug)
        return Task.from_dict(row) if row else None

    def require(self, repo: str, slug: str) -> Task:
        task = self.get(repo, slug)
        if task is None:
            raise NotFoundError(f"task {repo}/{slug} not found")
        return task

    def list(self, repo: str | None = None, status: str | None = None) -> list[Task]:
        tasks = [Task.from_dict(row) for row in self.table.list(repo=repo, status=status)]
        tasks.sort(key=lambda task: (task.priority, task.created_at, task.id or 0), reverse=True)
        return tasks

    def update_status(self, repo: str, slug: str, status: str) -> Task:
        if status not in TASK_STATUSES:
            raise PreconditionFailed(f"unknown task status: {status}")

        def _change(row: dict[str, Any]) -> None:
            row["status"] = status
            row["updated_at"] = utcnow_iso()

        return Task.from_dict(self.table.update({"repo": repo, "slug": slug}, _change))

    def is_blocked(self, task: Task) -> tuple[bool, list[Blocker]]:
        return is_blocked(task, self.get)
