from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

from foundry.errors import AlreadyExistsError, NotFoundError, PreconditionFailed
from foundry.git import GitClient


@dataclass(slots=True)
class Repo:
    owner: str
    name: str
    path: Path

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.name}"


def parse_repo_ref(ref: str) -> tuple[str, str]:
    owner, _, name = ref.strip().partition("/")
    if not owner or not name or "/" in name:
        raise PreconditionFailed(f"repository must be in 'owner/name' format, got {ref!r}")
    return owner, name


class RepoStore:
    """Bare repositories laid out as ``<data_dir>/repos/<owner>/<name>.git``."""

    def __init__(self, data_dir: Path, git: GitClient | None = None) -> None:
        self.repos_dir = data_dir / "repos"
        self.git = git or GitClient()

    def _path(self, owner: str, name: str) -> Path:
        return self.repos_dir / owner / f"{name}.git"

    def get(self, ref: str) -> Repo | None:
        owner, name = parse_repo_ref(ref)
        path = self._path(owner, name)
        if not path.is_dir():
            return None
        return Repo(owner=owner, name=name, path=path)

    def require(self, ref: str) -> Repo:
        repo = self.get(ref)
        if repo is None:
            raise NotFoundError(f"repository {ref} not found")
        return repo

    def create(self, ref: str) -> Repo:
        owner, name = parse_repo_ref(ref)
        path = self._path(owner, name)
        if path.exists():
            raise AlreadyExistsError(f"repository {ref} already exists")
        self.git.init_bare(path)
        return Repo(owner=owner, name=name, path=path)

    def list(self, owner: str | None = None) -> list[Repo]:
        if not self.repos_dir.is_dir():
            return []
        owner_dirs = [self.repos_dir / owner] if owner else sorted(self.repos_dir.iterdir())
        repos: list[Repo] = []
        for owner_dir in owner_dirs:
            if not owner_dir.is_dir():
                continue
            for entry in sorted(owner_dir.iterdir()):
                if entry.is_dir() and entry.name.endswith(".git"):
                    repos.append(Repo(owner=owner_dir.name, name=entry.name[: -len(".git")], path=entry))
        return repos
