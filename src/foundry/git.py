from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path

from foundry.errors import GitError

logger = logging.getLogger(__name__)

INITIAL_COMMIT_IDENTITY = ["-c", "user.name=foundry", "-c", "user.email=foundry@localhost"]


class GitClient:
    """Thin wrapper over the git binary; every call names the path it acts on."""

    def __init__(self, binary: str = "git") -> None:
        self.binary = binary

    def run(
        self,
        path: Path | str,
        args: list[str],
        *,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        command = [self.binary, "--no-pager", "-C", str(path), *args]
        logger.debug("git %s (in %s)", " ".join(args), path)
        try:
            proc = subprocess.run(command, text=True, capture_output=True)
        except OSError as exc:
            raise GitError(f"Could not run {self.binary}: {exc}", tool="git") from exc
        if check and proc.returncode != 0:
            raise GitError(
                f"git {' '.join(args)} failed: {proc.stderr.strip() or proc.stdout.strip()}",
                tool="git",
                exit_code=proc.returncode,
            )
        return proc

    def rev_parse(self, path: Path | str, ref: str) -> str:
        return self.run(path, ["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"]).stdout.strip()

    def try_rev_parse(self, path: Path | str, ref: str) -> str | None:
        proc = self.run(path, ["rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}"], check=False)
        if proc.returncode != 0:
            return None
        return proc.stdout.strip() or None

    def status_porcelain(self, path: Path | str) -> list[str]:
        proc = self.run(path, ["status", "--porcelain"])
        return [line for line in proc.stdout.splitlines() if line.strip()]

    def is_clean(self, path: Path | str) -> bool:
        return not self.status_porcelain(path)

    def push(self, path: Path | str, remote: str, rev: str, branch: str) -> None:
        """Push ``rev`` itself, not whatever the local branch ref points at."""
        self.run(path, ["push", remote, f"{rev}:refs/heads/{branch}"])

    def update_ref(self, repo_path: Path | str, ref: str, rev: str) -> None:
        self.run(repo_path, ["update-ref", ref, rev])

    def delete_ref(self, repo_path: Path | str, ref: str) -> None:
        self.run(repo_path, ["update-ref", "-d", ref])

    def is_ancestor(self, repo_path: Path | str, ancestor: str, descendant: str) -> bool:
        proc = self.run(repo_path, ["merge-base", "--is-ancestor", ancestor, descendant], check=False)
        if proc.returncode == 0:
            return True
        if proc.returncode == 1:
            return False
        raise GitError(
            f"git merge-base failed: {proc.stderr.strip() or proc.stdout.strip()}",
            tool="git",
            exit_code=proc.returncode,
        )

    def init_bare(self, repo_path: Path | str, initial_branch: str = "master") -> None:
        repo_path = Path(repo_path)
        repo_path.mkdir(parents=True, exist_ok=True)
        self.run(repo_path, ["init", "--bare", f"--initial-branch={initial_branch}"])

    def clone(self, source: Path | str, destination: Path | str) -> None:
        destination = Path(destination)
        self.run(destination.parent, ["clone", "--quiet", str(source), str(destination)])


def create_local_checkout(
    git: GitClient,
    source_repo: Path,
    branch_name: str,
    destination: Path,
) -> None:
    """Clone ``source_repo`` into ``destination`` on a new branch.

    An empty source repository gets an empty initial commit so the branch has
    a tip to push later.
    """

    has_master = git.try_rev_parse(source_repo, "refs/heads/master") is not None
    destination.parent.mkdir(parents=True, exist_ok=True)
    try:
        git.clone(source_repo, destination)
        git.run(destination, ["checkout", "--quiet", "-b", branch_name])
        if not has_master:
            git.run(
                destination,
                [*INITIAL_COMMIT_IDENTITY, "commit", "--quiet", "--allow-empty", "-m", "Initial commit"],
            )
    except GitError:
        remove_local_checkout(destination)
        raise


def remove_local_checkout(path: Path) -> None:
    if path.exists():
        shutil.rmtree(path)
