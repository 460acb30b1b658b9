"""Git lifecycle for a task run.

Makes sure the project is a repository, puts the working tree on the run's
feature branch and commits after each completed task.
"""

import logging
import subprocess
from collections.abc import Iterable
from pathlib import Path

from ralph.errors import GitError

logger = logging.getLogger(__name__)

MAIN_LINE_CANDIDATES = ("main", "master")


class GitRepository:
    """Thin wrapper over the git CLI for one working tree.

    Attributes:
        path: Working tree root
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def _run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess[str]:
        try:
            result = subprocess.run(
                ["git", *args],
                cwd=self.path,
                capture_output=True,
                text=True,
            )
        except FileNotFoundError as e:
            raise GitError("git executable not found") from e

        if check and result.returncode != 0:
            detail = (result.stderr or result.stdout).strip()
            raise GitError(f"git {args[0]} failed: {detail}")
        return result

    def is_repository(self) -> bool:
        return self._run("rev-parse", "--is-inside-work-tree", check=False).returncode == 0

    def ensure_repository(self) -> bool:
        """Initialize a repository if there is none.

        Returns:
            True if a repository was created
        """
        if self.is_repository():
            return False
        self._run("init")
        logger.info("Initialized new git repository in %s", self.path)
        return True

    def has_commits(self) -> bool:
        return self._run("rev-parse", "--verify", "--quiet", "HEAD", check=False).returncode == 0

    def branch_exists(self, name: str) -> bool:
        result = self._run(
            "rev-parse", "--verify", "--quiet", f"refs/heads/{name}", check=False
        )
        return result.returncode == 0

    def current_branch(self) -> str:
        return self._run("branch", "--show-current").stdout.strip()

    def main_line(self) -> str | None:
        """Branch new feature branches start from: main, master, then HEAD."""
        for candidate in MAIN_LINE_CANDIDATES:
            if self.branch_exists(candidate):
                return candidate
        return "HEAD" if self.has_commits() else None

    def checkout_branch(self, name: str) -> bool:
        """Switch to a branch, creating it from the main line if needed.

        Returns:
            True if the branch was created
        """
        if self.current_branch() == name:
            return False
        if self.branch_exists(name):
            self._run("checkout", name)
            logger.info("Checked out existing branch %s", name)
            return False

        base = self.main_line()
        if base is None:
            # Unborn repository: the new branch becomes the initial branch
            self._run("checkout", "-b", name)
        else:
            self._run("checkout", "-b", name, base)
        logger.info("Created branch %s from %s", name, base or "empty repository")
        return True

    def _pathspec_excludes(self, paths: Iterable[Path]) -> list[str]:
        root = self.path.resolve()
        excludes = []
        for path in paths:
            resolved = path if path.is_absolute() else Path.cwd() / path
            try:
                relative = resolved.resolve().relative_to(root)
            except ValueError:
                # Outside the working tree, nothing to leave out
                continue
            excludes.append(f":(exclude){relative.as_posix()}")
        return excludes

    def commit_all(self, message: str, exclude: Iterable[Path] = ()) -> bool:
        """Stage and commit every change in the working tree.

        Args:
            message: Commit message
            exclude: Files or directories never staged (lock file, activity logs)

        Returns:
            True if a commit was made, False if there was nothing to commit
        """
        self._run("add", "-A", "--", ".", *self._pathspec_excludes(exclude))
        if self._run("diff", "--cached", "--quiet", check=False).returncode == 0:
            return False
        result = self._run("commit", "-m", message, check=False)
        if result.returncode != 0:
            detail = (result.stderr or result.stdout).strip()
            raise GitError(f"git commit failed: {detail}")
        return True
