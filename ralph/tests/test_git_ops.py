"""Tests for the git lifecycle wrapper.

These run the real git CLI in temporary directories, isolated from the
user's global configuration.
"""

import shutil
import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from ralph.errors import GitError
from ralph.git_ops import GitRepository

pytestmark = pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")


@pytest.fixture(autouse=True)
def isolated_git(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    global_config = tmp_path / "gitconfig"
    global_config.write_text("")
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(global_config))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_CEILING_DIRECTORIES", str(tmp_path))
    monkeypatch.setenv("GIT_AUTHOR_NAME", "Ralph Test")
    monkeypatch.setenv("GIT_AUTHOR_EMAIL", "ralph@example.com")
    monkeypatch.setenv("GIT_COMMITTER_NAME", "Ralph Test")
    monkeypatch.setenv("GIT_COMMITTER_EMAIL", "ralph@example.com")


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    path = tmp_path / "project"
    path.mkdir()
    return path


def git(path: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=path, capture_output=True, text=True, check=True
    )
    return result.stdout.strip()


def init_with_commit(path: Path, branch: str) -> None:
    git(path, "init")
    git(path, "symbolic-ref", "HEAD", f"refs/heads/{branch}")
    (path / "README.md").write_text("hello\n")
    git(path, "add", "-A")
    git(path, "commit", "-m", "initial")


class TestRepositorySetup:
    """Tests for repository detection and initialization."""

    def test_ensure_repository_initializes_once(self, workdir):
        repo = GitRepository(workdir)
        assert not repo.is_repository()

        assert repo.ensure_repository() is True
        assert repo.ensure_repository() is False
        assert repo.is_repository()

    def test_unborn_repository_has_no_main_line(self, workdir):
        repo = GitRepository(workdir)
        repo.ensure_repository()

        assert repo.has_commits() is False
        assert repo.main_line() is None

    def test_main_line_prefers_main(self, workdir):
        init_with_commit(workdir, "master")
        git(workdir, "branch", "main")

        assert GitRepository(workdir).main_line() == "main"

    def test_main_line_falls_back_to_master_then_head(self, workdir, tmp_path):
        init_with_commit(workdir, "master")
        assert GitRepository(workdir).main_line() == "master"

        other = tmp_path / "other"
        other.mkdir()
        init_with_commit(other, "trunk")
        assert GitRepository(other).main_line() == "HEAD"

    def test_commands_outside_repository_fail(self, workdir):
        with pytest.raises(GitError, match="git branch failed"):
            GitRepository(workdir).current_branch()

    def test_missing_git_executable(self, workdir):
        with patch("ralph.git_ops.subprocess.run", side_effect=FileNotFoundError):
            with pytest.raises(GitError, match="not found"):
                GitRepository(workdir).is_repository()


class TestCheckoutBranch:
    """Tests for GitRepository.checkout_branch."""

    def test_creates_branch_from_main(self, workdir):
        init_with_commit(workdir, "main")
        repo = GitRepository(workdir)

        created = repo.checkout_branch("ralph-implementation-1")

        assert created is True
        assert repo.current_branch() == "ralph-implementation-1"
        assert git(workdir, "rev-parse", "HEAD") == git(workdir, "rev-parse", "main")

    def test_already_on_branch(self, workdir):
        init_with_commit(workdir, "main")
        repo = GitRepository(workdir)
        repo.checkout_branch("feature")

        assert repo.checkout_branch("feature") is False

    def test_switches_to_existing_branch(self, workdir):
        init_with_commit(workdir, "main")
        repo = GitRepository(workdir)
        repo.checkout_branch("feature")
        git(workdir, "checkout", "main")

        created = repo.checkout_branch("feature")

        assert created is False
        assert repo.current_branch() == "feature"

    def test_unborn_repository(self, workdir):
        repo = GitRepository(workdir)
        repo.ensure_repository()

        assert repo.checkout_branch("ralph-1") is True
        assert repo.current_branch() == "ralph-1"


class TestCommitAll:
    """Tests for GitRepository.commit_all."""

    def test_commits_changes(self, workdir):
        init_with_commit(workdir, "main")
        repo = GitRepository(workdir)
        (workdir / "app.py").write_text("print('hi')\n")

        assert repo.commit_all("ralph: US-001 - Add app") is True
        assert git(workdir, "log", "-1", "--format=%s") == "ralph: US-001 - Add app"
        assert git(workdir, "status", "--porcelain") == ""

    def test_excluded_paths_are_not_staged(self, workdir):
        init_with_commit(workdir, "main")
        (workdir / "tasks").mkdir()
        (workdir / "tasks" / "tasks.json").write_text("{}")
        (workdir / "tasks" / "tasks.json.lock").write_text("123")
        (workdir / "logs").mkdir()
        (workdir / "logs" / "task.jsonl").write_text("{}\n")

        committed = GitRepository(workdir).commit_all(
            "work",
            exclude=[workdir / "tasks" / "tasks.json.lock", workdir / "logs"],
        )

        assert committed is True
        files = git(workdir, "show", "--name-only", "--format=", "HEAD").splitlines()
        assert files == ["tasks/tasks.json"]

    def test_only_excluded_changes(self, workdir):
        init_with_commit(workdir, "main")
        (workdir / "run.lock").write_text("123")

        assert GitRepository(workdir).commit_all("x", exclude=[workdir / "run.lock"]) is False

    def test_nothing_to_commit(self, workdir):
        init_with_commit(workdir, "main")

        assert GitRepository(workdir).commit_all("empty") is False

    def test_first_commit_in_unborn_repository(self, workdir):
        repo = GitRepository(workdir)
        repo.ensure_repository()
        repo.checkout_branch("ralph-1")
        (workdir / "a.txt").write_text("a")

        assert repo.commit_all("first") is True
        assert repo.has_commits()
