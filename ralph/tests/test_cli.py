"""Tests for CLI module.

These tests verify the run, status, reset, import and ask commands.
"""

import json
import os
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from click.testing import CliRunner

from ralph.cli import cli
from ralph.errors import EmptyOutputError, LockError
from ralph.events import ResultEvent
from ralph.state import TaskStats, TaskStore
from ralph.task_runner import RunSummary, TaskResult


def definitions(count: int = 2) -> list[dict]:
    return [
        {"id": i, "description": f"Build part {i}. Details.", "acceptanceCriteria": ["works"]}
        for i in range(1, count + 1)
    ]


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def workdir(runner: CliRunner, tmp_path: Path):
    """Run each command from a short relative path so output lines stay unwrapped."""
    with runner.isolated_filesystem(temp_dir=tmp_path) as path:
        yield Path(path)


def create_tasks(path: Path = Path("tasks.json"), branch: str = "feat") -> TaskStore:
    store = TaskStore(path)
    store.load_or_create(definitions(), branch)
    return store


class TestCommands:
    """Test command registration."""

    def test_help_lists_commands(self, runner):
        result = runner.invoke(cli, ["--help"])

        assert result.exit_code == 0
        for command in ("run", "status", "reset", "import", "ask"):
            assert command in result.output

    def test_run_help(self, runner):
        result = runner.invoke(cli, ["run", "--help"])

        assert result.exit_code == 0
        assert "--limit" in result.output
        assert "--no-git" in result.output

    def test_import_requires_branch(self, runner, workdir):
        Path("defs.json").write_text(json.dumps(definitions()))

        result = runner.invoke(cli, ["import", "defs.json"])

        assert result.exit_code != 0
        assert "--branch" in result.output


class TestRunCommand:
    """Test the run command with a mocked workflow."""

    def invoke(self, runner, args, summary=None, side_effect=None):
        workflow = AsyncMock(return_value=summary, side_effect=side_effect)
        with patch("ralph.cli.setup_telemetry", return_value=(MagicMock(), MagicMock())):
            with patch("ralph.cli.create_metrics"):
                with patch("ralph.cli.run_workflow", workflow):
                    result = runner.invoke(cli, ["run", *args])
        return result, workflow

    def test_completed_run(self, runner, workdir):
        summary = RunSummary(
            status="completed",
            total_tasks=2,
            completed_tasks=2,
            branch_name="ralph-implementation-1",
        )

        result, workflow = self.invoke(
            runner,
            ["work/tasks.json", "--limit", "1", "--model", "m-1", "--no-git",
             "--max-iterations", "3"],
            summary,
        )

        assert result.exit_code == 0
        assert "Run COMPLETED" in result.output
        assert "Tasks: 2/2 completed" in result.output
        assert "git merge ralph-implementation-1" in result.output

        config = workflow.call_args.args[0]
        assert config.tasks_dir == Path("work")
        assert config.max_iterations == 3
        kwargs = workflow.call_args.kwargs
        assert kwargs["tasks_file"] == Path("work/tasks.json")
        assert kwargs["limit"] == 1
        assert kwargs["model"] == "m-1"
        assert kwargs["use_git"] is False

    def test_halted_run_lists_failures(self, runner, workdir):
        summary = RunSummary(
            status="halted",
            total_tasks=2,
            completed_tasks=1,
            results=[TaskResult("US-002", "halted", 1.0, TaskStats(), error="Loop error")],
        )

        result, _ = self.invoke(runner, [], summary)

        assert result.exit_code == 1
        assert "Run HALTED" in result.output
        assert "Failed: US-002" in result.output

    def test_cancelled_run(self, runner, workdir):
        summary = RunSummary(status="cancelled", total_tasks=1, completed_tasks=0)

        result, _ = self.invoke(runner, [], summary)

        assert result.exit_code == 130

    def test_limit_reached_is_success(self, runner, workdir):
        summary = RunSummary(status="limit_reached", total_tasks=3, completed_tasks=1)

        result, _ = self.invoke(runner, ["-n", "1"], summary)

        assert result.exit_code == 0
        assert "Run LIMIT_REACHED" in result.output

    def test_workflow_error(self, runner, workdir):
        result, _ = self.invoke(runner, [], side_effect=LockError("Another run holds it"))

        assert result.exit_code == 1
        assert "Error:" in result.output
        assert "Another run holds it" in result.output


class TestStatusCommand:
    """Test the status command."""

    def test_shows_tasks(self, runner, workdir):
        store = create_tasks()
        store.mark_completed(store.collection.tasks[0], "done", TaskStats(iterations=4))

        result = runner.invoke(cli, ["status", "tasks.json"])

        assert result.exit_code == 0
        assert "US-001" in result.output
        assert "US-002" in result.output
        assert "passed" in result.output
        assert "pending" in result.output
        assert "1/2 task(s) completed" in result.output

    def test_failed_task(self, runner, workdir):
        store = create_tasks()
        store.mark_started(store.collection.tasks[1])
        store.mark_failed(store.collection.tasks[1], "Connection failure: reset")

        result = runner.invoke(cli, ["status", "tasks.json"])

        assert "failed" in result.output

    def test_missing_collection(self, runner, workdir):
        result = runner.invoke(cli, ["status", "missing.json"])

        assert result.exit_code == 1
        assert "Error:" in result.output


class TestResetCommand:
    """Test the reset command."""

    def test_reset_with_yes(self, runner, workdir):
        store = create_tasks()
        store.mark_completed(store.collection.tasks[0], "done")

        result = runner.invoke(cli, ["reset", "tasks.json", "--yes"])

        assert result.exit_code == 0
        assert "reset completion status for 2 tasks" in result.output
        tasks = TaskStore(Path("tasks.json")).load().tasks
        assert not any(task.completed for task in tasks)
        assert all(task.started_at is None for task in tasks)

    def test_reset_declined(self, runner, workdir):
        store = create_tasks()
        store.mark_completed(store.collection.tasks[0], "done")

        result = runner.invoke(cli, ["reset", "tasks.json"], input="n\n")

        assert result.exit_code == 1
        assert TaskStore(Path("tasks.json")).load().tasks[0].completed

    def test_reset_while_locked(self, runner, workdir):
        create_tasks()
        Path("tasks.json.lock").write_text(str(os.getppid()))

        result = runner.invoke(cli, ["reset", "tasks.json", "-y"])

        assert result.exit_code == 1
        assert "Error:" in result.output


class TestImportCommand:
    """Test the import command."""

    def test_creates_collection(self, runner, workdir):
        Path("defs.json").write_text(json.dumps({"tasks": definitions()}))

        result = runner.invoke(
            cli, ["import", "defs.json", "--branch", "feat", "--tasks-file", "tasks.json"]
        )

        assert result.exit_code == 0
        assert "has 2 task(s) on branch feat" in result.output
        collection = TaskStore(Path("tasks.json")).load()
        assert collection.branch_name == "feat"
        assert [task.id for task in collection.tasks] == ["US-001", "US-002"]

    def test_merge_warns_about_count_change(self, runner, workdir):
        create_tasks()
        Path("defs.json").write_text(json.dumps(definitions(1)))

        result = runner.invoke(
            cli, ["import", "defs.json", "-b", "feat", "--tasks-file", "tasks.json"]
        )

        assert result.exit_code == 0
        assert "Warning:" in result.output
        assert "Task count changed" in result.output

    def test_branch_conflict(self, runner, workdir):
        create_tasks(branch="feat")
        Path("defs.json").write_text(json.dumps(definitions()))

        result = runner.invoke(
            cli, ["import", "defs.json", "-b", "other", "--tasks-file", "tasks.json"]
        )

        assert result.exit_code == 1
        assert "Error:" in result.output
        assert TaskStore(Path("tasks.json")).load().branch_name == "feat"

    def test_rejects_unknown_shape(self, runner, workdir):
        Path("defs.json").write_text(json.dumps({"stories": []}))

        result = runner.invoke(
            cli, ["import", "defs.json", "-b", "feat", "--tasks-file", "tasks.json"]
        )

        assert result.exit_code == 2
        assert not Path("tasks.json").exists()


class TestAskCommand:
    """Test the single-shot ask command."""

    def make_result(self, text: str = "Hello there", is_error: bool = False) -> ResultEvent:
        return ResultEvent(
            type="result",
            subtype="success",
            duration_ms=1500,
            duration_api_ms=1200,
            is_error=is_error,
            result=text,
            session_id="session-9",
        )

    def invoke(self, runner, args, result=None, side_effect=None):
        agent = MagicMock()
        agent.generate = AsyncMock(return_value=result, side_effect=side_effect)
        with patch("ralph.cli.Agent") as mock_agent_cls:
            mock_agent_cls.from_config.return_value = agent
            outcome = runner.invoke(cli, ["ask", *args])
        return outcome, agent

    def test_prints_result(self, runner):
        outcome, agent = self.invoke(runner, ["Say hi", "-m", "fast"], self.make_result())

        assert outcome.exit_code == 0
        assert "Hello there" in outcome.output
        assert agent.generate.call_args.args == ("Say hi",)
        assert agent.generate.call_args.kwargs["model"] == "fast"

    def test_verbose_shows_session(self, runner):
        outcome, _ = self.invoke(runner, ["Say hi", "-v"], self.make_result())

        assert "session session-9, 1.5s" in outcome.output

    def test_error_result_exits_nonzero(self, runner):
        outcome, _ = self.invoke(runner, ["Say hi"], self.make_result("nope", is_error=True))

        assert outcome.exit_code == 1
        assert "nope" in outcome.output

    def test_agent_failure(self, runner):
        outcome, _ = self.invoke(runner, ["Say hi"], side_effect=EmptyOutputError("no output"))

        assert outcome.exit_code == 1
        assert "Error:" in outcome.output
