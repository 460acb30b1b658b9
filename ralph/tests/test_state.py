"""Tests for task state persistence."""

import json
from pathlib import Path

import pytest

from ralph.errors import StateError
from ralph.state import (
    Task,
    TaskCollection,
    TaskStats,
    TaskStore,
    normalize_task_definition,
    normalize_task_id,
)


def definitions() -> list[dict]:
    return [
        {
            "id": 1,
            "description": "Add the user model. Include validation.",
            "success_criteria": ["Model exists", "Tests pass"],
            "suggested_role": "developer",
            "priority": 1,
        },
        {
            "id": 2,
            "description": "Add the login route",
            "acceptanceCriteria": ["Route returns 200"],
            "dependencies": [1],
        },
    ]


class TestNormalization:
    """Tests for task definition normalization."""

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [(1, "US-001"), ("7", "US-007"), (1234, "US-1234"), ("US-042", "US-042")],
    )
    def test_normalize_task_id(self, raw, expected):
        assert normalize_task_id(raw) == expected

    def test_definition_fields(self):
        task = normalize_task_definition(definitions()[1])

        assert task.id == "US-002"
        assert task.title == "Add the login route"
        assert task.acceptance_criteria == ["Route returns 200"]
        assert task.dependencies == ["US-001"]
        assert task.role == "developer"
        assert task.completed is False

    def test_success_criteria_alias_and_title(self):
        task = normalize_task_definition(definitions()[0])

        assert task.acceptance_criteria == ["Model exists", "Tests pass"]
        assert task.title == "Add the user model"

    def test_missing_criteria_become_empty(self):
        task = normalize_task_definition({"id": 3, "description": "Docs"})

        assert task.acceptance_criteria == []

    def test_missing_description_rejected(self):
        with pytest.raises(StateError):
            normalize_task_definition({"id": 3})


class TestTask:
    """Tests for Task lifecycle helpers."""

    def test_round_trip_preserves_stats(self):
        task = Task(
            id="US-001",
            title="t",
            description="d",
            acceptance_criteria=["a"],
            started_at="2026-01-01T00:00:00+00:00",
            stats=TaskStats(duration_ms=1200, iterations=2, tool_calls=5, error_count=1),
        )

        restored = Task.from_dict(task.to_dict())

        assert restored == task

    def test_json_uses_acceptance_criteria_key(self):
        data = Task(id="US-001", title="t", description="d", acceptance_criteria=["a"]).to_dict()

        assert data["acceptanceCriteria"] == ["a"]

    def test_is_interrupted(self):
        task = Task(id="US-001", title="t", description="d")
        assert not task.is_interrupted

        task.started_at = "2026-01-01T00:00:00+00:00"
        assert task.is_interrupted

        task.completed = True
        assert not task.is_interrupted

    def test_reset_clears_lifecycle(self):
        task = Task(
            id="US-001",
            title="t",
            description="d",
            passes=True,
            completed=True,
            notes="n",
            started_at="s",
            completed_at="c",
            output="o",
            stats=TaskStats(),
        )

        task.reset()

        assert task == Task(id="US-001", title="t", description="d")

    def test_from_dict_requires_id(self):
        with pytest.raises(StateError, match="missing required field"):
            Task.from_dict({"description": "d"})


class TestTaskCollection:
    """Tests for TaskCollection."""

    def _collection(self) -> TaskCollection:
        return TaskCollection([normalize_task_definition(d) for d in definitions()])

    def test_assign_branch_once(self):
        collection = self._collection()

        collection.assign_branch("feature/a")
        collection.assign_branch("feature/a")

        with pytest.raises(StateError, match="feature/a"):
            collection.assign_branch("feature/b")

    def test_merge_preserves_progress(self):
        collection = self._collection()
        done = collection.tasks[0]
        done.completed = True
        done.passes = True
        done.completed_at = "2026-01-01T00:00:00+00:00"
        done.output = "done"
        collection.branch_name = "ralph-1"
        fresh_defs = definitions()
        fresh_defs[0]["description"] = "Add the user model with roles"

        warnings = collection.merge([normalize_task_definition(d) for d in fresh_defs])

        assert warnings == []
        assert collection.tasks[0].completed is True
        assert collection.tasks[0].description == "Add the user model with roles"
        assert collection.tasks[0].output == "done"
        assert collection.branch_name == "ralph-1"

    def test_merge_warns_on_count_change_and_dropped_completed(self):
        collection = self._collection()
        collection.tasks[1].completed = True

        warnings = collection.merge([normalize_task_definition(definitions()[0])])

        assert len(warnings) == 2
        assert "Task count changed: 2 persisted, 1 in new definitions" in warnings
        assert "Completed task US-002 is not in the new definitions" in warnings

    def test_pending_and_completed_count(self):
        collection = self._collection()
        collection.tasks[0].completed = True

        assert [t.id for t in collection.pending()] == ["US-002"]
        assert collection.completed_count() == 1

    def test_from_dict_requires_user_stories(self):
        with pytest.raises(StateError, match="userStories"):
            TaskCollection.from_dict({"branchName": "x"})


class TestTaskStore:
    """Tests for TaskStore persistence."""

    def test_create_from_definitions(self, tmp_path: Path):
        store = TaskStore(tmp_path / "tasks" / "tasks.json")

        collection, warnings = store.load_or_create(definitions(), "feature/x")

        assert warnings == []
        assert [t.id for t in collection.tasks] == ["US-001", "US-002"]
        data = json.loads(store.path.read_text())
        assert data["branchName"] == "feature/x"
        assert len(data["userStories"]) == 2
        assert "created_at" in data

    def test_load_or_create_without_anything(self, tmp_path: Path):
        with pytest.raises(StateError, match="No task collection"):
            TaskStore(tmp_path / "tasks.json").load_or_create()

    def test_load_invalid_json(self, tmp_path: Path):
        path = tmp_path / "tasks.json"
        path.write_text("{not json")

        with pytest.raises(StateError, match="Invalid JSON"):
            TaskStore(path).load()

    def test_collection_before_load(self, tmp_path: Path):
        with pytest.raises(StateError):
            TaskStore(tmp_path / "tasks.json").collection

    def test_branch_conflict_with_persisted(self, tmp_path: Path):
        store = TaskStore(tmp_path / "tasks.json")
        store.load_or_create(definitions(), "feature/x")

        with pytest.raises(StateError):
            TaskStore(store.path).load_or_create(None, "feature/y")

    def test_mark_started_persists_immediately(self, tmp_path: Path):
        store = TaskStore(tmp_path / "tasks.json")
        collection, _ = store.load_or_create(definitions())

        store.mark_started(collection.tasks[0])

        reloaded = TaskStore(store.path).load()
        assert reloaded.tasks[0].started_at is not None
        assert reloaded.tasks[0].is_interrupted

    def test_mark_completed_truncates_output(self, tmp_path: Path):
        store = TaskStore(tmp_path / "tasks.json", output_snapshot_chars=10)
        collection, _ = store.load_or_create(definitions())
        task = collection.tasks[0]
        store.mark_started(task)

        store.mark_completed(task, "x" * 50, TaskStats(iterations=2))

        reloaded = TaskStore(store.path).load().tasks[0]
        assert reloaded.completed is True
        assert reloaded.passes is True
        assert reloaded.output == "x" * 10
        assert reloaded.stats.iterations == 2
        assert reloaded.completed_at is not None

    def test_mark_failed_keeps_task_resumable(self, tmp_path: Path):
        store = TaskStore(tmp_path / "tasks.json")
        collection, _ = store.load_or_create(definitions())
        task = collection.tasks[0]
        store.mark_started(task)

        store.mark_failed(task, "Connection failure: reset", "partial")

        reloaded = TaskStore(store.path).load().tasks[0]
        assert reloaded.completed is False
        assert reloaded.passes is False
        assert reloaded.notes == "Connection failure: reset"
        assert reloaded.output == "partial"
        assert reloaded.is_interrupted

    def test_save_leaves_no_temp_file(self, tmp_path: Path):
        store = TaskStore(tmp_path / "tasks.json")

        store.load_or_create(definitions())

        assert sorted(p.name for p in tmp_path.iterdir()) == ["tasks.json"]

    def test_reload_with_new_definitions_merges(self, tmp_path: Path):
        store = TaskStore(tmp_path / "tasks.json")
        collection, _ = store.load_or_create(definitions(), "feature/x")
        store.mark_completed(collection.tasks[0], "done")

        collection, warnings = TaskStore(store.path).load_or_create(definitions())

        assert warnings == []
        assert collection.tasks[0].completed is True
        assert collection.branch_name == "feature/x"

    def test_reset(self, tmp_path: Path):
        store = TaskStore(tmp_path / "tasks.json")
        collection, _ = store.load_or_create(definitions(), "feature/x")
        store.mark_completed(collection.tasks[0], "done")

        count = TaskStore(store.path).reset()

        reloaded = TaskStore(store.path).load()
        assert count == 2
        assert reloaded.completed_count() == 0
        assert reloaded.branch_name == "feature/x"
