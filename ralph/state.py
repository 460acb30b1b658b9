"""Durable task state for resumable runs.

The task collection is a JSON document (``tasks.json``) listing user stories
with their lifecycle fields. It is rewritten in full after every mutation so a
killed run loses at most the state of the task that was in flight.
"""

import json
import logging
import os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from ralph.errors import StateError

logger = logging.getLogger(__name__)

DEFAULT_ROLE = "developer"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class TaskStats:
    """Execution statistics for one task attempt."""

    duration_ms: int = 0
    iterations: int = 0
    tool_calls: int = 0
    error_count: int = 0

    def to_dict(self) -> dict[str, int]:
        return {
            "duration_ms": self.duration_ms,
            "iterations": self.iterations,
            "tool_calls": self.tool_calls,
            "error_count": self.error_count,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskStats":
        return cls(
            duration_ms=int(data.get("duration_ms", 0)),
            iterations=int(data.get("iterations", 0)),
            tool_calls=int(data.get("tool_calls", 0)),
            error_count=int(data.get("error_count", 0)),
        )


@dataclass
class Task:
    """A user story and its execution record.

    Attributes:
        id: Stable identifier (``US-001``)
        title: First sentence of the description, at most 60 characters
        description: Full task description
        acceptance_criteria: Ordered criteria rendered as a checklist
        priority: Scheduling priority from the task generator
        dependencies: Ids of tasks this one builds on
        suggested_role: Role the agent should assume
        passes: True if the task met its criteria
        notes: Free text, holds the failure reason for failed attempts
        completed: True once the task is done and should be skipped
        started_at: When the latest attempt started
        completed_at: When the task completed
        output: Truncated output of the latest attempt
        stats: Statistics of the latest attempt
    """

    id: str
    title: str
    description: str
    acceptance_criteria: list[str] = field(default_factory=list)
    priority: int | None = None
    dependencies: list[str] = field(default_factory=list)
    suggested_role: str | None = None
    passes: bool = False
    notes: str = ""
    completed: bool = False
    started_at: str | None = None
    completed_at: str | None = None
    output: str | None = None
    stats: TaskStats | None = None

    @property
    def role(self) -> str:
        return self.suggested_role or DEFAULT_ROLE

    @property
    def is_interrupted(self) -> bool:
        """A previous attempt started but never completed."""
        return self.started_at is not None and not self.completed

    def reset(self) -> None:
        """Clear every lifecycle field so the task runs again from scratch."""
        self.passes = False
        self.completed = False
        self.notes = ""
        self.started_at = None
        self.completed_at = None
        self.output = None
        self.stats = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "acceptanceCriteria": list(self.acceptance_criteria),
            "priority": self.priority,
            "dependencies": list(self.dependencies),
            "suggested_role": self.suggested_role,
            "passes": self.passes,
            "notes": self.notes,
            "completed": self.completed,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "output": self.output,
            "stats": self.stats.to_dict() if self.stats else None,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Task":
        try:
            task_id = data["id"]
            description = data["description"]
        except KeyError as e:
            raise StateError(f"Task record is missing required field {e}") from e
        stats = data.get("stats")
        return cls(
            id=str(task_id),
            title=data.get("title") or _title_from(description),
            description=description,
            acceptance_criteria=list(data.get("acceptanceCriteria") or []),
            priority=data.get("priority"),
            dependencies=[str(dep) for dep in data.get("dependencies") or []],
            suggested_role=data.get("suggested_role"),
            passes=bool(data.get("passes", False)),
            notes=data.get("notes") or "",
            completed=bool(data.get("completed", False)),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            output=data.get("output"),
            stats=TaskStats.from_dict(stats) if stats else None,
        )


def _title_from(description: str) -> str:
    return description.split(".")[0][:60] or description[:60]


def normalize_task_id(raw_id: Any) -> str:
    """Format a generator id as ``US-###``; ids already in that form are kept."""
    if isinstance(raw_id, str) and raw_id.startswith("US-"):
        return raw_id
    return f"US-{str(raw_id).zfill(3)}"


def normalize_task_definition(raw: dict[str, Any]) -> Task:
    """Convert a task generator definition into a fresh Task.

    Accepts integer or ``US-###`` ids and either ``acceptanceCriteria`` or
    ``success_criteria`` for the criteria list.

    Raises:
        StateError: If the definition has no id or description
    """
    if "id" not in raw or not raw.get("description"):
        raise StateError(f"Task definition needs an id and a description: {raw!r}")

    criteria = raw.get("acceptanceCriteria") or raw.get("success_criteria")
    if not isinstance(criteria, list):
        logger.warning(
            "Task %s is missing success criteria, using an empty list", raw["id"]
        )
        criteria = []

    description = raw["description"]
    return Task(
        id=normalize_task_id(raw["id"]),
        title=_title_from(description),
        description=description,
        acceptance_criteria=[str(c) for c in criteria],
        priority=raw.get("priority"),
        dependencies=[normalize_task_id(dep) for dep in raw.get("dependencies") or []],
        suggested_role=raw.get("suggested_role"),
    )


@dataclass
class TaskCollection:
    """Ordered tasks of one development run.

    The branch name, once set, never changes for the lifetime of the
    collection.
    """

    tasks: list[Task]
    branch_name: str | None = None
    created_at: str = field(default_factory=_now)

    def pending(self) -> list[Task]:
        return [task for task in self.tasks if not task.completed]

    def completed_count(self) -> int:
        return sum(1 for task in self.tasks if task.completed)

    def assign_branch(self, name: str) -> None:
        """Set the feature branch.

        Raises:
            StateError: If a different branch is already assigned
        """
        if self.branch_name and self.branch_name != name:
            raise StateError(
                f"Task collection is bound to branch {self.branch_name!r}, "
                f"cannot switch to {name!r}"
            )
        self.branch_name = name

    def merge(self, fresh: list[Task]) -> list[str]:
        """Replace the task list with fresh definitions, keeping progress.

        Completion fields of tasks whose id is in both lists are carried over.
        The branch name is never touched.

        Returns:
            Warnings about count changes and dropped tasks
        """
        warnings = []
        if len(fresh) != len(self.tasks):
            warnings.append(
                f"Task count changed: {len(self.tasks)} persisted, "
                f"{len(fresh)} in new definitions"
            )

        existing = {task.id: task for task in self.tasks}
        fresh_ids = {task.id for task in fresh}
        for task in fresh:
            previous = existing.get(task.id)
            if previous is None:
                continue
            task.completed = previous.completed
            task.passes = previous.passes
            task.started_at = previous.started_at
            task.completed_at = previous.completed_at
            task.notes = previous.notes
            task.output = previous.output
            task.stats = previous.stats

        for task in self.tasks:
            if task.id not in fresh_ids and task.completed:
                warnings.append(f"Completed task {task.id} is not in the new definitions")

        self.tasks = fresh
        for warning in warnings:
            logger.warning(warning)
        return warnings

    def to_dict(self) -> dict[str, Any]:
        return {
            "created_at": self.created_at,
            "branchName": self.branch_name,
            "userStories": [task.to_dict() for task in self.tasks],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TaskCollection":
        stories = data.get("userStories") if isinstance(data, dict) else None
        if not isinstance(stories, list):
            raise StateError("Invalid task collection: missing or invalid userStories array")
        return cls(
            tasks=[Task.from_dict(story) for story in stories],
            branch_name=data.get("branchName"),
            created_at=data.get("created_at") or _now(),
        )


class TaskStore:
    """Loads and persists a task collection file.

    Every mutation rewrites the whole file through a temporary file and an
    atomic rename before returning.

    Attributes:
        path: Location of tasks.json
        output_snapshot_chars: Output characters kept per task
    """

    def __init__(self, path: Path, output_snapshot_chars: int = 500) -> None:
        self.path = path
        self.output_snapshot_chars = output_snapshot_chars
        self._collection: TaskCollection | None = None

    @property
    def collection(self) -> TaskCollection:
        if self._collection is None:
            raise StateError("Task collection has not been loaded")
        return self._collection

    @property
    def tmp_path(self) -> Path:
        """Scratch file each save writes before renaming it over the collection."""
        return self.path.with_name(self.path.name + ".tmp")

    def exists(self) -> bool:
        return self.path.exists()

    def load(self) -> TaskCollection:
        """Load the collection from disk.

        Raises:
            StateError: If the file is missing, not JSON or malformed
        """
        if not self.path.exists():
            raise StateError(f"No task collection found at {self.path}")
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as e:
            raise StateError(f"Invalid JSON in {self.path}: {e}") from e
        self._collection = TaskCollection.from_dict(data)
        return self._collection

    def load_or_create(
        self,
        definitions: list[dict[str, Any]] | None = None,
        branch_name: str | None = None,
    ) -> tuple[TaskCollection, list[str]]:
        """Load the persisted collection, merging in new definitions if given.

        Args:
            definitions: Raw task generator definitions
            branch_name: Feature branch to bind (must match an existing one)

        Returns:
            Tuple of (collection, merge warnings)

        Raises:
            StateError: If there is nothing to load and no definitions, or the
                branch conflicts with the persisted one
        """
        warnings: list[str] = []
        if self.path.exists():
            collection = self.load()
            if definitions is not None:
                warnings = collection.merge(
                    [normalize_task_definition(raw) for raw in definitions]
                )
        elif definitions is not None:
            collection = TaskCollection(
                tasks=[normalize_task_definition(raw) for raw in definitions]
            )
            self._collection = collection
        else:
            raise StateError(f"No task collection found at {self.path}")

        if branch_name:
            collection.assign_branch(branch_name)
        self.save()
        return collection, warnings

    def save(self) -> None:
        """Rewrite the collection file atomically."""
        collection = self.collection
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.tmp_path
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(collection.to_dict(), f, indent=2, ensure_ascii=False)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, self.path)

    def mark_started(self, task: Task) -> None:
        task.started_at = _now()
        task.completed = False
        self.save()

    def mark_completed(
        self,
        task: Task,
        output: str,
        stats: TaskStats | None = None,
        passes: bool = True,
        notes: str = "",
    ) -> None:
        task.completed = True
        task.passes = passes
        task.completed_at = _now()
        task.output = output[: self.output_snapshot_chars]
        task.stats = stats
        task.notes = notes
        self.save()

    def mark_failed(
        self,
        task: Task,
        reason: str,
        output: str | None = None,
        stats: TaskStats | None = None,
    ) -> None:
        task.completed = False
        task.passes = False
        task.notes = reason
        task.output = output[: self.output_snapshot_chars] if output else None
        task.stats = stats
        self.save()

    def reset(self) -> int:
        """Clear completion state of every task; returns the task count."""
        collection = self.load()
        for task in collection.tasks:
            task.reset()
        self.save()
        return len(collection.tasks)
