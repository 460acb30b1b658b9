"""Task runner for sequential task execution.

Coordinates running every pending task of a collection, persisting state
before and after each task so a killed run resumes where it stopped, and
committing the work of each completed task to the run's feature branch.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from opentelemetry import trace

from ralph.activity import (
    ActivityEvent,
    CompositeSink,
    ConsoleSink,
    EventSink,
    JsonlActivityLog,
    TaskStatsSink,
)
from ralph.agent import Agent
from ralph.classifier import FailureKind, classify_failure
from ralph.config import RalphConfig
from ralph.errors import (
    AgentCancelledError,
    AgentFailure,
    GitError,
    LoopError,
    ResourceExhaustionError,
)
from ralph.git_ops import GitRepository
from ralph.iteration import IterationController
from ralph.lock import RunLock
from ralph.process import CancellationToken
from ralph.progress import ProgressLog
from ralph.prompts import build_task_prompt
from ralph.recovery import run_with_restarts
from ralph.state import Task, TaskStats, TaskStore
from ralph.telemetry import RalphMetrics, create_metrics

AgentFactory = Callable[[EventSink], Agent]

TaskStatus = Literal[
    "completed", "incomplete", "failed", "halted", "cancelled", "resource_exhausted"
]
RunStatus = Literal[
    "completed", "halted", "limit_reached", "cancelled", "resource_exhausted"
]


@dataclass
class TaskResult:
    """Outcome of one task attempt.

    Status values:
        completed: Completion signal seen, work committed
        incomplete: Iteration limit reached without a completion signal
        failed: Connection or unclassified failure, run continues
        halted: Loop retries exhausted, run stops
        cancelled: Run was cancelled during the task
        resource_exhausted: Context exhausted, workflow restarts
    """

    task_id: str
    status: TaskStatus
    duration_seconds: float
    stats: TaskStats
    error: str | None = None


@dataclass
class RunSummary:
    """Result of a run over a task collection.

    Status values:
        completed: No pending task was left unattempted
        halted: A loop failure stopped the run
        limit_reached: The run limit stopped the run
        cancelled: The run was cancelled
        resource_exhausted: Resource exhaustion persisted across restarts
    """

    status: RunStatus
    total_tasks: int
    completed_tasks: int
    results: list[TaskResult] = field(default_factory=list)
    branch_name: str | None = None
    restarts: int = 0

    @property
    def failed_tasks(self) -> list[str]:
        return [
            result.task_id
            for result in self.results
            if result.status not in ("completed", "incomplete")
        ]


def commit_message(task: Task) -> str:
    return f"ralph: {task.id} - {task.title}"


class TaskRunner:
    """Runs the pending tasks of a collection one at a time.

    Args:
        config: Harness configuration
        agent_factory: Builds the agent for a task from its activity sink
        git: Repository to commit completed work to (None: no commits)
        tracer: Tracer for task spans
        metrics: Metric instruments
        console_sink: Where console activity goes
        cancel: Token that stops the run
        model: Model override for every agent call
        clock: Monotonic time source
        sleep: Coroutine used for retry pauses
    """

    def __init__(
        self,
        config: RalphConfig,
        agent_factory: AgentFactory | None = None,
        git: GitRepository | None = None,
        tracer: trace.Tracer | None = None,
        metrics: RalphMetrics | None = None,
        console_sink: EventSink | None = None,
        cancel: CancellationToken | None = None,
        model: str | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.config = config
        self.agent_factory = agent_factory or (
            lambda sink: Agent.from_config(config, sink=sink)
        )
        self.git = git
        self.tracer = tracer or trace.get_tracer("ralph")
        self.metrics = metrics or create_metrics()
        self.console_sink = console_sink or ConsoleSink()
        self.cancel = cancel
        self.model = model
        self._clock = clock
        self._sleep = sleep
        self.results: list[TaskResult] = []
        self.completed_in_run = 0

    def _emit(self, kind: str, message: str, **data: Any) -> None:
        self.console_sink.emit(ActivityEvent(kind, message, data))

    async def run(self, store: TaskStore, limit: int | None = None) -> RunSummary:
        """Run every pending task of the loaded collection in order.

        Args:
            store: Store holding the loaded collection
            limit: Maximum tasks to complete in this run (None: no limit)

        Returns:
            RunSummary for this pass over the collection

        Raises:
            ResourceExhaustionError: After persisting the failed task
        """
        collection = store.collection
        progress_log = ProgressLog(self.config.progress_path)
        progress_log.ensure_initialized()

        total = len(collection.tasks)
        self._emit("task", "=== Starting Sequential Task Execution ===")
        self._emit("task", f"Total user stories: {total}")
        if collection.branch_name:
            self._emit("git", f"Feature branch: {collection.branch_name}")

        for task in collection.tasks:
            if task.completed:
                self._emit("orchestrator", f"⊘ Skipping completed task {task.id}")

        results: list[TaskResult] = []
        status: RunStatus = "completed"
        for task in collection.pending():
            index = collection.tasks.index(task) + 1
            if limit is not None and self.completed_in_run >= limit:
                self._emit("orchestrator", f"Run limit of {limit} task(s) reached")
                status = "limit_reached"
                break

            result = await self.run_task(store, task, progress_log, index, total)
            results.append(result)
            if result.status in ("completed", "incomplete"):
                self.completed_in_run += 1
            elif result.status == "halted":
                self._emit("error", "Stopping run: loop retries exhausted")
                status = "halted"
                break
            elif result.status == "cancelled":
                status = "cancelled"
                break

        return RunSummary(
            status=status,
            total_tasks=total,
            completed_tasks=collection.completed_count(),
            results=results,
            branch_name=collection.branch_name,
        )

    async def run_task(
        self,
        store: TaskStore,
        task: Task,
        progress_log: ProgressLog,
        index: int = 1,
        total: int = 1,
    ) -> TaskResult:
        """Run one task through the iteration loop and persist its outcome."""
        config = self.config
        interrupted = task.is_interrupted
        role = task.role

        self._emit("task", f"--- User Story {task.id} ({index}/{total}) ---")
        self._emit("task", f"Role: {role}")
        self._emit("task", f"Description: {task.description[:80]}...")
        if interrupted:
            self._emit("warning", f"Resuming interrupted task {task.id}")

        store.mark_started(task)
        config.next_task_path.parent.mkdir(parents=True, exist_ok=True)
        config.next_task_path.write_text(
            build_task_prompt(
                task.id,
                role,
                task.description,
                task.acceptance_criteria,
                task.dependencies,
                interrupted=interrupted,
            ),
            encoding="utf-8",
        )
        progress_log.start_entry(task.id, task.description)

        activity_log = JsonlActivityLog.for_task(
            config.log_dir, task.id, role, config.run_id
        )
        stats_sink = TaskStatsSink()
        sink = CompositeSink(activity_log, stats_sink, self.console_sink)
        activity_log.emit(
            ActivityEvent(
                "info",
                "Task started",
                {
                    "taskId": task.id,
                    "description": task.description,
                    "role": role,
                    "resumed": interrupted,
                },
            )
        )

        controller = IterationController(
            self.agent_factory(sink),
            config,
            sink=sink,
            clock=self._clock,
            sleep=self._sleep,
            metrics=self.metrics,
            tracer=self.tracer,
            cancel=self.cancel,
        )
        started = self._clock()

        def collect_stats() -> TaskStats:
            return TaskStats(
                duration_ms=int((self._clock() - started) * 1000),
                iterations=controller.iterations,
                tool_calls=stats_sink.tool_calls,
                error_count=stats_sink.error_count,
            )

        with self.tracer.start_as_current_span("ralph.task") as span:
            span.set_attribute("task.id", task.id)
            span.set_attribute("task.role", role)
            span.set_attribute("task.resumed", interrupted)

            try:
                outcome = await controller.run(config.next_task_path, model=self.model)
            except LoopError as e:
                result = self._record_failure(
                    store, progress_log, task, sink, e, "halted",
                    f"Loop error: {e}", collect_stats(),
                )
                span.set_attribute("task.status", result.status)
                return result
            except ResourceExhaustionError as e:
                note = f"Resource exhaustion: {e}"
                if e.context_bytes is not None:
                    note += f" (context bytes: {e.context_bytes})"
                result = self._record_failure(
                    store, progress_log, task, sink, e, "resource_exhausted",
                    note, collect_stats(),
                )
                span.set_attribute("task.status", result.status)
                raise
            except AgentCancelledError as e:
                result = self._record_failure(
                    store, progress_log, task, sink, e, "cancelled",
                    f"Cancelled: {e}", collect_stats(),
                )
                span.set_attribute("task.status", result.status)
                return result
            except Exception as e:
                kind = classify_failure(e, config.classifier_rules)
                label = "Connection failure" if kind is FailureKind.CONNECTION else "Error"
                result = self._record_failure(
                    store, progress_log, task, sink, e, "failed",
                    f"{label}: {e}", collect_stats(),
                )
                span.set_attribute("task.status", result.status)
                return result

            task_stats = collect_stats()
            notes = ""
            if not outcome.completed:
                notes = (
                    f"Max iterations ({config.max_iterations}) reached without "
                    "a completion signal"
                )
            progress_log.complete_entry(task.id, task.description, outcome.full_output)
            store.mark_completed(
                task,
                outcome.full_output,
                task_stats,
                passes=outcome.completed,
                notes=notes,
            )
            self._commit(task, store)

            status: TaskStatus = "completed" if outcome.completed else "incomplete"
            duration = task_stats.duration_ms / 1000
            span.set_attribute("task.status", status)
            self.metrics.tasks.add(1, {"status": status})
            self.metrics.task_duration.record(duration, {"task_id": task.id})

            sink.emit(
                ActivityEvent(
                    "result",
                    f"✓ Task {task.id} {'complete' if outcome.completed else 'stopped'} "
                    f"in {duration:.1f}s - iterations: {task_stats.iterations}, "
                    f"tool calls: {task_stats.tool_calls}, "
                    f"errors: {task_stats.error_count}, "
                    f"output: {len(outcome.full_output)} chars",
                    {"taskId": task.id, "stats": task_stats.to_dict()},
                )
            )
            result = TaskResult(task.id, status, duration, task_stats)
            self.results.append(result)
            return result

    def _commit(self, task: Task, store: TaskStore) -> None:
        if self.git is None:
            return
        # Run bookkeeping stays out of the feature branch
        exclude = (RunLock(store.path).lock_path, store.tmp_path, self.config.log_dir)
        try:
            if self.git.commit_all(commit_message(task), exclude=exclude):
                self._emit("git_ok", f"✓ Committed {task.id}")
            else:
                self._emit("git", f"Nothing to commit for {task.id}")
        except GitError as e:
            self._emit("git_fail", f"✗ Commit failed for {task.id}: {e}")

    def _record_failure(
        self,
        store: TaskStore,
        progress_log: ProgressLog,
        task: Task,
        sink: EventSink,
        error: BaseException,
        status: TaskStatus,
        note: str,
        task_stats: TaskStats,
    ) -> TaskResult:
        partial = error.partial_response if isinstance(error, AgentFailure) else None
        store.mark_failed(task, note, partial, task_stats)
        progress_log.fail_entry(task.id, note)

        duration = task_stats.duration_ms / 1000
        self.metrics.tasks.add(1, {"status": status})
        self.metrics.task_duration.record(duration, {"task_id": task.id})
        sink.emit(
            ActivityEvent(
                "error",
                f"✗ Task {task.id} failed: {note}",
                {"taskId": task.id, "status": status, "stats": task_stats.to_dict()},
            )
        )
        result = TaskResult(task.id, status, duration, task_stats, error=note)
        self.results.append(result)
        return result


async def run_workflow(
    config: RalphConfig,
    tasks_file: Path | None = None,
    limit: int | None = None,
    definitions: list[dict[str, Any]] | None = None,
    branch_name: str | None = None,
    agent_factory: AgentFactory | None = None,
    git: GitRepository | None = None,
    use_git: bool = True,
    console_sink: EventSink | None = None,
    cancel: CancellationToken | None = None,
    model: str | None = None,
    tracer: trace.Tracer | None = None,
    metrics: RalphMetrics | None = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> RunSummary:
    """Run a task collection end to end.

    Takes the run lock, binds the collection to its feature branch, prepares
    the repository and runs the tasks. Resource exhaustion restarts the run
    from persisted state up to ``config.max_workflow_restarts`` times.

    Args:
        config: Harness configuration
        tasks_file: Task collection file (config.tasks_file if None)
        limit: Maximum tasks to complete in this run
        definitions: Raw task definitions to merge into the collection
        branch_name: Feature branch (generated from the run id if unset)
        agent_factory: Builds the agent for each task
        git: Repository to use (current directory if None and use_git)
        use_git: Disable every git operation when False
        console_sink: Where console activity goes
        cancel: Token that stops the run
        model: Model override for every agent call
        tracer: Tracer for workflow spans
        metrics: Metric instruments
        sleep: Coroutine used for retry pauses

    Returns:
        RunSummary covering every attempt

    Raises:
        LockError: If another run holds the collection
        StateError: If the collection cannot be loaded or the branch conflicts
        GitError: If the repository or branch cannot be prepared
    """
    tasks_file = tasks_file or config.tasks_file
    tracer = tracer or trace.get_tracer("ralph")
    metrics = metrics or create_metrics()
    console_sink = console_sink or ConsoleSink()
    if use_git and git is None:
        git = GitRepository(Path.cwd())
    if not use_git:
        git = None

    store = TaskStore(tasks_file, config.output_snapshot_chars)

    with RunLock(tasks_file):
        collection, warnings = store.load_or_create(definitions, branch_name)
        for warning in warnings:
            console_sink.emit(ActivityEvent("warning", warning))
        if not collection.branch_name:
            collection.assign_branch(f"ralph-implementation-{config.run_id}")
            store.save()

        if git is not None:
            if git.ensure_repository():
                console_sink.emit(ActivityEvent("git", "Initialized new git repository"))
            if git.checkout_branch(collection.branch_name):
                console_sink.emit(
                    ActivityEvent("git_ok", f"✓ Created and switched to {collection.branch_name}")
                )

        runner = TaskRunner(
            config,
            agent_factory=agent_factory,
            git=git,
            tracer=tracer,
            metrics=metrics,
            console_sink=console_sink,
            cancel=cancel,
            model=model,
            sleep=sleep,
        )
        restarts = 0

        def on_restart(number: int, error: ResourceExhaustionError) -> None:
            nonlocal restarts
            restarts = number
            metrics.workflow_restarts.add(1)
            console_sink.emit(
                ActivityEvent(
                    "warning",
                    f"Resource exhausted, restarting workflow "
                    f"({number}/{config.max_workflow_restarts})",
                    error.diagnostics(),
                )
            )

        async def workflow() -> RunSummary:
            store.load()
            return await runner.run(store, limit)

        with tracer.start_as_current_span("ralph.workflow") as span:
            span.set_attribute("tasks_file", str(tasks_file))
            span.set_attribute("branch", collection.branch_name or "")
            try:
                summary = await run_with_restarts(
                    workflow, config.max_workflow_restarts, on_restart
                )
            except ResourceExhaustionError:
                final = store.load()
                summary = RunSummary(
                    status="resource_exhausted",
                    total_tasks=len(final.tasks),
                    completed_tasks=final.completed_count(),
                    branch_name=final.branch_name,
                )
            summary.results = list(runner.results)
            summary.restarts = restarts
            span.set_attribute("status", summary.status)

    return summary
