"""Iteration controller: the repeat-until-done loop around one task.

Every iteration reissues the same loop prompt to a fresh agent conversation.
State lives on disk (the task file and progress log), not in the prompt, so
the prompt never grows. After each iteration the controller scans the task
file and the accumulated output for checklist progress and stops when the
completion marker appears or no unchecked items remain.

Within one iteration, failures are handled by kind:

- connection: retried with exponential backoff;
- loop (including runtime budget overrun): retried after a short pause with a
  fresh budget and a fresh connection-retry allowance;
- anything else: raised to the task runner.
"""

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from opentelemetry import trace

from ralph.activity import ActivityEvent, EventSink, NullSink
from ralph.agent import Agent
from ralph.classifier import FailureKind, classify_failure
from ralph.config import RalphConfig
from ralph.errors import AgentFailure, LoopError, ResourceExhaustionError
from ralph.process import CancellationToken
from ralph.progress import ChecklistProgress, scan_checklist
from ralph.prompts import load_loop_prompt
from ralph.recovery import ConnectionRetryPolicy, LoopRetryPolicy, RuntimeBudget
from ralph.telemetry import RalphMetrics, create_metrics

logger = logging.getLogger(__name__)


class IterationState(str, Enum):
    """Lifecycle of an IterationController run."""

    IDLE = "idle"
    RUNNING = "running"
    RETRYING_CONNECTION = "retrying_connection"
    RETRYING_LOOP = "retrying_loop"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class IterationOutcome:
    """Result of driving one task through the loop.

    Attributes:
        full_output: Concatenated output of every iteration
        iterations: Iterations executed
        completed: True if the completion signal was seen
        token_count: Approximate tokens (UTF-8 bytes) of full_output
        progress: Checklist tally after the last iteration
        connection_retries: Connection retries taken across iterations
        loop_retries: Loop retries taken across iterations
        tool_calls: Tool invocations started across iterations
        session_id: Session id of the last successful agent call
    """

    full_output: str
    iterations: int
    completed: bool
    token_count: int
    progress: ChecklistProgress = field(default_factory=lambda: ChecklistProgress(0, 0))
    connection_retries: int = 0
    loop_retries: int = 0
    tool_calls: int = 0
    session_id: str | None = None


class IterationController:
    """Drives an agent through repeated iterations until a task is done.

    Args:
        agent: Agent session used for every iteration
        config: Iteration limits, retry budgets and completion marker
        sink: Activity receiver for progress and warnings
        clock: Monotonic time source for runtime budgets
        sleep: Coroutine used for backoff pauses
        metrics: Metric instruments (global meter if None)
        tracer: Tracer for iteration spans
        prompt: Loop prompt (loaded from config if None)
        cancel: Token passed to every agent call
    """

    def __init__(
        self,
        agent: Agent,
        config: RalphConfig,
        sink: EventSink | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        metrics: RalphMetrics | None = None,
        tracer: trace.Tracer | None = None,
        prompt: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> None:
        self.agent = agent
        self.config = config
        self.sink: EventSink = sink or NullSink()
        self._clock = clock
        self._sleep = sleep
        self.metrics = metrics or create_metrics()
        self.tracer = tracer or trace.get_tracer("ralph")
        self.prompt = prompt or load_loop_prompt(
            config.loop_prompt_path, config.completion_marker
        )
        self.cancel = cancel
        self.state = IterationState.IDLE
        self.iterations = 0
        self.connection_retries = 0
        self.loop_retries = 0
        self.tool_calls = 0
        self.session_id: str | None = None

    def _emit(self, kind: str, message: str, **data) -> None:
        self.sink.emit(ActivityEvent(kind, message, data))

    async def run(self, task_file: Path, model: str | None = None) -> IterationOutcome:
        """Iterate until the task completes or the iteration limit is reached.

        Args:
            task_file: Task file whose checklist tracks progress
            model: Model override for every agent call

        Returns:
            IterationOutcome; ``completed`` is False when the limit was reached

        Raises:
            LoopError: Loop retries exhausted within an iteration
            AgentConnectionError: Connection retries exhausted within an iteration
            ResourceExhaustionError: The agent's context or budget was exceeded
            AgentCancelledError: The run was cancelled
        """
        max_iterations = self.config.max_iterations
        full_output = ""
        token_count = 0
        iterations = 0
        completed = False
        warned_tokens = False
        progress = ChecklistProgress(0, 0)

        self.state = IterationState.RUNNING
        try:
            while iterations < max_iterations:
                number = iterations + 1
                started = self._clock()
                self._emit("orchestrator", f"Iteration {number}: Starting...")

                with self.tracer.start_as_current_span("ralph.iteration") as span:
                    span.set_attribute("iteration", number)
                    output = await self._run_iteration(number, model)
                    span.set_attribute("output_bytes", len(output.encode("utf-8")))

                iterations = number
                self.iterations = number
                self.metrics.iterations.add(1)
                full_output += output
                token_count += len(output.encode("utf-8"))
                self._emit(
                    "orchestrator",
                    f"Iteration {number} complete. Token count: {token_count}",
                    iteration=number,
                    token_count=token_count,
                )

                task_text = _read_text(task_file)
                progress = scan_checklist(task_text + full_output)
                if progress.total > 0:
                    self._emit("orchestrator", f"  Progress: {progress.summary()}")
                    if progress.next_item:
                        self._emit("orchestrator", f"  Next: {progress.next_item[:60]}...")
                self._emit(
                    "orchestrator",
                    f"  Iteration {number} took {self._clock() - started:.1f}s",
                )

                if self.config.completion_marker in output or progress.unchecked == 0:
                    self._emit("orchestrator", "Completion detected.")
                    completed = True
                    break

                if token_count > self.config.warn_threshold and not warned_tokens:
                    warned_tokens = True
                    self._emit(
                        "warning",
                        "Warning: Approaching token limit. Agent should check "
                        "progress.txt for context.",
                        token_count=token_count,
                    )
        except BaseException:
            self.state = IterationState.FAILED
            raise

        if completed:
            self.state = IterationState.COMPLETED
        else:
            self.state = IterationState.FAILED
            self._emit("orchestrator", "Max iterations reached without completion.")

        return IterationOutcome(
            full_output=full_output,
            iterations=iterations,
            completed=completed,
            token_count=token_count,
            progress=progress,
            connection_retries=self.connection_retries,
            loop_retries=self.loop_retries,
            tool_calls=self.tool_calls,
            session_id=self.session_id,
        )

    def _check_budget(
        self, budget: RuntimeBudget, number: int, loop_policy: LoopRetryPolicy, output: str
    ) -> None:
        limit = self.config.max_iteration_runtime_seconds
        if budget.exceeded():
            raise LoopError(
                f"Iteration {number} exceeded maximum runtime of {round(limit)}s",
                partial_response=output,
                iteration=number,
                retry_count=loop_policy.attempts,
                runtime_ms=budget.elapsed_ms(),
            )
        if budget.fraction_used() >= self.config.runtime_warning_fraction:
            self._emit(
                "warning",
                f"Warning: Iteration {number} approaching timeout "
                f"({round(budget.elapsed())}s / {round(limit)}s)",
            )

    async def _run_iteration(self, number: int, model: str | None) -> str:
        config = self.config
        budget = RuntimeBudget(config.max_iteration_runtime_seconds, self._clock)
        connection_policy = ConnectionRetryPolicy(
            max_attempts=config.max_connection_retries,
            base_delay=config.retry_delay_seconds,
            backoff_factor=config.retry_backoff_multiplier,
        )
        loop_policy = LoopRetryPolicy(
            max_attempts=config.max_loop_retries,
            delay=config.loop_retry_delay_seconds,
        )
        output = ""

        while True:
            try:
                self._check_budget(budget, number, loop_policy, output)
                result = await self.agent.run(
                    self.prompt, model=model, cancel=self.cancel, sink=self.sink
                )
                if budget.exceeded():
                    raise LoopError(
                        f"Iteration {number} exceeded maximum runtime of "
                        f"{round(config.max_iteration_runtime_seconds)}s",
                        partial_response=result.output,
                        iteration=number,
                        retry_count=loop_policy.attempts,
                        runtime_ms=budget.elapsed_ms(),
                    )
                if connection_policy.attempts > 0:
                    self._emit("orchestrator", "✓ Connection restored, continuing...")
                if result.dropped_lines:
                    self.metrics.dropped_lines.add(result.dropped_lines)
                self.state = IterationState.RUNNING
                self.tool_calls += result.tool_calls
                self.session_id = result.session_id or self.session_id
                return result.output
            except Exception as e:
                kind = classify_failure(e, config.classifier_rules)
                logger.debug("Iteration %d failed (%s): %s", number, kind.value, e)
                if isinstance(e, AgentFailure) and e.partial_response:
                    output = e.partial_response

                if kind is FailureKind.CONNECTION and connection_policy.can_retry():
                    delay = connection_policy.next_delay()
                    self.connection_retries += 1
                    self.metrics.connection_retries.add(1)
                    self.state = IterationState.RETRYING_CONNECTION
                    during = " during loop retry" if loop_policy.attempts > 0 else ""
                    self._emit("warning", f"Connection error{during}: {e}")
                    self._emit(
                        "orchestrator",
                        f"Retrying connection... (Attempt {connection_policy.attempts}/"
                        f"{connection_policy.max_attempts})",
                        delay_seconds=delay,
                    )
                    await self._sleep(delay)
                    continue

                if kind is FailureKind.LOOP:
                    self._emit(
                        "warning",
                        f"Loop detected in iteration {number} "
                        f"(retry {loop_policy.attempts}/{loop_policy.max_attempts})",
                        iteration=number,
                        retry_count=loop_policy.attempts,
                        runtime_ms=budget.elapsed_ms(),
                        error=str(e),
                    )
                    if loop_policy.can_retry():
                        delay = loop_policy.next_delay()
                        self.loop_retries += 1
                        self.metrics.loop_retries.add(1)
                        self.state = IterationState.RETRYING_LOOP
                        self._emit(
                            "orchestrator",
                            f"Retrying iteration {number}... (Attempt "
                            f"{loop_policy.attempts}/{loop_policy.max_attempts})",
                        )
                        await self._sleep(delay)
                        budget.restart()
                        connection_policy.reset()
                        continue

                    self._emit(
                        "error",
                        f"Max loop retries ({loop_policy.max_attempts}) exceeded for "
                        f"iteration {number}. Stopping task execution.",
                    )
                    if isinstance(e, LoopError):
                        if e.iteration is None:
                            e.iteration = number
                        e.retry_count = loop_policy.attempts
                        raise
                    raise LoopError(
                        f"Loop error detected: {e}",
                        cause=e,
                        partial_response=output,
                        iteration=number,
                        retry_count=loop_policy.attempts,
                        runtime_ms=budget.elapsed_ms(),
                    ) from e

                if kind is FailureKind.CONNECTION:
                    self._emit(
                        "error",
                        f"Connection failed after {connection_policy.max_attempts} "
                        "retries. Task marked as failed.",
                    )
                if isinstance(e, ResourceExhaustionError):
                    if e.iteration is None:
                        e.iteration = number
                    if e.runtime_ms is None:
                        e.runtime_ms = budget.elapsed_ms()
                raise


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except FileNotFoundError:
        return ""
