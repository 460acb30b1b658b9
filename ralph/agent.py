"""Agent session: single-shot and streaming calls to the agent binary.

Agent owns the base options for one agent instance and turns a prompt into a
subprocess call. ``generate`` returns the validated terminal result of a
``json`` call; ``stream`` yields decoded events of a ``stream-json`` call;
``run`` consumes a stream and reduces it to the assistant's response, reporting
activity and progress along the way.
"""

import logging
from collections.abc import AsyncIterator, Callable, Mapping
from contextlib import aclosing
from dataclasses import dataclass
from pathlib import Path

from ralph.activity import ActivityEvent, EventSink, NullSink, describe_event
from ralph.classifier import (
    DEFAULT_RULES,
    ClassifierRules,
    FailureKind,
    classify_failure,
    error_code_of,
)
from ralph.command_builder import (
    AgentBaseOptions,
    AgentInvocation,
    OutputFormat,
    build_agent_command,
)
from ralph.config import RalphConfig
from ralph.decoder import LineDecoder
from ralph.errors import (
    AgentCancelledError,
    AgentConnectionError,
    AgentFailure,
    EmptyOutputError,
    InvalidResultError,
    LoopError,
    ResourceExhaustionError,
)
from ralph.events import (
    AssistantMessageEvent,
    ResultEvent,
    StreamEvent,
    ThinkingCompletedEvent,
    ThinkingDeltaEvent,
    ToolCallEvent,
    parse_result_document,
)
from ralph.process import CancellationToken, ProcessClient

logger = logging.getLogger(__name__)


@dataclass
class AgentProgress:
    """Progress snapshot reported while the response accumulates.

    Attributes:
        tokens: Approximate token count (UTF-8 byte length of the response)
        chars: Response length in characters
    """

    tokens: int
    chars: int


@dataclass
class AgentRunResult:
    """Outcome of a successful streaming run.

    Attributes:
        output: Concatenated text of every assistant message
        session_id: Latest session id seen on the stream
        tool_calls: Number of tool invocations started
        dropped_lines: Stream lines that did not decode into a known event
    """

    output: str
    session_id: str | None
    tool_calls: int = 0
    dropped_lines: int = 0


class Agent:
    """A configured agent instance.

    Args:
        base_options: Binary, credential and write/approve flags for every call
        env: Environment overrides for the child; None values unset variables
        default_model: Model used when a call does not name one
        process_client: Spawner for the agent binary (built from env/cwd if None)
        sink: Activity receiver for ``run``
        max_consecutive_tool_failures: Failed tool results in a row that abort
            a run as a hang
        rules: Classifier tables used to type failures
        cwd: Working directory for the child
    """

    def __init__(
        self,
        base_options: AgentBaseOptions | None = None,
        env: Mapping[str, str | None] | None = None,
        default_model: str | None = None,
        process_client: ProcessClient | None = None,
        sink: EventSink | None = None,
        max_consecutive_tool_failures: int = 5,
        rules: ClassifierRules = DEFAULT_RULES,
        cwd: Path | None = None,
    ) -> None:
        self.base_options = base_options or AgentBaseOptions()
        self.default_model = default_model
        self.process_client = process_client or ProcessClient(cwd=cwd, env=env)
        self.sink: EventSink = sink or NullSink()
        self.max_consecutive_tool_failures = max_consecutive_tool_failures
        self.rules = rules
        self.last_dropped_lines = 0

    @classmethod
    def from_config(
        cls,
        config: RalphConfig,
        sink: EventSink | None = None,
        cwd: Path | None = None,
    ) -> "Agent":
        """Build an agent from the harness configuration."""
        base = AgentBaseOptions(
            cli_path=config.agent_path,
            api_key=config.api_key,
            force_writes=config.force_writes,
            approve_mcps=config.approve_mcps,
            base_args=tuple(config.agent_args),
            sandbox=config.sandbox,
        )
        return cls(
            base,
            default_model=config.model,
            sink=sink,
            max_consecutive_tool_failures=config.max_consecutive_tool_failures,
            rules=config.classifier_rules,
            cwd=cwd,
        )

    def build_command(
        self,
        prompt: str,
        output_format: OutputFormat,
        model: str | None = None,
        chat_id: str | None = None,
        resume_latest: bool = False,
        stream_partial_output: bool = False,
        extra_args: tuple[str, ...] = (),
        sandbox: str | None = None,
    ) -> list[str]:
        invocation = AgentInvocation(
            prompt=prompt,
            model=model or self.default_model,
            chat_id=chat_id,
            resume_latest=resume_latest,
            output_format=output_format,
            stream_partial_output=stream_partial_output,
            print_mode=True,
            extra_args=extra_args,
            sandbox=sandbox,
        )
        return build_agent_command(self.base_options, invocation)

    async def generate(
        self,
        prompt: str,
        *,
        model: str | None = None,
        chat_id: str | None = None,
        resume_latest: bool = False,
        extra_args: tuple[str, ...] = (),
        sandbox: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> ResultEvent:
        """Run a single-shot call and return its validated result document.

        Raises:
            InvalidArgumentError: If the prompt is empty
            AgentProcessError: If the agent exits non-zero
            AgentCancelledError: If the call was cancelled
            EmptyOutputError: If the agent printed nothing
            InvalidResultError: If the last output line is not a result document
        """
        command = self.build_command(
            prompt,
            "json",
            model=model,
            chat_id=chat_id,
            resume_latest=resume_latest,
            extra_args=extra_args,
            sandbox=sandbox,
        )
        process = await self.process_client.spawn(command, cancel=cancel)
        try:
            stdout = await process.read_stdout()
            await process.finish()
        finally:
            await process.aclose()

        lines = [
            line
            for line in stdout.decode("utf-8", errors="replace").splitlines()
            if line.strip()
        ]
        if not lines:
            raise EmptyOutputError("Agent produced no output")
        try:
            return parse_result_document(lines[-1])
        except ValueError as e:
            raise InvalidResultError(
                f"Agent output is not a valid result document: {lines[-1][:200]}"
            ) from e

    async def stream(
        self,
        prompt: str,
        *,
        model: str | None = None,
        chat_id: str | None = None,
        resume_latest: bool = False,
        stream_partial_output: bool = False,
        extra_args: tuple[str, ...] = (),
        sandbox: str | None = None,
        cancel: CancellationToken | None = None,
    ) -> AsyncIterator[StreamEvent]:
        """Run a streaming call, yielding events as lines complete.

        The exit status is checked after stdout is drained, so every event the
        agent printed is yielded before a failure is raised.

        Raises:
            AgentProcessError: If the agent exits non-zero
            AgentCancelledError: If the call was cancelled
        """
        command = self.build_command(
            prompt,
            "stream-json",
            model=model,
            chat_id=chat_id,
            resume_latest=resume_latest,
            stream_partial_output=stream_partial_output,
            extra_args=extra_args,
            sandbox=sandbox,
        )
        process = await self.process_client.spawn(command, cancel=cancel)
        decoder = LineDecoder()
        try:
            async for chunk in process.iter_stdout():
                if cancel is not None:
                    cancel.raise_if_cancelled()
                for event in decoder.feed(chunk):
                    yield event
            for event in decoder.flush():
                yield event
            await process.finish()
        finally:
            self.last_dropped_lines = decoder.dropped
            if decoder.dropped:
                logger.debug(
                    "Agent stream ended with %d unrecognized lines dropped",
                    decoder.dropped,
                )
            await process.aclose()

    async def run(
        self,
        prompt: str,
        *,
        model: str | None = None,
        chat_id: str | None = None,
        on_progress: Callable[[AgentProgress], None] | None = None,
        cancel: CancellationToken | None = None,
        sink: EventSink | None = None,
    ) -> AgentRunResult:
        """Stream a call to completion and return the accumulated response.

        Failures the classifier recognizes are re-raised as typed errors that
        carry the partial response; cancellation passes through unchanged.

        Args:
            prompt: Instruction for the agent
            model: Model override for this call
            chat_id: Conversation to resume
            on_progress: Called after each assistant message with the running size
            cancel: Cancellation token for the call
            sink: Activity receiver (defaults to the instance sink)

        Returns:
            AgentRunResult with the response text and session id

        Raises:
            LoopError: Step limit, repetition or repeated tool failures
            AgentConnectionError: Transport failure
            ResourceExhaustionError: Context or resource budget exceeded
            AgentCancelledError: The call was cancelled
        """
        sink = sink or self.sink
        response = ""
        session_id: str | None = None
        tool_calls = 0
        consecutive_failures = 0
        thinking: list[str] = []

        try:
            async with aclosing(
                self.stream(
                    prompt,
                    model=model,
                    chat_id=chat_id,
                    stream_partial_output=True,
                    cancel=cancel,
                )
            ) as events:
                async for event in events:
                    event_session = getattr(event, "session_id", None)
                    if event_session:
                        session_id = event_session

                    if isinstance(event, ThinkingDeltaEvent):
                        if event.text:
                            thinking.append(event.text)
                        continue
                    if isinstance(event, ThinkingCompletedEvent):
                        if thinking:
                            content = "".join(thinking)
                            sink.emit(
                                ActivityEvent(
                                    "thinking", f"[THINKING] {content[:100]}", {"content": content}
                                )
                            )
                            thinking.clear()
                        continue

                    activity = describe_event(event)
                    if activity is not None:
                        sink.emit(activity)

                    if isinstance(event, AssistantMessageEvent) and event.text:
                        response += event.text
                        if on_progress is not None:
                            on_progress(
                                AgentProgress(
                                    tokens=len(response.encode("utf-8")),
                                    chars=len(response),
                                )
                            )
                    elif isinstance(event, ToolCallEvent):
                        if event.subtype == "started":
                            tool_calls += 1
                        elif event.tool_call.failed:
                            consecutive_failures += 1
                            if consecutive_failures >= self.max_consecutive_tool_failures:
                                message = (
                                    f"Agent hang detected: {consecutive_failures} "
                                    "consecutive tool failures"
                                )
                                sink.emit(
                                    ActivityEvent(
                                        "error",
                                        message,
                                        {
                                            "consecutive_failures": consecutive_failures,
                                            "threshold": self.max_consecutive_tool_failures,
                                            "last_tool": event.tool_call.tool_name,
                                        },
                                    )
                                )
                                raise LoopError(message, partial_response=response)
                        else:
                            consecutive_failures = 0
        except (AgentCancelledError, AgentFailure):
            raise
        except Exception as e:
            kind = classify_failure(e, self.rules)
            if kind is FailureKind.LOOP:
                raise LoopError(
                    f"Loop error during agent streaming: {e}",
                    cause=e,
                    partial_response=response,
                ) from e
            if kind is FailureKind.CONNECTION:
                raise AgentConnectionError(
                    f"Connection error during agent streaming: {e}",
                    cause=e,
                    partial_response=response,
                    code=error_code_of(e),
                ) from e
            if kind is FailureKind.RESOURCE_EXHAUSTION:
                raise ResourceExhaustionError(
                    f"Resource exhausted during agent streaming: {e}",
                    cause=e,
                    partial_response=response,
                    context_bytes=len(response.encode("utf-8")),
                    session_id=session_id,
                ) from e
            raise

        return AgentRunResult(
            output=response,
            session_id=session_id,
            tool_calls=tool_calls,
            dropped_lines=self.last_dropped_lines,
        )
