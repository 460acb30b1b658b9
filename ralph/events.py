"""Stream event schema for the agent's NDJSON protocol.

Each line the agent prints in ``stream-json`` mode is one JSON document
matching exactly one event model below. Models allow extra fields so newer
agent versions can add keys without breaking validation. Lines that do not
match any model decode to UnrecognizedLine, which callers drop by policy.
"""

import json
from dataclasses import dataclass
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator


class _Passthrough(BaseModel):
    model_config = ConfigDict(extra="allow")


class TextContent(BaseModel):
    """A single text content block."""

    type: Literal["text"]
    text: str


class SystemInitEvent(_Passthrough):
    """System initialization event emitted once at start."""

    type: Literal["system"]
    subtype: Literal["init"]
    apiKeySource: str
    cwd: str
    session_id: str
    model: str
    permissionMode: str


class UserMessage(BaseModel):
    role: Literal["user"]
    content: list[TextContent]


class AssistantMessage(BaseModel):
    role: Literal["assistant"]
    content: list[TextContent]


class UserMessageEvent(_Passthrough):
    """Event carrying the user's input message."""

    type: Literal["user"]
    message: UserMessage
    session_id: str
    timestamp_ms: float | None = None

    @property
    def text(self) -> str:
        return "".join(block.text for block in self.message.content)


class AssistantMessageEvent(_Passthrough):
    """Event carrying the assistant's output message."""

    type: Literal["assistant"]
    message: AssistantMessage
    session_id: str
    timestamp_ms: float | None = None

    @property
    def text(self) -> str:
        return "".join(block.text for block in self.message.content)


class ThinkingDeltaEvent(_Passthrough):
    """Incremental reasoning chunk; text may be empty."""

    type: Literal["thinking"]
    subtype: Literal["delta"]
    text: str
    session_id: str
    timestamp_ms: float


class ThinkingCompletedEvent(_Passthrough):
    """Marks the end of a reasoning stream."""

    type: Literal["thinking"]
    subtype: Literal["completed"]
    session_id: str
    timestamp_ms: float


class ToolCallSuccess(_Passthrough):
    content: str | None = None
    isEmpty: bool | None = None
    exceededLimit: bool | None = None
    totalLines: int | None = None
    totalChars: int | None = None
    path: str | None = None
    linesCreated: int | None = None
    fileSize: int | None = None


class ToolCallFailure(_Passthrough):
    message: str


class ToolCallResult(_Passthrough):
    """Outcome of a tool call; carries a success or an error payload."""

    success: ToolCallSuccess | None = None
    error: ToolCallFailure | None = None

    @model_validator(mode="after")
    def _require_outcome(self) -> "ToolCallResult":
        if self.success is None and self.error is None:
            raise ValueError("Tool call result must include success or error")
        return self


class ReadToolArgs(_Passthrough):
    path: str


class WriteToolArgs(_Passthrough):
    path: str
    fileText: str
    toolCallId: str | None = None


class ReadToolCall(_Passthrough):
    args: ReadToolArgs
    result: ToolCallResult | None = None


class WriteToolCall(_Passthrough):
    args: WriteToolArgs
    result: ToolCallResult | None = None


class FunctionToolCall(_Passthrough):
    name: str
    arguments: str | dict[str, Any]
    result: ToolCallResult | None = None


class ToolCallPayload(_Passthrough):
    """Tool-specific payload keyed by tool kind.

    Read, write and generic function calls are typed. Other tool kinds
    (shell, grep, edit, ...) are kept as extra fields.
    """

    readToolCall: ReadToolCall | None = None
    writeToolCall: WriteToolCall | None = None
    functionCall: FunctionToolCall | None = None
    function: FunctionToolCall | None = None

    @property
    def tool_name(self) -> str:
        """Name of the invoked tool (function name or payload key)."""
        call = self.functionCall or self.function
        if call is not None:
            return call.name
        if self.readToolCall is not None:
            return "readToolCall"
        if self.writeToolCall is not None:
            return "writeToolCall"
        extras = self.model_extra or {}
        return next(iter(extras), "unknown")

    @property
    def args(self) -> Any:
        """Arguments of the invoked tool, whatever their shape."""
        call = self.functionCall or self.function
        if call is not None:
            return call.arguments
        if self.readToolCall is not None:
            return self.readToolCall.args.model_dump()
        if self.writeToolCall is not None:
            return self.writeToolCall.args.model_dump(exclude={"fileText"})
        extras = self.model_extra or {}
        for value in extras.values():
            if isinstance(value, dict):
                return value.get("args")
        return None

    @property
    def result(self) -> ToolCallResult | dict[str, Any] | None:
        """Result attached to the call, typed when the tool kind is known."""
        for call in (self.readToolCall, self.writeToolCall, self.functionCall, self.function):
            if call is not None:
                return call.result
        extras = self.model_extra or {}
        for value in extras.values():
            if isinstance(value, dict) and isinstance(value.get("result"), dict):
                return value["result"]
        return None

    @property
    def failed(self) -> bool:
        """True if the call completed with an error payload."""
        result = self.result
        if isinstance(result, ToolCallResult):
            return result.error is not None
        if isinstance(result, dict):
            return bool(result.get("error"))
        return False


class ToolCallEvent(_Passthrough):
    """Emitted before and after each tool invocation."""

    type: Literal["tool_call"]
    subtype: Literal["started", "completed"]
    call_id: str
    tool_call: ToolCallPayload
    session_id: str
    timestamp_ms: float | None = None


class ResultEvent(_Passthrough):
    """Terminal result event; also the single document of ``json`` mode."""

    type: Literal["result"]
    subtype: Literal["success"]
    duration_ms: float
    duration_api_ms: float
    is_error: bool
    result: str
    session_id: str
    request_id: str | None = None


StreamEvent = Annotated[
    Union[
        SystemInitEvent,
        UserMessageEvent,
        ThinkingDeltaEvent,
        ThinkingCompletedEvent,
        AssistantMessageEvent,
        ToolCallEvent,
        ResultEvent,
    ],
    Field(union_mode="left_to_right"),
]

_STREAM_EVENT_ADAPTER: TypeAdapter[StreamEvent] = TypeAdapter(StreamEvent)


@dataclass(frozen=True)
class UnrecognizedLine:
    """A line that did not decode into any known event.

    Attributes:
        reason: Short classification ("blank", "invalid_json", "schema_mismatch")
        raw: The original line text
    """

    reason: str
    raw: str


def parse_event_line(line: str) -> StreamEvent | UnrecognizedLine:
    """Parse one protocol line into a validated event.

    Args:
        line: A single line of agent output (with or without trailing newline)

    Returns:
        The validated event, or UnrecognizedLine if the line is blank, not
        JSON, or does not match any event shape
    """
    stripped = line.strip()
    if not stripped:
        return UnrecognizedLine("blank", line)

    try:
        document = json.loads(stripped)
    except json.JSONDecodeError:
        return UnrecognizedLine("invalid_json", line)

    try:
        return _STREAM_EVENT_ADAPTER.validate_python(document)
    except ValidationError:
        return UnrecognizedLine("schema_mismatch", line)


def parse_result_document(line: str) -> ResultEvent:
    """Parse and validate a terminal result document.

    Raises:
        ValueError: If the line is not JSON or is not a result document
            (pydantic's ValidationError is a ValueError)
    """
    return ResultEvent.model_validate_json(line.strip())
