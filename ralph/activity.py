"""Activity reporting for agent runs.

Agent events and harness decisions are turned into ActivityEvent records and
handed to an EventSink. Sinks decide where they go: the rich console, a JSONL
file per task, or counters for the task record.
"""

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Protocol

from rich.console import Console
from rich.markup import escape

from ralph.events import (
    AssistantMessageEvent,
    ResultEvent,
    StreamEvent,
    SystemInitEvent,
    ToolCallEvent,
    UserMessageEvent,
)


# Rich styles keyed by activity kind
STYLES: dict[str, str] = {
    "thinking": "cyan",
    "tool_call": "yellow",
    "tool_result_success": "green",
    "tool_result_failure": "red",
    "assistant": "dim magenta",
    "system": "dim",
    "user": "bright_black",
    "orchestrator": "blue",
    "git": "magenta",
    "git_ok": "green",
    "git_fail": "red",
    "task": "bold",
    "error": "red",
    "warning": "yellow",
    "result": "green",
}


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ActivityEvent:
    """One reportable thing that happened during a run.

    Attributes:
        kind: Category used for styling and filtering (see STYLES)
        message: Human-readable one-line summary
        data: Structured context written to durable logs
        timestamp: ISO 8601 UTC timestamp
    """

    kind: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: str = field(default_factory=_now)


class EventSink(Protocol):
    """Receiver of activity events."""

    def emit(self, event: ActivityEvent) -> None: ...


def _filename(path: str | None) -> str:
    return Path(path).name if path else "file"


def format_tool_call(tool_name: str, tool_input: Any) -> str:
    """Format a tool call for human-readable display.

    Args:
        tool_name: Payload key (readToolCall, shellToolCall, ...) or function name
        tool_input: Tool arguments; a dict for known tools

    Returns:
        Formatted string like "→ Reading config.py..."
    """
    args = tool_input if isinstance(tool_input, dict) else {}

    if tool_name == "readToolCall":
        return f"→ Reading {_filename(args.get('path'))}..."

    elif tool_name == "writeToolCall":
        return f"→ Writing {_filename(args.get('path'))}..."

    elif tool_name == "editToolCall":
        return f"→ Editing {_filename(args.get('path'))}..."

    elif tool_name == "shellToolCall":
        command = str(args.get("command", ""))
        if len(command) > 50:
            command = command[:50] + "..."
        return f"→ Running: {command}"

    elif tool_name == "grepToolCall":
        return f"→ Searching for {args.get('pattern', '')}..."

    elif tool_name in ("globToolCall", "lsToolCall"):
        target = args.get("globPattern") or args.get("path") or ""
        return f"→ Finding {target}..."

    else:
        return f"→ {tool_name.removesuffix('ToolCall')}..."


def _preview(text: str, limit: int = 100) -> str:
    flat = " ".join(text.split())
    return flat if len(flat) <= limit else flat[:limit] + "..."


def describe_event(event: StreamEvent) -> ActivityEvent | None:
    """Convert a stream event into an activity record.

    Thinking deltas are not reported individually; the agent session collects
    them and reports the whole reasoning block on completion.

    Returns:
        The activity record, or None for events not worth reporting
    """
    if isinstance(event, SystemInitEvent):
        return ActivityEvent(
            "system",
            f"Session {event.session_id} started (model: {event.model})",
            {"session_id": event.session_id, "model": event.model, "cwd": event.cwd},
        )

    if isinstance(event, UserMessageEvent):
        return ActivityEvent(
            "user", f"[USER] {_preview(event.text)}", {"content": event.text}
        )

    if isinstance(event, AssistantMessageEvent):
        text = event.text
        if not text:
            return None
        return ActivityEvent("assistant", _preview(text, 200), {"content": text})

    if isinstance(event, ToolCallEvent):
        payload = event.tool_call
        name = payload.tool_name
        if event.subtype == "started":
            return ActivityEvent(
                "tool_call",
                format_tool_call(name, payload.args),
                {"call_id": event.call_id, "tool": name, "args": payload.args},
            )
        if payload.failed:
            return ActivityEvent(
                "tool_result_failure",
                f"✗ {name} failed",
                {"call_id": event.call_id, "tool": name},
            )
        return ActivityEvent(
            "tool_result_success",
            f"✓ {name}",
            {"call_id": event.call_id, "tool": name},
        )

    if isinstance(event, ResultEvent):
        return ActivityEvent(
            "result",
            f"Agent finished in {event.duration_ms / 1000:.1f}s",
            {
                "session_id": event.session_id,
                "duration_ms": event.duration_ms,
                "is_error": event.is_error,
            },
        )

    return None


class NullSink:
    """Discards every event."""

    def emit(self, event: ActivityEvent) -> None:
        pass


class CompositeSink:
    """Fans each event out to several sinks."""

    def __init__(self, *sinks: EventSink) -> None:
        self.sinks = list(sinks)

    def emit(self, event: ActivityEvent) -> None:
        for sink in self.sinks:
            sink.emit(event)


class ConsoleSink:
    """Renders activity on a rich console.

    Assistant text and reasoning are only shown with verbose enabled; tool
    calls, warnings and harness messages are always shown.
    """

    _VERBOSE_ONLY = ("assistant", "thinking", "user", "system", "tool_result_success")

    def __init__(self, console: Console | None = None, verbose: bool = False) -> None:
        self.console = console or Console()
        self.verbose = verbose

    def emit(self, event: ActivityEvent) -> None:
        if event.kind in self._VERBOSE_ONLY and not self.verbose:
            return
        style = STYLES.get(event.kind)
        text = escape(event.message)
        self.console.print(f"[{style}]{text}[/{style}]" if style else text)


class JsonlActivityLog:
    """Durable per-task activity record in JSON Lines format.

    Each line is ``{"timestamp", "level", "message", ...data}``. The file is
    opened in append mode on each write so a crash never loses earlier lines.

    Attributes:
        path: Log file location
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.touch(exist_ok=True)

    @classmethod
    def for_task(
        cls, log_dir: Path, task_id: str, role: str, run_id: str
    ) -> "JsonlActivityLog":
        """Create the log for one task execution: task-{id}-{role}-{run}.jsonl."""
        return cls(log_dir / f"task-{task_id}-{role}-{run_id}.jsonl")

    def emit(self, event: ActivityEvent) -> None:
        entry = {"timestamp": event.timestamp, "level": event.kind, "message": event.message}
        entry.update(event.data)
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, default=str) + "\n")


class TaskStatsSink:
    """Counts tool calls and errors for the task record."""

    def __init__(self) -> None:
        self.tool_calls = 0
        self.error_count = 0

    def emit(self, event: ActivityEvent) -> None:
        if event.kind == "tool_call":
            self.tool_calls += 1
        elif event.kind in ("tool_result_failure", "error"):
            self.error_count += 1
