"""Argument vector construction for the agent binary.

Pure functions only: the same options always produce the same vector, which
keeps invocation logic testable without spawning a process.
"""

from dataclasses import dataclass
from typing import Literal

from ralph.errors import InvalidArgumentError

OutputFormat = Literal["text", "json", "stream-json"]
OUTPUT_FORMATS: tuple[OutputFormat, ...] = ("text", "json", "stream-json")

DEFAULT_CLI_PATH = "cursor-agent"


@dataclass(frozen=True)
class AgentBaseOptions:
    """Options shared by every invocation of one agent instance."""

    cli_path: str = DEFAULT_CLI_PATH
    api_key: str | None = None
    force_writes: bool = False
    approve_mcps: bool = False
    base_args: tuple[str, ...] = ()
    sandbox: str | None = None


@dataclass(frozen=True)
class AgentInvocation:
    """Per-call options.

    ``print_mode`` of None means print is implied whenever the output format
    is not plain text.
    """

    prompt: str
    model: str | None = None
    chat_id: str | None = None
    resume_latest: bool = False
    output_format: OutputFormat = "text"
    stream_partial_output: bool = False
    print_mode: bool | None = None
    extra_args: tuple[str, ...] = ()
    sandbox: str | None = None


def build_agent_command(
    base: AgentBaseOptions, invocation: AgentInvocation
) -> list[str]:
    """Build the argument vector for launching the agent.

    Args:
        base: Instance-level options (binary, credential, write/approve flags)
        invocation: Call-level options including the prompt

    Returns:
        Argument vector with the binary first and the prompt last

    Raises:
        InvalidArgumentError: If the prompt is empty or whitespace-only, or the
            output format is unknown
    """
    prompt = invocation.prompt
    if not prompt or not prompt.strip():
        raise InvalidArgumentError("Agent prompt must be a non-empty string")
    if invocation.output_format not in OUTPUT_FORMATS:
        raise InvalidArgumentError(
            f"Unknown output format: {invocation.output_format!r}"
        )

    cmd = [base.cli_path or DEFAULT_CLI_PATH]
    cmd.extend(base.base_args)

    if base.force_writes:
        cmd.append("--force")
    if base.approve_mcps:
        cmd.append("--approve-mcps")
    if base.api_key:
        cmd.extend(["--api-key", base.api_key])

    output_format = invocation.output_format
    should_print = invocation.print_mode
    if should_print is None:
        should_print = output_format != "text"
    if should_print:
        cmd.append("--print")
    if output_format != "text":
        cmd.extend(["--output-format", output_format])
    if output_format == "stream-json" and invocation.stream_partial_output:
        cmd.append("--stream-partial-output")

    # Explicit chat id takes precedence over "resume most recent"
    if invocation.chat_id:
        cmd.extend(["--resume", invocation.chat_id])
    elif invocation.resume_latest:
        cmd.append("--resume")

    if invocation.model:
        cmd.extend(["--model", invocation.model])

    sandbox = invocation.sandbox or base.sandbox
    if sandbox:
        cmd.extend(["--sandbox", sandbox])

    cmd.extend(invocation.extra_args)
    cmd.append(prompt)
    return cmd
