"""Shared error types for the ralph package.

Recoverable agent failures (connection, loop, resource exhaustion) share the
AgentFailure base so they can carry the partial response captured before the
failure. Everything else derives from RalphError directly.
"""

from typing import Any


class RalphError(Exception):
    """Base exception for ralph errors.

    Use this for user-facing errors that should have actionable messages.
    """

    pass


class InvalidArgumentError(RalphError, ValueError):
    """Raised when an agent invocation is built from invalid arguments."""

    pass


class ProcessUnavailableError(RalphError):
    """Raised when the agent process cannot be started or its pipes attached."""

    pass


class AgentProcessError(RalphError):
    """The agent process exited with a non-zero status.

    Attributes:
        exit_code: Process exit status
        stderr: Full standard error text
        command: Argument vector used to launch the process
    """

    def __init__(
        self, message: str, exit_code: int, stderr: str, command: list[str]
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.stderr = stderr
        self.command = list(command)


class AgentCancelledError(RalphError):
    """The agent call was cancelled through its cancellation token."""

    pass


class EmptyOutputError(RalphError):
    """The agent produced no output in single-shot mode."""

    pass


class InvalidResultError(RalphError):
    """The final line of single-shot output is not a valid result document."""

    pass


class AgentFailure(RalphError):
    """Base class for classified, recoverable agent failures.

    Attributes:
        cause: Underlying exception, if any
        partial_response: Assistant text captured before the failure
    """

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        partial_response: str | None = None,
    ) -> None:
        super().__init__(message)
        self.cause = cause
        self.partial_response = partial_response


class AgentConnectionError(AgentFailure):
    """Transient transport failure between the agent and its backend."""

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        partial_response: str | None = None,
        code: str | None = None,
    ) -> None:
        super().__init__(message, cause, partial_response)
        self.code = code


class LoopError(AgentFailure):
    """The agent hit a step limit, repeated itself or overran its runtime budget."""

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        partial_response: str | None = None,
        iteration: int | None = None,
        retry_count: int = 0,
        runtime_ms: int | None = None,
    ) -> None:
        super().__init__(message, cause, partial_response)
        self.iteration = iteration
        self.retry_count = retry_count
        self.runtime_ms = runtime_ms


class ResourceExhaustionError(AgentFailure):
    """The agent's context window or resource budget was exceeded.

    Never retried locally; the workflow restarts with a fresh conversation.
    """

    def __init__(
        self,
        message: str,
        cause: BaseException | None = None,
        partial_response: str | None = None,
        context_bytes: int | None = None,
        iteration: int | None = None,
        runtime_ms: int | None = None,
        session_id: str | None = None,
    ) -> None:
        super().__init__(message, cause, partial_response)
        self.context_bytes = context_bytes
        self.iteration = iteration
        self.runtime_ms = runtime_ms
        self.session_id = session_id

    def diagnostics(self) -> dict[str, Any]:
        """Diagnostic context for logs and the task record."""
        return {
            "context_bytes": self.context_bytes,
            "iteration": self.iteration,
            "runtime_ms": self.runtime_ms,
            "session_id": self.session_id,
            "cause": str(self.cause) if self.cause else None,
        }


class StateError(RalphError):
    """Task collection file is missing, corrupt or inconsistent."""

    pass


class GitError(RalphError):
    """A git command failed."""

    pass


class LockError(RalphError):
    """Another run already holds the lock for this task collection."""

    pass
