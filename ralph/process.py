"""Process client for launching the agent binary.

Spawns the agent as an asyncio subprocess, exposes its stdout as raw byte
chunks and drains stderr concurrently so a chatty child never blocks on a full
pipe. Cancellation is cooperative: a CancellationToken kills the child once.
"""

import asyncio
import logging
import os
from collections.abc import AsyncIterator, Callable, Mapping
from pathlib import Path

from ralph.errors import (
    AgentCancelledError,
    AgentProcessError,
    InvalidArgumentError,
    ProcessUnavailableError,
)

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024


class CancellationToken:
    """Cooperative cancellation signal shared between a caller and a process.

    Callbacks registered with add_callback run exactly once, on the first
    cancel() call (or immediately if the token is already cancelled).
    """

    def __init__(self) -> None:
        self._cancelled = False
        self.reason: str | None = None
        self._callbacks: list[Callable[[], None]] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self, reason: str = "Cancelled") -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self.reason = reason
        callbacks, self._callbacks = self._callbacks, []
        for callback in callbacks:
            callback()

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register a callback; returns a function that unregisters it."""
        if self._cancelled:
            callback()
            return lambda: None
        self._callbacks.append(callback)

        def unregister() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unregister

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise AgentCancelledError(self.reason or "Agent call cancelled")


def merge_env(
    base: Mapping[str, str], overrides: Mapping[str, str | None]
) -> dict[str, str]:
    """Merge environment overrides into a base environment.

    An override value of None removes the variable.
    """
    merged = dict(base)
    for key, value in overrides.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


class AgentProcess:
    """A running agent subprocess.

    Attributes:
        command: Argument vector the process was launched with
    """

    def __init__(
        self,
        proc: asyncio.subprocess.Process,
        command: list[str],
        cancel: CancellationToken | None = None,
    ) -> None:
        self._proc = proc
        self.command = list(command)
        self._cancel = cancel
        self._killed = False
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        self._unregister = cancel.add_callback(self.kill) if cancel else (lambda: None)

    @property
    def pid(self) -> int:
        return self._proc.pid

    @property
    def returncode(self) -> int | None:
        return self._proc.returncode

    async def _drain_stderr(self) -> bytes:
        assert self._proc.stderr is not None
        chunks: list[bytes] = []
        while True:
            chunk = await self._proc.stderr.read(_CHUNK_SIZE)
            if not chunk:
                break
            chunks.append(chunk)
        return b"".join(chunks)

    async def iter_stdout(self) -> AsyncIterator[bytes]:
        """Yield stdout chunks as they arrive until EOF."""
        assert self._proc.stdout is not None
        while True:
            chunk = await self._proc.stdout.read(_CHUNK_SIZE)
            if not chunk:
                return
            yield chunk

    async def read_stdout(self) -> bytes:
        """Read stdout to EOF."""
        chunks = [chunk async for chunk in self.iter_stdout()]
        return b"".join(chunks)

    def kill(self) -> None:
        """Kill the child. Safe to call any number of times."""
        if self._killed or self._proc.returncode is not None:
            return
        self._killed = True
        logger.debug("Killing agent process %s", self._proc.pid)
        try:
            self._proc.kill()
        except ProcessLookupError:
            pass

    async def finish(self) -> str:
        """Wait for exit after stdout is drained.

        Returns:
            Standard error text

        Raises:
            AgentCancelledError: If the cancellation token fired
            AgentProcessError: If the process exited with a non-zero status
        """
        try:
            returncode = await self._proc.wait()
            stderr = (await self._stderr_task).decode("utf-8", errors="replace")
        finally:
            self._unregister()

        if self._cancel is not None and self._cancel.cancelled:
            raise AgentCancelledError(self._cancel.reason or "Agent call cancelled")
        if returncode != 0:
            raise AgentProcessError(
                stderr.strip() or "Agent process failed",
                returncode,
                stderr,
                self.command,
            )
        return stderr

    async def aclose(self) -> None:
        """Release the process: kill it if still running and reap it."""
        self._unregister()
        if self._proc.returncode is None:
            self.kill()
        await self._proc.wait()
        if not self._stderr_task.done():
            await self._stderr_task


class ProcessClient:
    """Spawns agent processes with a merged environment.

    Attributes:
        cwd: Working directory for the child (None: inherit)
        env: Environment overrides; None values unset variables
    """

    def __init__(
        self, cwd: Path | None = None, env: Mapping[str, str | None] | None = None
    ) -> None:
        self.cwd = cwd
        self.env = dict(env or {})

    async def spawn(
        self,
        command: list[str],
        env: Mapping[str, str | None] | None = None,
        cancel: CancellationToken | None = None,
    ) -> AgentProcess:
        """Launch the agent binary.

        Args:
            command: Argument vector, binary first
            env: Per-call overrides applied on top of the client overrides
            cancel: Token that kills the child when cancelled

        Raises:
            AgentCancelledError: If the token is already cancelled
            InvalidArgumentError: If the command is empty
            ProcessUnavailableError: If the binary is missing or pipes are not attached
        """
        if cancel is not None:
            cancel.raise_if_cancelled()
        if not command:
            raise InvalidArgumentError("Command must have at least one element")

        env = merge_env(os.environ, {**self.env, **(env or {})})
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=self.cwd,
            )
        except FileNotFoundError as e:
            raise ProcessUnavailableError(f"Agent binary not found: {command[0]}") from e

        if proc.stdout is None or proc.stderr is None:
            proc.kill()
            await proc.wait()
            raise ProcessUnavailableError("Agent output streams are unavailable")

        logger.debug("Spawned agent process %s: %s", proc.pid, command[0])
        return AgentProcess(proc, command, cancel)
