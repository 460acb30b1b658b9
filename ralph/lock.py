"""Run lock for a task collection.

Provides PID-based locking to prevent two runs over the same task collection.
"""

import os
from pathlib import Path
from types import TracebackType

from ralph.errors import LockError


class RunLock:
    """PID-based lock for a task run.

    The lock is a file next to the task collection containing the holder's
    PID. Locks left behind by dead processes are treated as released.

    Usage:
        with RunLock(tasks_file):
            # Run tasks - lock is held
            ...

    Attributes:
        lock_path: Path to the lock file
    """

    def __init__(self, tasks_file: Path) -> None:
        self.lock_path = tasks_file.with_name(tasks_file.name + ".lock")

    def acquire(self) -> bool:
        """Try to acquire the lock.

        Returns:
            True if lock acquired, False if held by another running process
        """
        holder_pid = self.get_holder_pid()
        if holder_pid is not None and holder_pid != os.getpid():
            if self._is_process_running(holder_pid):
                return False

        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        self.lock_path.write_text(str(os.getpid()))
        return True

    def release(self) -> None:
        """Release the lock. Safe to call even if the lock doesn't exist."""
        self.lock_path.unlink(missing_ok=True)

    def get_holder_pid(self) -> int | None:
        """PID of the lock holder, or None if there is no valid lock."""
        try:
            return int(self.lock_path.read_text().strip())
        except (FileNotFoundError, ValueError):
            return None

    def _is_process_running(self, pid: int) -> bool:
        try:
            os.kill(pid, 0)  # Signal 0 checks existence only
            return True
        except ProcessLookupError:
            return False
        except PermissionError:
            # Process exists but belongs to another user
            return True

    def __enter__(self) -> "RunLock":
        """Acquire lock on context entry.

        Raises:
            LockError: If lock is already held by a running process
        """
        if not self.acquire():
            raise LockError(
                f"Another run is using {self.lock_path.with_suffix('')} "
                f"(PID: {self.get_holder_pid()})"
            )
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.release()
