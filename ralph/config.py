"""Configuration for the Ralph harness.

Provides a single configuration object with sensible defaults and environment
variable overrides. It is constructed once at startup and passed explicitly to
every component that needs it.
"""

import os
import time
from dataclasses import dataclass, field
from pathlib import Path

from ralph.classifier import ClassifierRules

DEFAULT_COMPLETION_MARKER = "<ralph>COMPLETE</ralph>"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class RalphConfig:
    """Configuration for agent execution and task runs.

    All settings have sensible defaults but can be overridden via environment
    variables using the from_env() factory method.
    """

    # Agent binary settings
    agent_path: str = "cursor-agent"
    api_key: str | None = None
    model: str = "auto"
    sandbox: str | None = "enabled"
    force_writes: bool = True
    approve_mcps: bool = True
    agent_args: list[str] = field(default_factory=list)

    # Iteration loop
    max_iterations: int = 20
    completion_marker: str = DEFAULT_COMPLETION_MARKER
    warn_threshold: int = 70_000
    max_iteration_runtime_seconds: float = 600.0
    runtime_warning_fraction: float = 0.8

    # Recovery
    max_connection_retries: int = 3
    retry_delay_seconds: float = 2.0
    retry_backoff_multiplier: float = 2.0
    max_loop_retries: int = 2
    loop_retry_delay_seconds: float = 1.0
    max_workflow_restarts: int = 2
    max_consecutive_tool_failures: int = 5
    classifier_rules: ClassifierRules = field(default_factory=ClassifierRules)

    # Task state
    output_snapshot_chars: int = 500
    tasks_dir: Path = field(default_factory=lambda: Path("tasks"))
    log_dir: Path = field(default_factory=lambda: Path("logs"))
    loop_prompt_path: Path | None = None
    run_id: str = field(default_factory=lambda: str(int(time.time() * 1000)))

    # Telemetry settings
    otlp_endpoint: str = field(
        default_factory=lambda: os.getenv("OTLP_ENDPOINT", "http://localhost:4317")
    )
    service_name: str = "ralph"

    @property
    def progress_path(self) -> Path:
        return self.tasks_dir / "progress.txt"

    @property
    def next_task_path(self) -> Path:
        return self.tasks_dir / "next_task.md"

    @property
    def tasks_file(self) -> Path:
        return self.tasks_dir / "tasks.json"

    @classmethod
    def from_env(cls) -> "RalphConfig":
        """Load config with environment variable overrides.

        Environment variables:
            RALPH_AGENT_PATH: Agent binary (default: cursor-agent)
            RALPH_MODEL: Model identifier for development iterations (default: auto)
            RALPH_SANDBOX: Sandbox mode, empty string disables (default: enabled)
            RALPH_MAX_ITERATIONS: Iterations per task (default: 20)
            RALPH_ITERATION_TIMEOUT: Per-iteration runtime budget in seconds (default: 600)
            RALPH_MAX_CONNECTION_RETRIES: Connection retries per iteration (default: 3)
            RALPH_MAX_LOOP_RETRIES: Loop retries per iteration (default: 2)
            RALPH_MAX_WORKFLOW_RESTARTS: Restarts after resource exhaustion (default: 2)
            RALPH_TASKS_DIR: Directory holding tasks.json and progress.txt (default: tasks)
            RALPH_LOG_DIR: Directory for per-task activity logs (default: logs)
            RALPH_LOOP_PROMPT: Path to a custom loop prompt template
            CURSOR_API_KEY: Credential passed to the agent
            OTLP_ENDPOINT: Override otlp_endpoint (default: http://localhost:4317)
        """
        sandbox = os.getenv("RALPH_SANDBOX", "enabled")
        loop_prompt = os.getenv("RALPH_LOOP_PROMPT")
        return cls(
            agent_path=os.getenv("RALPH_AGENT_PATH", "cursor-agent"),
            api_key=os.getenv("CURSOR_API_KEY"),
            model=os.getenv("RALPH_MODEL", "auto"),
            sandbox=sandbox or None,
            force_writes=_env_bool("RALPH_FORCE_WRITES", True),
            approve_mcps=_env_bool("RALPH_APPROVE_MCPS", True),
            max_iterations=int(os.getenv("RALPH_MAX_ITERATIONS", "20")),
            max_iteration_runtime_seconds=float(
                os.getenv("RALPH_ITERATION_TIMEOUT", "600")
            ),
            max_connection_retries=int(os.getenv("RALPH_MAX_CONNECTION_RETRIES", "3")),
            max_loop_retries=int(os.getenv("RALPH_MAX_LOOP_RETRIES", "2")),
            max_workflow_restarts=int(os.getenv("RALPH_MAX_WORKFLOW_RESTARTS", "2")),
            tasks_dir=Path(os.getenv("RALPH_TASKS_DIR", "tasks")),
            log_dir=Path(os.getenv("RALPH_LOG_DIR", "logs")),
            loop_prompt_path=Path(loop_prompt) if loop_prompt else None,
            otlp_endpoint=os.getenv("OTLP_ENDPOINT", "http://localhost:4317"),
        )
