"""CLI for the Ralph harness.

Provides commands to run a task collection through the agent, inspect and
reset its state, import task definitions and make single-shot agent calls.
"""

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path
from typing import Any

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from ralph.activity import ConsoleSink
from ralph.agent import Agent
from ralph.config import RalphConfig
from ralph.errors import RalphError
from ralph.lock import RunLock
from ralph.process import CancellationToken
from ralph.state import Task, TaskStore
from ralph.task_runner import RunSummary, run_workflow
from ralph.telemetry import create_metrics, setup_telemetry

console = Console()

DEFAULT_TASKS_FILE = "tasks/tasks.json"

EXIT_CODES = {
    "completed": 0,
    "limit_reached": 0,
    "halted": 1,
    "resource_exhausted": 1,
    "cancelled": 130,
}


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, show_path=verbose)],
        force=True,
    )


def _config_for(tasks_file: Path) -> RalphConfig:
    config = RalphConfig.from_env()
    config.tasks_dir = tasks_file.parent
    return config


def _install_interrupt(cancel: CancellationToken) -> None:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.cancel, "Interrupted by user")
    except NotImplementedError:
        # No loop signal handlers on this platform; Ctrl-C raises KeyboardInterrupt
        pass


@click.group()
@click.version_option(package_name="ralph-harness")
def cli() -> None:
    """Ralph - run a coding agent through a task list until it is done."""
    pass


@cli.command()
@click.argument("tasks_file", type=click.Path(path_type=Path), default=DEFAULT_TASKS_FILE)
@click.option("--limit", "-n", type=int, default=None, help="Stop after completing N tasks")
@click.option("--model", "-m", default=None, help="Agent model for every iteration")
@click.option("--max-iterations", type=int, default=None, help="Iterations per task")
@click.option("--git/--no-git", "use_git", default=True, help="Branch and commit with git")
@click.option("--verbose", "-v", is_flag=True, help="Show agent output and debug logs")
def run(
    tasks_file: Path,
    limit: int | None,
    model: str | None,
    max_iterations: int | None,
    use_git: bool,
    verbose: bool,
) -> None:
    """Run every pending task in TASKS_FILE."""
    _configure_logging(verbose)
    config = _config_for(tasks_file)
    if max_iterations is not None:
        config.max_iterations = max_iterations

    try:
        summary = asyncio.run(_run(config, tasks_file, limit, model, use_git, verbose))
    except RalphError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    _print_run_summary(summary)
    sys.exit(EXIT_CODES[summary.status])


async def _run(
    config: RalphConfig,
    tasks_file: Path,
    limit: int | None,
    model: str | None,
    use_git: bool,
    verbose: bool,
) -> RunSummary:
    """Internal async implementation of a task run."""
    tracer, meter = setup_telemetry(config)
    metrics = create_metrics(meter)
    cancel = CancellationToken()
    _install_interrupt(cancel)

    console.print(f"[bold]Running tasks:[/bold] {tasks_file}")
    return await run_workflow(
        config,
        tasks_file=tasks_file,
        limit=limit,
        use_git=use_git,
        console_sink=ConsoleSink(console, verbose=verbose),
        cancel=cancel,
        model=model,
        tracer=tracer,
        metrics=metrics,
    )


def _print_run_summary(summary: RunSummary) -> None:
    """Print run completion summary."""
    status_color = {
        "completed": "green",
        "limit_reached": "green",
        "halted": "red",
        "resource_exhausted": "red",
        "cancelled": "yellow",
    }
    color = status_color[summary.status]

    console.print(f"\n[bold {color}]Run {summary.status.upper()}[/bold {color}]")
    console.print(f"  Tasks: {summary.completed_tasks}/{summary.total_tasks} completed")
    if summary.branch_name:
        console.print(f"  Branch: {summary.branch_name}")
    if summary.restarts:
        console.print(f"  Workflow restarts: {summary.restarts}")
    if summary.failed_tasks:
        console.print(f"  [red]Failed: {', '.join(summary.failed_tasks)}[/red]")
    if summary.branch_name:
        console.print(
            f"\nTo merge to main: git checkout main && git merge {summary.branch_name}"
        )


def _task_status(task: Task) -> str:
    if task.completed:
        return "[green]passed[/green]" if task.passes else "[yellow]incomplete[/yellow]"
    if task.notes:
        return "[red]failed[/red]"
    if task.is_interrupted:
        return "[yellow]interrupted[/yellow]"
    return "pending"


@cli.command()
@click.argument("tasks_file", type=click.Path(path_type=Path), default=DEFAULT_TASKS_FILE)
def status(tasks_file: Path) -> None:
    """Show the state of every task in TASKS_FILE."""
    try:
        collection = TaskStore(tasks_file).load()
    except RalphError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    table = Table(title=f"Tasks ({collection.branch_name or 'no branch'})")
    table.add_column("ID")
    table.add_column("Title")
    table.add_column("Role")
    table.add_column("Status")
    table.add_column("Iterations", justify="right")

    for task in collection.tasks:
        table.add_row(
            task.id,
            task.title,
            task.role,
            _task_status(task),
            str(task.stats.iterations) if task.stats else "-",
        )

    console.print(table)
    console.print(
        f"{collection.completed_count()}/{len(collection.tasks)} task(s) completed"
    )


@cli.command()
@click.argument("tasks_file", type=click.Path(path_type=Path), default=DEFAULT_TASKS_FILE)
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
def reset(tasks_file: Path, yes: bool) -> None:
    """Clear the completion state of every task in TASKS_FILE."""
    if not yes:
        click.confirm(f"Reset every task in {tasks_file}?", abort=True)

    store = TaskStore(tasks_file)
    try:
        with RunLock(tasks_file):
            count = store.reset()
    except RalphError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    console.print(
        f"[green]Successfully reset completion status for {count} "
        f"task{'s' if count != 1 else ''}.[/green]"
    )


def _read_definitions(path: Path) -> list[dict[str, Any]]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict):
        data = data.get("tasks", data.get("userStories"))
    if not isinstance(data, list):
        raise click.BadParameter(
            "expected a list of task definitions or an object with a 'tasks' list",
            param_hint="DEFINITIONS",
        )
    return data


@cli.command(name="import")
@click.argument("definitions", type=click.Path(exists=True, path_type=Path))
@click.option("--branch", "-b", required=True, help="Feature branch for the collection")
@click.option(
    "--tasks-file",
    type=click.Path(path_type=Path),
    default=DEFAULT_TASKS_FILE,
    show_default=True,
    help="Task collection to create or merge into",
)
def import_tasks(definitions: Path, branch: str, tasks_file: Path) -> None:
    """Create or update a task collection from generated DEFINITIONS."""
    raw = _read_definitions(definitions)
    store = TaskStore(tasks_file)
    try:
        with RunLock(tasks_file):
            collection, warnings = store.load_or_create(raw, branch)
    except RalphError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    for warning in warnings:
        console.print(f"[yellow]Warning:[/yellow] {warning}")
    console.print(
        f"[green]✓ {tasks_file} has {len(collection.tasks)} task(s) "
        f"on branch {collection.branch_name}[/green]"
    )


@cli.command()
@click.argument("prompt")
@click.option("--model", "-m", default=None, help="Agent model")
@click.option("--verbose", "-v", is_flag=True, help="Show debug logs")
def ask(prompt: str, model: str | None, verbose: bool) -> None:
    """Send PROMPT to the agent once and print its answer."""
    _configure_logging(verbose)
    config = RalphConfig.from_env()
    try:
        result = asyncio.run(_ask(config, prompt, model))
    except RalphError as e:
        console.print(f"[red]Error:[/red] {e}")
        sys.exit(1)

    console.print(result.result)
    if verbose:
        console.print(
            f"[dim]session {result.session_id}, {result.duration_ms / 1000:.1f}s[/dim]"
        )
    sys.exit(1 if result.is_error else 0)


async def _ask(config: RalphConfig, prompt: str, model: str | None):
    """Internal async implementation of a single-shot call."""
    cancel = CancellationToken()
    _install_interrupt(cancel)
    agent = Agent.from_config(config)
    return await agent.generate(prompt, model=model, cancel=cancel)


def main() -> None:
    """Main entry point for the ralph CLI."""
    cli()


if __name__ == "__main__":
    main()
