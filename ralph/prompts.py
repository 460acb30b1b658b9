"""Prompt templates for the iteration loop and task files."""

from pathlib import Path

LOOP_PROMPT = """\
You are working through a single development task in this repository.

1. Read tasks/next_task.md for the task description and its success criteria.
2. Read tasks/progress.txt for codebase patterns and notes from earlier work.
3. Make the smallest set of changes that satisfies the next unchecked criterion.
4. Run the project's tests and fix anything you broke.
5. Tick each criterion you have satisfied by changing `[ ]` to `[x]` in
   tasks/next_task.md, and repeat the ticked checklist in your reply.
6. Add any reusable pattern you discovered under "## Codebase Patterns" in
   tasks/progress.txt.

When every criterion is satisfied and the tests pass, reply with
<ralph>COMPLETE</ralph> on its own line.
"""

RESUME_NOTICE = (
    "NOTE: This task was started in a previous run but not completed. Prior "
    "partial work may exist in the working tree and tasks/progress.txt; review "
    "it before redoing anything."
)


def load_loop_prompt(path: Path | None = None, completion_marker: str | None = None) -> str:
    """Load the loop prompt, from a custom template file if one is given.

    Args:
        path: Optional template file overriding the built-in prompt
        completion_marker: Marker substituted for the default one

    Returns:
        Prompt text, identical for every iteration
    """
    prompt = path.read_text(encoding="utf-8") if path is not None else LOOP_PROMPT
    if completion_marker:
        prompt = prompt.replace("<ralph>COMPLETE</ralph>", completion_marker)
    return prompt


def build_task_prompt(
    task_id: str,
    role: str,
    description: str,
    criteria: list[str],
    dependencies: list[str],
    interrupted: bool = False,
) -> str:
    """Render the task file the agent reads on every iteration.

    Criteria become unchecked checklist items so progress can be tracked by
    counting ticks.
    """
    checklist = "\n".join(f"[ ] {criterion}" for criterion in criteria)
    deps = ", ".join(dependencies) if dependencies else "None"
    parts = [
        f"# Task {task_id} (Role: {role})",
        f"Description: {description}",
        f"Success Criteria:\n{checklist}" if checklist else "Success Criteria:\n(none)",
        f"Dependencies: {deps}",
    ]
    if interrupted:
        parts.insert(1, RESUME_NOTICE)
    return "\n\n".join(parts) + "\n"
