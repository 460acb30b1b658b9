"""Checklist progress tracking and the human-readable progress log.

Agents report progress by ticking markdown checkboxes (``[ ]`` to ``[x]``) in
the task file and in their own output. The iteration loop scans both to decide
how far along a task is and whether it is done.
"""

import re
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

_CRITERION = re.compile(r"\[([x ])\]\s*(.+?)(?=\n|$)", re.IGNORECASE)

PROGRESS_HEADER = (
    "## Codebase Patterns\n\n"
    "(No patterns yet - will be populated as work progresses)\n\n"
)
WORK_IN_PROGRESS = "- Work in progress"


@dataclass
class ChecklistProgress:
    """Checkbox tally over a piece of text.

    Attributes:
        checked: Number of distinct criteria ticked at least once
        total: Number of distinct criteria
        next_item: Text of the first criterion not ticked anywhere
    """

    checked: int
    total: int
    next_item: str | None = None

    @property
    def unchecked(self) -> int:
        return self.total - self.checked

    @property
    def percent(self) -> int:
        if self.total == 0:
            return 0
        # Halves round up
        return int(self.checked * 100 / self.total + 0.5)

    def summary(self) -> str:
        return f"{self.checked}/{self.total} criteria ({self.percent}%)"


def scan_checklist(text: str) -> ChecklistProgress:
    """Tally checklist criteria in markdown text.

    Criteria are identified by their text, so an item left unchecked in the
    task file counts as done once the agent reports it ticked in its output.
    """
    criteria: dict[str, bool] = {}
    labels: dict[str, str] = {}
    for match in _CRITERION.finditer(text):
        label = match.group(2).strip()
        key = " ".join(label.lower().split())
        ticked = match.group(1).lower() == "x"
        criteria[key] = criteria.get(key, False) or ticked
        labels.setdefault(key, label)

    checked = sum(1 for ticked in criteria.values() if ticked)
    next_item = next((labels[key] for key, ticked in criteria.items() if not ticked), None)
    return ChecklistProgress(checked=checked, total=len(criteria), next_item=next_item)


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


class ProgressLog:
    """Append-mostly markdown log of task progress (``progress.txt``).

    Each task gets a ``## <timestamp> - Task <id>`` section that starts with a
    work-in-progress placeholder and is rewritten in place on completion.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    def read(self) -> str:
        if not self.path.exists():
            return ""
        return self.path.read_text(encoding="utf-8")

    def ensure_initialized(self) -> None:
        """Create the log with its patterns header if it does not exist."""
        if self.path.exists():
            return
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(PROGRESS_HEADER, encoding="utf-8")

    def _append(self, text: str) -> None:
        self.ensure_initialized()
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(text)

    def start_entry(self, task_id: str, description: str = "") -> None:
        """Append a section for a task that is about to run."""
        lines = [f"\n## {_timestamp()} - Task {task_id}\n"]
        if description:
            lines.append(f"- Task: {description[:80]}\n")
        lines.append(f"{WORK_IN_PROGRESS}\n---\n")
        self._append("".join(lines))

    def _entry_pattern(self, task_id: str) -> re.Pattern[str]:
        return re.compile(
            rf"(## .* - Task {re.escape(task_id)}\n)([\s\S]*?)(?=\n## |$)"
        )

    def complete_entry(self, task_id: str, description: str, output: str) -> None:
        """Record task completion.

        Replaces the placeholder in the task's latest section, or appends a
        completion section if there is none.
        """
        summary = output[:200].replace("\n", " ")
        completion = f"- ✅ Completed: {description[:80]}\n- Summary: {summary}..."
        if not self._replace_placeholder(task_id, completion):
            self._append(
                f"\n## {_timestamp()} - Task {task_id}\n{completion}\n---\n"
            )

    def fail_entry(self, task_id: str, reason: str) -> None:
        """Record task failure in the same way as completion."""
        failure = f"- ❌ Failed: {' '.join(reason.split())[:200]}"
        if not self._replace_placeholder(task_id, failure):
            self._append(f"\n## {_timestamp()} - Task {task_id}\n{failure}\n---\n")

    def _replace_placeholder(self, task_id: str, replacement: str) -> bool:
        content = self.read()
        matches = list(self._entry_pattern(task_id).finditer(content))
        for match in reversed(matches):
            section = match.group(0)
            if WORK_IN_PROGRESS not in section:
                continue
            updated = section.replace(WORK_IN_PROGRESS, replacement, 1)
            content = content[: match.start()] + updated + content[match.end() :]
            self.path.write_text(content, encoding="utf-8")
            return True
        return False
