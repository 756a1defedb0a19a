"""Progress summary for the current branch: plan tasks and the last loop run."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, TextIO

from run_history import RunRecord
from transcript import BOLD, BOLD_CYAN, DIM, GREEN, RESET, format_tokens

TASK_HEADING_RE = re.compile(r"^###\s+Task\s+\d+\s*[-–—]+\s*(.+)")


@dataclass
class Task:
    """A task heading from the implementation plan."""

    title: str
    done: bool = False


def parse_plan(path: str | Path) -> list[Task]:
    """Extract tasks from an implementation plan.

    Tasks are ``### Task N — title`` headings; a ``- [x]`` checkbox under a
    heading marks it done and a later ``- [ ]`` marks it open again. A
    missing plan yields no tasks.
    """
    plan_path = Path(path)
    if not plan_path.exists():
        return []

    tasks: list[Task] = []
    for line in plan_path.read_text(encoding="utf-8").splitlines():
        match = TASK_HEADING_RE.match(line)
        if match:
            tasks.append(Task(title=match.group(1).strip()))
            continue
        if not tasks:
            continue
        trimmed = line.strip()
        if trimmed.startswith(("- [x]", "- [X]")):
            tasks[-1].done = True
        elif trimmed.startswith("- [ ]"):
            tasks[-1].done = False
    return tasks


def render_status(
    out: TextIO,
    project: str,
    branch: str,
    tasks: list[Task],
    last_run: Optional[RunRecord],
) -> None:
    out.write(f"{BOLD}{project}{RESET}  {DIM}branch{RESET} {BOLD_CYAN}{branch}{RESET}\n\n")

    if tasks:
        done = sum(1 for t in tasks if t.done)
        out.write(f"Tasks: {done}/{len(tasks)} done\n")
        for task in tasks:
            mark = f"{GREEN}✓{RESET}" if task.done else f"{DIM}○{RESET}"
            out.write(f"  {mark} {task.title}\n")
    else:
        out.write(f"{DIM}No plan tasks found.{RESET}\n")

    out.write("\n")
    if last_run is None:
        out.write(f"{DIM}No loop runs recorded yet.{RESET}\n")
        return
    out.write(
        f"Last run: {last_run.mode} · {last_run.status.value} · "
        f"{last_run.iterations} iterations · ${last_run.total_cost:.4f} · "
        f"peak {format_tokens(last_run.peak_context)} context\n"
    )
    out.write(f"  {DIM}finished {last_run.finished_at:%Y-%m-%d %H:%M:%S %Z}{RESET}\n")
