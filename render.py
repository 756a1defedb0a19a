"""Loop-level terminal output: header, iteration banners, summaries."""

from __future__ import annotations

from typing import TextIO

from loop_stats import CumulativeStats, IterationStats
from transcript import (
    BOLD_BLUE,
    BOLD_CYAN,
    BOLD_GREEN,
    BOLD_RED,
    BOLD_WHITE,
    BOLD_YELLOW,
    DIM,
    MAGENTA,
    RESET,
    WHITE,
    YELLOW,
    format_tokens,
)

CONTEXT_LIMIT = 200_000
BANNER_WIDTH = 38
SUMMARY_WIDTH = 42


def mode_color(mode: str) -> str:
    return BOLD_CYAN if mode == "plan" else BOLD_GREEN


def render_header(
    out: TextIO, mode: str, prompt_file: str, branch: str, max_iterations: int
) -> None:
    """Print the configuration bar at the start of a loop run."""
    bar = f"{BOLD_BLUE}{'━' * 40}{RESET}"
    out.write(bar + "\n")
    out.write(f"  {DIM}Mode{RESET}     {mode_color(mode)}{mode}{RESET}\n")
    out.write(f"  {DIM}Prompt{RESET}   {WHITE}{prompt_file}{RESET}\n")
    out.write(f"  {DIM}Branch{RESET}   {BOLD_CYAN}{branch}{RESET}\n")
    if max_iterations > 0:
        out.write(f"  {DIM}Max{RESET}      {WHITE}{max_iterations} iterations{RESET}\n")
    out.write(bar + "\n")


def render_banner(out: TextIO, mode: str, iteration: int) -> None:
    """Print the iteration box (e.g. ╔══╗ BUILD #1 ╚══╝)."""
    color = mode_color(mode)
    label = "PLAN" if mode == "plan" else "BUILD"
    pad = " " * max(0, BANNER_WIDTH - len(f"  {label}  #{iteration}"))
    out.write("\n")
    out.write(f"  {color}╔{'═' * BANNER_WIDTH}╗{RESET}\n")
    out.write(
        f"  {color}║{RESET}  {color}{label}{RESET}  {BOLD_WHITE}#{iteration}{RESET}"
        f"{pad}{color}║{RESET}\n"
    )
    out.write(f"  {color}╚{'═' * BANNER_WIDTH}╝{RESET}\n")
    out.write("\n")


def render_iteration_summary(
    out: TextIO, stats: IterationStats, log_path: str, context_limit: int = CONTEXT_LIMIT
) -> None:
    """Print the per-iteration context/cost line and raw log path."""
    pct = stats.peak_context * 100 // context_limit
    line = (
        f"\n  {DIM}────{RESET} {format_tokens(stats.peak_context)} / "
        f"{format_tokens(context_limit)} context ({pct}%)"
    )
    if stats.cost > 0:
        line += f"  {MAGENTA}${stats.cost:.4f}{RESET}"
    out.write(line + "\n")
    out.write(f"  {DIM}raw log: {log_path}{RESET}\n")


def render_stale_warning(out: TextIO, count: int, threshold: int) -> None:
    out.write(
        f"{BOLD_YELLOW}No new commits this iteration{RESET} "
        f"{DIM}(stale: {count}/{threshold}){RESET}\n"
    )


def render_stale_abort(out: TextIO, threshold: int) -> None:
    out.write(
        f"{BOLD_RED}Stale loop detected:{RESET} {threshold} consecutive iterations "
        "with no commits. Stopping.\n"
    )


def render_max_iterations(out: TextIO, threshold: int) -> None:
    out.write(f"{BOLD_YELLOW}Reached max iterations: {threshold}{RESET}\n")


def render_push_fallback(out: TextIO) -> None:
    out.write(f"{YELLOW}Failed to push. Creating remote branch...{RESET}\n")


def render_completed(out: TextIO, marker: str) -> None:
    out.write(f"{BOLD_GREEN}Completion marker {marker!r} found. Stopping.{RESET}\n")


def format_duration(seconds: float) -> str:
    total = int(seconds)
    return f"{total // 60}m {total % 60}s"


def render_summary_box(
    out: TextIO,
    stats: CumulativeStats,
    wall_seconds: float,
    context_limit: int = CONTEXT_LIMIT,
) -> None:
    """Render the final job summary box."""
    pct = stats.peak_context / context_limit * 100
    peak = (
        f"{format_tokens(stats.peak_context)} / {format_tokens(context_limit)} ({pct:.0f}%)"
    )
    rows = [
        ("Iterations", str(stats.iterations)),
        ("Wall time", format_duration(wall_seconds)),
        ("Peak context", peak),
        ("Subagent tokens", format_tokens(stats.subagent_tokens)),
        ("Total cost", f"${stats.total_cost:.4f}"),
    ]
    out.write(f"┌{'─' * SUMMARY_WIDTH}┐\n")
    out.write(f"│{'JOB SUMMARY':^{SUMMARY_WIDTH}}│\n")
    out.write(f"├{'─' * SUMMARY_WIDTH}┤\n")
    for label, value in rows:
        out.write(f"│  {label:<17}{value:<{SUMMARY_WIDTH - 19}}│\n")
    out.write(f"└{'─' * SUMMARY_WIDTH}┘\n")
    out.flush()
