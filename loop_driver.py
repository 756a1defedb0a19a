"""Iteration supervisor for autonomous Claude Code plan/build loops.

Primary entry point. Each iteration runs the agent once against the working
tree, renders its event stream, pushes whatever it committed, and checks
whether HEAD moved. The loop stops on the iteration budget, a completion
marker, cancellation (Ctrl+C), or when the agent stops producing commits.
"""

from __future__ import annotations

import argparse
import logging
import os
import signal
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Optional, TextIO

from agent_runner import AgentProcessError, AgentRunner, ClaudeRunner
from config import DEFAULT_CONFIG_PATH, RalphConfig, SecurityConfig, load_config
from event_parser import EventStreamError
from git_ops import GitClient, GitError, VersionControl, is_protected_branch, sanitize_branch
from log_setup import configure_logging, set_redaction
from loop_stats import CumulativeStats, IterationStats
from render import (
    CONTEXT_LIMIT,
    render_banner,
    render_completed,
    render_header,
    render_iteration_summary,
    render_max_iterations,
    render_push_fallback,
    render_stale_abort,
    render_stale_warning,
    render_summary_box,
)
from run_history import RunRecord, RunStatus, append_run, load_history
from stale_detector import DEFAULT_MAX_STALE, StaleDetector
from status_report import parse_plan, render_status

logger = logging.getLogger(__name__)

MODE_PLAN = "plan"
MODE_BUILD = "build"

# Exit codes
EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CANCELLED = 130

LOG_NAME_FORMAT = "%Y%m%d-%H%M%S"


@dataclass
class LoopOptions:
    """Configures a loop run."""

    mode: str
    prompt_file: str
    branch: str
    logs_dir: str
    state_file: str
    max_iterations: int = 0  # 0 = unbounded
    plan_file: str = ""
    specs_dir: str = ""
    max_stale: int = DEFAULT_MAX_STALE
    completion_markers: list[str] = field(default_factory=list)
    context_limit: int = CONTEXT_LIMIT


def open_iteration_log(logs_dir: str | Path) -> tuple[Path, BinaryIO]:
    """Create the raw log file for an iteration, named by its start time."""
    directory = Path(logs_dir)
    directory.mkdir(parents=True, exist_ok=True)
    stem = time.strftime(LOG_NAME_FORMAT)
    path = directory / f"{stem}.jsonl"
    suffix = 1
    while path.exists():
        path = directory / f"{stem}-{suffix}.jsonl"
        suffix += 1
    return path, open(path, "xb")


class LoopDriver:
    """Drives successive agent iterations until a terminal condition."""

    def __init__(
        self,
        options: LoopOptions,
        git: VersionControl,
        runner: AgentRunner,
        out: Optional[TextIO] = None,
    ) -> None:
        self.options = options
        self.git = git
        self.runner = runner
        self.out = out if out is not None else sys.stdout

    def run(self, cancel: Optional[threading.Event] = None) -> RunStatus:
        """Execute the loop and persist a run record. Returns the terminal status.

        AgentProcessError, EventStreamError and GitError propagate without a
        summary or run record.
        """
        if cancel is None:
            cancel = threading.Event()
        opts = self.options
        started_at = datetime.now(timezone.utc)
        start = time.monotonic()

        render_header(self.out, opts.mode, opts.prompt_file, opts.branch, opts.max_iterations)
        logger.info(
            "Starting %s loop on %s (max iterations: %s, max stale: %d)",
            opts.mode, opts.branch, opts.max_iterations or "unbounded", opts.max_stale,
        )

        detector = StaleDetector(opts.max_stale)
        cumulative = CumulativeStats()
        log_files: list[str] = []
        iteration = 0

        while True:
            if opts.max_iterations > 0 and iteration + 1 > opts.max_iterations:
                render_max_iterations(self.out, opts.max_iterations)
                status = RunStatus.MAX_ITERATIONS
                break
            if cancel.is_set():
                logger.info("Cancellation requested, not starting iteration %d", iteration + 1)
                status = RunStatus.CANCELLED
                break

            iteration += 1
            head_before = self.git.current_revision()
            if not detector.seeded:
                detector.check(head_before)
            logger.debug("Iteration %d starting at %s", iteration, head_before)

            render_banner(self.out, opts.mode, iteration)
            stats, log_path = self._run_iteration(cancel)
            log_files.append(log_path)

            # A cancelled iteration is still published and checked; the loop
            # stops at the top of the next one.
            self._publish()
            cumulative.update(stats)
            render_iteration_summary(self.out, stats, log_path, opts.context_limit)

            marker = self._completion_marker(stats)
            if marker is not None:
                render_completed(self.out, marker)
                status = RunStatus.COMPLETED
                break

            head_after = self.git.current_revision()
            abort, stale_count = detector.check(head_after)
            if abort:
                render_stale_abort(self.out, detector.max_stale)
                status = RunStatus.STALE_ABORT
                break
            if stale_count > 0:
                render_stale_warning(self.out, stale_count, detector.max_stale)

        self.out.write("\n")
        render_summary_box(self.out, cumulative, time.monotonic() - start, opts.context_limit)
        self._save_record(status, started_at, cumulative, log_files)
        logger.info("Loop finished: %s after %d iterations", status.value, cumulative.iterations)
        return status

    def _run_iteration(self, cancel: threading.Event) -> tuple[IterationStats, str]:
        path, raw_log = open_iteration_log(self.options.logs_dir)
        with raw_log:
            stats = self.runner.run(self.options, cancel, raw_log, self.out)
        return stats, str(path)

    def _publish(self) -> None:
        """Push the branch, creating the remote branch if the plain push fails."""
        branch = self.options.branch
        pushed = self.git.publish(branch)
        if pushed.success:
            return

        logger.info("Push failed (%s), retrying with upstream", pushed.error)
        render_push_fallback(self.out)
        upstream = self.git.publish_with_upstream(branch)
        if not upstream.success:
            logger.warning("Push to origin/%s failed: %s", branch, upstream.error)

    def _completion_marker(self, stats: IterationStats) -> Optional[str]:
        text = stats.result_text.lower()
        if not text:
            return None
        for marker in self.options.completion_markers:
            if marker and marker.lower() in text:
                return marker
        return None

    def _save_record(
        self,
        status: RunStatus,
        started_at: datetime,
        cumulative: CumulativeStats,
        log_files: list[str],
    ) -> None:
        record = RunRecord(
            mode=self.options.mode,
            started_at=started_at,
            finished_at=datetime.now(timezone.utc),
            iterations=cumulative.iterations,
            total_cost=cumulative.total_cost,
            peak_context=cumulative.peak_context,
            subagent_tokens=cumulative.subagent_tokens,
            status=status,
            log_files=list(log_files),
        )
        saved = append_run(self.options.state_file, record)
        if not saved.success:
            logger.error("Failed to record run in %s: %s", self.options.state_file, saved.error)


def build_options(
    mode: str,
    config: RalphConfig,
    repo_root: Path,
    branch: str,
    max_flag: int = 0,
    max_stale: Optional[int] = None,
) -> LoopOptions:
    """Resolve loop options from config, CLI flags and PLAN_FILE/SPECS_DIR."""
    phase = config.phase(mode)
    plan_file = os.environ.get("PLAN_FILE") or config.plan_path_for_branch(branch)
    specs_dir = os.environ.get("SPECS_DIR") or f"specs/{sanitize_branch(branch)}"
    return LoopOptions(
        mode=mode,
        prompt_file=phase.prompt,
        branch=branch,
        logs_dir=str(repo_root / config.paths.logs_dir),
        state_file=str(repo_root / config.paths.state_file),
        max_iterations=max_flag if max_flag > 0 else phase.max_iterations,
        plan_file=plan_file,
        specs_dir=specs_dir,
        max_stale=config.limits.max_stale if max_stale is None else max_stale,
        completion_markers=list(config.patterns.completion_markers),
        context_limit=config.limits.context_window,
    )


def install_interrupt_handler(cancel: threading.Event) -> None:
    """First Ctrl+C finishes the current iteration; a second one aborts."""

    def handle_sigint(signum, frame) -> None:
        if cancel.is_set():
            raise KeyboardInterrupt
        cancel.set()
        logger.warning("Stopping after the current iteration (Ctrl+C again to force)")

    signal.signal(signal.SIGINT, handle_sigint)


def _load_project(args: argparse.Namespace) -> tuple[GitClient, Path, RalphConfig, str]:
    git = GitClient(Path(args.project).resolve())
    repo_root = git.repo_root()
    git.repo_path = repo_root
    config_path = Path(args.config) if args.config else repo_root / DEFAULT_CONFIG_PATH
    config_result = load_config(config_path)
    if not config_result.success or config_result.data is None:
        raise ValueError(f"Config error: {config_result.error}")
    config = config_result.data
    log_handler = getattr(args, "log_handler", None)
    if log_handler is not None:
        set_redaction(log_handler, config.security.log_redact_patterns)
    if args.model:
        config.claude.model = args.model
    return git, repo_root, config, git.current_branch()


def run_loop_command(args: argparse.Namespace) -> int:
    git, repo_root, config, branch = _load_project(args)
    if is_protected_branch(branch, config.git.protected_branches) and not args.allow_protected:
        logger.error("ralph %s must be run on a feature branch, not %r", args.mode, branch)
        return EXIT_ERROR

    options = build_options(args.mode, config, repo_root, branch, args.max, args.max_stale)
    if args.mode == MODE_BUILD and not (repo_root / options.plan_file).exists():
        logger.error("Plan file %r not found; run \"ralph-loop plan\" first", options.plan_file)
        return EXIT_ERROR

    cancel = threading.Event()
    install_interrupt_handler(cancel)
    driver = LoopDriver(options, git, ClaudeRunner(config.claude, repo_root))
    status = driver.run(cancel)
    return EXIT_CANCELLED if status == RunStatus.CANCELLED else EXIT_OK


def run_status_command(args: argparse.Namespace) -> int:
    git, repo_root, config, branch = _load_project(args)
    tasks = parse_plan(repo_root / config.plan_path_for_branch(branch))
    history = load_history(repo_root / config.paths.state_file)
    if not history.success or history.data is None:
        logger.error("%s", history.error)
        return EXIT_ERROR
    render_status(sys.stdout, config.project or repo_root.name, branch, tasks, history.data.last_run())
    return EXIT_OK


def main(argv: Optional[list[str]] = None) -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="ralph-loop",
        description="Autonomous plan/build iteration using Claude Code",
    )
    parser.add_argument("--project", default=".", help="Repository directory")
    parser.add_argument("--config", default=None, help="Path to config.json")
    parser.add_argument("--model", default=None, help="Claude model override")
    parser.add_argument("--verbose", action="store_true", help="Enable verbose logging")
    parser.add_argument("--json-log", action="store_true", help="Output structured JSON logs")
    sub = parser.add_subparsers(dest="command", required=True)

    for mode, help_text in (
        (MODE_PLAN, "Run the planning loop (writes the branch plan)"),
        (MODE_BUILD, "Run the build loop (implements plan tasks)"),
    ):
        loop_parser = sub.add_parser(mode, help=help_text)
        loop_parser.set_defaults(mode=mode)
        loop_parser.add_argument(
            "-n", "--max", type=int, default=0,
            help="Maximum iterations (0 = use config default)",
        )
        loop_parser.add_argument(
            "--max-stale", type=int, default=None,
            help="Iterations without new commits before aborting",
        )
        loop_parser.add_argument(
            "--allow-protected", action="store_true",
            help="Allow running on a protected branch (main/master)",
        )
    sub.add_parser("status", help="Show plan progress and the last run")

    args = parser.parse_args(argv)
    # Default patterns until the project config (and its own patterns) is loaded
    args.log_handler = configure_logging(
        args.verbose, args.json_log, SecurityConfig().log_redact_patterns
    )

    try:
        if args.command == "status":
            exit_code = run_status_command(args)
        else:
            exit_code = run_loop_command(args)
    except (AgentProcessError, EventStreamError, GitError, ValueError) as e:
        logger.error("%s", e)
        exit_code = EXIT_ERROR
    except KeyboardInterrupt:
        logger.error("Interrupted")
        exit_code = EXIT_CANCELLED
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
