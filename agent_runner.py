"""Runs one agent iteration: spawns the claude CLI and streams its NDJSON output.

The loop only depends on the AgentRunner protocol; ClaudeRunner is the
subprocess-backed implementation used in production.
"""

from __future__ import annotations

import logging
import os
import subprocess
import threading
from pathlib import Path
from typing import IO, TYPE_CHECKING, BinaryIO, Optional, Protocol, TextIO

from config import ClaudeConfig
from event_parser import EventStreamError
from loop_stats import IterationStats
from stream_processor import process_stream

if TYPE_CHECKING:
    from loop_driver import LoopOptions

logger = logging.getLogger(__name__)

# Seconds between cancellation polls while the agent is running
CANCEL_POLL_SECONDS = 0.2
TERMINATE_GRACE_SECONDS = 5
WATCHER_THREAD_NAME = "agent-cancel-watcher"


class AgentProcessError(Exception):
    """The agent process could not be started or exited with a failure."""


class AgentRunner(Protocol):
    """Runs one agent invocation and returns the stats of its event stream."""

    def run(
        self,
        options: LoopOptions,
        cancel: threading.Event,
        raw_log: BinaryIO,
        display: TextIO,
    ) -> IterationStats: ...


class ClaudeRunner:
    """AgentRunner that spawns the claude CLI in stream-json mode."""

    def __init__(self, config: ClaudeConfig, project_path: str | Path = ".") -> None:
        self.config = config
        self.project_path = Path(project_path)

    def build_args(self) -> list[str]:
        args = [self.config.command, "-p"]
        if self.config.dangerously_skip_permissions:
            args.append("--dangerously-skip-permissions")
        args.extend(["--output-format=stream-json", "--model", self.config.model])
        # stream-json output requires --verbose in print mode
        if self.config.verbose:
            args.append("--verbose")
        return args

    def build_env(self, options: LoopOptions) -> dict[str, str]:
        env = dict(os.environ)
        env.update({
            "RALPH_MODE": options.mode,
            "RALPH_BRANCH": options.branch,
            "PLAN_FILE": options.plan_file,
            "SPECS_DIR": options.specs_dir,
        })
        return env

    def run(
        self,
        options: LoopOptions,
        cancel: threading.Event,
        raw_log: BinaryIO,
        display: TextIO,
    ) -> IterationStats:
        """Run claude once, piping the prompt file to stdin.

        Returns partial stats when ``cancel`` fires mid-run. Raises
        AgentProcessError on spawn failure or a non-zero exit, and
        EventStreamError if stdout cannot be read.
        """
        prompt_path = self.project_path / options.prompt_file
        try:
            prompt = prompt_path.read_bytes()
        except OSError as e:
            raise AgentProcessError(f"reading prompt {prompt_path}: {e}") from e

        args = self.build_args()
        logger.info("Spawning: %s", " ".join(args))
        try:
            proc = subprocess.Popen(
                args,
                cwd=str(self.project_path),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=self.build_env(options),
            )
        except OSError as e:
            raise AgentProcessError(f"{args[0]} could not be started: {e}") from e

        stdin_thread = threading.Thread(
            target=self._feed_stdin, args=(proc.stdin, prompt), daemon=True
        )
        stdin_thread.start()

        # Drain stderr in background to prevent pipe buffer deadlock
        stderr_lines: list[str] = []
        stderr_thread = threading.Thread(
            target=self._drain_pipe, args=(proc.stderr, stderr_lines), daemon=True
        )
        stderr_thread.start()

        watcher = threading.Thread(
            target=self._watch_cancel, args=(proc, cancel), daemon=True,
            name=WATCHER_THREAD_NAME,
        )
        watcher.start()

        logger.debug("Agent PID: %d, reading NDJSON events...", proc.pid)
        try:
            stats = process_stream(
                proc.stdout, display, raw_log=raw_log, cancel=cancel
            )
        except EventStreamError:
            self._terminate(proc)
            raise
        finally:
            if cancel.is_set():
                self._terminate(proc)
            try:
                proc.wait(timeout=TERMINATE_GRACE_SECONDS)
            except subprocess.TimeoutExpired:
                self._terminate(proc)
            stdin_thread.join(timeout=2)
            stderr_thread.join(timeout=2)
            watcher.join(timeout=2)

        stderr_text = "".join(stderr_lines)
        if stderr_text:
            logger.debug("Agent stderr (first 500 chars): %s", stderr_text[:500])

        if cancel.is_set():
            logger.info("Agent run cancelled; keeping partial stats")
            return stats

        if proc.returncode:
            raise AgentProcessError(
                f"{args[0]} exited with status {proc.returncode}: {stderr_text.strip()[-300:]}"
            )
        return stats

    @staticmethod
    def _feed_stdin(pipe: Optional[IO[bytes]], data: bytes) -> None:
        if pipe is None:
            return
        try:
            pipe.write(data)
        except (BrokenPipeError, OSError, ValueError) as e:
            logger.debug("Could not write prompt to agent stdin: %s", e)
        finally:
            try:
                pipe.close()
            except OSError:
                pass

    @staticmethod
    def _drain_pipe(pipe: Optional[IO[bytes]], lines: list[str]) -> None:
        """Read all lines from a pipe into a list (for background threads)."""
        if pipe is None:
            return
        try:
            for raw in pipe:
                lines.append(raw.decode("utf-8", errors="replace"))
        except (OSError, ValueError):
            pass

    @classmethod
    def _watch_cancel(cls, proc: subprocess.Popen, cancel: threading.Event) -> None:
        """Terminate the agent as soon as cancellation is requested."""
        while proc.poll() is None:
            if cancel.wait(CANCEL_POLL_SECONDS):
                logger.warning("Cancellation requested, terminating agent PID %d", proc.pid)
                cls._terminate(proc)
                return

    @staticmethod
    def _terminate(proc: subprocess.Popen) -> None:
        if proc.poll() is not None:
            return
        try:
            proc.terminate()
            proc.wait(timeout=TERMINATE_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            proc.kill()
        except OSError:
            pass
