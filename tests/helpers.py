"""Shared test helpers for the ralph loop test suite.

Fixtures are in conftest.py. This module contains non-fixture helpers
(fake collaborators, NDJSON stream builders, Popen mocks) used across
multiple test files.
"""

import io
import json
import threading
from typing import BinaryIO, Optional, TextIO

from config import Result
from loop_stats import IterationStats


# --- NDJSON stream builders ---

def assistant_event(
    content: Optional[list] = None,
    input_tokens: int = 0,
    cache_creation: int = 0,
    cache_read: int = 0,
    output_tokens: int = 0,
    with_usage: bool = True,
) -> str:
    message = {
        "role": "assistant",
        "model": "claude-opus-4-20250514",
        "content": content or [],
    }
    if with_usage:
        message["usage"] = {
            "input_tokens": input_tokens,
            "output_tokens": output_tokens,
            "cache_creation_input_tokens": cache_creation,
            "cache_read_input_tokens": cache_read,
        }
    return json.dumps({"type": "assistant", "message": message})


def text_block(text: str) -> dict:
    return {"type": "text", "text": text}


def tool_block(name: str, tool_input: dict, block_id: str = "toolu_1") -> dict:
    return {"type": "tool_use", "id": block_id, "name": name, "input": tool_input}


def subagent_result_event(
    status: str = "completed",
    total_tokens: int = 8769,
    duration_ms: int = 18515,
    tool_count: int = 3,
) -> str:
    return json.dumps({
        "type": "user",
        "message": {"role": "user", "content": [{"type": "tool_result", "tool_use_id": "toolu_1"}]},
        "tool_use_result": {
            "status": status,
            "totalTokens": total_tokens,
            "totalDurationMs": duration_ms,
            "totalToolUseCount": tool_count,
        },
    })


def tool_result_event(stdout: str = "ok") -> str:
    return json.dumps({
        "type": "user",
        "tool_use_result": {"stdout": stdout, "stderr": "", "interrupted": False},
    })


def result_event(cost: float = 0.05, text: str = "Done.") -> str:
    return json.dumps({
        "type": "result",
        "subtype": "success",
        "total_cost_usd": cost,
        "num_turns": 3,
        "result": text,
        "is_error": False,
    })


def system_event() -> str:
    return json.dumps({"type": "system", "subtype": "init", "session_id": "abc-123"})


def build_ndjson_stream(*lines: str) -> bytes:
    """Join event lines into the bytes the agent writes to stdout."""
    return ("\n".join(lines) + "\n").encode("utf-8")


def full_iteration_stream(cost: float = 0.05, text: str = "Done.") -> bytes:
    """A realistic single-iteration stream: init, reasoning, tool calls, result."""
    return build_ndjson_stream(
        system_event(),
        assistant_event(
            [text_block("Reading the plan first."), tool_block("Read", {"file_path": "/repo/PLAN.md"})],
            input_tokens=1200, cache_creation=3000, cache_read=15000,
        ),
        tool_result_event("# Plan"),
        assistant_event(
            [tool_block("Bash", {"command": "pytest -q", "description": "Run tests"}, "toolu_2")],
            input_tokens=800, cache_creation=500, cache_read=22000,
        ),
        tool_result_event("5 passed"),
        result_event(cost, text),
    )


# --- Fake collaborators ---

class FakeGit:
    """VersionControl double. ``head`` only moves when something commits."""

    def __init__(
        self,
        head: str = "sha-0",
        push_error: Optional[str] = None,
        upstream_error: Optional[str] = None,
    ) -> None:
        self.head = head
        self.push_error = push_error
        self.upstream_error = upstream_error
        self.commits = 0
        self.published: list[str] = []
        self.upstream_published: list[str] = []

    def commit(self) -> None:
        self.commits += 1
        self.head = f"sha-{self.commits}"

    def current_revision(self) -> str:
        return self.head

    def publish(self, branch: str) -> Result[None]:
        self.published.append(branch)
        if self.push_error:
            return Result.fail(self.push_error, "PUSH_FAILED")
        return Result.ok(None)

    def publish_with_upstream(self, branch: str) -> Result[None]:
        self.upstream_published.append(branch)
        if self.upstream_error:
            return Result.fail(self.upstream_error, "PUSH_UPSTREAM_FAILED")
        return Result.ok(None)


class FakeRunner:
    """AgentRunner double that returns canned stats.

    ``commits`` makes each run move the fake HEAD; ``cancel_on_call`` sets
    the cancel event during that (1-based) call; ``error`` is raised instead
    of returning.
    """

    def __init__(
        self,
        git: Optional[FakeGit] = None,
        stats: Optional[IterationStats] = None,
        commits: bool = False,
        cancel_on_call: Optional[int] = None,
        error: Optional[Exception] = None,
    ) -> None:
        self.git = git
        self.stats = stats
        self.commits = commits
        self.cancel_on_call = cancel_on_call
        self.error = error
        self.called = 0

    def run(self, options, cancel: threading.Event, raw_log: BinaryIO, display: TextIO) -> IterationStats:
        self.called += 1
        raw_log.write(b"{}\n")
        if self.error is not None:
            raise self.error
        if self.cancel_on_call == self.called:
            cancel.set()
        if self.commits and self.git is not None:
            self.git.commit()
        if self.stats is None:
            return IterationStats(peak_context=1000, cost=0.01)
        return IterationStats(
            peak_context=self.stats.peak_context,
            cost=self.stats.cost,
            subagent_tokens=self.stats.subagent_tokens,
            tool_calls=self.stats.tool_calls,
            result_text=self.stats.result_text,
        )


# --- Popen mock for streaming NDJSON from the claude CLI ---

class RecordingStdin(io.BytesIO):
    """BytesIO that keeps what was written after it is closed."""

    captured = b""

    def close(self) -> None:
        if not self.closed:
            self.captured = self.getvalue()
        super().close()


class MockPopen:
    """Mock subprocess.Popen whose stdout yields a canned NDJSON stream."""

    def __init__(self, ndjson_stream: bytes, returncode: int = 0, stderr: bytes = b"") -> None:
        self.stdin = RecordingStdin()
        self.stdout = io.BytesIO(ndjson_stream)
        self.stderr = io.BytesIO(stderr)
        self.returncode = returncode
        self.pid = 99999
        self.terminated = False

    def poll(self) -> int:
        return self.returncode

    def wait(self, timeout: float | None = None) -> int:
        return self.returncode

    def terminate(self) -> None:
        self.terminated = True

    def kill(self) -> None:
        self.terminated = True


def make_popen_factory(ndjson_stream: bytes, returncode: int = 0, stderr: bytes = b""):
    """Create a side_effect for subprocess.Popen that records the spawned mocks."""
    created: list = []

    def factory(*args, **kwargs):
        proc = MockPopen(ndjson_stream, returncode, stderr)
        proc.args = args[0] if args else kwargs.get("args")
        proc.kwargs = kwargs
        created.append(proc)
        return proc

    factory.created = created
    return factory
