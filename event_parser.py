"""NDJSON parser for Claude Code --output-format stream-json events.

Parses line-by-line NDJSON from the agent's stdout into typed events. Each
event type carries only the payload that is valid for it, so consumers switch
on the event class rather than probing optional fields.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, BinaryIO, Iterator, Optional, Union

logger = logging.getLogger(__name__)

# Upper bound for a single NDJSON line (1 MiB)
MAX_LINE_BYTES = 1024 * 1024

EVENT_SYSTEM = "system"
EVENT_ASSISTANT = "assistant"
EVENT_USER = "user"
EVENT_RESULT = "result"

BLOCK_TEXT = "text"
BLOCK_TOOL_USE = "tool_use"

TASK_TOOL = "Task"


class EventStreamError(Exception):
    """The underlying event stream could not be read."""


@dataclass
class Usage:
    """Token usage snapshot for one assistant message."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_input_tokens: int = 0
    cache_read_input_tokens: int = 0

    @property
    def context_tokens(self) -> int:
        """Tokens occupying the context window for this turn."""
        return (
            self.input_tokens
            + self.cache_creation_input_tokens
            + self.cache_read_input_tokens
        )


@dataclass
class TextBlock:
    text: str = ""


@dataclass
class ToolUseBlock:
    """A tool invocation. ``Task`` invocations dispatch a sub-agent."""

    name: str = ""
    id: str = ""
    input: dict[str, Any] = field(default_factory=dict)

    @property
    def is_task(self) -> bool:
        return self.name == TASK_TOOL


@dataclass
class OtherBlock:
    """Content block of a type this loop does not interpret (e.g. thinking)."""

    type: str = ""


ContentBlock = Union[TextBlock, ToolUseBlock, OtherBlock]


@dataclass
class Message:
    role: str = ""
    model: str = ""
    content: list[ContentBlock] = field(default_factory=list)
    usage: Optional[Usage] = None


@dataclass
class ToolUseResult:
    """Outcome of a tool call; the ``total_*`` fields are set only for sub-agents."""

    stdout: str = ""
    status: str = ""
    total_tokens: int = 0
    total_duration_ms: int = 0
    total_tool_use_count: int = 0

    @property
    def is_subagent(self) -> bool:
        return self.total_tokens > 0


@dataclass
class StreamEvent:
    """Base class for a single parsed NDJSON event."""

    type: str


@dataclass
class SystemEvent(StreamEvent):
    type: str = EVENT_SYSTEM
    subtype: str = ""


@dataclass
class AssistantEvent(StreamEvent):
    type: str = EVENT_ASSISTANT
    message: Message = field(default_factory=Message)


@dataclass
class UserEvent(StreamEvent):
    type: str = EVENT_USER
    tool_use_result: Optional[ToolUseResult] = None


@dataclass
class ResultEvent(StreamEvent):
    type: str = EVENT_RESULT
    total_cost_usd: float = 0.0
    result: str = ""
    is_error: bool = False


@dataclass
class UnknownEvent(StreamEvent):
    """Event with a type this loop does not recognise; kept only for its tag."""

    type: str = "unknown"


def _as_int(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return int(value)


def _as_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _parse_usage(raw: Any) -> Optional[Usage]:
    if not isinstance(raw, dict):
        return None
    return Usage(
        input_tokens=_as_int(raw.get("input_tokens")),
        output_tokens=_as_int(raw.get("output_tokens")),
        cache_creation_input_tokens=_as_int(raw.get("cache_creation_input_tokens")),
        cache_read_input_tokens=_as_int(raw.get("cache_read_input_tokens")),
    )


def _parse_block(raw: Any) -> ContentBlock:
    if not isinstance(raw, dict):
        raise ValueError("content block is not an object")
    block_type = raw.get("type", "")
    if block_type == BLOCK_TEXT:
        return TextBlock(text=_as_str(raw.get("text")))
    if block_type == BLOCK_TOOL_USE:
        tool_input = raw.get("input")
        return ToolUseBlock(
            name=_as_str(raw.get("name")),
            id=_as_str(raw.get("id")),
            input=tool_input if isinstance(tool_input, dict) else {},
        )
    return OtherBlock(type=_as_str(block_type))


def _parse_message(raw: Any) -> Message:
    if raw is None:
        return Message()
    if not isinstance(raw, dict):
        raise ValueError("message is not an object")
    content = raw.get("content") or []
    if not isinstance(content, list):
        # Plain-string content carries no blocks worth tracking
        content = []
    return Message(
        role=_as_str(raw.get("role")),
        model=_as_str(raw.get("model")),
        content=[_parse_block(block) for block in content],
        usage=_parse_usage(raw.get("usage")),
    )


def _parse_tool_use_result(raw: Any) -> Optional[ToolUseResult]:
    # Tool errors are reported as plain strings; only objects carry stats
    if not isinstance(raw, dict):
        return None
    return ToolUseResult(
        stdout=_as_str(raw.get("stdout")),
        status=_as_str(raw.get("status")),
        total_tokens=_as_int(raw.get("totalTokens")),
        total_duration_ms=_as_int(raw.get("totalDurationMs")),
        total_tool_use_count=_as_int(raw.get("totalToolUseCount")),
    )


def event_from_dict(data: dict[str, Any]) -> StreamEvent:
    """Build the typed event for a decoded NDJSON object.

    Raises ValueError when the payload does not have the expected shape.
    """
    event_type = data.get("type")
    if event_type == EVENT_SYSTEM:
        return SystemEvent(subtype=_as_str(data.get("subtype")))
    if event_type == EVENT_ASSISTANT:
        return AssistantEvent(message=_parse_message(data.get("message")))
    if event_type == EVENT_USER:
        return UserEvent(
            tool_use_result=_parse_tool_use_result(data.get("tool_use_result"))
        )
    if event_type == EVENT_RESULT:
        cost = data.get("total_cost_usd", 0.0)
        if isinstance(cost, bool) or not isinstance(cost, (int, float)):
            raise ValueError("total_cost_usd is not a number")
        return ResultEvent(
            total_cost_usd=float(cost),
            result=_as_str(data.get("result")),
            is_error=bool(data.get("is_error", False)),
        )
    return UnknownEvent(type=_as_str(event_type) or "unknown")


def parse_event_line(line: str | bytes) -> Optional[StreamEvent]:
    """Parse a single NDJSON line. Blank or undecodable lines yield None."""
    stripped = line.strip()
    if not stripped:
        return None

    try:
        data = json.loads(stripped)
        if not isinstance(data, dict):
            raise ValueError("event is not an object")
        return event_from_dict(data)
    except (ValueError, UnicodeDecodeError) as e:
        logger.debug("Skipping malformed NDJSON line: %.200r (%s)", stripped, e)
        return None


def read_lines(stream: BinaryIO, max_line_bytes: Optional[int] = None) -> Iterator[bytes]:
    """Yield raw lines (newline included) from a binary stream.

    Raises EventStreamError on read failure or when a line exceeds the limit.
    """
    if max_line_bytes is None:
        max_line_bytes = MAX_LINE_BYTES
    while True:
        try:
            line = stream.readline(max_line_bytes + 1)
        except (OSError, ValueError) as e:
            raise EventStreamError(f"reading event stream: {e}") from e
        if not line:
            return
        if len(line) > max_line_bytes and not line.endswith(b"\n"):
            raise EventStreamError(
                f"event line exceeds {max_line_bytes} bytes"
            )
        yield line


def iter_events(stream: BinaryIO) -> Iterator[StreamEvent]:
    """Generator that yields events from a binary NDJSON stream."""
    for line in read_lines(stream):
        event = parse_event_line(line)
        if event is not None:
            yield event


def parse_event_string(raw: str) -> list[StreamEvent]:
    """Parse a complete NDJSON string into a list of events."""
    events = []
    for line in raw.splitlines():
        event = parse_event_line(line)
        if event is not None:
            events.append(event)
    return events
