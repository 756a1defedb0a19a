"""Terminal rendering of agent events for the live transcript."""

from __future__ import annotations

from typing import Any, TextIO

from event_parser import (
    AssistantEvent,
    StreamEvent,
    TextBlock,
    ToolUseBlock,
    ToolUseResult,
    UserEvent,
)

# ANSI escape codes
RESET = "\033[0m"
BOLD = "\033[1m"
DIM = "\033[2m"
WHITE = "\033[37m"
CYAN = "\033[36m"
GREEN = "\033[32m"
RED = "\033[31m"
YELLOW = "\033[33m"
MAGENTA = "\033[35m"
BOLD_WHITE = "\033[1;37m"
BOLD_CYAN = "\033[1;36m"
BOLD_GREEN = "\033[1;32m"
BOLD_RED = "\033[1;31m"
BOLD_YELLOW = "\033[1;33m"
BOLD_BLUE = "\033[1;34m"

# Input keys tried in order when summarising a tool call
PARAM_PRIORITY = ("file_path", "description", "command", "pattern", "query", "url", "skill")
MAX_PARAM_CHARS = 60
ELLIPSIS = "…"


def format_tokens(n: int) -> str:
    """Format a token count for display (e.g. "45.3k", "1.5M").

    Truncates to one decimal place rather than rounding.
    """
    if n >= 1_000_000:
        tenths = n // 100_000
        return f"{tenths // 10}.{tenths % 10}M"
    if n >= 1_000:
        tenths = n // 100
        return f"{tenths // 10}.{tenths % 10}k"
    return str(n)


def truncate(text: str, limit: int = MAX_PARAM_CHARS) -> str:
    """Cut text to ``limit`` characters, marking the cut with an ellipsis."""
    if len(text) <= limit:
        return text
    return text[:limit] + ELLIPSIS


def extract_param(tool_input: Any) -> str:
    """Pick the most representative parameter of a tool call for display."""
    if not isinstance(tool_input, dict) or not tool_input:
        return ""
    for key in PARAM_PRIORITY:
        if key in tool_input:
            value = tool_input[key]
            return truncate(value if isinstance(value, str) else str(value))
    return truncate(", ".join(sorted(tool_input)))


class TranscriptFormatter:
    """Writes a human-readable rendering of stream events to a text sink."""

    def __init__(self, out: TextIO) -> None:
        self.out = out

    def format(self, event: StreamEvent) -> None:
        if isinstance(event, AssistantEvent):
            for block in event.message.content:
                if isinstance(block, TextBlock):
                    self._text(block)
                elif isinstance(block, ToolUseBlock):
                    if block.is_task:
                        self._task(block)
                    else:
                        self._tool_use(block)
        elif isinstance(event, UserEvent):
            result = event.tool_use_result
            if result is not None and result.is_subagent:
                self._subagent_result(result)
        # system, result and unknown events are not shown

    def _text(self, block: TextBlock) -> None:
        if block.text:
            self.out.write(f"{BOLD}{WHITE}{block.text}{RESET}\n")

    def _tool_use(self, block: ToolUseBlock) -> None:
        param = extract_param(block.input)
        line = f"  {DIM}· {block.name}"
        if param:
            line += f"  {param}"
        self.out.write(f"{line}{RESET}\n")

    def _task(self, block: ToolUseBlock) -> None:
        hints = block.input
        agent_type = hints.get("subagent_type") or "agent"
        description = hints.get("description")
        label = f"\"{description}\"" if description else "—"
        line = f"{BOLD_CYAN}▶ {agent_type}{RESET} {label}"
        model = hints.get("model")
        if model:
            line += f" {DIM}model={model}{RESET}"
        max_turns = hints.get("max_turns")
        if max_turns is not None:
            line += f" {DIM}max_turns={max_turns}{RESET}"
        self.out.write(line + "\n")

    def _subagent_result(self, result: ToolUseResult) -> None:
        if result.status == "completed":
            seconds = f"{result.total_duration_ms / 1000:.0f}s"
            self.out.write(
                f"  {GREEN}✓{RESET} {DIM}{seconds} · "
                f"{result.total_tool_use_count} tool calls · "
                f"{format_tokens(result.total_tokens)} tokens{RESET}\n"
            )
        else:
            status = result.status or "unknown"
            self.out.write(f"  {BOLD_RED}✗ subagent {status}{RESET}\n")
