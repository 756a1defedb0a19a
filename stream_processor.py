"""Single-pass processing of an agent event stream: stats folding plus transcript."""

from __future__ import annotations

import logging
import threading
from typing import BinaryIO, Optional, TextIO

from event_parser import (
    AssistantEvent,
    ResultEvent,
    StreamEvent,
    ToolUseBlock,
    UserEvent,
    parse_event_line,
    read_lines,
)
from loop_stats import IterationStats
from transcript import TranscriptFormatter

logger = logging.getLogger(__name__)


def fold_event(event: StreamEvent, stats: IterationStats) -> None:
    """Accumulate one event into the iteration stats."""
    if isinstance(event, AssistantEvent):
        stats.observe_assistant(event.message.usage)
        for block in event.message.content:
            if isinstance(block, ToolUseBlock):
                stats.observe_tool_use()
    elif isinstance(event, UserEvent):
        result = event.tool_use_result
        if result is not None and result.is_subagent:
            stats.observe_subagent(result.total_tokens)
    elif isinstance(event, ResultEvent):
        stats.observe_result(event.total_cost_usd, event.result)


def process_stream(
    stream: BinaryIO,
    display: TextIO,
    stats: Optional[IterationStats] = None,
    raw_log: Optional[BinaryIO] = None,
    cancel: Optional[threading.Event] = None,
) -> IterationStats:
    """Read an NDJSON event stream, render it to ``display`` and return stats.

    Each raw line is copied verbatim to ``raw_log`` before decoding. When
    ``cancel`` is set, processing stops at the next line and the partial
    stats gathered so far are returned. The per-iteration summary line is
    the caller's job.

    Raises EventStreamError if the stream cannot be read.
    """
    if stats is None:
        stats = IterationStats()
    formatter = TranscriptFormatter(display)

    events = 0
    for line in read_lines(stream):
        if raw_log is not None:
            raw_log.write(line)
        if cancel is not None and cancel.is_set():
            logger.info("Cancellation requested, stopping stream after %d events", events)
            break

        event = parse_event_line(line)
        if event is None:
            continue
        events += 1
        fold_event(event, stats)
        formatter.format(event)

    display.flush()
    logger.debug(
        "Processed %d events: peak_context=%d cost=%.4f tool_calls=%d",
        events, stats.peak_context, stats.cost, stats.tool_calls,
    )
    return stats
