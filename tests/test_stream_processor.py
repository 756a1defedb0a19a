"""Tests for stream_processor module."""

import io
import threading

import pytest

from event_parser import EventStreamError
from loop_stats import CumulativeStats, IterationStats
from stream_processor import process_stream

from helpers import (
    assistant_event,
    build_ndjson_stream,
    full_iteration_stream,
    result_event,
    subagent_result_event,
    system_event,
    text_block,
    tool_block,
    tool_result_event,
)


class TestProcessStream:
    def test_full_iteration(self) -> None:
        display = io.StringIO()
        stats = process_stream(io.BytesIO(full_iteration_stream(cost=0.12)), display)

        assert stats.peak_context == 800 + 500 + 22000
        assert stats.cost == pytest.approx(0.12)
        assert stats.tool_calls == 2
        assert stats.subagent_tokens == 0
        assert stats.result_text == "Done."
        out = display.getvalue()
        assert "Reading the plan first." in out
        assert "· Read" in out
        assert "· Bash" in out

    def test_peak_is_high_water_mark(self) -> None:
        stream = build_ndjson_stream(
            assistant_event(input_tokens=100, cache_read=50),
            assistant_event(input_tokens=10, cache_read=500),
            assistant_event(input_tokens=20, cache_read=5),
        )
        stats = process_stream(io.BytesIO(stream), io.StringIO())
        assert stats.peak_context == 510

    def test_with_subagents(self) -> None:
        stream = build_ndjson_stream(
            assistant_event([tool_block("Task", {"subagent_type": "Explore", "description": "Map the repo"})]),
            subagent_result_event(total_tokens=8000),
            tool_result_event("plain"),
            subagent_result_event(status="error", total_tokens=1500),
            result_event(0.3),
        )
        display = io.StringIO()
        stats = process_stream(io.BytesIO(stream), display)

        assert stats.subagent_tokens == 9500
        assert stats.tool_calls == 1
        out = display.getvalue()
        assert "▶ Explore" in out
        assert "✓" in out
        assert "✗" in out

    def test_empty_stream(self) -> None:
        display = io.StringIO()
        stats = process_stream(io.BytesIO(b""), display)
        assert stats == IterationStats()
        assert display.getvalue() == ""

    def test_malformed_lines_tolerated(self) -> None:
        stream = build_ndjson_stream(
            "{broken",
            assistant_event([text_block("still here")], input_tokens=42),
            "",
            "null",
        )
        stats = process_stream(io.BytesIO(stream), io.StringIO())
        assert stats.peak_context == 42

    def test_system_events_render_nothing(self) -> None:
        display = io.StringIO()
        process_stream(io.BytesIO(build_ndjson_stream(system_event(), result_event())), display)
        assert display.getvalue() == ""

    def test_raw_log_is_verbatim_copy(self) -> None:
        raw = full_iteration_stream() + b"not json\n\n"
        log = io.BytesIO()
        process_stream(io.BytesIO(raw), io.StringIO(), raw_log=log)
        assert log.getvalue() == raw

    def test_accumulates_into_supplied_stats(self) -> None:
        stats = IterationStats(tool_calls=5)
        returned = process_stream(
            io.BytesIO(build_ndjson_stream(assistant_event([tool_block("Read", {})]))),
            io.StringIO(),
            stats=stats,
        )
        assert returned is stats
        assert stats.tool_calls == 6

    def test_cancellation_returns_partial_stats(self) -> None:
        cancel = threading.Event()

        class CancellingStream(io.BytesIO):
            lines_read = 0

            def readline(self, size: int = -1) -> bytes:
                self.lines_read += 1
                if self.lines_read == 3:
                    cancel.set()
                return super().readline(size)

        stream = CancellingStream(build_ndjson_stream(
            assistant_event(input_tokens=300),
            assistant_event([tool_block("Edit", {"file_path": "a.py"})], input_tokens=400),
            assistant_event(input_tokens=9000),
            result_event(2.0),
        ))
        stats = process_stream(stream, io.StringIO(), cancel=cancel)

        assert stats.peak_context == 400
        assert stats.tool_calls == 1
        assert stats.cost == 0.0

    def test_read_error_propagates(self) -> None:
        class FailingStream(io.BytesIO):
            def readline(self, size: int = -1) -> bytes:
                raise OSError("connection reset")

        with pytest.raises(EventStreamError):
            process_stream(FailingStream(), io.StringIO())


class TestEndToEnd:
    def test_single_iteration_into_cumulative(self) -> None:
        stream = build_ndjson_stream(
            assistant_event(input_tokens=100, cache_creation=20, cache_read=5),
            result_event(0.05),
        )
        stats = process_stream(io.BytesIO(stream), io.StringIO())
        assert stats.peak_context == 125
        assert stats.cost == pytest.approx(0.05)

        cumulative = CumulativeStats()
        cumulative.update(stats)
        assert cumulative == CumulativeStats(
            iterations=1, peak_context=125, subagent_tokens=0, total_cost=0.05,
        )
