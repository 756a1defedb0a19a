"""Per-iteration and cumulative statistics for the ralph loop."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from event_parser import Usage


@dataclass
class IterationStats:
    """Stats for a single loop iteration."""

    peak_context: int = 0  # max(input + cache_creation + cache_read) across turns
    cost: float = 0.0  # from the result event
    subagent_tokens: int = 0  # sum of totalTokens from Task results
    tool_calls: int = 0
    result_text: str = ""

    def observe_assistant(self, usage: Optional[Usage]) -> None:
        if usage is None:
            return
        self.peak_context = max(self.peak_context, usage.context_tokens)

    def observe_tool_use(self) -> None:
        self.tool_calls += 1

    def observe_subagent(self, total_tokens: int) -> None:
        self.subagent_tokens += total_tokens

    def observe_result(self, cost: float, text: str = "") -> None:
        self.cost = cost
        self.result_text = text


@dataclass
class CumulativeStats:
    """Stats across all iterations of a loop run."""

    iterations: int = 0
    peak_context: int = 0
    subagent_tokens: int = 0
    total_cost: float = 0.0

    def update(self, iteration: IterationStats) -> None:
        """Merge one completed iteration. Call exactly once per iteration."""
        self.iterations += 1
        self.peak_context = max(self.peak_context, iteration.peak_context)
        self.subagent_tokens += iteration.subagent_tokens
        self.total_cost += iteration.cost
