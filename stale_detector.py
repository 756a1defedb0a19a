"""Detection of loop iterations that produce no new commits."""

from __future__ import annotations

from typing import Optional

# Consecutive stale iterations tolerated before the loop aborts
DEFAULT_MAX_STALE = 2


class StaleDetector:
    """Tracks consecutive iterations after which HEAD did not move.

    The first check only records a baseline. Every later check with an
    unchanged revision bumps the stale count; any change resets it.
    """

    def __init__(self, max_stale: int = DEFAULT_MAX_STALE) -> None:
        self.max_stale = max_stale if max_stale > 0 else DEFAULT_MAX_STALE
        self.stale_count = 0
        self.last_revision: Optional[str] = None

    @property
    def seeded(self) -> bool:
        return self.last_revision is not None

    def check(self, revision: str) -> tuple[bool, int]:
        """Compare ``revision`` with the previous one. Returns (abort, stale_count)."""
        if self.last_revision is None:
            self.last_revision = revision
            return False, 0

        if revision == self.last_revision:
            self.stale_count += 1
        else:
            self.stale_count = 0
            self.last_revision = revision
        return self.stale_count >= self.max_stale, self.stale_count
