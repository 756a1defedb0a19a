"""Persistent history of completed ralph loop runs (.ralph/state.json)."""

from __future__ import annotations

import json
import logging
import os
import tempfile
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from config import Result

logger = logging.getLogger(__name__)

DEFAULT_STATE_PATH = Path(".ralph") / "state.json"


class RunStatus(str, Enum):
    """How a loop run ended."""

    COMPLETED = "completed"
    STALE_ABORT = "stale_abort"
    CANCELLED = "cancelled"
    MAX_ITERATIONS = "max_iterations"


class RunRecord(BaseModel):
    """Metadata from a single loop run. Never modified once written."""

    model_config = ConfigDict(frozen=True)

    mode: str
    started_at: datetime
    finished_at: datetime
    iterations: int = 0
    total_cost: float = 0.0
    peak_context: int = 0
    subagent_tokens: int = 0
    status: RunStatus
    log_files: list[str] = Field(default_factory=list)


class RunHistory(BaseModel):
    """All recorded loop runs, oldest first."""

    runs: list[RunRecord] = Field(default_factory=list)

    def last_run(self) -> Optional[RunRecord]:
        """Return the most recent run record, or None if there are none."""
        return self.runs[-1] if self.runs else None


def load_history(path: str | Path) -> Result[RunHistory]:
    """Load run history from disk. Returns an empty history if the file doesn't exist."""
    state_path = Path(path)
    if not state_path.exists():
        logger.debug("No run history at %s, starting fresh", state_path)
        return Result.ok(RunHistory())

    try:
        raw = json.loads(state_path.read_text(encoding="utf-8"))
        return Result.ok(RunHistory.model_validate(raw))
    except json.JSONDecodeError as e:
        return Result.fail(f"Corrupt run history {state_path}: {e}", "JSON_ERROR")
    except Exception as e:
        return Result.fail(f"Run history load failed: {e}", "LOAD_ERROR")


def save_history(path: str | Path, history: RunHistory) -> Result[None]:
    """Overwrite the history file atomically (temp file + rename)."""
    state_path = Path(path)
    tmp_name: Optional[str] = None
    try:
        state_path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=state_path.parent, prefix=f".{state_path.name}.", suffix=".tmp"
        )
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(history.model_dump_json(indent=2) + "\n")
        os.replace(tmp_name, state_path)
        return Result.ok(None)
    except Exception as e:
        if tmp_name is not None and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        return Result.fail(f"Run history save failed: {e}", "SAVE_ERROR")


def append_run(path: str | Path, record: RunRecord) -> Result[None]:
    """Load, append ``record`` and save.

    There is no locking: two loop processes sharing one state file can lose
    each other's records.
    """
    loaded = load_history(path)
    if not loaded.success or loaded.data is None:
        return Result.fail(loaded.error or "Run history load failed", loaded.error_code or "LOAD_ERROR")

    history = loaded.data
    history.runs.append(record)
    return save_history(path, history)
