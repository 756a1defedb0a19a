"""Shared pytest fixtures for the ralph loop test suite.

Non-fixture helpers (fakes, NDJSON stream builders) are in helpers.py.
"""

import sys
from pathlib import Path

import pytest

# Add the tests directory to sys.path so test files can import helpers.py
sys.path.insert(0, str(Path(__file__).parent))

from loop_driver import LoopOptions  # noqa: E402


@pytest.fixture
def project_dir(tmp_path: Path) -> Path:
    """Create a repository-like directory with .ralph/ prompts in place."""
    prompts = tmp_path / ".ralph" / "prompts"
    prompts.mkdir(parents=True)
    (prompts / "plan.md").write_text("Write the plan.\n", encoding="utf-8")
    (prompts / "build.md").write_text("Implement the next task.\n", encoding="utf-8")
    return tmp_path


@pytest.fixture
def loop_options(project_dir: Path) -> LoopOptions:
    return LoopOptions(
        mode="build",
        prompt_file=".ralph/prompts/build.md",
        branch="feat/loop",
        logs_dir=str(project_dir / ".ralph" / "logs"),
        state_file=str(project_dir / ".ralph" / "state.json"),
        max_iterations=1,
        plan_file=".ralph/plans/IMPLEMENTATION_PLAN_feat-loop.md",
        specs_dir="specs/feat-loop",
    )
