"""Configuration validation for the ralph iteration loop."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, Field

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_CONFIG_PATH = Path(".ralph") / "config.json"


@dataclass
class Result(Generic[T]):
    """Type-safe result wrapper for operations that can fail."""

    success: bool
    data: Optional[T] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def ok(cls, data: T) -> Result[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, error: str, code: str = "UNKNOWN") -> Result[T]:
        return cls(success=False, error=error, error_code=code)


class PhaseConfig(BaseModel):
    """Settings for a single loop phase (plan or build)."""

    prompt: str
    max_iterations: int = Field(default=0, ge=0, le=100)
    output: str = Field(default="")


class PhasesConfig(BaseModel):
    """Plan and build phase settings."""

    plan: PhaseConfig = Field(
        default_factory=lambda: PhaseConfig(
            prompt=".ralph/prompts/plan.md", max_iterations=5, output=".ralph/plans/"
        )
    )
    build: PhaseConfig = Field(
        default_factory=lambda: PhaseConfig(
            prompt=".ralph/prompts/build.md", max_iterations=20
        )
    )


class ClaudeConfig(BaseModel):
    """Claude CLI settings."""

    command: str = Field(default="claude")
    model: str = Field(default="opus")
    dangerously_skip_permissions: bool = Field(default=True)
    verbose: bool = Field(default=True)


class LimitsConfig(BaseModel):
    """Progress limits for the loop."""

    max_stale: int = Field(
        default=2,
        description="Consecutive iterations without a new commit before aborting (<=0 means 2)",
    )
    context_window: int = Field(default=200_000, gt=0)


class PathsConfig(BaseModel):
    """Locations of loop artifacts, relative to the repository root."""

    logs_dir: str = Field(default=".ralph/logs")
    state_file: str = Field(default=".ralph/state.json")


class PatternsConfig(BaseModel):
    """Pattern matching for completion detection."""

    # Off unless configured: a run normally ends on its iteration limit or staleness
    completion_markers: list[str] = Field(default_factory=list)


class SecurityConfig(BaseModel):
    """Redaction settings for diagnostic logs."""

    log_redact_patterns: list[str] = Field(
        default_factory=lambda: [
            r"sk-ant-[\w-]+",
            r"sk-proj-[\w-]+",
            r"gh[pousr]_[A-Za-z0-9]{20,}",
        ]
    )


class GitConfig(BaseModel):
    """Branch protection settings."""

    protected_branches: list[str] = Field(
        default_factory=lambda: ["main", "master"]
    )


class RalphConfig(BaseModel):
    """Root configuration model for .ralph/config.json."""

    project: str = Field(default="")
    phases: PhasesConfig = Field(default_factory=PhasesConfig)
    claude: ClaudeConfig = Field(default_factory=ClaudeConfig)
    limits: LimitsConfig = Field(default_factory=LimitsConfig)
    paths: PathsConfig = Field(default_factory=PathsConfig)
    patterns: PatternsConfig = Field(default_factory=PatternsConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    git: GitConfig = Field(default_factory=GitConfig)

    def phase(self, mode: str) -> PhaseConfig:
        """Return the phase settings for ``plan`` or ``build``."""
        if mode == "plan":
            return self.phases.plan
        if mode == "build":
            return self.phases.build
        raise ValueError(f"unknown mode: {mode!r} (expected plan or build)")

    def plan_path_for_branch(self, branch: str) -> str:
        """Return the branch-specific plan file path.

        A directory output (trailing slash) holds IMPLEMENTATION_PLAN_<branch>.md;
        a file output gets the branch inserted before its extension.
        """
        from git_ops import sanitize_branch

        sanitized = sanitize_branch(branch)
        output = self.phases.plan.output or ".ralph/plans/"
        if output.endswith("/"):
            return f"{output}IMPLEMENTATION_PLAN_{sanitized}.md"

        path = Path(output)
        return str(path.with_name(f"{path.stem}_{sanitized}{path.suffix}"))


def load_config(config_path: str | Path) -> Result[RalphConfig]:
    """Load and validate ralph config from JSON file."""
    path = Path(config_path)
    if not path.exists():
        logger.info("Config not found at %s, using defaults", path)
        return Result.ok(RalphConfig())

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        config = RalphConfig.model_validate(raw)
        return Result.ok(config)
    except json.JSONDecodeError as e:
        return Result.fail(f"Invalid JSON in {path}: {e}", "JSON_ERROR")
    except Exception as e:
        return Result.fail(f"Config validation failed: {e}", "VALIDATION_ERROR")
