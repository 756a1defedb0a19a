"""Git operations needed by the loop: HEAD revision, push, push with upstream."""

from __future__ import annotations

import logging
import re
import subprocess
from pathlib import Path
from typing import Iterable, Optional, Protocol

from config import Result

logger = logging.getLogger(__name__)

GIT_TIMEOUT_SECONDS = 120

# Anything that is not alphanumeric, dot, underscore or hyphen
_UNSAFE_BRANCH_CHARS = re.compile(r"[^a-zA-Z0-9._-]")


class GitError(Exception):
    """A git command failed."""


class VersionControl(Protocol):
    """The version-control operations the loop depends on."""

    def current_revision(self) -> str: ...

    def publish(self, branch: str) -> Result[None]: ...

    def publish_with_upstream(self, branch: str) -> Result[None]: ...


class GitClient:
    """VersionControl backed by the git CLI."""

    def __init__(self, repo_path: str | Path | None = None) -> None:
        self.repo_path = Path(repo_path) if repo_path is not None else None

    def _run(self, *args: str) -> str:
        cmd = ["git", *args]
        try:
            result = subprocess.run(
                cmd,
                cwd=str(self.repo_path) if self.repo_path else None,
                capture_output=True,
                text=True,
                timeout=GIT_TIMEOUT_SECONDS,
            )
        except (subprocess.TimeoutExpired, FileNotFoundError, OSError) as e:
            raise GitError(f"git {args[0]}: {e}") from e
        if result.returncode != 0:
            raise GitError(
                f"git {args[0]} exited {result.returncode}: {result.stderr.strip()[:300]}"
            )
        return result.stdout

    def current_revision(self) -> str:
        """Return the HEAD commit hash. Raises GitError."""
        return self._run("rev-parse", "HEAD").strip()

    def current_branch(self) -> str:
        return self._run("rev-parse", "--abbrev-ref", "HEAD").strip()

    def repo_root(self) -> Path:
        return Path(self._run("rev-parse", "--show-toplevel").strip())

    def publish(self, branch: str) -> Result[None]:
        """Push ``branch`` to origin."""
        try:
            self._run("push", "origin", branch)
            return Result.ok(None)
        except GitError as e:
            return Result.fail(str(e), "PUSH_FAILED")

    def publish_with_upstream(self, branch: str) -> Result[None]:
        """Push ``branch`` to origin and set it as the upstream."""
        try:
            self._run("push", "-u", "origin", branch)
            return Result.ok(None)
        except GitError as e:
            return Result.fail(str(e), "PUSH_UPSTREAM_FAILED")


def sanitize_branch(branch: str) -> str:
    """Convert a branch name into a filesystem-friendly string.

    Slashes become hyphens, unsafe characters are dropped, and leading or
    trailing hyphens are trimmed.
    """
    cleaned = _UNSAFE_BRANCH_CHARS.sub("", branch.replace("/", "-"))
    return cleaned.strip("-")


def is_protected_branch(branch: str, protected: Optional[Iterable[str]] = None) -> bool:
    """Return True if the loop must not run on ``branch``."""
    names = set(protected) if protected is not None else {"main", "master"}
    return branch in names
