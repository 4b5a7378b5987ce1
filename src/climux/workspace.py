"""Workspace resolution and git diff statistics probe."""

from __future__ import annotations

import logging
import re
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

GIT_PROBE_TIMEOUT_SECONDS = 30

_DIFF_SUMMARY = re.compile(
    r"(\d+)\s+files?\s+changed"
    r"(?:,\s+(\d+)\s+insertions?\(\+\))?"
    r"(?:,\s+(\d+)\s+deletions?\(-\))?",
)


@dataclass(slots=True)
class DiffStats:
    """Snapshot of uncommitted workspace changes."""

    files_changed: int = 0
    lines_added: int = 0
    lines_removed: int = 0


@dataclass(slots=True)
class Workspace:
    """Directory a provider process runs in."""

    path: str
    name: str
    git_root: str | None = None
    worktrees: list[str] = field(default_factory=list)

    @classmethod
    def from_path(cls, path: str | Path) -> Workspace:
        """Resolve an existing directory into an absolute workspace."""

        resolved = Path(path).expanduser().resolve()
        if not resolved.exists():
            raise ValueError(f"Workspace path does not exist: {resolved}")
        if not resolved.is_dir():
            raise ValueError(f"Workspace path is not a directory: {resolved}")
        return cls(
            path=str(resolved),
            name=resolved.name or "workspace",
            git_root=_git_root(resolved),
        )


def git_diff_stats(workspace: Workspace) -> DiffStats:
    """Summarize `git diff --stat` for the workspace; zeros outside git."""

    if workspace.git_root is None:
        return DiffStats()
    try:
        completed = subprocess.run(  # noqa: S603
            ["git", "diff", "--stat"],  # noqa: S607
            cwd=workspace.path,
            check=False,
            capture_output=True,
            text=True,
            timeout=GIT_PROBE_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.TimeoutExpired) as error:
        logger.warning("git diff probe failed for %s: %s", workspace.path, error)
        return DiffStats()
    if completed.returncode != 0:
        return DiffStats()
    return parse_diff_stat(completed.stdout)


def parse_diff_stat(output: str) -> DiffStats:
    """Parse the summary line of `git diff --stat` output."""

    match = _DIFF_SUMMARY.search(output)
    if match is None:
        return DiffStats()
    files, added, removed = match.groups()
    return DiffStats(
        files_changed=int(files),
        lines_added=int(added) if added else 0,
        lines_removed=int(removed) if removed else 0,
    )


def _git_root(path: Path) -> str | None:
    try:
        completed = subprocess.run(  # noqa: S603
            ["git", "rev-parse", "--show-toplevel"],  # noqa: S607
            cwd=path,
            check=False,
            capture_output=True,
            text=True,
            timeout=GIT_PROBE_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.TimeoutExpired):
        return None
    if completed.returncode != 0:
        return None
    root = completed.stdout.strip()
    return root or None
