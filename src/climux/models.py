"""Domain models for sessions, routing and run results."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from climux.workspace import Workspace


class SessionStatus(str, Enum):
    """Durable session lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CRASHED = "crashed"
    TIMEOUT = "timeout"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {
        SessionStatus.COMPLETED,
        SessionStatus.FAILED,
        SessionStatus.CRASHED,
        SessionStatus.TIMEOUT,
    },
)


class LogRole(str, Enum):
    """Author of a session log entry."""

    USER = "user"
    ASSISTANT = "assistant"
    SYSTEM = "system"


class ProviderKind(str, Enum):
    """Built-in provider adapter names."""

    CLAUDE_CODE = "claude-code"
    CODEX = "codex"
    GEMINI_CLI = "gemini-cli"
    OPENCODE = "opencode"


class RunMode(str, Enum):
    """Task runs autonomously to completion; chat stays interactive."""

    TASK = "task"
    CHAT = "chat"


@dataclass(slots=True, frozen=True)
class ProviderCapabilities:
    """Feature flags advertised by a provider adapter."""

    chat: bool = True
    task: bool = True
    resume: bool = True
    streaming: bool = True
    mcp: bool = True
    skills: bool = True


@dataclass(slots=True, frozen=True)
class RoutingRule:
    """Regex pattern routed to a provider name; first match wins."""

    pattern: str
    provider: str


@dataclass(slots=True)
class TokenUsage:
    """Token counts reported by one output chunk."""

    tokens_in: int
    tokens_out: int


@dataclass(slots=True)
class ParsedOutput:
    """Signals extracted from one output chunk; every field is optional."""

    tokens: TokenUsage | None = None
    cost: float | None = None
    files_changed: list[str] | None = None
    native_session_id: str | None = None

    def is_empty(self) -> bool:
        return (
            self.tokens is None
            and self.cost is None
            and self.files_changed is None
            and self.native_session_id is None
        )


@dataclass(slots=True)
class Session:
    """One tracked invocation of a provider against a workspace."""

    id: str
    workspace_path: str
    provider: str
    task: str | None
    status: SessionStatus
    native_session_id: str | None
    pid: int | None
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "workspace_path": self.workspace_path,
            "provider": self.provider,
            "task": self.task,
            "status": self.status.value,
            "native_session_id": self.native_session_id,
            "pid": self.pid,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(slots=True)
class SessionLog:
    """Append-only conversation entry."""

    id: int
    session_id: str
    role: LogRole
    content: str
    timestamp: datetime

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "session_id": self.session_id,
            "role": self.role.value,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass(slots=True)
class SessionStats:
    """Per-session usage counters."""

    session_id: str
    tokens_in: int = 0
    tokens_out: int = 0
    cost_estimate: float = 0.0
    files_changed: int = 0
    lines_added: int = 0
    lines_removed: int = 0
    duration_seconds: int = 0

    def to_dict(self) -> dict[str, object]:
        return {
            "session_id": self.session_id,
            "tokens_in": self.tokens_in,
            "tokens_out": self.tokens_out,
            "cost_estimate": self.cost_estimate,
            "files_changed": self.files_changed,
            "lines_added": self.lines_added,
            "lines_removed": self.lines_removed,
            "duration_seconds": self.duration_seconds,
        }


@dataclass(slots=True)
class SessionStatsUpdate:
    """Partial stats update.

    Token and cost fields are added to the stored totals; the diff and
    duration fields replace the stored snapshot.
    """

    tokens_in: int | None = None
    tokens_out: int | None = None
    cost_estimate: float | None = None
    files_changed: int | None = None
    lines_added: int | None = None
    lines_removed: int | None = None
    duration_seconds: int | None = None

    def is_empty(self) -> bool:
        return all(
            value is None
            for value in (
                self.tokens_in,
                self.tokens_out,
                self.cost_estimate,
                self.files_changed,
                self.lines_added,
                self.lines_removed,
                self.duration_seconds,
            )
        )


@dataclass(slots=True)
class AggregatedStats:
    """Sums and status counts across a filtered set of sessions."""

    total_sessions: int = 0
    completed_sessions: int = 0
    failed_sessions: int = 0
    crashed_sessions: int = 0
    timeout_sessions: int = 0
    total_tokens_in: int = 0
    total_tokens_out: int = 0
    total_cost: float = 0.0
    total_files_changed: int = 0
    total_lines_added: int = 0
    total_lines_removed: int = 0
    total_duration_seconds: int = 0


@dataclass(slots=True)
class QualityCheckWrite:
    """Lint/type/test outcome captured after a session."""

    lint_errors: int = 0
    type_errors: int = 0
    tests_passed: int = 0
    tests_failed: int = 0


@dataclass(slots=True)
class QualityCheck:
    """Stored quality check row."""

    id: int
    session_id: str
    lint_errors: int
    type_errors: int
    tests_passed: int
    tests_failed: int
    checked_at: datetime


@dataclass(slots=True)
class RunOptions:
    """Per-run inputs supplied by the caller."""

    workspace: Workspace
    mode: RunMode = RunMode.TASK
    timeout_seconds: float | None = None
    env: dict[str, str] = field(default_factory=dict)
    provider: str | None = None


@dataclass(slots=True)
class RunResult:
    """Outcome returned by the router."""

    session_id: str
    status: SessionStatus
    output: str
    stats: SessionStats
    summary: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "session_id": self.session_id,
            "status": self.status.value,
            "output": self.output,
            "stats": self.stats.to_dict(),
            "summary": self.summary,
        }
