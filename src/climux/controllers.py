"""Controllers for climux CLI commands."""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date
from pathlib import Path

from climux.config import Settings
from climux.metrics import (
    build_breakdown,
    build_daily_summary,
    format_cost,
    format_duration,
    render_breakdown_lines,
)
from climux.models import LogRole, RunMode, RunOptions, Session, SessionStatus
from climux.providers.registry import default_registry
from climux.router import Router
from climux.session_store import SessionStore
from climux.supervisor import STDOUT, OutputCallback, ProcessSupervisor
from climux.workspace import Workspace

SESSION_LOG_PREVIEW_CHARS = 500


@dataclass(slots=True)
class RunCommand:
    """CLI input for one task run."""

    db_path: Path | None
    task: str
    workspace: Path
    provider: str | None = None
    timeout_seconds: float | None = None
    stream: Callable[[str], None] | None = None


@dataclass(slots=True)
class ProvidersCommand:
    """CLI input for provider listing."""

    db_path: Path | None
    check: bool = True


@dataclass(slots=True)
class SessionListCommand:
    db_path: Path | None
    workspace: Path | None = None
    status: str | None = None
    provider: str | None = None
    limit: int | None = 20


@dataclass(slots=True)
class SessionShowCommand:
    db_path: Path | None
    session_id: str
    show_logs: bool = False


@dataclass(slots=True)
class SessionDeleteCommand:
    db_path: Path | None
    session_id: str


@dataclass(slots=True)
class SessionPruneCommand:
    """CLI input for retention pruning; `older_than_days=None` uses settings."""

    db_path: Path | None
    older_than_days: int | None = None
    status: str | None = None


@dataclass(slots=True)
class StatsCommand:
    db_path: Path | None
    workspace: Path | None = None
    day: date | None = None
    today: bool = False


class ClimuxCliController:
    """Coordinates routing, session inspection and stats CLI operations."""

    def run_task(self, command: RunCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        workspace = Workspace.from_path(command.workspace)
        on_output = _stdout_forwarder(command.stream) if command.stream is not None else None
        with _store(settings) as store:
            router = Router(
                settings,
                store=store,
                supervisor=ProcessSupervisor(
                    store,
                    max_active_sessions=settings.router.max_active_sessions,
                    terminate_grace_seconds=settings.router.terminate_grace_seconds,
                    monitoring=settings.monitoring,
                    on_output=on_output,
                ),
            )
            try:
                result = router.run(
                    command.task,
                    RunOptions(
                        workspace=workspace,
                        mode=RunMode.TASK,
                        timeout_seconds=command.timeout_seconds,
                        provider=command.provider,
                    ),
                )
            finally:
                router.close()
            session = store.get_session(result.session_id)

        provider = session.provider if session is not None else "unknown"
        stats = result.stats
        lines = [
            f"Session {result.session_id}: provider={provider} status={result.status.value}",
            f"Summary: {result.summary or '-'}",
            f"Tokens: in={stats.tokens_in:,} out={stats.tokens_out:,} "
            f"cost={format_cost(stats.cost_estimate)}",
            f"Changes: files={stats.files_changed} +{stats.lines_added} -{stats.lines_removed} "
            f"duration={format_duration(stats.duration_seconds)}",
        ]
        if command.stream is None and result.output.strip():
            lines.extend(["", result.output.rstrip()])
        return lines

    def providers(self, command: ProvidersCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        registry = default_registry()
        lines = ["Providers:"]
        for name, provider_settings in settings.providers.items():
            marker = "*" if name == settings.router.default_provider else " "
            if not provider_settings.enabled:
                lines.append(f"{marker} {name}: disabled command={provider_settings.command}")
                continue
            provider = registry.create(name, provider_settings)
            state = ""
            if command.check:
                state = " available" if provider.detect() else " not-installed"
            pricing = provider.get_pricing()
            price = (
                f" pricing=${pricing.input_per_1k}/${pricing.output_per_1k} per 1K"
                if pricing is not None
                else ""
            )
            lines.append(f"{marker} {name}:{state} command={provider.command}{price}")
        return lines

    def list_sessions(self, command: SessionListCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        workspace_path = (
            Workspace.from_path(command.workspace).path if command.workspace is not None else None
        )
        with _store(settings) as store:
            sessions = store.list_sessions(
                workspace_path=workspace_path,
                status=_parse_status(command.status),
                provider=command.provider,
                limit=command.limit,
            )
        if not sessions:
            return ["No sessions found."]
        return [_session_line(session) for session in sessions]

    def show_session(self, command: SessionShowCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _store(settings) as store:
            session = store.get_session(command.session_id)
            if session is None:
                return [f"Session not found: {command.session_id}"]
            stats = store.get_session_stats(session.id)
            quality = store.get_latest_quality_check(session.id)
            logs = store.get_session_logs(session.id) if command.show_logs else []

        lines = [
            f"Session: {session.id}",
            f"Status: {session.status.value}",
            f"Provider: {session.provider}",
            f"Workspace: {session.workspace_path}",
            f"Task: {session.task or '-'}",
            f"Native session: {session.native_session_id or '-'}",
            f"PID: {session.pid if session.pid is not None else '-'}",
            f"Created: {session.created_at.isoformat()}",
            f"Updated: {session.updated_at.isoformat()}",
        ]
        if stats is not None:
            lines.append(
                f"Stats: tokens_in={stats.tokens_in:,} tokens_out={stats.tokens_out:,} "
                f"cost={format_cost(stats.cost_estimate)} files={stats.files_changed} "
                f"+{stats.lines_added} -{stats.lines_removed} "
                f"duration={format_duration(stats.duration_seconds)}",
            )
        if quality is not None:
            lines.append(
                f"Quality: lint_errors={quality.lint_errors} type_errors={quality.type_errors} "
                f"tests_passed={quality.tests_passed} tests_failed={quality.tests_failed}",
            )
        if logs:
            lines.append("Logs:")
            for log in logs:
                content = log.content.strip()
                if len(content) > SESSION_LOG_PREVIEW_CHARS:
                    content = content[:SESSION_LOG_PREVIEW_CHARS] + "..."
                prefix = ">" if log.role == LogRole.USER else log.role.value
                lines.append(f"  [{log.timestamp.isoformat()}] {prefix}: {content}")
        return lines

    def delete_session(self, command: SessionDeleteCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _store(settings) as store:
            deleted = store.delete_session(command.session_id)
        if not deleted:
            return [f"Session not found: {command.session_id}"]
        return [f"Deleted session {command.session_id}"]

    def prune_sessions(self, command: SessionPruneCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        days = (
            command.older_than_days
            if command.older_than_days is not None
            else settings.retention.completed_sessions_days
        )
        with _store(settings) as store:
            deleted = store.delete_old_sessions(days, status=_parse_status(command.status))
        return [f"Pruned {deleted} sessions older than {days} days."]

    def stats(self, command: StatsCommand) -> list[str]:
        settings = _load_settings(command.db_path)
        with _store(settings) as store:
            if command.today or command.day is not None:
                report = build_daily_summary(store, command.day)
            else:
                workspace_path = (
                    Workspace.from_path(command.workspace).path
                    if command.workspace is not None
                    else None
                )
                report = build_breakdown(
                    store,
                    workspace_path=workspace_path,
                    label=workspace_path or "all workspaces",
                )
        return render_breakdown_lines(report)


def _load_settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _stdout_forwarder(stream: Callable[[str], None]) -> OutputCallback:
    def forward(_session_id: str, stream_name: str, chunk: str) -> None:
        if stream_name == STDOUT:
            stream(chunk)

    return forward


def _parse_status(value: str | None) -> SessionStatus | None:
    if value is None:
        return None
    return SessionStatus(value.strip().lower())


def _session_line(session: Session) -> str:
    task = (session.task or "-").replace("\n", " ")
    if len(task) > 60:
        task = task[:57] + "..."
    return (
        f"{session.id} {session.status.value:<9} {session.provider:<12} "
        f"{session.created_at:%Y-%m-%d %H:%M} {session.workspace_path} :: {task}"
    )


@contextmanager
def _store(settings: Settings) -> Iterator[SessionStore]:
    store = SessionStore(settings.db_path)
    store.init_schema()
    try:
        yield store
    finally:
        store.close()
