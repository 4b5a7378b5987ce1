"""CLI entrypoint for climux."""

import logging
import os
from collections.abc import Callable
from datetime import datetime
from pathlib import Path

import rich_click as click

from climux import __version__
from climux.controllers import (
    ClimuxCliController,
    ProvidersCommand,
    RunCommand,
    SessionDeleteCommand,
    SessionListCommand,
    SessionPruneCommand,
    SessionShowCommand,
    StatsCommand,
)
from climux.errors import ClimuxError
from climux.models import SessionStatus

click.rich_click.USE_MARKDOWN = True
CONTROLLER = ClimuxCliController()

_STATUS_CHOICES = [status.value for status in SessionStatus]


@click.group()
@click.version_option(version=__version__, prog_name="climux")
def climux() -> None:
    """Route coding tasks to CLI coding agents and track their sessions."""

    logging.basicConfig(
        level=os.getenv("CLIMUX_LOG_LEVEL", "WARNING").strip().upper() or "WARNING",
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@climux.command("run")
@click.argument("task")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--provider", default=None, help="Preferred provider, for example codex.")
@click.option(
    "--workspace",
    type=click.Path(path_type=Path, file_okay=False),
    default=Path.cwd,
    show_default="current directory",
    help="Directory the provider runs in.",
)
@click.option(
    "--timeout",
    "timeout_seconds",
    type=click.FloatRange(min=0, min_open=True),
    default=None,
    help="Seconds to wait before the session is killed.",
)
@click.option("--stream/--no-stream", default=True, show_default=True, help="Echo output live.")
def run(  # noqa: PLR0913
    task: str,
    db_path: Path | None,
    provider: str | None,
    workspace: Path,
    timeout_seconds: float | None,
    stream: bool,
) -> None:
    """Run one task to completion on the best available provider."""

    _emit(
        lambda: CONTROLLER.run_task(
            RunCommand(
                db_path=db_path,
                task=task,
                workspace=workspace,
                provider=provider,
                timeout_seconds=timeout_seconds,
                stream=(lambda chunk: click.echo(chunk, nl=False)) if stream else None,
            ),
        ),
    )


@climux.command("providers")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--check/--no-check", default=True, show_default=True, help="Probe installation.")
def providers(db_path: Path | None, check: bool) -> None:
    """List configured providers and whether they are installed."""

    _emit(lambda: CONTROLLER.providers(ProvidersCommand(db_path=db_path, check=check)))


@climux.group()
def session() -> None:
    """Session inspection and housekeeping."""


@session.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--workspace",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Only sessions of this workspace.",
)
@click.option("--status", type=click.Choice(_STATUS_CHOICES), default=None)
@click.option("--provider", default=None)
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=20,
    show_default=True,
    help="Max number of sessions to print.",
)
def session_list(
    db_path: Path | None,
    workspace: Path | None,
    status: str | None,
    provider: str | None,
    limit: int,
) -> None:
    """List sessions, newest first."""

    _emit(
        lambda: CONTROLLER.list_sessions(
            SessionListCommand(
                db_path=db_path,
                workspace=workspace,
                status=status,
                provider=provider,
                limit=limit,
            ),
        ),
    )


@session.command("show")
@click.argument("session_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--logs/--no-logs", "show_logs", default=False, show_default=True)
def session_show(session_id: str, db_path: Path | None, show_logs: bool) -> None:
    """Show one session with stats and optionally its log."""

    _emit(
        lambda: CONTROLLER.show_session(
            SessionShowCommand(db_path=db_path, session_id=session_id, show_logs=show_logs),
        ),
    )


@session.command("delete")
@click.argument("session_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def session_delete(session_id: str, db_path: Path | None) -> None:
    """Delete a session with its logs, stats and quality checks."""

    _emit(
        lambda: CONTROLLER.delete_session(
            SessionDeleteCommand(db_path=db_path, session_id=session_id),
        ),
    )


@session.command("prune")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--older-than-days",
    type=click.IntRange(min=0),
    default=None,
    help="Defaults to CLIMUX_SESSION_RETENTION_DAYS.",
)
@click.option("--status", type=click.Choice(_STATUS_CHOICES), default=None)
def session_prune(db_path: Path | None, older_than_days: int | None, status: str | None) -> None:
    """Delete sessions older than the retention window."""

    _emit(
        lambda: CONTROLLER.prune_sessions(
            SessionPruneCommand(
                db_path=db_path,
                older_than_days=older_than_days,
                status=status,
            ),
        ),
    )


@climux.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--workspace",
    type=click.Path(path_type=Path, file_okay=False),
    default=None,
    help="Only sessions of this workspace.",
)
@click.option("--today", is_flag=True, default=False, help="Daily summary for today (UTC).")
@click.option(
    "--day",
    type=click.DateTime(formats=["%Y-%m-%d"]),
    default=None,
    help="Daily summary for one UTC day.",
)
def stats(
    db_path: Path | None,
    workspace: Path | None,
    today: bool,
    day: datetime | None,
) -> None:
    """Show aggregated usage with a per-provider breakdown."""

    _emit(
        lambda: CONTROLLER.stats(
            StatsCommand(
                db_path=db_path,
                workspace=workspace,
                day=day.date() if day is not None else None,
                today=today,
            ),
        ),
    )


def _emit(produce: Callable[[], list[str]]) -> None:
    try:
        lines = produce()
    except ClimuxError as error:
        message = f"[{error.code.value}] {error}"
        if error.suggestion:
            message = f"{message}\n{error.suggestion}"
        raise click.ClickException(message) from error
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    climux()
