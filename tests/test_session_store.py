from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest
from sqlalchemy import event, text
from sqlalchemy.exc import OperationalError

from climux.errors import PersistenceError
from climux.models import (
    AggregatedStats,
    LogRole,
    QualityCheckWrite,
    SessionStatsUpdate,
    SessionStatus,
)
from climux.session_store import SessionStore

pytestmark = [
    allure.epic("Session Persistence"),
    allure.feature("Session Store"),
]


def _count_rows(store: SessionStore, table: str, session_id: str) -> int:
    column = "id" if table == "sessions" else "session_id"
    with store.engine.connect() as connection:
        return int(
            connection.execute(
                text(f"SELECT COUNT(*) FROM {table} WHERE {column} = :id"),  # noqa: S608
                {"id": session_id},
            ).scalar_one(),
        )


def _backdate(store: SessionStore, session_id: str, days: int) -> None:
    created = (datetime.now(tz=UTC) - timedelta(days=days)).strftime("%Y-%m-%d %H:%M:%S.%f")
    with store.engine.begin() as connection:
        connection.execute(
            text("UPDATE sessions SET created_at = :created WHERE id = :id"),
            {"created": created, "id": session_id},
        )


def test_schema_is_initialized_to_head_and_idempotent(tmp_path: Path) -> None:
    store = SessionStore(tmp_path / "nested" / "climux.db")
    store.init_schema()
    store.init_schema()

    with store.engine.connect() as connection:
        version = connection.execute(text("SELECT version_num FROM alembic_version")).scalar_one()
        tables = {
            row[0]
            for row in connection.execute(
                text("SELECT name FROM sqlite_master WHERE type = 'table'"),
            )
        }
    store.close()

    assert version == "20261018_0001"
    assert {"sessions", "session_logs", "session_stats", "quality_checks"} <= tables


def test_create_session_inserts_pending_row_with_zeroed_stats(store: SessionStore) -> None:
    session = store.create_session("/work/a", "codex", "fix the bug")

    stored = store.get_session(session.id)
    assert stored is not None
    assert stored.status == SessionStatus.PENDING
    assert stored.task == "fix the bug"
    assert stored.pid is None
    assert stored.created_at.tzinfo is not None

    stats = store.get_session_stats(session.id)
    assert stats is not None
    assert stats.to_dict() == {
        "session_id": session.id,
        "tokens_in": 0,
        "tokens_out": 0,
        "cost_estimate": 0.0,
        "files_changed": 0,
        "lines_added": 0,
        "lines_removed": 0,
        "duration_seconds": 0,
    }


def test_session_ids_are_unique(store: SessionStore) -> None:
    ids = {store.create_session("/work/a", "codex").id for _ in range(20)}
    assert len(ids) == 20


def test_get_session_returns_none_for_unknown_id(store: SessionStore) -> None:
    assert store.get_session("missing") is None
    assert store.get_session_stats("missing") is None


def test_mutations_refresh_updated_at(store: SessionStore) -> None:
    session = store.create_session("/work/a", "codex")

    store.update_session_status(session.id, SessionStatus.RUNNING)
    store.update_session_pid(session.id, 4242)
    store.update_native_session_id(session.id, "native-123")

    stored = store.get_session(session.id)
    assert stored is not None
    assert stored.status == SessionStatus.RUNNING
    assert stored.pid == 4242
    assert stored.native_session_id == "native-123"
    assert stored.updated_at >= session.updated_at

    store.update_session_pid(session.id, None)
    cleared = store.get_session(session.id)
    assert cleared is not None
    assert cleared.pid is None


def test_list_sessions_filters_conjunctively_newest_first_with_limit(store: SessionStore) -> None:
    first = store.create_session("/work/a", "codex", "one")
    second = store.create_session("/work/a", "codex", "two")
    third = store.create_session("/work/a", "gemini-cli", "three")
    fourth = store.create_session("/work/b", "codex", "four")
    for session in (first, second, third, fourth):
        store.update_session_status(session.id, SessionStatus.COMPLETED)
    store.update_session_status(second.id, SessionStatus.FAILED)

    matching = store.list_sessions(
        workspace_path="/work/a",
        provider="codex",
        status=SessionStatus.COMPLETED,
    )
    assert [session.id for session in matching] == [first.id]

    everything = store.list_sessions()
    assert [session.id for session in everything] == [fourth.id, third.id, second.id, first.id]

    limited = store.list_sessions(workspace_path="/work/a", limit=2)
    assert [session.id for session in limited] == [third.id, second.id]


def test_session_logs_are_ordered_by_insertion(store: SessionStore) -> None:
    session = store.create_session("/work/a", "codex")
    store.add_session_log(session.id, LogRole.USER, "do it")
    store.add_session_log(session.id, LogRole.ASSISTANT, "working")
    store.add_session_log(session.id, LogRole.SYSTEM, "warning on stderr")

    logs = store.get_session_logs(session.id)
    assert [(log.role, log.content) for log in logs] == [
        (LogRole.USER, "do it"),
        (LogRole.ASSISTANT, "working"),
        (LogRole.SYSTEM, "warning on stderr"),
    ]
    assert [log.id for log in logs] == sorted(log.id for log in logs)


def test_stats_tokens_and_cost_add_while_other_fields_overwrite(store: SessionStore) -> None:
    session = store.create_session("/work/a", "codex")

    store.update_session_stats(
        session.id,
        SessionStatsUpdate(tokens_in=100, tokens_out=40, cost_estimate=0.5, files_changed=3),
    )
    store.update_session_stats(
        session.id,
        SessionStatsUpdate(
            tokens_in=50,
            tokens_out=10,
            cost_estimate=0.25,
            files_changed=1,
            lines_added=7,
            duration_seconds=12,
        ),
    )

    stats = store.get_session_stats(session.id)
    assert stats is not None
    assert stats.tokens_in == 150
    assert stats.tokens_out == 50
    assert stats.cost_estimate == pytest.approx(0.75)
    assert stats.files_changed == 1
    assert stats.lines_added == 7
    assert stats.lines_removed == 0
    assert stats.duration_seconds == 12


def test_empty_stats_update_issues_no_statement(store: SessionStore) -> None:
    session = store.create_session("/work/a", "codex")
    statements: list[str] = []

    def _record(_conn, _cursor, statement, _params, _context, _executemany) -> None:
        statements.append(statement)

    event.listen(store.engine, "before_cursor_execute", _record)
    try:
        store.update_session_stats(session.id, SessionStatsUpdate())
    finally:
        event.remove(store.engine, "before_cursor_execute", _record)

    assert statements == []
    stored = store.get_session(session.id)
    assert stored is not None
    assert stored.updated_at == session.updated_at


def test_aggregated_stats_are_zero_when_nothing_matches(store: SessionStore) -> None:
    store.create_session("/work/a", "codex")

    aggregate = store.get_aggregated_stats(workspace_path="/work/none", provider="codex")

    assert aggregate == AggregatedStats()
    assert aggregate.total_cost == 0.0


def test_aggregated_stats_sum_and_count_by_status(store: SessionStore) -> None:
    done = store.create_session("/work/a", "codex")
    failed = store.create_session("/work/a", "codex")
    crashed = store.create_session("/work/a", "codex")
    other = store.create_session("/work/b", "codex")
    store.update_session_status(done.id, SessionStatus.COMPLETED)
    store.update_session_status(failed.id, SessionStatus.FAILED)
    store.update_session_status(crashed.id, SessionStatus.CRASHED)
    store.update_session_status(other.id, SessionStatus.COMPLETED)
    store.update_session_stats(done.id, SessionStatsUpdate(tokens_in=10, tokens_out=5, cost_estimate=1.0))
    store.update_session_stats(failed.id, SessionStatsUpdate(tokens_in=20, lines_added=4))
    store.update_session_stats(other.id, SessionStatsUpdate(tokens_in=1000))

    aggregate = store.get_aggregated_stats(workspace_path="/work/a")

    assert aggregate.total_sessions == 3
    assert aggregate.completed_sessions == 1
    assert aggregate.failed_sessions == 1
    assert aggregate.crashed_sessions == 1
    assert aggregate.timeout_sessions == 0
    assert aggregate.total_tokens_in == 30
    assert aggregate.total_tokens_out == 5
    assert aggregate.total_cost == pytest.approx(1.0)
    assert aggregate.total_lines_added == 4


def test_aggregated_stats_respect_date_window(store: SessionStore) -> None:
    old = store.create_session("/work/a", "codex")
    store.create_session("/work/a", "codex")
    _backdate(store, old.id, days=10)

    now = datetime.now(tz=UTC)
    recent = store.get_aggregated_stats(from_date=now - timedelta(days=1))
    window = store.get_aggregated_stats(
        from_date=now - timedelta(days=11),
        to_date=now - timedelta(days=9),
    )

    assert recent.total_sessions == 1
    assert window.total_sessions == 1


def test_delete_session_removes_every_dependent_row(store: SessionStore) -> None:
    session = store.create_session("/work/a", "codex")
    store.add_session_log(session.id, LogRole.USER, "task")
    store.add_quality_check(session.id, QualityCheckWrite(lint_errors=2))

    assert store.delete_session(session.id) is True

    for table in ("sessions", "session_logs", "session_stats", "quality_checks"):
        assert _count_rows(store, table, session.id) == 0
    assert store.delete_session(session.id) is False


def test_delete_session_is_atomic_under_injected_failure(store: SessionStore) -> None:
    session = store.create_session("/work/a", "codex")
    store.add_session_log(session.id, LogRole.USER, "task")
    store.add_quality_check(session.id, QualityCheckWrite(tests_passed=3))

    def _fail_on_session_delete(_conn, _cursor, statement, params, _context, _executemany) -> None:
        if statement.strip().upper().startswith("DELETE FROM SESSIONS"):
            raise OperationalError(statement, params, Exception("injected failure"))

    event.listen(store.engine, "before_cursor_execute", _fail_on_session_delete)
    try:
        with pytest.raises(PersistenceError):
            store.delete_session(session.id)
    finally:
        event.remove(store.engine, "before_cursor_execute", _fail_on_session_delete)

    for table in ("sessions", "session_logs", "session_stats", "quality_checks"):
        assert _count_rows(store, table, session.id) == 1


def test_delete_old_sessions_honours_cutoff_and_status(store: SessionStore) -> None:
    old_done = store.create_session("/work/a", "codex")
    old_failed = store.create_session("/work/a", "codex")
    fresh = store.create_session("/work/a", "codex")
    store.update_session_status(old_done.id, SessionStatus.COMPLETED)
    store.update_session_status(old_failed.id, SessionStatus.FAILED)
    _backdate(store, old_done.id, days=40)
    _backdate(store, old_failed.id, days=40)

    assert store.delete_old_sessions(30, status=SessionStatus.COMPLETED) == 1
    assert store.get_session(old_done.id) is None
    assert store.get_session(old_failed.id) is not None

    assert store.delete_old_sessions(30) == 1
    assert [session.id for session in store.list_sessions()] == [fresh.id]


def test_latest_quality_check_wins(store: SessionStore) -> None:
    session = store.create_session("/work/a", "codex")
    assert store.get_latest_quality_check(session.id) is None

    store.add_quality_check(session.id, QualityCheckWrite(lint_errors=5, tests_failed=1))
    latest = store.add_quality_check(session.id, QualityCheckWrite(lint_errors=0, tests_passed=9))

    stored = store.get_latest_quality_check(session.id)
    assert stored is not None
    assert stored.id == latest.id
    assert stored.lint_errors == 0
    assert stored.tests_passed == 9


def test_list_session_providers_is_distinct(store: SessionStore) -> None:
    store.create_session("/work/a", "codex")
    store.create_session("/work/a", "codex")
    store.create_session("/work/b", "gemini-cli")

    assert store.list_session_providers() == ["codex", "gemini-cli"]
    assert store.list_session_providers(workspace_path="/work/b") == ["gemini-cli"]


def test_session_logs_keep_insertion_order_when_clock_steps_back(store: SessionStore) -> None:
    session = store.create_session("/work/a", "codex")
    store.add_session_log(session.id, LogRole.USER, "first")
    store.add_session_log(session.id, LogRole.ASSISTANT, "second")
    earlier = (datetime.now(tz=UTC) - timedelta(hours=1)).strftime("%Y-%m-%d %H:%M:%S.%f")
    with store.engine.begin() as connection:
        connection.execute(
            text("UPDATE session_logs SET timestamp = :ts WHERE content = 'second'"),
            {"ts": earlier},
        )

    assert [log.content for log in store.get_session_logs(session.id)] == ["first", "second"]
