"""Durable session, log, stats and quality-check storage."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta
from pathlib import Path
from uuid import uuid4

from sqlalchemy import case, func, literal_column
from sqlalchemy import delete as sa_delete
from sqlalchemy import select as sa_select
from sqlalchemy import update as sa_update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session as DbSession
from sqlmodel import col, select

from climux.errors import PersistenceError
from climux.models import (
    AggregatedStats,
    LogRole,
    QualityCheck,
    QualityCheckWrite,
    Session,
    SessionLog,
    SessionStats,
    SessionStatsUpdate,
    SessionStatus,
)
from climux.storage.alembic_runner import upgrade_head
from climux.storage.common import (
    DEFAULT_BUSY_TIMEOUT_MS,
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from climux.storage.sqlmodel_models import (
    QualityCheckRow,
    SessionLogRow,
    SessionRow,
    SessionStatsRow,
)

logger = logging.getLogger(__name__)

_ADDITIVE_FIELDS = ("tokens_in", "tokens_out", "cost_estimate")
_OVERWRITE_FIELDS = ("files_changed", "lines_added", "lines_removed", "duration_seconds")


class SessionStore:
    """Session persistence facade backed by SQLModel + SQLite.

    Every mutation is serialized through one re-entrant lock and runs in a
    single transaction; SQLAlchemy failures surface as `PersistenceError`.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        self.db_path = db_path
        db_path.parent.mkdir(parents=True, exist_ok=True)
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)
        self._lock = threading.RLock()

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        try:
            upgrade_head(self.db_path)
        except SQLAlchemyError as error:
            raise PersistenceError(
                f"Failed to initialize database {self.db_path}: {error}",
            ) from error

    @contextmanager
    def _write_session(self) -> Iterator[DbSession]:
        with self._lock, DbSession(self.engine) as session:
            try:
                yield session
                session.commit()
            except SQLAlchemyError as error:
                session.rollback()
                raise PersistenceError(f"Database write failed: {error}") from error

    @contextmanager
    def _read_session(self) -> Iterator[DbSession]:
        try:
            with DbSession(self.engine) as session:
                yield session
        except SQLAlchemyError as error:
            raise PersistenceError(f"Database read failed: {error}") from error

    # Sessions

    def create_session(
        self,
        workspace_path: str,
        provider: str,
        task: str | None = None,
    ) -> Session:
        """Insert a `pending` session together with its zeroed stats row."""

        now = utc_now()
        session_id = str(uuid4())
        with self._write_session() as session:
            session.add(
                SessionRow(
                    id=session_id,
                    workspace_path=workspace_path,
                    provider=provider,
                    task=task,
                    status=SessionStatus.PENDING.value,
                    created_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                ),
            )
            session.flush()
            session.add(SessionStatsRow(session_id=session_id))
        logger.debug("Created session %s for provider %s", session_id, provider)
        return Session(
            id=session_id,
            workspace_path=workspace_path,
            provider=provider,
            task=task,
            status=SessionStatus.PENDING,
            native_session_id=None,
            pid=None,
            created_at=now,
            updated_at=now,
        )

    def get_session(self, session_id: str) -> Session | None:
        with self._read_session() as session:
            row = session.exec(select(SessionRow).where(SessionRow.id == session_id)).one_or_none()
            if row is None:
                return None
            return _to_session(row)

    def update_session_status(self, session_id: str, status: SessionStatus) -> None:
        self._update_session(session_id, status=status.value)

    def update_session_pid(self, session_id: str, pid: int | None) -> None:
        self._update_session(session_id, pid=pid)

    def update_native_session_id(self, session_id: str, native_session_id: str) -> None:
        self._update_session(session_id, native_session_id=native_session_id)

    def _update_session(self, session_id: str, **values: object) -> None:
        with self._write_session() as session:
            result = session.exec(
                sa_update(SessionRow)
                .where(col(SessionRow.id) == session_id)
                .values(**values, updated_at=to_db_datetime(utc_now())),
            )
            if result.rowcount == 0:
                logger.debug("Session update matched no rows: id=%s values=%s", session_id, values)

    def list_sessions(
        self,
        *,
        workspace_path: str | None = None,
        status: SessionStatus | None = None,
        provider: str | None = None,
        limit: int | None = None,
    ) -> list[Session]:
        """Return sessions newest first, filtered conjunctively."""

        statement = select(SessionRow)
        if workspace_path is not None:
            statement = statement.where(SessionRow.workspace_path == workspace_path)
        if status is not None:
            statement = statement.where(SessionRow.status == status.value)
        if provider is not None:
            statement = statement.where(SessionRow.provider == provider)
        statement = statement.order_by(
            col(SessionRow.created_at).desc(),
            literal_column("sessions.rowid").desc(),
        )
        if limit is not None:
            statement = statement.limit(limit)
        with self._read_session() as session:
            return [_to_session(row) for row in session.exec(statement).all()]

    def list_session_providers(self, *, workspace_path: str | None = None) -> list[str]:
        """Distinct provider names that own at least one session."""

        statement = select(SessionRow.provider).distinct()
        if workspace_path is not None:
            statement = statement.where(SessionRow.workspace_path == workspace_path)
        with self._read_session() as session:
            return sorted(session.exec(statement).all())

    def delete_session(self, session_id: str) -> bool:
        """Delete the session and every dependent row in one transaction."""

        with self._write_session() as session:
            session.exec(sa_delete(QualityCheckRow).where(col(QualityCheckRow.session_id) == session_id))
            session.exec(sa_delete(SessionStatsRow).where(col(SessionStatsRow.session_id) == session_id))
            session.exec(sa_delete(SessionLogRow).where(col(SessionLogRow.session_id) == session_id))
            result = session.exec(sa_delete(SessionRow).where(col(SessionRow.id) == session_id))
            deleted = result.rowcount > 0
        if deleted:
            logger.debug("Deleted session %s", session_id)
        return deleted

    def delete_old_sessions(
        self,
        older_than_days: int,
        status: SessionStatus | None = None,
    ) -> int:
        """Delete sessions created before the cutoff; return how many went."""

        cutoff = utc_now() - timedelta(days=older_than_days)
        statement = select(SessionRow.id).where(SessionRow.created_at < to_db_datetime(cutoff))
        if status is not None:
            statement = statement.where(SessionRow.status == status.value)
        with self._read_session() as session:
            session_ids = list(session.exec(statement).all())

        deleted = 0
        for session_id in session_ids:
            if self.delete_session(session_id):
                deleted += 1
        if deleted:
            logger.info("Pruned %d sessions older than %d days", deleted, older_than_days)
        return deleted

    # Logs

    def add_session_log(self, session_id: str, role: LogRole, content: str) -> None:
        with self._write_session() as session:
            session.add(
                SessionLogRow(
                    session_id=session_id,
                    role=role.value,
                    content=content,
                    timestamp=to_db_datetime(utc_now()),
                ),
            )

    def get_session_logs(self, session_id: str) -> list[SessionLog]:
        with self._read_session() as session:
            rows = session.exec(
                select(SessionLogRow)
                .where(SessionLogRow.session_id == session_id)
                .order_by(col(SessionLogRow.id).asc()),
            ).all()
            return [
                SessionLog(
                    id=row.id or 0,
                    session_id=row.session_id,
                    role=LogRole(row.role),
                    content=row.content,
                    timestamp=to_utc_aware_datetime(row.timestamp),
                )
                for row in rows
            ]

    # Stats

    def get_session_stats(self, session_id: str) -> SessionStats | None:
        with self._read_session() as session:
            row = session.exec(
                select(SessionStatsRow).where(SessionStatsRow.session_id == session_id),
            ).one_or_none()
            if row is None:
                return None
            return SessionStats(
                session_id=row.session_id,
                tokens_in=row.tokens_in,
                tokens_out=row.tokens_out,
                cost_estimate=row.cost_estimate,
                files_changed=row.files_changed,
                lines_added=row.lines_added,
                lines_removed=row.lines_removed,
                duration_seconds=row.duration_seconds,
            )

    def update_session_stats(self, session_id: str, update: SessionStatsUpdate) -> None:
        """Fold a partial update into the stats row.

        Token and cost fields are added to the stored totals, the remaining
        fields replace them. An empty update does not touch the database.
        """

        if update.is_empty():
            return
        values: dict[str, object] = {}
        for name in _ADDITIVE_FIELDS:
            delta = getattr(update, name)
            if delta is not None:
                values[name] = getattr(SessionStatsRow, name) + delta
        for name in _OVERWRITE_FIELDS:
            value = getattr(update, name)
            if value is not None:
                values[name] = value
        with self._write_session() as session:
            session.exec(
                sa_update(SessionStatsRow)
                .where(col(SessionStatsRow.session_id) == session_id)
                .values(**values),
            )

    def get_aggregated_stats(
        self,
        *,
        workspace_path: str | None = None,
        provider: str | None = None,
        from_date: datetime | None = None,
        to_date: datetime | None = None,
    ) -> AggregatedStats:
        """Sum stats over matching sessions; all zeros when nothing matches."""

        statement = sa_select(
            func.count(col(SessionRow.id)),
            _count_status(SessionStatus.COMPLETED),
            _count_status(SessionStatus.FAILED),
            _count_status(SessionStatus.CRASHED),
            _count_status(SessionStatus.TIMEOUT),
            func.coalesce(func.sum(col(SessionStatsRow.tokens_in)), 0),
            func.coalesce(func.sum(col(SessionStatsRow.tokens_out)), 0),
            func.coalesce(func.sum(col(SessionStatsRow.cost_estimate)), 0.0),
            func.coalesce(func.sum(col(SessionStatsRow.files_changed)), 0),
            func.coalesce(func.sum(col(SessionStatsRow.lines_added)), 0),
            func.coalesce(func.sum(col(SessionStatsRow.lines_removed)), 0),
            func.coalesce(func.sum(col(SessionStatsRow.duration_seconds)), 0),
        ).select_from(SessionRow).outerjoin(
            SessionStatsRow,
            col(SessionStatsRow.session_id) == col(SessionRow.id),
        )
        if workspace_path is not None:
            statement = statement.where(col(SessionRow.workspace_path) == workspace_path)
        if provider is not None:
            statement = statement.where(col(SessionRow.provider) == provider)
        if from_date is not None:
            statement = statement.where(col(SessionRow.created_at) >= to_db_datetime(from_date))
        if to_date is not None:
            statement = statement.where(col(SessionRow.created_at) <= to_db_datetime(to_date))

        with self._read_session() as session:
            row = session.exec(statement).one()
        return AggregatedStats(
            total_sessions=int(row[0] or 0),
            completed_sessions=int(row[1] or 0),
            failed_sessions=int(row[2] or 0),
            crashed_sessions=int(row[3] or 0),
            timeout_sessions=int(row[4] or 0),
            total_tokens_in=int(row[5] or 0),
            total_tokens_out=int(row[6] or 0),
            total_cost=float(row[7] or 0.0),
            total_files_changed=int(row[8] or 0),
            total_lines_added=int(row[9] or 0),
            total_lines_removed=int(row[10] or 0),
            total_duration_seconds=int(row[11] or 0),
        )

    # Quality checks

    def add_quality_check(self, session_id: str, payload: QualityCheckWrite) -> QualityCheck:
        now = utc_now()
        with self._write_session() as session:
            row = QualityCheckRow(
                session_id=session_id,
                lint_errors=payload.lint_errors,
                type_errors=payload.type_errors,
                tests_passed=payload.tests_passed,
                tests_failed=payload.tests_failed,
                checked_at=to_db_datetime(now),
            )
            session.add(row)
            session.flush()
            check_id = row.id or 0
        return QualityCheck(
            id=check_id,
            session_id=session_id,
            lint_errors=payload.lint_errors,
            type_errors=payload.type_errors,
            tests_passed=payload.tests_passed,
            tests_failed=payload.tests_failed,
            checked_at=now,
        )

    def get_latest_quality_check(self, session_id: str) -> QualityCheck | None:
        with self._read_session() as session:
            row = session.exec(
                select(QualityCheckRow)
                .where(QualityCheckRow.session_id == session_id)
                .order_by(col(QualityCheckRow.checked_at).desc(), col(QualityCheckRow.id).desc())
                .limit(1),
            ).one_or_none()
            if row is None:
                return None
            return QualityCheck(
                id=row.id or 0,
                session_id=row.session_id,
                lint_errors=row.lint_errors,
                type_errors=row.type_errors,
                tests_passed=row.tests_passed,
                tests_failed=row.tests_failed,
                checked_at=to_utc_aware_datetime(row.checked_at),
            )


def _count_status(status: SessionStatus):
    return func.coalesce(
        func.sum(case((col(SessionRow.status) == status.value, 1), else_=0)),
        0,
    )


def _to_session(row: SessionRow) -> Session:
    return Session(
        id=row.id,
        workspace_path=row.workspace_path,
        provider=row.provider,
        task=row.task,
        status=SessionStatus(row.status),
        native_session_id=row.native_session_id,
        pid=row.pid,
        created_at=to_utc_aware_datetime(row.created_at),
        updated_at=to_utc_aware_datetime(row.updated_at),
    )
