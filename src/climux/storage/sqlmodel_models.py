"""SQLModel ORM tables for session storage."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class SessionRow(SQLModel, table=True):
    __tablename__ = "sessions"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_sessions_workspace_created", "workspace_path", "created_at"),)

    id: str = Field(primary_key=True)
    workspace_path: str
    provider: str = Field(index=True)
    task: str | None = Field(default=None, sa_column=Column(Text))
    status: str = Field(default="pending", index=True)
    native_session_id: str | None = None
    pid: int | None = None
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SessionLogRow(SQLModel, table=True):
    __tablename__ = "session_logs"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_session_logs_session_time", "session_id", "timestamp"),)

    id: int | None = Field(default=None, primary_key=True)
    session_id: str = Field(sa_column=Column(ForeignKey("sessions.id"), nullable=False))
    role: str
    content: str = Field(sa_column=Column(Text, nullable=False))
    timestamp: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class SessionStatsRow(SQLModel, table=True):
    __tablename__ = "session_stats"  # type: ignore[bad-override]

    session_id: str = Field(
        sa_column=Column(ForeignKey("sessions.id"), primary_key=True),
    )
    tokens_in: int = 0
    tokens_out: int = 0
    cost_estimate: float = 0.0
    files_changed: int = 0
    lines_added: int = 0
    lines_removed: int = 0
    duration_seconds: int = 0


class QualityCheckRow(SQLModel, table=True):
    __tablename__ = "quality_checks"  # type: ignore[bad-override]

    id: int | None = Field(default=None, primary_key=True)
    session_id: str = Field(
        sa_column=Column(ForeignKey("sessions.id"), nullable=False, index=True),
    )
    lint_errors: int = 0
    type_errors: int = 0
    tests_passed: int = 0
    tests_failed: int = 0
    checked_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
