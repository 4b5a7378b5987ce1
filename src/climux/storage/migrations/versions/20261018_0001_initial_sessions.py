"""Create session, log, stats and quality check tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261018_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "sessions",
        sa.Column("id", sa.String(), nullable=False),
        sa.Column("workspace_path", sa.String(), nullable=False),
        sa.Column("provider", sa.String(), nullable=False),
        sa.Column("task", sa.Text(), nullable=True),
        sa.Column("status", sa.String(), server_default="pending", nullable=False),
        sa.Column("native_session_id", sa.String(), nullable=True),
        sa.Column("pid", sa.Integer(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_sessions_provider", "sessions", ["provider"], unique=False)
    op.create_index("ix_sessions_status", "sessions", ["status"], unique=False)
    op.create_index(
        "idx_sessions_workspace_created",
        "sessions",
        ["workspace_path", "created_at"],
        unique=False,
    )

    op.create_table(
        "session_logs",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("role", sa.String(), nullable=False),
        sa.Column("content", sa.Text(), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["session_id"], ["sessions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "idx_session_logs_session_time",
        "session_logs",
        ["session_id", "timestamp"],
        unique=False,
    )

    op.create_table(
        "session_stats",
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("tokens_in", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("tokens_out", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("cost_estimate", sa.Float(), server_default=sa.text("0"), nullable=False),
        sa.Column("files_changed", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("lines_added", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("lines_removed", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("duration_seconds", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.ForeignKeyConstraint(["session_id"], ["sessions.id"]),
        sa.PrimaryKeyConstraint("session_id"),
    )

    op.create_table(
        "quality_checks",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("session_id", sa.String(), nullable=False),
        sa.Column("lint_errors", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("type_errors", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("tests_passed", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("tests_failed", sa.Integer(), server_default=sa.text("0"), nullable=False),
        sa.Column("checked_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["session_id"], ["sessions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_quality_checks_session_id",
        "quality_checks",
        ["session_id"],
        unique=False,
    )


def downgrade() -> None:
    op.drop_index("ix_quality_checks_session_id", table_name="quality_checks")
    op.drop_table("quality_checks")
    op.drop_table("session_stats")
    op.drop_index("idx_session_logs_session_time", table_name="session_logs")
    op.drop_table("session_logs")
    op.drop_index("idx_sessions_workspace_created", table_name="sessions")
    op.drop_index("ix_sessions_status", table_name="sessions")
    op.drop_index("ix_sessions_provider", table_name="sessions")
    op.drop_table("sessions")
