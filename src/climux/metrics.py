"""Usage metrics built on top of the store's aggregation query."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time, timedelta

from climux.models import AggregatedStats
from climux.session_store import SessionStore


@dataclass(slots=True)
class MetricsSummary:
    """Totals plus per-session averages for one slice of sessions."""

    total_sessions: int
    completed_sessions: int
    failed_sessions: int
    crashed_sessions: int
    timeout_sessions: int
    total_tokens_in: int
    total_tokens_out: int
    total_cost: float
    total_files_changed: int
    total_lines_added: int
    total_lines_removed: int
    total_duration_seconds: int

    @property
    def total_tokens(self) -> int:
        return self.total_tokens_in + self.total_tokens_out

    @property
    def average_tokens_per_session(self) -> int:
        return round(self.total_tokens / max(1, self.total_sessions))

    @property
    def average_cost_per_session(self) -> float:
        return self.total_cost / max(1, self.total_sessions)

    @property
    def average_duration_per_session(self) -> int:
        return round(self.total_duration_seconds / max(1, self.total_sessions))

    @classmethod
    def from_aggregate(cls, raw: AggregatedStats) -> MetricsSummary:
        return cls(
            total_sessions=raw.total_sessions,
            completed_sessions=raw.completed_sessions,
            failed_sessions=raw.failed_sessions,
            crashed_sessions=raw.crashed_sessions,
            timeout_sessions=raw.timeout_sessions,
            total_tokens_in=raw.total_tokens_in,
            total_tokens_out=raw.total_tokens_out,
            total_cost=raw.total_cost,
            total_files_changed=raw.total_files_changed,
            total_lines_added=raw.total_lines_added,
            total_lines_removed=raw.total_lines_removed,
            total_duration_seconds=raw.total_duration_seconds,
        )


@dataclass(slots=True)
class BreakdownReport:
    """Summary for one scope with a per-provider split."""

    label: str
    summary: MetricsSummary
    provider_breakdown: dict[str, MetricsSummary] = field(default_factory=dict)


def build_summary(
    store: SessionStore,
    *,
    workspace_path: str | None = None,
    provider: str | None = None,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
) -> MetricsSummary:
    return MetricsSummary.from_aggregate(
        store.get_aggregated_stats(
            workspace_path=workspace_path,
            provider=provider,
            from_date=from_date,
            to_date=to_date,
        ),
    )


def build_breakdown(
    store: SessionStore,
    *,
    workspace_path: str | None = None,
    from_date: datetime | None = None,
    to_date: datetime | None = None,
    label: str = "all",
) -> BreakdownReport:
    """Summary of a scope plus one entry per provider that has sessions in it."""

    report = BreakdownReport(
        label=label,
        summary=build_summary(
            store,
            workspace_path=workspace_path,
            from_date=from_date,
            to_date=to_date,
        ),
    )
    for provider in store.list_session_providers(workspace_path=workspace_path):
        summary = build_summary(
            store,
            workspace_path=workspace_path,
            provider=provider,
            from_date=from_date,
            to_date=to_date,
        )
        if summary.total_sessions > 0:
            report.provider_breakdown[provider] = summary
    return report


def build_daily_summary(store: SessionStore, day: date | None = None) -> BreakdownReport:
    """Breakdown for one UTC calendar day (today by default)."""

    day = day or datetime.now(tz=UTC).date()
    start = datetime.combine(day, time.min, tzinfo=UTC)
    end = start + timedelta(days=1) - timedelta(microseconds=1)
    return build_breakdown(store, from_date=start, to_date=end, label=day.isoformat())


def format_cost(cost: float) -> str:
    if cost < 0.01:
        return f"${cost:.4f}"
    return f"${cost:.2f}"


def format_duration(seconds: int) -> str:
    """Render seconds as `45s`, `5m 30s` or `2h 5m`."""

    if seconds < 60:
        return f"{seconds}s"
    if seconds < 3600:
        minutes, secs = divmod(seconds, 60)
        return f"{minutes}m {secs}s" if secs else f"{minutes}m"
    hours, rest = divmod(seconds, 3600)
    minutes = rest // 60
    return f"{hours}h {minutes}m" if minutes else f"{hours}h"


def render_summary_lines(summary: MetricsSummary, *, indent: str = "") -> list[str]:
    return [
        f"{indent}sessions: total={summary.total_sessions} "
        f"completed={summary.completed_sessions} failed={summary.failed_sessions} "
        f"crashed={summary.crashed_sessions} timeout={summary.timeout_sessions}",
        f"{indent}tokens: in={summary.total_tokens_in:,} out={summary.total_tokens_out:,} "
        f"avg/session={summary.average_tokens_per_session:,}",
        f"{indent}cost: total={format_cost(summary.total_cost)} "
        f"avg/session={format_cost(summary.average_cost_per_session)}",
        f"{indent}changes: files={summary.total_files_changed} "
        f"+{summary.total_lines_added} -{summary.total_lines_removed}",
        f"{indent}duration: total={format_duration(summary.total_duration_seconds)} "
        f"avg/session={format_duration(summary.average_duration_per_session)}",
    ]


def render_breakdown_lines(report: BreakdownReport) -> list[str]:
    lines = [f"Usage ({report.label}):", *render_summary_lines(report.summary, indent="  ")]
    for provider, summary in report.provider_breakdown.items():
        lines.append(f"  provider={provider}")
        lines.extend(render_summary_lines(summary, indent="    "))
    return lines
