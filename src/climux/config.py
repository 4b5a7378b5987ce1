"""Runtime configuration for routing, supervision and storage."""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path

from climux.models import RoutingRule

BUILTIN_PROVIDER_COMMANDS: dict[str, str] = {
    "claude-code": "claude",
    "codex": "codex",
    "gemini-cli": "gemini",
    "opencode": "opencode",
}


@dataclass(slots=True, frozen=True)
class ProviderPricing:
    """Per-provider pricing in USD per 1K tokens."""

    input_per_1k: float
    output_per_1k: float


_DEFAULT_PRICING: dict[str, ProviderPricing] = {
    "claude-code": ProviderPricing(input_per_1k=0.003, output_per_1k=0.015),
    "codex": ProviderPricing(input_per_1k=0.003, output_per_1k=0.012),
    "gemini-cli": ProviderPricing(input_per_1k=0.001, output_per_1k=0.002),
    "opencode": ProviderPricing(input_per_1k=0.002, output_per_1k=0.006),
}


@dataclass(slots=True)
class ProviderSettings:
    """Per-provider command, environment and pricing."""

    name: str
    command: str
    enabled: bool = True
    env: dict[str, str] = field(default_factory=dict)
    mcp_config_path: str | None = None
    skills_config_path: str | None = None
    pricing: ProviderPricing | None = None
    inner_provider: str | None = None


def default_provider_settings() -> dict[str, ProviderSettings]:
    """Settings for every built-in provider, in registration order."""

    return {
        name: ProviderSettings(name=name, command=command, pricing=_DEFAULT_PRICING.get(name))
        for name, command in BUILTIN_PROVIDER_COMMANDS.items()
    }


def default_routing_rules() -> tuple[RoutingRule, ...]:
    return (
        RoutingRule(pattern="frontend|react|vue|css|ui|style", provider="gemini-cli"),
        RoutingRule(pattern="debug|fix|bug|error|issue", provider="codex"),
        RoutingRule(pattern=".*", provider="claude-code"),
    )


@dataclass(slots=True)
class RouterSettings:
    """Provider precedence and concurrency ceiling."""

    default_provider: str = "claude-code"
    routing_rules: tuple[RoutingRule, ...] = field(default_factory=default_routing_rules)
    fallback_order: tuple[str, ...] = ("claude-code", "gemini-cli", "codex", "opencode")
    max_active_sessions: int = 5
    terminate_grace_seconds: float = 5.0


@dataclass(slots=True)
class MonitoringSettings:
    """Which usage signals are collected."""

    track_tokens: bool = True
    track_cost: bool = True
    track_git_changes: bool = True


@dataclass(slots=True)
class RetentionSettings:
    """How long finished sessions are kept by `session prune`."""

    completed_sessions_days: int = 90


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    db_path: Path = field(default_factory=lambda: Path.home() / ".climux" / "climux.db")
    router: RouterSettings = field(default_factory=RouterSettings)
    monitoring: MonitoringSettings = field(default_factory=MonitoringSettings)
    retention: RetentionSettings = field(default_factory=RetentionSettings)
    providers: dict[str, ProviderSettings] = field(default_factory=default_provider_settings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from `CLIMUX_*` environment variables over defaults."""

        monitoring_enabled = _env_bool("CLIMUX_MONITORING_ENABLED", default=True)
        default_db_path = Path.home() / ".climux" / "climux.db"
        return cls(
            db_path=db_path or Path(os.getenv("CLIMUX_DB_PATH", str(default_db_path))),
            router=RouterSettings(
                default_provider=os.getenv("CLIMUX_DEFAULT_PROVIDER", "claude-code").strip(),
                routing_rules=_collect_routing_rules(),
                fallback_order=_collect_fallback_order(),
                max_active_sessions=int(os.getenv("CLIMUX_MAX_ACTIVE_SESSIONS", "5")),
                terminate_grace_seconds=float(
                    os.getenv("CLIMUX_TERMINATE_GRACE_SECONDS", "5.0"),
                ),
            ),
            monitoring=MonitoringSettings(
                track_tokens=monitoring_enabled,
                track_cost=monitoring_enabled,
                track_git_changes=monitoring_enabled,
            ),
            retention=RetentionSettings(
                completed_sessions_days=int(os.getenv("CLIMUX_SESSION_RETENTION_DAYS", "90")),
            ),
            providers=_collect_provider_settings(),
        )

    def validate(self) -> None:
        """Raise configuration error for values the router cannot work with."""

        if self.router.max_active_sessions <= 0:
            raise ValueError("CLIMUX_MAX_ACTIVE_SESSIONS must be a positive integer.")
        if self.router.terminate_grace_seconds < 0:
            raise ValueError("CLIMUX_TERMINATE_GRACE_SECONDS must be >= 0.")
        if self.retention.completed_sessions_days < 0:
            raise ValueError("CLIMUX_SESSION_RETENTION_DAYS must be >= 0.")
        for rule in self.router.routing_rules:
            try:
                re.compile(rule.pattern, re.IGNORECASE)
            except re.error as error:
                raise ValueError(
                    f"Invalid routing pattern {rule.pattern!r} for {rule.provider!r}: {error}",
                ) from error
        if self.router.default_provider not in self.providers:
            raise ValueError(
                f"Unknown default provider: {self.router.default_provider!r}. "
                f"Use one of {tuple(self.providers)}.",
            )
        for name, provider in self.providers.items():
            if not provider.command.strip():
                raise ValueError(f"Empty command for provider={name!r}")


def _collect_routing_rules() -> tuple[RoutingRule, ...]:
    raw = os.getenv("CLIMUX_ROUTING_RULES", "").strip()
    if not raw:
        return default_routing_rules()

    rules: list[RoutingRule] = []
    for part in raw.split(";"):
        token = part.strip()
        if not token:
            continue
        if ":" not in token:
            raise ValueError(
                "Invalid CLIMUX_ROUTING_RULES entry: "
                f"{token!r}. Expected format '<provider>:<pattern>'.",
            )
        provider, pattern = token.split(":", 1)
        provider = provider.strip()
        pattern = pattern.strip()
        if not provider or not pattern:
            raise ValueError(f"Invalid CLIMUX_ROUTING_RULES entry: {token!r}")
        rules.append(RoutingRule(pattern=pattern, provider=provider))
    return tuple(rules)


def _collect_fallback_order() -> tuple[str, ...]:
    raw = os.getenv("CLIMUX_FALLBACK_ORDER", "").strip()
    if not raw:
        return RouterSettings().fallback_order
    return _dedupe(part.strip() for part in raw.split(","))


def _collect_provider_settings() -> dict[str, ProviderSettings]:
    providers = default_provider_settings()
    disabled = set(_dedupe(os.getenv("CLIMUX_DISABLED_PROVIDERS", "").split(",")))
    pricing = _parse_pricing_mapping(os.getenv("CLIMUX_PROVIDER_PRICING", ""))
    for name, provider in providers.items():
        command = os.getenv(_command_env_name(name), "").strip()
        if command:
            provider.command = command
        if name in disabled:
            provider.enabled = False
        if name in pricing:
            provider.pricing = pricing[name]
    return providers


def _command_env_name(provider: str) -> str:
    return f"CLIMUX_{provider.upper().replace('-', '_')}_COMMAND"


def _parse_pricing_mapping(raw: str) -> dict[str, ProviderPricing]:
    """Parse `CLIMUX_PROVIDER_PRICING` mapping.

    Format:
    - `provider:input_per_1k:output_per_1k`
    - multiple entries separated by `,`
    - malformed or negative entries are ignored
    """

    parsed: dict[str, ProviderPricing] = {}
    if not raw.strip():
        return parsed

    for entry in raw.split(","):
        value = entry.strip()
        if not value:
            continue
        parts = [part.strip() for part in value.split(":")]
        if len(parts) != 3:
            continue
        provider, input_price, output_price = parts
        try:
            input_per_1k = float(input_price)
            output_per_1k = float(output_price)
        except ValueError:
            continue
        if input_per_1k < 0 or output_per_1k < 0:
            continue
        parsed[provider.lower()] = ProviderPricing(
            input_per_1k=input_per_1k,
            output_per_1k=output_per_1k,
        )
    return parsed


def _dedupe(values) -> tuple[str, ...]:
    deduped: list[str] = []
    seen: set[str] = set()
    for value in values:
        normalized = value.strip()
        if not normalized or normalized in seen:
            continue
        seen.add(normalized)
        deduped.append(normalized)
    return tuple(deduped)


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
