"""Provider selection with fallback, and the task run loop on top of it."""

from __future__ import annotations

import logging
import re
from collections.abc import Callable, Iterator, Mapping
from pathlib import Path

from climux.config import Settings
from climux.errors import (
    FALLBACK_ERRORS,
    ClimuxError,
    NativeSessionMissingError,
    ProviderNotFoundError,
    ProvidersExhaustedError,
    ProviderUnavailableError,
    RateLimitedError,
    SessionNotFoundError,
)
from climux.failure_classifier import classify_failure
from climux.models import (
    LogRole,
    RunMode,
    RunOptions,
    RunResult,
    SessionStats,
    SessionStatsUpdate,
    SessionStatus,
)
from climux.providers.base import BaseProvider
from climux.providers.registry import ProviderRegistry, default_registry
from climux.session_store import SessionStore
from climux.supervisor import ProcessSupervisor
from climux.workspace import DiffStats, Workspace, git_diff_stats

logger = logging.getLogger(__name__)

DiffProbe = Callable[[Workspace], DiffStats]

SUMMARY_MAX_CHARS = 200
DEFAULT_SUMMARY = "Task completed"

_SUMMARY_MARKER = re.compile(r"(?:summary|result|done):?\s*(.+)", re.IGNORECASE)


class Router:
    """Routes tasks to providers and drives the supervisor through fallbacks."""

    def __init__(  # noqa: PLR0913
        self,
        settings: Settings,
        *,
        store: SessionStore,
        supervisor: ProcessSupervisor | None = None,
        registry: ProviderRegistry | None = None,
        providers: Mapping[str, BaseProvider] | None = None,
        diff_probe: DiffProbe = git_diff_stats,
    ) -> None:
        self.settings = settings
        self.store = store
        self.supervisor = supervisor or ProcessSupervisor(
            store,
            max_active_sessions=settings.router.max_active_sessions,
            terminate_grace_seconds=settings.router.terminate_grace_seconds,
            monitoring=settings.monitoring,
        )
        if providers is None:
            providers = (registry or default_registry()).create_providers(settings.providers)
        self.providers: dict[str, BaseProvider] = dict(providers)
        self.diff_probe = diff_probe
        self._rules = [
            (re.compile(rule.pattern, re.IGNORECASE), rule.provider)
            for rule in settings.router.routing_rules
        ]

    def close(self) -> None:
        self.supervisor.shutdown()

    # Provider lookup

    def get_provider(self, name: str) -> BaseProvider | None:
        return self.providers.get(name)

    def provider_names(self) -> list[str]:
        return list(self.providers)

    def available_providers(self) -> list[BaseProvider]:
        return [provider for provider in self.providers.values() if provider.detect()]

    def providers_with_capability(self, capability: str) -> list[BaseProvider]:
        return [
            provider
            for provider in self.providers.values()
            if getattr(provider.capabilities, capability, False)
        ]

    # Selection

    def _candidates(self, task: str, preferred: str | None) -> Iterator[BaseProvider]:
        """Yield providers in precedence order; duplicates are possible."""

        if preferred is not None:
            provider = self.providers.get(preferred)
            if provider is None:
                logger.warning("Preferred provider %s is not registered; ignoring", preferred)
            else:
                yield provider

        for pattern, name in self._rules:
            if not pattern.search(task):
                continue
            provider = self.providers.get(name)
            if provider is None:
                logger.debug("Routing rule %r names unregistered provider %s", pattern.pattern, name)
                continue
            yield provider

        for name in self.settings.router.fallback_order:
            provider = self.providers.get(name)
            if provider is not None:
                yield provider

        yield from self.providers.values()

    def _available(self, provider: BaseProvider, detected: dict[str, bool]) -> bool:
        if provider.name not in detected:
            detected[provider.name] = provider.detect()
            if not detected[provider.name]:
                logger.debug("Provider %s is not available", provider.name)
        return detected[provider.name]

    def select_provider(self, task: str, preferred: str | None = None) -> BaseProvider:
        """Return the first available provider by routing precedence."""

        detected: dict[str, bool] = {}
        for provider in self._candidates(task, preferred):
            if self._available(provider, detected):
                return provider
        raise ProviderUnavailableError(
            f"No available provider. Registered: {', '.join(self.providers) or 'none'}",
            suggestion="Install one of the registered CLIs or fix its configured command.",
        )

    def build_fallback_chain(self, task: str, preferred: str | None = None) -> list[BaseProvider]:
        """Every distinct available provider, in routing precedence order."""

        detected: dict[str, bool] = {}
        chain: list[BaseProvider] = []
        seen: set[str] = set()
        for provider in self._candidates(task, preferred):
            if provider.name in seen:
                continue
            seen.add(provider.name)
            if self._available(provider, detected):
                chain.append(provider)
        return chain

    # Running

    def run(self, task: str, options: RunOptions) -> RunResult:
        """Run the task on the first provider in the chain that can take it."""

        chain = self.build_fallback_chain(task, options.provider)
        logger.info("Fallback chain for task: %s", [provider.name for provider in chain])
        last_error: ClimuxError | None = None
        for provider in chain:
            try:
                return self._run_with_provider(provider, task, options)
            except FALLBACK_ERRORS as error:
                logger.warning("Provider %s failed (%s); trying next", provider.name, error)
                last_error = error
        tried = ", ".join(provider.name for provider in chain) or "none available"
        raise ProvidersExhaustedError(
            f"All providers failed for the task. Tried: {tried}",
            suggestion="Check provider installation and quota, or pick one with --provider.",
        ) from last_error

    def _run_with_provider(
        self,
        provider: BaseProvider,
        task: str,
        options: RunOptions,
    ) -> RunResult:
        session = self.store.create_session(options.workspace.path, provider.name, task)
        self.store.add_session_log(session.id, LogRole.USER, task)
        try:
            self.supervisor.spawn(session.id, provider, task, options)
            if options.mode == RunMode.CHAT:
                return RunResult(
                    session_id=session.id,
                    status=SessionStatus.RUNNING,
                    output="",
                    stats=self._stats(session.id),
                )
            output = self.supervisor.wait_for_completion(session.id, options.timeout_seconds)
        except ClimuxError:
            self._mark_failed_unless_terminal(session.id)
            raise

        stored = self.store.get_session(session.id)
        status = stored.status if stored is not None else SessionStatus.FAILED
        if status == SessionStatus.FAILED:
            self._raise_if_rate_limited(provider, session.id, output)

        if self.settings.monitoring.track_git_changes:
            diff = self.diff_probe(options.workspace)
            self.store.update_session_stats(
                session.id,
                SessionStatsUpdate(
                    files_changed=diff.files_changed,
                    lines_added=diff.lines_added,
                    lines_removed=diff.lines_removed,
                ),
            )

        return RunResult(
            session_id=session.id,
            status=status,
            output=output,
            stats=self._stats(session.id),
            summary=extract_summary(output),
        )

    def _raise_if_rate_limited(self, provider: BaseProvider, session_id: str, output: str) -> None:
        stderr = "".join(
            log.content
            for log in self.store.get_session_logs(session_id)
            if log.role == LogRole.SYSTEM
        )
        classification = classify_failure(output=output, stderr=stderr)
        if classification.should_fall_back:
            raise RateLimitedError(
                f"Provider {provider.name} is rate limited "
                f"(matched {classification.matched_pattern!r}, session {session_id})",
                recoverable=True,
            )

    def _mark_failed_unless_terminal(self, session_id: str) -> None:
        session = self.store.get_session(session_id)
        if session is not None and not session.status.is_terminal:
            self.store.update_session_status(session_id, SessionStatus.FAILED)

    def _stats(self, session_id: str) -> SessionStats:
        return self.store.get_session_stats(session_id) or SessionStats(session_id=session_id)

    # Session control

    def resume_session(self, session_id: str) -> None:
        """Continue a stored session in chat mode."""

        session = self.store.get_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")

        if self.supervisor.is_running(session_id):
            if self.supervisor.is_paused(session_id):
                self.supervisor.unpause(session_id)
            else:
                logger.info("Session %s is already running", session_id)
            return

        provider = self.providers.get(session.provider)
        if provider is None:
            raise ProviderNotFoundError(f"Provider {session.provider} not found")
        if not provider.capabilities.resume:
            raise ProviderUnavailableError(
                f"Provider {session.provider} does not support session resume",
            )
        if not session.native_session_id:
            raise NativeSessionMissingError(
                f"Session {session_id} has no native session ID for resume",
            )

        path = Path(session.workspace_path)
        workspace = Workspace(path=session.workspace_path, name=path.name or "workspace")
        self.supervisor.resume(
            session_id,
            provider,
            session.native_session_id,
            RunOptions(workspace=workspace, mode=RunMode.CHAT),
        )

    def send_to_session(self, session_id: str, message: str) -> None:
        self._require_running(session_id)
        self.supervisor.send(session_id, message)

    def terminate_session(self, session_id: str, *, force: bool = False) -> None:
        self._require_running(session_id)
        self.supervisor.terminate(session_id, force=force)

    def pause_session(self, session_id: str) -> None:
        self._require_running(session_id)
        self.supervisor.pause(session_id)

    def _require_running(self, session_id: str) -> None:
        if not self.supervisor.is_running(session_id):
            raise SessionNotFoundError(f"Session {session_id} is not running")


def extract_summary(output: str) -> str:
    """Pick a one-line summary out of provider output."""

    match = _SUMMARY_MARKER.search(output)
    if match is not None:
        return match.group(1).strip()
    lines = [line for line in output.strip().splitlines() if line.strip()]
    if lines:
        return lines[-1][:SUMMARY_MAX_CHARS]
    return DEFAULT_SUMMARY
