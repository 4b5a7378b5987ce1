"""Child-process supervision for provider sessions.

Each managed process gets one reader thread per output stream and one exit
watcher thread. The watcher joins the readers before classifying the exit, so
every chunk is logged and parsed before the session turns terminal and
waiters are released.
"""

from __future__ import annotations

import codecs
import logging
import os
import signal
import subprocess
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import IO

from climux.config import MonitoringSettings
from climux.errors import (
    CapacityExceededError,
    ClimuxError,
    ProcessCrashedError,
    ProviderUnavailableError,
    SessionNotFoundError,
    SessionNotInteractiveError,
    SessionTimeoutError,
)
from climux.models import LogRole, RunMode, RunOptions, SessionStatsUpdate, SessionStatus
from climux.providers.base import BaseProvider
from climux.session_store import SessionStore

logger = logging.getLogger(__name__)

STDOUT = "stdout"
STDERR = "stderr"

_READ_CHUNK_BYTES = 4096
_READER_JOIN_SECONDS = 5.0
_CLASSIFY_WAIT_SECONDS = 5.0

OutputCallback = Callable[[str, str, str], None]


@dataclass(slots=True, eq=False)
class ManagedProcess:
    """Runtime handle of one live provider subprocess."""

    session_id: str
    provider: BaseProvider
    workspace_path: str
    mode: RunMode
    process: subprocess.Popen[bytes]
    started_monotonic: float
    native_session_id: str | None = None
    stdout_chunks: list[str] = field(default_factory=list)
    stderr_chunks: list[str] = field(default_factory=list)
    done: threading.Event = field(default_factory=threading.Event)
    stdin_lock: threading.Lock = field(default_factory=threading.Lock)
    timed_out: bool = False
    paused: bool = False
    completion_noted: bool = False
    final_status: SessionStatus | None = None
    kill_timer: threading.Timer | None = None

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def output(self) -> str:
        return "".join(self.stdout_chunks)

    @property
    def error_output(self) -> str:
        return "".join(self.stderr_chunks)


class ProcessSupervisor:
    """Spawns provider processes and keeps the session store in step with them."""

    def __init__(
        self,
        store: SessionStore,
        *,
        max_active_sessions: int = 5,
        terminate_grace_seconds: float = 5.0,
        monitoring: MonitoringSettings | None = None,
        on_output: OutputCallback | None = None,
    ) -> None:
        self.store = store
        self.max_active_sessions = max_active_sessions
        self.terminate_grace_seconds = terminate_grace_seconds
        self.monitoring = monitoring or MonitoringSettings()
        self.on_output = on_output
        self._processes: dict[str, ManagedProcess] = {}
        self._active = 0
        self._lock = threading.Lock()

    # Launch

    def spawn(
        self,
        session_id: str,
        provider: BaseProvider,
        task: str,
        options: RunOptions,
    ) -> ManagedProcess:
        """Start a fresh provider invocation for an existing session."""

        args = provider.build_args(task, options)
        return self._launch(session_id, provider, args, options)

    def resume(
        self,
        session_id: str,
        provider: BaseProvider,
        native_session_id: str,
        options: RunOptions,
    ) -> ManagedProcess:
        """Continue a tool-native session in a new process."""

        if not provider.capabilities.resume:
            raise ProviderUnavailableError(
                f"Provider {provider.name} does not support resuming sessions",
            )
        args = provider.build_resume_args(native_session_id, options)
        managed = self._launch(session_id, provider, args, options)
        managed.native_session_id = native_session_id
        return managed

    def _launch(
        self,
        session_id: str,
        provider: BaseProvider,
        args: list[str],
        options: RunOptions,
    ) -> ManagedProcess:
        # Popen reports a missing cwd as FileNotFoundError too.
        if not Path(options.workspace.path).is_dir():
            raise ProcessCrashedError(
                f"Workspace directory does not exist for session {session_id}: "
                f"{options.workspace.path}",
                suggestion="Recreate the workspace directory or run from an existing one.",
            )
        self._reserve_slot()
        env = {**os.environ, **provider.get_env(), **options.env}
        argv = [provider.command, *args]
        logger.info(
            "Starting session %s: provider=%s cwd=%s mode=%s",
            session_id,
            provider.name,
            options.workspace.path,
            options.mode.value,
        )
        try:
            process = subprocess.Popen(  # noqa: S603
                argv,
                cwd=options.workspace.path,
                env=env,
                stdin=subprocess.PIPE if options.mode == RunMode.CHAT else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except FileNotFoundError as error:
            self._release_slot()
            logger.warning("Provider executable not found for %s: %s", provider.name, error)
            self._record_spawn_failure(session_id, f"Failed to start {provider.command}: {error}")
            raise ProviderUnavailableError(
                f"Provider executable not found: {provider.command}",
                recoverable=True,
                suggestion=f"Install {provider.name} or configure its command.",
            ) from error
        except OSError as error:
            self._release_slot()
            logger.warning("Failed to start %s for session %s: %s", provider.name, session_id, error)
            self._record_spawn_failure(session_id, f"Failed to start {provider.command}: {error}")
            raise ProcessCrashedError(
                f"Failed to start provider {provider.name} for session {session_id}: {error}",
            ) from error

        managed = ManagedProcess(
            session_id=session_id,
            provider=provider,
            workspace_path=options.workspace.path,
            mode=options.mode,
            process=process,
            started_monotonic=time.monotonic(),
        )
        with self._lock:
            self._processes[session_id] = managed

        try:
            self.store.update_session_status(session_id, SessionStatus.RUNNING)
            self.store.update_session_pid(session_id, process.pid)
        except ClimuxError:
            process.kill()
            process.wait()
            with self._lock:
                self._processes.pop(session_id, None)
            self._release_slot()
            raise

        readers = [
            self._start_thread(self._read_stream, managed, process.stdout, STDOUT),
            self._start_thread(self._read_stream, managed, process.stderr, STDERR),
        ]
        self._start_thread(self._watch_exit, managed, readers)
        return managed

    def _record_spawn_failure(self, session_id: str, message: str) -> None:
        self.store.add_session_log(session_id, LogRole.SYSTEM, message)
        self.store.update_session_status(session_id, SessionStatus.CRASHED)

    def _start_thread(self, target, *args) -> threading.Thread:
        thread = threading.Thread(target=target, args=args, daemon=True)
        thread.start()
        return thread

    # Capacity

    def _reserve_slot(self) -> None:
        with self._lock:
            if self._active >= self.max_active_sessions:
                raise CapacityExceededError(
                    f"Maximum concurrent sessions reached ({self.max_active_sessions})",
                    recoverable=True,
                    suggestion="Wait for a running session to finish or raise "
                    "CLIMUX_MAX_ACTIVE_SESSIONS.",
                )
            self._active += 1

    def _release_slot(self) -> None:
        with self._lock:
            self._active = max(0, self._active - 1)

    # Streams

    def _read_stream(self, managed: ManagedProcess, stream: IO[bytes] | None, name: str) -> None:
        if stream is None:
            return
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                data = stream.read1(_READ_CHUNK_BYTES)  # type: ignore[attr-defined]
                if not data:
                    break
                text = decoder.decode(data)
                if text:
                    self._handle_chunk(managed, name, text)
            tail = decoder.decode(b"", final=True)
            if tail:
                self._handle_chunk(managed, name, tail)
        except Exception:
            logger.exception("Reader for %s of session %s failed", name, managed.session_id)
        finally:
            stream.close()

    def _handle_chunk(self, managed: ManagedProcess, stream_name: str, text: str) -> None:
        if self.on_output is not None:
            try:
                self.on_output(managed.session_id, stream_name, text)
            except Exception:
                logger.exception("Output callback failed for session %s", managed.session_id)

        if stream_name == STDERR:
            managed.stderr_chunks.append(text)
            self._log_chunk(managed, LogRole.SYSTEM, text)
            return

        managed.stdout_chunks.append(text)
        self._log_chunk(managed, LogRole.ASSISTANT, text)
        self._apply_parsed_output(managed, text)
        if not managed.completion_noted and managed.provider.is_task_complete(text):
            managed.completion_noted = True
            logger.debug("Session %s output looks complete; waiting for exit", managed.session_id)

    def _log_chunk(self, managed: ManagedProcess, role: LogRole, text: str) -> None:
        try:
            self.store.add_session_log(managed.session_id, role, text)
        except ClimuxError:
            logger.exception("Failed to store %s output for session %s", role.value, managed.session_id)

    def _apply_parsed_output(self, managed: ManagedProcess, text: str) -> None:
        try:
            parsed = managed.provider.parse_output(text)
        except Exception:
            logger.exception(
                "Output parser of %s failed for session %s",
                managed.provider.name,
                managed.session_id,
            )
            return
        if parsed.is_empty():
            return

        update = SessionStatsUpdate()
        if parsed.tokens is not None and self.monitoring.track_tokens:
            update.tokens_in = parsed.tokens.tokens_in
            update.tokens_out = parsed.tokens.tokens_out
        if self.monitoring.track_cost:
            if parsed.cost is not None:
                update.cost_estimate = parsed.cost
            elif parsed.tokens is not None and managed.provider.get_pricing() is not None:
                update.cost_estimate = managed.provider.estimate_cost(
                    parsed.tokens.tokens_in,
                    parsed.tokens.tokens_out,
                )

        try:
            self.store.update_session_stats(managed.session_id, update)
            native_id = parsed.native_session_id
            if native_id and native_id != managed.native_session_id:
                managed.native_session_id = native_id
                self.store.update_native_session_id(managed.session_id, native_id)
        except ClimuxError:
            logger.exception("Failed to store parsed output for session %s", managed.session_id)

    # Exit

    def _watch_exit(self, managed: ManagedProcess, readers: list[threading.Thread]) -> None:
        returncode = managed.process.wait()
        for reader in readers:
            reader.join(timeout=_READER_JOIN_SECONDS)
            if reader.is_alive():
                logger.warning(
                    "Output stream of session %s still open after exit; finalizing anyway",
                    managed.session_id,
                )
        self._finalize(managed, returncode)

    def _finalize(self, managed: ManagedProcess, returncode: int) -> None:
        status = classify_exit(returncode, timed_out=managed.timed_out)
        duration = int(time.monotonic() - managed.started_monotonic)
        session_id = managed.session_id
        try:
            self.store.update_session_stats(
                session_id,
                SessionStatsUpdate(duration_seconds=duration),
            )
            if returncode < 0:
                self.store.add_session_log(
                    session_id,
                    LogRole.SYSTEM,
                    f"Process terminated by signal {_signal_name(-returncode)}",
                )
            elif returncode > 0:
                self.store.add_session_log(
                    session_id,
                    LogRole.SYSTEM,
                    f"Process exited with code {returncode}",
                )
            self.store.update_session_status(session_id, status)
            self.store.update_session_pid(session_id, None)
        except ClimuxError:
            logger.exception("Failed to persist final state of session %s", session_id)
        finally:
            if managed.kill_timer is not None:
                managed.kill_timer.cancel()
            self._close_stdin(managed)
            managed.final_status = status
            with self._lock:
                self._processes.pop(session_id, None)
                self._active = max(0, self._active - 1)
            managed.done.set()
        logger.info(
            "Session %s finished: status=%s exit_code=%s duration=%ss",
            session_id,
            status.value,
            returncode,
            duration,
        )

    def _close_stdin(self, managed: ManagedProcess) -> None:
        stdin = managed.process.stdin
        if stdin is None:
            return
        with managed.stdin_lock:
            try:
                stdin.close()
            except OSError:
                logger.debug("stdin of session %s was already broken", managed.session_id)

    # Control

    def send(self, session_id: str, text: str) -> None:
        """Write one line of input to a chat-mode session."""

        managed = self._require_live(session_id)
        stdin = managed.process.stdin
        if stdin is None:
            raise SessionNotInteractiveError(
                f"Session {session_id} was started without an input stream",
                suggestion="Start the session in chat mode to send input.",
            )
        with managed.stdin_lock:
            try:
                stdin.write(f"{text}\n".encode())
                stdin.flush()
            except (OSError, ValueError) as error:
                raise ProcessCrashedError(
                    f"Failed to write to session {session_id}: {error}",
                ) from error
        self.store.add_session_log(session_id, LogRole.USER, text)

    def terminate(self, session_id: str, *, force: bool = False) -> bool:
        """Ask a live process to stop; escalate to SIGKILL after the grace window."""

        with self._lock:
            managed = self._processes.get(session_id)
        if managed is None:
            return False
        if force:
            logger.info("Killing session %s", session_id)
            managed.process.kill()
            return True

        logger.info("Terminating session %s", session_id)
        if managed.paused:
            managed.process.send_signal(signal.SIGCONT)
        managed.process.terminate()
        if managed.kill_timer is None:
            timer = threading.Timer(
                self.terminate_grace_seconds,
                self._escalate,
                args=(managed,),
            )
            timer.daemon = True
            managed.kill_timer = timer
            timer.start()
        return True

    def _escalate(self, managed: ManagedProcess) -> None:
        if managed.done.is_set():
            return
        logger.warning(
            "Session %s ignored SIGTERM for %.1fs; sending SIGKILL",
            managed.session_id,
            self.terminate_grace_seconds,
        )
        managed.process.kill()

    def pause(self, session_id: str) -> None:
        """Stop a live process in place (SIGSTOP) and mark the session paused."""

        managed = self._require_live(session_id)
        managed.process.send_signal(signal.SIGSTOP)
        managed.paused = True
        self.store.update_session_status(session_id, SessionStatus.PAUSED)

    def unpause(self, session_id: str) -> None:
        managed = self._require_live(session_id)
        managed.process.send_signal(signal.SIGCONT)
        managed.paused = False
        self.store.update_session_status(session_id, SessionStatus.RUNNING)

    def wait_for_completion(self, session_id: str, timeout_seconds: float | None = None) -> str:
        """Block until the session is terminal and return its stdout.

        On timeout the process is killed, the session is stored as `timeout`
        and `SessionTimeoutError` is raised.
        """

        with self._lock:
            managed = self._processes.get(session_id)
        if managed is None:
            session = self.store.get_session(session_id)
            if session is None:
                raise SessionNotFoundError(f"Session not found: {session_id}")
            if session.status.is_terminal:
                return "".join(
                    log.content
                    for log in self.store.get_session_logs(session_id)
                    if log.role == LogRole.ASSISTANT
                )
            raise SessionNotFoundError(
                f"Session {session_id} has no live process (status={session.status.value})",
            )

        if managed.done.wait(timeout_seconds):
            return managed.output

        logger.warning("Session %s exceeded %ss; killing", session_id, timeout_seconds)
        managed.timed_out = True
        managed.process.kill()
        if not managed.done.wait(_CLASSIFY_WAIT_SECONDS):
            logger.warning("Session %s did not finish classification after kill", session_id)
        raise SessionTimeoutError(
            f"Session {session_id} timed out after {timeout_seconds}s",
            recoverable=True,
            suggestion="Increase the timeout or split the task.",
        )

    def shutdown(self) -> None:
        """Terminate every live process and wait for their classification."""

        with self._lock:
            live = list(self._processes.values())
        if not live:
            return
        logger.info("Shutting down %d live sessions", len(live))
        for managed in live:
            self.terminate(managed.session_id)
        deadline = self.terminate_grace_seconds + _CLASSIFY_WAIT_SECONDS
        for managed in live:
            if not managed.done.wait(deadline):
                managed.process.kill()
                managed.done.wait(_CLASSIFY_WAIT_SECONDS)

    # Introspection

    def _require_live(self, session_id: str) -> ManagedProcess:
        with self._lock:
            managed = self._processes.get(session_id)
        if managed is None:
            raise SessionNotFoundError(f"Session {session_id} has no live process")
        return managed

    def get_process(self, session_id: str) -> ManagedProcess | None:
        with self._lock:
            return self._processes.get(session_id)

    def is_running(self, session_id: str) -> bool:
        with self._lock:
            return session_id in self._processes

    def is_paused(self, session_id: str) -> bool:
        managed = self.get_process(session_id)
        return managed is not None and managed.paused

    @property
    def active_count(self) -> int:
        with self._lock:
            return self._active

    def active_sessions(self) -> list[str]:
        with self._lock:
            return list(self._processes)

    def get_output(self, session_id: str) -> str | None:
        managed = self.get_process(session_id)
        if managed is None:
            return None
        return managed.output


def classify_exit(returncode: int, *, timed_out: bool = False) -> SessionStatus:
    """Map a process exit to a terminal session status."""

    if timed_out:
        return SessionStatus.TIMEOUT
    if returncode == 0:
        return SessionStatus.COMPLETED
    if returncode > 0:
        return SessionStatus.FAILED
    return SessionStatus.CRASHED


def _signal_name(signum: int) -> str:
    try:
        return signal.Signals(signum).name
    except ValueError:
        return str(signum)
