from __future__ import annotations

import threading

import allure
import pytest
from conftest import ScriptProvider, wait_until

from climux.config import ProviderPricing, ProviderSettings
from climux.errors import (
    CapacityExceededError,
    ProviderUnavailableError,
    SessionNotFoundError,
    SessionNotInteractiveError,
    SessionTimeoutError,
)
from climux.models import LogRole, ProviderCapabilities, RunMode, RunOptions, SessionStatus
from climux.session_store import SessionStore
from climux.supervisor import ProcessSupervisor, classify_exit
from climux.workspace import Workspace

pytestmark = [
    allure.epic("Process Lifecycle"),
    allure.feature("Process Supervisor"),
]

SLEEP_SCRIPT = "import time; time.sleep(30)"


@pytest.fixture()
def supervisor(store: SessionStore):
    instance = ProcessSupervisor(store, max_active_sessions=5, terminate_grace_seconds=1.0)
    yield instance
    instance.shutdown()


def _run(
    supervisor: ProcessSupervisor,
    store: SessionStore,
    provider: ScriptProvider,
    workspace: Workspace,
    *,
    task: str = "task",
    mode: RunMode = RunMode.TASK,
    env: dict[str, str] | None = None,
) -> str:
    session = store.create_session(workspace.path, provider.name, task)
    supervisor.spawn(
        session.id,
        provider,
        task,
        RunOptions(workspace=workspace, mode=mode, env=env or {}),
    )
    return session.id


@pytest.mark.parametrize(
    ("returncode", "timed_out", "expected"),
    [
        (0, False, SessionStatus.COMPLETED),
        (1, False, SessionStatus.FAILED),
        (2, False, SessionStatus.FAILED),
        (-9, False, SessionStatus.CRASHED),
        (-15, False, SessionStatus.CRASHED),
        (-9, True, SessionStatus.TIMEOUT),
        (0, True, SessionStatus.TIMEOUT),
    ],
)
def test_classify_exit(returncode: int, timed_out: bool, expected: SessionStatus) -> None:
    assert classify_exit(returncode, timed_out=timed_out) == expected


def test_successful_process_completes_and_streams_output(
    supervisor: ProcessSupervisor,
    store: SessionStore,
    workspace: Workspace,
) -> None:
    provider = ScriptProvider("script", "import sys; print('hello ' + sys.argv[1])")
    session_id = _run(supervisor, store, provider, workspace, task="world")

    output = supervisor.wait_for_completion(session_id, timeout_seconds=30)

    assert output.strip() == "hello world"
    session = store.get_session(session_id)
    assert session is not None
    assert session.status == SessionStatus.COMPLETED
    assert session.pid is None
    assistant = [log.content for log in store.get_session_logs(session_id) if log.role == LogRole.ASSISTANT]
    assert "".join(assistant).strip() == "hello world"
    assert not supervisor.is_running(session_id)
    assert supervisor.active_count == 0


def test_process_runs_in_workspace_directory(
    supervisor: ProcessSupervisor,
    store: SessionStore,
    workspace: Workspace,
) -> None:
    provider = ScriptProvider("script", "import os; print(os.getcwd())")
    session_id = _run(supervisor, store, provider, workspace)

    output = supervisor.wait_for_completion(session_id, timeout_seconds=30)

    assert output.strip() == workspace.path


def test_nonzero_exit_is_failed_and_stderr_is_system_log(
    supervisor: ProcessSupervisor,
    store: SessionStore,
    workspace: Workspace,
) -> None:
    provider = ScriptProvider(
        "script",
        "import sys; sys.stderr.write('boom\\n'); sys.stderr.flush(); sys.exit(1)",
    )
    session_id = _run(supervisor, store, provider, workspace)

    supervisor.wait_for_completion(session_id, timeout_seconds=30)

    session = store.get_session(session_id)
    assert session is not None
    assert session.status == SessionStatus.FAILED
    system_logs = [log.content for log in store.get_session_logs(session_id) if log.role == LogRole.SYSTEM]
    assert any("boom" in content for content in system_logs)
    assert any("exited with code 1" in content for content in system_logs)


def test_killed_process_is_crashed(
    supervisor: ProcessSupervisor,
    store: SessionStore,
    workspace: Workspace,
) -> None:
    provider = ScriptProvider("script", SLEEP_SCRIPT)
    session_id = _run(supervisor, store, provider, workspace)
    assert supervisor.is_running(session_id)

    assert supervisor.terminate(session_id, force=True) is True
    supervisor.wait_for_completion(session_id, timeout_seconds=30)

    session = store.get_session(session_id)
    assert session is not None
    assert session.status == SessionStatus.CRASHED
    assert session.pid is None


def test_graceful_terminate_stops_process(
    supervisor: ProcessSupervisor,
    store: SessionStore,
    workspace: Workspace,
) -> None:
    provider = ScriptProvider("script", SLEEP_SCRIPT)
    session_id = _run(supervisor, store, provider, workspace)

    supervisor.terminate(session_id)
    supervisor.wait_for_completion(session_id, timeout_seconds=30)

    assert not supervisor.is_running(session_id)
    assert supervisor.terminate(session_id) is False


def test_concurrency_ceiling_rejects_exactly_one_of_three_spawns(
    store: SessionStore,
    workspace: Workspace,
) -> None:
    supervisor = ProcessSupervisor(store, max_active_sessions=2, terminate_grace_seconds=0.5)
    provider = ScriptProvider("script", SLEEP_SCRIPT)
    sessions = [store.create_session(workspace.path, provider.name, "t") for _ in range(3)]
    barrier = threading.Barrier(3)
    errors: list[Exception] = []
    spawned: list[str] = []
    lock = threading.Lock()

    def _spawn(session_id: str) -> None:
        barrier.wait()
        try:
            supervisor.spawn(session_id, provider, "t", RunOptions(workspace=workspace))
        except CapacityExceededError as error:
            with lock:
                errors.append(error)
        else:
            with lock:
                spawned.append(session_id)

    threads = [threading.Thread(target=_spawn, args=(session.id,)) for session in sessions]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=30)

    try:
        assert len(errors) == 1
        assert len(spawned) == 2
        assert supervisor.active_count == 2
    finally:
        supervisor.shutdown()

    assert supervisor.active_count == 0
    for session_id in spawned:
        session = store.get_session(session_id)
        assert session is not None
        assert session.status.is_terminal


def test_slot_is_released_after_exit(store: SessionStore, workspace: Workspace) -> None:
    supervisor = ProcessSupervisor(store, max_active_sessions=1)
    provider = ScriptProvider("script", "print('ok')")

    for _ in range(3):
        session_id = _run(supervisor, store, provider, workspace)
        supervisor.wait_for_completion(session_id, timeout_seconds=30)

    assert supervisor.active_count == 0


def test_send_writes_line_to_chat_session(
    supervisor: ProcessSupervisor,
    store: SessionStore,
    workspace: Workspace,
) -> None:
    provider = ScriptProvider(
        "script",
        "import sys; line = sys.stdin.readline(); print('got:' + line.strip()); sys.stdout.flush()",
    )
    session_id = _run(supervisor, store, provider, workspace, mode=RunMode.CHAT)

    supervisor.send(session_id, "hello")
    output = supervisor.wait_for_completion(session_id, timeout_seconds=30)

    assert output.strip() == "got:hello"
    user_logs = [log.content for log in store.get_session_logs(session_id) if log.role == LogRole.USER]
    assert user_logs == ["hello"]


def test_send_to_task_session_is_rejected(
    supervisor: ProcessSupervisor,
    store: SessionStore,
    workspace: Workspace,
) -> None:
    provider = ScriptProvider("script", SLEEP_SCRIPT)
    session_id = _run(supervisor, store, provider, workspace)

    with pytest.raises(SessionNotInteractiveError):
        supervisor.send(session_id, "hello")

    supervisor.terminate(session_id, force=True)


def test_send_to_unknown_session_is_rejected(supervisor: ProcessSupervisor) -> None:
    with pytest.raises(SessionNotFoundError):
        supervisor.send("missing", "hello")


def test_wait_timeout_kills_process_and_stores_timeout(
    supervisor: ProcessSupervisor,
    store: SessionStore,
    workspace: Workspace,
) -> None:
    provider = ScriptProvider("script", SLEEP_SCRIPT)
    session_id = _run(supervisor, store, provider, workspace)

    with pytest.raises(SessionTimeoutError):
        supervisor.wait_for_completion(session_id, timeout_seconds=0.3)

    session = store.get_session(session_id)
    assert session is not None
    assert session.status == SessionStatus.TIMEOUT
    assert not supervisor.is_running(session_id)


def test_wait_on_finished_session_returns_stored_output(
    supervisor: ProcessSupervisor,
    store: SessionStore,
    workspace: Workspace,
) -> None:
    provider = ScriptProvider("script", "print('persisted')")
    session_id = _run(supervisor, store, provider, workspace)
    supervisor.wait_for_completion(session_id, timeout_seconds=30)

    assert supervisor.wait_for_completion(session_id).strip() == "persisted"


def test_wait_on_unknown_session_raises(supervisor: ProcessSupervisor, store: SessionStore) -> None:
    with pytest.raises(SessionNotFoundError):
        supervisor.wait_for_completion("missing")

    pending = store.create_session("/work/a", "script")
    with pytest.raises(SessionNotFoundError):
        supervisor.wait_for_completion(pending.id)


def test_parsed_output_updates_stats_and_native_session_id(
    supervisor: ProcessSupervisor,
    store: SessionStore,
    workspace: Workspace,
) -> None:
    provider = ScriptProvider(
        "script",
        "import sys; sys.stdout.write('Tokens: 100 in, 50 out cost: $0.25 session_id: abc123def\\n')",
    )
    session_id = _run(supervisor, store, provider, workspace)

    supervisor.wait_for_completion(session_id, timeout_seconds=30)

    stats = store.get_session_stats(session_id)
    assert stats is not None
    assert stats.tokens_in == 100
    assert stats.tokens_out == 50
    assert stats.cost_estimate == pytest.approx(0.25)
    session = store.get_session(session_id)
    assert session is not None
    assert session.native_session_id == "abc123def"


def test_cost_is_estimated_from_pricing_when_not_reported(
    supervisor: ProcessSupervisor,
    store: SessionStore,
    workspace: Workspace,
) -> None:
    provider = ScriptProvider(
        "script",
        "import sys; sys.stdout.write('Tokens: 1000 in, 500 out\\n')",
        settings=ProviderSettings(
            name="script",
            command="python",
            pricing=ProviderPricing(input_per_1k=0.01, output_per_1k=0.02),
        ),
    )
    session_id = _run(supervisor, store, provider, workspace)

    supervisor.wait_for_completion(session_id, timeout_seconds=30)

    stats = store.get_session_stats(session_id)
    assert stats is not None
    assert stats.cost_estimate == pytest.approx(0.02)


def test_parser_failure_does_not_break_session(
    supervisor: ProcessSupervisor,
    store: SessionStore,
    workspace: Workspace,
) -> None:
    class BrokenParser(ScriptProvider):
        def parse_output(self, output: str):
            raise RuntimeError("parser bug")

    provider = BrokenParser("script", "print('still fine')")
    session_id = _run(supervisor, store, provider, workspace)

    output = supervisor.wait_for_completion(session_id, timeout_seconds=30)

    assert output.strip() == "still fine"
    session = store.get_session(session_id)
    assert session is not None
    assert session.status == SessionStatus.COMPLETED


def test_environment_layers_ambient_provider_and_options(
    supervisor: ProcessSupervisor,
    store: SessionStore,
    workspace: Workspace,
    monkeypatch,
) -> None:
    monkeypatch.setenv("CLIMUX_T_A", "ambient")
    monkeypatch.setenv("CLIMUX_T_B", "ambient")
    monkeypatch.setenv("CLIMUX_T_C", "ambient")
    provider = ScriptProvider(
        "script",
        "import os; print(' '.join(os.environ[k] for k in ('CLIMUX_T_A', 'CLIMUX_T_B', 'CLIMUX_T_C')))",
        settings=ProviderSettings(
            name="script",
            command="python",
            env={"CLIMUX_T_A": "provider", "CLIMUX_T_B": "provider"},
        ),
    )
    session_id = _run(
        supervisor,
        store,
        provider,
        workspace,
        env={"CLIMUX_T_B": "options"},
    )

    output = supervisor.wait_for_completion(session_id, timeout_seconds=30)

    assert output.strip() == "provider options ambient"


def test_missing_executable_is_unavailable_and_crashed(
    supervisor: ProcessSupervisor,
    store: SessionStore,
    workspace: Workspace,
) -> None:
    provider = ScriptProvider("script", "print('never')", installed=False)
    session = store.create_session(workspace.path, provider.name, "t")

    with pytest.raises(ProviderUnavailableError):
        supervisor.spawn(session.id, provider, "t", RunOptions(workspace=workspace))

    stored = store.get_session(session.id)
    assert stored is not None
    assert stored.status == SessionStatus.CRASHED
    assert supervisor.active_count == 0


def test_resume_requires_capability(
    supervisor: ProcessSupervisor,
    store: SessionStore,
    workspace: Workspace,
) -> None:
    provider = ScriptProvider(
        "script",
        "print('x')",
        capabilities=ProviderCapabilities(resume=False),
    )
    session = store.create_session(workspace.path, provider.name, "t")

    with pytest.raises(ProviderUnavailableError):
        supervisor.resume(session.id, provider, "native", RunOptions(workspace=workspace))


def test_resume_passes_native_session_id(
    supervisor: ProcessSupervisor,
    store: SessionStore,
    workspace: Workspace,
) -> None:
    provider = ScriptProvider("script", "import sys; print('resumed ' + sys.argv[1])")
    session = store.create_session(workspace.path, provider.name, "t")

    supervisor.resume(session.id, provider, "native-42", RunOptions(workspace=workspace))
    output = supervisor.wait_for_completion(session.id, timeout_seconds=30)

    assert output.strip() == "resumed native-42"


def test_pause_and_unpause_update_status(
    supervisor: ProcessSupervisor,
    store: SessionStore,
    workspace: Workspace,
) -> None:
    provider = ScriptProvider("script", SLEEP_SCRIPT)
    session_id = _run(supervisor, store, provider, workspace)

    supervisor.pause(session_id)
    paused = store.get_session(session_id)
    assert paused is not None
    assert paused.status == SessionStatus.PAUSED
    assert supervisor.is_paused(session_id)

    supervisor.unpause(session_id)
    resumed = store.get_session(session_id)
    assert resumed is not None
    assert resumed.status == SessionStatus.RUNNING

    supervisor.terminate(session_id, force=True)
    assert wait_until(lambda: not supervisor.is_running(session_id))


def test_output_callback_receives_chunks(store: SessionStore, workspace: Workspace) -> None:
    seen: list[tuple[str, str]] = []
    supervisor = ProcessSupervisor(
        store,
        on_output=lambda _session_id, stream, chunk: seen.append((stream, chunk)),
    )
    provider = ScriptProvider("script", "print('visible')")
    session_id = _run(supervisor, store, provider, workspace)

    supervisor.wait_for_completion(session_id, timeout_seconds=30)

    assert "".join(chunk for stream, chunk in seen if stream == "stdout").strip() == "visible"


def test_live_session_introspection(
    supervisor: ProcessSupervisor,
    store: SessionStore,
    workspace: Workspace,
) -> None:
    provider = ScriptProvider(
        "script",
        "import sys, time; print('partial'); sys.stdout.flush(); time.sleep(30)",
    )
    session_id = _run(supervisor, store, provider, workspace)

    assert supervisor.active_sessions() == [session_id]
    assert wait_until(lambda: (supervisor.get_output(session_id) or "").strip() == "partial")

    supervisor.terminate(session_id, force=True)
    supervisor.wait_for_completion(session_id, timeout_seconds=30)

    assert supervisor.active_sessions() == []
    assert supervisor.get_output(session_id) is None
