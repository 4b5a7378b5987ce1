"""Shared test fixtures."""

from __future__ import annotations

import re
import sys
import time
from collections.abc import Iterator
from pathlib import Path

import pytest

from climux.config import ProviderSettings
from climux.models import ParsedOutput, ProviderCapabilities, RunOptions, TokenUsage
from climux.providers.base import BaseProvider
from climux.providers.parsing import extract_session_id
from climux.session_store import SessionStore
from climux.workspace import Workspace

MISSING_COMMAND = "climux-test-missing-binary"

_TOKENS = re.compile(r"tokens:\s*(\d+)\s*in,\s*(\d+)\s*out", re.IGNORECASE)
_COST = re.compile(r"cost:\s*\$([\d.]+)", re.IGNORECASE)


class ScriptProvider(BaseProvider):
    """Provider that runs a Python snippet through the current interpreter.

    The task text is passed to the snippet as `sys.argv[1]`.
    """

    def __init__(
        self,
        name: str,
        script: str,
        *,
        settings: ProviderSettings | None = None,
        installed: bool = True,
        capabilities: ProviderCapabilities | None = None,
    ) -> None:
        super().__init__(settings)
        self.name = name
        self.script = script
        self.installed = installed
        if capabilities is not None:
            self.capabilities = capabilities

    @property
    def command(self) -> str:
        return sys.executable if self.installed else MISSING_COMMAND

    def build_args(self, task: str, options: RunOptions) -> list[str]:
        return ["-c", self.script, task]

    def build_resume_args(self, native_session_id: str, options: RunOptions) -> list[str]:
        return ["-c", self.script, native_session_id]

    def parse_output(self, output: str) -> ParsedOutput:
        result = ParsedOutput()
        match = _TOKENS.search(output)
        if match is not None:
            result.tokens = TokenUsage(int(match.group(1)), int(match.group(2)))
        cost = _COST.search(output)
        if cost is not None:
            result.cost = float(cost.group(1))
        result.native_session_id = extract_session_id(output)
        return result


class FakeProvider(BaseProvider):
    """Provider with a fixed availability answer; never meant to be spawned."""

    def __init__(self, name: str, *, available: bool = True) -> None:
        super().__init__(None)
        self.name = name
        self.available = available
        self.detect_calls = 0

    @property
    def command(self) -> str:
        return MISSING_COMMAND

    def detect(self) -> bool:
        self.detect_calls += 1
        return self.available

    def build_args(self, task: str, options: RunOptions) -> list[str]:
        return [task]

    def build_resume_args(self, native_session_id: str, options: RunOptions) -> list[str]:
        return [native_session_id]

    def parse_output(self, output: str) -> ParsedOutput:
        return ParsedOutput()


@pytest.fixture()
def store(tmp_path: Path) -> Iterator[SessionStore]:
    session_store = SessionStore(tmp_path / "climux.db")
    session_store.init_schema()
    yield session_store
    session_store.close()


@pytest.fixture()
def workspace(tmp_path: Path) -> Workspace:
    path = tmp_path / "workspace"
    path.mkdir()
    return Workspace.from_path(path)


def wait_until(predicate, timeout: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()
