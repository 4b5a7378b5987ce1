"""Provider adapter contract shared by every external coding CLI."""

from __future__ import annotations

import re
import subprocess
from abc import ABC, abstractmethod

from climux.config import ProviderPricing, ProviderSettings
from climux.models import ParsedOutput, ProviderCapabilities, RunOptions

DETECT_TIMEOUT_SECONDS = 10


class BaseProvider(ABC):
    """Strategy object wrapping one external coding CLI executable."""

    name: str = ""
    default_command: str = ""
    capabilities: ProviderCapabilities = ProviderCapabilities()
    completion_patterns: tuple[re.Pattern[str], ...] = ()

    def __init__(self, settings: ProviderSettings | None = None) -> None:
        self.settings = settings

    @property
    def command(self) -> str:
        if self.settings is not None and self.settings.command.strip():
            return self.settings.command.strip()
        return self.default_command

    def detect(self) -> bool:
        """Return True when `<command> --version` runs successfully."""

        try:
            completed = subprocess.run(  # noqa: S603
                [self.command, "--version"],
                check=False,
                capture_output=True,
                timeout=DETECT_TIMEOUT_SECONDS,
            )
        except (OSError, subprocess.SubprocessError):
            return False
        return completed.returncode == 0

    @abstractmethod
    def build_args(self, task: str, options: RunOptions) -> list[str]:
        """Argument vector for a fresh invocation."""

    @abstractmethod
    def build_resume_args(self, native_session_id: str, options: RunOptions) -> list[str]:
        """Argument vector continuing a tool-native session."""

    @abstractmethod
    def parse_output(self, output: str) -> ParsedOutput:
        """Extract usage signals from one output chunk."""

    def is_task_complete(self, output: str) -> bool:
        return any(pattern.search(output) for pattern in self.completion_patterns)

    def get_env(self) -> dict[str, str]:
        if self.settings is None:
            return {}
        return dict(self.settings.env)

    def get_mcp_config_path(self) -> str | None:
        if self.settings is None:
            return None
        return self.settings.mcp_config_path

    def get_skills_config_path(self) -> str | None:
        if self.settings is None:
            return None
        return self.settings.skills_config_path

    def get_pricing(self) -> ProviderPricing | None:
        if self.settings is None:
            return None
        return self.settings.pricing

    def estimate_cost(self, tokens_in: int, tokens_out: int) -> float:
        """Estimate USD cost from per-1K pricing; 0.0 when unpriced."""

        pricing = self.get_pricing()
        if pricing is None:
            return 0.0
        return (tokens_in / 1000) * pricing.input_per_1k + (
            tokens_out / 1000
        ) * pricing.output_per_1k

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, command={self.command!r})"
