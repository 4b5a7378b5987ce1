"""Adapter for the OpenCode CLI.

OpenCode is itself a front end for several model backends; the backend is
selected with `-m` and comes from `ProviderSettings.inner_provider`.
"""

from __future__ import annotations

import re
from pathlib import Path

from climux.config import ProviderSettings
from climux.models import ParsedOutput, RunMode, RunOptions, TokenUsage
from climux.providers.base import BaseProvider
from climux.providers.parsing import extract_files, extract_session_id, to_float, to_int

DEFAULT_INNER_PROVIDER = "anthropic"

_TOKENS = re.compile(
    r"tokens?:?\s*([\d,]+)\s*(?:input|in).*?([\d,]+)\s*(?:output|out)",
    re.IGNORECASE,
)
_USAGE = re.compile(r"usage:?\s*([\d,]+)\s*/\s*([\d,]+)", re.IGNORECASE)
_COST = re.compile(r"cost:?\s*\$?([\d.]+)", re.IGNORECASE)
_SPENT = re.compile(r"spent:?\s*\$?([\d.]+)", re.IGNORECASE)
_FILE_PATTERNS = (
    re.compile(
        r"(?:created|wrote|modified|updated|edited)\s+['\"`]?([^'\"`\n]+\.[a-z]+)['\"`]?",
        re.IGNORECASE,
    ),
    re.compile(r"(?:file|path):?\s*['\"`]?([^'\"`\n]+\.[a-z]+)['\"`]?", re.IGNORECASE),
)


class OpenCodeProvider(BaseProvider):
    name = "opencode"
    default_command = "opencode"
    completion_patterns = (
        re.compile(r"completed", re.IGNORECASE),
        re.compile(r"done", re.IGNORECASE),
        re.compile(r"finished", re.IGNORECASE),
        re.compile(r"success", re.IGNORECASE),
        re.compile(r"all changes applied", re.IGNORECASE),
    )

    def __init__(self, settings: ProviderSettings | None = None) -> None:
        super().__init__(settings)
        inner = settings.inner_provider if settings is not None else None
        self.inner_provider = inner or DEFAULT_INNER_PROVIDER

    def build_args(self, task: str, options: RunOptions) -> list[str]:
        return ["run", task, *self._common_flags(options)]

    def build_resume_args(self, native_session_id: str, options: RunOptions) -> list[str]:
        return ["run", "-s", native_session_id, *self._common_flags(options)]

    def _common_flags(self, options: RunOptions) -> list[str]:
        flags = ["-m", self.inner_provider]
        if options.mode == RunMode.TASK:
            flags.extend(["--format", "json"])
        return flags

    def parse_output(self, output: str) -> ParsedOutput:
        result = ParsedOutput()

        match = _TOKENS.search(output) or _USAGE.search(output)
        if match is not None:
            tokens_in, tokens_out = to_int(match.group(1)), to_int(match.group(2))
            if tokens_in is not None and tokens_out is not None:
                result.tokens = TokenUsage(tokens_in=tokens_in, tokens_out=tokens_out)

        cost_match = _COST.search(output) or _SPENT.search(output)
        if cost_match is not None:
            result.cost = to_float(cost_match.group(1))

        result.files_changed = extract_files(_FILE_PATTERNS, output, skip_urls=True)
        result.native_session_id = extract_session_id(output)
        return result

    def get_mcp_config_path(self) -> str | None:
        return super().get_mcp_config_path() or str(
            Path.home() / ".config" / "opencode" / "mcp.json",
        )

    def get_skills_config_path(self) -> str | None:
        return super().get_skills_config_path() or str(Path.home() / ".config" / "opencode" / "skills")
