"""Adapter for the Google Gemini CLI."""

from __future__ import annotations

import re
from pathlib import Path

from climux.models import ParsedOutput, RunMode, RunOptions, TokenUsage
from climux.providers.base import BaseProvider
from climux.providers.parsing import extract_files, extract_session_id, to_float, to_int

_TOKENS = re.compile(
    r"tokens?\s*(?:count)?:?\s*input[=:]?\s*([\d,]+).*output[=:]?\s*([\d,]+)",
    re.IGNORECASE,
)
_COST = re.compile(r"cost:?\s*\$?([\d.]+)", re.IGNORECASE)
_FILE_PATTERNS = (
    re.compile(
        r"(?:created|wrote|modified|updated|saved)\s+(?:file\s+)?['\"`]?([^'\"`\n:]+\.[a-z]+)['\"`]?",
        re.IGNORECASE,
    ),
    re.compile(r"file:\s*['\"`]?([^'\"`\n]+\.[a-z]+)['\"`]?", re.IGNORECASE),
)

_TASK_FLAG = "--sandbox=false"


class GeminiCliProvider(BaseProvider):
    name = "gemini-cli"
    default_command = "gemini"
    completion_patterns = (
        re.compile(r"completed", re.IGNORECASE),
        re.compile(r"done", re.IGNORECASE),
        re.compile(r"finished", re.IGNORECASE),
        re.compile(r"success", re.IGNORECASE),
        re.compile(r"task complete", re.IGNORECASE),
    )

    def build_args(self, task: str, options: RunOptions) -> list[str]:
        args = ["-p", task]
        if options.mode == RunMode.TASK:
            args.append(_TASK_FLAG)
        return args

    def build_resume_args(self, native_session_id: str, options: RunOptions) -> list[str]:
        args = ["--resume", native_session_id]
        if options.mode == RunMode.TASK:
            args.append(_TASK_FLAG)
        return args

    def parse_output(self, output: str) -> ParsedOutput:
        result = ParsedOutput()

        match = _TOKENS.search(output)
        if match is not None:
            tokens_in, tokens_out = to_int(match.group(1)), to_int(match.group(2))
            if tokens_in is not None and tokens_out is not None:
                result.tokens = TokenUsage(tokens_in=tokens_in, tokens_out=tokens_out)

        cost_match = _COST.search(output)
        if cost_match is not None:
            result.cost = to_float(cost_match.group(1))

        result.files_changed = extract_files(_FILE_PATTERNS, output, skip_urls=True)
        result.native_session_id = extract_session_id(output)
        return result

    def get_mcp_config_path(self) -> str | None:
        return super().get_mcp_config_path() or str(Path.home() / ".gemini" / "mcp.json")

    def get_skills_config_path(self) -> str | None:
        return super().get_skills_config_path() or str(Path.home() / ".gemini" / "skills.json")
