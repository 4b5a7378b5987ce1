"""Adapter for the OpenAI Codex CLI."""

from __future__ import annotations

import re
from pathlib import Path

from climux.models import ParsedOutput, RunMode, RunOptions, TokenUsage
from climux.providers.base import BaseProvider
from climux.providers.parsing import extract_files, extract_session_id, to_int

_TOKENS_USED = re.compile(r"tokens?\s*used:?\s*([\d,]+)", re.IGNORECASE)
_INPUT_OUTPUT = re.compile(r"input:\s*([\d,]+).*output:\s*([\d,]+)", re.IGNORECASE)
_FILE_PATTERNS = (
    re.compile(
        r"(?:wrote|created|modified|updated)\s+(?:file\s+)?['\"]?([^'\":\n]+\.[a-z]+)['\"]?",
        re.IGNORECASE,
    ),
    re.compile(
        r"(?:saving|writing)\s+(?:to\s+)?['\"]?([^'\":\n]+\.[a-z]+)['\"]?",
        re.IGNORECASE,
    ),
)

# Codex reports a single total; split it into an estimated input/output share.
_INPUT_SHARE = 0.3


class CodexProvider(BaseProvider):
    name = "codex"
    default_command = "codex"
    completion_patterns = (
        re.compile(r"completed successfully", re.IGNORECASE),
        re.compile(r"task done", re.IGNORECASE),
        re.compile(r"finished", re.IGNORECASE),
        re.compile(r"all changes applied", re.IGNORECASE),
        re.compile(r"execution complete", re.IGNORECASE),
    )

    def build_args(self, task: str, options: RunOptions) -> list[str]:
        args = ["exec"]
        if options.mode == RunMode.TASK:
            args.append("--full-auto")
        args.append(task)
        return args

    def build_resume_args(self, native_session_id: str, options: RunOptions) -> list[str]:
        args = ["exec", "--continue", native_session_id]
        if options.mode == RunMode.TASK:
            args.append("--full-auto")
        return args

    def parse_output(self, output: str) -> ParsedOutput:
        result = ParsedOutput()

        total_match = _TOKENS_USED.search(output)
        total = to_int(total_match.group(1)) if total_match is not None else None
        if total is not None:
            tokens_in = int(total * _INPUT_SHARE)
            result.tokens = TokenUsage(tokens_in=tokens_in, tokens_out=total - tokens_in)
        else:
            match = _INPUT_OUTPUT.search(output)
            if match is not None:
                tokens_in, tokens_out = to_int(match.group(1)), to_int(match.group(2))
                if tokens_in is not None and tokens_out is not None:
                    result.tokens = TokenUsage(tokens_in=tokens_in, tokens_out=tokens_out)

        result.files_changed = extract_files(_FILE_PATTERNS, output)
        result.native_session_id = extract_session_id(output)
        return result

    def get_mcp_config_path(self) -> str | None:
        return super().get_mcp_config_path() or str(Path.home() / ".codex" / "mcp.json")

    def get_skills_config_path(self) -> str | None:
        return super().get_skills_config_path() or str(Path.home() / ".codex" / "skills.json")
