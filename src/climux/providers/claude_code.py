"""Adapter for the Claude Code CLI."""

from __future__ import annotations

import re
from pathlib import Path

from climux.models import ParsedOutput, RunMode, RunOptions, TokenUsage
from climux.providers.base import BaseProvider
from climux.providers.parsing import extract_files, extract_session_id, to_float, to_int

_TOKENS = re.compile(r"tokens?:\s*([\d,]+)\s*in,?\s*([\d,]+)\s*out", re.IGNORECASE)
_JSON_INPUT_TOKENS = re.compile(r'"input_tokens"\s*:\s*(\d+)', re.IGNORECASE)
_JSON_OUTPUT_TOKENS = re.compile(r'"output_tokens"\s*:\s*(\d+)', re.IGNORECASE)
_COST = re.compile(r"cost:\s*\$?([\d.]+)", re.IGNORECASE)
_JSON_COST = re.compile(r'"total_cost_usd"\s*:\s*([\d.]+)', re.IGNORECASE)
_FILE_PATTERNS = (re.compile(r"(?:created|modified|deleted|updated):\s*([^\n]+)", re.IGNORECASE),)

_TASK_FLAGS = ("--print", "--dangerously-skip-permissions")


class ClaudeCodeProvider(BaseProvider):
    name = "claude-code"
    default_command = "claude"
    completion_patterns = (
        re.compile(r"task completed", re.IGNORECASE),
        re.compile(r"done!", re.IGNORECASE),
        re.compile(r"finished", re.IGNORECASE),
        re.compile(r"all done", re.IGNORECASE),
        re.compile(r"successfully", re.IGNORECASE),
        re.compile(r"\[completed\]", re.IGNORECASE),
    )

    def build_args(self, task: str, options: RunOptions) -> list[str]:
        args: list[str] = []
        if options.mode == RunMode.TASK:
            args.extend(_TASK_FLAGS)
        args.append(task)
        return args

    def build_resume_args(self, native_session_id: str, options: RunOptions) -> list[str]:
        args = ["--resume", native_session_id]
        if options.mode == RunMode.TASK:
            args.extend(_TASK_FLAGS)
        return args

    def parse_output(self, output: str) -> ParsedOutput:
        result = ParsedOutput()

        match = _TOKENS.search(output)
        if match is not None:
            tokens_in, tokens_out = to_int(match.group(1)), to_int(match.group(2))
            if tokens_in is not None and tokens_out is not None:
                result.tokens = TokenUsage(tokens_in=tokens_in, tokens_out=tokens_out)
        else:
            json_in = _JSON_INPUT_TOKENS.search(output)
            json_out = _JSON_OUTPUT_TOKENS.search(output)
            if json_in is not None or json_out is not None:
                result.tokens = TokenUsage(
                    tokens_in=int(json_in.group(1)) if json_in is not None else 0,
                    tokens_out=int(json_out.group(1)) if json_out is not None else 0,
                )

        cost_match = _JSON_COST.search(output) or _COST.search(output)
        if cost_match is not None:
            result.cost = to_float(cost_match.group(1))

        result.files_changed = extract_files(_FILE_PATTERNS, output)
        result.native_session_id = extract_session_id(output)
        return result

    def get_mcp_config_path(self) -> str | None:
        return super().get_mcp_config_path() or str(Path.home() / ".claude" / "mcp_settings.json")
