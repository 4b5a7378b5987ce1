"""Regex helpers shared by provider output parsers."""

from __future__ import annotations

import re

_SESSION_ID = re.compile(
    r"(?:\"session_?id\"\s*:\s*\"|session[ _]?id\s*[:=]\s*)([0-9a-zA-Z][\w-]{5,})",
    re.IGNORECASE,
)


def to_int(raw: str | None) -> int | None:
    """Parse a digit group that may carry thousands separators."""

    if raw is None:
        return None
    value = raw.replace(",", "").strip()
    if not value.isdigit():
        return None
    return int(value)


def to_float(raw: str | None) -> float | None:
    if raw is None:
        return None
    value = raw.replace(",", "").strip().rstrip(".")
    try:
        return float(value)
    except ValueError:
        return None


def extract_files(
    patterns: tuple[re.Pattern[str], ...],
    text: str,
    *,
    skip_urls: bool = False,
) -> list[str] | None:
    """Collect distinct file names in first-seen order, or None if none match."""

    files: list[str] = []
    for pattern in patterns:
        for match in pattern.finditer(text):
            candidate = match.group(1).strip()
            if not candidate:
                continue
            if skip_urls and (candidate.startswith("http") or "://" in candidate):
                continue
            if candidate not in files:
                files.append(candidate)
    return files or None


def extract_session_id(text: str) -> str | None:
    match = _SESSION_ID.search(text)
    if match is None:
        return None
    return match.group(1)
