"""Deterministic classification of failed provider output for fallback."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class FailureKind(str, Enum):
    """Coarse reason a provider run failed."""

    RATE_LIMITED = "rate_limited"
    QUOTA_EXHAUSTED = "quota_exhausted"
    OTHER = "other"


_QUOTA_PATTERNS: tuple[str, ...] = (
    "quota",
    "resource_exhausted",
    "insufficient credits",
    "usage limit",
    "credit balance",
)
_RATE_LIMIT_PATTERNS: tuple[str, ...] = (
    "too many requests",
    "rate limit",
    "rate-limit",
    "ratelimit",
    "429",
    "please retry",
    "try again later",
    "overloaded",
)


@dataclass(slots=True)
class FailureClassification:
    """Normalized failure classification result."""

    kind: FailureKind
    matched_pattern: str | None

    @property
    def should_fall_back(self) -> bool:
        return self.kind in (FailureKind.RATE_LIMITED, FailureKind.QUOTA_EXHAUSTED)


def classify_failure(*, output: str, stderr: str = "") -> FailureClassification:
    """Classify a failed run from its captured output."""

    haystack = f"{stderr}\n{output}".lower()

    pattern = _first_match(haystack, _QUOTA_PATTERNS)
    if pattern is not None:
        return FailureClassification(kind=FailureKind.QUOTA_EXHAUSTED, matched_pattern=pattern)

    pattern = _first_match(haystack, _RATE_LIMIT_PATTERNS)
    if pattern is not None:
        return FailureClassification(kind=FailureKind.RATE_LIMITED, matched_pattern=pattern)

    return FailureClassification(kind=FailureKind.OTHER, matched_pattern=None)


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
