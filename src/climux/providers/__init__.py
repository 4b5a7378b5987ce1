"""Provider adapters for external coding CLIs."""

from climux.providers.base import BaseProvider
from climux.providers.claude_code import ClaudeCodeProvider
from climux.providers.codex import CodexProvider
from climux.providers.gemini_cli import GeminiCliProvider
from climux.providers.opencode import OpenCodeProvider
from climux.providers.registry import ProviderRegistry, default_registry

__all__ = [
    "BaseProvider",
    "ClaudeCodeProvider",
    "CodexProvider",
    "GeminiCliProvider",
    "OpenCodeProvider",
    "ProviderRegistry",
    "default_registry",
]
