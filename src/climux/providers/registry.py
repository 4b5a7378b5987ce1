"""Name -> factory registry for provider adapters."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping

from climux.config import ProviderSettings
from climux.errors import ProviderNotFoundError
from climux.models import ProviderKind
from climux.providers.base import BaseProvider
from climux.providers.claude_code import ClaudeCodeProvider
from climux.providers.codex import CodexProvider
from climux.providers.gemini_cli import GeminiCliProvider
from climux.providers.opencode import OpenCodeProvider

logger = logging.getLogger(__name__)

ProviderFactory = Callable[[ProviderSettings | None], BaseProvider]


class ProviderRegistry:
    """Keeps provider factories in registration order."""

    def __init__(self) -> None:
        self._factories: dict[str, ProviderFactory] = {}

    def register(self, name: str, factory: ProviderFactory) -> None:
        """Register (or replace) the factory for `name`."""

        self._factories[name] = factory

    def names(self) -> list[str]:
        return list(self._factories)

    def has(self, name: str) -> bool:
        return name in self._factories

    def create(self, name: str, settings: ProviderSettings | None = None) -> BaseProvider:
        factory = self._factories.get(name)
        if factory is None:
            raise ProviderNotFoundError(
                f"Unknown provider: {name!r}",
                suggestion=f"Use one of {tuple(self._factories)}.",
            )
        return factory(settings)

    def create_providers(
        self,
        configs: Mapping[str, ProviderSettings],
    ) -> dict[str, BaseProvider]:
        """Instantiate every enabled, registered provider in config order."""

        providers: dict[str, BaseProvider] = {}
        for name, settings in configs.items():
            if not settings.enabled:
                logger.debug("Provider %s disabled by configuration", name)
                continue
            if name not in self._factories:
                logger.warning("Ignoring configuration for unregistered provider %s", name)
                continue
            providers[name] = self._factories[name](settings)
        return providers


def default_registry() -> ProviderRegistry:
    """Registry pre-populated with the built-in adapters."""

    registry = ProviderRegistry()
    registry.register(ProviderKind.CLAUDE_CODE.value, ClaudeCodeProvider)
    registry.register(ProviderKind.CODEX.value, CodexProvider)
    registry.register(ProviderKind.GEMINI_CLI.value, GeminiCliProvider)
    registry.register(ProviderKind.OPENCODE.value, OpenCodeProvider)
    return registry
