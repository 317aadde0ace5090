"""Provider registry built once at startup from configured credentials."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from ..config import Settings
from ..errors import ProviderUnavailableError
from .base import NarrationProvider
from .gemini_provider import GeminiLiveProvider
from .openai_provider import OpenAIProvider

logger = logging.getLogger(__name__)

DEFAULT_PROVIDER = "openai"

ProviderBuilder = Callable[[Settings], NarrationProvider]

# name -> (credential check, constructor)
PROVIDER_TABLE: dict[str, tuple[Callable[[Settings], bool], ProviderBuilder]] = {
    "openai": (lambda s: s.openai_api_key is not None, OpenAIProvider),
    "gemini": (lambda s: s.google_ai_api_key is not None, GeminiLiveProvider),
}

_ALIASES = {"google": "gemini", "gemini-live": "gemini", "gpt": "openai"}


class ProviderFactory:
    """Resolves a provider by name, falling back to the default two-step provider."""

    def __init__(
        self,
        providers: dict[str, NarrationProvider],
        *,
        preferred: str = DEFAULT_PROVIDER,
        default: str = DEFAULT_PROVIDER,
    ) -> None:
        self._providers = dict(providers)
        self._preferred = _ALIASES.get(preferred, preferred)
        self._default = default

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderFactory":
        providers: dict[str, NarrationProvider] = {}
        for name, (has_credentials, build) in PROVIDER_TABLE.items():
            if not has_credentials(settings):
                logger.info("Provider %s excluded: credential not configured", name)
                continue
            providers[name] = build(settings)

        if providers:
            logger.info("AI providers available: %s", ", ".join(sorted(providers)))
        else:
            logger.warning("No AI provider credentials configured; narration will use fallback text")
        return cls(providers, preferred=settings.ai_provider_type)

    def available(self) -> list[str]:
        return sorted(self._providers)

    def create(self, name: Optional[str] = None) -> NarrationProvider:
        """Return the requested provider, else the default; with no request, the configured one.

        An unknown or unregistered requested name goes straight to the default
        provider rather than the configured preference.

        Raises:
            ProviderUnavailableError: no provider is registered at all.
        """

        requested = _ALIASES.get(name, name) if name else None
        candidates = (requested, self._default) if requested else (self._preferred, self._default)
        for candidate in candidates:
            if candidate in self._providers:
                if requested and candidate != requested:
                    logger.warning(
                        "Provider %s unavailable, falling back to %s", requested, candidate
                    )
                return self._providers[candidate]

        if self._providers:
            fallback = self.available()[0]
            logger.warning("Using %s as the only available provider", fallback)
            return self._providers[fallback]
        raise ProviderUnavailableError("No AI provider is configured")

    async def aclose(self) -> None:
        for provider in self._providers.values():
            await provider.aclose()
