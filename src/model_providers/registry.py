"""Provider registry — create, cache, and look up provider instances."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional

from src.model_providers.base import BaseProvider
from src.model_providers.config import (
    PROVIDER_PROFILES,
    ProviderConfig,
    ProviderType,
    get_model_info,
)
from src.model_providers.errors import ProviderUnavailable

if TYPE_CHECKING:
    from src.settings import Settings

logger = logging.getLogger(__name__)


# ── Factory ───────────────────────────────────────────────────────────


def create_provider(config: ProviderConfig) -> BaseProvider:
    """Instantiate a provider from its config."""
    if config.provider == ProviderType.OPENAI:
        from src.model_providers.openai_provider import OpenAIProvider
        return OpenAIProvider(config)
    elif config.provider == ProviderType.ANTHROPIC:
        from src.model_providers.anthropic_provider import AnthropicProvider
        return AnthropicProvider(config)
    elif config.provider == ProviderType.GEMINI:
        from src.model_providers.gemini_provider import GeminiProvider
        return GeminiProvider(config)
    elif config.provider == ProviderType.PERPLEXITY:
        from src.model_providers.perplexity_provider import PerplexityProvider
        return PerplexityProvider(config)
    else:
        raise ValueError(f"Unknown provider type: {config.provider}")


# ── Registry ──────────────────────────────────────────────────────────


class ProviderRegistry:
    """Manages provider configs and cached adapter instances.

    Adapters are built on first use, so constructing a registry never
    touches the network. A provider without an API key is simply not
    available.

    Usage::

        registry = ProviderRegistry.from_settings(get_settings())
        provider = registry.get_provider(ProviderType.OPENAI)
        result = await provider.complete(request, "gpt-4-turbo")
    """

    def __init__(self):
        self._configs: dict[ProviderType, ProviderConfig] = {}
        self._providers: dict[ProviderType, BaseProvider] = {}

    @classmethod
    def from_settings(cls, settings: "Settings") -> "ProviderRegistry":
        """Register every provider whose API key is present in settings."""
        registry = cls()
        keys = {
            ProviderType.OPENAI: settings.openai_api_key,
            ProviderType.ANTHROPIC: settings.anthropic_api_key,
            ProviderType.GEMINI: settings.gemini_api_key,
            ProviderType.PERPLEXITY: settings.perplexity_api_key,
        }
        for provider, api_key in keys.items():
            if not api_key:
                logger.info("No API key for %s; provider disabled", provider.value)
                continue
            extra = {}
            if provider == ProviderType.OPENAI and settings.openai_use_responses_api:
                extra["use_responses_api"] = True
            registry.configure(ProviderConfig(
                provider=provider,
                api_key=api_key,
                timeout_seconds=settings.provider_timeout_seconds,
                max_retries=settings.provider_max_retries,
                extra=extra,
            ))
        return registry

    def configure(self, config: ProviderConfig) -> None:
        """Register or update a provider config."""
        self._configs[config.provider] = config
        # Invalidate cached instance
        self._providers.pop(config.provider, None)

    def register(self, provider: BaseProvider) -> None:
        """Install a ready-made adapter instance (and its config)."""
        self._configs[provider.provider_type] = provider.config
        self._providers[provider.provider_type] = provider

    def get_config(self, provider: ProviderType) -> Optional[ProviderConfig]:
        """Get stored config for a provider."""
        return self._configs.get(provider)

    def get_provider(self, provider: ProviderType) -> BaseProvider:
        """Get a cached provider instance.

        Raises ``ProviderUnavailable`` if the provider has no usable config.
        """
        if provider not in self._providers:
            config = self._configs.get(provider)
            if not config or not config.is_configured:
                raise ProviderUnavailable(provider)
            self._providers[provider] = create_provider(config)
        return self._providers[provider]

    def is_available(self, provider: ProviderType) -> bool:
        """True if the provider is configured with a credential."""
        config = self._configs.get(provider)
        return bool(config and config.is_configured)

    def available_providers(self) -> list[ProviderType]:
        """Configured providers, in ``ProviderType`` declaration order."""
        return [p for p in ProviderType if self.is_available(p)]

    def default_model(self, provider: ProviderType) -> str:
        """Model used when falling back to this provider."""
        config = self._configs.get(provider)
        if config and config.default_model:
            return config.default_model
        return PROVIDER_PROFILES[provider].default_model

    def budget_model(self, provider: ProviderType) -> str:
        return PROVIDER_PROFILES[provider].budget_model

    def get_provider_for_model(self, model_id: str) -> BaseProvider:
        """Look up the model's provider and return the instance."""
        info = get_model_info(model_id)
        if not info:
            raise ValueError(f"Unknown model: {model_id}. Check MODEL_CATALOG.")
        return self.get_provider(info.provider)

    def remove(self, provider: ProviderType) -> None:
        """Remove a provider config and cached instance."""
        self._configs.pop(provider, None)
        self._providers.pop(provider, None)

    def clear(self) -> None:
        """Remove all configs and cached instances."""
        self._configs.clear()
        self._providers.clear()
