"""Perplexity provider — OpenAI-compatible API."""

from __future__ import annotations

from dataclasses import replace

from src.model_providers.config import CompletionRequest, ProviderConfig, ProviderType
from src.model_providers.openai_provider import OpenAIProvider


PERPLEXITY_BASE_URL = "https://api.perplexity.ai"


class PerplexityProvider(OpenAIProvider):
    """Provider for Perplexity Sonar online models.

    Perplexity exposes an OpenAI-compatible chat completions API, so this
    inherits from ``OpenAIProvider`` and only overrides the base URL, the
    provider type and the unsupported features (tools, Responses API).
    """

    provider_type = ProviderType.PERPLEXITY
    supports_responses_api = False

    def __init__(self, config: ProviderConfig):
        if not config.base_url:
            config = replace(config, base_url=PERPLEXITY_BASE_URL)
        super().__init__(config)

    def _chat_kwargs(self, request: CompletionRequest, model: str) -> dict:
        kwargs = super()._chat_kwargs(request, model)
        kwargs.pop("tools", None)
        return kwargs
