"""Model selector — picks ``{provider, model}`` for a feature and tier."""

from __future__ import annotations

from typing import Iterable, Optional

from src.model_providers.config import PROVIDER_PROFILES, ModelChoice, ProviderType, get_model_info
from src.model_providers.errors import ProviderUnavailable
from src.model_providers.policy import (
    FEATURE_MODEL_RECOMMENDATIONS,
    PROVIDER_FALLBACK_CHAIN,
    TIER_POLICIES,
    FeatureRecommendation,
    SubscriptionTier,
    TierPolicy,
    provider_for_model,
)


class ModelSelector:
    """Chooses a model from the static recommendation tables.

    Policy:

    1. FREE and PRO always get the feature's budget model; a preferred
       provider is ignored.
    2. PREMIUM, STUDIO and ENTERPRISE with a preferred provider get the first
       of the feature's "good" models from that provider, or the feature's
       best model if that provider has none.
    3. Everyone else gets the feature's best model.

    When the chosen provider has no credential, the selector moves along
    that provider's fallback chain to the first available provider and uses
    its budget model (FREE/PRO) or default model (higher tiers).

    ``select`` is a pure function of its arguments, the static tables and the
    availability set fixed at construction. ``available_providers=None``
    means every provider counts as available.
    """

    def __init__(
        self,
        available_providers: Optional[Iterable[ProviderType]] = None,
        recommendations: Optional[dict[str, FeatureRecommendation]] = None,
        tier_policies: Optional[dict[SubscriptionTier, TierPolicy]] = None,
        fallback_chain: Optional[dict[ProviderType, tuple[ProviderType, ...]]] = None,
    ):
        self.available = (
            frozenset(ProviderType) if available_providers is None
            else frozenset(available_providers)
        )
        self.recommendations = recommendations or FEATURE_MODEL_RECOMMENDATIONS
        self.tier_policies = tier_policies or TIER_POLICIES
        self.fallback_chain = fallback_chain or PROVIDER_FALLBACK_CHAIN

    def select(
        self,
        feature: str,
        tier: SubscriptionTier,
        preferred_provider: Optional[ProviderType] = None,
    ) -> ModelChoice:
        choice = self.recommend(feature, tier, preferred_provider)
        if choice.provider in self.available:
            return choice
        return self._substitute(choice.provider, tier)

    def recommend(
        self,
        feature: str,
        tier: SubscriptionTier,
        preferred_provider: Optional[ProviderType] = None,
    ) -> ModelChoice:
        """Table policy alone, ignoring which providers have credentials."""
        rec = self.recommendations.get(feature)
        if rec is None:
            return self._tier_default(tier)

        if tier.is_budget:
            return self._choice(rec.budget)

        if preferred_provider is not None:
            for model_id in rec.good:
                info = get_model_info(model_id)
                if info is not None and info.provider == preferred_provider:
                    return ModelChoice(provider=preferred_provider, model=model_id)

        return self._choice(rec.best)

    def _tier_default(self, tier: SubscriptionTier) -> ModelChoice:
        provider = self.tier_policies[tier].default_provider
        return self._provider_model(provider, tier)

    def _substitute(self, provider: ProviderType, tier: SubscriptionTier) -> ModelChoice:
        for alternate in self.fallback_chain.get(provider, ()):
            if alternate in self.available:
                return self._provider_model(alternate, tier)
        # The chain may not cover every provider; any available one will do.
        for alternate in ProviderType:
            if alternate in self.available:
                return self._provider_model(alternate, tier)
        raise ProviderUnavailable(provider, "no provider has credentials configured")

    @staticmethod
    def _provider_model(provider: ProviderType, tier: SubscriptionTier) -> ModelChoice:
        profile = PROVIDER_PROFILES[provider]
        model = profile.budget_model if tier.is_budget else profile.default_model
        return ModelChoice(provider=provider, model=model)

    @staticmethod
    def _choice(model_id: str) -> ModelChoice:
        return ModelChoice(provider=provider_for_model(model_id), model=model_id)
