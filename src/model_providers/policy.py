"""Subscription tiers, feature recommendations and provider fallback chains.

Static policy tables: which model each feature recommends at each quality
level, what each subscription tier may do, and which providers stand in
for one another when a call fails.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Optional

from src.model_providers.config import CompletionRequest, ProviderType, get_model_info
from src.model_providers.errors import TierLimitExceeded


class SubscriptionTier(enum.Enum):
    """Subscription level of the requesting user."""

    FREE = "free"
    PRO = "pro"
    PREMIUM = "premium"
    STUDIO = "studio"
    ENTERPRISE = "enterprise"

    @property
    def is_budget(self) -> bool:
        """Low tiers are always served the budget model."""
        return self in (SubscriptionTier.FREE, SubscriptionTier.PRO)


ALL_FEATURES = frozenset({
    "expand",
    "rewrite",
    "describe",
    "brainstorm",
    "critique",
    "character",
    "outline",
    "research",
})


@dataclass(frozen=True)
class TierPolicy:
    """Limits attached to a subscription tier."""

    tier: SubscriptionTier
    max_tokens_per_request: int
    max_requests_per_month: Optional[int]  # None = unlimited
    default_provider: ProviderType
    allowed_features: frozenset = field(default_factory=lambda: ALL_FEATURES)

    def __post_init__(self):
        if self.max_tokens_per_request < 0:
            raise ValueError(
                f"{self.tier.value}: max_tokens_per_request must be >= 0"
            )
        if self.max_requests_per_month is not None and self.max_requests_per_month < 0:
            raise ValueError(
                f"{self.tier.value}: max_requests_per_month must be >= 0"
            )

    def allows(self, feature: str) -> bool:
        return feature in self.allowed_features


TIER_POLICIES: dict[SubscriptionTier, TierPolicy] = {
    SubscriptionTier.FREE: TierPolicy(
        tier=SubscriptionTier.FREE,
        max_tokens_per_request=2_000,
        max_requests_per_month=50,
        default_provider=ProviderType.OPENAI,
        allowed_features=frozenset({"expand", "rewrite", "describe", "brainstorm", "outline"}),
    ),
    SubscriptionTier.PRO: TierPolicy(
        tier=SubscriptionTier.PRO,
        max_tokens_per_request=4_096,
        max_requests_per_month=500,
        default_provider=ProviderType.OPENAI,
    ),
    SubscriptionTier.PREMIUM: TierPolicy(
        tier=SubscriptionTier.PREMIUM,
        max_tokens_per_request=8_192,
        max_requests_per_month=2_000,
        default_provider=ProviderType.ANTHROPIC,
    ),
    SubscriptionTier.STUDIO: TierPolicy(
        tier=SubscriptionTier.STUDIO,
        max_tokens_per_request=16_384,
        max_requests_per_month=None,
        default_provider=ProviderType.ANTHROPIC,
    ),
    SubscriptionTier.ENTERPRISE: TierPolicy(
        tier=SubscriptionTier.ENTERPRISE,
        max_tokens_per_request=32_000,
        max_requests_per_month=None,
        default_provider=ProviderType.ANTHROPIC,
    ),
}


def check_tier_limits(
    policy: TierPolicy,
    feature: str,
    request: CompletionRequest,
    requests_this_month: Optional[int] = None,
) -> None:
    """Raise ``TierLimitExceeded`` if the request breaks the tier policy."""
    if not policy.allows(feature):
        raise TierLimitExceeded(policy.tier, feature, "feature not included in tier")
    if request.max_tokens > policy.max_tokens_per_request:
        raise TierLimitExceeded(
            policy.tier,
            feature,
            f"max_tokens {request.max_tokens} exceeds ceiling",
            limit=policy.max_tokens_per_request,
        )
    if (
        policy.max_requests_per_month is not None
        and requests_this_month is not None
        and requests_this_month >= policy.max_requests_per_month
    ):
        raise TierLimitExceeded(
            policy.tier,
            feature,
            "monthly request quota used up",
            limit=policy.max_requests_per_month,
        )


# ── Feature recommendations ───────────────────────────────────────────


@dataclass(frozen=True)
class FeatureRecommendation:
    """Models recommended for a feature at three quality levels."""

    best: str
    good: tuple[str, ...]
    budget: str


FEATURE_MODEL_RECOMMENDATIONS: dict[str, FeatureRecommendation] = {
    # Long-form creative prose
    "expand": FeatureRecommendation(
        best="claude-3-5-sonnet-20241022",
        good=("gpt-4-turbo", "claude-3-opus-20240229"),
        budget="claude-3-haiku-20240307",
    ),
    "rewrite": FeatureRecommendation(
        best="claude-3-5-sonnet-20241022",
        good=("gpt-4-turbo", "claude-3-sonnet-20240229"),
        budget="gpt-3.5-turbo",
    ),
    "describe": FeatureRecommendation(
        best="claude-3-opus-20240229",
        good=("claude-3-5-sonnet-20241022", "gpt-4"),
        budget="claude-3-haiku-20240307",
    ),
    "brainstorm": FeatureRecommendation(
        best="gpt-4-turbo",
        good=("claude-3-5-sonnet-20241022", "claude-3-opus-20240229"),
        budget="gpt-3.5-turbo",
    ),
    "critique": FeatureRecommendation(
        best="claude-3-opus-20240229",
        good=("claude-3-5-sonnet-20241022", "gpt-4"),
        budget="claude-3-sonnet-20240229",
    ),
    "character": FeatureRecommendation(
        best="claude-3-5-sonnet-20241022",
        good=("gpt-4-turbo", "claude-3-opus-20240229"),
        budget="claude-3-haiku-20240307",
    ),
    "outline": FeatureRecommendation(
        best="gpt-4-turbo",
        good=("claude-3-5-sonnet-20241022", "claude-3-opus-20240229"),
        budget="gpt-3.5-turbo",
    ),
    # Cited, web-grounded answers
    "research": FeatureRecommendation(
        best="llama-3.1-sonar-large-128k-online",
        good=("llama-3.1-sonar-huge-128k-online", "gpt-4-turbo"),
        budget="llama-3.1-sonar-small-128k-online",
    ),
}


def provider_for_model(model_id: str) -> ProviderType:
    """Resolve the provider of a catalog model."""
    info = get_model_info(model_id)
    if info is None:
        raise ValueError(f"Unknown model: {model_id}. Check MODEL_CATALOG.")
    return info.provider


# ── Fallback chains ───────────────────────────────────────────────────

PROVIDER_FALLBACK_CHAIN: dict[ProviderType, tuple[ProviderType, ...]] = {
    ProviderType.OPENAI: (ProviderType.ANTHROPIC, ProviderType.GEMINI),
    ProviderType.ANTHROPIC: (ProviderType.OPENAI, ProviderType.GEMINI),
    ProviderType.GEMINI: (ProviderType.ANTHROPIC, ProviderType.OPENAI),
    ProviderType.PERPLEXITY: (ProviderType.OPENAI, ProviderType.ANTHROPIC),
}
