"""Multi-Provider AI Request Orchestration.

Provides a unified interface to OpenAI, Anthropic, Gemini and Perplexity
with tier-aware model selection, provider fallback chains, streaming and
cost estimation.
"""

from src.model_providers.config import (
    MODEL_CATALOG,
    PROVIDER_PROFILES,
    CompletionRequest,
    CompletionResult,
    Message,
    MessageRole,
    ModelChoice,
    ModelInfo,
    ModelTier,
    ProviderConfig,
    ProviderProfile,
    ProviderType,
    StreamChunk,
    TokenUsage,
    ToolCall,
    estimate_cost,
    get_model_info,
    list_all_models,
    list_models_for_provider,
)
from src.model_providers.errors import (
    AllProvidersFailed,
    MalformedToolCall,
    ProviderCallFailed,
    ProviderError,
    ProviderUnavailable,
    TierLimitExceeded,
)
from src.model_providers.policy import (
    FEATURE_MODEL_RECOMMENDATIONS,
    PROVIDER_FALLBACK_CHAIN,
    TIER_POLICIES,
    FeatureRecommendation,
    SubscriptionTier,
    TierPolicy,
    check_tier_limits,
)
from src.model_providers.base import BaseProvider
from src.model_providers.registry import ProviderRegistry, create_provider
from src.model_providers.selector import ModelSelector
from src.model_providers.streaming import CompletionStream
from src.model_providers.router import CompletionDispatcher, RoutingContext

__all__ = [
    # Config
    "ProviderType",
    "ModelTier",
    "ModelInfo",
    "ProviderConfig",
    "ProviderProfile",
    "MessageRole",
    "Message",
    "CompletionRequest",
    "CompletionResult",
    "TokenUsage",
    "ToolCall",
    "StreamChunk",
    "ModelChoice",
    "MODEL_CATALOG",
    "PROVIDER_PROFILES",
    "estimate_cost",
    "get_model_info",
    "list_all_models",
    "list_models_for_provider",
    # Errors
    "ProviderError",
    "ProviderUnavailable",
    "ProviderCallFailed",
    "AllProvidersFailed",
    "TierLimitExceeded",
    "MalformedToolCall",
    # Policy
    "SubscriptionTier",
    "TierPolicy",
    "TIER_POLICIES",
    "FeatureRecommendation",
    "FEATURE_MODEL_RECOMMENDATIONS",
    "PROVIDER_FALLBACK_CHAIN",
    "check_tier_limits",
    # Providers
    "BaseProvider",
    "ProviderRegistry",
    "create_provider",
    # Routing
    "ModelSelector",
    "CompletionDispatcher",
    "CompletionStream",
    "RoutingContext",
]
