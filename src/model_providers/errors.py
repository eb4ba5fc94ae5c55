"""Error taxonomy for the provider layer.

Adapters translate vendor SDK exceptions into these types so nothing
vendor-specific crosses the adapter boundary. Messages name the provider,
feature and tier but never echo vendor payloads.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from src.model_providers.config import ProviderType
    from src.model_providers.policy import SubscriptionTier


def _name(provider: Optional["ProviderType"]) -> str:
    return provider.value if provider is not None else "none"


class ProviderError(Exception):
    """Base exception for provider errors."""

    def __init__(
        self,
        message: str,
        provider: Optional["ProviderType"],
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.cause = cause


class ProviderUnavailable(ProviderError):
    """No credential is configured for the provider.

    Raised at selection time; callers treat it as a reason to pick an
    alternate rather than as a failed call.
    """

    def __init__(self, provider: Optional["ProviderType"], reason: str = "no API key configured"):
        super().__init__(f"Provider {_name(provider)} unavailable: {reason}", provider)


class ProviderCallFailed(ProviderError):
    """A vendor call failed (network error, HTTP error, malformed response)."""

    def __init__(self, provider: "ProviderType", cause: BaseException, operation: str = "complete"):
        super().__init__(
            f"{_name(provider)} {operation} failed: {type(cause).__name__}",
            provider,
            cause,
        )
        self.operation = operation

    @property
    def status_code(self) -> Optional[int]:
        """HTTP status of the underlying vendor error, when it had one."""
        return getattr(self.cause, "status_code", None)


class AllProvidersFailed(ProviderError):
    """The selected provider and every alternate in its fallback chain failed."""

    def __init__(
        self,
        provider: Optional["ProviderType"],
        attempted: list["ProviderType"],
        feature: str = "",
        tier: Optional["SubscriptionTier"] = None,
        errors: Optional[list[ProviderError]] = None,
    ):
        chain = " -> ".join(p.value for p in attempted) or "none"
        tier_name = tier.value if tier is not None else "unknown"
        super().__init__(
            f"All AI providers failed for feature={feature or 'unknown'} "
            f"tier={tier_name} (selected {_name(provider)}; attempted {chain})",
            provider,
            errors[-1] if errors else None,
        )
        self.attempted = list(attempted)
        self.feature = feature
        self.tier = tier
        self.errors = list(errors or [])


class TierLimitExceeded(Exception):
    """A request violates the caller's subscription tier policy.

    Reported before dispatch and never retried.
    """

    def __init__(self, tier: "SubscriptionTier", feature: str, reason: str, limit: Optional[int] = None):
        super().__init__(f"Tier {tier.value} cannot run {feature}: {reason}")
        self.tier = tier
        self.feature = feature
        self.reason = reason
        self.limit = limit


class MalformedToolCall(ValueError):
    """A model-issued tool call failed schema validation."""

    def __init__(self, tool_name: str, reason: str):
        super().__init__(f"Malformed {tool_name} tool call: {reason}")
        self.tool_name = tool_name
        self.reason = reason
