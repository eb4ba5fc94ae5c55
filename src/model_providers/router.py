"""Completion dispatcher — selection, invocation and provider fallback."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from src.db.base import utcnow
from src.logging_config.context import RequestContext
from src.logging_config.performance import PerformanceTimer
from src.model_providers.config import (
    CompletionRequest,
    CompletionResult,
    ModelChoice,
    ProviderType,
    StreamChunk,
    TokenUsage,
)
from src.model_providers.errors import AllProvidersFailed, ProviderError, ProviderUnavailable
from src.model_providers.policy import (
    PROVIDER_FALLBACK_CHAIN,
    TIER_POLICIES,
    SubscriptionTier,
    TierPolicy,
    check_tier_limits,
)
from src.model_providers.registry import ProviderRegistry
from src.model_providers.selector import ModelSelector
from src.model_providers.streaming import CompletionStream

if TYPE_CHECKING:
    from src.conversations.cache_stats import CacheStatsAggregator
    from src.conversations.manager import ConversationManager
    from src.conversations.usage_ledger import UsageLedger

logger = logging.getLogger(__name__)


@dataclass
class RoutingContext:
    """Routing hints that travel with a request."""

    feature: str
    tier: SubscriptionTier
    preferred_provider: Optional[ProviderType] = None
    subject_id: Optional[str] = None
    user_id: Optional[str] = None
    context_type: str = "general"

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "RoutingContext":
        """Parse ``{feature, userTier, preferredProvider?}`` (snake_case accepted)."""
        tier = payload.get("userTier", payload.get("tier"))
        preferred = payload.get("preferredProvider", payload.get("preferred_provider"))
        return cls(
            feature=str(payload["feature"]),
            tier=SubscriptionTier(tier),
            preferred_provider=ProviderType(preferred) if preferred else None,
            subject_id=payload.get("subjectId", payload.get("subject_id")),
            user_id=payload.get("userId", payload.get("user_id")),
            context_type=payload.get("contextType", payload.get("context_type")) or "general",
        )


def month_start(now: Optional[datetime] = None) -> datetime:
    """First instant of the current UTC month (naive UTC)."""
    now = now or utcnow()
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class CompletionDispatcher:
    """Runs a request against the selected provider, falling back on failure.

    Flow for both ``complete`` and ``stream``:

    1. Tier guard. ``TierLimitExceeded`` is raised before any provider is
       contacted and is never retried.
    2. Select ``{provider, model}`` (or take ``override``). If no provider
       has credentials the request fails with ``AllProvidersFailed`` without
       touching the network.
    3. Call the primary. On ``ProviderError`` walk the primary's fallback
       chain one alternate at a time, each with its default model, skipping
       alternates without credentials. The first success wins.
    4. Record conversation stats, cache stats and the usage ledger. Failures
       while recording are logged and never fail the request.

    A stream may only fall back before its first chunk. Once content has
    been produced, a provider failure reaches the caller unchanged.
    """

    def __init__(
        self,
        registry: ProviderRegistry,
        selector: Optional[ModelSelector] = None,
        conversations: Optional["ConversationManager"] = None,
        cache_stats: Optional["CacheStatsAggregator"] = None,
        usage_ledger: Optional["UsageLedger"] = None,
        tier_policies: Optional[dict[SubscriptionTier, TierPolicy]] = None,
        fallback_chain: Optional[dict[ProviderType, tuple[ProviderType, ...]]] = None,
    ):
        self.registry = registry
        self.selector = selector
        self.conversations = conversations
        self.cache_stats = cache_stats
        self.usage_ledger = usage_ledger
        self.tier_policies = tier_policies or TIER_POLICIES
        self.fallback_chain = fallback_chain or PROVIDER_FALLBACK_CHAIN

    # ── Public API ────────────────────────────────────────────────────

    async def complete(
        self,
        request: CompletionRequest,
        routing: RoutingContext,
        override: Optional[ModelChoice] = None,
    ) -> CompletionResult:
        with self._context(routing):
            await self._check_tier(request, routing)
            primary = self._resolve(routing, override)

            attempted: list[ProviderType] = []
            errors: list[ProviderError] = []
            for index, choice in enumerate(self._plan(primary)):
                if not self._usable(choice, index):
                    continue
                attempted.append(choice.provider)
                try:
                    provider = self.registry.get_provider(choice.provider)
                    with PerformanceTimer(f"{choice.provider.value}.complete") as timer:
                        result = await provider.complete(request, choice.model)
                except ProviderError as exc:
                    errors.append(exc)
                    self._log_failure(choice, exc, routing)
                    continue

                result.latency_ms = timer.duration_ms
                await self._record(
                    routing,
                    choice.provider,
                    choice.model,
                    result.tokens_used,
                    result.latency_ms,
                    fallback_used=index > 0,
                )
                return result

            raise self._exhausted(primary, attempted, errors, routing)

    async def stream(
        self,
        request: CompletionRequest,
        routing: RoutingContext,
        override: Optional[ModelChoice] = None,
    ) -> CompletionStream:
        context = self._context(routing)
        with context:
            await self._check_tier(request, routing)
            primary = self._resolve(routing, override)

            attempted: list[ProviderType] = []
            errors: list[ProviderError] = []
            for index, choice in enumerate(self._plan(primary)):
                if not self._usable(choice, index):
                    continue
                attempted.append(choice.provider)
                started_at = time.perf_counter()
                chunks = None
                try:
                    provider = self.registry.get_provider(choice.provider)
                    chunks = provider.stream(request, choice.model)
                    first = await chunks.__anext__()
                except StopAsyncIteration:
                    first = StreamChunk(content="", done=True)
                except ProviderError as exc:
                    errors.append(exc)
                    self._log_failure(choice, exc, routing)
                    if chunks is not None:
                        await chunks.aclose()
                    continue

                fallback_used = index > 0

                async def on_done(stream: CompletionStream, _fallback=fallback_used) -> None:
                    # Runs after stream() has returned; rebind the same request.
                    with self._context(routing, context.request_id):
                        await self._record(
                            routing,
                            stream.provider,
                            stream.model,
                            stream.usage or TokenUsage(),
                            stream.latency_ms,
                            fallback_used=_fallback,
                        )

                return CompletionStream(
                    chunks,
                    first,
                    choice,
                    on_done=on_done,
                    fallback_used=fallback_used,
                    started_at=started_at,
                )

            raise self._exhausted(primary, attempted, errors, routing)

    # ── Steps ─────────────────────────────────────────────────────────

    @staticmethod
    def _context(routing: RoutingContext, request_id: str = "") -> RequestContext:
        return RequestContext(
            request_id=request_id,
            subject_id=routing.subject_id or "",
            user_id=routing.user_id or "",
            feature=routing.feature,
            extra={"tier": routing.tier.value},
        )

    async def _check_tier(self, request: CompletionRequest, routing: RoutingContext) -> None:
        policy = self.tier_policies[routing.tier]
        requests_this_month = None
        if (
            self.usage_ledger is not None
            and routing.user_id
            and policy.max_requests_per_month is not None
        ):
            requests_this_month = await self.usage_ledger.count_requests_since(
                routing.user_id, month_start()
            )
        check_tier_limits(policy, routing.feature, request, requests_this_month)

    def _resolve(self, routing: RoutingContext, override: Optional[ModelChoice]) -> Optional[ModelChoice]:
        if override is not None:
            return override
        selector = self.selector or ModelSelector(
            self.registry.available_providers(),
            tier_policies=self.tier_policies,
            fallback_chain=self.fallback_chain,
        )
        try:
            return selector.select(routing.feature, routing.tier, routing.preferred_provider)
        except ProviderUnavailable as exc:
            logger.error("No provider available: %s", exc)
            return None

    def _plan(self, primary: Optional[ModelChoice]) -> list[ModelChoice]:
        """Primary choice followed by its fallback alternates."""
        if primary is None:
            return []
        plan = [primary]
        for alternate in self.fallback_chain.get(primary.provider, ()):
            if alternate != primary.provider:
                plan.append(ModelChoice(provider=alternate, model=self.registry.default_model(alternate)))
        return plan

    def _usable(self, choice: ModelChoice, index: int) -> bool:
        if not self.registry.is_available(choice.provider):
            logger.info(
                "Skipping %s: no credentials configured",
                choice.provider.value,
                extra={"provider": choice.provider.value},
            )
            return False
        if index > 0:
            logger.warning(
                "Falling back to %s (%s)",
                choice.provider.value,
                choice.model,
                extra={"provider": choice.provider.value, "model": choice.model, "attempt": index + 1},
            )
        return True

    @staticmethod
    def _log_failure(choice: ModelChoice, exc: ProviderError, routing: RoutingContext) -> None:
        logger.warning(
            "%s failed for feature=%s tier=%s: %s",
            choice.provider.value,
            routing.feature,
            routing.tier.value,
            exc,
            extra={"provider": choice.provider.value, "model": choice.model},
        )

    @staticmethod
    def _exhausted(
        primary: Optional[ModelChoice],
        attempted: list[ProviderType],
        errors: list[ProviderError],
        routing: RoutingContext,
    ) -> AllProvidersFailed:
        error = AllProvidersFailed(
            primary.provider if primary else None,
            attempted,
            feature=routing.feature,
            tier=routing.tier,
            errors=errors,
        )
        logger.error(str(error))
        return error

    # ── Side effects ──────────────────────────────────────────────────

    async def _record(
        self,
        routing: RoutingContext,
        provider: ProviderType,
        model: str,
        usage: TokenUsage,
        latency_ms: float,
        fallback_used: bool = False,
    ) -> None:
        if routing.subject_id and routing.user_id:
            if self.conversations is not None:
                try:
                    conversation = await self.conversations.get_or_create(
                        routing.subject_id,
                        routing.user_id,
                        provider.value,
                        routing.context_type,
                    )
                    await self.conversations.update_stats(
                        conversation.id,
                        usage.total,
                        {"last_model": model, "last_feature": routing.feature},
                    )
                except Exception:
                    logger.exception("Failed to update conversation stats")

            if self.cache_stats is not None:
                try:
                    await self.cache_stats.record_usage(
                        routing.subject_id,
                        routing.user_id,
                        provider,
                        model,
                        usage,
                        latency_ms,
                    )
                except Exception:
                    logger.exception("Failed to record cache stats")

        if self.usage_ledger is not None and routing.user_id:
            try:
                await self.usage_ledger.record(
                    user_id=routing.user_id,
                    subject_id=routing.subject_id,
                    feature=routing.feature,
                    provider=provider,
                    model=model,
                    usage=usage,
                    fallback_used=fallback_used,
                )
            except Exception:
                logger.exception("Failed to record usage event")
