"""Record types returned by the conversation, memory and stats stores.

Plain dataclasses detached from any database session, built from the ORM
rows in ``src.db.models``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Optional

from src.db.models import ContextType, MemoryType
from src.model_providers.config import (
    PROVIDER_PROFILES,
    ProviderType,
    TokenUsage,
)


@dataclass
class Conversation:
    """A persisted conversation identity.

    Attributes:
        id: Primary key, stable for the (subject, user, provider, context) tuple.
        conversation_id: Opaque provider-facing identifier.
        total_tokens: Sum of token deltas applied via ``update_stats``.
        total_requests: Number of ``update_stats`` calls.
    """

    id: str
    subject_id: str
    user_id: str
    provider: str
    conversation_id: str
    context_type: ContextType
    total_tokens: int = 0
    total_requests: int = 0
    last_request_at: Optional[datetime] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "Conversation":
        return cls(
            id=row.id,
            subject_id=row.subject_id,
            user_id=row.user_id,
            provider=row.provider,
            conversation_id=row.conversation_id,
            context_type=row.context_type,
            total_tokens=row.total_tokens or 0,
            total_requests=row.total_requests or 0,
            last_request_at=row.last_request_at,
            metadata=dict(row.metadata_ or {}),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


@dataclass
class Memory:
    """A typed, expirable fact attached to a conversation."""

    id: str
    conversation_id: str
    memory_type: MemoryType
    content: str
    summary: Optional[str] = None
    expires_at: Optional[datetime] = None
    accessed_at: Optional[datetime] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> "Memory":
        return cls(
            id=row.id,
            conversation_id=row.conversation_id,
            memory_type=row.memory_type,
            content=row.content,
            summary=row.summary,
            expires_at=row.expires_at,
            accessed_at=row.accessed_at,
            metadata=dict(row.metadata_ or {}),
            created_at=row.created_at,
            updated_at=row.updated_at,
        )


# Fraction of the input price a cache read does not bill.
CACHE_READ_DISCOUNT: dict[ProviderType, float] = {
    ProviderType.OPENAI: 0.5,
    ProviderType.ANTHROPIC: 0.9,
    ProviderType.GEMINI: 0.75,
    ProviderType.PERPLEXITY: 0.0,
}


@dataclass(frozen=True)
class CacheDeltas:
    """Increments applied to one day's cache-stats row.

    ``latency_ms`` is the latency of the requests being recorded; the row
    keeps a request-weighted mean rather than a sum.
    """

    cache_hits: int = 0
    cache_misses: int = 0
    tokens_cached: int = 0
    tokens_saved: int = 0
    cost_saved_usd: float = 0.0
    latency_ms: float = 0.0
    requests_count: int = 1

    def __post_init__(self):
        for name in (
            "cache_hits", "cache_misses", "tokens_cached",
            "tokens_saved", "cost_saved_usd", "latency_ms", "requests_count",
        ):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0")

    @classmethod
    def from_usage(
        cls,
        provider: ProviderType,
        model: str,
        usage: TokenUsage,
        latency_ms: float = 0.0,
    ) -> "CacheDeltas":
        """Derive deltas for one request from the adapter's cache telemetry.

        A request counts as a hit when any prompt token was served from the
        vendor cache. ``tokens_cached`` is the number of such tokens;
        ``tokens_saved`` is the share of them that was not billed.
        """
        cached = usage.cached
        discount = CACHE_READ_DISCOUNT.get(provider, 0.0)
        saved = int(cached * discount)
        input_per_1k, _ = PROVIDER_PROFILES[provider].cost_per_1k(model)
        return cls(
            cache_hits=1 if cached > 0 else 0,
            cache_misses=0 if cached > 0 else 1,
            tokens_cached=cached,
            tokens_saved=saved,
            cost_saved_usd=round(saved / 1000 * input_per_1k, 6),
            latency_ms=latency_ms,
            requests_count=1,
        )


@dataclass(frozen=True)
class CacheStats:
    """Aggregated cache statistics. All zeros when nothing was recorded."""

    cache_hits: int = 0
    cache_misses: int = 0
    tokens_cached: int = 0
    tokens_saved: int = 0
    cost_saved_usd: float = 0.0
    avg_latency_ms: float = 0.0
    requests_count: int = 0

    @property
    def hit_rate(self) -> float:
        total = self.cache_hits + self.cache_misses
        return self.cache_hits / total if total else 0.0


@dataclass(frozen=True)
class UsageSummary:
    """Per-user usage totals over a window."""

    user_id: str
    since: date
    requests: int = 0
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cost_usd: float = 0.0
    fallback_requests: int = 0
    by_provider: dict[str, int] = field(default_factory=dict)
    by_feature: dict[str, int] = field(default_factory=dict)
