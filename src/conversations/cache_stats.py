"""Cache Statistics Aggregator — daily additive prompt-cache counters."""

from __future__ import annotations

import logging
from datetime import date
from typing import Optional, Union

from sqlalchemy import case, func, select

from src.conversations.models import CacheDeltas, CacheStats
from src.db.base import utcnow
from src.db.engine import Database, dialect_insert
from src.db.models import AICacheStats
from src.model_providers.config import ProviderType, TokenUsage

logger = logging.getLogger(__name__)

_ADDITIVE = ("cache_hits", "cache_misses", "tokens_cached", "tokens_saved", "cost_saved_usd")
_DAY_KEY = ["subject_id", "user_id", "provider", "date"]


def _provider_name(provider: Union[ProviderType, str]) -> str:
    return provider.value if isinstance(provider, ProviderType) else str(provider)


class CacheStatsAggregator:
    """Upserts one row per (subject, user, provider, day) and sums them back.

    ``record`` adds each delta to the stored value in a single
    ``INSERT ... ON CONFLICT DO UPDATE`` so concurrent writers never
    overwrite each other. ``avg_latency_ms`` is kept as a mean weighted by
    ``requests_count``.
    """

    def __init__(self, database: Database):
        self.db = database

    async def record(
        self,
        subject_id: str,
        user_id: str,
        provider: Union[ProviderType, str],
        deltas: CacheDeltas,
        day: Optional[date] = None,
    ) -> None:
        day = day or utcnow().date()
        table = AICacheStats.__table__

        stmt = dialect_insert(self.db.dialect_name, table).values(
            subject_id=subject_id,
            user_id=user_id,
            provider=_provider_name(provider),
            date=day,
            cache_hits=deltas.cache_hits,
            cache_misses=deltas.cache_misses,
            tokens_cached=deltas.tokens_cached,
            tokens_saved=deltas.tokens_saved,
            cost_saved_usd=deltas.cost_saved_usd,
            avg_latency_ms=deltas.latency_ms if deltas.requests_count else 0.0,
            requests_count=deltas.requests_count,
        )
        excluded = stmt.excluded
        requests = table.c.requests_count + excluded.requests_count
        set_ = {name: table.c[name] + excluded[name] for name in _ADDITIVE}
        set_["avg_latency_ms"] = case(
            (
                requests > 0,
                (
                    table.c.avg_latency_ms * table.c.requests_count
                    + excluded.avg_latency_ms * excluded.requests_count
                ) / requests,
            ),
            else_=table.c.avg_latency_ms,
        )
        set_["requests_count"] = requests
        stmt = stmt.on_conflict_do_update(index_elements=_DAY_KEY, set_=set_)

        async with self.db.session() as session:
            await session.execute(stmt)
            await session.commit()

    async def record_usage(
        self,
        subject_id: str,
        user_id: str,
        provider: ProviderType,
        model: str,
        usage: TokenUsage,
        latency_ms: float,
    ) -> CacheDeltas:
        """Record one completed request from its token usage."""
        deltas = CacheDeltas.from_usage(provider, model, usage, latency_ms)
        await self.record(subject_id, user_id, provider, deltas)
        return deltas

    async def aggregate(
        self,
        subject_id: str,
        user_id: str,
        provider: Optional[Union[ProviderType, str]] = None,
    ) -> CacheStats:
        """Sum every day's row for the key. Zeros when nothing was recorded."""
        c = AICacheStats
        stmt = select(
            *(func.coalesce(func.sum(getattr(c, name)), 0) for name in _ADDITIVE),
            func.coalesce(func.sum(c.avg_latency_ms * c.requests_count), 0.0),
            func.coalesce(func.sum(c.requests_count), 0),
        ).where(c.subject_id == subject_id, c.user_id == user_id)
        if provider is not None:
            stmt = stmt.where(c.provider == _provider_name(provider))

        async with self.db.session() as session:
            row = (await session.execute(stmt)).one()

        hits, misses, cached, saved, cost, weighted_latency, requests = row
        return CacheStats(
            cache_hits=int(hits),
            cache_misses=int(misses),
            tokens_cached=int(cached),
            tokens_saved=int(saved),
            cost_saved_usd=round(float(cost), 6),
            avg_latency_ms=float(weighted_latency) / requests if requests else 0.0,
            requests_count=int(requests),
        )
