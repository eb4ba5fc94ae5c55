"""Usage ledger — one row per completed request for quotas and cost reports."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional, Union

from sqlalchemy import case, func, select

from src.conversations.models import UsageSummary
from src.db.base import as_utc_naive, utcnow
from src.db.engine import Database
from src.db.models import AIUsageEvent
from src.model_providers.config import ProviderType, TokenUsage, estimate_cost

logger = logging.getLogger(__name__)


class UsageLedger:
    """Append-only request ledger.

    The dispatcher writes one event per successful completion and reads the
    monthly count back for the tier quota check.
    """

    def __init__(self, database: Database):
        self.db = database

    async def record(
        self,
        user_id: str,
        feature: str,
        provider: Union[ProviderType, str],
        model: str,
        usage: TokenUsage,
        subject_id: Optional[str] = None,
        fallback_used: bool = False,
    ) -> float:
        """Append one event. Returns its estimated cost in USD."""
        cost = estimate_cost(model, usage.prompt, usage.completion)
        event = AIUsageEvent(
            user_id=user_id,
            subject_id=subject_id,
            feature=feature,
            provider=provider.value if isinstance(provider, ProviderType) else str(provider),
            model=model,
            prompt_tokens=usage.prompt,
            completion_tokens=usage.completion,
            total_tokens=usage.total,
            cost_usd=round(cost, 6),
            fallback_used=fallback_used,
            created_at=utcnow(),
        )
        async with self.db.session() as session:
            async with session.begin():
                session.add(event)
        return cost

    async def count_requests_since(self, user_id: str, since: datetime) -> int:
        stmt = select(func.count(AIUsageEvent.id)).where(
            AIUsageEvent.user_id == user_id,
            AIUsageEvent.created_at >= as_utc_naive(since),
        )
        async with self.db.session() as session:
            return int((await session.execute(stmt)).scalar_one())

    async def summarize(self, user_id: str, days: int = 30) -> UsageSummary:
        """Totals for the last ``days`` days, broken down by provider and feature."""
        since = utcnow() - timedelta(days=days)
        e = AIUsageEvent
        filters = (e.user_id == user_id, e.created_at >= since)

        totals_stmt = select(
            func.count(e.id),
            func.coalesce(func.sum(e.prompt_tokens), 0),
            func.coalesce(func.sum(e.completion_tokens), 0),
            func.coalesce(func.sum(e.total_tokens), 0),
            func.coalesce(func.sum(e.cost_usd), 0.0),
            func.coalesce(func.sum(case((e.fallback_used.is_(True), 1), else_=0)), 0),
        ).where(*filters)
        by_provider_stmt = select(e.provider, func.count(e.id)).where(*filters).group_by(e.provider)
        by_feature_stmt = select(e.feature, func.count(e.id)).where(*filters).group_by(e.feature)

        async with self.db.session() as session:
            requests, prompt, completion, total, cost, fallbacks = (
                await session.execute(totals_stmt)
            ).one()
            by_provider = {p: int(n) for p, n in (await session.execute(by_provider_stmt)).all()}
            by_feature = {f: int(n) for f, n in (await session.execute(by_feature_stmt)).all()}

        return UsageSummary(
            user_id=user_id,
            since=since.date(),
            requests=int(requests),
            prompt_tokens=int(prompt),
            completion_tokens=int(completion),
            total_tokens=int(total),
            cost_usd=round(float(cost), 6),
            fallback_requests=int(fallbacks or 0),
            by_provider=by_provider,
            by_feature=by_feature,
        )
