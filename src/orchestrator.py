"""Composition root: wires settings, providers, persistence and the dispatcher."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from src.conversations.cache_stats import CacheStatsAggregator
from src.conversations.manager import ConversationManager
from src.conversations.memory_store import MemoryStore
from src.conversations.memory_tool import MemoryAgent
from src.conversations.usage_ledger import UsageLedger
from src.db.engine import Database
from src.model_providers.registry import ProviderRegistry
from src.model_providers.router import CompletionDispatcher
from src.settings import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class Orchestrator:
    """Everything a caller needs to serve AI requests."""

    settings: Settings
    database: Database
    registry: ProviderRegistry
    conversations: ConversationManager
    memories: MemoryStore
    cache_stats: CacheStatsAggregator
    usage_ledger: UsageLedger
    dispatcher: CompletionDispatcher
    memory_agent: MemoryAgent

    async def start(self) -> None:
        """Create the schema if needed."""
        await self.database.create_schema()

    async def close(self) -> None:
        await self.database.dispose()


def build_orchestrator(
    settings: Optional[Settings] = None,
    database: Optional[Database] = None,
    registry: Optional[ProviderRegistry] = None,
) -> Orchestrator:
    """Build the object graph. Nothing connects until first use."""
    settings = settings or get_settings()
    database = database or Database.from_settings(settings)
    registry = registry or ProviderRegistry.from_settings(settings)

    conversations = ConversationManager(database)
    memories = MemoryStore(database)
    cache_stats = CacheStatsAggregator(database)
    usage_ledger = UsageLedger(database)
    dispatcher = CompletionDispatcher(
        registry,
        conversations=conversations,
        cache_stats=cache_stats,
        usage_ledger=usage_ledger,
    )

    available = [p.value for p in registry.available_providers()]
    if not available:
        logger.warning("No AI provider credentials configured; every request will fail")
    else:
        logger.info("AI providers available: %s", ", ".join(available))

    return Orchestrator(
        settings=settings,
        database=database,
        registry=registry,
        conversations=conversations,
        memories=memories,
        cache_stats=cache_stats,
        usage_ledger=usage_ledger,
        dispatcher=dispatcher,
        memory_agent=MemoryAgent(dispatcher, conversations, memories),
    )
