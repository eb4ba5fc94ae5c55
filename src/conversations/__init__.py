"""Conversation persistence: conversations, memories, cache stats and usage.

Stores take a ``Database`` at construction and return detached dataclass
records from ``src.conversations.models``.
"""

from src.conversations.errors import ConversationNotFound, MemoryNotFound
from src.conversations.models import (
    CacheDeltas,
    CacheStats,
    Conversation,
    Memory,
    UsageSummary,
)
from src.conversations.manager import ConversationManager, make_conversation_id
from src.conversations.memory_store import MemoryStore
from src.conversations.cache_stats import CacheStatsAggregator
from src.conversations.usage_ledger import UsageLedger
from src.conversations.memory_tool import (
    MEMORY_TOOL,
    MemoryAgent,
    MemoryAgentResult,
    MemoryToolCall,
    MemoryToolHandler,
)

__all__ = [
    "ConversationNotFound",
    "MemoryNotFound",
    "Conversation",
    "Memory",
    "CacheDeltas",
    "CacheStats",
    "UsageSummary",
    "ConversationManager",
    "make_conversation_id",
    "MemoryStore",
    "CacheStatsAggregator",
    "UsageLedger",
    "MEMORY_TOOL",
    "MemoryAgent",
    "MemoryAgentResult",
    "MemoryToolCall",
    "MemoryToolHandler",
]
