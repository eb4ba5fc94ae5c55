"""Database package for the AI orchestration core."""

from src.db.base import Base, as_utc_naive, utcnow
from src.db.engine import Database, dialect_insert
from src.db.models import (
    AICacheStats,
    AIConversation,
    AIMemory,
    AIUsageEvent,
    ContextType,
    MemoryType,
)

__all__ = [
    "Base",
    "Database",
    "dialect_insert",
    "utcnow",
    "as_utc_naive",
    "AIConversation",
    "AIMemory",
    "AICacheStats",
    "AIUsageEvent",
    "ContextType",
    "MemoryType",
]
