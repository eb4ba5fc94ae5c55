"""SQLAlchemy ORM models for the AI orchestration core.

Tables:
- ai_conversations: provider-scoped session identity per subject/user/context
- ai_memory_store: typed, expirable facts attached to a conversation
- ai_cache_stats: daily prompt-cache counters per subject/user/provider
- ai_usage_events: append-only ledger of completed requests
"""

import enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    Date,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from src.db.base import Base, new_id, utcnow


def _values(enum_cls):
    return [member.value for member in enum_cls]


class ContextType(enum.Enum):
    """What a conversation is about."""
    GENERAL = "general"
    CHARACTER = "character"
    PLOT = "plot"
    RESEARCH = "research"
    BRAINSTORM = "brainstorm"


class MemoryType(enum.Enum):
    """Tag on a stored memory; the content itself is opaque text."""
    CHARACTER = "character"
    PLOT = "plot"
    WORLD = "world"
    RESEARCH = "research"
    STYLE = "style"
    FACT = "fact"


class AIConversation(Base):
    """Persisted conversation identity, one per (subject, user, provider, context)."""

    __tablename__ = "ai_conversations"

    id = Column(String(36), primary_key=True, default=new_id)
    subject_id = Column(String(64), nullable=False)
    user_id = Column(String(64), nullable=False, index=True)
    provider = Column(String(20), nullable=False)
    conversation_id = Column(String(255), nullable=False)  # opaque, provider-facing
    context_type = Column(
        Enum(ContextType, values_callable=_values, native_enum=False, length=20),
        nullable=False,
        default=ContextType.GENERAL,
    )
    total_tokens = Column(BigInteger, nullable=False, default=0)
    total_requests = Column(Integer, nullable=False, default=0)
    last_request_at = Column(DateTime)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    memories = relationship(
        "AIMemory",
        back_populates="conversation",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    __table_args__ = (
        UniqueConstraint(
            "subject_id", "user_id", "provider", "context_type",
            name="uq_ai_conversations_tuple",
        ),
        Index("ix_ai_conversations_subject", "subject_id"),
    )


class AIMemory(Base):
    """A memory attached to a conversation."""

    __tablename__ = "ai_memory_store"

    id = Column(String(36), primary_key=True, default=new_id)
    conversation_id = Column(
        String(36),
        ForeignKey("ai_conversations.id", ondelete="CASCADE"),
        nullable=False,
    )
    memory_type = Column(
        Enum(MemoryType, values_callable=_values, native_enum=False, length=20),
        nullable=False,
    )
    content = Column(Text, nullable=False)
    summary = Column(Text)
    expires_at = Column(DateTime, index=True)  # NULL = never expires
    accessed_at = Column(DateTime, nullable=False, default=utcnow)
    metadata_ = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    conversation = relationship("AIConversation", back_populates="memories")

    __table_args__ = (
        Index("ix_ai_memory_store_conversation_accessed", "conversation_id", "accessed_at"),
    )


class AICacheStats(Base):
    """Daily prompt-cache counters. Rows are only ever incremented."""

    __tablename__ = "ai_cache_stats"

    id = Column(Integer, primary_key=True, autoincrement=True)
    subject_id = Column(String(64), nullable=False)
    user_id = Column(String(64), nullable=False)
    provider = Column(String(20), nullable=False)
    date = Column(Date, nullable=False)
    cache_hits = Column(Integer, nullable=False, default=0)
    cache_misses = Column(Integer, nullable=False, default=0)
    tokens_cached = Column(BigInteger, nullable=False, default=0)
    tokens_saved = Column(BigInteger, nullable=False, default=0)
    cost_saved_usd = Column(Float, nullable=False, default=0.0)
    avg_latency_ms = Column(Float, nullable=False, default=0.0)
    requests_count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint(
            "subject_id", "user_id", "provider", "date",
            name="uq_ai_cache_stats_day",
        ),
    )


class AIUsageEvent(Base):
    """One completed request, for quota checks and cost reporting."""

    __tablename__ = "ai_usage_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), nullable=False)
    subject_id = Column(String(64))
    feature = Column(String(50), nullable=False)
    provider = Column(String(20), nullable=False)
    model = Column(String(100), nullable=False)
    prompt_tokens = Column(Integer, nullable=False, default=0)
    completion_tokens = Column(Integer, nullable=False, default=0)
    total_tokens = Column(Integer, nullable=False, default=0)
    cost_usd = Column(Float, nullable=False, default=0.0)
    fallback_used = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_ai_usage_events_user_created", "user_id", "created_at"),
    )
