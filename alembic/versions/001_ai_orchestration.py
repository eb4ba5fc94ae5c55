"""AI orchestration core: conversations, memories, cache stats, usage ledger.

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # --- ai_conversations ---
    op.create_table(
        "ai_conversations",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("subject_id", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("conversation_id", sa.String(255), nullable=False),
        sa.Column("context_type", sa.String(20), nullable=False),
        sa.Column("total_tokens", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("total_requests", sa.Integer, nullable=False, server_default="0"),
        sa.Column("last_request_at", sa.DateTime),
        sa.Column("metadata", sa.JSON, nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
        sa.UniqueConstraint(
            "subject_id", "user_id", "provider", "context_type",
            name="uq_ai_conversations_tuple",
        ),
    )
    op.create_index("ix_ai_conversations_subject", "ai_conversations", ["subject_id"])
    op.create_index("ix_ai_conversations_user_id", "ai_conversations", ["user_id"])

    # --- ai_memory_store ---
    op.create_table(
        "ai_memory_store",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column(
            "conversation_id",
            sa.String(36),
            sa.ForeignKey("ai_conversations.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("memory_type", sa.String(20), nullable=False),
        sa.Column("content", sa.Text, nullable=False),
        sa.Column("summary", sa.Text),
        sa.Column("expires_at", sa.DateTime),
        sa.Column("accessed_at", sa.DateTime, nullable=False),
        sa.Column("metadata", sa.JSON, nullable=False),
        sa.Column("created_at", sa.DateTime, nullable=False),
        sa.Column("updated_at", sa.DateTime, nullable=False),
    )
    op.create_index("ix_ai_memory_store_expires_at", "ai_memory_store", ["expires_at"])
    op.create_index(
        "ix_ai_memory_store_conversation_accessed",
        "ai_memory_store",
        ["conversation_id", "accessed_at"],
    )

    # --- ai_cache_stats ---
    op.create_table(
        "ai_cache_stats",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("subject_id", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("date", sa.Date, nullable=False),
        sa.Column("cache_hits", sa.Integer, nullable=False, server_default="0"),
        sa.Column("cache_misses", sa.Integer, nullable=False, server_default="0"),
        sa.Column("tokens_cached", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("tokens_saved", sa.BigInteger, nullable=False, server_default="0"),
        sa.Column("cost_saved_usd", sa.Float, nullable=False, server_default="0"),
        sa.Column("avg_latency_ms", sa.Float, nullable=False, server_default="0"),
        sa.Column("requests_count", sa.Integer, nullable=False, server_default="0"),
        sa.UniqueConstraint(
            "subject_id", "user_id", "provider", "date",
            name="uq_ai_cache_stats_day",
        ),
    )

    # --- ai_usage_events ---
    op.create_table(
        "ai_usage_events",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("subject_id", sa.String(64)),
        sa.Column("feature", sa.String(50), nullable=False),
        sa.Column("provider", sa.String(20), nullable=False),
        sa.Column("model", sa.String(100), nullable=False),
        sa.Column("prompt_tokens", sa.Integer, nullable=False, server_default="0"),
        sa.Column("completion_tokens", sa.Integer, nullable=False, server_default="0"),
        sa.Column("total_tokens", sa.Integer, nullable=False, server_default="0"),
        sa.Column("cost_usd", sa.Float, nullable=False, server_default="0"),
        sa.Column("fallback_used", sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime, nullable=False),
    )
    op.create_index(
        "ix_ai_usage_events_user_created", "ai_usage_events", ["user_id", "created_at"]
    )


def downgrade() -> None:
    op.drop_table("ai_usage_events")
    op.drop_table("ai_cache_stats")
    op.drop_table("ai_memory_store")
    op.drop_table("ai_conversations")
