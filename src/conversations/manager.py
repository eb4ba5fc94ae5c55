"""Conversation Manager — single-flight conversation rows with atomic counters."""

from __future__ import annotations

import logging
import time
from typing import Any, Optional, Union

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from src.conversations.errors import ConversationNotFound
from src.conversations.models import Conversation
from src.db.base import new_id, utcnow
from src.db.engine import Database, dialect_insert
from src.db.models import AIConversation, ContextType
from src.model_providers.config import ProviderType

logger = logging.getLogger(__name__)

_TUPLE_COLUMNS = ["subject_id", "user_id", "provider", "context_type"]


def _provider_name(provider: Union[ProviderType, str]) -> str:
    return provider.value if isinstance(provider, ProviderType) else str(provider)


def make_conversation_id(provider: str, subject_id: str, context_type: ContextType) -> str:
    """Provider-facing conversation identifier."""
    return f"{provider}-{subject_id}-{context_type.value}-{int(time.time() * 1000)}"


class ConversationManager:
    """Creates and updates ``ai_conversations`` rows.

    ``get_or_create`` is safe under concurrency: the insert is
    ``ON CONFLICT DO NOTHING`` against the unique tuple and the winner's row
    is read back, so concurrent callers all receive the same ``id``.
    ``update_stats`` increments counters in SQL and never reads them first.

    Example:
        manager = ConversationManager(database)
        conv = await manager.get_or_create("script_1", "user_1", "openai", "plot")
        await manager.update_stats(conv.id, 412)
    """

    def __init__(self, database: Database):
        self.db = database

    async def get_or_create(
        self,
        subject_id: str,
        user_id: str,
        provider: Union[ProviderType, str],
        context_type: Union[ContextType, str] = ContextType.GENERAL,
    ) -> Conversation:
        provider_name = _provider_name(provider)
        context = ContextType(context_type)

        existing = await self._find(subject_id, user_id, provider_name, context)
        if existing is not None:
            return existing

        stmt = dialect_insert(self.db.dialect_name, AIConversation.__table__).values(
            id=new_id(),
            subject_id=subject_id,
            user_id=user_id,
            provider=provider_name,
            conversation_id=make_conversation_id(provider_name, subject_id, context),
            context_type=context,
            total_tokens=0,
            total_requests=0,
            metadata={},
        ).on_conflict_do_nothing(index_elements=_TUPLE_COLUMNS)

        try:
            async with self.db.session() as session:
                await session.execute(stmt)
                await session.commit()
        except IntegrityError:
            # Lost the race on a backend without ON CONFLICT support for this index
            logger.debug("Conversation insert raced for %s/%s", subject_id, provider_name)

        created = await self._find(subject_id, user_id, provider_name, context)
        if created is None:
            raise RuntimeError(
                f"Conversation for {subject_id}/{user_id}/{provider_name}/{context.value} "
                "missing after insert"
            )
        return created

    async def update_stats(
        self,
        conversation_pk: str,
        tokens_delta: int,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Conversation:
        """Add ``tokens_delta`` tokens and one request to the conversation.

        Metadata keys are merged into the stored dict in the same
        transaction, after the counter update has taken the row lock.
        """
        if tokens_delta < 0:
            raise ValueError(f"tokens_delta must be >= 0, got {tokens_delta}")

        now = utcnow()
        async with self.db.session() as session:
            async with session.begin():
                result = await session.execute(
                    update(AIConversation)
                    .where(AIConversation.id == conversation_pk)
                    .values(
                        total_tokens=AIConversation.total_tokens + tokens_delta,
                        total_requests=AIConversation.total_requests + 1,
                        last_request_at=now,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount == 0:
                    raise ConversationNotFound(conversation_pk)

                row = await session.get(AIConversation, conversation_pk, populate_existing=True)
                if metadata:
                    row.metadata_ = {**(row.metadata_ or {}), **metadata}
            return Conversation.from_row(row)

    async def get(self, conversation_pk: str) -> Optional[Conversation]:
        async with self.db.session() as session:
            row = await session.get(AIConversation, conversation_pk)
            return Conversation.from_row(row) if row is not None else None

    async def list_for_subject(
        self, subject_id: str, user_id: Optional[str] = None
    ) -> list[Conversation]:
        """Conversations for a subject, most recently updated first."""
        stmt = select(AIConversation).where(AIConversation.subject_id == subject_id)
        if user_id is not None:
            stmt = stmt.where(AIConversation.user_id == user_id)
        stmt = stmt.order_by(AIConversation.updated_at.desc())
        async with self.db.session() as session:
            rows = (await session.execute(stmt)).scalars().all()
            return [Conversation.from_row(row) for row in rows]

    async def delete(self, conversation_pk: str) -> bool:
        """Delete a conversation and, via the foreign key, its memories."""
        async with self.db.session() as session:
            async with session.begin():
                row = await session.get(AIConversation, conversation_pk)
                if row is None:
                    return False
                await session.delete(row)
        logger.info("Deleted conversation %s", conversation_pk)
        return True

    async def _find(
        self, subject_id: str, user_id: str, provider: str, context: ContextType
    ) -> Optional[Conversation]:
        stmt = select(AIConversation).where(
            AIConversation.subject_id == subject_id,
            AIConversation.user_id == user_id,
            AIConversation.provider == provider,
            AIConversation.context_type == context,
        )
        async with self.db.session() as session:
            row = (await session.execute(stmt)).scalar_one_or_none()
            return Conversation.from_row(row) if row is not None else None
