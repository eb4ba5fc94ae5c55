"""Memory Store — typed, expirable memories attached to conversations."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Optional, Union

from sqlalchemy import delete, or_, select, update
from sqlalchemy.exc import IntegrityError

from src.conversations.errors import ConversationNotFound, MemoryNotFound
from src.conversations.models import Memory
from src.db.base import as_utc_naive, new_id, utcnow
from src.db.engine import Database
from src.db.models import AIMemory, MemoryType

logger = logging.getLogger(__name__)


class MemoryStore:
    """CRUD over ``ai_memory_store`` plus the periodic expiry sweep.

    Content is opaque text; the store only checks the ``memory_type`` tag.
    Reading memories through ``get`` or ``list`` marks them as accessed,
    which is what orders the next listing.

    Example:
        store = MemoryStore(database)
        await store.store(conv.id, MemoryType.CHARACTER, dossier, summary="Character: Ada")
        memories = await store.list(conv.id, MemoryType.CHARACTER)
    """

    def __init__(self, database: Database):
        self.db = database

    async def store(
        self,
        conversation_pk: str,
        memory_type: Union[MemoryType, str],
        content: str,
        summary: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Memory:
        kind = MemoryType(memory_type)
        if not content:
            raise ValueError("memory content cannot be empty")

        now = utcnow()
        row = AIMemory(
            id=new_id(),
            conversation_id=conversation_pk,
            memory_type=kind,
            content=content,
            summary=summary,
            expires_at=as_utc_naive(expires_at),
            accessed_at=now,
            metadata_=dict(metadata or {}),
            created_at=now,
            updated_at=now,
        )
        try:
            async with self.db.session() as session:
                async with session.begin():
                    session.add(row)
        except IntegrityError as exc:
            raise ConversationNotFound(conversation_pk) from exc

        logger.debug("Stored %s memory %s", kind.value, row.id)
        return Memory.from_row(row)

    async def get(self, memory_id: str, now: Optional[datetime] = None) -> Optional[Memory]:
        """Fetch one memory and mark it accessed at ``now``."""
        now = as_utc_naive(now) or utcnow()
        async with self.db.session() as session:
            async with session.begin():
                row = await session.get(AIMemory, memory_id)
                if row is None:
                    return None
                row.accessed_at = now
            return Memory.from_row(row)

    async def list(
        self,
        conversation_pk: str,
        memory_type: Optional[Union[MemoryType, str]] = None,
        now: Optional[datetime] = None,
    ) -> list[Memory]:
        """Unexpired memories, most recently accessed first.

        Every returned memory has its ``accessed_at`` set to ``now``.
        """
        now = as_utc_naive(now) or utcnow()
        stmt = select(AIMemory).where(
            AIMemory.conversation_id == conversation_pk,
            or_(AIMemory.expires_at.is_(None), AIMemory.expires_at >= now),
        )
        if memory_type is not None:
            stmt = stmt.where(AIMemory.memory_type == MemoryType(memory_type))
        stmt = stmt.order_by(AIMemory.accessed_at.desc(), AIMemory.created_at.desc())

        async with self.db.session() as session:
            async with session.begin():
                rows = (await session.execute(stmt)).scalars().all()
                memories = [Memory.from_row(row) for row in rows]
                if memories:
                    await session.execute(
                        update(AIMemory)
                        .where(AIMemory.id.in_([m.id for m in memories]))
                        .values(accessed_at=now)
                        .execution_options(synchronize_session=False)
                    )

        for memory in memories:
            memory.accessed_at = now
        return memories

    async def update(
        self,
        memory_id: str,
        content: Optional[str] = None,
        summary: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
        expires_at: Optional[datetime] = None,
        memory_type: Optional[Union[MemoryType, str]] = None,
    ) -> Memory:
        """Replace the given fields. ``accessed_at`` is left alone."""
        values: dict[str, Any] = {}
        if content is not None:
            if not content:
                raise ValueError("memory content cannot be empty")
            values["content"] = content
        if summary is not None:
            values["summary"] = summary
        if metadata is not None:
            values["metadata_"] = dict(metadata)
        if expires_at is not None:
            values["expires_at"] = as_utc_naive(expires_at)
        if memory_type is not None:
            values["memory_type"] = MemoryType(memory_type)

        async with self.db.session() as session:
            async with session.begin():
                row = await session.get(AIMemory, memory_id)
                if row is None:
                    raise MemoryNotFound(memory_id)
                for key, value in values.items():
                    setattr(row, key, value)
                if values:
                    row.updated_at = utcnow()
            return Memory.from_row(row)

    async def delete(self, memory_id: str) -> bool:
        async with self.db.session() as session:
            async with session.begin():
                result = await session.execute(
                    delete(AIMemory).where(AIMemory.id == memory_id)
                )
        return result.rowcount > 0

    async def sweep_expired(self, now: Optional[datetime] = None) -> int:
        """Delete every memory whose ``expires_at`` is before ``now``."""
        now = as_utc_naive(now) or utcnow()
        async with self.db.session() as session:
            async with session.begin():
                result = await session.execute(
                    delete(AIMemory).where(
                        AIMemory.expires_at.is_not(None),
                        AIMemory.expires_at < now,
                    )
                )
        count = result.rowcount or 0
        logger.info("Swept %d expired memories", count)
        return count
