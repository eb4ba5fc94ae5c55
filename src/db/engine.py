"""Database handle: lazily created async engine and session factory."""

import logging
from typing import TYPE_CHECKING, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from src.db.base import Base

if TYPE_CHECKING:
    from src.settings import Settings

logger = logging.getLogger(__name__)


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class Database:
    """Owns one async engine, created on first use.

    Passed explicitly to every store/manager so tests can point them at a
    throwaway SQLite file and production at PostgreSQL.
    """

    def __init__(self, url: str, echo: bool = False, **engine_kwargs):
        self.url = url
        self.echo = echo
        self.engine_kwargs = engine_kwargs
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    @classmethod
    def from_settings(cls, settings: "Settings") -> "Database":
        return cls(settings.database_url, echo=settings.database_echo)

    @property
    def is_sqlite(self) -> bool:
        return self.url.startswith("sqlite")

    @property
    def engine(self) -> AsyncEngine:
        """Get or create the async engine."""
        if self._engine is None:
            kwargs = dict(self.engine_kwargs)
            if self.is_sqlite:
                # Writers queue on the database lock instead of failing fast.
                kwargs.setdefault("connect_args", {"timeout": 30})
            else:
                kwargs.setdefault("pool_size", 20)
                kwargs.setdefault("max_overflow", 10)
                kwargs.setdefault("pool_pre_ping", True)
            self._engine = create_async_engine(self.url, echo=self.echo, **kwargs)
            if self.is_sqlite:
                event.listen(self._engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
            logger.debug("Created database engine for %s", self._engine.url.render_as_string())
        return self._engine

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name

    def session(self) -> AsyncSession:
        """New session; use as ``async with db.session() as session``."""
        if self._session_factory is None:
            self._session_factory = async_sessionmaker(bind=self.engine, expire_on_commit=False)
        return self._session_factory()

    async def create_schema(self) -> None:
        """Create all tables (idempotent)."""
        # Register the models on Base.metadata
        import src.db.models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def drop_schema(self) -> None:
        import src.db.models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None


def dialect_insert(dialect_name: str, table):
    """``INSERT`` construct supporting ``ON CONFLICT`` for the given dialect."""
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect_name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise NotImplementedError(f"Upserts not supported on {dialect_name}")
    return insert(table)
