"""Database session management for GPU DevBox."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from gpu_devbox.config import Settings, get_settings
from gpu_devbox.models.base import Base
from gpu_devbox.utils import get_logger

logger = get_logger(__name__)


def build_database_url(state_db: str) -> str:
    """
    Turn the configured state database into an async SQLAlchemy URL.

    Args:
        state_db: Plain SQLite path or SQLAlchemy URL

    Returns:
        Async driver URL
    """
    if "://" not in state_db:
        return f"sqlite+aiosqlite:///{state_db}"
    if state_db.startswith("sqlite://"):
        return state_db.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return state_db


def _enable_sqlite_foreign_keys(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class DatabaseManager:
    """Manages database connections and sessions."""

    def __init__(self, settings: Settings | None = None, url: str | None = None) -> None:
        """
        Initialize database manager.

        Args:
            settings: Application settings (defaults to the cached settings)
            url: Explicit database URL, overriding ``settings.state_db``
        """
        self._engine: AsyncEngine | None = None
        self._session_maker: async_sessionmaker[AsyncSession] | None = None
        self.settings = settings or get_settings()
        self.url = url or build_database_url(self.settings.state_db)

    def get_engine(self) -> AsyncEngine:
        """
        Get or create async database engine.

        Returns:
            AsyncEngine instance
        """
        if self._engine is None:
            self._engine = create_async_engine(self.url, echo=False, future=True)
            if self.url.startswith("sqlite"):
                event.listen(self._engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
            logger.info("Database engine created", extra={"db_url": self.url})

        return self._engine

    def get_session_maker(self) -> async_sessionmaker[AsyncSession]:
        """
        Get or create session maker.

        Returns:
            async_sessionmaker instance
        """
        if self._session_maker is None:
            self._session_maker = async_sessionmaker(
                self.get_engine(),
                class_=AsyncSession,
                expire_on_commit=False,
            )
            logger.info("Session maker created")

        return self._session_maker

    async def create_tables(self) -> None:
        """Create all database tables."""
        engine = self.get_engine()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables created")

    async def close(self) -> None:
        """Close database engine."""
        if self._engine:
            await self._engine.dispose()
            self._engine = None
            self._session_maker = None
            logger.info("Database engine closed")

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get an async database session.

        Commits when the block exits cleanly and rolls back otherwise.

        Yields:
            AsyncSession instance
        """
        session_maker = self.get_session_maker()
        async with session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

