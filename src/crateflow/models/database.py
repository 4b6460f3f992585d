"""Database session management for CrateFlow."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from crateflow.config import get_settings
from crateflow.models.base import Base
from crateflow.utils import get_logger

logger = get_logger(__name__)


def build_database_url(db_path: str) -> str:
    """
    Convert a state database path to an async SQLite URL.

    Args:
        db_path: Filesystem path or sqlite URL

    Returns:
        sqlite+aiosqlite URL
    """
    if db_path.startswith("sqlite+aiosqlite"):
        return db_path
    if db_path.startswith("sqlite"):
        return db_path.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return f"sqlite+aiosqlite:///{db_path}"


class DatabaseManager:
    """Manages database connections and sessions."""

    def __init__(self, state_db: str | None = None) -> None:
        """
        Initialize database manager.

        Args:
            state_db: Database path overriding the configured one
        """
        self._engine: AsyncEngine | None = None
        self._session_maker: async_sessionmaker[AsyncSession] | None = None
        self.settings = get_settings()
        self.state_db = state_db or self.settings.state_db

    def get_engine(self) -> AsyncEngine:
        """
        Get or create async database engine.

        Returns:
            AsyncEngine instance
        """
        if self._engine is None:
            db_url = build_database_url(self.state_db)
            self._engine = create_async_engine(db_url, echo=False, future=True)
            logger.info("Database engine created", extra={"db_url": db_url})

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

        The session commits when the block exits normally and rolls back when
        it raises, so each block is one atomic unit.

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


# Global instance
_db_manager: DatabaseManager | None = None


def get_db_manager() -> DatabaseManager:
    """
    Get global database manager instance.

    Returns:
        DatabaseManager instance
    """
    global _db_manager
    if _db_manager is None:
        _db_manager = DatabaseManager()
    return _db_manager
