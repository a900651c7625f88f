"""
Database connection and session management.
Provides the async SQLAlchemy engine and session factory used to store voice
conversations and document metadata.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from voicerag.config import settings
from voicerag.db.models import Base

logger = logging.getLogger(__name__)


class Database:
    """
    Lazily created engine plus session factory.
    Nothing connects until the first session is requested.
    """

    def __init__(self, url: Optional[str] = None):
        self.url = url or settings.database_url
        self.engine: AsyncEngine | None = None
        self.session_factory: async_sessionmaker[AsyncSession] | None = None

    def init_engine(self) -> AsyncEngine:
        if self.engine is not None:
            return self.engine

        logger.info("Initializing database connection...")
        self.engine = create_async_engine(
            self.url,
            echo=settings.is_development and settings.log_level == "DEBUG",
            pool_pre_ping=True,  # Validate connections before use
            pool_recycle=3600,
        )
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )
        return self.engine

    async def create_tables(self):
        """Create missing tables (development convenience; no migrations)."""
        engine = self.init_engine()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ready")

    async def health_check(self) -> bool:
        if self.engine is None:
            return False
        try:
            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Session scope: commits on success, rolls back and re-raises on error.

        Example:
            async with db.get_session() as session:
                await save_conversation(session, request)
        """
        if self.session_factory is None:
            self.init_engine()

        session = self.session_factory()
        try:
            yield session
            await session.commit()
        except Exception as e:
            await session.rollback()
            logger.error(f"Database session error: {e}", exc_info=True)
            raise
        finally:
            await session.close()

    async def close(self):
        if self.engine is not None:
            logger.info("Closing database connections...")
            await self.engine.dispose()
            self.engine = None
            self.session_factory = None


# Global database instance
db = Database()


async def get_db_session() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding one session per request."""
    async with db.get_session() as session:
        yield session
