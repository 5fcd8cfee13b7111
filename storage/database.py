"""
Storage - Database.

============================================================
RESPONSIBILITY
============================================================
Manages database connections and sessions.

- Creates the async engine and session factory
- Creates the schema
- Provides a transactional session scope
- Health checks

============================================================
DESIGN PRINCIPLES
============================================================
- Async by default
- One session per repository operation
- Hard failures on persistence errors (rollback, log, re-raise)

============================================================
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from scan_engine.config import DatabaseConfig

from .models import Base


logger = logging.getLogger(__name__)


# ============================================================
# DATABASE
# ============================================================

class Database:
    """
    Async engine and session factory holder.

    Usage:
        db = Database(DatabaseConfig(url="sqlite+aiosqlite:///scan.db"))
        await db.connect()
        async with db.session() as session:
            ...
        await db.disconnect()
    """

    def __init__(self, config: Optional[DatabaseConfig] = None):
        self._config = config or DatabaseConfig()
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None

    # --------------------------------------------------------
    # LIFECYCLE
    # --------------------------------------------------------

    async def connect(self, create_schema: bool = True) -> None:
        """Create the engine and, optionally, the tables."""
        if self._engine is not None:
            return

        logger.info(f"Creating database engine for: {self._config.url.split('@')[-1]}")
        self._engine = create_async_engine(self._config.url, echo=self._config.echo)
        self._session_factory = async_sessionmaker(
            self._engine,
            expire_on_commit=False,
            autoflush=False,
        )

        if create_schema:
            async with self._engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database schema ready")

    async def disconnect(self) -> None:
        """Dispose of the engine."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database engine disposed")

    def get_engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("Database is not connected")
        return self._engine

    @property
    def dialect_name(self) -> str:
        return self.get_engine().dialect.name

    # --------------------------------------------------------
    # SESSIONS
    # --------------------------------------------------------

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """
        Session scope with rollback on error.

        The caller commits; any exception rolls back and is re-raised.
        """
        if self._session_factory is None:
            raise RuntimeError("Database is not connected")

        async with self._session_factory() as session:
            try:
                yield session
            except SQLAlchemyError as e:
                logger.error(f"Database error, rolling back: {e}")
                await session.rollback()
                raise
            except Exception:
                await session.rollback()
                raise

    async def health_check(self) -> bool:
        """Check that a connection can run a trivial query."""
        try:
            async with self.get_engine().connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False
