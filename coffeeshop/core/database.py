"""
Coffeeshop Database Configuration

Async SQLAlchemy engine and session lifecycle:
- Explicit initialize() on process start, close() on shutdown
- Connection check with exponential backoff retry
- One transaction per unit of work via transaction()
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

import structlog
from sqlalchemy import text
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from coffeeshop.models import Base

from .config import get_settings

logger = structlog.get_logger()


class DatabaseManager:
    """
    Database connection manager.

    Owns the process-wide engine and session factory. Nothing else in the
    code base creates engines; request handlers and task handlers borrow
    sessions through transaction().
    """

    def __init__(self, database_url: Optional[str] = None):
        self.settings = get_settings()
        self.database_url = database_url or self.settings.DATABASE_URL
        self.engine: Optional[AsyncEngine] = None
        self.session_factory: Optional[async_sessionmaker] = None

    def _engine_kwargs(self) -> dict:
        kwargs = {"echo": self.settings.DEBUG, "future": True}
        # SQLite uses a static pool; sizing options only apply to server databases
        if not self.database_url.startswith("sqlite"):
            kwargs.update(
                pool_size=self.settings.DATABASE_POOL_SIZE,
                max_overflow=self.settings.DATABASE_MAX_OVERFLOW,
                pool_pre_ping=True,
                pool_recycle=3600,
            )
        return kwargs

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=10),
        retry=retry_if_exception_type((OperationalError, InterfaceError, OSError)),
        reraise=True,
        before_sleep=lambda retry_state: logger.warning(
            "Database connection retry",
            attempt=retry_state.attempt_number,
            wait_time=retry_state.next_action.sleep,
        ),
    )
    async def _check_connection(self) -> None:
        async with self.engine.connect() as conn:
            result = await conn.execute(text("SELECT 1"))
            assert result.scalar() == 1

    async def initialize(self) -> None:
        """Create the engine and session factory and verify connectivity."""
        if self.engine is not None:
            return

        self.engine = create_async_engine(self.database_url, **self._engine_kwargs())
        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

        try:
            await self._check_connection()
        except Exception as e:
            logger.error(
                "Database initialization failed", error=str(e), exc_info=True
            )
            await self.engine.dispose()
            self.engine = None
            self.session_factory = None
            raise

        logger.info("Database initialized", dialect=self.engine.dialect.name)

    async def create_schema(self) -> None:
        """Create all tables. Used for local development and tests."""
        if not self.engine:
            raise RuntimeError("Database not initialized. Call initialize() first.")

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def transaction(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Open a session with one transaction around the block.

        Commits when the block exits normally, rolls back on any exception
        and re-raises it.
        """
        if not self.session_factory:
            raise RuntimeError("Database not initialized. Call initialize() first.")

        async with self.session_factory() as session:
            async with session.begin():
                yield session

    async def close(self) -> None:
        """Dispose of the engine and every pooled connection."""
        if self.engine is not None:
            await self.engine.dispose()
            logger.info("Database connections closed")
        self.engine = None
        self.session_factory = None
