"""
Settlement Engine - Database.

============================================================
RESPONSIBILITY
============================================================
Manages database connections and sessions.

- Provides connection pooling
- Manages database sessions
- Handles connection lifecycle
- Serializes writers on SQLite

============================================================
DATABASE REQUIREMENTS
============================================================
- PostgreSQL (asyncpg) as primary database
- SQLite (aiosqlite) for local runs and tests
- SQLAlchemy 2.0 async ORM

SQLite has no row locks. Every transaction is opened with
BEGIN IMMEDIATE so concurrent settlement transactions queue
on the database lock instead of interleaving reads.

============================================================
"""

import os
import logging
from contextlib import asynccontextmanager
from typing import Optional, AsyncIterator

from sqlalchemy import event, text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from dotenv import load_dotenv

from .config import DatabaseConfig
from .models import Base


logger = logging.getLogger(__name__)


# =============================================================
# URL RESOLUTION
# =============================================================

def get_database_url(default: Optional[str] = None) -> str:
    """Get database URL from environment."""
    load_dotenv()

    url = os.getenv("SETTLEMENT_DATABASE_URL") or os.getenv("DATABASE_URL")
    if url and url.startswith("postgresql://"):
        # Async driver required
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    if not url:
        url = default or DatabaseConfig().url
        logger.warning(f"DATABASE_URL not set, using default: {url.split('@')[-1]}")

    return url


def is_sqlite_url(url: str) -> bool:
    """Check whether a URL targets SQLite."""
    return url.startswith("sqlite")


# =============================================================
# ENGINE
# =============================================================

def _install_sqlite_serialization(engine: AsyncEngine) -> None:
    """Open every SQLite transaction with BEGIN IMMEDIATE."""

    @event.listens_for(engine.sync_engine, "connect")
    def on_connect(dbapi_connection, connection_record):
        # Disable the driver's own BEGIN handling
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_database_engine(config: DatabaseConfig) -> AsyncEngine:
    """
    Create SQLAlchemy async engine.

    Args:
        config: Database configuration

    Returns:
        AsyncEngine
    """
    logger.info(f"Creating database engine for: {config.url.split('@')[-1]}")

    if is_sqlite_url(config.url):
        engine = create_async_engine(
            config.url,
            echo=config.echo,
            connect_args={"timeout": config.sqlite_busy_timeout_seconds},
        )
        _install_sqlite_serialization(engine)
        return engine

    return create_async_engine(
        config.url,
        pool_size=config.pool_size,
        max_overflow=config.max_overflow,
        pool_timeout=config.pool_timeout_seconds,
        pool_recycle=1800,
        pool_pre_ping=True,
        echo=config.echo,
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Create the async session factory."""
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        autoflush=False,
        expire_on_commit=False,
    )


# =============================================================
# DATABASE
# =============================================================

class Database:
    """
    Owns the engine and session factory.
    """

    def __init__(self, config: DatabaseConfig):
        self._config = config
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None

    @property
    def config(self) -> DatabaseConfig:
        return self._config

    @property
    def is_sqlite(self) -> bool:
        return is_sqlite_url(self._config.url)

    @property
    def lock_rows(self) -> bool:
        """Whether reads should take row locks."""
        return self._config.lock_rows and not self.is_sqlite

    def get_engine(self) -> AsyncEngine:
        if self._engine is None:
            self.connect()
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker:
        if self._session_factory is None:
            self.connect()
        return self._session_factory

    def connect(self) -> None:
        """Create engine and session factory."""
        if self._engine is not None:
            return
        self._engine = create_database_engine(self._config)
        self._session_factory = create_session_factory(self._engine)

    async def disconnect(self) -> None:
        """Dispose the engine."""
        if self._engine is None:
            return
        await self._engine.dispose()
        self._engine = None
        self._session_factory = None
        logger.info("Database engine disposed")

    async def init_schema(self) -> None:
        """Create all tables."""
        engine = self.get_engine()
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Schema ready: {len(Base.metadata.tables)} tables")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Session without an implicit transaction."""
        async with self.session_factory() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        """
        Session inside one transaction.

        Commits on normal exit, rolls back on any exception.
        """
        async with self.session_factory() as session:
            async with session.begin():
                yield session

    async def health_check(self) -> bool:
        """Check connection alive."""
        try:
            async with self.get_engine().connect() as conn:
                await conn.execute(text("SELECT 1"))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Database health check failed: {e}")
            return False
