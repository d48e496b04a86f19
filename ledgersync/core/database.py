"""
Database configuration and session management.
Uses SQLAlchemy 2.0 with async support.

Two independent stores are wired through this module: the operational store
(read-only for the engine) and the ledger store (ledgers plus engine state).
"""

from typing import AsyncGenerator, Optional
from contextlib import asynccontextmanager

from sqlalchemy import MetaData, event, text
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
    AsyncEngine
)

from .config import Settings, DatabaseConfig
from .exceptions import ConfigurationError
from .logging import get_logger

logger = get_logger(__name__)


def _enable_sqlite_pragmas(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


class Database:
    """One async engine plus its session factory."""

    def __init__(self, url: str, name: str, settings: Settings):
        self.name = name
        self.url = DatabaseConfig.get_database_url(url)
        self.engine: AsyncEngine = create_async_engine(
            self.url,
            **DatabaseConfig.get_engine_config(settings, self.url),
            echo=settings.debug
        )
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine.sync_engine, "connect", _enable_sqlite_pragmas)

        self.session_maker: async_sessionmaker[AsyncSession] = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )
        self.logger = logger.bind(database=name, dialect=self.dialect)

    @property
    def dialect(self) -> str:
        return self.engine.dialect.name

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get an async database session with automatic commit/rollback.

        Usage:
            async with database.session() as session:
                ...
        """
        async with self.session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def create_all(self, metadata: MetaData) -> None:
        """Create all tables of ``metadata`` in this database."""
        self.logger.info("Creating database tables", tables=len(metadata.tables))
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.create_all)

    async def drop_all(self, metadata: MetaData) -> None:
        """Drop all tables of ``metadata`` in this database."""
        self.logger.warning("Dropping database tables", tables=len(metadata.tables))
        async with self.engine.begin() as conn:
            await conn.run_sync(metadata.drop_all)

    async def health_check(self) -> bool:
        """Check database connectivity."""
        try:
            async with self.session() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            self.logger.error("Database health check failed", error=str(e))
            return False

    async def dispose(self) -> None:
        self.logger.info("Closing database connections")
        await self.engine.dispose()


def dialect_insert(dialect: str):
    """``insert`` construct with ON CONFLICT support for the given dialect."""
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise ConfigurationError(f"Unsupported database dialect: {dialect}")
    return insert


def create_databases(settings: Settings, operational_url: Optional[str] = None,
                     ledger_url: Optional[str] = None) -> tuple:
    """Build the (operational, ledger) database pair from settings."""
    operational = Database(operational_url or settings.operational_database_url, "operational", settings)
    ledger = Database(ledger_url or settings.ledger_database_url, "ledger", settings)
    return operational, ledger
