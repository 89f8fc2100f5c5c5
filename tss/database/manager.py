import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from config.settings import settings

from .models import SCHEMA, Base

logger = logging.getLogger(__name__)

# Seconds a connection waits for another one to release the SQLite write lock
SQLITE_BUSY_TIMEOUT = 30


def _configure_sqlite_connection(dbapi_connection: Any, connection_record: Any) -> None:
    # ON DELETE CASCADE is only honoured by SQLite with this pragma
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
    # Transactions are started explicitly in _begin_sqlite_immediate
    dbapi_connection.isolation_level = None


def _begin_sqlite_immediate(conn: Any) -> None:
    # Take the database write lock before the first read, so a
    # check-then-insert cannot interleave with another connection
    conn.exec_driver_sql("BEGIN IMMEDIATE")


class DatabaseManager:
    def __init__(self, database_url: str | None = None) -> None:
        self.database_url = database_url or settings.database_url
        self.engine = None
        self.session_factory = None
        self._setup_engine()

    @property
    def dialect_name(self) -> str:
        return self.engine.dialect.name if self.engine else ""

    def _setup_engine(self) -> None:
        if self.database_url.startswith("sqlite"):
            # Convert sqlite:/// to sqlite+aiosqlite:///
            if "+aiosqlite" in self.database_url:
                async_url = self.database_url
            else:
                async_url = self.database_url.replace("sqlite://", "sqlite+aiosqlite://")
            engine_kwargs = {
                "echo": settings.debug,
                "connect_args": {"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT},
                # SQLite has no schemas; the tss tables live in the main database
                "execution_options": {"schema_translate_map": {SCHEMA: None}},
            }
            if ":memory:" in async_url:
                # Every connection would otherwise see its own empty database
                engine_kwargs["poolclass"] = StaticPool
        elif self.database_url.startswith("postgresql"):
            # Convert postgresql:// to postgresql+asyncpg://
            if "+asyncpg" in self.database_url:
                async_url = self.database_url
            else:
                async_url = self.database_url.replace("postgresql://", "postgresql+asyncpg://")
            engine_kwargs = {
                "echo": settings.debug,
                "pool_size": 20,
                "max_overflow": 30,
                "pool_pre_ping": True,
                "pool_recycle": 300,
            }
        else:
            raise ValueError(f"Unsupported database URL: {self.database_url}")

        self.engine = create_async_engine(async_url, **engine_kwargs)
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine.sync_engine, "connect", _configure_sqlite_connection)
            event.listen(self.engine.sync_engine, "begin", _begin_sqlite_immediate)
        self.session_factory = async_sessionmaker(bind=self.engine, class_=AsyncSession, expire_on_commit=False)

    async def create_tables(self) -> None:
        if not self.engine:
            raise RuntimeError("Database engine not initialized")

        database = self.engine.url.database
        if self.dialect_name == "sqlite" and database and database != ":memory:":
            Path(database).parent.mkdir(parents=True, exist_ok=True)

        async with self.engine.begin() as conn:
            if self.dialect_name == "postgresql":
                await conn.execute(text(f"CREATE SCHEMA IF NOT EXISTS {SCHEMA}"))
            await conn.run_sync(Base.metadata.create_all)

        logger.info(f"Database tables created successfully ({len(Base.metadata.tables)} tables)")

    async def drop_tables(self) -> None:
        if not self.engine:
            raise RuntimeError("Database engine not initialized")

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)

        logger.info("Database tables dropped successfully")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Open a session whose writes commit as one unit, or roll back together on error."""
        if not self.session_factory:
            raise RuntimeError("Session factory not initialized")

        session = self.session_factory()
        try:
            yield session
            await session.commit()
        except BaseException:
            # Cancellation included: a half-finished write set is never committed
            await session.rollback()
            raise
        finally:
            await session.close()

    async def health_check(self) -> bool:
        try:
            async with self.session() as session:
                await session.execute(text("SELECT 1"))
            return True
        except Exception as e:
            logger.error(f"Database health check failed: {e}")
            return False

    async def close(self) -> None:
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connection closed")


# Global database manager instance
db_manager = DatabaseManager()
