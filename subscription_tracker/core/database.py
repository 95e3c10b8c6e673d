"""
Database configuration and session management.
Uses SQLAlchemy 2.0 with async support.

Every query issued through ``Database.run`` passes through the database
circuit breaker and retry executor.
"""

from typing import AsyncGenerator, Awaitable, Callable, Optional, TypeVar
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .config import Settings, DatabaseConfig, settings as default_settings
from .exceptions import DatabaseError
from .logging import get_logger
from .resilience import CircuitBreaker, RetryExecutor

logger = get_logger(__name__)

T = TypeVar("T")


class Database:
    """Owns the engine, the session factory and the database breaker."""

    def __init__(
        self,
        url: Optional[str] = None,
        config: Settings = default_settings,
        circuit_breaker: Optional[CircuitBreaker] = None,
        retry: Optional[RetryExecutor] = None,
    ):
        self.url = url or DatabaseConfig.get_database_url(config, async_driver=True)
        self.config = config
        self.engine: Optional[AsyncEngine] = None
        self.session_maker: Optional[async_sessionmaker[AsyncSession]] = None

        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            name="database",
            failure_threshold=config.db_breaker_failure_threshold,
            reset_timeout=config.db_breaker_reset_timeout,
        )
        self.retry = retry or RetryExecutor(
            name="database",
            max_attempts=config.db_retry_max_attempts,
            initial_delay=config.db_retry_delay,
            backoff_factor=config.db_retry_backoff_factor,
        )
        self.logger = logger.bind(service="database")

    @property
    def dialect(self) -> str:
        if not self.engine:
            raise DatabaseError("Database not initialized. Call init() first.")
        return self.engine.dialect.name

    async def init(self) -> None:
        """Create the engine and session factory."""
        if self.engine:
            return

        self.logger.info("Initializing database connections")
        self.engine = create_async_engine(
            self.url,
            **DatabaseConfig.get_engine_config(self.config, self.url),
            echo=self.config.debug
        )
        self.session_maker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )
        self.logger.info("Database connections initialized", dialect=self.engine.dialect.name)

    async def close(self) -> None:
        """Drain and close the connection pool."""
        if not self.engine:
            return

        self.logger.info("Closing database connections")
        await self.engine.dispose()
        self.engine = None
        self.session_maker = None
        self.logger.info("Database connections closed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get an async database session with automatic commit/rollback.

        Usage:
            async with database.session() as session:
                ...
        """
        if not self.session_maker:
            raise DatabaseError("Database not initialized. Call init() first.")

        async with self.session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def run(self, operation: Callable[[AsyncSession], Awaitable[T]]) -> T:
        """Run ``operation`` in its own transaction behind breaker and retry."""
        async def attempt() -> T:
            async with self.session() as session:
                return await operation(session)

        return await self.circuit_breaker.execute(
            lambda: self.retry.execute(attempt)
        )

    async def create_tables(self) -> None:
        """Create all tables in the database."""
        from subscription_tracker.models.base import Base

        if not self.engine:
            raise DatabaseError("Database not initialized. Call init() first.")

        self.logger.info("Creating database tables")
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        self.logger.info("Database tables created")

    async def drop_tables(self) -> None:
        """Drop all tables in the database."""
        from subscription_tracker.models.base import Base

        if not self.engine:
            raise DatabaseError("Database not initialized. Call init() first.")

        self.logger.warning("Dropping all database tables")
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        self.logger.info("Database tables dropped")

    async def health_check(self) -> bool:
        """Check database connectivity."""
        try:
            await self.run(lambda session: session.execute(text("SELECT 1")))
            return True
        except Exception as e:
            self.logger.error("Database health check failed", error=str(e))
            return False

    def pool_status(self) -> Optional[dict]:
        """Connection pool counters, when the pool exposes them."""
        if not self.engine:
            return None
        pool = self.engine.pool
        if not hasattr(pool, "checkedout"):
            return None
        return {
            "size": pool.size(),
            "checked_out": pool.checkedout(),
            "overflow": pool.overflow(),
        }
