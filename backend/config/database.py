"""
Database Configuration and Connection Management

Handles connections to:
- PostgreSQL (via SQLAlchemy async + asyncpg) for privacy records and the audit log
- Redis for the short-lived session cache
"""

from typing import Optional
from contextlib import asynccontextmanager
from urllib.parse import urlparse, parse_qs, urlencode, urlunparse

from redis import asyncio as aioredis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import declarative_base

import structlog

from config.settings import settings

logger = structlog.get_logger()


# SQLAlchemy Base for ORM models
Base = declarative_base()


def to_async_url(db_url: str) -> tuple[str, dict]:
    """
    Convert a libpq-style URL into an asyncpg SQLAlchemy URL.

    asyncpg rejects ``sslmode``/``channel_binding`` query params, so they are
    stripped and ``sslmode=require`` is translated into connect_args.
    """
    connect_args = {}
    parsed = urlparse(db_url)
    params = parse_qs(parsed.query)
    sslmode = params.pop("sslmode", [None])[0]
    params.pop("channel_binding", None)
    if sslmode in ("require", "verify-ca", "verify-full"):
        connect_args["ssl"] = "require"

    clean_query = urlencode({k: v[0] for k, v in params.items()})
    db_url = urlunparse(parsed._replace(query=clean_query))

    if db_url.startswith("postgresql://"):
        db_url = db_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    elif db_url.startswith("postgres://"):
        db_url = db_url.replace("postgres://", "postgresql+asyncpg://", 1)

    return db_url, connect_args


class DatabaseManager:
    """Manages database connections and pooling"""

    def __init__(self):
        self.engine = None
        self.redis_client: Optional[aioredis.Redis] = None
        self.async_session_maker = None

    async def initialize(self):
        """Initialize all database connections"""
        await self._init_database()
        await self._init_redis()

    async def _init_database(self):
        """Initialize the SQLAlchemy engine and session factory"""
        if not settings.database_url:
            logger.info("database_not_configured")
            return

        try:
            sqlalchemy_url, connect_args = to_async_url(settings.database_url)
            self.engine = create_async_engine(
                sqlalchemy_url,
                echo=False,
                pool_size=settings.db_pool_size,
                max_overflow=settings.db_max_overflow,
                pool_pre_ping=True,
                pool_recycle=300,
                pool_timeout=30,
                connect_args=connect_args,
            )

            self.async_session_maker = async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            # Schema is managed by migrations in production
            if not settings.is_production:
                await self.create_tables()

            logger.info("database_pool_initialized")
        except Exception as e:
            logger.error("database_init_failed", error=str(e))
            if settings.is_production:
                raise
            logger.info("continuing_without_database", environment=settings.environment)
            self.engine = None
            self.async_session_maker = None

    async def create_tables(self):
        """Create the privacy tables if they do not exist"""
        # Registers the ORM tables on Base.metadata
        import compliance.repositories  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("database_tables_ensured")

    async def _init_redis(self):
        """Initialize Redis connection"""
        if not settings.redis_url:
            logger.info("redis_not_configured")
            return

        try:
            self.redis_client = aioredis.from_url(
                settings.redis_url,
                password=settings.redis_password,
                encoding="utf-8",
                decode_responses=True,
                max_connections=10,
                socket_keepalive=True,
                socket_connect_timeout=5,
                retry_on_timeout=True
            )

            # Test connection
            await self.redis_client.ping()

            logger.info("redis_initialized")
        except Exception as e:
            logger.error("redis_init_failed", error=str(e))
            if settings.is_production:
                raise
            logger.info("continuing_without_redis", environment=settings.environment)
            self.redis_client = None

    async def close(self):
        """Close all database connections"""
        if self.engine:
            await self.engine.dispose()
            logger.info("database_engine_disposed")

        if self.redis_client:
            await self.redis_client.aclose()
            logger.info("redis_connection_closed")

    @asynccontextmanager
    async def get_session(self):
        """Get a database session (SQLAlchemy). Yields None if not initialized."""
        if not self.async_session_maker:
            yield None
            return

        async with self.async_session_maker() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def ping(self) -> bool:
        """Run a trivial query against the database"""
        if not self.engine:
            return False
        async with self.engine.connect() as conn:
            result = await conn.execute(text("SELECT 1"))
            return result.scalar() == 1

    async def get_redis_client(self) -> Optional[aioredis.Redis]:
        """Get Redis client (returns None if not initialized)"""
        return self.redis_client


# Global database manager instance
db_manager = DatabaseManager()


# Dependency injection for FastAPI
async def get_session():
    """FastAPI dependency for a database session"""
    async with db_manager.get_session() as session:
        yield session
