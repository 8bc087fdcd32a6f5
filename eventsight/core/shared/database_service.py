# eventsight/core/shared/database_service.py
"""
Database service for async SQLAlchemy session management.

Provides the engine, session factory and health check used by the event
store and the attempt ledger. PostgreSQL (asyncpg) is the production backend;
``sqlite+aiosqlite`` URLs are accepted for local runs and tests.

Usage:
    db = DatabaseService(settings.database_url)

    # Get async session (context manager)
    async with db.get_session() as session:
        result = await session.execute(select(PosthogEvent).limit(10))

    # Initialize database (create tables)
    await db.init_db()

    # Health check
    health = await db.health_check()

Celery workers construct the service with ``use_null_pool=True`` because every
task runs under its own ``asyncio.run`` loop and pooled connections cannot
cross loops.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Dict, Optional

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool, StaticPool

from eventsight.core.database.base import Base


class DatabaseService:
    """
    Database service for managing async SQLAlchemy sessions.

    Methods:
        get_session(): Get async database session (context manager)
        init_db(): Initialize database (create all tables)
        health_check(): Check database connectivity
        close(): Close database engine and connections
    """

    def __init__(
        self,
        database_url: str,
        pool_size: int = 20,
        max_overflow: int = 40,
        pool_recycle: int = 3600,
        use_null_pool: bool = False,
        echo: bool = False,
    ):
        self._logger = logging.getLogger("eventsight.database")
        self._database_url = database_url
        self._engine: Optional[AsyncEngine] = None
        self._session_factory: Optional[async_sessionmaker] = None
        self._initialize_engine(pool_size, max_overflow, pool_recycle, use_null_pool, echo)

    @property
    def dialect(self) -> str:
        return "sqlite" if self._database_url.startswith("sqlite") else "postgresql"

    def _initialize_engine(
        self,
        pool_size: int,
        max_overflow: int,
        pool_recycle: int,
        use_null_pool: bool,
        echo: bool,
    ) -> None:
        database_url = self._database_url

        # Log connection info (hide password)
        safe_url = database_url.split("@")[-1] if "@" in database_url else database_url
        self._logger.info("Initializing %s database: %s", self.dialect, safe_url)

        if self.dialect == "sqlite":
            # In-memory databases must share one connection across sessions
            engine_kwargs: Dict[str, Any] = {"echo": echo}
            if ":memory:" in database_url:
                engine_kwargs.update(
                    poolclass=StaticPool,
                    connect_args={"check_same_thread": False},
                )
            self._engine = create_async_engine(database_url, **engine_kwargs)
        elif use_null_pool:
            # Celery workers: fresh connection per task, each task owns its loop
            self._engine = create_async_engine(
                database_url,
                poolclass=NullPool,
                echo=echo,
                connect_args={
                    "server_settings": {
                        "application_name": "eventsight-worker",
                        "jit": "off",
                    }
                },
            )
            self._logger.info("PostgreSQL configured with NullPool for Celery worker")
        else:
            self._engine = create_async_engine(
                database_url,
                pool_size=pool_size,
                max_overflow=max_overflow,
                pool_pre_ping=True,
                pool_recycle=pool_recycle,
                echo=echo,
                connect_args={
                    "server_settings": {
                        "application_name": "eventsight",
                        "jit": "off",
                    }
                },
            )
            self._logger.info(
                "PostgreSQL connection pool: size=%s, max_overflow=%s, recycle=%ss",
                pool_size, max_overflow, pool_recycle,
            )

        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Get async database session as context manager.

        Commits on success and rolls back on error.

        Raises:
            RuntimeError: If database is not initialized
        """
        if not self._session_factory:
            raise RuntimeError("Database not initialized")

        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def init_db(self) -> None:
        """
        Create all tables defined on ``Base`` if they don't exist.

        Safe to call multiple times.
        """
        if not self._engine:
            raise RuntimeError("Database engine not initialized")

        self._logger.info("Creating database tables...")

        async with self._engine.begin() as conn:
            # Import all models to ensure they're registered with Base
            from eventsight.core.database import models  # noqa: F401

            await conn.run_sync(Base.metadata.create_all)

        self._logger.info("Database tables created successfully")

    async def health_check(self) -> Dict[str, Any]:
        """
        Check database connectivity.

        Returns:
            {"status": "healthy" | "unhealthy", "connected": bool,
             "database_type": str, "tables": {...}, "error": str (if unhealthy)}
        """
        try:
            async with self.get_session() as session:
                await session.execute(text("SELECT 1"))

                tables = {}
                for table_name in ("posthog_events", "events", "ingestion_attempts"):
                    result = await session.execute(text(f"SELECT COUNT(*) FROM {table_name}"))
                    tables[table_name] = result.scalar() or 0

            result = {
                "status": "healthy",
                "connected": True,
                "database_type": self.dialect,
                "tables": tables,
            }
            if self._engine and hasattr(self._engine.pool, "size"):
                result["pool_size"] = self._engine.pool.size()
                result["pool_checked_out"] = self._engine.pool.checkedout()
            return result

        except Exception as e:
            self._logger.error("Database health check failed: %s", e)
            return {
                "status": "unhealthy",
                "connected": False,
                "database_type": self.dialect,
                "error": str(e),
            }

    async def close(self) -> None:
        """Dispose the engine. Called on application shutdown."""
        if self._engine:
            await self._engine.dispose()
            self._logger.info("Database connections closed")

    def __repr__(self) -> str:
        return f"<DatabaseService(type={self.dialect})>"
