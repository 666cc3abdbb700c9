from typing import AsyncGenerator, Optional, Dict, Any
from contextlib import asynccontextmanager

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    AsyncEngine,
    create_async_engine,
    async_sessionmaker
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.sql import text
import structlog

from smartwait.core.config import Settings, get_settings

logger = structlog.get_logger(__name__)

# SQLAlchemy Base class for models
Base = declarative_base()


class DatabaseManager:
    """Database connection and session manager"""

    def __init__(self, settings: Optional[Settings] = None):
        self._settings = settings
        self.async_engine: Optional[AsyncEngine] = None
        self.async_session_factory: Optional[async_sessionmaker] = None
        self._initialized = False

    @property
    def settings(self) -> Settings:
        return self._settings or get_settings()

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    @property
    def dialect_name(self) -> Optional[str]:
        if self.async_engine is None:
            return None
        return self.async_engine.dialect.name

    async def initialize(self) -> None:
        """Initialize database connections"""
        if self._initialized:
            logger.warning("Database already initialized")
            return

        settings = self.settings
        database_url = str(settings.database.DATABASE_URL)

        try:
            if settings.database.is_sqlite:
                # Pool sizing does not apply to SQLite
                self.async_engine = create_async_engine(
                    database_url,
                    echo=settings.DEBUG,
                    connect_args={"timeout": settings.database.DB_POOL_TIMEOUT},
                )
                event.listen(self.async_engine.sync_engine, "connect", _on_sqlite_connect)
                event.listen(self.async_engine.sync_engine, "begin", _on_sqlite_begin)
            else:
                self.async_engine = create_async_engine(
                    database_url,
                    pool_size=settings.database.DB_POOL_SIZE,
                    max_overflow=settings.database.DB_MAX_OVERFLOW,
                    pool_timeout=settings.database.DB_POOL_TIMEOUT,
                    pool_recycle=settings.database.DB_POOL_RECYCLE,
                    pool_pre_ping=True,  # Validate connections before use
                    echo=settings.DEBUG,  # Log SQL queries in debug mode
                )

            self.async_session_factory = async_sessionmaker(
                bind=self.async_engine,
                class_=AsyncSession,
                expire_on_commit=False,
                autoflush=False
            )

            await self._test_async_connection()

            self._initialized = True
            logger.info(
                "Database manager initialized successfully",
                dialect=self.async_engine.dialect.name,
                database=make_url(database_url).database,
            )

        except Exception as e:
            logger.error("Failed to initialize database", error=str(e), exc_info=True)
            raise

    async def _test_async_connection(self) -> None:
        """Test async database connection"""
        try:
            async with self.async_engine.begin() as conn:
                result = await conn.execute(text("SELECT 1"))
                row = result.fetchone()
                if row[0] != 1:
                    raise RuntimeError("Database connection test failed")
            logger.debug("Async database connection test passed")
        except Exception as e:
            logger.error("Async database connection test failed", error=str(e))
            raise

    async def create_tables(self) -> None:
        """Create all tables registered on Base"""
        if not self._initialized:
            await self.initialize()

        # Import all models to ensure they're registered
        from smartwait.models import notification, patient, queue  # noqa: F401

        async with self.async_engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        logger.info("Database tables created successfully")

    async def close(self) -> None:
        """Close database connections"""
        try:
            if self.async_engine:
                await self.async_engine.dispose()
                logger.debug("Async engine disposed")

            self._initialized = False
            logger.info("Database connections closed")

        except Exception as e:
            logger.error("Error closing database connections", error=str(e))

    @asynccontextmanager
    async def get_async_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get async database session; commits on success, rolls back on error"""
        if not self._initialized:
            await self.initialize()

        async with self.async_session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception as e:
                await session.rollback()
                logger.debug("Database session rolled back", error=str(e))
                raise


def _on_sqlite_connect(dbapi_connection, connection_record):
    """Enable foreign keys and hand transaction control to SQLAlchemy"""
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def _on_sqlite_begin(conn):
    # Writers queue on the database lock instead of failing on upgrade
    conn.exec_driver_sql("BEGIN IMMEDIATE")


async def check_db_health(manager: DatabaseManager) -> Dict[str, Any]:
    """Check database health and return status"""
    try:
        if not manager.is_initialized:
            return {
                "status": "unhealthy",
                "message": "Database not initialized"
            }

        async with manager.async_engine.begin() as conn:
            await conn.execute(text("SELECT 1"))

        result: Dict[str, Any] = {
            "status": "healthy",
            "dialect": manager.dialect_name,
            "message": "Database connection is healthy"
        }

        pool = manager.async_engine.pool
        if hasattr(pool, "checkedout"):
            result["pool_status"] = {
                "size": pool.size(),
                "checked_in": pool.checkedin(),
                "checked_out": pool.checkedout(),
                "overflow": pool.overflow(),
            }

        return result

    except Exception as e:
        logger.error("Database health check failed", error=str(e))
        return {
            "status": "unhealthy",
            "message": f"Database health check failed: {str(e)}"
        }


__all__ = [
    "Base",
    "DatabaseManager",
    "check_db_health",
]
