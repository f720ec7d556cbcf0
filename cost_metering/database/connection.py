import logging
import re
from typing import AsyncGenerator, Optional, Dict, Any, List
from contextlib import asynccontextmanager
from sqlalchemy import text, inspect
from sqlalchemy.ext.asyncio import AsyncSession, AsyncEngine, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool, AsyncAdaptedQueuePool

from ..config import settings
from .models import Base

logger = logging.getLogger(__name__)

COST_TABLES = ("cost_ledger", "budget_configs", "processed_content")


class DatabaseManager:
    """Owns the async engine and session factory for the ledger store"""

    def __init__(self, database_url: Optional[str] = None):
        self.database_url = database_url or settings.database_url
        self.engine: Optional[AsyncEngine] = None
        self.SessionLocal: Optional[async_sessionmaker] = None
        self._is_initialized = False

    @property
    def backend(self) -> str:
        """Dialect name without the async driver suffix"""
        return self.database_url.split(":", 1)[0].split("+", 1)[0]

    def _engine_options(self) -> Dict[str, Any]:
        if self.backend == "sqlite":
            # One shared connection so in-memory databases survive across sessions
            return {
                "poolclass": StaticPool,
                "connect_args": {"check_same_thread": False},
            }

        # Ledger writes are short batched INSERTs; a modest pool is enough
        return {
            "poolclass": AsyncAdaptedQueuePool,
            "pool_size": settings.db_pool_size,
            "max_overflow": settings.db_max_overflow,
            "pool_recycle": settings.db_pool_recycle_seconds,
            "pool_pre_ping": True,
        }

    async def initialize(self) -> bool:
        """Create the engine and verify the store answers"""
        try:
            self.engine = create_async_engine(
                self.database_url, echo=settings.debug, **self._engine_options()
            )
            self.SessionLocal = async_sessionmaker(
                self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.connect() as conn:
                await conn.execute(text("SELECT 1"))

            self._is_initialized = True
            logger.info(f"Ledger store connected ({self.backend}): {self._get_safe_url()}")
            return True

        except Exception as e:
            logger.error(f"Ledger store connection failed for {self._get_safe_url()}: {e}")
            return False

    def _get_safe_url(self) -> str:
        """Database URL with the password masked"""
        if not self.database_url:
            return "None"
        return re.sub(r'://([^:]+):([^@]+)@', r'://\1:***@', self.database_url)

    async def create_tables(self) -> bool:
        """Create the cost tables if missing (Alembic owns the schema in production)"""
        if not self.engine:
            logger.error("Cannot create cost tables: engine not initialized")
            return False

        try:
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            return True

        except Exception as e:
            logger.error(f"Failed to create cost tables: {e}")
            return False

    async def _missing_tables(self) -> List[str]:
        async with self.engine.connect() as conn:
            existing = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
        return [table for table in COST_TABLES if table not in existing]

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Session that commits on success and rolls back on error"""
        if not self._is_initialized:
            raise RuntimeError("Database not initialized")

        async with self.SessionLocal() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def health_check(self) -> Dict[str, Any]:
        if not self._is_initialized:
            return {"status": "unhealthy", "error": "Database not initialized"}

        try:
            missing = await self._missing_tables()
            return {
                "status": "healthy" if not missing else "degraded",
                "backend": self.backend,
                "missing_tables": missing,
                "database_url": self._get_safe_url(),
            }

        except Exception as e:
            return {
                "status": "unhealthy",
                "error": str(e),
                "database_url": self._get_safe_url()
            }

    async def cleanup(self):
        if self.engine:
            try:
                await self.engine.dispose()
            except Exception as e:
                logger.error(f"Error disposing ledger store engine: {e}")
            self.engine = None

        self.SessionLocal = None
        self._is_initialized = False

    def is_initialized(self) -> bool:
        return self._is_initialized
