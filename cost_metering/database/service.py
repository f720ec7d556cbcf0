import logging
from typing import Optional, Dict, Any, List
from datetime import datetime
from decimal import Decimal

from .connection import DatabaseManager
from .repositories import CostLedgerRepository, BudgetConfigRepository, ProcessedContentRepository
from .models import BudgetConfigRecord, ProcessedContent
from ..cost_control.models import CostEvent, CostReport

logger = logging.getLogger(__name__)


class LedgerWriteError(Exception):
    """Raised when a batch of cost events could not be persisted"""
    pass


class DatabaseService:
    """High-level database service for the cost ledger and budget configuration"""

    def __init__(self, db_manager: Optional[DatabaseManager] = None):
        self.db_manager = db_manager or DatabaseManager()
        self._initialized = False

    async def initialize(self) -> bool:
        """Initialize database service"""
        try:
            success = await self.db_manager.initialize()
            if success:
                # Create tables if they don't exist
                await self.db_manager.create_tables()
                self._initialized = True
                logger.info("Database service initialized successfully")
            return success
        except Exception as e:
            logger.error(f"Database service initialization failed: {e}")
            return False

    def is_ready(self) -> bool:
        """Check if database service is ready"""
        return self._initialized and self.db_manager.is_initialized()

    async def insert_cost_events(self, events: List[CostEvent]) -> int:
        """
        Persist a batch of cost events in one INSERT

        Raises:
            LedgerWriteError: if the store rejects the batch; the caller owns the retry
        """
        if not events:
            return 0

        try:
            async with self.db_manager.get_session() as session:
                ledger_repo = CostLedgerRepository(session)
                inserted = await ledger_repo.insert_batch(events)

            logger.debug(f"Persisted {inserted} cost events to ledger")
            return inserted

        except Exception as e:
            raise LedgerWriteError(f"Failed to persist {len(events)} cost events: {e}") from e

    async def get_cost_report(self, tenant_id: str, start: datetime, end: datetime) -> CostReport:
        async with self.db_manager.get_session() as session:
            ledger_repo = CostLedgerRepository(session)
            return await ledger_repo.get_cost_report(tenant_id, start, end)

    async def get_daily_service_totals(self, tenant_id: str, day_start: datetime) -> Dict[str, Decimal]:
        async with self.db_manager.get_session() as session:
            ledger_repo = CostLedgerRepository(session)
            return await ledger_repo.get_daily_service_totals(tenant_id, day_start)

    async def count_ledger_events(self, tenant_id: Optional[str] = None) -> int:
        async with self.db_manager.get_session() as session:
            return await CostLedgerRepository(session).count_events(tenant_id)

    async def find_duplicate_event_ids(self, tenant_id: str) -> List[str]:
        async with self.db_manager.get_session() as session:
            return await CostLedgerRepository(session).find_duplicate_event_ids(tenant_id)

    async def get_budget_config(self, tenant_id: str) -> Optional[BudgetConfigRecord]:
        async with self.db_manager.get_session() as session:
            return await BudgetConfigRepository(session).get_config(tenant_id)

    async def upsert_budget_config(
        self,
        tenant_id: str,
        tier: Optional[str] = None,
        monthly_budget: Optional[Decimal] = None,
        alert_thresholds: Optional[List[int]] = None
    ) -> BudgetConfigRecord:
        async with self.db_manager.get_session() as session:
            record = await BudgetConfigRepository(session).upsert_config(
                tenant_id,
                tier=tier,
                monthly_budget=monthly_budget,
                alert_thresholds=alert_thresholds
            )
            logger.info(f"Updated budget config for tenant {tenant_id}")
            return record

    async def find_processed_content(self, tenant_id: str, content_hash: str) -> Optional[ProcessedContent]:
        async with self.db_manager.get_session() as session:
            return await ProcessedContentRepository(session).find_by_hash(tenant_id, content_hash)

    async def list_recent_fingerprints(self, tenant_id: str, limit: int = 500) -> List[ProcessedContent]:
        async with self.db_manager.get_session() as session:
            return await ProcessedContentRepository(session).list_recent_fingerprints(tenant_id, limit)

    async def remember_processed_content(
        self,
        tenant_id: str,
        content_hash: str,
        result: Optional[Dict[str, Any]] = None,
        perceptual_hash: Optional[str] = None,
        media_type: Optional[str] = None,
        cost: Optional[Decimal] = None
    ) -> ProcessedContent:
        async with self.db_manager.get_session() as session:
            return await ProcessedContentRepository(session).add(
                tenant_id,
                content_hash,
                result=result,
                perceptual_hash=perceptual_hash,
                media_type=media_type,
                cost=cost
            )

    async def health_check(self) -> Dict[str, Any]:
        """Check database service health"""
        try:
            db_health = await self.db_manager.health_check()
            return {
                "database_service": {
                    "status": "healthy" if self._initialized else "not_initialized",
                    "initialized": self._initialized
                },
                "database_connection": db_health
            }

        except Exception as e:
            return {
                "database_service": {
                    "status": "unhealthy",
                    "error": str(e),
                    "initialized": self._initialized
                }
            }

    async def cleanup(self):
        """Clean up database service"""
        try:
            await self.db_manager.cleanup()
            self._initialized = False
            logger.info("Database service cleanup complete")

        except Exception as e:
            logger.error(f"Database service cleanup error: {e}")
