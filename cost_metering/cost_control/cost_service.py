import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Any, Optional, List, Iterable, Tuple

from ..config import settings as default_settings, Settings
from ..database import DatabaseManager, DatabaseService
from ..integrations.redis_cache import RedisCostCache, CostCacheError
from .budget_manager import BudgetManager, BudgetConfig, BudgetStatus, AdmissionDecision, AlertSink
from .cost_meter import CostMeter
from .cost_optimizer import CostOptimizer, CostEstimate, ProcessingPlan, select_plan
from .models import CostEvent, CostReport, MoneyLike, RealtimeAggregate, day_key, to_money, utc_now
from .price_table import PriceTable
from .realtime_aggregator import RealtimeAggregator

logger = logging.getLogger(__name__)


class CostControlService:
    """Owns and wires the metering, budget and optimization components"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        cache: Optional[RedisCostCache] = None,
        database: Optional[DatabaseService] = None,
        price_table: Optional[PriceTable] = None
    ):
        self.settings = settings or default_settings

        self.cache = cache or RedisCostCache(self.settings.redis_url)
        self.database = database or DatabaseService(DatabaseManager(self.settings.database_url))
        self.price_table = price_table or PriceTable.load(self.settings.price_table_path)

        self.aggregator = RealtimeAggregator(self.cache, ttl_seconds=self.settings.realtime_ttl_seconds)
        self.meter = CostMeter(
            self.aggregator,
            self.database.insert_cost_events,
            flush_threshold=self.settings.cost_flush_threshold,
            flush_interval_seconds=(
                self.settings.cost_flush_interval_seconds if self.settings.cost_flush_timer_enabled else 0
            )
        )
        self.budget_manager = BudgetManager(
            self.aggregator,
            self.cache,
            config_store=self.database,
            single_operation_cap_ratio=self.settings.single_operation_cap_ratio,
            tier_budgets={
                "free": self.settings.default_budget_free,
                "premium": self.settings.default_budget_premium,
                "ultimate": self.settings.default_budget_ultimate,
            },
            default_alert_thresholds=self.settings.default_alert_thresholds,
            alert_mark_ttl_seconds=self.settings.alert_mark_ttl_seconds,
            config_cache_ttl_seconds=self.settings.budget_config_cache_ttl_seconds
        )
        self.optimizer = CostOptimizer(
            price_table=self.price_table,
            content_store=self.database,
            safety_margin=Decimal(str(self.settings.estimate_safety_margin)),
            max_hamming_distance=self.settings.dedup_max_hamming_distance,
            dedup_lookback_limit=self.settings.dedup_lookback_limit,
            max_concurrency=self.settings.batch_max_concurrency
        )

        # Threshold checks run after every record, in the background
        self.meter.on_recorded(self.budget_manager.check_thresholds)

        self._initialized = False

    async def initialize(self) -> bool:
        """Connect the store and cache and start the flush timer"""
        try:
            if not await self.database.initialize():
                logger.error("Cost ledger store unavailable")
                return False

            try:
                await self.cache.initialize()
            except CostCacheError as e:
                # Metering keeps buffering; admission and alerts fail open until the cache returns
                logger.warning(f"Cost cache unavailable at startup: {e}")

            await self.meter.start()
            self._initialized = True
            logger.info("Cost Control Service initialized successfully")
            return True

        except Exception as e:
            logger.error(f"Cost Control Service initialization failed: {e}")
            return False

    def is_ready(self) -> bool:
        return self._initialized

    async def cleanup(self):
        """Stop the meter (final flush) and release connections"""
        try:
            await self.meter.stop()
        except Exception as e:
            logger.error(f"Error stopping cost meter: {e}")

        await self.cache.cleanup()
        await self.database.cleanup()
        self._initialized = False
        logger.info("Cost Control Service cleanup complete")

    # Metering

    async def record(
        self,
        tenant_id: str,
        service: str,
        operation: str,
        amount: MoneyLike,
        units: Optional[MoneyLike] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[CostEvent]:
        return await self.meter.record(tenant_id, service, operation, amount, units, metadata)

    async def record_usage(
        self,
        tenant_id: str,
        service: str,
        operation: str,
        units: MoneyLike,
        metadata: Optional[Dict[str, Any]] = None
    ) -> Optional[CostEvent]:
        """Record an operation priced from the price table"""
        amount = self.price_table.cost_for(service, operation, units)
        return await self.meter.record(tenant_id, service, operation, amount, units, metadata)

    async def flush(self) -> int:
        return await self.meter.flush()

    async def find_duplicate_ledger_events(self, tenant_id: str) -> List[str]:
        """Event ids written more than once by retried flushes, for reconciliation"""
        return await self.database.find_duplicate_event_ids(tenant_id)

    # Estimation and admission

    def get_plan(self, tier: Any) -> ProcessingPlan:
        return select_plan(tier)

    def estimate(
        self,
        media_type: str,
        size_bytes: int,
        features: Optional[Iterable[Any]] = None,
        duration_seconds: Optional[float] = None,
        tier: Optional[str] = None
    ) -> CostEstimate:
        """Estimate with explicit features, or with everything the tier's plan enables"""
        if features is None and tier is not None:
            features = select_plan(tier).features
        return self.optimizer.estimate_cost(media_type, size_bytes, features, duration_seconds)

    async def check_admission(
        self,
        tenant_id: str,
        estimated_amount: MoneyLike,
        tier: Optional[str] = None
    ) -> AdmissionDecision:
        return await self.budget_manager.would_exceed(tenant_id, estimated_amount, tier)

    async def evaluate_operation(
        self,
        tenant_id: str,
        media_type: str,
        size_bytes: int,
        features: Optional[Iterable[Any]] = None,
        duration_seconds: Optional[float] = None,
        tier: Optional[str] = None
    ) -> Tuple[CostEstimate, AdmissionDecision]:
        """Estimate then admission-check a prospective operation"""
        estimate = self.estimate(media_type, size_bytes, features, duration_seconds, tier)
        decision = await self.check_admission(tenant_id, estimate.total, tier)
        if decision.skip:
            logger.info(f"Skipping {media_type} operation for tenant {tenant_id}: {decision.message}")
        return estimate, decision

    # Budgets

    async def get_budget_config(self, tenant_id: str, tier: Optional[str] = None) -> BudgetConfig:
        return await self.budget_manager.get_budget_config(tenant_id, tier)

    async def update_budget_config(
        self,
        tenant_id: str,
        tier: Optional[str] = None,
        monthly_budget: Optional[MoneyLike] = None,
        alert_thresholds: Optional[List[int]] = None
    ) -> BudgetConfig:
        return await self.budget_manager.update_budget_config(
            tenant_id, tier=tier, monthly_budget=monthly_budget, alert_thresholds=alert_thresholds
        )

    async def get_budget_status(self, tenant_id: str, tier: Optional[str] = None) -> BudgetStatus:
        return await self.budget_manager.get_budget_status(tenant_id, tier)

    def on_budget_alert(self, callback: AlertSink):
        self.budget_manager.on_budget_alert(callback)

    # Reporting

    async def get_realtime(self, tenant_id: str, day: Optional[str] = None) -> RealtimeAggregate:
        """Realtime spend; an absent or unreadable aggregate reads as zero"""
        day = day or day_key()
        try:
            aggregate = await self.aggregator.get(tenant_id, day)
        except CostCacheError as e:
            logger.warning(f"Realtime spend unavailable for tenant {tenant_id}: {e}")
            aggregate = None
        return aggregate or RealtimeAggregate(tenant_id=tenant_id, day=day)

    async def get_report(
        self,
        tenant_id: str,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> CostReport:
        """
        Ledger report for [start, end), defaulting to the last 30 days

        Buffered events become visible once flushed.
        """
        end = end or utc_now()
        start = start or end - timedelta(days=30)
        if start >= end:
            raise ValueError("start must be before end")
        return await self.database.get_cost_report(tenant_id, start, end)

    async def rebuild_realtime_aggregate(self, tenant_id: str, day: Optional[str] = None) -> RealtimeAggregate:
        """Recompute a tenant's day aggregate from the ledger plus unflushed events"""
        day = day or day_key()
        day_start = datetime.fromisoformat(day).replace(tzinfo=timezone.utc)

        # Flushes paused so ledger plus buffer is complete; records paused so no add lands after replace
        async with self.meter.hold_flushes(), self.meter.hold_records():
            totals: Dict[str, Decimal] = dict(await self.database.get_daily_service_totals(tenant_id, day_start))
            for event in self.meter.buffered_events(tenant_id, day):
                totals[event.service] = to_money(totals.get(event.service, Decimal("0")) + event.amount)

            return await self.aggregator.replace(tenant_id, day, totals)

    async def health_check(self) -> Dict[str, Any]:
        cache_health = await self.cache.health_check()
        database_health = await self.database.health_check()

        # The ledger is required; a missing cache only degrades admission and alerting
        if database_health.get("database_service", {}).get("status") != "healthy":
            status = "unhealthy"
        elif cache_health.get("status") != "healthy":
            status = "degraded"
        else:
            status = "healthy"

        return {
            "status": status,
            "initialized": self._initialized,
            "cache": cache_health,
            "database": database_health,
            "meter": self.meter.get_stats(),
        }

    def get_stats(self) -> Dict[str, Any]:
        return {
            "meter": self.meter.get_stats(),
            "budget": dict(self.budget_manager.stats),
            "optimizer": dict(self.optimizer.stats),
        }
