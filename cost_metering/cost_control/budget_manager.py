import logging
import time
from typing import Dict, Any, List, Optional, Callable, Awaitable, Tuple
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from enum import Enum

from ..integrations.redis_cache import RedisCostCache, CostCacheError, alert_key
from .models import MoneyLike, day_key, from_cents, to_money, utc_now
from .realtime_aggregator import RealtimeAggregator

logger = logging.getLogger(__name__)

DEFAULT_ALERT_THRESHOLDS = [75, 90, 100]

DEFAULT_TIER_BUDGETS = {
    "free": Decimal("5.00"),
    "premium": Decimal("50.00"),
    "ultimate": Decimal("500.00"),
}


class AlertLevel(Enum):
    WARNING = "warning"
    CRITICAL = "critical"
    EMERGENCY = "emergency"


def alert_level_for(threshold: int) -> AlertLevel:
    if threshold >= 100:
        return AlertLevel.EMERGENCY
    if threshold >= 90:
        return AlertLevel.CRITICAL
    return AlertLevel.WARNING


def threshold_type(threshold: int) -> str:
    return f"threshold_{threshold}"


@dataclass
class BudgetAlert:
    """Budget threshold notification"""
    level: AlertLevel
    message: str
    tenant_id: str
    threshold: int
    current_spend: Decimal
    budget_limit: Decimal
    utilization_percentage: Decimal
    day: str
    timestamp: datetime = field(default_factory=utc_now)

    @property
    def threshold_type(self) -> str:
        return threshold_type(self.threshold)


@dataclass
class BudgetConfig:
    """Effective budget configuration for a tenant"""
    tenant_id: str
    tier: str
    monthly_budget: Decimal
    alert_thresholds: List[int] = field(default_factory=lambda: list(DEFAULT_ALERT_THRESHOLDS))
    is_default: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "tier": self.tier,
            "monthly_budget": str(self.monthly_budget),
            "alert_thresholds": list(self.alert_thresholds),
            "is_default": self.is_default,
        }


@dataclass
class AdmissionDecision:
    """Advisory result of an admission check"""
    skip: bool
    reason: str
    message: str
    estimated_amount: Decimal
    current_spend: Optional[Decimal] = None
    budget_limit: Optional[Decimal] = None

    @property
    def remaining_budget(self) -> Optional[Decimal]:
        if self.budget_limit is None or self.current_spend is None:
            return None
        return max(Decimal("0"), to_money(self.budget_limit - self.current_spend))

    def to_dict(self) -> Dict[str, Any]:
        remaining = self.remaining_budget
        return {
            "skip": self.skip,
            "reason": self.reason,
            "message": self.message,
            "estimated_amount": str(self.estimated_amount),
            "current_spend": str(self.current_spend) if self.current_spend is not None else None,
            "budget_limit": str(self.budget_limit) if self.budget_limit is not None else None,
            "remaining_budget": str(remaining) if remaining is not None else None,
        }


@dataclass
class BudgetStatus:
    """Current budget status for a tenant"""
    tenant_id: str
    monthly_budget: Decimal
    spent: Decimal
    remaining: Decimal
    utilization_percentage: Decimal
    over_budget: bool = False
    by_service: Dict[str, Decimal] = field(default_factory=dict)


AlertSink = Callable[[BudgetAlert], Awaitable[None]]


class BudgetManager:
    """
    Budget enforcement: admission control and threshold alerting

    Admission checks are a soft check-then-act against the realtime aggregate.
    Concurrent in-flight operations can each pass the check before any of
    them is recorded, so spend may overshoot the budget by at most the sum of
    those in-flight operations. No global lock is taken.
    """

    def __init__(
        self,
        aggregator: RealtimeAggregator,
        cache: RedisCostCache,
        config_store: Optional[Any] = None,
        single_operation_cap_ratio: float = 0.10,
        tier_budgets: Optional[Dict[str, MoneyLike]] = None,
        default_alert_thresholds: Optional[List[int]] = None,
        alert_mark_ttl_seconds: int = 86400,
        config_cache_ttl_seconds: int = 60
    ):
        self.aggregator = aggregator
        self.cache = cache
        self.config_store = config_store
        self.single_operation_cap_ratio = Decimal(str(single_operation_cap_ratio))
        self.tier_budgets = {
            tier: to_money(amount) for tier, amount in (tier_budgets or DEFAULT_TIER_BUDGETS).items()
        }
        self.default_alert_thresholds = sorted(default_alert_thresholds or DEFAULT_ALERT_THRESHOLDS)
        self.alert_mark_ttl_seconds = alert_mark_ttl_seconds
        self.config_cache_ttl_seconds = config_cache_ttl_seconds

        # tenant_id -> (loaded_at, stored row or None)
        self._config_cache: Dict[str, Tuple[float, Optional[Any]]] = {}

        self._on_budget_alert: Optional[AlertSink] = None

        self.stats = {
            "admission_checks": 0,
            "admission_skips": 0,
            "threshold_checks": 0,
            "alerts_emitted": 0,
            "fail_open": 0,
        }

        logger.info(
            f"Budget Manager initialized: cap_ratio={single_operation_cap_ratio}, "
            f"thresholds={self.default_alert_thresholds}"
        )

    # Budget configuration

    def default_budget_for(self, tier: Optional[str]) -> Decimal:
        return self.tier_budgets.get(tier or "free", self.tier_budgets.get("free", Decimal("0")))

    def _default_config(self, tenant_id: str, tier: Optional[str]) -> BudgetConfig:
        tier = tier if tier in self.tier_budgets else "free"
        return BudgetConfig(
            tenant_id=tenant_id,
            tier=tier,
            monthly_budget=self.default_budget_for(tier),
            alert_thresholds=list(self.default_alert_thresholds),
            is_default=True
        )

    async def get_budget_config(self, tenant_id: str, tier: Optional[str] = None) -> BudgetConfig:
        """Effective config: stored values with tier/threshold defaults filled in"""
        try:
            record = await self._load_stored_config(tenant_id)
        except Exception as e:
            logger.error(f"Error loading budget config for tenant {tenant_id}, using tier defaults: {e}")
            return self._default_config(tenant_id, tier)

        if record is None:
            return self._default_config(tenant_id, tier)

        stored_tier = record.tier or tier or "free"
        return BudgetConfig(
            tenant_id=tenant_id,
            tier=stored_tier,
            monthly_budget=(
                from_cents(record.monthly_budget_cents)
                if record.monthly_budget_cents is not None
                else self.default_budget_for(stored_tier)
            ),
            alert_thresholds=sorted(record.alert_thresholds or self.default_alert_thresholds),
            is_default=False
        )

    async def _load_stored_config(self, tenant_id: str) -> Optional[Any]:
        """Stored row (or its absence) per tenant; tier defaults are resolved per call, never cached"""
        if self.config_store is None:
            return None

        cached = self._config_cache.get(tenant_id)
        if cached and time.monotonic() - cached[0] < self.config_cache_ttl_seconds:
            return cached[1]

        record = await self.config_store.get_budget_config(tenant_id)
        self._config_cache[tenant_id] = (time.monotonic(), record)
        return record

    async def update_budget_config(
        self,
        tenant_id: str,
        tier: Optional[str] = None,
        monthly_budget: Optional[MoneyLike] = None,
        alert_thresholds: Optional[List[int]] = None
    ) -> BudgetConfig:
        """Persist a tenant's budget settings"""
        if monthly_budget is not None and to_money(monthly_budget) < 0:
            raise ValueError("monthly_budget must be >= 0")
        if alert_thresholds is not None and any(int(t) <= 0 for t in alert_thresholds):
            raise ValueError("alert thresholds must be positive percentages")
        if self.config_store is None:
            raise RuntimeError("No budget config store configured")

        await self.config_store.upsert_budget_config(
            tenant_id,
            tier=tier,
            monthly_budget=to_money(monthly_budget) if monthly_budget is not None else None,
            alert_thresholds=alert_thresholds
        )
        self.invalidate_config(tenant_id)
        logger.info(f"Budget config updated for tenant {tenant_id}")
        return await self.get_budget_config(tenant_id, tier)

    def invalidate_config(self, tenant_id: Optional[str] = None):
        if tenant_id is None:
            self._config_cache.clear()
        else:
            self._config_cache.pop(tenant_id, None)

    # Admission control

    async def would_exceed(
        self,
        tenant_id: str,
        estimated_amount: MoneyLike,
        tier: Optional[str] = None
    ) -> AdmissionDecision:
        """Decide whether an operation of `estimated_amount` should be skipped"""
        self.stats["admission_checks"] += 1
        estimate = to_money(estimated_amount)
        if estimate < 0:
            raise ValueError(f"estimated_amount must be >= 0, got {estimate}")

        config = await self.get_budget_config(tenant_id, tier)
        budget = config.monthly_budget

        try:
            current_spend = await self.aggregator.get_total(tenant_id)
        except CostCacheError as e:
            self.stats["fail_open"] += 1
            logger.warning(f"Realtime spend unavailable for tenant {tenant_id}, allowing operation: {e}")
            return AdmissionDecision(
                skip=False,
                reason="cache_unavailable",
                message="Spend could not be read; operation allowed",
                estimated_amount=estimate,
                budget_limit=budget
            )

        if current_spend + estimate > budget:
            self.stats["admission_skips"] += 1
            return AdmissionDecision(
                skip=True,
                reason="budget_exceeded",
                message=(
                    f"Estimated cost ${estimate} would exceed monthly budget "
                    f"${budget} (spent ${current_spend})"
                ),
                estimated_amount=estimate,
                current_spend=current_spend,
                budget_limit=budget
            )

        cap = to_money(budget * self.single_operation_cap_ratio)
        if estimate > cap:
            self.stats["admission_skips"] += 1
            return AdmissionDecision(
                skip=True,
                reason="single_operation_cap",
                message=(
                    f"Estimated cost ${estimate} exceeds single-operation cap ${cap} "
                    f"({self.single_operation_cap_ratio * 100:.0f}% of budget ${budget})"
                ),
                estimated_amount=estimate,
                current_spend=current_spend,
                budget_limit=budget
            )

        return AdmissionDecision(
            skip=False,
            reason="within_budget",
            message="Operation allowed within budget limits",
            estimated_amount=estimate,
            current_spend=current_spend,
            budget_limit=budget
        )

    # Threshold alerting

    async def check_thresholds(self, tenant_id: str, tier: Optional[str] = None) -> List[BudgetAlert]:
        """
        Emit at most one alert per threshold per tenant per day

        Each crossed threshold claims its own alert mark, so crossing 100%
        after 75% and 90% already fired today emits only the 100% alert.
        """
        self.stats["threshold_checks"] += 1
        config = await self.get_budget_config(tenant_id, tier)
        if config.monthly_budget <= 0:
            return []

        today = day_key()
        try:
            current_spend = await self.aggregator.get_total(tenant_id, today)
        except CostCacheError as e:
            self.stats["fail_open"] += 1
            logger.warning(f"Realtime spend unavailable for tenant {tenant_id}, skipping threshold check: {e}")
            return []

        percentage = (current_spend / config.monthly_budget * 100).quantize(
            Decimal("0.01"), rounding=ROUND_HALF_UP
        )

        alerts = []
        for threshold in config.alert_thresholds:
            if percentage < threshold:
                continue

            try:
                claimed = await self.cache.claim_marker(
                    alert_key(tenant_id, threshold_type(threshold), today),
                    self.alert_mark_ttl_seconds
                )
            except CostCacheError as e:
                self.stats["fail_open"] += 1
                logger.warning(f"Alert mark unavailable for tenant {tenant_id}, skipping alert: {e}")
                # Marks already claimed must still be delivered
                break

            if not claimed:
                continue

            level = alert_level_for(threshold)
            alerts.append(BudgetAlert(
                level=level,
                message=(
                    f"Tenant {tenant_id} budget {level.value}: ${current_spend}/${config.monthly_budget} "
                    f"({percentage}%) crossed {threshold}% threshold"
                ),
                tenant_id=tenant_id,
                threshold=threshold,
                current_spend=current_spend,
                budget_limit=config.monthly_budget,
                utilization_percentage=percentage,
                day=today
            ))

        await self._handle_budget_alerts(alerts)
        return alerts

    async def _handle_budget_alerts(self, alerts: List[BudgetAlert]):
        """Deliver alerts to the configured sink"""
        for alert in alerts:
            self.stats["alerts_emitted"] += 1
            logger.warning(f"Budget Alert: {alert.message}")

            if self._on_budget_alert:
                try:
                    await self._on_budget_alert(alert)
                except Exception as e:
                    logger.error(f"Error in budget alert callback: {e}")

    def on_budget_alert(self, callback: AlertSink):
        """Set budget alert callback"""
        self._on_budget_alert = callback

    async def get_budget_status(self, tenant_id: str, tier: Optional[str] = None) -> BudgetStatus:
        """Current spend against budget; zero spend when the cache is unavailable"""
        config = await self.get_budget_config(tenant_id, tier)

        try:
            aggregate = await self.aggregator.get(tenant_id)
        except CostCacheError as e:
            logger.warning(f"Realtime spend unavailable for tenant {tenant_id}: {e}")
            aggregate = None

        spent = aggregate.total if aggregate else to_money(0)
        budget = config.monthly_budget
        utilization = (
            (spent / budget * 100).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
            if budget > 0 else Decimal("0")
        )

        return BudgetStatus(
            tenant_id=tenant_id,
            monthly_budget=budget,
            spent=spent,
            remaining=max(Decimal("0"), to_money(budget - spent)),
            utilization_percentage=utilization,
            over_budget=spent >= budget,
            by_service=aggregate.by_service if aggregate else {}
        )
