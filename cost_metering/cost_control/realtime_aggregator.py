import logging
from decimal import Decimal
from typing import Dict, Optional

from ..integrations.redis_cache import RedisCostCache, realtime_key
from .models import TOTAL_FIELD, MoneyLike, RealtimeAggregate, day_key, from_micros, to_micros, to_money

logger = logging.getLogger(__name__)


class RealtimeAggregator:
    """Per tenant per day running spend kept in the cost cache"""

    def __init__(self, cache: RedisCostCache, ttl_seconds: int = 86400):
        self.cache = cache
        self.ttl_seconds = ttl_seconds

    async def add(
        self,
        tenant_id: str,
        service: str,
        amount: MoneyLike,
        day: Optional[str] = None
    ) -> None:
        """Add `amount` to the tenant's day total and service subtotal in one atomic step"""
        day = day or day_key()
        micros = to_micros(amount)
        if service == TOTAL_FIELD:
            raise ValueError(f"Service name '{TOTAL_FIELD}' is reserved")

        await self.cache.increment_hash(
            realtime_key(tenant_id, day),
            {TOTAL_FIELD: micros, service: micros},
            self.ttl_seconds
        )
        logger.debug(f"Realtime aggregate {tenant_id}/{day}: +${to_money(amount)} ({service})")

    async def get(self, tenant_id: str, day: Optional[str] = None) -> Optional[RealtimeAggregate]:
        """Return the aggregate, or None when nothing was spent (or the entry expired)"""
        day = day or day_key()
        data = await self.cache.get_hash(realtime_key(tenant_id, day))
        if not data:
            return None

        by_service: Dict[str, Decimal] = {
            name: from_micros(value) for name, value in data.items() if name != TOTAL_FIELD
        }
        return RealtimeAggregate(
            tenant_id=tenant_id,
            day=day,
            total=from_micros(data.get(TOTAL_FIELD, 0)),
            by_service=by_service,
        )

    async def get_total(self, tenant_id: str, day: Optional[str] = None) -> Decimal:
        """Day total; absence means zero spend so far"""
        aggregate = await self.get(tenant_id, day)
        return aggregate.total if aggregate else to_money(0)

    async def replace(self, tenant_id: str, day: str, by_service: Dict[str, MoneyLike]) -> RealtimeAggregate:
        """Overwrite the aggregate, used when rebuilding from the ledger"""
        values = {service: to_micros(amount) for service, amount in by_service.items()}
        total = sum(values.values())
        if values:
            values[TOTAL_FIELD] = total

        await self.cache.replace_hash(realtime_key(tenant_id, day), values, self.ttl_seconds)
        logger.info(f"Rebuilt realtime aggregate {tenant_id}/{day}: ${from_micros(total)}")

        return RealtimeAggregate(
            tenant_id=tenant_id,
            day=day,
            total=from_micros(total),
            by_service={service: from_micros(micros) for service, micros in values.items()
                        if service != TOTAL_FIELD},
        )
