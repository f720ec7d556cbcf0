import logging
from typing import List, Optional, Dict, Any, Tuple
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, insert, func, and_, desc

from ..cost_control.models import CostEvent, CostReport, from_cents, to_cents, to_money
from .models import CostLedger, BudgetConfigRecord, ProcessedContent, as_utc

logger = logging.getLogger(__name__)


class BaseRepository:
    """Base repository with common database operations"""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def commit(self):
        """Commit current transaction"""
        await self.session.commit()

    async def rollback(self):
        """Rollback current transaction"""
        await self.session.rollback()


class CostLedgerRepository(BaseRepository):
    """Repository for the append-only cost ledger"""

    async def insert_batch(self, events: List[CostEvent]) -> int:
        """Insert all events with a single multi-row INSERT statement"""
        if not events:
            return 0

        rows = [
            {
                "event_id": event.event_id,
                "tenant_id": event.tenant_id,
                "service": event.service,
                "operation": event.operation,
                "amount_cents": to_cents(event.amount),
                "units": event.units,
                "metadata_json": dict(event.metadata),
                "tracked_at": as_utc(event.timestamp),
            }
            for event in events
        ]

        await self.session.execute(insert(CostLedger).values(rows))
        return len(rows)

    async def get_grouped_totals(
        self,
        tenant_id: str,
        start: datetime,
        end: datetime
    ) -> List[Tuple[str, str, Decimal, int]]:
        """(service, operation, amount, event count) for tracked_at in [start, end)"""
        result = await self.session.execute(
            select(
                CostLedger.service,
                CostLedger.operation,
                func.sum(CostLedger.amount_cents).label("total_cents"),
                func.count(CostLedger.id).label("event_count")
            )
            .where(
                and_(
                    CostLedger.tenant_id == tenant_id,
                    CostLedger.tracked_at >= as_utc(start),
                    CostLedger.tracked_at < as_utc(end)
                )
            )
            .group_by(CostLedger.service, CostLedger.operation)
        )

        return [
            (row.service, row.operation, from_cents(row.total_cents or 0), int(row.event_count))
            for row in result.fetchall()
        ]

    async def get_period_total(self, tenant_id: str, start: datetime, end: datetime) -> Decimal:
        result = await self.session.execute(
            select(func.sum(CostLedger.amount_cents))
            .where(
                and_(
                    CostLedger.tenant_id == tenant_id,
                    CostLedger.tracked_at >= as_utc(start),
                    CostLedger.tracked_at < as_utc(end)
                )
            )
        )
        return from_cents(result.scalar() or 0)

    async def get_cost_report(self, tenant_id: str, start: datetime, end: datetime) -> CostReport:
        """
        Aggregate spend over [start, end) with a trend against the preceding window

        Duplicate rows left by retried flushes are counted as-is.
        """
        start, end = as_utc(start), as_utc(end)
        report = CostReport(tenant_id=tenant_id, start=start, end=end, total=to_money(0))

        for service, operation, amount, count in await self.get_grouped_totals(tenant_id, start, end):
            report.total = to_money(report.total + amount)
            report.by_service[service] = to_money(report.by_service.get(service, Decimal("0")) + amount)
            report.by_operation[f"{service}.{operation}"] = amount
            report.event_count += count

        window = end - start
        report.previous_total = await self.get_period_total(tenant_id, start - window, start)
        if report.previous_total > 0:
            change = (report.total - report.previous_total) / report.previous_total * 100
            report.trend_percentage = change.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)

        return report

    async def get_daily_service_totals(self, tenant_id: str, day_start: datetime) -> Dict[str, Decimal]:
        """Per-service totals for one UTC day, used to rebuild realtime aggregates"""
        day_start = as_utc(day_start)
        totals: Dict[str, Decimal] = {}
        for service, _operation, amount, _count in await self.get_grouped_totals(
            tenant_id, day_start, day_start + timedelta(days=1)
        ):
            totals[service] = to_money(totals.get(service, Decimal("0")) + amount)
        return totals

    async def count_events(self, tenant_id: Optional[str] = None) -> int:
        query = select(func.count(CostLedger.id))
        if tenant_id is not None:
            query = query.where(CostLedger.tenant_id == tenant_id)
        result = await self.session.execute(query)
        return int(result.scalar() or 0)

    async def find_duplicate_event_ids(self, tenant_id: str) -> List[str]:
        """Event ids persisted more than once (for downstream reconciliation)"""
        result = await self.session.execute(
            select(CostLedger.event_id)
            .where(CostLedger.tenant_id == tenant_id)
            .group_by(CostLedger.event_id)
            .having(func.count(CostLedger.id) > 1)
        )
        return [row.event_id for row in result.fetchall()]


class BudgetConfigRepository(BaseRepository):
    """Repository for per-tenant budget configuration"""

    async def get_config(self, tenant_id: str) -> Optional[BudgetConfigRecord]:
        result = await self.session.execute(
            select(BudgetConfigRecord).where(BudgetConfigRecord.tenant_id == tenant_id)
        )
        return result.scalar_one_or_none()

    async def upsert_config(
        self,
        tenant_id: str,
        tier: Optional[str] = None,
        monthly_budget: Optional[Decimal] = None,
        alert_thresholds: Optional[List[int]] = None
    ) -> BudgetConfigRecord:
        """Create or update the tenant's single budget row"""
        record = await self.get_config(tenant_id)

        if record is None:
            record = BudgetConfigRecord(tenant_id=tenant_id, tier=tier or "free")
            self.session.add(record)
        elif tier is not None:
            record.tier = tier

        if monthly_budget is not None:
            record.monthly_budget_cents = to_cents(monthly_budget)
        if alert_thresholds is not None:
            record.alert_thresholds = sorted(int(t) for t in alert_thresholds)

        await self.session.flush()
        return record


class ProcessedContentRepository(BaseRepository):
    """Repository for processed-content fingerprints"""

    async def add(
        self,
        tenant_id: str,
        content_hash: str,
        result: Optional[Dict[str, Any]] = None,
        perceptual_hash: Optional[str] = None,
        media_type: Optional[str] = None,
        cost: Optional[Decimal] = None
    ) -> ProcessedContent:
        entry = ProcessedContent(
            tenant_id=tenant_id,
            content_hash=content_hash,
            perceptual_hash=perceptual_hash,
            media_type=media_type,
            result_json=result,
            cost_cents=to_cents(cost) if cost is not None else None,
        )
        self.session.add(entry)
        await self.session.flush()
        return entry

    async def find_by_hash(self, tenant_id: str, content_hash: str) -> Optional[ProcessedContent]:
        result = await self.session.execute(
            select(ProcessedContent)
            .where(
                and_(
                    ProcessedContent.tenant_id == tenant_id,
                    ProcessedContent.content_hash == content_hash
                )
            )
            .order_by(desc(ProcessedContent.id))
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def list_recent_fingerprints(self, tenant_id: str, limit: int = 500) -> List[ProcessedContent]:
        """Most recent entries that carry a perceptual hash"""
        result = await self.session.execute(
            select(ProcessedContent)
            .where(
                and_(
                    ProcessedContent.tenant_id == tenant_id,
                    ProcessedContent.perceptual_hash.isnot(None)
                )
            )
            .order_by(desc(ProcessedContent.id))
            .limit(limit)
        )
        return list(result.scalars().all())
