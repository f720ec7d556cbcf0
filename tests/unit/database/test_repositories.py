"""Tests for database repositories"""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal

from cost_metering.cost_control.models import CostEvent
from cost_metering.database.models import CostLedger


def make_event(tenant_id="t1", service="rekognition", operation="detect_labels",
               amount="0.001", timestamp=None):
    return CostEvent.create(
        tenant_id=tenant_id,
        service=service,
        operation=operation,
        amount=Decimal(amount),
        units=1,
        metadata={"file_id": "f1"},
        timestamp=timestamp
    )


REPORT_START = datetime(2026, 10, 1, tzinfo=timezone.utc)
REPORT_END = datetime(2026, 10, 8, tzinfo=timezone.utc)


class TestCostLedgerRepository:
    """Test CostLedgerRepository"""

    @pytest.mark.asyncio
    async def test_insert_batch(self, ledger_repository):
        events = [make_event() for _ in range(5)]

        inserted = await ledger_repository.insert_batch(events)
        await ledger_repository.commit()

        assert inserted == 5
        assert await ledger_repository.count_events("t1") == 5

    @pytest.mark.asyncio
    async def test_insert_empty_batch(self, ledger_repository):
        assert await ledger_repository.insert_batch([]) == 0

    @pytest.mark.asyncio
    async def test_amount_stored_in_cents(self, ledger_repository, db_session):
        from sqlalchemy import select

        await ledger_repository.insert_batch([make_event(amount="0.001")])

        row = (await db_session.execute(select(CostLedger))).scalar_one()

        assert Decimal(str(row.amount_cents)) == Decimal("0.1")
        assert row.metadata_json == {"file_id": "f1"}
        assert len(row.event_id) == 32

    @pytest.mark.asyncio
    async def test_cost_report_groups_and_trends(self, ledger_repository):
        in_window = REPORT_START + timedelta(days=2)
        previous_window = REPORT_START - timedelta(days=3)

        await ledger_repository.insert_batch([
            make_event(amount="1.00", timestamp=in_window),
            make_event(amount="1.00", timestamp=in_window),
            make_event(service="transcribe", operation="transcription", amount="0.50", timestamp=in_window),
            make_event(amount="2.00", timestamp=previous_window),
            make_event(tenant_id="t2", amount="9.00", timestamp=in_window),
        ])

        report = await ledger_repository.get_cost_report("t1", REPORT_START, REPORT_END)

        assert report.total == Decimal("2.5")
        assert report.by_service == {"rekognition": Decimal("2"), "transcribe": Decimal("0.5")}
        assert report.by_operation == {
            "rekognition.detect_labels": Decimal("2"),
            "transcribe.transcription": Decimal("0.5"),
        }
        assert report.event_count == 3
        assert report.previous_total == Decimal("2")
        assert report.trend_percentage == Decimal("25.00")

    @pytest.mark.asyncio
    async def test_trend_is_none_without_previous_spend(self, ledger_repository):
        await ledger_repository.insert_batch([
            make_event(amount="1.00", timestamp=REPORT_START + timedelta(hours=1))
        ])

        report = await ledger_repository.get_cost_report("t1", REPORT_START, REPORT_END)

        assert report.total == Decimal("1")
        assert report.trend_percentage is None

    @pytest.mark.asyncio
    async def test_window_end_is_exclusive(self, ledger_repository):
        await ledger_repository.insert_batch([make_event(amount="1.00", timestamp=REPORT_END)])

        report = await ledger_repository.get_cost_report("t1", REPORT_START, REPORT_END)

        assert report.total == Decimal("0")

    @pytest.mark.asyncio
    async def test_daily_service_totals(self, ledger_repository):
        day = datetime(2026, 10, 18, tzinfo=timezone.utc)
        await ledger_repository.insert_batch([
            make_event(amount="0.25", timestamp=day + timedelta(hours=1)),
            make_event(amount="0.25", timestamp=day + timedelta(hours=23)),
            make_event(service="s3", operation="storage", amount="0.10", timestamp=day + timedelta(hours=2)),
            make_event(amount="5.00", timestamp=day + timedelta(days=1)),
        ])

        totals = await ledger_repository.get_daily_service_totals("t1", day)

        assert totals == {"rekognition": Decimal("0.5"), "s3": Decimal("0.1")}

    @pytest.mark.asyncio
    async def test_duplicate_rows_are_kept_and_reported(self, ledger_repository):
        event = make_event(amount="1.00", timestamp=REPORT_START + timedelta(hours=1))

        # A retried batch writes the same event twice
        await ledger_repository.insert_batch([event])
        await ledger_repository.insert_batch([event])

        report = await ledger_repository.get_cost_report("t1", REPORT_START, REPORT_END)

        assert report.total == Decimal("2")
        assert await ledger_repository.find_duplicate_event_ids("t1") == [event.event_id]


class TestBudgetConfigRepository:
    """Test BudgetConfigRepository"""

    @pytest.mark.asyncio
    async def test_missing_config(self, budget_config_repository):
        assert await budget_config_repository.get_config("t1") is None

    @pytest.mark.asyncio
    async def test_upsert_creates_then_updates(self, budget_config_repository):
        created = await budget_config_repository.upsert_config(
            "t1", tier="premium", monthly_budget=Decimal("50"), alert_thresholds=[100, 75]
        )

        assert created.tier == "premium"
        assert Decimal(str(created.monthly_budget_cents)) == Decimal("5000")
        assert created.alert_thresholds == [75, 100]

        updated = await budget_config_repository.upsert_config("t1", monthly_budget=Decimal("80"))

        assert updated.id == created.id
        assert updated.tier == "premium"
        assert Decimal(str(updated.monthly_budget_cents)) == Decimal("8000")
        assert updated.alert_thresholds == [75, 100]

    @pytest.mark.asyncio
    async def test_new_config_defaults_to_free(self, budget_config_repository):
        record = await budget_config_repository.upsert_config("t1")

        assert record.tier == "free"
        assert record.monthly_budget_cents is None


class TestProcessedContentRepository:
    """Test ProcessedContentRepository"""

    @pytest.mark.asyncio
    async def test_find_by_hash(self, processed_content_repository):
        await processed_content_repository.add("t1", "a" * 64, result={"ok": True}, cost=Decimal("0.5"))

        found = await processed_content_repository.find_by_hash("t1", "a" * 64)

        assert found.result_json == {"ok": True}
        assert await processed_content_repository.find_by_hash("t1", "b" * 64) is None

    @pytest.mark.asyncio
    async def test_recent_fingerprints_only_with_perceptual_hash(self, processed_content_repository):
        await processed_content_repository.add("t1", "a" * 64, perceptual_hash="00000000000000ff")
        await processed_content_repository.add("t1", "b" * 64)
        await processed_content_repository.add("t1", "c" * 64, perceptual_hash="ff00000000000000")

        fingerprints = await processed_content_repository.list_recent_fingerprints("t1", limit=10)

        assert [f.content_hash[0] for f in fingerprints] == ["c", "a"]

        limited = await processed_content_repository.list_recent_fingerprints("t1", limit=1)
        assert len(limited) == 1
