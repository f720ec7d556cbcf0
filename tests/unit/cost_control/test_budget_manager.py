"""Tests for budget manager"""

import asyncio
import pytest
from decimal import Decimal
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

from cost_metering.cost_control.budget_manager import (
    BudgetManager, AlertLevel, alert_level_for, threshold_type
)
from cost_metering.cost_control.cost_meter import CostMeter
from cost_metering.cost_control.models import day_key
from cost_metering.cost_control.realtime_aggregator import RealtimeAggregator
from cost_metering.integrations.redis_cache import CacheUnavailableError, alert_key


class TestBudgetConfig:
    """Test budget configuration resolution"""

    @pytest.mark.asyncio
    async def test_stored_config(self, budget_manager, tenant_id):
        config = await budget_manager.get_budget_config(tenant_id)

        assert config.tier == "premium"
        assert config.monthly_budget == Decimal("50")
        assert config.alert_thresholds == [75, 90, 100]
        assert config.is_default is False

    @pytest.mark.asyncio
    async def test_tier_defaults_without_store(self, aggregator, cost_cache):
        manager = BudgetManager(aggregator, cost_cache)

        assert (await manager.get_budget_config("t1", "free")).monthly_budget == Decimal("5")
        assert (await manager.get_budget_config("t2", "premium")).monthly_budget == Decimal("50")
        assert (await manager.get_budget_config("t3", "ultimate")).monthly_budget == Decimal("500")

    @pytest.mark.asyncio
    async def test_unknown_tier_uses_free(self, aggregator, cost_cache):
        manager = BudgetManager(aggregator, cost_cache)
        config = await manager.get_budget_config("t1", "platinum")

        assert config.tier == "free"
        assert config.is_default is True

    @pytest.mark.asyncio
    async def test_stored_row_without_budget_uses_tier_default(self, aggregator, cost_cache):
        store = AsyncMock()
        store.get_budget_config.return_value = SimpleNamespace(
            tier="ultimate", monthly_budget_cents=None, alert_thresholds=None
        )
        manager = BudgetManager(aggregator, cost_cache, config_store=store)

        config = await manager.get_budget_config("t1")

        assert config.monthly_budget == Decimal("500")
        assert config.alert_thresholds == [75, 90, 100]

    @pytest.mark.asyncio
    async def test_store_error_falls_back_to_defaults(self, aggregator, cost_cache):
        store = AsyncMock()
        store.get_budget_config.side_effect = RuntimeError("db down")
        manager = BudgetManager(aggregator, cost_cache, config_store=store)

        config = await manager.get_budget_config("t1", "premium")

        assert config.is_default is True
        assert config.monthly_budget == Decimal("50")

    @pytest.mark.asyncio
    async def test_config_is_cached(self, budget_manager, config_store, tenant_id):
        await budget_manager.get_budget_config(tenant_id)
        await budget_manager.get_budget_config(tenant_id)

        assert config_store.get_budget_config.await_count == 1

        budget_manager.invalidate_config(tenant_id)
        await budget_manager.get_budget_config(tenant_id)
        assert config_store.get_budget_config.await_count == 2

    @pytest.mark.asyncio
    async def test_threshold_hook_does_not_pin_free_default(self, aggregator, cost_cache, ledger):
        # No stored row: the post-record hook resolves the config without a tier
        store = AsyncMock()
        store.get_budget_config.return_value = None
        manager = BudgetManager(aggregator, cost_cache, config_store=store)
        meter = CostMeter(aggregator, ledger, flush_threshold=100, flush_interval_seconds=0)
        meter.on_recorded(manager.check_thresholds)

        await meter.record("premium-user", "s3", "put_object", Decimal("0.01"))
        await meter.wait_for_background()

        decision = await manager.would_exceed("premium-user", Decimal("1.00"), tier="premium")

        assert decision.skip is False
        assert decision.budget_limit == Decimal("50")
        assert (await manager.get_budget_config("premium-user", "ultimate")).monthly_budget == Decimal("500")
        # Absence of a stored row is still cached
        assert store.get_budget_config.await_count == 1

    @pytest.mark.asyncio
    async def test_update_validates(self, budget_manager, tenant_id):
        with pytest.raises(ValueError):
            await budget_manager.update_budget_config(tenant_id, monthly_budget=Decimal("-1"))
        with pytest.raises(ValueError):
            await budget_manager.update_budget_config(tenant_id, alert_thresholds=[0, 50])

    @pytest.mark.asyncio
    async def test_update_without_store(self, aggregator, cost_cache):
        manager = BudgetManager(aggregator, cost_cache)
        with pytest.raises(RuntimeError):
            await manager.update_budget_config("t1", monthly_budget=Decimal("10"))


class TestAdmissionControl:
    """Test would_exceed decisions"""

    @pytest.mark.asyncio
    async def test_estimate_within_budget_and_cap_allowed(self, budget_manager, aggregator, tenant_id):
        # Budget 50, spent 40: an estimate of 5 stays under both limits
        await aggregator.add(tenant_id, "rekognition", Decimal("40"))

        decision = await budget_manager.would_exceed(tenant_id, Decimal("5"))

        assert decision.skip is False
        assert decision.reason == "within_budget"
        assert decision.current_spend == Decimal("40")
        assert decision.remaining_budget == Decimal("10")

    @pytest.mark.asyncio
    async def test_estimate_over_budget_skipped_with_budget_reason(self, budget_manager, aggregator, tenant_id):
        # 40 + 15 > 50 and 15 > cap of 5; the budget reason wins
        await aggregator.add(tenant_id, "rekognition", Decimal("40"))

        decision = await budget_manager.would_exceed(tenant_id, Decimal("15"))

        assert decision.skip is True
        assert decision.reason == "budget_exceeded"

    @pytest.mark.asyncio
    async def test_single_operation_cap(self, budget_manager, tenant_id):
        # Nothing spent, but 6 > 10% of 50
        decision = await budget_manager.would_exceed(tenant_id, Decimal("6"))

        assert decision.skip is True
        assert decision.reason == "single_operation_cap"

    @pytest.mark.asyncio
    async def test_exact_budget_is_not_exceeded(self, budget_manager, aggregator, tenant_id):
        await aggregator.add(tenant_id, "s3", Decimal("45"))

        decision = await budget_manager.would_exceed(tenant_id, Decimal("5"))

        assert decision.skip is False

    @pytest.mark.asyncio
    async def test_allowed_estimate_never_breaches(self, budget_manager, aggregator, tenant_id):
        spent = Decimal("0")
        for estimate in [Decimal("4.99"), Decimal("5"), Decimal("3.3"), Decimal("4.75")] * 5:
            decision = await budget_manager.would_exceed(tenant_id, estimate)
            if decision.skip:
                continue
            assert spent + estimate <= Decimal("50")
            assert estimate <= Decimal("5")
            await aggregator.add(tenant_id, "rekognition", estimate)
            spent += estimate

    @pytest.mark.asyncio
    async def test_cache_unavailable_fails_open(self, unavailable_cache, config_store, tenant_id):
        manager = BudgetManager(
            RealtimeAggregator(unavailable_cache), unavailable_cache, config_store=config_store
        )

        decision = await manager.would_exceed(tenant_id, Decimal("1000"))

        assert decision.skip is False
        assert decision.reason == "cache_unavailable"
        assert manager.stats["fail_open"] == 1

    @pytest.mark.asyncio
    async def test_negative_estimate_is_rejected(self, budget_manager, tenant_id):
        with pytest.raises(ValueError):
            await budget_manager.would_exceed(tenant_id, Decimal("-1"))

        assert budget_manager.stats["admission_skips"] == 0


class TestThresholdAlerts:
    """Test check_thresholds deduplication"""

    @pytest.mark.asyncio
    async def test_no_alert_below_thresholds(self, budget_manager, aggregator, tenant_id):
        await aggregator.add(tenant_id, "s3", Decimal("10"))

        assert await budget_manager.check_thresholds(tenant_id) == []

    @pytest.mark.asyncio
    async def test_alert_once_per_threshold_per_day(self, budget_manager, aggregator, tenant_id):
        # 80% of 50
        await aggregator.add(tenant_id, "s3", Decimal("40"))

        first = await budget_manager.check_thresholds(tenant_id)
        assert [alert.threshold for alert in first] == [75]
        assert first[0].level == AlertLevel.WARNING

        # Still between 75% and 90%: nothing new
        await aggregator.add(tenant_id, "s3", Decimal("2"))
        assert await budget_manager.check_thresholds(tenant_id) == []

        # Crossing 90% alerts for 90% only
        await aggregator.add(tenant_id, "s3", Decimal("3.5"))
        second = await budget_manager.check_thresholds(tenant_id)
        assert [alert.threshold for alert in second] == [90]
        assert second[0].level == AlertLevel.CRITICAL

    @pytest.mark.asyncio
    async def test_jump_past_all_thresholds(self, budget_manager, aggregator, tenant_id):
        await aggregator.add(tenant_id, "s3", Decimal("55"))

        alerts = await budget_manager.check_thresholds(tenant_id)

        assert [alert.threshold for alert in alerts] == [75, 90, 100]
        assert alerts[-1].level == AlertLevel.EMERGENCY

    @pytest.mark.asyncio
    async def test_higher_threshold_alerts_after_lower_marked(
        self, budget_manager, aggregator, cost_cache, tenant_id
    ):
        today = day_key()
        await cost_cache.claim_marker(alert_key(tenant_id, "threshold_75", today), 86400)
        await cost_cache.claim_marker(alert_key(tenant_id, "threshold_90", today), 86400)
        await aggregator.add(tenant_id, "s3", Decimal("50"))

        alerts = await budget_manager.check_thresholds(tenant_id)

        assert [alert.threshold for alert in alerts] == [100]

    @pytest.mark.asyncio
    async def test_concurrent_checks_alert_once(self, budget_manager, aggregator, tenant_id):
        await aggregator.add(tenant_id, "s3", Decimal("40"))

        results = await asyncio.gather(*[budget_manager.check_thresholds(tenant_id) for _ in range(10)])

        assert sum(len(alerts) for alerts in results) == 1

    @pytest.mark.asyncio
    async def test_alert_sink_receives_alerts(self, budget_manager, aggregator, tenant_id):
        received = []

        async def sink(alert):
            received.append(alert)

        budget_manager.on_budget_alert(sink)
        await aggregator.add(tenant_id, "s3", Decimal("46"))
        await budget_manager.check_thresholds(tenant_id)

        assert [alert.threshold_type for alert in received] == ["threshold_75", "threshold_90"]

    @pytest.mark.asyncio
    async def test_failing_sink_is_logged(self, budget_manager, aggregator, tenant_id):
        async def sink(alert):
            raise RuntimeError("pager offline")

        budget_manager.on_budget_alert(sink)
        await aggregator.add(tenant_id, "s3", Decimal("40"))

        alerts = await budget_manager.check_thresholds(tenant_id)

        assert len(alerts) == 1

    @pytest.mark.asyncio
    async def test_cache_unavailable_no_alerts(self, unavailable_cache, config_store, tenant_id):
        manager = BudgetManager(
            RealtimeAggregator(unavailable_cache), unavailable_cache, config_store=config_store
        )

        assert await manager.check_thresholds(tenant_id) == []

    @pytest.mark.asyncio
    async def test_claimed_alert_delivered_when_cache_drops_mid_check(
        self, budget_manager, aggregator, cost_cache, tenant_id
    ):
        received = []

        async def sink(alert):
            received.append(alert)

        budget_manager.on_budget_alert(sink)
        await aggregator.add(tenant_id, "s3", Decimal("46"))

        with patch.object(
            cost_cache, "claim_marker",
            AsyncMock(side_effect=[True, CacheUnavailableError("connection reset")])
        ):
            alerts = await budget_manager.check_thresholds(tenant_id)

        assert [alert.threshold for alert in alerts] == [75]
        assert [alert.threshold for alert in received] == [75]


class TestBudgetStatus:

    @pytest.mark.asyncio
    async def test_status_reports_utilization(self, budget_manager, aggregator, tenant_id):
        await aggregator.add(tenant_id, "s3", Decimal("12.5"))

        status = await budget_manager.get_budget_status(tenant_id)

        assert status.spent == Decimal("12.5")
        assert status.remaining == Decimal("37.5")
        assert status.utilization_percentage == Decimal("25.00")
        assert status.over_budget is False
        assert status.by_service == {"s3": Decimal("12.5")}

    def test_alert_levels(self):
        assert alert_level_for(75) == AlertLevel.WARNING
        assert alert_level_for(90) == AlertLevel.CRITICAL
        assert alert_level_for(100) == AlertLevel.EMERGENCY
        assert threshold_type(90) == "threshold_90"
