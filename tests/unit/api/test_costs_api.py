"""Tests for the HTTP API"""

import pytest
import fakeredis
from decimal import Decimal
from fastapi.testclient import TestClient

from cost_metering.api.main import create_app
from cost_metering.config import Settings
from cost_metering.cost_control.cost_service import CostControlService
from cost_metering.database import DatabaseManager, DatabaseService
from cost_metering.integrations.redis_cache import RedisCostCache


@pytest.fixture
def client():
    """App with a service built inside the app's own event loop via lifespan"""
    settings = Settings(
        database_url="sqlite+aiosqlite:///:memory:",
        cost_flush_timer_enabled=False,
        budget_config_cache_ttl_seconds=0,
    )
    service = CostControlService(
        settings=settings,
        cache=RedisCostCache(
            client=fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
        ),
        database=DatabaseService(DatabaseManager(settings.database_url))
    )

    with TestClient(create_app(service)) as test_client:
        yield test_client


class TestHealthEndpoints:

    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["status"] == "operational"

    def test_health(self, client):
        response = client.get("/health/")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "healthy"
        assert set(data["components"]) == {"cache", "database", "meter"}

    def test_stats(self, client):
        response = client.get("/health/stats")

        assert response.status_code == 200
        assert "meter" in response.json()


class TestBudgetEndpoints:

    def test_default_budget(self, client):
        response = client.get("/costs/budgets/t1", params={"tier": "ultimate"})

        assert response.status_code == 200
        data = response.json()
        assert Decimal(data["monthly_budget"]) == Decimal("500")
        assert data["is_default"] is True

    def test_update_budget(self, client):
        response = client.put(
            "/costs/budgets/t1",
            json={"tier": "premium", "monthly_budget": "50", "alert_thresholds": [50, 100]}
        )

        assert response.status_code == 200
        data = response.json()
        assert Decimal(data["monthly_budget"]) == Decimal("50")
        assert data["alert_thresholds"] == [50, 100]

        fetched = client.get("/costs/budgets/t1").json()
        assert fetched["tier"] == "premium"
        assert fetched["is_default"] is False

    def test_update_rejects_bad_thresholds(self, client):
        response = client.put("/costs/budgets/t1", json={"alert_thresholds": [0]})

        assert response.status_code == 400

    def test_update_rejects_negative_budget(self, client):
        response = client.put("/costs/budgets/t1", json={"monthly_budget": "-1"})

        assert response.status_code == 422

    def test_budget_status(self, client):
        response = client.get("/costs/budgets/t1/status")

        assert response.status_code == 200
        assert Decimal(response.json()["spent"]) == Decimal("0")


class TestEstimateAndAdmission:

    def test_estimate(self, client):
        response = client.post("/costs/estimate", json={"media_type": "image", "size_bytes": 1_000_000})

        assert response.status_code == 200
        assert Decimal(response.json()["total"]) == Decimal("0.001325")

    def test_estimate_with_tier_plan(self, client):
        response = client.post(
            "/costs/estimate",
            json={"media_type": "video", "size_bytes": 10_000_000, "tier": "premium"}
        )

        operations = {item["operation"] for item in response.json()["line_items"]}
        assert "transcription" in operations
        assert "video_face_detection" not in operations

    def test_admission_with_amount(self, client):
        client.put("/costs/budgets/t1", json={"tier": "premium", "monthly_budget": "50"})

        response = client.post("/costs/admission", json={"tenant_id": "t1", "estimated_amount": "6"})

        assert response.status_code == 200
        decision = response.json()["decision"]
        assert decision["skip"] is True
        assert decision["reason"] == "single_operation_cap"

    def test_admission_with_media(self, client):
        response = client.post(
            "/costs/admission",
            json={"tenant_id": "t1", "media_type": "image", "size_bytes": 2_000_000, "tier": "free"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["decision"]["skip"] is False
        assert data["estimate"]["media_type"] == "image"

    def test_admission_requires_amount_or_media(self, client):
        response = client.post("/costs/admission", json={"tenant_id": "t1"})

        assert response.status_code == 422


class TestSpendEndpoints:

    def test_realtime_empty(self, client):
        response = client.get("/costs/realtime/t1")

        assert response.status_code == 200
        assert Decimal(response.json()["total"]) == Decimal("0")

    def test_rebuild_realtime(self, client):
        response = client.post("/costs/realtime/t1/rebuild", params={"day": "2026-10-18"})

        assert response.status_code == 200
        assert response.json()["day"] == "2026-10-18"

    def test_report(self, client):
        response = client.get(
            "/costs/report/t1",
            params={"start": "2026-10-01T00:00:00", "end": "2026-10-08T00:00:00"}
        )

        assert response.status_code == 200
        data = response.json()
        assert Decimal(data["total"]) == Decimal("0")
        assert data["trend_percentage"] is None

    def test_report_rejects_inverted_window(self, client):
        response = client.get(
            "/costs/report/t1",
            params={"start": "2026-10-08T00:00:00", "end": "2026-10-01T00:00:00"}
        )

        assert response.status_code == 400

    def test_plan(self, client):
        response = client.get("/costs/plans/free")

        assert response.status_code == 200
        assert response.json()["features"] == ["label_detection", "embedding_generation"]

    def test_rebuild_with_cache_down_returns_503(self, client):
        # Drop the Redis client so every cache call raises CacheUnavailableError
        client.app.state.cost_service.cache._redis = None

        response = client.post("/costs/realtime/t1/rebuild")

        assert response.status_code == 503
        assert response.json()["detail"] == "Realtime spend cache unavailable"

    def test_realtime_with_cache_down_is_empty(self, client):
        client.app.state.cost_service.cache._redis = None

        response = client.get("/costs/realtime/t1")

        assert response.status_code == 200
        assert Decimal(response.json()["total"]) == Decimal("0")

    def test_duplicates_empty_ledger(self, client):
        response = client.get("/costs/report/t1/duplicates")

        assert response.status_code == 200
        assert response.json() == {"tenant_id": "t1", "duplicate_event_ids": []}
