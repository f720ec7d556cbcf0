"""
Pytest configuration and shared fixtures for cost metering tests
"""
import pytest
from decimal import Decimal
from types import SimpleNamespace
from typing import Dict, Any

pytest_plugins = [
    "tests.fixtures.cost_control",
    "tests.fixtures.database",
]


@pytest.fixture
def tenant_id() -> str:
    return "tenant-acme"


@pytest.fixture
def premium_budget_record():
    """Stored budget row as returned by the config store: $50.00 premium budget"""
    return SimpleNamespace(
        tenant_id="tenant-acme",
        tier="premium",
        monthly_budget_cents=Decimal("5000.0000"),
        alert_thresholds=[75, 90, 100]
    )


@pytest.fixture
def sample_event_data() -> Dict[str, Any]:
    """Sample billable operation"""
    return {
        "tenant_id": "tenant-acme",
        "service": "rekognition",
        "operation": "detect_labels",
        "amount": Decimal("0.001"),
        "units": 1,
        "metadata": {"file_id": "img-001", "media_type": "image"},
    }


class TestHelpers:
    """Helper methods for tests"""

    @staticmethod
    def micros(amount: str) -> int:
        return int(Decimal(amount) * 1_000_000)


@pytest.fixture
def test_helpers():
    """Provide test helper methods"""
    return TestHelpers
