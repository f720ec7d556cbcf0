"""
Cost Control System for the cost metering engine

This module provides cost recording with buffered ledger persistence,
realtime per-tenant spend, budget admission control and threshold alerts,
and cost estimation and optimization for media processing.

CostControlService lives in `cost_control.cost_service` and is imported from
there; it depends on the database package, which itself uses these models.
"""

from .models import CostEvent, RealtimeAggregate, CostReport, to_money, day_key
from .price_table import PriceTable, UnitPrice, DEFAULT_PRICES
from .realtime_aggregator import RealtimeAggregator
from .cost_meter import CostMeter
from .budget_manager import (
    BudgetManager, BudgetConfig, BudgetStatus, BudgetAlert, AdmissionDecision, AlertLevel
)
from .cost_optimizer import (
    CostOptimizer, CostEstimate, ProcessingPlan, ProcessingFeature, SubscriptionTier,
    MediaType, DedupHit, BatchResult, EfficiencyPolicy, EfficiencyReport, select_plan,
    compute_content_hash
)

__all__ = [
    "CostEvent",
    "RealtimeAggregate",
    "CostReport",
    "to_money",
    "day_key",
    "PriceTable",
    "UnitPrice",
    "DEFAULT_PRICES",
    "RealtimeAggregator",
    "CostMeter",
    "BudgetManager",
    "BudgetConfig",
    "BudgetStatus",
    "BudgetAlert",
    "AdmissionDecision",
    "AlertLevel",
    "CostOptimizer",
    "CostEstimate",
    "ProcessingPlan",
    "ProcessingFeature",
    "SubscriptionTier",
    "MediaType",
    "DedupHit",
    "BatchResult",
    "EfficiencyPolicy",
    "EfficiencyReport",
    "select_plan",
    "compute_content_hash",
]
