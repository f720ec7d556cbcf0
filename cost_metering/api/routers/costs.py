from datetime import datetime, date, timezone
from decimal import Decimal
from typing import Dict, Any, List, Optional

from fastapi import APIRouter, HTTPException, Request
from pydantic import BaseModel, Field

from ...cost_control.cost_service import CostControlService

router = APIRouter()


class BudgetUpdateRequest(BaseModel):
    tier: Optional[str] = None
    monthly_budget: Optional[Decimal] = Field(default=None, ge=0)
    alert_thresholds: Optional[List[int]] = None


class EstimateRequest(BaseModel):
    media_type: str
    size_bytes: int = Field(ge=0)
    features: Optional[List[str]] = None
    duration_seconds: Optional[float] = Field(default=None, gt=0)
    tier: Optional[str] = None


class AdmissionRequest(BaseModel):
    tenant_id: str
    tier: Optional[str] = None
    # Either a precomputed estimate or the media parameters to estimate from
    estimated_amount: Optional[Decimal] = Field(default=None, ge=0)
    media_type: Optional[str] = None
    size_bytes: Optional[int] = Field(default=None, ge=0)
    features: Optional[List[str]] = None
    duration_seconds: Optional[float] = Field(default=None, gt=0)


class AdmissionResponse(BaseModel):
    tenant_id: str
    decision: Dict[str, Any]
    estimate: Optional[Dict[str, Any]] = None


def get_service(request: Request) -> CostControlService:
    service = getattr(request.app.state, "cost_service", None)
    if service is None or not service.is_ready():
        raise HTTPException(status_code=503, detail="Cost control service not ready")
    return service


def _as_utc(moment: Optional[datetime]) -> Optional[datetime]:
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment


@router.get("/budgets/{tenant_id}")
async def get_budget(tenant_id: str, request: Request, tier: Optional[str] = None):
    """
    Effective budget configuration (stored values or tier defaults)
    """
    config = await get_service(request).get_budget_config(tenant_id, tier)
    return config.to_dict()


@router.put("/budgets/{tenant_id}")
async def update_budget(tenant_id: str, body: BudgetUpdateRequest, request: Request):
    """
    Create or update a tenant's budget configuration
    """
    service = get_service(request)
    try:
        config = await service.update_budget_config(
            tenant_id,
            tier=body.tier,
            monthly_budget=body.monthly_budget,
            alert_thresholds=body.alert_thresholds
        )
        return config.to_dict()

    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except RuntimeError as e:
        raise HTTPException(status_code=503, detail=str(e))


@router.get("/budgets/{tenant_id}/status")
async def get_budget_status(tenant_id: str, request: Request, tier: Optional[str] = None):
    """
    Today's spend against the tenant's budget
    """
    status = await get_service(request).get_budget_status(tenant_id, tier)
    return {
        "tenant_id": status.tenant_id,
        "monthly_budget": str(status.monthly_budget),
        "spent": str(status.spent),
        "remaining": str(status.remaining),
        "utilization_percentage": str(status.utilization_percentage),
        "over_budget": status.over_budget,
        "by_service": {k: str(v) for k, v in status.by_service.items()},
    }


@router.post("/estimate")
async def estimate_cost(body: EstimateRequest, request: Request):
    """
    Conservative pre-flight estimate for processing one media file
    """
    estimate = get_service(request).estimate(
        body.media_type,
        body.size_bytes,
        features=body.features,
        duration_seconds=body.duration_seconds,
        tier=body.tier
    )
    return estimate.to_dict()


@router.post("/admission", response_model=AdmissionResponse)
async def check_admission(body: AdmissionRequest, request: Request):
    """
    Advisory skip/allow decision for a prospective operation
    """
    service = get_service(request)

    if body.estimated_amount is not None:
        decision = await service.check_admission(body.tenant_id, body.estimated_amount, body.tier)
        return AdmissionResponse(tenant_id=body.tenant_id, decision=decision.to_dict())

    if body.media_type is None or body.size_bytes is None:
        raise HTTPException(
            status_code=422,
            detail="Provide estimated_amount, or media_type and size_bytes"
        )

    estimate, decision = await service.evaluate_operation(
        body.tenant_id,
        body.media_type,
        body.size_bytes,
        features=body.features,
        duration_seconds=body.duration_seconds,
        tier=body.tier
    )
    return AdmissionResponse(
        tenant_id=body.tenant_id,
        decision=decision.to_dict(),
        estimate=estimate.to_dict()
    )


@router.get("/realtime/{tenant_id}")
async def get_realtime(tenant_id: str, request: Request, day: Optional[date] = None):
    """
    Realtime spend for a tenant on a calendar day (default today, UTC)
    """
    aggregate = await get_service(request).get_realtime(tenant_id, day.isoformat() if day else None)
    return aggregate.to_dict()


@router.post("/realtime/{tenant_id}/rebuild")
async def rebuild_realtime(tenant_id: str, request: Request, day: Optional[date] = None):
    """
    Recompute the realtime aggregate from the ledger and unflushed events

    A cache outage surfaces as 503 through the app's CacheUnavailableError handler.
    """
    aggregate = await get_service(request).rebuild_realtime_aggregate(
        tenant_id, day.isoformat() if day else None
    )
    return aggregate.to_dict()


@router.get("/report/{tenant_id}")
async def get_report(
    tenant_id: str,
    request: Request,
    start: Optional[datetime] = None,
    end: Optional[datetime] = None
):
    """
    Ledger spend over [start, end) grouped by service and operation, with trend
    """
    try:
        report = await get_service(request).get_report(tenant_id, _as_utc(start), _as_utc(end))
        return report.to_dict()

    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/report/{tenant_id}/duplicates")
async def get_duplicate_events(tenant_id: str, request: Request):
    duplicates = await get_service(request).find_duplicate_ledger_events(tenant_id)
    return {"tenant_id": tenant_id, "duplicate_event_ids": duplicates}


@router.get("/plans/{tier}")
async def get_plan(tier: str, request: Request):
    """
    Processing plan for a subscription tier (unknown tiers get the free plan)
    """
    return get_service(request).get_plan(tier).to_dict()
