import time
from typing import Dict, Any

from fastapi import APIRouter, HTTPException, Request

from ...config import settings

router = APIRouter()


@router.get("/")
async def health_check(request: Request) -> Dict[str, Any]:
    """
    Health of the ledger store, the cost cache and the meter
    """
    health_status = {
        "service": "cost-metering",
        "version": "0.1.0",
        "status": "healthy",
        "timestamp": time.time(),
        "components": {}
    }

    try:
        service_health = await request.app.state.cost_service.health_check()
        health_status["status"] = service_health["status"]
        health_status["components"] = {
            "cache": service_health["cache"],
            "database": service_health["database"],
            "meter": service_health["meter"],
        }
        return health_status

    except Exception as e:
        health_status["status"] = "unhealthy"
        health_status["error"] = str(e)
        return health_status


@router.get("/stats")
async def service_stats(request: Request):
    """
    Counters for the meter, budget manager and optimizer
    """
    try:
        return request.app.state.cost_service.get_stats()
    except Exception as e:
        raise HTTPException(status_code=503, detail=f"Cost control service unavailable: {e}")


@router.get("/config")
async def config_info():
    """
    Return non-sensitive configuration information
    """
    return {
        "cost_flush_threshold": settings.cost_flush_threshold,
        "cost_flush_interval_seconds": settings.cost_flush_interval_seconds,
        "single_operation_cap_ratio": settings.single_operation_cap_ratio,
        "default_alert_thresholds": settings.default_alert_thresholds,
        "estimate_safety_margin": settings.estimate_safety_margin,
        "debug": settings.debug
    }
