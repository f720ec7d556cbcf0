import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from ..config import settings
from ..cost_control.cost_service import CostControlService
from ..integrations.redis_cache import CacheUnavailableError
from .middleware import RequestLoggingMiddleware
from .routers import costs, health

# Configure logging
logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)


def create_app(cost_service: Optional[CostControlService] = None) -> FastAPI:
    """
    Build the API application

    A pre-built service can be passed in (tests wire one to fakeredis and an
    in-memory SQLite store); otherwise one is created from settings.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        # Startup
        logger.info("Starting cost metering API server...")

        service = cost_service or CostControlService()
        if not await service.initialize():
            logger.error("Failed to initialize cost control service")
            raise RuntimeError("Cost control service initialization failed")

        app.state.cost_service = service
        logger.info("All services started successfully")

        yield

        # Shutdown: the meter performs a final ledger flush
        logger.info("Shutting down services...")
        await service.cleanup()
        logger.info("Shutdown complete")

    app = FastAPI(
        title="Cost Metering API",
        description="Usage cost metering, realtime spend and budget enforcement",
        version="0.1.0",
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
        lifespan=lifespan
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.debug else settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(health.router, prefix="/health", tags=["health"])
    app.include_router(costs.router, prefix="/costs", tags=["costs"])

    @app.get("/")
    async def root():
        return {
            "service": "Cost Metering API",
            "version": "0.1.0",
            "status": "operational",
            "docs": "/docs" if settings.debug else "disabled"
        }

    @app.exception_handler(CacheUnavailableError)
    async def cache_unavailable_handler(request, exc):
        logger.warning(f"Realtime cache unavailable on {request.url.path}: {exc}")
        return JSONResponse(
            status_code=503,
            content={"detail": "Realtime spend cache unavailable"}
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(request, exc):
        logger.error(f"Unhandled exception: {exc}", exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"}
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "cost_metering.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        log_level=settings.log_level.lower()
    )
