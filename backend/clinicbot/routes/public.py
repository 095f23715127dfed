# /clinicbot/routes/public.py

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest
from datetime import datetime, timezone

from clinicbot.config.settings import settings
from clinicbot.utils.dependencies import ServiceContainer, get_services, verify_api_key

# Public endpoints that need no API key (root, health checks). The /metrics
# endpoint is protected by the API key when one is configured.

router = APIRouter()


@router.get("/")
async def root():
    """Root endpoint."""
    return {
        "service": "Clinic Dialogue Engine",
        "version": "1.0.0",
        "status": "operational",
        "environment": settings.environment
    }


@router.get("/health", summary="Basic Health Check")
async def health_check():
    """Basic health check for load balancers."""
    return {"status": "healthy", "timestamp": datetime.now(timezone.utc)}


@router.get("/health/live", summary="Liveness Check")
async def liveness_check():
    return {"status": "alive"}


@router.get("/health/ready", summary="Readiness Check")
async def readiness_check(services: ServiceContainer = Depends(get_services)):
    """Readiness check: MongoDB must answer; Redis is reported but optional."""
    database_ok = await services.db.health_check()
    cache_ok = await services.cache.health_check()
    if not database_ok:
        raise HTTPException(status_code=503, detail="Service not ready: database unavailable")
    return {"status": "ready", "services": {"database": "connected", "cache": "connected" if cache_ok else "degraded"}}


@router.get("/metrics", tags=["Monitoring"])
async def metrics(_: None = Depends(verify_api_key)):
    """Secured Prometheus metrics endpoint."""
    return PlainTextResponse(generate_latest(), media_type="text/plain")
