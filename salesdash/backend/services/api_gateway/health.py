"""
Health check endpoints for the API gateway.
Reports the status of the PIN gate and its Supabase dependency.
"""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from datetime import datetime, timezone
import logging

from ...core.database.connection import DatabaseManager

logger = logging.getLogger(__name__)

router = APIRouter()

@router.get("/health")
async def health_check(request: Request):
    """Basic health check endpoint"""
    gate = getattr(request.app.state, "pin_gate", None)
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "components": {
            "pin_gate": "operational" if gate else "not_initialized"
        }
    }

@router.get("/health/detailed")
async def detailed_health_check(request: Request):
    """
    Detailed health check including all dependencies.
    Used by monitoring systems for comprehensive status.
    """
    health_status = {
        "service": "api_gateway",
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "version": "1.0.0",
        "dependencies": {}
    }

    supabase = getattr(request.app.state, "supabase", None)
    if supabase is not None and DatabaseManager.check_connection(supabase):
        health_status["dependencies"]["supabase"] = {"status": "healthy"}
    else:
        health_status["dependencies"]["supabase"] = {"status": "unhealthy"}
        health_status["status"] = "unhealthy"

    # Redis only matters when it backs the per-user PIN locks
    gate = getattr(request.app.state, "pin_gate", None)
    redis_client = getattr(getattr(gate, "locks", None), "redis_client", None)
    if redis_client is not None:
        try:
            await redis_client.ping()
            health_status["dependencies"]["redis"] = {"status": "healthy"}
        except Exception as e:
            logger.error(f"Redis health check failed: {e}")
            health_status["dependencies"]["redis"] = {"status": "unhealthy", "error": str(e)}
            health_status["status"] = "unhealthy"

    status_code = 200 if health_status["status"] == "healthy" else 503
    return JSONResponse(content=health_status, status_code=status_code)

@router.get("/health/ready")
async def readiness_check(request: Request):
    """Kubernetes readiness probe endpoint."""
    if getattr(request.app.state, "pin_gate", None) is None:
        return JSONResponse(content={"status": "not_ready"}, status_code=503)
    return {"status": "ready"}

@router.get("/health/live")
async def liveness_check():
    """Kubernetes liveness probe endpoint."""
    return {"status": "alive"}
