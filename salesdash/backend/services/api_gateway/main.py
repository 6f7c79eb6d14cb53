"""
Main FastAPI application entry point for the Sales Dashboard backend
Wires the PIN verification gate to Supabase and exposes the PIN API
"""

from datetime import datetime, timezone
import os
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import uvicorn

from .health import router as health_router
from ...core.database.connection import get_supabase_client
from ...core.pin.audit import SupabaseAuditLogSink
from ...core.pin.config import PinSecurityConfig
from ...core.pin.gate import VerificationGate
from ...core.pin.hashing import PinHasher
from ...core.pin.locks import build_keyed_lock
from ...core.pin.recovery import SupabaseFunctionDelivery
from ...core.pin.routes import router as pin_router
from ...core.pin.store import SupabasePinStore

# Configure logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

def build_gate(supabase, config: PinSecurityConfig) -> VerificationGate:
    """Assemble a Supabase-backed verification gate."""
    store = SupabasePinStore(supabase, hasher=PinHasher(config.hash_rounds))
    return VerificationGate(
        store=store,
        audit_sink=SupabaseAuditLogSink(supabase),
        config=config,
        locks=build_keyed_lock(),
    )

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager
    Initializes and cleans up resources
    """
    logger.info("Starting Sales Dashboard backend...")

    try:
        supabase = get_supabase_client()
        config = PinSecurityConfig.from_env()
        app.state.supabase = supabase
        app.state.pin_gate = build_gate(supabase, config)
        app.state.recovery_delivery = SupabaseFunctionDelivery(supabase)
        logger.info("PIN verification gate initialized")

        yield

    except Exception as e:
        logger.error(f"Failed to initialize application: {e}")
        raise

    finally:
        logger.info("Shutting down Sales Dashboard backend...")
        locks = getattr(getattr(app.state, "pin_gate", None), "locks", None)
        redis_client = getattr(locks, "redis_client", None)
        if redis_client is not None:
            await redis_client.close()
        logger.info("Application shutdown complete")

# Create FastAPI application
app = FastAPI(
    title="Sales Dashboard Backend",
    description="PIN-based secondary authentication for the sales dashboard",
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "http://localhost:3000").split(","),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(pin_router, prefix="/api/v1")
app.include_router(health_router)

@app.get("/")
async def root():
    """Root endpoint"""
    return {
        "message": "Sales Dashboard Backend",
        "version": "1.0.0",
        "features": [
            "PIN verification",
            "Lockout after repeated failures",
            "PIN recovery",
            "PIN audit log"
        ]
    }

@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception: {exc}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal server error",
            "message": "An unexpected error occurred",
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
    )

if __name__ == "__main__":
    # Development server
    uvicorn.run(
        "salesdash.backend.services.api_gateway.main:app",
        host="0.0.0.0",
        port=int(os.getenv("PORT", 8000)),
        reload=True,
        log_level="info"
    )
