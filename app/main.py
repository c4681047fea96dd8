"""
============================================================================
Canteen Order Engine v1.0.0
FastAPI Application Entry Point
============================================================================

Reliability Level: L6 Critical
Input Constraints: JSON requests with Bearer actor authentication
Side Effects: Database writes, background attendance sweep, SSE streams

MANDATE:
- One order per person per date, never deleted
- Every status change is a conditional update; one writer wins
- Typed refusals reach the caller with a stable error_code
- Event delivery never fails the operation that produced it

============================================================================
"""

import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST

from app.api import admin_router, events_router, orders_router
from app.api.deps import error_detail, status_for
from app.database.session import SessionLocal, check_database_connection, engine as db_engine
from services.canteen_config import get_canteen_config
from services.canteen_engine import CanteenEngine, get_canteen_engine, set_canteen_engine
from services.clock_source import system_utc_now
from services.order_errors import OrderEngineError, OrderErrorCode

# Load environment variables
load_dotenv()

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# APPLICATION LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Startup:
        - Verify database connectivity
        - Load configuration and wire the engine
        - Start clock synchronization and the attendance sweep

    Shutdown:
        - Stop background tasks
    """
    logger.info("[CANTEEN-API] Starting")

    try:
        check_database_connection()
    except Exception as e:
        logger.critical(f"[CANTEEN-API] Database connection failed | error={str(e)}")
        raise

    config = get_canteen_config()
    canteen = CanteenEngine.build(config, SessionLocal, db_engine=db_engine)
    set_canteen_engine(canteen)
    await canteen.start()

    logger.info(
        f"[CANTEEN-API] Ready | "
        f"time={canteen.clock.now().isoformat()} | "
        f"timezone={config.timezone_name} | "
        f"sweep_interval_seconds={config.sweep_interval_seconds}"
    )

    yield

    await canteen.stop()
    set_canteen_engine(None)
    logger.info("[CANTEEN-API] Shutdown complete")


# ============================================================================
# FASTAPI APPLICATION
# ============================================================================

app = FastAPI(
    title="Canteen Order Engine",
    description=(
        "Shift-based meal ordering with cutoff enforcement, collection "
        "confirmation, no-show sweeps and strike-based restrictions."
    ),
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    lifespan=lifespan,
)


# ============================================================================
# MIDDLEWARE
# ============================================================================

app.add_middleware(
    CORSMiddleware,
    allow_origins=os.getenv("CORS_ORIGINS", "*").split(","),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT"],
    allow_headers=["*"],
)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

def engine_now() -> datetime:
    """Engine clock reading for error bodies; the host clock before startup."""
    try:
        return get_canteen_engine().clock.now()
    except RuntimeError:
        return system_utc_now()


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    """Malformed request bodies are validation errors, not 422s."""
    return JSONResponse(
        status_code=400,
        content={
            "detail": {
                "error_code": OrderErrorCode.VALIDATION,
                "message": "Request validation failed",
                "retryable": False,
                "timestamp": engine_now().isoformat(),
                "errors": [
                    {"loc": list(err.get("loc", [])), "msg": err.get("msg")}
                    for err in exc.errors()
                ],
            }
        },
    )


@app.exception_handler(OrderEngineError)
async def engine_error_handler(request: Request, exc: OrderEngineError):
    return JSONResponse(
        status_code=status_for(exc),
        content={"detail": error_detail(exc, engine_now())},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Unhandled errors are logged and answered with a safe body."""
    error_code = "SYS-500"
    logger.exception(f"[{error_code}] Unhandled exception | path={request.url.path} | error={exc}")

    return JSONResponse(
        status_code=500,
        content={
            "detail": {
                "error_code": error_code,
                "message": "Internal server error. This incident has been logged.",
                "retryable": False,
                "timestamp": engine_now().isoformat(),
            }
        },
    )


# ============================================================================
# ROUTERS
# ============================================================================

app.include_router(orders_router, prefix="/api/orders", tags=["Orders"])
app.include_router(admin_router, prefix="/api", tags=["Administration"])
app.include_router(events_router, prefix="/api/events", tags=["Events"])


# ============================================================================
# SYSTEM ENDPOINTS
# ============================================================================

@app.get(
    "/health",
    summary="Health Check",
    description="Lightweight health check for load balancers and monitoring.",
    tags=["System"],
)
def health_check():
    try:
        canteen = get_canteen_engine()
    except RuntimeError:
        return JSONResponse(
            status_code=503,
            content={"status": "starting", "database": "unknown"},
        )

    try:
        check_database_connection(canteen.db_engine)
    except Exception as e:
        return JSONResponse(
            status_code=503,
            content={"status": "unhealthy", "database": "disconnected", "error": str(e)},
        )

    return {"status": "healthy", "database": "connected", "engine": canteen.get_status()}


@app.get(
    "/metrics",
    summary="Prometheus Metrics",
    description="Exposes Prometheus metrics for observability.",
    tags=["Observability"],
)
async def metrics():
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )


# ============================================================================
# END OF MAIN APPLICATION
# ============================================================================
