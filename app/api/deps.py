"""
============================================================================
Canteen Order Engine v1.0.0
API Dependencies - Authentication, Engine Access, Error Mapping
============================================================================

Reliability Level: L6 Critical
Input Constraints:
    - Bearer token authentication required (token = actor id)
    - Admin endpoints require the actor in CANTEEN_ADMIN_IDS
Side Effects: None

ERROR MAPPING:
    Engine errors become HTTPException with a uniform detail body:
    {"error_code", "message", "retryable", "timestamp", ...}

    VALIDATION       → 400
    CutoffPassed     → 403
    Restricted       → 403
    other POLICY     → 400 (DuplicateForDate → 409)
    CONFLICT         → 409
    NOT_FOUND        → 404
    INFRASTRUCTURE   → 503

ERROR CODES:
    AUTH-001: Missing or malformed Authorization header
    AUTH-090: Actor is not an administrator

============================================================================
"""

from datetime import datetime
from typing import Optional, Dict, Any
import logging

from fastapi import Depends, Header, HTTPException

from services.canteen_engine import CanteenEngine, get_canteen_engine
from services.clock_source import system_utc_now
from services.order_errors import (
    CutoffPassed,
    DuplicateForDate,
    ErrorCategory,
    OrderEngineError,
    Restricted,
)

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# Error Codes
# ============================================================================

class ApiErrorCode:
    UNAUTHENTICATED = "AUTH-001"
    FORBIDDEN = "AUTH-090"


CATEGORY_STATUS: Dict[str, int] = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.POLICY: 400,
    ErrorCategory.CONFLICT: 409,
    ErrorCategory.NOT_FOUND: 404,
    ErrorCategory.INFRASTRUCTURE: 503,
}

# Policy refusals that are not plain bad requests
ERROR_STATUS_OVERRIDES = {
    CutoffPassed: 403,
    Restricted: 403,
    DuplicateForDate: 409,
}


# ============================================================================
# Engine Dependency
# ============================================================================

def get_engine() -> CanteenEngine:
    """FastAPI dependency returning the running engine (overridable in tests)."""
    try:
        return get_canteen_engine()
    except RuntimeError as e:
        # No engine means no engine clock; the host clock stamps this one
        raise HTTPException(
            status_code=503,
            detail=_detail("ORD-503", str(e), system_utc_now(), retryable=True),
        )


# ============================================================================
# Authentication Dependency
# ============================================================================

def get_current_actor(
    authorization: Optional[str] = Header(None, description="Bearer token"),
    engine: CanteenEngine = Depends(get_engine),
) -> str:
    """
    Extract the actor id from the Authorization header.

    Raises:
        HTTPException: 401 AUTH-001 if the header is missing or malformed
    """
    if not authorization:
        logger.warning(f"[{ApiErrorCode.UNAUTHENTICATED}] Missing Authorization header")
        raise HTTPException(
            status_code=401,
            detail=_detail(
                ApiErrorCode.UNAUTHENTICATED,
                "Authorization header required. Use: Bearer <actor_id>",
                engine.clock.now(),
            ),
        )

    if not authorization.startswith("Bearer "):
        logger.warning(f"[{ApiErrorCode.UNAUTHENTICATED}] Invalid authorization format")
        raise HTTPException(
            status_code=401,
            detail=_detail(
                ApiErrorCode.UNAUTHENTICATED,
                "Invalid authorization format. Use: Bearer <actor_id>",
                engine.clock.now(),
            ),
        )

    actor_id = authorization[7:].strip()
    if not actor_id:
        raise HTTPException(
            status_code=401,
            detail=_detail(
                ApiErrorCode.UNAUTHENTICATED,
                "Empty actor ID in Bearer token",
                engine.clock.now(),
            ),
        )
    return actor_id


def require_admin(
    actor_id: str = Depends(get_current_actor),
    engine: CanteenEngine = Depends(get_engine),
) -> str:
    """
    Admit only actors listed in CANTEEN_ADMIN_IDS.

    Raises:
        HTTPException: 403 AUTH-090 otherwise
    """
    if not engine.config.is_admin(actor_id):
        logger.warning(f"[{ApiErrorCode.FORBIDDEN}] Non-admin actor refused | actor={actor_id}")
        raise HTTPException(
            status_code=403,
            detail=_detail(
                ApiErrorCode.FORBIDDEN,
                f"Actor '{actor_id}' is not an administrator",
                engine.clock.now(),
            ),
        )
    return actor_id


# ============================================================================
# Error Mapping
# ============================================================================

def status_for(error: OrderEngineError) -> int:
    for error_type, status in ERROR_STATUS_OVERRIDES.items():
        if isinstance(error, error_type):
            return status
    return CATEGORY_STATUS.get(error.category, 500)


def to_http_exception(
    error: OrderEngineError,
    engine: CanteenEngine,
    correlation_id: Optional[str] = None,
) -> HTTPException:
    """Translate an engine error into the uniform HTTP error body."""
    return HTTPException(
        status_code=status_for(error),
        detail=error_detail(error, engine.clock.now(), correlation_id),
    )


def error_detail(
    error: OrderEngineError,
    timestamp: datetime,
    correlation_id: Optional[str] = None,
) -> Dict[str, Any]:
    detail = _detail(error.error_code, error.message, timestamp, retryable=error.retryable)
    detail["error_type"] = type(error).__name__
    if error.reason:
        detail["reason"] = error.reason
    if error.details:
        detail["details"] = error.details
    if correlation_id:
        detail["correlation_id"] = correlation_id
    return detail


def _detail(
    error_code: str,
    message: str,
    timestamp: datetime,
    retryable: bool = False,
) -> Dict[str, Any]:
    return {
        "error_code": error_code,
        "message": message,
        "retryable": retryable,
        "timestamp": timestamp.isoformat(),
    }


__all__ = [
    "ApiErrorCode",
    "get_engine",
    "get_current_actor",
    "require_admin",
    "status_for",
    "to_http_exception",
    "error_detail",
]
