"""
============================================================================
Canteen Order Engine v1.0.0
Order API Endpoints
============================================================================

Reliability Level: L6 Critical (Order Integrity)
Input Constraints:
    - Bearer token authentication required
    - Ordering or cancelling for another person requires an admin actor
Side Effects:
    - Order rows created and transitioned
    - Audit log entries, Prometheus metrics, fan-out events

ENDPOINTS:
    POST /api/orders                    - Place an order
    GET  /api/orders                    - List orders by date range
    GET  /api/orders/stats              - Per-status counts for one day
    GET  /api/orders/orderable-dates    - Dates open for ordering now
    GET  /api/orders/{order_id}         - Fetch one order
    POST /api/orders/{order_id}/collect - Confirm collection
    POST /api/orders/{order_id}/cancel  - Cancel an order

============================================================================
"""

import uuid
from typing import Optional, List, Dict, Any

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field

from app.api.deps import (
    ApiErrorCode,
    get_current_actor,
    get_engine,
    to_http_exception,
)
from services.canteen_engine import CanteenEngine
from services.canteen_models import Order
from services.order_errors import OrderEngineError

import logging

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# Router Configuration
# ============================================================================

router = APIRouter()


# ============================================================================
# Request/Response Models
# ============================================================================

class CreateOrderRequest(BaseModel):
    shift_id: str = Field(..., description="Shift being ordered", min_length=1)
    order_date: str = Field(..., description="Calendar date, YYYY-MM-DD")
    person_id: Optional[str] = Field(
        default=None,
        description="Person the meal is for; defaults to the caller",
    )


class CollectOrderRequest(BaseModel):
    location_ref: Optional[str] = Field(
        default=None,
        description="Counter or scanner that confirmed the pickup",
    )


class CancelOrderRequest(BaseModel):
    reason: Optional[str] = Field(default=None, description="Free-text reason")


class OrderResponse(BaseModel):
    """Order as returned by every order endpoint."""
    id: str
    person_id: str
    shift_id: str
    order_date: str
    status: str
    created_at: Optional[str] = None
    collected_at: Optional[str] = None
    collected_by: Optional[str] = None
    location_ref: Optional[str] = None
    cancelled_at: Optional[str] = None
    cancel_reason: Optional[str] = None
    late_cancellation: bool = False
    version: int = 0


def _response(order: Order) -> OrderResponse:
    return OrderResponse(**order.to_dict())


def _require_self_or_admin(engine: CanteenEngine, actor_id: str, person_id: str) -> None:
    if actor_id != person_id and not engine.config.is_admin(actor_id):
        raise HTTPException(
            status_code=403,
            detail={
                "error_code": ApiErrorCode.FORBIDDEN,
                "message": f"Actor '{actor_id}' may not act for person '{person_id}'",
                "retryable": False,
                "timestamp": engine.clock.now().isoformat(),
            },
        )


# ============================================================================
# Endpoints
# ============================================================================

@router.post(
    "",
    response_model=OrderResponse,
    status_code=201,
    summary="Place Order",
    responses={
        400: {"description": "Validation, horizon or shift refusal"},
        403: {"description": "Cutoff passed or person restricted"},
        409: {"description": "Person already has an order for the date"},
    },
)
def create_order(
    request: CreateOrderRequest,
    actor_id: str = Depends(get_current_actor),
    engine: CanteenEngine = Depends(get_engine),
) -> OrderResponse:
    correlation_id = str(uuid.uuid4())
    person_id = request.person_id or actor_id
    _require_self_or_admin(engine, actor_id, person_id)

    logger.info(
        f"[ORDER-API] POST /orders | "
        f"actor={actor_id} | "
        f"person_id={person_id} | "
        f"shift_id={request.shift_id} | "
        f"order_date={request.order_date} | "
        f"correlation_id={correlation_id}"
    )

    try:
        order = engine.orders.create_order(
            person_id=person_id,
            shift_id=request.shift_id,
            order_date=request.order_date,
            actor_id=actor_id,
            correlation_id=correlation_id,
        )
    except OrderEngineError as e:
        raise to_http_exception(e, engine, correlation_id)
    return _response(order)


@router.get(
    "",
    response_model=List[OrderResponse],
    summary="List Orders",
    description="Read-only scan of orders with start <= order_date <= end.",
)
def list_orders(
    start: str = Query(..., description="First date, YYYY-MM-DD"),
    end: str = Query(..., description="Last date, YYYY-MM-DD"),
    person_id: Optional[str] = Query(None),
    status: Optional[str] = Query(None),
    actor_id: str = Depends(get_current_actor),
    engine: CanteenEngine = Depends(get_engine),
) -> List[OrderResponse]:
    try:
        orders = engine.orders.list_orders(start, end, person_id=person_id, status=status)
    except OrderEngineError as e:
        raise to_http_exception(e, engine)
    return [_response(order) for order in orders]


@router.get("/stats", summary="Daily Order Statistics")
def daily_stats(
    date: Optional[str] = Query(None, description="Day to summarize; defaults to today"),
    actor_id: str = Depends(get_current_actor),
    engine: CanteenEngine = Depends(get_engine),
) -> Dict[str, Any]:
    try:
        return engine.orders.daily_stats(date)
    except OrderEngineError as e:
        raise to_http_exception(e, engine)


@router.get("/orderable-dates", summary="Orderable Dates")
def orderable_dates(
    actor_id: str = Depends(get_current_actor),
    engine: CanteenEngine = Depends(get_engine),
) -> Dict[str, Any]:
    return engine.orders.orderable_dates()


@router.get("/{order_id}", response_model=OrderResponse, summary="Get Order")
def get_order(
    order_id: str,
    actor_id: str = Depends(get_current_actor),
    engine: CanteenEngine = Depends(get_engine),
) -> OrderResponse:
    try:
        return _response(engine.orders.get_order(order_id))
    except OrderEngineError as e:
        raise to_http_exception(e, engine)


@router.post(
    "/{order_id}/collect",
    response_model=OrderResponse,
    summary="Collect Order",
    responses={
        400: {"description": "Outside the collection window"},
        404: {"description": "Unknown order"},
        409: {"description": "Order already finalized, or retries exhausted"},
    },
)
def collect_order(
    order_id: str,
    request: Optional[CollectOrderRequest] = None,
    actor_id: str = Depends(get_current_actor),
    engine: CanteenEngine = Depends(get_engine),
) -> OrderResponse:
    correlation_id = str(uuid.uuid4())
    location_ref = request.location_ref if request else None

    logger.info(
        f"[ORDER-API] POST /orders/{order_id}/collect | "
        f"actor={actor_id} | "
        f"location_ref={location_ref} | "
        f"correlation_id={correlation_id}"
    )

    try:
        order = engine.orders.collect_order(
            order_id,
            collected_by=actor_id,
            location_ref=location_ref,
            correlation_id=correlation_id,
        )
    except OrderEngineError as e:
        raise to_http_exception(e, engine, correlation_id)
    return _response(order)


@router.post(
    "/{order_id}/cancel",
    response_model=OrderResponse,
    summary="Cancel Order",
    responses={
        403: {"description": "Cutoff passed and late cancellation not allowed"},
        404: {"description": "Unknown order"},
        409: {"description": "Order already finalized, or retries exhausted"},
    },
)
def cancel_order(
    order_id: str,
    request: Optional[CancelOrderRequest] = None,
    actor_id: str = Depends(get_current_actor),
    engine: CanteenEngine = Depends(get_engine),
) -> OrderResponse:
    correlation_id = str(uuid.uuid4())

    try:
        existing = engine.orders.get_order(order_id)
        _require_self_or_admin(engine, actor_id, existing.person_id)
        order = engine.orders.cancel_order(
            order_id,
            reason=request.reason if request else None,
            actor_id=actor_id,
            correlation_id=correlation_id,
        )
    except OrderEngineError as e:
        raise to_http_exception(e, engine, correlation_id)

    logger.info(
        f"[ORDER-API] POST /orders/{order_id}/cancel | "
        f"actor={actor_id} | "
        f"late={order.late_cancellation} | "
        f"correlation_id={correlation_id}"
    )
    return _response(order)


__all__ = ["router"]
