"""
============================================================================
Canteen Order Engine v1.0.0
Administration API Endpoints
============================================================================

Reliability Level: L6 Critical
Input Constraints:
    - Bearer token authentication required
    - Mutating endpoints require the actor in CANTEEN_ADMIN_IDS
Side Effects:
    - Policy, person, restriction, shift and holiday writes
    - Audit log entries and fan-out events

ENDPOINTS:
    GET  /api/policy                          - Current policy snapshot
    PUT  /api/policy                          - Replace policy fields (admin)
    PUT  /api/persons/{person_id}             - Register/refresh a person (admin)
    GET  /api/persons/{person_id}/restriction - Strike and restriction status
    POST /api/persons/{person_id}/reduce-strikes   - Forgive strikes (admin)
    POST /api/persons/{person_id}/lift-restriction - Lift restriction (admin)
    POST /api/persons/{person_id}/restrict    - Manual restriction (admin)
    PUT  /api/shifts/{shift_id}               - Create/update a shift (admin)
    POST /api/holidays                        - Add a holiday (admin)
    POST /api/sweep/run                       - Run one attendance sweep (admin)

============================================================================
"""

import uuid
from typing import Optional, Dict, Any, List

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field

from app.api.deps import get_current_actor, get_engine, require_admin, to_http_exception
from services.canteen_engine import CanteenEngine
from services.canteen_models import Person, PersonRole
from services.order_errors import OrderEngineError, ValidationError
from services.strike_ledger import REASON_MANUAL

import logging

# Configure module logger
logger = logging.getLogger(__name__)


router = APIRouter()


# ============================================================================
# Request Models
# ============================================================================

class PolicyUpdateRequest(BaseModel):
    """Any subset of policy fields; omitted fields keep their value."""
    cutoff_lead_hours: Optional[int] = None
    strike_threshold: Optional[int] = None
    restriction_duration_days: Optional[int] = None
    booking_horizon_days: Optional[int] = None
    early_collection_minutes: Optional[int] = None
    collection_grace_minutes: Optional[int] = None
    allow_late_cancellation: Optional[bool] = None
    cancel_orders_on_restriction: Optional[bool] = None
    unblock_on_strike_reduction: Optional[bool] = None
    cutoff_days: Optional[int] = None
    cutoff_mode: Optional[str] = Field(default=None, description="per-shift or weekly")
    weekly_cutoff_day: Optional[int] = Field(default=None, description="ISO weekday, 1 = Monday")
    weekly_cutoff_hour: Optional[int] = None
    weekly_cutoff_minute: Optional[int] = None
    orderable_days: Optional[List[int]] = Field(default=None, description="ISO weekdays open in weekly mode")
    max_weeks_ahead: Optional[int] = None


class PersonRequest(BaseModel):
    display_name: str = ""
    role: str = Field(default=PersonRole.EMPLOYEE.value)
    active: bool = True


class ReduceStrikesRequest(BaseModel):
    amount: Optional[int] = Field(
        default=None,
        description="Strikes to remove; omit to reset the counter to zero",
    )
    reason: Optional[str] = Field(default=None, description="Why the strikes are forgiven")


class LiftRestrictionRequest(BaseModel):
    reason: Optional[str] = Field(default=None, description="Why the restriction is lifted")


class RestrictRequest(BaseModel):
    reason: str = Field(default=REASON_MANUAL, min_length=1)
    days: Optional[int] = Field(default=None, description="Omit for an open-ended restriction")


class ShiftRequest(BaseModel):
    name: str = ""
    start_time: str = Field(..., description="Wall-clock HH:MM")
    end_time: str = Field(..., description="Wall-clock HH:MM; at or before start means next day")
    active: bool = True
    break_start: Optional[str] = Field(default=None, description="Meal break start HH:MM")
    break_end: Optional[str] = Field(default=None, description="Meal break end HH:MM")


class HolidayRequest(BaseModel):
    holiday_date: str = Field(..., description="YYYY-MM-DD")
    description: str = ""
    shift_id: Optional[str] = Field(default=None, description="Omit to close every shift")


# ============================================================================
# Policy
# ============================================================================

@router.get("/policy", summary="Get Policy")
def get_policy(
    actor_id: str = Depends(get_current_actor),
    engine: CanteenEngine = Depends(get_engine),
) -> Dict[str, Any]:
    return {
        "version": engine.policy_store.version,
        "policy": engine.policy_store.current().to_dict(),
    }


@router.put("/policy", summary="Update Policy")
def put_policy(
    request: PolicyUpdateRequest,
    actor_id: str = Depends(require_admin),
    engine: CanteenEngine = Depends(get_engine),
) -> Dict[str, Any]:
    correlation_id = str(uuid.uuid4())
    changes = request.model_dump(exclude_none=True)
    try:
        policy = engine.policy_store.update(
            actor_id=actor_id,
            correlation_id=correlation_id,
            **changes,
        )
    except OrderEngineError as e:
        raise to_http_exception(e, engine, correlation_id)

    logger.info(
        f"[ADMIN-API] PUT /policy | "
        f"actor={actor_id} | "
        f"fields={sorted(changes)} | "
        f"correlation_id={correlation_id}"
    )
    return {"version": engine.policy_store.version, "policy": policy.to_dict()}


# ============================================================================
# Persons and Restrictions
# ============================================================================

@router.put("/persons/{person_id}", summary="Register Person")
def put_person(
    person_id: str,
    request: PersonRequest,
    actor_id: str = Depends(require_admin),
    engine: CanteenEngine = Depends(get_engine),
) -> Dict[str, Any]:
    if request.role not in {role.value for role in PersonRole}:
        raise to_http_exception(ValidationError(f"Unknown role: {request.role}"), engine)
    try:
        person = engine.store.upsert_person(Person(
            id=person_id,
            display_name=request.display_name,
            role=request.role,
            active=request.active,
        ))
    except OrderEngineError as e:
        raise to_http_exception(e, engine)
    return person.to_dict()


@router.get("/persons/{person_id}/restriction", summary="Restriction Status")
def get_restriction(
    person_id: str,
    actor_id: str = Depends(get_current_actor),
    engine: CanteenEngine = Depends(get_engine),
) -> Dict[str, Any]:
    try:
        return engine.ledger.get_status(person_id)
    except OrderEngineError as e:
        raise to_http_exception(e, engine)


@router.post("/persons/{person_id}/reduce-strikes", summary="Reduce Strikes")
def reduce_strikes(
    person_id: str,
    request: Optional[ReduceStrikesRequest] = None,
    actor_id: str = Depends(require_admin),
    engine: CanteenEngine = Depends(get_engine),
) -> Dict[str, Any]:
    correlation_id = str(uuid.uuid4())
    try:
        return engine.ledger.reduce_strikes(
            person_id,
            amount=request.amount if request else None,
            actor_id=actor_id,
            correlation_id=correlation_id,
            reason=request.reason if request else None,
        )
    except OrderEngineError as e:
        raise to_http_exception(e, engine, correlation_id)


@router.post("/persons/{person_id}/lift-restriction", summary="Lift Restriction")
def lift_restriction(
    person_id: str,
    request: Optional[LiftRestrictionRequest] = None,
    actor_id: str = Depends(require_admin),
    engine: CanteenEngine = Depends(get_engine),
) -> Dict[str, Any]:
    correlation_id = str(uuid.uuid4())
    try:
        closed = engine.ledger.lift_restriction(
            person_id,
            actor_id=actor_id,
            correlation_id=correlation_id,
            reason=request.reason if request else None,
        )
    except OrderEngineError as e:
        raise to_http_exception(e, engine, correlation_id)
    return {"person_id": person_id, "restrictions_lifted": closed, "correlation_id": correlation_id}


@router.post("/persons/{person_id}/restrict", summary="Restrict Person")
def restrict_person(
    person_id: str,
    request: RestrictRequest,
    actor_id: str = Depends(require_admin),
    engine: CanteenEngine = Depends(get_engine),
) -> Dict[str, Any]:
    correlation_id = str(uuid.uuid4())
    try:
        restriction = engine.ledger.open_restriction(
            person_id,
            reason=request.reason,
            days=request.days,
            actor_id=actor_id,
            correlation_id=correlation_id,
        )
    except OrderEngineError as e:
        raise to_http_exception(e, engine, correlation_id)
    return restriction.to_dict()


# ============================================================================
# Calendar
# ============================================================================

@router.put("/shifts/{shift_id}", summary="Save Shift")
def put_shift(
    shift_id: str,
    request: ShiftRequest,
    actor_id: str = Depends(require_admin),
    engine: CanteenEngine = Depends(get_engine),
) -> Dict[str, Any]:
    try:
        shift = engine.orders.upsert_shift(
            shift_id,
            name=request.name,
            start_time=request.start_time,
            end_time=request.end_time,
            active=request.active,
            actor_id=actor_id,
            break_start=request.break_start,
            break_end=request.break_end,
        )
    except OrderEngineError as e:
        raise to_http_exception(e, engine)
    return shift.to_dict()


@router.post("/holidays", status_code=201, summary="Add Holiday")
def post_holiday(
    request: HolidayRequest,
    actor_id: str = Depends(require_admin),
    engine: CanteenEngine = Depends(get_engine),
) -> Dict[str, Any]:
    try:
        holiday = engine.orders.add_holiday(
            request.holiday_date,
            description=request.description,
            shift_id=request.shift_id,
            actor_id=actor_id,
        )
    except OrderEngineError as e:
        raise to_http_exception(e, engine)
    return holiday.to_dict()


# ============================================================================
# Attendance Sweep
# ============================================================================

@router.post("/sweep/run", summary="Run Attendance Sweep")
def run_sweep(
    actor_id: str = Depends(require_admin),
    engine: CanteenEngine = Depends(get_engine),
) -> Dict[str, Any]:
    try:
        result = engine.sweep.run_once()
    except OrderEngineError as e:
        raise to_http_exception(e, engine)

    logger.info(
        f"[ADMIN-API] POST /sweep/run | "
        f"actor={actor_id} | "
        f"noshows={result.noshows} | "
        f"correlation_id={result.correlation_id}"
    )
    return result.to_dict()


__all__ = ["router"]
