"""
============================================================================
Canteen Order Engine - Order Service
============================================================================

Reliability Level: L6 Critical (Order Integrity)
Traceability: All operations include correlation_id for audit

Entry points for the user-facing order operations:
- create_order: place a PLACED order for (person, shift, date)
- collect_order: confirm collection inside the collection window
- cancel_order: cancel before the cutoff, or late if the policy allows
- list_orders: read-only scan by date range

CREATE CHECK ORDER:
    Every create evaluates against one policy snapshot and one clock
    reading, in this order, stopping at the first refusal:

    1. Validation           → ValidationError, PersonNotFound
    2. Date in the past      → HorizonExceeded (PAST_DATE)
    3. Beyond the horizon    → HorizonExceeded (BEYOND_HORIZON)
       weekly cutoff mode    → CutoffPassed (CURRENT_WEEK,
                                WEEKLY_CUTOFF_PASSED), ShiftUnavailable
                                (DAY_NOT_ORDERABLE), HorizonExceeded
                                (BEYOND_WEEKLY_HORIZON)
    4. Shift unavailable     → ShiftUnavailable (NOT_FOUND, INACTIVE,
                                HOLIDAY, NOT_ELIGIBLE)
    5. Cutoff passed         → CutoffPassed
    6. Person restricted     → Restricted
    7. Live order for date   → DuplicateForDate

CONFLICTS:
    collect and cancel re-read the order and retry when their conditional
    update loses, at most CONFLICT_RETRY_LIMIT times. A re-read that finds
    the order terminal reports AlreadyFinalized instead of retrying.

============================================================================
"""

from typing import Optional, Dict, Any, List, Union
from datetime import date, datetime
import logging
import uuid

from services.canteen_models import (
    Holiday,
    Order,
    OrderStatus,
    Shift,
    SYSTEM_ACTOR,
    format_date,
    parse_date,
)
from services.collaborators import (
    AllowAllEligibility,
    AuditSink,
    EligibilityChecker,
    build_audit_entry,
    record_audit,
)
from services.event_fanout import CanteenEventType, EventFanout
from services.order_errors import (
    AlreadyFinalized,
    ConcurrencyConflict,
    CutoffPassed,
    DuplicateForDate,
    HorizonExceeded,
    OrderEngineError,
    OrderNotFound,
    OutsideCollectionWindow,
    PersonNotFound,
    PolicyViolation,
    Restricted,
    ShiftUnavailable,
    ValidationError,
)
from services.order_state_machine import is_valid_state, transition_order
from services.policy_store import Policy, PolicyStore
from services.shift_windows import (
    collection_window,
    cutoff_at,
    is_past_cutoff,
    orderable_dates,
    parse_wall_time,
    shift_end_at,
    weekly_cutoff_at,
    weekly_refusal,
    WEEKLY_BEYOND_HORIZON,
    WEEKLY_DAY_NOT_ORDERABLE,
)
from services.strike_ledger import StrikeLedger
from app.observability.metrics import (
    record_order_created,
    record_order_rejected,
    record_transition,
)

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

CONFLICT_RETRY_LIMIT = 3

# ShiftUnavailable / HorizonExceeded reason tokens
REASON_PAST_DATE = "PAST_DATE"
REASON_BEYOND_HORIZON = "BEYOND_HORIZON"
REASON_SHIFT_NOT_FOUND = "NOT_FOUND"
REASON_SHIFT_INACTIVE = "INACTIVE"
REASON_HOLIDAY = "HOLIDAY"
REASON_NOT_ELIGIBLE = "NOT_ELIGIBLE"


# =============================================================================
# OrderService Class
# =============================================================================

class OrderService:
    """
    Orchestrates order creation, collection and cancellation.

    ============================================================================
    COLLABORATORS:
    ============================================================================
    - store: OrderStore (persistence and conditional updates)
    - policy_store: source of the policy snapshot
    - clock: ClockSource (authoritative now, canteen timezone)
    - ledger: StrikeLedger (restriction checks)
    - fanout: EventFanout (order.* notifications), optional
    - eligibility: EligibilityChecker, defaults to allow-all
    - audit_sink: AuditSink, optional
    ============================================================================
    """

    def __init__(
        self,
        store: Any,
        policy_store: PolicyStore,
        clock: Any,
        ledger: StrikeLedger,
        fanout: Optional[EventFanout] = None,
        eligibility: Optional[EligibilityChecker] = None,
        audit_sink: Optional[AuditSink] = None,
    ) -> None:
        self._store = store
        self._policy_store = policy_store
        self._clock = clock
        self._ledger = ledger
        self._fanout = fanout
        self._eligibility = eligibility or AllowAllEligibility()
        self._audit_sink = audit_sink

        logger.info("[ORDER-SERVICE] Initialized")

    @property
    def store(self) -> Any:
        return self._store

    # =========================================================================
    # Create
    # =========================================================================

    def create_order(
        self,
        person_id: str,
        shift_id: str,
        order_date: Union[date, str],
        actor_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Order:
        """
        Place an order.

        Args:
            person_id: Person the meal is for
            shift_id: Shift being ordered
            order_date: Calendar date (date or YYYY-MM-DD)
            actor_id: Who placed it; defaults to the person
            correlation_id: Audit trail identifier

        Returns:
            The new PLACED order

        Raises:
            ValidationError, HorizonExceeded, ShiftUnavailable, CutoffPassed,
            Restricted, DuplicateForDate, PersonNotFound, InfrastructureError
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        try:
            return self._create(person_id, shift_id, order_date, actor_id, correlation_id)
        except OrderEngineError as e:
            self._rejected("create", e, correlation_id)
            raise

    def _create(
        self,
        person_id: str,
        shift_id: str,
        order_date: Union[date, str],
        actor_id: Optional[str],
        correlation_id: str,
    ) -> Order:
        policy = self._policy_store.current()
        now = self._clock.now()
        today = now.date()

        # 1. Validation
        person_id = _require_text("person_id", person_id)
        shift_id = _require_text("shift_id", shift_id)
        try:
            day = parse_date(order_date)
        except (TypeError, ValueError):
            raise ValidationError(
                f"order_date must be a YYYY-MM-DD date, got: {order_date!r}",
                reason="INVALID_DATE",
            )

        person = self._store.get_person(person_id)
        if person is None:
            raise PersonNotFound(f"Person not found: {person_id}", details={"person_id": person_id})

        # 2-3. Horizon
        if day < today:
            raise HorizonExceeded(
                "Cannot order for a date in the past",
                reason=REASON_PAST_DATE,
                details={"order_date": format_date(day), "today": format_date(today)},
            )
        if policy.is_weekly:
            self._check_weekly(day, now, policy)
        elif (day - today).days > policy.booking_horizon_days:
            raise HorizonExceeded(
                f"Orders may be placed at most {policy.booking_horizon_days} days ahead",
                reason=REASON_BEYOND_HORIZON,
                details={
                    "order_date": format_date(day),
                    "booking_horizon_days": policy.booking_horizon_days,
                },
            )

        # 4. Shift availability
        shift = self._available_shift(shift_id, day)
        if not self._eligibility.is_eligible(person, shift, day):
            raise ShiftUnavailable(
                "Person is not eligible for this shift",
                reason=REASON_NOT_ELIGIBLE,
                details={"shift_id": shift_id, "person_id": person_id},
            )

        # 5. Cutoff
        if is_past_cutoff(shift, day, now, policy, tz=self._clock.tz):
            raise CutoffPassed(
                f"Ordering closed {_format_lead(policy)} before shift start",
                details={
                    "shift_id": shift_id,
                    "order_date": format_date(day),
                    "cutoff_at": cutoff_at(shift, day, self._clock.tz, policy).isoformat(),
                },
            )

        # 6. Restriction
        restriction = self._ledger.active_restriction(person_id, now)
        if restriction is not None:
            raise Restricted(
                "Person is restricted from ordering",
                reason=restriction.reason,
                details={
                    "person_id": person_id,
                    "until": restriction.end_at.isoformat() if restriction.end_at else None,
                },
            )

        # 7. Duplicate
        existing = self._store.find_live_order(person_id, day)
        if existing is not None:
            raise DuplicateForDate(
                "Person already has an active order for this date",
                details={"existing_order_id": existing.id, "order_date": format_date(day)},
            )

        order = Order(
            id=str(uuid.uuid4()),
            person_id=person_id,
            shift_id=shift_id,
            order_date=day,
            status=OrderStatus.PLACED.value,
            created_at=now,
            version=0,
        )
        # The unique index catches a concurrent create that slipped past step 7
        self._store.insert_order(order)

        record_order_created(shift_id, correlation_id)
        logger.info(
            f"[ORDER-SERVICE] Order created | "
            f"order_id={order.id} | "
            f"person_id={person_id} | "
            f"shift_id={shift_id} | "
            f"order_date={format_date(day)} | "
            f"correlation_id={correlation_id}"
        )

        record_audit(self._audit_sink, build_audit_entry(
            actor_id=actor_id or person_id,
            action="ORDER_CREATED",
            target_type="order",
            target_id=order.id,
            previous_state=None,
            new_state={"status": order.status},
            payload=order.to_dict(),
            correlation_id=correlation_id,
            created_at=self._clock.now(),
        ))
        self._publish(CanteenEventType.ORDER_CREATED, {"order": order.to_dict()}, correlation_id)
        return order

    def _check_weekly(self, day: date, now: datetime, policy: Policy) -> None:
        reason = weekly_refusal(day, now, policy, tz=self._clock.tz)
        if reason is None:
            return
        details = {
            "order_date": format_date(day),
            "cutoff_mode": policy.cutoff_mode,
            "weekly_cutoff_at": weekly_cutoff_at(now, policy, tz=self._clock.tz).isoformat(),
        }
        if reason == WEEKLY_DAY_NOT_ORDERABLE:
            raise ShiftUnavailable(
                "This weekday is not open for ordering",
                reason=reason,
                details={**details, "orderable_days": list(policy.orderable_days)},
            )
        if reason == WEEKLY_BEYOND_HORIZON:
            raise HorizonExceeded(
                f"Orders may be placed at most {policy.max_weeks_ahead} weeks ahead",
                reason=reason,
                details={**details, "max_weeks_ahead": policy.max_weeks_ahead},
            )
        raise CutoffPassed(
            "Ordering for this week is closed",
            reason=reason,
            details=details,
        )

    def _available_shift(self, shift_id: str, day: date) -> Shift:
        shift = self._store.get_shift(shift_id)
        if shift is None:
            raise ShiftUnavailable(
                f"Shift not found: {shift_id}",
                reason=REASON_SHIFT_NOT_FOUND,
                details={"shift_id": shift_id},
            )
        if not shift.active:
            raise ShiftUnavailable(
                f"Shift is not active: {shift_id}",
                reason=REASON_SHIFT_INACTIVE,
                details={"shift_id": shift_id},
            )
        for holiday in self._store.list_holidays(day):
            if holiday.applies_to(shift_id):
                raise ShiftUnavailable(
                    f"Canteen closed on {format_date(day)}: {holiday.description}",
                    reason=REASON_HOLIDAY,
                    details={"shift_id": shift_id, "holiday_id": holiday.id},
                )
        return shift

    # =========================================================================
    # Collect
    # =========================================================================

    def collect_order(
        self,
        order_id: str,
        collected_by: str,
        location_ref: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Order:
        """
        Confirm collection of a PLACED order.

        Raises:
            OrderNotFound: Unknown order
            AlreadyFinalized: Order is no longer PLACED
            OutsideCollectionWindow: now is outside
                [start - early_collection_minutes, end + collection_grace_minutes]
            ConcurrencyConflict: Retries exhausted
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        try:
            return self._collect(order_id, collected_by, location_ref, correlation_id)
        except OrderEngineError as e:
            self._rejected("collect", e, correlation_id)
            raise

    def _collect(
        self,
        order_id: str,
        collected_by: str,
        location_ref: Optional[str],
        correlation_id: str,
    ) -> Order:
        order_id = _require_text("order_id", order_id)
        collected_by = _require_text("collected_by", collected_by)
        policy = self._policy_store.current()
        now = self._clock.now()

        for attempt in range(1, CONFLICT_RETRY_LIMIT + 1):
            order = self._require_order(order_id)
            _require_placed(order)

            shift = self._require_shift(order.shift_id)
            opens, closes = collection_window(shift, order.order_date, self._clock.tz, policy)
            if not (opens <= now <= closes):
                raise OutsideCollectionWindow(
                    "Order can only be collected during its collection window",
                    details={
                        "order_id": order_id,
                        "opens_at": opens.isoformat(),
                        "closes_at": closes.isoformat(),
                        "window": "break" if shift.has_break else "shift",
                    },
                )

            updated = transition_order(
                self._store,
                order,
                OrderStatus.COLLECTED.value,
                correlation_id=correlation_id,
                actor_id=collected_by,
                fields={
                    "collected_at": now,
                    "collected_by": collected_by,
                    "location_ref": location_ref,
                },
            )
            if updated is not None:
                record_transition(OrderStatus.COLLECTED.value)
                record_audit(self._audit_sink, build_audit_entry(
                    actor_id=collected_by,
                    action="ORDER_COLLECTED",
                    target_type="order",
                    target_id=order_id,
                    previous_state={"status": order.status},
                    new_state={"status": updated.status},
                    payload={"location_ref": location_ref},
                    correlation_id=correlation_id,
                    created_at=self._clock.now(),
                ))
                self._publish(
                    CanteenEventType.ORDER_CHECKIN,
                    {"order": updated.to_dict()},
                    correlation_id,
                )
                return updated

            logger.info(
                f"[ORDER-SERVICE] Collect lost race, re-reading | "
                f"order_id={order_id} | "
                f"attempt={attempt} | "
                f"correlation_id={correlation_id}"
            )

        raise _retries_exhausted(order_id)

    # =========================================================================
    # Cancel
    # =========================================================================

    def cancel_order(
        self,
        order_id: str,
        reason: Optional[str] = None,
        actor_id: Optional[str] = None,
        correlation_id: Optional[str] = None,
    ) -> Order:
        """
        Cancel a PLACED order.

        Before the cutoff the cancellation is clean. After it, the order may
        only be cancelled when allow_late_cancellation is on and the shift
        has not ended yet; such a cancellation is flagged late, audited, and
        carries no strike.

        Raises:
            OrderNotFound, AlreadyFinalized, CutoffPassed, ConcurrencyConflict
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        try:
            return self._cancel(order_id, reason, actor_id or SYSTEM_ACTOR, correlation_id)
        except OrderEngineError as e:
            self._rejected("cancel", e, correlation_id)
            raise

    def _cancel(
        self,
        order_id: str,
        reason: Optional[str],
        actor_id: str,
        correlation_id: str,
    ) -> Order:
        order_id = _require_text("order_id", order_id)
        policy = self._policy_store.current()
        now = self._clock.now()

        for attempt in range(1, CONFLICT_RETRY_LIMIT + 1):
            order = self._require_order(order_id)
            _require_placed(order)

            shift = self._require_shift(order.shift_id)
            late = is_past_cutoff(shift, order.order_date, now, policy, tz=self._clock.tz)
            if late and not self._late_cancel_allowed(shift, order, now, policy):
                raise CutoffPassed(
                    "Cancellation closed at the cutoff",
                    details={
                        "order_id": order_id,
                        "cutoff_at": cutoff_at(shift, order.order_date, self._clock.tz, policy).isoformat(),
                    },
                )

            updated = transition_order(
                self._store,
                order,
                OrderStatus.CANCELLED.value,
                correlation_id=correlation_id,
                actor_id=actor_id,
                fields={
                    "cancelled_at": now,
                    "cancel_reason": reason,
                    "late_cancellation": late,
                },
            )
            if updated is None:
                logger.info(
                    f"[ORDER-SERVICE] Cancel lost race, re-reading | "
                    f"order_id={order_id} | "
                    f"attempt={attempt} | "
                    f"correlation_id={correlation_id}"
                )
                continue

            record_transition(OrderStatus.CANCELLED.value)
            if late:
                logger.warning(
                    f"[ORDER-SERVICE] Late cancellation | "
                    f"order_id={order_id} | "
                    f"person_id={order.person_id} | "
                    f"actor={actor_id} | "
                    f"correlation_id={correlation_id}"
                )
            else:
                logger.info(
                    f"[ORDER-SERVICE] Order cancelled | "
                    f"order_id={order_id} | "
                    f"actor={actor_id} | "
                    f"correlation_id={correlation_id}"
                )

            record_audit(self._audit_sink, build_audit_entry(
                actor_id=actor_id,
                action="ORDER_LATE_CANCELLED" if late else "ORDER_CANCELLED",
                target_type="order",
                target_id=order_id,
                previous_state={"status": order.status},
                new_state={"status": updated.status, "late_cancellation": late},
                payload={"reason": reason},
                correlation_id=correlation_id,
                created_at=self._clock.now(),
            ))
            self._publish(CanteenEventType.ORDER_CANCELLED, {"order": updated.to_dict()}, correlation_id)
            return updated

        raise _retries_exhausted(order_id)

    def _late_cancel_allowed(self, shift: Shift, order: Order, now: datetime, policy: Policy) -> bool:
        if not policy.allow_late_cancellation:
            return False
        return now < shift_end_at(shift, order.order_date, self._clock.tz)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_order(self, order_id: str) -> Order:
        return self._require_order(order_id)

    def list_orders(
        self,
        start: Union[date, str],
        end: Union[date, str],
        person_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[Order]:
        """Read-only scan for reporting and export."""
        try:
            start_day = parse_date(start)
            end_day = parse_date(end)
        except (TypeError, ValueError):
            raise ValidationError("start and end must be YYYY-MM-DD dates")
        if end_day < start_day:
            raise ValidationError("end must not be before start")
        if status is not None and not is_valid_state(status):
            raise ValidationError(f"Unknown order status: {status}")
        return self._store.list_orders(start_day, end_day, person_id=person_id, status=status)

    def daily_stats(self, stats_date: Optional[Union[date, str]] = None) -> Dict[str, Any]:
        try:
            day = parse_date(stats_date) if stats_date is not None else self._clock.today()
        except (TypeError, ValueError):
            raise ValidationError(f"date must be a YYYY-MM-DD date, got: {stats_date!r}")
        return self._store.daily_stats(day)

    def orderable_dates(self) -> Dict[str, Any]:
        """Dates open for ordering right now under the current policy."""
        policy = self._policy_store.current()
        now = self._clock.now()
        body: Dict[str, Any] = {
            "cutoff_mode": policy.cutoff_mode,
            "dates": [format_date(day) for day in orderable_dates(now, policy, tz=self._clock.tz)],
        }
        if policy.is_weekly:
            body["weekly_cutoff_at"] = weekly_cutoff_at(now, policy, tz=self._clock.tz).isoformat()
        return body

    # =========================================================================
    # Calendar administration
    # =========================================================================

    def upsert_shift(
        self,
        shift_id: str,
        name: str,
        start_time: str,
        end_time: str,
        active: bool = True,
        actor_id: str = SYSTEM_ACTOR,
        correlation_id: Optional[str] = None,
        break_start: Optional[str] = None,
        break_end: Optional[str] = None,
    ) -> Shift:
        """
        Create or update a shift and announce it as shift.updated.

        break_start and break_end go together; with both set, collection is
        confined to the meal break.
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        shift_id = _require_text("shift_id", shift_id)
        parse_wall_time(start_time)
        parse_wall_time(end_time)
        if bool(break_start) != bool(break_end):
            raise ValidationError(
                "break_start and break_end must be set together",
                reason="INCOMPLETE_BREAK",
            )
        if break_start:
            parse_wall_time(break_start)
            parse_wall_time(break_end)

        shift = self._store.upsert_shift(Shift(
            id=shift_id,
            name=name or shift_id,
            start_time=start_time,
            end_time=end_time,
            active=active,
            break_start=break_start or None,
            break_end=break_end or None,
        ))
        logger.info(
            f"[ORDER-SERVICE] Shift saved | "
            f"shift_id={shift_id} | "
            f"window={start_time}-{end_time} | "
            f"break={break_start or '-'}-{break_end or '-'} | "
            f"active={active} | "
            f"actor={actor_id} | "
            f"correlation_id={correlation_id}"
        )
        self._publish(CanteenEventType.SHIFT_UPDATED, {"shift": shift.to_dict()}, correlation_id)
        return shift

    def add_holiday(
        self,
        holiday_date: Union[date, str],
        description: str = "",
        shift_id: Optional[str] = None,
        actor_id: str = SYSTEM_ACTOR,
        correlation_id: Optional[str] = None,
    ) -> Holiday:
        """Close the canteen for a day (or for one shift on that day)."""
        correlation_id = correlation_id or str(uuid.uuid4())
        try:
            day = parse_date(holiday_date)
        except (TypeError, ValueError):
            raise ValidationError(f"holiday_date must be a YYYY-MM-DD date, got: {holiday_date!r}")

        holiday = self._store.add_holiday(
            Holiday(id=str(uuid.uuid4()), holiday_date=day, description=description, shift_id=shift_id)
        )
        logger.info(
            f"[ORDER-SERVICE] Holiday added | "
            f"date={format_date(day)} | "
            f"shift_id={shift_id or 'ALL'} | "
            f"actor={actor_id} | "
            f"correlation_id={correlation_id}"
        )
        self._publish(CanteenEventType.HOLIDAY_UPDATED, {"holiday": holiday.to_dict()}, correlation_id)
        return holiday

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require_order(self, order_id: str) -> Order:
        order = self._store.get_order(order_id)
        if order is None:
            raise OrderNotFound(f"Order not found: {order_id}", details={"order_id": order_id})
        return order

    def _require_shift(self, shift_id: str) -> Shift:
        shift = self._store.get_shift(shift_id)
        if shift is None:
            raise ShiftUnavailable(
                f"Shift not found: {shift_id}",
                reason=REASON_SHIFT_NOT_FOUND,
                details={"shift_id": shift_id},
            )
        return shift

    def _publish(self, event_type: CanteenEventType, payload: Dict[str, Any], correlation_id: str) -> None:
        if self._fanout is not None:
            self._fanout.publish(event_type, payload, correlation_id=correlation_id)

    def _rejected(self, operation: str, error: OrderEngineError, correlation_id: str) -> None:
        record_order_rejected(operation, error.error_code)
        message = (
            f"[{error.error_code}] Order {operation} refused | "
            f"error_type={type(error).__name__} | "
            f"reason={error.reason} | "
            f"message={error.message} | "
            f"correlation_id={correlation_id}"
        )
        if isinstance(error, (PolicyViolation, ValidationError, AlreadyFinalized)):
            logger.info(message)
        else:
            logger.warning(message)


# =============================================================================
# Module Helpers
# =============================================================================

def _format_lead(policy: Policy) -> str:
    if policy.cutoff_days:
        return f"{policy.cutoff_days}d {policy.cutoff_lead_hours}h"
    return f"{policy.cutoff_lead_hours}h"


def _require_text(name: str, value: Any) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{name} is required", reason="MISSING_FIELD", details={"field": name})
    return value.strip()


def _require_placed(order: Order) -> None:
    if order.is_terminal:
        raise AlreadyFinalized(
            f"Order is already {order.status}",
            reason=order.status,
            details={"order_id": order.id, "status": order.status},
        )


def _retries_exhausted(order_id: str) -> ConcurrencyConflict:
    logger.warning(
        f"[ORDER-SERVICE] Conflict retries exhausted | "
        f"order_id={order_id} | "
        f"retry_limit={CONFLICT_RETRY_LIMIT}"
    )
    return ConcurrencyConflict(
        "Order changed concurrently, retry the request",
        details={"order_id": order_id},
    )


__all__ = [
    "OrderService",
    "CONFLICT_RETRY_LIMIT",
    "REASON_PAST_DATE",
    "REASON_BEYOND_HORIZON",
    "REASON_HOLIDAY",
    "REASON_NOT_ELIGIBLE",
]
