"""
============================================================================
Canteen Order Engine - Strike & Restriction Ledger
============================================================================

Reliability Level: L6 Critical (Attendance Enforcement)
Traceability: All operations include correlation_id for audit

Tracks per-person no-show strikes and the time-boxed restrictions they
trigger.

STRIKE RULES:
    - accrue_failure() adds exactly one strike per call with a versioned
      compare-and-swap, retried a bounded number of times
    - When the new count reaches the threshold and no restriction is in
      force, a restriction [now, now + restriction_duration_days) opens
    - Opening a restriction never resets the counter
    - reduce_strikes() floors at zero; it may lift the restriction when
      the count drops below the threshold and the policy says so

RESTRICTION RULES:
    - A restriction is in force iff it is active and its window contains
      the instant asked about
    - An elapsed end_at means not in force, whatever the stored flag says
    - Manual restrictions may be permanent (no end_at)

ERROR CODES:
    - ORD-202: Strike update kept losing to concurrent writers
    - ORD-404: Unknown person

============================================================================
"""

from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
from datetime import datetime, timedelta
import logging
import uuid

from services.canteen_models import (
    Order,
    OrderStatus,
    Person,
    Restriction,
    SYSTEM_ACTOR,
)
from services.collaborators import AuditSink, build_audit_entry, record_audit
from services.event_fanout import CanteenEventType, EventFanout
from services.order_errors import (
    AlreadyFinalized,
    ConcurrencyConflict,
    PersonNotFound,
    ValidationError,
)
from services.order_state_machine import transition_order
from services.policy_store import PolicyStore
from app.observability.metrics import (
    record_restriction_opened,
    record_strike_accrued,
    record_transition,
)

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

DEFAULT_RETRY_LIMIT = 3

# Restriction reasons
REASON_STRIKE_THRESHOLD = "STRIKE_THRESHOLD"
REASON_MANUAL = "MANUAL"

# user.* events go to the person and to these roles
STAFF_ROLES = ("ADMIN", "CANTEEN")

# cancel_reason stamped on orders cancelled because their owner got restricted
CANCEL_REASON_RESTRICTED = "RESTRICTED"


# =============================================================================
# Result Data Classes
# =============================================================================

@dataclass
class AccrualResult:
    """Outcome of one accrue_failure() call."""
    person_id: str
    strike_count: int
    restriction: Optional[Restriction] = None
    cancelled_order_ids: List[str] = field(default_factory=list)
    correlation_id: Optional[str] = None

    @property
    def restriction_opened(self) -> bool:
        return self.restriction is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "person_id": self.person_id,
            "strike_count": self.strike_count,
            "restriction": self.restriction.to_dict() if self.restriction else None,
            "cancelled_order_ids": list(self.cancelled_order_ids),
            "correlation_id": self.correlation_id,
        }


# =============================================================================
# StrikeLedger Class
# =============================================================================

class StrikeLedger:
    """
    Strike counter and restriction registry.

    Every public method reads one policy snapshot and one clock instant and
    uses them for the whole call.
    """

    def __init__(
        self,
        store: Any,
        policy_store: PolicyStore,
        clock: Any,
        fanout: Optional[EventFanout] = None,
        audit_sink: Optional[AuditSink] = None,
        retry_limit: int = DEFAULT_RETRY_LIMIT,
    ) -> None:
        if retry_limit < 1:
            raise ValueError(f"retry_limit must be at least 1, got: {retry_limit}")

        self._store = store
        self._policy_store = policy_store
        self._clock = clock
        self._fanout = fanout
        self._audit_sink = audit_sink
        self._retry_limit = retry_limit

    # =========================================================================
    # Queries
    # =========================================================================

    def active_restriction(self, person_id: str, at: Optional[datetime] = None) -> Optional[Restriction]:
        """The restriction in force at the given instant, if any."""
        at = at or self._clock.now()
        for restriction in self._store.list_restrictions(person_id, active_only=True):
            if restriction.is_in_force(at):
                return restriction
        return None

    def is_restricted(self, person_id: str, at: Optional[datetime] = None) -> bool:
        return self.active_restriction(person_id, at) is not None

    def get_status(self, person_id: str) -> Dict[str, Any]:
        """Strike count and current restriction for one person."""
        person = self._require_person(person_id)
        restriction = self.active_restriction(person_id)
        return {
            "person_id": person.id,
            "strike_count": person.strike_count,
            "restricted": restriction is not None,
            "restriction": restriction.to_dict() if restriction else None,
            "strike_threshold": self._policy_store.current().strike_threshold,
        }

    # =========================================================================
    # Strikes
    # =========================================================================

    def accrue_failure(
        self,
        person_id: str,
        correlation_id: Optional[str] = None,
        source_order_id: Optional[str] = None,
    ) -> AccrualResult:
        """
        Add one strike and open a restriction if the threshold is reached.

        Args:
            person_id: Person who missed a collection
            correlation_id: Audit trail identifier
            source_order_id: The no-show order that caused the strike

        Returns:
            AccrualResult with the new count and any restriction opened

        Raises:
            PersonNotFound: If the person does not exist
            ConcurrencyConflict: If the counter kept changing under us
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        policy = self._policy_store.current()
        now = self._clock.now()

        person = self._bump_strikes(person_id, lambda count: count + 1, correlation_id)
        record_strike_accrued()

        logger.info(
            f"[STRIKE-LEDGER] Strike accrued | "
            f"person_id={person_id} | "
            f"strike_count={person.strike_count} | "
            f"threshold={policy.strike_threshold} | "
            f"source_order_id={source_order_id} | "
            f"correlation_id={correlation_id}"
        )

        result = AccrualResult(
            person_id=person_id,
            strike_count=person.strike_count,
            correlation_id=correlation_id,
        )

        if person.strike_count < policy.strike_threshold:
            return result

        if self.active_restriction(person_id, now) is not None:
            logger.info(
                f"[STRIKE-LEDGER] Threshold reached, restriction already in force | "
                f"person_id={person_id} | "
                f"correlation_id={correlation_id}"
            )
            return result

        restriction = self._open(
            person_id=person_id,
            reason=REASON_STRIKE_THRESHOLD,
            start_at=now,
            end_at=now + timedelta(days=policy.restriction_duration_days),
            actor_id=SYSTEM_ACTOR,
            origin="strikes",
            strike_count=person.strike_count,
            correlation_id=correlation_id,
        )
        result.restriction = restriction

        if policy.cancel_orders_on_restriction:
            result.cancelled_order_ids = self._cancel_pending_orders(person_id, correlation_id)

        return result

    def reduce_strikes(
        self,
        person_id: str,
        amount: Optional[int] = None,
        actor_id: str = SYSTEM_ACTOR,
        correlation_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Forgive strikes, flooring the counter at zero.

        Args:
            person_id: Person to forgive
            amount: Strikes to remove; None resets the counter to zero
            actor_id: Administrator performing the reduction
            correlation_id: Audit trail identifier
            reason: Free-text justification kept in the audit row and event

        Returns:
            Dict with previous/new counts and whether a restriction was lifted
        """
        correlation_id = correlation_id or str(uuid.uuid4())

        if amount is not None and (isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0):
            raise ValidationError(
                f"amount must be a positive integer, got: {amount!r}",
                details={"person_id": person_id},
            )

        policy = self._policy_store.current()
        previous = self._require_person(person_id).strike_count

        if amount is None:
            person = self._bump_strikes(person_id, lambda count: 0, correlation_id)
        else:
            person = self._bump_strikes(person_id, lambda count: max(0, count - amount), correlation_id)

        logger.info(
            f"[STRIKE-LEDGER] Strikes reduced | "
            f"person_id={person_id} | "
            f"amount={'ALL' if amount is None else amount} | "
            f"strike_count={person.strike_count} | "
            f"actor={actor_id} | "
            f"correlation_id={correlation_id}"
        )

        record_audit(self._audit_sink, build_audit_entry(
            actor_id=actor_id,
            action="STRIKES_REDUCED",
            target_type="person",
            target_id=person_id,
            previous_state={"strike_count": previous},
            new_state={"strike_count": person.strike_count},
            payload={"amount": amount, "reason": reason},
            correlation_id=correlation_id,
            created_at=self._clock.now(),
        ))

        self._publish(
            CanteenEventType.USER_STRIKES_RESET,
            {
                "user_id": person_id,
                "strike_count": person.strike_count,
                "previous_strike_count": previous,
                "reason": reason,
            },
            user_id=person_id,
            roles=STAFF_ROLES,
            correlation_id=correlation_id,
        )

        lifted = 0
        if policy.unblock_on_strike_reduction and person.strike_count < policy.strike_threshold:
            if self.is_restricted(person_id):
                lifted = self.lift_restriction(
                    person_id,
                    actor_id=actor_id,
                    correlation_id=correlation_id,
                    reason=reason,
                )

        return {
            "person_id": person_id,
            "previous_strike_count": previous,
            "strike_count": person.strike_count,
            "restrictions_lifted": lifted,
            "correlation_id": correlation_id,
        }

    def _bump_strikes(self, person_id: str, compute, correlation_id: str) -> Person:
        """Apply compute(old_count) with a bounded compare-and-swap loop."""
        for attempt in range(1, self._retry_limit + 1):
            person = self._require_person(person_id)
            new_count = compute(person.strike_count)
            if self._store.set_strike_count(person.id, person.version, new_count):
                person.strike_count = new_count
                person.version += 1
                return person
            logger.info(
                f"[STRIKE-LEDGER] Strike update lost race, retrying | "
                f"person_id={person_id} | "
                f"attempt={attempt} | "
                f"correlation_id={correlation_id}"
            )

        logger.warning(
            f"[STRIKE-LEDGER] Strike update retries exhausted | "
            f"person_id={person_id} | "
            f"retry_limit={self._retry_limit} | "
            f"correlation_id={correlation_id}"
        )
        raise ConcurrencyConflict(
            "Strike counter changed concurrently, retry the request",
            details={"person_id": person_id},
        )

    # =========================================================================
    # Restrictions
    # =========================================================================

    def open_restriction(
        self,
        person_id: str,
        reason: str = REASON_MANUAL,
        days: Optional[int] = None,
        actor_id: str = SYSTEM_ACTOR,
        correlation_id: Optional[str] = None,
    ) -> Restriction:
        """
        Open an administrative restriction.

        Args:
            days: Length in days; None means it stays until lifted

        Raises:
            ValidationError: If days is not a positive integer
            PersonNotFound: If the person does not exist
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        if days is not None and (isinstance(days, bool) or not isinstance(days, int) or days <= 0):
            raise ValidationError(f"days must be a positive integer, got: {days!r}")

        person = self._require_person(person_id)
        policy = self._policy_store.current()
        now = self._clock.now()

        restriction = self._open(
            person_id=person_id,
            reason=reason or REASON_MANUAL,
            start_at=now,
            end_at=now + timedelta(days=days) if days is not None else None,
            actor_id=actor_id,
            origin="manual",
            strike_count=person.strike_count,
            correlation_id=correlation_id,
        )
        if policy.cancel_orders_on_restriction:
            self._cancel_pending_orders(person_id, correlation_id)
        return restriction

    def lift_restriction(
        self,
        person_id: str,
        actor_id: str = SYSTEM_ACTOR,
        correlation_id: Optional[str] = None,
        reason: Optional[str] = None,
    ) -> int:
        """
        Close every restriction of the person that has not yet run out.

        Restrictions whose end_at has passed are already over and stay as
        they are. The strike counter is left untouched.

        Returns:
            Number of restrictions closed
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        self._require_person(person_id)
        now = self._clock.now()

        closed = 0
        for restriction in self._store.list_restrictions(person_id, active_only=True):
            if restriction.end_at is not None and restriction.end_at <= now:
                continue
            if self._store.close_restriction(restriction.id, now):
                closed += 1

        if closed == 0:
            logger.info(
                f"[STRIKE-LEDGER] No active restriction to lift | "
                f"person_id={person_id} | "
                f"correlation_id={correlation_id}"
            )
            return 0

        logger.info(
            f"[STRIKE-LEDGER] Restriction lifted | "
            f"person_id={person_id} | "
            f"closed={closed} | "
            f"actor={actor_id} | "
            f"correlation_id={correlation_id}"
        )

        record_audit(self._audit_sink, build_audit_entry(
            actor_id=actor_id,
            action="RESTRICTION_LIFTED",
            target_type="person",
            target_id=person_id,
            previous_state={"restricted": True},
            new_state={"restricted": False},
            payload={"closed": closed, "reason": reason},
            correlation_id=correlation_id,
            created_at=self._clock.now(),
        ))

        self._publish(
            CanteenEventType.USER_UNBLOCKED,
            {
                "user_id": person_id,
                "lifted_at": now.isoformat(),
                "lifted_by": actor_id,
                "reason": reason,
            },
            user_id=person_id,
            roles=STAFF_ROLES,
            correlation_id=correlation_id,
        )
        return closed

    def _open(
        self,
        person_id: str,
        reason: str,
        start_at: datetime,
        end_at: Optional[datetime],
        actor_id: str,
        origin: str,
        strike_count: int,
        correlation_id: str,
    ) -> Restriction:
        restriction = Restriction(
            id=str(uuid.uuid4()),
            person_id=person_id,
            reason=reason,
            start_at=start_at,
            end_at=end_at,
            active=True,
            created_by=actor_id,
        )
        self._store.insert_restriction(restriction)
        record_restriction_opened(origin)

        logger.info(
            f"[STRIKE-LEDGER] Restriction opened | "
            f"person_id={person_id} | "
            f"reason={reason} | "
            f"start_at={start_at.isoformat()} | "
            f"end_at={end_at.isoformat() if end_at else 'NONE'} | "
            f"correlation_id={correlation_id}"
        )

        record_audit(self._audit_sink, build_audit_entry(
            actor_id=actor_id,
            action="RESTRICTION_OPENED",
            target_type="person",
            target_id=person_id,
            previous_state={"restricted": False},
            new_state=restriction.to_dict(),
            payload={"strike_count": strike_count, "origin": origin},
            correlation_id=correlation_id,
            created_at=self._clock.now(),
        ))

        self._publish(
            CanteenEventType.USER_BLACKLISTED,
            {
                "user_id": person_id,
                "restriction": restriction.to_dict(),
                "strike_count": strike_count,
            },
            user_id=person_id,
            roles=STAFF_ROLES,
            correlation_id=correlation_id,
        )
        return restriction

    def _cancel_pending_orders(self, person_id: str, correlation_id: str) -> List[str]:
        """Cancel the person's PLACED orders from today onward."""
        now = self._clock.now()
        cancelled: List[str] = []

        for order in self._store.list_placed_orders_for_person(person_id, now.date()):
            try:
                updated = self._cancel_one(order, now, correlation_id)
            except AlreadyFinalized:
                continue
            except Exception as e:
                logger.error(
                    f"[STRIKE-LEDGER] Failed to cancel pending order | "
                    f"order_id={order.id} | "
                    f"error={str(e)} | "
                    f"correlation_id={correlation_id}"
                )
                continue
            if updated is not None:
                cancelled.append(updated.id)

        if cancelled:
            logger.info(
                f"[STRIKE-LEDGER] Pending orders cancelled on restriction | "
                f"person_id={person_id} | "
                f"count={len(cancelled)} | "
                f"correlation_id={correlation_id}"
            )
        return cancelled

    def _cancel_one(self, order: Order, now: datetime, correlation_id: str) -> Optional[Order]:
        current: Optional[Order] = order
        for _ in range(self._retry_limit):
            if current is None or current.status != OrderStatus.PLACED.value:
                return None
            updated = transition_order(
                self._store,
                current,
                OrderStatus.CANCELLED.value,
                correlation_id=correlation_id,
                actor_id=SYSTEM_ACTOR,
                fields={"cancelled_at": now, "cancel_reason": CANCEL_REASON_RESTRICTED},
            )
            if updated is not None:
                record_transition(OrderStatus.CANCELLED.value)
                self._publish(
                    CanteenEventType.ORDER_CANCELLED,
                    {"order": updated.to_dict()},
                    correlation_id=correlation_id,
                )
                return updated
            current = self._store.get_order(order.id)
        return None

    # =========================================================================
    # Helpers
    # =========================================================================

    def _require_person(self, person_id: str) -> Person:
        person = self._store.get_person(person_id)
        if person is None:
            raise PersonNotFound(
                f"Person not found: {person_id}",
                details={"person_id": person_id},
            )
        return person

    def _publish(
        self,
        event_type: CanteenEventType,
        payload: Dict[str, Any],
        user_id: Optional[str] = None,
        roles: Optional[Any] = None,
        correlation_id: Optional[str] = None,
    ) -> None:
        if self._fanout is None:
            return
        self._fanout.publish(
            event_type, payload, user_id=user_id, roles=roles, correlation_id=correlation_id
        )


__all__ = [
    "StrikeLedger",
    "AccrualResult",
    "DEFAULT_RETRY_LIMIT",
    "REASON_STRIKE_THRESHOLD",
    "REASON_MANUAL",
    "CANCEL_REASON_RESTRICTED",
    "STAFF_ROLES",
]
