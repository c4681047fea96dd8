"""
============================================================================
Unit Tests - Strike & Restriction Ledger
============================================================================

Reliability Level: L6 Critical (Attendance Enforcement)

Tests strike accrual and restrictions:
- Reaching the threshold opens a restriction for restriction_duration_days
- The counter is never reset by a restriction
- Expiry is evaluated lazily at read time
- Reductions floor at zero and may lift the restriction
- user.* events reach the person and staff observers only
============================================================================
"""

import os
import sys
from datetime import date, timedelta

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.order_errors import ConcurrencyConflict, PersonNotFound, ValidationError
from services.strike_ledger import (
    CANCEL_REASON_RESTRICTED,
    REASON_MANUAL,
    REASON_STRIKE_THRESHOLD,
    StrikeLedger,
)


DAY = date(2025, 3, 10)


def accrue(ledger, person_id: str, times: int):
    result = None
    for _ in range(times):
        result = ledger.accrue_failure(person_id)
    return result


class RacingPersonStore:
    """Store wrapper whose first N strike writes lose."""

    def __init__(self, store, losses: int) -> None:
        self._store = store
        self.losses = losses

    def set_strike_count(self, person_id, expected_version, strike_count) -> bool:
        if self.losses > 0:
            self.losses -= 1
            return False
        return self._store.set_strike_count(person_id, expected_version, strike_count)

    def __getattr__(self, name):
        return getattr(self._store, name)


# =============================================================================
# Accrual
# =============================================================================

class TestAccrual:

    def test_below_threshold_no_restriction(self, canteen) -> None:
        result = accrue(canteen.ledger, "emp-1", 2)

        assert result.strike_count == 2
        assert result.restriction_opened is False
        assert canteen.ledger.is_restricted("emp-1") is False

    def test_threshold_opens_restriction(self, canteen, wall_clock) -> None:
        result = accrue(canteen.ledger, "emp-1", 3)

        assert result.strike_count == 3
        assert result.restriction.reason == REASON_STRIKE_THRESHOLD
        assert result.restriction.start_at == wall_clock()
        assert result.restriction.end_at == wall_clock() + timedelta(days=7)
        assert canteen.ledger.is_restricted("emp-1") is True
        assert canteen.ledger.is_restricted("emp-2") is False

    def test_counter_is_not_reset_by_restriction(self, canteen) -> None:
        accrue(canteen.ledger, "emp-1", 3)

        assert canteen.store.get_person("emp-1").strike_count == 3

    def test_no_second_restriction_while_in_force(self, canteen) -> None:
        accrue(canteen.ledger, "emp-1", 3)

        result = canteen.ledger.accrue_failure("emp-1")

        assert result.strike_count == 4
        assert result.restriction_opened is False
        assert len(canteen.store.list_restrictions("emp-1", active_only=False)) == 1

    def test_restriction_expires_lazily(self, canteen, wall_clock) -> None:
        accrue(canteen.ledger, "emp-1", 3)

        wall_clock.advance(days=7, seconds=-1)
        assert canteen.ledger.is_restricted("emp-1") is True
        wall_clock.advance(seconds=1)
        assert canteen.ledger.is_restricted("emp-1") is False

    def test_strike_after_expiry_opens_new_restriction(self, canteen, wall_clock) -> None:
        accrue(canteen.ledger, "emp-1", 3)
        wall_clock.advance(days=8)

        result = canteen.ledger.accrue_failure("emp-1")

        assert result.strike_count == 4
        assert result.restriction_opened is True

    def test_restriction_cancels_pending_orders(self, canteen, observer, drain_types) -> None:
        order = canteen.orders.create_order("emp-1", "night", DAY + timedelta(days=2))

        result = accrue(canteen.ledger, "emp-1", 3)

        assert result.cancelled_order_ids == [order.id]
        cancelled = canteen.store.get_order(order.id)
        assert cancelled.status == "CANCELLED"
        assert cancelled.cancel_reason == CANCEL_REASON_RESTRICTED
        assert "order.cancelled" in drain_types(observer)

    def test_pending_orders_kept_when_policy_says_so(self, canteen) -> None:
        canteen.policy_store.update(cancel_orders_on_restriction=False)
        order = canteen.orders.create_order("emp-1", "night", DAY + timedelta(days=2))

        result = accrue(canteen.ledger, "emp-1", 3)

        assert result.cancelled_order_ids == []
        assert canteen.store.get_order(order.id).status == "PLACED"

    def test_threshold_change_applies_to_next_accrual(self, canteen) -> None:
        accrue(canteen.ledger, "emp-1", 2)
        canteen.policy_store.update(strike_threshold=5)

        assert canteen.ledger.accrue_failure("emp-1").restriction_opened is False

    def test_unknown_person(self, canteen) -> None:
        with pytest.raises(PersonNotFound):
            canteen.ledger.accrue_failure("ghost")

    def test_lost_strike_write_is_retried(self, canteen) -> None:
        ledger = StrikeLedger(RacingPersonStore(canteen.store, losses=2), canteen.policy_store, canteen.clock)

        assert ledger.accrue_failure("emp-1").strike_count == 1
        assert canteen.store.get_person("emp-1").strike_count == 1

    def test_strike_retries_exhausted(self, canteen) -> None:
        ledger = StrikeLedger(RacingPersonStore(canteen.store, losses=3), canteen.policy_store, canteen.clock)

        with pytest.raises(ConcurrencyConflict):
            ledger.accrue_failure("emp-1")
        assert canteen.store.get_person("emp-1").strike_count == 0


# =============================================================================
# Reductions and Lifts
# =============================================================================

class TestReduceAndLift:

    def test_reduce_floors_at_zero(self, canteen) -> None:
        accrue(canteen.ledger, "emp-1", 1)

        outcome = canteen.ledger.reduce_strikes("emp-1", amount=5, actor_id="admin-1")

        assert outcome["previous_strike_count"] == 1
        assert outcome["strike_count"] == 0

    def test_reduce_without_amount_resets(self, canteen) -> None:
        accrue(canteen.ledger, "emp-1", 2)

        assert canteen.ledger.reduce_strikes("emp-1")["strike_count"] == 0

    @pytest.mark.parametrize("amount", [0, -1, True, "2"])
    def test_reduce_rejects_invalid_amount(self, canteen, amount) -> None:
        with pytest.raises(ValidationError):
            canteen.ledger.reduce_strikes("emp-1", amount=amount)

    def test_reduce_below_threshold_lifts_restriction(self, canteen) -> None:
        accrue(canteen.ledger, "emp-1", 3)

        outcome = canteen.ledger.reduce_strikes("emp-1", amount=1, actor_id="admin-1")

        assert outcome["strike_count"] == 2
        assert outcome["restrictions_lifted"] == 1
        assert canteen.ledger.is_restricted("emp-1") is False

    def test_reduce_keeps_restriction_when_policy_says_so(self, canteen) -> None:
        canteen.policy_store.update(unblock_on_strike_reduction=False)
        accrue(canteen.ledger, "emp-1", 3)

        outcome = canteen.ledger.reduce_strikes("emp-1", actor_id="admin-1")

        assert outcome["restrictions_lifted"] == 0
        assert canteen.ledger.is_restricted("emp-1") is True

    def test_lift_leaves_strikes_alone(self, canteen) -> None:
        accrue(canteen.ledger, "emp-1", 3)

        assert canteen.ledger.lift_restriction("emp-1", actor_id="admin-1") == 1
        assert canteen.ledger.lift_restriction("emp-1", actor_id="admin-1") == 0
        assert canteen.ledger.is_restricted("emp-1") is False
        assert canteen.store.get_person("emp-1").strike_count == 3

    def test_lift_skips_restriction_that_already_ran_out(
        self, canteen, wall_clock, observer, drain_types
    ) -> None:
        restriction = canteen.ledger.open_restriction("emp-2", reason="CONDUCT", days=1, actor_id="admin-1")
        observer.drain()
        wall_clock.advance(days=2)

        assert canteen.ledger.lift_restriction("emp-2", actor_id="admin-1") == 0

        assert drain_types(observer) == []
        stored = canteen.store.list_restrictions("emp-2", active_only=False)[0]
        assert stored.end_at == restriction.end_at
        actions = [e["action"] for e in canteen.store.list_audit(target_id="emp-2")]
        assert "RESTRICTION_LIFTED" not in actions

    def test_lift_closes_only_the_running_restriction(self, canteen, wall_clock) -> None:
        canteen.ledger.open_restriction("emp-2", reason="FIRST", days=1)
        wall_clock.advance(days=2)
        canteen.ledger.open_restriction("emp-2", reason="SECOND", days=5)

        assert canteen.ledger.lift_restriction("emp-2") == 1
        assert canteen.ledger.is_restricted("emp-2") is False

    def test_lift_reason_reaches_audit_and_event(self, canteen, observer, drain_events) -> None:
        accrue(canteen.ledger, "emp-1", 3)
        observer.drain()

        canteen.ledger.lift_restriction("emp-1", actor_id="admin-1", reason="appeal accepted")

        events = drain_events(observer)
        assert events[0].type == "user.unblocked"
        assert events[0].payload["reason"] == "appeal accepted"
        lifted = [e for e in canteen.store.list_audit(target_id="emp-1") if e["action"] == "RESTRICTION_LIFTED"]
        assert lifted[0]["payload"] == {"closed": 1, "reason": "appeal accepted"}

    def test_reduce_reason_reaches_audit_and_event(self, canteen, observer, drain_events) -> None:
        accrue(canteen.ledger, "emp-1", 1)
        observer.drain()

        canteen.ledger.reduce_strikes("emp-1", amount=1, actor_id="admin-1", reason="doctor's note")

        events = drain_events(observer)
        assert events[0].type == "user.strikesReset"
        assert events[0].payload["reason"] == "doctor's note"
        reduced = [e for e in canteen.store.list_audit(target_id="emp-1") if e["action"] == "STRIKES_REDUCED"]
        assert reduced[0]["payload"] == {"amount": 1, "reason": "doctor's note"}

    def test_manual_restriction_without_end(self, canteen, wall_clock) -> None:
        restriction = canteen.ledger.open_restriction("emp-2", reason="CONDUCT", actor_id="admin-1")

        assert restriction.end_at is None
        wall_clock.advance(days=365)
        assert canteen.ledger.active_restriction("emp-2").reason == "CONDUCT"

    def test_manual_restriction_default_reason(self, canteen) -> None:
        restriction = canteen.ledger.open_restriction("emp-2", reason="", days=2)

        assert restriction.reason == REASON_MANUAL
        assert restriction.end_at - restriction.start_at == timedelta(days=2)

    @pytest.mark.parametrize("days", [0, -3])
    def test_manual_restriction_rejects_bad_length(self, canteen, days) -> None:
        with pytest.raises(ValidationError):
            canteen.ledger.open_restriction("emp-2", days=days)

    def test_status(self, canteen) -> None:
        accrue(canteen.ledger, "emp-1", 3)

        status = canteen.ledger.get_status("emp-1")

        assert status["strike_count"] == 3
        assert status["restricted"] is True
        assert status["strike_threshold"] == 3
        assert status["restriction"]["reason"] == REASON_STRIKE_THRESHOLD


# =============================================================================
# Targeted Events
# =============================================================================

class TestLedgerEvents:

    def test_user_events_reach_person_and_staff_only(self, canteen, drain_types) -> None:
        own = canteen.fanout.subscribe("phone-emp-1", user_id="emp-1", role="EMPLOYEE")
        other = canteen.fanout.subscribe("phone-emp-2", user_id="emp-2", role="EMPLOYEE")
        kitchen = canteen.fanout.subscribe("kitchen-display", role="CANTEEN")

        accrue(canteen.ledger, "emp-1", 3)
        canteen.ledger.reduce_strikes("emp-1", actor_id="admin-1")

        expected = ["user.blacklisted", "user.strikesReset", "user.unblocked"]
        assert drain_types(own) == expected
        assert drain_types(kitchen) == expected
        assert drain_types(other) == []

    def test_lift_without_restriction_publishes_nothing(self, canteen, observer, drain_types) -> None:
        canteen.ledger.lift_restriction("emp-1")

        assert drain_types(observer) == []

    def test_restriction_is_audited(self, canteen) -> None:
        accrue(canteen.ledger, "emp-1", 3)

        actions = [e["action"] for e in canteen.store.list_audit(target_id="emp-1")]
        assert "RESTRICTION_OPENED" in actions
