"""
============================================================================
Property-Based Tests for the Order Lifecycle
============================================================================

Reliability Level: L6 Critical (Order Integrity)

Tests the order lifecycle using Hypothesis.

Properties tested:
- Property 1: Terminal statuses refuse every transition
- Property 2: An order leaves PLACED at most once, whatever is tried
- Property 3: At most one non-CANCELLED order per person and date

============================================================================
"""

from datetime import date, timedelta
from typing import List, Tuple

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.order_errors import OrderEngineError, OrderErrorCode
from services.order_state_machine import (
    TERMINAL_STATES,
    VALID_STATES,
    validate_transition,
)


DAY = date(2025, 3, 10)

DB_SETTINGS = settings(
    max_examples=25,
    deadline=None,
    suppress_health_check=[HealthCheck.function_scoped_fixture],
)


# =============================================================================
# HYPOTHESIS STRATEGIES
# =============================================================================

terminal_state_strategy = st.sampled_from(TERMINAL_STATES)
any_state_strategy = st.sampled_from(VALID_STATES)

# (operation, minutes after midnight on DAY); sorted so the clock only moves forward
operation_strategy = st.lists(
    st.tuples(
        st.sampled_from(["collect", "cancel", "sweep"]),
        st.integers(min_value=60, max_value=24 * 60),
    ),
    min_size=1,
    max_size=8,
).map(lambda ops: sorted(ops, key=lambda op: op[1]))

booking_strategy = st.lists(
    st.tuples(
        st.sampled_from(["create", "cancel"]),
        st.integers(min_value=0, max_value=2),
        st.sampled_from(["breakfast", "night"]),
    ),
    min_size=1,
    max_size=10,
)


# =============================================================================
# Property 1: Terminal statuses refuse every transition
# =============================================================================

class TestTerminalStatusesRefuseTransitions:
    """
    Property 1: For any terminal status and any target status, the
    transition is refused with ORD-201.
    """

    @settings(max_examples=100)
    @given(current=terminal_state_strategy, target=any_state_strategy)
    def test_terminal_refuses_any_target(self, current: str, target: str) -> None:
        allowed, error_code = validate_transition(current, target)

        assert allowed is False
        assert error_code == OrderErrorCode.ALREADY_FINALIZED


# =============================================================================
# Property 2: An order leaves PLACED at most once
# =============================================================================

class TestSingleTerminalTransition:
    """
    Property 2: Whatever sequence of collect, cancel and sweep attempts is
    made at whatever times, the order ends in exactly one status, its
    version grows by at most one, and a terminal status never changes.
    """

    @DB_SETTINGS
    @given(operations=operation_strategy)
    def test_status_changes_at_most_once(
        self,
        engine_factory,
        clock_factory,
        operations: List[Tuple[str, int]],
    ) -> None:
        clock = clock_factory()
        canteen = engine_factory(wall_clock=clock)
        midnight = clock().replace(hour=0, minute=0)
        order = canteen.orders.create_order("emp-1", "breakfast", DAY)

        first_terminal = None
        for operation, minutes in operations:
            clock.set(midnight + timedelta(minutes=minutes))
            try:
                if operation == "collect":
                    canteen.orders.collect_order(order.id, collected_by="counter-1")
                elif operation == "cancel":
                    canteen.orders.cancel_order(order.id)
                else:
                    canteen.sweep.run_once()
            except OrderEngineError:
                pass

            stored = canteen.store.get_order(order.id)
            if first_terminal is not None:
                assert stored.status == first_terminal
            elif stored.is_terminal:
                first_terminal = stored.status

        final = canteen.store.get_order(order.id)
        assert final.version == (1 if final.is_terminal else 0)
        assert canteen.store.get_person("emp-1").strike_count == (
            1 if final.status == "NOT_COLLECTED" else 0
        )


# =============================================================================
# Property 3: One live order per person and date
# =============================================================================

class TestOneLiveOrderPerDate:
    """
    Property 3: After any mix of create and cancel requests, every
    (person, date) pair has at most one order that is not CANCELLED.
    """

    @DB_SETTINGS
    @given(bookings=booking_strategy)
    def test_at_most_one_live_order(self, engine_factory, bookings) -> None:
        canteen = engine_factory()

        for action, day_offset, shift_id in bookings:
            day = DAY + timedelta(days=day_offset + 1)
            try:
                if action == "create":
                    canteen.orders.create_order("emp-1", shift_id, day)
                else:
                    live = canteen.store.find_live_order("emp-1", day)
                    if live is not None:
                        canteen.orders.cancel_order(live.id)
            except OrderEngineError as e:
                assert e.error_code == OrderErrorCode.DUPLICATE_FOR_DATE

        orders = canteen.store.list_orders(DAY, DAY + timedelta(days=3), person_id="emp-1")
        for offset in range(1, 4):
            day = DAY + timedelta(days=offset)
            live = [o for o in orders if o.order_date == day and o.status != "CANCELLED"]
            assert len(live) <= 1
