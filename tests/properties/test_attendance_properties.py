"""
============================================================================
Property-Based Tests for Cutoff, Restrictions and the Attendance Sweep
============================================================================

Reliability Level: L6 Critical (Attendance Enforcement)

Tests time-window rules and strike enforcement using Hypothesis.

Properties tested:
- Property 4: Ordering is open iff now < shift start - cutoff lead
- Property 5: A restriction is in force iff start <= t < end
- Property 6: A person is restricted iff failures reached the threshold
- Property 7: Repeated sweeps charge exactly one strike per no-show

============================================================================
"""

from datetime import date, datetime, timedelta, timezone
from typing import List

import pytest
from hypothesis import HealthCheck, given, settings
from hypothesis import strategies as st
from zoneinfo import ZoneInfo

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.canteen_models import Restriction, Shift
from services.policy_store import Policy
from services.shift_windows import is_past_cutoff, shift_start_at


TZ = ZoneInfo("Asia/Jakarta")
DAY = date(2025, 3, 10)

DB_SETTINGS = settings(
    max_examples=25,
    deadline=None,
    suppress_health_check=[HealthCheck.function_scoped_fixture],
)


# =============================================================================
# HYPOTHESIS STRATEGIES
# =============================================================================

wall_time_strategy = st.builds(
    lambda h, m: f"{h:02d}:{m:02d}",
    st.integers(min_value=0, max_value=23),
    st.sampled_from([0, 15, 30, 45]),
)

lead_hours_strategy = st.integers(min_value=0, max_value=24)

# Minutes before shift start at which the order is attempted
minutes_before_strategy = st.integers(min_value=-120, max_value=48 * 60)

restriction_start_strategy = st.integers(min_value=0, max_value=10 * 24 * 60)
restriction_days_strategy = st.one_of(st.none(), st.integers(min_value=1, max_value=30))
moment_strategy = st.integers(min_value=-2 * 24 * 60, max_value=40 * 24 * 60)

threshold_strategy = st.integers(min_value=1, max_value=5)
failures_strategy = st.integers(min_value=0, max_value=7)


# =============================================================================
# Property 4: Cutoff boundary
# =============================================================================

class TestCutoffBoundary:
    """
    Property 4: For any shift start, lead and clock reading, ordering is
    open exactly when more than cutoff_lead_hours remain before the start.
    """

    @settings(max_examples=100)
    @given(start=wall_time_strategy, lead=lead_hours_strategy, minutes_before=minutes_before_strategy)
    def test_cutoff_matches_lead(self, start: str, lead: int, minutes_before: int) -> None:
        shift = Shift(id="s", name="S", start_time=start, end_time=start)
        now = shift_start_at(shift, DAY, TZ) - timedelta(minutes=minutes_before)

        closed = is_past_cutoff(shift, DAY, now, Policy(cutoff_lead_hours=lead))

        assert closed == (minutes_before <= lead * 60)

    @settings(max_examples=100)
    @given(start=wall_time_strategy, minutes_before=minutes_before_strategy)
    def test_reading_zone_does_not_matter(self, start: str, minutes_before: int) -> None:
        shift = Shift(id="s", name="S", start_time=start, end_time=start)
        local = shift_start_at(shift, DAY, TZ) - timedelta(minutes=minutes_before)

        assert is_past_cutoff(shift, DAY, local, Policy()) == is_past_cutoff(
            shift, DAY, local.astimezone(timezone.utc), Policy(), tz=TZ
        )


# =============================================================================
# Property 5: Restriction window
# =============================================================================

class TestRestrictionWindow:
    """
    Property 5: An active restriction is in force exactly on
    [start_at, end_at); one without end_at never expires; a lifted one is
    never in force.
    """

    @settings(max_examples=100)
    @given(
        start_offset=restriction_start_strategy,
        days=restriction_days_strategy,
        check_offset=moment_strategy,
        active=st.booleans(),
    )
    def test_in_force_iff_inside_window(self, start_offset, days, check_offset, active) -> None:
        base = datetime(2025, 3, 1, tzinfo=timezone.utc)
        start_at = base + timedelta(minutes=start_offset)
        end_at = start_at + timedelta(days=days) if days is not None else None
        moment = base + timedelta(minutes=check_offset)
        restriction = Restriction(
            id="r", person_id="emp-1", reason="STRIKE_THRESHOLD",
            start_at=start_at, end_at=end_at, active=active,
        )

        expected = active and start_at <= moment and (end_at is None or moment < end_at)

        assert restriction.is_in_force(moment) == expected


# =============================================================================
# Property 6: Threshold enforcement
# =============================================================================

class TestThresholdEnforcement:
    """
    Property 6: With any threshold, a person is restricted right after
    their failures reach it and not before; the counter equals the number
    of failures.
    """

    @DB_SETTINGS
    @given(threshold=threshold_strategy, failures=failures_strategy)
    def test_restricted_iff_threshold_reached(self, engine_factory, threshold: int, failures: int) -> None:
        canteen = engine_factory(policy=Policy(strike_threshold=threshold))

        for _ in range(failures):
            canteen.ledger.accrue_failure("emp-1")

        assert canteen.store.get_person("emp-1").strike_count == failures
        assert canteen.ledger.is_restricted("emp-1") == (failures >= threshold)
        opened = canteen.store.list_restrictions("emp-1", active_only=False)
        assert len(opened) == (1 if failures >= threshold else 0)


# =============================================================================
# Property 7: Sweep idempotence
# =============================================================================

class TestSweepIdempotence:
    """
    Property 7: For any set of orders, any subset collected, and any
    number of sweeps, each uncollected order becomes NOT_COLLECTED once and
    its owner receives exactly one strike for it.
    """

    @DB_SETTINGS
    @given(
        collected=st.lists(st.booleans(), min_size=1, max_size=3),
        sweeps=st.integers(min_value=1, max_value=4),
    )
    def test_one_strike_per_noshow(self, engine_factory, clock_factory, collected: List[bool], sweeps: int) -> None:
        clock = clock_factory()
        canteen = engine_factory(wall_clock=clock)
        persons = ["emp-1", "emp-2", "admin-1"][: len(collected)]
        orders = [canteen.orders.create_order(p, "breakfast", DAY) for p in persons]

        clock.set(datetime(2025, 3, 10, 8, 0, tzinfo=TZ))
        for order, was_collected in zip(orders, collected):
            if was_collected:
                canteen.orders.collect_order(order.id, collected_by="counter-1")

        clock.set(datetime(2025, 3, 10, 12, 0, tzinfo=TZ))
        total_noshows = sum(canteen.sweep.run_once().noshows for _ in range(sweeps))

        assert total_noshows == collected.count(False)
        for person, order, was_collected in zip(persons, orders, collected):
            stored = canteen.store.get_order(order.id)
            assert stored.status == ("COLLECTED" if was_collected else "NOT_COLLECTED")
            assert canteen.store.get_person(person).strike_count == (0 if was_collected else 1)
