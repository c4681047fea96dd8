"""
============================================================================
Unit Tests - Attendance Sweep
============================================================================

Reliability Level: L6 Critical (Attendance Enforcement)

Tests the attendance sweep background job:
- AttendanceSweep initialization and lifecycle
- run_once() marks orders past end + grace as NOT_COLLECTED
- Exactly one strike per no-show, even across repeated sweeps
- Per-order failures are counted without aborting the pass
============================================================================
"""

import asyncio
import os
import sys
import uuid
from datetime import date, datetime, timedelta
from unittest.mock import Mock
from zoneinfo import ZoneInfo

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.attendance_sweep import AttendanceSweep, SweepResult
from services.canteen_models import Order


TZ = ZoneInfo("Asia/Jakarta")
DAY = date(2025, 3, 10)


def at(hour: int, minute: int = 0, days: int = 0) -> datetime:
    day = DAY + timedelta(days=days)
    return datetime(day.year, day.month, day.day, hour, minute, tzinfo=TZ)


class RacingStore:
    """Store wrapper whose conditional updates always lose."""

    def __init__(self, store) -> None:
        self._store = store

    def conditional_update_order(self, **kwargs) -> bool:
        return False

    def __getattr__(self, name):
        return getattr(self._store, name)


def sweep_with(canteen, store=None, ledger=None) -> AttendanceSweep:
    return AttendanceSweep(
        store or canteen.store,
        ledger or canteen.ledger,
        canteen.clock,
        canteen.policy_store,
        fanout=canteen.fanout,
        audit_sink=canteen.audit_sink,
    )


# =============================================================================
# Initialization
# =============================================================================

class TestSweepInitialization:

    def test_default_interval(self, canteen) -> None:
        assert canteen.sweep.interval_seconds == 300
        assert canteen.sweep.is_running is False
        assert canteen.sweep.last_result is None

    def test_non_positive_interval_rejected(self, canteen) -> None:
        with pytest.raises(ValueError):
            AttendanceSweep(canteen.store, canteen.ledger, canteen.clock, canteen.policy_store, interval_seconds=0)

    def test_result_outcome(self) -> None:
        assert SweepResult(correlation_id="c").outcome == "ok"
        assert SweepResult(correlation_id="c", failed=1).outcome == "partial"


# =============================================================================
# run_once()
# =============================================================================

class TestRunOnce:

    def test_nothing_marked_before_grace_ends(self, canteen, wall_clock) -> None:
        order = canteen.orders.create_order("emp-1", "breakfast", DAY)
        wall_clock.set(at(9, 5))

        result = canteen.sweep.run_once()

        assert result.scanned == 1
        assert result.noshows == 0
        assert canteen.store.get_order(order.id).status == "PLACED"

    def test_noshow_after_grace(self, canteen, wall_clock, observer, drain_types) -> None:
        order = canteen.orders.create_order("emp-1", "breakfast", DAY)
        wall_clock.set(at(9, 6))

        result = canteen.sweep.run_once()

        assert result.noshows == 1
        assert result.noshow_order_ids == [order.id]
        assert canteen.store.get_order(order.id).status == "NOT_COLLECTED"
        assert canteen.store.get_person("emp-1").strike_count == 1
        assert drain_types(observer) == ["order.created", "order.noshow"]
        actions = [e["action"] for e in canteen.store.list_audit(target_id=order.id)]
        assert "ORDER_NOSHOW" in actions

    def test_collected_and_cancelled_orders_untouched(self, canteen, wall_clock) -> None:
        collected = canteen.orders.create_order("emp-1", "breakfast", DAY)
        cancelled = canteen.orders.create_order("emp-2", "breakfast", DAY)
        canteen.orders.cancel_order(cancelled.id)
        wall_clock.set(at(8, 0))
        canteen.orders.collect_order(collected.id, collected_by="counter-1")
        wall_clock.set(at(12, 0))

        result = canteen.sweep.run_once()

        assert result.scanned == 0
        assert canteen.store.get_order(collected.id).status == "COLLECTED"
        assert canteen.store.get_order(cancelled.id).status == "CANCELLED"

    def test_repeated_sweep_charges_one_strike(self, canteen, wall_clock) -> None:
        canteen.orders.create_order("emp-1", "breakfast", DAY)
        wall_clock.set(at(10, 0))

        canteen.sweep.run_once()
        second = canteen.sweep.run_once()

        assert second.scanned == 0
        assert second.noshows == 0
        assert canteen.store.get_person("emp-1").strike_count == 1

    def test_overnight_shift_swept_next_morning(self, canteen, wall_clock) -> None:
        order = canteen.orders.create_order("emp-1", "night", DAY)

        wall_clock.set(at(6, 5, days=1))
        assert canteen.sweep.run_once().noshows == 0
        wall_clock.set(at(6, 6, days=1))
        assert canteen.sweep.run_once().noshow_order_ids == [order.id]

    def test_future_orders_not_scanned(self, canteen, wall_clock) -> None:
        canteen.orders.create_order("emp-1", "breakfast", DAY + timedelta(days=1))
        wall_clock.set(at(23, 0))

        assert canteen.sweep.run_once().scanned == 0

    def test_unknown_shift_counted_as_failure(self, canteen, wall_clock) -> None:
        canteen.store.insert_order(Order(
            id=str(uuid.uuid4()),
            person_id="emp-2",
            shift_id="retired-shift",
            order_date=DAY,
            created_at=at(0, 30),
        ))
        good = canteen.orders.create_order("emp-1", "breakfast", DAY)
        wall_clock.set(at(10, 0))

        result = canteen.sweep.run_once()

        assert result.failed == 1
        assert result.outcome == "partial"
        assert result.noshow_order_ids == [good.id]

    def test_lost_race_is_skipped_without_strike(self, canteen, wall_clock) -> None:
        canteen.orders.create_order("emp-1", "breakfast", DAY)
        wall_clock.set(at(10, 0))

        result = sweep_with(canteen, store=RacingStore(canteen.store)).run_once()

        assert result.skipped_lost_race == 1
        assert result.noshows == 0
        assert canteen.store.get_person("emp-1").strike_count == 0

    def test_noshow_stands_when_strike_fails(self, canteen, wall_clock) -> None:
        order = canteen.orders.create_order("emp-1", "breakfast", DAY)
        wall_clock.set(at(10, 0))
        ledger = Mock()
        ledger.accrue_failure.side_effect = RuntimeError("ledger unavailable")

        result = sweep_with(canteen, ledger=ledger).run_once()

        assert result.noshows == 1
        assert result.failed == 0
        assert canteen.store.get_order(order.id).status == "NOT_COLLECTED"

    def test_last_result_is_kept(self, canteen) -> None:
        result = canteen.sweep.run_once()

        assert canteen.sweep.last_result is result


# =============================================================================
# Background Loop
# =============================================================================

class TestSweepLifecycle:

    @pytest.mark.asyncio
    async def test_start_runs_a_pass_and_stop_cancels(self, canteen, wall_clock) -> None:
        canteen.orders.create_order("emp-1", "breakfast", DAY)
        wall_clock.set(at(10, 0))

        await canteen.sweep.start()
        assert canteen.sweep.is_running is True

        for _ in range(100):
            if canteen.sweep.last_result is not None:
                break
            await asyncio.sleep(0.02)

        await canteen.sweep.stop()

        assert canteen.sweep.is_running is False
        assert canteen.sweep.last_result.noshows == 1

    @pytest.mark.asyncio
    async def test_stop_when_not_running_is_harmless(self, canteen) -> None:
        await canteen.sweep.stop()
        assert canteen.sweep.is_running is False
