"""
============================================================================
Canteen Order Engine - Shift Window Arithmetic
============================================================================

Reliability Level: L6 Critical (Order Integrity)

Turns a shift's wall-clock "HH:MM" times plus an order date into concrete
instants in the canteen timezone:

    start            date + start_time
    end              date + end_time, or the next day when end <= start
    cutoff           start - (cutoff_days + cutoff_lead_hours)
    collection       [start - early_collection_minutes,
                      end + collection_grace_minutes]
                     or [break_start, break_end] when the shift has a
                     meal break (a break before start falls on the next day)
    sweep deadline   end + collection_grace_minutes, never before break_end

WEEKLY MODE:
    Weeks run Monday to Sunday in the canteen zone. A date is orderable
    when it lies in a later week, its ISO weekday is in orderable_days,
    and it is at most max_weeks_ahead ordering cycles away. Once the
    weekly cutoff of the current week has passed, next week is closed
    and the cycle moves one week further out.

All functions are pure. Callers pass the clock reading and the policy
snapshot they are evaluating against.

============================================================================
"""

from typing import Optional, Tuple, List
from datetime import datetime, date, time, timedelta, tzinfo

from services.canteen_models import Shift
from services.order_errors import ValidationError
from services.policy_store import Policy


def parse_wall_time(value: str) -> time:
    """
    Parse "HH:MM" into a time.

    Raises:
        ValidationError: If the value is not a 24h HH:MM time
    """
    try:
        hours, minutes = str(value).strip().split(":")
        return time(int(hours), int(minutes))
    except (ValueError, TypeError):
        raise ValidationError(
            f"Invalid shift time '{value}', expected HH:MM",
            reason="INVALID_TIME",
        )


def is_overnight(shift: Shift) -> bool:
    """A shift whose end is at or before its start ends on the next day."""
    return parse_wall_time(shift.end_time) <= parse_wall_time(shift.start_time)


def shift_start_at(shift: Shift, order_date: date, tz: tzinfo) -> datetime:
    return datetime.combine(order_date, parse_wall_time(shift.start_time), tzinfo=tz)


def shift_end_at(shift: Shift, order_date: date, tz: tzinfo) -> datetime:
    end_day = order_date + timedelta(days=1) if is_overnight(shift) else order_date
    return datetime.combine(end_day, parse_wall_time(shift.end_time), tzinfo=tz)


def cutoff_at(shift: Shift, order_date: date, tz: tzinfo, policy: Policy) -> datetime:
    return shift_start_at(shift, order_date, tz) - policy.cutoff_lead


def is_past_cutoff(
    shift: Shift,
    order_date: date,
    now: datetime,
    policy: Policy,
    tz: Optional[tzinfo] = None,
) -> bool:
    """
    True when start - now <= cutoff_days + cutoff_lead_hours.

    An order placed exactly at the cutoff instant is too late. Without an
    explicit tz, now must already be expressed in the canteen zone.
    """
    return now >= cutoff_at(shift, order_date, tz or now.tzinfo, policy)


def break_window(shift: Shift, order_date: date, tz: tzinfo) -> Optional[Tuple[datetime, datetime]]:
    """
    Meal break as concrete instants, or None when the shift has no break.

    A break that starts before the shift does belongs to the next day, as
    does a break end at or before the break start.
    """
    if not shift.has_break:
        return None
    starts = datetime.combine(order_date, parse_wall_time(shift.break_start), tzinfo=tz)
    if starts < shift_start_at(shift, order_date, tz):
        starts += timedelta(days=1)
    ends = datetime.combine(starts.date(), parse_wall_time(shift.break_end), tzinfo=tz)
    if ends <= starts:
        ends += timedelta(days=1)
    return starts, ends


def collection_window(
    shift: Shift,
    order_date: date,
    tz: tzinfo,
    policy: Policy,
) -> Tuple[datetime, datetime]:
    meal_break = break_window(shift, order_date, tz)
    if meal_break is not None:
        return meal_break
    opens = shift_start_at(shift, order_date, tz) - timedelta(
        minutes=policy.early_collection_minutes
    )
    closes = shift_end_at(shift, order_date, tz) + timedelta(
        minutes=policy.collection_grace_minutes
    )
    return opens, closes


def is_within_collection_window(
    shift: Shift,
    order_date: date,
    now: datetime,
    policy: Policy,
    tz: Optional[tzinfo] = None,
) -> bool:
    opens, closes = collection_window(shift, order_date, tz or now.tzinfo, policy)
    return opens <= now <= closes


def sweep_deadline(shift: Shift, order_date: date, tz: tzinfo, policy: Policy) -> datetime:
    """Instant after which an uncollected order counts as a no-show."""
    deadline = shift_end_at(shift, order_date, tz) + timedelta(
        minutes=policy.collection_grace_minutes
    )
    meal_break = break_window(shift, order_date, tz)
    if meal_break is not None and meal_break[1] > deadline:
        return meal_break[1]
    return deadline


def is_past_sweep_deadline(
    shift: Shift,
    order_date: date,
    now: datetime,
    policy: Policy,
    tz: Optional[tzinfo] = None,
) -> bool:
    return now > sweep_deadline(shift, order_date, tz or now.tzinfo, policy)


# =============================================================================
# Weekly Cutoff Mode
# =============================================================================

# Refusal reasons from weekly_refusal()
WEEKLY_CURRENT_WEEK = "CURRENT_WEEK"
WEEKLY_DAY_NOT_ORDERABLE = "DAY_NOT_ORDERABLE"
WEEKLY_BEYOND_HORIZON = "BEYOND_WEEKLY_HORIZON"
WEEKLY_CUTOFF_PASSED = "WEEKLY_CUTOFF_PASSED"


def week_start(day: date) -> date:
    """Monday of the week containing day."""
    return day - timedelta(days=day.isoweekday() - 1)


def weekly_cutoff_at(now: datetime, policy: Policy, tz: Optional[tzinfo] = None) -> datetime:
    """The weekly cutoff instant of the week containing now."""
    tz = tz or now.tzinfo
    monday = week_start(now.astimezone(tz).date())
    cutoff_day = monday + timedelta(days=policy.weekly_cutoff_day - 1)
    return datetime.combine(
        cutoff_day,
        time(policy.weekly_cutoff_hour, policy.weekly_cutoff_minute),
        tzinfo=tz,
    )


def weekly_refusal(
    order_date: date,
    now: datetime,
    policy: Policy,
    tz: Optional[tzinfo] = None,
) -> Optional[str]:
    """
    Why order_date cannot be ordered in weekly mode, or None if it can.

    Checks run in order: current or past week, weekday, horizon, cutoff.
    """
    tz = tz or now.tzinfo
    current_week = week_start(now.astimezone(tz).date())
    order_week = week_start(order_date)

    if order_week <= current_week:
        return WEEKLY_CURRENT_WEEK
    if order_date.isoweekday() not in policy.orderable_days:
        return WEEKLY_DAY_NOT_ORDERABLE

    weeks_ahead = (order_week - current_week).days // 7
    if now >= weekly_cutoff_at(now, policy, tz):
        # Next week is closed; the ordering cycle starts a week later
        weeks_ahead -= 1

    if weeks_ahead > policy.max_weeks_ahead:
        return WEEKLY_BEYOND_HORIZON
    if weeks_ahead < 1:
        return WEEKLY_CUTOFF_PASSED
    return None


def orderable_dates(now: datetime, policy: Policy, tz: Optional[tzinfo] = None) -> List[date]:
    """
    Dates a person may currently order for, ignoring shifts and holidays.

    Per-shift mode: today through today + booking_horizon_days.
    Weekly mode: the orderable weekdays of the open ordering cycle.
    """
    tz = tz or now.tzinfo
    today = now.astimezone(tz).date()

    if not policy.is_weekly:
        return [today + timedelta(days=offset) for offset in range(policy.booking_horizon_days + 1)]

    first_week = week_start(today) + timedelta(days=7)
    if now >= weekly_cutoff_at(now, policy, tz):
        first_week += timedelta(days=7)

    dates = [
        first_week + timedelta(weeks=week, days=weekday - 1)
        for week in range(policy.max_weeks_ahead)
        for weekday in set(policy.orderable_days)
    ]
    return sorted(dates)


__all__ = [
    "parse_wall_time",
    "is_overnight",
    "shift_start_at",
    "shift_end_at",
    "cutoff_at",
    "is_past_cutoff",
    "collection_window",
    "is_within_collection_window",
    "sweep_deadline",
    "is_past_sweep_deadline",
    "break_window",
    "week_start",
    "weekly_cutoff_at",
    "weekly_refusal",
    "orderable_dates",
    "WEEKLY_CURRENT_WEEK",
    "WEEKLY_DAY_NOT_ORDERABLE",
    "WEEKLY_BEYOND_HORIZON",
    "WEEKLY_CUTOFF_PASSED",
]
