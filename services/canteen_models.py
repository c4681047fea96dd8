"""
============================================================================
Canteen Order Engine - Domain Models
============================================================================

Reliability Level: L6 Critical (Order Integrity)
Traceability: All operations include correlation_id for audit

This module defines the core data models for the order lifecycle engine:
- OrderStatus enum (the only four statuses an order may ever hold)
- Person, Shift, Order, Restriction and Holiday dataclasses
- Timestamp helpers (all persisted timestamps are UTC, fixed-width)

STATUS LIFECYCLE:
    PLACED -> COLLECTED      (collection confirmed inside the window)
    PLACED -> NOT_COLLECTED  (attendance sweep, after shift end + grace)
    PLACED -> CANCELLED      (cancellation before cutoff, or late cancel)

    Terminal States: COLLECTED, NOT_COLLECTED, CANCELLED

============================================================================
"""

from typing import Optional, Dict, Any
from dataclasses import dataclass, field
from datetime import datetime, date, timezone
from enum import Enum
import logging

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

# Fixed-width UTC format so stored timestamps sort lexically
TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# Calendar dates are stored as ISO dates
DATE_FORMAT = "%Y-%m-%d"

# Actor recorded for engine-initiated changes
SYSTEM_ACTOR = "SYSTEM"


# =============================================================================
# Enums
# =============================================================================

class OrderStatus(Enum):
    """
    Order lifecycle statuses.

    Reliability Level: L6 Critical
    """
    PLACED = "PLACED"
    COLLECTED = "COLLECTED"
    NOT_COLLECTED = "NOT_COLLECTED"
    CANCELLED = "CANCELLED"


class PersonRole(Enum):
    """Roles used for targeted event delivery."""
    EMPLOYEE = "EMPLOYEE"
    CANTEEN = "CANTEEN"
    ADMIN = "ADMIN"


# =============================================================================
# Timestamp Helpers
# =============================================================================

def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    """
    Serialize an aware datetime as a fixed-width UTC string.

    Naive datetimes are rejected rather than guessed at.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        raise ValueError(f"naive datetime not allowed: {value!r}")
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored UTC timestamp back into an aware datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)


def format_date(value: date) -> str:
    """Serialize a calendar date."""
    return value.strftime(DATE_FORMAT)


def parse_date(value: Any) -> date:
    """
    Parse a calendar date from a string or pass a date through.

    Raises:
        ValueError: If the value is not a YYYY-MM-DD date
    """
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.strptime(str(value).strip(), DATE_FORMAT).date()


# =============================================================================
# Data Classes
# =============================================================================

@dataclass
class Person:
    """
    A person who may place orders.

    The engine only reads identity and mutates strike_count. The version
    column backs the compare-and-swap strike updates.
    """
    id: str
    display_name: str = ""
    role: str = PersonRole.EMPLOYEE.value
    strike_count: int = 0
    active: bool = True
    version: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "display_name": self.display_name,
            "role": self.role,
            "strike_count": self.strike_count,
            "active": self.active,
            "version": self.version,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Person":
        return cls(
            id=str(row["id"]),
            display_name=row.get("display_name") or "",
            role=row.get("role") or PersonRole.EMPLOYEE.value,
            strike_count=int(row.get("strike_count") or 0),
            active=bool(row.get("active")),
            version=int(row.get("version") or 0),
        )


@dataclass
class Shift:
    """
    A named daily meal window.

    start_time and end_time are wall-clock "HH:MM" values with no date.
    A shift whose end is at or before its start ends on the next day.
    break_start and break_end, when both set, replace the collection window
    with the meal break.
    """
    id: str
    name: str
    start_time: str
    end_time: str
    active: bool = True
    break_start: Optional[str] = None
    break_end: Optional[str] = None

    @property
    def has_break(self) -> bool:
        return bool(self.break_start) and bool(self.break_end)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "start_time": self.start_time,
            "end_time": self.end_time,
            "active": self.active,
            "break_start": self.break_start,
            "break_end": self.break_end,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Shift":
        return cls(
            id=str(row["id"]),
            name=row["name"],
            start_time=row["start_time"],
            end_time=row["end_time"],
            active=bool(row.get("active")),
            break_start=row.get("break_start"),
            break_end=row.get("break_end"),
        )


@dataclass
class Order:
    """
    A reservation of one meal for one person on one date and shift.

    Status only changes through the order state machine, and every change
    bumps version. Orders are never deleted.
    """
    id: str
    person_id: str
    shift_id: str
    order_date: date
    status: str = OrderStatus.PLACED.value
    created_at: Optional[datetime] = None
    collected_at: Optional[datetime] = None
    collected_by: Optional[str] = None
    location_ref: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    cancel_reason: Optional[str] = None
    late_cancellation: bool = False
    version: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status != OrderStatus.PLACED.value

    def to_dict(self) -> Dict[str, Any]:
        """Convert to a JSON-safe dictionary (ISO-8601 timestamps)."""
        return {
            "id": self.id,
            "person_id": self.person_id,
            "shift_id": self.shift_id,
            "order_date": format_date(self.order_date),
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "collected_at": self.collected_at.isoformat() if self.collected_at else None,
            "collected_by": self.collected_by,
            "location_ref": self.location_ref,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "cancel_reason": self.cancel_reason,
            "late_cancellation": self.late_cancellation,
            "version": self.version,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Order":
        return cls(
            id=str(row["id"]),
            person_id=str(row["person_id"]),
            shift_id=str(row["shift_id"]),
            order_date=parse_date(row["order_date"]),
            status=row["status"],
            created_at=parse_timestamp(row.get("created_at")),
            collected_at=parse_timestamp(row.get("collected_at")),
            collected_by=row.get("collected_by"),
            location_ref=row.get("location_ref"),
            cancelled_at=parse_timestamp(row.get("cancelled_at")),
            cancel_reason=row.get("cancel_reason"),
            late_cancellation=bool(row.get("late_cancellation")),
            version=int(row.get("version") or 0),
        )


@dataclass
class Restriction:
    """
    A time-boxed denial of ordering privileges (blacklist entry).

    end_at of None means the restriction never expires on its own. Expiry
    is evaluated at read time by is_in_force(); the stored active flag is
    only cleared by an explicit lift.
    """
    id: str
    person_id: str
    reason: str
    start_at: datetime
    end_at: Optional[datetime] = None
    active: bool = True
    created_by: str = SYSTEM_ACTOR
    lifted_at: Optional[datetime] = None

    def is_in_force(self, at: datetime) -> bool:
        """True iff the restriction window contains the given instant."""
        if not self.active:
            return False
        if at < self.start_at:
            return False
        if self.end_at is not None and at >= self.end_at:
            return False
        return True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "person_id": self.person_id,
            "reason": self.reason,
            "start_at": self.start_at.isoformat(),
            "end_at": self.end_at.isoformat() if self.end_at else None,
            "active": self.active,
            "created_by": self.created_by,
            "lifted_at": self.lifted_at.isoformat() if self.lifted_at else None,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Restriction":
        return cls(
            id=str(row["id"]),
            person_id=str(row["person_id"]),
            reason=row["reason"],
            start_at=parse_timestamp(row["start_at"]),
            end_at=parse_timestamp(row.get("end_at")),
            active=bool(row.get("active")),
            created_by=row.get("created_by") or SYSTEM_ACTOR,
            lifted_at=parse_timestamp(row.get("lifted_at")),
        )


@dataclass
class Holiday:
    """A non-serving day, either for every shift or for one shift only."""
    id: str
    holiday_date: date
    description: str = ""
    shift_id: Optional[str] = None

    def applies_to(self, shift_id: str) -> bool:
        return self.shift_id is None or self.shift_id == shift_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "holiday_date": format_date(self.holiday_date),
            "description": self.description,
            "shift_id": self.shift_id,
        }

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "Holiday":
        return cls(
            id=str(row["id"]),
            holiday_date=parse_date(row["holiday_date"]),
            description=row.get("description") or "",
            shift_id=row.get("shift_id"),
        )


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    # Enums
    "OrderStatus",
    "PersonRole",
    # Data classes
    "Person",
    "Shift",
    "Order",
    "Restriction",
    "Holiday",
    # Helpers
    "format_timestamp",
    "parse_timestamp",
    "format_date",
    "parse_date",
    # Constants
    "TIMESTAMP_FORMAT",
    "DATE_FORMAT",
    "SYSTEM_ACTOR",
]
