"""
============================================================================
Canteen Order Engine - Policy Store
============================================================================

Reliability Level: L6 Critical (Order Integrity)
Traceability: Policy replacements are logged with actor and correlation_id

Holds the tunable ordering parameters as an immutable snapshot:
- cutoff_days + cutoff_lead_hours: how long before shift start an order
  must be placed
- cutoff_mode: "per-shift" (rolling horizon) or "weekly" (next week's
  days are ordered before a weekly cutoff)
- strike_threshold: strike count that opens a restriction
- restriction_duration_days: length of an automatic restriction
- booking_horizon_days: how far ahead a person may book

Readers call current() once per operation and use that snapshot for the
whole evaluation. Writers swap the snapshot atomically, so a reader never
sees a half-written policy.

============================================================================
"""

from typing import Optional, Dict, Any, List, Callable, Tuple
from dataclasses import dataclass, asdict, fields, replace
from datetime import datetime, timedelta
import logging
import threading
import uuid

from services.clock_source import system_utc_now
from services.order_errors import PolicyValidationError

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Default Values
# =============================================================================

DEFAULT_CUTOFF_LEAD_HOURS = 6
DEFAULT_STRIKE_THRESHOLD = 3
DEFAULT_RESTRICTION_DURATION_DAYS = 7
DEFAULT_BOOKING_HORIZON_DAYS = 7
DEFAULT_EARLY_COLLECTION_MINUTES = 30
DEFAULT_COLLECTION_GRACE_MINUTES = 5

CUTOFF_MODE_PER_SHIFT = "per-shift"
CUTOFF_MODE_WEEKLY = "weekly"
CUTOFF_MODES = (CUTOFF_MODE_PER_SHIFT, CUTOFF_MODE_WEEKLY)

# Weekdays are ISO numbers: 1 = Monday ... 7 = Sunday
DEFAULT_WEEKLY_CUTOFF_DAY = 5
DEFAULT_WEEKLY_CUTOFF_HOUR = 17
DEFAULT_WEEKLY_CUTOFF_MINUTE = 0
DEFAULT_ORDERABLE_DAYS = (1, 2, 3, 4, 5, 6)
DEFAULT_MAX_WEEKS_AHEAD = 1


# =============================================================================
# Policy Snapshot
# =============================================================================

@dataclass(frozen=True)
class Policy:
    """
    Immutable policy snapshot.

    ============================================================================
    PARAMETERS:
    ============================================================================
    - cutoff_lead_hours: minimum lead between now and shift start (default 6)
    - cutoff_days: whole days added to that lead (default 0)
    - strike_threshold: strikes that open a restriction (default 3)
    - restriction_duration_days: automatic restriction length (default 7)
    - booking_horizon_days: max days ahead an order may be placed (default 7)
    - early_collection_minutes: collection opens this long before start (30)
    - collection_grace_minutes: collection stays open after end; the sweep
      waits the same grace before marking a no-show (default 5)
    - allow_late_cancellation: permit strike-neutral post-cutoff cancels
    - cancel_orders_on_restriction: cancel pending orders when a
      restriction opens
    - unblock_on_strike_reduction: lift restriction when a reduction drops
      the count below the threshold
    - cutoff_mode: "per-shift" or "weekly"
    - weekly_cutoff_day/hour/minute: weekly mode closes ordering for next
      week at this ISO weekday and time of the current week (Fri 17:00)
    - orderable_days: ISO weekdays open for ordering in weekly mode
    - max_weeks_ahead: weekly mode booking horizon in weeks (default 1)
    ============================================================================
    """
    cutoff_lead_hours: int = DEFAULT_CUTOFF_LEAD_HOURS
    strike_threshold: int = DEFAULT_STRIKE_THRESHOLD
    restriction_duration_days: int = DEFAULT_RESTRICTION_DURATION_DAYS
    booking_horizon_days: int = DEFAULT_BOOKING_HORIZON_DAYS
    early_collection_minutes: int = DEFAULT_EARLY_COLLECTION_MINUTES
    collection_grace_minutes: int = DEFAULT_COLLECTION_GRACE_MINUTES
    allow_late_cancellation: bool = False
    cancel_orders_on_restriction: bool = True
    unblock_on_strike_reduction: bool = True
    cutoff_days: int = 0
    cutoff_mode: str = CUTOFF_MODE_PER_SHIFT
    weekly_cutoff_day: int = DEFAULT_WEEKLY_CUTOFF_DAY
    weekly_cutoff_hour: int = DEFAULT_WEEKLY_CUTOFF_HOUR
    weekly_cutoff_minute: int = DEFAULT_WEEKLY_CUTOFF_MINUTE
    orderable_days: Tuple[int, ...] = DEFAULT_ORDERABLE_DAYS
    max_weeks_ahead: int = DEFAULT_MAX_WEEKS_AHEAD

    @property
    def cutoff_lead(self) -> timedelta:
        return timedelta(days=self.cutoff_days, hours=self.cutoff_lead_hours)

    @property
    def is_weekly(self) -> bool:
        return self.cutoff_mode == CUTOFF_MODE_WEEKLY

    def validate(self) -> "Policy":
        """
        Range-check every field.

        Returns:
            self, so construction and validation chain

        Raises:
            PolicyValidationError: If any field is out of range
        """
        errors: List[str] = []

        for name in (
            "cutoff_lead_hours",
            "restriction_duration_days",
            "booking_horizon_days",
            "early_collection_minutes",
            "collection_grace_minutes",
            "cutoff_days",
        ):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                errors.append(f"{name} must be an integer, got: {value!r}")
            elif value < 0:
                errors.append(f"{name} must be non-negative, got: {value}")

        if isinstance(self.strike_threshold, bool) or not isinstance(self.strike_threshold, int):
            errors.append(f"strike_threshold must be an integer, got: {self.strike_threshold!r}")
        elif self.strike_threshold < 1:
            errors.append(f"strike_threshold must be at least 1, got: {self.strike_threshold}")

        for name, low, high in (
            ("weekly_cutoff_day", 1, 7),
            ("weekly_cutoff_hour", 0, 23),
            ("weekly_cutoff_minute", 0, 59),
            ("max_weeks_ahead", 1, 52),
        ):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int):
                errors.append(f"{name} must be an integer, got: {value!r}")
            elif not low <= value <= high:
                errors.append(f"{name} must be between {low} and {high}, got: {value}")

        if self.cutoff_mode not in CUTOFF_MODES:
            errors.append(f"cutoff_mode must be one of {', '.join(CUTOFF_MODES)}, got: {self.cutoff_mode!r}")

        days = self.orderable_days
        if not isinstance(days, tuple) or not days or any(
            isinstance(day, bool) or not isinstance(day, int) or not 1 <= day <= 7 for day in days
        ):
            errors.append(f"orderable_days must be a non-empty list of ISO weekdays 1-7, got: {days!r}")

        for name in (
            "allow_late_cancellation",
            "cancel_orders_on_restriction",
            "unblock_on_strike_reduction",
        ):
            if not isinstance(getattr(self, name), bool):
                errors.append(f"{name} must be a boolean, got: {getattr(self, name)!r}")

        if errors:
            raise PolicyValidationError(
                "Policy validation failed: " + "; ".join(errors),
                details={"errors": errors},
            )
        return self

    def with_changes(self, **changes: Any) -> "Policy":
        """Return a validated copy with the given fields replaced."""
        unknown = sorted(set(changes) - {f.name for f in fields(self)})
        if unknown:
            raise PolicyValidationError(
                f"Unknown policy fields: {', '.join(unknown)}",
                details={"unknown_fields": unknown},
            )
        if isinstance(changes.get("orderable_days"), list):
            changes["orderable_days"] = tuple(changes["orderable_days"])
        return replace(self, **changes).validate()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Policy":
        """Build a validated policy, defaulting any missing field."""
        return cls().with_changes(**data)


# =============================================================================
# PolicyStore Class
# =============================================================================

class PolicyStore:
    """
    Atomically replaceable holder of the current Policy snapshot.

    An optional persistence object (anything with
    save_policy(dict, updated_at=, actor_id=)) receives each new snapshot
    before it becomes visible, stamped with the injected now() reading.
    Change listeners are called after the swap and may not block the
    writer; their failures are logged and swallowed.

    THREAD SAFETY:
        The lock guards only the reference swap. Persistence and listeners
        run outside it.
    """

    def __init__(
        self,
        initial: Optional[Policy] = None,
        persistence: Optional[Any] = None,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self._policy = (initial or Policy()).validate()
        self._persistence = persistence
        self._now = now or system_utc_now
        self._version = 1
        self._lock = threading.Lock()
        self._listeners: List[Callable[[Policy, Policy], None]] = []

        logger.info(
            f"[POLICY-STORE] Initialized | "
            f"cutoff_lead_hours={self._policy.cutoff_lead_hours} | "
            f"strike_threshold={self._policy.strike_threshold} | "
            f"restriction_duration_days={self._policy.restriction_duration_days} | "
            f"booking_horizon_days={self._policy.booking_horizon_days}"
        )

    @property
    def version(self) -> int:
        """Monotonic counter bumped on every replacement."""
        return self._version

    def current(self) -> Policy:
        """Return the current snapshot. Reading a reference is atomic."""
        return self._policy

    def add_listener(self, listener: Callable[[Policy, Policy], None]) -> None:
        self._listeners.append(listener)

    def replace(
        self,
        policy: Policy,
        actor_id: str = "SYSTEM",
        correlation_id: Optional[str] = None,
    ) -> Policy:
        """
        Replace the whole snapshot.

        Raises:
            PolicyValidationError: If the new policy fails range checks
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        policy.validate()

        if self._persistence is not None:
            self._persistence.save_policy(
                policy.to_dict(),
                updated_at=self._now(),
                actor_id=actor_id,
            )

        with self._lock:
            previous = self._policy
            self._policy = policy
            self._version += 1
            version = self._version

        logger.info(
            f"[POLICY-STORE] Policy replaced | "
            f"version={version} | "
            f"actor={actor_id} | "
            f"changes={_diff(previous, policy)} | "
            f"correlation_id={correlation_id}"
        )

        for listener in list(self._listeners):
            try:
                listener(previous, policy)
            except Exception as e:
                logger.error(
                    f"[POLICY-STORE] Change listener failed | "
                    f"error={str(e)} | "
                    f"correlation_id={correlation_id}"
                )

        return policy

    def update(
        self,
        actor_id: str = "SYSTEM",
        correlation_id: Optional[str] = None,
        **changes: Any,
    ) -> Policy:
        """Replace selected fields, keeping the rest of the snapshot."""
        return self.replace(
            self._policy.with_changes(**changes),
            actor_id=actor_id,
            correlation_id=correlation_id,
        )

    def load_persisted(self) -> bool:
        """
        Adopt the persisted snapshot, if any.

        Returns:
            True if a persisted snapshot was found and installed
        """
        if self._persistence is None:
            return False
        data = self._persistence.load_policy()
        if not data:
            return False
        policy = Policy.from_dict(data)
        with self._lock:
            self._policy = policy
            self._version += 1
        logger.info(f"[POLICY-STORE] Loaded persisted policy | policy={policy.to_dict()}")
        return True


def _diff(old: Policy, new: Policy) -> Dict[str, Any]:
    old_values = old.to_dict()
    return {k: v for k, v in new.to_dict().items() if old_values.get(k) != v}


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "Policy",
    "PolicyStore",
    "DEFAULT_CUTOFF_LEAD_HOURS",
    "DEFAULT_STRIKE_THRESHOLD",
    "DEFAULT_RESTRICTION_DURATION_DAYS",
    "DEFAULT_BOOKING_HORIZON_DAYS",
    "DEFAULT_EARLY_COLLECTION_MINUTES",
    "DEFAULT_COLLECTION_GRACE_MINUTES",
    "DEFAULT_WEEKLY_CUTOFF_DAY",
    "DEFAULT_WEEKLY_CUTOFF_HOUR",
    "DEFAULT_WEEKLY_CUTOFF_MINUTE",
    "DEFAULT_ORDERABLE_DAYS",
    "DEFAULT_MAX_WEEKS_AHEAD",
    "CUTOFF_MODE_PER_SHIFT",
    "CUTOFF_MODE_WEEKLY",
    "CUTOFF_MODES",
]
