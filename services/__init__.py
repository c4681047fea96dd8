"""
============================================================================
Canteen Order Engine - Services Layer
============================================================================

Order lifecycle and attendance enforcement: clock, policy, order state
machine, attendance sweep, strike and restriction ledger, event fan-out.

Reliability Level: L6 Critical
============================================================================
"""

from services.canteen_models import (
    OrderStatus,
    PersonRole,
    Person,
    Shift,
    Order,
    Restriction,
    Holiday,
)
from services.order_errors import (
    OrderErrorCode,
    OrderEngineError,
    ValidationError,
    PolicyViolation,
    CutoffPassed,
    HorizonExceeded,
    Restricted,
    DuplicateForDate,
    ShiftUnavailable,
    OutsideCollectionWindow,
    OrderNotFound,
    PersonNotFound,
    ConflictError,
    AlreadyFinalized,
    ConcurrencyConflict,
    InfrastructureError,
)
from services.policy_store import Policy, PolicyStore
from services.clock_source import ClockSource, HttpTimeReference

__all__ = [
    # Models
    "OrderStatus",
    "PersonRole",
    "Person",
    "Shift",
    "Order",
    "Restriction",
    "Holiday",
    # Errors
    "OrderErrorCode",
    "OrderEngineError",
    "ValidationError",
    "PolicyViolation",
    "CutoffPassed",
    "HorizonExceeded",
    "Restricted",
    "DuplicateForDate",
    "ShiftUnavailable",
    "OutsideCollectionWindow",
    "OrderNotFound",
    "PersonNotFound",
    "ConflictError",
    "AlreadyFinalized",
    "ConcurrencyConflict",
    "InfrastructureError",
    # Policy and clock
    "Policy",
    "PolicyStore",
    "ClockSource",
    "HttpTimeReference",
]
