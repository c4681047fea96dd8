"""
============================================================================
Canteen Order Lifecycle State Machine
============================================================================

Reliability Level: L6 Critical (Order Integrity)
Traceability: All operations include correlation_id for audit

ORDER LIFECYCLE STATE MACHINE:
    Every order starts PLACED and leaves it at most once:

    PLACED → COLLECTED      (collection confirmed)
    PLACED → NOT_COLLECTED  (attendance sweep)
    PLACED → CANCELLED      (cancellation, clean or late)

    Terminal States: COLLECTED, NOT_COLLECTED, CANCELLED

CONCURRENCY:
    transition_order() is the only code path that changes a stored status.
    It issues a conditional UPDATE keyed by (id, expected status, version).
    When two writers race, exactly one UPDATE matches; the loser gets None
    back and decides for itself whether to retry or report a conflict.

ERROR CODES:
    - ORD-201: Transition attempted out of a terminal status

============================================================================
"""

from typing import Optional, Dict, Any, List, Tuple
from dataclasses import replace
import logging

from services.canteen_models import Order
from services.order_errors import AlreadyFinalized, OrderErrorCode, ValidationError

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# VALID_TRANSITIONS Constant
# =============================================================================

VALID_TRANSITIONS: Dict[str, List[str]] = {
    "PLACED": ["COLLECTED", "NOT_COLLECTED", "CANCELLED"],
    "COLLECTED": [],  # Terminal state - no outbound transitions
    "NOT_COLLECTED": [],  # Terminal state - no outbound transitions
    "CANCELLED": [],  # Terminal state - no outbound transitions
}

# Terminal states (no outbound transitions)
TERMINAL_STATES: List[str] = ["COLLECTED", "NOT_COLLECTED", "CANCELLED"]

# All valid states
VALID_STATES: List[str] = list(VALID_TRANSITIONS.keys())


# =============================================================================
# validate_transition() Function
# =============================================================================

def validate_transition(
    current_state: str,
    target_state: str,
    correlation_id: Optional[str] = None,
) -> Tuple[bool, Optional[str]]:
    """
    Check a transition against VALID_TRANSITIONS.

    Returns:
        (True, None) if allowed
        (False, "ORD-400") if either state is unknown
        (False, "ORD-201") if current_state is terminal or the pair is not allowed
    """
    if current_state not in VALID_TRANSITIONS or target_state not in VALID_TRANSITIONS:
        logger.warning(
            f"[{OrderErrorCode.VALIDATION}] Unknown order status | "
            f"current={current_state} | "
            f"target={target_state} | "
            f"correlation_id={correlation_id}"
        )
        return (False, OrderErrorCode.VALIDATION)

    if target_state not in VALID_TRANSITIONS[current_state]:
        logger.info(
            f"[{OrderErrorCode.ALREADY_FINALIZED}] Transition refused | "
            f"{current_state} → {target_state} | "
            f"correlation_id={correlation_id}"
        )
        return (False, OrderErrorCode.ALREADY_FINALIZED)

    return (True, None)


# =============================================================================
# transition_order() Function
# =============================================================================

def transition_order(
    store: Any,
    order: Order,
    target_state: str,
    correlation_id: str,
    actor_id: Optional[str] = None,
    fields: Optional[Dict[str, Any]] = None,
) -> Optional[Order]:
    """
    Move an order out of its current status with a conditional update.

    Args:
        store: OrderStore (anything with conditional_update_order)
        order: The order as last read; its status and version are the
            expected prior values
        target_state: Status to move to
        correlation_id: Audit trail identifier
        actor_id: Who requested the change
        fields: Extra columns set together with the status

    Returns:
        The updated order if this call won the race, None if another writer
        changed the row first

    Raises:
        AlreadyFinalized: If the order as read is already terminal
        ValidationError: If a status is unknown
    """
    is_valid, error_code = validate_transition(
        current_state=order.status,
        target_state=target_state,
        correlation_id=correlation_id,
    )
    if not is_valid:
        if error_code == OrderErrorCode.ALREADY_FINALIZED:
            raise AlreadyFinalized(
                f"Order is already {order.status}",
                reason=order.status,
                details={"order_id": order.id, "status": order.status},
            )
        raise ValidationError(
            f"Unknown order status transition {order.status} → {target_state}",
            details={"order_id": order.id},
        )

    won = store.conditional_update_order(
        order_id=order.id,
        expected_status=order.status,
        expected_version=order.version,
        new_status=target_state,
        fields=fields,
    )

    if not won:
        logger.info(
            f"[ORDER-STATE] Conditional update lost | "
            f"order_id={order.id} | "
            f"expected={order.status}@v{order.version} | "
            f"target={target_state} | "
            f"correlation_id={correlation_id}"
        )
        return None

    logger.info(
        f"[ORDER-STATE] State transition completed | "
        f"order_id={order.id} | "
        f"{order.status} → {target_state} | "
        f"actor={actor_id or 'SYSTEM'} | "
        f"correlation_id={correlation_id}"
    )

    return replace(order, status=target_state, version=order.version + 1, **(fields or {}))


# =============================================================================
# Utility Functions
# =============================================================================

def get_valid_transitions(state: str) -> List[str]:
    return list(VALID_TRANSITIONS.get(state, []))


def is_terminal_state(state: str) -> bool:
    return state in TERMINAL_STATES


def is_valid_state(state: str) -> bool:
    return state in VALID_STATES


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "VALID_STATES",
    "validate_transition",
    "transition_order",
    "get_valid_transitions",
    "is_terminal_state",
    "is_valid_state",
]
