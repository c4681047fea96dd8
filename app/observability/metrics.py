"""
============================================================================
Canteen Order Engine v1.0.0
Prometheus Metrics - Order Lifecycle Observability
============================================================================

Reliability Level: L5 Standard
Input Constraints: Label values are short enum-like strings
Side Effects: Updates Prometheus metrics registry

METRICS EXPOSED
---------------
- canteen_orders_created_total: Orders successfully placed
- canteen_orders_rejected_total: Create/collect/cancel refusals by error code
- canteen_order_transitions_total: Transitions out of PLACED by target
- canteen_sweep_runs_total: Attendance sweep passes by outcome
- canteen_noshows_total: Orders marked NOT_COLLECTED by the sweep
- canteen_strikes_accrued_total: Strikes added to persons
- canteen_restrictions_opened_total: Restrictions opened by origin
- canteen_events_published_total: Fan-out publishes by event type
- canteen_events_dropped_total: Per-observer deliveries dropped
- canteen_event_subscribers: Currently connected observers

FAIL-SAFE
---------
Recording a metric never raises into the caller; a registry failure is
logged and the operation continues.

============================================================================
"""

import logging
from typing import Optional

from prometheus_client import Counter, Gauge

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# PROMETHEUS METRICS DEFINITIONS
# ============================================================================

ORDERS_CREATED = Counter(
    "canteen_orders_created_total",
    "Total number of orders successfully placed",
    ["shift_id"]
)

ORDERS_REJECTED = Counter(
    "canteen_orders_rejected_total",
    "Total number of order operations refused, by operation and error code",
    ["operation", "error_code"]
)

ORDER_TRANSITIONS = Counter(
    "canteen_order_transitions_total",
    "Total number of order transitions out of PLACED",
    ["target_status"]
)

SWEEP_RUNS = Counter(
    "canteen_sweep_runs_total",
    "Total number of attendance sweep passes",
    ["outcome"]
)

NOSHOWS = Counter(
    "canteen_noshows_total",
    "Total number of orders marked NOT_COLLECTED by the attendance sweep"
)

STRIKES_ACCRUED = Counter(
    "canteen_strikes_accrued_total",
    "Total number of strikes accrued"
)

RESTRICTIONS_OPENED = Counter(
    "canteen_restrictions_opened_total",
    "Total number of restrictions opened",
    ["origin"]
)

EVENTS_PUBLISHED = Counter(
    "canteen_events_published_total",
    "Total number of events published to the fan-out",
    ["event_type"]
)

EVENTS_DROPPED = Counter(
    "canteen_events_dropped_total",
    "Total number of per-observer deliveries dropped (full or closed channel)",
    ["event_type"]
)

EVENT_SUBSCRIBERS = Gauge(
    "canteen_event_subscribers",
    "Number of currently connected event observers"
)


# ============================================================================
# METRIC UPDATE FUNCTIONS
# ============================================================================

def record_order_created(shift_id: str, correlation_id: Optional[str] = None) -> None:
    try:
        ORDERS_CREATED.labels(shift_id=shift_id).inc()
        logger.debug(
            "Metric: order_created | shift_id=%s | correlation_id=%s",
            shift_id, correlation_id
        )
    except Exception as e:
        logger.error("[OBS-001] Failed to record order_created metric | error=%s", str(e))


def record_order_rejected(operation: str, error_code: str) -> None:
    """
    Record a refused create/collect/cancel.

    Args:
        operation: "create", "collect" or "cancel"
        error_code: ORD-xxx code of the refusal
    """
    try:
        ORDERS_REJECTED.labels(operation=operation, error_code=error_code).inc()
    except Exception as e:
        logger.error("[OBS-002] Failed to record order_rejected metric | error=%s", str(e))


def record_transition(target_status: str) -> None:
    try:
        ORDER_TRANSITIONS.labels(target_status=target_status).inc()
    except Exception as e:
        logger.error("[OBS-003] Failed to record transition metric | error=%s", str(e))


def record_sweep_run(outcome: str, noshow_count: int = 0) -> None:
    """
    Record one sweep pass.

    Args:
        outcome: "ok", "partial" (some orders failed) or "error"
        noshow_count: Orders this pass moved to NOT_COLLECTED
    """
    try:
        SWEEP_RUNS.labels(outcome=outcome).inc()
        if noshow_count > 0:
            NOSHOWS.inc(noshow_count)
    except Exception as e:
        logger.error("[OBS-004] Failed to record sweep metric | error=%s", str(e))


def record_strike_accrued() -> None:
    try:
        STRIKES_ACCRUED.inc()
    except Exception as e:
        logger.error("[OBS-005] Failed to record strike metric | error=%s", str(e))


def record_restriction_opened(origin: str) -> None:
    try:
        RESTRICTIONS_OPENED.labels(origin=origin).inc()
    except Exception as e:
        logger.error("[OBS-006] Failed to record restriction metric | error=%s", str(e))


def record_event_published(event_type: str, dropped: int = 0) -> None:
    try:
        EVENTS_PUBLISHED.labels(event_type=event_type).inc()
        if dropped > 0:
            EVENTS_DROPPED.labels(event_type=event_type).inc(dropped)
    except Exception as e:
        logger.error("[OBS-007] Failed to record event metric | error=%s", str(e))


def set_subscriber_count(count: int) -> None:
    try:
        EVENT_SUBSCRIBERS.set(count)
    except Exception as e:
        logger.error("[OBS-008] Failed to update subscriber gauge | error=%s", str(e))


# ============================================================================
# END OF METRICS MODULE
# ============================================================================
