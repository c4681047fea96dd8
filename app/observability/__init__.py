"""
============================================================================
Canteen Order Engine v1.0.0
Observability Module - Prometheus Metrics
============================================================================

Reliability Level: L5 Standard
Input Constraints: None
Side Effects: Exposes Prometheus metrics

============================================================================
"""

from app.observability.metrics import (
    ORDERS_CREATED,
    ORDERS_REJECTED,
    ORDER_TRANSITIONS,
    SWEEP_RUNS,
    NOSHOWS,
    STRIKES_ACCRUED,
    RESTRICTIONS_OPENED,
    EVENTS_PUBLISHED,
    EVENTS_DROPPED,
    EVENT_SUBSCRIBERS,
    record_order_created,
    record_order_rejected,
    record_transition,
    record_sweep_run,
    record_strike_accrued,
    record_restriction_opened,
    record_event_published,
    set_subscriber_count,
)

__all__ = [
    "ORDERS_CREATED",
    "ORDERS_REJECTED",
    "ORDER_TRANSITIONS",
    "SWEEP_RUNS",
    "NOSHOWS",
    "STRIKES_ACCRUED",
    "RESTRICTIONS_OPENED",
    "EVENTS_PUBLISHED",
    "EVENTS_DROPPED",
    "EVENT_SUBSCRIBERS",
    "record_order_created",
    "record_order_rejected",
    "record_transition",
    "record_sweep_run",
    "record_strike_accrued",
    "record_restriction_opened",
    "record_event_published",
    "set_subscriber_count",
]
