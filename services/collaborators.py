"""
============================================================================
Canteen Order Engine - External Collaborators
============================================================================

Reliability Level: L5 Standard
Traceability: Audit entries carry correlation_id

Interfaces the engine consumes but does not own:
- EligibilityChecker: organizational rule deciding whether a person may
  order a given shift
- AuditSink: receives a structured record of every transition; calls are
  fire-and-forget, so a failing sink never fails the operation

Default implementations:
- AllowAllEligibility: every person may order every active shift
- StoreAuditSink: persists entries to the audit_log table

============================================================================
"""

from typing import Optional, Dict, Any, Protocol
from datetime import date, datetime
import logging
import uuid

from services.canteen_models import Person, Shift, format_timestamp

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Protocols
# =============================================================================

class EligibilityChecker(Protocol):
    def is_eligible(self, person: Person, shift: Shift, order_date: date) -> bool:
        ...


class AuditSink(Protocol):
    def record(self, entry: Dict[str, Any]) -> None:
        ...


# =============================================================================
# Audit Entry Builder
# =============================================================================

def build_audit_entry(
    actor_id: str,
    action: str,
    target_type: str,
    target_id: str,
    previous_state: Optional[Dict[str, Any]],
    new_state: Optional[Dict[str, Any]],
    payload: Dict[str, Any],
    correlation_id: str,
    created_at: datetime,
    error_code: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Assemble an audit_log record in the shape every sink accepts.

    created_at must be a reading of the engine ClockSource.
    """
    return {
        "id": str(uuid.uuid4()),
        "actor_id": actor_id,
        "action": action,
        "target_type": target_type,
        "target_id": target_id,
        "previous_state": previous_state,
        "new_state": new_state,
        "payload": payload,
        "correlation_id": correlation_id,
        "error_code": error_code,
        "created_at": format_timestamp(created_at),
    }


def record_audit(sink: Optional[AuditSink], entry: Dict[str, Any]) -> None:
    """Hand an entry to the sink, logging instead of raising on failure."""
    if sink is None:
        return
    try:
        sink.record(entry)
    except Exception as e:
        logger.error(
            f"[AUDIT] Failed to record audit entry | "
            f"action={entry.get('action')} | "
            f"target_id={entry.get('target_id')} | "
            f"error={str(e)} | "
            f"correlation_id={entry.get('correlation_id')}"
        )


# =============================================================================
# Default Implementations
# =============================================================================

class AllowAllEligibility:
    """Every person may order every shift."""

    def is_eligible(self, person: Person, shift: Shift, order_date: date) -> bool:
        return True


class StoreAuditSink:
    """Persist audit entries through OrderStore.insert_audit."""

    def __init__(self, store: Any) -> None:
        self._store = store

    def record(self, entry: Dict[str, Any]) -> None:
        self._store.insert_audit(entry)
        logger.debug(
            f"[AUDIT] Audit log created | "
            f"action={entry['action']} | "
            f"target_id={entry.get('target_id')} | "
            f"correlation_id={entry.get('correlation_id')}"
        )


__all__ = [
    "EligibilityChecker",
    "AuditSink",
    "build_audit_entry",
    "record_audit",
    "AllowAllEligibility",
    "StoreAuditSink",
]
