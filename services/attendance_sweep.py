"""
============================================================================
Attendance Sweep - Background Job for No-Show Processing
============================================================================

Reliability Level: L6 Critical (Attendance Enforcement)
Traceability: All operations include correlation_id for audit

This module implements the AttendanceSweep background job:
- Periodically scans PLACED orders whose shift has ended
- Marks them NOT_COLLECTED once shift end + collection grace has passed
- Publishes order.noshow and charges one strike to the person

SWEEP PROCEDURE:
    1. Read one policy snapshot and one clock instant
    2. Select PLACED orders dated on or before today
    3. Keep those with shift_end(date) + grace < now
    4. For each: conditional transition PLACED → NOT_COLLECTED
    5. Only the writer that wins the transition publishes and accrues

IDEMPOTENCE:
    A second pass over the same orders finds nothing PLACED, and two
    sweeps racing on one order produce exactly one NOT_COLLECTED, one
    event and one strike.

FAILURE ISOLATION:
    A failure on one order is logged and the sweep moves on.

============================================================================
"""

from typing import Optional, Dict, Any, List
from dataclasses import dataclass, field
import asyncio
import logging
import uuid

from services.canteen_models import Order, OrderStatus, Shift, SYSTEM_ACTOR, format_date
from services.collaborators import AuditSink, build_audit_entry, record_audit
from services.event_fanout import CanteenEventType, EventFanout
from services.order_state_machine import transition_order
from services.policy_store import PolicyStore
from services.shift_windows import is_past_sweep_deadline
from services.strike_ledger import StrikeLedger
from app.observability.metrics import record_sweep_run, record_transition

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

DEFAULT_SWEEP_INTERVAL_SECONDS = 300


# =============================================================================
# SweepResult
# =============================================================================

@dataclass
class SweepResult:
    """Counters for one sweep pass."""
    correlation_id: str
    scanned: int = 0
    noshows: int = 0
    skipped_lost_race: int = 0
    failed: int = 0
    noshow_order_ids: List[str] = field(default_factory=list)

    @property
    def outcome(self) -> str:
        return "partial" if self.failed else "ok"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "correlation_id": self.correlation_id,
            "scanned": self.scanned,
            "noshows": self.noshows,
            "skipped_lost_race": self.skipped_lost_race,
            "failed": self.failed,
            "noshow_order_ids": list(self.noshow_order_ids),
            "outcome": self.outcome,
        }


# =============================================================================
# AttendanceSweep Class
# =============================================================================

class AttendanceSweep:
    """
    Background job that turns uncollected orders into no-shows.

    ============================================================================
    RESPONSIBILITIES:
    ============================================================================
    1. Periodically scan PLACED orders past their sweep deadline
    2. Transition each to NOT_COLLECTED with a conditional update
    3. Publish order.noshow for each transition this sweep won
    4. Charge one strike through the StrikeLedger
    5. Write an audit entry per no-show
    ============================================================================
    """

    def __init__(
        self,
        store: Any,
        ledger: StrikeLedger,
        clock: Any,
        policy_store: PolicyStore,
        fanout: Optional[EventFanout] = None,
        audit_sink: Optional[AuditSink] = None,
        interval_seconds: int = DEFAULT_SWEEP_INTERVAL_SECONDS,
    ) -> None:
        if interval_seconds <= 0:
            raise ValueError(
                f"interval_seconds must be positive, got: {interval_seconds}"
            )

        self._store = store
        self._ledger = ledger
        self._clock = clock
        self._policy_store = policy_store
        self._fanout = fanout
        self._audit_sink = audit_sink
        self._interval_seconds = interval_seconds
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._last_result: Optional[SweepResult] = None

        logger.info(
            f"[ATTENDANCE-SWEEP] Initialized | "
            f"interval_seconds={interval_seconds}"
        )

    @property
    def interval_seconds(self) -> int:
        return self._interval_seconds

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def last_result(self) -> Optional[SweepResult]:
        return self._last_result

    async def start(self) -> None:
        if self._running:
            logger.warning("[ATTENDANCE-SWEEP] Already running, ignoring start request")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())

        logger.info(
            f"[ATTENDANCE-SWEEP] Started | "
            f"interval_seconds={self._interval_seconds}"
        )

    async def stop(self) -> None:
        if not self._running:
            logger.warning("[ATTENDANCE-SWEEP] Not running, ignoring stop request")
            return

        self._running = False

        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("[ATTENDANCE-SWEEP] Stopped")

    async def _run_loop(self) -> None:
        logger.info("[ATTENDANCE-SWEEP] Starting main loop")
        loop = asyncio.get_running_loop()

        while self._running:
            try:
                # run_once() does blocking store I/O
                result = await loop.run_in_executor(None, self.run_once)
                if result.noshows > 0:
                    logger.info(
                        f"[ATTENDANCE-SWEEP] Marked {result.noshows} no-shows"
                    )
            except Exception as e:
                record_sweep_run("error")
                logger.error(
                    f"[ATTENDANCE-SWEEP] Error in main loop | "
                    f"error={str(e)}"
                )

            try:
                await asyncio.sleep(self._interval_seconds)
            except asyncio.CancelledError:
                break

        logger.info("[ATTENDANCE-SWEEP] Main loop exited")

    # =========================================================================
    # run_once() Method
    # =========================================================================

    def run_once(self) -> SweepResult:
        """
        Process every order past its sweep deadline.

        Returns:
            SweepResult with scanned / no-show / lost-race / failed counts

        Raises:
            InfrastructureError: Only if the initial scan itself fails;
                per-order failures are counted, not raised
        """
        correlation_id = str(uuid.uuid4())
        policy = self._policy_store.current()
        now = self._clock.now()
        tz = self._clock.tz

        result = SweepResult(correlation_id=correlation_id)
        candidates = self._store.list_placed_orders_through(now.date())
        shifts: Dict[str, Optional[Shift]] = {}

        for order in candidates:
            result.scanned += 1
            try:
                if order.shift_id not in shifts:
                    shifts[order.shift_id] = self._store.get_shift(order.shift_id)
                shift = shifts[order.shift_id]
                if shift is None:
                    logger.warning(
                        f"[ATTENDANCE-SWEEP] Order references unknown shift, skipping | "
                        f"order_id={order.id} | "
                        f"shift_id={order.shift_id} | "
                        f"correlation_id={correlation_id}"
                    )
                    result.failed += 1
                    continue

                if not is_past_sweep_deadline(shift, order.order_date, now, policy, tz=tz):
                    continue

                if self._mark_noshow(order, now, correlation_id):
                    result.noshows += 1
                    result.noshow_order_ids.append(order.id)
                else:
                    result.skipped_lost_race += 1

            except Exception as e:
                result.failed += 1
                logger.error(
                    f"[ATTENDANCE-SWEEP] Failed to process order | "
                    f"order_id={order.id} | "
                    f"error={str(e)} | "
                    f"correlation_id={correlation_id}"
                )

        record_sweep_run(result.outcome, result.noshows)
        self._last_result = result

        logger.info(
            f"[ATTENDANCE-SWEEP] Sweep complete | "
            f"scanned={result.scanned} | "
            f"noshows={result.noshows} | "
            f"lost_race={result.skipped_lost_race} | "
            f"failed={result.failed} | "
            f"correlation_id={correlation_id}"
        )
        return result

    def _mark_noshow(self, order: Order, now: Any, correlation_id: str) -> bool:
        """True if this call moved the order to NOT_COLLECTED."""
        updated = transition_order(
            self._store,
            order,
            OrderStatus.NOT_COLLECTED.value,
            correlation_id=correlation_id,
            actor_id=SYSTEM_ACTOR,
        )
        if updated is None:
            return False

        record_transition(OrderStatus.NOT_COLLECTED.value)
        logger.info(
            f"[ATTENDANCE-SWEEP] Order marked NOT_COLLECTED | "
            f"order_id={order.id} | "
            f"person_id={order.person_id} | "
            f"order_date={format_date(order.order_date)} | "
            f"correlation_id={correlation_id}"
        )

        record_audit(self._audit_sink, build_audit_entry(
            actor_id=SYSTEM_ACTOR,
            action="ORDER_NOSHOW",
            target_type="order",
            target_id=order.id,
            previous_state={"status": order.status},
            new_state={"status": updated.status},
            payload={"person_id": order.person_id, "swept_at": now.isoformat()},
            correlation_id=correlation_id,
            created_at=now,
        ))

        if self._fanout is not None:
            self._fanout.publish(
                CanteenEventType.ORDER_NOSHOW,
                {"order": updated.to_dict()},
                correlation_id=correlation_id,
            )

        # The no-show stands even if the strike cannot be written
        try:
            self._ledger.accrue_failure(
                order.person_id,
                correlation_id=correlation_id,
                source_order_id=order.id,
            )
        except Exception as e:
            logger.error(
                f"[ATTENDANCE-SWEEP] Strike accrual failed | "
                f"order_id={order.id} | "
                f"person_id={order.person_id} | "
                f"error={str(e)} | "
                f"correlation_id={correlation_id}"
            )
        return True


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "AttendanceSweep",
    "SweepResult",
    "DEFAULT_SWEEP_INTERVAL_SECONDS",
]
