"""
============================================================================
Canteen Order Engine - Component Wiring
============================================================================

Reliability Level: L6 Critical
Traceability: Startup and shutdown are logged with correlation_id

Builds and owns one set of engine components:

    OrderStore ─┬─ PolicyStore (persisted, publishes policy.updated)
                ├─ ClockSource (optional HTTP time reference)
                ├─ EventFanout
                ├─ StrikeLedger
                ├─ OrderService
                └─ AttendanceSweep (background loop)

The HTTP layer resolves the running engine through get_canteen_engine();
tests build their own with a private database and an injected clock.

============================================================================
"""

from typing import Optional, Dict, Any, Callable
from dataclasses import dataclass
from datetime import datetime
import asyncio
import logging
import uuid

from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker

from app.database.order_store import OrderStore
from services.attendance_sweep import AttendanceSweep
from services.canteen_config import CanteenConfig
from services.clock_source import ClockSource, HttpTimeReference
from services.collaborators import AuditSink, EligibilityChecker, StoreAuditSink
from services.event_fanout import CanteenEventType, EventFanout
from services.order_service import OrderService
from services.policy_store import Policy, PolicyStore
from services.strike_ledger import StrikeLedger

# Configure module logger
logger = logging.getLogger(__name__)


@dataclass
class CanteenEngine:
    config: CanteenConfig
    store: OrderStore
    policy_store: PolicyStore
    clock: ClockSource
    fanout: EventFanout
    ledger: StrikeLedger
    orders: OrderService
    sweep: AttendanceSweep
    audit_sink: Optional[AuditSink] = None
    db_engine: Optional[Engine] = None

    @classmethod
    def build(
        cls,
        config: CanteenConfig,
        session_factory: sessionmaker,
        db_engine: Optional[Engine] = None,
        local_now: Optional[Callable[[], datetime]] = None,
        eligibility: Optional[EligibilityChecker] = None,
        audit_sink: Optional[AuditSink] = None,
    ) -> "CanteenEngine":
        """
        Wire every component against one database.

        Creates the schema if needed and adopts a persisted policy over the
        configured defaults.
        """
        store = OrderStore(session_factory)
        store.create_schema()

        reference = None
        if config.time_reference_enabled:
            reference = HttpTimeReference(config.time_reference_url)
        clock = ClockSource(
            timezone_name=config.timezone_name,
            reference=reference,
            local_now=local_now,
            sync_interval_seconds=config.time_sync_interval_seconds,
        )

        policy_store = PolicyStore(initial=config.policy, persistence=store, now=clock.now)
        policy_store.load_persisted()

        fanout = EventFanout(max_queue_size=config.event_queue_size, now=clock.now)
        sink = audit_sink if audit_sink is not None else StoreAuditSink(store)

        ledger = StrikeLedger(store, policy_store, clock, fanout=fanout, audit_sink=sink)
        orders = OrderService(
            store,
            policy_store,
            clock,
            ledger,
            fanout=fanout,
            eligibility=eligibility,
            audit_sink=sink,
        )
        sweep = AttendanceSweep(
            store,
            ledger,
            clock,
            policy_store,
            fanout=fanout,
            audit_sink=sink,
            interval_seconds=config.sweep_interval_seconds,
        )

        def announce_policy(previous: Policy, current: Policy) -> None:
            fanout.publish(CanteenEventType.POLICY_UPDATED, {"policy": current.to_dict()})

        policy_store.add_listener(announce_policy)

        logger.info(
            f"[CANTEEN-ENGINE] Components wired | "
            f"timezone={config.timezone_name} | "
            f"time_reference_enabled={reference is not None}"
        )

        return cls(
            config=config,
            store=store,
            policy_store=policy_store,
            clock=clock,
            fanout=fanout,
            ledger=ledger,
            orders=orders,
            sweep=sweep,
            audit_sink=sink,
            db_engine=db_engine,
        )

    async def start(self) -> None:
        correlation_id = str(uuid.uuid4())
        if self.clock.reference_enabled:
            # First offset lands before the sweep reads the clock
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, self.clock.sync)
        await self.clock.start()
        await self.sweep.start()
        logger.info(f"[CANTEEN-ENGINE] Started | correlation_id={correlation_id}")

    async def stop(self) -> None:
        await self.sweep.stop()
        await self.clock.stop()
        logger.info("[CANTEEN-ENGINE] Stopped")

    def get_status(self) -> Dict[str, Any]:
        last = self.sweep.last_result
        return {
            "clock": self.clock.get_status(),
            "policy_version": self.policy_store.version,
            "sweep": {
                "running": self.sweep.is_running,
                "interval_seconds": self.sweep.interval_seconds,
                "last_result": last.to_dict() if last else None,
            },
            "event_connections": self.fanout.connection_count,
        }


# =============================================================================
# Global Instance
# =============================================================================

_engine_instance: Optional[CanteenEngine] = None


def get_canteen_engine() -> CanteenEngine:
    """
    Return the running engine.

    Raises:
        RuntimeError: If the application has not initialized it yet
    """
    if _engine_instance is None:
        raise RuntimeError("Canteen engine is not initialized")
    return _engine_instance


def set_canteen_engine(engine: Optional[CanteenEngine]) -> None:
    global _engine_instance
    _engine_instance = engine


__all__ = [
    "CanteenEngine",
    "get_canteen_engine",
    "set_canteen_engine",
]
