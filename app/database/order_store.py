"""
============================================================================
Canteen Order Engine v1.0.0
Order Store - Persistence for Orders, Persons, Shifts and Restrictions
============================================================================

Reliability Level: L6 Critical (Order Integrity)
Input Constraints: A SQLAlchemy sessionmaker bound to SQLite or PostgreSQL
Side Effects: Database reads and writes

MANDATE:
- Orders are never deleted
- At most one non-CANCELLED order per (person, date), enforced by a
  partial unique index in addition to the pre-insert check
- Status and strike changes are compare-and-swap UPDATEs keyed by the
  expected prior status and version; rowcount decides the winner
- Each write runs in its own short session with the write as its first
  statement, so no transaction is held across a read-then-decide gap

TABLES:
    persons, shifts, orders, restrictions, holidays, canteen_policy,
    audit_log

ERROR CODES:
    - ORD-104: Unique index rejected a second live order for the date
    - ORD-503: Store unavailable

============================================================================
"""

from typing import Optional, Dict, Any, List
from datetime import date, datetime
import json
import logging

from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from services.canteen_models import (
    Person,
    Shift,
    Order,
    Restriction,
    Holiday,
    OrderStatus,
    format_timestamp,
    format_date,
)
from services.order_errors import DuplicateForDate, InfrastructureError

# Configure module logger
logger = logging.getLogger(__name__)


# ============================================================================
# SCHEMA
# ============================================================================

SCHEMA_STATEMENTS: List[str] = [
    """
    CREATE TABLE IF NOT EXISTS persons (
        id TEXT PRIMARY KEY,
        display_name TEXT NOT NULL DEFAULT '',
        role TEXT NOT NULL DEFAULT 'EMPLOYEE',
        strike_count INTEGER NOT NULL DEFAULT 0,
        active INTEGER NOT NULL DEFAULT 1,
        version INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS shifts (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        start_time TEXT NOT NULL,
        end_time TEXT NOT NULL,
        active INTEGER NOT NULL DEFAULT 1,
        break_start TEXT,
        break_end TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id TEXT PRIMARY KEY,
        person_id TEXT NOT NULL,
        shift_id TEXT NOT NULL,
        order_date TEXT NOT NULL,
        status TEXT NOT NULL,
        created_at TEXT NOT NULL,
        collected_at TEXT,
        collected_by TEXT,
        location_ref TEXT,
        cancelled_at TEXT,
        cancel_reason TEXT,
        late_cancellation INTEGER NOT NULL DEFAULT 0,
        version INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS ux_orders_live_per_date
        ON orders (person_id, order_date)
        WHERE status <> 'CANCELLED'
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_orders_status_date
        ON orders (status, order_date)
    """,
    """
    CREATE TABLE IF NOT EXISTS restrictions (
        id TEXT PRIMARY KEY,
        person_id TEXT NOT NULL,
        reason TEXT NOT NULL,
        start_at TEXT NOT NULL,
        end_at TEXT,
        active INTEGER NOT NULL DEFAULT 1,
        created_by TEXT,
        lifted_at TEXT
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS ix_restrictions_person
        ON restrictions (person_id, active)
    """,
    """
    CREATE TABLE IF NOT EXISTS holidays (
        id TEXT PRIMARY KEY,
        holiday_date TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        shift_id TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS canteen_policy (
        id INTEGER PRIMARY KEY,
        payload TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        updated_by TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS audit_log (
        id TEXT PRIMARY KEY,
        actor_id TEXT,
        action TEXT NOT NULL,
        target_type TEXT,
        target_id TEXT,
        previous_state TEXT,
        new_state TEXT,
        payload TEXT,
        correlation_id TEXT,
        error_code TEXT,
        created_at TEXT NOT NULL
    )
    """,
]

ORDER_COLUMNS = (
    "id, person_id, shift_id, order_date, status, created_at, collected_at, "
    "collected_by, location_ref, cancelled_at, cancel_reason, "
    "late_cancellation, version"
)

SHIFT_SELECT = (
    "SELECT id, name, start_time, end_time, active, break_start, break_end FROM shifts"
)

# Columns a transition may set besides status and version
TRANSITION_FIELDS = {
    "collected_at",
    "collected_by",
    "location_ref",
    "cancelled_at",
    "cancel_reason",
    "late_cancellation",
}


# ============================================================================
# OrderStore Class
# ============================================================================

class OrderStore:
    """
    Persistence gateway for the order engine.

    Every public method opens its own session from the factory and closes
    it before returning. SQLAlchemy errors are re-raised as
    InfrastructureError so callers see a single failure family.
    """

    def __init__(self, session_factory: sessionmaker) -> None:
        self._session_factory = session_factory

    # ========================================================================
    # Schema
    # ========================================================================

    def create_schema(self) -> None:
        with self._session_factory() as session:
            try:
                for statement in SCHEMA_STATEMENTS:
                    session.execute(text(statement))
                session.commit()
            except SQLAlchemyError as e:
                session.rollback()
                raise self._infrastructure("create_schema", e)
        logger.info("[ORDER-STORE] Schema ready")

    # ========================================================================
    # Internal helpers
    # ========================================================================

    def _infrastructure(self, operation: str, error: Exception) -> InfrastructureError:
        logger.error(
            f"[ORDER-STORE] Store operation failed | "
            f"operation={operation} | "
            f"error={str(error)}"
        )
        return InfrastructureError(
            f"Order store unavailable during {operation}",
            details={"operation": operation},
        )

    def _fetch_all(self, operation: str, query: str, params: Dict[str, Any]) -> List[Dict[str, Any]]:
        try:
            with self._session_factory() as session:
                result = session.execute(text(query), params)
                return [dict(row) for row in result.mappings().all()]
        except SQLAlchemyError as e:
            raise self._infrastructure(operation, e)

    def _fetch_one(self, operation: str, query: str, params: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        rows = self._fetch_all(operation, query, params)
        return rows[0] if rows else None

    def _write(self, operation: str, query: str, params: Dict[str, Any]) -> int:
        """Execute one write in its own transaction and return rowcount."""
        with self._session_factory() as session:
            try:
                result = session.execute(text(query), params)
                session.commit()
                return result.rowcount
            except IntegrityError:
                session.rollback()
                raise
            except SQLAlchemyError as e:
                session.rollback()
                raise self._infrastructure(operation, e)

    # ========================================================================
    # Persons
    # ========================================================================

    def upsert_person(self, person: Person) -> Person:
        """Insert a person, or refresh its identity fields if it exists."""
        params = {
            "id": person.id,
            "display_name": person.display_name,
            "role": person.role,
            "strike_count": person.strike_count,
            "active": int(person.active),
        }
        updated = self._write(
            "upsert_person",
            """
            UPDATE persons
            SET display_name = :display_name, role = :role, active = :active
            WHERE id = :id
            """,
            params,
        )
        if updated == 0:
            self._write(
                "upsert_person",
                """
                INSERT INTO persons (id, display_name, role, strike_count, active, version)
                VALUES (:id, :display_name, :role, :strike_count, :active, 0)
                """,
                params,
            )
        return self.get_person(person.id)

    def get_person(self, person_id: str) -> Optional[Person]:
        row = self._fetch_one(
            "get_person",
            "SELECT id, display_name, role, strike_count, active, version FROM persons WHERE id = :id",
            {"id": person_id},
        )
        return Person.from_row(row) if row else None

    def set_strike_count(self, person_id: str, expected_version: int, strike_count: int) -> bool:
        """
        Compare-and-swap the strike counter.

        Returns:
            True if the stored version still matched and the write applied
        """
        rowcount = self._write(
            "set_strike_count",
            """
            UPDATE persons
            SET strike_count = :strike_count, version = version + 1
            WHERE id = :id AND version = :expected_version
            """,
            {
                "id": person_id,
                "strike_count": strike_count,
                "expected_version": expected_version,
            },
        )
        return rowcount == 1

    # ========================================================================
    # Shifts
    # ========================================================================

    def upsert_shift(self, shift: Shift) -> Shift:
        params = {
            "id": shift.id,
            "name": shift.name,
            "start_time": shift.start_time,
            "end_time": shift.end_time,
            "active": int(shift.active),
            "break_start": shift.break_start,
            "break_end": shift.break_end,
        }
        updated = self._write(
            "upsert_shift",
            """
            UPDATE shifts
            SET name = :name, start_time = :start_time, end_time = :end_time, active = :active,
                break_start = :break_start, break_end = :break_end
            WHERE id = :id
            """,
            params,
        )
        if updated == 0:
            self._write(
                "upsert_shift",
                """
                INSERT INTO shifts (id, name, start_time, end_time, active, break_start, break_end)
                VALUES (:id, :name, :start_time, :end_time, :active, :break_start, :break_end)
                """,
                params,
            )
        return shift

    def get_shift(self, shift_id: str) -> Optional[Shift]:
        row = self._fetch_one(
            "get_shift",
            SHIFT_SELECT + " WHERE id = :id",
            {"id": shift_id},
        )
        return Shift.from_row(row) if row else None

    def list_shifts(self) -> List[Shift]:
        rows = self._fetch_all(
            "list_shifts",
            SHIFT_SELECT + " ORDER BY start_time",
            {},
        )
        return [Shift.from_row(row) for row in rows]

    # ========================================================================
    # Holidays
    # ========================================================================

    def add_holiday(self, holiday: Holiday) -> Holiday:
        self._write(
            "add_holiday",
            """
            INSERT INTO holidays (id, holiday_date, description, shift_id)
            VALUES (:id, :holiday_date, :description, :shift_id)
            """,
            {
                "id": holiday.id,
                "holiday_date": format_date(holiday.holiday_date),
                "description": holiday.description,
                "shift_id": holiday.shift_id,
            },
        )
        return holiday

    def list_holidays(self, holiday_date: date) -> List[Holiday]:
        rows = self._fetch_all(
            "list_holidays",
            "SELECT id, holiday_date, description, shift_id FROM holidays WHERE holiday_date = :d",
            {"d": format_date(holiday_date)},
        )
        return [Holiday.from_row(row) for row in rows]

    # ========================================================================
    # Orders
    # ========================================================================

    def insert_order(self, order: Order) -> Order:
        """
        Insert a new PLACED order.

        Raises:
            DuplicateForDate: If the person already holds a live order for
                the date (lost race against a concurrent create)
        """
        try:
            self._write(
                "insert_order",
                f"""
                INSERT INTO orders ({ORDER_COLUMNS})
                VALUES (
                    :id, :person_id, :shift_id, :order_date, :status, :created_at,
                    NULL, NULL, NULL, NULL, NULL, 0, 0
                )
                """,
                {
                    "id": order.id,
                    "person_id": order.person_id,
                    "shift_id": order.shift_id,
                    "order_date": format_date(order.order_date),
                    "status": order.status,
                    "created_at": format_timestamp(order.created_at),
                },
            )
        except IntegrityError:
            raise DuplicateForDate(
                "Person already has an active order for this date",
                details={"person_id": order.person_id, "order_date": format_date(order.order_date)},
            )
        return order

    def get_order(self, order_id: str) -> Optional[Order]:
        row = self._fetch_one(
            "get_order",
            f"SELECT {ORDER_COLUMNS} FROM orders WHERE id = :id",
            {"id": order_id},
        )
        return Order.from_row(row) if row else None

    def find_live_order(self, person_id: str, order_date: date) -> Optional[Order]:
        row = self._fetch_one(
            "find_live_order",
            f"""
            SELECT {ORDER_COLUMNS} FROM orders
            WHERE person_id = :person_id AND order_date = :order_date
              AND status <> 'CANCELLED'
            """,
            {"person_id": person_id, "order_date": format_date(order_date)},
        )
        return Order.from_row(row) if row else None

    def conditional_update_order(
        self,
        order_id: str,
        expected_status: str,
        expected_version: int,
        new_status: str,
        fields: Optional[Dict[str, Any]] = None,
    ) -> bool:
        """
        Compare-and-swap an order's status.

        Applies only if the stored row still has expected_status and
        expected_version. Returns True for the single winning writer.
        """
        fields = dict(fields or {})
        unknown = set(fields) - TRANSITION_FIELDS
        if unknown:
            raise ValueError(f"cannot set order fields: {sorted(unknown)}")

        params: Dict[str, Any] = {
            "id": order_id,
            "expected_status": expected_status,
            "expected_version": expected_version,
            "new_status": new_status,
        }
        assignments = ["status = :new_status", "version = version + 1"]
        for name in sorted(fields):
            value = fields[name]
            if isinstance(value, datetime):
                value = format_timestamp(value)
            elif isinstance(value, bool):
                value = int(value)
            params[name] = value
            assignments.append(f"{name} = :{name}")

        rowcount = self._write(
            "conditional_update_order",
            f"""
            UPDATE orders
            SET {", ".join(assignments)}
            WHERE id = :id AND status = :expected_status AND version = :expected_version
            """,
            params,
        )
        return rowcount == 1

    def list_orders(
        self,
        start: date,
        end: date,
        person_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> List[Order]:
        """Read-only scan over orders with start <= order_date <= end."""
        clauses = ["order_date >= :start", "order_date <= :end"]
        params: Dict[str, Any] = {"start": format_date(start), "end": format_date(end)}
        if person_id:
            clauses.append("person_id = :person_id")
            params["person_id"] = person_id
        if status:
            clauses.append("status = :status")
            params["status"] = status

        rows = self._fetch_all(
            "list_orders",
            f"""
            SELECT {ORDER_COLUMNS} FROM orders
            WHERE {" AND ".join(clauses)}
            ORDER BY order_date, created_at
            """,
            params,
        )
        return [Order.from_row(row) for row in rows]

    def list_placed_orders_through(self, through: date) -> List[Order]:
        """PLACED orders dated on or before the given day, oldest first."""
        rows = self._fetch_all(
            "list_placed_orders_through",
            f"""
            SELECT {ORDER_COLUMNS} FROM orders
            WHERE status = :status AND order_date <= :through
            ORDER BY order_date, created_at
            """,
            {"status": OrderStatus.PLACED.value, "through": format_date(through)},
        )
        return [Order.from_row(row) for row in rows]

    def list_placed_orders_for_person(self, person_id: str, from_date: date) -> List[Order]:
        rows = self._fetch_all(
            "list_placed_orders_for_person",
            f"""
            SELECT {ORDER_COLUMNS} FROM orders
            WHERE person_id = :person_id AND status = :status AND order_date >= :from_date
            ORDER BY order_date
            """,
            {
                "person_id": person_id,
                "status": OrderStatus.PLACED.value,
                "from_date": format_date(from_date),
            },
        )
        return [Order.from_row(row) for row in rows]

    def daily_stats(self, stats_date: date) -> Dict[str, Any]:
        """Order counts per status for one day, plus the pickup rate."""
        rows = self._fetch_all(
            "daily_stats",
            """
            SELECT status, COUNT(*) AS total FROM orders
            WHERE order_date = :d
            GROUP BY status
            """,
            {"d": format_date(stats_date)},
        )
        counts = {status.value: 0 for status in OrderStatus}
        for row in rows:
            counts[row["status"]] = int(row["total"])

        live = sum(v for k, v in counts.items() if k != OrderStatus.CANCELLED.value)
        finished = counts[OrderStatus.COLLECTED.value] + counts[OrderStatus.NOT_COLLECTED.value]
        pickup_rate = (
            round(counts[OrderStatus.COLLECTED.value] / finished, 4) if finished else None
        )
        return {
            "date": format_date(stats_date),
            "counts": counts,
            "total_live": live,
            "pickup_rate": pickup_rate,
        }

    # ========================================================================
    # Restrictions
    # ========================================================================

    def insert_restriction(self, restriction: Restriction) -> Restriction:
        self._write(
            "insert_restriction",
            """
            INSERT INTO restrictions (id, person_id, reason, start_at, end_at, active, created_by, lifted_at)
            VALUES (:id, :person_id, :reason, :start_at, :end_at, :active, :created_by, NULL)
            """,
            {
                "id": restriction.id,
                "person_id": restriction.person_id,
                "reason": restriction.reason,
                "start_at": format_timestamp(restriction.start_at),
                "end_at": format_timestamp(restriction.end_at),
                "active": int(restriction.active),
                "created_by": restriction.created_by,
            },
        )
        return restriction

    def list_restrictions(self, person_id: str, active_only: bool = True) -> List[Restriction]:
        query = (
            "SELECT id, person_id, reason, start_at, end_at, active, created_by, lifted_at "
            "FROM restrictions WHERE person_id = :person_id"
        )
        if active_only:
            query += " AND active = 1"
        query += " ORDER BY start_at DESC"
        rows = self._fetch_all("list_restrictions", query, {"person_id": person_id})
        return [Restriction.from_row(row) for row in rows]

    def close_restriction(self, restriction_id: str, lifted_at: datetime) -> bool:
        """
        Clear the active flag and stamp the lift time. True if it was open.

        end_at is only pulled in to the lift time; an end already in the past
        keeps its recorded value.
        """
        rowcount = self._write(
            "close_restriction",
            """
            UPDATE restrictions
            SET active = 0,
                lifted_at = :lifted_at,
                end_at = CASE
                    WHEN end_at IS NULL OR end_at > :lifted_at THEN :lifted_at
                    ELSE end_at
                END
            WHERE id = :id AND active = 1
            """,
            {"id": restriction_id, "lifted_at": format_timestamp(lifted_at)},
        )
        return rowcount == 1

    # ========================================================================
    # Policy
    # ========================================================================

    def save_policy(self, payload: Dict[str, Any], updated_at: datetime, actor_id: str = "SYSTEM") -> None:
        params = {
            "payload": json.dumps(payload, sort_keys=True),
            "updated_at": format_timestamp(updated_at),
            "updated_by": actor_id,
        }
        updated = self._write(
            "save_policy",
            "UPDATE canteen_policy SET payload = :payload, updated_at = :updated_at, "
            "updated_by = :updated_by WHERE id = 1",
            params,
        )
        if updated == 0:
            self._write(
                "save_policy",
                "INSERT INTO canteen_policy (id, payload, updated_at, updated_by) "
                "VALUES (1, :payload, :updated_at, :updated_by)",
                params,
            )

    def load_policy(self) -> Optional[Dict[str, Any]]:
        row = self._fetch_one("load_policy", "SELECT payload FROM canteen_policy WHERE id = 1", {})
        return json.loads(row["payload"]) if row else None

    # ========================================================================
    # Audit log
    # ========================================================================

    def insert_audit(self, entry: Dict[str, Any]) -> None:
        self._write(
            "insert_audit",
            """
            INSERT INTO audit_log (
                id, actor_id, action, target_type, target_id,
                previous_state, new_state, payload, correlation_id,
                error_code, created_at
            ) VALUES (
                :id, :actor_id, :action, :target_type, :target_id,
                :previous_state, :new_state, :payload, :correlation_id,
                :error_code, :created_at
            )
            """,
            {
                "id": entry["id"],
                "actor_id": entry.get("actor_id"),
                "action": entry["action"],
                "target_type": entry.get("target_type"),
                "target_id": entry.get("target_id"),
                "previous_state": json.dumps(entry["previous_state"]) if entry.get("previous_state") else None,
                "new_state": json.dumps(entry["new_state"]) if entry.get("new_state") else None,
                "payload": json.dumps(entry.get("payload") or {}),
                "correlation_id": entry.get("correlation_id"),
                "error_code": entry.get("error_code"),
                "created_at": entry["created_at"],
            },
        )

    def list_audit(self, target_id: Optional[str] = None, limit: int = 100) -> List[Dict[str, Any]]:
        query = (
            "SELECT id, actor_id, action, target_type, target_id, previous_state, "
            "new_state, payload, correlation_id, error_code, created_at FROM audit_log"
        )
        params: Dict[str, Any] = {"limit": limit}
        if target_id:
            query += " WHERE target_id = :target_id"
            params["target_id"] = target_id
        query += " ORDER BY created_at DESC LIMIT :limit"
        rows = self._fetch_all("list_audit", query, params)
        for row in rows:
            for key in ("previous_state", "new_state", "payload"):
                if row.get(key):
                    row[key] = json.loads(row[key])
        return rows


__all__ = [
    "OrderStore",
    "SCHEMA_STATEMENTS",
]
