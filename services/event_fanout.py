"""
============================================================================
Canteen Event Fan-out - Real-Time Event Broadcasting
============================================================================

Reliability Level: L5 Standard (best-effort delivery)
Traceability: All publishes include correlation_id

This module implements the EventFanout service:
- In-memory registry of open observer channels keyed by client token
- Broadcast of a fixed event vocabulary to every matching observer
- Optional targeting by user id or by role
- Counters and a short recent-events list for the status endpoint

DELIVERY CONTRACT:
    At-most-once, best-effort, per observer. A slow observer whose queue
    is full, or a channel whose event loop has gone away, misses the event
    and nobody else is affected. There is no replay log: the recent-events
    list is diagnostics only and is never re-sent to observers.

    publish() never raises. The operation that triggered it has already
    committed, so a notification failure is logged and swallowed.

EVENT TYPES:
    - order.created, order.checkin, order.cancelled, order.noshow
    - user.blacklisted, user.unblocked, user.strikesReset
    - policy.updated, shift.updated, holiday.updated

============================================================================
"""

from typing import Optional, Dict, Any, Callable, List, Iterable, Union
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
import asyncio
import json
import logging
import threading
import uuid

from app.observability.metrics import record_event_published, set_subscriber_count
from services.clock_source import system_utc_now

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

DEFAULT_CHANNEL_QUEUE_SIZE = 100
DEFAULT_RECENT_EVENTS_SIZE = 100


# =============================================================================
# Event Type Enum
# =============================================================================

class CanteenEventType(Enum):
    ORDER_CREATED = "order.created"
    ORDER_CHECKIN = "order.checkin"
    ORDER_CANCELLED = "order.cancelled"
    ORDER_NOSHOW = "order.noshow"
    USER_BLACKLISTED = "user.blacklisted"
    USER_UNBLOCKED = "user.unblocked"
    USER_STRIKES_RESET = "user.strikesReset"
    POLICY_UPDATED = "policy.updated"
    SHIFT_UPDATED = "shift.updated"
    HOLIDAY_UPDATED = "holiday.updated"


EVENT_VOCABULARY = frozenset(event.value for event in CanteenEventType)


# =============================================================================
# Event Data Classes
# =============================================================================

@dataclass
class CanteenEvent:
    """
    One published event.

    ============================================================================
    SSE FRAME:
    ============================================================================
    event: order.created
    data: {"order": {...}, "timestamp": "ISO8601", "correlation_id": "uuid"}
    ============================================================================
    """
    type: str
    payload: Dict[str, Any]
    correlation_id: str
    timestamp: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "payload": self.payload,
            "correlation_id": self.correlation_id,
            "timestamp": self.timestamp,
        }

    def data(self) -> Dict[str, Any]:
        """Body carried in the SSE data line."""
        body = dict(self.payload)
        body["timestamp"] = self.timestamp
        body["correlation_id"] = self.correlation_id
        return body

    def to_sse(self) -> str:
        return f"event: {self.type}\ndata: {json.dumps(self.data(), separators=(',', ':'))}\n\n"


@dataclass
class PublishResult:
    success: bool
    event_type: str
    correlation_id: str
    channels_notified: int
    channels_dropped: int = 0
    error_message: Optional[str] = None


# =============================================================================
# ClientChannel Class
# =============================================================================

class ClientChannel:
    """
    One open observer connection.

    The queue belongs to the event loop that was running when the channel
    was created. Publishers on other threads hand events over with
    call_soon_threadsafe; publishers on the loop thread enqueue directly.
    """

    def __init__(
        self,
        client_token: str,
        user_id: Optional[str] = None,
        role: Optional[str] = None,
        max_queue_size: int = DEFAULT_CHANNEL_QUEUE_SIZE,
        connected_at: Optional[datetime] = None,
    ) -> None:
        if max_queue_size <= 0:
            raise ValueError(f"max_queue_size must be positive, got: {max_queue_size}")

        self.client_token = client_token
        self.user_id = user_id
        self.role = role
        self.connection_id = str(uuid.uuid4())
        self.connected_at = connected_at or system_utc_now()
        self.delivered = 0
        self.dropped = 0

        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        try:
            self._loop: Optional[asyncio.AbstractEventLoop] = asyncio.get_running_loop()
        except RuntimeError:
            self._loop = None
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        self._closed = True

    def matches(self, user_id: Optional[str], roles: Optional[Iterable[str]]) -> bool:
        """Targeting filter. No target means everyone."""
        if user_id is None and not roles:
            return True
        if user_id is not None and self.user_id == user_id:
            return True
        if roles and self.role is not None and self.role in set(roles):
            return True
        return False

    def offer(self, event: CanteenEvent) -> bool:
        """
        Try to enqueue an event without blocking.

        Returns:
            False if the channel is closed, full, or its loop is gone
        """
        if self._closed:
            return False

        if self._queue.full():
            self.dropped += 1
            return False

        if self._loop is None or self._on_own_loop():
            try:
                self._queue.put_nowait(event)
            except asyncio.QueueFull:
                self.dropped += 1
                return False
            self.delivered += 1
            return True

        try:
            self._loop.call_soon_threadsafe(self._put_from_loop, event)
        except RuntimeError:
            # Loop closed underneath us
            self._closed = True
            self.dropped += 1
            return False
        self.delivered += 1
        return True

    def _on_own_loop(self) -> bool:
        try:
            return asyncio.get_running_loop() is self._loop
        except RuntimeError:
            return False

    def _put_from_loop(self, event: CanteenEvent) -> None:
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            self.delivered -= 1
            self.dropped += 1

    async def receive(self, timeout: float) -> Optional[CanteenEvent]:
        """Wait up to timeout seconds for the next event."""
        try:
            return await asyncio.wait_for(self._queue.get(), timeout)
        except asyncio.TimeoutError:
            return None

    def drain(self) -> List[CanteenEvent]:
        """Take every queued event without waiting."""
        events = []
        while True:
            try:
                events.append(self._queue.get_nowait())
            except asyncio.QueueEmpty:
                return events

    def describe(self) -> Dict[str, Any]:
        return {
            "connection_id": self.connection_id,
            "client_token": self.client_token,
            "user_id": self.user_id,
            "role": self.role,
            "connected_at": self.connected_at.isoformat(),
            "delivered": self.delivered,
            "dropped": self.dropped,
            "queued": self._queue.qsize(),
        }


# =============================================================================
# EventFanout Class
# =============================================================================

class EventFanout:
    """
    Event fan-out service.

    ============================================================================
    RESPONSIBILITIES:
    ============================================================================
    1. Register and unregister observer channels
    2. Correlate connections sharing a client token (no deduplication)
    3. Publish events to every matching channel without blocking
    4. Keep counters and a short recent-events list for diagnostics
    ============================================================================

    THREAD SAFETY:
        The registry, counters and recent-events list are lock-guarded.
        Delivery happens outside the registry lock.
    """

    def __init__(
        self,
        max_queue_size: int = DEFAULT_CHANNEL_QUEUE_SIZE,
        max_recent_events: int = DEFAULT_RECENT_EVENTS_SIZE,
        now: Optional[Callable[[], datetime]] = None,
    ) -> None:
        if max_recent_events <= 0:
            raise ValueError(f"max_recent_events must be positive, got: {max_recent_events}")

        # Event timestamps come from the engine clock, never the host clock
        self._now = now or system_utc_now
        self._max_queue_size = max_queue_size
        self._max_recent_events = max_recent_events

        self._channels: Dict[str, List[ClientChannel]] = {}
        self._channels_lock = threading.Lock()

        self._recent_events: List[CanteenEvent] = []
        self._event_counts: Dict[str, int] = {name: 0 for name in sorted(EVENT_VOCABULARY)}
        self._dropped_total = 0
        self._stats_lock = threading.Lock()

        logger.info(
            f"[EVENT-FANOUT] Initialized | "
            f"max_queue_size={max_queue_size} | "
            f"max_recent_events={max_recent_events}"
        )

    # =========================================================================
    # Subscriber Management
    # =========================================================================

    def subscribe(
        self,
        client_token: str,
        user_id: Optional[str] = None,
        role: Optional[str] = None,
    ) -> ClientChannel:
        """
        Open a channel for an observer.

        Raises:
            ValueError: If client_token is empty
        """
        if not client_token or not client_token.strip():
            raise ValueError("client_token is required")

        channel = ClientChannel(
            client_token=client_token.strip(),
            user_id=user_id,
            role=role,
            max_queue_size=self._max_queue_size,
            connected_at=self._now(),
        )

        with self._channels_lock:
            siblings = self._channels.setdefault(channel.client_token, [])
            siblings.append(channel)
            sibling_count = len(siblings)
            total = self._count_locked()

        set_subscriber_count(total)
        logger.info(
            f"[EVENT-FANOUT] Observer connected | "
            f"client_token={channel.client_token} | "
            f"connection_id={channel.connection_id} | "
            f"user_id={user_id} | "
            f"role={role} | "
            f"connections_for_token={sibling_count} | "
            f"total_connections={total}"
        )
        return channel

    def unsubscribe(self, channel: ClientChannel) -> bool:
        channel.close()
        with self._channels_lock:
            siblings = self._channels.get(channel.client_token, [])
            if channel not in siblings:
                return False
            siblings.remove(channel)
            if not siblings:
                del self._channels[channel.client_token]
            total = self._count_locked()

        set_subscriber_count(total)
        logger.info(
            f"[EVENT-FANOUT] Observer disconnected | "
            f"client_token={channel.client_token} | "
            f"connection_id={channel.connection_id} | "
            f"delivered={channel.delivered} | "
            f"dropped={channel.dropped} | "
            f"total_connections={total}"
        )
        return True

    def connections_for(self, client_token: str) -> List[ClientChannel]:
        with self._channels_lock:
            return list(self._channels.get(client_token, []))

    def _count_locked(self) -> int:
        return sum(len(group) for group in self._channels.values())

    def _snapshot(self) -> List[ClientChannel]:
        with self._channels_lock:
            return [channel for group in self._channels.values() for channel in group]

    def now(self) -> datetime:
        return self._now()

    @property
    def connection_count(self) -> int:
        with self._channels_lock:
            return self._count_locked()

    # =========================================================================
    # Publishing
    # =========================================================================

    def publish(
        self,
        event_type: Union[CanteenEventType, str],
        payload: Dict[str, Any],
        user_id: Optional[str] = None,
        roles: Optional[Iterable[str]] = None,
        correlation_id: Optional[str] = None,
    ) -> PublishResult:
        """
        Publish an event to every matching observer.

        Args:
            event_type: One of the fixed vocabulary
            payload: JSON-serializable entity data
            user_id: Deliver only to this user's connections (plus roles)
            roles: Deliver only to connections with one of these roles
            correlation_id: Audit trail identifier

        Returns:
            PublishResult; never raises
        """
        correlation_id = correlation_id or str(uuid.uuid4())
        name = event_type.value if isinstance(event_type, CanteenEventType) else str(event_type)

        try:
            if name not in EVENT_VOCABULARY:
                logger.warning(
                    f"[EVENT-FANOUT] Unknown event type refused | "
                    f"event_type={name} | "
                    f"correlation_id={correlation_id}"
                )
                return PublishResult(
                    success=False,
                    event_type=name,
                    correlation_id=correlation_id,
                    channels_notified=0,
                    error_message=f"unknown event type: {name}",
                )

            event = CanteenEvent(
                type=name,
                payload=payload,
                correlation_id=correlation_id,
                timestamp=self._now().isoformat(),
            )
            role_list = list(roles) if roles else None

            notified = 0
            dropped = 0
            for channel in self._snapshot():
                if not channel.matches(user_id, role_list):
                    continue
                if channel.offer(event):
                    notified += 1
                else:
                    dropped += 1

            with self._stats_lock:
                self._event_counts[name] += 1
                self._dropped_total += dropped
                self._recent_events.append(event)
                if len(self._recent_events) > self._max_recent_events:
                    del self._recent_events[: len(self._recent_events) - self._max_recent_events]

            record_event_published(name, dropped)

            logger.info(
                f"[EVENT-FANOUT] Event published | "
                f"event_type={name} | "
                f"notified={notified} | "
                f"dropped={dropped} | "
                f"correlation_id={correlation_id}"
            )
            return PublishResult(
                success=True,
                event_type=name,
                correlation_id=correlation_id,
                channels_notified=notified,
                channels_dropped=dropped,
            )

        except Exception as e:
            logger.error(
                f"[EVENT-FANOUT] Publish failed | "
                f"event_type={name} | "
                f"error={str(e)} | "
                f"correlation_id={correlation_id}"
            )
            return PublishResult(
                success=False,
                event_type=name,
                correlation_id=correlation_id,
                channels_notified=0,
                error_message=str(e),
            )

    # =========================================================================
    # Status
    # =========================================================================

    def get_event_counts(self) -> Dict[str, int]:
        with self._stats_lock:
            return dict(self._event_counts)

    def get_recent_events(self, limit: int = 20) -> List[Dict[str, Any]]:
        with self._stats_lock:
            return [event.to_dict() for event in self._recent_events[-limit:]]

    def get_status(self) -> Dict[str, Any]:
        with self._channels_lock:
            clients = {
                token: [channel.describe() for channel in group]
                for token, group in self._channels.items()
            }
            total = self._count_locked()
        with self._stats_lock:
            counts = dict(self._event_counts)
            dropped = self._dropped_total
        return {
            "total_connections": total,
            "distinct_clients": len(clients),
            "clients": clients,
            "event_counts": counts,
            "dropped_total": dropped,
        }


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "CanteenEventType",
    "EVENT_VOCABULARY",
    "CanteenEvent",
    "PublishResult",
    "ClientChannel",
    "EventFanout",
]
