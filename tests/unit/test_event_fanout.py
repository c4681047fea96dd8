"""
============================================================================
Unit Tests - Event Fan-out
============================================================================

Reliability Level: L5 Standard

Tests the event fan-out service:
- Subscriber registration and client-token correlation
- Targeted and broadcast delivery
- Non-blocking publish (full queues drop, never raise)
- SSE frame format and the stream generator with heartbeats
============================================================================
"""

import asyncio
import json
import os
import sys
import threading

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from app.api.events import sse_frames
from services.event_fanout import (
    CanteenEvent,
    CanteenEventType,
    ClientChannel,
    EVENT_VOCABULARY,
    EventFanout,
)


# =============================================================================
# Test Fixtures
# =============================================================================

@pytest.fixture
def fanout() -> EventFanout:
    return EventFanout(max_queue_size=3, max_recent_events=5)


def order_payload(order_id: str = "order-1"):
    return {"order": {"id": order_id, "status": "PLACED"}}


# =============================================================================
# Vocabulary and Frames
# =============================================================================

class TestEventVocabulary:

    def test_vocabulary_is_fixed(self) -> None:
        assert EVENT_VOCABULARY == {
            "order.created", "order.checkin", "order.cancelled", "order.noshow",
            "user.blacklisted", "user.unblocked", "user.strikesReset",
            "policy.updated", "shift.updated", "holiday.updated",
        }

    def test_unknown_event_type_refused(self, fanout) -> None:
        channel = fanout.subscribe("kiosk-1")

        result = fanout.publish("order.eaten", order_payload())

        assert result.success is False
        assert channel.drain() == []

    def test_sse_frame_format(self) -> None:
        event = CanteenEvent(
            type="order.created",
            payload=order_payload(),
            correlation_id="corr-1",
            timestamp="2025-03-10T01:00:00+00:00",
        )

        frame = event.to_sse()

        lines = frame.split("\n")
        assert lines[0] == "event: order.created"
        assert lines[1].startswith("data: ")
        assert frame.endswith("\n\n")
        data = json.loads(lines[1][len("data: "):])
        assert data["order"]["id"] == "order-1"
        assert data["timestamp"] == "2025-03-10T01:00:00+00:00"
        assert data["correlation_id"] == "corr-1"


# =============================================================================
# Subscribers
# =============================================================================

class TestSubscribers:

    def test_empty_token_rejected(self, fanout) -> None:
        with pytest.raises(ValueError):
            fanout.subscribe("  ")

    def test_same_token_gets_independent_channels(self, fanout) -> None:
        first = fanout.subscribe("kiosk-1")
        second = fanout.subscribe("kiosk-1")

        assert first.connection_id != second.connection_id
        assert fanout.connections_for("kiosk-1") == [first, second]
        assert fanout.connection_count == 2

        fanout.publish(CanteenEventType.ORDER_CREATED, order_payload())

        assert len(first.drain()) == 1
        assert len(second.drain()) == 1

    def test_unsubscribe(self, fanout) -> None:
        channel = fanout.subscribe("kiosk-1")

        assert fanout.unsubscribe(channel) is True
        assert fanout.unsubscribe(channel) is False
        assert channel.closed is True
        assert fanout.connection_count == 0

        result = fanout.publish(CanteenEventType.ORDER_CREATED, order_payload())
        assert result.channels_notified == 0

    def test_status_lists_clients(self, fanout) -> None:
        fanout.subscribe("kiosk-1", role="CANTEEN")
        fanout.publish(CanteenEventType.SHIFT_UPDATED, {"shift": {"id": "breakfast"}})

        status = fanout.get_status()

        assert status["total_connections"] == 1
        assert status["distinct_clients"] == 1
        assert status["clients"]["kiosk-1"][0]["role"] == "CANTEEN"
        assert status["event_counts"]["shift.updated"] == 1


# =============================================================================
# Delivery
# =============================================================================

class TestDelivery:

    def test_targeted_delivery(self, fanout) -> None:
        own = fanout.subscribe("phone-1", user_id="emp-1")
        other = fanout.subscribe("phone-2", user_id="emp-2")
        staff = fanout.subscribe("desk", role="ADMIN")
        anonymous = fanout.subscribe("wallboard")

        result = fanout.publish(
            CanteenEventType.USER_BLACKLISTED,
            {"user_id": "emp-1"},
            user_id="emp-1",
            roles=["ADMIN", "CANTEEN"],
        )

        assert result.channels_notified == 2
        assert len(own.drain()) == 1
        assert len(staff.drain()) == 1
        assert other.drain() == []
        assert anonymous.drain() == []

    def test_broadcast_reaches_everyone(self, fanout) -> None:
        channels = [fanout.subscribe(f"client-{i}", user_id=f"emp-{i}") for i in range(3)]

        fanout.publish(CanteenEventType.POLICY_UPDATED, {"policy": {}})

        assert all(len(channel.drain()) == 1 for channel in channels)

    def test_events_arrive_in_publish_order(self, fanout) -> None:
        channel = fanout.subscribe("kiosk-1")

        fanout.publish(CanteenEventType.ORDER_CREATED, order_payload())
        fanout.publish(CanteenEventType.ORDER_CHECKIN, order_payload())

        assert [event.type for event in channel.drain()] == ["order.created", "order.checkin"]

    def test_full_queue_drops_without_raising(self, fanout) -> None:
        slow = fanout.subscribe("slow-client")
        fast = fanout.subscribe("fast-client")

        for i in range(3):
            fanout.publish(CanteenEventType.ORDER_CREATED, order_payload(f"order-{i}"))
            fast.drain()

        result = fanout.publish(CanteenEventType.ORDER_CREATED, order_payload("order-overflow"))

        assert result.success is True
        assert result.channels_notified == 1
        assert result.channels_dropped == 1
        assert slow.dropped == 1
        assert [e.payload["order"]["id"] for e in slow.drain()] == ["order-0", "order-1", "order-2"]
        assert fanout.get_status()["dropped_total"] == 1

    def test_recent_events_are_bounded(self, fanout) -> None:
        for i in range(8):
            fanout.publish(CanteenEventType.ORDER_CREATED, order_payload(f"order-{i}"))

        recent = fanout.get_recent_events(limit=20)

        assert len(recent) == 5
        assert recent[-1]["payload"]["order"]["id"] == "order-7"
        assert fanout.get_event_counts()["order.created"] == 8

    @pytest.mark.asyncio
    async def test_publish_from_worker_thread_reaches_loop_channel(self, fanout) -> None:
        channel = fanout.subscribe("kiosk-1")

        worker = threading.Thread(
            target=fanout.publish,
            args=(CanteenEventType.ORDER_NOSHOW, order_payload()),
        )
        worker.start()
        worker.join()

        event = await channel.receive(timeout=1.0)
        assert event is not None
        assert event.type == "order.noshow"


# =============================================================================
# SSE Stream Generator
# =============================================================================

class TestSseFrames:

    @pytest.mark.asyncio
    async def test_stream_yields_connect_event_and_heartbeat(self, fanout) -> None:
        channel = fanout.subscribe("kiosk-1")
        disconnected = {"value": False}

        async def is_disconnected() -> bool:
            return disconnected["value"]

        frames = sse_frames(channel, fanout, is_disconnected, heartbeat_seconds=0.01)

        first = await frames.__anext__()
        assert first.startswith(": connected ")

        heartbeat = await frames.__anext__()
        assert heartbeat.startswith(": heartbeat ")

        fanout.publish(CanteenEventType.ORDER_CREATED, order_payload())
        frame = await frames.__anext__()
        assert frame.startswith("event: order.created\n")

        disconnected["value"] = True
        with pytest.raises(StopAsyncIteration):
            await frames.__anext__()

        assert fanout.connection_count == 0

    @pytest.mark.asyncio
    async def test_closing_stream_unsubscribes(self, fanout) -> None:
        channel = fanout.subscribe("kiosk-1")

        async def never_disconnected() -> bool:
            return False

        frames = sse_frames(channel, fanout, never_disconnected, heartbeat_seconds=0.01)
        await frames.__anext__()
        await frames.aclose()

        assert channel.closed is True
        assert fanout.connection_count == 0

    @pytest.mark.asyncio
    async def test_receive_times_out_with_none(self) -> None:
        channel = ClientChannel("kiosk-1")

        assert await channel.receive(timeout=0.01) is None
