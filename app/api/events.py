"""
============================================================================
Canteen Order Engine v1.0.0
Event Stream API - Server-Sent Events
============================================================================

Reliability Level: L5 Standard (best-effort delivery)
Input Constraints: client_token query parameter identifies the observer
Side Effects: Registers an observer channel for the life of the stream

ENDPOINTS:
    GET /api/events         - text/event-stream of engine events
    GET /api/events/status  - Connected observers and event counters

FRAMES:
    event: order.created
    data: {"order": {...}, "timestamp": "...", "correlation_id": "..."}

    A comment frame is sent every HEARTBEAT_INTERVAL_SECONDS without
    traffic so proxies keep the connection open.

============================================================================
"""

from typing import AsyncIterator, Awaitable, Callable, Dict, Any, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import StreamingResponse

from app.api.deps import get_current_actor, get_engine
from services.canteen_engine import CanteenEngine
from services.event_fanout import ClientChannel, EventFanout

import logging

# Configure module logger
logger = logging.getLogger(__name__)


HEARTBEAT_INTERVAL_SECONDS = 10

router = APIRouter()


async def sse_frames(
    channel: ClientChannel,
    fanout: EventFanout,
    is_disconnected: Callable[[], Awaitable[bool]],
    heartbeat_seconds: float = HEARTBEAT_INTERVAL_SECONDS,
) -> AsyncIterator[str]:
    """
    Yield SSE frames for one channel until the client goes away.

    The channel is unsubscribed when the generator finishes or is closed.
    """
    try:
        yield f": connected {channel.connection_id}\n\n"
        while not channel.closed:
            if await is_disconnected():
                break
            event = await channel.receive(timeout=heartbeat_seconds)
            if event is None:
                yield f": heartbeat {fanout.now().isoformat()}\n\n"
            else:
                yield event.to_sse()
    finally:
        fanout.unsubscribe(channel)


@router.get("", summary="Event Stream")
async def stream_events(
    request: Request,
    client_token: str = Query(..., min_length=1, description="Observer identity"),
    user_id: Optional[str] = Query(None, description="Receive events targeted at this user"),
    role: Optional[str] = Query(None, description="Receive events targeted at this role"),
    engine: CanteenEngine = Depends(get_engine),
) -> StreamingResponse:
    # Subscribe on the event loop so the channel binds to it
    channel = engine.fanout.subscribe(client_token, user_id=user_id, role=role)

    logger.info(
        f"[EVENTS-API] Stream opened | "
        f"client_token={client_token} | "
        f"connection_id={channel.connection_id}"
    )

    return StreamingResponse(
        sse_frames(channel, engine.fanout, request.is_disconnected),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


@router.get("/status", summary="Event Fan-out Status")
def events_status(
    actor_id: str = Depends(get_current_actor),
    engine: CanteenEngine = Depends(get_engine),
) -> Dict[str, Any]:
    return engine.fanout.get_status()


__all__ = ["router", "sse_frames", "HEARTBEAT_INTERVAL_SECONDS"]
