"""
============================================================================
Canteen Order Engine - Clock Source
============================================================================

Reliability Level: L6 Critical (Order Integrity)
Traceability: Offset synchronization is logged with correlation_id

The single authority for "now". Every cutoff, horizon, collection-window
and sweep comparison reads ClockSource.now(); nothing else in the engine
reads the wall clock directly.

    now() = local wall clock + cached offset     (reference enabled)
    now() = local wall clock                     (reference disabled)

The offset comes from an external time reference (the Date header of an
HTTP endpoint). A failed synchronization keeps the last known offset, or
zero if none was ever obtained. It is logged and never raised, so a
reference outage cannot make the engine refuse requests.

============================================================================
"""

from typing import Optional, Callable, Dict, Any
from datetime import datetime, date, timedelta, timezone
from email.utils import parsedate_to_datetime
import asyncio
import logging
import threading
import uuid

import httpx
from zoneinfo import ZoneInfo

# Configure module logger
logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

DEFAULT_REFERENCE_TIMEOUT_SECONDS = 5.0


def system_utc_now() -> datetime:
    """Local wall clock as an aware UTC datetime."""
    return datetime.now(timezone.utc)


# =============================================================================
# HttpTimeReference Class
# =============================================================================

class HttpTimeReference:
    """
    Time reference that trusts the Date header of an HTTP endpoint.

    The offset is measured against the midpoint of the request round trip,
    which halves the error introduced by network latency. Resolution is one
    second, which is ample for minute-granularity cutoffs.
    """

    def __init__(
        self,
        url: str,
        timeout_seconds: float = DEFAULT_REFERENCE_TIMEOUT_SECONDS,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self._url = url
        self._timeout_seconds = timeout_seconds
        self._client = client

    @property
    def url(self) -> str:
        return self._url

    def fetch_offset(self, local_now: Callable[[], datetime]) -> float:
        """
        Measure reference time minus local time, in seconds.

        Raises:
            httpx.HTTPError: On transport failure
            ValueError: If the response carries no usable Date header
        """
        sent_at = local_now()
        if self._client is not None:
            response = self._client.head(self._url, timeout=self._timeout_seconds)
        else:
            with httpx.Client(timeout=self._timeout_seconds, follow_redirects=True) as client:
                response = client.head(self._url)
        received_at = local_now()

        header = response.headers.get("date")
        if not header:
            raise ValueError(f"no Date header from {self._url}")

        reference_time = parsedate_to_datetime(header)
        if reference_time.tzinfo is None:
            reference_time = reference_time.replace(tzinfo=timezone.utc)

        midpoint = sent_at + (received_at - sent_at) / 2
        return (reference_time - midpoint).total_seconds()


# =============================================================================
# ClockSource Class
# =============================================================================

class ClockSource:
    """
    Authoritative clock for the engine.

    Args:
        timezone_name: IANA zone shift times are expressed in
        reference: Object with fetch_offset(local_now) -> float, or None
            to serve the local clock unmodified
        local_now: Wall clock returning aware datetimes; injectable so the
            engine can be driven deterministically
        sync_interval_seconds: Interval for the background sync loop
    """

    def __init__(
        self,
        timezone_name: str = "Asia/Jakarta",
        reference: Optional[Any] = None,
        local_now: Optional[Callable[[], datetime]] = None,
        sync_interval_seconds: int = 3600,
    ) -> None:
        if sync_interval_seconds <= 0:
            raise ValueError(
                f"sync_interval_seconds must be positive, got: {sync_interval_seconds}"
            )

        self._tz = ZoneInfo(timezone_name)
        self._timezone_name = timezone_name
        self._reference = reference
        self._local_now = local_now or system_utc_now
        self._sync_interval_seconds = sync_interval_seconds

        self._offset_seconds = 0.0
        self._last_sync_at: Optional[datetime] = None
        self._last_sync_error: Optional[str] = None
        self._sync_failures = 0
        self._lock = threading.Lock()

        self._running = False
        self._task: Optional[asyncio.Task] = None

        logger.info(
            f"[CLOCK-SOURCE] Initialized | "
            f"timezone={timezone_name} | "
            f"reference_enabled={reference is not None}"
        )

    @property
    def tz(self) -> ZoneInfo:
        return self._tz

    @property
    def offset_seconds(self) -> float:
        return self._offset_seconds

    @property
    def reference_enabled(self) -> bool:
        return self._reference is not None

    @property
    def is_running(self) -> bool:
        return self._running

    # =========================================================================
    # Reads
    # =========================================================================

    def now(self) -> datetime:
        """Current instant, corrected by the cached offset, in the canteen zone."""
        local = self._local_now()
        if local.tzinfo is None:
            local = local.replace(tzinfo=timezone.utc)
        if self._reference is not None:
            local = local + timedelta(seconds=self._offset_seconds)
        return local.astimezone(self._tz)

    def today(self) -> date:
        """Calendar date in the canteen zone."""
        return self.now().date()

    # =========================================================================
    # Synchronization
    # =========================================================================

    def sync(self) -> Optional[float]:
        """
        Refresh the cached offset from the reference.

        Returns:
            The offset now in effect, or None if no reference is configured
        """
        if self._reference is None:
            return None

        correlation_id = str(uuid.uuid4())

        try:
            offset = float(self._reference.fetch_offset(self._local_now))
        except Exception as e:
            with self._lock:
                self._sync_failures += 1
                self._last_sync_error = str(e)
                offset = self._offset_seconds
            logger.warning(
                f"[CLOCK-SOURCE] Time reference sync failed, keeping last offset | "
                f"offset_seconds={offset} | "
                f"error={str(e)} | "
                f"correlation_id={correlation_id}"
            )
            return offset

        with self._lock:
            self._offset_seconds = offset
            self._last_sync_at = self._local_now()
            self._last_sync_error = None

        logger.info(
            f"[CLOCK-SOURCE] Offset synchronized | "
            f"offset_seconds={offset:.3f} | "
            f"correlation_id={correlation_id}"
        )
        return offset

    async def start(self) -> None:
        """Start the periodic synchronization task."""
        if self._reference is None:
            logger.info("[CLOCK-SOURCE] Time reference disabled, sync loop not started")
            return
        if self._running:
            logger.warning("[CLOCK-SOURCE] Already running, ignoring start request")
            return

        self._running = True
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            f"[CLOCK-SOURCE] Started | "
            f"sync_interval_seconds={self._sync_interval_seconds}"
        )

    async def stop(self) -> None:
        """Stop the periodic synchronization task."""
        if not self._running:
            return

        self._running = False
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

        logger.info("[CLOCK-SOURCE] Stopped")

    async def _run_loop(self) -> None:
        loop = asyncio.get_running_loop()
        while self._running:
            # sync() performs blocking I/O
            await loop.run_in_executor(None, self.sync)
            try:
                await asyncio.sleep(self._sync_interval_seconds)
            except asyncio.CancelledError:
                break

    def get_status(self) -> Dict[str, Any]:
        return {
            "timezone": self._timezone_name,
            "reference_enabled": self._reference is not None,
            "offset_seconds": self._offset_seconds,
            "last_sync_at": self._last_sync_at.isoformat() if self._last_sync_at else None,
            "last_sync_error": self._last_sync_error,
            "sync_failures": self._sync_failures,
            "now": self.now().isoformat(),
        }


# =============================================================================
# Module Exports
# =============================================================================

__all__ = [
    "ClockSource",
    "HttpTimeReference",
    "system_utc_now",
]
