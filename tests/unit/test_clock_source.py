"""
============================================================================
Unit Tests - Clock Source
============================================================================

Tests the authoritative clock:
- Readings are expressed in the canteen timezone
- The cached offset from a time reference is applied
- A failed synchronization keeps the last known offset
- HttpTimeReference reads the Date header of a HEAD response
- Engine startup performs its first sync off the event loop thread
============================================================================
"""

import os
import threading
import sys
from datetime import datetime, timedelta, timezone
from email.utils import format_datetime

import httpx
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from services.clock_source import ClockSource, HttpTimeReference


FIXED_UTC = datetime(2025, 3, 10, 0, 30, tzinfo=timezone.utc)


class FakeReference:
    """Returns queued offsets; an Exception instance in the queue is raised."""

    def __init__(self, *results) -> None:
        self._results = list(results)
        self.calls = 0

    def fetch_offset(self, local_now) -> float:
        self.calls += 1
        result = self._results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result


# =============================================================================
# Reads
# =============================================================================

class TestClockReads:

    def test_now_is_in_canteen_zone(self) -> None:
        clock = ClockSource(timezone_name="Asia/Jakarta", local_now=lambda: FIXED_UTC)

        now = clock.now()

        assert now == FIXED_UTC
        assert now.utcoffset() == timedelta(hours=7)
        assert now.hour == 7

    def test_today_uses_local_calendar(self) -> None:
        # 20:00 UTC is already the next day in Jakarta
        late = datetime(2025, 3, 10, 20, 0, tzinfo=timezone.utc)
        clock = ClockSource(timezone_name="Asia/Jakarta", local_now=lambda: late)

        assert clock.today().isoformat() == "2025-03-11"

    def test_naive_wall_clock_is_treated_as_utc(self) -> None:
        clock = ClockSource(local_now=lambda: datetime(2025, 3, 10, 0, 30))

        assert clock.now() == FIXED_UTC

    def test_offset_ignored_without_reference(self) -> None:
        clock = ClockSource(local_now=lambda: FIXED_UTC)

        assert clock.sync() is None
        assert clock.now() == FIXED_UTC
        assert clock.reference_enabled is False

    def test_non_positive_sync_interval_rejected(self) -> None:
        with pytest.raises(ValueError):
            ClockSource(sync_interval_seconds=0)


# =============================================================================
# Synchronization
# =============================================================================

class TestClockSync:

    def test_offset_is_applied_after_sync(self) -> None:
        clock = ClockSource(reference=FakeReference(120.0), local_now=lambda: FIXED_UTC)

        assert clock.sync() == 120.0
        assert clock.now() == FIXED_UTC + timedelta(seconds=120)

    def test_failed_sync_keeps_last_offset(self) -> None:
        reference = FakeReference(30.0, httpx.ConnectError("reference unreachable"))
        clock = ClockSource(reference=reference, local_now=lambda: FIXED_UTC)

        clock.sync()
        assert clock.sync() == 30.0

        status = clock.get_status()
        assert clock.offset_seconds == 30.0
        assert status["sync_failures"] == 1
        assert "unreachable" in status["last_sync_error"]

    def test_failure_before_any_success_means_zero_offset(self) -> None:
        clock = ClockSource(
            reference=FakeReference(ValueError("no Date header")),
            local_now=lambda: FIXED_UTC,
        )

        assert clock.sync() == 0.0
        assert clock.now() == FIXED_UTC

    @pytest.mark.asyncio
    async def test_start_without_reference_is_a_no_op(self) -> None:
        clock = ClockSource(local_now=lambda: FIXED_UTC)

        await clock.start()

        assert clock.is_running is False
        await clock.stop()


# =============================================================================
# HTTP Time Reference
# =============================================================================

class TestHttpTimeReference:

    def _client(self, headers) -> httpx.Client:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "HEAD"
            return httpx.Response(200, headers=headers)

        return httpx.Client(transport=httpx.MockTransport(handler))

    def test_offset_from_date_header(self) -> None:
        reference_time = FIXED_UTC + timedelta(seconds=90)
        client = self._client({"date": format_datetime(reference_time, usegmt=True)})
        reference = HttpTimeReference("https://time.example.test", client=client)

        offset = reference.fetch_offset(lambda: FIXED_UTC)

        assert offset == pytest.approx(90.0)

    def test_missing_date_header_raises(self) -> None:
        reference = HttpTimeReference("https://time.example.test", client=self._client({}))

        with pytest.raises(ValueError):
            reference.fetch_offset(lambda: FIXED_UTC)

    def test_clock_survives_reference_failure(self) -> None:
        reference = HttpTimeReference("https://time.example.test", client=self._client({}))
        clock = ClockSource(reference=reference, local_now=lambda: FIXED_UTC)

        assert clock.sync() == 0.0
        assert clock.get_status()["sync_failures"] == 1


# =============================================================================
# Engine Startup
# =============================================================================

class ThreadRecordingReference:
    """Records which thread each fetch ran on."""

    def __init__(self, offset: float) -> None:
        self.offset = offset
        self.threads = []

    def fetch_offset(self, local_now) -> float:
        self.threads.append(threading.get_ident())
        return self.offset


class TestEngineStartup:

    @pytest.mark.asyncio
    async def test_first_sync_runs_off_the_event_loop(self, canteen) -> None:
        reference = ThreadRecordingReference(45.0)
        canteen.clock = ClockSource(
            timezone_name="Asia/Jakarta",
            reference=reference,
            local_now=lambda: FIXED_UTC,
            sync_interval_seconds=3600,
        )
        loop_thread = threading.get_ident()

        await canteen.start()
        try:
            assert reference.threads
            assert reference.threads[0] != loop_thread
            assert canteen.clock.offset_seconds == 45.0
        finally:
            await canteen.stop()
