"""
============================================================================
Canteen Order Engine - Shared Test Fixtures
============================================================================

Every engine built here gets its own SQLite file under tmp_path and a
mutable wall clock, so tests drive time explicitly.

============================================================================
"""

import os
import sys
import uuid
from datetime import datetime, timedelta
from typing import Callable, List, Optional
from zoneinfo import ZoneInfo

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..'))

from app.database.session import build_engine, build_session_factory
from services.canteen_config import CanteenConfig
from services.canteen_engine import CanteenEngine
from services.canteen_models import Person, Shift, PersonRole
from services.event_fanout import CanteenEvent, ClientChannel
from services.policy_store import Policy


TZ = ZoneInfo("Asia/Jakarta")

# Monday; every scenario starts from here unless it moves the clock
START = datetime(2025, 3, 10, 1, 0, tzinfo=TZ)

ADMIN_ID = "admin-1"


class MutableClock:
    """Callable wall clock the tests can set and advance."""

    def __init__(self, start: datetime) -> None:
        self._now = start

    def __call__(self) -> datetime:
        return self._now

    def set(self, value: datetime) -> None:
        self._now = value

    def advance(self, **kwargs) -> datetime:
        self._now = self._now + timedelta(**kwargs)
        return self._now


def seed(engine: CanteenEngine) -> None:
    """Two shifts and three persons used across the suite."""
    engine.store.upsert_shift(Shift(id="breakfast", name="Breakfast", start_time="08:00", end_time="09:00"))
    engine.store.upsert_shift(Shift(id="night", name="Night", start_time="22:00", end_time="06:00"))
    engine.store.upsert_person(Person(id="emp-1", display_name="Employee One"))
    engine.store.upsert_person(Person(id="emp-2", display_name="Employee Two"))
    engine.store.upsert_person(Person(id=ADMIN_ID, display_name="Admin", role=PersonRole.ADMIN.value))


@pytest.fixture
def wall_clock() -> MutableClock:
    return MutableClock(START)


@pytest.fixture
def clock_factory() -> Callable[..., MutableClock]:
    """Fresh clocks for tests that build several engines (hypothesis)."""
    def build(start: datetime = START) -> MutableClock:
        return MutableClock(start)

    return build


@pytest.fixture
def engine_factory(tmp_path) -> Callable[..., CanteenEngine]:
    """
    Build an isolated engine.

    Keyword Args:
        wall_clock: MutableClock driving ClockSource (a fresh one by default)
        policy: Initial Policy
        seeded: Insert the standard shifts and persons
    """
    def build(
        wall_clock: Optional[MutableClock] = None,
        policy: Optional[Policy] = None,
        seeded: bool = True,
    ) -> CanteenEngine:
        db_path = tmp_path / f"canteen-{uuid.uuid4().hex}.db"
        db_engine = build_engine(f"sqlite:///{db_path}")
        config = CanteenConfig(
            timezone_name="Asia/Jakarta",
            admin_ids={ADMIN_ID},
            policy=policy or Policy(),
        )
        engine = CanteenEngine.build(
            config,
            build_session_factory(db_engine),
            db_engine=db_engine,
            local_now=wall_clock or MutableClock(START),
        )
        if seeded:
            seed(engine)
        return engine

    return build


@pytest.fixture
def canteen(engine_factory, wall_clock) -> CanteenEngine:
    return engine_factory(wall_clock=wall_clock)


@pytest.fixture
def observer(canteen) -> ClientChannel:
    """A channel with no event loop; events land directly in its queue."""
    return canteen.fanout.subscribe("test-observer", role="ADMIN")


def event_types(channel: ClientChannel) -> List[str]:
    return [event.type for event in channel.drain()]


@pytest.fixture
def drain_types() -> Callable[[ClientChannel], List[str]]:
    return event_types


@pytest.fixture
def drain_events() -> Callable[[ClientChannel], List[CanteenEvent]]:
    return lambda channel: channel.drain()
