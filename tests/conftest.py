"""
Shared fixtures for the notification engine tests.

Everything runs against the in-memory store and delivery channel in the
America/New_York zone, which has both DST transitions.
"""

from datetime import datetime

import pytest
import pytz

from fastcoach.db.kv_store import InMemoryKeyValueStore, StateStoreError
from fastcoach.models.guidance import BehavioralContext
from fastcoach.scheduler.behavioral_scheduler import BehavioralNotificationScheduler
from fastcoach.services.delivery import InMemoryDeliveryChannel
from fastcoach.services.quiet_hours import QuietHoursWindow

TZ_NAME = "America/New_York"


class FailingStore:
    """Store whose every operation fails like an unreachable backend."""

    async def get(self, key, default=None):
        raise StateStoreError(f"read {key}: unavailable")

    async def set(self, key, value):
        raise StateStoreError(f"write {key}: unavailable")

    async def set_many(self, values):
        raise StateStoreError("write: unavailable")

    async def delete(self, key):
        raise StateStoreError(f"delete {key}: unavailable")

    async def keys(self, prefix=""):
        raise StateStoreError(f"list {prefix}*: unavailable")


class WriteFailingStore(InMemoryKeyValueStore):
    """In-memory store whose writes fail while ``writable`` is False."""

    writable = True

    async def set(self, key, value):
        if not self.writable:
            raise StateStoreError(f"write {key}: unavailable")
        await super().set(key, value)

    async def set_many(self, values):
        if not self.writable:
            raise StateStoreError("write: unavailable")
        await super().set_many(values)


def local(tz, year, month, day, hour, minute=0):
    """Aware datetime for a local wall time that exists exactly once."""
    return tz.localize(datetime(year, month, day, hour, minute), is_dst=None)


def make_context(now, **overrides):
    values = {
        "current_streak": 0,
        "recent_pattern": "steady",
        "time_of_day": now,
        "goal_progress": 0.2,
    }
    values.update(overrides)
    return BehavioralContext(**values)


@pytest.fixture
def tz():
    return pytz.timezone(TZ_NAME)


@pytest.fixture
def store():
    return InMemoryKeyValueStore()


@pytest.fixture
def delivery():
    return InMemoryDeliveryChannel()


@pytest.fixture
def quiet_hours():
    return QuietHoursWindow(start_hour=21, end_hour=7)


@pytest.fixture
def engine(store, delivery, quiet_hours):
    return BehavioralNotificationScheduler(
        store, delivery, tz_name=TZ_NAME, quiet_hours=quiet_hours, retention_days=7,
    )
