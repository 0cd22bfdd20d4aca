from datetime import timedelta

import pytest

from fastcoach.db.kv_store import InMemoryKeyValueStore
from fastcoach.db.notification_state import (
    DailyLimitTracker,
    ThrottleTracker,
    daily_count_key,
    throttle_key,
)
from fastcoach.models.notification_rule import ActivityType

from tests.conftest import FailingStore, local

HYDRATION = ActivityType.hydration


# ── Throttle ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_throttle_allows_when_nothing_recorded(store, tz):
    tracker = ThrottleTracker(store)
    assert await tracker.can_fire(HYDRATION, local(tz, 2024, 6, 10, 8), 180)


@pytest.mark.asyncio
async def test_throttle_boundary_is_inclusive(store, tz):
    tracker = ThrottleTracker(store)
    fired = local(tz, 2024, 6, 10, 8)
    await tracker.record_fired(HYDRATION, fired)

    assert await tracker.can_fire(HYDRATION, fired + timedelta(minutes=180), 180)
    assert not await tracker.can_fire(HYDRATION, fired + timedelta(minutes=179), 180)


@pytest.mark.asyncio
async def test_zero_throttle_always_allows(store, tz):
    tracker = ThrottleTracker(store)
    fired = local(tz, 2024, 6, 10, 8)
    await tracker.record_fired(HYDRATION, fired)
    assert await tracker.can_fire(HYDRATION, fired, 0)


@pytest.mark.asyncio
async def test_throttle_is_per_type(store, tz):
    tracker = ThrottleTracker(store)
    fired = local(tz, 2024, 6, 10, 8)
    await tracker.record_fired(HYDRATION, fired)
    assert await tracker.can_fire(ActivityType.mood, fired, 240)


@pytest.mark.asyncio
async def test_record_never_backdates(store, tz):
    tracker = ThrottleTracker(store)
    later = local(tz, 2024, 6, 10, 12)
    await tracker.record_fired(HYDRATION, later)
    await tracker.record_fired(HYDRATION, later - timedelta(hours=3))
    assert await tracker.last_fired(HYDRATION) == later


@pytest.mark.asyncio
async def test_record_is_stored_as_iso_instant(store, tz):
    tracker = ThrottleTracker(store)
    fired = local(tz, 2024, 6, 10, 8)
    await tracker.record_fired(HYDRATION, fired)
    assert store.snapshot()[throttle_key(HYDRATION)] == fired.isoformat()


@pytest.mark.asyncio
async def test_corrupt_throttle_value_fails_open(tz):
    store = InMemoryKeyValueStore({throttle_key(HYDRATION): "not a date"})
    tracker = ThrottleTracker(store)
    assert await tracker.can_fire(HYDRATION, local(tz, 2024, 6, 10, 8), 180)


@pytest.mark.asyncio
async def test_naive_throttle_value_fails_open(tz):
    store = InMemoryKeyValueStore({throttle_key(HYDRATION): "2024-06-10T08:00:00"})
    tracker = ThrottleTracker(store)
    assert await tracker.last_fired(HYDRATION) is None


@pytest.mark.asyncio
async def test_unreachable_store_fails_open(tz):
    tracker = ThrottleTracker(FailingStore())
    now = local(tz, 2024, 6, 10, 8)
    assert await tracker.can_fire(HYDRATION, now, 180)
    # Write failures are logged, not raised
    await tracker.record_fired(HYDRATION, now)


# ── Daily limit ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_daily_limit_boundary_and_next_day_reset(store, tz):
    tracker = DailyLimitTracker(store, tz)
    morning = local(tz, 2024, 6, 10, 8)

    assert await tracker.can_fire_today(HYDRATION, morning, 2)
    await tracker.record_fired(HYDRATION, morning)
    assert await tracker.can_fire_today(HYDRATION, morning, 2)     # 2nd of 2
    await tracker.record_fired(HYDRATION, morning + timedelta(hours=4))
    assert not await tracker.can_fire_today(HYDRATION, morning + timedelta(hours=5), 2)

    next_day = local(tz, 2024, 6, 11, 0, 1)
    assert await tracker.can_fire_today(HYDRATION, next_day, 2)


@pytest.mark.asyncio
async def test_day_key_is_local_calendar_day(store, tz):
    tracker = DailyLimitTracker(store, tz)
    # 23:30 in New York is already the next day in UTC
    late = local(tz, 2024, 6, 10, 23, 30)
    assert await tracker.record_fired(HYDRATION, late) == 1
    assert store.snapshot() == {daily_count_key(HYDRATION, "2024-06-10"): 1}


@pytest.mark.asyncio
async def test_corrupt_count_is_zero(tz):
    store = InMemoryKeyValueStore({daily_count_key(HYDRATION, "2024-06-10"): "many"})
    tracker = DailyLimitTracker(store, tz)
    assert await tracker.count_for(HYDRATION, local(tz, 2024, 6, 10, 8)) == 0


@pytest.mark.asyncio
async def test_unreachable_store_counts_zero(tz):
    tracker = DailyLimitTracker(FailingStore(), tz)
    now = local(tz, 2024, 6, 10, 8)
    assert await tracker.can_fire_today(HYDRATION, now, 1)
    assert await tracker.record_fired(HYDRATION, now) == 1


@pytest.mark.asyncio
async def test_record_prunes_old_days_of_same_type(tz):
    store = InMemoryKeyValueStore({
        daily_count_key(HYDRATION, "2024-05-01"): 3,
        daily_count_key(ActivityType.mood, "2024-05-01"): 1,
    })
    tracker = DailyLimitTracker(store, tz, retention_days=7)
    await tracker.record_fired(HYDRATION, local(tz, 2024, 6, 10, 8))

    keys = set(store.snapshot())
    assert daily_count_key(HYDRATION, "2024-05-01") not in keys
    assert daily_count_key(ActivityType.mood, "2024-05-01") in keys


@pytest.mark.asyncio
async def test_prune_keeps_retention_window(tz):
    store = InMemoryKeyValueStore({
        daily_count_key(HYDRATION, "2024-06-02"): 1,     # older than 7 days
        daily_count_key(HYDRATION, "2024-06-03"): 1,     # exactly 7 days back
        daily_count_key(ActivityType.mood, "2024-06-10"): 2,
        "dailyCount.mood.garbage": 5,
    })
    tracker = DailyLimitTracker(store, tz, retention_days=7)

    removed = await tracker.prune(local(tz, 2024, 6, 10, 0, 5))

    assert removed == 1
    assert set(store.snapshot()) == {
        daily_count_key(HYDRATION, "2024-06-03"),
        daily_count_key(ActivityType.mood, "2024-06-10"),
        "dailyCount.mood.garbage",
    }
