import asyncio
from datetime import datetime, timedelta

import pytest

from fastcoach.db.kv_store import InMemoryKeyValueStore
from fastcoach.db.notification_state import daily_count_key, throttle_key
from fastcoach.db.settings_repository import rule_key
from fastcoach.models.guidance import DropReason
from fastcoach.models.notification_rule import ActivityType, default_rule
from fastcoach.models.triggers import (
    EventOffsetTrigger,
    ImmediateTrigger,
    IntervalTrigger,
    TimeOfDayTrigger,
)
from fastcoach.scheduler.behavioral_scheduler import BehavioralNotificationScheduler
from fastcoach.services.delivery import InMemoryDeliveryChannel
from fastcoach.services.identifiers import extract_activity_type
from fastcoach.services.local_time import to_local
from fastcoach.services.quiet_hours import QuietHoursWindow

from tests.conftest import TZ_NAME, WriteFailingStore, local, make_context

HYDRATION = ActivityType.hydration


def _engine(store, delivery, quiet_hours, **rule_changes):
    rules = {
        t: default_rule(t).replace(**changes) for t, changes in rule_changes.items()
    }
    return BehavioralNotificationScheduler(
        store, delivery, tz_name=TZ_NAME, rules=rules, quiet_hours=quiet_hours,
    )


# ── End to end ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_hydration_day(store, delivery, tz):
    engine = _engine(
        store, delivery, QuietHoursWindow(start_hour=21, end_hour=7),
        hydration={"throttle_minutes": 180, "max_per_day": 2, "allow_during_quiet_hours": False},
    )
    at_0800 = local(tz, 2024, 6, 10, 8, 0)
    at_0900 = local(tz, 2024, 6, 10, 9, 0)
    at_1230 = local(tz, 2024, 6, 10, 12, 30)
    at_1600 = local(tz, 2024, 6, 10, 16, 0)

    first = await engine.schedule_guidance(HYDRATION, ImmediateTrigger(), make_context(at_0800))
    second = await engine.schedule_guidance(HYDRATION, ImmediateTrigger(), make_context(at_0900))
    third = await engine.schedule_guidance(HYDRATION, ImmediateTrigger(), make_context(at_1230))
    fourth = await engine.schedule_guidance(HYDRATION, ImmediateTrigger(), make_context(at_1600))
    await engine.drain()

    assert first.delivered and first.fire_at == at_0800
    assert not second.delivered and second.reason == DropReason.throttled
    assert third.delivered and third.fire_at == at_1230
    assert not fourth.delivered and fourth.reason == DropReason.daily_limit

    assert await engine.daily_limit.count_for(HYDRATION, at_1230) == 2
    assert await engine.throttle.last_fired(HYDRATION) == at_1230
    assert {p.identifier for p in delivery.for_type(HYDRATION)} == {
        first.identifier, third.identifier,
    }


# ── Precedence ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_quiet_hours_drop_leaves_state_untouched(engine, store, delivery, tz):
    night = local(tz, 2024, 6, 10, 22, 0)
    before = store.snapshot()

    decision = await engine.schedule_guidance(HYDRATION, ImmediateTrigger(), make_context(night))
    await engine.drain()

    assert decision.reason == DropReason.quiet_hours
    assert store.snapshot() == before
    assert delivery.pending == {}


@pytest.mark.asyncio
async def test_throttle_still_applies_when_quiet_hours_allowed(store, delivery, tz):
    engine = _engine(
        store, delivery, QuietHoursWindow(start_hour=21, end_hour=7),
        hydration={"allow_during_quiet_hours": True, "throttle_minutes": 180},
    )
    await engine.throttle.record_fired(HYDRATION, local(tz, 2024, 6, 10, 21, 30))
    before = store.snapshot()

    decision = await engine.schedule_guidance(
        HYDRATION, ImmediateTrigger(), make_context(local(tz, 2024, 6, 10, 22, 0))
    )

    assert decision.reason == DropReason.throttled
    assert store.snapshot() == before


@pytest.mark.asyncio
async def test_quiet_hours_checked_against_fire_instant(engine, tz):
    evening = local(tz, 2024, 6, 10, 20, 50)
    decision = await engine.schedule_guidance(
        HYDRATION, IntervalTrigger(seconds=900), make_context(evening)
    )
    assert decision.reason == DropReason.quiet_hours

    dawn = local(tz, 2024, 6, 11, 6, 50)
    decision = await engine.schedule_guidance(
        HYDRATION, IntervalTrigger(seconds=1200), make_context(dawn)
    )
    assert decision.delivered
    assert to_local(decision.fire_at, tz).hour == 7


@pytest.mark.asyncio
async def test_sleep_is_allowed_inside_quiet_hours(engine, tz):
    decision = await engine.schedule_guidance(
        ActivityType.sleep, ImmediateTrigger(), make_context(local(tz, 2024, 6, 10, 22, 15))
    )
    assert decision.delivered


# ── Drops ────────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_unknown_type_is_dropped_not_raised(engine, tz):
    decision = await engine.schedule_guidance(
        "steps", ImmediateTrigger(), make_context(local(tz, 2024, 6, 10, 9))
    )
    assert decision.reason == DropReason.unknown_type
    assert decision.activity_type == "steps"


@pytest.mark.asyncio
async def test_disabled_and_not_applicable(store, delivery, quiet_hours, tz):
    engine = _engine(store, delivery, quiet_hours, mood={"is_enabled": False})
    now = local(tz, 2024, 6, 10, 12)

    disabled = await engine.schedule_guidance(ActivityType.mood, None, make_context(now))
    assert disabled.reason == DropReason.disabled

    mid_fast = make_context(now, has_active_fast=False)
    not_applicable = await engine.schedule_guidance(HYDRATION, ImmediateTrigger(), mid_fast)
    assert not_applicable.reason == DropReason.not_applicable
    assert store.snapshot() == {}


@pytest.mark.asyncio
async def test_unresolvable_triggers_are_dropped(engine, store, tz):
    now = local(tz, 2024, 6, 10, 12)
    bad_hour = await engine.schedule_guidance(
        ActivityType.did_you_know, TimeOfDayTrigger(hour=25), make_context(now)
    )
    no_event = await engine.schedule_guidance(
        ActivityType.goal_reminder, EventOffsetTrigger(offset_minutes=-15), make_context(now)
    )
    assert bad_hour.reason == DropReason.invalid_trigger
    assert no_event.reason == DropReason.invalid_trigger
    assert store.snapshot() == {}


@pytest.mark.asyncio
async def test_unexpected_failure_becomes_internal_error(engine, tz, monkeypatch):
    async def boom(*args, **kwargs):
        raise RuntimeError("tracker exploded")

    monkeypatch.setattr(engine.throttle, "can_fire", boom)
    decision = await engine.schedule_guidance(
        HYDRATION, ImmediateTrigger(), make_context(local(tz, 2024, 6, 10, 12))
    )
    assert decision.reason == DropReason.internal_error


# ── Calendar ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_midnight_crossing_counts_on_next_day(store, delivery, tz):
    engine = _engine(store, delivery, QuietHoursWindow(start_hour=21, end_hour=7, enabled=False))
    before_midnight = local(tz, 2024, 6, 10, 23, 59)

    decision = await engine.schedule_guidance(
        HYDRATION, IntervalTrigger(seconds=300), make_context(before_midnight)
    )

    assert decision.delivered
    fire_local = to_local(decision.fire_at, tz)
    assert (fire_local.day, fire_local.hour, fire_local.minute) == (11, 0, 4)
    assert daily_count_key(HYDRATION, "2024-06-11") in store.snapshot()
    assert daily_count_key(HYDRATION, "2024-06-10") not in store.snapshot()


@pytest.mark.asyncio
async def test_spring_forward_time_of_day_is_delivered(store, delivery, tz):
    engine = _engine(store, delivery, QuietHoursWindow(start_hour=0, end_hour=0))
    decision = await engine.schedule_guidance(
        ActivityType.did_you_know,
        TimeOfDayTrigger(hour=2, minute=30),
        make_context(local(tz, 2024, 3, 10, 0, 30)),
    )
    assert decision.delivered
    fire_local = to_local(decision.fire_at, tz)
    assert (fire_local.hour, fire_local.minute) == (3, 30)


# ── Concurrency ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_concurrent_calls_for_one_type_deliver_once(engine, delivery, tz):
    now = local(tz, 2024, 6, 10, 12)
    decisions = await asyncio.gather(*[
        engine.schedule_guidance(HYDRATION, ImmediateTrigger(), make_context(now))
        for _ in range(5)
    ])
    await engine.drain()

    assert sum(d.delivered for d in decisions) == 1
    assert {d.reason for d in decisions if not d.delivered} == {DropReason.throttled}
    assert len(delivery.for_type(HYDRATION)) == 1


@pytest.mark.asyncio
async def test_different_types_are_independent(engine, tz):
    now = local(tz, 2024, 6, 10, 12)
    hydration, milestone = await asyncio.gather(
        engine.schedule_guidance(HYDRATION, ImmediateTrigger(), make_context(now)),
        engine.schedule_guidance(
            ActivityType.milestone, None, make_context(now, data_value=12.0)
        ),
    )
    assert hydration.delivered and milestone.delivered


# ── Delivery ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_delivered_payload(engine, delivery, tz):
    now = local(tz, 2024, 6, 10, 12)
    decision = await engine.schedule_guidance(HYDRATION, ImmediateTrigger(), make_context(now))
    await engine.drain()

    pending = delivery.pending[decision.identifier]
    assert extract_activity_type(pending.identifier) == HYDRATION
    assert pending.fire_at == now
    assert pending.title
    assert pending.data["sound"] == "false"
    assert pending.data["pattern"] == "steady"


@pytest.mark.asyncio
async def test_delivery_failure_is_logged_not_raised(engine, delivery, store, tz):
    delivery.fail_submissions = True
    now = local(tz, 2024, 6, 10, 12)

    decision = await engine.schedule_guidance(HYDRATION, ImmediateTrigger(), make_context(now))
    await engine.drain()

    assert decision.delivered
    assert delivery.pending == {}
    assert throttle_key(HYDRATION) in store.snapshot()


# ── Settings ─────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_update_rule_persists_and_cancels_pending(engine, delivery, store, tz):
    now = local(tz, 2024, 6, 10, 12)
    decision = await engine.schedule_guidance(HYDRATION, ImmediateTrigger(), make_context(now))
    await engine.drain()
    assert decision.identifier in delivery.pending

    rule = await engine.update_rule(HYDRATION, {"is_enabled": False})

    assert rule.is_enabled is False
    assert engine.get_rule(HYDRATION) == rule
    assert store.snapshot()[rule_key(HYDRATION, "enabled")] is False
    assert delivery.for_type(HYDRATION) == []
    assert decision.identifier in delivery.cancelled

    later = await engine.schedule_guidance(
        HYDRATION, ImmediateTrigger(), make_context(now + timedelta(hours=5))
    )
    assert later.reason == DropReason.disabled


@pytest.mark.asyncio
async def test_update_rule_rejects_invalid_config(engine):
    with pytest.raises(ValueError):
        await engine.update_rule(HYDRATION, {"max_per_day": 0})
    with pytest.raises(ValueError):
        await engine.update_rule(HYDRATION, default_rule(ActivityType.mood))
    assert engine.get_rule(HYDRATION) == default_rule(HYDRATION)


@pytest.mark.asyncio
async def test_update_rule_rejects_type_change_and_unknown_fields(engine, store):
    with pytest.raises(ValueError):
        await engine.update_rule(HYDRATION, {"activity_type": "mood"})
    with pytest.raises(ValueError):
        await engine.update_rule(HYDRATION, {"throttle": 5})
    assert engine.get_rule(HYDRATION) == default_rule(HYDRATION)
    assert engine.get_rule(ActivityType.mood) == default_rule(ActivityType.mood)
    assert store.snapshot() == {}


@pytest.mark.asyncio
async def test_update_rule_cancels_hand_off_still_in_flight(engine, delivery, tz):
    now = local(tz, 2024, 6, 10, 9)
    decision = await engine.schedule_guidance(HYDRATION, ImmediateTrigger(), make_context(now))
    assert decision.delivered

    await engine.update_rule(HYDRATION, {"is_enabled": False})
    await engine.drain()

    assert delivery.pending == {}
    assert decision.identifier in delivery.cancelled


@pytest.mark.asyncio
async def test_reload_keeps_changes_whose_save_failed():
    store = WriteFailingStore({rule_key(HYDRATION, "maxPerDay"): 8})
    engine = BehavioralNotificationScheduler(store, InMemoryDeliveryChannel(), tz_name=TZ_NAME)

    store.writable = False
    await engine.update_rule(HYDRATION, {"max_per_day": 3})
    await engine.update_quiet_hours(QuietHoursWindow(start_hour=23, end_hour=5))
    await engine.load_settings()
    assert engine.get_rule(HYDRATION).max_per_day == 3
    assert engine.quiet_hours.start == (23, 0)

    store.writable = True
    await engine.load_settings()
    assert store.snapshot()[rule_key(HYDRATION, "maxPerDay")] == 3
    assert store.snapshot()["quietHours.start"] == "23:00"

    await engine.load_settings()
    assert engine.get_rule(HYDRATION).max_per_day == 3
    assert engine.quiet_hours.start == (23, 0)



@pytest.mark.asyncio
async def test_update_quiet_hours_applies_immediately(engine, tz):
    await engine.update_quiet_hours(QuietHoursWindow(start_hour=11, end_hour=13))
    decision = await engine.schedule_guidance(
        HYDRATION, ImmediateTrigger(), make_context(local(tz, 2024, 6, 10, 12))
    )
    assert decision.reason == DropReason.quiet_hours


@pytest.mark.asyncio
async def test_load_settings_reads_store(tz):
    store = InMemoryKeyValueStore({
        rule_key(ActivityType.mood, "enabled"): False,
        "quietHours.start": "23:00",
        "quietHours.end": "05:30",
    })
    engine = BehavioralNotificationScheduler(store, InMemoryDeliveryChannel(), tz_name=TZ_NAME)
    await engine.load_settings()

    assert engine.get_rule(ActivityType.mood).is_enabled is False
    assert engine.quiet_hours.start == (23, 0)
    assert engine.quiet_hours.end == (5, 30)


# ── Diagnostics ──────────────────────────────────────────────────────────────

@pytest.mark.asyncio
async def test_send_test_notification_and_status(engine, tz):
    now = local(tz, 2024, 6, 10, 10)
    decision = await engine.send_test_notification(ActivityType.milestone, now)
    assert decision.delivered

    report = await engine.status(now)
    assert report["milestone"]["today_count"] == 1
    assert datetime.fromisoformat(report["milestone"]["last_fired"]) == now
    assert report["hydration"]["today_count"] == 0
    assert set(report) == {t.value for t in ActivityType}


@pytest.mark.asyncio
async def test_prune_drops_stale_counts(tz):
    store = InMemoryKeyValueStore({daily_count_key(HYDRATION, "2024-01-01"): 4})
    engine = BehavioralNotificationScheduler(store, InMemoryDeliveryChannel(), tz_name=TZ_NAME)
    assert await engine.prune(local(tz, 2024, 6, 10, 0, 5)) == 1
    assert store.snapshot() == {}
