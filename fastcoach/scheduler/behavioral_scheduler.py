"""
Behavioral Notification Scheduler.

Decides whether, when and how often a behavioral notification is delivered.
Every call to ``schedule_guidance`` runs the same pipeline, in this order:

  1. rule lookup          unknown type / disabled / not applicable → drop
  2. trigger resolution   invalid trigger or missing event           → drop
  3. quiet hours          fire instant inside the window (unless the rule
                          allows it)                                 → drop
  4. throttle             too soon after the last delivery           → drop
  5. daily limit          type already at max for the local day      → drop
  6. deliver              hand off to the delivery channel, then record the
                          fire instant on both trackers

A dropped call never touches tracker state.  Nothing is raised to the
caller; the returned ``SchedulingDecision`` says what happened.

Calls for the same activity type are serialized by a per-type asyncio lock
held across the read-filter-write sequence, so two concurrent calls cannot
both pass the throttle check.  Different types never wait on each other.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Optional, Union

from fastcoach.core.config import settings
from fastcoach.db.kv_store import StateStoreError
from fastcoach.db.notification_state import DailyLimitTracker, ThrottleTracker
from fastcoach.db.settings_repository import NotificationSettingsRepository, default_quiet_hours
from fastcoach.models.guidance import (
    BehavioralContext,
    DropReason,
    ScheduledNotificationRequest,
    SchedulingDecision,
)
from fastcoach.models.notification_rule import (
    DEFAULT_RULES,
    ActivityType,
    NotificationRule,
    parse_activity_type,
)
from fastcoach.models.triggers import ImmediateTrigger, Trigger
from fastcoach.services.identifiers import build_identifier
from fastcoach.services.local_time import get_timezone, to_local
from fastcoach.services.notification_templates import build_message
from fastcoach.services.quiet_hours import QuietHoursWindow, is_quiet
from fastcoach.services.rule_predicates import is_applicable
from fastcoach.services.trigger_resolver import resolve

logger = logging.getLogger(__name__)


class BehavioralNotificationScheduler:
    def __init__(
        self,
        store,
        delivery,
        tz_name: Optional[str] = None,
        rules: Optional[dict[ActivityType, NotificationRule]] = None,
        quiet_hours: Optional[QuietHoursWindow] = None,
        retention_days: Optional[int] = None,
    ):
        self.tz = get_timezone(tz_name or settings.TIMEZONE)
        self.delivery = delivery
        self.repository = NotificationSettingsRepository(store)
        self.throttle = ThrottleTracker(store)
        self.daily_limit = DailyLimitTracker(
            store,
            self.tz,
            retention_days if retention_days is not None else settings.DAILY_COUNT_RETENTION_DAYS,
        )

        self._rules: dict[ActivityType, NotificationRule] = {**DEFAULT_RULES, **(rules or {})}
        self._quiet_hours = quiet_hours or default_quiet_hours()
        self._locks = {t: asyncio.Lock() for t in ActivityType}
        self._deliveries: dict[ActivityType, set[asyncio.Task]] = {t: set() for t in ActivityType}
        self._unsaved_rules: set[ActivityType] = set()
        self._unsaved_quiet_hours = False

    # ── Configuration ────────────────────────────────────────────────────────

    @property
    def rules(self) -> dict[ActivityType, NotificationRule]:
        return dict(self._rules)

    @property
    def quiet_hours(self) -> QuietHoursWindow:
        return self._quiet_hours

    def get_rule(self, activity_type: Union[str, ActivityType]) -> Optional[NotificationRule]:
        t = parse_activity_type(activity_type)
        return self._rules[t] if t is not None else None

    async def load_settings(self) -> None:
        """
        Reload rules and quiet hours from the persisted settings.

        Changes whose save failed stay in effect instead of being reverted to
        the stored values, and saving them is retried.
        """
        rules = await self.repository.load_rules()
        for t in sorted(self._unsaved_rules, key=lambda t: t.value):
            logger.warning("Keeping unsaved in-memory rule for %s, retrying save", t.value)
            rules[t] = self._rules[t]
            await self._persist_rule(rules[t])
        self._rules = rules

        if self._unsaved_quiet_hours:
            logger.warning("Keeping unsaved in-memory quiet hours, retrying save")
            await self._persist_quiet_hours(self._quiet_hours)
        else:
            self._quiet_hours = await self.repository.load_quiet_hours()
        logger.info(
            "Notification settings loaded: quiet hours %s (%s), %d/%d rules enabled",
            self._quiet_hours.describe(),
            "on" if self._quiet_hours.enabled else "off",
            sum(r.is_enabled for r in self._rules.values()),
            len(self._rules),
        )

    async def update_rule(
        self,
        activity_type: Union[str, ActivityType],
        config: Union[NotificationRule, dict[str, Any]],
    ) -> NotificationRule:
        """
        Replace the rule for ``activity_type``.

        ``config`` is either a complete rule or a dict of field changes applied
        to the current rule.  Invalid values raise ``ValueError`` /
        ``pydantic.ValidationError`` and leave the current rule in place.
        Already submitted notifications of the type are cancelled best-effort.
        """
        t = ActivityType(activity_type)
        if isinstance(config, NotificationRule):
            if config.activity_type != t:
                raise ValueError(
                    f"rule is for {config.activity_type.value}, not {t.value}"
                )
            rule = config
        else:
            rule = self._rules[t].replace(**config)

        async with self._locks[t]:
            self._rules[t] = rule
            # Let in-flight hand-offs of this type land so cancel_all sees them
            await self._drain_type(t)
            try:
                await asyncio.to_thread(self.delivery.cancel_all, t)
            except Exception as exc:
                logger.warning("Could not cancel pending %s notifications: %s", t.value, exc)

        await self._persist_rule(rule)
        logger.info(
            "Rule updated for %s: enabled=%s throttle=%dm max/day=%d quiet_ok=%s",
            t.value, rule.is_enabled, rule.throttle_minutes, rule.max_per_day,
            rule.allow_during_quiet_hours,
        )
        return rule

    async def _persist_rule(self, rule: NotificationRule) -> None:
        try:
            await self.repository.save_rule(rule)
        except StateStoreError as exc:
            self._unsaved_rules.add(rule.activity_type)
            logger.warning(
                "Rule for %s not persisted, kept in memory: %s", rule.activity_type.value, exc
            )
            return
        self._unsaved_rules.discard(rule.activity_type)

    async def update_quiet_hours(self, window: QuietHoursWindow) -> QuietHoursWindow:
        self._quiet_hours = window
        await self._persist_quiet_hours(window)
        logger.info("Quiet hours updated: %s (%s)", window.describe(), "on" if window.enabled else "off")
        return window

    async def _persist_quiet_hours(self, window: QuietHoursWindow) -> None:
        try:
            await self.repository.save_quiet_hours(window)
        except StateStoreError as exc:
            self._unsaved_quiet_hours = True
            logger.warning("Quiet hours not persisted, kept in memory: %s", exc)
            return
        self._unsaved_quiet_hours = False

    # ── Scheduling ───────────────────────────────────────────────────────────

    async def schedule_guidance(
        self,
        activity_type: Union[str, ActivityType],
        trigger: Optional[Trigger] = None,
        context: Optional[BehavioralContext] = None,
    ) -> SchedulingDecision:
        """
        Run the filter pipeline for one notification and deliver it if it
        passes.  ``trigger`` defaults to the rule's trigger, ``context`` to an
        empty context at the current instant.
        """
        t = parse_activity_type(activity_type)
        if t is None:
            return SchedulingDecision.dropped(activity_type, DropReason.unknown_type)

        if context is None:
            context = BehavioralContext(
                current_streak=0, recent_pattern="", time_of_day=datetime.now(timezone.utc),
            )

        try:
            async with self._locks[t]:
                return await self._run_pipeline(t, trigger, context)
        except Exception:
            logger.exception("Scheduling %s failed", t.value)
            return SchedulingDecision.dropped(t, DropReason.internal_error)

    async def _run_pipeline(
        self, t: ActivityType, trigger: Optional[Trigger], context: BehavioralContext
    ) -> SchedulingDecision:
        rule = self._rules[t]

        # ── 1. Rule ──────────────────────────────────────────────────────────
        if not rule.is_enabled:
            logger.info("Dropped %s: rule disabled", t.value)
            return SchedulingDecision.dropped(t, DropReason.disabled)
        if not is_applicable(rule, context, self.tz):
            logger.info("Dropped %s: not applicable (pattern=%r)", t.value, context.recent_pattern)
            return SchedulingDecision.dropped(t, DropReason.not_applicable)

        request = ScheduledNotificationRequest(
            activity_type=t, trigger=trigger or rule.trigger, context=context,
        )

        # ── 2. Trigger ───────────────────────────────────────────────────────
        request.fire_at = resolve(request.trigger, context, self.tz)
        if request.fire_at is None:
            logger.warning("Dropped %s: trigger %r did not resolve", t.value, request.trigger)
            return SchedulingDecision.dropped(t, DropReason.invalid_trigger)
        fire_at = request.fire_at
        logger.debug("%s resolves to %s", t.value, fire_at.isoformat())

        # ── 3. Quiet hours ───────────────────────────────────────────────────
        if not rule.allow_during_quiet_hours and is_quiet(fire_at, self._quiet_hours, self.tz):
            logger.info(
                "Dropped %s: %s is inside quiet hours %s",
                t.value, to_local(fire_at, self.tz).strftime("%H:%M"), self._quiet_hours.describe(),
            )
            return SchedulingDecision.dropped(t, DropReason.quiet_hours, fire_at)

        # ── 4. Throttle ──────────────────────────────────────────────────────
        if not await self.throttle.can_fire(t, fire_at, rule.throttle_minutes):
            logger.info("Dropped %s: throttled (%d min)", t.value, rule.throttle_minutes)
            return SchedulingDecision.dropped(t, DropReason.throttled, fire_at)

        # ── 5. Daily limit ───────────────────────────────────────────────────
        if not await self.daily_limit.can_fire_today(t, fire_at, rule.max_per_day):
            logger.info("Dropped %s: daily limit %d reached", t.value, rule.max_per_day)
            return SchedulingDecision.dropped(t, DropReason.daily_limit, fire_at)

        # ── 6. Deliver ───────────────────────────────────────────────────────
        message = build_message(rule, context, to_local(fire_at, self.tz))
        request.title = message.title
        request.body = message.body
        request.identifier = build_identifier(t, request.trigger.label(), fire_at)
        payload = message.to_payload(
            identifier=request.identifier,
            rule=rule,
            fire_at=fire_at,
            recent_pattern=context.recent_pattern,
        )
        self._hand_off(request, payload)

        await self.throttle.record_fired(t, fire_at)
        count = await self.daily_limit.record_fired(t, fire_at)
        logger.info(
            "Scheduled %s at %s (%s), %d/%d today",
            t.value, fire_at.isoformat(), request.identifier, count, rule.max_per_day,
        )
        return SchedulingDecision(
            activity_type=t.value,
            delivered=True,
            fire_at=fire_at,
            identifier=request.identifier,
        )

    def _hand_off(self, request: ScheduledNotificationRequest, payload: dict[str, str]) -> None:
        tasks = self._deliveries[request.activity_type]
        task = asyncio.create_task(self._deliver(request, payload))
        tasks.add(task)
        task.add_done_callback(tasks.discard)

    async def _deliver(self, request: ScheduledNotificationRequest, payload: dict[str, str]) -> None:
        try:
            await asyncio.to_thread(
                self.delivery.submit,
                request.fire_at,
                request.title,
                request.body,
                request.identifier,
                payload,
            )
        except Exception as exc:
            logger.error("Delivery of %s failed: %s", request.identifier, exc)

    async def drain(self) -> None:
        """Wait for every delivery hand-off started so far."""
        while any(self._deliveries.values()):
            for t in ActivityType:
                await self._drain_type(t)

    async def _drain_type(self, activity_type: ActivityType) -> None:
        tasks = self._deliveries[activity_type]
        while tasks:
            await asyncio.gather(*list(tasks), return_exceptions=True)

    # ── Diagnostics ──────────────────────────────────────────────────────────

    async def send_test_notification(
        self, activity_type: Union[str, ActivityType], now: Optional[datetime] = None
    ) -> SchedulingDecision:
        """
        Immediate notification of ``activity_type`` with a canned context that
        passes every applicability check except sleep outside 21:00-23:59.
        Still subject to quiet hours, throttle and the daily limit.
        """
        context = BehavioralContext(
            current_streak=3,
            recent_pattern="test",
            time_of_day=now or datetime.now(timezone.utc),
            data_value=12.0,
            goal_progress=0.5,
        )
        return await self.schedule_guidance(activity_type, ImmediateTrigger(), context)

    async def status(self, now: Optional[datetime] = None) -> dict[str, dict[str, Any]]:
        now = now or datetime.now(timezone.utc)
        report: dict[str, dict[str, Any]] = {}
        for t, rule in self._rules.items():
            last = await self.throttle.last_fired(t)
            report[t.value] = {
                "enabled":     rule.is_enabled,
                "last_fired":  last.isoformat() if last else None,
                "today_count": await self.daily_limit.count_for(t, now),
                "max_per_day": rule.max_per_day,
                "throttle_minutes": rule.throttle_minutes,
            }
        return report

    async def prune(self, now: Optional[datetime] = None) -> int:
        """Drop stale daily counters (run daily by the job scheduler)."""
        return await self.daily_limit.prune(now or datetime.now(timezone.utc))
