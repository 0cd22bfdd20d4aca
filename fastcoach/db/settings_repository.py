"""
Reads and writes the user's notification settings.

Key layout:
    quietHours.start / quietHours.end      int hour or "HH:MM"
    quietHours.enabled                     bool
    rule.<type>.enabled                    bool
    rule.<type>.throttleMinutes            int
    rule.<type>.maxPerDay                  int
    rule.<type>.allowQuietHours            bool
    rule.<type>.trigger                    JSON trigger document
    rule.<type>.tone|sound|interruption   payload presentation
    rule.<type>.legacy                     v1 rule JSON (read-only, migrated)

Anything missing falls back to the type's default; anything that does not
validate is logged and replaced by the default for the whole rule.
"""

import json
import logging
from typing import Any

from pydantic import ValidationError

from fastcoach.core.config import settings
from fastcoach.db.kv_store import StateStoreError
from fastcoach.models.notification_rule import (
    ActivityType,
    NotificationRule,
    default_rule,
)
from fastcoach.services.quiet_hours import QuietHoursWindow, parse_clock

logger = logging.getLogger(__name__)

# persisted suffix → NotificationRule field
RULE_FIELDS: dict[str, str] = {
    "enabled":         "is_enabled",
    "throttleMinutes": "throttle_minutes",
    "maxPerDay":       "max_per_day",
    "allowQuietHours": "allow_during_quiet_hours",
    "trigger":         "trigger",
    "tone":            "tone_style",
    "sound":           "sound_enabled",
    "interruption":    "interruption_level",
}


def default_quiet_hours() -> QuietHoursWindow:
    return QuietHoursWindow(
        start_hour=settings.QUIET_HOURS_START,
        end_hour=settings.QUIET_HOURS_END,
        enabled=settings.QUIET_HOURS_ENABLED,
    )


def parse_flag(value: Any) -> bool:
    """Stored booleans may come back as strings ("false", "0", "off")."""
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


def rule_key(activity_type: ActivityType, suffix: str) -> str:
    return f"rule.{ActivityType(activity_type).value}.{suffix}"


class NotificationSettingsRepository:
    def __init__(self, store):
        self._store = store

    # ── Quiet hours ──────────────────────────────────────────────────────────

    async def load_quiet_hours(self) -> QuietHoursWindow:
        fallback = default_quiet_hours()
        try:
            start_raw = await self._store.get("quietHours.start")
            end_raw = await self._store.get("quietHours.end")
            enabled_raw = await self._store.get("quietHours.enabled")
        except StateStoreError as exc:
            logger.warning("Quiet hours unreadable, using defaults: %s", exc)
            return fallback

        if start_raw is None and end_raw is None and enabled_raw is None:
            return fallback

        start = parse_clock(start_raw) if start_raw is not None else fallback.start
        end = parse_clock(end_raw) if end_raw is not None else fallback.end
        if start is None or end is None:
            logger.warning(
                "Invalid quiet hours %r–%r, using defaults %s",
                start_raw, end_raw, fallback.describe(),
            )
            return fallback

        return QuietHoursWindow(
            start_hour=start[0],
            start_minute=start[1],
            end_hour=end[0],
            end_minute=end[1],
            enabled=fallback.enabled if enabled_raw is None else parse_flag(enabled_raw),
        )

    async def save_quiet_hours(self, window: QuietHoursWindow) -> None:
        await self._store.set_many({
            "quietHours.start":   f"{window.start_hour:02d}:{window.start_minute:02d}",
            "quietHours.end":     f"{window.end_hour:02d}:{window.end_minute:02d}",
            "quietHours.enabled": window.enabled,
        })

    # ── Rules ────────────────────────────────────────────────────────────────

    async def load_rule(self, activity_type: ActivityType) -> NotificationRule:
        activity_type = ActivityType(activity_type)
        try:
            stored = {
                suffix: await self._store.get(rule_key(activity_type, suffix))
                for suffix in RULE_FIELDS
            }
            legacy = await self._store.get(rule_key(activity_type, "legacy"))
        except StateStoreError as exc:
            logger.warning("Rule %s unreadable, using defaults: %s", activity_type.value, exc)
            return default_rule(activity_type)

        changes: dict[str, Any] = {
            RULE_FIELDS[suffix]: value for suffix, value in stored.items() if value is not None
        }
        if "trigger" in changes and isinstance(changes["trigger"], str):
            try:
                changes["trigger"] = json.loads(changes["trigger"])
            except ValueError:
                logger.warning("Corrupt trigger for %s: %r", activity_type.value, changes["trigger"])
                return default_rule(activity_type)

        try:
            if not changes and legacy is not None:
                logger.info("Migrating v1 rule config for %s", activity_type.value)
                return NotificationRule.from_legacy(activity_type, legacy)
            return default_rule(activity_type).replace(**changes)
        except (ValidationError, ValueError, TypeError, KeyError) as exc:
            logger.warning("Invalid stored rule for %s, using defaults: %s", activity_type.value, exc)
            return default_rule(activity_type)

    async def load_rules(self) -> dict[ActivityType, NotificationRule]:
        return {t: await self.load_rule(t) for t in ActivityType}

    async def save_rule(self, rule: NotificationRule) -> None:
        t = rule.activity_type
        await self._store.set_many({
            rule_key(t, "enabled"):         rule.is_enabled,
            rule_key(t, "throttleMinutes"): rule.throttle_minutes,
            rule_key(t, "maxPerDay"):       rule.max_per_day,
            rule_key(t, "allowQuietHours"): rule.allow_during_quiet_hours,
            rule_key(t, "trigger"):         rule.trigger.model_dump_json(),
            rule_key(t, "tone"):            rule.tone_style.value,
            rule_key(t, "sound"):           rule.sound_enabled,
            rule_key(t, "interruption"):    rule.interruption_level.value,
        })
