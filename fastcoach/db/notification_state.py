"""
Persisted per-type notification state: throttle and daily limit trackers.

Key layout:
    throttle.lastFired.<type>          → ISO-8601 instant of the last delivery
    dailyCount.<type>.<YYYY-MM-DD>     → deliveries on that local calendar day

Both trackers fail open: if the store is unreachable or a value is corrupt,
the check behaves as if nothing had been delivered.  Suppressing a reminder
because of a storage fault is treated as worse than an occasional duplicate.
Writes only happen after a notification passed the whole pipeline.
"""

import logging
from datetime import date, datetime, timedelta
from typing import Optional

from fastcoach.db.kv_store import StateStoreError
from fastcoach.models.notification_rule import ActivityType
from fastcoach.services.local_time import day_key, minutes_between, parse_day_key, to_local

logger = logging.getLogger(__name__)

THROTTLE_PREFIX = "throttle.lastFired."
DAILY_COUNT_PREFIX = "dailyCount."


def throttle_key(activity_type: ActivityType) -> str:
    return f"{THROTTLE_PREFIX}{ActivityType(activity_type).value}"


def daily_count_key(activity_type: ActivityType, day: str) -> str:
    return f"{DAILY_COUNT_PREFIX}{ActivityType(activity_type).value}.{day}"


# ─────────────────────────────────────────────────────────────────────────────
# Throttle
# ─────────────────────────────────────────────────────────────────────────────

class ThrottleTracker:
    def __init__(self, store):
        self._store = store

    async def last_fired(self, activity_type: ActivityType) -> Optional[datetime]:
        key = throttle_key(activity_type)
        try:
            raw = await self._store.get(key)
        except StateStoreError as exc:
            logger.warning("Throttle state unreadable for %s (allowing): %s", key, exc)
            return None
        if raw is None:
            return None
        try:
            value = datetime.fromisoformat(raw)
        except (TypeError, ValueError):
            logger.warning("Corrupt throttle value %r under %s (allowing)", raw, key)
            return None
        if value.tzinfo is None:
            logger.warning("Naive throttle value %r under %s (allowing)", raw, key)
            return None
        return value

    async def can_fire(self, activity_type: ActivityType, now: datetime, min_minutes: int) -> bool:
        """True when at least ``min_minutes`` have passed since the last delivery."""
        if min_minutes <= 0:
            return True
        last = await self.last_fired(activity_type)
        if last is None:
            return True
        return minutes_between(last, now) >= min_minutes

    async def record_fired(self, activity_type: ActivityType, fired_at: datetime) -> None:
        """Store ``fired_at`` as the last delivery; never moves the record backwards."""
        last = await self.last_fired(activity_type)
        if last is not None and fired_at < last:
            logger.debug(
                "Not backdating %s: %s is before stored %s",
                activity_type, fired_at.isoformat(), last.isoformat(),
            )
            return
        key = throttle_key(activity_type)
        try:
            await self._store.set(key, fired_at.isoformat())
        except StateStoreError as exc:
            logger.warning("Could not persist %s: %s", key, exc)


# ─────────────────────────────────────────────────────────────────────────────
# Daily limit
# ─────────────────────────────────────────────────────────────────────────────

class DailyLimitTracker:
    def __init__(self, store, tz, retention_days: int = 7):
        self._store = store
        self._tz = tz
        self.retention_days = retention_days

    async def count_for(self, activity_type: ActivityType, when: datetime) -> int:
        key = daily_count_key(activity_type, day_key(when, self._tz))
        try:
            raw = await self._store.get(key, 0)
        except StateStoreError as exc:
            logger.warning("Daily count unreadable for %s (treating as 0): %s", key, exc)
            return 0
        try:
            return max(int(raw), 0)
        except (TypeError, ValueError):
            logger.warning("Corrupt daily count %r under %s (treating as 0)", raw, key)
            return 0

    async def can_fire_today(self, activity_type: ActivityType, now: datetime, max_per_day: int) -> bool:
        return await self.count_for(activity_type, now) < max_per_day

    async def record_fired(self, activity_type: ActivityType, fired_at: datetime) -> int:
        """Increment the local-day counter for ``fired_at``; returns the new count."""
        count = await self.count_for(activity_type, fired_at) + 1
        key = daily_count_key(activity_type, day_key(fired_at, self._tz))
        try:
            await self._store.set(key, count)
        except StateStoreError as exc:
            logger.warning("Could not persist %s: %s", key, exc)
            return count
        await self._prune_prefix(
            f"{DAILY_COUNT_PREFIX}{ActivityType(activity_type).value}.",
            self._cutoff(fired_at),
        )
        return count

    async def prune(self, now: datetime) -> int:
        """Drop every day counter older than the retention window."""
        return await self._prune_prefix(DAILY_COUNT_PREFIX, self._cutoff(now))

    def _cutoff(self, now: datetime) -> date:
        return to_local(now, self._tz).date() - timedelta(days=self.retention_days)

    async def _prune_prefix(self, prefix: str, cutoff: date) -> int:
        try:
            keys = await self._store.keys(prefix)
        except StateStoreError as exc:
            logger.warning("Could not list %s* for pruning: %s", prefix, exc)
            return 0

        removed = 0
        for key in keys:
            try:
                day = parse_day_key(key.rsplit(".", 1)[-1])
            except ValueError:
                logger.debug("Skipping unrecognised key during prune: %s", key)
                continue
            if day >= cutoff:
                continue
            try:
                await self._store.delete(key)
                removed += 1
            except StateStoreError as exc:
                logger.warning("Could not prune %s: %s", key, exc)
        if removed:
            logger.info("Pruned %d stale daily counters under %s", removed, prefix)
        return removed
