"""Behavioral notification scheduler package."""
from fastcoach.scheduler.behavioral_scheduler import BehavioralNotificationScheduler
from fastcoach.scheduler.jobs import create_scheduler, prune_daily_counts, reload_settings

__all__ = [
    "BehavioralNotificationScheduler",
    "create_scheduler",
    "prune_daily_counts",
    "reload_settings",
]
