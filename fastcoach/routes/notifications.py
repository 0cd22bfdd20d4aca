"""
Notification routes
  POST /notifications/guidance                — run the scheduling pipeline once
  GET  /notifications/rules                   — all rules
  GET  /notifications/rules/{activity_type}   — one rule
  PUT  /notifications/rules/{activity_type}   — change a rule (partial update)
  GET  /notifications/quiet-hours             — current quiet hours window
  PUT  /notifications/quiet-hours             — replace the quiet hours window
  GET  /notifications/status                  — per-type tracker state
  POST /notifications/send-test               — fire an immediate test notification
  POST /notifications/prune                   — drop stale daily counters now
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field

from fastcoach.models.guidance import BehavioralContext, SchedulingDecision
from fastcoach.models.notification_rule import (
    ActivityType,
    InterruptionLevel,
    NotificationRule,
    ToneStyle,
    parse_activity_type,
)
from fastcoach.models.triggers import Trigger
from fastcoach.scheduler.behavioral_scheduler import BehavioralNotificationScheduler
from fastcoach.services.quiet_hours import QuietHoursWindow, parse_clock

router = APIRouter(tags=["Notifications"])


# ─────────────────────────────────────────────────────────────────────────────
# Request / response models
# ─────────────────────────────────────────────────────────────────────────────

class ContextRequest(BaseModel):
    current_streak: int = 0
    recent_pattern: str = ""
    time_of_day: Optional[datetime] = None      # defaults to now
    data_value: Optional[float] = None
    goal_progress: float = 0.0
    last_activity: Optional[datetime] = None
    has_active_fast: Optional[bool] = None

    def to_context(self) -> BehavioralContext:
        return BehavioralContext(
            current_streak=self.current_streak,
            recent_pattern=self.recent_pattern,
            time_of_day=self.time_of_day or datetime.now(timezone.utc),
            data_value=self.data_value,
            goal_progress=self.goal_progress,
            last_activity=self.last_activity,
            has_active_fast=self.has_active_fast,
        )


class GuidanceRequest(BaseModel):
    activity_type: str
    trigger: Optional[Trigger] = None           # rule default when omitted
    context: ContextRequest = Field(default_factory=ContextRequest)


class RuleUpdateRequest(BaseModel):
    is_enabled: Optional[bool] = None
    allow_during_quiet_hours: Optional[bool] = None
    throttle_minutes: Optional[int] = None
    max_per_day: Optional[int] = None
    trigger: Optional[Trigger] = None
    tone_style: Optional[ToneStyle] = None
    sound_enabled: Optional[bool] = None
    interruption_level: Optional[InterruptionLevel] = None


class QuietHoursRequest(BaseModel):
    start: Union[int, str]      # 22 or "22:30"
    end: Union[int, str]
    enabled: bool = True


class SendTestRequest(BaseModel):
    activity_type: str = "hydration"
    now: Optional[datetime] = None


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def get_engine(request: Request) -> BehavioralNotificationScheduler:
    return request.app.state.engine


def _activity_type_or_404(value: str) -> ActivityType:
    t = parse_activity_type(value)
    if t is None:
        raise HTTPException(status_code=404, detail=f"Unknown activity type '{value}'")
    return t


def _decision_json(decision: SchedulingDecision) -> dict:
    return {
        "activity_type": decision.activity_type,
        "delivered":     decision.delivered,
        "reason":        decision.reason.value if decision.reason else None,
        "fire_at":       decision.fire_at.isoformat() if decision.fire_at else None,
        "identifier":    decision.identifier,
    }


def _rule_json(rule: NotificationRule) -> dict:
    return rule.model_dump(mode="json")


def _quiet_hours_json(window: QuietHoursWindow) -> dict:
    return {
        "start":   f"{window.start_hour:02d}:{window.start_minute:02d}",
        "end":     f"{window.end_hour:02d}:{window.end_minute:02d}",
        "enabled": window.enabled,
    }


# ─────────────────────────────────────────────────────────────────────────────
# Routes
# ─────────────────────────────────────────────────────────────────────────────

@router.post("/guidance", summary="Schedule a behavioral notification")
async def schedule_guidance(
    body: GuidanceRequest, engine: BehavioralNotificationScheduler = Depends(get_engine)
):
    """
    Called by the tracker managers on relevant state transitions.
    Always 200: a dropped notification is a normal outcome, see ``reason``.
    """
    decision = await engine.schedule_guidance(
        body.activity_type, body.trigger, body.context.to_context()
    )
    return _decision_json(decision)


@router.get("/rules", summary="List notification rules")
async def list_rules(engine: BehavioralNotificationScheduler = Depends(get_engine)):
    return {t.value: _rule_json(rule) for t, rule in engine.rules.items()}


@router.get("/rules/{activity_type}", summary="Get one notification rule")
async def get_rule(activity_type: str, engine: BehavioralNotificationScheduler = Depends(get_engine)):
    t = _activity_type_or_404(activity_type)
    return _rule_json(engine.get_rule(t))


@router.put("/rules/{activity_type}", summary="Update a notification rule")
async def update_rule(
    activity_type: str,
    body: RuleUpdateRequest,
    engine: BehavioralNotificationScheduler = Depends(get_engine),
):
    t = _activity_type_or_404(activity_type)
    changes = body.model_dump(exclude_unset=True, exclude_none=True)
    try:
        rule = await engine.update_rule(t, changes)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    return _rule_json(rule)


@router.get("/quiet-hours", summary="Get quiet hours")
async def get_quiet_hours(engine: BehavioralNotificationScheduler = Depends(get_engine)):
    return _quiet_hours_json(engine.quiet_hours)


@router.put("/quiet-hours", summary="Replace quiet hours")
async def put_quiet_hours(
    body: QuietHoursRequest, engine: BehavioralNotificationScheduler = Depends(get_engine)
):
    start, end = parse_clock(body.start), parse_clock(body.end)
    if start is None or end is None:
        raise HTTPException(
            status_code=422, detail=f"Invalid quiet hours {body.start!r}–{body.end!r}"
        )
    window = QuietHoursWindow(
        start_hour=start[0],
        start_minute=start[1],
        end_hour=end[0],
        end_minute=end[1],
        enabled=body.enabled,
    )
    await engine.update_quiet_hours(window)
    return _quiet_hours_json(window)


@router.get("/status", summary="Per-type throttle and daily count state")
async def get_status(engine: BehavioralNotificationScheduler = Depends(get_engine)):
    return {"types": await engine.status()}


@router.post("/send-test", summary="Send a test notification")
async def send_test(
    body: SendTestRequest, engine: BehavioralNotificationScheduler = Depends(get_engine)
):
    """Manually fire a test notification through the full pipeline."""
    _activity_type_or_404(body.activity_type)
    decision = await engine.send_test_notification(body.activity_type, body.now)
    return _decision_json(decision)


@router.post("/prune", summary="Prune stale daily counters")
async def prune(engine: BehavioralNotificationScheduler = Depends(get_engine)):
    removed = await engine.prune()
    return {"status": "ok", "removed": removed}
