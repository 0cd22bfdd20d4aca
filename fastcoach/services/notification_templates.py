"""
Notification payload templates — one per (activity type, tone style).

  Fasting, hydration, weight, sleep, mood, milestone, goal reminder: 4 tones each
  Did you know: one rotating fact per local day, same wording for every tone

Bodies are ``str.format`` templates over the values computed by
``_format_values`` from the behavioral context.  The payload sent to the
device must contain only string values.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from fastcoach.models.guidance import BehavioralContext
from fastcoach.models.notification_rule import ActivityType, NotificationRule, ToneStyle
from fastcoach.services.rule_predicates import MILESTONE_HOURS, milestone_crossed

# Hydration messages assume a 2 L daily goal
HYDRATION_GOAL_ML: int = 2000


@dataclass(frozen=True)
class NotificationTemplate:
    activity_type: ActivityType
    title: str
    body: str
    emoji: str = ""

    def render(self, values: dict) -> tuple[str, str]:
        return self.title.format(**values), self.body.format(**values)


@dataclass(frozen=True)
class NotificationMessage:
    title: str
    body: str

    def to_payload(
        self,
        *,
        identifier: str,
        rule: NotificationRule,
        fire_at: datetime,
        recent_pattern: str = "",
    ) -> dict[str, str]:
        """
        Build the dict handed to the delivery channel alongside title/body.
        All values must be strings.
        """
        return {
            "identifier":         identifier,
            "activity_type":      rule.activity_type.value,
            "fire_at":            fire_at.isoformat(),
            "title":              self.title,
            "body":               self.body,
            "sound":              str(rule.sound_enabled).lower(),
            "interruption_level": rule.interruption_level.value,
            "tone":               rule.tone_style.value,
            "pattern":            recent_pattern,
        }


def _t(activity_type, title, body, emoji=""):
    return NotificationTemplate(activity_type=activity_type, title=title, body=body, emoji=emoji)


_A = ActivityType
_S = ToneStyle

# ─────────────────────────────────────────────────────────────────────────────
# Template registry
# ─────────────────────────────────────────────────────────────────────────────

TEMPLATES: dict[tuple[ActivityType, ToneStyle], NotificationTemplate] = {

    # ── Fasting ───────────────────────────────────────────────────────────────
    (_A.fasting, _S.supportive): _t(
        _A.fasting, "You're doing great 🌟",
        "Your {streak}-day streak shows real commitment", "🌟"),
    (_A.fasting, _S.educational): _t(
        _A.fasting, "Fasting Science 🧬",
        "Your body enters deeper ketosis around hour {ketosis_hour}", "🧬"),
    (_A.fasting, _S.motivational): _t(
        _A.fasting, "Keep pushing! 💪",
        "You're {remaining_percent}% away from your goal!", "💪"),
    (_A.fasting, _S.stoic): _t(
        _A.fasting, "Progress Update",
        "{percent}% complete. Consistency builds discipline."),

    # ── Hydration ─────────────────────────────────────────────────────────────
    (_A.hydration, _S.supportive): _t(
        _A.hydration, "Gentle reminder 💧",
        "Your body is asking for hydration - {shortfall_ml}ml to go", "💧"),
    (_A.hydration, _S.educational): _t(
        _A.hydration, "Hydration Insight 🧠",
        "Even 2% dehydration can reduce focus by 20%", "🧠"),
    (_A.hydration, _S.motivational): _t(
        _A.hydration, "You've got this! 🚰",
        "One more glass gets you to {next_glass_percent}%!", "🚰"),
    (_A.hydration, _S.stoic): _t(
        _A.hydration, "Hydration Status",
        "{shortfall_ml}ml remaining for optimal function"),

    # ── Weight ────────────────────────────────────────────────────────────────
    (_A.weight, _S.supportive): _t(
        _A.weight, "Gentle reminder ⚖️",
        "Consistent weighing helps you understand your body patterns", "⚖️"),
    (_A.weight, _S.educational): _t(
        _A.weight, "Weight Tracking Insight 📊",
        "Daily weigh-ins provide the most accurate trend data", "📊"),
    (_A.weight, _S.motivational): _t(
        _A.weight, "Stay consistent! 💪",
        "Your weight journey deserves daily attention", "💪"),
    (_A.weight, _S.stoic): _t(
        _A.weight, "Weight Check",
        "Consistency in measurement leads to better data insights"),

    # ── Sleep ─────────────────────────────────────────────────────────────────
    (_A.sleep, _S.supportive): _t(
        _A.sleep, "Wind down time 🌙",
        "Your body thrives on routine sleep patterns", "🌙"),
    (_A.sleep, _S.educational): _t(
        _A.sleep, "Sleep Science 😴",
        "Consistent bedtime improves sleep quality by 23%", "😴"),
    (_A.sleep, _S.motivational): _t(
        _A.sleep, "Rest to achieve! 🎯",
        "Great sleep fuels tomorrow's wins", "🎯"),
    (_A.sleep, _S.stoic): _t(
        _A.sleep, "Sleep Preparation",
        "Optimal performance requires consistent recovery"),

    # ── Mood ──────────────────────────────────────────────────────────────────
    (_A.mood, _S.supportive): _t(
        _A.mood, "How are you feeling? 🙂",
        "A quick mood check-in helps you spot what lifts your energy", "🙂"),
    (_A.mood, _S.educational): _t(
        _A.mood, "Mood & Energy Insight 🧠",
        "Logging mood alongside fasting shows how your energy follows your eating window", "🧠"),
    (_A.mood, _S.motivational): _t(
        _A.mood, "Check in! ⚡",
        "Ten seconds to log your mood keeps your {streak}-day streak honest", "⚡"),
    (_A.mood, _S.stoic): _t(
        _A.mood, "Mood Log",
        "Record today's mood and energy."),

    # ── Milestones ────────────────────────────────────────────────────────────
    (_A.milestone, _S.supportive): _t(
        _A.milestone, "{milestone_hour} hours in 🌱",
        "You've reached {milestone_hour} hours. Be proud of every one of them.", "🌱"),
    (_A.milestone, _S.educational): _t(
        _A.milestone, "{milestone_hour}-Hour Milestone 🧬",
        "Past 12 hours autophagy ramps up; past 16 your body leans on fat for fuel.", "🧬"),
    (_A.milestone, _S.motivational): _t(
        _A.milestone, "🔥 {milestone_hour} Hours!",
        "Milestone unlocked. {streak}-day streak and counting!", "🔥"),
    (_A.milestone, _S.stoic): _t(
        _A.milestone, "{milestone_hour}h Milestone",
        "{milestone_hour} hours fasted. {percent}% of goal."),

    # ── Goal reminders ────────────────────────────────────────────────────────
    (_A.goal_reminder, _S.supportive): _t(
        _A.goal_reminder, "Almost There 🎯",
        "You're almost at your goal. Take a moment to plan a gentle first meal.", "🎯"),
    (_A.goal_reminder, _S.educational): _t(
        _A.goal_reminder, "Approaching Your Goal 🎯",
        "Breaking a fast with protein and vegetables keeps blood sugar steady.", "🎯"),
    (_A.goal_reminder, _S.motivational): _t(
        _A.goal_reminder, "🎯 Almost There",
        "You're almost at your goal! Perfect time to prepare for breaking your fast. 💪", "🎯"),
    (_A.goal_reminder, _S.stoic): _t(
        _A.goal_reminder, "Goal Approaching",
        "{percent}% complete. Prepare to break the fast."),
}

DID_YOU_KNOW_TITLE = "💡 Did You Know?"

DID_YOU_KNOW_FACTS: tuple[str, ...] = (
    "Fasting for 12+ hours activates autophagy, your body's cellular cleanup process that removes damaged components.",
    "After 16 hours of fasting, your body shifts from burning glucose to burning fat for energy.",
    "Intermittent fasting can increase human growth hormone levels by up to 5x, helping preserve muscle mass.",
    "Fasting gives your digestive system a break, reducing inflammation and improving gut health.",
    "Studies show intermittent fasting can improve brain function and may protect against neurodegenerative diseases.",
    "During a fast, insulin levels drop significantly, making it easier for your body to access stored fat.",
    "Fasting activates genes that help your body resist stress, disease, and aging.",
    "Your body starts producing ketones after about 12 hours of fasting, providing clean energy for your brain.",
)


def get_template(activity_type: ActivityType, tone: ToneStyle) -> Optional[NotificationTemplate]:
    return TEMPLATES.get((activity_type, tone))


def _format_values(context: BehavioralContext) -> dict:
    progress = min(max(context.goal_progress, 0.0), 1.0)
    elapsed = context.data_value or 0.0
    milestone = milestone_crossed(0.0, elapsed) or MILESTONE_HOURS[0]
    return {
        "streak":             context.current_streak,
        "percent":            int(progress * 100),
        "remaining_percent":  int((1 - progress) * 100),
        "next_glass_percent": min(int(progress * 100) + 12, 100),
        "shortfall_ml":       int((1 - progress) * HYDRATION_GOAL_ML),
        "ketosis_hour":       int(progress * 24),
        "milestone_hour":     milestone if elapsed < milestone + 1 else int(elapsed),
    }


def build_message(
    rule: NotificationRule, context: BehavioralContext, fire_at: datetime
) -> NotificationMessage:
    """Title and body for ``rule`` in its tone, filled in from ``context``."""
    if rule.activity_type == ActivityType.did_you_know:
        # Rotate by day so repeated scheduling on one day keeps the same fact
        fact = DID_YOU_KNOW_FACTS[fire_at.toordinal() % len(DID_YOU_KNOW_FACTS)]
        return NotificationMessage(title=DID_YOU_KNOW_TITLE, body=fact)

    template = get_template(rule.activity_type, rule.tone_style)
    if template is None:
        template = TEMPLATES[(rule.activity_type, ToneStyle.supportive)]
    title, body = template.render(_format_values(context))
    return NotificationMessage(title=title, body=body)
