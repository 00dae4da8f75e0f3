"""
Remindly — Schedule Resolver.

Picks a concrete schedule for a Task that has no time yet and that the user
left to the assistant (is_manual_schedule = False).

Two paths, tried in order:
1. AI suggestion: the assistant sees the user's next 7 days (scheduled
   Tasks/Meetings plus mirrored calendar events) and proposes either a
   one-day time or a routine (weekdays + fixed clock time).
2. Fallback heuristic: the first free hourly slot inside working hours.

Whatever the assistant returns is validated here; an invalid answer is
treated exactly like no answer.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from src.data.models import ReminderKind, ScheduleTime, ScheduleType

if TYPE_CHECKING:
    from src.data.db import CalendarEventDB, ReminderDB
    from src.data.models import Reminder
    from src.ports.assistant_port import AssistantPort

logger = logging.getLogger(__name__)

HORIZON = timedelta(days=7)
SLOT_STEP = timedelta(hours=1)
WORKDAY_START_HOUR = 9
WORKDAY_END_HOUR = 18
DEFAULT_LEAD_MINUTES = 10

SOURCE_AI = "gemini"
SOURCE_FALLBACK = "fallback"

_FIXED_TIME_RE = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


@dataclass
class ScheduleDecision:
    """A concrete schedule for a reminder, and which path produced it."""

    schedule_type: ScheduleType
    start_time: datetime | None = None
    schedule_days: list[int] = field(default_factory=list)
    schedule_time: ScheduleTime = field(default_factory=ScheduleTime)
    source: str = SOURCE_FALLBACK

    def apply_to(self, reminder: Reminder) -> None:
        """Copy the decision onto a reminder and flag it as AI-suggested."""
        if self.start_time is not None:
            reminder.start_time = self.start_time
        reminder.schedule_type = self.schedule_type
        reminder.schedule_days = list(self.schedule_days)
        reminder.schedule_time = self.schedule_time
        if self.schedule_type is ScheduleType.ONE_DAY:
            lead = self.schedule_time.minutes_before_start
            reminder.notification_preference_minutes = (
                lead if isinstance(lead, int) else DEFAULT_LEAD_MINUTES
            )
        reminder.ai_suggested = True


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


def is_valid_fixed_time(value: str | None) -> bool:
    return bool(value) and bool(_FIXED_TIME_RE.match(value))


def is_valid_decision(decision: ScheduleDecision, now: datetime) -> bool:
    """One-day: strictly future and within 7 days. Routine: has a fixed time."""
    if decision.schedule_type is ScheduleType.ONE_DAY:
        start = decision.start_time
        return start is not None and now < start <= now + HORIZON
    return is_valid_fixed_time(decision.schedule_time.fixed_time)


def _parse_iso(value: object) -> datetime | None:
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parsed = datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def decision_from_payload(payload: object, now: datetime, source: str = SOURCE_AI) -> ScheduleDecision | None:
    """Build a validated decision from the assistant's JSON object.

    Expected shape:
    {
        "startDateISO": "2026-10-19T14:00:00Z" | null,
        "scheduleType": "one-day" | "routine",
        "scheduleDays": [0..6],
        "scheduleTime": {"minutesBeforeStart": int | null, "fixedTime": "HH:MM" | null}
    }
    Returns None for anything that does not describe a usable schedule.
    """
    if not isinstance(payload, dict):
        return None

    schedule_type = (
        ScheduleType.ROUTINE if payload.get("scheduleType") == "routine" else ScheduleType.ONE_DAY
    )
    raw_days = payload.get("scheduleDays")
    days = sorted({
        d for d in (raw_days if isinstance(raw_days, list) else [])
        if isinstance(d, int) and not isinstance(d, bool) and 0 <= d <= 6
    })
    raw_time = payload.get("scheduleTime") if isinstance(payload.get("scheduleTime"), dict) else {}
    lead = raw_time.get("minutesBeforeStart")
    fixed = raw_time.get("fixedTime")

    decision = ScheduleDecision(
        schedule_type=schedule_type,
        start_time=_parse_iso(payload.get("startDateISO")),
        schedule_days=days,
        schedule_time=ScheduleTime(
            minutes_before_start=lead if isinstance(lead, int) and not isinstance(lead, bool) and lead >= 0 else None,
            fixed_time=fixed if isinstance(fixed, str) else None,
        ),
        source=source,
    )
    if not is_valid_decision(decision, now):
        return None
    return decision


# ---------------------------------------------------------------------------
# Fallback heuristic
# ---------------------------------------------------------------------------


def find_fallback_slot(
    now: datetime,
    busy_starts: set[datetime],
    tz: tzinfo = timezone.utc,
    day_start_hour: int = WORKDAY_START_HOUR,
    day_end_hour: int = WORKDAY_END_HOUR,
) -> datetime | None:
    """Return the first free hourly slot in (now, now + 7d] within working hours.

    Slots are now + 1h, now + 2h, ...; a slot is free when no existing
    reminder starts at exactly that instant. Working hours are checked in
    the local reference time zone ``tz``.
    """
    busy = {b.astimezone(timezone.utc) for b in busy_starts}
    horizon = now + HORIZON
    slot = now + SLOT_STEP
    while slot <= horizon:
        local_hour = slot.astimezone(tz).hour
        if day_start_hour <= local_hour < day_end_hour and slot.astimezone(timezone.utc) not in busy:
            return slot
        slot += SLOT_STEP
    return None


def fallback_decision(slot: datetime) -> ScheduleDecision:
    return ScheduleDecision(
        schedule_type=ScheduleType.ONE_DAY,
        start_time=slot,
        schedule_days=[],
        schedule_time=ScheduleTime(minutes_before_start=DEFAULT_LEAD_MINUTES, fixed_time=None),
        source=SOURCE_FALLBACK,
    )


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------


class ScheduleResolver:
    """Resolve a schedule for unscheduled, non-manual Tasks."""

    def __init__(
        self,
        reminder_db: ReminderDB,
        assistant: AssistantPort | None = None,
        calendar_db: CalendarEventDB | None = None,
        tz_name: str | None = None,
        timeout: float | None = None,
    ) -> None:
        from src.config import settings

        self._reminders = reminder_db
        self._assistant = assistant
        self._calendar = calendar_db
        self._tz = ZoneInfo(tz_name or settings.TIMEZONE)
        self._timeout = timeout if timeout is not None else settings.EXTERNAL_TIMEOUT_SECONDS

    def build_busy_window(self, owner_id: int, now: datetime) -> list[dict]:
        """The user's scheduled items in (now, now + 7d], as the assistant sees them."""
        horizon = now + HORIZON
        items = [
            {"type": r.kind.value, "title": r.title or "Item", "startISO": r.start_time}
            for r in self._reminders.find_by_start_range(
                owner_id, now, horizon,
                kinds=(ReminderKind.TASK, ReminderKind.MEETING),
                incomplete_only=True,
            )
            if r.start_time > now
        ]
        if self._calendar is not None:
            try:
                events = self._calendar.find_between(owner_id, now, horizon)
            except Exception as exc:
                logger.warning("Busy window: calendar events unavailable for user %d: %s", owner_id, exc)
                events = []
            items.extend(
                {"type": "Meeting", "title": ev.summary or "Event", "startISO": ev.start_time}
                for ev in events
                if ev.start_time > now
            )
        items.sort(key=lambda item: item["startISO"])
        for item in items:
            item["startISO"] = item["startISO"].astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
        return items

    async def resolve(self, reminder: Reminder, now: datetime | None = None) -> ScheduleDecision | None:
        """Return a schedule for the reminder, or None if it does not apply or none exists."""
        if not reminder.needs_schedule:
            return None

        now = now or datetime.now(timezone.utc)

        decision = await self._suggest_with_ai(reminder, now)
        if decision is not None:
            logger.info(
                "Schedule source: %s for reminder #%d (%s, start=%s)",
                decision.source, reminder.id, decision.schedule_type.value, decision.start_time,
            )
            return decision

        try:
            decision = self._suggest_fallback(reminder.owner_id, now)
        except Exception as exc:
            logger.warning("Fallback scheduling failed for reminder #%d: %s", reminder.id, exc)
            return None

        if decision is None:
            logger.info("No free slot in the next 7 days for reminder #%d", reminder.id)
            return None
        logger.warning(
            "Schedule source: fallback for reminder #%d (start=%s)",
            reminder.id, decision.start_time,
        )
        return decision

    async def _suggest_with_ai(self, reminder: Reminder, now: datetime) -> ScheduleDecision | None:
        if self._assistant is None:
            logger.warning("Assistant unavailable, using fallback for reminder #%d", reminder.id)
            return None

        item = {
            "type": reminder.kind.value,
            "title": reminder.title,
            "description": reminder.description or "",
        }
        try:
            busy_window = self.build_busy_window(reminder.owner_id, now)
            decision = await asyncio.wait_for(
                self._assistant.suggest_schedule(reminder.owner_id, now, item, busy_window),
                timeout=self._timeout,
            )
        except Exception as exc:
            logger.warning("AI scheduling error for reminder #%d; using fallback: %s", reminder.id, exc)
            return None

        if decision is None:
            return None
        if not is_valid_decision(decision, now):
            logger.warning("AI schedule for reminder #%d failed validation; using fallback", reminder.id)
            return None
        decision.source = SOURCE_AI
        return decision

    def _suggest_fallback(self, owner_id: int, now: datetime) -> ScheduleDecision | None:
        existing = self._reminders.find_by_start_range(owner_id, now, now + HORIZON)
        busy = {r.start_time for r in existing if r.start_time is not None}
        slot = find_fallback_slot(now, busy, tz=self._tz)
        return fallback_decision(slot) if slot is not None else None
