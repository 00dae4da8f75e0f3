"""
Remindly — Data Models.

Reminders, notifications, users and synced calendar events persist in SQLite.
All datetimes are timezone-aware UTC.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

DAY_NAMES = ["Sunday", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday"]


class ReminderKind(Enum):
    TASK = "Task"
    MEETING = "Meeting"
    LOCATION = "Location"


class ScheduleType(Enum):
    ONE_DAY = "one-day"
    ROUTINE = "routine"


class LocationStatus(Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    COMPLETED = "completed"


class SpeechStatus(Enum):
    PENDING = "pending"
    READY = "ready"
    FAILED = "failed"


class NotificationKind(Enum):
    TASK = "task"
    MEETING = "meeting"
    LOCATION = "location"
    REMINDER = "reminder"


@dataclass
class User:
    """A registered user. The id is the Telegram user id."""

    user_id: int
    full_name: str
    voice_id: str | None = None
    created_at: str = ""

    @property
    def first_name(self) -> str:
        parts = (self.full_name or "").split()
        return parts[0] if parts else "there"


@dataclass
class ScheduleTime:
    """Lead time for one-day schedules, or the daily clock time for routines."""

    minutes_before_start: int | None = None
    fixed_time: str | None = None     # "HH:MM" 24h


@dataclass
class SavedPlace:
    name: str = ""
    link: str = ""
    lat: float | None = None
    lng: float | None = None


@dataclass
class TriggeredLocation:
    """The place that last fired a Location reminder."""

    lat: float | None
    lng: float | None
    place_id: str
    name: str
    rating: float | None = None


@dataclass
class SpeechState:
    """Cached text-to-speech audio and the fingerprint of the text it was made from."""

    voice_id: str | None = None
    text_hash: str | None = None
    audio: bytes | None = None
    content_type: str | None = None
    size: int = 0
    status: SpeechStatus = SpeechStatus.PENDING
    generated_at: datetime | None = None


@dataclass
class Reminder:
    """A Task, Meeting or Location reminder with its scheduling metadata."""

    id: int
    owner_id: int
    kind: ReminderKind
    title: str
    description: str = ""
    icon: str = "star"
    start_time: datetime | None = None
    is_manual_schedule: bool = False
    schedule_type: ScheduleType | None = None
    schedule_days: list[int] = field(default_factory=list)
    schedule_time: ScheduleTime = field(default_factory=ScheduleTime)
    notification_preference_minutes: int = 10
    ai_suggested: bool = False
    ai_notification_line: str | None = None
    location: SavedPlace | None = None
    last_triggered_at: datetime | None = None
    triggered_location: TriggeredLocation | None = None
    status: LocationStatus = LocationStatus.ACTIVE
    tts: SpeechState = field(default_factory=SpeechState)
    is_completed: bool = False
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def needs_schedule(self) -> bool:
        """True when the resolver is allowed to pick a time for this reminder."""
        return (
            self.kind is ReminderKind.TASK
            and not self.is_manual_schedule
            and self.start_time is None
        )


@dataclass
class Notification:
    """A user-visible notification event. Only is_read ever changes."""

    id: int
    user_id: int
    kind: NotificationKind
    message: str
    is_read: bool = False
    reminder_id: int | None = None
    created_at: datetime | None = None


@dataclass
class CalendarEvent:
    """A calendar event mirrored from the user's external calendar."""

    user_id: int
    external_id: str
    summary: str
    start_time: datetime
    end_time: datetime | None = None


def normalize_schedule_days(
    schedule_days: list[int] | None, legacy_day: str | None = None,
) -> list[int]:
    """Fold the legacy single-day string into the weekday index list.

    A non-empty ``schedule_days`` always wins. Out-of-range values are dropped.
    """
    days = [d for d in (schedule_days or []) if isinstance(d, int) and 0 <= d <= 6]
    if days:
        return sorted(set(days))
    if legacy_day:
        name = legacy_day.strip().capitalize()
        if name in DAY_NAMES:
            return [DAY_NAMES.index(name)]
    return []
