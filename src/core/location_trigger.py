"""
Remindly — Location trigger engine.

Given the user's current coordinate, decides which Location reminders fire.
Each candidate passes a fixed sequence of gates; the first gate that fails
produces a SkippedOutcome with its reason:

    day_mismatch → anti_spam_window → no_keyword → places_error /
    no_places_match → too_far → collision

A candidate that passes every gate is stamped as triggered, then gets a
best-effort notification line, speech audio and in-app notification.
One candidate's failure never aborts the scan.
"""

from __future__ import annotations

import asyncio
import logging
import math
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo

from src.core.enrichment import generate_line_safely
from src.core.notification_text import location_trigger_fallback_body, location_trigger_message
from src.data.models import (
    LocationStatus,
    NotificationKind,
    ReminderKind,
    SpeechStatus,
    TriggeredLocation,
)

if TYPE_CHECKING:
    from src.core.notifications import NotificationSink
    from src.core.speech import SpeechStage
    from src.data.db import ReminderDB
    from src.data.models import Reminder, User
    from src.ports.assistant_port import AssistantPort
    from src.ports.places_port import Place, PlacesPort

logger = logging.getLogger(__name__)

EARTH_RADIUS_METERS = 6_371_000
ANTI_SPAM_WINDOW = timedelta(minutes=90)
COLLISION_WINDOW = timedelta(minutes=5)
COLLISION_RETRY_AFTER_SECONDS = 360
MAX_KEYWORD_CHARS = 64
SPEECH_POLL_TIMEOUT = 2.0
SPEECH_POLL_INTERVAL = 0.25


class SkipReason(Enum):
    DAY_MISMATCH = "day_mismatch"
    ANTI_SPAM_WINDOW = "anti_spam_window"
    NO_KEYWORD = "no_keyword"
    PLACES_ERROR = "places_error"
    NO_PLACES_MATCH = "no_places_match"
    TOO_FAR = "too_far"
    COLLISION = "collision"
    STORE_ERROR = "store_error"


@dataclass
class TriggeredOutcome:
    reminder_id: int
    title: str
    body: str | None
    body_fallback: str
    place: Place
    distance_meters: int
    tts_text_hash: str | None = None

    triggered = True


@dataclass
class SkippedOutcome:
    reminder_id: int
    reason: SkipReason
    detail: dict = field(default_factory=dict)

    triggered = False


ScanOutcome = TriggeredOutcome | SkippedOutcome


def haversine_meters(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two coordinates, in metres."""
    d_lat = math.radians(lat2 - lat1)
    d_lng = math.radians(lng2 - lng1)
    a = (
        math.sin(d_lat / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(d_lng / 2) ** 2
    )
    return EARTH_RADIUS_METERS * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def rounded_distance(lat: float, lng: float, place: Place) -> int | None:
    """Distance to the place rounded half-up to whole metres, or None without coordinates."""
    if not isinstance(place.lat, (int, float)) or not isinstance(place.lng, (int, float)):
        return None
    return math.floor(haversine_meters(lat, lng, place.lat, place.lng) + 0.5)


def weekday_index(moment: datetime, tz: ZoneInfo) -> int:
    """0 = Sunday .. 6 = Saturday, in the given time zone."""
    return (moment.astimezone(tz).weekday() + 1) % 7


class LocationTriggerEngine:
    """Scan a user's Location reminders against their current position."""

    def __init__(
        self,
        reminder_db: ReminderDB,
        places: PlacesPort,
        speech_stage: SpeechStage | None = None,
        sink: NotificationSink | None = None,
        assistant: AssistantPort | None = None,
        max_trigger_meters: int | None = None,
        default_radius: int | None = None,
        tz_name: str | None = None,
        timeout: float | None = None,
        poll_timeout: float = SPEECH_POLL_TIMEOUT,
        poll_interval: float = SPEECH_POLL_INTERVAL,
    ) -> None:
        from src.config import settings

        self._reminders = reminder_db
        self._places = places
        self._speech = speech_stage
        self._sink = sink
        self._assistant = assistant
        self._max_meters = max(
            10, max_trigger_meters if max_trigger_meters is not None else settings.LOCATION_MAX_TRIGGER_METERS,
        )
        self._default_radius = default_radius or settings.DEFAULT_SCAN_RADIUS
        self._tz = ZoneInfo(tz_name or settings.TIMEZONE)
        self._timeout = timeout if timeout is not None else settings.EXTERNAL_TIMEOUT_SECONDS
        self._poll_timeout = poll_timeout
        self._poll_interval = poll_interval

    async def scan_and_trigger(
        self,
        user: User,
        lat: float,
        lng: float,
        radius: int | None = None,
        now: datetime | None = None,
    ) -> list[ScanOutcome]:
        now = now or datetime.now(timezone.utc)
        radius = radius or self._default_radius
        candidates = self._reminders.list_active_locations(user.user_id)
        logger.info(
            "Location scan for user %d at %s,%s: %d candidates",
            user.user_id, lat, lng, len(candidates),
        )

        outcomes: list[ScanOutcome] = []
        for reminder in candidates:
            try:
                outcome = await self._evaluate(reminder, user, lat, lng, radius, now)
            except sqlite3.Error as exc:
                logger.error("Location scan could not store reminder #%d: %s", reminder.id, exc)
                outcome = SkippedOutcome(reminder.id, SkipReason.STORE_ERROR, {"message": str(exc)})
            outcomes.append(outcome)

        triggered = sum(1 for o in outcomes if o.triggered)
        logger.info(
            "Location scan done for user %d: %d triggered, %d skipped",
            user.user_id, triggered, len(outcomes) - triggered,
        )
        return outcomes

    # -----------------------------------------------------------------------
    # Gates
    # -----------------------------------------------------------------------

    async def _evaluate(
        self, reminder: Reminder, user: User, lat: float, lng: float, radius: int, now: datetime,
    ) -> ScanOutcome:
        today = weekday_index(now, self._tz)
        if reminder.schedule_days and today not in reminder.schedule_days:
            return SkippedOutcome(
                reminder.id, SkipReason.DAY_MISMATCH,
                {"schedule_days": list(reminder.schedule_days), "today": today},
            )

        if reminder.last_triggered_at is not None and now - reminder.last_triggered_at < ANTI_SPAM_WINDOW:
            minutes_since = (now - reminder.last_triggered_at).total_seconds() / 60
            return SkippedOutcome(
                reminder.id, SkipReason.ANTI_SPAM_WINDOW, {"minutes_since": round(minutes_since, 1)},
            )

        keyword = (reminder.title or "").strip()[:MAX_KEYWORD_CHARS]
        if not keyword:
            return SkippedOutcome(reminder.id, SkipReason.NO_KEYWORD)

        try:
            place = await asyncio.wait_for(
                self._places.find_nearest_by_keyword(lat, lng, radius, keyword), timeout=self._timeout,
            )
        except Exception as exc:
            logger.warning("Places lookup failed for reminder #%d: %s", reminder.id, exc)
            return SkippedOutcome(
                reminder.id, SkipReason.PLACES_ERROR, {"message": str(exc) or type(exc).__name__},
            )
        if place is None:
            return SkippedOutcome(reminder.id, SkipReason.NO_PLACES_MATCH)

        distance = rounded_distance(lat, lng, place)
        if distance is None or distance > self._max_meters:
            return SkippedOutcome(
                reminder.id, SkipReason.TOO_FAR,
                {
                    "distance_meters": distance,
                    "max_meters": self._max_meters,
                    "place": {"id": place.id, "name": place.name},
                },
            )

        if self._has_collision(reminder, now):
            return SkippedOutcome(
                reminder.id, SkipReason.COLLISION, {"retry_after_seconds": COLLISION_RETRY_AFTER_SECONDS},
            )

        return await self._trigger(reminder, user, place, distance, now)

    def _has_collision(self, reminder: Reminder, now: datetime) -> bool:
        clashing = self._reminders.find_by_start_range(
            reminder.owner_id,
            now - COLLISION_WINDOW,
            now + COLLISION_WINDOW,
            kinds=(ReminderKind.TASK, ReminderKind.MEETING),
            incomplete_only=True,
            exclude_id=reminder.id,
        )
        return bool(clashing)

    # -----------------------------------------------------------------------
    # Trigger
    # -----------------------------------------------------------------------

    async def _trigger(
        self, reminder: Reminder, user: User, place: Place, distance: int, now: datetime,
    ) -> TriggeredOutcome:
        status = LocationStatus.EXPIRED if reminder.status is LocationStatus.EXPIRED else LocationStatus.ACTIVE
        updated = self._reminders.record_trigger(
            reminder.id,
            now,
            TriggeredLocation(
                lat=place.lat, lng=place.lng, place_id=place.id, name=place.name, rating=place.rating,
            ),
            status,
        ) or reminder

        line = await generate_line_safely(self._assistant, updated, user, self._timeout)
        if line:
            updated.ai_notification_line = line
            self._reminders.set_notification_line(updated.id, line)

        text_hash = await self._ensure_speech(updated.id, user)

        message = updated.ai_notification_line or location_trigger_message(updated.title)
        if self._sink is not None:
            try:
                await self._sink.record(
                    user.user_id, NotificationKind.LOCATION, message, reminder_id=updated.id,
                )
            except sqlite3.Error as exc:
                logger.error("Could not store location notification for reminder #%d: %s", updated.id, exc)

        logger.info("Location reminder #%d triggered at '%s' (%dm)", updated.id, place.name, distance)
        return TriggeredOutcome(
            reminder_id=updated.id,
            title=updated.title,
            body=updated.ai_notification_line,
            body_fallback=location_trigger_fallback_body(updated.title),
            place=place,
            distance_meters=distance,
            tts_text_hash=text_hash,
        )

    async def _ensure_speech(self, reminder_id: int, user: User) -> str | None:
        """Ensure audio, polling briefly for a ready fingerprint. None if not ready in time."""
        if self._speech is None:
            return None
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._poll_timeout
        try:
            result = await self._speech.ensure(reminder_id, user=user)
            while result.status is not SpeechStatus.READY:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None
                await asyncio.sleep(min(self._poll_interval, remaining))
                remaining = deadline - loop.time()
                if remaining <= 0:
                    return None
                result = await asyncio.wait_for(
                    self._speech.ensure(reminder_id, user=user), timeout=remaining,
                )
        except Exception as exc:
            logger.warning("Speech for triggered reminder #%d unavailable: %s", reminder_id, exc)
            return None
        return result.text_hash
