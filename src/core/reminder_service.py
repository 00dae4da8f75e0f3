"""
Remindly — UI-agnostic reminder service.

Orchestrates create/update/read/delete of reminders and the in-app
notification feed:
validate input -> apply business rules -> persist -> notification line ->
speech -> enrichment (inline or queued).

Each front-end (Telegram today) calls this service and renders the returned
objects its own way.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from src.core.enrichment import generate_line_safely
from src.core.errors import (
    InvalidReminderError,
    NotificationNotFoundError,
    ReminderNotFoundError,
    SpeechNotAvailableError,
)
from src.core.schemas import ReminderCreate, ReminderUpdate, validate_input
from src.data.models import (
    LocationStatus,
    Reminder,
    ReminderKind,
    ScheduleTime,
    ScheduleType,
    normalize_schedule_days,
)
from src.ports.speech_port import SynthesizedAudio

if TYPE_CHECKING:
    from src.core.enrichment import EnrichmentPipeline, EnrichmentQueue
    from src.core.speech import SpeechResult, SpeechStage
    from src.data.db import NotificationDB, ReminderDB
    from src.data.models import Notification, User
    from src.ports.assistant_port import AssistantPort

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100
DEFAULT_LEAD_MINUTES = 10

# Edits to these fields make the cached notification line stale
_LINE_FIELDS = ("title", "description", "kind")


# ---------------------------------------------------------------------------
# Response types
# ---------------------------------------------------------------------------


@dataclass
class ServiceResult:
    reminder: Reminder
    ai_meta: dict | None = None


@dataclass
class Page:
    items: list = field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = DEFAULT_PAGE_SIZE


def _clamp_page(page: int, limit: int) -> tuple[int, int]:
    page = max(int(page or 1), 1)
    limit = min(max(int(limit or DEFAULT_PAGE_SIZE), 1), MAX_PAGE_SIZE)
    return page, limit


class ReminderService:
    """Stateless orchestration over the stores and the enrichment stages."""

    def __init__(
        self,
        reminder_db: ReminderDB,
        notification_db: NotificationDB,
        pipeline: EnrichmentPipeline,
        speech_stage: SpeechStage,
        assistant: AssistantPort | None = None,
        queue: EnrichmentQueue | None = None,
        use_sync_ai: bool | None = None,
        timeout: float | None = None,
    ) -> None:
        from src.config import settings

        self._reminders = reminder_db
        self._notifications = notification_db
        self._pipeline = pipeline
        self._speech = speech_stage
        self._assistant = assistant
        self._queue = queue
        self._use_sync_ai = settings.USE_SYNC_AI if use_sync_ai is None else use_sync_ai
        self._timeout = timeout if timeout is not None else settings.EXTERNAL_TIMEOUT_SECONDS

    # -----------------------------------------------------------------------
    # Create / update
    # -----------------------------------------------------------------------

    async def create_reminder(self, user: User, payload: ReminderCreate | dict) -> ServiceResult:
        """Create a reminder for the user.

        Raises InvalidInputError for malformed payloads and InvalidReminderError
        for a Meeting without a start time.
        """
        if isinstance(payload, dict):
            payload = validate_input(ReminderCreate, payload)

        reminder = Reminder(
            id=0,
            owner_id=user.user_id,
            kind=payload.type,
            title=payload.title,
            description=payload.description or "",
            icon=payload.icon or "star",
            start_time=payload.start_time,
            is_manual_schedule=bool(payload.is_manual_schedule),
            schedule_type=payload.schedule_type,
            schedule_days=normalize_schedule_days(payload.schedule_days),
            schedule_time=payload.schedule_time.to_model() if payload.schedule_time else ScheduleTime(),
            notification_preference_minutes=(
                payload.notification_preference_minutes
                if payload.notification_preference_minutes is not None
                else DEFAULT_LEAD_MINUTES
            ),
            location=payload.location.to_model() if payload.location else None,
            status=payload.status or LocationStatus.ACTIVE,
        )

        if reminder.kind is ReminderKind.MEETING:
            self._apply_meeting_rules(reminder, payload)

        created = self._reminders.add_reminder(reminder)

        if created.kind is ReminderKind.MEETING or (
            created.kind is ReminderKind.TASK
            and created.is_manual_schedule
            and created.schedule_type is ScheduleType.ONE_DAY
        ):
            line = await generate_line_safely(self._assistant, created, user, self._timeout)
            if line:
                created.ai_notification_line = line
                self._reminders.set_notification_line(created.id, line)

        if created.start_time is not None:
            await self._speech.ensure(created.id, user=user)

        return await self._dispatch_enrichment(created.id, user)

    @staticmethod
    def _apply_meeting_rules(reminder: Reminder, payload: ReminderCreate) -> None:
        """Meetings are manual one-day items with an explicit start and lead time."""
        if payload.notification_preference_minutes is not None:
            lead = payload.notification_preference_minutes
        elif payload.schedule_time and payload.schedule_time.minutes_before_start is not None:
            lead = payload.schedule_time.minutes_before_start
        else:
            lead = DEFAULT_LEAD_MINUTES
        ReminderService._force_meeting_schedule(reminder, lead)

    @staticmethod
    def _force_meeting_schedule(reminder: Reminder, lead: int) -> None:
        if reminder.start_time is None:
            raise InvalidReminderError("Start date is required for meetings")
        reminder.is_manual_schedule = True
        reminder.schedule_type = ScheduleType.ONE_DAY
        reminder.schedule_time = ScheduleTime(minutes_before_start=lead)
        reminder.schedule_days = []
        reminder.notification_preference_minutes = lead

    async def update_reminder(
        self, user: User, reminder_id: int, payload: ReminderUpdate | dict,
    ) -> ServiceResult:
        """Apply a partial update to one of the user's reminders.

        A reminder that is a Meeting after the update keeps the Meeting rules:
        InvalidReminderError without a start time, nothing is saved.
        """
        if isinstance(payload, dict):
            payload = validate_input(ReminderUpdate, payload)

        reminder = self._reminders.get_reminder(reminder_id, owner_id=user.user_id)
        if reminder is None:
            raise ReminderNotFoundError(reminder_id)

        changes = payload.changes()
        before = {name: getattr(reminder, name) for name in _LINE_FIELDS}
        self._apply_changes(reminder, changes)
        if reminder.kind is ReminderKind.MEETING:
            self._force_meeting_schedule(reminder, self._meeting_lead_after_update(reminder, changes))
        if any(getattr(reminder, name) != before[name] for name in _LINE_FIELDS):
            reminder.ai_notification_line = None

        if not self._reminders.save_reminder(reminder):
            raise ReminderNotFoundError(reminder_id)
        logger.info("Reminder #%d updated: %s", reminder_id, ", ".join(sorted(changes)) or "no fields")

        if reminder.start_time is not None:
            await self._speech.ensure(reminder.id, user=user)

        return await self._dispatch_enrichment(reminder.id, user)

    @staticmethod
    def _meeting_lead_after_update(reminder: Reminder, changes: dict) -> int:
        """Sent preference, else sent schedule lead, else the stored preference."""
        if changes.get("notification_preference_minutes") is not None:
            return changes["notification_preference_minutes"]
        sent_time = changes.get("schedule_time")
        if sent_time is not None and sent_time.minutes_before_start is not None:
            return sent_time.minutes_before_start
        return reminder.notification_preference_minutes

    @staticmethod
    def _apply_changes(reminder: Reminder, changes: dict) -> None:
        for name, value in changes.items():
            if name == "type":
                if value is not None:
                    reminder.kind = value
            elif name == "location":
                reminder.location = value.to_model() if value is not None else None
            elif name == "schedule_time":
                reminder.schedule_time = value.to_model() if value is not None else ScheduleTime()
            elif name == "schedule_days":
                reminder.schedule_days = normalize_schedule_days(value)
            elif name in ("start_time", "schedule_type"):
                setattr(reminder, name, value)
            elif value is not None:
                setattr(reminder, name, value)

    async def _dispatch_enrichment(self, reminder_id: int, user: User) -> ServiceResult:
        base = self._reminders.get_reminder(reminder_id)
        if base is None:
            raise ReminderNotFoundError(reminder_id)

        if self._use_sync_ai:
            logger.info("Running enrichment inline for reminder #%d", reminder_id)
            try:
                result = await self._pipeline.enrich(reminder_id, user=user)
            except Exception as exc:
                logger.exception("Inline enrichment failed for reminder #%d", reminder_id)
                return ServiceResult(base, {"error": str(exc)})
            return ServiceResult(result.reminder, result.meta.to_dict())

        if self._queue is not None:
            self._queue.submit(reminder_id, user)
        else:
            logger.warning("No enrichment queue configured; reminder #%d left as is", reminder_id)
        return ServiceResult(base)

    # -----------------------------------------------------------------------
    # Read / delete
    # -----------------------------------------------------------------------

    def get_reminder(self, user: User, reminder_id: int) -> Reminder:
        reminder = self._reminders.get_reminder(reminder_id, owner_id=user.user_id)
        if reminder is None:
            raise ReminderNotFoundError(reminder_id)
        return reminder

    def list_reminders(
        self,
        user: User,
        kind: ReminderKind | None = None,
        completed: bool | None = None,
        start_from: datetime | None = None,
        start_to: datetime | None = None,
        page: int = 1,
        limit: int = DEFAULT_PAGE_SIZE,
    ) -> Page:
        page, limit = _clamp_page(page, limit)
        items = self._reminders.list_reminders(
            user.user_id, kind=kind, completed=completed,
            start_from=start_from, start_to=start_to,
            limit=limit, offset=(page - 1) * limit,
        )
        total = self._reminders.count_reminders(
            user.user_id, kind=kind, completed=completed, start_from=start_from, start_to=start_to,
        )
        return Page(items=items, total=total, page=page, limit=limit)

    def delete_reminder(self, user: User, reminder_id: int) -> None:
        if not self._reminders.delete_reminder(reminder_id, user.user_id):
            raise ReminderNotFoundError(reminder_id)

    # -----------------------------------------------------------------------
    # Speech
    # -----------------------------------------------------------------------

    def get_speech_audio(self, user: User, reminder_id: int) -> SynthesizedAudio:
        reminder = self.get_reminder(user, reminder_id)
        if not reminder.tts.audio or not reminder.tts.content_type:
            raise SpeechNotAvailableError(f"No audio for reminder #{reminder_id}")
        return SynthesizedAudio(audio=reminder.tts.audio, content_type=reminder.tts.content_type)

    async def ensure_speech_now(
        self, user: User, reminder_id: int, voice_id: str | None = None,
    ) -> SpeechResult:
        self.get_reminder(user, reminder_id)
        return await self._speech.ensure(reminder_id, user=user, override_voice_id=voice_id)

    # -----------------------------------------------------------------------
    # Notifications
    # -----------------------------------------------------------------------

    def list_notifications(self, user: User, page: int = 1, limit: int = DEFAULT_PAGE_SIZE) -> Page:
        page, limit = _clamp_page(page, limit)
        items = self._notifications.list_for_user(user.user_id, limit=limit, offset=(page - 1) * limit)
        total = self._notifications.count_for_user(user.user_id)
        return Page(items=items, total=total, page=page, limit=limit)

    def mark_notification_read(self, user: User, notification_id: int) -> Notification:
        notification = self._notifications.mark_read(notification_id, user.user_id)
        if notification is None:
            raise NotificationNotFoundError(notification_id)
        return notification

    def mark_all_notifications_read(self, user: User) -> int:
        count = self._notifications.mark_all_read(user.user_id)
        logger.info("Marked %d notifications read for user %d", count, user.user_id)
        return count
