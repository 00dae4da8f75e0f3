"""
Remindly — Enrichment pipeline.

Runs after a reminder is created or updated:
1. Schedule stage: resolve a time for unscheduled, non-manual Tasks.
2. Notification-text stage: AI line, else the kind template.
3. Speech stage: refresh cached audio when the reminder has a start time.

Each stage degrades on its own; only persistence errors abort the run.
The pipeline can run inline, or through EnrichmentQueue on the event loop.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from typing import TYPE_CHECKING

from src.core.errors import ReminderNotFoundError
from src.core.notification_text import fallback_notification_line
from src.core.schedule_resolver import SOURCE_AI, SOURCE_FALLBACK
from src.data.models import SpeechStatus

if TYPE_CHECKING:
    from src.core.schedule_resolver import ScheduleResolver
    from src.core.speech import SpeechStage
    from src.data.db import ReminderDB, UserDB
    from src.data.models import Reminder, User
    from src.ports.assistant_port import AssistantPort

logger = logging.getLogger(__name__)


@dataclass
class EnrichmentMeta:
    """What each stage did, reported back to synchronous callers."""

    schedule_source: str | None = None
    line_source: str | None = None
    speech_status: str | None = None
    errors: list[dict] = field(default_factory=list)

    def add_error(self, stage: str, message: str) -> None:
        self.errors.append({"stage": stage, "message": message})

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class EnrichmentResult:
    reminder: Reminder
    meta: EnrichmentMeta


class EnrichmentPipeline:
    """Sequential schedule → notification line → speech enrichment."""

    def __init__(
        self,
        reminder_db: ReminderDB,
        resolver: ScheduleResolver,
        speech_stage: SpeechStage,
        assistant: AssistantPort | None = None,
        user_db: UserDB | None = None,
        timeout: float | None = None,
    ) -> None:
        from src.config import settings

        self._reminders = reminder_db
        self._resolver = resolver
        self._speech = speech_stage
        self._assistant = assistant
        self._users = user_db
        self._timeout = timeout if timeout is not None else settings.EXTERNAL_TIMEOUT_SECONDS

    async def enrich(self, reminder_id: int, user: User | None = None) -> EnrichmentResult:
        """Run every stage for one reminder.

        Raises ReminderNotFoundError if the reminder is gone, and sqlite3.Error
        on persistence failures. Everything else lands in ``meta.errors``.
        """
        reminder = self._reminders.get_reminder(reminder_id)
        if reminder is None:
            raise ReminderNotFoundError(reminder_id)
        if user is None and self._users is not None:
            user = self._users.get_user(reminder.owner_id)

        meta = EnrichmentMeta()
        await self._schedule_stage(reminder, meta)
        await self._line_stage(reminder, user, meta)

        if reminder.start_time is not None:
            result = await self._speech.ensure(reminder.id, user=user)
            meta.speech_status = result.status.value
            if result.status is SpeechStatus.FAILED:
                meta.add_error("speech", result.error or "speech generation failed")
        else:
            meta.speech_status = "skipped"

        logger.info(
            "Enriched reminder #%d: schedule=%s line=%s speech=%s errors=%d",
            reminder.id, meta.schedule_source, meta.line_source, meta.speech_status, len(meta.errors),
        )
        fresh = self._reminders.get_reminder(reminder.id) or reminder
        return EnrichmentResult(reminder=fresh, meta=meta)

    # -----------------------------------------------------------------------
    # Stages
    # -----------------------------------------------------------------------

    async def _schedule_stage(self, reminder: Reminder, meta: EnrichmentMeta) -> None:
        if not reminder.needs_schedule:
            return
        try:
            decision = await self._resolver.resolve(reminder)
        except sqlite3.Error:
            raise
        except Exception as exc:
            logger.warning("Schedule stage failed for reminder #%d: %s", reminder.id, exc)
            meta.add_error("schedule", str(exc))
            return
        if decision is None:
            return

        decision.apply_to(reminder)
        self._reminders.save_reminder(reminder)
        meta.schedule_source = decision.source
        logger.info(
            "Schedule applied to reminder #%d (source=%s, type=%s, start=%s)",
            reminder.id, decision.source, decision.schedule_type.value, reminder.start_time,
        )

    async def _line_stage(self, reminder: Reminder, user: User | None, meta: EnrichmentMeta) -> None:
        line = await generate_line_safely(self._assistant, reminder, user, self._timeout)
        if line:
            meta.line_source = SOURCE_AI
        else:
            line = reminder.ai_notification_line or fallback_notification_line(reminder, user)
            meta.line_source = SOURCE_FALLBACK
            logger.warning("Notification line source: fallback for reminder #%d", reminder.id)

        reminder.ai_notification_line = line
        self._reminders.set_notification_line(reminder.id, line)


async def generate_line_safely(
    assistant: AssistantPort | None,
    reminder: Reminder,
    user: User | None,
    timeout: float,
) -> str | None:
    """Ask the assistant for a notification line; None on any failure."""
    if assistant is None:
        return None
    try:
        line = await asyncio.wait_for(assistant.generate_line(reminder, user), timeout=timeout)
    except Exception as exc:
        logger.warning("AI notification line failed for reminder #%d: %s", reminder.id, exc)
        return None
    return line.strip() if isinstance(line, str) and line.strip() else None


# ---------------------------------------------------------------------------
# Background queue
# ---------------------------------------------------------------------------


class EnrichmentQueue:
    """Runs the pipeline for submitted reminder ids on a background task.

    Failures are logged, never propagated to the submitter.
    """

    def __init__(self, pipeline: EnrichmentPipeline) -> None:
        self._pipeline = pipeline
        self._queue: asyncio.Queue[tuple[int, User | None]] = asyncio.Queue()
        self._worker: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._worker is not None and not self._worker.done()

    def start(self) -> None:
        if self.running:
            return
        self._worker = asyncio.create_task(self._run(), name="enrichment-worker")
        logger.info("Enrichment worker started")

    async def stop(self) -> None:
        if self._worker is None:
            return
        self._worker.cancel()
        try:
            await self._worker
        except asyncio.CancelledError:
            pass
        self._worker = None
        logger.info("Enrichment worker stopped")

    def submit(self, reminder_id: int, user: User | None = None) -> None:
        self._queue.put_nowait((reminder_id, user))
        logger.debug("Queued enrichment for reminder #%d", reminder_id)

    async def join(self) -> None:
        """Wait until every submitted reminder has been processed."""
        await self._queue.join()

    async def _run(self) -> None:
        while True:
            reminder_id, user = await self._queue.get()
            try:
                await self._pipeline.enrich(reminder_id, user=user)
            except ReminderNotFoundError:
                logger.info("Reminder #%d deleted before enrichment", reminder_id)
            except Exception:
                logger.exception("Background enrichment failed for reminder #%d", reminder_id)
            finally:
                self._queue.task_done()
