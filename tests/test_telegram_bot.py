"""Tests for src.bot.telegram_bot — Telegram bot handlers.

Tests the command parsing helpers, command handlers, the location scan
handler and authorization. The service, engine and limiter are mocked;
users live in a temp-file UserDB.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock
from zoneinfo import ZoneInfo

import pytest
from telegram.error import NetworkError

from src.bot.telegram_bot import (
    cmd_done,
    cmd_meeting,
    cmd_notifications,
    cmd_place,
    cmd_reminders,
    cmd_start,
    cmd_task,
    format_outcomes,
    format_reminder,
    handle_location,
    parse_day_list,
    parse_meeting_args,
)
from src.core.errors import InvalidInputError, InvalidReminderError, ReminderNotFoundError
from src.core.location_trigger import SkippedOutcome, SkipReason, TriggeredOutcome
from src.core.reminder_service import Page, ServiceResult
from src.data.models import Notification, NotificationKind, Reminder, ReminderKind, ScheduleTime, ScheduleType
from src.ports.places_port import Place
from src.ports.speech_port import SynthesizedAudio

UTC = ZoneInfo("UTC")
PHARMACY = Place(id="p1", name="Super-Pharm", lat=0.0, lng=0.0005)


def _task(**kwargs):
    defaults = dict(id=7, owner_id=12345, kind=ReminderKind.TASK, title="Buy milk")
    defaults.update(kwargs)
    return Reminder(**defaults)


def _triggered(**kwargs):
    defaults = dict(
        reminder_id=7, title="pharmacy", body=None,
        body_fallback="Reminder: You're near a place for pharmacy.",
        place=PHARMACY, distance_meters=56,
    )
    defaults.update(kwargs)
    return TriggeredOutcome(**defaults)


def _make_update(text="", user_id=12345, full_name="Dana Levi"):
    """Create a mock Update with a message from an authorized user."""
    update = MagicMock()
    update.message.text = text
    update.effective_user.id = user_id
    update.effective_user.full_name = full_name
    update.effective_user.first_name = full_name.split()[0]
    update.message.reply_text = AsyncMock()
    update.message.reply_voice = AsyncMock()
    return update


def _make_context(user_db, args=None, service=None, engine=None, limiter=None):
    context = MagicMock()
    context.args = args or []
    context.bot_data = {
        "users": user_db,
        "service": service or MagicMock(),
        "engine": engine or MagicMock(),
        "limiter": limiter or MagicMock(hit=MagicMock(return_value=True)),
    }
    return context


def _service(result=None, side_effect=None):
    service = MagicMock()
    service.create_reminder = AsyncMock(return_value=result, side_effect=side_effect)
    service.update_reminder = AsyncMock(return_value=result, side_effect=side_effect)
    return service


# ---------------------------------------------------------------------------
# Parsing helpers
# ---------------------------------------------------------------------------


class TestParseDayList:
    def test_abbreviations(self):
        assert parse_day_list("mon,wed,fri") == [1, 3, 5]

    def test_full_names_and_case(self):
        assert parse_day_list("Sunday,SATURDAY") == [0, 6]

    def test_duplicates_collapsed(self):
        assert parse_day_list("tue,tue") == [2]

    def test_not_a_day_list(self):
        assert parse_day_list("pharmacy") is None
        assert parse_day_list("mon,later") is None


class TestParseMeetingArgs:
    def test_valid(self):
        start, title = parse_meeting_args(["2026-10-20", "09:30", "Team", "sync"], UTC)
        assert start == datetime(2026, 10, 20, 9, 30, tzinfo=timezone.utc)
        assert title == "Team sync"

    def test_local_zone_applied(self):
        start, _ = parse_meeting_args(["2026-10-20", "12:00", "Lunch"], ZoneInfo("Asia/Jerusalem"))
        assert start.astimezone(timezone.utc).hour == 9

    def test_bad_date(self):
        assert parse_meeting_args(["tomorrow", "09:30", "Sync"], UTC) is None

    def test_missing_title(self):
        assert parse_meeting_args(["2026-10-20", "09:30"], UTC) is None


class TestFormatReminder:
    def test_unscheduled_task(self):
        assert format_reminder(_task(), UTC) == "`7` — Task: Buy milk (scheduling…)"

    def test_scheduled(self):
        text = format_reminder(_task(start_time=datetime(2026, 10, 20, 9, 0, tzinfo=timezone.utc)), UTC)
        assert text.endswith("(Tue 20 Oct 09:00)")

    def test_routine(self):
        r = _task(
            schedule_type=ScheduleType.ROUTINE, schedule_days=[1, 3],
            schedule_time=ScheduleTime(fixed_time="07:30"),
        )
        assert format_reminder(r, UTC).endswith("(Mon, Wed at 07:30)")

    def test_completed_location(self):
        r = _task(kind=ReminderKind.LOCATION, title="gym", schedule_days=[5], is_completed=True)
        assert format_reminder(r, UTC) == "`7` — Location: gym ✅ (Fri)"

    def test_title_markdown_is_escaped(self):
        text = format_reminder(_task(title="Buy *cheap* milk_now"), UTC)
        assert text.startswith(r"`7` — Task: Buy \*cheap\* milk\_now")


class TestFormatOutcomes:
    def test_no_candidates(self):
        assert format_outcomes([]) == "You have no active place reminders."

    def test_nothing_triggered(self):
        skipped = SkippedOutcome(reminder_id=7, reason=SkipReason.TOO_FAR)
        assert format_outcomes([skipped]) == "Nothing to remind you about around here right now."

    def test_triggered_lines(self):
        text = format_outcomes([_triggered(), _triggered(body="Dana, pharmacy ahead!")])
        assert text.splitlines() == [
            "📍 Near you:",
            "• Reminder: You're near a place for pharmacy. — Super-Pharm (56 m)",
            "• Dana, pharmacy ahead! — Super-Pharm (56 m)",
        ]


# ---------------------------------------------------------------------------
# Authorization
# ---------------------------------------------------------------------------


class TestAuthorization:
    @pytest.mark.asyncio
    async def test_stranger_is_ignored(self, user_db):
        update = _make_update(user_id=999)
        context = _make_context(user_db)

        await cmd_start(update, context)

        update.message.reply_text.assert_not_called()
        assert user_db.get_user(999) is None

    @pytest.mark.asyncio
    async def test_start_registers_user(self, user_db):
        update = _make_update()
        context = _make_context(user_db)

        await cmd_start(update, context)

        assert user_db.get_user(12345).full_name == "Dana Levi"
        assert "Dana" in update.message.reply_text.call_args.args[0]


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


class TestCmdTask:
    @pytest.mark.asyncio
    async def test_creates_task(self, user_db, user):
        service = _service(ServiceResult(_task()))
        update = _make_update()
        context = _make_context(user_db, args=["Buy", "milk"], service=service)

        await cmd_task(update, context)

        created_user, payload = service.create_reminder.call_args.args
        assert created_user.user_id == 12345
        assert payload == {"type": "Task", "title": "Buy milk"}
        assert update.message.reply_text.call_args.args[0].startswith("Saved!")

    @pytest.mark.asyncio
    async def test_usage_without_title(self, user_db):
        service = _service()
        update = _make_update()

        await cmd_task(update, _make_context(user_db, service=service))

        service.create_reminder.assert_not_awaited()
        assert "Usage" in update.message.reply_text.call_args.args[0]

    @pytest.mark.asyncio
    async def test_validation_errors_listed(self, user_db):
        error = InvalidInputError([{"field": "title", "message": "Title is required"}])
        update = _make_update()

        await cmd_task(update, _make_context(user_db, args=["x"], service=_service(side_effect=error)))

        assert "title: Title is required" in update.message.reply_text.call_args.args[0]

    @pytest.mark.asyncio
    async def test_unexpected_error(self, user_db):
        update = _make_update()

        await cmd_task(update, _make_context(user_db, args=["x"], service=_service(side_effect=RuntimeError())))

        assert "Couldn't save" in update.message.reply_text.call_args.args[0]


class TestCmdMeeting:
    @pytest.mark.asyncio
    async def test_creates_meeting(self, user_db):
        meeting = _task(kind=ReminderKind.MEETING, title="Sync",
                        start_time=datetime(2026, 10, 20, 9, 30, tzinfo=timezone.utc))
        service = _service(ServiceResult(meeting))
        update = _make_update()

        await cmd_meeting(update, _make_context(user_db, args=["2026-10-20", "09:30", "Sync"], service=service))

        payload = service.create_reminder.call_args.args[1]
        assert payload["type"] == "Meeting"
        assert payload["title"] == "Sync"
        assert payload["start_time"] == datetime(2026, 10, 20, 9, 30, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_business_rule_error_shown(self, user_db):
        error = InvalidReminderError("Start date is required for meetings")
        update = _make_update()

        await cmd_meeting(update, _make_context(
            user_db, args=["2026-10-20", "09:30", "Sync"], service=_service(side_effect=error),
        ))

        update.message.reply_text.assert_awaited_once_with("Start date is required for meetings")

    @pytest.mark.asyncio
    async def test_usage_on_bad_args(self, user_db):
        service = _service()
        update = _make_update()

        await cmd_meeting(update, _make_context(user_db, args=["soon", "Sync"], service=service))

        service.create_reminder.assert_not_awaited()


class TestCmdPlace:
    @pytest.mark.asyncio
    async def test_with_days(self, user_db):
        service = _service(ServiceResult(_task(kind=ReminderKind.LOCATION, title="pharmacy")))

        await cmd_place(_make_update(), _make_context(user_db, args=["pharmacy", "mon,wed"], service=service))

        assert service.create_reminder.call_args.args[1] == {
            "type": "Location", "title": "pharmacy", "schedule_days": [1, 3],
        }

    @pytest.mark.asyncio
    async def test_multi_word_keyword_without_days(self, user_db):
        service = _service(ServiceResult(_task(kind=ReminderKind.LOCATION, title="bike shop")))

        await cmd_place(_make_update(), _make_context(user_db, args=["bike", "shop"], service=service))

        assert service.create_reminder.call_args.args[1] == {
            "type": "Location", "title": "bike shop", "schedule_days": [],
        }


class TestCmdReminders:
    @pytest.mark.asyncio
    async def test_lists(self, user_db):
        service = MagicMock()
        service.list_reminders = MagicMock(return_value=Page(items=[_task()], total=1, page=1, limit=20))
        update = _make_update()

        await cmd_reminders(update, _make_context(user_db, service=service))

        text = update.message.reply_text.call_args.args[0]
        assert "(1)" in text
        assert "Buy milk" in text

    @pytest.mark.asyncio
    async def test_empty(self, user_db):
        service = MagicMock()
        service.list_reminders = MagicMock(return_value=Page())
        update = _make_update()

        await cmd_reminders(update, _make_context(user_db, service=service))

        update.message.reply_text.assert_awaited_once_with("No reminders yet.")


class TestCmdDone:
    @pytest.mark.asyncio
    async def test_marks_done(self, user_db):
        service = _service(ServiceResult(_task(is_completed=True)))
        update = _make_update()

        await cmd_done(update, _make_context(user_db, args=["7"], service=service))

        assert service.update_reminder.call_args.args[1:] == (7, {"is_completed": True})
        assert "Buy milk" in update.message.reply_text.call_args.args[0]

    @pytest.mark.asyncio
    async def test_not_found(self, user_db):
        service = _service(side_effect=ReminderNotFoundError(42))
        update = _make_update()

        await cmd_done(update, _make_context(user_db, args=["42"], service=service))

        assert "not found" in update.message.reply_text.call_args.args[0]

    @pytest.mark.asyncio
    async def test_invalid_id(self, user_db):
        service = _service()
        update = _make_update()

        await cmd_done(update, _make_context(user_db, args=["abc"], service=service))

        service.update_reminder.assert_not_awaited()
        assert "Invalid reminder ID" in update.message.reply_text.call_args.args[0]

    @pytest.mark.asyncio
    async def test_title_markdown_is_escaped(self, user_db):
        service = _service(ServiceResult(_task(title="[draft] report_v2", is_completed=True)))
        update = _make_update()

        await cmd_done(update, _make_context(user_db, args=["7"], service=service))

        assert r"'*\[draft] report\_v2*'" in update.message.reply_text.call_args.args[0]


class TestCmdNotifications:
    @pytest.mark.asyncio
    async def test_message_markdown_is_escaped(self, user_db):
        service = MagicMock()
        service.list_notifications = MagicMock(return_value=Page(items=[
            Notification(id=1, user_id=12345, kind=NotificationKind.LOCATION, message="Near *Super_Pharm*"),
        ], total=1))
        update = _make_update()

        await cmd_notifications(update, _make_context(user_db, service=service))

        text = update.message.reply_text.call_args.args[0]
        assert r"🆕 Near \*Super\_Pharm\*" in text
        assert update.message.reply_text.call_args.kwargs["parse_mode"] == "Markdown"
        service.mark_all_notifications_read.assert_called_once()


# ---------------------------------------------------------------------------
# Location scan
# ---------------------------------------------------------------------------


def _location_update():
    update = _make_update()
    update.message.location.latitude = 32.08
    update.message.location.longitude = 34.78
    return update


class TestHandleLocation:
    @pytest.mark.asyncio
    async def test_scan_reply_and_voice(self, user_db):
        engine = MagicMock()
        engine.scan_and_trigger = AsyncMock(return_value=[_triggered(tts_text_hash="abc")])
        service = MagicMock()
        service.get_speech_audio = MagicMock(return_value=SynthesizedAudio(b"mp3", "audio/mpeg"))
        update = _location_update()

        await handle_location(update, _make_context(user_db, service=service, engine=engine))

        user_arg, lat, lng = engine.scan_and_trigger.call_args.args
        assert user_arg.user_id == 12345
        assert (lat, lng) == (32.08, 34.78)
        assert update.message.reply_text.call_args.args[0].startswith("📍 Near you:")
        update.message.reply_voice.assert_awaited_once_with(voice=b"mp3", caption="pharmacy")

    @pytest.mark.asyncio
    async def test_failed_voice_send_does_not_stop_the_rest(self, user_db):
        engine = MagicMock()
        engine.scan_and_trigger = AsyncMock(return_value=[
            _triggered(reminder_id=7, title="pharmacy", tts_text_hash="abc"),
            _triggered(reminder_id=8, title="bakery", tts_text_hash="def"),
        ])
        service = MagicMock()
        service.get_speech_audio = MagicMock(return_value=SynthesizedAudio(b"mp3", "audio/mpeg"))
        update = _location_update()
        update.message.reply_voice = AsyncMock(side_effect=[NetworkError("connection reset"), None])

        await handle_location(update, _make_context(user_db, service=service, engine=engine))

        assert update.message.reply_voice.await_count == 2
        assert update.message.reply_voice.call_args.kwargs["caption"] == "bakery"
        assert update.message.reply_text.call_args.args[0].startswith("📍 Near you:")

    @pytest.mark.asyncio
    async def test_no_voice_without_ready_audio(self, user_db):
        engine = MagicMock()
        engine.scan_and_trigger = AsyncMock(return_value=[_triggered()])
        service = MagicMock()
        update = _location_update()

        await handle_location(update, _make_context(user_db, service=service, engine=engine))

        service.get_speech_audio.assert_not_called()
        update.message.reply_voice.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rate_limited(self, user_db):
        engine = MagicMock()
        engine.scan_and_trigger = AsyncMock()
        limiter = MagicMock(hit=MagicMock(return_value=False))
        update = _location_update()

        await handle_location(update, _make_context(user_db, engine=engine, limiter=limiter))

        engine.scan_and_trigger.assert_not_awaited()
        limiter.hit.assert_called_once_with("user:12345")
        update.message.reply_text.assert_awaited_once_with("Too many scans, please try again in a minute.")

    @pytest.mark.asyncio
    async def test_scan_failure(self, user_db):
        engine = MagicMock()
        engine.scan_and_trigger = AsyncMock(side_effect=RuntimeError("db locked"))
        update = _location_update()

        await handle_location(update, _make_context(user_db, engine=engine))

        assert "Couldn't check" in update.message.reply_text.call_args.args[0]
