"""Tests for src.core.speech — cached text-to-speech per reminder."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from src.core.errors import ReminderNotFoundError
from src.core.notification_text import (
    active_notification_text,
    compute_text_hash,
    fallback_notification_line,
)
from src.core.speech import SpeechStage
from src.data.models import Reminder, ReminderKind, SavedPlace, SpeechStatus, User
from src.ports.speech_port import SpeechSynthesisError, SynthesizedAudio

START = datetime(2026, 10, 20, 9, 0, tzinfo=timezone.utc)
DANA = User(user_id=12345, full_name="Dana Levi")


def _reminder(**kwargs):
    defaults = dict(id=0, owner_id=12345, kind=ReminderKind.TASK, title="Buy milk", start_time=START)
    defaults.update(kwargs)
    return Reminder(**defaults)


def _provider(audio=b"ID3-audio"):
    provider = MagicMock()
    provider.synthesize = AsyncMock(return_value=SynthesizedAudio(audio=audio, content_type="audio/mpeg"))
    return provider


# ---------------------------------------------------------------------------
# Notification text
# ---------------------------------------------------------------------------


class TestFallbackNotificationLine:
    def test_task(self):
        assert fallback_notification_line(_reminder(), DANA) == "Hey Dana, reminder: Buy milk."

    def test_meeting(self):
        r = _reminder(kind=ReminderKind.MEETING, title="Sync")
        assert fallback_notification_line(r, DANA) == "Hey Dana, reminder for meeting: Sync."

    def test_location_with_and_without_place_name(self):
        r = _reminder(kind=ReminderKind.LOCATION, location=SavedPlace(name="Super-Pharm"))
        assert fallback_notification_line(r, DANA) == "Hey Dana, you are near Super-Pharm."
        r = _reminder(kind=ReminderKind.LOCATION)
        assert fallback_notification_line(r, DANA) == "Hey Dana, you are near your saved place."

    def test_no_user(self):
        assert fallback_notification_line(_reminder(), None) == "Hey there, reminder: Buy milk."

    def test_ai_line_preferred(self):
        r = _reminder(ai_notification_line="Milk time, Dana!")
        assert active_notification_text(r, DANA) == "Milk time, Dana!"


class TestComputeTextHash:
    def test_stable_and_voice_sensitive(self):
        a = compute_text_hash("Hello", "v1")
        assert a == compute_text_hash("Hello", "v1")
        assert a != compute_text_hash("Hello", "v2")
        assert a != compute_text_hash("Hello!", "v1")
        assert len(a) == 64


# ---------------------------------------------------------------------------
# SpeechStage.ensure
# ---------------------------------------------------------------------------


class TestEnsure:
    @pytest.mark.asyncio
    async def test_generates_and_persists_ready(self, reminder_db):
        provider = _provider()
        stage = SpeechStage(reminder_db, provider, default_voice_id="v1")
        created = reminder_db.add_reminder(_reminder())

        result = await stage.ensure(created.id, user=DANA)

        assert result.status is SpeechStatus.READY
        assert result.cached is False
        assert result.text_hash == compute_text_hash("Hey Dana, reminder: Buy milk.", "v1")
        provider.synthesize.assert_awaited_once_with("Hey Dana, reminder: Buy milk.", "v1")
        stored = reminder_db.get_reminder(created.id).tts
        assert stored.status is SpeechStatus.READY
        assert stored.audio == b"ID3-audio"
        assert stored.size == len(b"ID3-audio")
        assert stored.content_type == "audio/mpeg"
        assert stored.generated_at is not None

    @pytest.mark.asyncio
    async def test_second_call_is_a_cache_hit(self, reminder_db):
        provider = _provider()
        stage = SpeechStage(reminder_db, provider, default_voice_id="v1")
        created = reminder_db.add_reminder(_reminder())

        first = await stage.ensure(created.id, user=DANA)
        second = await stage.ensure(created.id, user=DANA)

        assert second.cached is True
        assert second.text_hash == first.text_hash
        assert provider.synthesize.await_count == 1

    @pytest.mark.asyncio
    async def test_text_change_regenerates(self, reminder_db):
        provider = _provider()
        stage = SpeechStage(reminder_db, provider, default_voice_id="v1")
        created = reminder_db.add_reminder(_reminder())
        first = await stage.ensure(created.id, user=DANA)

        reminder_db.set_notification_line(created.id, "Milk o'clock, Dana!")
        second = await stage.ensure(created.id, user=DANA)

        assert second.cached is False
        assert second.text_hash != first.text_hash
        assert provider.synthesize.await_count == 2

    @pytest.mark.asyncio
    async def test_override_voice_regenerates(self, reminder_db):
        provider = _provider()
        stage = SpeechStage(reminder_db, provider, default_voice_id="v1")
        created = reminder_db.add_reminder(_reminder())
        await stage.ensure(created.id, user=DANA)

        result = await stage.ensure(created.id, user=DANA, override_voice_id="v2")

        assert result.cached is False
        assert provider.synthesize.call_args.args[1] == "v2"
        assert reminder_db.get_reminder(created.id).tts.voice_id == "v2"

    @pytest.mark.asyncio
    async def test_provider_failure_is_recorded_not_raised(self, reminder_db):
        provider = MagicMock()
        provider.synthesize = AsyncMock(side_effect=SpeechSynthesisError("TTS generation failed (401): bad key"))
        stage = SpeechStage(reminder_db, provider, default_voice_id="v1")
        created = reminder_db.add_reminder(_reminder())

        result = await stage.ensure(created.id, user=DANA)

        assert result.status is SpeechStatus.FAILED
        assert "401" in result.error
        stored = reminder_db.get_reminder(created.id).tts
        assert stored.status is SpeechStatus.FAILED
        assert stored.audio is None

    @pytest.mark.asyncio
    async def test_empty_audio_is_recorded_as_failed(self, reminder_db):
        provider = _provider(audio=b"")
        stage = SpeechStage(reminder_db, provider, default_voice_id="v1")
        created = reminder_db.add_reminder(_reminder())

        result = await stage.ensure(created.id, user=DANA)

        assert result.status is SpeechStatus.FAILED
        assert "empty audio" in result.error
        stored = reminder_db.get_reminder(created.id).tts
        assert stored.status is SpeechStatus.FAILED
        assert not stored.audio
        assert stored.generated_at is None

    @pytest.mark.asyncio
    async def test_empty_audio_is_retried_next_time(self, reminder_db):
        provider = MagicMock()
        provider.synthesize = AsyncMock(side_effect=[
            SynthesizedAudio(audio=b"", content_type="audio/mpeg"),
            SynthesizedAudio(audio=b"ok", content_type="audio/mpeg"),
        ])
        stage = SpeechStage(reminder_db, provider, default_voice_id="v1")
        created = reminder_db.add_reminder(_reminder())

        await stage.ensure(created.id, user=DANA)
        result = await stage.ensure(created.id, user=DANA)

        assert result.status is SpeechStatus.READY
        assert result.cached is False
        assert reminder_db.get_reminder(created.id).tts.audio == b"ok"

    @pytest.mark.asyncio
    async def test_failed_state_retries_next_time(self, reminder_db):
        provider = MagicMock()
        provider.synthesize = AsyncMock(side_effect=[
            SpeechSynthesisError("down"),
            SynthesizedAudio(audio=b"ok", content_type="audio/mpeg"),
        ])
        stage = SpeechStage(reminder_db, provider, default_voice_id="v1")
        created = reminder_db.add_reminder(_reminder())

        await stage.ensure(created.id, user=DANA)
        result = await stage.ensure(created.id, user=DANA)

        assert result.status is SpeechStatus.READY

    @pytest.mark.asyncio
    async def test_user_looked_up_when_not_given(self, reminder_db, user_db, user):
        provider = _provider()
        stage = SpeechStage(reminder_db, provider, user_db=user_db, default_voice_id="v1")
        created = reminder_db.add_reminder(_reminder())

        await stage.ensure(created.id)

        assert provider.synthesize.call_args.args[0] == "Hey Dana, reminder: Buy milk."

    @pytest.mark.asyncio
    async def test_missing_reminder(self, reminder_db):
        stage = SpeechStage(reminder_db, _provider(), default_voice_id="v1")
        with pytest.raises(ReminderNotFoundError):
            await stage.ensure(999)
