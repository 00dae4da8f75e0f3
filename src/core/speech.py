"""
Remindly — Speech stage.

Keeps a reminder's cached audio in step with its notification text. The
cache is keyed by a fingerprint of (voice, text): when the fingerprint
matches a ready, non-empty cache the provider is not called again.

State transitions persisted on the reminder:
    * -> pending -> ready   (audio, size, content type, generated_at)
    * -> pending -> failed
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING

from src.core.errors import ReminderNotFoundError
from src.core.notification_text import active_notification_text, compute_text_hash
from src.data.models import SpeechState, SpeechStatus
from src.ports.speech_port import SpeechSynthesisError

if TYPE_CHECKING:
    from src.data.db import ReminderDB, UserDB
    from src.data.models import User
    from src.ports.speech_port import SpeechPort

logger = logging.getLogger(__name__)


@dataclass
class SpeechResult:
    """Outcome of one ensure() call. ``error`` is set only when status is failed."""

    reminder_id: int
    status: SpeechStatus
    text_hash: str
    cached: bool = False
    error: str | None = None


class SpeechStage:
    """Generate and cache text-to-speech audio for reminders."""

    def __init__(
        self,
        reminder_db: ReminderDB,
        speech: SpeechPort | None,
        user_db: UserDB | None = None,
        default_voice_id: str | None = None,
        timeout: float | None = None,
    ) -> None:
        from src.config import settings

        self._reminders = reminder_db
        self._speech = speech
        self._users = user_db
        self._default_voice_id = (
            default_voice_id if default_voice_id is not None else settings.ELEVENLABS_DEFAULT_VOICE_ID
        )
        self._timeout = timeout if timeout is not None else settings.EXTERNAL_TIMEOUT_SECONDS

    def _resolve_user(self, owner_id: int, user: User | None) -> User | None:
        if user is not None or self._users is None:
            return user
        return self._users.get_user(owner_id)

    async def ensure(
        self,
        reminder_id: int,
        user: User | None = None,
        override_voice_id: str | None = None,
    ) -> SpeechResult:
        """Make sure the reminder's audio matches its current text.

        Provider failures are recorded as status ``failed`` and returned, never
        raised. Persistence errors propagate.
        """
        reminder = self._reminders.get_reminder(reminder_id)
        if reminder is None:
            raise ReminderNotFoundError(reminder_id)

        user = self._resolve_user(reminder.owner_id, user)
        text = active_notification_text(reminder, user)
        voice_id = (
            override_voice_id
            or reminder.tts.voice_id
            or (user.voice_id if user is not None else None)
            or self._default_voice_id
            or None
        )
        text_hash = compute_text_hash(text, voice_id)

        cached = reminder.tts
        if cached.status is SpeechStatus.READY and cached.text_hash == text_hash and cached.audio:
            logger.debug("Speech cache hit for reminder #%d", reminder_id)
            return SpeechResult(reminder_id, SpeechStatus.READY, text_hash, cached=True)

        self._reminders.save_speech_state(
            reminder_id,
            SpeechState(voice_id=voice_id, text_hash=text_hash, status=SpeechStatus.PENDING),
        )

        try:
            if self._speech is None:
                raise RuntimeError("speech provider not configured")
            audio = await asyncio.wait_for(
                self._speech.synthesize(text, voice_id), timeout=self._timeout,
            )
            if not audio.audio:
                raise SpeechSynthesisError("TTS provider returned empty audio")
        except Exception as exc:
            logger.warning("Speech generation failed for reminder #%d: %s", reminder_id, exc)
            self._reminders.save_speech_state(
                reminder_id,
                SpeechState(voice_id=voice_id, text_hash=text_hash, status=SpeechStatus.FAILED),
            )
            return SpeechResult(
                reminder_id, SpeechStatus.FAILED, text_hash, error=str(exc) or type(exc).__name__,
            )

        self._reminders.save_speech_state(
            reminder_id,
            SpeechState(
                voice_id=voice_id,
                text_hash=text_hash,
                audio=audio.audio,
                content_type=audio.content_type,
                size=len(audio.audio),
                status=SpeechStatus.READY,
                generated_at=datetime.now(timezone.utc),
            ),
        )
        logger.info("Speech ready for reminder #%d (%d bytes)", reminder_id, len(audio.audio))
        return SpeechResult(reminder_id, SpeechStatus.READY, text_hash)
