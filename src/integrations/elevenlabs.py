"""ElevenLabs integration — text-to-speech synthesis.

Implements SpeechPort against the ElevenLabs v1 text-to-speech endpoint.
Returns MP3 audio. Provider errors are decoded into SpeechSynthesisError
with the HTTP status and the provider's detail message.
"""

from __future__ import annotations

import json
import logging

import httpx

from src.config import ConfigurationError
from src.ports.speech_port import SpeechSynthesisError, SynthesizedAudio

logger = logging.getLogger(__name__)

_TTS_URL = "https://api.elevenlabs.io/v1/text-to-speech/{voice_id}"
_TIMEOUT_SECONDS = 20
_CONTENT_TYPE = "audio/mpeg"

_VOICE_SETTINGS = {
    "stability": 0.5,
    "similarity_boost": 0.8,
    "style": 0.3,
    "use_speaker_boost": True,
}


def _error_message(response: httpx.Response) -> tuple[str, object]:
    """Extract a readable message and the raw detail from an error response."""
    try:
        parsed: object = json.loads(response.content.decode("utf-8", errors="replace"))
    except ValueError:
        parsed = {"raw": response.content.decode("utf-8", errors="replace")}
    detail = parsed.get("detail", parsed) if isinstance(parsed, dict) else parsed
    if isinstance(detail, dict):
        message = detail.get("message") or json.dumps(detail)
    else:
        message = str(detail)
    return message, detail


class ElevenLabsSpeech:
    """ElevenLabs implementation of SpeechPort."""

    def __init__(
        self,
        api_key: str | None = None,
        default_voice_id: str | None = None,
        model_id: str | None = None,
        timeout: float = _TIMEOUT_SECONDS,
    ) -> None:
        from src.config import settings

        self._api_key = api_key if api_key is not None else settings.ELEVENLABS_API_KEY
        self._default_voice_id = (
            default_voice_id if default_voice_id is not None else settings.ELEVENLABS_DEFAULT_VOICE_ID
        )
        self._model_id = model_id or settings.ELEVENLABS_MODEL_ID
        self._timeout = timeout

    async def synthesize(self, text: str, voice_id: str | None) -> SynthesizedAudio:
        if not self._api_key:
            raise ConfigurationError("ELEVENLABS_API_KEY not configured")
        voice = voice_id or self._default_voice_id
        if not voice:
            raise ConfigurationError(
                "Voice ID not provided or ELEVENLABS_DEFAULT_VOICE_ID missing"
            )

        try:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                resp = await client.post(
                    _TTS_URL.format(voice_id=voice),
                    json={
                        "text": text,
                        "model_id": self._model_id,
                        "voice_settings": _VOICE_SETTINGS,
                    },
                    headers={
                        "xi-api-key": self._api_key,
                        "Content-Type": "application/json",
                        "Accept": _CONTENT_TYPE,
                    },
                )
        except httpx.HTTPError as exc:
            raise SpeechSynthesisError(f"TTS request failed: {exc}") from exc

        if resp.status_code >= 400:
            message, detail = _error_message(resp)
            logger.warning("ElevenLabs error %d: %s", resp.status_code, message)
            raise SpeechSynthesisError(
                f"TTS generation failed ({resp.status_code}): {message}",
                status_code=resp.status_code,
                detail=detail,
            )

        audio = resp.content
        logger.info("Synthesized %d bytes of speech with voice %s", len(audio), voice)
        return SynthesizedAudio(audio=audio, content_type=_CONTENT_TYPE)
