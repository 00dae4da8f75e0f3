"""Tests for src.integrations.elevenlabs — text-to-speech provider."""

import json

import httpx
import pytest
from unittest.mock import AsyncMock, MagicMock, patch

from src.config import ConfigurationError
from src.integrations.elevenlabs import ElevenLabsSpeech
from src.ports.speech_port import SpeechSynthesisError


def _mock_client(post):
    mock_client = AsyncMock()
    mock_client.__aenter__ = AsyncMock(return_value=mock_client)
    mock_client.__aexit__ = AsyncMock(return_value=False)
    mock_client.post = post
    return mock_client


def _resp(status_code, content):
    resp = MagicMock()
    resp.status_code = status_code
    resp.content = content
    return resp


def _speech(**kwargs):
    defaults = dict(api_key="xi-key", default_voice_id="voice-default", model_id="eleven_multilingual_v2")
    defaults.update(kwargs)
    return ElevenLabsSpeech(**defaults)


class TestSynthesize:
    @pytest.mark.asyncio
    async def test_success_returns_mp3(self):
        mock_client = _mock_client(AsyncMock(return_value=_resp(200, b"ID3-audio")))

        with patch("src.integrations.elevenlabs.httpx.AsyncClient", return_value=mock_client):
            audio = await _speech().synthesize("Hey Dana", "voice-1")

        assert audio.audio == b"ID3-audio"
        assert audio.content_type == "audio/mpeg"
        call = mock_client.post.call_args
        assert call.args[0] == "https://api.elevenlabs.io/v1/text-to-speech/voice-1"
        assert call.kwargs["headers"]["xi-api-key"] == "xi-key"
        assert call.kwargs["headers"]["Accept"] == "audio/mpeg"
        body = call.kwargs["json"]
        assert body["text"] == "Hey Dana"
        assert body["model_id"] == "eleven_multilingual_v2"
        assert body["voice_settings"] == {
            "stability": 0.5, "similarity_boost": 0.8, "style": 0.3, "use_speaker_boost": True,
        }

    @pytest.mark.asyncio
    async def test_default_voice_used(self):
        mock_client = _mock_client(AsyncMock(return_value=_resp(200, b"x")))

        with patch("src.integrations.elevenlabs.httpx.AsyncClient", return_value=mock_client):
            await _speech().synthesize("Hi", None)

        assert mock_client.post.call_args.args[0].endswith("/voice-default")

    @pytest.mark.asyncio
    async def test_provider_error_detail_is_decoded(self):
        body = json.dumps({"detail": {"status": "quota_exceeded", "message": "Quota exceeded"}}).encode()
        mock_client = _mock_client(AsyncMock(return_value=_resp(401, body)))

        with patch("src.integrations.elevenlabs.httpx.AsyncClient", return_value=mock_client):
            with pytest.raises(SpeechSynthesisError) as exc_info:
                await _speech().synthesize("Hi", "voice-1")

        assert str(exc_info.value) == "TTS generation failed (401): Quota exceeded"
        assert exc_info.value.status_code == 401
        assert exc_info.value.detail["status"] == "quota_exceeded"

    @pytest.mark.asyncio
    async def test_non_json_error_body(self):
        mock_client = _mock_client(AsyncMock(return_value=_resp(500, b"Internal Server Error")))

        with patch("src.integrations.elevenlabs.httpx.AsyncClient", return_value=mock_client):
            with pytest.raises(SpeechSynthesisError, match=r"\(500\)"):
                await _speech().synthesize("Hi", "voice-1")

    @pytest.mark.asyncio
    async def test_transport_error_wrapped(self):
        mock_client = _mock_client(AsyncMock(side_effect=httpx.ReadTimeout("slow")))

        with patch("src.integrations.elevenlabs.httpx.AsyncClient", return_value=mock_client):
            with pytest.raises(SpeechSynthesisError, match="TTS request failed"):
                await _speech().synthesize("Hi", "voice-1")

    @pytest.mark.asyncio
    async def test_missing_key(self):
        with pytest.raises(ConfigurationError, match="ELEVENLABS_API_KEY"):
            await _speech(api_key="").synthesize("Hi", "voice-1")

    @pytest.mark.asyncio
    async def test_missing_voice(self):
        with pytest.raises(ConfigurationError, match="Voice ID"):
            await _speech(default_voice_id="").synthesize("Hi", None)
