"""Speech port — abstract interface for text-to-speech synthesis."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


class SpeechSynthesisError(Exception):
    """Raised when the speech provider rejects or fails a synthesis request.

    Carries the provider's HTTP status and error detail when available.
    """

    def __init__(self, message: str, status_code: int | None = None, detail: object = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


@dataclass
class SynthesizedAudio:
    audio: bytes
    content_type: str


class SpeechPort(Protocol):
    """Abstract speech interface used by the speech stage."""

    async def synthesize(self, text: str, voice_id: str | None) -> SynthesizedAudio: ...
