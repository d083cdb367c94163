"""Transcription provider client — OpenAI-compatible /audio/transcriptions over HTTP.

The provider fetches the audio itself from a URL we hand it, so no audio bytes
pass through this process. Some providers return only text; others return
Whisper-style timed segments as well (``response_format="verbose_json"``).
"""

from pydantic import BaseModel, Field
from loguru import logger
import requests

from config import settings


class TranscriptionError(RuntimeError):
    """The provider could not produce a transcript. Transcription has no fallback."""


class ProviderTranscript(BaseModel):
    text: str
    segments: list[dict] = Field(
        default_factory=list,
        description="Raw provider segments: id, start, end, text, avg_logprob (when supplied)",
    )
    language: str | None = None


class TranscriptionClient:
    def __init__(
        self,
        api_url: str | None = None,
        api_key: str | None = None,
        model: str | None = None,
        language: str | None = None,
        response_format: str = "json",
        timeout: float | None = None,
    ):
        self.api_url = api_url or settings.TRANSCRIPTION_API_URL
        self.api_key = api_key if api_key is not None else settings.TRANSCRIPTION_API_KEY
        self.model = model or settings.TRANSCRIPTION_MODEL
        self.language = language or settings.TRANSCRIPTION_LANGUAGE
        self.response_format = response_format
        self.timeout = timeout or settings.TRANSCRIPTION_TIMEOUT

    def is_configured(self) -> bool:
        return bool(self.api_key)

    def transcribe(self, audio_url: str, language: str | None = None) -> ProviderTranscript:
        """Transcribe the audio at ``audio_url``.

        Raises:
            TranscriptionError: on missing credentials, HTTP failure or an
                unexpected response body.
        """
        if not self.is_configured():
            raise TranscriptionError("TRANSCRIPTION_API_KEY is not set")

        payload = {
            "file": audio_url,
            "language": language or self.language,
            "response_format": self.response_format,
        }
        try:
            resp = requests.post(
                self.api_url,
                json=payload,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=self.timeout,
            )
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Transcription request failed: {e}")
            raise TranscriptionError(f"Failed to transcribe audio: {e}") from e

        if not isinstance(data, dict) or not isinstance(data.get("text"), str):
            raise TranscriptionError("Unexpected transcription response structure")

        segments = data.get("segments") or []
        logger.info(
            f"Transcribed {len(data['text'])} chars "
            f"({len(segments)} provider segments) with {self.model}"
        )
        return ProviderTranscript(
            text=data["text"],
            segments=segments if isinstance(segments, list) else [],
            language=data.get("language"),
        )
