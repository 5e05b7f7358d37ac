"""Speech-to-text adapters (OpenAI Whisper API or local Whisper)."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional, Protocol

from openai import OpenAI, OpenAIError

logger = logging.getLogger(__name__)


class SpeechToTextError(RuntimeError):
    """Raised when transcription fails."""


@dataclass
class TranscriptionResult:
    """Container for transcription outputs."""

    text: str
    language: Optional[str] = None
    raw: Optional[dict] = None


class SpeechToTextService(Protocol):
    """Interface for speech-to-text providers."""

    def transcribe(self, audio_path: Path) -> TranscriptionResult:
        """Return the transcription for the audio file at ``audio_path``."""


class OpenAIWhisperTranscriber:
    """Sends audio files to the OpenAI transcription endpoint."""

    def __init__(
        self,
        model: Optional[str] = None,
        api_key: Optional[str] = None,
        client: Optional[Any] = None,
    ) -> None:
        self.model = model or os.getenv("OPENAI_TRANSCRIBE_MODEL", "whisper-1")
        self._api_key = api_key
        self._client = client

    @property
    def client(self) -> Any:
        # Built lazily so a missing key fails the request, not the import.
        if self._client is None:
            self._client = OpenAI(api_key=self._api_key or os.getenv("OPENAI_API_KEY"))
        return self._client

    def transcribe(self, audio_path: Path) -> TranscriptionResult:
        try:
            with open(audio_path, "rb") as audio_file:
                response = self.client.audio.transcriptions.create(
                    model=self.model,
                    file=audio_file,
                    response_format="text",
                )
        except OpenAIError as exc:
            logger.exception("OpenAI transcription request failed")
            raise SpeechToTextError(f"OpenAI transcription failed: {exc}") from exc

        # response_format="text" yields a plain string; older SDKs return an object.
        text = response if isinstance(response, str) else getattr(response, "text", "")
        text = (text or "").strip()
        if not text:
            raise SpeechToTextError("OpenAI returned empty transcription")
        return TranscriptionResult(text=text)


class WhisperLocalTranscriber:
    """Runs the open-source Whisper model locally."""

    def __init__(self, model_name: str = "base", device: Optional[str] = None) -> None:
        try:
            import whisper  # type: ignore
        except ImportError as exc:  # pragma: no cover - dependency hint
            raise ImportError(
                "OpenAI's whisper package is required for WhisperLocalTranscriber "
                "(pip install 'voice-canvas[local]')"
            ) from exc

        self._whisper = whisper
        self._model = whisper.load_model(model_name, device=device)

    def transcribe(self, audio_path: Path) -> TranscriptionResult:
        # Whisper decodes the file through ffmpeg and resamples internally.
        result = self._model.transcribe(str(audio_path), fp16=False)
        text = result.get("text", "").strip()
        if not text:
            raise SpeechToTextError("Whisper returned empty transcription")
        language = result.get("language")
        return TranscriptionResult(text=text, language=language, raw=result)


def select_transcriber(
    provider: str,
    openai_model: Optional[str] = None,
    whisper_model: Optional[str] = None,
) -> SpeechToTextService:
    if provider == "openai":
        return OpenAIWhisperTranscriber(model=openai_model or None)
    if provider == "whisper-local":
        return WhisperLocalTranscriber(model_name=whisper_model or "base")
    raise ValueError(f"Unsupported provider: {provider}")
