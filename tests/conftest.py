from __future__ import annotations

from pathlib import Path
from typing import List, Optional

import pytest

from voice_canvas.imagegen import ImageResult
from voice_canvas.pipeline import UploadPipeline
from voice_canvas.transcription import SpeechToTextError, TranscriptionResult
from voice_canvas.usage import UsageLedger


class FakeTranscriber:
    """Fails ``failures`` times, then returns ``text`` (or the file contents)."""

    def __init__(self, text: Optional[str] = "a cat sitting on a windowsill", failures: int = 0) -> None:
        self.text = text
        self.failures = failures
        self.calls: List[Path] = []

    def transcribe(self, audio_path: Path) -> TranscriptionResult:
        self.calls.append(audio_path)
        assert audio_path.exists()
        if len(self.calls) <= self.failures:
            raise SpeechToTextError(f"attempt {len(self.calls)} failed")
        if self.text is None:
            return TranscriptionResult(text=audio_path.read_bytes().decode("utf-8"))
        return TranscriptionResult(text=self.text)


class FakeImageGenerator:
    def __init__(self, url: Optional[str] = "https://images.example.com/cat.png", error: Optional[Exception] = None) -> None:
        self.url = url
        self.error = error
        self.prompts: List[str] = []

    def generate(self, prompt: str) -> ImageResult:
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return ImageResult(url=self.url, prompt=prompt)


async def no_sleep(delay: float) -> None:
    return None


@pytest.fixture
def database_url(tmp_path) -> str:
    return f"sqlite:///{tmp_path / 'usage.db'}"


@pytest.fixture
def ledger(database_url) -> UsageLedger:
    return UsageLedger.from_url(database_url)


@pytest.fixture
def upload_dir(tmp_path) -> Path:
    return tmp_path / "uploads"


@pytest.fixture
def transcriber() -> FakeTranscriber:
    return FakeTranscriber()


@pytest.fixture
def image_generator() -> FakeImageGenerator:
    return FakeImageGenerator()


@pytest.fixture
def pipeline(ledger, transcriber, image_generator, upload_dir) -> UploadPipeline:
    return UploadPipeline(
        ledger,
        transcriber,
        image_generator,
        upload_dir=upload_dir,
        max_retries=3,
        retry_delay=0.5,
        sleep=no_sleep,
    )
