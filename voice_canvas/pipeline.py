"""Upload pipeline: quota check, transcription, image generation, cleanup."""

from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Awaitable, Callable, List, Optional

from fastapi.concurrency import run_in_threadpool

from .config import Settings
from .imagegen import ImageGenerator, OpenAIImageGenerator
from .retry import with_retry
from .transcription import SpeechToTextService, select_transcriber
from .usage import UsageDecision, UsageLedger

logger = logging.getLogger(__name__)

QUOTA_EXCEEDED_MESSAGE = "API usage limit exceeded. Please wait until your limit resets."


class PipelineStage(str, enum.Enum):
    IDLE = "idle"
    QUOTA_CHECKED = "quota_checked"
    TRANSCRIBING = "transcribing"
    IMAGE_GENERATING = "image_generating"
    DONE = "done"
    FAILED = "failed"


class PipelineError(Exception):
    """Base class for upload failures.

    ``job`` is attached by the pipeline so callers can see which stage failed.
    """

    job: Optional["UploadJob"] = None

    @property
    def failed_from(self) -> Optional[PipelineStage]:
        if self.job is None:
            return None
        return self.job.failed_from


class QuotaExceededError(PipelineError):
    """The user has used up the requests allowed in the current window."""

    def __init__(self, decision: UsageDecision) -> None:
        super().__init__(QUOTA_EXCEEDED_MESSAGE)
        self.decision = decision


class ProcessingError(PipelineError):
    """An upstream service failed; ``cause`` holds the original exception."""

    def __init__(self, message: str, cause: BaseException) -> None:
        super().__init__(message)
        self.cause = cause


class AudioPersistenceError(ProcessingError):
    pass


class TranscriptionFailedError(ProcessingError):
    pass


class ImageGenerationFailedError(ProcessingError):
    pass


@dataclass
class UploadJob:
    """State of one upload, owned by a single request."""

    user_id: str
    audio_path: Path
    stage: PipelineStage = PipelineStage.IDLE
    history: List[PipelineStage] = field(default_factory=lambda: [PipelineStage.IDLE])
    transcription: Optional[str] = None
    image_url: Optional[str] = None

    def advance(self, stage: PipelineStage) -> None:
        logger.debug(
            "Upload %s for user %s: %s -> %s", self.audio_path.stem, self.user_id, self.stage.value, stage.value
        )
        self.stage = stage
        self.history.append(stage)

    @property
    def failed_from(self) -> Optional[PipelineStage]:
        if self.stage is not PipelineStage.FAILED or len(self.history) < 2:
            return None
        return self.history[-2]


@dataclass
class UploadResult:
    transcription: str
    image_url: str
    stage: PipelineStage = PipelineStage.DONE


class UploadPipeline:
    """Turns an uploaded audio clip into a transcript and a generated image."""

    def __init__(
        self,
        ledger: UsageLedger,
        transcriber: SpeechToTextService,
        image_generator: ImageGenerator,
        upload_dir: Path,
        max_retries: int = 3,
        retry_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.ledger = ledger
        self.transcriber = transcriber
        self.image_generator = image_generator
        self.upload_dir = Path(upload_dir)
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self._sleep = sleep
        self.upload_dir.mkdir(parents=True, exist_ok=True)

    def new_job(self, user_id: str) -> UploadJob:
        return UploadJob(user_id=user_id, audio_path=self.upload_dir / f"{uuid.uuid4().hex}.wav")

    async def handle_upload(
        self,
        user_id: str,
        audio_bytes: bytes,
        now: Optional[datetime] = None,
    ) -> UploadResult:
        """Run one upload end to end.

        Raises ``QuotaExceededError`` before any upstream call when the user is over quota,
        ``UsageLedgerError`` when the ledger itself fails, and a ``ProcessingError`` subclass when
        the audio cannot be stored or transcription or image generation fails. Pipeline errors
        carry the failed ``job``. Either both results come back or the
        whole request fails.
        """
        job = self.new_job(user_id)

        decision = await run_in_threadpool(self.ledger.check_and_consume, user_id, now)
        job.advance(PipelineStage.QUOTA_CHECKED)
        if not decision.allowed:
            raise self._failed(job, QuotaExceededError(decision))

        try:
            await self._persist_audio(job, audio_bytes)

            job.advance(PipelineStage.TRANSCRIBING)
            job.transcription = await self._transcribe(job)

            job.advance(PipelineStage.IMAGE_GENERATING)
            job.image_url = await self._generate_image(job)
        except PipelineError as exc:
            raise self._failed(job, exc)
        finally:
            self._cleanup(job)

        job.advance(PipelineStage.DONE)
        logger.info("Upload for user %s completed", user_id)
        return UploadResult(transcription=job.transcription, image_url=job.image_url, stage=job.stage)

    def _failed(self, job: UploadJob, exc: PipelineError) -> PipelineError:
        job.advance(PipelineStage.FAILED)
        exc.job = job
        logger.info("Upload for user %s failed while %s: %s", job.user_id, job.failed_from.value, exc)
        return exc

    async def _persist_audio(self, job: UploadJob, audio_bytes: bytes) -> None:
        try:
            await run_in_threadpool(job.audio_path.write_bytes, audio_bytes)
        except OSError as exc:
            logger.error("Could not write %s: %s", job.audio_path, exc)
            raise AudioPersistenceError("Error saving uploaded audio.", exc) from exc
        logger.info("Received %d bytes from user %s at %s", len(audio_bytes), job.user_id, job.audio_path)

    async def _transcribe(self, job: UploadJob) -> str:
        try:
            result = await with_retry(
                lambda: run_in_threadpool(self.transcriber.transcribe, job.audio_path),
                max_retries=self.max_retries,
                delay=self.retry_delay,
                sleep=self._sleep,
            )
        except Exception as exc:
            logger.error("Transcription failed for user %s: %s", job.user_id, exc)
            raise TranscriptionFailedError("Error during transcription.", exc) from exc
        logger.info("Transcript: %s", result.text)
        return result.text

    async def _generate_image(self, job: UploadJob) -> str:
        try:
            result = await run_in_threadpool(self.image_generator.generate, job.transcription)
            if result is None or not result.url:
                raise ValueError("Image generation returned no image")
        except Exception as exc:
            logger.error("Image generation failed for user %s: %s", job.user_id, exc)
            raise ImageGenerationFailedError("Error during image generation.", exc) from exc
        return result.url

    def _cleanup(self, job: UploadJob) -> None:
        try:
            job.audio_path.unlink(missing_ok=True)
        except OSError:
            logger.warning("Could not remove temporary file %s", job.audio_path, exc_info=True)


def build_pipeline(settings: Settings) -> UploadPipeline:
    """Wire the ledger and the upstream services described by ``settings``."""
    ledger = UsageLedger.from_url(
        settings.database_url,
        max_requests=settings.max_requests,
        window=timedelta(hours=settings.reset_window_hours),
    )
    transcriber = select_transcriber(
        settings.transcription_provider,
        openai_model=settings.openai_transcribe_model,
        whisper_model=settings.whisper_model,
    )
    image_generator = OpenAIImageGenerator(
        model=settings.image_model,
        size=settings.image_size,
        url=settings.images_url,
    )
    return UploadPipeline(
        ledger,
        transcriber,
        image_generator,
        upload_dir=settings.upload_dir,
        max_retries=settings.max_retries,
        retry_delay=settings.retry_delay,
    )
