import asyncio
import shutil
from datetime import datetime, timedelta

import pytest
from sqlmodel import SQLModel

from tests.conftest import FakeImageGenerator, FakeTranscriber, no_sleep
from voice_canvas.config import Settings
from voice_canvas.imagegen import ImageGenerationError, OpenAIImageGenerator
from voice_canvas.pipeline import (
    AudioPersistenceError,
    ImageGenerationFailedError,
    PipelineStage,
    QuotaExceededError,
    TranscriptionFailedError,
    UploadPipeline,
    build_pipeline,
)
from voice_canvas.transcription import OpenAIWhisperTranscriber, SpeechToTextError
from voice_canvas.usage import UsageLedgerError

START = datetime(2026, 1, 1, 12, 0, 0)


def run_upload(pipeline, user_id="abc", audio=b"RIFF fake audio", now=START):
    return asyncio.run(pipeline.handle_upload(user_id, audio, now=now))


def test_successful_upload_returns_transcript_and_image(pipeline, transcriber, image_generator, upload_dir):
    result = run_upload(pipeline)

    assert result.transcription == "a cat sitting on a windowsill"
    assert result.image_url == "https://images.example.com/cat.png"
    assert image_generator.prompts == ["a cat sitting on a windowsill"]
    assert len(transcriber.calls) == 1
    assert list(upload_dir.iterdir()) == []


def test_transient_transcription_failure_is_retried(ledger, image_generator, upload_dir):
    transcriber = FakeTranscriber(failures=2)
    pipeline = UploadPipeline(ledger, transcriber, image_generator, upload_dir, sleep=no_sleep)

    result = run_upload(pipeline)

    assert result.transcription == "a cat sitting on a windowsill"
    assert len(transcriber.calls) == 3


def test_transcription_failure_never_reaches_image_generation(ledger, image_generator, upload_dir):
    transcriber = FakeTranscriber(failures=100)
    pipeline = UploadPipeline(ledger, transcriber, image_generator, upload_dir, max_retries=3, sleep=no_sleep)

    with pytest.raises(TranscriptionFailedError) as excinfo:
        run_upload(pipeline)

    assert len(transcriber.calls) == 4
    assert image_generator.prompts == []
    assert isinstance(excinfo.value.cause, SpeechToTextError)
    assert list(upload_dir.iterdir()) == []


def test_empty_image_result_is_a_failure(ledger, transcriber, upload_dir):
    image_generator = FakeImageGenerator(url="")
    pipeline = UploadPipeline(ledger, transcriber, image_generator, upload_dir, sleep=no_sleep)

    with pytest.raises(ImageGenerationFailedError):
        run_upload(pipeline)

    assert len(transcriber.calls) == 1
    assert list(upload_dir.iterdir()) == []


def test_image_generation_error_is_not_retried(ledger, transcriber, upload_dir):
    image_generator = FakeImageGenerator(error=ImageGenerationError("Image generation failed"))
    pipeline = UploadPipeline(ledger, transcriber, image_generator, upload_dir, sleep=no_sleep)

    with pytest.raises(ImageGenerationFailedError) as excinfo:
        run_upload(pipeline)

    assert len(image_generator.prompts) == 1
    assert str(excinfo.value.cause) == "Image generation failed"


def test_quota_exceeded_makes_no_upstream_calls(pipeline, transcriber, image_generator, upload_dir):
    for _ in range(25):
        run_upload(pipeline)
    transcriber.calls.clear()
    image_generator.prompts.clear()

    with pytest.raises(QuotaExceededError) as excinfo:
        run_upload(pipeline)

    assert transcriber.calls == []
    assert image_generator.prompts == []
    assert excinfo.value.decision.usage_count == 25
    assert list(upload_dir.iterdir()) == []


def test_quota_resets_after_window(pipeline):
    for _ in range(25):
        run_upload(pipeline)

    result = run_upload(pipeline, now=START + timedelta(days=1, seconds=1))

    assert result.image_url
    assert pipeline.ledger.get_usage("abc").usage_count == 1


def test_failed_upload_still_consumes_quota(ledger, image_generator, upload_dir):
    pipeline = UploadPipeline(ledger, FakeTranscriber(failures=100), image_generator, upload_dir, sleep=no_sleep)

    with pytest.raises(TranscriptionFailedError):
        run_upload(pipeline)

    assert ledger.get_usage("abc").usage_count == 1


def test_ledger_failure_propagates_before_upstream_calls(pipeline, transcriber):
    SQLModel.metadata.drop_all(pipeline.ledger.engine)

    with pytest.raises(UsageLedgerError):
        run_upload(pipeline)

    assert transcriber.calls == []


def test_each_upload_gets_its_own_temporary_file(ledger, image_generator, upload_dir):
    transcriber = FakeTranscriber(text=None)
    pipeline = UploadPipeline(ledger, transcriber, image_generator, upload_dir, sleep=no_sleep)

    async def upload_many():
        return await asyncio.gather(
            *(pipeline.handle_upload(f"user-{i}", f"clip {i}".encode(), now=START) for i in range(5))
        )

    results = asyncio.run(upload_many())

    assert [r.transcription for r in results] == [f"clip {i}" for i in range(5)]
    assert len(set(transcriber.calls)) == 5
    assert list(upload_dir.iterdir()) == []


def test_new_job_starts_idle(pipeline, upload_dir):
    job = pipeline.new_job("abc")

    assert job.stage is PipelineStage.IDLE
    assert job.audio_path.parent == upload_dir
    assert job.audio_path != pipeline.new_job("abc").audio_path


def test_build_pipeline_from_settings(tmp_path):
    settings = Settings(
        database_url=f"sqlite:///{tmp_path / 'usage.db'}",
        upload_dir=tmp_path / "uploads",
        max_requests=5,
        reset_window_hours=1,
        max_retries=2,
        image_size="512x512",
    )

    pipeline = build_pipeline(settings)

    assert pipeline.ledger.max_requests == 5
    assert pipeline.ledger.window == timedelta(hours=1)
    assert pipeline.max_retries == 2
    assert isinstance(pipeline.transcriber, OpenAIWhisperTranscriber)
    assert isinstance(pipeline.image_generator, OpenAIImageGenerator)
    assert pipeline.image_generator.size == "512x512"
    assert (tmp_path / "uploads").is_dir()


class TestStages:
    def test_success_ends_done(self, pipeline):
        result = run_upload(pipeline)

        assert result.stage is PipelineStage.DONE

    def test_quota_denied_fails_from_quota_checked(self, pipeline):
        for _ in range(25):
            run_upload(pipeline)

        with pytest.raises(QuotaExceededError) as excinfo:
            run_upload(pipeline)

        assert excinfo.value.job.history == [
            PipelineStage.IDLE,
            PipelineStage.QUOTA_CHECKED,
            PipelineStage.FAILED,
        ]
        assert excinfo.value.failed_from is PipelineStage.QUOTA_CHECKED

    def test_transcription_failure_fails_from_transcribing(self, ledger, image_generator, upload_dir):
        pipeline = UploadPipeline(ledger, FakeTranscriber(failures=100), image_generator, upload_dir, sleep=no_sleep)

        with pytest.raises(TranscriptionFailedError) as excinfo:
            run_upload(pipeline)

        assert excinfo.value.failed_from is PipelineStage.TRANSCRIBING
        assert excinfo.value.job.stage is PipelineStage.FAILED

    def test_image_failure_fails_from_image_generating(self, ledger, transcriber, upload_dir):
        pipeline = UploadPipeline(ledger, transcriber, FakeImageGenerator(url=None), upload_dir, sleep=no_sleep)

        with pytest.raises(ImageGenerationFailedError) as excinfo:
            run_upload(pipeline)

        assert excinfo.value.job.history == [
            PipelineStage.IDLE,
            PipelineStage.QUOTA_CHECKED,
            PipelineStage.TRANSCRIBING,
            PipelineStage.IMAGE_GENERATING,
            PipelineStage.FAILED,
        ]
        assert excinfo.value.job.transcription == "a cat sitting on a windowsill"


def test_unwritable_upload_dir_is_a_processing_error(pipeline, transcriber, upload_dir):
    shutil.rmtree(upload_dir)

    with pytest.raises(AudioPersistenceError) as excinfo:
        run_upload(pipeline)

    assert isinstance(excinfo.value.cause, OSError)
    assert excinfo.value.failed_from is PipelineStage.QUOTA_CHECKED
    assert transcriber.calls == []
