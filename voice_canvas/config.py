"""Environment configuration utilities."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

logger = logging.getLogger(__name__)

DEFAULT_IMAGES_URL = "https://api.openai.com/v1/images/generations"


def load_environment(dotenv_path: Optional[Path] = None) -> None:
    """Load environment variables from a .env file if present."""
    default_path = Path(__file__).resolve().parent.parent / ".env"
    target = dotenv_path or default_path
    loaded = load_dotenv(dotenv_path=target, override=False)
    if loaded:
        logger.debug("Loaded environment variables from %s", target)
    else:
        logger.debug("No .env file found at %s (skipping)", target)

    if not os.getenv("OPENAI_API_KEY"):
        logger.warning(
            "OPENAI_API_KEY is not set. Transcription and image generation will fail until it is configured."
        )


def normalize_bool(value: Optional[str]) -> bool:
    if value is None:
        return False
    return value.lower() in {"true", "1", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from exc


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number, got {raw!r}") from exc


@dataclass
class Settings:
    """Runtime options for the server and the upload pipeline."""

    database_url: str = "sqlite:///usage.db"
    upload_dir: Path = Path("uploads")
    max_requests: int = 25
    reset_window_hours: float = 24.0
    max_retries: int = 3
    retry_delay: float = 1.0
    transcription_provider: str = "openai"
    openai_transcribe_model: str = "whisper-1"
    whisper_model: str = "base"
    image_model: Optional[str] = None
    image_size: str = "1024x1024"
    images_url: str = DEFAULT_IMAGES_URL
    expose_error_details: bool = True
    host: str = "0.0.0.0"
    port: int = 8080

    @classmethod
    def from_env(cls) -> "Settings":
        expose = os.getenv("EXPOSE_ERROR_DETAILS")
        return cls(
            database_url=os.getenv("DATABASE_URL", cls.database_url),
            upload_dir=Path(os.getenv("UPLOAD_DIR", "uploads")),
            max_requests=_env_int("MAX_REQUESTS", cls.max_requests),
            reset_window_hours=_env_float("RESET_WINDOW_HOURS", cls.reset_window_hours),
            max_retries=_env_int("TRANSCRIPTION_MAX_RETRIES", cls.max_retries),
            retry_delay=_env_float("TRANSCRIPTION_RETRY_DELAY", cls.retry_delay),
            transcription_provider=os.getenv("TRANSCRIPTION_PROVIDER", cls.transcription_provider),
            openai_transcribe_model=os.getenv("OPENAI_TRANSCRIBE_MODEL", cls.openai_transcribe_model),
            whisper_model=os.getenv("WHISPER_MODEL", cls.whisper_model),
            image_model=os.getenv("OPENAI_IMAGE_MODEL") or None,
            image_size=os.getenv("OPENAI_IMAGE_SIZE", cls.image_size),
            images_url=os.getenv("OPENAI_IMAGES_URL", cls.images_url),
            expose_error_details=True if expose is None else normalize_bool(expose),
            host=os.getenv("HOST", cls.host),
            port=_env_int("PORT", cls.port),
        )
