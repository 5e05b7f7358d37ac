"""CLI entrypoint: run the web server or push one audio file through the pipeline."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
import uuid
from pathlib import Path
from typing import Optional, Sequence

from .config import Settings, load_environment
from .pipeline import ProcessingError, QuotaExceededError, build_pipeline
from .usage import UsageLedgerError

logger = logging.getLogger("voice-canvas")


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Turn spoken audio into a generated image.")
    subparsers = parser.add_subparsers(dest="command", required=True)

    serve = subparsers.add_parser("serve", help="Run the HTTP server")
    serve.add_argument("--host", type=str, default=None, help="Bind address (default: $HOST or 0.0.0.0)")
    serve.add_argument("--port", type=int, default=None, help="Port (default: $PORT or 8080)")
    serve.add_argument("--reload", action="store_true", help="Reload on code changes")

    process = subparsers.add_parser("process", help="Transcribe an audio file and generate an image")
    process.add_argument("audio", type=Path, help="Path to the recorded audio file")
    process.add_argument("--user-id", type=str, default=None, help="Identity charged for the request")
    process.add_argument("--provider", choices=("openai", "whisper-local"), default=None, help="Transcription backend")
    return parser.parse_args(argv)


def serve(settings: Settings, host: Optional[str], port: Optional[int], reload: bool) -> int:
    import uvicorn

    uvicorn.run(
        "web_server:app",
        host=host or settings.host,
        port=port or settings.port,
        reload=reload,
    )
    return 0


def process(settings: Settings, audio: Path, user_id: Optional[str]) -> int:
    if not audio.is_file():
        logger.error("File not found: %s", audio)
        return 2

    pipeline = build_pipeline(settings)
    identity = user_id or str(uuid.uuid4())
    logger.info("Processing %s as user %s", audio, identity)
    try:
        result = asyncio.run(pipeline.handle_upload(identity, audio.read_bytes()))
    except QuotaExceededError as exc:
        logger.error("%s (resets at %s UTC)", exc, exc.decision.reset_time)
        return 1
    except UsageLedgerError as exc:
        logger.error("Usage ledger failed: %s", exc)
        return 1
    except ProcessingError as exc:
        logger.error("%s %s", exc, exc.cause)
        return 1

    logger.info("Transcript: %s", result.transcription)
    logger.info("Image URL: %s", result.image_url)
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    load_environment()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )
    settings = Settings.from_env()

    if args.command == "serve":
        return serve(settings, args.host, args.port, args.reload)
    if args.provider:
        settings.transcription_provider = args.provider
    return process(settings, args.audio, args.user_id)


if __name__ == "__main__":
    sys.exit(main())
