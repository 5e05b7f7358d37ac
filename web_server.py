from __future__ import annotations

import logging
import traceback
import uuid
from functools import lru_cache
from pathlib import Path
from typing import Optional

from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse, JSONResponse, PlainTextResponse
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel

from voice_canvas.config import Settings, load_environment
from voice_canvas.pipeline import (
    ProcessingError,
    QuotaExceededError,
    UploadPipeline,
    build_pipeline,
)
from voice_canvas.usage import UsageLedgerError

load_environment()

logger = logging.getLogger("voice-canvas")

SUCCESS_MESSAGE = "File uploaded, transcribed, and image generated successfully"
UNEXPECTED_ERROR_MESSAGE = "Error during transcription or image generation."

app = FastAPI(title="Voice Canvas")
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
    expose_headers=["X-User-Id"],
)

static_dir = Path(__file__).parent / "web"
app.mount("/static", StaticFiles(directory=static_dir), name="static")


class UploadResponse(BaseModel):
    message: str
    transcription: str
    imageUrl: str


class UsageResponse(BaseModel):
    userId: str
    usageCount: int
    remaining: int
    resetTime: str


@lru_cache
def get_settings() -> Settings:
    return Settings.from_env()


@lru_cache
def get_pipeline() -> UploadPipeline:
    return build_pipeline(get_settings())


def _error_body(message: str, cause: BaseException, expose_details: bool) -> dict:
    body = {"message": message, "error": "", "stack": ""}
    if expose_details:
        body["error"] = str(cause)
        body["stack"] = "".join(traceback.format_exception(type(cause), cause, cause.__traceback__))
    return body


@app.exception_handler(Exception)
async def unexpected_error(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s", request.url.path)
    try:
        expose_details = get_settings().expose_error_details
    except ValueError:
        expose_details = False
    return JSONResponse(_error_body(UNEXPECTED_ERROR_MESSAGE, exc, expose_details), status_code=500)


@app.get("/")
async def index() -> FileResponse:
    return FileResponse(static_dir / "index.html")


@app.get("/health")
async def health() -> dict:
    return {"status": "ok", "service": "voice-canvas"}


@app.post("/upload", response_model=UploadResponse)
async def upload_audio(
    response: Response,
    audio: Optional[UploadFile] = File(None),
    user_id: Optional[str] = Query(None, alias="userId"),
    pipeline: UploadPipeline = Depends(get_pipeline),
    settings: Settings = Depends(get_settings),
):
    audio_bytes = await audio.read() if audio is not None else b""
    if not audio_bytes:
        return PlainTextResponse("File not found.", status_code=400)

    identity = user_id or str(uuid.uuid4())
    headers = {"X-User-Id": identity}

    try:
        result = await pipeline.handle_upload(identity, audio_bytes)
    except QuotaExceededError as exc:
        return JSONResponse({"message": str(exc)}, status_code=429, headers=headers)
    except UsageLedgerError:
        return JSONResponse({"message": "Internal server error"}, status_code=500, headers=headers)
    except ProcessingError as exc:
        logger.error("%s %s", exc, exc.cause)
        return JSONResponse(
            _error_body(str(exc), exc.cause, settings.expose_error_details),
            status_code=500,
            headers=headers,
        )

    response.headers.update(headers)
    return UploadResponse(
        message=SUCCESS_MESSAGE,
        transcription=result.transcription,
        imageUrl=result.image_url,
    )


@app.get("/usage", response_model=UsageResponse)
def usage(
    user_id: str = Query(..., alias="userId"),
    pipeline: UploadPipeline = Depends(get_pipeline),
) -> UsageResponse:
    try:
        record = pipeline.ledger.get_usage(user_id)
    except UsageLedgerError as exc:
        raise HTTPException(status_code=500, detail="Internal server error") from exc
    if record is None:
        raise HTTPException(status_code=404, detail=f"No usage recorded for {user_id}")

    return UsageResponse(
        userId=record.user_id,
        usageCount=record.usage_count,
        remaining=pipeline.ledger.remaining(record),
        resetTime=record.reset_time.isoformat() + "Z",
    )
