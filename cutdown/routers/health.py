"""
Health check endpoints for the cutdown worker.
"""

import os

from fastapi import APIRouter, Request

from cutdown.config import get_settings
from cutdown.schemas.responses import HealthResponse, ReadinessResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Basic health check endpoint.

    Returns 200 if the service is running.
    """
    return HealthResponse(
        status="healthy",
        version="1.0.0",
    )


@router.get("/health/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request):
    """
    Readiness check endpoint.

    Returns whether the service is ready to accept processing requests:
    the transcoder binaries are on PATH and the working directories are
    writable.
    """
    settings = get_settings()
    runner = getattr(request.app.state, "runner", None)
    tools = runner.verify_tools() if runner is not None else {}

    ffmpeg_ready = tools.get("ffmpeg", False)
    ffprobe_ready = tools.get("ffprobe", False)
    writable = all(
        os.path.isdir(path) and os.access(path, os.W_OK)
        for path in (settings.upload_directory, settings.output_directory)
    )

    return ReadinessResponse(
        ready=ffmpeg_ready and ffprobe_ready and writable,
        ffmpeg="available" if ffmpeg_ready else "not_found",
        ffprobe="available" if ffprobe_ready else "not_found",
        directories_writable=writable,
    )
