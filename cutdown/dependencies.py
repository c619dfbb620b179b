"""
FastAPI dependencies for the long-lived collaborators built in the lifespan.

Every collaborator lives on app.state; a missing one means the application
was not started through its lifespan.
"""

import asyncio

from fastapi import HTTPException, Request, status

from cutdown.services.archive_packager import ArchivePackager
from cutdown.services.derivation_pipeline import DerivationPipeline
from cutdown.services.ffmpeg_runner import FFmpegRunner
from cutdown.services.job_tracker import JobRegistry
from cutdown.services.upload_assembler import ChunkedUploadAssembler
from cutdown.services.video_store import VideoStore


def _state(request: Request, name: str):
    value = getattr(request.app.state, name, None)
    if value is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"{name.replace('_', ' ').capitalize()} not initialized",
        )
    return value


async def get_video_store(request: Request) -> VideoStore:
    return _state(request, "video_store")


async def get_job_registry(request: Request) -> JobRegistry:
    return _state(request, "job_registry")


async def get_upload_assembler(request: Request) -> ChunkedUploadAssembler:
    return _state(request, "upload_assembler")


async def get_runner(request: Request) -> FFmpegRunner:
    return _state(request, "runner")


async def get_pipeline(request: Request) -> DerivationPipeline:
    return _state(request, "pipeline")


async def get_packager(request: Request) -> ArchivePackager:
    return _state(request, "packager")


async def get_job_semaphore(request: Request) -> asyncio.Semaphore:
    return _state(request, "job_semaphore")
