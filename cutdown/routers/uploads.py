"""
Upload API Router - Whole-file and resumable chunked ingestion of source videos.
"""

import asyncio
import logging
import os
import shutil
import time
from typing import BinaryIO

from fastapi import APIRouter, BackgroundTasks, Depends, File, Form, HTTPException, UploadFile, status

from cutdown.config import get_settings
from cutdown.dependencies import get_runner, get_upload_assembler, get_video_store
from cutdown.schemas.requests import FinalizeUploadRequest
from cutdown.schemas.responses import ChunkUploadResponse, VideoResponse
from cutdown.services.ffmpeg_runner import FFmpegRunner
from cutdown.services.resource_monitor import InsufficientDiskSpaceError, ensure_disk_space
from cutdown.services.upload_assembler import (
    ChunkedUploadAssembler,
    FinalizeConflictError,
    IncompleteUploadError,
    InvalidChunkError,
    MissingChunkError,
    UploadSessionNotFoundError,
)
from cutdown.services.video_store import VideoStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Uploads"])


def _check_extension(file_name: str) -> None:
    settings = get_settings()
    ext = os.path.splitext(file_name or "")[1].lower()
    if ext not in settings.allowed_upload_extensions:
        raise HTTPException(
            status_code=status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            detail=f"Invalid file type '{ext or file_name}'. Only video and audio files are allowed.",
        )


def _save_upload(source: BinaryIO, path: str) -> int:
    with open(path, "wb") as buffer:
        shutil.copyfileobj(source, buffer, 1024 * 1024)
    return os.path.getsize(path)


async def probe_and_store_duration(
    runner: FFmpegRunner,
    video_store: VideoStore,
    video_id: int,
    path: str,
) -> None:
    """Probe a freshly ingested file and record its duration."""
    duration = await runner.probe_duration(path)
    if duration is None:
        logger.warning(f"Duration unknown for video {video_id} ({path})")
        return
    video_store.update_video(video_id, duration_seconds=duration)
    logger.info(f"Video {video_id} duration: {duration:.2f}s")


@router.post("/upload", response_model=VideoResponse, status_code=status.HTTP_201_CREATED)
async def upload_video(
    background_tasks: BackgroundTasks,
    file: UploadFile = File(...),
    video_store: VideoStore = Depends(get_video_store),
    runner: FFmpegRunner = Depends(get_runner),
) -> VideoResponse:
    """
    Upload a whole (small) file in one request.

    The file must be a supported media type, fit within the size limit and
    leave at least twice its size free on the upload volume.
    """
    settings = get_settings()
    _check_extension(file.filename)

    if file.size is not None and file.size > settings.max_upload_size_bytes:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail="File exceeds the 5GB upload limit",
        )

    os.makedirs(settings.upload_directory, exist_ok=True)
    original_name = os.path.basename(file.filename)
    filename = f"{int(time.time() * 1000)}-{original_name}"
    path = os.path.join(settings.upload_directory, filename)

    loop = asyncio.get_event_loop()
    try:
        size = await loop.run_in_executor(None, _save_upload, file.file, path)
    except OSError as e:
        logger.error(f"Failed to save upload {original_name}: {e}")
        if os.path.exists(path):
            os.remove(path)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Failed to save uploaded file",
        )

    if size > settings.max_upload_size_bytes:
        os.remove(path)
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail="File exceeds the 5GB upload limit",
        )

    try:
        ensure_disk_space(settings.upload_directory, size * settings.disk_space_multiplier)
    except InsufficientDiskSpaceError as e:
        os.remove(path)
        raise HTTPException(status_code=status.HTTP_507_INSUFFICIENT_STORAGE, detail=str(e))

    video = video_store.create_video(
        filename=filename,
        original_name=original_name,
        path=path,
        size=size,
    )
    background_tasks.add_task(probe_and_store_duration, runner, video_store, video.id, path)

    return VideoResponse.model_validate(video, from_attributes=True)


@router.post("/upload-chunk", response_model=ChunkUploadResponse)
async def upload_chunk(
    chunk: UploadFile = File(...),
    chunk_index: int = Form(...),
    total_chunks: int = Form(...),
    upload_id: str = Form(...),
    file_name: str = Form(...),
    assembler: ChunkedUploadAssembler = Depends(get_upload_assembler),
) -> ChunkUploadResponse:
    """
    Store one chunk of a large upload.

    Chunks may arrive in any order and in parallel; re-sending an index
    replaces the earlier copy.
    """
    _check_extension(file_name)

    try:
        receipt = await assembler.receive_chunk(
            upload_id=upload_id,
            chunk_index=chunk_index,
            total_chunks=total_chunks,
            file_name=file_name,
            source=chunk.file,
        )
    except InvalidChunkError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except UploadSessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    return ChunkUploadResponse(
        upload_id=receipt.upload_id,
        chunk_index=receipt.chunk_index,
        received=receipt.received,
        total=receipt.total,
        complete=receipt.received == receipt.total,
    )


@router.post("/finalize-upload", response_model=VideoResponse, status_code=status.HTTP_201_CREATED)
async def finalize_upload(
    request: FinalizeUploadRequest,
    background_tasks: BackgroundTasks,
    assembler: ChunkedUploadAssembler = Depends(get_upload_assembler),
    video_store: VideoStore = Depends(get_video_store),
    runner: FFmpegRunner = Depends(get_runner),
) -> VideoResponse:
    """Assemble a completed chunked upload into a source video."""
    try:
        assembled = await assembler.finalize(
            upload_id=request.upload_id,
            file_name=request.file_name,
            declared_size=request.total_size,
        )
    except UploadSessionNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    except IncompleteUploadError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except FinalizeConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except MissingChunkError as e:
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(e))

    video = video_store.create_video(
        filename=assembled.filename,
        original_name=assembled.original_name,
        path=assembled.path,
        size=assembled.size,
    )
    background_tasks.add_task(probe_and_store_duration, runner, video_store, video.id, assembled.path)

    return VideoResponse.model_validate(video, from_attributes=True)
