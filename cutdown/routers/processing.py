"""
Processing API Router - Cut list planning, derivation jobs, progress and downloads.
"""

import asyncio
import logging
import os
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import FileResponse

from cutdown.config import get_available_aspect_ratios, get_available_quality_tiers
from cutdown.dependencies import (
    get_job_registry,
    get_job_semaphore,
    get_packager,
    get_pipeline,
    get_video_store,
)
from cutdown.schemas.requests import GenerateCutsRequest, ParseTimestampsRequest, ProcessClipsRequest
from cutdown.schemas.responses import (
    AspectRatioResponse,
    CancelResponse,
    ClipRecordResponse,
    GeneratedCutsResponse,
    PresetsResponse,
    ProcessClipsResponse,
    ProgressResponse,
    QualityTierResponse,
    TimeRangeResponse,
    TimestampValidationResponse,
    VideoDetailResponse,
    VideoResponse,
)
from cutdown.services.archive_packager import ArchivePackager, ArtifactCategory
from cutdown.services.cut_generator import InsufficientDurationError, generate_random_cuts
from cutdown.services.derivation_pipeline import (
    NOTHING_GENERATED_MESSAGE,
    DerivationPipeline,
    InvalidWorkPlanError,
    WorkPlan,
)
from cutdown.services.job_tracker import (
    CANCELLED_MESSAGE,
    JobConflictError,
    JobNotFoundError,
    JobProgress,
    JobRegistry,
    JobStatus,
)
from cutdown.services.timestamp_parser import parse_and_validate
from cutdown.services.video_store import SourceVideo, VideoStore

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api", tags=["Processing"])


def _require_video(video_store: VideoStore, video_id: int) -> SourceVideo:
    video = video_store.get_video(video_id)
    if video is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Video {video_id} not found",
        )
    return video


def _known_duration(
    video_store: VideoStore,
    video_id: Optional[int],
    explicit: Optional[float],
) -> Optional[float]:
    if explicit:
        return explicit
    if video_id is None:
        return None
    return _require_video(video_store, video_id).duration_seconds


def _progress_response(job: JobProgress) -> ProgressResponse:
    return ProgressResponse(
        video_id=job.video_id,
        status=job.status.value,
        total_units=job.total_units,
        completed_units=job.completed_units,
        progress_percent=job.progress_percent,
        total_clips=job.total_clips,
        total_loops=job.total_loops,
        total_stills=job.total_stills,
        total_shorts=job.total_shorts,
        errors=job.errors,
        download_path=job.download_path,
    )


# ============================================================================
# Planning
# ============================================================================


@router.post("/parse-timestamps", response_model=TimestampValidationResponse)
async def parse_timestamps(
    request: ParseTimestampsRequest,
    video_store: VideoStore = Depends(get_video_store),
) -> TimestampValidationResponse:
    """
    Parse and validate a free-text cut list without processing anything.

    Bad lines are reported as errors, overlaps and risky starts as warnings.
    """
    duration = _known_duration(video_store, request.video_id, request.duration_seconds)
    result = parse_and_validate(request.text, duration)

    return TimestampValidationResponse(
        valid=[TimeRangeResponse(start_time=r.start_time, end_time=r.end_time) for r in result.valid],
        errors=result.errors,
        warnings=result.warnings,
    )


@router.post("/generate-cuts", response_model=GeneratedCutsResponse)
async def generate_cuts(
    request: GenerateCutsRequest,
    video_store: VideoStore = Depends(get_video_store),
) -> GeneratedCutsResponse:
    """Generate a random, non-overlapping quick-start cut list."""
    duration = _known_duration(video_store, request.video_id, request.duration_seconds)
    if not duration:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Video duration is not available yet",
        )

    try:
        cuts = generate_random_cuts(duration)
    except InsufficientDurationError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    return GeneratedCutsResponse(
        cuts=[TimeRangeResponse(start_time=c.start_time, end_time=c.end_time) for c in cuts],
        text="\n".join(f"{c.start_time}-{c.end_time}" for c in cuts),
        duration_seconds=duration,
    )


# ============================================================================
# Processing
# ============================================================================


@router.post("/process-clips", response_model=ProcessClipsResponse)
async def process_clips(
    request: ProcessClipsRequest,
    video_store: VideoStore = Depends(get_video_store),
    job_registry: JobRegistry = Depends(get_job_registry),
    pipeline: DerivationPipeline = Depends(get_pipeline),
    job_semaphore: asyncio.Semaphore = Depends(get_job_semaphore),
) -> ProcessClipsResponse:
    """
    Run a processing job to completion and return its outcome.

    Progress can be polled from /api/processing-progress/{video_id} while this
    request is in flight.
    """
    video = _require_video(video_store, request.video_id)

    time_ranges = []
    input_errors: list[str] = []
    warnings: list[str] = []
    if request.time_range_text and request.time_range_text.strip():
        validation = parse_and_validate(request.time_range_text, video.duration_seconds)
        wants_exports = request.generate_loops or request.generate_stills or request.generate_shorts
        if validation.errors and not validation.valid and not wants_exports:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail={"message": "Invalid timestamps", "errors": validation.errors},
            )
        # Valid lines are processed; the rest are reported with the job's errors
        time_ranges = validation.valid
        input_errors = validation.errors
        warnings = validation.warnings

    try:
        plan = WorkPlan(
            video_id=video.id,
            source_path=video.path,
            output_name=request.output_name,
            time_ranges=time_ranges,
            aspect_ratios=list(request.aspect_ratios),
            quality=request.quality,
            video_fade=request.video_fade,
            audio_fade=request.audio_fade,
            fade_duration=request.fade_duration,
            generate_loops=request.generate_loops,
            generate_stills=request.generate_stills,
            generate_shorts=request.generate_shorts,
            source_duration=video.duration_seconds,
            input_errors=input_errors,
        )
    except InvalidWorkPlanError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    # Reserve the video before queueing for a worker so a duplicate request
    # conflicts at once and progress is visible while this one waits
    try:
        job_registry.start_job(video.id)
    except JobConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))

    try:
        async with job_semaphore:
            result = await pipeline.process(plan, registered=True)
    except asyncio.CancelledError:
        job_registry.fail(video.id, "Processing aborted")
        raise

    counts = {category: 0 for category in ArtifactCategory}
    for artifact in result.artifacts:
        counts[artifact.category] += 1

    if result.nothing_generated:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"message": NOTHING_GENERATED_MESSAGE, "errors": result.errors},
        )

    if result.cancelled:
        message = CANCELLED_MESSAGE
    elif result.status == JobStatus.COMPLETED:
        message = f"Generated {len(result.artifacts)} of {result.total_units} outputs"
    else:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={"message": "Failed to package outputs", "errors": result.errors},
        )

    return ProcessClipsResponse(
        video_id=result.video_id,
        status=result.status.value,
        message=message,
        total_units=result.total_units,
        outputs_generated=len(result.artifacts),
        clips_generated=counts[ArtifactCategory.CLIP],
        loops_generated=counts[ArtifactCategory.LOOP],
        stills_generated=counts[ArtifactCategory.STILL],
        shorts_generated=counts[ArtifactCategory.SHORT],
        errors=result.errors,
        warnings=warnings,
        archive_name=result.archive.name if result.archive else None,
        download_path=result.download_path,
        processing_time_seconds=result.processing_time_seconds,
    )


@router.get("/processing-progress/{video_id}", response_model=ProgressResponse)
async def get_processing_progress(
    video_id: int,
    job_registry: JobRegistry = Depends(get_job_registry),
) -> ProgressResponse:
    """Poll the live progress of a video's processing job."""
    job = job_registry.get(video_id)
    if job is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No processing job found for video {video_id}",
        )
    return _progress_response(job)


@router.post("/cancel-processing/{video_id}", response_model=CancelResponse)
async def cancel_processing(
    video_id: int,
    job_registry: JobRegistry = Depends(get_job_registry),
) -> CancelResponse:
    """
    Request cancellation of a video's processing job.

    No further work units are dispatched; units already running finish or
    time out. Cancelling a finished job changes nothing.
    """
    try:
        job = job_registry.request_cancel(video_id)
    except JobNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    if job.cancel_requested:
        message = CANCELLED_MESSAGE
    else:
        message = f"Job already {job.status.value}"
    return CancelResponse(video_id=video_id, status=job.status.value, message=message)


@router.get("/download/{video_id}")
async def download_archive(
    video_id: int,
    job_registry: JobRegistry = Depends(get_job_registry),
    packager: ArchivePackager = Depends(get_packager),
) -> FileResponse:
    """Stream the packaged archive for a video."""
    job = job_registry.get(video_id)
    path = job.archive_path if job and job.archive_path else packager.locate(video_id)

    if not path or not os.path.isfile(path):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No archive available for video {video_id}",
        )

    return FileResponse(path, media_type="application/zip", filename=os.path.basename(path))


# ============================================================================
# Info
# ============================================================================


@router.get("/video/{video_id}", response_model=VideoDetailResponse)
async def get_video(
    video_id: int,
    video_store: VideoStore = Depends(get_video_store),
) -> VideoDetailResponse:
    """Get a source video and the clips produced from it."""
    video = _require_video(video_store, video_id)
    clips = video_store.get_clips_by_video(video_id)

    return VideoDetailResponse(
        video=VideoResponse.model_validate(video, from_attributes=True),
        clips=[ClipRecordResponse.model_validate(c, from_attributes=True) for c in clips],
    )


@router.get("/presets", response_model=PresetsResponse)
async def list_presets() -> PresetsResponse:
    """List quality tiers and aspect ratios for the UI."""
    return PresetsResponse(
        quality_tiers=[QualityTierResponse(**p) for p in get_available_quality_tiers()],
        aspect_ratios=[
            AspectRatioResponse(
                id=p["id"],
                name=p["name"],
                folder=p["folder"],
                letterbox_removal=p["letterbox_removal"],
            )
            for p in get_available_aspect_ratios()
        ],
    )
