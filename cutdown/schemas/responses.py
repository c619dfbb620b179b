"""
Response schemas for the cutdown API.
"""

from typing import List, Optional

from pydantic import BaseModel, Field


class TimeRangeResponse(BaseModel):
    """A normalized HH:MM:SS range."""

    start_time: str = Field(..., description="Start as HH:MM:SS")
    end_time: str = Field(..., description="End as HH:MM:SS")


class TimestampValidationResponse(BaseModel):
    """Outcome of parsing and validating a cut list."""

    valid: List[TimeRangeResponse] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class GeneratedCutsResponse(BaseModel):
    """Random quick-start cuts, also rendered as editable text."""

    cuts: List[TimeRangeResponse]
    text: str = Field(..., description="Cuts as one 'start-end' line each")
    duration_seconds: float


class VideoResponse(BaseModel):
    """An ingested source video."""

    id: int
    filename: str
    original_name: str
    path: str
    size: int
    duration: Optional[str] = Field(default=None, description="HH:MM:SS once probed")
    duration_seconds: Optional[float] = None
    processed: bool = False


class ClipRecordResponse(BaseModel):
    """A clip produced from a source video."""

    id: int
    video_id: int
    start_time: str
    end_time: str
    filename: str
    processed: bool


class VideoDetailResponse(BaseModel):
    """A source video with its produced clips."""

    video: VideoResponse
    clips: List[ClipRecordResponse] = Field(default_factory=list)


class ChunkUploadResponse(BaseModel):
    """Acknowledgement of one stored chunk."""

    upload_id: str
    chunk_index: int
    received: int = Field(..., description="Distinct chunks stored so far")
    total: int = Field(..., description="Declared chunk count")
    complete: bool = Field(..., description="Whether finalize may be called")


class ProgressResponse(BaseModel):
    """Live progress of a processing job."""

    video_id: int
    status: str = Field(..., description="'processing', 'completed' or 'error'")
    total_units: int
    completed_units: int
    progress_percent: int
    total_clips: int = 0
    total_loops: int = 0
    total_stills: int = 0
    total_shorts: int = 0
    errors: List[str] = Field(default_factory=list)
    download_path: Optional[str] = None


class ProcessClipsResponse(BaseModel):
    """Final outcome of a processing request."""

    video_id: int
    status: str
    message: str
    total_units: int
    outputs_generated: int
    clips_generated: int = 0
    loops_generated: int = 0
    stills_generated: int = 0
    shorts_generated: int = 0
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    archive_name: Optional[str] = None
    download_path: Optional[str] = None
    processing_time_seconds: float = 0


class CancelResponse(BaseModel):
    """Outcome of a cancellation request."""

    video_id: int
    status: str
    message: str


class QualityTierResponse(BaseModel):
    """A quality tier preset."""

    id: str
    name: str
    description: str
    crf: int


class AspectRatioResponse(BaseModel):
    """An aspect ratio preset."""

    id: str
    name: str
    folder: str
    letterbox_removal: bool


class PresetsResponse(BaseModel):
    """All presets available to the UI."""

    quality_tiers: List[QualityTierResponse]
    aspect_ratios: List[AspectRatioResponse]


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(..., description="Service status")
    version: str = Field(..., description="Service version")


class ReadinessResponse(BaseModel):
    """Readiness check response."""

    ready: bool = Field(..., description="Whether the service is ready to accept requests")
    ffmpeg: str = Field(..., description="ffmpeg binary status")
    ffprobe: str = Field(..., description="ffprobe binary status")
    directories_writable: bool = Field(..., description="Whether upload/output directories are writable")
