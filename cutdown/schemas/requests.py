"""
Request schemas for the cutdown API.
"""

from typing import Literal, Optional

from pydantic import BaseModel, Field, model_validator

QualityTierInput = Literal["high", "balanced", "compressed"]
AspectRatioInput = Literal["16:9", "9:16"]


class ParseTimestampsRequest(BaseModel):
    """Request body for validating a free-text cut list."""

    text: str = Field(..., description="One range per line, e.g. '0:16-0:35'")
    video_id: Optional[int] = Field(
        default=None, description="Source video whose probed duration bounds the ranges"
    )
    duration_seconds: Optional[float] = Field(
        default=None, gt=0, description="Explicit source duration (overrides the video's)"
    )

    class Config:
        json_schema_extra = {
            "example": {
                "text": "0:16-0:35\n0:44-1:01",
                "video_id": 1,
            }
        }


class GenerateCutsRequest(BaseModel):
    """Request body for generating a random quick-start cut list."""

    video_id: Optional[int] = Field(default=None, description="Source video to size the cuts for")
    duration_seconds: Optional[float] = Field(
        default=None, gt=0, description="Explicit source duration (overrides the video's)"
    )

    @model_validator(mode="after")
    def require_duration_source(self) -> "GenerateCutsRequest":
        if self.video_id is None and self.duration_seconds is None:
            raise ValueError("Provide video_id or duration_seconds")
        return self


class ProcessClipsRequest(BaseModel):
    """
    Request to derive clips and exports from an uploaded video.

    At least one of a non-empty cut list or an export flag is required.
    """

    video_id: int = Field(..., description="Source video id returned by the upload endpoints")
    time_range_text: Optional[str] = Field(
        default=None, description="Cut list text, one range per line"
    )
    output_name: str = Field(..., min_length=1, max_length=120, description="Base name for outputs")
    quality: QualityTierInput = Field(default="balanced", description="Encoding quality tier")
    aspect_ratios: list[AspectRatioInput] = Field(
        default_factory=lambda: ["16:9"], description="Aspect ratios to render every clip in"
    )

    video_fade: bool = Field(default=False, description="Fade video in/out from black")
    audio_fade: bool = Field(default=False, description="Fade audio in/out")
    fade_duration: float = Field(default=0.5, ge=0, le=5, description="Fade length in seconds")

    generate_loops: bool = Field(default=False, description="Export animated GIF loops")
    generate_stills: bool = Field(default=False, description="Export still thumbnails")
    generate_shorts: bool = Field(default=False, description="Export vertical boomerang shorts")

    @model_validator(mode="after")
    def require_some_work(self) -> "ProcessClipsRequest":
        has_cuts = bool(self.time_range_text and self.time_range_text.strip())
        has_exports = self.generate_loops or self.generate_stills or self.generate_shorts
        if not has_cuts and not has_exports:
            raise ValueError("Provide time_range_text or enable at least one export")
        if has_cuts and not self.aspect_ratios:
            raise ValueError("Select at least one aspect ratio for clips")
        return self

    class Config:
        json_schema_extra = {
            "example": {
                "video_id": 1,
                "time_range_text": "0:16-0:35\n0:44-1:01",
                "output_name": "interview",
                "quality": "balanced",
                "aspect_ratios": ["16:9", "9:16"],
                "video_fade": True,
                "fade_duration": 0.5,
                "generate_stills": True,
            }
        }


class FinalizeUploadRequest(BaseModel):
    """Request to assemble a chunked upload."""

    upload_id: str = Field(..., min_length=1, description="Upload session token used for the chunks")
    file_name: str = Field(..., min_length=1, description="Original file name")
    total_size: Optional[int] = Field(default=None, ge=0, description="Declared byte size of the file")
