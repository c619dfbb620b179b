"""
Pydantic schemas for request/response models.
"""

from cutdown.schemas.requests import (
    FinalizeUploadRequest,
    GenerateCutsRequest,
    ParseTimestampsRequest,
    ProcessClipsRequest,
)
from cutdown.schemas.responses import (
    CancelResponse,
    ChunkUploadResponse,
    GeneratedCutsResponse,
    HealthResponse,
    PresetsResponse,
    ProcessClipsResponse,
    ProgressResponse,
    ReadinessResponse,
    TimestampValidationResponse,
    VideoDetailResponse,
    VideoResponse,
)

__all__ = [
    "ParseTimestampsRequest",
    "GenerateCutsRequest",
    "ProcessClipsRequest",
    "FinalizeUploadRequest",
    "TimestampValidationResponse",
    "GeneratedCutsResponse",
    "VideoResponse",
    "VideoDetailResponse",
    "ChunkUploadResponse",
    "ProgressResponse",
    "ProcessClipsResponse",
    "CancelResponse",
    "PresetsResponse",
    "HealthResponse",
    "ReadinessResponse",
]
