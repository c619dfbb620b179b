"""
Configuration module using Pydantic Settings for environment variable management.

Only essential environment variables are exposed. All other settings are hardcoded
for consistency and simplicity.
"""

import os
from functools import lru_cache

from pydantic_settings import BaseSettings


# ============================================================
# QUALITY PRESETS
# ============================================================

class QualityTier:
    """
    Available quality tier identifiers for clip encoding.

    Each tier pins the x264 constant rate factor used for every clip export.
    """
    HIGH = "high"
    BALANCED = "balanced"
    COMPRESSED = "compressed"


def get_quality_preset(tier_id: str) -> dict:
    """
    Get encoding configuration for a given quality tier.

    Args:
        tier_id: One of the QualityTier constants

    Returns:
        Quality configuration dict

    Raises:
        ValueError: If tier_id is not recognized
    """
    presets = {
        QualityTier.HIGH: {
            "id": QualityTier.HIGH,
            "name": "High Quality",
            "description": "Near-lossless output for re-editing and archival",
            "crf": 18,
        },
        QualityTier.BALANCED: {
            "id": QualityTier.BALANCED,
            "name": "Balanced (Recommended)",
            "description": "Good quality at a reasonable size - suited to most platforms",
            "crf": 20,
        },
        QualityTier.COMPRESSED: {
            "id": QualityTier.COMPRESSED,
            "name": "Compressed",
            "description": "Smaller files for quick sharing and messaging apps",
            "crf": 23,
        },
    }

    if tier_id not in presets:
        valid_tiers = list(presets.keys())
        raise ValueError(f"Unknown quality tier: {tier_id}. Valid tiers: {valid_tiers}")

    return presets[tier_id]


def get_available_quality_tiers() -> list[dict]:
    """List quality tiers with metadata for the UI."""
    return [
        get_quality_preset(tier)
        for tier in (QualityTier.HIGH, QualityTier.BALANCED, QualityTier.COMPRESSED)
    ]


# ============================================================
# ASPECT RATIO PRESETS
# ============================================================

class AspectRatio:
    """
    Supported output aspect ratios for clip exports.
    """
    LANDSCAPE = "16:9"   # Source framing kept, scaled to a fixed height
    PORTRAIT = "9:16"    # Letterbox removed, filled and center-cropped to vertical


def get_aspect_ratio_preset(ratio_id: str) -> dict:
    """
    Get output configuration for a given aspect ratio.

    Raises:
        ValueError: If ratio_id is not recognized
    """
    presets = {
        AspectRatio.LANDSCAPE: {
            "id": AspectRatio.LANDSCAPE,
            "name": "Landscape (16:9)",
            "folder": "clips (16x9)",
            "suffix": "(16x9)",
            "letterbox_removal": False,
        },
        AspectRatio.PORTRAIT: {
            "id": AspectRatio.PORTRAIT,
            "name": "Vertical (9:16)",
            "folder": "clips (9x16)",
            "suffix": "(9x16)",
            "letterbox_removal": True,
        },
    }

    if ratio_id not in presets:
        valid_ratios = list(presets.keys())
        raise ValueError(f"Unknown aspect ratio: {ratio_id}. Valid ratios: {valid_ratios}")

    return presets[ratio_id]


def get_available_aspect_ratios() -> list[dict]:
    """List aspect ratio presets with metadata for the UI."""
    return [
        get_aspect_ratio_preset(ratio)
        for ratio in (AspectRatio.LANDSCAPE, AspectRatio.PORTRAIT)
    ]


class Settings(BaseSettings):
    """
    Application settings.

    Only essential configuration is loaded from environment variables.
    All processing/rendering settings are hardcoded for consistency.
    """

    # ============================================================
    # ENVIRONMENT VARIABLES (minimal set)
    # ============================================================

    # Application
    app_name: str = "cutdown"
    debug: bool = False
    log_level: str = "INFO"

    # Storage locations
    upload_directory: str = "uploads"
    output_directory: str = "uploads/clips"
    logs_directory: str = "logs"

    # Performance tuning
    max_workers: int = 2  # Max concurrent processing jobs
    max_render_workers: int = 3  # Max concurrent FFmpeg processes inside one job
    ffmpeg_timeout_seconds: float = 120.0  # Hard limit for a single FFmpeg invocation

    # Chunked uploads
    upload_session_retention_seconds: int = 3600  # Untouched sessions older than this are reclaimed

    # ============================================================
    # HARDCODED SETTINGS (not configurable via env vars)
    # ============================================================

    @property
    def max_concurrent_jobs(self) -> int:
        return self.max_workers

    @property
    def max_concurrent_renders(self) -> int:
        return self.max_render_workers

    # Upload settings
    @property
    def chunk_directory(self) -> str:
        return os.path.join(self.upload_directory, "chunks")

    @property
    def archive_directory(self) -> str:
        return os.path.join(self.output_directory, "archives")

    @property
    def chunk_index_width(self) -> int:
        return 5  # 00000.part - directory order equals byte order

    @property
    def max_upload_size_bytes(self) -> int:
        return 5 * 1024 * 1024 * 1024  # 5GB

    @property
    def max_chunk_size_bytes(self) -> int:
        return 200 * 1024 * 1024  # 200MB

    @property
    def allowed_upload_extensions(self) -> tuple[str, ...]:
        return (".mp4", ".mov", ".mkv", ".avi", ".webm", ".mp3", ".wav", ".m4a")

    @property
    def disk_space_multiplier(self) -> int:
        return 2  # Free space must cover the upload twice (source + derived outputs)

    # Cleanup settings
    @property
    def cleanup_interval_seconds(self) -> int:
        return 6 * 60 * 60

    @property
    def upload_max_age_seconds(self) -> int:
        return 24 * 60 * 60

    # Rendering Configuration
    @property
    def ffmpeg_preset(self) -> str:
        return "fast"

    @property
    def landscape_output_height(self) -> int:
        return 720

    @property
    def target_output_width(self) -> int:
        return 1080

    @property
    def target_output_height(self) -> int:
        return 1920

    @property
    def audio_bitrate(self) -> str:
        return "128k"

    @property
    def fallback_padding_seconds(self) -> float:
        return 0.25

    @property
    def black_frame_nudge_seconds(self) -> float:
        return 0.1

    @property
    def progress_ceiling_percent(self) -> int:
        return 95  # Reserved headroom until the archive is written

    # Animated loop (GIF) export
    @property
    def loop_count(self) -> int:
        return 10

    @property
    def loop_duration_seconds(self) -> float:
        return 6.0

    @property
    def loop_fps(self) -> int:
        return 10

    @property
    def loop_width(self) -> int:
        return 640

    @property
    def loop_height(self) -> int:
        return 480

    # Still thumbnail export
    @property
    def still_count(self) -> int:
        return 10

    @property
    def still_max_width(self) -> int:
        return 1920

    @property
    def still_max_height(self) -> int:
        return 1080

    # Short vertical loop export
    @property
    def short_count(self) -> int:
        return 5

    @property
    def short_segment_seconds(self) -> float:
        return 4.0  # Played forward then reversed -> 8s loop

    @property
    def short_crf(self) -> int:
        return 20

    @property
    def short_batch_timeout_seconds(self) -> float:
        return 300.0

    # Placement of random segments
    @property
    def placement_attempts(self) -> int:
        return 50

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
