"""
Resource monitoring utility for long transcoding jobs and large uploads.

Usage:
    from cutdown.services.resource_monitor import log_memory_usage, ensure_disk_space

    # Log current memory usage at key pipeline stages
    log_memory_usage("after_clips", job_id="video-12")

    # Reject an upload that would leave too little room for derived outputs
    ensure_disk_space("uploads", required_bytes=2 * upload_size)
"""

import logging
import os
from dataclasses import dataclass
from typing import Optional

import psutil

logger = logging.getLogger(__name__)


HIGH_MEMORY_THRESHOLD_MB = 6000


@dataclass
class DiskUsage:
    """Free/total space for the filesystem holding a path."""

    path: str
    total_bytes: int
    free_bytes: int

    @property
    def free_gb(self) -> float:
        return self.free_bytes / (1024 ** 3)


def get_memory_usage_mb() -> dict:
    """
    Get current process memory usage in MB.

    Returns:
        Dict with 'rss' (Resident Set Size) and 'vms' (Virtual Memory Size)
    """
    mem_info = psutil.Process(os.getpid()).memory_info()
    return {
        "rss": mem_info.rss / (1024 * 1024),
        "vms": mem_info.vms / (1024 * 1024),
    }


def log_memory_usage(stage: str, job_id: Optional[str] = None) -> dict:
    """
    Log current memory usage at a pipeline stage.

    Args:
        stage: Name of the pipeline stage (e.g., "after_clips", "after_packaging")
        job_id: Optional job ID for log correlation

    Returns:
        Memory usage dict with 'rss' and 'vms' in MB
    """
    mem = get_memory_usage_mb()
    prefix = f"[{job_id}] " if job_id else ""

    logger.info(f"{prefix}Memory [{stage}]: RSS={mem['rss']:.1f}MB, VMS={mem['vms']:.1f}MB")
    if mem["rss"] > HIGH_MEMORY_THRESHOLD_MB:
        logger.warning(
            f"{prefix}HIGH MEMORY WARNING [{stage}]: RSS={mem['rss']:.1f}MB exceeds 6GB threshold"
        )

    return mem


def get_disk_usage(path: str) -> DiskUsage:
    """Measure the filesystem holding path (created if missing)."""
    os.makedirs(path, exist_ok=True)
    usage = psutil.disk_usage(path)
    return DiskUsage(path=path, total_bytes=usage.total, free_bytes=usage.free)


def ensure_disk_space(path: str, required_bytes: int) -> DiskUsage:
    """
    Check that at least required_bytes are free where path lives.

    Raises:
        InsufficientDiskSpaceError: If free space is below the requirement
    """
    usage = get_disk_usage(path)
    if usage.free_bytes < required_bytes:
        required_gb = required_bytes / (1024 ** 3)
        logger.warning(
            f"Insufficient disk space at {path}: need {required_gb:.2f}GB, "
            f"have {usage.free_gb:.2f}GB"
        )
        raise InsufficientDiskSpaceError(
            f"Insufficient disk space. Need {required_gb:.2f}GB free, have {usage.free_gb:.2f}GB"
        )

    logger.debug(f"Disk space OK at {path}: {usage.free_gb:.2f}GB free")
    return usage


class InsufficientDiskSpaceError(Exception):
    """Exception raised when the upload volume is too full."""
    pass
