"""
Services for the cutdown worker.

Includes:
- Cut list services (timestamp parsing, random cut generation)
- Ingestion services (chunked upload assembly, video store)
- Derivation services (ffmpeg runner, rendering, pipeline, job tracking, packaging)
"""

from cutdown.services.archive_packager import ArchivePackager
from cutdown.services.cut_generator import generate_random_cuts
from cutdown.services.derivation_pipeline import DerivationPipeline, WorkPlan
from cutdown.services.ffmpeg_runner import FFmpegRunner
from cutdown.services.job_tracker import JobRegistry
from cutdown.services.rendering_service import RenderingService
from cutdown.services.timestamp_parser import parse_and_validate
from cutdown.services.upload_assembler import ChunkedUploadAssembler
from cutdown.services.video_store import VideoStore

__all__ = [
    # Cut lists
    "parse_and_validate",
    "generate_random_cuts",
    # Ingestion
    "ChunkedUploadAssembler",
    "VideoStore",
    # Derivation
    "FFmpegRunner",
    "RenderingService",
    "DerivationPipeline",
    "WorkPlan",
    "JobRegistry",
    "ArchivePackager",
]
