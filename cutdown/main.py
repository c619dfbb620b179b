"""
FastAPI application entry point for cutdown.

cutdown turns one large uploaded video into a batch of derived media:
1. Resumable chunked (or whole-file) ingestion
2. Cut list parsing, validation and random generation
3. Clip export in 16:9 and letterbox-free 9:16, plus GIF loops, stills and
   vertical boomerang shorts, packaged into one zip
"""

import asyncio
import contextlib
import logging
import os
import shutil
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from cutdown.config import get_settings
from cutdown.routers import health, processing, uploads
from cutdown.services.archive_packager import ArchivePackager
from cutdown.services.derivation_pipeline import DerivationPipeline
from cutdown.services.ffmpeg_runner import FFmpegRunner
from cutdown.services.job_tracker import JobRegistry
from cutdown.services.upload_assembler import ChunkedUploadAssembler
from cutdown.services.video_store import VideoStore

# Configure logging
logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def _periodic_cleanup(assembler: ChunkedUploadAssembler, interval_seconds: int) -> None:
    """Reclaim abandoned upload sessions and expired uploads until cancelled."""
    while True:
        try:
            await assembler.cleanup_stale_sessions()
            removed = await assembler.cleanup_old_uploads()
            if removed:
                logger.info(f"Periodic cleanup removed {removed} old uploads")
        except OSError as e:
            logger.warning(f"Periodic cleanup failed: {e}")
        await asyncio.sleep(interval_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Lifespan context manager for startup and shutdown events.
    Builds the shared collaborators on startup and stops background work on shutdown.
    """
    settings = get_settings()
    logger.info("Starting cutdown...")

    for directory in (
        settings.upload_directory,
        settings.chunk_directory,
        settings.output_directory,
        settings.archive_directory,
        settings.logs_directory,
    ):
        os.makedirs(directory, exist_ok=True)
    logger.info(f"Upload directory: {settings.upload_directory}, output directory: {settings.output_directory}")

    # Limits how many processing jobs render at the same time
    job_semaphore = asyncio.Semaphore(settings.max_concurrent_jobs)
    logger.info(f"Max concurrent jobs: {settings.max_concurrent_jobs}")

    runner = FFmpegRunner(settings)
    video_store = VideoStore()
    job_registry = JobRegistry(progress_ceiling=settings.progress_ceiling_percent)
    packager = ArchivePackager(settings)
    upload_assembler = ChunkedUploadAssembler(settings)
    pipeline = DerivationPipeline(
        runner=runner,
        job_registry=job_registry,
        video_store=video_store,
        settings=settings,
        packager=packager,
    )

    # Store in app state for dependency injection
    app.state.runner = runner
    app.state.video_store = video_store
    app.state.job_registry = job_registry
    app.state.packager = packager
    app.state.upload_assembler = upload_assembler
    app.state.pipeline = pipeline
    app.state.job_semaphore = job_semaphore

    _verify_external_tools()

    cleanup_task = asyncio.create_task(
        _periodic_cleanup(upload_assembler, settings.cleanup_interval_seconds)
    )

    logger.info("cutdown ready to accept requests.")

    yield

    logger.info("Shutting down cutdown...")
    cleanup_task.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await cleanup_task
    logger.info("Shutdown complete")


def _verify_external_tools():
    """Verify that required external tools are available."""
    tools = {
        "ffmpeg": "FFmpeg for clip, loop, still and short rendering",
        "ffprobe": "FFprobe for duration probing",
    }

    for tool, description in tools.items():
        if shutil.which(tool):
            logger.info(f"✓ {description} available")
        else:
            logger.warning(f"✗ {description} NOT FOUND - processing will fail")


# Create FastAPI application
app = FastAPI(
    title="cutdown",
    description="""
cutdown - batch media derivation from one long source video.

## Features

### Uploads (`/api/upload`, `/api/upload-chunk`, `/api/finalize-upload`)
- Whole-file uploads for small files
- Resumable, parallel chunked uploads for multi-gigabyte files

### Planning (`/api/parse-timestamps`, `/api/generate-cuts`)
- Free-text cut lists validated against the source duration
- Random quick-start cut lists sized to the video

### Processing (`/api/process-clips`)
- Clips in 16:9 and letterbox-free 9:16 with optional fades
- Palette-optimized GIF loops, still thumbnails, boomerang shorts
- One zip per job

## Usage

1. Upload a video: `POST /api/upload` or chunked + `POST /api/finalize-upload`
2. Process: `POST /api/process-clips`
3. Poll: `GET /api/processing-progress/{video_id}`
4. Download: `GET /api/download/{video_id}`
    """,
    version="1.0.0",
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # In production, restrict to specific origins
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(uploads.router)
app.include_router(processing.router)


@app.get("/")
async def root():
    """Root endpoint with basic info."""
    return {
        "service": "cutdown",
        "version": "1.0.0",
        "status": "running",
        "docs": "/docs",
    }
