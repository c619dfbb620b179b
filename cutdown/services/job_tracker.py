"""
Job Tracker - Live progress registry for processing jobs.

Jobs are keyed by source video id: at most one job per video may be
processing at a time. The registry is an explicitly owned object (created in
the application lifespan and passed to the pipeline) rather than module state,
so tests and multiple app instances each get their own.

All mutations go through a single lock so concurrent work units finishing at
the same time never lose a completed-unit increment.
"""

import logging
import threading
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


CANCELLED_MESSAGE = "Processing cancelled by user"


class JobStatus(str, Enum):
    """Status of a processing job."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class JobProgress:
    """Progress snapshot for one processing job."""

    video_id: int
    total_units: int
    total_clips: int = 0
    total_loops: int = 0
    total_stills: int = 0
    total_shorts: int = 0
    completed_units: int = 0
    progress_percent: int = 0
    status: JobStatus = JobStatus.PROCESSING
    errors: list[str] = field(default_factory=list)
    outputs: list[str] = field(default_factory=list)
    cancel_requested: bool = False
    archive_path: Optional[str] = None
    download_path: Optional[str] = None
    started_at: float = field(default_factory=time.time)

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.ERROR)


class JobRegistry:
    """
    Process-wide map from video id to live job progress.

    Readers always receive copies; the stored records are only touched while
    holding the registry lock.
    """

    def __init__(self, progress_ceiling: int = 95):
        self.progress_ceiling = progress_ceiling
        self._jobs: dict[int, JobProgress] = {}
        self._lock = threading.Lock()

    def start_job(
        self,
        video_id: int,
        total_clips: int = 0,
        total_loops: int = 0,
        total_stills: int = 0,
        total_shorts: int = 0,
    ) -> JobProgress:
        """
        Register a new processing job for a video.

        A terminal job for the same video is replaced; a job still processing
        is not.

        Raises:
            JobConflictError: If a job is already processing for this video
        """
        total_units = total_clips + total_loops + total_stills + total_shorts

        with self._lock:
            existing = self._jobs.get(video_id)
            if existing is not None and existing.status == JobStatus.PROCESSING:
                raise JobConflictError(f"A processing job is already running for video {video_id}")

            job = JobProgress(
                video_id=video_id,
                total_units=total_units,
                total_clips=total_clips,
                total_loops=total_loops,
                total_stills=total_stills,
                total_shorts=total_shorts,
            )
            self._jobs[video_id] = job
            logger.info(f"Job for video {video_id} registered: {total_units} expected outputs")
            return self._snapshot(job)

    def set_totals(
        self,
        video_id: int,
        total_clips: int = 0,
        total_loops: int = 0,
        total_stills: int = 0,
        total_shorts: int = 0,
    ) -> JobProgress:
        """
        Fill in the expected unit counts of a job registered before they were known.

        A request reserves its job before waiting for a free worker; the counts
        follow once the source duration has been resolved.
        """
        with self._lock:
            job = self._require(video_id)
            job.total_clips = total_clips
            job.total_loops = total_loops
            job.total_stills = total_stills
            job.total_shorts = total_shorts
            job.total_units = total_clips + total_loops + total_stills + total_shorts
            logger.info(f"Job for video {video_id}: {job.total_units} expected outputs")
            return self._snapshot(job)

    def get(self, video_id: int) -> Optional[JobProgress]:
        """Get a copy of the current progress, or None if no job exists."""
        with self._lock:
            job = self._jobs.get(video_id)
            return self._snapshot(job) if job else None

    def record_unit(
        self,
        video_id: int,
        output_path: Optional[str] = None,
        error: Optional[str] = None,
    ) -> JobProgress:
        """
        Account for one finished work unit, successful or not.

        Percent only ever moves forward and stays at or below the progress
        ceiling until the job is completed.
        """
        with self._lock:
            job = self._require(video_id)
            job.completed_units += 1
            if output_path:
                job.outputs.append(output_path)
            if error:
                job.errors.append(error)

            if job.total_units > 0:
                computed = round(job.completed_units / job.total_units * 100)
            else:
                computed = self.progress_ceiling
            job.progress_percent = max(job.progress_percent, min(self.progress_ceiling, computed))
            return self._snapshot(job)

    def add_error(self, video_id: int, message: str) -> None:
        """Append a non-fatal error without counting a unit."""
        with self._lock:
            self._require(video_id).errors.append(message)

    def request_cancel(self, video_id: int) -> JobProgress:
        """
        Request cancellation of a job.

        Idempotent: a job that already reached a terminal state is returned
        unchanged.

        Raises:
            JobNotFoundError: If no job exists for the video
        """
        with self._lock:
            job = self._require(video_id)
            if job.is_terminal:
                logger.info(f"Cancel ignored for video {video_id}: job already {job.status.value}")
                return self._snapshot(job)

            job.cancel_requested = True
            job.status = JobStatus.ERROR
            job.errors.append(CANCELLED_MESSAGE)
            logger.info(f"Job for video {video_id} cancelled")
            return self._snapshot(job)

    def is_cancelled(self, video_id: int) -> bool:
        with self._lock:
            job = self._jobs.get(video_id)
            return bool(job and job.cancel_requested)

    def complete(self, video_id: int, archive_path: str, download_path: str) -> JobProgress:
        """Mark a job as packaged and downloadable (100%)."""
        with self._lock:
            job = self._require(video_id)
            if job.cancel_requested:
                return self._snapshot(job)

            job.status = JobStatus.COMPLETED
            job.progress_percent = 100
            job.archive_path = archive_path
            job.download_path = download_path
            return self._snapshot(job)

    def fail(self, video_id: int, message: str) -> JobProgress:
        """Mark a job as failed with a final error message."""
        with self._lock:
            job = self._require(video_id)
            job.status = JobStatus.ERROR
            if message not in job.errors:
                job.errors.append(message)
            return self._snapshot(job)

    def _require(self, video_id: int) -> JobProgress:
        job = self._jobs.get(video_id)
        if job is None:
            raise JobNotFoundError(f"No processing job found for video {video_id}")
        return job

    @staticmethod
    def _snapshot(job: JobProgress) -> JobProgress:
        return replace(job, errors=list(job.errors), outputs=list(job.outputs))


class JobConflictError(Exception):
    """Exception raised when a video already has a job in flight."""
    pass


class JobNotFoundError(Exception):
    """Exception raised when no job exists for a video."""
    pass
