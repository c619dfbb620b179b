"""
Derivation Pipeline - Fans one source video out into clips, loops, stills and shorts.

Given a WorkPlan the pipeline:
1. Registers the job with the JobRegistry (unless the caller already did)
2. Resolves the source duration (probing with ffprobe when unknown) and
   records the expected unit count
3. Renders every (time range, aspect ratio) clip in order, with one padded
   fallback attempt per clip
4. Renders loops and stills concurrently within each batch, isolating
   individual failures
5. Renders shorts concurrently under a batch wall-clock timeout
6. Packages everything produced into one archive

Individual unit failures never abort the job; they are accumulated in the
job's error list. Only a job that produced nothing, or whose archive could not
be written, ends in error. Cancellation stops further units from being
dispatched and skips packaging.
"""

import asyncio
import logging
import math
import os
import random
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Optional

from cutdown.config import (
    AspectRatio,
    QualityTier,
    Settings,
    get_aspect_ratio_preset,
    get_quality_preset,
    get_settings,
)
from cutdown.services.archive_packager import (
    CATEGORY_FOLDERS,
    ArchiveError,
    ArchivePackager,
    ArtifactCategory,
    OutputArtifact,
    PackagedArchive,
    sanitize_output_name,
)
from cutdown.services.ffmpeg_runner import FFmpegRunner
from cutdown.services.job_tracker import JobProgress, JobRegistry, JobStatus
from cutdown.services.rendering_service import ClipRenderRequest, RenderingError, RenderingService
from cutdown.services.resource_monitor import log_memory_usage
from cutdown.services.timestamp_parser import TimeRange
from cutdown.services.video_store import VideoStore

logger = logging.getLogger(__name__)


NOTHING_GENERATED_MESSAGE = "No outputs were generated"


@dataclass
class WorkPlan:
    """Everything to derive from one source video in one processing request."""

    video_id: int
    source_path: str
    output_name: str
    time_ranges: list[TimeRange] = field(default_factory=list)
    aspect_ratios: list[str] = field(default_factory=lambda: [AspectRatio.LANDSCAPE])
    quality: str = QualityTier.BALANCED

    # Boundary fades
    video_fade: bool = False
    audio_fade: bool = False
    fade_duration: float = 0.5

    # Independent export batches
    generate_loops: bool = False
    generate_stills: bool = False
    generate_shorts: bool = False

    source_duration: Optional[float] = None

    # Cut list lines that failed validation; reported with the job's errors
    input_errors: list[str] = field(default_factory=list)

    def __post_init__(self):
        try:
            get_quality_preset(self.quality)
            for ratio in self.aspect_ratios:
                get_aspect_ratio_preset(ratio)
        except ValueError as e:
            raise InvalidWorkPlanError(str(e)) from e

        if self.time_ranges and not self.aspect_ratios:
            raise InvalidWorkPlanError("At least one aspect ratio is required for clips")
        if not self.has_work:
            raise InvalidWorkPlanError("Provide time ranges or enable at least one export")
        if self.fade_duration < 0:
            raise InvalidWorkPlanError("Fade duration cannot be negative")

    @property
    def has_exports(self) -> bool:
        return self.generate_loops or self.generate_stills or self.generate_shorts

    @property
    def has_work(self) -> bool:
        return bool(self.time_ranges) or self.has_exports

    @property
    def clip_unit_count(self) -> int:
        return len(self.time_ranges) * len(self.aspect_ratios)


@dataclass
class DerivationResult:
    """Final result of a derivation job."""

    video_id: int
    status: JobStatus
    artifacts: list[OutputArtifact] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    total_units: int = 0
    archive: Optional[PackagedArchive] = None
    download_path: Optional[str] = None
    cancelled: bool = False
    processing_time_seconds: float = 0

    @property
    def nothing_generated(self) -> bool:
        return not self.artifacts and not self.cancelled


class DerivationPipeline:
    """
    Orchestrates every work unit of a WorkPlan against one source video.

    Collaborators are injected so that one registry and one store are shared
    by the whole application while tests get isolated instances.
    """

    def __init__(
        self,
        runner: FFmpegRunner,
        job_registry: JobRegistry,
        video_store: VideoStore,
        settings: Optional[Settings] = None,
        packager: Optional[ArchivePackager] = None,
        rng: Optional[random.Random] = None,
    ):
        self.settings = settings or get_settings()
        self.runner = runner
        self.job_registry = job_registry
        self.video_store = video_store
        self.rendering_service = RenderingService(runner, self.settings)
        self.packager = packager or ArchivePackager(self.settings)
        self.rng = rng or random.Random()

    def _setup_job_logging(self, video_id: int) -> Optional[logging.FileHandler]:
        """
        Set up job-specific file logging.

        The handler is attached to the package logger so every
        cutdown.services.* message emitted during the job lands in the file.
        """
        try:
            logs_dir = Path(self.settings.logs_directory)
            logs_dir.mkdir(parents=True, exist_ok=True)

            timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
            log_filename = logs_dir / f"job_{video_id}_{timestamp}.log"

            file_handler = logging.FileHandler(log_filename, encoding="utf-8")
            file_handler.setLevel(logging.DEBUG)
            file_handler.setFormatter(logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            ))
            logging.getLogger("cutdown").addHandler(file_handler)

            logger.info(f"Job logging initialized: {log_filename}")
            return file_handler

        except OSError as e:
            logger.warning(f"Failed to setup job logging: {e}")
            return None

    def _cleanup_job_logging(self, file_handler: Optional[logging.FileHandler]) -> None:
        """Remove the job-specific file handler."""
        if file_handler is None:
            return
        logging.getLogger("cutdown").removeHandler(file_handler)
        file_handler.close()

    async def resolve_duration(self, plan: WorkPlan) -> Optional[float]:
        """Use the plan's duration, probing the source when it is unknown."""
        if plan.source_duration and plan.source_duration > 0:
            return plan.source_duration

        duration = await self.runner.probe_duration(plan.source_path)
        if duration:
            self.video_store.update_video(plan.video_id, duration_seconds=duration)
        return duration

    def planned_counts(self, plan: WorkPlan, duration: Optional[float]) -> dict[str, int]:
        """
        Expected unit count per category.

        Loops and shorts are capped by how many segments fit in the source;
        stills are a fixed batch. Export batches need a known duration.
        """
        counts = {"clips": plan.clip_unit_count, "loops": 0, "stills": 0, "shorts": 0}
        if not duration:
            return counts

        if plan.generate_loops:
            fit = math.floor(duration / self.settings.loop_duration_seconds)
            counts["loops"] = min(self.settings.loop_count, fit)
        if plan.generate_stills:
            counts["stills"] = self.settings.still_count
        if plan.generate_shorts:
            fit = math.floor(duration / self.settings.short_segment_seconds)
            counts["shorts"] = min(self.settings.short_count, fit)
        return counts

    async def process(self, plan: WorkPlan, registered: bool = False) -> DerivationResult:
        """
        Run a WorkPlan to completion.

        Args:
            plan: Validated WorkPlan
            registered: The caller already reserved the job with
                JobRegistry.start_job (e.g. before queueing for a worker)

        Returns:
            DerivationResult; status is COMPLETED when an archive was written,
            ERROR when cancelled, when nothing was generated or when packaging
            failed

        Raises:
            JobConflictError: If a job is already processing for this video
        """
        start_time = time.time()
        video_id = plan.video_id

        # Registered before any await so a concurrent request for the same
        # video conflicts immediately
        if not registered:
            self.job_registry.start_job(video_id)

        job_log_handler = self._setup_job_logging(video_id)
        job_dir = os.path.join(self.settings.output_directory, str(video_id))
        output_name = sanitize_output_name(plan.output_name)
        artifacts: list[OutputArtifact] = []

        try:
            for message in plan.input_errors:
                self.job_registry.add_error(video_id, message)

            if self._cancelled(video_id):
                logger.info(f"Job for video {video_id} cancelled before it started")
                return self._result(video_id, artifacts, start_time, cancelled=True)

            duration = await self.resolve_duration(plan)
            counts = self.planned_counts(plan, duration)
            self.job_registry.set_totals(
                video_id,
                total_clips=counts["clips"],
                total_loops=counts["loops"],
                total_stills=counts["stills"],
                total_shorts=counts["shorts"],
            )

            logger.info(f"Starting derivation job for video {video_id}: {plan.source_path}")
            logger.info(
                f"Plan: {len(plan.time_ranges)} ranges x {plan.aspect_ratios}, quality={plan.quality}, "
                f"loops={counts['loops']}, stills={counts['stills']}, shorts={counts['shorts']}"
            )

            # Outputs of an earlier job for this video are replaced
            if os.path.isdir(job_dir):
                shutil.rmtree(job_dir, ignore_errors=True)
            os.makedirs(job_dir, exist_ok=True)
            stale_clips = self.video_store.delete_clips_by_video(video_id)
            if stale_clips:
                logger.info(f"Dropped {stale_clips} clip records from a previous job")

            self._report_skipped_exports(plan, duration, counts)

            # Step 1: Clips (ratios nested inside ranges)
            if plan.time_ranges:
                artifacts.extend(await self._render_clips(plan, job_dir, output_name))
                log_memory_usage("after_clips", job_id=f"video-{video_id}")

            render_semaphore = asyncio.Semaphore(self.settings.max_concurrent_renders)

            # Step 2: Loops
            if counts["loops"] and not self._cancelled(video_id):
                artifacts.extend(await self._render_loops(
                    plan, job_dir, output_name, duration, counts["loops"], render_semaphore
                ))

            # Step 3: Stills
            if counts["stills"] and not self._cancelled(video_id):
                artifacts.extend(await self._render_stills(
                    plan, job_dir, output_name, duration, counts["stills"], render_semaphore
                ))

            # Step 4: Shorts
            if counts["shorts"] and not self._cancelled(video_id):
                artifacts.extend(await self._render_shorts(
                    plan, job_dir, output_name, duration, counts["shorts"], render_semaphore
                ))

            if self._cancelled(video_id):
                logger.info(f"Job for video {video_id} cancelled after {len(artifacts)} outputs, not packaging")
                return self._result(video_id, artifacts, start_time, cancelled=True)

            if not artifacts:
                logger.error(f"Job for video {video_id} produced no outputs")
                self.job_registry.fail(video_id, NOTHING_GENERATED_MESSAGE)
                return self._result(video_id, artifacts, start_time)

            # Step 5: Package
            try:
                archive = await self.packager.package(video_id, output_name, artifacts)
            except ArchiveError as e:
                logger.error(f"Packaging failed for video {video_id}: {e}")
                self.job_registry.fail(video_id, str(e))
                return self._result(video_id, artifacts, start_time)

            download_path = f"/api/download/{video_id}"
            final = self.job_registry.complete(video_id, archive.path, download_path)
            if final.status == JobStatus.COMPLETED:
                self.video_store.update_video(video_id, processed=True)

            log_memory_usage("after_packaging", job_id=f"video-{video_id}")
            result = self._result(video_id, artifacts, start_time, archive=archive)
            logger.info(
                f"Job for video {video_id} finished in {result.processing_time_seconds:.1f}s: "
                f"{len(artifacts)} outputs, {len(result.errors)} errors"
            )
            return result

        except asyncio.CancelledError:
            # The request went away; free the video for the next job
            self.job_registry.fail(video_id, "Processing aborted")
            raise

        except Exception as e:
            logger.exception(f"Job for video {video_id} failed: {e}")
            self.job_registry.fail(video_id, str(e))
            return self._result(video_id, artifacts, start_time)

        finally:
            self._cleanup_job_logging(job_log_handler)

    def _cancelled(self, video_id: int) -> bool:
        return self.job_registry.is_cancelled(video_id)

    def _result(
        self,
        video_id: int,
        artifacts: list[OutputArtifact],
        start_time: float,
        archive: Optional[PackagedArchive] = None,
        cancelled: bool = False,
    ) -> DerivationResult:
        job: JobProgress = self.job_registry.get(video_id)
        return DerivationResult(
            video_id=video_id,
            status=job.status,
            artifacts=list(artifacts),
            errors=list(job.errors),
            total_units=job.total_units,
            archive=archive if job.status == JobStatus.COMPLETED else None,
            download_path=job.download_path,
            cancelled=cancelled or job.cancel_requested,
            processing_time_seconds=time.time() - start_time,
        )

    def _report_skipped_exports(self, plan: WorkPlan, duration: Optional[float], counts: dict[str, int]) -> None:
        requested = [
            ("Loops", plan.generate_loops, counts["loops"], self.settings.loop_duration_seconds),
            ("Stills", plan.generate_stills, counts["stills"], 0),
            ("Shorts", plan.generate_shorts, counts["shorts"], self.settings.short_segment_seconds),
        ]
        for label, wanted, count, minimum in requested:
            if not wanted or count:
                continue
            if not duration:
                message = f"{label} skipped: source duration unknown"
            else:
                message = f"{label} skipped: video shorter than {minimum:.0f}s"
            logger.warning(message)
            self.job_registry.add_error(plan.video_id, message)

    async def _render_clips(self, plan: WorkPlan, job_dir: str, output_name: str) -> list[OutputArtifact]:
        crf = get_quality_preset(plan.quality)["crf"]
        produced = []

        for range_index, time_range in enumerate(plan.time_ranges, start=1):
            for ratio in plan.aspect_ratios:
                if self._cancelled(plan.video_id):
                    return produced

                preset = get_aspect_ratio_preset(ratio)
                filename = f"{output_name}-clip-{range_index:02d} {preset['suffix']}.mp4"
                output_path = os.path.join(job_dir, preset["folder"], filename)

                request = ClipRenderRequest(
                    source_path=plan.source_path,
                    output_path=output_path,
                    start_seconds=time_range.start_seconds,
                    end_seconds=time_range.end_seconds,
                    aspect_ratio=ratio,
                    crf=crf,
                    video_fade=plan.video_fade,
                    audio_fade=plan.audio_fade,
                    fade_duration=plan.fade_duration,
                )

                try:
                    result = await self.rendering_service.render_clip(request)
                except RenderingError as e:
                    message = (
                        f"Clip {range_index} ({ratio}) {time_range.start_time}-{time_range.end_time}: {e}"
                    )
                    logger.error(message)
                    self.job_registry.record_unit(plan.video_id, error=message)
                    continue

                clip = self.video_store.create_clip(
                    video_id=plan.video_id,
                    start_time=time_range.start_time,
                    end_time=time_range.end_time,
                    filename=filename,
                    path=result.output_path,
                )
                self.video_store.update_clip(clip.id, processed=True)
                produced.append(OutputArtifact(result.output_path, ArtifactCategory.CLIP, preset["folder"]))
                progress = self.job_registry.record_unit(plan.video_id, output_path=result.output_path)
                logger.info(
                    f"Clip {range_index} ({ratio}) done: {result.file_size_bytes / 1024 / 1024:.1f} MB "
                    f"[{progress.progress_percent}%]"
                )

        return produced

    def place_segments(self, total_seconds: float, segment_seconds: float, count: int) -> list[Optional[float]]:
        """
        Pick random, non-overlapping segment starts.

        Each segment gets a bounded number of attempts; a segment that cannot
        be placed is returned as None.
        """
        latest_start = max(0.0, total_seconds - segment_seconds)
        placed: list[float] = []
        starts: list[Optional[float]] = []

        for _ in range(count):
            for _ in range(self.settings.placement_attempts):
                start = self.rng.uniform(0, latest_start)
                if all(abs(start - other) >= segment_seconds for other in placed):
                    placed.append(start)
                    starts.append(start)
                    break
            else:
                starts.append(None)

        return starts

    async def _render_loops(
        self,
        plan: WorkPlan,
        job_dir: str,
        output_name: str,
        duration: float,
        count: int,
        semaphore: asyncio.Semaphore,
    ) -> list[OutputArtifact]:
        folder = CATEGORY_FOLDERS[ArtifactCategory.LOOP]
        starts = self.place_segments(duration, self.settings.loop_duration_seconds, count)

        async def render_single_loop(number: int, start: Optional[float]) -> Optional[OutputArtifact]:
            async with semaphore:
                if self._cancelled(plan.video_id):
                    return None
                if start is None:
                    self.job_registry.record_unit(
                        plan.video_id, error=f"Loop {number}: could not be placed without overlap"
                    )
                    return None

                output_path = os.path.join(job_dir, folder, f"{output_name}-loop-{number:02d}.gif")
                try:
                    await self.rendering_service.render_loop(plan.source_path, output_path, start)
                except RenderingError as e:
                    self.job_registry.record_unit(plan.video_id, error=f"Loop {number}: {e}")
                    return None

                self.job_registry.record_unit(plan.video_id, output_path=output_path)
                return OutputArtifact(output_path, ArtifactCategory.LOOP, folder)

        results = await asyncio.gather(
            *(render_single_loop(i, start) for i, start in enumerate(starts, start=1)),
            return_exceptions=True,
        )
        return self._collect("Loop", plan.video_id, results)

    async def _render_stills(
        self,
        plan: WorkPlan,
        job_dir: str,
        output_name: str,
        duration: float,
        count: int,
        semaphore: asyncio.Semaphore,
    ) -> list[OutputArtifact]:
        folder = CATEGORY_FOLDERS[ArtifactCategory.STILL]

        async def render_single_still(number: int) -> Optional[OutputArtifact]:
            # Evenly spaced, skipping the very start and end
            timestamp = number * duration / (count + 1)
            async with semaphore:
                if self._cancelled(plan.video_id):
                    return None

                output_path = os.path.join(job_dir, folder, f"{output_name}-still-{number:02d}.jpg")
                try:
                    await self.rendering_service.render_still(plan.source_path, output_path, timestamp)
                except RenderingError as e:
                    self.job_registry.record_unit(plan.video_id, error=f"Still {number}: {e}")
                    return None

                self.job_registry.record_unit(plan.video_id, output_path=output_path)
                return OutputArtifact(output_path, ArtifactCategory.STILL, folder)

        results = await asyncio.gather(
            *(render_single_still(i) for i in range(1, count + 1)),
            return_exceptions=True,
        )
        return self._collect("Still", plan.video_id, results)

    async def _render_shorts(
        self,
        plan: WorkPlan,
        job_dir: str,
        output_name: str,
        duration: float,
        count: int,
        semaphore: asyncio.Semaphore,
    ) -> list[OutputArtifact]:
        folder = CATEGORY_FOLDERS[ArtifactCategory.SHORT]
        starts = self.place_segments(duration, self.settings.short_segment_seconds, count)

        async def render_single_short(number: int, start: Optional[float]) -> Optional[OutputArtifact]:
            async with semaphore:
                if self._cancelled(plan.video_id):
                    return None
                if start is None:
                    self.job_registry.record_unit(
                        plan.video_id, error=f"Short {number}: could not be placed without overlap"
                    )
                    return None

                output_path = os.path.join(job_dir, folder, f"{output_name}-short-{number:02d}.mp4")
                try:
                    await self.rendering_service.render_short(plan.source_path, output_path, start)
                except RenderingError as e:
                    self.job_registry.record_unit(plan.video_id, error=f"Short {number}: {e}")
                    return None

                self.job_registry.record_unit(plan.video_id, output_path=output_path)
                return OutputArtifact(output_path, ArtifactCategory.SHORT, folder)

        tasks = {
            asyncio.ensure_future(render_single_short(i, start)): i
            for i, start in enumerate(starts, start=1)
        }
        timeout = self.settings.short_batch_timeout_seconds
        done, pending = await asyncio.wait(tasks.keys(), timeout=timeout)

        if pending:
            logger.warning(
                f"{len(pending)} shorts still running after {timeout:g}s, "
                f"keeping the {len(done)} that finished"
            )
            # Cancelling a short kills its running transcoder process
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)
            for task in sorted(pending, key=lambda t: tasks[t]):
                self.job_registry.record_unit(plan.video_id, error=f"Short {tasks[task]}: timed out")

        finished = sorted(done, key=lambda t: tasks[t])
        results = [t.exception() or t.result() for t in finished]
        produced = self._collect("Short", plan.video_id, results)

        if pending:
            self._remove_abandoned_files(os.path.join(job_dir, folder), {a.path for a in produced})
        return produced

    def _remove_abandoned_files(self, directory: str, keep: set[str]) -> None:
        """Delete everything in an export folder that is not a finished output."""
        if not os.path.isdir(directory):
            return
        for name in os.listdir(directory):
            path = os.path.join(directory, name)
            if path in keep or not os.path.isfile(path):
                continue
            try:
                os.remove(path)
                logger.debug(f"Removed abandoned file {path}")
            except OSError as e:
                logger.warning(f"Failed to remove abandoned file {path}: {e}")

    def _collect(self, label: str, video_id: int, results: list) -> list[OutputArtifact]:
        produced = []
        for result in results:
            if isinstance(result, OutputArtifact):
                produced.append(result)
            elif isinstance(result, Exception):
                # Unexpected failure inside one unit; keep the rest of the batch
                logger.error(f"{label} failed unexpectedly: {result}")
                self.job_registry.record_unit(video_id, error=f"{label}: {result}")
        return produced


class InvalidWorkPlanError(ValueError):
    """Exception raised when a work plan cannot be executed."""
    pass
