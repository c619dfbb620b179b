"""
Tests for the derivation pipeline with a fake transcoder.
"""

import asyncio
import os
import random
import threading
import zipfile

import pytest

from cutdown.config import Settings
from cutdown.services.derivation_pipeline import (
    NOTHING_GENERATED_MESSAGE,
    DerivationPipeline,
    InvalidWorkPlanError,
    WorkPlan,
)
from cutdown.services.ffmpeg_runner import FFmpegRunner
from cutdown.services.job_tracker import CANCELLED_MESSAGE, JobConflictError, JobRegistry, JobStatus
from cutdown.services.timestamp_parser import TimeRange
from cutdown.services.video_store import VideoStore

THREE_RANGES = [
    TimeRange("00:00:10", "00:00:20"),
    TimeRange("00:00:30", "00:00:40"),
    TimeRange("00:00:50", "00:01:00"),
]


class TestWorkPlan:
    """Tests for WorkPlan validation."""

    def test_requires_work(self, source_video):
        """A plan with no ranges and no exports is rejected."""
        with pytest.raises(InvalidWorkPlanError):
            WorkPlan(video_id=1, source_path=source_video, output_name="talk")

    def test_unknown_quality(self, source_video):
        """Unknown quality tiers are rejected."""
        with pytest.raises(InvalidWorkPlanError):
            WorkPlan(video_id=1, source_path=source_video, output_name="talk",
                     time_ranges=THREE_RANGES, quality="ultra")

    def test_clip_unit_count(self, source_video):
        """Clip units are ranges times aspect ratios."""
        plan = WorkPlan(video_id=1, source_path=source_video, output_name="talk",
                        time_ranges=THREE_RANGES, aspect_ratios=["16:9", "9:16"])
        assert plan.clip_unit_count == 6


class TestDerivationPipeline:
    """Tests for DerivationPipeline.process."""

    @pytest.fixture
    def registry(self, settings):
        return JobRegistry(progress_ceiling=settings.progress_ceiling_percent)

    @pytest.fixture
    def store(self, source_video):
        store = VideoStore()
        store.create_video("1-source.mp4", "source.mp4", source_video, 1024)
        return store

    def _pipeline(self, runner, registry, store, settings):
        return DerivationPipeline(runner, registry, store, settings=settings, rng=random.Random(11))

    def test_clips_and_stills(self, settings, make_runner, registry, store, source_video):
        """3 ranges x 2 ratios plus stills report and produce 6 + 10 units."""
        runner = make_runner(duration=120.0)
        pipeline = self._pipeline(runner, registry, store, settings)
        plan = WorkPlan(video_id=1, source_path=source_video, output_name="talk",
                        time_ranges=THREE_RANGES, aspect_ratios=["16:9", "9:16"],
                        generate_stills=True)

        result = asyncio.run(pipeline.process(plan))

        assert result.status == JobStatus.COMPLETED
        assert result.total_units == 6 + settings.still_count
        assert len(result.artifacts) == 16
        assert result.errors == []
        assert result.download_path == "/api/download/1"

        job = registry.get(1)
        assert job.progress_percent == 100
        assert job.completed_units == 16

        with zipfile.ZipFile(result.archive.path) as zf:
            names = zf.namelist()
        assert result.archive.name == "talk-clips.zip"
        assert "clips (16x9)/talk-clip-01 (16x9).mp4" in names
        assert "clips (9x16)/talk-clip-03 (9x16).mp4" in names
        assert "stills/talk-still-10.jpg" in names

        assert store.get_video(1).processed
        clips = store.get_clips_by_video(1)
        assert len(clips) == 6
        assert all(c.processed for c in clips)

    def test_duration_probed_when_unknown(self, settings, make_runner, registry, store, source_video):
        """An unknown duration is probed and written back to the video."""
        runner = make_runner(duration=90.0)
        pipeline = self._pipeline(runner, registry, store, settings)
        plan = WorkPlan(video_id=1, source_path=source_video, output_name="talk", generate_stills=True)

        asyncio.run(pipeline.process(plan))

        assert runner.probed == [source_video]
        assert store.get_video(1).duration_seconds == 90.0

    def test_partial_failure(self, settings, make_runner, registry, store, source_video):
        """A failing clip is reported while the rest of the batch is packaged."""
        runner = make_runner(fail_patterns=["clip-02"])
        pipeline = self._pipeline(runner, registry, store, settings)
        plan = WorkPlan(video_id=1, source_path=source_video, output_name="talk",
                        time_ranges=THREE_RANGES, aspect_ratios=["16:9", "9:16"],
                        source_duration=120.0)

        result = asyncio.run(pipeline.process(plan))

        assert result.status == JobStatus.COMPLETED
        assert len(result.artifacts) == 4
        assert len(result.errors) == 2
        assert result.errors[0].startswith("Clip 2 (16:9) 00:00:30-00:00:40:")
        assert registry.get(1).completed_units == 6

    def test_nothing_generated(self, settings, make_runner, registry, store, source_video):
        """When every unit fails the job ends in error with the nothing-generated message."""
        runner = make_runner(fail_patterns=["libx264"])
        pipeline = self._pipeline(runner, registry, store, settings)
        plan = WorkPlan(video_id=1, source_path=source_video, output_name="talk",
                        time_ranges=THREE_RANGES, source_duration=120.0)

        result = asyncio.run(pipeline.process(plan))

        assert result.status == JobStatus.ERROR
        assert result.nothing_generated
        assert result.archive is None
        assert NOTHING_GENERATED_MESSAGE in result.errors
        assert len(result.errors) == 4
        assert not store.get_video(1).processed

    def test_exports(self, settings, make_runner, registry, store, source_video):
        """Loops, stills and shorts are all produced and counted."""
        runner = make_runner()
        pipeline = self._pipeline(runner, registry, store, settings)
        plan = WorkPlan(video_id=1, source_path=source_video, output_name="talk",
                        generate_loops=True, generate_stills=True, generate_shorts=True,
                        source_duration=600.0)

        result = asyncio.run(pipeline.process(plan))

        assert result.status == JobStatus.COMPLETED
        assert result.total_units == 10 + 10 + 5
        assert len(result.artifacts) == 25
        assert result.archive.name == "talk-shorts.zip"

    def test_export_counts_capped_by_duration(self, settings, make_runner, registry, store, source_video):
        """A short source gets fewer loops and shorts."""
        pipeline = self._pipeline(make_runner(), registry, store, settings)
        plan = WorkPlan(video_id=1, source_path=source_video, output_name="talk",
                        generate_loops=True, generate_shorts=True)

        counts = pipeline.planned_counts(plan, 20.0)

        assert counts["loops"] == 3
        assert counts["shorts"] == 5
        assert pipeline.planned_counts(plan, None) == {"clips": 0, "loops": 0, "stills": 0, "shorts": 0}

    def test_exports_skipped_without_duration(self, settings, make_runner, registry, store, source_video):
        """Exports are skipped with an error when the duration cannot be probed."""
        runner = make_runner(duration=None)
        pipeline = self._pipeline(runner, registry, store, settings)
        plan = WorkPlan(video_id=1, source_path=source_video, output_name="talk",
                        time_ranges=THREE_RANGES[:1], generate_loops=True)

        result = asyncio.run(pipeline.process(plan))

        assert result.status == JobStatus.COMPLETED
        assert "Loops skipped: source duration unknown" in result.errors
        assert len(result.artifacts) == 1

    def test_cancel_stops_dispatch(self, settings, make_runner, registry, store, source_video):
        """After a cancel no further units start and nothing is packaged."""
        def cancel_after_first_clip(cmd):
            if any("clip-01" in part for part in cmd):
                registry.request_cancel(1)

        runner = make_runner(on_run=cancel_after_first_clip)
        pipeline = self._pipeline(runner, registry, store, settings)
        plan = WorkPlan(video_id=1, source_path=source_video, output_name="talk",
                        time_ranges=THREE_RANGES, generate_stills=True, source_duration=120.0)

        result = asyncio.run(pipeline.process(plan))

        assert result.cancelled
        assert result.status == JobStatus.ERROR
        assert result.archive is None
        assert CANCELLED_MESSAGE in result.errors
        assert len(runner.commands) == 1
        assert not os.path.isdir(pipeline.packager.archive_dir(1))

    def test_live_job_conflicts(self, settings, make_runner, registry, store, source_video):
        """A second job for a video that is still processing is refused."""
        registry.start_job(1, total_clips=1)
        pipeline = self._pipeline(make_runner(), registry, store, settings)
        plan = WorkPlan(video_id=1, source_path=source_video, output_name="talk",
                        time_ranges=THREE_RANGES, source_duration=120.0)

        with pytest.raises(JobConflictError):
            asyncio.run(pipeline.process(plan))

    def test_reprocessing_replaces_outputs(self, settings, make_runner, registry, store, source_video):
        """Running a video again drops the previous clip records and outputs."""
        pipeline = self._pipeline(make_runner(), registry, store, settings)
        first = WorkPlan(video_id=1, source_path=source_video, output_name="first",
                         time_ranges=THREE_RANGES, source_duration=120.0)
        second = WorkPlan(video_id=1, source_path=source_video, output_name="second",
                          time_ranges=THREE_RANGES[:1], source_duration=120.0)

        asyncio.run(pipeline.process(first))
        result = asyncio.run(pipeline.process(second))

        assert len(store.get_clips_by_video(1)) == 1
        assert result.archive.name == "second-clips.zip"
        job_dir = os.path.join(settings.output_directory, "1", "clips (16x9)")
        assert os.listdir(job_dir) == ["second-clip-01 (16x9).mp4"]

    def test_shorts_batch_timeout(self, settings, make_runner, registry, store, source_video, mocker):
        """Shorts still running at the batch deadline are abandoned and reported."""
        mocker.patch.object(
            Settings,
            "short_batch_timeout_seconds",
            new_callable=mocker.PropertyMock,
            return_value=0.05,
        )
        runner = make_runner(delays={"reverse": 5})
        pipeline = self._pipeline(runner, registry, store, settings)
        plan = WorkPlan(video_id=1, source_path=source_video, output_name="talk",
                        generate_stills=True, generate_shorts=True, source_duration=120.0)

        result = asyncio.run(pipeline.process(plan))

        assert result.status == JobStatus.COMPLETED
        assert sorted(e for e in result.errors if e.endswith("timed out")) == [
            f"Short {n}: timed out" for n in range(1, 6)
        ]
        assert len(result.artifacts) == settings.still_count
        assert result.archive.name == "talk-stills.zip"

    def test_cancelled_while_queued(self, settings, make_runner, registry, store, source_video):
        """A job cancelled before a worker picked it up runs nothing."""
        runner = make_runner()
        pipeline = self._pipeline(runner, registry, store, settings)
        plan = WorkPlan(video_id=1, source_path=source_video, output_name="talk",
                        time_ranges=THREE_RANGES, source_duration=120.0)
        registry.start_job(1)
        registry.request_cancel(1)

        result = asyncio.run(pipeline.process(plan, registered=True))

        assert result.cancelled
        assert runner.commands == []
        assert runner.probed == []

    def test_input_errors_reported(self, settings, make_runner, registry, store, source_video):
        """Rejected cut list lines travel with the job's errors while valid ranges render."""
        pipeline = self._pipeline(make_runner(), registry, store, settings)
        plan = WorkPlan(video_id=1, source_path=source_video, output_name="talk",
                        time_ranges=THREE_RANGES[:1], source_duration=120.0,
                        input_errors=["Clip 2: Start time must be before end time"])

        result = asyncio.run(pipeline.process(plan))

        assert result.status == JobStatus.COMPLETED
        assert result.errors == ["Clip 2: Start time must be before end time"]
        assert len(result.artifacts) == 1

    def test_timed_out_shorts_leave_no_files(self, settings, registry, store, source_video, mocker):
        """Transcodes of abandoned shorts are killed and their partial files removed."""
        mocker.patch.object(
            Settings,
            "short_batch_timeout_seconds",
            new_callable=mocker.PropertyMock,
            return_value=0.3,
        )
        started = []

        class StalledProcess:
            """Writes its output after a second unless it is killed first."""

            def __init__(self, cmd, stdout=None, stderr=None):
                self.cmd = cmd
                self.returncode = None
                self.killed = threading.Event()
                started.append(self)

            def communicate(self, input=None, timeout=None):
                if not self.killed.wait(1.0):
                    with open(self.cmd[-1], "wb") as f:
                        f.write(b"late output")
                    self.returncode = 0
                return b"", b""

            def kill(self):
                self.returncode = -9
                self.killed.set()

            def wait(self, timeout=None):
                return self.returncode

        mocker.patch("cutdown.services.ffmpeg_runner.subprocess.Popen", side_effect=StalledProcess)
        pipeline = self._pipeline(FFmpegRunner(settings), registry, store, settings)
        plan = WorkPlan(video_id=1, source_path=source_video, output_name="talk",
                        generate_shorts=True, source_duration=120.0)

        result = asyncio.run(pipeline.process(plan))

        assert result.nothing_generated
        assert sorted(e for e in result.errors if e.endswith("timed out")) == [
            f"Short {n}: timed out" for n in range(1, 6)
        ]
        assert started and all(p.killed.is_set() for p in started)
        shorts_dir = os.path.join(settings.output_directory, "1", "shorts")
        assert not os.path.isdir(shorts_dir) or os.listdir(shorts_dir) == []
