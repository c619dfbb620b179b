"""
Tests for the bounded ffmpeg/ffprobe runner with subprocess patched out.
"""

import asyncio
import subprocess
import threading

import pytest

from cutdown.services.ffmpeg_runner import (
    CommandResult,
    FFmpegRunner,
    TranscodeError,
    TranscodeTimeoutError,
)

ENCODE = ["ffmpeg", "-y", "-i", "in.mp4", "out.mp4"]


@pytest.fixture
def runner(settings):
    return FFmpegRunner(settings)


@pytest.fixture
def process(mocker):
    """A finished child process; tests adjust its streams and exit status."""
    child = mocker.MagicMock()
    child.returncode = 0
    child.communicate.return_value = (b"", b"")
    mocker.patch("cutdown.services.ffmpeg_runner.subprocess.Popen", return_value=child)
    return child


class TestRun:
    """Tests for FFmpegRunner.run."""

    def test_success(self, runner, process):
        """A zero exit returns the captured streams."""
        process.communicate.return_value = (b"out", b"progress")

        result = asyncio.run(runner.run(ENCODE))

        assert result == CommandResult(returncode=0, stdout=b"out", stderr=b"progress")
        subprocess.Popen.assert_called_once_with(ENCODE, stdout=subprocess.PIPE, stderr=subprocess.PIPE)

    def test_default_timeout_from_settings(self, runner, process, settings):
        """Without an explicit limit the configured per-invocation timeout applies."""
        asyncio.run(runner.run(ENCODE))
        process.communicate.assert_called_once_with(timeout=settings.ffmpeg_timeout_seconds)

    def test_nonzero_exit(self, runner, process):
        """A failing command raises with the tail of its stderr."""
        process.returncode = 1
        process.communicate.return_value = (b"", b"in.mp4: Invalid data found when processing input")

        with pytest.raises(TranscodeError, match="exited with 1: .*Invalid data found"):
            asyncio.run(runner.run(ENCODE))

    def test_nonzero_exit_unchecked(self, runner, process):
        """With check disabled the exit status is returned to the caller."""
        process.returncode = 1

        result = asyncio.run(runner.run(ENCODE, check=False))

        assert result.returncode == 1

    def test_timeout_kills_process(self, runner, process):
        """A command over its limit is killed and reported as a timeout."""
        process.communicate.side_effect = [
            subprocess.TimeoutExpired(cmd="ffmpeg", timeout=5),
            (b"", b""),
        ]

        with pytest.raises(TranscodeTimeoutError, match="timed out after 5s"):
            asyncio.run(runner.run(ENCODE, timeout=5))

        process.kill.assert_called_once()
        assert process.communicate.call_args_list[0].kwargs == {"timeout": 5}

    def test_sub_second_timeout_message(self, runner, process):
        """Short limits are reported as given, not rounded to zero."""
        process.communicate.side_effect = [
            subprocess.TimeoutExpired(cmd="ffmpeg", timeout=0.25),
            (b"", b""),
        ]

        with pytest.raises(TranscodeTimeoutError, match="after 0.25s"):
            asyncio.run(runner.run(ENCODE, timeout=0.25))

    def test_cancel_kills_process(self, runner, process):
        """Cancelling the awaiting task kills the running child."""
        killed = threading.Event()
        process.communicate.side_effect = lambda timeout=None: (killed.wait(5), (b"", b""))[1]
        process.kill.side_effect = killed.set

        async def scenario():
            task = asyncio.ensure_future(runner.run(ENCODE))
            await asyncio.sleep(0.05)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

        asyncio.run(scenario())

        process.kill.assert_called_once()
        process.wait.assert_called_once()

    def test_missing_binary(self, runner, mocker):
        """A binary that is not installed is a transcode error."""
        mocker.patch("cutdown.services.ffmpeg_runner.subprocess.Popen", side_effect=FileNotFoundError)

        with pytest.raises(TranscodeError, match="not found in PATH"):
            asyncio.run(runner.run(ENCODE))

    def test_expected_output_missing(self, runner, process, tmp_path):
        """A zero exit without the expected file still fails."""
        with pytest.raises(TranscodeError, match="produced no output"):
            asyncio.run(runner.run(ENCODE, expected_output=str(tmp_path / "out.mp4")))

    def test_expected_output_empty(self, runner, process, tmp_path):
        """An empty output file counts as no output."""
        output = tmp_path / "out.mp4"
        output.write_bytes(b"")

        with pytest.raises(TranscodeError, match="produced no output"):
            asyncio.run(runner.run(ENCODE, expected_output=str(output)))

    def test_expected_output_present(self, runner, process, tmp_path):
        """A non-empty output file passes the check."""
        output = tmp_path / "out.mp4"
        output.write_bytes(b"media")

        assert asyncio.run(runner.run(ENCODE, expected_output=str(output))).returncode == 0


class TestProbeDuration:
    """Tests for ffprobe duration parsing."""

    def test_parses_format_duration(self, runner, process):
        """The container duration is read from ffprobe's JSON."""
        process.communicate.return_value = (b'{"format": {"duration": "3725.400000"}}', b"")

        assert asyncio.run(runner.probe_duration("talk.mp4")) == pytest.approx(3725.4)
        cmd = subprocess.Popen.call_args.args[0]
        assert cmd[0] == "ffprobe"
        assert cmd[-1] == "talk.mp4"

    @pytest.mark.parametrize(
        "returncode, stdout",
        [
            (1, b""),
            (0, b"not json"),
            (0, b'{"format": {}}'),
            (0, b'{"format": {"duration": "N/A"}}'),
        ],
    )
    def test_unknown_duration(self, runner, process, returncode, stdout):
        """Failed or unreadable probes give None."""
        process.returncode = returncode
        process.communicate.return_value = (stdout, b"")

        assert asyncio.run(runner.probe_duration("talk.mp4")) is None

    def test_missing_ffprobe(self, runner, mocker):
        """Without ffprobe the duration is simply unknown."""
        mocker.patch("cutdown.services.ffmpeg_runner.subprocess.Popen", side_effect=FileNotFoundError)

        assert asyncio.run(runner.probe_duration("talk.mp4")) is None


class TestVerifyTools:
    """Tests for the binary availability check."""

    def test_reports_each_binary(self, settings, mocker):
        """Each configured binary is looked up on PATH."""
        mocker.patch(
            "cutdown.services.ffmpeg_runner.shutil.which",
            side_effect=lambda name: "/usr/bin/ffmpeg" if name == "ffmpeg" else None,
        )

        assert FFmpegRunner(settings).verify_tools() == {"ffmpeg": True, "ffprobe": False}
