"""
Pytest configuration and fixtures.
"""

import asyncio
import os
import sys

import pytest

# Add repo root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from cutdown.config import Settings  # noqa: E402
from cutdown.services.ffmpeg_runner import CommandResult, TranscodeError  # noqa: E402


class FakeRunner:
    """
    Stand-in for FFmpegRunner.

    Records every command, writes a placeholder file wherever the command would
    have written its output, and fails on demand for commands containing any
    of the configured patterns.
    """

    ffmpeg_binary = "ffmpeg"

    def __init__(self, duration=120.0, crop_output="", fail_patterns=(), delays=None, on_run=None):
        self.duration = duration
        self.crop_output = crop_output
        self.fail_patterns = list(fail_patterns)
        self.delays = delays or {}
        self.on_run = on_run
        self.commands = []
        self.probed = []

    def verify_tools(self):
        return {"ffmpeg": True, "ffprobe": True}

    async def run(self, cmd, timeout=None, expected_output=None, check=True):
        self.commands.append(list(cmd))
        joined = " ".join(cmd)

        if self.on_run is not None:
            self.on_run(cmd)

        for pattern, seconds in self.delays.items():
            if pattern in joined:
                await asyncio.sleep(seconds)

        for pattern in self.fail_patterns:
            if pattern in joined:
                raise TranscodeError(f"ffmpeg exited with 1: forced failure on {pattern!r}")

        if "cropdetect" in joined:
            return CommandResult(returncode=0, stderr=self.crop_output.encode())

        target = expected_output or cmd[-1]
        if target != "-":
            os.makedirs(os.path.dirname(target) or ".", exist_ok=True)
            with open(target, "wb") as f:
                f.write(b"fake media output")
        return CommandResult(returncode=0)

    async def probe_duration(self, path):
        self.probed.append(path)
        return self.duration

    def commands_matching(self, pattern):
        return [cmd for cmd in self.commands if pattern in " ".join(cmd)]


@pytest.fixture
def settings(tmp_path):
    """Settings rooted in a temporary directory."""
    return Settings(
        upload_directory=str(tmp_path / "uploads"),
        output_directory=str(tmp_path / "uploads" / "clips"),
        logs_directory=str(tmp_path / "logs"),
    )


@pytest.fixture
def make_runner():
    """Factory for fake transcoders with custom failures, delays or durations."""
    return FakeRunner


@pytest.fixture
def source_video(tmp_path):
    """Placeholder source file (never decoded, the runner is fake)."""
    path = tmp_path / "source.mp4"
    path.write_bytes(b"\x00" * 1024)
    return str(path)
