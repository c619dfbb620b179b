"""
FFmpeg Runner - Bounded execution of ffmpeg/ffprobe commands.

Every external transcode goes through FFmpegRunner.run so that each call has
a hard time limit and a uniform failure type. Commands are started with
subprocess.Popen and waited on in the default executor
(asyncio.create_subprocess_exec needs a ProactorEventLoop on Windows). The
child is killed when it exceeds the timeout and when the awaiting task is
cancelled, so neither a wedged encode nor an abandoned one lingers.
"""

import asyncio
import json
import logging
import os
import shutil
import subprocess
from dataclasses import dataclass
from typing import Optional

from cutdown.config import Settings, get_settings

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """Captured output of one finished command."""

    returncode: int
    stdout: bytes = b""
    stderr: bytes = b""

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode(errors="replace") if self.stderr else ""


class FFmpegRunner:
    """
    Runs transcoder commands with a per-call timeout.

    The pipeline and rendering service depend only on run() and
    probe_duration(), so tests substitute a fake runner that records commands
    and writes placeholder outputs.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        ffmpeg_binary: str = "ffmpeg",
        ffprobe_binary: str = "ffprobe",
    ):
        self.settings = settings or get_settings()
        self.ffmpeg_binary = ffmpeg_binary
        self.ffprobe_binary = ffprobe_binary

    def verify_tools(self) -> dict[str, bool]:
        """Report which external binaries are on PATH."""
        return {
            self.ffmpeg_binary: shutil.which(self.ffmpeg_binary) is not None,
            self.ffprobe_binary: shutil.which(self.ffprobe_binary) is not None,
        }

    async def run(
        self,
        cmd: list[str],
        timeout: Optional[float] = None,
        expected_output: Optional[str] = None,
        check: bool = True,
    ) -> CommandResult:
        """
        Run a command to completion or until the timeout elapses.

        Args:
            cmd: Full argument vector, binary first
            timeout: Seconds before the process is killed (defaults to the
                configured per-invocation limit)
            expected_output: File that must exist and be non-empty afterwards
            check: Raise on a non-zero exit status

        Returns:
            CommandResult with exit status and captured streams

        Raises:
            TranscodeTimeoutError: If the process exceeded the timeout
            TranscodeError: On non-zero exit or missing output
        """
        timeout = timeout if timeout is not None else self.settings.ffmpeg_timeout_seconds
        logger.debug(f"Running: {' '.join(cmd[:12])}...")

        try:
            process = subprocess.Popen(cmd, stdout=subprocess.PIPE, stderr=subprocess.PIPE)
        except FileNotFoundError:
            raise TranscodeError(f"{cmd[0]} not found in PATH")

        loop = asyncio.get_event_loop()
        try:
            stdout, stderr = await loop.run_in_executor(
                None,
                lambda: process.communicate(timeout=timeout),
            )
        except subprocess.TimeoutExpired:
            process.kill()
            await loop.run_in_executor(None, process.communicate)
            raise TranscodeTimeoutError(f"{cmd[0]} timed out after {timeout:g}s")
        except asyncio.CancelledError:
            # The awaiting task was abandoned; the process must not outlive it
            process.kill()
            process.wait()
            raise

        result = CommandResult(
            returncode=process.returncode,
            stdout=stdout or b"",
            stderr=stderr or b"",
        )

        if check and result.returncode != 0:
            error_msg = result.stderr_text[-1000:] or "Unknown error"
            raise TranscodeError(f"{cmd[0]} exited with {result.returncode}: {error_msg}")

        if expected_output is not None:
            if not os.path.exists(expected_output) or os.path.getsize(expected_output) == 0:
                raise TranscodeError(f"{cmd[0]} produced no output at {expected_output}")

        return result

    async def probe_duration(self, path: str) -> Optional[float]:
        """
        Read a media file's duration in seconds with ffprobe.

        Returns None when the file cannot be probed; callers treat the
        duration as unknown.
        """
        cmd = [
            self.ffprobe_binary,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            path,
        ]

        try:
            result = await self.run(cmd, check=False)
        except TranscodeError as e:
            logger.warning(f"ffprobe could not run for {path}: {e}")
            return None

        if result.returncode != 0:
            logger.warning(f"ffprobe failed for {path}: {result.stderr_text[:200]}")
            return None

        try:
            info = json.loads(result.stdout.decode())
            duration = float(info.get("format", {}).get("duration", 0))
        except (json.JSONDecodeError, ValueError, TypeError) as e:
            logger.warning(f"Failed to parse ffprobe output for {path}: {e}")
            return None

        return duration if duration > 0 else None


class TranscodeError(Exception):
    """Exception raised when an ffmpeg/ffprobe invocation fails."""
    pass


class TranscodeTimeoutError(TranscodeError):
    """Exception raised when an invocation exceeds its time limit."""
    pass
