"""
Rendering Service - FFmpeg command construction for every derived artifact.

Builds the filter graphs and encoder arguments for clips (16:9 and
letterbox-free 9:16), palette-optimized animated loops, still thumbnails and
forward+reverse vertical shorts, and runs them through an FFmpegRunner.
Pixel work is left entirely to ffmpeg.
"""

import logging
import os
import re
from dataclasses import dataclass
from typing import Optional

from cutdown.config import AspectRatio, Settings, get_aspect_ratio_preset, get_settings
from cutdown.services.ffmpeg_runner import FFmpegRunner, TranscodeError

logger = logging.getLogger(__name__)


CROPDETECT_PATTERN = re.compile(r"crop=(\d+):(\d+):(\d+):(\d+)")

# cropdetect=limit:round:reset - sampled over a single second
CROPDETECT_FILTER = "cropdetect=24:16:0"
CROPDETECT_SAMPLE_SECONDS = 1


@dataclass(frozen=True)
class CropRect:
    """Crop rectangle suggested by ffmpeg's cropdetect filter."""

    width: int
    height: int
    x: int
    y: int

    def to_filter(self) -> str:
        return f"crop={self.width}:{self.height}:{self.x}:{self.y}"


@dataclass
class ClipRenderRequest:
    """Request for rendering one (time range, aspect ratio) clip."""

    source_path: str
    output_path: str
    start_seconds: float
    end_seconds: float
    aspect_ratio: str
    crf: int

    # Optional boundary fades
    video_fade: bool = False
    audio_fade: bool = False
    fade_duration: float = 0.5


@dataclass
class RenderResult:
    """Result of a rendering operation."""

    output_path: str
    file_size_bytes: int
    duration_seconds: float
    used_fallback: bool = False


def parse_cropdetect(stderr_text: str) -> Optional[CropRect]:
    """
    Extract the crop rectangle from cropdetect diagnostic output.

    cropdetect prints one suggestion per analysed frame; the last one has seen
    the most frames and wins.
    """
    matches = CROPDETECT_PATTERN.findall(stderr_text or "")
    if not matches:
        return None

    width, height, x, y = (int(v) for v in matches[-1])
    if width <= 0 or height <= 0:
        return None
    return CropRect(width=width, height=height, x=x, y=y)


def nudge_start(start_seconds: float, nudge_seconds: float) -> float:
    """Move starts that sit exactly on a whole second (other than 0) forward."""
    if start_seconds > 0 and float(start_seconds).is_integer():
        return start_seconds + nudge_seconds
    return start_seconds


def effective_fade_duration(clip_seconds: float, requested: float) -> float:
    """A fade must stay shorter than half the clip, otherwise it shrinks to a quarter."""
    if requested <= 0:
        return 0.0
    if requested >= clip_seconds / 2:
        return clip_seconds / 4
    return requested


def build_scale_filters(
    aspect_ratio: str,
    settings: Settings,
    crop: Optional[CropRect] = None,
) -> list[str]:
    """
    Build the geometry filters for an aspect ratio.

    16:9 keeps the source framing scaled to a fixed height. 9:16 removes a
    detected letterbox first, then fills the vertical frame and center-crops
    so no bars can survive.
    """
    preset = get_aspect_ratio_preset(aspect_ratio)

    if not preset["letterbox_removal"]:
        return [f"scale=-2:{settings.landscape_output_height}"]

    width = settings.target_output_width
    height = settings.target_output_height
    filters = []
    if crop is not None:
        filters.append(crop.to_filter())
    filters.append(f"scale={width}:{height}:force_original_aspect_ratio=increase")
    filters.append(f"crop={width}:{height}:(iw-{width})/2:(ih-{height})/2")
    return filters


def build_fade_filters(
    clip_seconds: float,
    fade_seconds: float,
    video_fade: bool,
    audio_fade: bool,
) -> tuple[list[str], list[str]]:
    """Build symmetric in/out fades for video (to black) and audio (exponential)."""
    video_filters: list[str] = []
    audio_filters: list[str] = []
    if fade_seconds <= 0:
        return video_filters, audio_filters

    out_start = max(0.0, clip_seconds - fade_seconds)

    if video_fade:
        video_filters.append(f"fade=t=in:st=0:d={fade_seconds:.3f}:color=black")
        video_filters.append(f"fade=t=out:st={out_start:.3f}:d={fade_seconds:.3f}:color=black")

    if audio_fade:
        audio_filters.append(f"afade=t=in:st=0:d={fade_seconds:.3f}:curve=exp")
        audio_filters.append(f"afade=t=out:st={out_start:.3f}:d={fade_seconds:.3f}:curve=exp")

    return video_filters, audio_filters


def _concat_list_entry(path: str) -> str:
    # concat demuxer quoting: close quote, escaped quote, reopen
    escaped = os.path.abspath(path).replace("'", "'\\''")
    return f"file '{escaped}'\n"


class RenderingService:
    """
    Service for rendering derived artifacts using FFmpeg.

    Features:
    - Input-side seeking with a padded fallback encode for clips
    - Letterbox detection before vertical reformatting
    - Two-pass palette GIF loops
    - Forward+reverse boomerang shorts
    """

    def __init__(self, runner: FFmpegRunner, settings: Optional[Settings] = None):
        self.runner = runner
        self.settings = settings or get_settings()
        self.ffmpeg = runner.ffmpeg_binary

    async def detect_letterbox(
        self,
        source_path: str,
        start_seconds: float,
        duration_seconds: float,
    ) -> Optional[CropRect]:
        """
        Sample one second at the clip midpoint and read cropdetect's suggestion.

        Detection problems are logged and treated as "no letterbox".
        """
        midpoint = start_seconds + duration_seconds / 2
        cmd = [
            self.ffmpeg,
            "-ss", f"{midpoint:.3f}",
            "-i", source_path,
            "-vf", CROPDETECT_FILTER,
            "-f", "null",
            "-t", str(CROPDETECT_SAMPLE_SECONDS),
            "-",
        ]

        try:
            result = await self.runner.run(cmd, check=False)
        except TranscodeError as e:
            logger.warning(f"Letterbox detection failed, rendering without crop: {e}")
            return None

        crop = parse_cropdetect(result.stderr_text)
        if crop:
            logger.debug(f"Letterbox detected at {midpoint:.1f}s: {crop.to_filter()}")
        return crop

    async def render_clip(self, request: ClipRenderRequest) -> RenderResult:
        """
        Render one clip, retrying once with a widened window on failure.

        Args:
            request: ClipRenderRequest describing source, window and format

        Returns:
            RenderResult with output path and metadata

        Raises:
            RenderingError: If both the primary and fallback encodes fail
        """
        os.makedirs(os.path.dirname(request.output_path) or ".", exist_ok=True)

        if request.end_seconds <= request.start_seconds:
            raise RenderingError("Invalid clip duration")

        start = nudge_start(request.start_seconds, self.settings.black_frame_nudge_seconds)
        duration = request.end_seconds - start

        crop = None
        if request.aspect_ratio == AspectRatio.PORTRAIT:
            crop = await self.detect_letterbox(request.source_path, start, duration)
        geometry = build_scale_filters(request.aspect_ratio, self.settings, crop)

        logger.info(
            f"Rendering clip {start:.2f}s-{request.end_seconds:.2f}s "
            f"({request.aspect_ratio}, crf {request.crf})"
        )

        try:
            await self._encode_clip(request, start, duration, geometry, reencode_audio=False)
            return self._result(request.output_path, duration)
        except TranscodeError as e:
            logger.warning(f"Primary encode failed for {os.path.basename(request.output_path)}: {e}")

        # Fallback: pad the window outward so the seek lands on decodable frames
        padding = self.settings.fallback_padding_seconds
        padded_start = max(0.0, start - padding)
        padded_duration = duration + (start - padded_start) + padding

        try:
            await self._encode_clip(request, padded_start, padded_duration, geometry, reencode_audio=True)
        except TranscodeError as e:
            raise RenderingError(f"Clip encode failed after fallback: {e}") from e

        logger.info(f"Fallback encode succeeded for {os.path.basename(request.output_path)}")
        return self._result(request.output_path, padded_duration, used_fallback=True)

    async def _encode_clip(
        self,
        request: ClipRenderRequest,
        start_seconds: float,
        duration_seconds: float,
        geometry: list[str],
        reencode_audio: bool,
    ) -> None:
        fade = effective_fade_duration(duration_seconds, request.fade_duration)
        if (request.video_fade or request.audio_fade) and fade != request.fade_duration:
            logger.info(
                f"Fade of {request.fade_duration:.2f}s too long for a {duration_seconds:.2f}s clip, "
                f"using {fade:.2f}s"
            )
        video_fades, audio_fades = build_fade_filters(
            duration_seconds, fade, request.video_fade, request.audio_fade
        )

        cmd = [
            self.ffmpeg,
            "-y",
            "-ss", f"{start_seconds:.3f}",
            "-i", request.source_path,
            "-t", f"{duration_seconds:.3f}",
            "-vf", ",".join(geometry + video_fades),
        ]
        if audio_fades:
            cmd.extend(["-af", ",".join(audio_fades)])

        cmd.extend([
            "-c:v", "libx264",
            "-preset", self.settings.ffmpeg_preset,
            "-crf", str(request.crf),
            "-pix_fmt", "yuv420p",
        ])

        if audio_fades or reencode_audio:
            cmd.extend(["-c:a", "aac", "-b:a", self.settings.audio_bitrate])
        else:
            cmd.extend(["-c:a", "copy"])

        cmd.extend(["-movflags", "+faststart", request.output_path])

        await self.runner.run(cmd, expected_output=request.output_path)

    async def render_loop(
        self,
        source_path: str,
        output_path: str,
        start_seconds: float,
    ) -> RenderResult:
        """
        Render a palette-optimized animated GIF segment in two passes.

        Raises:
            RenderingError: If either pass fails
        """
        os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
        duration = self.settings.loop_duration_seconds
        scale = (
            f"fps={self.settings.loop_fps},"
            f"scale={self.settings.loop_width}:{self.settings.loop_height}:flags=lanczos"
        )
        palette_path = os.path.splitext(output_path)[0] + ".palette.png"

        palette_cmd = [
            self.ffmpeg,
            "-y",
            "-ss", f"{start_seconds:.3f}",
            "-t", f"{duration:.3f}",
            "-i", source_path,
            "-vf", f"{scale},palettegen=stats_mode=diff",
            palette_path,
        ]
        gif_cmd = [
            self.ffmpeg,
            "-y",
            "-ss", f"{start_seconds:.3f}",
            "-t", f"{duration:.3f}",
            "-i", source_path,
            "-i", palette_path,
            "-filter_complex",
            f"{scale}[x];[x][1:v]paletteuse=dither=bayer:bayer_scale=5:diff_mode=rectangle",
            output_path,
        ]

        try:
            await self.runner.run(palette_cmd, expected_output=palette_path)
            await self.runner.run(gif_cmd, expected_output=output_path)
        except TranscodeError as e:
            raise RenderingError(f"Loop at {start_seconds:.1f}s failed: {e}") from e
        finally:
            _remove_quietly(palette_path)

        return self._result(output_path, duration)

    async def render_still(
        self,
        source_path: str,
        output_path: str,
        timestamp_seconds: float,
    ) -> RenderResult:
        """
        Capture one frame, scaled down to fit the still bounds.

        Raises:
            RenderingError: If the capture fails
        """
        os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
        cmd = [
            self.ffmpeg,
            "-y",
            "-ss", f"{timestamp_seconds:.3f}",
            "-i", source_path,
            "-vframes", "1",
            "-q:v", "2",
            "-vf",
            f"scale={self.settings.still_max_width}:{self.settings.still_max_height}"
            f":force_original_aspect_ratio=decrease:flags=lanczos",
            output_path,
        ]

        try:
            await self.runner.run(cmd, expected_output=output_path)
        except TranscodeError as e:
            raise RenderingError(f"Still at {timestamp_seconds:.1f}s failed: {e}") from e

        return self._result(output_path, 0.0)

    async def render_short(
        self,
        source_path: str,
        output_path: str,
        start_seconds: float,
    ) -> RenderResult:
        """
        Render a silent vertical boomerang: segment, reversed copy, concatenated.

        Intermediate files are removed whether or not the chain succeeds.

        Raises:
            RenderingError: If any of the three steps fails
        """
        os.makedirs(os.path.dirname(output_path) or ".", exist_ok=True)
        segment = self.settings.short_segment_seconds
        width = self.settings.target_output_width
        height = self.settings.target_output_height
        stem = os.path.splitext(output_path)[0]
        forward_path = f"{stem}.forward.mp4"
        reverse_path = f"{stem}.reverse.mp4"
        list_path = f"{stem}.concat.txt"

        encode_args = [
            "-c:v", "libx264",
            "-preset", self.settings.ffmpeg_preset,
            "-crf", str(self.settings.short_crf),
            "-pix_fmt", "yuv420p",
            "-an",
        ]

        extract_cmd = [
            self.ffmpeg,
            "-y",
            "-ss", f"{start_seconds:.3f}",
            "-i", source_path,
            "-t", f"{segment:.3f}",
            "-vf", f"scale={width}:{height}:force_original_aspect_ratio=increase,crop={width}:{height}",
            *encode_args,
            forward_path,
        ]
        reverse_cmd = [
            self.ffmpeg,
            "-y",
            "-i", forward_path,
            "-vf", "reverse",
            *encode_args,
            reverse_path,
        ]
        concat_cmd = [
            self.ffmpeg,
            "-y",
            "-f", "concat",
            "-safe", "0",
            "-i", list_path,
            "-c", "copy",
            "-movflags", "+faststart",
            output_path,
        ]

        finished = False
        try:
            await self.runner.run(extract_cmd, expected_output=forward_path)
            await self.runner.run(reverse_cmd, expected_output=reverse_path)
            with open(list_path, "w", encoding="utf-8") as f:
                f.write(_concat_list_entry(forward_path))
                f.write(_concat_list_entry(reverse_path))
            await self.runner.run(concat_cmd, expected_output=output_path)
            finished = True
        except TranscodeError as e:
            raise RenderingError(f"Short at {start_seconds:.1f}s failed: {e}") from e
        finally:
            # Also reached when the batch timeout cancels this short
            for temp_path in (forward_path, reverse_path, list_path):
                _remove_quietly(temp_path)
            if not finished:
                _remove_quietly(output_path)

        return self._result(output_path, segment * 2)

    @staticmethod
    def _result(output_path: str, duration_seconds: float, used_fallback: bool = False) -> RenderResult:
        return RenderResult(
            output_path=output_path,
            file_size_bytes=os.path.getsize(output_path),
            duration_seconds=duration_seconds,
            used_fallback=used_fallback,
        )


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning(f"Failed to remove temp file {path}: {e}")


class RenderingError(Exception):
    """Exception raised when rendering fails."""
    pass
