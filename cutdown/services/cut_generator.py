"""
Cut Generator - Produces random, non-overlapping quick-start cut lists.

Clip count and length adapt to the source duration:

    duration        clips                       clip length
    < 30s           max(2, duration // 8)       3s .. min(5, duration/clips - 1)
    30s - 60s       max(3, duration // 15)      5s .. min(10, duration/clips - 1)
    60s - 120s      max(4, duration // 20)      8s .. min(15, duration/clips - 1)
    >= 120s         5                           15s .. 30s
"""

import logging
import math
import random
from dataclasses import dataclass
from typing import Optional

from cutdown.services.timestamp_parser import TimeRange, seconds_to_timestamp

logger = logging.getLogger(__name__)


# Sources shorter than this cannot hold a meaningful quick-start set
MIN_SOURCE_DURATION_SECONDS = 15.0
MAX_PLACEMENT_ATTEMPTS = 50


@dataclass
class CutPlan:
    """Adaptive clip count and duration bounds for a source duration."""

    target_clips: int
    min_clip_seconds: float
    max_clip_seconds: float

    @property
    def required_seconds(self) -> float:
        return self.target_clips * self.min_clip_seconds


def plan_for_duration(total_seconds: float) -> CutPlan:
    """Pick clip count and length bounds from the duration breakpoints."""
    if total_seconds < 30:
        target = max(2, math.floor(total_seconds / 8))
        return CutPlan(target, 3, min(5, total_seconds / target - 1))
    if total_seconds < 60:
        target = max(3, math.floor(total_seconds / 15))
        return CutPlan(target, 5, min(10, total_seconds / target - 1))
    if total_seconds < 120:
        target = max(4, math.floor(total_seconds / 20))
        return CutPlan(target, 8, min(15, total_seconds / target - 1))
    return CutPlan(5, 15, 30)


def generate_random_cuts(
    total_seconds: float,
    rng: Optional[random.Random] = None,
    max_attempts: int = MAX_PLACEMENT_ATTEMPTS,
) -> list[TimeRange]:
    """
    Generate non-overlapping random cuts sized to the source duration.

    Each clip samples a length within the plan bounds and a start that leaves
    room for the clip plus a trailing buffer (10% of the source or 2 seconds,
    whichever is smaller). Candidates overlapping an accepted cut are resampled
    up to max_attempts times.

    Args:
        total_seconds: Known source duration in seconds
        rng: Random source (injectable for deterministic tests)
        max_attempts: Resample budget per clip

    Returns:
        Cuts sorted by start time

    Raises:
        InsufficientDurationError: If the source cannot hold the planned clips
    """
    rng = rng or random.Random()
    plan = plan_for_duration(total_seconds)

    if (
        total_seconds < MIN_SOURCE_DURATION_SECONDS
        or total_seconds < plan.required_seconds
        or plan.max_clip_seconds < plan.min_clip_seconds
    ):
        needed = max(MIN_SOURCE_DURATION_SECONDS, plan.required_seconds)
        raise InsufficientDurationError(
            f"Video too short ({round(total_seconds)}s). Need at least {needed:.0f}s "
            f"for {plan.target_clips} clips of {plan.min_clip_seconds:.0f}s each."
        )

    buffer = min(2.0, total_seconds * 0.1)
    used: list[tuple[float, float]] = []

    for clip_number in range(1, plan.target_clips + 1):
        for _ in range(max_attempts):
            clip_seconds = rng.uniform(plan.min_clip_seconds, plan.max_clip_seconds)
            max_start = max(0.0, total_seconds - clip_seconds - buffer)
            start = rng.uniform(0, max_start)
            end = start + clip_seconds

            if not any(start < used_end and end > used_start for used_start, used_end in used):
                used.append((start, end))
                break
        else:
            logger.warning(
                f"Could not place clip {clip_number} without overlap after {max_attempts} attempts"
            )

    if not used:
        raise InsufficientDurationError(
            f"Could not place any clips in a {round(total_seconds)}s video"
        )

    used.sort(key=lambda r: r[0])
    cuts = [TimeRange(seconds_to_timestamp(start), seconds_to_timestamp(end)) for start, end in used]

    logger.info(
        f"Generated {len(cuts)}/{plan.target_clips} random cuts for {total_seconds:.1f}s source "
        f"({plan.min_clip_seconds:.0f}-{plan.max_clip_seconds:.1f}s each)"
    )
    return cuts


class InsufficientDurationError(Exception):
    """Exception raised when a source is too short for the planned cuts."""
    pass
