"""
Timestamp Parser - Turns free-text cut lists into validated time ranges.

Accepted input is one range per line. Range fields may be separated by a dash,
en-dash, comma or whitespace, and time components by a colon, semicolon or
period:

    0:16-0:35
    1:02:10 – 1:02:40
    0;44, 1.01

Every accepted range is normalized to HH:MM:SS. Validation never raises for bad
input: problems are reported in the error list, advisory notes in the warning
list.
"""

import logging
import math
import re
from dataclasses import dataclass, field
from typing import Optional, Sequence

logger = logging.getLogger(__name__)


RANGE_SEPARATORS = re.compile(r"[-–,\s]+")
TIME_SEPARATORS = re.compile(r"[;.]")
TIME_PATTERN = re.compile(r"^(\d{1,2}):(\d{2})(?::(\d{2}))?$")


@dataclass(frozen=True)
class TimeRange:
    """A validated start/end pair, both normalized to HH:MM:SS."""

    start_time: str
    end_time: str

    @property
    def start_seconds(self) -> float:
        return timestamp_to_seconds(self.start_time)

    @property
    def end_seconds(self) -> float:
        return timestamp_to_seconds(self.end_time)

    @property
    def duration_seconds(self) -> float:
        return self.end_seconds - self.start_seconds


@dataclass
class RangeCandidate:
    """One input line before validation."""

    index: int  # 1-based position among non-blank lines
    source: str
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    format_error: Optional[str] = None


@dataclass
class ValidationResult:
    """Outcome of validating a list of candidates."""

    valid: list[TimeRange] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def timestamp_to_seconds(timestamp: str) -> float:
    """
    Convert an HH:MM:SS or MM:SS timestamp to seconds.

    Raises:
        TimestampFormatError: If the value is not a colon-separated timestamp
    """
    parts = timestamp.strip().split(":")
    try:
        values = [float(part) for part in parts]
    except ValueError:
        raise TimestampFormatError(f"Invalid timestamp: {timestamp!r}")

    if len(values) == 3:
        return values[0] * 3600 + values[1] * 60 + values[2]
    if len(values) == 2:
        return values[0] * 60 + values[1]
    raise TimestampFormatError(f"Invalid timestamp: {timestamp!r}")


def seconds_to_timestamp(seconds: float) -> str:
    """Convert seconds to HH:MM:SS, dropping any fractional part."""
    if seconds < 0:
        raise ValueError(f"Timestamp cannot be negative: {seconds}")

    total = int(math.floor(seconds))
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def normalize_timestamp(raw: str) -> str:
    """
    Normalize one user-entered time to HH:MM:SS.

    M:SS and MM:SS are read as minutes and seconds with zero hours;
    H:MM:SS gets its hour zero-padded.

    Raises:
        TimestampFormatError: If the value does not match a supported layout or
            minutes/seconds are 60 or more
    """
    value = TIME_SEPARATORS.sub(":", raw.strip())
    match = TIME_PATTERN.match(value)
    if not match:
        raise TimestampFormatError(f"unrecognized time {raw.strip()!r}")

    first, second, third = match.groups()
    if third is None:
        hours, minutes, secs = 0, int(first), int(second)
    else:
        hours, minutes, secs = int(first), int(second), int(third)

    if minutes >= 60 or secs >= 60:
        raise TimestampFormatError(f"minutes and seconds must be below 60 in {raw.strip()!r}")

    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def parse_timestamp_text(text: str) -> list[RangeCandidate]:
    """
    Split raw text into one candidate per non-blank line.

    Malformed lines are kept as candidates carrying a format error so that
    validation can report them in input order.
    """
    lines = [line.strip() for line in text.splitlines()]
    lines = [line for line in lines if line]

    candidates = []
    for index, line in enumerate(lines, start=1):
        candidate = RangeCandidate(index=index, source=line)
        parts = [part for part in RANGE_SEPARATORS.split(line) if part.strip()]

        if len(parts) < 2:
            candidate.format_error = "expected a start and an end time"
        else:
            try:
                candidate.start_time = normalize_timestamp(parts[0])
                candidate.end_time = normalize_timestamp(parts[1])
            except TimestampFormatError as e:
                candidate.format_error = str(e)

        candidates.append(candidate)

    return candidates


def validate_candidates(
    candidates: Sequence[RangeCandidate],
    known_duration: Optional[float] = None,
) -> ValidationResult:
    """
    Validate candidates in input order.

    Per candidate, the first failing check wins: malformed format, start not
    before end, end beyond the known duration. Accepted candidates are then
    compared with every earlier accepted candidate for overlap, and checked
    for risky start positions. Overlaps and start-position notes are warnings
    only.

    Args:
        candidates: Output of parse_timestamp_text (or wrapped time ranges)
        known_duration: Source duration in seconds, if probing has finished

    Returns:
        ValidationResult with valid ranges, errors and warnings
    """
    result = ValidationResult()
    accepted: list[tuple[int, float, float]] = []
    duration_known = known_duration is not None and known_duration > 0

    for candidate in candidates:
        label = f"Clip {candidate.index}"

        if candidate.format_error or not candidate.start_time or not candidate.end_time:
            reason = candidate.format_error or "missing start or end time"
            result.errors.append(f'{label}: Invalid format "{candidate.source}" ({reason})')
            continue

        start_seconds = timestamp_to_seconds(candidate.start_time)
        end_seconds = timestamp_to_seconds(candidate.end_time)

        if start_seconds >= end_seconds:
            result.errors.append(f"{label}: Start time must be before end time")
            continue

        if duration_known and end_seconds > known_duration:
            result.errors.append(
                f"{label}: End time {candidate.end_time} exceeds video duration "
                f"{seconds_to_timestamp(known_duration)}"
            )
            continue

        for other_index, other_start, other_end in accepted:
            if start_seconds < other_end and end_seconds > other_start:
                overlap = min(end_seconds, other_end) - max(start_seconds, other_start)
                result.warnings.append(
                    f"{label} overlaps with clip {other_index} by {overlap:.1f} seconds"
                )

        result.warnings.extend(_start_position_warnings(label, candidate.start_time, start_seconds))

        accepted.append((candidate.index, start_seconds, end_seconds))
        result.valid.append(TimeRange(start_time=candidate.start_time, end_time=candidate.end_time))

    logger.debug(
        f"Validated {len(candidates)} candidates: {len(result.valid)} valid, "
        f"{len(result.errors)} errors, {len(result.warnings)} warnings"
    )
    return result


def validate_time_ranges(
    ranges: Sequence[TimeRange],
    known_duration: Optional[float] = None,
) -> ValidationResult:
    """Validate already-structured ranges (e.g. generated cuts)."""
    candidates = [
        RangeCandidate(
            index=i,
            source=f"{r.start_time}-{r.end_time}",
            start_time=r.start_time,
            end_time=r.end_time,
        )
        for i, r in enumerate(ranges, start=1)
    ]
    return validate_candidates(candidates, known_duration)


def parse_and_validate(text: str, known_duration: Optional[float] = None) -> ValidationResult:
    """Parse raw cut text and validate it in one step."""
    return validate_candidates(parse_timestamp_text(text), known_duration)


def _start_position_warnings(label: str, start_time: str, start_seconds: float) -> list[str]:
    warnings = []

    if start_seconds > 0 and float(start_seconds).is_integer():
        warnings.append(
            f"{label}: Starting at exact second ({start_time}) may show black frames. "
            f"It will be nudged forward 0.1s for a cleaner cut."
        )

    if start_seconds < 1:
        warnings.append(
            f"{label}: Very early start time ({start_time}) may be in the fade-in area "
            f"and show black frames."
        )

    if start_seconds == 0:
        warnings.append(
            f"{label}: Starting at 00:00:00 often contains black frames. "
            f"Consider starting at 00:00:01 or later."
        )

    return warnings


class TimestampFormatError(ValueError):
    """Exception raised when a timestamp cannot be parsed."""
    pass
