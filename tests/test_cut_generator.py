"""
Tests for random quick-start cut generation.
"""

import random

import pytest

from cutdown.services.cut_generator import (
    InsufficientDurationError,
    generate_random_cuts,
    plan_for_duration,
)


class TestPlanForDuration:
    """Tests for the adaptive clip plan."""

    def test_short_source(self):
        """Under 30s: at least 2 clips of 3s or more."""
        plan = plan_for_duration(20)
        assert plan.target_clips == 2
        assert plan.min_clip_seconds == 3
        assert plan.max_clip_seconds == 5

    def test_medium_source(self):
        """30-60s: at least 3 clips of 5s or more, capped at 10s."""
        plan = plan_for_duration(45)
        assert plan.target_clips == 3
        assert plan.min_clip_seconds == 5
        assert plan.max_clip_seconds == 10

    def test_long_source(self):
        """Two minutes or more: 5 clips of 15-30s."""
        plan = plan_for_duration(600)
        assert (plan.target_clips, plan.min_clip_seconds, plan.max_clip_seconds) == (5, 15, 30)


class TestGenerateRandomCuts:
    """Tests for generate_random_cuts."""

    def test_too_short_fails(self):
        """A 10-second source is rejected instead of returning a degenerate list."""
        with pytest.raises(InsufficientDurationError):
            generate_random_cuts(10, rng=random.Random(1))

    @pytest.mark.parametrize("duration", [20, 45, 90, 300, 3600])
    def test_sorted_and_non_overlapping(self, duration):
        """Cuts are sorted by start, never overlap and stay inside the source."""
        cuts = generate_random_cuts(duration, rng=random.Random(42))

        assert 1 <= len(cuts) <= plan_for_duration(duration).target_clips
        starts = [c.start_seconds for c in cuts]
        assert starts == sorted(starts)
        for earlier, later in zip(cuts, cuts[1:]):
            assert earlier.end_seconds <= later.start_seconds
        for cut in cuts:
            assert cut.start_seconds < cut.end_seconds <= duration

    def test_deterministic_with_seed(self):
        """The same seed yields the same cut list."""
        first = generate_random_cuts(300, rng=random.Random(7))
        second = generate_random_cuts(300, rng=random.Random(7))
        assert first == second
