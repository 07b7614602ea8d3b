"""Tests for levels.py — the XP to level curve."""

from __future__ import annotations

import pytest

from levels import level_for, min_xp_for_level, progress_pct, xp_progress_within_level, xp_to_next_level


class TestLevelFor:
    @pytest.mark.parametrize("xp,level", [
        (0, 1), (99, 1), (100, 2), (399, 2), (400, 3), (899, 3), (900, 4), (1600, 5), (10_000, 11),
    ])
    def test_boundaries(self, xp, level):
        assert level_for(xp) == level

    def test_negative_xp_rejected(self):
        with pytest.raises(ValueError):
            level_for(-1)

    def test_non_decreasing_and_floor_within_bounds(self):
        previous = 1
        for xp in range(0, 20_000, 37):
            level = level_for(xp)
            assert level >= previous
            assert min_xp_for_level(level) <= xp < min_xp_for_level(level + 1)
            previous = level


class TestProgress:
    def test_min_xp_for_level(self):
        assert min_xp_for_level(1) == 0
        assert min_xp_for_level(2) == 100
        assert min_xp_for_level(5) == 1600

    def test_min_xp_rejects_level_zero(self):
        with pytest.raises(ValueError):
            min_xp_for_level(0)

    def test_progress_within_level(self):
        # Level 2 spans 100..399
        assert xp_progress_within_level(150) == (50, 300)
        assert xp_progress_within_level(0) == (0, 100)
        assert xp_progress_within_level(400) == (0, 500)

    def test_xp_to_next_level(self):
        assert xp_to_next_level(150) == 250
        assert xp_to_next_level(0) == 100

    def test_progress_pct(self):
        assert progress_pct(0) == 0
        assert progress_pct(150) == 16
        assert progress_pct(399) == 99

    def test_progress_pct_never_reaches_100_below_next_level(self):
        for level in range(1, 30):
            assert progress_pct(min_xp_for_level(level + 1) - 1) == 99
            assert progress_pct(min_xp_for_level(level)) == 0
