"""
Level curve for the XP ledger.

Level = floor(sqrt(total_xp / 100)) + 1, so level n starts at 100 * (n - 1)^2 XP:

    level 1:    0 XP
    level 2:  100 XP
    level 3:  400 XP
    level 4:  900 XP

Integer square roots keep the curve exact at every boundary.
"""

from __future__ import annotations

import math

XP_PER_LEVEL_UNIT = 100


def level_for(total_xp: int) -> int:
    """Level reached with ``total_xp`` cumulative XP (always >= 1)."""
    if total_xp < 0:
        raise ValueError(f"XP cannot be negative: {total_xp}")
    return math.isqrt(total_xp // XP_PER_LEVEL_UNIT) + 1


def min_xp_for_level(level: int) -> int:
    """Cumulative XP at which ``level`` begins."""
    if level < 1:
        raise ValueError(f"Level must be >= 1: {level}")
    return (level - 1) ** 2 * XP_PER_LEVEL_UNIT


def xp_progress_within_level(total_xp: int) -> tuple[int, int]:
    """Return (current_level_xp, next_level_xp).

    ``current_level_xp`` is the XP earned past the level's floor and
    ``next_level_xp`` is the XP span of the whole level.
    """
    level = level_for(total_xp)
    floor_xp = min_xp_for_level(level)
    return total_xp - floor_xp, min_xp_for_level(level + 1) - floor_xp


def xp_to_next_level(total_xp: int) -> int:
    current, span = xp_progress_within_level(total_xp)
    return span - current


def progress_pct(total_xp: int) -> int:
    """Percentage progress through the current level, 0-99."""
    current, span = xp_progress_within_level(total_xp)
    return current * 100 // span
