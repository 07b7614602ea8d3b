"""
Plain records returned by the stores and the gamification engine.

Timestamps are ISO-8601 UTC strings, as persisted.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Optional


@dataclass
class StudentProfile:
    user_id: str
    display_name: str
    total_xp: int = 0
    level: int = 1
    current_level_xp: int = 0
    next_level_xp: int = 100
    streak: int = 0
    longest_streak: int = 0
    title: str = ""
    created_at: str = ""
    updated_at: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class XPTransaction:
    id: int
    student_id: str
    amount: int
    base_amount: int
    multiplier: float
    source: str
    source_id: str
    description: str
    timestamp: str
    bonus_reason: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class XPAwardResult:
    transaction: XPTransaction
    leveled_up: bool
    new_level: int
    old_level: int
    total_xp: int

    def to_dict(self) -> dict:
        return {
            "transaction": self.transaction.to_dict(),
            "leveled_up": self.leveled_up,
            "new_level": self.new_level,
            "old_level": self.old_level,
            "total_xp": self.total_xp,
        }


@dataclass
class Streak:
    id: int
    student_id: str
    type: str
    current: int = 0
    longest: int = 0
    last_activity: Optional[str] = None
    is_active: bool = False
    # Not persisted: what the last update did ("unchanged", "started", "continued", "reset")
    transition: str = "unchanged"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Achievement:
    id: int
    name: str
    description: str = ""
    icon: str = ""
    category: str = ""
    type: str = ""
    criteria: dict = field(default_factory=dict)
    reward: dict = field(default_factory=dict)
    is_secret: bool = False

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class UserAchievement:
    achievement: Achievement
    progress: dict = field(default_factory=dict)
    earned_at: Optional[str] = None

    @property
    def earned(self) -> bool:
        return self.earned_at is not None

    def to_dict(self) -> dict:
        return {
            **self.achievement.to_dict(),
            "progress": self.progress,
            "earned_at": self.earned_at,
        }


@dataclass
class Badge:
    id: int
    name: str
    description: str = ""
    icon: str = ""
    color: str = ""
    category: str = ""
    rarity: str = ""
    criteria: dict = field(default_factory=dict)
    earned_at: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class RankChange:
    direction: str = "new"  # up | down | same | new
    positions: int = 0


@dataclass
class LeaderboardEntry:
    rank: int
    student_id: str
    display_name: str
    score: float
    level: int
    change: RankChange = field(default_factory=RankChange)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> LeaderboardEntry:
        return cls(
            rank=data["rank"],
            student_id=data["student_id"],
            display_name=data["display_name"],
            score=data["score"],
            level=data["level"],
            change=RankChange(**data.get("change", {})),
        )
