"""
Gamification constants and the seeded achievement / badge catalog.

Single source of truth for XP amounts, enumerated values, and which
achievement criteria each learner action can satisfy.
"""

from __future__ import annotations

# ── Enumerations ─────────────────────────────────────────────────────

ROLE_STUDENT = "STUDENT"
ROLES = ("STUDENT", "TEACHER", "PARENT", "ADMIN")

XP_SOURCES = (
    "LESSON_COMPLETED",
    "QUIZ_COMPLETED",
    "PERFECT_SCORE",
    "STREAK_BONUS",
    "ACHIEVEMENT_EARNED",
    "DAILY_LOGIN",
    "FIRST_TRY",
    "SPEED_BONUS",
)

STREAK_TYPES = ("DAILY_LOGIN", "DAILY_LESSON", "DAILY_QUIZ", "PERFECT_SCORES")
# Mirrored onto student_profiles.streak / longest_streak
PRIMARY_STREAK = "DAILY_LOGIN"

CRITERIA_TYPES = (
    "LESSONS_COMPLETED",
    "QUIZZES_COMPLETED",
    "PERFECT_SCORES",
    "STREAK_DAYS",
    "TIME_SPENT",
    "XP_EARNED",
    "LEVEL_REACHED",
    "SUBJECT_MASTERY",
)

# Learner action -> criteria types worth re-checking for it
ACTION_CRITERIA: dict[str, tuple[str, ...]] = {
    "lesson_completed": ("LESSONS_COMPLETED", "TIME_SPENT"),
    "quiz_completed": ("QUIZZES_COMPLETED", "PERFECT_SCORES", "SUBJECT_MASTERY"),
    "streak_updated": ("STREAK_DAYS",),
    "xp_earned": ("XP_EARNED", "LEVEL_REACHED"),
}

# Window length in days; None = unbounded
TIMEFRAMES: dict[str, int | None] = {
    "DAILY": 1,
    "WEEKLY": 7,
    "MONTHLY": 30,
    "ALL_TIME": None,
}

LEADERBOARD_TYPES = ("XP", "LEVEL", "STREAK", "QUIZ_SCORE", "LESSONS_COMPLETED")
LEADERBOARD_SCOPES = ("GLOBAL", "CLASS", "GRADE", "SCHOOL", "FRIENDS")

LESSON_COMPLETED_STATUS = "COMPLETED"
PERFECT_SCORE = 100


# ── XP amounts ───────────────────────────────────────────────────────

XP_AWARDS = {
    "lesson_completed": 100,
    "assessment_perfect": 200,
    "assessment_good": 150,
    "assessment_fair": 100,
    "daily_login": 25,
    "streak_bonus": 50,
}

GOOD_SCORE_THRESHOLD = 80
STREAK_BONUS_INTERVAL = 7


def quiz_xp(percentage: float) -> tuple[int, str]:
    """XP and ledger source for a graded quiz."""
    if percentage >= PERFECT_SCORE:
        return XP_AWARDS["assessment_perfect"], "PERFECT_SCORE"
    if percentage >= GOOD_SCORE_THRESHOLD:
        return XP_AWARDS["assessment_good"], "QUIZ_COMPLETED"
    return XP_AWARDS["assessment_fair"], "QUIZ_COMPLETED"


# ── Seeded catalog ───────────────────────────────────────────────────

ACHIEVEMENT_DEFINITIONS: list[dict] = [
    {
        "name": "First Steps",
        "description": "Complete your first lesson",
        "icon": "🎯",
        "category": "LEARNING",
        "type": "MILESTONE",
        "criteria": {"type": "LESSONS_COMPLETED", "target": 1},
        "reward": {"xp": 25},
    },
    {
        "name": "Knowledge Seeker",
        "description": "Complete 10 lessons",
        "icon": "📚",
        "category": "LEARNING",
        "type": "PROGRESS",
        "criteria": {"type": "LESSONS_COMPLETED", "target": 10},
        "reward": {"xp": 100},
    },
    {
        "name": "Perfectionist",
        "description": "Score 100% on a quiz",
        "icon": "⭐",
        "category": "MASTERY",
        "type": "PERFECT",
        "criteria": {"type": "PERFECT_SCORES", "target": 1},
        "reward": {"xp": 50},
    },
    {
        "name": "Streak Warrior",
        "description": "Maintain a 7-day learning streak",
        "icon": "🔥",
        "category": "CONSISTENCY",
        "type": "STREAK",
        "criteria": {"type": "STREAK_DAYS", "target": 7},
        "reward": {"xp": 75},
    },
    {
        "name": "Quiz Whiz",
        "description": "Complete 5 quizzes",
        "icon": "📝",
        "category": "LEARNING",
        "type": "PROGRESS",
        "criteria": {"type": "QUIZZES_COMPLETED", "target": 5},
        "reward": {"xp": 50},
    },
    {
        "name": "Rising Star",
        "description": "Reach level 5",
        "icon": "🌟",
        "category": "SPECIAL",
        "type": "MILESTONE",
        "criteria": {"type": "LEVEL_REACHED", "target": 5},
        "reward": {"xp": 100, "title": "Rising Star"},
    },
    {
        "name": "Math Whiz",
        "description": "Average 90% or better on mathematics quizzes",
        "icon": "🧮",
        "category": "MASTERY",
        "type": "PERFECT",
        "criteria": {"type": "SUBJECT_MASTERY", "target": 90, "subject": "MATHEMATICS"},
        "reward": {"xp": 100, "badges": ["Math Master"]},
    },
]

BADGE_DEFINITIONS: list[dict] = [
    {
        "name": "Math Master",
        "description": "Excel in mathematics",
        "icon": "🧮",
        "color": "GOLD",
        "category": "ACADEMIC",
        "rarity": "RARE",
        "criteria": {"subject": "MATHEMATICS", "averageScore": 90},
    },
    {
        "name": "Science Explorer",
        "description": "Discover the wonders of science",
        "icon": "🔬",
        "color": "SILVER",
        "category": "ACADEMIC",
        "rarity": "UNCOMMON",
        "criteria": {"subject": "SCIENCE", "lessonsCompleted": 5},
    },
]
