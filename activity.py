"""
Learner event flows: login, lesson completion and quiz completion.

Each flow turns one platform event into ledger operations (XP, streaks,
achievements, badges) inside a single transaction, and returns an
ActivityOutcome for the caller to surface as notifications.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from database import to_iso
from gamification import GamificationEngine
from gamification_config import PERFECT_SCORE, STREAK_BONUS_INTERVAL, XP_AWARDS, quiz_xp
from records import Achievement, Badge, Streak, XPAwardResult


@dataclass
class ActivityOutcome:
    xp_awards: list[XPAwardResult] = field(default_factory=list)
    streaks: list[Streak] = field(default_factory=list)
    achievements: list[Achievement] = field(default_factory=list)
    badges: list[Badge] = field(default_factory=list)
    # True when the event was already counted (same-day login, repeated lesson)
    duplicate: bool = False

    @property
    def xp_earned(self) -> int:
        return sum(r.transaction.amount for r in self.xp_awards)

    @property
    def leveled_up(self) -> bool:
        return any(r.leveled_up for r in self.xp_awards)

    @property
    def level(self) -> int | None:
        return self.xp_awards[-1].new_level if self.xp_awards else None

    def to_dict(self) -> dict:
        return {
            "duplicate": self.duplicate,
            "xp_earned": self.xp_earned,
            "leveled_up": self.leveled_up,
            "level": self.level,
            "xp_awards": [r.to_dict() for r in self.xp_awards],
            "streaks": [s.to_dict() for s in self.streaks],
            "achievements": [a.to_dict() for a in self.achievements],
            "badges": [b.to_dict() for b in self.badges],
        }


def record_login(engine: GamificationEngine, student_id: str) -> ActivityOutcome:
    """First login of the day: daily XP, a bonus every 7th consecutive day."""

    def _flow() -> ActivityOutcome:
        engine.require_profile(student_id)
        outcome = ActivityOutcome()
        streak = engine.update_streak(student_id, "DAILY_LOGIN")
        if streak is not None:
            outcome.streaks.append(streak)
        if streak is None or streak.transition == "unchanged":
            outcome.duplicate = True
            return outcome

        today = engine.local_date().isoformat()
        outcome.xp_awards.append(engine.award_xp(
            student_id, XP_AWARDS["daily_login"], "DAILY_LOGIN", today, "Daily login",
        ))
        if streak.current % STREAK_BONUS_INTERVAL == 0:
            outcome.xp_awards.append(engine.award_xp(
                student_id, XP_AWARDS["streak_bonus"], "STREAK_BONUS", today,
                f"{streak.current}-day login streak",
                bonus_reason=f"{streak.current}-day streak",
            ))

        outcome.achievements += engine.check_and_award_achievements(
            student_id, "streak_updated", {"streak": streak.current},
        )
        outcome.achievements += engine.check_and_award_achievements(student_id, "xp_earned")
        return outcome

    return engine.store.run_in_transaction(_flow)


def complete_lesson(engine: GamificationEngine, student_id: str, lesson_id: str,
                    subject: str = "", time_spent: int = 0) -> ActivityOutcome:
    """Record a lesson completion. Completing the same lesson again awards nothing."""
    if time_spent < 0:
        raise ValueError("time_spent cannot be negative")

    def _flow() -> ActivityOutcome:
        engine.require_profile(student_id)
        outcome = ActivityOutcome()
        now = to_iso(engine.now())
        if not engine.stats.record_lesson_completion(student_id, lesson_id, subject, time_spent, now):
            outcome.duplicate = True
            return outcome

        outcome.xp_awards.append(engine.award_xp(
            student_id, XP_AWARDS["lesson_completed"], "LESSON_COMPLETED", lesson_id,
            f"Completed lesson {lesson_id}",
        ))
        streak = engine.update_streak(student_id, "DAILY_LESSON")
        if streak is not None:
            outcome.streaks.append(streak)

        outcome.achievements += engine.check_and_award_achievements(
            student_id, "lesson_completed",
            {"lesson_id": lesson_id, "subject": subject, "time_spent": time_spent},
        )
        outcome.achievements += engine.check_and_award_achievements(student_id, "xp_earned")
        outcome.badges += engine.check_and_award_badges(student_id)
        return outcome

    return engine.store.run_in_transaction(_flow)


def complete_quiz(engine: GamificationEngine, student_id: str, quiz_id: str,
                  subject: str = "", percentage: float = 0) -> ActivityOutcome:
    """Record a graded quiz attempt and award tiered XP."""
    if not 0 <= percentage <= 100:
        raise ValueError(f"percentage must be between 0 and 100, got {percentage}")

    def _flow() -> ActivityOutcome:
        engine.require_profile(student_id)
        outcome = ActivityOutcome()
        engine.stats.record_quiz_attempt(student_id, quiz_id, subject, percentage, to_iso(engine.now()))

        xp, source = quiz_xp(percentage)
        outcome.xp_awards.append(engine.award_xp(
            student_id, xp, source, quiz_id, f"Quiz {quiz_id}: {percentage:g}%",
        ))
        streak_types = ["DAILY_QUIZ"]
        if percentage >= PERFECT_SCORE:
            streak_types.append("PERFECT_SCORES")
        for streak_type in streak_types:
            streak = engine.update_streak(student_id, streak_type)
            if streak is not None:
                outcome.streaks.append(streak)

        outcome.achievements += engine.check_and_award_achievements(
            student_id, "quiz_completed", {"score": percentage, "subject": subject},
        )
        outcome.achievements += engine.check_and_award_achievements(student_id, "xp_earned")
        outcome.badges += engine.check_and_award_badges(student_id)
        return outcome

    return engine.store.run_in_transaction(_flow)
