"""
Gamification engine: XP ledger, streaks, achievements, badges and leaderboards.

One engine wraps one open GamificationStore (and optionally a cache
backend). Construct it per request or per job; it holds no global state.

    with GamificationStore(path) as store:
        engine = GamificationEngine(store)
        result = engine.award_xp("stu-1", 100, "LESSON_COMPLETED", "lesson-1", "Finished fractions")
        if result.leveled_up:
            ...
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Mapping
from datetime import datetime, time, timedelta, timezone
from typing import Any, Optional
from zoneinfo import ZoneInfo

from database import GamificationStore, from_iso, to_iso, utcnow
from db_stores import (
    AchievementCatalogDB,
    ActivityStatsDB,
    BadgeStoreDB,
    LeaderboardDB,
    MembershipDB,
    StreakStoreDB,
    StudentProfileDB,
    UserAchievementStoreDB,
    XPLedgerDB,
)
from errors import CriteriaEvaluationError, InvalidAmount, ProfileNotFound
from gamification_config import (
    ACTION_CRITERIA,
    CRITERIA_TYPES,
    LEADERBOARD_SCOPES,
    LEADERBOARD_TYPES,
    PERFECT_SCORE,
    PRIMARY_STREAK,
    STREAK_TYPES,
    TIMEFRAMES,
    XP_SOURCES,
)
from levels import level_for, progress_pct, xp_progress_within_level, xp_to_next_level
from records import (
    Achievement,
    Badge,
    LeaderboardEntry,
    RankChange,
    Streak,
    UserAchievement,
    XPAwardResult,
    XPTransaction,
)

logger = logging.getLogger(__name__)

GENERATION_KEY = "leaderboard:generation"
DEFAULT_SNAPSHOT_INTERVAL = 86400


def board_key(board_type: str, scope: str, scope_id: Optional[str], timeframe: str) -> str:
    """Identity of one leaderboard, used for snapshots and cache keys."""
    return f"{board_type}:{scope}:{scope_id or ''}:{timeframe}"


class GamificationEngine:
    def __init__(self, store: GamificationStore, cache=None, *,
                 clock: Callable[[], datetime] = utcnow, streak_timezone: str = "UTC",
                 snapshot_interval: int = DEFAULT_SNAPSHOT_INTERVAL, cache_ttl: int = 60):
        self.store = store
        self.cache = cache
        self.clock = clock
        self.tz = ZoneInfo(streak_timezone)
        self.snapshot_interval = snapshot_interval
        self.cache_ttl = cache_ttl

        self.profiles = StudentProfileDB(store)
        self.ledger = XPLedgerDB(store)
        self.streaks = StreakStoreDB(store)
        self.catalog = AchievementCatalogDB(store)
        self.user_achievements = UserAchievementStoreDB(store)
        self.badges = BadgeStoreDB(store)
        self.stats = ActivityStatsDB(store)
        self.membership = MembershipDB(store)
        self.leaderboards = LeaderboardDB(store)

    @classmethod
    def from_config(cls, store: GamificationStore, config: Mapping[str, Any],
                    cache=None) -> GamificationEngine:
        return cls(
            store,
            cache,
            streak_timezone=config.get("STREAK_TIMEZONE", "UTC"),
            snapshot_interval=int(config.get("LEADERBOARD_SNAPSHOT_INTERVAL", DEFAULT_SNAPSHOT_INTERVAL)),
            cache_ttl=int(config.get("LEADERBOARD_CACHE_TTL", 60)),
        )

    # --- Clock ---
    def now(self) -> datetime:
        dt = self.clock()
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return dt

    def local_date(self, dt: Optional[datetime] = None):
        """Calendar date in the streak timezone."""
        return (dt or self.now()).astimezone(self.tz).date()

    def _window_start(self, timeframe: Optional[str]) -> Optional[str]:
        if timeframe is None:
            return None
        if timeframe not in TIMEFRAMES:
            raise ValueError(f"Unknown timeframe: {timeframe}")
        days = TIMEFRAMES[timeframe]
        if days is None:
            return None
        return to_iso(self.now() - timedelta(days=days))

    def require_profile(self, student_id: str) -> None:
        if not self.profiles.exists(student_id):
            raise ProfileNotFound(student_id)

    def deactivate_student(self, student_id: str) -> bool:
        """Hide a user from leaderboards. Profile and ledger are kept."""
        if not self.profiles.deactivate(student_id):
            return False
        self._invalidate_leaderboards()
        logger.info("Deactivated user %s", student_id)
        return True

    # ── XP Ledger ────────────────────────────────────────────────────

    def award_xp(self, student_id: str, amount: int, source: str, source_id: str = "",
                 description: str = "", multiplier: float = 1.0,
                 bonus_reason: str = "") -> XPAwardResult:
        """Grant XP, append it to the ledger and recompute the level, atomically.

        Raises InvalidAmount for non-positive grants and ProfileNotFound for
        unknown students; neither writes anything.
        """
        if source not in XP_SOURCES:
            raise ValueError(f"Unknown XP source: {source}")
        if amount <= 0:
            raise InvalidAmount(f"XP amount must be positive, got {amount}")
        if not math.isfinite(multiplier) or multiplier <= 0:
            raise InvalidAmount(f"XP multiplier must be a positive finite number, got {multiplier}")
        scaled = int(round(amount * multiplier))
        if scaled <= 0:
            raise InvalidAmount(f"Scaled XP amount must be positive, got {scaled}")

        try:
            result = self.store.run_in_transaction(
                self._apply_xp, student_id, scaled, amount, multiplier, source,
                str(source_id), description, bonus_reason,
            )
        except ProfileNotFound:
            logger.warning("award_xp: no profile for student=%s source=%s", student_id, source)
            raise
        except Exception:
            logger.exception("award_xp failed for student=%s source=%s amount=%s",
                             student_id, source, scaled)
            raise

        self._invalidate_leaderboards()
        if result.leveled_up:
            logger.info("Student %s leveled up %d -> %d (total_xp=%d)",
                        student_id, result.old_level, result.new_level, result.total_xp)
        return result

    def _apply_xp(self, student_id: str, scaled: int, base_amount: int, multiplier: float,
                  source: str, source_id: str, description: str,
                  bonus_reason: str) -> XPAwardResult:
        # The increment takes the profile row lock before anything is read
        if not self.profiles.increment_xp(student_id, scaled):
            raise ProfileNotFound(student_id)
        profile = self.profiles.get(student_id)
        old_level = profile.level
        now = to_iso(self.now())

        tx = self.ledger.append(
            student_id, scaled, base_amount, multiplier, source, source_id,
            description, bonus_reason, now,
        )
        new_level = level_for(profile.total_xp)
        current, span = xp_progress_within_level(profile.total_xp)
        self.profiles.save_level(student_id, new_level, current, span, now)

        return XPAwardResult(
            transaction=tx,
            leveled_up=new_level > old_level,
            new_level=new_level,
            old_level=old_level,
            total_xp=profile.total_xp,
        )

    def ledger_total(self, student_id: str) -> int:
        """Sum of all ledger rows; equals profile.total_xp."""
        return self.ledger.total(student_id)

    def xp_history(self, student_id: str, limit: int = 20, offset: int = 0) -> list[XPTransaction]:
        self.require_profile(student_id)
        return self.ledger.history(student_id, limit, offset)

    # ── Streaks ──────────────────────────────────────────────────────

    def update_streak(self, student_id: str, streak_type: str) -> Optional[Streak]:
        """Advance, reset or leave a streak based on calendar days since its last activity.

        Returns None when the student has no streak of that type.
        """
        if streak_type not in STREAK_TYPES:
            raise ValueError(f"Unknown streak type: {streak_type}")
        try:
            streak = self.store.run_in_transaction(self._apply_streak, student_id, streak_type)
        except Exception:
            logger.exception("update_streak failed for student=%s type=%s", student_id, streak_type)
            raise

        if streak is not None and streak.transition != "unchanged":
            self._invalidate_leaderboards()
            logger.debug("Streak %s for student=%s %s -> %d",
                         streak_type, student_id, streak.transition, streak.current)
        return streak

    def _apply_streak(self, student_id: str, streak_type: str) -> Optional[Streak]:
        streak = self.streaks.get(student_id, streak_type)
        if streak is None:
            return None

        now = self.now()
        if streak.last_activity is None:
            streak.current = 1
            streak.transition = "started"
        else:
            gap = (self.local_date(now) - self.local_date(from_iso(streak.last_activity))).days
            if gap <= 0:
                streak.transition = "unchanged"
                return streak
            if gap == 1:
                streak.current += 1
                streak.transition = "continued"
            else:
                streak.current = 1
                streak.transition = "reset"

        streak.longest = max(streak.longest, streak.current)
        streak.last_activity = to_iso(now)
        streak.is_active = True
        self.streaks.save(streak)
        if streak_type == PRIMARY_STREAK:
            self.profiles.save_streak(student_id, streak.current, streak.longest, streak.last_activity)
        return streak

    def streaks_for(self, student_id: str) -> list[Streak]:
        self.require_profile(student_id)
        return self.streaks.list_for(student_id)

    def expire_streaks(self, now: Optional[datetime] = None) -> list[Streak]:
        """Zero out active streaks with no activity since the start of yesterday.

        ``longest`` is kept. Returns the streaks that were expired.
        """
        now = now or self.now()
        yesterday = self.local_date(now) - timedelta(days=1)
        cutoff = to_iso(datetime.combine(yesterday, time.min, tzinfo=self.tz))

        def _expire() -> list[Streak]:
            expired = self.streaks.stale(cutoff)
            for streak in expired:
                streak.current = 0
                streak.is_active = False
                streak.transition = "reset"
                self.streaks.save(streak)
                if streak.type == PRIMARY_STREAK:
                    self.profiles.clear_streak(streak.student_id)
            return expired

        expired = self.store.run_in_transaction(_expire)
        if expired:
            self._invalidate_leaderboards()
            logger.info("Expired %d streaks inactive since before %s", len(expired), cutoff)
        return expired

    # ── Achievements ─────────────────────────────────────────────────

    def check_and_award_achievements(self, student_id: str, action: str,
                                     data: Optional[Mapping[str, Any]] = None) -> list[Achievement]:
        """Evaluate the achievements relevant to ``action`` and grant any newly met.

        Returns the achievements earned by this call. A broken criterion is
        logged and skipped; the rest of the catalog is still evaluated.
        """
        relevant = ACTION_CRITERIA.get(action)
        if relevant is None:
            raise ValueError(f"Unknown action: {action}")
        self.require_profile(student_id)
        data = data or {}

        already_earned = self.user_achievements.earned_ids(student_id)
        newly_earned: list[Achievement] = []
        for achievement in self.catalog.all():
            if achievement.id in already_earned:
                continue
            criteria_type = achievement.criteria.get("type")
            try:
                if criteria_type not in CRITERIA_TYPES:
                    raise CriteriaEvaluationError(f"unsupported criteria type {criteria_type!r}")
                if criteria_type not in relevant:
                    continue
                target = self._criteria_target(achievement)
                current = self._criteria_value(student_id, achievement, data)
            except CriteriaEvaluationError as e:
                logger.warning("Skipping achievement %r for student=%s action=%s: %s",
                               achievement.name, student_id, action, e)
                continue
            if current is None:
                continue

            if current >= target:
                granted = self.store.run_in_transaction(
                    self._grant_achievement, student_id, achievement, target,
                )
                if granted:
                    newly_earned.append(achievement)
                    logger.info("Student %s earned achievement %r", student_id, achievement.name)
            else:
                progress = {
                    "current": round(current, 1) if isinstance(current, float) else current,
                    "target": target,
                    "percentage": min(99, int(current * 100 // target)),
                }
                self.store.run_in_transaction(
                    self.user_achievements.record_progress,
                    student_id, achievement.id, progress, to_iso(self.now()),
                )
        return newly_earned

    @staticmethod
    def _criteria_target(achievement: Achievement) -> float:
        target = achievement.criteria.get("target")
        if isinstance(target, bool) or not isinstance(target, (int, float)) or target <= 0:
            raise CriteriaEvaluationError(f"invalid target {target!r}")
        return target

    @staticmethod
    def _event_number(data: Mapping[str, Any], key: str) -> Optional[float]:
        """Numeric event value from ``data``, None when absent."""
        if key not in data:
            return None
        value = data[key]
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not math.isfinite(value):
            raise CriteriaEvaluationError(f"event {key} must be a number, got {value!r}")
        return value

    def _criteria_value(self, student_id: str, achievement: Achievement,
                        data: Mapping[str, Any]) -> Optional[float]:
        """Current value of the achievement's metric, or None when this event cannot count."""
        criteria = achievement.criteria
        criteria_type = criteria["type"]
        subject = criteria.get("subject")
        timeframe = criteria.get("timeframe")
        if timeframe is not None and timeframe not in TIMEFRAMES:
            raise CriteriaEvaluationError(f"unsupported timeframe {timeframe!r}")
        since = self._window_start(timeframe)

        if criteria_type == "LESSONS_COMPLETED":
            return self.stats.count_completed_lessons(student_id, subject, since)
        if criteria_type == "TIME_SPENT":
            return self.stats.total_time_spent(student_id, subject, since)
        if criteria_type == "QUIZZES_COMPLETED":
            return self.stats.count_quizzes(student_id, subject, since)
        if criteria_type == "PERFECT_SCORES":
            score = self._event_number(data, "score")
            if score is not None and score < PERFECT_SCORE:
                return None
            return self.stats.count_perfect_scores(student_id, subject, since)
        if criteria_type == "SUBJECT_MASTERY":
            if not subject:
                raise CriteriaEvaluationError("SUBJECT_MASTERY requires a subject")
            average = self.stats.average_quiz_score(student_id, subject, since)
            return 0 if average is None else average
        if criteria_type == "STREAK_DAYS":
            streak = self._event_number(data, "streak")
            if streak is not None:
                return int(streak)
            return self.profiles.get(student_id).streak
        if criteria_type == "XP_EARNED":
            if since:
                return self.ledger.total(student_id, since)
            return self.profiles.get(student_id).total_xp
        if criteria_type == "LEVEL_REACHED":
            return self.profiles.get(student_id).level
        raise CriteriaEvaluationError(f"no evaluator for {criteria_type!r}")

    def _grant_achievement(self, student_id: str, achievement: Achievement, target: float) -> bool:
        """Mark earned and hand out the reward. Runs inside the caller's transaction."""
        now = to_iso(self.now())
        progress = {"current": target, "target": target, "percentage": 100}
        if not self.user_achievements.mark_earned(student_id, achievement.id, progress, now):
            return False

        reward = achievement.reward or {}
        xp = reward.get("xp", 0)
        if xp:
            self.award_xp(
                student_id, xp, "ACHIEVEMENT_EARNED", str(achievement.id),
                f"Achievement earned: {achievement.name}",
            )
        for badge_name in reward.get("badges", []):
            badge = self.badges.get_by_name(badge_name)
            if badge is None:
                logger.warning("Achievement %r rewards unknown badge %r", achievement.name, badge_name)
                continue
            if self.badges.grant(student_id, badge.id, now):
                logger.info("Student %s earned badge %r", student_id, badge.name)
        if reward.get("title"):
            self.profiles.set_title(student_id, reward["title"], now)
        return True

    def achievements_for(self, student_id: str) -> list[UserAchievement]:
        """Earned and in-progress achievements, earned first."""
        self.require_profile(student_id)
        return self.user_achievements.list_for(student_id)

    # ── Badges ───────────────────────────────────────────────────────

    def check_and_award_badges(self, student_id: str) -> list[Badge]:
        self.require_profile(student_id)
        held = self.badges.earned_ids(student_id)
        granted: list[Badge] = []
        for badge in self.badges.all():
            if badge.id in held:
                continue
            try:
                qualifies = self._badge_qualifies(student_id, badge)
            except CriteriaEvaluationError as e:
                logger.warning("Skipping badge %r for student=%s: %s", badge.name, student_id, e)
                continue
            if not qualifies:
                continue
            now = to_iso(self.now())
            if self.store.run_in_transaction(self.badges.grant, student_id, badge.id, now):
                badge.earned_at = now
                granted.append(badge)
                logger.info("Student %s earned badge %r", student_id, badge.name)
        return granted

    def _badge_qualifies(self, student_id: str, badge: Badge) -> bool:
        criteria = dict(badge.criteria)
        subject = criteria.pop("subject", None)
        if not criteria:
            # Award-only badge, granted through achievement rewards
            return False
        unknown = set(criteria) - {"lessonsCompleted", "averageScore"}
        if unknown:
            raise CriteriaEvaluationError(f"unsupported badge criteria {sorted(unknown)}")

        if "lessonsCompleted" in criteria:
            if self.stats.count_completed_lessons(student_id, subject) < criteria["lessonsCompleted"]:
                return False
        if "averageScore" in criteria:
            average = self.stats.average_quiz_score(student_id, subject)
            if average is None or average < criteria["averageScore"]:
                return False
        return True

    def award_badge(self, student_id: str, badge_name: str) -> Optional[Badge]:
        """Grant a badge by name. Returns None if the student already holds it."""
        badge = self.badges.get_by_name(badge_name)
        if badge is None:
            raise ValueError(f"Unknown badge: {badge_name}")
        self.require_profile(student_id)
        now = to_iso(self.now())
        if not self.store.run_in_transaction(self.badges.grant, student_id, badge.id, now):
            return None
        badge.earned_at = now
        logger.info("Student %s earned badge %r", student_id, badge.name)
        return badge

    def badges_for(self, student_id: str) -> list[Badge]:
        self.require_profile(student_id)
        return self.badges.list_for(student_id)

    # ── Leaderboards ─────────────────────────────────────────────────

    def get_leaderboard(self, board_type: str = "XP", scope: str = "GLOBAL",
                        timeframe: str = "ALL_TIME", limit: int = 10,
                        scope_id: Optional[str] = None) -> list[LeaderboardEntry]:
        """Top ``limit`` students for a metric, scope and time window.

        Ties are broken by student id so repeated calls give the same order.
        """
        if limit < 1:
            raise ValueError("limit must be at least 1")
        return self._ranked(board_type, scope, timeframe, scope_id)[:limit]

    def get_student_rank(self, student_id: str, board_type: str = "XP", scope: str = "GLOBAL",
                         timeframe: str = "ALL_TIME", scope_id: Optional[str] = None) -> dict:
        self.require_profile(student_id)
        entries = self._ranked(board_type, scope, timeframe, scope_id)
        total = len(entries)
        for entry in entries:
            if entry.student_id == student_id:
                return {
                    "rank": entry.rank,
                    "total_students": total,
                    "percentile": round(100 * (total - entry.rank + 1) / total, 1),
                    "score": entry.score,
                    "change": {"direction": entry.change.direction,
                               "positions": entry.change.positions},
                }
        return {"rank": None, "total_students": total, "percentile": None, "score": 0, "change": None}

    def _ranked(self, board_type: str, scope: str, timeframe: str,
                scope_id: Optional[str]) -> list[LeaderboardEntry]:
        if board_type not in LEADERBOARD_TYPES:
            raise ValueError(f"Unknown leaderboard type: {board_type}")
        if scope not in LEADERBOARD_SCOPES:
            raise ValueError(f"Unknown leaderboard scope: {scope}")
        if timeframe not in TIMEFRAMES:
            raise ValueError(f"Unknown timeframe: {timeframe}")

        key = board_key(board_type, scope, scope_id, timeframe)
        cache_key = None
        if self.cache is not None:
            cache_key = f"leaderboard:{self._generation()}:{key}"
            cached = self.cache.get(cache_key)
            if cached is not None:
                return [LeaderboardEntry.from_dict(d) for d in cached]

        candidates = self.membership.candidates(scope, scope_id)
        rows = self.leaderboards.scores(board_type, self._window_start(timeframe), candidates)
        if board_type == "QUIZ_SCORE":
            for row in rows:
                row["score"] = round(float(row["score"]), 1)
        rows.sort(key=lambda r: (-r["score"], r["student_id"]))

        entries = [
            LeaderboardEntry(
                rank=position,
                student_id=row["student_id"],
                display_name=row["display_name"],
                score=row["score"],
                level=row["level"],
            )
            for position, row in enumerate(rows, start=1)
        ]
        self._apply_rank_changes(key, entries)

        if cache_key is not None:
            self.cache.set(cache_key, [e.to_dict() for e in entries], ttl=self.cache_ttl)
        return entries

    def _apply_rank_changes(self, key: str, entries: list[LeaderboardEntry]) -> None:
        previous, captured_at = self.leaderboards.load_snapshot(key)
        for entry in entries:
            old_rank = previous.get(entry.student_id)
            if old_rank is None:
                entry.change = RankChange("new", 0)
            elif old_rank > entry.rank:
                entry.change = RankChange("up", old_rank - entry.rank)
            elif old_rank < entry.rank:
                entry.change = RankChange("down", entry.rank - old_rank)
            else:
                entry.change = RankChange("same", 0)

        now = self.now()
        due = captured_at is None or (
            now - from_iso(captured_at) >= timedelta(seconds=self.snapshot_interval)
        )
        if due and entries:
            self.store.run_in_transaction(
                self.leaderboards.replace_snapshot,
                key, [(e.student_id, e.rank, e.score) for e in entries], to_iso(now),
            )

    def _generation(self) -> int:
        return int(self.cache.get(GENERATION_KEY) or 0)

    def _invalidate_leaderboards(self) -> None:
        """Bump the board generation once the enclosing transaction commits."""
        if self.cache is not None:
            self.store.call_on_commit(self._bump_generation)

    def _bump_generation(self) -> None:
        self.cache.incr(GENERATION_KEY)

    # ── Summary ──────────────────────────────────────────────────────

    def get_summary(self, student_id: str) -> dict:
        """Everything a dashboard needs about one student's progress."""
        profile = self.profiles.get(student_id)
        if profile is None:
            raise ProfileNotFound(student_id)
        week_start = self._window_start("WEEKLY")
        earned = [ua for ua in self.user_achievements.list_for(student_id) if ua.earned]

        return {
            "student_id": profile.user_id,
            "display_name": profile.display_name,
            "title": profile.title,
            "level": profile.level,
            "xp": profile.total_xp,
            "current_level_xp": profile.current_level_xp,
            "next_level_xp": profile.next_level_xp,
            "progress_pct": progress_pct(profile.total_xp),
            "xp_to_next_level": xp_to_next_level(profile.total_xp),
            "streak": profile.streak,
            "longest_streak": profile.longest_streak,
            "recent_badges": [b.to_dict() for b in self.badges.list_for(student_id)[:5]],
            "recent_achievements": [ua.to_dict() for ua in earned[:5]],
            "rank": self.get_student_rank(student_id)["rank"],
            "weekly_progress": {
                "xp_earned": self.ledger.total(student_id, week_start),
                "lessons_completed": self.stats.count_completed_lessons(student_id, since=week_start),
                "quizzes_completed": self.stats.count_quizzes(student_id, since=week_start),
                "streak_days": profile.streak,
            },
        }
