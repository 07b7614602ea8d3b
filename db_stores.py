"""
DB-backed store classes for the TeachMe gamification ledger.

Each class wraps one table family and takes an open GamificationStore.
Stores never commit on their own: writes run inside the caller's
``store.transaction()`` so multi-table updates stay atomic.
"""

from __future__ import annotations

import json
from collections.abc import Iterable
from typing import Optional

from database import GamificationStore, to_iso, utcnow
from gamification_config import LESSON_COMPLETED_STATUS, PERFECT_SCORE, ROLE_STUDENT, STREAK_TYPES
from levels import level_for, xp_progress_within_level
from records import (
    Achievement,
    Badge,
    StudentProfile,
    Streak,
    UserAchievement,
    XPTransaction,
)


def _in_clause(column: str, values: Iterable[str]) -> tuple[str, tuple]:
    """Build ``column IN (?, ?, ...)`` with its params. Empty input matches nothing."""
    values = tuple(values)
    if not values:
        return "1 = 0", ()
    return f"{column} IN ({', '.join('?' for _ in values)})", values


# ── Student Profile ──────────────────────────────────────────────────


class StudentProfileDB:
    """Users and their student profiles."""

    def __init__(self, store: GamificationStore):
        self.store = store

    def provision(self, user_id: str, name: str, role: str = ROLE_STUDENT, *,
                  email: Optional[str] = None, school_id: str = "",
                  grade_level: Optional[int] = None, now: Optional[str] = None) -> Optional[StudentProfile]:
        """Create a user; students also get a profile and one zeroed streak per type.

        Returns the new profile, or None for non-student roles.
        """
        now = now or to_iso(utcnow())
        with self.store.transaction():
            self.store.execute(
                "INSERT INTO users (id, name, email, role, school_id, grade_level, is_active, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, 1, ?)",
                (user_id, name, email, role, school_id, grade_level, now),
            )
            if role != ROLE_STUDENT:
                return None
            current, span = xp_progress_within_level(0)
            self.store.execute(
                "INSERT INTO student_profiles (user_id, display_name, total_xp, level, "
                "current_level_xp, next_level_xp, created_at, updated_at) "
                "VALUES (?, ?, 0, ?, ?, ?, ?, ?)",
                (user_id, name, level_for(0), current, span, now, now),
            )
            for streak_type in STREAK_TYPES:
                self.store.execute(
                    "INSERT INTO streaks (student_id, type, current, longest, is_active) "
                    "VALUES (?, ?, 0, 0, 0)",
                    (user_id, streak_type),
                )
        return self.get(user_id)

    def get(self, user_id: str) -> Optional[StudentProfile]:
        row = self.store.execute(
            "SELECT * FROM student_profiles WHERE user_id = ?", (user_id,)
        ).fetchone()
        return self._row_to_profile(row) if row else None

    def user_exists(self, user_id: str = "", email: str = "") -> bool:
        """Whether a user already holds this id or email."""
        row = self.store.execute(
            "SELECT 1 FROM users WHERE id = ? OR (? <> '' AND email = ?)",
            (user_id, email, email),
        ).fetchone()
        return row is not None

    def exists(self, user_id: str) -> bool:
        row = self.store.execute(
            "SELECT 1 FROM student_profiles WHERE user_id = ?", (user_id,)
        ).fetchone()
        return row is not None

    def increment_xp(self, user_id: str, amount: int) -> bool:
        """Atomically add XP. Takes the profile row lock for the rest of the transaction."""
        cur = self.store.execute(
            "UPDATE student_profiles SET total_xp = total_xp + ? WHERE user_id = ?",
            (amount, user_id),
        )
        return cur.rowcount > 0

    def save_level(self, user_id: str, level: int, current_level_xp: int,
                   next_level_xp: int, now: str) -> None:
        self.store.execute(
            "UPDATE student_profiles SET level = ?, current_level_xp = ?, next_level_xp = ?, "
            "updated_at = ? WHERE user_id = ?",
            (level, current_level_xp, next_level_xp, now, user_id),
        )

    def save_streak(self, user_id: str, streak: int, longest_streak: int, now: str) -> None:
        self.store.execute(
            "UPDATE student_profiles SET streak = ?, longest_streak = ?, updated_at = ? "
            "WHERE user_id = ?",
            (streak, longest_streak, now, user_id),
        )

    def clear_streak(self, user_id: str) -> None:
        """Zero the current streak without counting as activity (``updated_at`` is kept)."""
        self.store.execute("UPDATE student_profiles SET streak = 0 WHERE user_id = ?", (user_id,))

    def set_title(self, user_id: str, title: str, now: str) -> None:
        self.store.execute(
            "UPDATE student_profiles SET title = ?, updated_at = ? WHERE user_id = ?",
            (title, now, user_id),
        )

    def deactivate(self, user_id: str) -> bool:
        """Soft-disable the user. Profile and ledger rows are kept."""
        with self.store.transaction():
            cur = self.store.execute("UPDATE users SET is_active = 0 WHERE id = ?", (user_id,))
        return cur.rowcount > 0

    def count_active(self) -> int:
        row = self.store.execute(
            "SELECT COUNT(*) AS cnt FROM student_profiles p JOIN users u ON u.id = p.user_id "
            "WHERE u.is_active = 1"
        ).fetchone()
        return row["cnt"]

    @staticmethod
    def _row_to_profile(r) -> StudentProfile:
        return StudentProfile(
            user_id=r["user_id"],
            display_name=r["display_name"],
            total_xp=r["total_xp"],
            level=r["level"],
            current_level_xp=r["current_level_xp"],
            next_level_xp=r["next_level_xp"],
            streak=r["streak"],
            longest_streak=r["longest_streak"],
            title=r["title"],
            created_at=r["created_at"],
            updated_at=r["updated_at"],
        )


# ── XP Ledger ────────────────────────────────────────────────────────


class XPLedgerDB:
    """Append-only XP transactions."""

    def __init__(self, store: GamificationStore):
        self.store = store

    def append(self, student_id: str, amount: int, base_amount: int, multiplier: float,
               source: str, source_id: str, description: str, bonus_reason: str,
               timestamp: str) -> XPTransaction:
        tx_id = self.store.insert(
            "INSERT INTO xp_transactions (student_id, amount, base_amount, multiplier, source, "
            "source_id, description, bonus_reason, timestamp) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
            (student_id, amount, base_amount, multiplier, source, source_id,
             description, bonus_reason, timestamp),
        )
        return XPTransaction(
            id=tx_id, student_id=student_id, amount=amount, base_amount=base_amount,
            multiplier=multiplier, source=source, source_id=source_id,
            description=description, timestamp=timestamp, bonus_reason=bonus_reason,
        )

    def history(self, student_id: str, limit: int = 20, offset: int = 0) -> list[XPTransaction]:
        rows = self.store.execute(
            "SELECT * FROM xp_transactions WHERE student_id = ? "
            "ORDER BY timestamp DESC, id DESC LIMIT ? OFFSET ?",
            (student_id, limit, offset),
        ).fetchall()
        return [self._row_to_tx(r) for r in rows]

    def count(self, student_id: str) -> int:
        row = self.store.execute(
            "SELECT COUNT(*) AS cnt FROM xp_transactions WHERE student_id = ?", (student_id,)
        ).fetchone()
        return row["cnt"]

    def total(self, student_id: str, since: Optional[str] = None) -> int:
        sql = "SELECT COALESCE(SUM(amount), 0) AS total FROM xp_transactions WHERE student_id = ?"
        params: tuple = (student_id,)
        if since:
            sql += " AND timestamp >= ?"
            params += (since,)
        return int(self.store.execute(sql, params).fetchone()["total"])

    def exists_for_source(self, student_id: str, source: str, source_id: str) -> bool:
        row = self.store.execute(
            "SELECT 1 FROM xp_transactions WHERE student_id = ? AND source = ? AND source_id = ?",
            (student_id, source, source_id),
        ).fetchone()
        return row is not None

    @staticmethod
    def _row_to_tx(r) -> XPTransaction:
        return XPTransaction(
            id=r["id"], student_id=r["student_id"], amount=r["amount"],
            base_amount=r["base_amount"], multiplier=r["multiplier"], source=r["source"],
            source_id=r["source_id"], description=r["description"],
            timestamp=r["timestamp"], bonus_reason=r["bonus_reason"],
        )


# ── Streaks ──────────────────────────────────────────────────────────


class StreakStoreDB:
    def __init__(self, store: GamificationStore):
        self.store = store

    def get(self, student_id: str, streak_type: str) -> Optional[Streak]:
        row = self.store.execute(
            "SELECT * FROM streaks WHERE student_id = ? AND type = ?", (student_id, streak_type)
        ).fetchone()
        return self._row_to_streak(row) if row else None

    def list_for(self, student_id: str) -> list[Streak]:
        rows = self.store.execute(
            "SELECT * FROM streaks WHERE student_id = ? ORDER BY id", (student_id,)
        ).fetchall()
        return [self._row_to_streak(r) for r in rows]

    def save(self, streak: Streak) -> None:
        self.store.execute(
            "UPDATE streaks SET current = ?, longest = ?, last_activity = ?, is_active = ? "
            "WHERE id = ?",
            (streak.current, streak.longest, streak.last_activity, int(streak.is_active), streak.id),
        )

    def stale(self, cutoff: str) -> list[Streak]:
        """Active streaks whose last activity is before ``cutoff``."""
        rows = self.store.execute(
            "SELECT * FROM streaks WHERE is_active = 1 AND last_activity < ?", (cutoff,)
        ).fetchall()
        return [self._row_to_streak(r) for r in rows]

    @staticmethod
    def _row_to_streak(r) -> Streak:
        return Streak(
            id=r["id"], student_id=r["student_id"], type=r["type"], current=r["current"],
            longest=r["longest"], last_activity=r["last_activity"],
            is_active=bool(r["is_active"]),
        )


# ── Achievements ─────────────────────────────────────────────────────


class AchievementCatalogDB:
    """Read-mostly achievement definitions."""

    def __init__(self, store: GamificationStore):
        self.store = store

    def all(self) -> list[Achievement]:
        rows = self.store.execute("SELECT * FROM achievements ORDER BY id").fetchall()
        return [self._row_to_achievement(r) for r in rows]

    def get(self, achievement_id: int) -> Optional[Achievement]:
        row = self.store.execute(
            "SELECT * FROM achievements WHERE id = ?", (achievement_id,)
        ).fetchone()
        return self._row_to_achievement(row) if row else None

    def get_by_name(self, name: str) -> Optional[Achievement]:
        row = self.store.execute("SELECT * FROM achievements WHERE name = ?", (name,)).fetchone()
        return self._row_to_achievement(row) if row else None

    def upsert(self, definition: dict) -> None:
        """Insert a definition, or refresh the one with the same name."""
        self.store.execute(
            "INSERT INTO achievements (name, description, icon, category, type, "
            "criteria, reward, is_secret) VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(name) DO UPDATE SET description = excluded.description, "
            "icon = excluded.icon, category = excluded.category, type = excluded.type, "
            "criteria = excluded.criteria, reward = excluded.reward, is_secret = excluded.is_secret",
            (definition["name"], definition.get("description", ""), definition.get("icon", ""),
             definition.get("category", ""), definition.get("type", ""),
             json.dumps(definition.get("criteria", {})), json.dumps(definition.get("reward", {})),
             int(definition.get("is_secret", False))),
        )

    @staticmethod
    def _row_to_achievement(r) -> Achievement:
        return Achievement(
            id=r["id"], name=r["name"], description=r["description"], icon=r["icon"],
            category=r["category"], type=r["type"], criteria=json.loads(r["criteria"]),
            reward=json.loads(r["reward"]), is_secret=bool(r["is_secret"]),
        )


class UserAchievementStoreDB:
    """Per-student progress against the achievement catalog."""

    def __init__(self, store: GamificationStore):
        self.store = store

    def earned_ids(self, user_id: str) -> set[int]:
        rows = self.store.execute(
            "SELECT achievement_id FROM user_achievements WHERE user_id = ? AND earned_at IS NOT NULL",
            (user_id,),
        ).fetchall()
        return {r["achievement_id"] for r in rows}

    def is_earned(self, user_id: str, achievement_id: int) -> bool:
        row = self.store.execute(
            "SELECT earned_at FROM user_achievements WHERE user_id = ? AND achievement_id = ?",
            (user_id, achievement_id),
        ).fetchone()
        return bool(row and row["earned_at"])

    def mark_earned(self, user_id: str, achievement_id: int, progress: dict, now: str) -> bool:
        """Set earned_at once. Returns False if it was already set."""
        payload = json.dumps(progress)
        self.store.execute(
            "INSERT OR IGNORE INTO user_achievements (user_id, achievement_id, progress, updated_at) "
            "VALUES (?, ?, ?, ?)",
            (user_id, achievement_id, payload, now),
        )
        cur = self.store.execute(
            "UPDATE user_achievements SET earned_at = ?, progress = ?, updated_at = ? "
            "WHERE user_id = ? AND achievement_id = ? AND earned_at IS NULL",
            (now, payload, now, user_id, achievement_id),
        )
        return cur.rowcount > 0

    def record_progress(self, user_id: str, achievement_id: int, progress: dict, now: str) -> None:
        """Upsert partial progress; never touches an earned row."""
        payload = json.dumps(progress)
        self.store.execute(
            "INSERT OR IGNORE INTO user_achievements (user_id, achievement_id, progress, updated_at) "
            "VALUES (?, ?, ?, ?)",
            (user_id, achievement_id, payload, now),
        )
        self.store.execute(
            "UPDATE user_achievements SET progress = ?, updated_at = ? "
            "WHERE user_id = ? AND achievement_id = ? AND earned_at IS NULL",
            (payload, now, user_id, achievement_id),
        )

    def list_for(self, user_id: str) -> list[UserAchievement]:
        rows = self.store.execute(
            "SELECT a.*, ua.progress AS ua_progress, ua.earned_at AS ua_earned_at "
            "FROM user_achievements ua JOIN achievements a ON a.id = ua.achievement_id "
            "WHERE ua.user_id = ? ORDER BY ua.earned_at IS NULL, ua.earned_at DESC, a.id",
            (user_id,),
        ).fetchall()
        return [
            UserAchievement(
                achievement=AchievementCatalogDB._row_to_achievement(r),
                progress=json.loads(r["ua_progress"]),
                earned_at=r["ua_earned_at"],
            )
            for r in rows
        ]


# ── Badges ───────────────────────────────────────────────────────────


class BadgeStoreDB:
    """Badge catalog and per-student grants."""

    def __init__(self, store: GamificationStore):
        self.store = store

    def all(self) -> list[Badge]:
        rows = self.store.execute("SELECT * FROM badges ORDER BY id").fetchall()
        return [self._row_to_badge(r) for r in rows]

    def get_by_name(self, name: str) -> Optional[Badge]:
        row = self.store.execute("SELECT * FROM badges WHERE name = ?", (name,)).fetchone()
        return self._row_to_badge(row) if row else None

    def upsert(self, definition: dict) -> None:
        self.store.execute(
            "INSERT INTO badges (name, description, icon, color, category, rarity, criteria) "
            "VALUES (?, ?, ?, ?, ?, ?, ?) "
            "ON CONFLICT(name) DO UPDATE SET description = excluded.description, "
            "icon = excluded.icon, color = excluded.color, category = excluded.category, "
            "rarity = excluded.rarity, criteria = excluded.criteria",
            (definition["name"], definition.get("description", ""), definition.get("icon", ""),
             definition.get("color", ""), definition.get("category", ""),
             definition.get("rarity", ""), json.dumps(definition.get("criteria", {}))),
        )

    def grant(self, user_id: str, badge_id: int, now: str) -> bool:
        """Grant a badge. Returns False if the student already holds it."""
        cur = self.store.execute(
            "INSERT OR IGNORE INTO user_badges (user_id, badge_id, earned_at) VALUES (?, ?, ?)",
            (user_id, badge_id, now),
        )
        return cur.rowcount > 0

    def earned_ids(self, user_id: str) -> set[int]:
        rows = self.store.execute(
            "SELECT badge_id FROM user_badges WHERE user_id = ?", (user_id,)
        ).fetchall()
        return {r["badge_id"] for r in rows}

    def list_for(self, user_id: str) -> list[Badge]:
        rows = self.store.execute(
            "SELECT b.*, ub.earned_at AS ub_earned_at FROM user_badges ub "
            "JOIN badges b ON b.id = ub.badge_id WHERE ub.user_id = ? "
            "ORDER BY ub.earned_at DESC, b.id",
            (user_id,),
        ).fetchall()
        badges = []
        for r in rows:
            badge = self._row_to_badge(r)
            badge.earned_at = r["ub_earned_at"]
            badges.append(badge)
        return badges

    @staticmethod
    def _row_to_badge(r) -> Badge:
        return Badge(
            id=r["id"], name=r["name"], description=r["description"], icon=r["icon"],
            color=r["color"], category=r["category"], rarity=r["rarity"],
            criteria=json.loads(r["criteria"]),
        )


# ── Activity facts ───────────────────────────────────────────────────


class ActivityStatsDB:
    """Lesson completions and quiz attempts, plus the aggregate counts over them."""

    def __init__(self, store: GamificationStore):
        self.store = store

    def record_lesson_completion(self, student_id: str, lesson_id: str, subject: str,
                                 time_spent: int, now: str) -> bool:
        """Mark a lesson completed. Returns False if it already was."""
        row = self.store.execute(
            "SELECT status FROM lesson_progress WHERE student_id = ? AND lesson_id = ?",
            (student_id, lesson_id),
        ).fetchone()
        if row and row["status"] == LESSON_COMPLETED_STATUS:
            return False
        if row:
            self.store.execute(
                "UPDATE lesson_progress SET status = ?, subject = ?, time_spent = time_spent + ?, "
                "completed_at = ? WHERE student_id = ? AND lesson_id = ?",
                (LESSON_COMPLETED_STATUS, subject, time_spent, now, student_id, lesson_id),
            )
        else:
            self.store.execute(
                "INSERT INTO lesson_progress (student_id, lesson_id, subject, status, time_spent, "
                "completed_at) VALUES (?, ?, ?, ?, ?, ?)",
                (student_id, lesson_id, subject, LESSON_COMPLETED_STATUS, time_spent, now),
            )
        return True

    def record_quiz_attempt(self, student_id: str, quiz_id: str, subject: str,
                            percentage: float, now: str) -> int:
        return self.store.insert(
            "INSERT INTO quiz_attempts (student_id, quiz_id, subject, percentage, completed_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (student_id, quiz_id, subject, percentage, now),
        )

    def _lesson_filter(self, student_id: str, subject: Optional[str], since: Optional[str]):
        sql = "WHERE student_id = ? AND status = ?"
        params: tuple = (student_id, LESSON_COMPLETED_STATUS)
        if subject:
            sql += " AND subject = ?"
            params += (subject,)
        if since:
            sql += " AND completed_at >= ?"
            params += (since,)
        return sql, params

    def _quiz_filter(self, student_id: str, subject: Optional[str], since: Optional[str]):
        sql = "WHERE student_id = ?"
        params: tuple = (student_id,)
        if subject:
            sql += " AND subject = ?"
            params += (subject,)
        if since:
            sql += " AND completed_at >= ?"
            params += (since,)
        return sql, params

    def count_completed_lessons(self, student_id: str, subject: Optional[str] = None,
                                since: Optional[str] = None) -> int:
        where, params = self._lesson_filter(student_id, subject, since)
        row = self.store.execute(f"SELECT COUNT(*) AS cnt FROM lesson_progress {where}", params).fetchone()
        return row["cnt"]

    def total_time_spent(self, student_id: str, subject: Optional[str] = None,
                         since: Optional[str] = None) -> int:
        where, params = self._lesson_filter(student_id, subject, since)
        row = self.store.execute(
            f"SELECT COALESCE(SUM(time_spent), 0) AS total FROM lesson_progress {where}", params
        ).fetchone()
        return int(row["total"])

    def count_quizzes(self, student_id: str, subject: Optional[str] = None,
                      since: Optional[str] = None) -> int:
        where, params = self._quiz_filter(student_id, subject, since)
        row = self.store.execute(f"SELECT COUNT(*) AS cnt FROM quiz_attempts {where}", params).fetchone()
        return row["cnt"]

    def count_perfect_scores(self, student_id: str, subject: Optional[str] = None,
                             since: Optional[str] = None) -> int:
        where, params = self._quiz_filter(student_id, subject, since)
        row = self.store.execute(
            f"SELECT COUNT(*) AS cnt FROM quiz_attempts {where} AND percentage >= ?",
            params + (PERFECT_SCORE,),
        ).fetchone()
        return row["cnt"]

    def average_quiz_score(self, student_id: str, subject: Optional[str] = None,
                           since: Optional[str] = None) -> Optional[float]:
        where, params = self._quiz_filter(student_id, subject, since)
        row = self.store.execute(
            f"SELECT AVG(percentage) AS avg_pct FROM quiz_attempts {where}", params
        ).fetchone()
        return None if row["avg_pct"] is None else float(row["avg_pct"])


# ── Scope membership ─────────────────────────────────────────────────


class MembershipDB:
    """Resolves a leaderboard scope to the set of students it covers."""

    def __init__(self, store: GamificationStore):
        self.store = store

    def candidates(self, scope: str, scope_id: Optional[str] = None) -> Optional[set[str]]:
        """Student ids in scope, or None when the scope is unrestricted (GLOBAL)."""
        if scope == "GLOBAL":
            return None
        if scope_id in (None, ""):
            raise ValueError(f"scope_id is required for {scope} leaderboards")
        if scope == "CLASS":
            rows = self.store.execute(
                "SELECT user_id FROM class_members WHERE class_id = ?", (scope_id,)
            ).fetchall()
        elif scope == "GRADE":
            rows = self.store.execute(
                "SELECT id AS user_id FROM users WHERE grade_level = ?", (int(scope_id),)
            ).fetchall()
        elif scope == "SCHOOL":
            rows = self.store.execute(
                "SELECT id AS user_id FROM users WHERE school_id = ?", (scope_id,)
            ).fetchall()
        elif scope == "FRIENDS":
            rows = self.store.execute(
                "SELECT friend_id AS user_id FROM friendships WHERE user_id = ?", (scope_id,)
            ).fetchall()
            return {r["user_id"] for r in rows} | {scope_id}
        else:
            raise ValueError(f"Unknown leaderboard scope: {scope}")
        return {r["user_id"] for r in rows}

    def create_class(self, class_id: str, name: str = "", school_id: str = "",
                     grade_level: Optional[int] = None) -> None:
        with self.store.transaction():
            self.store.execute(
                "INSERT OR IGNORE INTO classes (id, school_id, grade_level, name) VALUES (?, ?, ?, ?)",
                (class_id, school_id, grade_level, name),
            )

    def add_class_member(self, class_id: str, user_id: str) -> None:
        with self.store.transaction():
            self.store.execute(
                "INSERT OR IGNORE INTO class_members (class_id, user_id) VALUES (?, ?)",
                (class_id, user_id),
            )

    def add_friend(self, user_id: str, friend_id: str) -> None:
        """Friendship is mutual; both directions are stored."""
        now = to_iso(utcnow())
        with self.store.transaction():
            for a, b in ((user_id, friend_id), (friend_id, user_id)):
                self.store.execute(
                    "INSERT OR IGNORE INTO friendships (user_id, friend_id, created_at) VALUES (?, ?, ?)",
                    (a, b, now),
                )


# ── Leaderboards ─────────────────────────────────────────────────────


class LeaderboardDB:
    """Raw score rows per metric, and persisted rank snapshots."""

    def __init__(self, store: GamificationStore):
        self.store = store

    def scores(self, board_type: str, since: Optional[str] = None,
               candidates: Optional[set[str]] = None) -> list[dict]:
        """Unsorted rows of {student_id, display_name, level, score} for active students."""
        params: tuple = ()
        if board_type == "XP" and since:
            sql = (
                "SELECT p.user_id, p.display_name, p.level, SUM(t.amount) AS score "
                "FROM xp_transactions t JOIN student_profiles p ON p.user_id = t.student_id "
                "JOIN users u ON u.id = p.user_id WHERE u.is_active = 1 AND t.timestamp >= ?"
            )
            params += (since,)
            group = " GROUP BY p.user_id, p.display_name, p.level"
        elif board_type in ("XP", "LEVEL", "STREAK"):
            column = {"XP": "p.total_xp", "LEVEL": "p.level", "STREAK": "p.streak"}[board_type]
            sql = (
                f"SELECT p.user_id, p.display_name, p.level, {column} AS score "
                "FROM student_profiles p JOIN users u ON u.id = p.user_id WHERE u.is_active = 1"
            )
            if since:
                sql += " AND p.updated_at >= ?"
                params += (since,)
            group = ""
        elif board_type == "LESSONS_COMPLETED":
            sql = (
                "SELECT p.user_id, p.display_name, p.level, COUNT(l.id) AS score "
                "FROM student_profiles p JOIN users u ON u.id = p.user_id "
                "LEFT JOIN lesson_progress l ON l.student_id = p.user_id AND l.status = ?"
            )
            params += (LESSON_COMPLETED_STATUS,)
            if since:
                sql += " AND l.completed_at >= ?"
                params += (since,)
            sql += " WHERE u.is_active = 1"
            group = " GROUP BY p.user_id, p.display_name, p.level"
            if since:
                group += " HAVING COUNT(l.id) > 0"
        elif board_type == "QUIZ_SCORE":
            sql = (
                "SELECT p.user_id, p.display_name, p.level, AVG(q.percentage) AS score "
                "FROM quiz_attempts q JOIN student_profiles p ON p.user_id = q.student_id "
                "JOIN users u ON u.id = p.user_id WHERE u.is_active = 1"
            )
            if since:
                sql += " AND q.completed_at >= ?"
                params += (since,)
            group = " GROUP BY p.user_id, p.display_name, p.level"
        else:
            raise ValueError(f"Unknown leaderboard type: {board_type}")

        if candidates is not None:
            clause, extra = _in_clause("p.user_id", sorted(candidates))
            sql += f" AND {clause}"
            params += extra

        rows = self.store.execute(sql + group, params).fetchall()
        return [
            {
                "student_id": r["user_id"],
                "display_name": r["display_name"],
                "level": r["level"],
                "score": r["score"] or 0,
            }
            for r in rows
        ]

    def load_snapshot(self, board_key: str) -> tuple[dict[str, int], Optional[str]]:
        """Previous ranks by student and when they were captured."""
        rows = self.store.execute(
            "SELECT user_id, rank, captured_at FROM leaderboard_snapshots WHERE board_key = ?",
            (board_key,),
        ).fetchall()
        if not rows:
            return {}, None
        return {r["user_id"]: r["rank"] for r in rows}, min(r["captured_at"] for r in rows)

    def replace_snapshot(self, board_key: str, ranks: list[tuple[str, int, float]], now: str) -> None:
        with self.store.transaction():
            self.store.execute("DELETE FROM leaderboard_snapshots WHERE board_key = ?", (board_key,))
            for user_id, rank, score in ranks:
                self.store.execute(
                    "INSERT INTO leaderboard_snapshots (board_key, user_id, rank, score, captured_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (board_key, user_id, rank, score, now),
                )
