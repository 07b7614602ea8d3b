"""Tests for streak tracking."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest

from cache_backend import InMemoryCache
from gamification import GamificationEngine


class TestUpdateStreak:
    def test_first_activity_starts_streak(self, engine, student):
        streak = engine.update_streak("stu-1", "DAILY_LOGIN")
        assert streak.transition == "started"
        assert streak.current == 1
        assert streak.longest == 1
        assert streak.is_active is True
        assert streak.last_activity.startswith("2026-03-10")

    def test_same_day_is_idempotent(self, engine, student, clock):
        engine.update_streak("stu-1", "DAILY_LOGIN")
        clock.advance(hours=5)
        streak = engine.update_streak("stu-1", "DAILY_LOGIN")
        assert streak.transition == "unchanged"
        assert streak.current == 1
        assert streak.longest == 1
        # last_activity keeps the first event of the day
        assert streak.last_activity.startswith("2026-03-10T12:00")

    def test_next_day_continues(self, engine, student, clock):
        engine.update_streak("stu-1", "DAILY_LOGIN")
        clock.advance(days=1)
        streak = engine.update_streak("stu-1", "DAILY_LOGIN")
        assert streak.transition == "continued"
        assert streak.current == 2
        assert streak.longest == 2

    def test_calendar_day_not_24_hours(self, engine, student, clock):
        clock.current = datetime(2026, 3, 10, 23, 30, tzinfo=timezone.utc)
        engine.update_streak("stu-1", "DAILY_LOGIN")
        clock.advance(hours=1)  # 00:30 next day
        streak = engine.update_streak("stu-1", "DAILY_LOGIN")
        assert streak.transition == "continued"
        assert streak.current == 2

    def test_gap_resets_but_keeps_longest(self, engine, student, clock):
        for _ in range(3):
            engine.update_streak("stu-1", "DAILY_LOGIN")
            clock.advance(days=1)
        clock.advance(days=2)
        streak = engine.update_streak("stu-1", "DAILY_LOGIN")
        assert streak.transition == "reset"
        assert streak.current == 1
        assert streak.longest == 3

    def test_primary_streak_mirrors_to_profile(self, engine, student, clock):
        for _ in range(4):
            engine.update_streak("stu-1", "DAILY_LOGIN")
            clock.advance(days=1)
        profile = engine.profiles.get("stu-1")
        row = engine.streaks.get("stu-1", "DAILY_LOGIN")
        assert profile.streak == row.current == 4
        assert profile.longest_streak == row.longest == 4
        assert profile.longest_streak >= profile.streak

    def test_other_streaks_do_not_touch_profile(self, engine, student):
        engine.update_streak("stu-1", "DAILY_QUIZ")
        profile = engine.profiles.get("stu-1")
        assert profile.streak == 0
        assert engine.streaks.get("stu-1", "DAILY_QUIZ").current == 1

    def test_missing_row_returns_none(self, engine, make_student):
        make_student("t-1", "Mr Lee", role="TEACHER")
        assert engine.update_streak("t-1", "DAILY_LOGIN") is None

    def test_unknown_type(self, engine, student):
        with pytest.raises(ValueError):
            engine.update_streak("stu-1", "HOURLY_NAP")

    def test_streak_days_follow_configured_timezone(self, store, student, clock):
        engine = GamificationEngine(store, InMemoryCache(), clock=clock,
                                    streak_timezone="America/New_York")
        # 23:00 on the 9th in New York
        clock.current = datetime(2026, 3, 10, 3, 0, tzinfo=timezone.utc)
        engine.update_streak("stu-1", "DAILY_LOGIN")
        # 01:00 on the 10th in New York, still the 10th in UTC
        clock.advance(hours=2)
        streak = engine.update_streak("stu-1", "DAILY_LOGIN")
        assert streak.transition == "continued"
        assert streak.current == 2

    def test_streaks_for_lists_all_types(self, engine, student):
        types = {s.type for s in engine.streaks_for("stu-1")}
        assert types == {"DAILY_LOGIN", "DAILY_LESSON", "DAILY_QUIZ", "PERFECT_SCORES"}


class TestExpireStreaks:
    def test_lapsed_streak_expires(self, engine, student, clock):
        engine.update_streak("stu-1", "DAILY_LOGIN")
        clock.advance(days=1)
        engine.update_streak("stu-1", "DAILY_LOGIN")
        clock.advance(days=2)

        expired = engine.expire_streaks()
        assert [s.type for s in expired] == ["DAILY_LOGIN"]
        row = engine.streaks.get("stu-1", "DAILY_LOGIN")
        assert row.current == 0
        assert row.is_active is False
        assert row.longest == 2
        profile = engine.profiles.get("stu-1")
        assert profile.streak == 0
        assert profile.longest_streak == 2

    def test_yesterdays_streak_survives(self, engine, student, clock):
        engine.update_streak("stu-1", "DAILY_LOGIN")
        clock.advance(days=1)
        assert engine.expire_streaks() == []
        assert engine.streaks.get("stu-1", "DAILY_LOGIN").current == 1

    def test_activity_after_expiry_restarts(self, engine, student, clock):
        engine.update_streak("stu-1", "DAILY_LOGIN")
        clock.advance(days=3)
        engine.expire_streaks()
        streak = engine.update_streak("stu-1", "DAILY_LOGIN")
        assert streak.transition == "reset"
        assert streak.current == 1

    def test_expiry_does_not_count_as_recent_activity(self, engine, student, clock):
        engine.update_streak("stu-1", "DAILY_LOGIN")
        before = engine.profiles.get("stu-1").updated_at
        clock.advance(days=20)

        assert [s.type for s in engine.expire_streaks()] == ["DAILY_LOGIN"]
        assert engine.profiles.get("stu-1").updated_at == before
        assert engine.get_leaderboard("LEVEL", "GLOBAL", "WEEKLY") == []
        assert engine.get_leaderboard("STREAK", "GLOBAL", "WEEKLY") == []
