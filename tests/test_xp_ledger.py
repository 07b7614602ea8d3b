"""Tests for GamificationEngine.award_xp — the XP ledger."""

from __future__ import annotations

import sqlite3
import threading
from unittest.mock import patch

import pytest

from database import GamificationStore
from errors import ConcurrentUpdateConflict, InvalidAmount, ProfileNotFound
from gamification import GamificationEngine


class TestAwardXP:
    def test_first_lesson_levels_up(self, engine, student):
        result = engine.award_xp("stu-1", 100, "LESSON_COMPLETED", "lesson-1", "Fractions")
        assert result.total_xp == 100
        assert result.old_level == 1
        assert result.new_level == 2
        assert result.leveled_up is True

        profile = engine.profiles.get("stu-1")
        assert profile.total_xp == 100
        assert profile.level == 2
        assert profile.current_level_xp == 0
        assert profile.next_level_xp == 300

    def test_no_level_up_within_level(self, engine, student):
        engine.award_xp("stu-1", 100, "LESSON_COMPLETED", "lesson-1")
        result = engine.award_xp("stu-1", 50, "QUIZ_COMPLETED", "quiz-1")
        assert result.leveled_up is False
        assert result.old_level == result.new_level == 2
        assert engine.profiles.get("stu-1").current_level_xp == 50

    def test_transaction_recorded(self, engine, student, clock):
        result = engine.award_xp("stu-1", 40, "SPEED_BONUS", "quiz-9", "Fast finish",
                                 bonus_reason="under 2 minutes")
        tx = result.transaction
        assert tx.id is not None
        assert tx.amount == 40
        assert tx.base_amount == 40
        assert tx.source == "SPEED_BONUS"
        assert tx.source_id == "quiz-9"
        assert tx.bonus_reason == "under 2 minutes"
        assert tx.timestamp.startswith("2026-03-10T12:00:00")

    def test_multiplier_scales_stored_amount(self, engine, student):
        result = engine.award_xp("stu-1", 100, "QUIZ_COMPLETED", "quiz-1", multiplier=1.5)
        assert result.transaction.amount == 150
        assert result.transaction.base_amount == 100
        assert result.transaction.multiplier == 1.5
        assert result.total_xp == 150

    def test_ledger_sum_matches_profile(self, engine, student, clock):
        for amount in (25, 100, 150, 200, 50):
            engine.award_xp("stu-1", amount, "QUIZ_COMPLETED", "q")
            clock.advance(minutes=5)
        assert engine.ledger_total("stu-1") == 525
        assert engine.profiles.get("stu-1").total_xp == 525

    def test_history_newest_first(self, engine, student, clock):
        engine.award_xp("stu-1", 10, "DAILY_LOGIN", "d1")
        clock.advance(hours=1)
        engine.award_xp("stu-1", 20, "DAILY_LOGIN", "d2")
        history = engine.xp_history("stu-1")
        assert [t.source_id for t in history] == ["d2", "d1"]
        assert [t.source_id for t in engine.xp_history("stu-1", limit=1, offset=1)] == ["d1"]


class TestAwardXPRejections:
    @pytest.mark.parametrize("amount,multiplier", [
        (0, 1.0), (-5, 1.0), (10, 0), (10, -2.0), (1, 0.1), (10, float("inf")), (10, float("nan")),
    ])
    def test_invalid_amounts(self, engine, student, amount, multiplier):
        with pytest.raises(InvalidAmount):
            engine.award_xp("stu-1", amount, "QUIZ_COMPLETED", "q", multiplier=multiplier)
        assert engine.ledger.count("stu-1") == 0
        assert engine.profiles.get("stu-1").total_xp == 0

    def test_unknown_student(self, engine, student):
        with pytest.raises(ProfileNotFound) as exc_info:
            engine.award_xp("ghost", 100, "LESSON_COMPLETED", "lesson-1")
        assert exc_info.value.student_id == "ghost"
        row = engine.store.execute("SELECT COUNT(*) AS cnt FROM xp_transactions").fetchone()
        assert row["cnt"] == 0

    def test_teacher_has_no_profile(self, engine, make_student):
        make_student("t-1", "Mr Lee", role="TEACHER")
        with pytest.raises(ProfileNotFound):
            engine.award_xp("t-1", 100, "LESSON_COMPLETED", "lesson-1")

    def test_unknown_source(self, engine, student):
        with pytest.raises(ValueError):
            engine.award_xp("stu-1", 100, "BRIBERY", "x")

    def test_failure_mid_award_leaves_no_partial_writes(self, engine, student):
        with patch.object(engine.ledger, "append", side_effect=RuntimeError("disk full")):
            with pytest.raises(RuntimeError):
                engine.award_xp("stu-1", 100, "LESSON_COMPLETED", "lesson-1")
        profile = engine.profiles.get("stu-1")
        assert profile.total_xp == 0
        assert profile.level == 1
        assert engine.ledger.count("stu-1") == 0


class TestRetries:
    def test_transient_lock_is_retried(self, engine, student):
        real_append = engine.ledger.append
        calls = []

        def flaky_append(*args, **kwargs):
            calls.append(1)
            if len(calls) == 1:
                raise sqlite3.OperationalError("database is locked")
            return real_append(*args, **kwargs)

        with patch.object(engine.ledger, "append", side_effect=flaky_append):
            result = engine.award_xp("stu-1", 100, "LESSON_COMPLETED", "lesson-1")

        assert len(calls) == 2
        assert result.total_xp == 100
        assert engine.ledger.count("stu-1") == 1
        assert engine.profiles.get("stu-1").total_xp == 100

    def test_exhausted_retries_raise_conflict(self, engine, student):
        with patch.object(engine.profiles, "increment_xp",
                          side_effect=sqlite3.OperationalError("database is locked")) as inc:
            with pytest.raises(ConcurrentUpdateConflict):
                engine.award_xp("stu-1", 100, "LESSON_COMPLETED", "lesson-1")
        assert inc.call_count == engine.store.max_retries
        assert engine.profiles.get("stu-1").total_xp == 0

    def test_non_transient_errors_are_not_retried(self, engine, student):
        with patch.object(engine.profiles, "increment_xp",
                          side_effect=sqlite3.OperationalError("no such column: total_xp")) as inc:
            with pytest.raises(sqlite3.OperationalError):
                engine.award_xp("stu-1", 100, "LESSON_COMPLETED", "lesson-1")
        assert inc.call_count == 1


class TestConcurrency:
    def test_concurrent_awards_lose_no_xp(self, store, student):
        errors: list[BaseException] = []

        def worker(n: int):
            try:
                with GamificationStore(store.database, busy_timeout=10.0, max_retries=10,
                                       retry_wait_max=0.05) as own_store:
                    own_engine = GamificationEngine(own_store)
                    for i in range(10):
                        own_engine.award_xp("stu-1", 10, "QUIZ_COMPLETED", f"{n}-{i}")
            except BaseException as e:  # surfaced below
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        engine = GamificationEngine(store)
        profile = engine.profiles.get("stu-1")
        assert profile.total_xp == 400
        assert engine.ledger_total("stu-1") == 400
        assert profile.level == 3
