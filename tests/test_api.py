"""HTTP-level tests for the student and gamification blueprints."""

from __future__ import annotations

from unittest.mock import patch

import pytest

from errors import ConcurrentUpdateConflict
from gamification import GamificationEngine


def _provision(client, user_id, name=None, **extra):
    payload = {"id": user_id, "name": name or user_id.title(), **extra}
    return client.post("/api/students", json=payload)


def _award(client, student_id, amount, source="LESSON_COMPLETED", **extra):
    return client.post("/api/gamification/award-xp", json={
        "student_id": student_id, "amount": amount, "source": source, **extra,
    })


@pytest.fixture
def ada(client):
    resp = _provision(client, "stu-1", "Ada", grade_level=5, school_id="north")
    assert resp.status_code == 201
    return "stu-1"


class TestProvisioning:
    def test_create_student(self, client):
        resp = _provision(client, "stu-1", "Ada", email="ada@example.com")
        assert resp.status_code == 201
        data = resp.get_json()
        assert data["role"] == "STUDENT"
        assert data["profile"]["total_xp"] == 0
        assert data["profile"]["level"] == 1

    def test_create_teacher_has_no_profile(self, client):
        resp = _provision(client, "t-1", "Mr Lee", role="teacher")
        assert resp.status_code == 201
        assert resp.get_json()["profile"] is None

    def test_duplicate_id_or_email(self, client):
        _provision(client, "stu-1", email="ada@example.com")
        assert _provision(client, "stu-1").status_code == 409
        assert _provision(client, "stu-2", email="ada@example.com").status_code == 409

    @pytest.mark.parametrize("payload", [
        {"name": "No Id"},
        {"id": "x", "name": "Bad Role", "role": "JANITOR"},
        {"id": "x", "name": "Bad Grade", "grade_level": "fifth"},
        {"id": "x", "name": "Bad Grade", "grade_level": 14},
    ])
    def test_validation(self, client, payload):
        resp = client.post("/api/students", json=payload)
        assert resp.status_code == 400
        assert "error" in resp.get_json()

    def test_non_object_body(self, client):
        resp = client.post("/api/students", json=["stu-1"])
        assert resp.status_code == 400


class TestAwardXP:
    def test_award_and_level_up(self, client, ada):
        resp = _award(client, ada, 100, source_id="lesson-1", description="Fractions")
        assert resp.status_code == 201
        data = resp.get_json()
        assert data["total_xp"] == 100
        assert data["leveled_up"] is True
        assert data["new_level"] == 2
        assert data["transaction"]["source_id"] == "lesson-1"
        assert data["achievements"] == []

    def test_multiplier(self, client, ada):
        data = _award(client, ada, 100, "QUIZ_COMPLETED", multiplier=1.5).get_json()
        assert data["transaction"]["amount"] == 150

    @pytest.mark.parametrize("amount", [0, -10])
    def test_non_positive_amount(self, client, ada, amount):
        resp = _award(client, ada, amount)
        assert resp.status_code == 400
        summary = client.get(f"/api/students/{ada}/gamification").get_json()
        assert summary["xp"] == 0

    def test_unknown_source(self, client, ada):
        assert _award(client, ada, 10, "BRIBERY").status_code == 400

    def test_unknown_student(self, client):
        resp = _award(client, "ghost", 100)
        assert resp.status_code == 404
        assert "ghost" in resp.get_json()["error"]

    @pytest.mark.parametrize("multiplier", ["inf", "-inf", "nan"])
    def test_non_finite_multiplier_rejected(self, client, ada, multiplier):
        resp = _award(client, ada, 10, multiplier=multiplier)
        assert resp.status_code == 400
        summary = client.get(f"/api/students/{ada}/gamification").get_json()
        assert summary["xp"] == 0

    def test_conflict_returns_503_with_retry_after(self, client, ada):
        with patch.object(GamificationEngine, "award_xp",
                          side_effect=ConcurrentUpdateConflict("Gave up after 5 attempts")):
            resp = _award(client, ada, 100)
        assert resp.status_code == 503
        assert resp.headers["Retry-After"] == "1"


class TestStudentViews:
    def test_summary(self, client, ada):
        _award(client, ada, 250)
        data = client.get(f"/api/students/{ada}/gamification").get_json()
        assert data["xp"] == 250
        assert data["level"] == 2
        assert data["current_level_xp"] == 150
        assert data["next_level_xp"] == 300
        assert data["progress_pct"] == 50
        assert data["xp_to_next_level"] == 150
        assert data["rank"] == 1
        assert data["weekly_progress"]["xp_earned"] == 250

    def test_summary_unknown_student(self, client):
        assert client.get("/api/students/ghost/gamification").status_code == 404

    def test_xp_history_paginated(self, client, ada):
        for i in range(3):
            _award(client, ada, 10, "DAILY_LOGIN", source_id=f"d{i}")
        data = client.get(f"/api/students/{ada}/xp?page=2&limit=2").get_json()
        assert data["pagination"] == {"page": 2, "limit": 2, "total": 3, "pages": 2}
        assert len(data["items"]) == 1

    def test_streak_routes(self, client, ada):
        resp = client.post(f"/api/students/{ada}/streaks/daily_quiz")
        assert resp.status_code == 200
        assert resp.get_json()["streak"]["current"] == 1
        streaks = client.get(f"/api/students/{ada}/streaks").get_json()["streaks"]
        assert {s["type"] for s in streaks} == {"DAILY_LOGIN", "DAILY_LESSON", "DAILY_QUIZ",
                                                "PERFECT_SCORES"}
        assert client.post(f"/api/students/{ada}/streaks/hourly").status_code == 400

    def test_headers(self, client, ada):
        resp = client.get(f"/api/students/{ada}/badges", headers={"X-Request-ID": "req-42"})
        assert resp.headers["X-Request-ID"] == "req-42"
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["Cache-Control"] == "no-store"


class TestActivityRoutes:
    def test_login(self, client, ada):
        first = client.post(f"/api/students/{ada}/login").get_json()
        assert first["xp_earned"] == 25
        assert first["duplicate"] is False
        second = client.post(f"/api/students/{ada}/login").get_json()
        assert second["duplicate"] is True

    def test_lesson_completion(self, client, ada):
        resp = client.post(f"/api/students/{ada}/lessons/fractions-1/complete",
                           json={"subject": "mathematics", "time_spent": 15})
        data = resp.get_json()
        assert data["xp_earned"] == 100
        assert [a["name"] for a in data["achievements"]] == ["First Steps"]

        achievements = client.get(f"/api/students/{ada}/achievements").get_json()
        assert [a["name"] for a in achievements["earned"]] == ["First Steps"]
        assert "Knowledge Seeker" in [a["name"] for a in achievements["in_progress"]]

    def test_lesson_bad_time(self, client, ada):
        resp = client.post(f"/api/students/{ada}/lessons/l1/complete", json={"time_spent": "long"})
        assert resp.status_code == 400

    def test_quiz_completion(self, client, ada):
        resp = client.post(f"/api/students/{ada}/quizzes/q1/complete",
                           json={"subject": "MATHEMATICS", "percentage": 100})
        data = resp.get_json()
        assert data["xp_awards"][0]["transaction"]["source"] == "PERFECT_SCORE"
        badges = client.get(f"/api/students/{ada}/badges").get_json()["badges"]
        assert [b["name"] for b in badges] == ["Math Master"]

    @pytest.mark.parametrize("payload", [{}, {"percentage": "lots"}, {"percentage": 101}])
    def test_quiz_validation(self, client, ada, payload):
        resp = client.post(f"/api/students/{ada}/quizzes/q1/complete", json=payload)
        assert resp.status_code == 400

    def test_check_achievements(self, client, ada):
        client.post(f"/api/students/{ada}/lessons/l1/complete", json={})
        resp = client.post("/api/gamification/check-achievements",
                           json={"student_id": ada, "action": "lesson_completed"})
        assert resp.status_code == 200
        assert resp.get_json()["achievements"] == []

        bad = client.post("/api/gamification/check-achievements",
                          json={"student_id": ada, "action": "sneezed"})
        assert bad.status_code == 400

    @pytest.mark.parametrize("action,context", [
        ("quiz_completed", {"score": "100"}),
        ("quiz_completed", {"score": True}),
        ("streak_updated", {"streak": None}),
        ("streak_updated", {"streak": "7"}),
    ])
    def test_check_achievements_rejects_non_numeric_event_values(self, client, ada, action, context):
        resp = client.post("/api/gamification/check-achievements",
                           json={"student_id": ada, "action": action, "data": context})
        assert resp.status_code == 400
        assert "must be a number" in resp.get_json()["error"]


class TestLeaderboardRoutes:
    @pytest.fixture
    def board(self, client, ada):
        _provision(client, "stu-2", "Ben", grade_level=5, school_id="south")
        _provision(client, "stu-3", "Cy", grade_level=6, school_id="north")
        _award(client, "stu-1", 100)
        _award(client, "stu-2", 300)
        _award(client, "stu-3", 100)

    def test_global(self, client, board):
        data = client.get("/api/leaderboard").get_json()
        assert data["type"] == "XP"
        assert data["scope"] == "GLOBAL"
        assert [e["student_id"] for e in data["entries"]] == ["stu-2", "stu-1", "stu-3"]
        assert data["entries"][0]["change"]["direction"] == "new"

    def test_limit_and_scope(self, client, board):
        data = client.get("/api/leaderboard?limit=1").get_json()
        assert len(data["entries"]) == 1
        data = client.get("/api/leaderboard?scope=school&scope_id=north").get_json()
        assert [e["student_id"] for e in data["entries"]] == ["stu-1", "stu-3"]

    def test_class_members(self, client, board):
        assert client.post("/api/classes/c-1/members", json={"student_id": "stu-3"}).status_code == 201
        data = client.get("/api/leaderboard?scope=CLASS&scope_id=c-1").get_json()
        assert [e["student_id"] for e in data["entries"]] == ["stu-3"]

    def test_friends(self, client, board):
        resp = client.post("/api/students/stu-1/friends", json={"friend_id": "stu-3"})
        assert resp.status_code == 201
        data = client.get("/api/leaderboard?scope=FRIENDS&scope_id=stu-3").get_json()
        assert [e["student_id"] for e in data["entries"]] == ["stu-1", "stu-3"]
        assert client.post("/api/students/stu-1/friends", json={"friend_id": "stu-1"}).status_code == 400
        assert client.post("/api/students/stu-1/friends", json={"friend_id": "ghost"}).status_code == 404

    @pytest.mark.parametrize("query", ["type=KARMA", "timeframe=YEARLY", "scope=CLASS"])
    def test_bad_queries(self, client, board, query):
        assert client.get(f"/api/leaderboard?{query}").status_code == 400

    def test_rank(self, client, board):
        data = client.get("/api/students/stu-3/rank").get_json()
        assert data["rank"] == 3
        assert data["total_students"] == 3
        assert data["percentile"] == 33.3

    def test_deactivated_student_leaves_board(self, client, board):
        client.get("/api/leaderboard")
        assert client.post("/api/students/stu-2/deactivate").status_code == 200
        data = client.get("/api/leaderboard").get_json()
        assert [e["student_id"] for e in data["entries"]] == ["stu-1", "stu-3"]
        assert client.post("/api/students/ghost/deactivate").status_code == 404
