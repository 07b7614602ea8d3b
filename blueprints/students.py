"""Student routes: provisioning, progress views and learner events."""

from __future__ import annotations

from flask import Blueprint, abort, current_app, jsonify, request

import activity
from db_stores import MembershipDB
from errors import ProfileNotFound
from gamification_config import LEADERBOARD_SCOPES, LEADERBOARD_TYPES, ROLES, STREAK_TYPES, TIMEFRAMES
from helpers import (
    get_engine,
    json_body,
    paginate_args,
    paginated_response,
    require_choice,
    require_fields,
)

bp = Blueprint("students", __name__)


@bp.route("/api/students", methods=["POST"])
def api_provision_student():
    data = json_body()
    require_fields(data, "id", "name")
    role = require_choice(str(data.get("role", "STUDENT")).upper(), ROLES, "role")
    grade_level = data.get("grade_level")
    if grade_level is not None:
        try:
            grade_level = int(grade_level)
        except (TypeError, ValueError):
            abort(400, description="grade_level must be an integer")
        if not 0 <= grade_level <= 12:
            abort(400, description="grade_level must be between 0 and 12")

    engine = get_engine()
    email = data.get("email") or None
    if engine.profiles.user_exists(str(data["id"]), email or ""):
        return jsonify({"error": "A user with this id or email already exists"}), 409

    profile = engine.profiles.provision(
        str(data["id"]), data["name"], role,
        email=email,
        school_id=str(data.get("school_id", "")),
        grade_level=grade_level,
    )
    current_app.logger.info("Provisioned %s user %s", role, data["id"])
    return jsonify({
        "id": str(data["id"]),
        "role": role,
        "profile": profile.to_dict() if profile else None,
    }), 201


@bp.route("/api/students/<student_id>/deactivate", methods=["POST"])
def api_deactivate_student(student_id):
    if not get_engine().deactivate_student(student_id):
        return jsonify({"error": f"User not found: {student_id}"}), 404
    return jsonify({"id": student_id, "is_active": False})


@bp.route("/api/students/<student_id>/gamification")
def api_student_summary(student_id):
    return jsonify(get_engine().get_summary(student_id))


@bp.route("/api/students/<student_id>/xp")
def api_xp_history(student_id):
    engine = get_engine()
    page, limit = paginate_args()
    items = engine.xp_history(student_id, limit=limit, offset=(page - 1) * limit)
    total = engine.ledger.count(student_id)
    return jsonify(paginated_response([t.to_dict() for t in items], total, page, limit))


@bp.route("/api/students/<student_id>/streaks")
def api_streaks(student_id):
    return jsonify({"streaks": [s.to_dict() for s in get_engine().streaks_for(student_id)]})


@bp.route("/api/students/<student_id>/streaks/<streak_type>", methods=["POST"])
def api_update_streak(student_id, streak_type):
    streak_type = require_choice(streak_type.upper(), STREAK_TYPES, "streak type")
    engine = get_engine()
    engine.require_profile(student_id)
    streak = engine.update_streak(student_id, streak_type)
    if streak is None:
        return jsonify({"error": f"No {streak_type} streak for student {student_id}"}), 404
    return jsonify({"streak": streak.to_dict()})


@bp.route("/api/students/<student_id>/achievements")
def api_achievements(student_id):
    entries = get_engine().achievements_for(student_id)
    return jsonify({
        "earned": [ua.to_dict() for ua in entries if ua.earned],
        "in_progress": [ua.to_dict() for ua in entries if not ua.earned],
    })


@bp.route("/api/students/<student_id>/badges")
def api_badges(student_id):
    return jsonify({"badges": [b.to_dict() for b in get_engine().badges_for(student_id)]})


@bp.route("/api/students/<student_id>/login", methods=["POST"])
def api_record_login(student_id):
    outcome = activity.record_login(get_engine(), student_id)
    return jsonify(outcome.to_dict())


@bp.route("/api/students/<student_id>/lessons/<lesson_id>/complete", methods=["POST"])
def api_complete_lesson(student_id, lesson_id):
    data = json_body()
    try:
        time_spent = int(data.get("time_spent", 0))
    except (TypeError, ValueError):
        abort(400, description="time_spent must be an integer number of minutes")
    outcome = activity.complete_lesson(
        get_engine(), student_id, lesson_id,
        subject=str(data.get("subject", "")).upper(),
        time_spent=time_spent,
    )
    return jsonify(outcome.to_dict())


@bp.route("/api/students/<student_id>/quizzes/<quiz_id>/complete", methods=["POST"])
def api_complete_quiz(student_id, quiz_id):
    data = json_body()
    require_fields(data, "percentage")
    try:
        percentage = float(data["percentage"])
    except (TypeError, ValueError):
        abort(400, description="percentage must be a number")
    outcome = activity.complete_quiz(
        get_engine(), student_id, quiz_id,
        subject=str(data.get("subject", "")).upper(),
        percentage=percentage,
    )
    return jsonify(outcome.to_dict())


@bp.route("/api/students/<student_id>/rank")
def api_student_rank(student_id):
    board_type = require_choice(request.args.get("type", "XP").upper(), LEADERBOARD_TYPES, "type")
    scope = require_choice(request.args.get("scope", "GLOBAL").upper(), LEADERBOARD_SCOPES, "scope")
    timeframe = require_choice(request.args.get("timeframe", "ALL_TIME").upper(), TIMEFRAMES, "timeframe")
    return jsonify(get_engine().get_student_rank(
        student_id, board_type, scope, timeframe, request.args.get("scope_id") or None,
    ))


@bp.route("/api/students/<student_id>/friends", methods=["POST"])
def api_add_friend(student_id):
    data = json_body()
    require_fields(data, "friend_id")
    engine = get_engine()
    friend_id = str(data["friend_id"])
    for user_id in (student_id, friend_id):
        if not engine.profiles.exists(user_id):
            raise ProfileNotFound(user_id)
    if friend_id == student_id:
        abort(400, description="Students cannot befriend themselves")
    MembershipDB(engine.store).add_friend(student_id, friend_id)
    return jsonify({"user_id": student_id, "friend_id": friend_id}), 201


@bp.route("/api/classes/<class_id>/members", methods=["POST"])
def api_add_class_member(class_id):
    data = json_body()
    require_fields(data, "student_id")
    engine = get_engine()
    student_id = str(data["student_id"])
    engine.require_profile(student_id)
    membership = MembershipDB(engine.store)
    membership.create_class(class_id, data.get("name", ""), str(data.get("school_id", "")))
    membership.add_class_member(class_id, student_id)
    return jsonify({"class_id": class_id, "student_id": student_id}), 201
