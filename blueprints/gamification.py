"""Gamification routes: XP grants, achievement checks and leaderboards."""

from __future__ import annotations

import math

from flask import Blueprint, abort, current_app, jsonify, request

from gamification_config import (
    ACTION_CRITERIA,
    LEADERBOARD_SCOPES,
    LEADERBOARD_TYPES,
    TIMEFRAMES,
    XP_SOURCES,
)
from helpers import get_engine, json_body, require_choice, require_fields

bp = Blueprint("gamification", __name__)

NUMERIC_EVENT_FIELDS = ("score", "streak")


@bp.route("/api/gamification/award-xp", methods=["POST"])
def api_award_xp():
    data = json_body()
    require_fields(data, "student_id", "amount", "source")
    source = require_choice(str(data["source"]).upper(), XP_SOURCES, "source")
    try:
        amount = int(data["amount"])
        multiplier = float(data.get("multiplier", 1))
    except (TypeError, ValueError, OverflowError):
        abort(400, description="amount must be an integer and multiplier a number")
    if not math.isfinite(multiplier):
        abort(400, description="multiplier must be a finite number")

    engine = get_engine()
    student_id = str(data["student_id"])
    result = engine.award_xp(
        student_id, amount, source,
        source_id=str(data.get("source_id", "")),
        description=data.get("description", ""),
        multiplier=multiplier,
        bonus_reason=data.get("bonus_reason", ""),
    )
    achievements = engine.check_and_award_achievements(student_id, "xp_earned")
    return jsonify({
        **result.to_dict(),
        "achievements": [a.to_dict() for a in achievements],
    }), 201


@bp.route("/api/gamification/check-achievements", methods=["POST"])
def api_check_achievements():
    data = json_body()
    require_fields(data, "student_id", "action")
    action = require_choice(data["action"], ACTION_CRITERIA, "action")
    context = data.get("data") or {}
    if not isinstance(context, dict):
        abort(400, description="data must be an object")
    for key in NUMERIC_EVENT_FIELDS:
        value = context.get(key)
        if key in context and (isinstance(value, bool) or not isinstance(value, (int, float))
                               or not math.isfinite(value)):
            abort(400, description=f"data.{key} must be a number")
    earned = get_engine().check_and_award_achievements(str(data["student_id"]), action, context)
    return jsonify({"achievements": [a.to_dict() for a in earned]})


@bp.route("/api/leaderboard")
def api_leaderboard():
    board_type = require_choice(request.args.get("type", "XP").upper(), LEADERBOARD_TYPES, "type")
    scope = require_choice(request.args.get("scope", "GLOBAL").upper(), LEADERBOARD_SCOPES, "scope")
    timeframe = require_choice(request.args.get("timeframe", "ALL_TIME").upper(), TIMEFRAMES, "timeframe")
    scope_id = request.args.get("scope_id") or None

    default_limit = current_app.config.get("LEADERBOARD_DEFAULT_LIMIT", 10)
    max_limit = current_app.config.get("LEADERBOARD_MAX_LIMIT", 100)
    try:
        limit = min(max_limit, max(1, int(request.args.get("limit", default_limit))))
    except (ValueError, TypeError):
        limit = default_limit

    entries = get_engine().get_leaderboard(board_type, scope, timeframe, limit, scope_id)
    return jsonify({
        "type": board_type,
        "scope": scope,
        "scope_id": scope_id,
        "timeframe": timeframe,
        "entries": [e.to_dict() for e in entries],
    })
