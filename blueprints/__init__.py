"""
Blueprint registration for the TeachMe gamification service.

All blueprints are registered without URL prefixes; routes carry their
full /api/... paths.
"""

from __future__ import annotations

from flask import jsonify
from werkzeug.exceptions import HTTPException

from errors import ConcurrentUpdateConflict, GamificationError


def register_blueprints(app):
    from blueprints.gamification import bp as gamification_bp
    from blueprints.students import bp as students_bp

    app.register_blueprint(students_bp)
    app.register_blueprint(gamification_bp)
    register_error_handlers(app)


def register_error_handlers(app):
    """Map ledger errors and bad input to JSON error bodies."""

    @app.errorhandler(GamificationError)
    def _gamification_error(e: GamificationError):
        response = jsonify({"error": str(e)})
        response.status_code = e.status_code
        if isinstance(e, ConcurrentUpdateConflict):
            response.headers["Retry-After"] = "1"
        return response

    @app.errorhandler(ValueError)
    def _value_error(e: ValueError):
        return jsonify({"error": str(e)}), 400

    @app.errorhandler(HTTPException)
    def _http_error(e: HTTPException):
        return jsonify({"error": e.description}), e.code
