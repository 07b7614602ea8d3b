"""
TeachMe Gamification — Flask Web Application

JSON API over the gamification ledger: XP, levels, streaks, achievements,
badges and leaderboards for K-12 learners.
"""

from __future__ import annotations

import os
from typing import Any

from flask import Flask, Response

import database
from blueprints import register_blueprints
from cache_backend import init_cache
from logging_config import init_logging
from seed_catalog import seed


def create_app(test_config: dict[str, Any] | None = None) -> Flask:
    app = Flask(__name__)

    # Load config
    from config import config_by_name
    if test_config is not None:
        app.config.from_object(config_by_name["testing"])
        app.config.update(test_config)
    else:
        env = os.environ.get("FLASK_ENV", "development")
        cfg = config_by_name.get(env, config_by_name["development"])
        app.config.from_object(cfg)
        if hasattr(cfg, "validate"):
            cfg.validate()

    app.secret_key = app.config["SECRET_KEY"]

    # Structured logging
    init_logging(app)

    # Cache backend (Redis or in-memory)
    init_cache(app)

    # Per-request store teardown, then schema + catalog
    database.init_app(app)
    with app.app_context():
        store = database.get_store()
        database.ensure_schema(store)
        seed(store)

    register_blueprints(app)

    @app.after_request
    def set_security_headers(response: Response) -> Response:
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["Cache-Control"] = "no-store"
        return response

    # Housekeeping jobs (streak expiry, cache cleanup)
    if app.config.get("SCHEDULER_ENABLED") and not app.config.get("TESTING"):
        from scheduler import init_scheduler
        app.extensions["scheduler"] = init_scheduler(app)

    return app


if __name__ == "__main__":
    create_app().run(debug=True, port=5001)
