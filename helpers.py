"""
Shared helpers used across blueprints.

Extracted from app.py to break circular dependencies.
"""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from flask import abort, current_app, g, request

from cache_backend import get_cache
from database import get_store
from gamification import GamificationEngine


def get_engine() -> GamificationEngine:
    """The request's engine, bound to the request store and the app cache."""
    if "engine" not in g:
        g.engine = GamificationEngine.from_config(
            get_store(), current_app.config, cache=get_cache(current_app),
        )
    return g.engine


def json_body() -> dict[str, Any]:
    """Request JSON object, or 400."""
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        abort(400, description="JSON body must be an object")
    return data


def require_fields(data: dict[str, Any], *fields: str) -> None:
    missing = [f for f in fields if data.get(f) in (None, "")]
    if missing:
        abort(400, description=f"Missing required fields: {', '.join(missing)}")


def require_choice(value: str, choices: Iterable[str], name: str) -> str:
    choices = tuple(choices)
    if value not in choices:
        abort(400, description=f"Invalid {name} {value!r}; expected one of {', '.join(choices)}")
    return value


def paginate_args(default_limit: int = 20, max_limit: int = 100) -> tuple[int, int]:
    """Extract page/limit from request.args. Returns (page, limit)."""
    try:
        page = max(1, int(request.args.get("page", 1)))
    except (ValueError, TypeError):
        page = 1
    try:
        limit = min(max_limit, max(1, int(request.args.get("limit", default_limit))))
    except (ValueError, TypeError):
        limit = default_limit
    return page, limit


def paginated_response(items: list, total: int, page: int, limit: int) -> dict:
    """Standard pagination envelope."""
    return {
        "items": items,
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": max(1, (total + limit - 1) // limit),
        },
    }
