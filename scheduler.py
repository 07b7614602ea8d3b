"""
Centralized Scheduler — Registers the periodic housekeeping jobs.

Jobs:
  - Streak expiry (every 1 hour)
  - TTL cache cleanup (every 1 hour)
"""

from __future__ import annotations

from apscheduler.schedulers.background import BackgroundScheduler

from cache_backend import get_cache
from database import open_store
from gamification import GamificationEngine


def expire_streaks_job(app) -> int:
    """Zero out lapsed streaks. Returns how many were expired."""
    with app.app_context():
        store = open_store(app.config)
        try:
            engine = GamificationEngine.from_config(store, app.config, cache=get_cache(app))
            return len(engine.expire_streaks())
        finally:
            store.close()


def cleanup_cache_job(app) -> int:
    return get_cache(app).cleanup()


def init_scheduler(app) -> BackgroundScheduler:
    """Start a background scheduler for all periodic jobs."""
    scheduler = BackgroundScheduler(daemon=True)

    # 1. Streak expiry, every 1 hour
    scheduler.add_job(
        func=expire_streaks_job,
        args=[app],
        trigger="interval",
        hours=1,
        id="streak_expiry",
        replace_existing=True,
    )

    # 2. TTL cache cleanup, every 1 hour
    scheduler.add_job(
        func=cleanup_cache_job,
        args=[app],
        trigger="interval",
        hours=1,
        id="cache_cleanup",
        replace_existing=True,
    )

    scheduler.start()
    app.logger.info("Centralized scheduler started (streak expiry, cache cleanup)")
    return scheduler
