"""Seed the achievement and badge catalogs.

Run: python seed_catalog.py [database]

Upserts every definition in gamification_config by name, so re-running
after editing a definition updates it in place.
"""

from __future__ import annotations

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent))

from database import GamificationStore, ensure_schema  # noqa: E402
from db_stores import AchievementCatalogDB, BadgeStoreDB  # noqa: E402
from gamification_config import ACHIEVEMENT_DEFINITIONS, BADGE_DEFINITIONS  # noqa: E402


def seed(store: GamificationStore) -> tuple[int, int]:
    """Write the catalogs. Returns (achievements, badges) written."""
    catalog = AchievementCatalogDB(store)
    badges = BadgeStoreDB(store)
    with store.transaction():
        # Badges first: achievement rewards refer to them by name
        for definition in BADGE_DEFINITIONS:
            badges.upsert(definition)
        for definition in ACHIEVEMENT_DEFINITIONS:
            catalog.upsert(definition)
    return len(ACHIEVEMENT_DEFINITIONS), len(BADGE_DEFINITIONS)


if __name__ == "__main__":
    from config import BaseConfig

    database = sys.argv[1] if len(sys.argv) > 1 else BaseConfig.DATABASE
    print("=" * 50)
    print("  Seeding Achievement & Badge Catalog")
    print("=" * 50)
    with GamificationStore(database) as store:
        ensure_schema(store)
        n_achievements, n_badges = seed(store)
    print(f"  {n_achievements} achievements and {n_badges} badges inserted/updated.")
    print("  Done.")
