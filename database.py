"""
Persistence layer for the TeachMe gamification ledger.

Uses raw sqlite3 (WAL mode, parameterized queries) or PostgreSQL through
pg_compat. A schema_version table handles migrations.

The store is an explicitly constructed object with an open -> use -> close
lifecycle. Inside a Flask request one store lives on ``g`` and is closed on
teardown; scripts and tests construct their own.
"""

from __future__ import annotations

import fcntl
import logging
import sqlite3
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, TypeVar

from flask import current_app, g
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from errors import ConcurrentUpdateConflict
from pg_compat import connect_pg, is_postgres_url

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_DATABASE = str(Path(__file__).parent / "teachme.db")

# SQLSTATEs: serialization_failure, deadlock_detected, lock_not_available
TRANSIENT_PG_CODES = {"40001", "40P01", "55P03"}


SCHEMA = """
-- Migration tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER NOT NULL,
    applied_at TEXT NOT NULL
);

-- Identities owned by the platform (soft-disabled, never deleted)
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    email TEXT UNIQUE,
    role TEXT NOT NULL DEFAULT 'STUDENT',
    school_id TEXT NOT NULL DEFAULT '',
    grade_level INTEGER,
    is_active INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL DEFAULT ''
);

-- One profile per student; level fields are derived from total_xp
CREATE TABLE IF NOT EXISTS student_profiles (
    user_id TEXT PRIMARY KEY REFERENCES users(id),
    display_name TEXT NOT NULL DEFAULT '',
    total_xp INTEGER NOT NULL DEFAULT 0,
    level INTEGER NOT NULL DEFAULT 1,
    current_level_xp INTEGER NOT NULL DEFAULT 0,
    next_level_xp INTEGER NOT NULL DEFAULT 100,
    streak INTEGER NOT NULL DEFAULT 0,
    longest_streak INTEGER NOT NULL DEFAULT 0,
    title TEXT NOT NULL DEFAULT '',
    created_at TEXT NOT NULL DEFAULT '',
    updated_at TEXT NOT NULL DEFAULT ''
);
CREATE INDEX IF NOT EXISTS idx_profiles_total_xp ON student_profiles(total_xp);

-- Append-only XP audit log
CREATE TABLE IF NOT EXISTS xp_transactions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    student_id TEXT NOT NULL REFERENCES student_profiles(user_id),
    amount INTEGER NOT NULL,
    base_amount INTEGER NOT NULL,
    multiplier REAL NOT NULL DEFAULT 1.0,
    source TEXT NOT NULL,
    source_id TEXT NOT NULL DEFAULT '',
    description TEXT NOT NULL DEFAULT '',
    bonus_reason TEXT NOT NULL DEFAULT '',
    timestamp TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_xp_student_time ON xp_transactions(student_id, timestamp);

-- Streak counters, one row per (student, type)
CREATE TABLE IF NOT EXISTS streaks (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    student_id TEXT NOT NULL REFERENCES student_profiles(user_id),
    type TEXT NOT NULL,
    current INTEGER NOT NULL DEFAULT 0,
    longest INTEGER NOT NULL DEFAULT 0,
    last_activity TEXT,
    is_active INTEGER NOT NULL DEFAULT 0,
    UNIQUE(student_id, type)
);

-- Static catalogs
CREATE TABLE IF NOT EXISTS achievements (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    description TEXT NOT NULL DEFAULT '',
    icon TEXT NOT NULL DEFAULT '',
    category TEXT NOT NULL DEFAULT '',
    type TEXT NOT NULL DEFAULT '',
    criteria TEXT NOT NULL DEFAULT '{}',
    reward TEXT NOT NULL DEFAULT '{}',
    is_secret INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS user_achievements (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL REFERENCES users(id),
    achievement_id INTEGER NOT NULL REFERENCES achievements(id),
    progress TEXT NOT NULL DEFAULT '{}',
    earned_at TEXT,
    updated_at TEXT NOT NULL DEFAULT '',
    UNIQUE(user_id, achievement_id)
);

CREATE TABLE IF NOT EXISTS badges (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL UNIQUE,
    description TEXT NOT NULL DEFAULT '',
    icon TEXT NOT NULL DEFAULT '',
    color TEXT NOT NULL DEFAULT '',
    category TEXT NOT NULL DEFAULT '',
    rarity TEXT NOT NULL DEFAULT '',
    criteria TEXT NOT NULL DEFAULT '{}'
);

CREATE TABLE IF NOT EXISTS user_badges (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL REFERENCES users(id),
    badge_id INTEGER NOT NULL REFERENCES badges(id),
    earned_at TEXT NOT NULL,
    UNIQUE(user_id, badge_id)
);

-- Activity facts behind the aggregate counters
CREATE TABLE IF NOT EXISTS lesson_progress (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    student_id TEXT NOT NULL REFERENCES users(id),
    lesson_id TEXT NOT NULL,
    subject TEXT NOT NULL DEFAULT '',
    status TEXT NOT NULL DEFAULT 'IN_PROGRESS',
    time_spent INTEGER NOT NULL DEFAULT 0,
    completed_at TEXT,
    UNIQUE(student_id, lesson_id)
);
CREATE INDEX IF NOT EXISTS idx_lessons_student ON lesson_progress(student_id, status);

CREATE TABLE IF NOT EXISTS quiz_attempts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    student_id TEXT NOT NULL REFERENCES users(id),
    quiz_id TEXT NOT NULL,
    subject TEXT NOT NULL DEFAULT '',
    percentage REAL NOT NULL DEFAULT 0,
    completed_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_quiz_student ON quiz_attempts(student_id, completed_at);

-- Class membership for leaderboard scopes
CREATE TABLE IF NOT EXISTS classes (
    id TEXT PRIMARY KEY,
    school_id TEXT NOT NULL DEFAULT '',
    grade_level INTEGER,
    name TEXT NOT NULL DEFAULT ''
);

CREATE TABLE IF NOT EXISTS class_members (
    class_id TEXT NOT NULL REFERENCES classes(id),
    user_id TEXT NOT NULL REFERENCES users(id),
    PRIMARY KEY(class_id, user_id)
);
"""


MIGRATIONS: list[tuple[int, str]] = [
    # Version 1 = base schema.
    # Migration 2: friend lists for the FRIENDS leaderboard scope
    (2, """
        CREATE TABLE IF NOT EXISTS friendships (
            user_id TEXT NOT NULL REFERENCES users(id),
            friend_id TEXT NOT NULL REFERENCES users(id),
            created_at TEXT NOT NULL DEFAULT '',
            PRIMARY KEY(user_id, friend_id)
        );
    """),
    # Migration 3: persisted leaderboard ranks for rank-change tracking
    (3, """
        CREATE TABLE IF NOT EXISTS leaderboard_snapshots (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            board_key TEXT NOT NULL,
            user_id TEXT NOT NULL REFERENCES users(id),
            rank INTEGER NOT NULL,
            score REAL NOT NULL DEFAULT 0,
            captured_at TEXT NOT NULL,
            UNIQUE(board_key, user_id)
        );
        CREATE INDEX IF NOT EXISTS idx_snapshots_board ON leaderboard_snapshots(board_key);
    """),
]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_iso(dt: datetime) -> str:
    """Fixed-width UTC timestamp so stored values sort lexicographically."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc).isoformat(timespec="microseconds")


def from_iso(value: str) -> datetime:
    dt = datetime.fromisoformat(value)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def is_transient_error(exc: BaseException) -> bool:
    """Lock contention that a fresh transaction attempt may clear."""
    if isinstance(exc, sqlite3.OperationalError):
        msg = str(exc).lower()
        return "locked" in msg or "busy" in msg
    return getattr(exc, "pgcode", None) in TRANSIENT_PG_CODES


class GamificationStore:
    """Owns one database connection and its transaction state.

    ``transaction()`` is reentrant: nested blocks join the outermost one, so
    everything inside commits or rolls back together. On SQLite the outer
    block takes the write lock up front with BEGIN IMMEDIATE.
    """

    def __init__(self, database: str = DEFAULT_DATABASE, *, busy_timeout: float = 5.0,
                 max_retries: int = 5, retry_wait_max: float = 1.0):
        self.database = database
        self.busy_timeout = busy_timeout
        self.max_retries = max_retries
        self.retry_wait_max = retry_wait_max
        self._conn = None
        self._depth = 0
        self._after_commit: list[Callable[[], None]] = []

    # --- Lifecycle ---
    @property
    def is_postgres(self) -> bool:
        return is_postgres_url(self.database)

    @property
    def is_open(self) -> bool:
        return self._conn is not None

    def open(self) -> GamificationStore:
        if self._conn is not None:
            return self
        if self.is_postgres:
            self._conn = connect_pg(self.database)
        else:
            conn = sqlite3.connect(
                self.database,
                timeout=self.busy_timeout,
                isolation_level=None,
                check_same_thread=False,
            )
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA foreign_keys=ON")
            self._conn = conn
        return self

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None
            self._depth = 0
            self._after_commit.clear()

    def __enter__(self) -> GamificationStore:
        return self.open()

    def __exit__(self, *exc_info) -> None:
        self.close()

    @property
    def connection(self):
        if self._conn is None:
            raise RuntimeError("GamificationStore is not open")
        return self._conn

    # --- Statements ---
    def execute(self, sql: str, params: tuple = ()):
        return self.connection.execute(sql, params)

    def executescript(self, sql: str) -> None:
        self.connection.executescript(sql)

    def insert(self, sql: str, params: tuple = ()) -> int:
        """Run an INSERT into a table with an ``id`` column and return the new id."""
        if self.is_postgres:
            return self.execute(sql + " RETURNING id", params).fetchone()["id"]
        return self.execute(sql, params).lastrowid

    # --- Transactions ---
    @property
    def in_transaction(self) -> bool:
        return self._depth > 0

    @contextmanager
    def transaction(self) -> Iterator[GamificationStore]:
        if self._depth:
            self._depth += 1
            try:
                yield self
            finally:
                self._depth -= 1
            return

        self.execute("BEGIN IMMEDIATE")
        self._depth = 1
        try:
            yield self
        except BaseException:
            self._depth = 0
            self._after_commit.clear()
            self.execute("ROLLBACK")
            raise
        self._depth = 0
        try:
            self.execute("COMMIT")
        except Exception:
            self._after_commit.clear()
            self.execute("ROLLBACK")
            raise
        callbacks, self._after_commit = self._after_commit, []
        for callback in callbacks:
            callback()

    def call_on_commit(self, callback: Callable[[], None]) -> None:
        """Run ``callback`` once the outermost transaction commits, or now if none is open.

        Callbacks registered in a transaction that rolls back are dropped.
        """
        if self._depth:
            self._after_commit.append(callback)
        else:
            callback()

    def run_in_transaction(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run ``fn`` in a transaction, retrying the whole attempt on lock contention.

        Inside an open transaction ``fn`` simply joins it; retries only make
        sense at the outermost boundary.
        """
        if self._depth:
            return fn(*args, **kwargs)

        retrying = Retrying(
            retry=retry_if_exception(is_transient_error),
            wait=wait_exponential(multiplier=0.05, max=self.retry_wait_max),
            stop=stop_after_attempt(self.max_retries),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    with self.transaction():
                        result = fn(*args, **kwargs)
        except Exception as exc:
            if is_transient_error(exc):
                raise ConcurrentUpdateConflict(
                    f"Gave up after {self.max_retries} attempts: {exc}"
                ) from exc
            raise
        return result


# ── Schema management ────────────────────────────────────────────────


def init_db(store: GamificationStore) -> None:
    """Execute schema DDL to create all tables."""
    store.executescript(SCHEMA)


def run_migrations(store: GamificationStore) -> None:
    """Apply any unapplied versioned migrations.

    Uses file-based locking so several workers starting at once against
    the same SQLite file migrate it only once.
    """
    lock_file = None
    if not store.is_postgres and store.database != ":memory:":
        lock_path = Path(store.database).with_suffix(".migration.lock")
        try:
            lock_file = open(lock_path, "w")
            fcntl.flock(lock_file, fcntl.LOCK_EX)
        except OSError:
            lock_file = None

    try:
        applied = {
            row["version"]
            for row in store.execute("SELECT version FROM schema_version").fetchall()
        }
        for version, sql in MIGRATIONS:
            if version in applied:
                continue
            try:
                store.executescript(sql)
            except Exception as e:
                err_msg = str(e).lower()
                if "duplicate column" not in err_msg and "already exists" not in err_msg:
                    raise
            with store.transaction():
                store.execute(
                    "INSERT INTO schema_version (version, applied_at) VALUES (?, ?)",
                    (version, to_iso(utcnow())),
                )
            logger.info("Applied migration %s", version)
    finally:
        if lock_file:
            fcntl.flock(lock_file, fcntl.LOCK_UN)
            lock_file.close()


def open_store(config: Mapping[str, Any]) -> GamificationStore:
    """Build and open a store from app config."""
    store = GamificationStore(
        config.get("DATABASE", DEFAULT_DATABASE),
        busy_timeout=float(config.get("SQLITE_BUSY_TIMEOUT", 5.0)),
        max_retries=int(config.get("TRANSACTION_MAX_RETRIES", 5)),
    )
    return store.open()


# ── Flask integration ────────────────────────────────────────────────


def get_store() -> GamificationStore:
    """Return the request's store from Flask g, opening it if needed."""
    if "store" not in g:
        g.store = open_store(current_app.config)
    return g.store


def close_store(e=None) -> None:
    """Teardown handler — close the request's store."""
    store = g.pop("store", None)
    if store is not None:
        store.close()


def ensure_schema(store: GamificationStore) -> None:
    """Create the base schema and apply pending migrations."""
    init_db(store)
    run_migrations(store)


def init_app(app) -> None:
    """Register teardown so each request's store is closed."""
    app.teardown_appcontext(close_store)
