import asyncio
import logging
import os
import sqlite3

from attendbot import settings

logger = logging.getLogger("attendbot.db")

# serialize DB writes to avoid sqlite "database is locked"
db_write_lock = asyncio.Lock()


# =========================
# DATABASE HELPERS
# =========================
def _apply_sqlite_pragmas(conn: sqlite3.Connection):
    conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA synchronous=NORMAL;")
    conn.execute("PRAGMA busy_timeout=10000;")  # ms


def connect() -> sqlite3.Connection:
    directory = os.path.dirname(settings.DB_PATH)
    if directory:
        os.makedirs(directory, exist_ok=True)
    conn = sqlite3.connect(settings.DB_PATH, timeout=10)
    conn.row_factory = sqlite3.Row
    _apply_sqlite_pragmas(conn)
    return conn


def _existing_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row["name"] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def _ensure_columns(conn: sqlite3.Connection, table: str, columns: dict[str, str]):
    present = _existing_columns(conn, table)
    for name, ddl in columns.items():
        if name not in present:
            conn.execute(f"ALTER TABLE {table} ADD COLUMN {name} {ddl};")
            logger.info("db_column_added table=%s column=%s", table, name)


def init_db():
    with connect() as conn:
        # one active event per guild; rows are removed once the event is finalized
        conn.execute("""
        CREATE TABLE IF NOT EXISTS active_events (
            guild_id INTEGER PRIMARY KEY,
            channel_id INTEGER NOT NULL,
            event_type TEXT NOT NULL DEFAULT 'movie',
            event_date TEXT NOT NULL,                 -- YYYY-MM-DD (local)
            started_at_utc TEXT NOT NULL,
            ended_at_utc TEXT
        );
        """)
        conn.execute("""
        CREATE TABLE IF NOT EXISTS active_sessions (
            guild_id INTEGER NOT NULL,
            user_id INTEGER NOT NULL,
            event_date TEXT NOT NULL,
            current_session_start_utc TEXT,           -- NULL when not in the channel
            accumulated_minutes INTEGER NOT NULL DEFAULT 0,
            longest_session_minutes INTEGER NOT NULL DEFAULT 0,
            last_persisted_at_utc TEXT NOT NULL,
            PRIMARY KEY (guild_id, user_id, event_date)
        );
        """)
        _ensure_columns(conn, "active_sessions", {
            "carried_minutes": "INTEGER NOT NULL DEFAULT 0",
            "adjusted_by": "INTEGER",
            "adjustment_reason": "TEXT",
        })
        conn.execute("""
        CREATE TABLE IF NOT EXISTS event_attendance (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            guild_id INTEGER NOT NULL,
            user_id INTEGER NOT NULL,
            event_date TEXT NOT NULL,
            event_type TEXT NOT NULL DEFAULT 'movie',
            voice_channel_id INTEGER,
            duration_minutes INTEGER NOT NULL,
            longest_session_minutes INTEGER NOT NULL,
            qualified INTEGER,                        -- 1 / 0 / NULL (unknown)
            created_at_utc TEXT NOT NULL,
            UNIQUE(guild_id, user_id, event_date)
        );
        """)
        _ensure_columns(conn, "event_attendance", {
            "adjustment_type": "TEXT NOT NULL DEFAULT 'automatic'",
            "adjusted_by": "INTEGER",
            "adjustment_reason": "TEXT",
            "event_start_time_utc": "TEXT",
            "event_end_time_utc": "TEXT",
            "updated_at_utc": "TEXT",
        })
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_event_attendance_type "
            "ON event_attendance(guild_id, event_type, event_date);"
        )
        # append-only; never updated or deleted
        conn.execute("""
        CREATE TABLE IF NOT EXISTS attendance_adjustments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            guild_id INTEGER NOT NULL,
            user_id INTEGER NOT NULL,
            event_date TEXT NOT NULL,
            event_type TEXT NOT NULL,
            operation TEXT NOT NULL,                  -- 'add' / 'credit' / 'bump'
            minutes INTEGER,
            actor_id INTEGER NOT NULL,
            reason TEXT,
            created_at_utc TEXT NOT NULL
        );
        """)
        conn.execute("""
        CREATE TABLE IF NOT EXISTS guild_event_config (
            guild_id INTEGER PRIMARY KEY,
            movie_threshold_minutes INTEGER NOT NULL DEFAULT 30,
            movie_attendance_mode TEXT NOT NULL DEFAULT 'cumulative',
            game_qualification_percentage INTEGER NOT NULL DEFAULT 50,
            game_attendance_mode TEXT NOT NULL DEFAULT 'cumulative',
            updated_at_utc TEXT
        );
        """)
        conn.execute("""
        CREATE TABLE IF NOT EXISTS role_tiers (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            guild_id INTEGER NOT NULL,
            tier_type TEXT NOT NULL,                  -- 'movie' / 'game'
            tier_name TEXT NOT NULL,
            role_id INTEGER NOT NULL,
            threshold INTEGER NOT NULL,
            UNIQUE(guild_id, tier_type, tier_name)
        );
        """)
        conn.execute("""
        CREATE TABLE IF NOT EXISTS role_assignments (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            guild_id INTEGER NOT NULL,
            user_id INTEGER NOT NULL,
            role_id INTEGER NOT NULL,
            role_name TEXT,
            action TEXT NOT NULL,                     -- 'add' / 'remove' / 'skipped' / 'failed'
            reason TEXT,
            triggered_by TEXT,
            details TEXT,
            created_at_utc TEXT NOT NULL
        );
        """)
    logger.info("db_initialized path=%s", settings.DB_PATH)
