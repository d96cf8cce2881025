"""
SQLite connection management and schema for records, prompt cache and history.
"""

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from typing import Generator

from .errors import StorageError
from ..util.logging import logger


@contextmanager
def connect(db_path: str) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite connection in autocommit mode with dict-like rows.

    Single statements are atomic on their own; multi-statement updates go
    through transaction().
    """
    try:
        conn = sqlite3.connect(db_path, timeout=30, isolation_level=None)
    except sqlite3.Error as e:
        raise StorageError(f"Cannot open database {db_path}: {e}") from e

    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


@contextmanager
def transaction(conn: sqlite3.Connection) -> Generator[sqlite3.Connection, None, None]:
    """Write transaction that takes the database write lock up front."""
    conn.execute("BEGIN IMMEDIATE")
    try:
        yield conn
    except BaseException:
        conn.execute("ROLLBACK")
        raise
    else:
        conn.execute("COMMIT")


def init_db(db_path: str) -> None:
    """Initialize the database with pragma settings and required tables."""
    Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    try:
        with connect(db_path) as conn:
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")

            conn.execute("""
                CREATE TABLE IF NOT EXISTS projects (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    input_prompt TEXT NOT NULL DEFAULT '',
                    normalized_materials TEXT NOT NULL DEFAULT '[]',
                    embedding TEXT NOT NULL DEFAULT '[]',
                    materials TEXT NOT NULL DEFAULT '[]',
                    steps TEXT NOT NULL DEFAULT '[]',
                    reference_media TEXT,
                    status TEXT CHECK(status IN ('generating','completed','failed')) NOT NULL DEFAULT 'generating',
                    status_message TEXT,
                    generation_lock INTEGER NOT NULL DEFAULT 0,
                    generation_owner TEXT,
                    generation_started_at REAL,
                    user_rating REAL NOT NULL DEFAULT 0,
                    rank_votes TEXT NOT NULL DEFAULT '[]',
                    rank_score REAL NOT NULL DEFAULT 0,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS prompt_cache (
                    prompt_text TEXT PRIMARY KEY,
                    result_record_ids TEXT NOT NULL,
                    embedding TEXT NOT NULL DEFAULT '[]',
                    created_at REAL NOT NULL,
                    last_accessed_at REAL NOT NULL
                )
            """)

            conn.execute("""
                CREATE TABLE IF NOT EXISTS prompt_history (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    user_id TEXT NOT NULL,
                    prompt TEXT NOT NULL,
                    created_at REAL NOT NULL,
                    updated_at REAL NOT NULL,
                    UNIQUE (user_id, prompt)
                )
            """)

            conn.execute("CREATE INDEX IF NOT EXISTS idx_projects_status_updated ON projects(status, updated_at DESC)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_prompt_cache_accessed ON prompt_cache(last_accessed_at)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_prompt_history_user ON prompt_history(user_id, updated_at DESC)")
    except sqlite3.Error as e:
        raise StorageError(f"Failed to initialize database {db_path}: {e}") from e

    logger.info(f"Database initialized at {db_path}")


def check_db_health(db_path: str) -> bool:
    """Check if database is accessible and has expected tables."""
    try:
        with connect(db_path) as conn:
            cursor = conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
            tables = {row[0] for row in cursor.fetchall()}
            return {"projects", "prompt_cache", "prompt_history"}.issubset(tables)
    except (sqlite3.Error, StorageError) as e:
        logger.error(f"Database health check failed: {e}")
        return False
