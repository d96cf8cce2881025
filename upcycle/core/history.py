"""
Per-user prompt history. One row per (user, prompt); repeating a prompt bumps it.
"""

import sqlite3
import time
from dataclasses import dataclass
from typing import List

from .db import connect
from .errors import ForbiddenError, NotFoundError, StorageError


@dataclass
class PromptHistoryEntry:
    id: int
    user_id: str
    prompt: str
    created_at: float
    updated_at: float


class PromptHistory:
    """SQLite-backed prompt history."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    def record(self, user_id: str, prompt: str) -> None:
        prompt = (prompt or "").strip()
        if not user_id or not prompt:
            return

        now = time.time()
        try:
            with connect(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT INTO prompt_history (user_id, prompt, created_at, updated_at)
                    VALUES (?, ?, ?, ?)
                    ON CONFLICT(user_id, prompt) DO UPDATE SET updated_at = excluded.updated_at
                    """,
                    (user_id, prompt, now, now)
                )
        except sqlite3.Error as e:
            raise StorageError(f"Failed to record prompt history: {e}") from e

    def recent(self, user_id: str, limit: int = 5) -> List[PromptHistoryEntry]:
        try:
            with connect(self.db_path) as conn:
                rows = conn.execute(
                    """
                    SELECT id, user_id, prompt, created_at, updated_at FROM prompt_history
                    WHERE user_id = ? ORDER BY updated_at DESC, id DESC LIMIT ?
                    """,
                    (user_id, limit)
                ).fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Failed to read prompt history: {e}") from e
        return [PromptHistoryEntry(**dict(row)) for row in rows]

    def delete(self, user_id: str, entry_id: int) -> None:
        try:
            with connect(self.db_path) as conn:
                row = conn.execute("SELECT user_id FROM prompt_history WHERE id = ?", (entry_id,)).fetchone()
                if row is None:
                    raise NotFoundError(f"History entry {entry_id} not found")
                if row["user_id"] != user_id:
                    raise ForbiddenError("Not authorized to delete this history entry")
                conn.execute("DELETE FROM prompt_history WHERE id = ?", (entry_id,))
        except sqlite3.Error as e:
            raise StorageError(f"Failed to delete prompt history: {e}") from e
