"""
Prompt Cache: trimmed prompt text -> ids of the records it produced.

Keyed on the exact prompt string, not its normalized materials; near-duplicate
phrasing is caught by the vector index instead. last_accessed_at only ever
increases so an external retention job can reap by recency.
"""

import json
import sqlite3
import time
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from .db import connect, transaction
from .errors import InputError, StorageError
from ..util.logging import logger


@dataclass
class PromptCacheEntry:
    prompt_text: str
    result_record_ids: List[str]
    embedding: List[float] = field(default_factory=list)
    created_at: float = 0.0
    last_accessed_at: float = 0.0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "PromptCacheEntry":
        return cls(
            prompt_text=row["prompt_text"],
            result_record_ids=json.loads(row["result_record_ids"]),
            embedding=json.loads(row["embedding"] or "[]"),
            created_at=row["created_at"],
            last_accessed_at=row["last_accessed_at"],
        )


def _key(prompt_text: str) -> str:
    if not isinstance(prompt_text, str) or not prompt_text.strip():
        raise InputError("Prompt text must be a non-empty string")
    return prompt_text.strip()


class PromptCache:
    """SQLite-backed exact-text prompt cache."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    def get(self, prompt_text: str) -> Optional[PromptCacheEntry]:
        """Look up a prompt; a hit refreshes last_accessed_at."""
        key = _key(prompt_text)
        try:
            with connect(self.db_path) as conn:
                with transaction(conn):
                    cursor = conn.execute(
                        """
                        UPDATE prompt_cache
                        SET last_accessed_at = MAX(?, last_accessed_at + 0.000001)
                        WHERE prompt_text = ?
                        """,
                        (time.time(), key)
                    )
                    if cursor.rowcount == 0:
                        logger.log_cache_event("miss", key)
                        return None
                    row = conn.execute("SELECT * FROM prompt_cache WHERE prompt_text = ?", (key,)).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Prompt cache lookup failed: {e}") from e

        entry = PromptCacheEntry.from_row(row)
        logger.log_cache_event("hit", key, {"results": len(entry.result_record_ids)})
        return entry

    def upsert(self, prompt_text: str, result_ids: Sequence[str], embedding: Sequence[float] = ()) -> PromptCacheEntry:
        """Insert or replace the result set stored for a prompt."""
        key = _key(prompt_text)
        now = time.time()
        try:
            with connect(self.db_path) as conn:
                conn.execute(
                    """
                    INSERT INTO prompt_cache (prompt_text, result_record_ids, embedding, created_at, last_accessed_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(prompt_text) DO UPDATE SET
                        result_record_ids = excluded.result_record_ids,
                        embedding = excluded.embedding,
                        last_accessed_at = MAX(excluded.last_accessed_at, prompt_cache.last_accessed_at + 0.000001)
                    """,
                    (key, json.dumps(list(result_ids)), json.dumps([float(x) for x in embedding]), now, now)
                )
                row = conn.execute("SELECT * FROM prompt_cache WHERE prompt_text = ?", (key,)).fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Prompt cache upsert failed: {e}") from e

        logger.log_cache_event("upsert", key, {"results": len(result_ids)})
        return PromptCacheEntry.from_row(row)

