"""
Record Store: persisted project records with their generation lifecycle.

status moves generating -> completed | failed, and failed -> generating only
through an explicit retry. The generation lock is a compare-and-set on the
row, so it holds across worker processes sharing the database file.
"""

import functools
import json
import sqlite3
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from .db import connect, transaction
from .errors import InputError, NotFoundError, StorageError
from ..util.logging import logger

STATUS_GENERATING = "generating"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"

_JSON_COLUMNS = ("normalized_materials", "embedding", "materials", "steps", "rank_votes")


@dataclass
class Record:
    id: str
    name: str
    description: str = ""
    input_prompt: str = ""
    normalized_materials: List[str] = field(default_factory=list)
    embedding: List[float] = field(default_factory=list)
    materials: List[Dict[str, Any]] = field(default_factory=list)
    steps: List[Dict[str, Any]] = field(default_factory=list)
    reference_media: Optional[str] = None
    status: str = STATUS_GENERATING
    status_message: Optional[str] = None
    generation_lock: bool = False
    generation_owner: Optional[str] = None
    generation_started_at: Optional[float] = None
    user_rating: float = 0.0
    rank_votes: List[Dict[str, Any]] = field(default_factory=list)
    rank_score: float = 0.0
    created_at: float = 0.0
    updated_at: float = 0.0

    @property
    def quality(self) -> float:
        """Rating used for ranking: the explicit user rating, else the vote mean."""
        return self.user_rating if self.user_rating else self.rank_score

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Record":
        data = dict(row)
        for column in _JSON_COLUMNS:
            data[column] = json.loads(data[column]) if data[column] else []
        data["generation_lock"] = bool(data["generation_lock"])
        return cls(**data)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "input_prompt": self.input_prompt,
            "normalized_materials": list(self.normalized_materials),
            "materials": list(self.materials),
            "steps": list(self.steps),
            "reference_media": self.reference_media,
            "status": self.status,
            "status_message": self.status_message,
            "generation_lock": self.generation_lock,
            "generation_owner": self.generation_owner,
            "generation_started_at": self.generation_started_at,
            "user_rating": self.user_rating,
            "rank_votes": list(self.rank_votes),
            "rank_score": self.rank_score,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


def _storage_errors(method):
    """Translate sqlite failures into StorageError."""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        try:
            return method(self, *args, **kwargs)
        except sqlite3.Error as e:
            logger.log_operation(f"record_store.{method.__name__}", "failed", {"error": str(e)})
            raise StorageError(f"Record store {method.__name__} failed: {e}") from e
    return wrapper


class ProjectStore:
    """SQLite-backed store for project records."""

    def __init__(self, db_path: str):
        self.db_path = db_path

    @_storage_errors
    def create(self, name: str, input_prompt: str = "", normalized_materials: Sequence[str] = (),
               embedding: Sequence[float] = ()) -> Record:
        """Insert a new record in the generating state, unlocked."""
        now = time.time()
        record = Record(
            id=uuid.uuid4().hex,
            name=name.strip(),
            input_prompt=input_prompt,
            normalized_materials=list(normalized_materials),
            embedding=[float(x) for x in embedding],
            created_at=now,
            updated_at=now,
        )
        with connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO projects (id, name, input_prompt, normalized_materials, embedding,
                                      status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (record.id, record.name, record.input_prompt,
                 json.dumps(record.normalized_materials), json.dumps(record.embedding),
                 record.status, now, now)
            )
        return record

    @_storage_errors
    def get(self, record_id: str) -> Optional[Record]:
        with connect(self.db_path) as conn:
            row = conn.execute("SELECT * FROM projects WHERE id = ?", (record_id,)).fetchone()
        return Record.from_row(row) if row else None

    def require(self, record_id: str) -> Record:
        record = self.get(record_id)
        if record is None:
            raise NotFoundError(f"Project {record_id} not found")
        return record

    @_storage_errors
    def get_many(self, record_ids: Sequence[str], status: str = None) -> List[Record]:
        """Fetch records in the order requested; unknown ids are skipped."""
        if not record_ids:
            return []

        placeholders = ",".join("?" for _ in record_ids)
        query = f"SELECT * FROM projects WHERE id IN ({placeholders})"
        params = list(record_ids)
        if status:
            query += " AND status = ?"
            params.append(status)

        with connect(self.db_path) as conn:
            rows = conn.execute(query, params).fetchall()

        by_id = {row["id"]: Record.from_row(row) for row in rows}
        return [by_id[record_id] for record_id in record_ids if record_id in by_id]

    @_storage_errors
    def acquire_lock(self, record_id: str, owner: str) -> bool:
        """Set the generation lock only if it is free and the record is not completed."""
        now = time.time()
        with connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE projects
                SET generation_lock = 1, generation_owner = ?, generation_started_at = ?, updated_at = ?
                WHERE id = ? AND generation_lock = 0 AND status != ?
                """,
                (owner, now, now, record_id, STATUS_COMPLETED)
            )
            acquired = cursor.rowcount == 1

        logger.log_lock_event(record_id, "acquired" if acquired else "contended", owner)
        return acquired

    @_storage_errors
    def release_lock(self, record_id: str, owner: str = None) -> None:
        """Clear the lock; with owner, only if that owner still holds it."""
        query = """
            UPDATE projects
            SET generation_lock = 0, generation_owner = NULL, generation_started_at = NULL, updated_at = ?
            WHERE id = ?
        """
        params = [time.time(), record_id]
        if owner is not None:
            query += " AND generation_owner = ?"
            params.append(owner)

        with connect(self.db_path) as conn:
            conn.execute(query, params)
        logger.log_lock_event(record_id, "released", owner)

    @_storage_errors
    def mark_generating(self, record_id: str, normalized_materials: Sequence[str] = None,
                        embedding: Sequence[float] = None) -> None:
        assignments = ["status = ?", "status_message = NULL", "updated_at = ?"]
        params: List[Any] = [STATUS_GENERATING, time.time()]
        if normalized_materials is not None:
            assignments.append("normalized_materials = ?")
            params.append(json.dumps(list(normalized_materials)))
        if embedding is not None:
            assignments.append("embedding = ?")
            params.append(json.dumps([float(x) for x in embedding]))
        params.append(record_id)

        with connect(self.db_path) as conn:
            conn.execute(f"UPDATE projects SET {', '.join(assignments)} WHERE id = ?", params)

    @_storage_errors
    def complete(self, record_id: str, details: Dict[str, Any]) -> Record:
        """Write generated content, mark completed and clear the lock in one update."""
        now = time.time()
        with connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE projects
                SET name = COALESCE(NULLIF(?, ''), name),
                    description = ?, materials = ?, steps = ?, reference_media = ?,
                    status = ?, status_message = NULL,
                    generation_lock = 0, generation_owner = NULL, generation_started_at = NULL,
                    updated_at = ?
                WHERE id = ?
                """,
                (details.get("name") or "", details.get("description") or "",
                 json.dumps(details.get("materials") or []), json.dumps(details.get("steps") or []),
                 details.get("reference_media"), STATUS_COMPLETED, now, record_id)
            )
            if cursor.rowcount == 0:
                raise NotFoundError(f"Project {record_id} not found")
        return self.get(record_id)

    @_storage_errors
    def mark_failed(self, record_id: str, message: str) -> None:
        with connect(self.db_path) as conn:
            conn.execute(
                """
                UPDATE projects
                SET status = ?, status_message = ?,
                    generation_lock = 0, generation_owner = NULL, generation_started_at = NULL,
                    updated_at = ?
                WHERE id = ?
                """,
                (STATUS_FAILED, message, time.time(), record_id)
            )

    @_storage_errors
    def add_vote(self, record_id: str, user_id: str, value: int) -> Record:
        """Record a user's 1-5 vote; a later vote from the same user replaces the earlier one."""
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not 1 <= value <= 5:
            raise InputError("Rank must be a number between 1 and 5")
        if not user_id or not str(user_id).strip():
            raise InputError("A user id is required to rank a project")

        with connect(self.db_path) as conn:
            with transaction(conn):
                row = conn.execute("SELECT rank_votes FROM projects WHERE id = ?", (record_id,)).fetchone()
                if row is None:
                    raise NotFoundError(f"Project {record_id} not found")

                votes = [vote for vote in json.loads(row["rank_votes"] or "[]") if vote.get("user_id") != user_id]
                votes.append({"user_id": user_id, "value": value})
                rank_score = sum(vote["value"] for vote in votes) / len(votes)

                conn.execute(
                    "UPDATE projects SET rank_votes = ?, rank_score = ?, updated_at = ? WHERE id = ?",
                    (json.dumps(votes), rank_score, time.time(), record_id)
                )

        return self.get(record_id)

    @_storage_errors
    def list_by_status(self, status: str, page: int = 1, limit: int = 20) -> Tuple[int, List[Record]]:
        """Page through records with the given status, most recently updated first."""
        page = max(1, int(page))
        limit = max(1, int(limit))
        with connect(self.db_path) as conn:
            total = conn.execute("SELECT COUNT(*) FROM projects WHERE status = ?", (status,)).fetchone()[0]
            rows = conn.execute(
                "SELECT * FROM projects WHERE status = ? ORDER BY updated_at DESC LIMIT ? OFFSET ?",
                (status, limit, (page - 1) * limit)
            ).fetchall()
        return total, [Record.from_row(row) for row in rows]

    @_storage_errors
    def list_completed_with_embeddings(self) -> List[Record]:
        with connect(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM projects WHERE status = ? AND embedding != '[]' ORDER BY created_at",
                (STATUS_COMPLETED,)
            ).fetchall()
        return [Record.from_row(row) for row in rows]

    @_storage_errors
    def delete(self, record_id: str) -> bool:
        with connect(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM projects WHERE id = ?", (record_id,))
        return cursor.rowcount == 1

    @_storage_errors
    def release_stale_locks(self, older_than_sec: float) -> int:
        """Clear generation locks held longer than older_than_sec (crashed workers)."""
        cutoff = time.time() - older_than_sec
        with connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE projects
                SET generation_lock = 0, generation_owner = NULL, generation_started_at = NULL, updated_at = ?
                WHERE generation_lock = 1 AND (generation_started_at IS NULL OR generation_started_at < ?)
                """,
                (time.time(), cutoff)
            )
            released = cursor.rowcount

        logger.log_operation("release_stale_locks", "success", {"released": released, "older_than_sec": older_than_sec})
        return released
