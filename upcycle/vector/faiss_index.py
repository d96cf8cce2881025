"""
Persisted FAISS index mapping record ids to material embeddings.

The flat vector store is append-only. Updating or deleting an id only marks its
mapping entry removed; the row itself is reclaimed by rebuild(). The index is a
projection of Record embeddings and can always be rebuilt from the store.
"""

import json
import math
import os
import threading
from pathlib import Path
from typing import Dict, List, Optional, Sequence

import numpy as np

from .types import VectorIndexEntry, QueryResult
from ..core.errors import StorageError
from ..util.logging import logger


class NoValidVectorsError(ValueError):
    """Every vector in an add batch failed validation."""


class VectorIndex:
    """FAISS IndexFlatL2 plus a JSON id-mapping sidecar."""

    def __init__(self, index_path: str, mapping_path: str, dimension: int = 384):
        """
        Args:
            index_path: Where the FAISS index blob is persisted
            mapping_path: Where the JSON array of {id, index, removed} is persisted
            dimension: Dimension of the vectors (384 for all-MiniLM-L6-v2)
        """
        try:
            import faiss
            self.faiss = faiss
        except ImportError:
            raise ImportError("FAISS not installed. Please install faiss-cpu package.")

        self.index_path = Path(index_path)
        self.mapping_path = Path(mapping_path)
        self.dimension = dimension

        self.index = None
        self._by_position: Dict[int, VectorIndexEntry] = {}
        self._active: Dict[str, VectorIndexEntry] = {}
        self.is_initialized = False
        self._lock = threading.RLock()

    def initialize(self) -> None:
        """Load the persisted index and mapping, or start empty. Idempotent."""
        if self.is_initialized:
            return

        with self._lock:
            if self.is_initialized:
                return

            self.index_path.parent.mkdir(parents=True, exist_ok=True)
            self.mapping_path.parent.mkdir(parents=True, exist_ok=True)

            loaded = False
            if self.index_path.exists():
                try:
                    loaded = self._load()
                except (OSError, RuntimeError, ValueError, KeyError) as e:
                    logger.warning(f"Failed to load vector index from {self.index_path}: {e}")

            if not loaded:
                self.index = self.faiss.IndexFlatL2(self.dimension)
                self._by_position = {}
                self._active = {}
                logger.log_vector_operation("created", 0, {"dimension": self.dimension})

            self.is_initialized = True

    def _load(self) -> bool:
        index = self.faiss.read_index(str(self.index_path))
        if index.d != self.dimension:
            logger.warning(f"Persisted index has dimension {index.d}, expected {self.dimension}; starting empty")
            return False

        entries = []
        if self.mapping_path.exists():
            with open(self.mapping_path, "r", encoding="utf-8") as f:
                entries = [VectorIndexEntry.from_dict(item) for item in json.load(f)]

        by_position = {}
        active = {}
        for entry in entries:
            if entry.removed or entry.index >= index.ntotal:
                continue
            previous = active.get(entry.id)
            if previous is not None:
                # Keep the newest row for an id
                if previous.index > entry.index:
                    continue
                previous.removed = True
            by_position[entry.index] = entry
            active[entry.id] = entry

        self.index = index
        self._by_position = by_position
        self._active = active
        logger.log_vector_operation("loaded", len(active), {"rows": index.ntotal})
        return True

    def _validate(self, vector) -> Optional[np.ndarray]:
        try:
            array = np.asarray(vector, dtype=np.float32)
        except (TypeError, ValueError):
            return None
        if array.ndim != 1 or array.shape[0] != self.dimension:
            return None
        if not np.all(np.isfinite(array)):
            return None
        return array

    def add_vectors(self, vectors: Sequence[Sequence[float]], ids: Sequence[str]) -> int:
        """
        Append vectors for ids and persist. Returns the number of vectors added.

        Vectors with the wrong dimension are skipped and logged. An id that is
        already present has its old entry marked removed, so searches only ever
        see its newest vector.

        Raises:
            ValueError: vectors and ids are empty or of different lengths
            NoValidVectorsError: no vector in the batch passed validation
            StorageError: the index could not be persisted
        """
        if not vectors or not ids:
            raise ValueError("Vectors and IDs must be non-empty sequences")
        if len(vectors) != len(ids):
            raise ValueError("Vectors and IDs must have the same length")

        self.initialize()

        valid_vectors = []
        valid_ids = []
        for vector, record_id in zip(vectors, ids):
            array = self._validate(vector)
            if array is None:
                logger.log_vector_operation("skipped", 1, {
                    "record_id": record_id,
                    "expected_dimension": self.dimension,
                    "reason": "invalid vector"
                }, status="skipped")
                continue
            valid_vectors.append(array)
            valid_ids.append(str(record_id))

        if not valid_vectors:
            raise NoValidVectorsError("No valid vectors to add")

        with self._lock:
            start = self.index.ntotal
            self.index.add(np.vstack(valid_vectors).astype(np.float32))

            for offset, record_id in enumerate(valid_ids):
                previous = self._active.get(record_id)
                if previous is not None:
                    previous.removed = True
                entry = VectorIndexEntry(id=record_id, index=start + offset)
                self._by_position[entry.index] = entry
                self._active[record_id] = entry

            self.save()

        logger.log_vector_operation("added", len(valid_vectors), {"rows": self.index.ntotal})
        return len(valid_vectors)

    def search(self, query_vector: Sequence[float], k: int = 5) -> List[QueryResult]:
        """
        Return up to k live neighbours of query_vector, best first.

        Scores are 1 - d/2 for the squared L2 distance d between normalized
        vectors, which equals their cosine similarity, clamped into [0, 1].
        """
        self.initialize()

        if k <= 0 or self.index.ntotal == 0 or not self._active:
            return []

        query = np.asarray(query_vector, dtype=np.float32).reshape(1, -1)
        if query.shape[1] != self.dimension:
            raise ValueError(f"Query dimension {query.shape[1]} does not match index dimension {self.dimension}")

        with self._lock:
            # Over-fetch so soft-deleted rows cannot crowd live ones out of the top k
            dead_rows = self.index.ntotal - len(self._active)
            fetch = min(self.index.ntotal, k + dead_rows)
            distances, labels = self.index.search(query, fetch)

            results = []
            for distance, label in zip(distances[0], labels[0]):
                if label < 0:
                    continue
                entry = self._by_position.get(int(label))
                if entry is None or entry.removed:
                    continue
                score = min(1.0, max(0.0, 1.0 - float(distance) / 2.0))
                if math.isnan(score):
                    continue
                results.append(QueryResult(id=entry.id, score=score))

        results.sort(key=lambda result: result.score, reverse=True)
        return results[:k]

    def remove_vectors(self, ids: Sequence[str]) -> int:
        """Soft-delete the live entries of ids. Unknown ids are ignored."""
        self.initialize()

        removed = 0
        with self._lock:
            for record_id in ids:
                entry = self._active.pop(str(record_id), None)
                if entry is not None:
                    entry.removed = True
                    removed += 1

            if removed:
                self.save()

        logger.log_vector_operation("removed", removed)
        return removed

    def rebuild(self, vectors: Sequence[Sequence[float]], ids: Sequence[str]) -> int:
        """Replace the whole index with the given vectors, reclaiming dead rows."""
        if len(vectors) != len(ids):
            raise ValueError("Vectors and IDs must have the same length")

        with self._lock:
            self.index = self.faiss.IndexFlatL2(self.dimension)
            self._by_position = {}
            self._active = {}
            self.is_initialized = True

            if vectors:
                return self.add_vectors(vectors, ids)

            self.save()
            return 0

    def save(self) -> None:
        """Atomically write the index blob and the active mapping."""
        if not self.is_initialized:
            return

        with self._lock:
            active = sorted(self._active.values(), key=lambda entry: entry.index)
            index_tmp = self.index_path.with_name(self.index_path.name + ".tmp")
            mapping_tmp = self.mapping_path.with_name(self.mapping_path.name + ".tmp")
            try:
                self.index_path.parent.mkdir(parents=True, exist_ok=True)
                self.faiss.write_index(self.index, str(index_tmp))
                with open(mapping_tmp, "w", encoding="utf-8") as f:
                    json.dump([entry.to_dict() for entry in active], f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(index_tmp, self.index_path)
                os.replace(mapping_tmp, self.mapping_path)
            except (OSError, RuntimeError) as e:
                logger.log_vector_operation("save", len(active), {"error": str(e)}, status="failed")
                raise StorageError(f"Failed to save vector index: {e}") from e

    def size(self) -> int:
        """Number of live (searchable) vectors."""
        self.initialize()
        return len(self._active)

    def total_rows(self) -> int:
        """Rows in the underlying store, including soft-deleted ones."""
        self.initialize()
        return self.index.ntotal

    def contains(self, record_id: str) -> bool:
        self.initialize()
        return str(record_id) in self._active
