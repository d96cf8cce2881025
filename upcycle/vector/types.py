"""
Value types exchanged with the vector index.
"""

from dataclasses import dataclass, asdict


@dataclass
class VectorIndexEntry:
    """Maps an external record id to a row of the flat vector store."""

    id: str
    """Record id the vector belongs to"""

    index: int
    """Row position in the underlying store; append-only, never reused"""

    removed: bool = False
    """Soft-delete marker; removed rows stay in the store until a rebuild"""

    def to_dict(self):
        return asdict(self)

    @classmethod
    def from_dict(cls, data):
        return cls(id=str(data["id"]), index=int(data["index"]), removed=bool(data.get("removed", False)))


@dataclass
class QueryResult:
    """Represents a search result from the vector index."""

    id: str
    """Identifier for the matching record"""

    score: float
    """Similarity score of the match (0-1)"""
