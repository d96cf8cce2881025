"""
Vector layer: embeddings of normalized materials and the persisted FAISS index.
The index is advisory; the SQLite record store is the source of truth.
"""

from .types import VectorIndexEntry, QueryResult
from .faiss_index import VectorIndex, NoValidVectorsError
from .embeddings import (
    IEmbeddingProvider,
    DeterministicHashEmbedding,
    SentenceTransformerEmbedding,
    get_embedding_provider,
)

__all__ = [
    'VectorIndexEntry',
    'QueryResult',
    'VectorIndex',
    'NoValidVectorsError',
    'IEmbeddingProvider',
    'DeterministicHashEmbedding',
    'SentenceTransformerEmbedding',
    'get_embedding_provider',
]
