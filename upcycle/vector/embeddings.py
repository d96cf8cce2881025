"""
Embedding providers for normalized material keywords.
The sentence-transformers model is loaded lazily, once per process.
"""

from abc import ABC, abstractmethod
import hashlib
import threading
from typing import List, Sequence

import numpy as np

from ..core.errors import InvalidInputError


def _keywords_to_text(keywords) -> str:
    if not isinstance(keywords, (list, tuple)) or len(keywords) == 0:
        raise InvalidInputError("Materials must be a non-empty list of keywords")
    if not all(isinstance(keyword, str) and keyword.strip() for keyword in keywords):
        raise InvalidInputError("Materials must contain only non-empty strings")
    return " ".join(keywords)


class IEmbeddingProvider(ABC):
    """Abstract interface for embedding providers."""

    @abstractmethod
    def embed_text(self, text: str) -> List[float]:
        """Generate an L2-normalized embedding vector for given text."""
        pass

    @abstractmethod
    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        pass

    def embed(self, keywords: Sequence[str]) -> List[float]:
        """Join keywords with spaces and embed the result.

        Raises InvalidInputError when keywords is not a non-empty list.
        """
        return self.embed_text(_keywords_to_text(keywords))


class DeterministicHashEmbedding(IEmbeddingProvider):
    """Deterministic hash-based embedding provider for tests and offline runs.

    Each token seeds its own pseudo-random direction; the text vector is the
    normalized sum, so texts sharing tokens land close together.
    """

    def __init__(self, dimension: int = 384):
        self.dimension = dimension

    def _token_vector(self, token: str) -> np.ndarray:
        seed = int.from_bytes(hashlib.sha256(token.encode("utf-8")).digest()[:8], "little")
        rng = np.random.default_rng(seed)
        return rng.standard_normal(self.dimension)

    def embed_text(self, text: str) -> List[float]:
        """Generate deterministic embedding vector using hash-seeded tokens."""
        tokens = text.lower().split() or [""]
        vector = np.zeros(self.dimension, dtype=np.float64)
        for token in tokens:
            vector += self._token_vector(token)

        norm = np.linalg.norm(vector)
        if norm > 0:
            vector = vector / norm
        return vector.astype(np.float32).tolist()

    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        return self.dimension


class SentenceTransformerEmbedding(IEmbeddingProvider):
    """Sentence transformers embedding provider using pre-trained models.

    all-MiniLM-L6-v2 mean-pools token embeddings into 384 dimensions; vectors
    are L2-normalized so L2 distance and cosine similarity agree.
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2"):
        self.model_name = model_name
        self._model = None
        self._dimension = None
        self._load_lock = threading.Lock()

    @property
    def model(self):
        if self._model is None:
            with self._load_lock:
                if self._model is None:
                    from sentence_transformers import SentenceTransformer
                    self._model = SentenceTransformer(self.model_name)
        return self._model

    def embed_text(self, text: str) -> List[float]:
        """Generate embedding vector using sentence transformers."""
        embedding = self.model.encode(text, convert_to_numpy=True, normalize_embeddings=True)
        return embedding.astype(np.float32).tolist()

    def get_dimension(self) -> int:
        """Get the dimension of the embedding vectors."""
        if self._dimension is None:
            self._dimension = self.model.get_sentence_embedding_dimension()
        return self._dimension


_provider = None
_provider_lock = threading.Lock()


def get_embedding_provider() -> IEmbeddingProvider:
    """Process-wide provider selected by EMBED_PROVIDER, created on first use."""
    global _provider
    if _provider is None:
        with _provider_lock:
            if _provider is None:
                from ..core.config import EMBED_PROVIDER, EMBED_MODEL_NAME, EMBED_DIM
                if EMBED_PROVIDER == "hash":
                    _provider = DeterministicHashEmbedding(EMBED_DIM)
                else:
                    _provider = SentenceTransformerEmbedding(EMBED_MODEL_NAME)
    return _provider
