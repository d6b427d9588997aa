"""
Embedding providers.

The engine never owns a model: callers construct an :class:`EmbeddingProvider`
and inject it. ``embed()`` is the only awaited, potentially slow call;
``cosine_similarity()`` is computed locally.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Sequence

import numpy as np

from ..config import EmbeddingSettings
from ..errors import EmbeddingError

logger = logging.getLogger(__name__)

# Import sentence transformers with fallback
try:
    from sentence_transformers import SentenceTransformer

    SENTENCE_TRANSFORMERS_AVAILABLE = True
except ImportError:
    SENTENCE_TRANSFORMERS_AVAILABLE = False


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity clamped to [0, 1].

    Opposite vectors score 0, not -1: for ranking and dedup anything at or
    below orthogonal is simply "unrelated".
    """
    va = np.asarray(a, dtype=np.float32)
    vb = np.asarray(b, dtype=np.float32)
    if va.shape != vb.shape:
        raise ValueError(f"Vector dimension mismatch: {va.shape[0]} vs {vb.shape[0]}")
    norm = float(np.linalg.norm(va) * np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(min(1.0, max(0.0, float(np.dot(va, vb)) / norm)))


class EmbeddingProvider(ABC):
    """Text → fixed-dimension float vector."""

    dimension: int | None = None

    @abstractmethod
    async def embed(self, text: str) -> list[float]:
        """Return the embedding for *text*; raise :class:`EmbeddingError` on failure."""

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        return [await self.embed(t) for t in texts]

    def cosine_similarity(self, a: Sequence[float], b: Sequence[float]) -> float:
        return cosine_similarity(a, b)


class SentenceTransformerProvider(EmbeddingProvider):
    """Local sentence-transformers model, loaded lazily on first use."""

    def __init__(self, config: EmbeddingSettings | None = None):
        self.config = config or EmbeddingSettings()
        self.dimension = self.config.dimension
        self._model: SentenceTransformer | None = None
        self._model_lock = threading.Lock()

    def _load_model(self) -> SentenceTransformer:
        if not SENTENCE_TRANSFORMERS_AVAILABLE:
            raise EmbeddingError("sentence_transformers not installed. Install with: pip install sentence-transformers")

        # Double-checked so concurrent first calls load the model once
        if self._model is None:
            with self._model_lock:
                if self._model is None:
                    logger.info(f"Loading embedding model: {self.config.model_name}")
                    self._model = SentenceTransformer(self.config.model_name, device=self.config.device)
                    logger.info(f"Loaded model: {self.config.model_name}")
        return self._model

    def _encode(self, texts: list[str]) -> list[list[float]]:
        model = self._load_model()
        vectors = model.encode(texts, normalize_embeddings=True, convert_to_numpy=True)
        return [v.tolist() for v in vectors]

    async def embed(self, text: str) -> list[float]:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        try:
            vectors = await asyncio.to_thread(self._encode, texts)
        except EmbeddingError:
            raise
        except Exception as e:
            logger.error(f"Failed to generate embedding: {e.__class__.__name__}: {e}")
            raise EmbeddingError(str(e)) from e

        if not vectors or not vectors[0]:
            raise EmbeddingError("Generated embedding is empty")
        if self.dimension is not None and len(vectors[0]) != self.dimension:
            logger.warning(f"Model produced {len(vectors[0])}-d vectors, configured dimension is {self.dimension}")
            self.dimension = len(vectors[0])
        return vectors
