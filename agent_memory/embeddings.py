"""
Embedding providers.

The memory engines only depend on the ``EmbeddingProvider`` interface.
Embedding failures never abort a store call: ``embed_or_zero`` degrades
to a zero vector of the configured dimensionality.
"""

import asyncio
import hashlib
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Optional

import numpy as np

from .errors import EmbeddingError
from .telemetry import get_logger

logger = get_logger(__name__)


class EmbeddingProvider(ABC):
    """Text → fixed-length vector."""

    dim: int

    @abstractmethod
    async def embed(self, text: str) -> np.ndarray:
        """Embed a single text."""


class HashingEmbedder(EmbeddingProvider):
    """
    Deterministic embedder seeded from a blake2b digest of the text.

    Identical texts map to identical unit vectors; unrelated texts are
    close to orthogonal. Useful for local runs without a model.
    """

    def __init__(self, dim: int = 384):
        self.dim = dim

    async def embed(self, text: str) -> np.ndarray:
        digest = hashlib.blake2b(text.encode("utf-8"), digest_size=8).digest()
        rng = np.random.default_rng(int.from_bytes(digest, "little"))
        vector = rng.standard_normal(self.dim).astype(np.float32)
        norm = np.linalg.norm(vector)
        return vector / norm if norm > 0 else vector


class SentenceTransformerEmbedder(EmbeddingProvider):
    """
    Adapter for a sentence-transformers model.

    Usage:
        >>> embedder = SentenceTransformerEmbedder("all-MiniLM-L6-v2")
        >>> vector = await embedder.embed("hello")
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2", model: Optional[Any] = None):
        self.model_name = model_name
        self._model = model
        self.dim = model.get_sentence_embedding_dimension() if model is not None else 384

    def _load(self) -> Any:
        if self._model is None:
            from sentence_transformers import SentenceTransformer

            self._model = SentenceTransformer(self.model_name)
            self.dim = self._model.get_sentence_embedding_dimension()
        return self._model

    async def embed(self, text: str) -> np.ndarray:
        model = await asyncio.to_thread(self._load)
        vector = await asyncio.to_thread(model.encode, text, normalize_embeddings=True)
        return np.asarray(vector, dtype=np.float32)


class CachingEmbedder(EmbeddingProvider):
    """
    Wrap a provider with a bounded in-process cache keyed by text digest.

    Tracks hits/misses like the persisted embedding cache does.
    """

    def __init__(self, provider: EmbeddingProvider, capacity: int = 1024):
        self.provider = provider
        self.dim = provider.dim
        self.capacity = capacity
        self._cache: "OrderedDict[str, np.ndarray]" = OrderedDict()
        self.hits = 0
        self.misses = 0

    @staticmethod
    def _cache_key(text: str) -> str:
        return hashlib.blake2b(text.encode("utf-8"), digest_size=16).hexdigest()

    async def embed(self, text: str) -> np.ndarray:
        key = self._cache_key(text)
        cached = self._cache.get(key)
        if cached is not None:
            self.hits += 1
            self._cache.move_to_end(key)
            return cached

        self.misses += 1
        vector = await self.provider.embed(text)
        self._cache[key] = vector
        if len(self._cache) > self.capacity:
            self._cache.popitem(last=False)
        return vector

    def get_stats(self) -> dict:
        """Get cache statistics."""
        total = self.hits + self.misses
        return {
            "hits": self.hits,
            "misses": self.misses,
            "total": total,
            "hit_rate": self.hits / total if total > 0 else 0.0,
            "size": len(self._cache),
        }


async def embed_or_zero(provider: EmbeddingProvider, text: str, dim: int) -> np.ndarray:
    """
    Embed ``text``; on any provider failure or length mismatch, return zeros.

    Args:
        provider: Embedding provider
        text: Text to embed
        dim: Configured dimensionality

    Returns:
        float32 vector of length ``dim``
    """
    try:
        vector = np.asarray(await provider.embed(text), dtype=np.float32).reshape(-1)
        if vector.shape[0] != dim:
            raise EmbeddingError(f"expected {dim} dimensions, got {vector.shape[0]}")
        return vector
    except Exception as e:
        logger.warning("embedding_degraded", error=str(e), dim=dim)
        return np.zeros(dim, dtype=np.float32)
