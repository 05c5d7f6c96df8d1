"""Unit tests for embedding providers and zero-vector degradation."""

import numpy as np
import pytest

from agent_memory.embeddings import (
    CachingEmbedder,
    EmbeddingProvider,
    HashingEmbedder,
    SentenceTransformerEmbedder,
    embed_or_zero,
)

pytestmark = pytest.mark.asyncio


class CountingEmbedder(EmbeddingProvider):
    def __init__(self, dim=8):
        self.dim = dim
        self.calls = 0

    async def embed(self, text):
        self.calls += 1
        return np.ones(self.dim, dtype=np.float32)


class WrongDimEmbedder(EmbeddingProvider):
    dim = 8

    async def embed(self, text):
        return np.ones(3, dtype=np.float32)


class FakeSentenceModel:
    """Stands in for a loaded sentence-transformers model."""

    def __init__(self, dim=6):
        self.dim = dim
        self.calls = []

    def get_sentence_embedding_dimension(self):
        return self.dim

    def encode(self, text, normalize_embeddings=False):
        self.calls.append((text, normalize_embeddings))
        return [0.5] * self.dim


class BrokenEmbedder(EmbeddingProvider):
    dim = 8

    async def embed(self, text):
        raise ConnectionError("timeout")


async def test_hashing_embedder_is_deterministic():
    embedder = HashingEmbedder(dim=32)
    a = await embedder.embed("same text")
    b = await embedder.embed("same text")
    c = await embedder.embed("other text")

    assert a.shape == (32,)
    assert a.dtype == np.float32
    np.testing.assert_array_equal(a, b)
    assert np.linalg.norm(a) == pytest.approx(1.0, abs=1e-5)
    assert not np.array_equal(a, c)


async def test_embed_or_zero_passes_through():
    vector = await embed_or_zero(CountingEmbedder(), "x", dim=8)
    np.testing.assert_array_equal(vector, np.ones(8, dtype=np.float32))


async def test_embed_or_zero_on_provider_failure():
    vector = await embed_or_zero(BrokenEmbedder(), "x", dim=8)
    assert vector.shape == (8,)
    assert not vector.any()


async def test_embed_or_zero_on_wrong_dimension():
    vector = await embed_or_zero(WrongDimEmbedder(), "x", dim=8)
    assert vector.shape == (8,)
    assert not vector.any()


async def test_caching_embedder_hits():
    inner = CountingEmbedder()
    cached = CachingEmbedder(inner, capacity=2)

    await cached.embed("a")
    await cached.embed("a")
    await cached.embed("b")
    await cached.embed("c")  # evicts "a"
    await cached.embed("a")

    assert inner.calls == 4
    stats = cached.get_stats()
    assert stats["hits"] == 1
    assert stats["misses"] == 4
    assert stats["size"] == 2
    assert stats["hit_rate"] == pytest.approx(0.2)


async def test_sentence_transformer_embedder_uses_injected_model():
    model = FakeSentenceModel(dim=6)
    embedder = SentenceTransformerEmbedder("test-model", model=model)

    vector = await embedder.embed("hello")

    assert embedder.dim == 6
    assert model.calls == [("hello", True)]
    assert vector.dtype == np.float32
    np.testing.assert_array_equal(vector, np.full(6, 0.5, dtype=np.float32))
