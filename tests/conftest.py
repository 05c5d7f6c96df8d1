"""Test configuration and fixtures."""

import hashlib
import re
from typing import List

import numpy as np
import pytest

from agent_memory.config.settings import ProceduralConfig, SemanticConfig
from agent_memory.embeddings import EmbeddingProvider
from agent_memory.memory.events import EventChannel, EventRecorder
from agent_memory.memory.procedural import ProceduralMemory
from agent_memory.memory.semantic import SemanticMemory
from agent_memory.persist.sqlite_store import SQLiteMemoryStore

TEST_DIM = 256
AGENT = "agent-1"
USER = "user-1"


class KeywordEmbedder(EmbeddingProvider):
    """Bag-of-words embedder: texts sharing words have high cosine similarity."""

    def __init__(self, dim: int = TEST_DIM):
        self.dim = dim
        self.calls: List[str] = []

    async def embed(self, text: str) -> np.ndarray:
        self.calls.append(text)
        vector = np.zeros(self.dim, dtype=np.float32)
        for word in re.findall(r"\w+", text.lower()):
            bucket = int(hashlib.md5(word.encode("utf-8")).hexdigest(), 16) % self.dim
            vector[bucket] += 1.0
        norm = np.linalg.norm(vector)
        return vector / norm if norm > 0 else vector


class FailingEmbedder(EmbeddingProvider):
    """Embedder whose provider is always down."""

    def __init__(self, dim: int = TEST_DIM):
        self.dim = dim

    async def embed(self, text: str) -> np.ndarray:
        raise RuntimeError("provider unavailable")


class RecordingStore(SQLiteMemoryStore):
    """SQLite store that records insert calls."""

    def __init__(self, db_path):
        super().__init__(db_path)
        self.inserts: List[str] = []

    async def insert_knowledge(self, row):
        self.inserts.append(row["id"])
        await super().insert_knowledge(row)

    async def insert_behavior(self, row):
        self.inserts.append(row["id"])
        await super().insert_behavior(row)


@pytest.fixture
def store(tmp_path):
    """Create a temporary SQLite memory store."""
    db = RecordingStore(tmp_path / "memory.db")
    yield db
    db.disconnect()


@pytest.fixture
def embedder():
    return KeywordEmbedder()


@pytest.fixture
def failing_embedder():
    return FailingEmbedder()


@pytest.fixture
def semantic_config():
    return SemanticConfig(embedding_dim=TEST_DIM)


@pytest.fixture
def events():
    return EventChannel()


@pytest.fixture
def recorder(events):
    observer = EventRecorder()
    events.subscribe(observer)
    return observer


@pytest.fixture
def semantic(store, embedder, semantic_config, events):
    """Semantic engine for agent-1/user-1."""
    return SemanticMemory(AGENT, USER, store, embedder, config=semantic_config, events=events)


@pytest.fixture
def procedural(store, events):
    """Procedural engine for agent-1/user-1."""
    return ProceduralMemory(AGENT, USER, store, config=ProceduralConfig(), events=events)
