"""
Integration tests for the semantic (knowledge) engine over SQLite.

Tests:
- Store pipeline: classification, scoring, floor rejection, force store
- Retrieval: similarity cut-off, access counters, relationships
- Consolidation: episodic promotion, eviction, weight relearning
- Owner isolation and embedding degradation
"""

import asyncio
import time

import numpy as np
import pytest

from agent_memory.config.settings import SemanticConfig
from agent_memory.errors import ValidationError
from agent_memory.memory.schemas import SemanticQuery
from agent_memory.memory.semantic import SemanticMemory, episode_row
from agent_memory.memory.weights import WeightTable
pytestmark = pytest.mark.asyncio

AGENT = "agent-1"
USER = "user-1"
TEST_DIM = 256

LRU_TEXT = "The algorithm for cache eviction uses LRU because it balances recency and cost"
POSTGRES_TEXT = "Postgres uses MVCC for concurrency control"
POSTGRES_VARIANT = "Postgres uses MVCC for concurrency control today"
PARIS_TEXT = "Paris is in France"


# Only matches entries with (nearly) the same words
EXACT = SemanticQuery(min_similarity=0.9)


# ============================================================================
# Store
# ============================================================================

async def test_technical_knowledge_is_stored_and_retrievable(semantic, recorder):
    result = await semantic.store({"text": LRU_TEXT}, {}, {})

    assert result.stored is True
    assert result.label == "technical"
    assert result.score >= 0.75
    assert "record_stored" in recorder.kinds()

    entries = await semantic.retrieve(LRU_TEXT, EXACT)
    assert [e.id for e in entries] == [result.id]
    assert entries[0].category == "technical"
    assert entries[0].relevance_score == pytest.approx(1.0, abs=1e-5)
    assert entries[0].access_count == 1


async def test_low_importance_is_rejected_without_insert(store, embedder, semantic_config):
    memory = SemanticMemory(AGENT, USER, store, embedder, config=semantic_config,
                            weights=WeightTable({"factual": 0.6}))

    result = await memory.store(PARIS_TEXT)

    assert result.stored is False
    assert result.reason == "low_importance"
    assert result.score == pytest.approx(0.3)
    assert store.inserts == []
    assert memory.metrics["rejected"] == 1


async def test_force_store_bypasses_floor(store, embedder, semantic_config):
    memory = SemanticMemory(AGENT, USER, store, embedder, config=semantic_config,
                            weights=WeightTable({"factual": 0.6}))

    forced = await memory.store(PARIS_TEXT, force_store=True)
    flagged = await memory.store("Rome is in Italy", metadata={"force_store": True})

    assert forced.stored and flagged.stored
    assert len(store.inserts) == 2
    entry = await memory.get_entry(forced.id)
    assert entry.importance == pytest.approx(0.3)


async def test_entry_fields_are_persisted(semantic, store):
    result = await semantic.store(
        "We deploy Python services with Docker",
        {"session_id": "s-42", "domain": "ops", "noise": "dropped"},
        {"source_type": "import"},
    )

    row = await store.get_knowledge(result.id, AGENT, USER)
    assert row["category"] == "contextual"
    assert row["source_session"] == "s-42"
    assert row["source_type"] == "import"
    assert row["usage_count"] == 0
    assert row["embedding"].shape == (TEST_DIM,)

    entry = semantic.mapper.from_row(row)
    assert entry.content == {"text": "We deploy Python services with Docker"}
    assert entry.context_summary == {"session_id": "s-42", "domain": "ops"}
    assert "python" in entry.entities["tools"]


async def test_invalid_content_reports_error(semantic, store):
    for bad in (None, "   "):
        result = await semantic.store(bad)
        assert result.stored is False
        assert result.error
    assert store.inserts == []
    assert semantic.metrics["failed"] == 2


async def test_owner_ids_are_required(store):
    with pytest.raises(ValidationError):
        SemanticMemory("", USER, store)


# ============================================================================
# Retrieval
# ============================================================================

async def test_similarity_cut_off(semantic):
    await semantic.store(LRU_TEXT)
    await semantic.store(PARIS_TEXT)

    entries = await semantic.retrieve(PARIS_TEXT, SemanticQuery(min_similarity=0.9))
    assert [e.text for e in entries] == [PARIS_TEXT]

    # Default threshold (0.7) also excludes the unrelated entry
    entries = await semantic.retrieve(PARIS_TEXT)
    assert LRU_TEXT not in [e.text for e in entries]


async def test_access_count_only_for_returned_entries(semantic, store):
    hit = await semantic.store(LRU_TEXT)
    miss = await semantic.store(PARIS_TEXT)

    await semantic.retrieve(LRU_TEXT, SemanticQuery(min_similarity=0.9))
    await semantic.retrieve(LRU_TEXT, SemanticQuery(min_similarity=0.9))

    assert (await store.get_knowledge(hit.id, AGENT, USER))["usage_count"] == 2
    assert (await store.get_knowledge(miss.id, AGENT, USER))["usage_count"] == 0


async def test_retrieve_accepts_mapping_filters(semantic):
    stored = await semantic.store(LRU_TEXT)

    entries = await semantic.retrieve(LRU_TEXT, {"min_similarity": 0.5, "include_relationships": False})

    assert [e.id for e in entries] == [stored.id]
    assert entries[0].relationships is None
    assert await semantic.retrieve(LRU_TEXT, {"min_similarity": 0.5, "categories": ["factual"]}) == []


async def test_category_filter(semantic):
    await semantic.store(LRU_TEXT)

    entries = await semantic.retrieve(LRU_TEXT, SemanticQuery(min_similarity=0.9, categories=["factual"]))
    assert entries == []


async def test_relationships_are_linked_and_idempotent(semantic, store):
    first = await semantic.store(POSTGRES_TEXT)
    second = await semantic.store(POSTGRES_VARIANT)

    assert await store.count_relationships(AGENT, USER) == 1

    entry = await semantic.get_entry(second.id)
    assert await semantic.link_related(entry) == 1
    assert await store.count_relationships(AGENT, USER) == 1

    relationships = await semantic.get_relationships(second.id)
    assert len(relationships) == 1
    edge = relationships[0]
    assert edge.target_id == first.id
    assert edge.relationship_type == "similar"
    assert 0.8 <= edge.strength <= 1.0
    assert edge.target_content == {"text": POSTGRES_TEXT}

    entries = await semantic.retrieve(POSTGRES_VARIANT, SemanticQuery(min_similarity=0.99))
    assert entries[0].id == second.id
    assert [r.target_id for r in entries[0].relationships] == [first.id]


async def test_retrieval_without_relationships(semantic):
    await semantic.store(POSTGRES_TEXT)
    entries = await semantic.retrieve(
        POSTGRES_TEXT, SemanticQuery(min_similarity=0.9, include_relationships=False)
    )
    assert entries[0].relationships is None


async def test_owner_isolation(semantic, store, embedder, semantic_config):
    await semantic.store(LRU_TEXT)
    other = SemanticMemory("agent-2", USER, store, embedder, config=semantic_config)

    assert await other.retrieve(LRU_TEXT, SemanticQuery(min_similarity=0.5)) == []
    assert await other.count() == 0


# ============================================================================
# Degradation
# ============================================================================

async def test_failing_embedder_stores_zero_vector(store, failing_embedder, semantic_config):
    memory = SemanticMemory(AGENT, USER, store, failing_embedder, config=semantic_config)

    first = await memory.store(POSTGRES_TEXT)
    second = await memory.store(POSTGRES_VARIANT)

    assert first.stored and second.stored
    row = await store.get_knowledge(first.id, AGENT, USER)
    assert row["embedding"].shape == (TEST_DIM,)
    assert not np.any(row["embedding"])
    # Zero vectors never match anything
    assert await store.count_relationships(AGENT, USER) == 0
    assert await memory.retrieve(POSTGRES_TEXT, SemanticQuery(min_similarity=0.0)) == []


async def test_retrieve_returns_empty_on_store_failure(semantic, store):
    await semantic.store(LRU_TEXT)
    store.disconnect()

    assert await semantic.retrieve(LRU_TEXT) == []
    result = await semantic.store(PARIS_TEXT)
    assert result.stored is False
    assert result.error


# ============================================================================
# Convenience API
# ============================================================================

async def test_store_search_delete_knowledge(semantic, recorder):
    entry_id = await semantic.store_knowledge(POSTGRES_TEXT, title="Databases", category="technical")

    entry = await semantic.get_entry(entry_id)
    assert entry.category == "technical"

    found = await semantic.search_knowledge(POSTGRES_TEXT, limit=5)
    assert entry_id in [e.id for e in found]

    assert await semantic.delete(entry_id) is True
    assert await semantic.get_entry(entry_id) is None
    assert await semantic.delete(entry_id) is False
    assert "record_deleted" in recorder.kinds()


async def test_get_stats(semantic):
    await semantic.store(LRU_TEXT)
    await semantic.retrieve(LRU_TEXT)

    stats = await semantic.get_stats()

    assert stats["engine"] == "semantic"
    assert stats["total_records"] == 1
    assert stats["metrics"]["stored"] == 1
    assert stats["metrics"]["retrievals"] == 1
    assert stats["config"]["importance_floor"] == 0.4
    assert stats["weights"]["technical"]["examples"]


# ============================================================================
# Consolidation
# ============================================================================

async def test_promote_episodic_once(semantic, store):
    episode = episode_row(AGENT, USER, {"text": "User prefers dark mode in every editor"}, importance=0.9)
    await store.insert_episode(episode)
    await store.insert_episode(episode_row(AGENT, USER, {"text": "not flagged"}, promoted=False))
    await store.insert_episode(
        episode_row(AGENT, USER, {"text": "too old"}, created_at=time.time() - 3 * 86400)
    )

    assert await semantic.promote_episodic() == 1
    assert await semantic.promote_episodic() == 0

    assert await semantic.count() == 1
    entries = await semantic.retrieve("User prefers dark mode in every editor", SemanticQuery(min_similarity=0.9))
    assert entries[0].category == "experiential"
    assert entries[0].source_type == "episodic"
    assert entries[0].source_episode_id == episode["id"]


async def test_consolidate_runs_all_steps(semantic, recorder):
    await semantic.store(LRU_TEXT)

    report = await semantic.consolidate()

    assert report.ok
    assert [s.name for s in report.steps] == ["promote_episodic", "learn_weights", "ensure_index", "evict_stale"]
    assert "technical" in report.step("learn_weights").result
    assert "consolidated" in recorder.kinds()


async def test_evict_stale_keeps_accessed_entries(store, embedder):
    config = SemanticConfig(embedding_dim=TEST_DIM, retention_days=0)
    memory = SemanticMemory(AGENT, USER, store, embedder, config=config)

    kept = await memory.store(LRU_TEXT)
    dropped = await memory.store(PARIS_TEXT)
    await memory.retrieve(LRU_TEXT, SemanticQuery(min_similarity=0.9))

    assert await memory.evict_stale() == 1
    assert await store.get_knowledge(dropped.id, AGENT, USER) is None
    assert await store.get_knowledge(kept.id, AGENT, USER) is not None


async def test_background_consolidation_lifecycle(store, embedder):
    config = SemanticConfig(embedding_dim=TEST_DIM, consolidation_interval_seconds=0.01)
    memory = SemanticMemory(AGENT, USER, store, embedder, config=config)

    scheduler = memory.start_consolidation()
    assert memory.start_consolidation() is scheduler
    await asyncio.sleep(0.1)
    stats = await memory.get_stats()
    await memory.stop_consolidation()

    assert stats["consolidation"]["running"] is True
    assert scheduler.runs >= 1
    assert scheduler.last_report.ok
    assert not scheduler.running


async def test_learn_weights_from_usage(semantic):
    await semantic.store(LRU_TEXT)
    for _ in range(3):
        await semantic.retrieve(LRU_TEXT, SemanticQuery(min_similarity=0.9))

    table = await semantic.learn_weights()

    # perf = (1.0 + ln(4)/5) / 2 * 1.5
    assert table.weight("technical") == pytest.approx((1.0 + np.log(4) / 5) / 2 * 1.5)
    assert table.weight("factual") == 1.0
