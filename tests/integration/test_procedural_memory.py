"""
Integration tests for the procedural (behavior) engine over SQLite.

Tests:
- Store pipeline: type classification, effectiveness floor, deduplication
- Execution and feedback: usage/success counters, adaptation smoothing
- Retrieval: ranking, type and context-tag filters, text search
- Consolidation: cache trimming, stale eviction
"""

import asyncio

import pytest

from agent_memory.config.settings import ProceduralConfig
from agent_memory.errors import NotFoundError
from agent_memory.memory.procedural import ProceduralMemory
from agent_memory.memory.schemas import Feedback, ProceduralQuery
from agent_memory.memory.weights import WeightTable

pytestmark = pytest.mark.asyncio

AGENT = "agent-1"
USER = "user-1"

SEQUENCE = "First open the file, then run the tests"
ERROR_FIX = "Fix the error in the login form"
SPEEDUP = "Make the report query faster"


# ============================================================================
# Store
# ============================================================================

async def test_store_classifies_and_scores(procedural, store):
    result = await procedural.store(SEQUENCE)

    assert result.stored is True
    assert result.label == "task_sequence"
    # 0.5 × 1.2 + actionable bonus ("open")
    assert result.score == pytest.approx(0.8)

    behavior = await procedural.get_behavior(result.id)
    assert behavior.behavior_type == "task_sequence"
    assert behavior.procedure_name.startswith("task_sequence_")
    assert behavior.usage_count == 1
    assert behavior.success_count == 0
    assert behavior.response_template["template"] == SEQUENCE
    assert "tests" in behavior.triggers["keywords"]


async def test_low_effectiveness_is_rejected(store):
    memory = ProceduralMemory(AGENT, USER, store, weights=WeightTable({"response_pattern": 0.5}))

    result = await memory.store("hello there")

    assert result.stored is False
    assert result.reason == "low_effectiveness"
    assert result.score == pytest.approx(0.25)
    assert store.inserts == []


async def test_duplicate_behavior_is_merged(procedural, store, recorder):
    first = await procedural.store(SEQUENCE)
    second = await procedural.store(SEQUENCE, metadata={"was_successful": True})

    assert second.stored is True
    assert second.updated is True
    assert second.id == first.id
    assert len(store.inserts) == 1
    assert "record_updated" in recorder.kinds()

    behavior = await procedural.get_behavior(first.id)
    assert behavior.usage_count == 2
    assert behavior.success_count == 1
    assert behavior.success_rate == pytest.approx(0.5)
    # 0.7 × 0.8 + 0.3 × 1.0 (the repeat carries the was_successful bonus)
    assert behavior.effectiveness == pytest.approx(0.86)


async def test_caller_pattern_is_used_for_dedupe(procedural):
    first = await procedural.store("hello there", metadata={"pattern": {"intent": "greet"}})
    second = await procedural.store("good morning to you all", metadata={"pattern": {"intent": "greet"}})
    other = await procedural.store("see you later", metadata={"pattern": {"intent": "farewell"}})

    assert second.id == first.id
    assert other.id != first.id


async def test_record_behavior_forces_store(store):
    memory = ProceduralMemory(AGENT, USER, store, weights=WeightTable({"response_pattern": 0.5}))

    result = await memory.record_behavior("hello there", {"domain": "chat"}, success=True)

    assert result.stored is True
    behavior = await memory.get_behavior(result.id)
    assert behavior.success_count == 1
    assert behavior.success_rate == pytest.approx(1.0)
    assert behavior.context_tags == ["domain:chat"]


# ============================================================================
# Execution & feedback
# ============================================================================

async def test_execute_unknown_behavior_raises(procedural):
    with pytest.raises(NotFoundError):
        await procedural.execute_behavior("does-not-exist")


async def test_execute_records_usage_and_success(procedural, recorder):
    stored = await procedural.store(SEQUENCE)

    template = await procedural.execute_behavior(stored.id, feedback={"success": True})

    assert template["template"] == SEQUENCE
    behavior = await procedural.get_behavior(stored.id)
    assert behavior.usage_count == 2
    assert behavior.success_count == 1
    assert behavior.success_rate == pytest.approx(0.5)
    assert "behavior_executed" in recorder.kinds()
    assert "feedback_processed" in recorder.kinds()


async def test_success_never_exceeds_usage(procedural, store):
    stored = await procedural.store(SEQUENCE)

    for _ in range(3):
        await procedural.process_feedback(stored.id, Feedback(rating=0.9))

    row = await store.get_behavior(stored.id, AGENT, USER)
    assert row["usage_count"] == 1
    assert row["success_count"] == 1


async def test_concurrent_executions_are_all_counted(procedural):
    stored = await procedural.store(SEQUENCE)

    await asyncio.gather(*(procedural.execute_behavior(stored.id) for _ in range(5)))

    behavior = await procedural.get_behavior(stored.id)
    assert behavior.usage_count == 6


async def test_adaptation_smooths_and_persists(procedural, store, recorder):
    stored = await procedural.store(SEQUENCE)

    adapted = await procedural.process_feedback(
        stored.id,
        {
            "improvement": True,
            "effectiveness_adjustment": 0.2,
            "trigger_adjustment": {"add_keywords": ["pytest"]},
            "response_improvement": {"add_structure": True},
        },
        context={"domain": "testing"},
    )

    expected = 0.9 * 0.8 + 0.1 * 1.0
    assert adapted.effectiveness == pytest.approx(expected)
    assert "pytest" in adapted.triggers["keywords"]
    assert adapted.response_template["structure"]["improved"] is True
    assert "behavior_adapted" in recorder.kinds()

    row = await store.get_behavior(stored.id, AGENT, USER)
    assert row["effectiveness_score"] == pytest.approx(expected)
    reloaded = procedural.mapper.from_row(row)
    assert reloaded.adaptation_history[0].adaptation_type == "improvement"
    assert reloaded.adaptation_history[0].context_tags == ["domain:testing"]
    assert "pytest" in reloaded.triggers["keywords"]

    recent = await procedural.get_recent_adaptations(stored.id)
    assert len(recent) == 1


async def test_feedback_without_hints_does_not_adapt(procedural):
    stored = await procedural.store(SEQUENCE)

    record = await procedural.process_feedback(stored.id, {"success": False})

    assert record.adaptation_history == []
    assert record.effectiveness == pytest.approx(0.8)


async def test_feedback_on_unknown_behavior_raises(procedural):
    with pytest.raises(NotFoundError):
        await procedural.process_feedback("missing", {"improvement": True})


# ============================================================================
# Retrieval
# ============================================================================

async def test_retrieve_ranks_by_usage_success_and_effectiveness(procedural):
    used = await procedural.store(SEQUENCE)
    idle = await procedural.store(ERROR_FIX)
    for _ in range(3):
        await procedural.execute_behavior(used.id, feedback={"success": True})

    behaviors = await procedural.retrieve("anything", ProceduralQuery(min_effectiveness=0.0))

    assert [b.id for b in behaviors] == [used.id, idle.id]
    assert behaviors[0].relevance_score > behaviors[1].relevance_score
    # Retrieval does not count as usage
    assert (await procedural.get_behavior(idle.id)).usage_count == 1


async def test_retrieve_filters(procedural):
    await procedural.store(SEQUENCE)
    fix = await procedural.store(ERROR_FIX)
    web = await procedural.store(SPEEDUP, {"domain": "web"})

    by_type = await procedural.retrieve("", ProceduralQuery(behavior_types=["error_handling"]))
    assert [b.id for b in by_type] == [fix.id]

    by_tag = await procedural.retrieve("", ProceduralQuery(context={"domain": "web"}))
    assert [b.id for b in by_tag] == [web.id]

    unfiltered = await procedural.retrieve(
        "", ProceduralQuery(context={"domain": "web"}, context_match=False, limit=10)
    )
    assert len(unfiltered) == 3

    strict = await procedural.retrieve("", ProceduralQuery(min_effectiveness=0.79, limit=10))
    assert web.id not in [b.id for b in strict]


async def test_retrieve_accepts_mapping_filters(procedural):
    await procedural.store(SEQUENCE)
    fix = await procedural.store(ERROR_FIX)

    behaviors = await procedural.retrieve("", {"behavior_types": ["error_handling"], "min_effectiveness": 0.0})

    assert [b.id for b in behaviors] == [fix.id]


async def test_retrieve_with_adaptations(procedural):
    stored = await procedural.store(SEQUENCE)
    await procedural.process_feedback(stored.id, {"correction": True})

    behaviors = await procedural.retrieve("", ProceduralQuery(include_adaptations=True))
    assert behaviors[0].recent_adaptations[0].adaptation_type == "correction"


async def test_top_and_relevant_behaviors(procedural):
    seq = await procedural.store(SEQUENCE)
    fix = await procedural.store(ERROR_FIX)
    await procedural.execute_behavior(fix.id, feedback={"success": True})

    top = await procedural.get_top_behaviors(limit=5)
    assert [b.id for b in top] == [fix.id, seq.id]

    relevant = await procedural.find_relevant_behaviors("login")
    assert [b.id for b in relevant] == [fix.id]


async def test_owner_isolation(procedural, store):
    stored = await procedural.store(SEQUENCE)
    other = ProceduralMemory("agent-2", USER, store)

    with pytest.raises(NotFoundError):
        await other.execute_behavior(stored.id)
    assert await other.get_behavior(stored.id) is None
    assert await other.retrieve("", ProceduralQuery(min_effectiveness=0.0)) == []


async def test_subscribe_and_unsubscribe(procedural):
    seen = []
    unsubscribe = procedural.subscribe(lambda event: seen.append((event.kind, event.engine)))

    await procedural.store(SEQUENCE)
    unsubscribe()
    await procedural.store(ERROR_FIX)

    assert seen == [("record_stored", "procedural")]


async def test_delete(procedural, recorder):
    stored = await procedural.store(SEQUENCE)

    assert await procedural.delete(stored.id) is True
    assert await procedural.get_behavior(stored.id) is None
    assert await procedural.delete(stored.id) is False
    assert "record_deleted" in recorder.kinds()


# ============================================================================
# Consolidation
# ============================================================================

async def test_consolidate_trims_cache(store):
    memory = ProceduralMemory(AGENT, USER, store, config=ProceduralConfig(cache_size_cap=2, cache_keep=1))
    await memory.store(SEQUENCE)
    await memory.store(ERROR_FIX)
    last = await memory.store(SPEEDUP)

    report = await memory.consolidate()

    assert report.ok
    assert [s.name for s in report.steps] == ["learn_weights", "trim_cache", "evict_stale"]
    assert report.step("trim_cache").result == 2
    assert list(memory.cache) == [last.id]


async def test_evict_stale_behaviors(store):
    config = ProceduralConfig(eviction_age_days=0, eviction_usage_floor=2, eviction_effectiveness_floor=0.9)
    memory = ProceduralMemory(AGENT, USER, store, config=config)
    kept = await memory.store(SEQUENCE)
    dropped = await memory.store(ERROR_FIX)
    await memory.execute_behavior(kept.id)

    assert await memory.evict_stale() == 1
    assert await memory.get_behavior(dropped.id) is None
    assert await memory.get_behavior(kept.id) is not None


async def test_evict_stale_releases_behavior_locks(store):
    config = ProceduralConfig(eviction_age_days=0, eviction_usage_floor=2, eviction_effectiveness_floor=0.9)
    memory = ProceduralMemory(AGENT, USER, store, config=config)
    kept = await memory.store(SEQUENCE)
    dropped = await memory.store(ERROR_FIX)
    await memory.execute_behavior(kept.id)
    await memory.process_feedback(dropped.id, {"success": False})

    assert await memory.evict_stale() == 1
    assert dropped.id not in memory._locks
    assert kept.id in memory._locks


async def test_initialize_warms_cache(procedural, store):
    stored = await procedural.store(SEQUENCE)

    fresh = ProceduralMemory(AGENT, USER, store)
    await fresh.initialize()

    assert stored.id in fresh.cache
    assert fresh.weights.weight("task_sequence") != 1.2
