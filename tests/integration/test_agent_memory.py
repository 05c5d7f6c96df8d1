"""
Integration tests for building both engines from settings.

Tests:
- Store path, timeout and engine configs come from the settings tree
- Environment overrides reach the engines
- Both engines share one store and one event channel
"""

import pytest

from agent_memory.config.settings import ProceduralConfig, SemanticConfig, Settings, StoreConfig
from agent_memory.memory.events import EventRecorder
from agent_memory.memory.factory import create_agent_memory
from agent_memory.persist.sqlite_store import SQLiteMemoryStore

pytestmark = pytest.mark.asyncio

AGENT = "agent-1"
USER = "user-1"


def make_settings(tmp_path, **overrides):
    return Settings(
        store=StoreConfig(db_path=str(tmp_path / "nested" / "memory.db"), timeout_seconds=2.5),
        semantic=SemanticConfig(embedding_dim=32, importance_floor=0.45),
        procedural=ProceduralConfig(effectiveness_floor=0.35),
        log_json=False,
        **overrides,
    )


async def test_store_is_opened_from_settings(tmp_path):
    settings = make_settings(tmp_path)

    memory = create_agent_memory(AGENT, USER, settings)

    assert isinstance(memory.store, SQLiteMemoryStore)
    assert memory.store.db_path == settings.store.db_path
    assert (tmp_path / "nested").is_dir()
    assert memory.semantic.floor == 0.45
    assert memory.semantic.config.embedding_dim == 32
    assert memory.procedural.floor == 0.35
    await memory.close()


async def test_from_config_opens_configured_path(tmp_path):
    store = SQLiteMemoryStore.from_config(StoreConfig(db_path=str(tmp_path / "m.db"), timeout_seconds=1.0))
    assert store.db_path == str(tmp_path / "m.db")
    await store.close()


async def test_environment_settings_reach_engines(tmp_path, monkeypatch):
    monkeypatch.setenv("AGENT_MEMORY_STORE__DB_PATH", str(tmp_path / "env.db"))
    monkeypatch.setenv("AGENT_MEMORY_PROCEDURAL__EFFECTIVENESS_FLOOR", "0.6")
    monkeypatch.setenv("AGENT_MEMORY_LOG_JSON", "false")

    memory = create_agent_memory(AGENT, USER)

    assert memory.store.db_path == str(tmp_path / "env.db")
    assert memory.procedural.floor == 0.6
    await memory.close()


async def test_engines_share_store_and_events(tmp_path):
    memory = create_agent_memory(AGENT, USER, make_settings(tmp_path), configure_logs=False)
    recorder = EventRecorder()
    memory.events.subscribe(recorder)
    await memory.initialize()

    knowledge = await memory.semantic.store("Paris is in France", force_store=True)
    behavior = await memory.procedural.store("First open the file, then run the tests")

    assert knowledge.stored and behavior.stored
    stats = memory.store.stats()
    assert stats["semantic_memory"] == 1
    assert stats["procedural_memory"] == 1
    assert recorder.kinds().count("record_stored") == 2

    memory.start_consolidation()
    await memory.close()
    assert not memory.semantic._scheduler.running
    assert not memory.procedural._scheduler.running
