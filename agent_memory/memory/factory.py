"""
Wire ``Settings`` into a store, logging and both engines.
"""

from dataclasses import dataclass
from typing import Optional

from ..config.settings import Settings
from ..embeddings import EmbeddingProvider
from ..persist.base import PersistenceStore
from ..persist.sqlite_store import SQLiteMemoryStore
from ..telemetry import configure_logging, get_logger
from .events import EventChannel
from .procedural import ProceduralMemory
from .semantic import SemanticMemory

logger = get_logger(__name__)


@dataclass
class AgentMemory:
    """Both engines for one (agent_id, user_id) pair over a shared store."""

    store: PersistenceStore
    semantic: SemanticMemory
    procedural: ProceduralMemory
    events: EventChannel

    async def initialize(self) -> None:
        await self.semantic.initialize()
        await self.procedural.initialize()

    def start_consolidation(self) -> None:
        self.semantic.start_consolidation()
        self.procedural.start_consolidation()

    async def close(self) -> None:
        """Stop background consolidation, then close the store."""
        await self.semantic.stop_consolidation()
        await self.procedural.stop_consolidation()
        await self.store.close()


def create_agent_memory(
    agent_id: str,
    user_id: str,
    settings: Optional[Settings] = None,
    embedder: Optional[EmbeddingProvider] = None,
    store: Optional[PersistenceStore] = None,
    configure_logs: bool = True,
) -> AgentMemory:
    """
    Factory function to create both memory engines.

    Args:
        agent_id: Owning agent
        user_id: Owning user
        settings: Settings tree, ``Settings.from_env()`` when omitted
        embedder: Embedding provider for the semantic engine
        store: Existing store to share; opened from ``settings.store`` otherwise
        configure_logs: Apply ``settings.log_level`` / ``settings.log_json``

    Returns:
        AgentMemory with both engines publishing to one event channel
    """
    settings = settings or Settings.from_env()
    if configure_logs:
        configure_logging(settings.log_level, settings.log_json)

    if store is None:
        store = SQLiteMemoryStore.from_config(settings.store)
    events = EventChannel()

    memory = AgentMemory(
        store=store,
        semantic=SemanticMemory(
            agent_id, user_id, store, embedder, config=settings.semantic, events=events
        ),
        procedural=ProceduralMemory(
            agent_id, user_id, store, config=settings.procedural, events=events
        ),
        events=events,
    )
    logger.info("agent_memory_created", agent_id=agent_id, user_id=user_id)
    return memory
