"""
Persistence store interface consumed by the memory engines.

Rows are plain dicts keyed by column name. JSON columns travel as
strings (the engines' record mappers own their encoding); embeddings
travel as float32 numpy arrays because the store must order by vector
distance. Every owner-scoped call takes both ``agent_id`` and
``user_id``; implementations must never read or write other owners' rows.

Implementations raise ``PersistenceError`` for any I/O or query failure.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

Row = Dict[str, Any]


class PersistenceStore(ABC):
    """Async, row-set oriented storage for both memory engines."""

    # ------------------ schema ------------------
    @abstractmethod
    async def ensure_vector_index(self) -> bool:
        """Create the similarity-search index if missing (idempotent)."""

    @abstractmethod
    async def close(self) -> None:
        """Release connections."""

    # ------------------ knowledge ------------------
    @abstractmethod
    async def insert_knowledge(self, row: Row) -> None: ...

    @abstractmethod
    async def get_knowledge(self, entry_id: str, agent_id: str, user_id: str) -> Optional[Row]: ...

    @abstractmethod
    async def search_knowledge(
        self,
        agent_id: str,
        user_id: str,
        embedding: np.ndarray,
        *,
        min_similarity: float,
        limit: int,
        categories: Optional[Sequence[str]] = None,
        created_after: Optional[float] = None,
        exclude_id: Optional[str] = None,
    ) -> List[Row]:
        """Owner rows ordered by cosine similarity desc, then recency; adds ``similarity_score``."""

    @abstractmethod
    async def touch_knowledge(self, entry_ids: Sequence[str], agent_id: str, user_id: str, now: float) -> int:
        """Increment ``usage_count`` by one and set ``last_accessed`` for exactly these rows."""

    @abstractmethod
    async def delete_knowledge(self, entry_id: str, agent_id: str, user_id: str) -> bool: ...

    @abstractmethod
    async def count_knowledge(self, agent_id: str, user_id: str) -> int: ...

    @abstractmethod
    async def knowledge_label_stats(self, agent_id: str, user_id: str) -> List[Row]:
        """Rows of ``label, frequency, avg_score, avg_usage`` grouped by category."""

    @abstractmethod
    async def evict_stale_knowledge(
        self, agent_id: str, user_id: str, *, created_before: float, access_floor: int
    ) -> int: ...

    # ------------------ relationships ------------------
    @abstractmethod
    async def upsert_relationship(
        self, source_id: str, target_id: str, relationship_type: str, strength: float, now: float
    ) -> None:
        """Insert, or on (source_id, target_id) conflict update strength and ``updated_at``."""

    @abstractmethod
    async def list_relationships(self, source_id: str, agent_id: str, user_id: str, limit: int = 5) -> List[Row]:
        """Outgoing edges joined with the target's category and content, strongest first."""

    @abstractmethod
    async def count_relationships(self, agent_id: str, user_id: str) -> int: ...

    # ------------------ episodic source ------------------
    @abstractmethod
    async def insert_episode(self, row: Row) -> None: ...

    @abstractmethod
    async def fetch_promoted_episodes(
        self, agent_id: str, user_id: str, *, created_after: float, limit: int
    ) -> List[Row]:
        """Episodes flagged for promotion and not yet promoted, most important first."""

    # ------------------ behaviors ------------------
    @abstractmethod
    async def insert_behavior(self, row: Row) -> None: ...

    @abstractmethod
    async def get_behavior(self, behavior_id: str, agent_id: str, user_id: str) -> Optional[Row]: ...

    @abstractmethod
    async def recent_behaviors(self, agent_id: str, user_id: str, behavior_type: str, limit: int) -> List[Row]: ...

    @abstractmethod
    async def merge_behavior(
        self,
        behavior_id: str,
        agent_id: str,
        user_id: str,
        *,
        effectiveness: float,
        old_weight: float,
        success_increment: int,
        now: float,
    ) -> bool:
        """Atomically blend effectiveness and bump usage/success counters."""

    @abstractmethod
    async def record_behavior_usage(self, behavior_id: str, agent_id: str, user_id: str, now: float) -> bool: ...

    @abstractmethod
    async def record_behavior_success(self, behavior_id: str, agent_id: str, user_id: str) -> bool:
        """Increment ``success_count`` without exceeding ``usage_count``."""

    @abstractmethod
    async def update_behavior(self, behavior_id: str, agent_id: str, user_id: str, fields: Row) -> bool: ...

    @abstractmethod
    async def rank_behaviors(
        self,
        agent_id: str,
        user_id: str,
        *,
        min_effectiveness: float,
        limit: int,
        behavior_types: Optional[Sequence[str]] = None,
        context_tags: Optional[Sequence[str]] = None,
    ) -> List[Row]:
        """Active rows ordered by ``usage*0.3 + success*0.4 + effectiveness*0.3``; adds ``relevance_score``."""

    @abstractmethod
    async def top_behaviors(self, agent_id: str, user_id: str, limit: int) -> List[Row]: ...

    @abstractmethod
    async def search_behaviors(self, agent_id: str, user_id: str, text: str, limit: int) -> List[Row]: ...

    @abstractmethod
    async def warm_behaviors(self, agent_id: str, user_id: str, *, min_effectiveness: float, limit: int) -> List[Row]: ...

    @abstractmethod
    async def behavior_label_stats(self, agent_id: str, user_id: str) -> List[Row]: ...

    @abstractmethod
    async def count_behaviors(self, agent_id: str, user_id: str) -> int: ...

    @abstractmethod
    async def delete_behavior(self, behavior_id: str, agent_id: str, user_id: str) -> bool: ...

    @abstractmethod
    async def evict_stale_behaviors(
        self,
        agent_id: str,
        user_id: str,
        *,
        created_before: float,
        usage_floor: int,
        effectiveness_floor: float,
    ) -> int: ...
