"""
Semantic memory: long-lived knowledge retrieved by vector similarity.

Strategy set for ``MemoryEngine``:
- ``SEMANTIC_LABEL_RULES`` / ``SEMANTIC_SCORE_RULES``: category and
  importance heuristics
- ``KnowledgeMapper``: KnowledgeEntry ↔ ``semantic_memory`` row
- relationship builder: links each new entry to similar existing ones
"""

import json
import time
import uuid
from typing import Any, Dict, List, Mapping, Optional, Union

import numpy as np

from ..config.settings import SemanticConfig
from ..embeddings import EmbeddingProvider, HashingEmbedder, embed_or_zero
from ..errors import AgentMemoryError
from ..persist.base import PersistenceStore, Row
from .consolidation import Step
from .engine import MemoryEngine, RecordMapper, dumps_json, loads_json
from .events import EventChannel
from .features import extract_entities, summarize_context
from .rules import (
    LabelRule,
    RuleClassifier,
    RuleScorer,
    ScoreRule,
    context_flag,
    keyword_bonus,
    length_bonus,
    metadata_flag,
)
from .schemas import KnowledgeEntry, Relationship, RelationshipType, SemanticQuery
from .weights import SEMANTIC_DEFAULT_WEIGHTS, WeightTable

DAY_SECONDS = 24 * 60 * 60


# ============================================================================
# Classification & scoring rules
# ============================================================================

SEMANTIC_LABEL_RULES = [
    LabelRule(
        "technical",
        context_flags=("is_technical",),
        metadata_flags=("is_technical",),
        keywords=("function", "class", "method", "algorithm", "database", "api",
                  "framework", "library", "protocol", "architecture", "pattern"),
    ),
    LabelRule("experiential", context_flags=("user_interaction",), metadata_flags=("from_episodic",)),
    LabelRule(
        "procedural",
        context_flags=("is_procedural",),
        metadata_flags=("is_procedural",),
        keywords=("how to", "step by step", "first", "then", "next", "finally",
                  "process", "workflow", "procedure", "approach"),
    ),
    LabelRule(
        "conceptual",
        context_flags=("is_conceptual",),
        metadata_flags=("is_conceptual",),
        keywords=("concept", "principle", "theory", "definition", "meaning",
                  "understand", "explain", "what is", "represents", "signifies"),
    ),
    LabelRule("contextual", context_hints=("session_id", "specific_context")),
]

TECHNICAL_TERMS = ("algorithm", "implementation", "architecture", "pattern", "methodology")
CONNECTORS = ("because", "therefore", "however", "in contrast", "similar to")


def _episodic_importance(signals) -> float:
    if not signals.metadata.get("from_episodic"):
        return 0.0
    value = signals.metadata.get("episode_importance")
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0.8:
        return 0.2
    return 0.0


SEMANTIC_SCORE_RULES = [
    length_bonus(500, 0.2),
    length_bonus(1000, 0.2),
    keyword_bonus("technical_terms", TECHNICAL_TERMS, 0.25),
    keyword_bonus("connectors", CONNECTORS, 0.15),
    context_flag("is_expert_domain", 0.3),
    context_flag("problem_solved", 0.25),
    context_flag("knowledge_gap", 0.2),
    context_flag("cross_domain", 0.15),
    metadata_flag("is_breakthrough", 0.4),
    metadata_flag("user_validated", 0.2),
    metadata_flag("frequently_accessed", 0.15),
    ScoreRule("metadata.episode_importance>0.8", _episodic_importance, 0.2),
    metadata_flag("is_novel", 0.2),
]


def semantic_classifier() -> RuleClassifier:
    return RuleClassifier(SEMANTIC_LABEL_RULES, default_label="factual")


def semantic_scorer() -> RuleScorer:
    return RuleScorer(SEMANTIC_SCORE_RULES, base=0.5)


# ============================================================================
# Relationships
# ============================================================================

RELATIONSHIP_TABLE: Dict[tuple, RelationshipType] = {
    ("conceptual", "technical"): "implements",
    ("procedural", "experiential"): "validated_by",
}


def determine_relationship_type(source_label: str, target_label: str) -> RelationshipType:
    """Decision table keyed on (source category, target category)."""
    if source_label == target_label:
        return "similar"
    return RELATIONSHIP_TABLE.get((source_label, target_label), "related_to")


# ============================================================================
# Persistence mapping
# ============================================================================

class KnowledgeMapper(RecordMapper[KnowledgeEntry]):
    """KnowledgeEntry ↔ ``semantic_memory`` row."""

    def to_row(self, entry: KnowledgeEntry) -> Row:
        return {
            "id": entry.id,
            "agent_id": entry.agent_id,
            "user_id": entry.user_id,
            "category": entry.category,
            "content": dumps_json(entry.content),
            "context_summary": dumps_json(entry.context_summary),
            "entities": dumps_json(entry.entities),
            "confidence_score": entry.importance,
            "usage_count": entry.access_count,
            "embedding": np.asarray(entry.embedding, dtype=np.float32),
            "source_type": entry.source_type,
            "source_episode_id": entry.source_episode_id,
            "source_session": entry.source_session,
            "created_at": entry.created_at,
            "last_accessed": entry.last_accessed,
        }

    def from_row(self, row: Row) -> KnowledgeEntry:
        embedding = row.get("embedding")
        if isinstance(embedding, np.ndarray):
            embedding = embedding.astype(float).tolist()
        return KnowledgeEntry(
            id=row["id"],
            agent_id=row["agent_id"],
            user_id=row["user_id"],
            category=row["category"],
            content=loads_json(row.get("content"), {}),
            context_summary=loads_json(row.get("context_summary"), {}),
            entities=loads_json(row.get("entities"), {}),
            importance=max(0.0, min(1.0, float(row.get("confidence_score") or 0.0))),
            embedding=embedding or [],
            created_at=row["created_at"],
            last_accessed=row["last_accessed"],
            access_count=int(row.get("usage_count") or 0),
            source_type=row.get("source_type") or "user_input",
            source_episode_id=row.get("source_episode_id"),
            source_session=row.get("source_session"),
            relevance_score=row.get("similarity_score"),
        )


def relationship_from_row(row: Row) -> Relationship:
    return Relationship(
        source_id=row["source_id"],
        target_id=row["target_id"],
        relationship_type=row["relationship_type"],
        strength=row["strength"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        target_category=row.get("target_category"),
        target_content=loads_json(row.get("target_content"), None),
    )


# ============================================================================
# Engine
# ============================================================================

class SemanticMemory(MemoryEngine[KnowledgeEntry]):
    """
    Knowledge engine for one (agent_id, user_id) pair.

    Usage:
        >>> memory = SemanticMemory("agent-1", "user-1", store, embedder)
        >>> result = await memory.store("The algorithm uses LRU because ...")
        >>> entries = await memory.retrieve("cache eviction algorithm")
    """

    engine_name = "semantic"
    floor_reason = "low_importance"

    def __init__(
        self,
        agent_id: str,
        user_id: str,
        store: PersistenceStore,
        embedder: Optional[EmbeddingProvider] = None,
        config: Optional[SemanticConfig] = None,
        weights: Optional[WeightTable] = None,
        events: Optional[EventChannel] = None,
    ):
        self.config = config or SemanticConfig()
        super().__init__(
            agent_id,
            user_id,
            store,
            classifier=semantic_classifier(),
            scorer=semantic_scorer(),
            weights=weights or WeightTable(SEMANTIC_DEFAULT_WEIGHTS, self.config.max_examples_per_label),
            mapper=KnowledgeMapper(),
            floor=self.config.importance_floor,
            embedder=embedder or HashingEmbedder(self.config.embedding_dim),
            cache_capacity=self.config.cache_capacity,
            consolidation_interval_seconds=self.config.consolidation_interval_seconds,
            events=events,
        )

    async def on_initialize(self) -> None:
        # Startup learning is best effort, a cold store is fine
        try:
            await self.store_backend.ensure_vector_index()
            await self.learn_weights()
        except AgentMemoryError as e:
            self.logger.warning("initialize_degraded", error=str(e))

    # ------------------ store hooks ------------------
    def build_record(
        self,
        content: Any,
        context: Mapping[str, Any],
        metadata: Mapping[str, Any],
        label: str,
        score: float,
    ) -> KnowledgeEntry:
        if isinstance(content, Mapping):
            body = dict(content)
        elif isinstance(content, str):
            body = {"text": content}
        else:
            body = {"value": content}

        if metadata.get("from_episodic"):
            source_type = "episodic"
        else:
            source_type = str(metadata.get("source_type") or "user_input")

        now = time.time()
        return KnowledgeEntry(
            id=str(uuid.uuid4()),
            agent_id=self.agent_id,
            user_id=self.user_id,
            category=label,
            content=body,
            context_summary=summarize_context(context),
            entities=extract_entities(content),
            importance=score,
            created_at=now,
            last_accessed=now,
            access_count=0,
            source_type=source_type,
            source_episode_id=metadata.get("episode_id"),
            source_session=context.get("session_id"),
        )

    async def prepare(self, entry: KnowledgeEntry) -> KnowledgeEntry:
        vector = await embed_or_zero(self.embedder, entry.text, self.config.embedding_dim)
        entry.embedding = vector.astype(float).tolist()
        return entry

    async def insert(self, entry: KnowledgeEntry) -> None:
        await self.store_backend.insert_knowledge(self.mapper.to_row(entry))

    async def after_insert(self, entry: KnowledgeEntry) -> None:
        await self.link_related(entry)

    async def link_related(self, entry: KnowledgeEntry) -> int:
        """
        Link a new entry to its most similar neighbours.

        Returns:
            Number of relationships upserted; errors are logged, never raised
        """
        try:
            candidates = await self.store_backend.search_knowledge(
                self.agent_id,
                self.user_id,
                np.asarray(entry.embedding, dtype=np.float32),
                min_similarity=self.config.relationship_threshold,
                limit=self.config.relationship_candidates,
                exclude_id=entry.id,
            )
            linked = 0
            now = time.time()
            for row in candidates:
                if row["id"] == entry.id:
                    continue
                relationship_type = determine_relationship_type(entry.category, row["category"])
                await self.store_backend.upsert_relationship(
                    entry.id, row["id"], relationship_type, row["similarity_score"], now
                )
                linked += 1
            if linked:
                self.logger.info("relationships_linked", id=entry.id, count=linked)
            return linked
        except Exception as e:
            self.logger.error("relationship_update_failed", id=entry.id, error=str(e))
            return 0

    # ------------------ retrieval ------------------
    async def run_retrieval(
        self, query: str, options: Union[SemanticQuery, Mapping[str, Any], None]
    ) -> List[KnowledgeEntry]:
        if isinstance(options, Mapping):
            options = SemanticQuery.model_validate(options)
        options = options or SemanticQuery()
        min_similarity = (
            options.min_similarity if options.min_similarity is not None else self.config.similarity_threshold
        )
        created_after = None
        if options.time_range_days:
            created_after = time.time() - options.time_range_days * DAY_SECONDS

        query_vector = await embed_or_zero(self.embedder, query, self.config.embedding_dim)
        rows = await self.store_backend.search_knowledge(
            self.agent_id,
            self.user_id,
            query_vector,
            min_similarity=min_similarity,
            limit=options.limit,
            categories=options.categories or None,
            created_after=created_after,
        )
        entries = [self.mapper.from_row(row) for row in rows]
        if not entries:
            return []

        now = time.time()
        await self.store_backend.touch_knowledge([e.id for e in entries], self.agent_id, self.user_id, now)
        for entry in entries:
            entry.access_count += 1
            entry.last_accessed = now
            self.cache.put(entry.id, entry.model_copy(update={"relevance_score": None}))

        if options.include_relationships:
            for entry in entries:
                entry.relationships = await self.get_relationships(entry.id)
        return entries

    async def get_relationships(self, entry_id: str) -> List[Relationship]:
        rows = await self.store_backend.list_relationships(
            entry_id, self.agent_id, self.user_id, limit=self.config.relationships_per_entry
        )
        return [relationship_from_row(r) for r in rows]

    # ------------------ record access ------------------
    async def get_entry(self, entry_id: str) -> Optional[KnowledgeEntry]:
        """Fetch one entry (cache first) without touching access counters."""
        await self.initialize()
        cached = self.cache.get(entry_id)
        if cached is not None:
            return cached
        row = await self.store_backend.get_knowledge(entry_id, self.agent_id, self.user_id)
        if row is None:
            return None
        entry = self.mapper.from_row(row)
        self.cache.put(entry.id, entry)
        return entry

    async def delete(self, entry_id: str) -> bool:
        """Delete an entry and every relationship touching it."""
        await self.initialize()
        deleted = await self.store_backend.delete_knowledge(entry_id, self.agent_id, self.user_id)
        self.cache.pop(entry_id)
        if deleted:
            self.logger.info("knowledge_deleted", id=entry_id)
            self.publish("record_deleted", entry_id)
        return deleted

    async def store_knowledge(
        self,
        content: Any,
        title: Optional[str] = None,
        category: Optional[str] = None,
    ) -> str:
        """
        Force-store a knowledge item and return its id.

        Raises:
            AgentMemoryError: If the entry could not be persisted
        """
        context = {"title": title or "Untitled Knowledge"}
        metadata: Dict[str, Any] = {}
        if category:
            metadata["category"] = category
        result = await self.store(content, context, metadata, force_store=True)
        if not result.stored or result.id is None:
            raise AgentMemoryError(result.error or result.reason or "knowledge not stored")
        return result.id

    async def search_knowledge(self, query: str, limit: int = 10) -> List[KnowledgeEntry]:
        return await self.retrieve(query, SemanticQuery(limit=limit, include_relationships=True))

    # ------------------ consolidation ------------------
    async def label_stats(self) -> List[Row]:
        return await self.store_backend.knowledge_label_stats(self.agent_id, self.user_id)

    async def count(self) -> int:
        return await self.store_backend.count_knowledge(self.agent_id, self.user_id)

    def consolidation_steps(self) -> List[Step]:
        return [
            ("promote_episodic", self.promote_episodic),
            ("learn_weights", self._learn_weights_step),
            ("ensure_index", self.store_backend.ensure_vector_index),
            ("evict_stale", self.evict_stale),
        ]

    async def _learn_weights_step(self) -> Dict[str, float]:
        table = await self.learn_weights()
        return {label: table.weight(label) for label in table.labels()}

    async def promote_episodic(self) -> int:
        """
        Promote recent flagged episodes into knowledge.

        Returns:
            Number of episodes stored
        """
        created_after = time.time() - self.config.episodic_window_hours * 60 * 60
        episodes = await self.store_backend.fetch_promoted_episodes(
            self.agent_id, self.user_id, created_after=created_after, limit=self.config.episodic_batch_size
        )
        promoted = 0
        for episode in episodes:
            content = loads_json(episode.get("content"), episode.get("content"))
            context = loads_json(episode.get("context"), {})
            if not isinstance(context, dict):
                context = {}
            context.update({"user_interaction": True, "from_episodic": True})
            metadata = {
                "from_episodic": True,
                "episode_importance": episode.get("importance_score"),
                "episode_id": episode["id"],
            }
            result = await self.store(content, context, metadata, force_store=True)
            if result.stored:
                promoted += 1
            else:
                self.logger.warning("episode_promotion_failed", episode_id=episode["id"], error=result.error)
        self.logger.info("episodes_promoted", count=promoted, candidates=len(episodes))
        return promoted

    async def evict_stale(self) -> int:
        """Delete entries past the retention window that are rarely accessed."""
        cutoff = time.time() - self.config.retention_days * DAY_SECONDS
        removed = await self.store_backend.evict_stale_knowledge(
            self.agent_id,
            self.user_id,
            created_before=cutoff,
            access_floor=self.config.eviction_access_floor,
        )
        for key, entry in self.cache.items():
            if entry.created_at < cutoff and entry.access_count < self.config.eviction_access_floor:
                self.cache.pop(key)
        if removed:
            self.logger.info("knowledge_evicted", count=removed)
        return removed

    def config_snapshot(self) -> Dict[str, Any]:
        return self.config.model_dump()


def episode_row(
    agent_id: str,
    user_id: str,
    content: Any,
    context: Optional[Mapping[str, Any]] = None,
    importance: float = 0.5,
    promoted: bool = True,
    created_at: Optional[float] = None,
    episode_id: Optional[str] = None,
) -> Row:
    """Build an ``episodic_memory`` row (the table is owned by the episodic layer)."""
    return {
        "id": episode_id or str(uuid.uuid4()),
        "agent_id": agent_id,
        "user_id": user_id,
        "content": json.dumps(content, default=str),
        "context": json.dumps(dict(context or {}), default=str),
        "importance_score": importance,
        "promoted_to_semantic": 1 if promoted else 0,
        "created_at": created_at if created_at is not None else time.time(),
    }
