"""Memory engine settings and configuration schema."""

import os
from typing import Any, Dict

from pydantic import BaseModel, Field


class StoreConfig(BaseModel):
    """Persistence store configuration."""
    db_path: str = "data/memory/agent_memory.db"
    timeout_seconds: float = 10.0


class SemanticConfig(BaseModel):
    """Knowledge engine configuration."""
    embedding_dim: int = 384
    importance_floor: float = 0.4
    similarity_threshold: float = 0.7      # default retrieval cut-off
    relationship_threshold: float = 0.8    # stricter cut-off for graph edges
    relationship_candidates: int = 10
    relationships_per_entry: int = 5
    consolidation_interval_seconds: float = 24 * 60 * 60
    episodic_window_hours: int = 24
    episodic_batch_size: int = 20
    retention_days: int = 365
    eviction_access_floor: int = 1
    cache_capacity: int = 500
    max_examples_per_label: int = 5


class ProceduralConfig(BaseModel):
    """Behavior engine configuration."""
    effectiveness_floor: float = 0.3
    adaptation_rate: float = 0.1
    max_effectiveness_delta: float = 0.5
    dedupe_candidates: int = 5
    dedupe_similarity: float = 0.8
    consolidation_interval_seconds: float = 6 * 60 * 60
    cache_capacity: int = 500
    cache_size_cap: int = 100
    cache_keep: int = 50
    warm_cache_limit: int = 50
    warm_cache_min_effectiveness: float = 0.5
    eviction_age_days: int = 30
    eviction_usage_floor: int = 2
    eviction_effectiveness_floor: float = 0.1
    recent_adaptations: int = 5
    max_examples_per_label: int = 5


class Settings(BaseModel):
    """Main memory subsystem settings."""
    store: StoreConfig = Field(default_factory=StoreConfig)
    semantic: SemanticConfig = Field(default_factory=SemanticConfig)
    procedural: ProceduralConfig = Field(default_factory=ProceduralConfig)
    log_level: str = "INFO"
    log_json: bool = True

    @classmethod
    def from_env(cls, prefix: str = "AGENT_MEMORY_") -> "Settings":
        """
        Build settings from environment variables.

        Nested fields use a double underscore, e.g.
        ``AGENT_MEMORY_SEMANTIC__IMPORTANCE_FLOOR=0.5`` or
        ``AGENT_MEMORY_STORE__DB_PATH=/tmp/mem.db``.
        """
        data: Dict[str, Any] = {}
        for key, value in os.environ.items():
            if not key.startswith(prefix):
                continue
            path = key[len(prefix):].lower().split("__")
            node = data
            for part in path[:-1]:
                node = node.setdefault(part, {})
            node[path[-1]] = value
        return cls.model_validate(data)
