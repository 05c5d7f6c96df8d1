"""
Memory system data models.

Defines knowledge entries, relationships, behavior records, adaptation
records and the request/result types exchanged with the engines.
"""

import json
import time
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field


RelationshipType = Literal["similar", "implements", "validated_by", "related_to"]
AdaptationType = Literal["improvement", "correction", "optimization", "personalization", "general"]


class KnowledgeEntry(BaseModel):
    """
    A single unit of long-lived semantic knowledge.

    ``importance`` is persisted as ``confidence_score`` and
    ``access_count`` as ``usage_count``.
    """

    id: str = Field(..., description="Unique identifier (UUID4)")
    agent_id: str
    user_id: str
    category: str = Field(..., description="Learned knowledge category")

    content: Dict[str, Any] = Field(..., description="Structured content; plain text is stored as {'text': ...}")
    context_summary: Dict[str, Any] = Field(default_factory=dict)
    entities: Dict[str, List[str]] = Field(default_factory=dict)

    importance: float = Field(0.5, ge=0.0, le=1.0)
    embedding: List[float] = Field(default_factory=list)

    created_at: float = Field(default_factory=time.time)
    last_accessed: float = Field(default_factory=time.time)
    access_count: int = 0

    source_type: str = "user_input"
    source_episode_id: Optional[str] = None
    source_session: Optional[str] = None

    # Transient retrieval fields (not persisted)
    relevance_score: Optional[float] = None
    relationships: Optional[List["Relationship"]] = None

    @property
    def text(self) -> str:
        """Plain-text view of the content."""
        if "text" in self.content and isinstance(self.content["text"], str):
            return self.content["text"]
        return json.dumps(self.content, sort_keys=True, default=str)


class Relationship(BaseModel):
    """Directed, typed, weighted edge between two knowledge entries."""

    source_id: str
    target_id: str
    relationship_type: RelationshipType
    strength: float = Field(..., ge=0.0, le=1.0)
    created_at: float = Field(default_factory=time.time)
    updated_at: float = Field(default_factory=time.time)

    # Joined view of the target entry
    target_category: Optional[str] = None
    target_content: Optional[Dict[str, Any]] = None


class AdaptationRecord(BaseModel):
    """Logged patch applied to a behavior in response to feedback."""

    timestamp: float = Field(default_factory=time.time)
    feedback: Dict[str, Any] = Field(default_factory=dict)
    context_tags: List[str] = Field(default_factory=list)
    adaptation_type: AdaptationType = "general"
    changes: Dict[str, Any] = Field(default_factory=dict)


class BehaviorRecord(BaseModel):
    """A learned behavior pattern."""

    id: str
    agent_id: str
    user_id: str
    procedure_name: str
    behavior_type: str

    pattern: Dict[str, Any] = Field(default_factory=dict)
    triggers: Dict[str, Any] = Field(default_factory=dict)
    conditions: Dict[str, Any] = Field(default_factory=dict)
    response_template: Dict[str, Any] = Field(default_factory=dict)
    context_tags: List[str] = Field(default_factory=list)

    effectiveness: float = Field(0.5, ge=0.0, le=1.0)
    usage_count: int = 1
    success_count: int = 0
    success_rate: float = 0.0
    is_active: bool = True

    last_used: float = Field(default_factory=time.time)
    created_at: float = Field(default_factory=time.time)
    adaptation_history: List[AdaptationRecord] = Field(default_factory=list)

    # Transient retrieval fields
    relevance_score: Optional[float] = None
    recent_adaptations: Optional[List[AdaptationRecord]] = None


class ResponseImprovement(BaseModel):
    add_structure: bool = False
    add_details: Optional[str] = None


class TriggerAdjustment(BaseModel):
    add_keywords: List[str] = Field(default_factory=list)
    remove_keywords: List[str] = Field(default_factory=list)


class Feedback(BaseModel):
    """Outcome signal for an executed behavior."""

    success: bool = False
    rating: Optional[float] = Field(None, ge=0.0, le=1.0)

    # Adaptation hints
    adaptation: bool = False
    improvement: bool = False
    correction: bool = False
    optimization: bool = False
    personalization: bool = False
    response_improvement: Optional[ResponseImprovement] = None
    trigger_adjustment: Optional[TriggerAdjustment] = None
    effectiveness_adjustment: Optional[float] = None

    @property
    def is_success(self) -> bool:
        return self.success or (self.rating is not None and self.rating > 0.7)

    @property
    def has_adaptation_hints(self) -> bool:
        return (
            self.adaptation
            or self.improvement
            or self.correction
            or self.optimization
            or self.personalization
            or self.response_improvement is not None
            or self.trigger_adjustment is not None
            or self.effectiveness_adjustment is not None
        )


class StoreResult(BaseModel):
    """Outcome of a ``store()`` call. Never raised, always returned."""

    stored: bool
    updated: bool = False
    id: Optional[str] = None
    label: Optional[str] = None
    score: Optional[float] = None
    latency_ms: float = 0.0
    reason: Optional[str] = None
    error: Optional[str] = None


class SemanticQuery(BaseModel):
    """Filters for knowledge retrieval."""

    limit: int = Field(10, ge=1, le=1000)
    min_similarity: Optional[float] = Field(None, description="Defaults to the engine's similarity threshold")
    categories: List[str] = Field(default_factory=list)
    time_range_days: Optional[int] = Field(None, ge=1)
    include_relationships: bool = True


class ProceduralQuery(BaseModel):
    """Filters for behavior retrieval."""

    limit: int = Field(5, ge=1, le=1000)
    min_effectiveness: float = Field(0.3, ge=0.0, le=1.0)
    behavior_types: List[str] = Field(default_factory=list)
    context: Dict[str, Any] = Field(default_factory=dict)
    context_match: bool = True
    include_adaptations: bool = False


KnowledgeEntry.model_rebuild()
