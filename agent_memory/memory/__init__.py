"""
Dual-engine agent memory.

Provides:
- Semantic memory: knowledge entries, vector recall, relationship graph
- Procedural memory: learned behaviors, dedupe, feedback adaptation
- Declarative classification/scoring rules and learned label weights
- Periodic consolidation (promotion, reweighting, cache trim, eviction)
- Factory wiring settings into a shared store and both engines
"""

from .schemas import (
    AdaptationRecord,
    BehaviorRecord,
    Feedback,
    KnowledgeEntry,
    ProceduralQuery,
    Relationship,
    SemanticQuery,
    StoreResult,
)
from .weights import WeightTable, relearn_weights
from .rules import LabelRule, RuleClassifier, RuleScorer, ScoreRule
from .cache import LRUCache
from .events import EventChannel, EventRecorder, MemoryEvent
from .consolidation import ConsolidationReport, ConsolidationScheduler
from .engine import MemoryEngine
from .semantic import SemanticMemory
from .procedural import ProceduralMemory
from .factory import AgentMemory, create_agent_memory

__all__ = [
    "AdaptationRecord",
    "BehaviorRecord",
    "Feedback",
    "KnowledgeEntry",
    "ProceduralQuery",
    "Relationship",
    "SemanticQuery",
    "StoreResult",
    "WeightTable",
    "relearn_weights",
    "LabelRule",
    "RuleClassifier",
    "RuleScorer",
    "ScoreRule",
    "LRUCache",
    "EventChannel",
    "EventRecorder",
    "MemoryEvent",
    "ConsolidationReport",
    "ConsolidationScheduler",
    "MemoryEngine",
    "SemanticMemory",
    "ProceduralMemory",
    "AgentMemory",
    "create_agent_memory",
]
