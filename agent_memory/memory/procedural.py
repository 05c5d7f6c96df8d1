"""
Procedural memory: learned behavior patterns.

Strategy set for ``MemoryEngine``:
- ``PROCEDURAL_LABEL_RULES`` / ``PROCEDURAL_SCORE_RULES``: behavior type
  and effectiveness heuristics
- ``BehaviorMapper``: BehaviorRecord ↔ ``procedural_memory`` row
- dedupe against recent same-type behaviors, feedback-driven adaptation
"""

import asyncio
import time
import uuid
from typing import Any, Dict, List, Mapping, Optional, Union

from ..config.settings import ProceduralConfig
from ..errors import AgentMemoryError, NotFoundError
from ..persist.base import PersistenceStore, Row
from .adaptation import apply_adaptation, build_adaptation
from .consolidation import Step
from .engine import MemoryEngine, RecordMapper, dumps_json, loads_json
from .events import EventChannel
from .features import (
    contains_actionable,
    extract_behavior_pattern,
    extract_conditions,
    extract_context_tags,
    extract_response_template,
    extract_triggers,
    has_good_structure,
    pattern_similarity,
)
from .rules import (
    LabelRule,
    RuleClassifier,
    RuleScorer,
    content_to_text,
    context_flag,
    length_bonus,
    metadata_flag,
    predicate_bonus,
    scaled_signal,
    threshold_bonus,
)
from .schemas import AdaptationRecord, BehaviorRecord, Feedback, ProceduralQuery, StoreResult
from .weights import PROCEDURAL_DEFAULT_WEIGHTS, WeightTable

DAY_SECONDS = 24 * 60 * 60

# Dedupe merge keeps 70% of the existing effectiveness
MERGE_OLD_WEIGHT = 0.7


# ============================================================================
# Classification & scoring rules
# ============================================================================

PROCEDURAL_LABEL_RULES = [
    LabelRule("response_pattern", context_flags=("is_response",), metadata_flags=("is_response",)),
    LabelRule(
        "task_sequence",
        context_flags=("is_task_sequence",),
        metadata_flags=("is_task_sequence",),
        keywords=("first", "then", "next", "finally", "step", "process", "workflow"),
    ),
    LabelRule(
        "error_handling",
        context_flags=("is_error",),
        metadata_flags=("is_error_handling",),
        keywords=("error", "problem", "issue", "fix", "resolve", "troubleshoot"),
    ),
    LabelRule("user_preference", context_flags=("user_preference",), metadata_flags=("is_user_preference",)),
    LabelRule(
        "optimization",
        metadata_flags=("is_optimization",),
        keywords=("improve", "optimize", "better", "faster", "efficient"),
    ),
    LabelRule("adaptation", context_flags=("is_adaptation",), metadata_flags=("is_adaptation",)),
]

PROCEDURAL_SCORE_RULES = [
    length_bonus(200, 0.1),
    length_bonus(500, 0.1),
    predicate_bonus("good_structure", lambda s: has_good_structure(s.text), 0.15),
    predicate_bonus("actionable", lambda s: contains_actionable(s.text), 0.2),
    scaled_signal("context", "user_satisfaction", 0.3),
    context_flag("task_completion", 0.25),
    context_flag("problem_resolved", 0.3),
    threshold_bonus("context", "user_engagement", 0.15, above=0.7),
    metadata_flag("was_successful", 0.2),
    threshold_bonus("metadata", "user_rating", 0.2, above=0.8),
    metadata_flag("follow_up_reduced", 0.15),
    threshold_bonus("metadata", "time_to_resolution", 0.1, below=30),
]


def procedural_classifier() -> RuleClassifier:
    return RuleClassifier(PROCEDURAL_LABEL_RULES, default_label="response_pattern")


def procedural_scorer() -> RuleScorer:
    return RuleScorer(PROCEDURAL_SCORE_RULES, base=0.5)


# ============================================================================
# Persistence mapping
# ============================================================================

class BehaviorMapper(RecordMapper[BehaviorRecord]):
    """BehaviorRecord ↔ ``procedural_memory`` row."""

    @staticmethod
    def procedure_data(record: BehaviorRecord) -> str:
        return dumps_json({
            "pattern": record.pattern,
            "triggers": record.triggers,
            "response_template": record.response_template,
        })

    @staticmethod
    def history(record: BehaviorRecord) -> str:
        return dumps_json([a.model_dump() for a in record.adaptation_history])

    def to_row(self, record: BehaviorRecord) -> Row:
        return {
            "id": record.id,
            "agent_id": record.agent_id,
            "user_id": record.user_id,
            "procedure_name": record.procedure_name,
            "procedure_type": record.behavior_type,
            "procedure_data": self.procedure_data(record),
            "context_conditions": dumps_json(record.conditions),
            "context_tags": dumps_json(record.context_tags),
            "effectiveness_score": record.effectiveness,
            "usage_count": record.usage_count,
            "success_count": record.success_count,
            "success_rate": record.success_rate,
            "adaptation_history": self.history(record),
            "is_active": 1 if record.is_active else 0,
            "last_used": record.last_used,
            "created_at": record.created_at,
        }

    def from_row(self, row: Row) -> BehaviorRecord:
        data = loads_json(row.get("procedure_data"), {})
        if not isinstance(data, dict):
            data = {}
        return BehaviorRecord(
            id=row["id"],
            agent_id=row["agent_id"],
            user_id=row["user_id"],
            procedure_name=row["procedure_name"],
            behavior_type=row["procedure_type"],
            pattern=data.get("pattern") or {},
            triggers=data.get("triggers") or {},
            response_template=data.get("response_template") or {},
            conditions=loads_json(row.get("context_conditions"), {}),
            context_tags=loads_json(row.get("context_tags"), []),
            effectiveness=max(0.0, min(1.0, float(row.get("effectiveness_score") or 0.0))),
            usage_count=int(row.get("usage_count") or 0),
            success_count=int(row.get("success_count") or 0),
            success_rate=float(row.get("success_rate") or 0.0),
            is_active=bool(row.get("is_active", 1)),
            last_used=row["last_used"],
            created_at=row["created_at"],
            adaptation_history=loads_json(row.get("adaptation_history"), []),
            relevance_score=row.get("relevance_score"),
        )


# ============================================================================
# Engine
# ============================================================================

class ProceduralMemory(MemoryEngine[BehaviorRecord]):
    """
    Behavior engine for one (agent_id, user_id) pair.

    Usage:
        >>> memory = ProceduralMemory("agent-1", "user-1", store)
        >>> result = await memory.store("First open the file, then run the tests")
        >>> template = await memory.execute_behavior(result.id, feedback={"success": True})
    """

    engine_name = "procedural"
    floor_reason = "low_effectiveness"

    def __init__(
        self,
        agent_id: str,
        user_id: str,
        store: PersistenceStore,
        config: Optional[ProceduralConfig] = None,
        weights: Optional[WeightTable] = None,
        events: Optional[EventChannel] = None,
    ):
        self.config = config or ProceduralConfig()
        super().__init__(
            agent_id,
            user_id,
            store,
            classifier=procedural_classifier(),
            scorer=procedural_scorer(),
            weights=weights or WeightTable(PROCEDURAL_DEFAULT_WEIGHTS, self.config.max_examples_per_label),
            mapper=BehaviorMapper(),
            floor=self.config.effectiveness_floor,
            embedder=None,
            cache_capacity=self.config.cache_capacity,
            consolidation_interval_seconds=self.config.consolidation_interval_seconds,
            events=events,
        )
        self._locks: Dict[str, asyncio.Lock] = {}

    def _lock_for(self, behavior_id: str) -> asyncio.Lock:
        lock = self._locks.get(behavior_id)
        if lock is None:
            lock = self._locks[behavior_id] = asyncio.Lock()
        return lock

    async def on_initialize(self) -> None:
        try:
            rows = await self.store_backend.warm_behaviors(
                self.agent_id,
                self.user_id,
                min_effectiveness=self.config.warm_cache_min_effectiveness,
                limit=self.config.warm_cache_limit,
            )
            for row in rows:
                record = self.mapper.from_row(row)
                self.cache.put(record.id, record)
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
    ) -> BehaviorRecord:
        supplied = metadata.get("pattern")
        pattern = dict(supplied) if isinstance(supplied, Mapping) else extract_behavior_pattern(content, context)

        text, is_text = content_to_text(content)
        subject = text if is_text else content
        success_count = 1 if metadata.get("was_successful") else 0
        now = time.time()
        return BehaviorRecord(
            id=str(uuid.uuid4()),
            agent_id=self.agent_id,
            user_id=self.user_id,
            procedure_name=f"{label}_{uuid.uuid4().hex[:8]}",
            behavior_type=label,
            pattern=pattern,
            triggers=extract_triggers(subject, context),
            conditions=extract_conditions(context),
            response_template=extract_response_template(subject),
            context_tags=extract_context_tags(context),
            effectiveness=score,
            usage_count=1,
            success_count=success_count,
            success_rate=float(success_count),
            last_used=now,
            created_at=now,
        )

    async def find_duplicate(self, record: BehaviorRecord, metadata: Mapping[str, Any]) -> Optional[BehaviorRecord]:
        """First of the most recent same-type behaviors whose pattern is similar enough."""
        rows = await self.store_backend.recent_behaviors(
            self.agent_id, self.user_id, record.behavior_type, self.config.dedupe_candidates
        )
        for row in rows:
            existing = self.mapper.from_row(row)
            if not existing.pattern:
                continue
            similarity = pattern_similarity(record.pattern, existing.pattern)
            if similarity >= self.config.dedupe_similarity:
                self.logger.debug("duplicate_behavior", id=existing.id, similarity=round(similarity, 3))
                return existing
        return None

    async def merge(
        self, existing: BehaviorRecord, record: BehaviorRecord, metadata: Mapping[str, Any]
    ) -> BehaviorRecord:
        async with self._lock_for(existing.id):
            await self.store_backend.merge_behavior(
                existing.id,
                self.agent_id,
                self.user_id,
                effectiveness=record.effectiveness,
                old_weight=MERGE_OLD_WEIGHT,
                success_increment=1 if metadata.get("was_successful") else 0,
                now=time.time(),
            )
            return await self._reload(existing.id)

    async def insert(self, record: BehaviorRecord) -> None:
        await self.store_backend.insert_behavior(self.mapper.to_row(record))

    # ------------------ retrieval ------------------
    async def run_retrieval(
        self, query: str, options: Union[ProceduralQuery, Mapping[str, Any], None]
    ) -> List[BehaviorRecord]:
        """
        Rank active behaviors by usage, success and effectiveness.

        The query text is not matched here; use ``find_relevant_behaviors``
        for text search. Counters are never mutated.
        """
        if isinstance(options, Mapping):
            options = ProceduralQuery.model_validate(options)
        options = options or ProceduralQuery()
        tags = extract_context_tags(options.context) if options.context_match else []
        rows = await self.store_backend.rank_behaviors(
            self.agent_id,
            self.user_id,
            min_effectiveness=options.min_effectiveness,
            limit=options.limit,
            behavior_types=options.behavior_types or None,
            context_tags=tags or None,
        )
        behaviors = [self.mapper.from_row(row) for row in rows]
        if options.include_adaptations:
            for behavior in behaviors:
                behavior.recent_adaptations = behavior.adaptation_history[-self.config.recent_adaptations:]
        return behaviors

    # ------------------ record access ------------------
    async def _reload(self, behavior_id: str) -> BehaviorRecord:
        row = await self.store_backend.get_behavior(behavior_id, self.agent_id, self.user_id)
        if row is None:
            self.cache.pop(behavior_id)
            raise NotFoundError(f"behavior {behavior_id} not found")
        record = self.mapper.from_row(row)
        self.cache.put(record.id, record)
        return record

    async def get_behavior(self, behavior_id: str) -> Optional[BehaviorRecord]:
        """Cache first, then the store; None when unknown."""
        await self.initialize()
        cached = self.cache.get(behavior_id)
        if cached is not None:
            return cached
        try:
            return await self._reload(behavior_id)
        except NotFoundError:
            return None

    async def execute_behavior(
        self,
        behavior_id: str,
        context: Optional[Mapping[str, Any]] = None,
        feedback: Optional[Union[Feedback, Mapping[str, Any]]] = None,
    ) -> Dict[str, Any]:
        """
        Record one use of a behavior and optionally learn from its outcome.

        Args:
            behavior_id: Behavior to execute
            context: Interaction context (used for adaptation tags)
            feedback: Optional outcome feedback

        Returns:
            The behavior's response template

        Raises:
            NotFoundError: If the behavior does not exist for this owner
        """
        await self.initialize()
        async with self._lock_for(behavior_id):
            updated = await self.store_backend.record_behavior_usage(
                behavior_id, self.agent_id, self.user_id, time.time()
            )
            if not updated:
                self.cache.pop(behavior_id)
                raise NotFoundError(f"behavior {behavior_id} not found")
            behavior = await self._reload(behavior_id)

        if feedback is not None:
            behavior = await self.process_feedback(behavior_id, feedback, context)

        self.logger.info("behavior_executed", id=behavior_id, usage_count=behavior.usage_count)
        self.publish("behavior_executed", behavior_id, with_feedback=feedback is not None)
        return behavior.response_template

    async def process_feedback(
        self,
        behavior_id: str,
        feedback: Union[Feedback, Mapping[str, Any]],
        context: Optional[Mapping[str, Any]] = None,
    ) -> BehaviorRecord:
        """
        Apply feedback: count successes and adapt when hints are present.

        Raises:
            NotFoundError: If the behavior does not exist for this owner
        """
        await self.initialize()
        if not isinstance(feedback, Feedback):
            feedback = Feedback.model_validate(dict(feedback))

        async with self._lock_for(behavior_id):
            if feedback.is_success:
                await self.store_backend.record_behavior_success(behavior_id, self.agent_id, self.user_id)
            record = await self._reload(behavior_id)

            if feedback.has_adaptation_hints:
                adaptation = build_adaptation(record, feedback, context, self.config.max_effectiveness_delta)
                adapted = apply_adaptation(record, adaptation, self.config.adaptation_rate)
                await self.store_backend.update_behavior(
                    behavior_id,
                    self.agent_id,
                    self.user_id,
                    {
                        "procedure_data": BehaviorMapper.procedure_data(adapted),
                        "adaptation_history": BehaviorMapper.history(adapted),
                        "effectiveness_score": adapted.effectiveness,
                    },
                )
                self.cache.put(behavior_id, adapted)
                record = adapted
                self.logger.info(
                    "behavior_adapted",
                    id=behavior_id,
                    adaptation_type=adaptation.adaptation_type,
                    effectiveness=round(adapted.effectiveness, 4),
                )
                self.publish("behavior_adapted", behavior_id, adaptation_type=adaptation.adaptation_type)

        self.publish("feedback_processed", behavior_id, success=feedback.is_success)
        return record

    async def get_recent_adaptations(self, behavior_id: str) -> List[AdaptationRecord]:
        behavior = await self.get_behavior(behavior_id)
        if behavior is None:
            return []
        return behavior.adaptation_history[-self.config.recent_adaptations:]

    async def record_behavior(
        self,
        pattern: Any,
        context: Optional[Mapping[str, Any]] = None,
        success: bool = True,
    ) -> StoreResult:
        """Force-store an observed behavior with its outcome."""
        return await self.store(pattern, context, {"was_successful": success}, force_store=True)

    async def get_top_behaviors(self, limit: int = 10) -> List[BehaviorRecord]:
        """Active behaviors by success rate, then usage."""
        await self.initialize()
        rows = await self.store_backend.top_behaviors(self.agent_id, self.user_id, limit)
        return [self.mapper.from_row(r) for r in rows]

    async def find_relevant_behaviors(self, query: str, limit: int = 10) -> List[BehaviorRecord]:
        """Substring search over behavior data, conditions, name and type."""
        await self.initialize()
        rows = await self.store_backend.search_behaviors(self.agent_id, self.user_id, query, limit)
        return [self.mapper.from_row(r) for r in rows]

    async def delete(self, behavior_id: str) -> bool:
        await self.initialize()
        async with self._lock_for(behavior_id):
            deleted = await self.store_backend.delete_behavior(behavior_id, self.agent_id, self.user_id)
            self.cache.pop(behavior_id)
        self._locks.pop(behavior_id, None)
        if deleted:
            self.logger.info("behavior_deleted", id=behavior_id)
            self.publish("record_deleted", behavior_id)
        return deleted

    # ------------------ consolidation ------------------
    async def label_stats(self) -> List[Row]:
        return await self.store_backend.behavior_label_stats(self.agent_id, self.user_id)

    async def count(self) -> int:
        return await self.store_backend.count_behaviors(self.agent_id, self.user_id)

    def consolidation_steps(self) -> List[Step]:
        return [
            ("learn_weights", self._learn_weights_step),
            ("trim_cache", self.trim_cache),
            ("evict_stale", self.evict_stale),
        ]

    async def _learn_weights_step(self) -> Dict[str, float]:
        table = await self.learn_weights()
        return {label: table.weight(label) for label in table.labels()}

    async def trim_cache(self) -> int:
        removed = self.cache.trim(self.config.cache_size_cap, self.config.cache_keep)
        if removed:
            self.logger.info("cache_trimmed", removed=removed, size=len(self.cache))
        return removed

    async def evict_stale(self) -> int:
        """Delete old, rarely used, ineffective behaviors."""
        cutoff = time.time() - self.config.eviction_age_days * DAY_SECONDS
        removed = await self.store_backend.evict_stale_behaviors(
            self.agent_id,
            self.user_id,
            created_before=cutoff,
            usage_floor=self.config.eviction_usage_floor,
            effectiveness_floor=self.config.eviction_effectiveness_floor,
        )
        for key, record in self.cache.items():
            if (
                record.created_at < cutoff
                and record.usage_count < self.config.eviction_usage_floor
                and record.effectiveness < self.config.eviction_effectiveness_floor
            ):
                self.cache.pop(key)
        if removed:
            await self._drop_orphan_locks()
            self.logger.info("behaviors_evicted", count=removed)
        return removed

    async def _drop_orphan_locks(self) -> None:
        for behavior_id, lock in list(self._locks.items()):
            if lock.locked():
                continue
            if await self.store_backend.get_behavior(behavior_id, self.agent_id, self.user_id) is None:
                self._locks.pop(behavior_id, None)

    def config_snapshot(self) -> Dict[str, Any]:
        return self.config.model_dump()
