"""
Generic memory engine pipeline.

One ``MemoryEngine`` implements the shared store → retrieve →
consolidate lifecycle; the semantic and procedural engines supply a
strategy set (classifier rules, scorer rules, weight table, record
mapper) and override the hooks below.

store():
    RECEIVED → CLASSIFIED → SCORED → REJECTED (score < floor, not forced)
                                   → ACCEPTED → built → [duplicate → UPDATED]
                                              → embedded → PERSISTED → linked
"""

import asyncio
import json
import time
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Generic, List, Mapping, Optional, TypeVar

from ..embeddings import EmbeddingProvider
from ..errors import ValidationError
from ..persist.base import PersistenceStore, Row
from ..telemetry import get_logger, log_step
from .cache import LRUCache
from .consolidation import ConsolidationReport, ConsolidationScheduler, Step, run_steps
from .events import EventChannel, MemoryEvent, Observer
from .rules import RuleClassifier, RuleScorer, Signals, make_signals
from .schemas import StoreResult
from .weights import LabelStats, WeightTable, relearn_weights

R = TypeVar("R")


def loads_json(value: Any, default: Any) -> Any:
    """Parse a JSON column, tolerating already-decoded and empty values."""
    if value is None:
        return default
    if not isinstance(value, (str, bytes)):
        return value
    if not value.strip():
        return default
    try:
        return json.loads(value)
    except ValueError:
        return default


def dumps_json(value: Any) -> str:
    return json.dumps(value, default=str)


class RecordMapper(ABC, Generic[R]):
    """Converts between engine records and persistence rows."""

    @abstractmethod
    def to_row(self, record: R) -> Row: ...

    @abstractmethod
    def from_row(self, row: Row) -> R: ...


class MemoryEngine(ABC, Generic[R]):
    """
    Store/retrieve/consolidate pipeline scoped to one (agent_id, user_id).

    Subclasses set ``engine_name`` and ``floor_reason`` and implement the
    abstract hooks. ``store()`` and ``retrieve()`` never raise.
    """

    engine_name = "memory"
    floor_reason = "low_score"

    def __init__(
        self,
        agent_id: str,
        user_id: str,
        store: PersistenceStore,
        classifier: RuleClassifier,
        scorer: RuleScorer,
        weights: WeightTable,
        mapper: RecordMapper[R],
        *,
        floor: float,
        embedder: Optional[EmbeddingProvider] = None,
        cache_capacity: int = 500,
        consolidation_interval_seconds: float = 3600.0,
        events: Optional[EventChannel] = None,
    ):
        if not agent_id or not user_id:
            raise ValidationError("agent_id and user_id are required")
        self.agent_id = agent_id
        self.user_id = user_id
        self.store_backend = store
        self.classifier = classifier
        self.scorer = scorer
        self.weights = weights
        self.mapper = mapper
        self.floor = floor
        self.embedder = embedder
        self.cache: LRUCache[R] = LRUCache(cache_capacity)
        self.events = events if events is not None else EventChannel()
        self.consolidation_interval_seconds = consolidation_interval_seconds

        self.metrics: Dict[str, float] = {
            "stored": 0,
            "updated": 0,
            "rejected": 0,
            "failed": 0,
            "retrievals": 0,
            "avg_store_ms": 0.0,
            "avg_retrieve_ms": 0.0,
        }
        self.logger = get_logger(
            f"agent_memory.{self.engine_name}", agent_id=agent_id, user_id=user_id
        )
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._scheduler: Optional[ConsolidationScheduler] = None

    # ------------------ lifecycle ------------------
    async def initialize(self) -> None:
        """Idempotent lazy initialization (cache warm-up, index checks)."""
        if self._initialized:
            return
        async with self._init_lock:
            if self._initialized:
                return
            await self.on_initialize()
            self._initialized = True
            self.logger.info("engine_initialized", cache_size=len(self.cache))

    async def on_initialize(self) -> None:
        return None

    def start_consolidation(self) -> ConsolidationScheduler:
        """Start periodic consolidation on the running loop."""
        if self._scheduler is None:
            self._scheduler = ConsolidationScheduler(self, self.consolidation_interval_seconds)
        self._scheduler.start()
        return self._scheduler

    async def stop_consolidation(self) -> None:
        if self._scheduler is not None:
            await self._scheduler.stop()

    def subscribe(self, observer: Observer) -> Callable[[], None]:
        return self.events.subscribe(observer)

    def publish(self, kind: str, record_id: Optional[str] = None, **payload: Any) -> None:
        self.events.publish(
            MemoryEvent(
                kind=kind,
                engine=self.engine_name,
                agent_id=self.agent_id,
                user_id=self.user_id,
                record_id=record_id,
                payload=payload,
            )
        )

    # ------------------ hooks ------------------
    def validate(self, content: Any) -> None:
        if content is None:
            raise ValidationError("content is required")
        if isinstance(content, str) and not content.strip():
            raise ValidationError("content is empty")

    @abstractmethod
    def build_record(
        self,
        content: Any,
        context: Mapping[str, Any],
        metadata: Mapping[str, Any],
        label: str,
        score: float,
    ) -> R:
        """Extract features and assemble a new record."""

    async def find_duplicate(self, record: R, metadata: Mapping[str, Any]) -> Optional[R]:
        return None

    async def merge(self, existing: R, record: R, metadata: Mapping[str, Any]) -> R:
        raise NotImplementedError(f"{self.engine_name} does not merge records")

    async def prepare(self, record: R) -> R:
        """Last step before insert (e.g. embedding)."""
        return record

    @abstractmethod
    async def insert(self, record: R) -> None: ...

    async def after_insert(self, record: R) -> None:
        return None

    @abstractmethod
    async def run_retrieval(self, query: str, options: Any) -> List[R]: ...

    @abstractmethod
    async def label_stats(self) -> List[Row]: ...

    @abstractmethod
    async def count(self) -> int: ...

    @abstractmethod
    def consolidation_steps(self) -> List[Step]: ...

    @abstractmethod
    def config_snapshot(self) -> Dict[str, Any]: ...

    @staticmethod
    def record_id(record: Any) -> str:
        return record.id

    @staticmethod
    def example_snippet(signals: Signals) -> str:
        return signals.text[:120]

    # ------------------ pipeline ------------------
    def _track_latency(self, key: str, count_key: str, ms: float) -> None:
        n = max(int(self.metrics[count_key]), 1)
        self.metrics[key] = self.metrics[key] + (ms - self.metrics[key]) / n

    async def store(
        self,
        content: Any,
        context: Optional[Mapping[str, Any]] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        *,
        force_store: bool = False,
    ) -> StoreResult:
        """
        Classify, score, and persist content.

        Args:
            content: Text or structured content
            context: Interaction context (flags, domain, session, ...)
            metadata: Caller metadata (flags, numeric signals, ``category``)
            force_store: Persist even when the score is below the floor

        Returns:
            StoreResult; failures are reported in ``error``, never raised
        """
        start = time.perf_counter()

        def elapsed() -> float:
            return (time.perf_counter() - start) * 1000

        label: Optional[str] = None
        score: Optional[float] = None
        try:
            await self.initialize()
            self.validate(content)
            context = dict(context or {})
            metadata = dict(metadata or {})
            force_store = force_store or bool(metadata.get("force_store"))

            signals = make_signals(content, context, metadata)
            label = self.classifier.classify(signals, weights=self.weights)
            score = self.scorer.score(signals, label=label, weights=self.weights)

            if score < self.floor and not force_store:
                self.metrics["rejected"] += 1
                self.logger.info("store_rejected", label=label, score=round(score, 4), floor=self.floor)
                return StoreResult(
                    stored=False, label=label, score=score, reason=self.floor_reason, latency_ms=elapsed()
                )

            record = self.build_record(content, context, metadata, label, score)

            existing = await self.find_duplicate(record, metadata)
            if existing is not None:
                merged = await self.merge(existing, record, metadata)
                record_id = self.record_id(merged)
                self.cache.put(record_id, merged)
                self.metrics["updated"] += 1
                self.logger.info("record_merged", id=record_id, label=label)
                self.publish("record_updated", record_id, label=label, score=score)
                return StoreResult(
                    stored=True, updated=True, id=record_id, label=label, score=score, latency_ms=elapsed()
                )

            record = await self.prepare(record)
            await self.insert(record)
            record_id = self.record_id(record)
            self.cache.put(record_id, record)
            self.weights.add_example(label, self.example_snippet(signals))
            await self.after_insert(record)

            self.metrics["stored"] += 1
            ms = elapsed()
            self._track_latency("avg_store_ms", "stored", ms)
            log_step(self.logger, "store", ms, {"id": record_id, "label": label, "score": round(score, 4)})
            self.publish("record_stored", record_id, label=label, score=score)
            return StoreResult(stored=True, id=record_id, label=label, score=score, latency_ms=ms)

        except Exception as e:
            self.metrics["failed"] += 1
            self.logger.error("store_failed", error=str(e), error_type=type(e).__name__)
            return StoreResult(stored=False, label=label, score=score, error=str(e), latency_ms=elapsed())

    async def retrieve(self, query: str, options: Any = None) -> List[R]:
        """Ranked retrieval; any failure yields an empty list."""
        start = time.perf_counter()
        try:
            await self.initialize()
            results = await self.run_retrieval(query, options)
        except Exception as e:
            self.logger.error("retrieve_failed", error=str(e), error_type=type(e).__name__)
            return []

        self.metrics["retrievals"] += 1
        ms = (time.perf_counter() - start) * 1000
        self._track_latency("avg_retrieve_ms", "retrievals", ms)
        log_step(self.logger, "retrieve", ms, {"results": len(results)})
        self.publish("records_retrieved", None, count=len(results))
        return results

    # ------------------ learning & consolidation ------------------
    async def learn_weights(self) -> WeightTable:
        """Relearn label weights from the store's aggregate statistics."""
        rows = await self.label_stats()
        stats = [
            LabelStats(
                label=r["label"],
                frequency=int(r["frequency"]),
                avg_score=float(r["avg_score"] or 0.0),
                avg_usage=float(r["avg_usage"] or 0.0),
            )
            for r in rows
        ]
        self.weights = relearn_weights(self.weights, stats)
        self.logger.info("weights_relearned", labels=len(self.weights))
        return self.weights

    async def consolidate(self) -> ConsolidationReport:
        await self.initialize()
        report = await run_steps(self.engine_name, self.consolidation_steps())
        self.logger.info(
            "consolidation_completed",
            steps=len(report.steps),
            failed=report.failed_steps,
        )
        self.publish("consolidated", None, failed=report.failed_steps)
        return report

    async def get_stats(self) -> Dict[str, Any]:
        stats: Dict[str, Any] = {
            "engine": self.engine_name,
            "agent_id": self.agent_id,
            "user_id": self.user_id,
            "initialized": self._initialized,
            "weights": self.weights.as_dict(),
            "cache": self.cache.stats(),
            "metrics": dict(self.metrics),
            "config": self.config_snapshot(),
            "consolidation": self._scheduler.status() if self._scheduler else None,
        }
        try:
            stats["total_records"] = await self.count()
        except Exception as e:
            self.logger.warning("stats_count_failed", error=str(e))
            stats["total_records"] = None
        return stats
