"""
Weighted label tables.

The taxonomy of knowledge categories and behavior types is not fixed:
tables are seeded with bootstrap defaults and relearned from aggregate
statistics by the pure ``relearn_weights`` function. Tables are passed
explicitly into the classifier and scorer.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Mapping, Optional

MIN_WEIGHT = 0.5
MAX_WEIGHT = 2.0


@dataclass
class LabelWeight:
    """Weight and a few example snippets for one label."""

    weight: float = 1.0
    examples: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class LabelStats:
    """Aggregate statistics for one label, as reported by the store."""

    label: str
    frequency: int
    avg_score: float
    avg_usage: float


class WeightTable:
    """Mapping of label → ``LabelWeight``."""

    def __init__(self, weights: Optional[Mapping[str, float]] = None, max_examples: int = 5):
        self.max_examples = max_examples
        self._labels: Dict[str, LabelWeight] = {
            label: LabelWeight(weight=_clamp_weight(w)) for label, w in (weights or {}).items()
        }

    def __contains__(self, label: str) -> bool:
        return label in self._labels

    def __len__(self) -> int:
        return len(self._labels)

    def labels(self) -> List[str]:
        return list(self._labels)

    def weight(self, label: str, default: float = 1.0) -> float:
        entry = self._labels.get(label)
        return entry.weight if entry else default

    def get(self, label: str) -> Optional[LabelWeight]:
        return self._labels.get(label)

    def ensure(self, label: str) -> LabelWeight:
        """Register a newly discovered label at neutral weight."""
        if label not in self._labels:
            self._labels[label] = LabelWeight()
        return self._labels[label]

    def add_example(self, label: str, snippet: str) -> None:
        entry = self.ensure(label)
        entry.examples.append(snippet[:120])
        if len(entry.examples) > self.max_examples:
            del entry.examples[: len(entry.examples) - self.max_examples]

    def copy(self) -> "WeightTable":
        table = WeightTable(max_examples=self.max_examples)
        table._labels = {
            label: LabelWeight(weight=entry.weight, examples=list(entry.examples))
            for label, entry in self._labels.items()
        }
        return table

    def as_dict(self) -> Dict[str, Dict[str, object]]:
        return {
            label: {"weight": entry.weight, "examples": list(entry.examples)}
            for label, entry in self._labels.items()
        }


def _clamp_weight(value: float) -> float:
    return max(MIN_WEIGHT, min(MAX_WEIGHT, value))


def performance_weight(avg_score: float, avg_usage: float) -> float:
    """
    Weight implied by a label's aggregate performance.

    perf = (avg_score + ln(avg_usage + 1) / 5) / 2, weight = clamp(perf * 1.5)
    """
    performance = (avg_score + math.log(max(avg_usage, 0.0) + 1) / 5) / 2
    return _clamp_weight(performance * 1.5)


def relearn_weights(table: WeightTable, stats: Iterable[LabelStats]) -> WeightTable:
    """
    Return a new table with weights recomputed from aggregate statistics.

    Known labels get their performance weight; labels seen only in the
    statistics are added at neutral weight 1.0. Labels without statistics
    keep their current weight. The input table is not modified.
    """
    learned = table.copy()
    for row in stats:
        if row.label in learned:
            learned.get(row.label).weight = performance_weight(row.avg_score, row.avg_usage)
        else:
            learned.ensure(row.label)
    return learned


SEMANTIC_DEFAULT_WEIGHTS: Dict[str, float] = {
    "factual": 1.0,
    "procedural": 1.2,
    "conceptual": 1.1,
    "contextual": 0.9,
    "experiential": 1.3,
    "technical": 1.4,
}

PROCEDURAL_DEFAULT_WEIGHTS: Dict[str, float] = {
    "response_pattern": 1.0,
    "task_sequence": 1.2,
    "error_handling": 1.5,
    "user_preference": 1.3,
    "optimization": 1.1,
    "adaptation": 1.4,
}
