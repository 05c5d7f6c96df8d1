"""
Declarative rule engine for classification and scoring.

Both engines describe their heuristics as ordered data:

- ``LabelRule``: a label with authoritative flags, fallback keywords and
  weak context hints (keys whose mere presence suggests the label).
  ``RuleClassifier`` checks every rule's flags first, in priority order,
  then every rule's keywords, then hints, then falls back to a default.
- ``ScoreRule``: an independent, bounded contribution. ``RuleScorer``
  multiplies a base value by the label weight, adds all contributions
  and clamps to [0, 1].

Neither component raises or mutates state.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

from .weights import WeightTable

# Plural and inflected forms: "apis", "steps", "fixed", "errors"
KEYWORD_SUFFIX = r"(?:s|es|ed|d|ing)?"


@dataclass(frozen=True)
class Signals:
    """Normalized view of a store request handed to rules."""

    text: str
    is_text: bool
    context: Mapping[str, Any]
    metadata: Mapping[str, Any]

    @property
    def lower(self) -> str:
        return self.text.lower()


def content_to_text(content: Any) -> Tuple[str, bool]:
    """
    Render arbitrary content as text.

    Returns:
        (text, is_text) where ``is_text`` is True for plain strings and
        for ``{"text": str}`` wrappers
    """
    if isinstance(content, str):
        return content, True
    if isinstance(content, Mapping) and isinstance(content.get("text"), str):
        return content["text"], True
    if content is None:
        return "", False
    try:
        return json.dumps(content, sort_keys=True, default=str), False
    except (TypeError, ValueError):
        return str(content), False


def make_signals(
    content: Any,
    context: Optional[Mapping[str, Any]] = None,
    metadata: Optional[Mapping[str, Any]] = None,
) -> Signals:
    text, is_text = content_to_text(content)
    return Signals(text=text, is_text=is_text, context=context or {}, metadata=metadata or {})


def _keyword_pattern(keywords: Sequence[str]) -> Optional["re.Pattern[str]"]:
    if not keywords:
        return None
    alternatives = "|".join(re.escape(k.lower()) for k in sorted(keywords, key=len, reverse=True))
    return re.compile(rf"\b(?:{alternatives}){KEYWORD_SUFFIX}\b")


def _truthy(mapping: Mapping[str, Any], key: str) -> bool:
    try:
        return bool(mapping.get(key))
    except Exception:
        return False


def _number(mapping: Mapping[str, Any], key: str) -> Optional[float]:
    value = mapping.get(key)
    if isinstance(value, bool) or value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


# ============================================================================
# Classification
# ============================================================================

@dataclass(frozen=True)
class LabelRule:
    """One entry of an ordered classification table."""

    label: str
    context_flags: Tuple[str, ...] = ()
    metadata_flags: Tuple[str, ...] = ()
    keywords: Tuple[str, ...] = ()
    context_hints: Tuple[str, ...] = ()
    _pattern: Optional["re.Pattern[str]"] = field(default=None, init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "_pattern", _keyword_pattern(self.keywords))

    def flag_match(self, signals: Signals) -> bool:
        return any(_truthy(signals.context, f) for f in self.context_flags) or any(
            _truthy(signals.metadata, f) for f in self.metadata_flags
        )

    def keyword_match(self, signals: Signals) -> bool:
        if self._pattern is None or not signals.is_text:
            return False
        return self._pattern.search(signals.lower) is not None

    def hint_match(self, signals: Signals) -> bool:
        return any(signals.context.get(k) is not None for k in self.context_hints)


class RuleClassifier:
    """Total classifier over an ordered ``LabelRule`` list."""

    def __init__(self, rules: Sequence[LabelRule], default_label: str):
        self.rules = list(rules)
        self.default_label = default_label

    @property
    def labels(self) -> List[str]:
        seen = [r.label for r in self.rules]
        if self.default_label not in seen:
            seen.append(self.default_label)
        return list(dict.fromkeys(seen))

    def classify(
        self,
        content: Any,
        context: Optional[Mapping[str, Any]] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        weights: Optional[WeightTable] = None,
    ) -> str:
        """
        Resolve a label for the content.

        ``weights`` is accepted so learned labels can be honoured: a
        caller-supplied ``metadata["category"]`` that the table already
        knows short-circuits the rules.
        """
        signals = content if isinstance(content, Signals) else make_signals(content, context, metadata)

        explicit = signals.metadata.get("category") if signals.metadata else None
        if weights is not None and isinstance(explicit, str) and explicit in weights:
            return explicit

        for rule in self.rules:
            if rule.flag_match(signals):
                return rule.label
        for rule in self.rules:
            if rule.keyword_match(signals):
                return rule.label
        for rule in self.rules:
            if rule.hint_match(signals):
                return rule.label
        return self.default_label


# ============================================================================
# Scoring
# ============================================================================

@dataclass(frozen=True)
class ScoreRule:
    """Named, bounded contribution to a score."""

    name: str
    contribution: Callable[[Signals], float]
    cap: float

    def apply(self, signals: Signals) -> float:
        try:
            value = float(self.contribution(signals))
        except Exception:
            return 0.0
        return max(0.0, min(self.cap, value))


def length_bonus(min_chars: int, weight: float) -> ScoreRule:
    return ScoreRule(
        f"length>{min_chars}",
        lambda s: weight if s.is_text and len(s.text) > min_chars else 0.0,
        weight,
    )


def keyword_bonus(name: str, keywords: Sequence[str], weight: float) -> ScoreRule:
    pattern = _keyword_pattern(keywords)
    return ScoreRule(
        name,
        lambda s: weight if s.is_text and pattern.search(s.lower) else 0.0,
        weight,
    )


def predicate_bonus(name: str, predicate: Callable[[Signals], bool], weight: float) -> ScoreRule:
    return ScoreRule(name, lambda s: weight if s.is_text and predicate(s) else 0.0, weight)


def context_flag(key: str, weight: float) -> ScoreRule:
    return ScoreRule(f"context.{key}", lambda s: weight if _truthy(s.context, key) else 0.0, weight)


def metadata_flag(key: str, weight: float) -> ScoreRule:
    return ScoreRule(f"metadata.{key}", lambda s: weight if _truthy(s.metadata, key) else 0.0, weight)


def threshold_bonus(source: str, key: str, weight: float, *, above: Optional[float] = None,
                    below: Optional[float] = None) -> ScoreRule:
    """Bonus when a numeric signal is strictly above/below a threshold."""

    def contribution(s: Signals) -> float:
        value = _number(s.context if source == "context" else s.metadata, key)
        if value is None:
            return 0.0
        if above is not None and not value > above:
            return 0.0
        if below is not None and not value < below:
            return 0.0
        return weight

    return ScoreRule(f"{source}.{key}", contribution, weight)


def scaled_signal(source: str, key: str, factor: float) -> ScoreRule:
    """Contribution proportional to a numeric signal in [0, 1]."""

    def contribution(s: Signals) -> float:
        value = _number(s.context if source == "context" else s.metadata, key)
        if value is None:
            return 0.0
        return max(0.0, min(1.0, value)) * factor

    return ScoreRule(f"{source}.{key}*{factor}", contribution, factor)


class RuleScorer:
    """base × label weight + Σ bounded contributions, clamped to [0, 1]."""

    def __init__(self, rules: Sequence[ScoreRule], base: float = 0.5):
        self.rules = list(rules)
        self.base = base

    def score(
        self,
        content: Any,
        context: Optional[Mapping[str, Any]] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        label: Optional[str] = None,
        weights: Optional[WeightTable] = None,
    ) -> float:
        signals = content if isinstance(content, Signals) else make_signals(content, context, metadata)
        weight = weights.weight(label) if (weights is not None and label) else 1.0
        total = self.base * weight + sum(rule.apply(signals) for rule in self.rules)
        return max(0.0, min(1.0, total))

    def explain(self, content: Any, context=None, metadata=None) -> Dict[str, float]:
        """Per-rule contributions, for debugging heuristics."""
        signals = content if isinstance(content, Signals) else make_signals(content, context, metadata)
        return {rule.name: rule.apply(signals) for rule in self.rules if rule.apply(signals) > 0}
